# -*- coding: utf-8 -*-
"""
Compliance Analyst Agent

Responsibilities:
- Read the post-offset, post-event compliance picture
- Find donors with eligible excess next to municipalities in shortfall
- Run the reallocation planner
- Propose reallocations with a written rationale

Decision Authority:
- Which transfers to propose

NOT responsible for:
- Committing or reversing reallocations (human review via review_cli)
- Applying offsets or events
"""

from typing import Optional
from agents import Agent, function_tool, RunContextWrapper

from .context import ComplianceContext
from .engine import ComplianceEngine
from .errors import ComplianceError


def _engine(ctx: RunContextWrapper[ComplianceContext]) -> ComplianceEngine:
    return ComplianceEngine(ctx.context)


# =============================================================================
# Tool Definitions
# =============================================================================

@function_tool
def get_compliance_report(ctx: RunContextWrapper[ComplianceContext]) -> str:
    """
    Evaluate every municipality for the current program.

    Returns adjusted requirement, active sites and status per municipality.
    """
    engine = _engine(ctx)
    try:
        batch = engine.evaluate_batch()
    except ComplianceError as e:
        return f"Error: {e}"

    results = batch.results
    summary = engine.summarize(results)
    result = f"""Compliance Report for {ctx.context.jurisdiction_name}
=========================================
Program: {ctx.context.program}
As Of: {ctx.context.today().isoformat()}
Municipalities: {summary.total}
  Compliant: {summary.compliant}
  Shortfall: {summary.shortfalls} ({summary.total_shortfall_sites} sites)
  Excess: {summary.excesses} ({summary.total_excess_sites} sites)
Overall Compliance: {summary.overall_compliance_rate:.1f}%

Municipalities:
"""

    for r in sorted(results, key=lambda x: (-x.shortfall, x.municipality_name)):
        gap = f"-{r.shortfall}" if r.shortfall else f"+{r.excess}"
        result += f"""
#{r.municipality_id}: {r.municipality_name} [{r.status.upper()}] {gap}
  Base: {r.base_requirement} | Offset: {r.offset_percentage:g}% (-{r.offset_reduction})
  Events: -{r.event_credit} | Reallocated: +{r.outgoing} / -{r.incoming}
  Adjusted: {r.adjusted_requirement} | Active Sites: {r.active_site_count}
---"""

    for issue in batch.conflicts:
        result += f"\n#{issue.municipality_id}: {issue.municipality_name} [NOT EVALUATED] {issue.message}"

    return result


@function_tool
def get_reallocation_candidates(ctx: RunContextWrapper[ComplianceContext]) -> str:
    """
    List donors whose excess is backed by eligible sites, with adjacent shortfalls.

    Municipal, First Nation/Indigenous, Regional District and Event sites
    never count toward available excess.
    """
    candidates = _engine(ctx).reallocation_candidates()

    if not candidates:
        return "No municipality has eligible excess available for reallocation."

    result = "Reallocation Candidates\n" + "=" * 40 + "\n"
    for c in candidates:
        neighbours = ", ".join(f"#{m} (short {s})" for m, s in c.adjacent_shortfalls.items()) or "none in shortfall"
        result += f"""
Donor #{c.municipality_id}: {c.name}
  Excess: {c.excess} | Available (eligible): {c.available_excess}
  Eligible Sites: {', '.join(str(s) for s in c.eligible_site_ids)}
  Adjacent Shortfalls: {neighbours}
"""
    return result


@function_tool
def run_reallocation_planner(ctx: RunContextWrapper[ComplianceContext]) -> str:
    """
    Run the reallocation planner over current candidates.

    Suggestions only; nothing is written. Use propose_reallocation for each
    transfer you want reviewed.
    """
    engine = _engine(ctx)
    try:
        plan = engine.plan_reallocations()
    except ComplianceError as e:
        return f"Error: {e}"

    if not plan.transfers:
        return f"Planner ({plan.solver}) found no feasible transfers. Uncovered shortfall: {plan.uncovered_shortfall}"

    names = {m.municipality_id: m.name for m in ctx.context.list_municipalities()}
    result = f"""Reallocation Plan ({plan.solver})
{'=' * 40}
Program: {plan.program}
Total Transferred: {plan.total_transferred}
Uncovered Shortfall: {plan.uncovered_shortfall}

TRANSFERS:
"""
    for t in plan.transfers:
        result += f"  {names.get(t.donor_id, t.donor_id)} (#{t.donor_id}) -> " \
                  f"{names.get(t.recipient_id, t.recipient_id)} (#{t.recipient_id}): {t.quantity}\n"
    return result


@function_tool
def propose_reallocation(
    ctx: RunContextWrapper[ComplianceContext],
    donor_id: int,
    recipient_id: int,
    quantity: int,
    rationale: str,
) -> str:
    """
    Propose a reallocation for human review. Does NOT commit it.

    Args:
        donor_id: Municipality with eligible excess
        recipient_id: Adjacent municipality in shortfall
        quantity: Units of required-site capacity to move
        rationale: Why this transfer makes sense
    """
    try:
        record = _engine(ctx).propose_reallocation(
            donor_id,
            recipient_id,
            quantity,
            program=ctx.context.program,
            rationale=rationale,
            actor="analyst_agent",
        )
    except ComplianceError as e:
        return f"Rejected: {e}\nContext: {e.context}"

    return f"""✓ Reallocation #{record.reallocation_id} proposed
  Donor: #{record.donor_id} -> Recipient: #{record.recipient_id}
  Quantity: {record.quantity}
  Justifying Sites: {', '.join(str(s) for s in record.justification.included_site_ids)}
  Status: {record.status} (awaiting human commit)
"""


@function_tool
def list_pending_proposals(
    ctx: RunContextWrapper[ComplianceContext],
    municipality_id: Optional[int] = None,
) -> str:
    """
    List reallocations still awaiting review.

    Args:
        municipality_id: Optional filter (matches donor or recipient)
    """
    pending = _engine(ctx).list_reallocations("proposed", municipality_id, ctx.context.program)
    if not pending:
        return "No pending reallocation proposals."

    result = "Pending Proposals\n" + "=" * 30 + "\n"
    for r in pending:
        result += f"  #{r.reallocation_id}: #{r.donor_id} -> #{r.recipient_id} x{r.quantity} ({r.effective_date})\n"
        if r.justification.rationale:
            result += f"     Rationale: {r.justification.rationale}\n"
    return result


# =============================================================================
# Agent Definition
# =============================================================================

ANALYST_AGENT_INSTRUCTIONS = """You are the Compliance Analyst for the Site Compliance Engine.

Your role is to close site shortfalls by proposing reallocations from adjacent
municipalities with eligible excess. A human reviewer commits or rejects them.

WORKFLOW:
1. Use get_compliance_report to see shortfalls and excesses
2. Use get_reallocation_candidates to find donors with eligible excess
3. Use run_reallocation_planner for a suggested set of transfers
4. Use propose_reallocation for each transfer you recommend, with a rationale
5. Use list_pending_proposals to confirm what awaits review

RULES:
- Recipients must be adjacent to the donor
- Only excess backed by Private, Return-to-Retail or other eligible sites
  can move; Municipal, First Nation/Indigenous, Regional District and Event
  sites are fixed
- Never propose more than the donor's available excess
- If a proposal is rejected, read the error context and adjust; do not retry
  the same proposal

You cannot commit reallocations. Summarize what you proposed and why.
"""

analyst_agent = Agent[ComplianceContext](
    name="Compliance Analyst",
    instructions=ANALYST_AGENT_INSTRUCTIONS,
    tools=[
        get_compliance_report,
        get_reallocation_candidates,
        run_reallocation_planner,
        propose_reallocation,
        list_pending_proposals,
    ],
)
