# -*- coding: utf-8 -*-
"""
Compliance Evaluator for the Site Compliance Engine.

Evaluation order for one municipality and program at a given date:
1. Base requirement from population (Requirement Calculator)
2. Active direct-service offset reduces the requirement
3. Active events credit the remaining shortfall (never creating excess)
4. Committed reallocations move requirement between donor and recipient
5. Status from active sites minus adjusted requirement

Everything is recomputed from ledger state on each call; nothing is cached.
"""

import logging
import sqlite3
from collections import defaultdict
from datetime import date
from decimal import Decimal, ROUND_FLOOR
from typing import Dict, List, Optional, Sequence, Tuple

from .config import EVENT_CONFIG
from .context import ComplianceContext
from .errors import ConflictError
from .models import (
    ComplianceBatch,
    ComplianceResult,
    ComplianceStatus,
    ComplianceSummary,
    EventRecord,
    IntegrityIssue,
    Municipality,
    Offset,
    ReallocationRecord,
    Site,
)
from .requirements import compute_requirement

logger = logging.getLogger(__name__)


# =============================================================================
# Pure evaluation helpers
# =============================================================================

def classify(active_count: int, adjusted_requirement: int) -> Tuple[ComplianceStatus, int, int]:
    """Return (status, shortfall, excess) for a site count vs requirement."""
    delta = active_count - adjusted_requirement
    if delta < 0:
        return "shortfall", -delta, 0
    if delta > 0:
        return "excess", 0, delta
    return "compliant", 0, 0


def is_event_site(site: Site) -> bool:
    return site.site_type in EVENT_CONFIG["event_site_types"] or site.operator_type == "Event"


def counted_sites(sites: Sequence[Site], as_of: date, program: str) -> List[Site]:
    """Active, program-tagged, non-event sites that count toward compliance."""
    return [
        s for s in sites
        if s.is_active(as_of) and program in s.programs and not is_event_site(s)
    ]


def offset_reduction(base_requirement: int, percentage: float) -> int:
    """floor(base * pct / 100), computed in decimal to avoid float drift."""
    reduced = Decimal(base_requirement) * Decimal(str(percentage)) / Decimal(100)
    return int(reduced.to_integral_value(rounding=ROUND_FLOOR))


def active_offset(
    offsets: Sequence[Offset],
    as_of: date,
    program: str,
) -> Optional[Offset]:
    """
    The single active, non-superseded offset for a program.

    Overlapping active offsets are an integrity problem and are reported
    as a ConflictError rather than summed.
    """
    active = [
        o for o in offsets
        if o.program == program and o.superseded_by is None and o.status_on(as_of) == "active"
    ]
    if len(active) > 1:
        raise ConflictError(
            "Overlapping active offsets for the same municipality and year",
            context={
                "municipality_id": active[0].municipality_id,
                "program": program,
                "offset_ids": [o.offset_id for o in active],
                "as_of": as_of.isoformat(),
            },
        )
    return active[0] if active else None


def event_credit(
    events: Sequence[EventRecord],
    as_of: date,
    program: str,
    baseline_shortfall: int,
    requirement: int,
) -> int:
    """Sum of active event credits, capped at the current baseline shortfall."""
    total = sum(
        e.credit for e in events
        if e.program == program and e.status_on(as_of) == "active"
    )
    cap = baseline_shortfall
    share = EVENT_CONFIG.get("max_credit_share")
    if share is not None:
        cap = min(cap, int(Decimal(requirement) * Decimal(str(share))))
    return max(0, min(total, cap))


def reallocation_flows(
    reallocations: Sequence[ReallocationRecord],
    municipality_id: int,
    as_of: date,
    program: str,
) -> Tuple[int, int]:
    """(incoming, outgoing) committed quantity for a municipality."""
    incoming = outgoing = 0
    for r in reallocations:
        if r.status != "committed" or r.program != program or r.effective_date > as_of:
            continue
        if r.recipient_id == municipality_id:
            incoming += r.quantity
        if r.donor_id == municipality_id:
            outgoing += r.quantity
    return incoming, outgoing


def compute_compliance(
    municipality: Municipality,
    sites: Sequence[Site],
    offsets: Sequence[Offset],
    events: Sequence[EventRecord],
    reallocations: Sequence[ReallocationRecord],
    as_of: date,
    program: str,
) -> ComplianceResult:
    """
    Evaluate one municipality. Pure: depends only on its arguments.

    `sites`, `offsets` and `events` must belong to the municipality;
    `reallocations` may include records for other municipalities.
    """
    base = compute_requirement(municipality.population, program)

    offset = active_offset(offsets, as_of, program)
    percentage = offset.percentage if offset else 0
    reduction = offset_reduction(base, percentage) if offset else 0
    after_offset = max(0, base - reduction)

    active_count = len(counted_sites(sites, as_of, program))

    baseline_shortfall = max(0, after_offset - active_count)
    credit = event_credit(events, as_of, program, baseline_shortfall, after_offset)
    after_events = after_offset - credit

    incoming, outgoing = reallocation_flows(reallocations, municipality.municipality_id, as_of, program)
    adjusted = max(0, after_events - incoming + outgoing)

    status, shortfall, excess = classify(active_count, adjusted)

    return ComplianceResult(
        municipality_id=municipality.municipality_id,
        municipality_name=municipality.name,
        program=program,
        evaluated_as_of=as_of,
        base_requirement=base,
        offset_percentage=percentage,
        offset_reduction=reduction,
        event_credit=credit,
        incoming=incoming,
        outgoing=outgoing,
        adjusted_requirement=adjusted,
        active_site_count=active_count,
        status=status,
        shortfall=shortfall,
        excess=excess,
    )


def summarize(results: Sequence[ComplianceResult]) -> ComplianceSummary:
    """Roll up results into jurisdiction totals."""
    total_required = sum(r.adjusted_requirement for r in results)
    total_actual = sum(r.active_site_count for r in results)
    return ComplianceSummary(
        total=len(results),
        compliant=sum(1 for r in results if r.status == "compliant"),
        shortfalls=sum(1 for r in results if r.status == "shortfall"),
        excesses=sum(1 for r in results if r.status == "excess"),
        total_shortfall_sites=sum(r.shortfall for r in results),
        total_excess_sites=sum(r.excess for r in results),
        total_required=total_required,
        total_actual=total_actual,
        overall_compliance_rate=(total_actual / total_required * 100) if total_required else 100.0,
    )


# =============================================================================
# Context-bound evaluator
# =============================================================================

class ComplianceEvaluator:
    """
    Reads a consistent view of registry and ledgers and evaluates it.

    Stateless between calls; safe to run concurrently.
    """

    def __init__(self, ctx: ComplianceContext):
        self.ctx = ctx

    def evaluate(
        self,
        municipality_id: int,
        as_of: Optional[date] = None,
        program: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> ComplianceResult:
        """Evaluate a single municipality."""
        as_of = as_of or self.ctx.today()
        program = program or self.ctx.program

        with self.ctx.connection(conn) as c:
            municipality = self.ctx.get_municipality(municipality_id, c)
            sites = self.ctx.list_sites(municipality_id, c)
            offsets = self.ctx.list_offset_records(municipality_id, program, conn=c)
            events = self.ctx.list_event_records(municipality_id, program, c)
            reallocations = self.ctx.list_reallocation_records(
                status="committed", municipality_id=municipality_id, program=program, conn=c
            )

        result = compute_compliance(municipality, sites, offsets, events, reallocations, as_of, program)
        logger.debug(
            "Evaluated %s (%s) as of %s: %s", municipality.name, program, as_of, result.status
        )
        return result

    def evaluate_all(
        self,
        as_of: Optional[date] = None,
        program: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> List[ComplianceResult]:
        """Results for every evaluable municipality; conflicts are logged and skipped."""
        return self.evaluate_batch(as_of, program, conn).results

    def evaluate_batch(
        self,
        as_of: Optional[date] = None,
        program: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> ComplianceBatch:
        """
        Evaluate every municipality from one consistent read.

        A municipality whose ledgers conflict (overlapping active offsets)
        is reported in `conflicts` instead of failing the whole batch.
        """
        as_of = as_of or self.ctx.today()
        program = program or self.ctx.program

        with self.ctx.connection(conn) as c:
            municipalities = self.ctx.list_municipalities(c)
            sites = self.ctx.list_sites(conn=c)
            offsets = self.ctx.list_offset_records(program=program, conn=c)
            events = self.ctx.list_event_records(program=program, conn=c)
            reallocations = self.ctx.list_reallocation_records(
                status="committed", program=program, conn=c
            )

        sites_by: Dict[int, List[Site]] = defaultdict(list)
        for s in sites:
            sites_by[s.municipality_id].append(s)
        offsets_by: Dict[int, List[Offset]] = defaultdict(list)
        for o in offsets:
            offsets_by[o.municipality_id].append(o)
        events_by: Dict[int, List[EventRecord]] = defaultdict(list)
        for e in events:
            events_by[e.municipality_id].append(e)

        batch = ComplianceBatch(program=program, evaluated_as_of=as_of)
        for m in municipalities:
            try:
                batch.results.append(compute_compliance(
                    m,
                    sites_by[m.municipality_id],
                    offsets_by[m.municipality_id],
                    events_by[m.municipality_id],
                    reallocations,
                    as_of,
                    program,
                ))
            except ConflictError as e:
                logger.warning("Skipping %s in batch evaluation: %s", m.name, e)
                batch.conflicts.append(IntegrityIssue(
                    municipality_id=m.municipality_id,
                    municipality_name=m.name,
                    error_code=e.error_code,
                    message=e.message,
                    context=e.context,
                ))
        return batch
