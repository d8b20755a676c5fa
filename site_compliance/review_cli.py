# -*- coding: utf-8 -*-
"""
CLI tool for human review of reallocations and compliance reporting.

Usage:
    python -m site_compliance.review_cli
    python -m site_compliance.review_cli --list
    python -m site_compliance.review_cli --commit 3 --by "j.smith"
    python -m site_compliance.review_cli --reverse 3 --reason "wrong donor"
    python -m site_compliance.review_cli --report --as-of 2025-06-30
    python -m site_compliance.review_cli --snapshot
"""

import argparse
import sys
from datetime import date
from typing import Dict, List, Optional

from .config import DB_PATH, DEFAULT_PROGRAM, PROGRAMS
from .context import ComplianceContext
from .engine import ComplianceEngine
from .errors import ComplianceError
from .models import (
    ComplianceResult,
    ComplianceSummary,
    IntegrityIssue,
    ReallocationPlan,
    ReallocationRecord,
)


def display_compliance_report(results: List[ComplianceResult], summary: ComplianceSummary) -> None:
    """Display compliance results in a table."""
    if not results:
        print("\nNo municipalities registered.\n")
        return

    print("\n" + "=" * 100)
    print(f"COMPLIANCE REPORT: {results[0].program} (as of {results[0].evaluated_as_of})")
    print("=" * 100)
    print(f"{'ID':<4} {'Municipality':<22} {'Base':>5} {'Off%':>6} {'Evt':>4} {'In':>4} {'Out':>4} "
          f"{'Req':>5} {'Sites':>6} {'Status':<11} {'Gap':>5}")
    print("-" * 100)

    for r in results:
        gap = f"-{r.shortfall}" if r.shortfall else (f"+{r.excess}" if r.excess else "0")
        print(f"{r.municipality_id:<4} {r.municipality_name[:20]:<22} {r.base_requirement:>5} "
              f"{r.offset_percentage:>6g} {r.event_credit:>4} {r.incoming:>4} {r.outgoing:>4} "
              f"{r.adjusted_requirement:>5} {r.active_site_count:>6} {r.status:<11} {gap:>5}")

    print("-" * 100)
    print(f"Compliant: {summary.compliant}  Shortfall: {summary.shortfalls} ({summary.total_shortfall_sites} sites)  "
          f"Excess: {summary.excesses} ({summary.total_excess_sites} sites)  "
          f"Overall: {summary.overall_compliance_rate:.1f}%")
    print("=" * 100 + "\n")


def display_conflicts(conflicts: List[IntegrityIssue]) -> None:
    """Display municipalities left out of a report because their ledgers conflict."""
    if not conflicts:
        return
    print("⚠️  NOT EVALUATED (ledger conflicts):")
    for issue in conflicts:
        print(f"  #{issue.municipality_id} {issue.municipality_name}: [{issue.error_code}] {issue.message}")
        if issue.context.get("offset_ids"):
            print(f"     Offsets: {', '.join(str(i) for i in issue.context['offset_ids'])}")
    print()


def display_pending_reallocations(records: List[ReallocationRecord]) -> None:
    """Display reallocations awaiting review."""
    if not records:
        print("\n✅ No reallocations pending review.\n")
        return

    print("\n" + "=" * 80)
    print("REALLOCATIONS PENDING REVIEW")
    print("=" * 80)
    print(f"{'ID':<5} {'Donor':<7} {'Recipient':<10} {'Qty':>4} {'Program':<11} {'Effective':<12} {'Proposed By'}")
    print("-" * 80)

    for r in records:
        print(f"{r.reallocation_id:<5} {r.donor_id:<7} {r.recipient_id:<10} {r.quantity:>4} "
              f"{r.program:<11} {r.effective_date.isoformat():<12} {r.proposed_by}")

    print("=" * 80 + "\n")


def display_reallocation_details(record: ReallocationRecord) -> None:
    """Display one reallocation with its justification."""
    j = record.justification
    print("\n" + "=" * 80)
    print(f"REALLOCATION #{record.reallocation_id}: {record.donor_id} -> {record.recipient_id}")
    print("=" * 80)
    print(f"Status:           {record.status}")
    print(f"Program:          {record.program}")
    print(f"Quantity:         {record.quantity}")
    print(f"Effective Date:   {record.effective_date}")
    print(f"Justifying Sites: {', '.join(str(s) for s in j.included_site_ids) or 'N/A'}")
    if j.excluded_sites:
        print("Excluded Sites:")
        for site_id, reason in sorted(j.excluded_sites.items()):
            print(f"  #{site_id}: {reason}")
    if j.rationale:
        print(f"\nRationale:\n{j.rationale}")
    if record.reversal_reason:
        print(f"\nReversal Reason: {record.reversal_reason}")
    print("=" * 80 + "\n")


def display_plan(plan: ReallocationPlan, names: Dict[int, str]) -> None:
    print("\n" + "=" * 60)
    print(f"REALLOCATION PLAN ({plan.solver}) for {plan.program}")
    print("=" * 60)
    for t in plan.transfers:
        print(f"  {names.get(t.donor_id, t.donor_id):<20} -> {names.get(t.recipient_id, t.recipient_id):<20} {t.quantity:>3}")
    print("-" * 60)
    print(f"Transferred: {plan.total_transferred}  Uncovered shortfall: {plan.uncovered_shortfall}")
    print("=" * 60 + "\n")


def display_history(rows: List[Dict]) -> None:
    if not rows:
        print("\nNo compliance snapshots saved.\n")
        return
    print(f"\n{'As Of':<12} {'ID':<4} {'Program':<11} {'Pop':>10} {'Req':>5} {'Sites':>6} {'Status'}")
    print("-" * 70)
    for row in rows:
        print(f"{row['as_of']:<12} {row['municipality_id']:<4} {row['program']:<11} {row['population']:>10,} "
              f"{row['adjusted_requirement']:>5} {row['active_site_count']:>6} {row['status']}")
    print()


def interactive_review_session(engine: ComplianceEngine, reviewer: Optional[str] = None) -> None:
    """Run an interactive review session over pending proposals."""
    pending = engine.list_reallocations(status="proposed", program=engine.ctx.program)

    if not pending:
        print("\n✅ No reallocations pending review.\n")
        return

    display_pending_reallocations(pending)

    while pending:
        print("\nOptions:")
        print("  [number]  - Review reallocation details")
        print("  c [id]    - Commit reallocation")
        print("  r [id]    - Reverse (withdraw) proposal")
        print("  q         - Quit")

        choice = input("\nYour choice: ").strip().lower()

        if choice == 'q':
            break

        elif choice.startswith(('c ', 'r ')):
            try:
                rid = int(choice.split()[1])
            except (ValueError, IndexError):
                print("Invalid input. Use: c [id] or r [id]")
                continue

            if not any(r.reallocation_id == rid for r in pending):
                print(f"⚠️  Reallocation #{rid} not found in pending list.")
                continue

            by = reviewer or input("Your name/ID: ").strip() or "admin"
            try:
                if choice.startswith('c '):
                    record = engine.commit_reallocation(rid, actor=by)
                    print(f"\n✅ Reallocation #{rid} COMMITTED by {by}")
                else:
                    reason = input("Reason for reversal: ").strip() or "Withdrawn on review"
                    record = engine.reverse_reallocation(rid, reason=reason, actor=by)
                    print(f"\n❌ Reallocation #{rid} REVERSED by {by}")
                display_reallocation_details(record)
            except ComplianceError as e:
                print(f"\n⚠️  {e}")
                if e.context:
                    print(f"   Context: {e.context}")

            pending = engine.list_reallocations(status="proposed", program=engine.ctx.program)
            display_pending_reallocations(pending)

        elif choice.isdigit():
            rid = int(choice)
            record = next((r for r in pending if r.reallocation_id == rid), None)
            if record:
                display_reallocation_details(record)
            else:
                print(f"⚠️  Reallocation #{rid} not found.")

        else:
            print("Invalid choice.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Review reallocations and report site compliance")
    parser.add_argument("--db", default=DB_PATH, help="Database path")
    parser.add_argument("--program", default=DEFAULT_PROGRAM, choices=PROGRAMS, help="Stewardship program")
    parser.add_argument("--as-of", type=date.fromisoformat, help="Evaluation date (YYYY-MM-DD)")
    parser.add_argument("--list", action="store_true", help="List pending reallocations and exit")
    parser.add_argument("--show", type=int, metavar="ID", help="Show one reallocation")
    parser.add_argument("--commit", type=int, metavar="ID", help="Commit a proposed reallocation")
    parser.add_argument("--reverse", type=int, metavar="ID", help="Reverse a reallocation")
    parser.add_argument("--reason", help="Reason for reversal")
    parser.add_argument("--by", default="admin", help="Reviewer name")
    parser.add_argument("--report", action="store_true", help="Print the compliance report")
    parser.add_argument("--plan", action="store_true", help="Print suggested reallocations")
    parser.add_argument("--snapshot", action="store_true", help="Save a compliance snapshot")
    parser.add_argument("--history", action="store_true", help="Print saved compliance snapshots")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    args = build_parser().parse_args(argv)

    ctx = ComplianceContext(db_path=args.db, program=args.program)
    if args.as_of is not None:
        as_of = args.as_of
        ctx.clock = lambda: as_of
    engine = ComplianceEngine(ctx)

    try:
        if args.list:
            display_pending_reallocations(engine.list_reallocations(status="proposed", program=args.program))
        elif args.show is not None:
            display_reallocation_details(engine.ctx.get_reallocation(args.show))
        elif args.commit is not None:
            record = engine.commit_reallocation(args.commit, actor=args.by)
            print(f"\n✅ Reallocation #{record.reallocation_id} COMMITTED by {args.by}")
        elif args.reverse is not None:
            record = engine.reverse_reallocation(args.reverse, reason=args.reason, actor=args.by)
            print(f"\n❌ Reallocation #{record.reallocation_id} REVERSED by {args.by}")
            if args.reason:
                print(f"   Reason: {args.reason}")
        elif args.report:
            batch = engine.evaluate_batch()
            display_compliance_report(batch.results, engine.summarize(batch.results))
            display_conflicts(batch.conflicts)
        elif args.plan:
            names = {m.municipality_id: m.name for m in ctx.list_municipalities()}
            display_plan(engine.plan_reallocations(), names)
        elif args.snapshot:
            saved = engine.save_compliance_snapshot()
            print(f"\n✓ Saved {saved} compliance snapshot rows ({args.program}, {ctx.today()})")
        elif args.history:
            display_history(engine.get_compliance_history(program=args.program))
        else:
            interactive_review_session(engine)
    except ComplianceError as e:
        print(f"\n⚠️  {e}", file=sys.stderr)
        if e.context:
            print(f"   Context: {e.context}", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
