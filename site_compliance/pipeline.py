# -*- coding: utf-8 -*-
"""
Pipeline orchestration for the Site Compliance Engine.

Coordinates one compliance cycle:
1. Baseline: evaluate every municipality after offsets and events
2. Analyst Agent: propose reallocations for adjacent shortfalls
3. Report: re-evaluate and list proposals awaiting human commit
"""

import asyncio
from datetime import date
from typing import Optional
from agents import Runner

from .analyst_agent import analyst_agent
from .config import DB_PATH, DEFAULT_PROGRAM
from .context import ComplianceContext
from .database import init_with_sample_data
from .engine import ComplianceEngine
from .review_cli import display_compliance_report, display_conflicts, display_pending_reallocations

# Max turns for the analyst (one propose call per transfer)
MAX_AGENT_TURNS = 40


def run_baseline_phase(engine: ComplianceEngine) -> list:
    """Evaluate and print the baseline compliance report."""
    print("\n" + "=" * 60)
    print("PHASE 1: BASELINE EVALUATION")
    print("=" * 60)

    batch = engine.evaluate_batch()
    display_compliance_report(batch.results, engine.summarize(batch.results))
    display_conflicts(batch.conflicts)
    return batch.results


async def run_analyst_phase(ctx: ComplianceContext) -> str:
    """Run the Analyst Agent to propose reallocations."""
    print("\n" + "=" * 60)
    print("PHASE 2: ANALYST AGENT")
    print("=" * 60)

    result = await Runner.run(
        analyst_agent,
        context=ctx,
        input="Review the compliance report and reallocation candidates. "
              "Run the planner, then propose each reallocation you recommend with a rationale. "
              "Finish with a summary of what is awaiting human review.",
        max_turns=MAX_AGENT_TURNS,
    )

    return result.final_output


def run_report_phase(engine: ComplianceEngine) -> list:
    """Print proposals awaiting review and the (unchanged) committed picture."""
    print("\n" + "=" * 60)
    print("PHASE 3: POST-ADJUSTMENT REPORT")
    print("=" * 60)

    display_pending_reallocations(engine.list_reallocations(status="proposed", program=engine.ctx.program))
    batch = engine.evaluate_batch()
    display_compliance_report(batch.results, engine.summarize(batch.results))
    display_conflicts(batch.conflicts)
    return batch.results


async def run_full_pipeline(
    db_path: str = DB_PATH,
    seed_data: bool = False,
    program: str = DEFAULT_PROGRAM,
    as_of: Optional[date] = None,
) -> dict:
    """
    Run the complete compliance cycle.

    Args:
        db_path: Path to database
        seed_data: If True, initialize database with sample data
        program: Stewardship program to evaluate
        as_of: Evaluation date (default today)

    Returns:
        Dict with results from each phase
    """
    if seed_data:
        print("Initializing database with sample data...")
        init_with_sample_data(db_path)

    ctx = ComplianceContext(db_path=db_path, program=program)
    if as_of is not None:
        ctx.clock = lambda: as_of
    engine = ComplianceEngine(ctx)

    print(f"\n{'#' * 60}")
    print("# SITE COMPLIANCE PIPELINE")
    print(f"# Jurisdiction: {ctx.jurisdiction_name}")
    print(f"# Program: {ctx.program}")
    print(f"# As Of: {ctx.today().isoformat()}")
    print(f"{'#' * 60}")

    results = {}

    results["baseline"] = run_baseline_phase(engine)

    results["analyst"] = await run_analyst_phase(ctx)
    print("\nAnalyst Agent Output:")
    print("-" * 40)
    print(results["analyst"])

    results["report"] = run_report_phase(engine)

    print(f"\n{'#' * 60}")
    print("# PIPELINE COMPLETE")
    print("# Commit or reverse proposals with: python -m site_compliance.review_cli")
    print(f"{'#' * 60}")

    return results


def run_pipeline_sync(
    db_path: str = DB_PATH,
    seed_data: bool = False,
    program: str = DEFAULT_PROGRAM,
    as_of: Optional[date] = None,
) -> dict:
    """Synchronous wrapper for run_full_pipeline."""
    return asyncio.run(run_full_pipeline(db_path, seed_data, program, as_of))
