# -*- coding: utf-8 -*-
"""
ComplianceEngine: single entry point over the calculator, evaluator,
ledgers, reallocation engine and planner.

Exposes:
- compute_requirement / requirement_snapshot
- evaluate / evaluate_all / evaluate_batch / summarize
- apply_offset / supersede_offset / apply_event
- propose_reallocation / commit_reallocation / reverse_reallocation
- reallocation_candidates / plan_reallocations
- refresh_population / save_compliance_snapshot / get_compliance_history
"""

import logging
from datetime import date
from typing import Any, Dict, List, Optional, Sequence

from .compliance import ComplianceEvaluator, summarize
from .config import DB_PATH, DEFAULT_PROGRAM
from .context import ComplianceContext
from .errors import ValidationError
from .events import EventLedger
from .models import (
    ComplianceBatch,
    ComplianceResult,
    ComplianceSummary,
    EligibleExcess,
    EventRecord,
    Offset,
    ReallocationPlan,
    ReallocationRecord,
    RequirementSnapshot,
)
from .offsets import OffsetLedger
from .planner import CPSATReallocationPlanner, GreedyReallocationPlanner, select_planner
from .reallocation import ReallocationEngine
from .requirements import compute_requirement, requirement_snapshot, validate_program

logger = logging.getLogger(__name__)


class ComplianceEngine:
    """Facade wiring all components to one ComplianceContext."""

    def __init__(self, ctx: Optional[ComplianceContext] = None, db_path: str = DB_PATH):
        self.ctx = ctx or ComplianceContext(db_path=db_path)
        self.evaluator = ComplianceEvaluator(self.ctx)
        self.offsets = OffsetLedger(self.ctx)
        self.events = EventLedger(self.ctx)
        self.reallocations = ReallocationEngine(self.ctx, self.evaluator)

    # =========================================================================
    # Requirements
    # =========================================================================

    @staticmethod
    def compute_requirement(population: int, program: str = DEFAULT_PROGRAM) -> int:
        return compute_requirement(population, program)

    def requirement_snapshot(self, municipality_id: int, program: str = DEFAULT_PROGRAM) -> RequirementSnapshot:
        return requirement_snapshot(self.ctx.get_municipality(municipality_id), program)

    def refresh_population(
        self,
        municipality_id: int,
        population: int,
        census_year: Optional[int] = None,
        actor: str = "census",
    ) -> RequirementSnapshot:
        """Apply a census refresh. Saved compliance snapshots are not rewritten."""
        with self.ctx.locks.hold(municipality_id), self.ctx.transaction() as conn:
            before = self.ctx.get_municipality(municipality_id, conn)
            self.ctx.update_population(municipality_id, population, census_year, conn)
            self.ctx.log_audit(
                event_type="POPULATION_REFRESHED",
                actor=actor,
                payload={
                    "municipality_id": municipality_id,
                    "old_population": before.population,
                    "new_population": population,
                    "census_year": census_year,
                },
                conn=conn,
            )
        logger.info(
            "Population of %s refreshed: %s -> %s", before.name, before.population, population
        )
        return self.requirement_snapshot(municipality_id, self.ctx.program)

    # =========================================================================
    # Evaluation
    # =========================================================================

    def evaluate(
        self,
        municipality_id: int,
        as_of: Optional[date] = None,
        program: Optional[str] = None,
    ) -> ComplianceResult:
        return self.evaluator.evaluate(municipality_id, as_of, program)

    def evaluate_all(self, as_of: Optional[date] = None, program: Optional[str] = None) -> List[ComplianceResult]:
        return self.evaluator.evaluate_all(as_of, program)

    def evaluate_batch(self, as_of: Optional[date] = None, program: Optional[str] = None) -> ComplianceBatch:
        return self.evaluator.evaluate_batch(as_of, program)

    @staticmethod
    def summarize(results: Sequence[ComplianceResult]) -> ComplianceSummary:
        return summarize(results)

    def save_compliance_snapshot(
        self,
        as_of: Optional[date] = None,
        program: Optional[str] = None,
        actor: str = "reporting",
    ) -> int:
        """Persist evaluate_all results for history; returns rows written."""
        as_of = as_of or self.ctx.today()
        program = program or self.ctx.program

        with self.ctx.transaction() as conn:
            results = self.evaluator.evaluate_all(as_of, program, conn)
            populations = {m.municipality_id: m.population for m in self.ctx.list_municipalities(conn)}
            saved = self.ctx.insert_snapshots(results, populations, conn)
            self.ctx.log_audit(
                event_type="SNAPSHOT_SAVED",
                actor=actor,
                payload={"as_of": as_of.isoformat(), "program": program, "rows": saved},
                conn=conn,
            )
        logger.info("Saved %d compliance snapshot rows for %s as of %s", saved, program, as_of)
        return saved

    def get_compliance_history(
        self,
        municipality_id: Optional[int] = None,
        program: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        return self.ctx.get_snapshots(municipality_id, program)

    # =========================================================================
    # Ledgers
    # =========================================================================

    def apply_offset(self, municipality_id: int, percentage: float, **kwargs) -> Offset:
        return self.offsets.apply_offset(municipality_id, percentage, **kwargs)

    def supersede_offset(self, offset_id: int, percentage: float, **kwargs) -> Offset:
        return self.offsets.supersede_offset(offset_id, percentage, **kwargs)

    def list_offsets(self, municipality_id: Optional[int] = None, program: Optional[str] = None,
                     as_of: Optional[date] = None) -> List[Offset]:
        return self.offsets.list_offsets(municipality_id, program, as_of)

    def apply_event(self, municipality_id: int, credit: int, valid_from: date, valid_to: date,
                    **kwargs) -> EventRecord:
        return self.events.apply_event(municipality_id, credit, valid_from, valid_to, **kwargs)

    def list_events(self, municipality_id: Optional[int] = None, program: Optional[str] = None,
                    as_of: Optional[date] = None) -> List[EventRecord]:
        return self.events.list_events(municipality_id, program, as_of)

    # =========================================================================
    # Reallocation
    # =========================================================================

    def propose_reallocation(self, donor_id: int, recipient_id: int, quantity: int,
                             **kwargs) -> ReallocationRecord:
        return self.reallocations.propose(donor_id, recipient_id, quantity, **kwargs)

    def commit_reallocation(self, reallocation_id: int, actor: Optional[str] = None) -> ReallocationRecord:
        return self.reallocations.commit(reallocation_id, actor)

    def reverse_reallocation(self, reallocation_id: int, reason: Optional[str] = None,
                             actor: Optional[str] = None) -> ReallocationRecord:
        return self.reallocations.reverse(reallocation_id, reason, actor)

    def list_reallocations(self, status: Optional[str] = None, municipality_id: Optional[int] = None,
                           program: Optional[str] = None) -> List[ReallocationRecord]:
        return self.reallocations.list_reallocations(status, municipality_id, program)

    def reallocation_candidates(self, as_of: Optional[date] = None,
                                program: Optional[str] = None) -> List[EligibleExcess]:
        return self.reallocations.candidates(as_of, program or self.ctx.program)

    def plan_reallocations(
        self,
        as_of: Optional[date] = None,
        program: Optional[str] = None,
        solver: Optional[str] = None,
    ) -> ReallocationPlan:
        """
        Suggest transfers covering adjacent shortfalls. Writes nothing.

        Args:
            solver: "greedy" or "cpsat" to force a solver; default picks by size
        """
        program = program or self.ctx.program
        validate_program(program)
        candidates = self.reallocation_candidates(as_of, program)

        if solver == "greedy":
            planner = GreedyReallocationPlanner()
        elif solver == "cpsat":
            planner = CPSATReallocationPlanner()
        elif solver is not None:
            raise ValidationError(f"Unknown solver: {solver}", context={"solver": solver})
        else:
            planner, reason = select_planner(candidates)
            logger.debug("Planner selected: %s (%s)", planner.name, reason)

        return planner.plan(candidates, program)
