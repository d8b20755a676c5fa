# -*- coding: utf-8 -*-
"""
Reallocation Planner

Suggests donor -> recipient transfers that cover adjacent shortfalls with
eligible excess. Planning is advisory: it writes nothing, and every
suggested transfer still goes through propose/commit in the engine.

Planner Selection:
- <= greedy_threshold_pairs donor/recipient pairs AND
  <= greedy_threshold_recipients recipients -> Greedy
- Otherwise -> CP-SAT (maximize covered shortfall, then fewer transfers)
"""

import logging
from typing import Dict, List, Tuple

from .config import PLANNER_CONFIG
from .models import EligibleExcess, PlannedTransfer, ReallocationPlan

logger = logging.getLogger(__name__)


def _pairs(candidates: List[EligibleExcess]) -> List[Tuple[int, int]]:
    return sorted(
        (c.municipality_id, recipient_id)
        for c in candidates
        for recipient_id in c.adjacent_shortfalls
    )


def _shortfalls(candidates: List[EligibleExcess]) -> Dict[int, int]:
    shortfalls: Dict[int, int] = {}
    for c in candidates:
        shortfalls.update(c.adjacent_shortfalls)
    return shortfalls


def _build_plan(
    program: str,
    solver: str,
    transfers: List[PlannedTransfer],
    shortfalls: Dict[int, int],
) -> ReallocationPlan:
    covered: Dict[int, int] = {}
    for t in transfers:
        covered[t.recipient_id] = covered.get(t.recipient_id, 0) + t.quantity
    uncovered = sum(max(0, s - covered.get(r, 0)) for r, s in shortfalls.items())
    return ReallocationPlan(
        program=program,
        solver=solver,
        transfers=transfers,
        total_transferred=sum(t.quantity for t in transfers),
        uncovered_shortfall=uncovered,
    )


# =============================================================================
# Planner Implementations
# =============================================================================

class GreedyReallocationPlanner:
    """
    Greedy planner.

    Algorithm:
    1. Sort recipients by shortfall (largest first)
    2. For each recipient, draw from adjacent donors with the most
       remaining available excess
    3. Stop when the shortfall is covered or donors are exhausted
    """

    name = "greedy"

    def plan(self, candidates: List[EligibleExcess], program: str) -> ReallocationPlan:
        remaining = {c.municipality_id: c.available_excess for c in candidates}
        shortfalls = _shortfalls(candidates)

        donors_for: Dict[int, List[int]] = {}
        for donor_id, recipient_id in _pairs(candidates):
            donors_for.setdefault(recipient_id, []).append(donor_id)

        transfers: List[PlannedTransfer] = []
        for recipient_id in sorted(shortfalls, key=lambda r: (-shortfalls[r], r)):
            need = shortfalls[recipient_id]
            donors = sorted(donors_for.get(recipient_id, []), key=lambda d: (-remaining[d], d))
            for donor_id in donors:
                if need <= 0:
                    break
                quantity = min(need, remaining[donor_id])
                if quantity <= 0:
                    continue
                transfers.append(PlannedTransfer(
                    donor_id=donor_id, recipient_id=recipient_id, quantity=quantity
                ))
                remaining[donor_id] -= quantity
                need -= quantity

        return _build_plan(program, self.name, transfers, shortfalls)


class CPSATReallocationPlanner:
    """
    CP-SAT planner for larger adjacency graphs.

    Formulation:
    - Decision variables: x[d, r] units moved from donor d to recipient r,
      used[d, r] whether the pair carries a transfer
    - Constraints:
      * sum_r x[d, r] <= available excess of d
      * sum_d x[d, r] <= shortfall of r
      * x[d, r] <= min(excess, shortfall) * used[d, r]
    - Objective: maximize covered shortfall, then minimize transfers used
    """

    name = "cpsat"

    def plan(self, candidates: List[EligibleExcess], program: str) -> ReallocationPlan:
        from ortools.sat.python import cp_model

        shortfalls = _shortfalls(candidates)
        pairs = _pairs(candidates)
        if not pairs:
            return _build_plan(program, self.name, [], shortfalls)

        capacity = {c.municipality_id: c.available_excess for c in candidates}
        model = cp_model.CpModel()

        x = {}
        used = {}
        for d, r in pairs:
            bound = min(capacity[d], shortfalls[r])
            x[d, r] = model.NewIntVar(0, bound, f"x_{d}_{r}")
            used[d, r] = model.NewBoolVar(f"used_{d}_{r}")
            model.Add(x[d, r] <= bound * used[d, r])

        for d in capacity:
            outgoing = [x[p] for p in pairs if p[0] == d]
            if outgoing:
                model.Add(sum(outgoing) <= capacity[d])

        for r, shortfall in shortfalls.items():
            incoming = [x[p] for p in pairs if p[1] == r]
            if incoming:
                model.Add(sum(incoming) <= shortfall)

        # Coverage dominates; the penalty only breaks ties between equal coverage
        weight = 1000
        penalty = PLANNER_CONFIG["transfer_penalty"]
        model.Maximize(weight * sum(x.values()) - penalty * sum(used.values()))

        solver = cp_model.CpSolver()
        solver.parameters.max_time_in_seconds = PLANNER_CONFIG.get("cpsat_timeout_seconds", 30)
        status = solver.Solve(model)

        transfers: List[PlannedTransfer] = []
        if status in (cp_model.OPTIMAL, cp_model.FEASIBLE):
            for d, r in pairs:
                quantity = solver.Value(x[d, r])
                if quantity > 0:
                    transfers.append(PlannedTransfer(donor_id=d, recipient_id=r, quantity=quantity))
        else:
            logger.warning("CP-SAT found no feasible reallocation plan (status %s)", status)

        return _build_plan(program, self.name, transfers, shortfalls)


def select_planner(candidates: List[EligibleExcess]):
    """Pick the planner for the problem size; returns (planner, reason)."""
    n_pairs = len(_pairs(candidates))
    n_recipients = len(_shortfalls(candidates))

    if n_pairs <= PLANNER_CONFIG["greedy_threshold_pairs"] and \
       n_recipients <= PLANNER_CONFIG["greedy_threshold_recipients"]:
        return GreedyReallocationPlanner(), f"Simple problem: {n_pairs} pairs, {n_recipients} recipients"
    return CPSATReallocationPlanner(), f"High complexity: {n_pairs} pairs, {n_recipients} recipients"
