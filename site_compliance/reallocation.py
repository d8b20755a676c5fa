# -*- coding: utf-8 -*-
"""
Reallocation Engine (adjacent reallocation).

Moves units of required-site capacity from a donor with eligible excess to
an adjacent recipient. Two-phase:

    propose  ->  commit   (terminal, audit-retained)
             ->  reverse  (withdrawal of a proposal, or correction of a commit)

A proposal is not a reservation. Commit re-runs the evaluator under the
donor/recipient locks and fails with StaleStateError if the proposal no
longer holds. Committed quantities live in the reallocation ledger and are
read by the evaluator; the Requirement Calculator is never touched.
Donor headroom is the excess at the transfer date minus transfers already
committed for later dates, so differently dated transfers cannot overdraw
the same donor.

Eligibility:
- Municipal, First Nation/Indigenous and Regional District sites are fixed
  commitments and cannot justify a transfer
- Event sites are temporary and are credited through the Event Ledger only
"""

import logging
import sqlite3
from collections import defaultdict
from datetime import date
from typing import Dict, List, Optional, Sequence, Set, Tuple

from .compliance import ComplianceEvaluator, counted_sites, is_event_site
from .config import DEFAULT_PROGRAM, REALLOCATION_CONFIG
from .context import ComplianceContext
from .errors import (
    AdjacencyError,
    EligibilityError,
    StaleStateError,
    ValidationError,
)
from .models import (
    ComplianceResult,
    EligibleExcess,
    Justification,
    ReallocationRecord,
    Site,
)
from .requirements import validate_program

logger = logging.getLogger(__name__)


# =============================================================================
# Eligibility
# =============================================================================

def exclusion_reason(site: Site) -> Optional[str]:
    """Why a site cannot back a reallocation, or None if it is eligible."""
    if site.operator_type in REALLOCATION_CONFIG["excluded_operator_types"]:
        return f"operator type '{site.operator_type}' is a fixed commitment"
    if site.site_type in REALLOCATION_CONFIG["excluded_site_types"] or is_event_site(site):
        return "event sites are temporary"
    return None


def committed_site_ids(reallocations: Sequence[ReallocationRecord], donor_id: int) -> Set[int]:
    """Sites already backing a committed transfer out of the donor."""
    used: Set[int] = set()
    for r in reallocations:
        if r.status == "committed" and r.donor_id == donor_id:
            used.update(r.justification.included_site_ids)
    return used


def partition_sites(
    sites: Sequence[Site],
    as_of: date,
    program: str,
    used: Set[int],
) -> Tuple[List[Site], Dict[int, str]]:
    """Split a donor's counted sites into unused eligible sites and exclusions."""
    eligible: List[Site] = []
    excluded: Dict[int, str] = {}
    for site in counted_sites(sites, as_of, program):
        reason = exclusion_reason(site)
        if reason:
            excluded[site.site_id] = reason
        elif site.site_id in used:
            excluded[site.site_id] = "already backs a committed reallocation"
        else:
            eligible.append(site)
    return eligible, excluded


def committed_later(reallocations: Sequence[ReallocationRecord], municipality_id: int, as_of: date) -> int:
    """
    Committed quantity raising a municipality's requirement only after as_of.

    An evaluation at as_of does not see these yet, but the excess they use
    is already spoken for.
    """
    return sum(
        r.quantity for r in reallocations
        if r.status == "committed"
        and r.effective_date > as_of
        and municipality_id in (r.donor_id, r.recipient_id)
    )


def donor_headroom(result: ComplianceResult, reallocations: Sequence[ReallocationRecord]) -> int:
    """Excess at the evaluation date minus transfers already committed for later dates."""
    later = committed_later(reallocations, result.municipality_id, result.evaluated_as_of)
    return max(0, result.excess - later)


def available_excess(headroom: int, eligible: Sequence[Site]) -> int:
    """Headroom that is attributable to eligible, unused sites."""
    return min(headroom, len(eligible))


class ReallocationEngine:
    """
    Two-phase reallocation state machine.

    Algorithm (propose):
    1. Validate quantity, municipalities, adjacency
    2. quantity <= donor headroom (excess at the effective date less later commitments)
    3. quantity <= excess attributable to eligible sites
    4. quantity <= recipient requirement (keeps it non-negative)
    5. Record the proposal with its site justification
    """

    def __init__(self, ctx: ComplianceContext, evaluator: Optional[ComplianceEvaluator] = None):
        self.ctx = ctx
        self.evaluator = evaluator or ComplianceEvaluator(ctx)
        self.actor = REALLOCATION_CONFIG["default_actor"]

    # =========================================================================
    # Shared checks
    # =========================================================================

    def _donor_state(
        self,
        donor_id: int,
        as_of: date,
        program: str,
        conn: sqlite3.Connection,
    ) -> Tuple[ComplianceResult, int, List[Site], Dict[int, str]]:
        """(evaluation at as_of, headroom, eligible unused sites, exclusions)."""
        result = self.evaluator.evaluate(donor_id, as_of, program, conn)
        sites = self.ctx.list_sites(donor_id, conn)
        committed = self.ctx.list_reallocation_records(
            status="committed", municipality_id=donor_id, program=program, conn=conn
        )
        eligible, excluded = partition_sites(sites, as_of, program, committed_site_ids(committed, donor_id))
        return result, donor_headroom(result, committed), eligible, excluded

    def _check_adjacent(self, donor_id: int, recipient_id: int, conn: sqlite3.Connection) -> bool:
        return recipient_id in self.ctx.adjacency(donor_id, conn)

    # =========================================================================
    # Propose
    # =========================================================================

    def propose(
        self,
        donor_id: int,
        recipient_id: int,
        quantity: int,
        program: str = DEFAULT_PROGRAM,
        site_ids: Optional[List[int]] = None,
        effective_date: Optional[date] = None,
        rationale: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> ReallocationRecord:
        """
        Propose moving `quantity` units of requirement from donor to recipient.

        Raises:
            ValidationError: bad quantity, same municipality, quantity above
                donor excess or recipient requirement
            NotFoundError: unknown municipality or site
            AdjacencyError: recipient not adjacent to donor
            EligibilityError: excess is attributable only to ineligible sites
        """
        actor = actor or self.actor
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError(
                "Reallocation quantity must be a positive integer",
                context={"donor_id": donor_id, "recipient_id": recipient_id, "quantity": quantity},
            )
        validate_program(program)

        with self.ctx.locks.hold(donor_id, recipient_id), self.ctx.transaction() as conn:
            donor = self.ctx.get_municipality(donor_id, conn)
            recipient = self.ctx.get_municipality(recipient_id, conn)
            if donor_id == recipient_id:
                raise ValidationError(
                    "Donor and recipient must be different municipalities",
                    context={"donor_id": donor_id, "recipient_id": recipient_id},
                )

            if not self._check_adjacent(donor_id, recipient_id, conn):
                raise AdjacencyError(
                    f"{recipient.name} is not adjacent to {donor.name}",
                    context={
                        "donor_id": donor_id,
                        "recipient_id": recipient_id,
                        "donor_adjacency": self.ctx.adjacency(donor_id, conn),
                    },
                )

            as_of = effective_date or self.ctx.today()
            donor_result, headroom, eligible, excluded = self._donor_state(donor_id, as_of, program, conn)
            if quantity > headroom:
                raise ValidationError(
                    f"Quantity {quantity} exceeds {donor.name}'s excess of {headroom}",
                    context={
                        "donor_id": donor_id,
                        "quantity": quantity,
                        "donor_excess": headroom,
                        "committed_later": donor_result.excess - headroom,
                    },
                )

            if site_ids:
                chosen = self._validate_named_sites(donor_id, site_ids, quantity, eligible, excluded, conn)
            else:
                available = available_excess(headroom, eligible)
                if quantity > available:
                    raise EligibilityError(
                        f"Only {available} of {donor.name}'s excess is attributable to eligible sites",
                        context={
                            "donor_id": donor_id,
                            "quantity": quantity,
                            "donor_excess": headroom,
                            "available_excess": available,
                            "excluded_sites": excluded,
                        },
                    )
                chosen = [s.site_id for s in eligible[:quantity]]

            recipient_result = self.evaluator.evaluate(recipient_id, as_of, program, conn)
            if quantity > recipient_result.adjusted_requirement:
                raise ValidationError(
                    f"Quantity {quantity} exceeds {recipient.name}'s requirement of "
                    f"{recipient_result.adjusted_requirement}",
                    context={
                        "recipient_id": recipient_id,
                        "quantity": quantity,
                        "recipient_requirement": recipient_result.adjusted_requirement,
                        "recipient_shortfall": recipient_result.shortfall,
                    },
                )

            record = ReallocationRecord(
                donor_id=donor_id,
                recipient_id=recipient_id,
                program=program,
                quantity=quantity,
                effective_date=as_of,
                justification=Justification(
                    included_site_ids=chosen,
                    excluded_sites=excluded,
                    rationale=rationale,
                    auto_selected=not site_ids,
                ),
                proposed_by=actor,
            )
            record.reallocation_id = self.ctx.insert_reallocation(record, conn)

            self.ctx.log_audit(
                event_type="REALLOCATION_PROPOSED",
                actor=actor,
                payload={
                    "reallocation_id": record.reallocation_id,
                    "donor_id": donor_id,
                    "recipient_id": recipient_id,
                    "program": program,
                    "quantity": quantity,
                    "site_ids": chosen,
                    "donor_excess": headroom,
                    "recipient_shortfall": recipient_result.shortfall,
                },
                conn=conn,
            )

        logger.info(
            "Reallocation #%s proposed: %s -> %s, %s site(s) of %s",
            record.reallocation_id, donor.name, recipient.name, quantity, program,
        )
        return record

    def _validate_named_sites(
        self,
        donor_id: int,
        site_ids: List[int],
        quantity: int,
        eligible: List[Site],
        excluded: Dict[int, str],
        conn: sqlite3.Connection,
    ) -> List[int]:
        unique_ids = sorted(set(site_ids))
        if len(unique_ids) != quantity:
            raise ValidationError(
                "Number of justifying sites must equal the quantity",
                context={"donor_id": donor_id, "quantity": quantity, "site_ids": unique_ids},
            )

        eligible_ids = {s.site_id for s in eligible}
        for site_id in unique_ids:
            site = self.ctx.get_site(site_id, conn)
            if site.municipality_id != donor_id:
                raise EligibilityError(
                    f"Site #{site_id} does not belong to the donor",
                    context={"donor_id": donor_id, "site_id": site_id, "site_municipality_id": site.municipality_id},
                )
            if site_id not in eligible_ids:
                raise EligibilityError(
                    f"Site #{site_id} cannot back a reallocation: "
                    f"{excluded.get(site_id, 'site is not active for this program')}",
                    context={
                        "donor_id": donor_id,
                        "site_id": site_id,
                        "operator_type": site.operator_type,
                        "site_type": site.site_type,
                    },
                )
        return unique_ids

    # =========================================================================
    # Commit
    # =========================================================================

    def commit(self, reallocation_id: int, actor: Optional[str] = None) -> ReallocationRecord:
        """
        Commit a proposal after re-validating it against current state.

        Raises:
            NotFoundError: unknown reallocation id
            ValidationError: record is not in 'proposed' state
            StaleStateError: the proposal no longer holds; re-propose
        """
        actor = actor or self.actor
        record = self.ctx.get_reallocation(reallocation_id)

        with self.ctx.locks.hold(record.donor_id, record.recipient_id), self.ctx.transaction() as conn:
            record = self.ctx.get_reallocation(reallocation_id, conn)
            if record.status != "proposed":
                raise ValidationError(
                    f"Reallocation #{reallocation_id} is {record.status}, not proposed",
                    context={"reallocation_id": reallocation_id, "status": record.status},
                )

            context = {
                "reallocation_id": reallocation_id,
                "donor_id": record.donor_id,
                "recipient_id": record.recipient_id,
                "quantity": record.quantity,
            }

            if not self._check_adjacent(record.donor_id, record.recipient_id, conn):
                raise StaleStateError(
                    "Donor and recipient are no longer adjacent", context=context
                )

            donor_result, headroom, eligible, excluded = self._donor_state(
                record.donor_id, record.effective_date, record.program, conn
            )
            if record.quantity > headroom:
                raise StaleStateError(
                    f"Donor excess shrank to {headroom}; re-propose",
                    context={
                        **context,
                        "donor_excess": headroom,
                        "committed_later": donor_result.excess - headroom,
                    },
                )

            eligible_ids = [s.site_id for s in eligible]
            justification = record.justification
            if justification.auto_selected:
                if len(eligible_ids) < record.quantity:
                    raise StaleStateError(
                        f"Only {len(eligible_ids)} eligible site(s) remain to back the transfer",
                        context={**context, "available_excess": available_excess(headroom, eligible)},
                    )
                justification = justification.model_copy(update={
                    "included_site_ids": eligible_ids[:record.quantity],
                    "excluded_sites": excluded,
                })
            else:
                stale = [sid for sid in justification.included_site_ids if sid not in set(eligible_ids)]
                if stale:
                    raise StaleStateError(
                        "Justifying sites are no longer eligible or already used",
                        context={**context, "stale_site_ids": stale},
                    )

            recipient_result = self.evaluator.evaluate(
                record.recipient_id, record.effective_date, record.program, conn
            )
            if record.quantity > recipient_result.adjusted_requirement:
                raise StaleStateError(
                    f"Recipient requirement fell to {recipient_result.adjusted_requirement}",
                    context={**context, "recipient_requirement": recipient_result.adjusted_requirement},
                )

            if not self.ctx.mark_reallocation_committed(reallocation_id, actor, justification, conn):
                raise StaleStateError(
                    f"Reallocation #{reallocation_id} changed concurrently", context=context
                )

            self.ctx.log_audit(
                event_type="REALLOCATION_COMMITTED",
                actor=actor,
                payload={
                    **context,
                    "site_ids": justification.included_site_ids,
                    "donor_excess_before": headroom,
                    "recipient_shortfall_before": recipient_result.shortfall,
                },
                conn=conn,
            )
            committed = self.ctx.get_reallocation(reallocation_id, conn)

        logger.info("Reallocation #%s committed by %s", reallocation_id, actor)
        return committed

    # =========================================================================
    # Reverse
    # =========================================================================

    def reverse(
        self,
        reallocation_id: int,
        reason: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> ReallocationRecord:
        """
        Reverse a proposal or a committed transfer. The record is kept.

        Reversing a committed transfer re-credits the donor's excess and the
        recipient's shortfall.
        """
        actor = actor or self.actor
        record = self.ctx.get_reallocation(reallocation_id)

        with self.ctx.locks.hold(record.donor_id, record.recipient_id), self.ctx.transaction() as conn:
            record = self.ctx.get_reallocation(reallocation_id, conn)
            if record.status == "reversed":
                raise ValidationError(
                    f"Reallocation #{reallocation_id} is already reversed",
                    context={"reallocation_id": reallocation_id, "status": record.status},
                )

            if not self.ctx.mark_reallocation_reversed(reallocation_id, record.status, actor, reason, conn):
                raise StaleStateError(
                    f"Reallocation #{reallocation_id} changed concurrently",
                    context={"reallocation_id": reallocation_id},
                )

            self.ctx.log_audit(
                event_type="REALLOCATION_REVERSED",
                actor=actor,
                payload={
                    "reallocation_id": reallocation_id,
                    "previous_status": record.status,
                    "donor_id": record.donor_id,
                    "recipient_id": record.recipient_id,
                    "quantity": record.quantity,
                    "reason": reason,
                },
                conn=conn,
            )
            reversed_record = self.ctx.get_reallocation(reallocation_id, conn)

        logger.info("Reallocation #%s reversed (was %s)", reallocation_id, record.status)
        return reversed_record

    # =========================================================================
    # Read side
    # =========================================================================

    def list_reallocations(
        self,
        status: Optional[str] = None,
        municipality_id: Optional[int] = None,
        program: Optional[str] = None,
    ) -> List[ReallocationRecord]:
        return self.ctx.list_reallocation_records(status, municipality_id, program)

    def candidates(
        self,
        as_of: Optional[date] = None,
        program: str = DEFAULT_PROGRAM,
    ) -> List[EligibleExcess]:
        """Donors with eligible excess and their adjacent municipalities in shortfall."""
        as_of = as_of or self.ctx.today()

        with self.ctx.connection() as conn:
            results = {r.municipality_id: r for r in self.evaluator.evaluate_all(as_of, program, conn)}
            graph = self.ctx.adjacency_map(conn)
            sites = self.ctx.list_sites(conn=conn)
            committed = self.ctx.list_reallocation_records(status="committed", program=program, conn=conn)

        sites_by: Dict[int, List[Site]] = defaultdict(list)
        for s in sites:
            sites_by[s.municipality_id].append(s)

        candidates = []
        for municipality_id, result in results.items():
            headroom = donor_headroom(result, committed)
            if headroom <= 0:
                continue
            eligible, _ = partition_sites(
                sites_by[municipality_id], as_of, program, committed_site_ids(committed, municipality_id)
            )
            available = available_excess(headroom, eligible)
            if available <= 0:
                continue
            candidates.append(EligibleExcess(
                municipality_id=municipality_id,
                name=result.municipality_name,
                excess=result.excess,
                available_excess=available,
                eligible_site_ids=[s.site_id for s in eligible],
                adjacent_shortfalls={
                    n: results[n].shortfall
                    for n in graph.get(municipality_id, [])
                    if n in results and results[n].shortfall > 0
                },
            ))
        return candidates
