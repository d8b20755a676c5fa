"""Tests for the Reallocation Engine."""

import threading
from datetime import date, timedelta

import pytest

from site_compliance.context import ComplianceContext
from site_compliance.engine import ComplianceEngine
from site_compliance.errors import (
    AdjacencyError,
    EligibilityError,
    NotFoundError,
    StaleStateError,
    ValidationError,
)
from site_compliance.reallocation import exclusion_reason

from .conftest import ALPHA, BETA, DELTA, EPSILON, GAMMA, TODAY, site_row

ZETA = 6


def assert_ledger_empty(engine, ctx):
    assert engine.list_reallocations() == []
    assert ctx.get_audit_log("REALLOCATION_PROPOSED") == []


class TestExclusionReason:

    @pytest.mark.parametrize("operator_type", ["Municipal", "First Nation/Indigenous", "Regional District"])
    def test_operator_run_sites_excluded(self, ctx, operator_type, add_sites):
        add_sites(site_row(501, ALPHA, operator_type=operator_type))
        assert "fixed commitment" in exclusion_reason(ctx.get_site(501))

    def test_event_sites_excluded(self, ctx, add_sites):
        add_sites(site_row(501, ALPHA, site_type="Event"), site_row(502, ALPHA, operator_type="Event"))
        assert exclusion_reason(ctx.get_site(501)) == "event sites are temporary"
        assert exclusion_reason(ctx.get_site(502)) == "event sites are temporary"

    @pytest.mark.parametrize("operator_type", ["Private", "Return-to-Retail", "Other"])
    def test_eligible(self, ctx, operator_type, add_sites):
        add_sites(site_row(501, ALPHA, operator_type=operator_type))
        assert exclusion_reason(ctx.get_site(501)) is None


class TestPropose:

    def test_propose_records_without_changing_compliance(self, engine):
        record = engine.propose_reallocation(ALPHA, BETA, 2, rationale="Alpha has surplus depots")

        assert record.reallocation_id is not None
        assert record.status == "proposed"
        assert record.effective_date == TODAY
        assert record.justification.included_site_ids == [101, 102]
        assert record.justification.rationale == "Alpha has surplus depots"
        # A proposal is not a reservation
        assert engine.evaluate(BETA).shortfall == 2
        assert engine.evaluate(ALPHA).excess == 3

    @pytest.mark.parametrize("quantity", [0, -1, 1.5, True])
    def test_non_positive_quantity(self, engine, ctx, quantity):
        with pytest.raises(ValidationError) as exc_info:
            engine.propose_reallocation(ALPHA, BETA, quantity)
        assert exc_info.value.context["quantity"] == quantity
        assert_ledger_empty(engine, ctx)

    def test_unknown_municipality(self, engine, ctx):
        with pytest.raises(NotFoundError):
            engine.propose_reallocation(ALPHA, 999, 1)
        with pytest.raises(NotFoundError):
            engine.propose_reallocation(999, ALPHA, 1)
        assert_ledger_empty(engine, ctx)

    def test_same_municipality(self, engine):
        with pytest.raises(ValidationError):
            engine.propose_reallocation(ALPHA, ALPHA, 1)

    def test_non_adjacent_rejected(self, engine, ctx):
        with pytest.raises(AdjacencyError) as exc_info:
            engine.propose_reallocation(ALPHA, DELTA, 1)

        assert exc_info.value.context["donor_id"] == ALPHA
        assert exc_info.value.context["recipient_id"] == DELTA
        assert DELTA not in exc_info.value.context["donor_adjacency"]
        assert_ledger_empty(engine, ctx)

    def test_non_adjacent_rejected_even_if_otherwise_invalid(self, engine):
        # Delta's excess is all Municipal, but adjacency is checked first
        with pytest.raises(AdjacencyError):
            engine.propose_reallocation(DELTA, GAMMA, 1)

    def test_adjacency_is_symmetric(self, engine, add_sites):
        add_sites(*[site_row(201 + i, BETA) for i in range(4)])
        # Beta now has excess 2 and Alpha is its neighbour
        record = engine.propose_reallocation(BETA, ALPHA, 1)
        assert record.donor_id == BETA

    def test_quantity_above_excess(self, engine, ctx):
        with pytest.raises(ValidationError) as exc_info:
            engine.propose_reallocation(ALPHA, GAMMA, 4)

        assert exc_info.value.context["donor_excess"] == 3
        assert_ledger_empty(engine, ctx)

    def test_donor_in_shortfall(self, engine):
        with pytest.raises(ValidationError) as exc_info:
            engine.propose_reallocation(BETA, ALPHA, 1)
        assert exc_info.value.context["donor_excess"] == 0

    def test_quantity_above_recipient_requirement(self, engine):
        # Beta requires only 2 sites
        with pytest.raises(ValidationError) as exc_info:
            engine.propose_reallocation(ALPHA, BETA, 3)
        assert exc_info.value.context["recipient_requirement"] == 2


class TestEligibility:

    def test_all_municipal_excess_rejected(self, engine, ctx, add_municipality, add_sites):
        # Requirement 1, six Municipal sites: excess 5, none eligible
        add_municipality(ZETA, "Zeta", 15_000, neighbours=[BETA])
        add_sites(*[site_row(601 + i, ZETA, operator_type="Municipal") for i in range(6)])
        assert engine.evaluate(ZETA).excess == 5

        with pytest.raises(EligibilityError) as exc_info:
            engine.propose_reallocation(ZETA, BETA, 1)

        assert exc_info.value.context["available_excess"] == 0
        assert set(exc_info.value.context["excluded_sites"]) == set(range(601, 607))
        assert_ledger_empty(engine, ctx)

    def test_available_excess_limited_by_eligible_sites(self, engine, add_municipality, add_sites):
        # Excess 3, only one eligible site behind it
        add_municipality(ZETA, "Zeta", 15_000, neighbours=[BETA])
        add_sites(
            *[site_row(601 + i, ZETA, operator_type="Municipal") for i in range(3)],
            site_row(604, ZETA, operator_type="Private"),
        )

        with pytest.raises(EligibilityError) as exc_info:
            engine.propose_reallocation(ZETA, BETA, 2)
        assert exc_info.value.context["available_excess"] == 1

        record = engine.propose_reallocation(ZETA, BETA, 1)
        assert record.justification.included_site_ids == [604]
        assert set(record.justification.excluded_sites) == {601, 602, 603}

    def test_justification_never_includes_excluded_sites(self, engine, add_sites):
        add_sites(
            site_row(107, ALPHA, operator_type="Municipal"),
            site_row(108, ALPHA, operator_type="Regional District"),
        )
        record = engine.propose_reallocation(ALPHA, GAMMA, 3)

        assert not set(record.justification.included_site_ids) & {107, 108}
        assert "fixed commitment" in record.justification.excluded_sites[107]

    def test_named_sites(self, engine):
        record = engine.propose_reallocation(ALPHA, BETA, 2, site_ids=[104, 103])
        assert record.justification.included_site_ids == [103, 104]
        assert record.justification.auto_selected is False

    def test_named_ineligible_site(self, engine, add_sites):
        add_sites(site_row(107, ALPHA, operator_type="Municipal"))
        with pytest.raises(EligibilityError) as exc_info:
            engine.propose_reallocation(ALPHA, BETA, 1, site_ids=[107])
        assert exc_info.value.context["operator_type"] == "Municipal"

    def test_named_site_of_other_municipality(self, engine):
        with pytest.raises(EligibilityError):
            engine.propose_reallocation(ALPHA, BETA, 1, site_ids=[401])

    def test_named_inactive_site(self, engine, add_sites):
        add_sites(site_row(107, ALPHA, deactivated=date(2025, 1, 1)))
        with pytest.raises(EligibilityError):
            engine.propose_reallocation(ALPHA, BETA, 1, site_ids=[107])

    def test_named_unknown_site(self, engine):
        with pytest.raises(NotFoundError):
            engine.propose_reallocation(ALPHA, BETA, 1, site_ids=[9999])

    def test_named_site_count_must_match(self, engine):
        with pytest.raises(ValidationError):
            engine.propose_reallocation(ALPHA, BETA, 2, site_ids=[101])


class TestCommit:

    def test_commit_moves_requirement(self, engine):
        record = engine.propose_reallocation(ALPHA, BETA, 2)
        committed = engine.commit_reallocation(record.reallocation_id, actor="reviewer")

        assert committed.status == "committed"
        assert committed.committed_by == "reviewer"
        assert committed.committed_at is not None

        beta = engine.evaluate(BETA)
        alpha = engine.evaluate(ALPHA)
        assert (beta.incoming, beta.adjusted_requirement, beta.status) == (2, 0, "compliant")
        assert (alpha.outgoing, alpha.adjusted_requirement, alpha.excess) == (2, 5, 1)

    def test_conservation(self, engine, add_sites):
        # Gamma: requirement 4, three active sites -> shortfall 1
        add_sites(site_row(302, GAMMA), site_row(303, GAMMA))
        donor_before = engine.evaluate(ALPHA).excess
        recipient_before = engine.evaluate(GAMMA).shortfall

        record = engine.propose_reallocation(ALPHA, GAMMA, 3)
        engine.commit_reallocation(record.reallocation_id)

        donor_after = engine.evaluate(ALPHA)
        recipient_after = engine.evaluate(GAMMA)
        assert donor_before - donor_after.excess == 3
        assert recipient_before - recipient_after.shortfall == 1
        # The remainder beyond the shortfall surfaces as recipient excess
        assert recipient_after.excess == 2

    def test_candidates_shrink_after_commit(self, engine):
        record = engine.propose_reallocation(ALPHA, BETA, 2)
        engine.commit_reallocation(record.reallocation_id)

        candidates = {c.municipality_id: c for c in engine.reallocation_candidates()}
        assert candidates[ALPHA].available_excess == 1
        assert set(candidates[ALPHA].eligible_site_ids) == {103, 104, 105, 106}
        assert candidates[ALPHA].adjacent_shortfalls == {GAMMA: 3}

    def test_stale_when_excess_consumed(self, engine):
        first = engine.propose_reallocation(ALPHA, BETA, 2)
        second = engine.propose_reallocation(ALPHA, GAMMA, 2)
        engine.commit_reallocation(first.reallocation_id)

        with pytest.raises(StaleStateError) as exc_info:
            engine.commit_reallocation(second.reallocation_id)

        assert exc_info.value.context["donor_excess"] == 1
        assert engine.ctx.get_reallocation(second.reallocation_id).status == "proposed"
        assert engine.evaluate(ALPHA).excess == 1

    def test_stale_when_adjacency_removed(self, engine, ctx):
        record = engine.propose_reallocation(ALPHA, BETA, 1)
        with ctx.transaction() as conn:
            conn.execute("DELETE FROM adjacency WHERE municipality_id = ? AND neighbor_id = ?", (ALPHA, BETA))

        with pytest.raises(StaleStateError):
            engine.commit_reallocation(record.reallocation_id)

    def test_stale_when_recipient_requirement_dropped(self, engine):
        record = engine.propose_reallocation(ALPHA, BETA, 2)
        engine.apply_event(BETA, 2, TODAY, TODAY)

        with pytest.raises(StaleStateError) as exc_info:
            engine.commit_reallocation(record.reallocation_id)
        assert exc_info.value.context["recipient_requirement"] == 0

    def test_stale_when_donor_sites_deactivated(self, engine, add_sites):
        record = engine.propose_reallocation(ALPHA, BETA, 2)
        add_sites(*[site_row(101 + i, ALPHA, deactivated=date(2025, 6, 1)) for i in range(2)])

        # Excess is now 1
        with pytest.raises(StaleStateError):
            engine.commit_reallocation(record.reallocation_id)

    def test_auto_selected_sites_repicked(self, engine):
        first = engine.propose_reallocation(ALPHA, BETA, 1)
        second = engine.propose_reallocation(ALPHA, GAMMA, 1)
        assert first.justification.included_site_ids == second.justification.included_site_ids == [101]

        engine.commit_reallocation(first.reallocation_id)
        committed = engine.commit_reallocation(second.reallocation_id)

        assert committed.justification.included_site_ids == [102]

    def test_named_sites_stale_when_used(self, engine):
        named = engine.propose_reallocation(ALPHA, BETA, 1, site_ids=[101])
        auto = engine.propose_reallocation(ALPHA, GAMMA, 1)
        engine.commit_reallocation(auto.reallocation_id)

        with pytest.raises(StaleStateError) as exc_info:
            engine.commit_reallocation(named.reallocation_id)
        assert exc_info.value.context["stale_site_ids"] == [101]

    def test_commit_twice_rejected(self, engine):
        record = engine.propose_reallocation(ALPHA, BETA, 1)
        engine.commit_reallocation(record.reallocation_id)

        with pytest.raises(ValidationError):
            engine.commit_reallocation(record.reallocation_id)
        assert engine.evaluate(BETA).incoming == 1

    def test_commit_unknown(self, engine):
        with pytest.raises(NotFoundError):
            engine.commit_reallocation(424242)

    def test_future_effective_date(self, engine):
        record = engine.propose_reallocation(ALPHA, BETA, 2, effective_date=date(2025, 7, 1))
        engine.commit_reallocation(record.reallocation_id)

        assert engine.evaluate(BETA).incoming == 0
        assert engine.evaluate(BETA, as_of=date(2025, 7, 1)).incoming == 2

    def test_later_dated_commit_counts_against_donor(self, engine):
        later = TODAY + timedelta(days=10)
        future = engine.propose_reallocation(ALPHA, GAMMA, 2, effective_date=later)
        current = engine.propose_reallocation(ALPHA, BETA, 2)
        engine.commit_reallocation(future.reallocation_id)

        # Today's evaluation does not see the future transfer yet
        assert engine.evaluate(ALPHA).excess == 3
        with pytest.raises(StaleStateError) as exc_info:
            engine.commit_reallocation(current.reallocation_id)
        assert exc_info.value.context["donor_excess"] == 1
        assert exc_info.value.context["committed_later"] == 2

        alpha = engine.evaluate(ALPHA, as_of=later)
        assert (alpha.outgoing, alpha.status, alpha.excess) == (2, "excess", 1)

    def test_later_dated_commit_limits_new_proposals(self, engine):
        future = engine.propose_reallocation(ALPHA, GAMMA, 2, effective_date=TODAY + timedelta(days=10))
        engine.commit_reallocation(future.reallocation_id)

        with pytest.raises(ValidationError) as exc_info:
            engine.propose_reallocation(ALPHA, BETA, 2)
        assert exc_info.value.context["donor_excess"] == 1

        candidates = {c.municipality_id: c for c in engine.reallocation_candidates()}
        assert candidates[ALPHA].available_excess == 1

    def test_earlier_dated_commit_counts_for_later_transfer(self, engine):
        current = engine.propose_reallocation(ALPHA, BETA, 2)
        future = engine.propose_reallocation(ALPHA, GAMMA, 2, effective_date=TODAY + timedelta(days=10))
        engine.commit_reallocation(current.reallocation_id)

        with pytest.raises(StaleStateError):
            engine.commit_reallocation(future.reallocation_id)

    def test_audit_trail(self, engine, ctx):
        record = engine.propose_reallocation(ALPHA, BETA, 1, actor="analyst")
        engine.commit_reallocation(record.reallocation_id, actor="reviewer")

        proposed = ctx.get_audit_log("REALLOCATION_PROPOSED")
        committed = ctx.get_audit_log("REALLOCATION_COMMITTED")
        assert proposed[0]["actor"] == "analyst"
        assert committed[0]["actor"] == "reviewer"
        assert committed[0]["payload"]["reallocation_id"] == record.reallocation_id
        assert committed[0]["payload"]["donor_excess_before"] == 3


class TestConcurrentCommit:

    def test_only_one_of_two_commits_succeeds(self, db_path):
        # Donor excess 3; two proposals of 2 committed from separate threads
        setup = ComplianceEngine(ComplianceContext(db_path=db_path, clock=lambda: TODAY))
        first = setup.propose_reallocation(ALPHA, BETA, 2)
        second = setup.propose_reallocation(ALPHA, GAMMA, 2)

        barrier = threading.Barrier(2)
        outcomes = {}

        def commit(reallocation_id):
            engine = ComplianceEngine(ComplianceContext(db_path=db_path, clock=lambda: TODAY))
            barrier.wait()
            try:
                engine.commit_reallocation(reallocation_id)
                outcomes[reallocation_id] = "committed"
            except StaleStateError:
                outcomes[reallocation_id] = "stale"

        threads = [threading.Thread(target=commit, args=(r.reallocation_id,)) for r in (first, second)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        assert sorted(outcomes.values()) == ["committed", "stale"]
        assert setup.evaluate(ALPHA).excess == 1
        assert len(setup.list_reallocations(status="committed")) == 1

    def test_same_proposal_committed_twice_concurrently(self, db_path):
        setup = ComplianceEngine(ComplianceContext(db_path=db_path, clock=lambda: TODAY))
        record = setup.propose_reallocation(ALPHA, BETA, 2)

        barrier = threading.Barrier(2)
        outcomes = []

        def commit():
            engine = ComplianceEngine(ComplianceContext(db_path=db_path, clock=lambda: TODAY))
            barrier.wait()
            try:
                engine.commit_reallocation(record.reallocation_id)
                outcomes.append("committed")
            except (StaleStateError, ValidationError):
                outcomes.append("rejected")

        threads = [threading.Thread(target=commit) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        assert sorted(outcomes) == ["committed", "rejected"]
        assert setup.evaluate(BETA).incoming == 2


class TestReverse:

    def test_reverse_committed_restores_state(self, engine):
        record = engine.propose_reallocation(ALPHA, BETA, 2)
        engine.commit_reallocation(record.reallocation_id)
        reversed_record = engine.reverse_reallocation(record.reallocation_id, reason="wrong recipient")

        assert reversed_record.status == "reversed"
        assert reversed_record.reversal_reason == "wrong recipient"
        assert reversed_record.reversed_at is not None
        assert engine.evaluate(BETA).shortfall == 2
        assert engine.evaluate(ALPHA).excess == 3
        # Never deleted
        assert [r.reallocation_id for r in engine.list_reallocations()] == [record.reallocation_id]

    def test_reverse_proposed_withdraws(self, engine):
        record = engine.propose_reallocation(ALPHA, BETA, 1)
        engine.reverse_reallocation(record.reallocation_id)

        with pytest.raises(ValidationError):
            engine.commit_reallocation(record.reallocation_id)

    def test_reverse_twice_rejected(self, engine):
        record = engine.propose_reallocation(ALPHA, BETA, 1)
        engine.reverse_reallocation(record.reallocation_id)

        with pytest.raises(ValidationError):
            engine.reverse_reallocation(record.reallocation_id)

    def test_reversal_frees_sites(self, engine):
        record = engine.propose_reallocation(ALPHA, BETA, 2)
        engine.commit_reallocation(record.reallocation_id)
        engine.reverse_reallocation(record.reallocation_id)

        candidates = {c.municipality_id: c for c in engine.reallocation_candidates()}
        assert candidates[ALPHA].available_excess == 3
        assert 101 in candidates[ALPHA].eligible_site_ids

    def test_audit_entry(self, engine, ctx):
        record = engine.propose_reallocation(ALPHA, BETA, 1)
        engine.commit_reallocation(record.reallocation_id)
        engine.reverse_reallocation(record.reallocation_id, reason="census correction", actor="auditor")

        entry = ctx.get_audit_log("REALLOCATION_REVERSED")[0]
        assert entry["actor"] == "auditor"
        assert entry["payload"]["previous_status"] == "committed"
        assert entry["payload"]["reason"] == "census correction"


class TestListing:

    def test_filters(self, engine):
        a = engine.propose_reallocation(ALPHA, BETA, 1)
        b = engine.propose_reallocation(ALPHA, GAMMA, 1)
        engine.commit_reallocation(a.reallocation_id)

        assert [r.reallocation_id for r in engine.list_reallocations(status="proposed")] == [b.reallocation_id]
        assert [r.reallocation_id for r in engine.list_reallocations(municipality_id=BETA)] == [a.reallocation_id]
        assert len(engine.list_reallocations(municipality_id=ALPHA)) == 2
        assert engine.list_reallocations(municipality_id=EPSILON) == []
        assert engine.list_reallocations(program="Paint") == []
