"""Tests for the Compliance Evaluator."""

from datetime import date, timedelta

import pytest

from site_compliance.compliance import (
    ComplianceEvaluator,
    classify,
    compute_compliance,
    offset_reduction,
    summarize,
)
from site_compliance.errors import ConflictError, NotFoundError
from site_compliance.models import Municipality, Offset, Site

from .conftest import ALPHA, BETA, DELTA, EPSILON, GAMMA, TODAY, site_row


class TestClassify:

    def test_zero_requirement_zero_sites_is_compliant(self):
        assert classify(0, 0) == ("compliant", 0, 0)

    def test_shortfall(self):
        assert classify(3, 5) == ("shortfall", 2, 0)

    def test_excess(self):
        assert classify(5, 3) == ("excess", 0, 2)

    def test_exactly_one_side_non_zero(self):
        for active in range(6):
            for required in range(6):
                status, shortfall, excess = classify(active, required)
                assert shortfall >= 0 and excess >= 0
                assert not (shortfall and excess)
                assert (status == "compliant") == (shortfall == 0 and excess == 0)


class TestOffsetReduction:

    @pytest.mark.parametrize("base,pct,expected", [
        (34, 50, 17),
        (3, 33.3, 0),
        (7, 100, 7),
        (7, 0, 0),
        (10, 10.1, 1),
        (35, 20, 7),
    ])
    def test_floor(self, base, pct, expected):
        assert offset_reduction(base, pct) == expected

    def test_never_exceeds_base(self):
        for base in range(0, 60):
            for pct in (0, 0.5, 33.3, 50, 66.7, 99.9, 100):
                assert 0 <= offset_reduction(base, pct) <= base


class TestComputeCompliance:
    """Pure evaluation over in-memory records."""

    def _municipality(self, population=45_000):
        return Municipality(municipality_id=1, name="Alpha", population=population)

    def _sites(self, count, **kwargs):
        return [Site(**dict(zip(
            ("site_id", "municipality_id", "name", "operator_type", "site_type",
             "programs", "active_start", "deactivated_on"),
            site_row(i, 1, **kwargs),
        ))) for i in range(count)]

    def test_pure_function_of_inputs(self):
        args = (self._municipality(), self._sites(2), [], [], [], TODAY, "Lighting")
        first = compute_compliance(*args)
        second = compute_compliance(*args)

        assert first == second
        assert first.status == "shortfall"
        assert first.shortfall == 1

    def test_overlapping_active_offsets_raise_conflict(self):
        offsets = [
            Offset(offset_id=1, municipality_id=1, percentage=10, effective_date=date(2025, 1, 1)),
            Offset(offset_id=2, municipality_id=1, percentage=20, effective_date=date(2025, 3, 1)),
        ]
        with pytest.raises(ConflictError) as exc_info:
            compute_compliance(self._municipality(), [], offsets, [], [], TODAY, "Lighting")
        assert exc_info.value.context["offset_ids"] == [1, 2]

    def test_superseded_offset_is_ignored(self):
        offsets = [
            Offset(offset_id=1, municipality_id=1, percentage=10, effective_date=date(2025, 1, 1),
                   superseded_by=2),
            Offset(offset_id=2, municipality_id=1, percentage=100, effective_date=date(2025, 1, 1)),
        ]
        result = compute_compliance(self._municipality(), [], offsets, [], [], TODAY, "Lighting")
        assert result.offset_percentage == 100
        assert result.adjusted_requirement == 0
        assert result.status == "compliant"


class TestEvaluator:
    """Context-bound evaluation against the seeded registry."""

    def test_excess(self, ctx):
        result = ComplianceEvaluator(ctx).evaluate(ALPHA)

        assert result.base_requirement == 3
        assert result.active_site_count == 6
        assert result.adjusted_requirement == 3
        assert result.status == "excess"
        assert result.excess == 3
        assert result.shortfall == 0
        assert result.evaluated_as_of == TODAY

    def test_shortfall(self, ctx):
        result = ComplianceEvaluator(ctx).evaluate(GAMMA)
        assert (result.status, result.shortfall, result.excess) == ("shortfall", 3, 0)

    def test_zero_requirement_zero_sites(self, ctx):
        result = ComplianceEvaluator(ctx).evaluate(EPSILON)

        assert result.base_requirement == 0
        assert result.status == "compliant"
        assert result.compliance_rate == 100.0

    def test_idempotent(self, ctx):
        evaluator = ComplianceEvaluator(ctx)
        assert evaluator.evaluate(BETA) == evaluator.evaluate(BETA)

    def test_unknown_municipality(self, ctx):
        with pytest.raises(NotFoundError) as exc_info:
            ComplianceEvaluator(ctx).evaluate(999)
        assert exc_info.value.context["municipality_id"] == 999

    def test_deactivated_and_future_sites_not_counted(self, ctx, add_sites):
        add_sites(
            site_row(201, BETA, deactivated=TODAY - timedelta(days=1)),
            site_row(202, BETA, start=TODAY + timedelta(days=1)),
            site_row(203, BETA, deactivated=TODAY),
        )
        evaluator = ComplianceEvaluator(ctx)

        assert evaluator.evaluate(BETA).active_site_count == 0
        # Site 203 still counts the day before its deactivation date
        assert evaluator.evaluate(BETA, as_of=TODAY - timedelta(days=1)).active_site_count == 1

    def test_sites_count_only_for_tagged_program(self, ctx, add_sites):
        add_sites(site_row(201, BETA, programs=("Paint",)))
        evaluator = ComplianceEvaluator(ctx)

        assert evaluator.evaluate(BETA, program="Lighting").active_site_count == 0
        assert evaluator.evaluate(BETA, program="Paint").active_site_count == 1

    def test_event_sites_not_counted(self, ctx, add_sites):
        add_sites(
            site_row(201, BETA, site_type="Event"),
            site_row(202, BETA, operator_type="Event"),
        )
        assert ComplianceEvaluator(ctx).evaluate(BETA).active_site_count == 0

    def test_evaluate_all(self, ctx):
        results = ComplianceEvaluator(ctx).evaluate_all()

        assert [r.municipality_name for r in results] == ["Alpha", "Beta", "Delta", "Epsilon", "Gamma"]
        by_id = {r.municipality_id: r for r in results}
        assert by_id[DELTA].excess == 2
        assert by_id[BETA].shortfall == 2

    def test_evaluate_all_matches_single_evaluations(self, ctx):
        evaluator = ComplianceEvaluator(ctx)
        for result in evaluator.evaluate_all():
            assert evaluator.evaluate(result.municipality_id) == result

    def test_overlapping_offsets_in_store_reported(self, ctx):
        # Bypass the ledger's conflict check to simulate corrupted data
        with ctx.transaction() as conn:
            for pct in (10, 20):
                ctx.insert_offset(
                    Offset(municipality_id=GAMMA, percentage=pct, effective_date=date(2025, 1, 1)),
                    conn,
                )
        with pytest.raises(ConflictError):
            ComplianceEvaluator(ctx).evaluate(GAMMA)

    def test_batch_isolates_conflicting_municipality(self, ctx):
        with ctx.transaction() as conn:
            for pct in (10, 20):
                ctx.insert_offset(
                    Offset(municipality_id=GAMMA, percentage=pct, effective_date=date(2025, 1, 1)),
                    conn,
                )
        evaluator = ComplianceEvaluator(ctx)

        batch = evaluator.evaluate_batch()
        assert [r.municipality_name for r in batch.results] == ["Alpha", "Beta", "Delta", "Epsilon"]
        [issue] = batch.conflicts
        assert issue.municipality_id == GAMMA
        assert issue.error_code == "SC_CONFLICT_ERROR"
        assert len(issue.context["offset_ids"]) == 2

        assert [r.municipality_id for r in evaluator.evaluate_all()] == [ALPHA, BETA, DELTA, EPSILON]


class TestSummary:

    def test_summarize_seeded_registry(self, ctx):
        summary = summarize(ComplianceEvaluator(ctx).evaluate_all())

        assert summary.total == 5
        assert summary.compliant == 1
        assert summary.shortfalls == 2
        assert summary.excesses == 2
        assert summary.total_shortfall_sites == 5
        assert summary.total_excess_sites == 5
        assert summary.total_required == 10
        assert summary.total_actual == 10
        assert summary.overall_compliance_rate == pytest.approx(100.0)

    def test_summarize_empty(self):
        summary = summarize([])
        assert summary.total == 0
        assert summary.overall_compliance_rate == 100.0
