import pytest

from stats_engine import sequential
from stats_engine.domain import VariantCounts
from stats_engine.errors import (
    InsufficientVariantsError,
    InvalidRangeError,
    PlanExhaustedError,
    PlanNotFoundError,
)


def _counts(n_a, x_a, n_b, x_b):
    return [VariantCounts(1, "A", n_a, x_a), VariantCounts(2, "B", n_b, x_b)]


def _run_checks(plan, counts, times):
    history = []
    for _ in range(times):
        result = sequential.interim_analysis(plan, history, counts)
        history.append(result["snapshot"])
    return history


def test_initialize_spaces_check_points_evenly():
    plan = sequential.initialize(7, 1000, 5)
    assert plan.check_points == (200, 400, 600, 800, 1000)
    assert plan.num_checks == 5
    assert plan.created_at is not None


def test_check_points_round_half_up():
    assert sequential.check_points(5, 2) == (3, 5)


@pytest.mark.parametrize("planned,checks", [(0, 5), (-10, 5), (100, 0)])
def test_initialize_rejects_bad_plans(planned, checks):
    with pytest.raises(InvalidRangeError):
        sequential.initialize(1, planned, checks)


def test_obrien_fleming_bounds_tighten_over_time():
    first = sequential.obrien_fleming_bounds(1, 5)
    last = sequential.obrien_fleming_bounds(5, 5)
    assert first["upper"] > last["upper"] > 0
    assert first["lower"] == -first["upper"]
    # final look equals the fixed-sample critical value
    assert last["upper"] == pytest.approx(1.96, abs=1e-3)
    assert first["upper"] == pytest.approx(1.96 * 5 ** 0.5, abs=1e-2)


def test_obrien_fleming_bounds_are_monotone():
    uppers = [sequential.obrien_fleming_bounds(k, 8)["upper"] for k in range(1, 9)]
    assert uppers == sorted(uppers, reverse=True)


@pytest.mark.parametrize("check,total", [(0, 5), (6, 5), (1, 0)])
def test_obrien_fleming_rejects_invalid_looks(check, total):
    with pytest.raises(InvalidRangeError):
        sequential.obrien_fleming_bounds(check, total)


def test_alpha_spent_grows_with_information():
    spent = [sequential.alpha_spent(k, 5) for k in range(1, 6)]
    assert spent == sorted(spent)
    assert spent[-1] == pytest.approx(0.05 * 2 * 0.025, abs=1e-5)


def test_information_fraction_is_clamped():
    assert sequential.information_fraction(500, 1000) == 0.5
    assert sequential.information_fraction(1200, 1000) == 1
    assert sequential.information_fraction(0, 1000) == 0


def test_decide_stop_winner():
    result = sequential.decide(3.5, 2.5, -2.5)
    assert result["should_stop"] is True
    assert result["decision"] == sequential.STOP_WINNER


def test_decide_stop_futile():
    result = sequential.decide(-3.0, 2.5, -2.5)
    assert result["should_stop"] is True
    assert result["decision"] == sequential.STOP_FUTILE


def test_decide_continue():
    result = sequential.decide(1.5, 2.5, -2.5)
    assert result["should_stop"] is False
    assert result["decision"] == sequential.CONTINUE


def test_interim_analysis_stops_for_efficacy():
    plan = sequential.initialize(1, 1000, 5)
    # 30% vs 10% on 200 each gives z = 5.0
    result = sequential.interim_analysis(plan, [], _counts(200, 60, 200, 20))

    assert result["check_number"] == 1
    assert result["z_statistic"] == pytest.approx(5.0)
    assert result["decision"] == sequential.STOP_WINNER
    assert result["information_fraction"] == pytest.approx(0.2)
    snapshot = result["snapshot"]
    assert snapshot.check_number == 1
    assert snapshot.total_assignments == 400
    assert snapshot.decision == sequential.STOP_WINNER


def test_interim_analysis_stops_for_futility():
    plan = sequential.initialize(1, 1000, 5)
    result = sequential.interim_analysis(plan, [], _counts(200, 20, 200, 60))
    assert result["decision"] == sequential.STOP_FUTILE


def test_interim_analysis_continues_inside_boundaries():
    plan = sequential.initialize(1, 1000, 5)
    result = sequential.interim_analysis(plan, [], _counts(200, 44, 200, 40))
    assert result["decision"] == sequential.CONTINUE
    assert result["should_stop"] is False


def test_check_numbers_increase_from_one():
    plan = sequential.initialize(1, 1000, 3)
    history = _run_checks(plan, _counts(200, 44, 200, 40), 3)
    assert [s.check_number for s in history] == [1, 2, 3]


def test_exhausted_plan_is_reported_not_raised():
    plan = sequential.initialize(1, 1000, 2)
    counts = _counts(200, 44, 200, 40)
    history = _run_checks(plan, counts, 2)

    result = sequential.interim_analysis(plan, history, counts)
    assert result["plan_exhausted"] is True
    assert result["decision"] == sequential.STOP_PLANNED
    assert isinstance(result["error"], PlanExhaustedError)
    assert result["snapshot"] is None

    with pytest.raises(PlanExhaustedError):
        sequential.require_remaining_checks(plan, history)


def test_missing_plan_raises():
    with pytest.raises(PlanNotFoundError):
        sequential.interim_analysis(None, [], _counts(10, 1, 10, 2))


def test_needs_two_variants():
    plan = sequential.initialize(1, 100, 5)
    with pytest.raises(InsufficientVariantsError):
        sequential.interim_analysis(plan, [], [VariantCounts(1, "A", 10, 1)])


def test_empty_variant_does_not_consume_a_check():
    plan = sequential.initialize(1, 100, 5)
    result = sequential.interim_analysis(plan, [], _counts(0, 0, 10, 2))
    assert result["decision"] == sequential.CONTINUE
    assert result["snapshot"] is None
    assert result["check_number"] == 1


def test_next_check_point_tracks_history():
    plan = sequential.initialize(1, 1000, 5)
    first = sequential.next_check_point(plan, [])
    assert first == {
        "has_next": True,
        "next_check_number": 1,
        "next_sample_size": 400,
        "current_sample_size": 0,
        "remaining": 400,
    }

    history = _run_checks(plan, _counts(200, 44, 200, 40), 1)
    second = sequential.next_check_point(plan, history)
    assert second["next_check_number"] == 2
    assert second["next_sample_size"] == 800
    assert second["remaining"] == 400


def test_next_check_point_after_last_check():
    plan = sequential.initialize(1, 1000, 1)
    history = _run_checks(plan, _counts(200, 44, 200, 40), 1)
    assert sequential.next_check_point(plan, history)["has_next"] is False


def test_status_transitions():
    plan = sequential.initialize(1, 1000, 2)
    counts = _counts(200, 44, 200, 40)

    assert sequential.results(plan, [])["current_status"]["status"] == sequential.NOT_STARTED

    history = _run_checks(plan, counts, 1)
    assert sequential.results(plan, history)["current_status"]["status"] == sequential.ONGOING

    history = _run_checks(plan, counts, 2)
    assert sequential.results(plan, history)["current_status"]["status"] == sequential.COMPLETED

    stopped = [sequential.interim_analysis(plan, [], _counts(200, 60, 200, 20))["snapshot"]]
    assert sequential.results(plan, stopped)["current_status"]["status"] == sequential.STOPPED_EFFICACY

    futile = [sequential.interim_analysis(plan, [], _counts(200, 20, 200, 60))["snapshot"]]
    assert sequential.results(plan, futile)["current_status"]["status"] == sequential.STOPPED_FUTILITY


def test_results_include_boundary_data():
    plan = sequential.initialize(1, 500, 4)
    report = sequential.results(plan, [])
    assert [row["check_number"] for row in report["boundary_data"]] == [1, 2, 3, 4]
    assert report["plan"] == {"planned_sample_size": 500, "num_checks": 4, "check_points": [125, 250, 375, 500]}
    assert report["history"] == []
