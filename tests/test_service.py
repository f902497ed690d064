import io
import logging

import pytest

from stats_engine import models, power
from stats_engine.config import configure_logging
from stats_engine.domain import (
    BANDIT,
    BAYESIAN,
    EPSILON_GREEDY,
    FREQUENTIST,
    SEQUENTIAL,
    UCB,
    BayesianMode,
    OutcomeEvent,
    RegretSnapshot,
    VariantCounts,
)
from stats_engine.errors import (
    AnalysisModeError,
    ExperimentNotFoundError,
    InvalidInputError,
    PlanNotFoundError,
    StateNotFoundError,
)
from stats_engine.service import BanditService
from stats_engine import sequential


def _experiment(repo, mode, names=("A", "B")):
    experiment = repo.create_experiment(f"{mode} test", mode, list(names), hypothesis="B beats A")
    repo.commit()
    return experiment


def _ids(experiment):
    return {v.name: v.variant_id for v in experiment.variants}


# -- experiments ----------------------------------------------------------------

def test_create_experiment_builds_tagged_mode(repo):
    experiment = _experiment(repo, BAYESIAN)
    assert experiment.analysis_mode == BAYESIAN
    assert isinstance(experiment.mode, BayesianMode)
    assert [v.name for v in experiment.variants] == ["A", "B"]
    assert all(v.assignments == 0 for v in experiment.variants)


def test_unknown_mode_is_rejected(repo):
    with pytest.raises(InvalidInputError):
        repo.create_experiment("bad", "thompson", ["A", "B"])


def test_missing_experiment(repo):
    with pytest.raises(ExperimentNotFoundError):
        repo.get_experiment(999)


# -- bayesian -----------------------------------------------------------------

def test_bayesian_outcomes_update_posterior(stats_engine, repo):
    experiment = _experiment(repo, BAYESIAN)
    a = _ids(experiment)["A"]
    stats_engine.bayesian.initialize(experiment.id)

    for success in [True] * 5 + [False] * 3:
        stats_engine.record_outcome(OutcomeEvent(experiment.id, a, success))

    state = repo.get_variant_state(experiment.id, a)
    assert (state.alpha_posterior, state.beta_posterior) == (6.0, 4.0)
    assert (state.alpha_prior, state.beta_prior) == (1.0, 1.0)


def test_bayesian_initialize_twice_is_rejected(stats_engine, repo):
    experiment = _experiment(repo, BAYESIAN)
    stats_engine.bayesian.initialize(experiment.id, priors={"A": {"alpha": 2, "beta": 3}})
    with pytest.raises(InvalidInputError):
        stats_engine.bayesian.initialize(experiment.id)

    states = repo.list_variant_states(experiment.id)
    assert [(s.alpha_prior, s.beta_prior) for s in states] == [(2.0, 3.0), (1.0, 1.0)]


def test_bayesian_should_stop_waits_for_minimum_sample(stats_engine, repo):
    experiment = _experiment(repo, BAYESIAN)
    ids = _ids(experiment)
    stats_engine.bayesian.initialize(experiment.id)
    for _ in range(10):
        stats_engine.record_outcome(OutcomeEvent(experiment.id, ids["B"], True))
        stats_engine.record_outcome(OutcomeEvent(experiment.id, ids["A"], False))

    decision = stats_engine.bayesian.should_stop(experiment.id, min_sample_size=100)
    assert decision["should_stop"] is False
    assert "Minimum sample size" in decision["reason"]

    decision = stats_engine.bayesian.should_stop(experiment.id, min_sample_size=10)
    assert decision["should_stop"] is True
    assert decision["winner_id"] == ids["B"]


def test_bayesian_results_are_stored(stats_engine, repo):
    experiment = _experiment(repo, BAYESIAN)
    ids = _ids(experiment)
    stats_engine.bayesian.initialize(experiment.id)
    for i in range(40):
        stats_engine.record_outcome(OutcomeEvent(experiment.id, ids["A"], i % 4 == 0))
        stats_engine.record_outcome(OutcomeEvent(experiment.id, ids["B"], i % 2 == 0))

    report = stats_engine.bayesian.results(experiment.id)
    assert [v["variant_name"] for v in report["variants"]] == ["A", "B"]

    stored = repo.list_variant_states(experiment.id)
    assert all(s.probability_best is not None for s in stored)
    assert all(s.expected_loss is not None for s in stored)
    assert sum(s.probability_best for s in stored) == pytest.approx(1.0, abs=0.05)


def test_mode_mismatch_is_rejected(stats_engine, repo):
    experiment = _experiment(repo, BAYESIAN)
    with pytest.raises(AnalysisModeError):
        stats_engine.bandit.select_arm(experiment.id)
    with pytest.raises(AnalysisModeError):
        stats_engine.sequential.initialize(experiment.id, 100)


def test_failed_unit_of_work_is_logged(stats_engine, repo, caplog):
    experiment = _experiment(repo, BAYESIAN)
    with caplog.at_level(logging.ERROR, logger="stats_engine.service"):
        with pytest.raises(AnalysisModeError):
            stats_engine.bandit.initialize(experiment.id)
    assert "Bandit initialize failed" in caplog.text


# -- sequential ---------------------------------------------------------------

def test_update_counts_triggers_interim_analysis(stats_engine, repo):
    experiment = _experiment(repo, SEQUENTIAL)
    stats_engine.sequential.initialize(experiment.id, 100, 5)

    below = stats_engine.update_counts(experiment.id, [
        VariantCounts(None, "A", 10, 5),
        VariantCounts(None, "B", 10, 1),
    ])
    assert below is None

    result = stats_engine.update_counts(experiment.id, [
        VariantCounts(None, "A", 20, 10),
        VariantCounts(None, "B", 20, 2),
    ])
    assert result["check_number"] == 1
    assert result["decision"] == sequential.CONTINUE

    history = stats_engine.sequential.history(experiment.id)
    assert [h["check_number"] for h in history] == [1]

    next_point = stats_engine.sequential.next_check_point(experiment.id)
    assert next_point["next_check_number"] == 2
    assert next_point["next_sample_size"] == 80


def test_sequential_without_plan(stats_engine, repo):
    experiment = _experiment(repo, SEQUENTIAL)
    with pytest.raises(PlanNotFoundError):
        stats_engine.sequential.perform_interim_analysis(experiment.id)
    assert stats_engine.update_counts(experiment.id, [VariantCounts(None, "A", 10, 1)]) is None


def test_exhausted_plan_reports_planned_stop(stats_engine, repo):
    experiment = _experiment(repo, SEQUENTIAL)
    stats_engine.sequential.initialize(experiment.id, 50, 1)
    stats_engine.update_counts(experiment.id, [
        VariantCounts(None, "A", 50, 10),
        VariantCounts(None, "B", 50, 11),
    ])

    result = stats_engine.sequential.perform_interim_analysis(experiment.id)
    assert result["plan_exhausted"] is True
    assert result["decision"] == sequential.STOP_PLANNED

    report = stats_engine.sequential.results(experiment.id)
    assert report["current_status"]["status"] == sequential.COMPLETED
    assert len(report["history"]) == 1


def test_duplicate_check_is_rejected(repo):
    experiment = _experiment(repo, SEQUENTIAL)
    plan = sequential.initialize(experiment.id, 100, 5)
    repo.save_experiment_plan(plan)
    snapshot = sequential.interim_analysis(plan, [], [
        VariantCounts(1, "A", 20, 5),
        VariantCounts(2, "B", 20, 6),
    ])["snapshot"]
    repo.append_sequential_snapshot(snapshot)
    with pytest.raises(InvalidInputError):
        repo.append_sequential_snapshot(snapshot)


# -- bandit -------------------------------------------------------------------

def test_ucb_explores_then_exploits(stats_engine, repo):
    experiment = _experiment(repo, BANDIT)
    ids = _ids(experiment)
    stats_engine.bandit.initialize(experiment.id, UCB)

    first = stats_engine.bandit.select_arm(experiment.id)
    assert first["variant_name"] == "A"
    stats_engine.bandit.update_reward(experiment.id, ids["A"], 1)

    second = stats_engine.bandit.select_arm(experiment.id)
    assert second["variant_name"] == "B"
    stats_engine.bandit.update_reward(experiment.id, ids["B"], 0)

    assert stats_engine.bandit.select_arm(experiment.id)["variant_name"] == "A"


def test_bandit_initialize_splits_traffic_evenly(stats_engine, repo):
    experiment = _experiment(repo, BANDIT, names=("A", "B", "C", "D"))
    arms = stats_engine.bandit.initialize(experiment.id)
    assert [a.current_allocation for a in arms] == [25.0] * 4
    assert repo.get_experiment(experiment.id).mode.algorithm == "thompson"


def test_bandit_loop_reallocates_and_tracks_regret(repo, rng):
    experiment = _experiment(repo, BANDIT)
    service = BanditService(repo, rng, epsilon=0)
    service.initialize(experiment.id, EPSILON_GREEDY)

    for _ in range(50):
        chosen = service.select_arm(experiment.id)
        service.update_reward(experiment.id, chosen["variant_id"], 1)

    allocations = {a["variant_name"]: a for a in service.allocations(experiment.id)}
    assert allocations["A"]["pulls"] == 50
    assert allocations["A"]["current_allocation"] == pytest.approx(100.0)
    assert allocations["B"]["current_allocation"] == pytest.approx(0.0)
    assert allocations["A"]["initial_allocation"] == pytest.approx(50.0)

    history = service.regret_history(experiment.id)
    assert len(history) == 1
    assert history[0]["total_pulls"] == 50
    assert history[0]["cumulative_regret"] == pytest.approx(0.0)

    report = service.results(experiment.id)
    assert report["best_performer"]["variant_name"] == "A"
    assert report["summary"]["total_pulls"] == 50


def test_regret_snapshot_replay_is_idempotent(repo):
    experiment = _experiment(repo, BANDIT)
    snapshot = RegretSnapshot(experiment.id, 50, 1.5, _ids(experiment)["A"])
    first = repo.append_regret_snapshot(snapshot)
    replay = repo.append_regret_snapshot(RegretSnapshot(experiment.id, 50, 9.9, None))
    assert replay.cumulative_regret == first.cumulative_regret == 1.5
    assert len(repo.list_regret_snapshots(experiment.id)) == 1


def test_bandit_reward_routes_through_record_outcome(stats_engine, repo):
    experiment = _experiment(repo, BANDIT)
    stats_engine.bandit.initialize(experiment.id, UCB)
    chosen = stats_engine.bandit.select_arm(experiment.id)

    arm = stats_engine.record_outcome(OutcomeEvent(experiment.id, chosen["variant_id"], True))
    assert (arm.pulls, arm.success_count, arm.failure_count) == (1, 1, 0)
    assert arm.mean_reward == 1.0
    assert repo.get_bandit_arm(experiment.id, chosen["variant_id"]) == arm


def test_missing_bandit_arm(repo):
    experiment = _experiment(repo, BANDIT)
    with pytest.raises(StateNotFoundError):
        repo.get_bandit_arm(experiment.id, _ids(experiment)["A"])


# -- power analysis -------------------------------------------------------------

def test_power_analysis_attached_to_experiment(stats_engine, repo):
    experiment = _experiment(repo, FREQUENTIST)
    analysis = stats_engine.power.create_power_analysis(0.10, 0.02, experiment_id=experiment.id)
    assert analysis.id is not None
    assert repo.get_experiment(experiment.id).power_analysis.id == analysis.id

    estimate = stats_engine.power.estimate_duration_for_experiment(experiment.id, 1000)
    expected = power.estimate_duration(analysis.sample_size_per_variant, 2, 1000)
    assert estimate["estimated_days"] == expected
    assert estimate["total_required"] == analysis.sample_size_per_variant * 2

    stored = stats_engine.power.get_power_analysis(analysis.id)
    assert stored.daily_volume == 1000
    assert stored.estimated_duration == expected


def test_duration_needs_a_power_analysis(stats_engine, repo):
    experiment = _experiment(repo, FREQUENTIST)
    with pytest.raises(PlanNotFoundError):
        stats_engine.power.estimate_duration_for_experiment(experiment.id, 1000)


def test_mde_uses_observed_baseline(stats_engine, repo):
    experiment = _experiment(repo, FREQUENTIST)
    stats_engine.update_counts(experiment.id, [
        VariantCounts(None, "A", 1000, 200),
        VariantCounts(None, "B", 1000, 200),
    ])
    result = stats_engine.power.calculate_mde_for_experiment(experiment.id, 2000)
    assert result["baseline_rate"] == pytest.approx(0.2)
    assert 0 < result["mde"] < 0.2


# -- frequentist ----------------------------------------------------------------

def test_csv_import_and_analysis(stats_engine, repo, db_session):
    experiment = _experiment(repo, FREQUENTIST)
    stats_engine.frequentist.import_counts_csv(experiment.id, io.BytesIO(
        b"variant,assignments,conversions\n"
        b"A,1000,100\n"
        b"B,1000,150\n"
    ))

    stats = stats_engine.frequentist.analyze(experiment.id)
    assert stats["B"]["uplift"] == pytest.approx(0.05)
    assert stats["B"]["p_value"] < 0.05

    row = (
        db_session.query(models.Variant)
        .filter(models.Variant.experiment_id == experiment.id, models.Variant.name == "B")
        .one()
    )
    assert row.conversion_rate == pytest.approx(0.15)
    assert row.p_value == pytest.approx(stats["B"]["p_value"])


def test_frequentist_outcome_events_are_rejected(stats_engine, repo):
    experiment = _experiment(repo, FREQUENTIST)
    with pytest.raises(AnalysisModeError):
        stats_engine.record_outcome(OutcomeEvent(experiment.id, _ids(experiment)["A"], True))


def test_sequential_initialize_twice_is_rejected(stats_engine, repo):
    experiment = _experiment(repo, SEQUENTIAL)
    stats_engine.sequential.initialize(experiment.id, 100, 5)
    with pytest.raises(InvalidInputError):
        stats_engine.sequential.initialize(experiment.id, 400, 2)

    plan = repo.get_experiment_plan(experiment.id)
    assert (plan.planned_sample_size, plan.num_checks) == (100, 5)


def test_bandit_initialize_twice_keeps_pulls(stats_engine, repo):
    experiment = _experiment(repo, BANDIT)
    stats_engine.bandit.initialize(experiment.id, UCB)
    for _ in range(4):
        chosen = stats_engine.bandit.select_arm(experiment.id)
        stats_engine.bandit.update_reward(experiment.id, chosen["variant_id"], 1)

    with pytest.raises(InvalidInputError):
        stats_engine.bandit.initialize(experiment.id, UCB)
    assert sum(a.pulls for a in repo.list_bandit_arms(experiment.id)) == 4


def test_variant_counts_follow_updates(stats_engine, repo):
    experiment = _experiment(repo, FREQUENTIST)
    stats_engine.update_counts(experiment.id, [
        VariantCounts(None, "B", 200, 30),
        VariantCounts(None, "A", 100, 10),
    ])
    counts = repo.get_variant_counts(experiment.id)
    assert [(c.name, c.assignments, c.conversions) for c in counts] == [("A", 100, 10), ("B", 200, 30)]


def test_configure_logging_sets_engine_level(stats_engine, repo, caplog):
    engine_logger = logging.getLogger("stats_engine")
    previous = engine_logger.level
    root_level = logging.getLogger().level
    try:
        configure_logging("WARNING")
        assert engine_logger.level == logging.WARNING

        experiment = _experiment(repo, BAYESIAN)
        stats_engine.bayesian.initialize(experiment.id)
        assert "Initialized Bayesian analysis" not in caplog.text

        configure_logging("info")
        assert engine_logger.level == logging.INFO
    finally:
        engine_logger.setLevel(previous)
        logging.getLogger().setLevel(root_level)
