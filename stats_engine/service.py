"""
Orchestration layer: load immutable snapshots from the repository, run the
pure engines, store what they return.

Each public method is one unit of work. On failure the transaction is rolled
back, the error is logged with its context and re-raised to the caller.
"""
from contextlib import contextmanager
from dataclasses import replace
from typing import Any, Dict, List, Mapping, Optional
import logging

import numpy as np

from . import bandit, bayesian, config, power, sequential
from .domain import (
    BANDIT,
    BAYESIAN,
    FREQUENTIST,
    SEQUENTIAL,
    THOMPSON,
    BanditArm,
    BayesianState,
    Experiment,
    OutcomeEvent,
    PowerAnalysis,
)
from .errors import AnalysisModeError, InvalidInputError, PlanNotFoundError, StateNotFoundError
from .repository import StatsRepository
from .statmath import make_rng
from .stats import compute_conversion_stats, counts_from_frame, load_experiment_csv

logger = logging.getLogger(__name__)

# Baseline assumed when an experiment has neither a plan nor any data
DEFAULT_BASELINE_RATE = 0.10


@contextmanager
def _unit_of_work(repo: StatsRepository, action: str, **context):
    try:
        yield
        repo.commit()
    except Exception as exc:
        repo.rollback()
        logger.error("%s failed %s: %s", action, context, exc)
        raise


def _require_mode(experiment: Experiment, mode: str) -> None:
    if experiment.analysis_mode != mode:
        raise AnalysisModeError(
            f"Experiment {experiment.id} uses {experiment.analysis_mode} analysis, not {mode}",
            experiment_id=experiment.id,
        )


class BayesianService:
    def __init__(self, repo: StatsRepository, rng: Optional[np.random.Generator] = None,
                 samples: int = config.MC_SAMPLES):
        self.repo = repo
        self.rng = rng if rng is not None else make_rng(config.RANDOM_SEED)
        self.samples = samples

    def _states(self, experiment_id: int) -> List[BayesianState]:
        experiment = self.repo.get_experiment(experiment_id)
        _require_mode(experiment, BAYESIAN)
        return list(experiment.mode.states)

    def initialize(self, experiment_id: int,
                   priors: Optional[Mapping[str, Mapping[str, float]]] = None) -> List[BayesianState]:
        with _unit_of_work(self.repo, "Bayesian initialize", experiment_id=experiment_id):
            experiment = self.repo.get_experiment(experiment_id)
            _require_mode(experiment, BAYESIAN)
            if experiment.mode.states:
                raise InvalidInputError(
                    f"Bayesian state already initialized for experiment {experiment_id}",
                    field="experiment_id",
                    value=experiment_id,
                )
            states = bayesian.initialize(
                experiment_id,
                [(v.variant_id, v.name) for v in experiment.variants],
                priors,
            )
            for state in states:
                self.repo.save_variant_state(state)

        logger.info("Initialized Bayesian analysis for experiment %s (%d variants)",
                    experiment_id, len(states))
        return states

    def update_posterior(self, experiment_id: int, variant_id: int, success: bool) -> BayesianState:
        with _unit_of_work(self.repo, "Bayesian posterior update",
                           experiment_id=experiment_id, variant_id=variant_id):
            current = self.repo.get_variant_state(experiment_id, variant_id, for_update=True)
            updated = bayesian.update_posterior(current, success)
            self.repo.save_variant_state(updated)

        logger.debug("Updated posterior for experiment %s variant %s: alpha=%s beta=%s",
                     experiment_id, variant_id, updated.alpha_posterior, updated.beta_posterior)
        return updated

    def probabilities(self, experiment_id: int, samples: Optional[int] = None) -> List[Dict[str, Any]]:
        with _unit_of_work(self.repo, "Bayesian probabilities", experiment_id=experiment_id):
            states = self._states(experiment_id)
            rows = bayesian.probability_best(states, self.rng, samples or self.samples)
            by_id = {row["id"]: row["probability"] for row in rows}
            for state in states:
                self.repo.save_variant_state(replace(state, probability_best=by_id[state.variant_id]))

        return [
            {
                "variant_id": s.variant_id,
                "variant_name": s.name,
                "probability": by_id[s.variant_id],
                "alpha_post": s.alpha_posterior,
                "beta_post": s.beta_posterior,
            }
            for s in states
        ]

    def credible_intervals(self, experiment_id: int, confidence: float = 0.95) -> List[Dict[str, Any]]:
        with _unit_of_work(self.repo, "Bayesian credible intervals", experiment_id=experiment_id):
            intervals = []
            for state in self._states(experiment_id):
                ci = bayesian.credible_interval(state.alpha_posterior, state.beta_posterior, confidence)
                self.repo.save_variant_state(replace(
                    state,
                    credible_interval_lower=ci["lower"],
                    credible_interval_upper=ci["upper"],
                ))
                intervals.append({
                    "variant_id": state.variant_id,
                    "variant_name": state.name,
                    "confidence": confidence * 100,
                    **ci,
                })
        return intervals

    def expected_losses(self, experiment_id: int, samples: Optional[int] = None) -> List[Dict[str, Any]]:
        with _unit_of_work(self.repo, "Bayesian expected loss", experiment_id=experiment_id):
            states = self._states(experiment_id)
            losses = {row["id"]: row["loss"]
                      for row in bayesian.expected_loss(states, self.rng, samples or self.samples)}
            for state in states:
                self.repo.save_variant_state(replace(state, expected_loss=losses[state.variant_id]))

        return [
            {"variant_id": s.variant_id, "variant_name": s.name, "expected_loss": losses[s.variant_id]}
            for s in states
        ]

    def should_stop(self, experiment_id: int,
                    threshold: float = config.BAYES_WINNER_THRESHOLD,
                    min_sample_size: int = config.BAYES_MIN_SAMPLE_SIZE) -> Dict[str, Any]:
        try:
            experiment = self.repo.get_experiment(experiment_id)
            _require_mode(experiment, BAYESIAN)
            states = list(experiment.mode.states)
            assignments = {v.variant_id: v.assignments for v in experiment.variants}
            # outcomes already in the posterior count even if assignments were never reported
            sample_sizes = {
                s.variant_id: max(assignments.get(s.variant_id, 0), s.observations)
                for s in states
            }
            decision = bayesian.should_stop(
                states, sample_sizes, self.rng,
                threshold=threshold,
                min_sample_size=min_sample_size,
                samples=self.samples,
            )
        except Exception as exc:
            logger.error("Bayesian stopping check failed for experiment %s: %s", experiment_id, exc)
            raise

        if decision["should_stop"]:
            logger.info("Experiment %s can stop: %s", experiment_id, decision["reason"])
        return decision

    def results(self, experiment_id: int, confidence: float = 0.95) -> Dict[str, Any]:
        with _unit_of_work(self.repo, "Bayesian results", experiment_id=experiment_id):
            states, report = bayesian.analyze(
                self._states(experiment_id),
                self.rng,
                samples=self.samples,
                confidence=confidence,
                winner_threshold=config.BAYES_WINNER_THRESHOLD,
                likely_threshold=config.BAYES_LIKELY_THRESHOLD,
            )
            for state in states:
                self.repo.save_variant_state(state)
        return report


class SequentialService:
    def __init__(self, repo: StatsRepository, alpha: float = config.SEQUENTIAL_ALPHA):
        self.repo = repo
        self.alpha = alpha

    def _load(self, experiment_id: int):
        experiment = self.repo.get_experiment(experiment_id)
        _require_mode(experiment, SEQUENTIAL)
        if experiment.mode.plan is None:
            raise PlanNotFoundError(
                f"Sequential plan not found for experiment {experiment_id}. Initialize the plan first.",
                experiment_id=experiment_id,
            )
        return experiment, experiment.mode.plan, list(experiment.mode.history)

    def initialize(self, experiment_id: int, planned_sample_size: int,
                   num_checks: int = config.SEQUENTIAL_NUM_CHECKS):
        with _unit_of_work(self.repo, "Sequential initialize", experiment_id=experiment_id):
            experiment = self.repo.get_experiment(experiment_id)
            _require_mode(experiment, SEQUENTIAL)
            if experiment.mode.plan is not None:
                raise InvalidInputError(
                    f"Sequential plan already initialized for experiment {experiment_id}",
                    field="experiment_id",
                    value=experiment_id,
                )
            plan = sequential.initialize(experiment_id, planned_sample_size, num_checks)
            self.repo.save_experiment_plan(plan)

        logger.info("Initialized sequential plan for experiment %s: %d per variant, %d checks",
                    experiment_id, planned_sample_size, num_checks)
        return plan

    def perform_interim_analysis(self, experiment_id: int) -> Dict[str, Any]:
        with _unit_of_work(self.repo, "Interim analysis", experiment_id=experiment_id):
            experiment, plan, history = self._load(experiment_id)
            result = sequential.interim_analysis(plan, history, list(experiment.variants), self.alpha)
            if result["snapshot"] is not None:
                self.repo.append_sequential_snapshot(result["snapshot"])

        if result["snapshot"] is not None:
            logger.info("Interim analysis %d/%d for experiment %s: %s (z=%.3f)",
                        result["check_number"], plan.num_checks, experiment_id,
                        result["decision"], result["z_statistic"])
        else:
            logger.info("Interim analysis for experiment %s skipped: %s", experiment_id, result["reason"])
        return result

    def next_check_point(self, experiment_id: int) -> Dict[str, Any]:
        _, plan, history = self._load(experiment_id)
        return sequential.next_check_point(plan, history)

    def history(self, experiment_id: int) -> List[Dict[str, Any]]:
        _, _, history = self._load(experiment_id)
        return [sequential.snapshot_to_dict(s) for s in history]

    def results(self, experiment_id: int) -> Dict[str, Any]:
        _, plan, history = self._load(experiment_id)
        return sequential.results(plan, history, self.alpha)

    def auto_check_if_needed(self, experiment_id: int) -> Optional[Dict[str, Any]]:
        """Run the next interim analysis once enough assignments have arrived."""
        _, plan, history = self._load(experiment_id)
        next_point = sequential.next_check_point(plan, history)
        if not next_point["has_next"]:
            return None

        compared = self.repo.get_variant_counts(experiment_id)[:sequential.COMPARED_ARMS]
        current_total = sum(v.assignments for v in compared)
        if current_total < next_point["next_sample_size"]:
            return None

        logger.info("Auto-triggering interim analysis for experiment %s (%d >= %d)",
                    experiment_id, current_total, next_point["next_sample_size"])
        return self.perform_interim_analysis(experiment_id)


class BanditService:
    def __init__(self, repo: StatsRepository, rng: Optional[np.random.Generator] = None,
                 epsilon: float = config.BANDIT_EPSILON,
                 reallocation_interval: int = config.BANDIT_REALLOCATION_INTERVAL,
                 regret_interval: int = config.BANDIT_REGRET_INTERVAL):
        self.repo = repo
        self.rng = rng if rng is not None else make_rng(config.RANDOM_SEED)
        self.epsilon = epsilon
        self.reallocation_interval = reallocation_interval
        self.regret_interval = regret_interval

    def _experiment(self, experiment_id: int) -> Experiment:
        experiment = self.repo.get_experiment(experiment_id)
        _require_mode(experiment, BANDIT)
        return experiment

    def initialize(self, experiment_id: int, algorithm: str = THOMPSON,
                   allocations: Optional[Mapping[str, float]] = None) -> List[BanditArm]:
        """
        allocations maps variant name to its initial traffic share in percent;
        by default traffic is split evenly.
        """
        with _unit_of_work(self.repo, "Bandit initialize", experiment_id=experiment_id):
            experiment = self._experiment(experiment_id)
            if experiment.mode.arms:
                raise InvalidInputError(
                    f"Bandit state already initialized for experiment {experiment_id}",
                    field="experiment_id",
                    value=experiment_id,
                )
            even = 100 / len(experiment.variants) if experiment.variants else 0
            arms = bandit.initialize(
                experiment_id,
                [(v.variant_id, v.name, (allocations or {}).get(v.name, even)) for v in experiment.variants],
                algorithm,
            )
            for arm in arms:
                self.repo.save_bandit_arm(arm)
            self.repo.set_bandit_algorithm(experiment_id, algorithm)

        logger.info("Initialized %s bandit for experiment %s (%d arms)", algorithm, experiment_id, len(arms))
        return arms

    def select_arm(self, experiment_id: int) -> Dict[str, Any]:
        with _unit_of_work(self.repo, "Bandit arm selection", experiment_id=experiment_id):
            experiment = self._experiment(experiment_id)
            algorithm = experiment.mode.algorithm
            arms = self.repo.list_bandit_arms(experiment_id, for_update=True)
            if not arms:
                raise StateNotFoundError(
                    f"Bandit state not found for experiment {experiment_id}",
                    experiment_id=experiment_id,
                )
            variant_id = bandit.select_arm(arms, algorithm, self.rng, self.epsilon)
            chosen = bandit.record_pull(bandit.find_arm(arms, variant_id))
            self.repo.save_bandit_arm(chosen)

        logger.debug("Experiment %s selected variant %s via %s", experiment_id, chosen.name, algorithm)
        return {"variant_id": variant_id, "variant_name": chosen.name, "algorithm": algorithm}

    def update_reward(self, experiment_id: int, variant_id: int, reward: int) -> BanditArm:
        with _unit_of_work(self.repo, "Bandit reward update",
                           experiment_id=experiment_id, variant_id=variant_id):
            self._experiment(experiment_id)
            arms = self.repo.list_bandit_arms(experiment_id, for_update=True)
            updated = bandit.update_reward(bandit.find_arm(arms, variant_id), reward)
            arms = [updated if a.variant_id == variant_id else a for a in arms]
            self.repo.save_bandit_arm(updated)

            total = bandit.total_pulls(arms)
            if bandit.is_due(total, self.reallocation_interval):
                arms = bandit.reallocate(arms)
                for arm in arms:
                    self.repo.save_bandit_arm(arm)
                logger.debug("Reallocated traffic for experiment %s at %d pulls", experiment_id, total)
            if bandit.is_due(total, self.regret_interval):
                snapshot = self.repo.append_regret_snapshot(bandit.regret_snapshot(arms))
                logger.debug("Regret for experiment %s at %d pulls: %.4f",
                             experiment_id, total, snapshot.cumulative_regret)

        return bandit.find_arm(arms, variant_id)

    def allocations(self, experiment_id: int) -> List[Dict[str, Any]]:
        return [bandit.arm_to_dict(a) for a in self._experiment(experiment_id).mode.arms]

    def regret_history(self, experiment_id: int) -> List[Dict[str, Any]]:
        mode = self._experiment(experiment_id).mode
        return bandit.results(mode.algorithm, mode.arms, mode.regret_history)["regret_history"]

    def results(self, experiment_id: int) -> Dict[str, Any]:
        mode = self._experiment(experiment_id).mode
        return bandit.results(mode.algorithm, mode.arms, mode.regret_history)


class PowerAnalysisService:
    def __init__(self, repo: StatsRepository):
        self.repo = repo

    def calculate_sample_size(self, baseline_rate: float, mde: float,
                              power_target: float = 0.80, alpha: float = 0.05) -> Dict[str, Any]:
        try:
            return power.plan_experiment(baseline_rate, mde, power_target, alpha).to_dict()
        except Exception as exc:
            logger.error("Sample size calculation failed (baseline=%s, mde=%s): %s", baseline_rate, mde, exc)
            raise

    def create_power_analysis(self, baseline_rate: float, mde: float,
                              power_target: float = 0.80, alpha: float = 0.05,
                              variant_count: int = 2, daily_volume: Optional[int] = None,
                              experiment_id: Optional[int] = None) -> PowerAnalysis:
        with _unit_of_work(self.repo, "Power analysis", experiment_id=experiment_id,
                           baseline_rate=baseline_rate, mde=mde):
            analysis = power.plan_experiment(
                baseline_rate, mde, power_target, alpha,
                variant_count=variant_count,
                daily_volume=daily_volume,
                experiment_id=experiment_id,
            )
            saved = self.repo.save_power_analysis(analysis)

        logger.info("Created power analysis %s: %d per variant", saved.id, saved.sample_size_per_variant)
        return saved

    def get_power_analysis(self, analysis_id: int) -> PowerAnalysis:
        return self.repo.get_power_analysis(analysis_id)

    def calculate_mde_for_experiment(self, experiment_id: int, planned_sample_size: int,
                                     power_target: float = 0.80, alpha: float = 0.05) -> Dict[str, Any]:
        try:
            experiment = self.repo.get_experiment(experiment_id)
            if experiment.power_analysis is not None:
                baseline = experiment.power_analysis.baseline_rate
            else:
                # estimate from the data collected so far
                total = sum(v.assignments for v in experiment.variants)
                conversions = sum(v.conversions for v in experiment.variants)
                baseline = conversions / total if total else DEFAULT_BASELINE_RATE

            mde = power.minimum_detectable_effect(planned_sample_size, baseline, power_target, alpha)
        except Exception as exc:
            logger.error("MDE calculation failed for experiment %s: %s", experiment_id, exc)
            raise

        logger.info("Experiment %s can detect an absolute effect of %.4f with %d per variant",
                    experiment_id, mde, planned_sample_size)
        return {
            "baseline_rate": baseline,
            "planned_sample_size": planned_sample_size,
            "mde": mde,
            "relative_lift": round(mde / baseline * 100, 1),
            "power": power_target,
            "alpha": alpha,
        }

    def power_curve(self, baseline_rate: float, mde: float, alpha: float = 0.05) -> List[Dict[str, float]]:
        return power.power_curve(baseline_rate, mde, alpha)

    def estimate_duration_for_experiment(self, experiment_id: int, daily_volume: int) -> Dict[str, Any]:
        with _unit_of_work(self.repo, "Duration estimate", experiment_id=experiment_id):
            experiment = self.repo.get_experiment(experiment_id)
            analysis = experiment.power_analysis
            if analysis is None:
                raise PlanNotFoundError(
                    f"Power analysis not found for experiment {experiment_id}",
                    experiment_id=experiment_id,
                )
            variant_count = len(experiment.variants)
            days = power.estimate_duration(analysis.sample_size_per_variant, variant_count, daily_volume)
            self.repo.update_power_analysis_duration(analysis.id, daily_volume, days)

        logger.info("Experiment %s needs about %d days at %d/day", experiment_id, days, daily_volume)
        return {
            "sample_size_per_variant": analysis.sample_size_per_variant,
            "variant_count": variant_count,
            "total_required": analysis.sample_size_per_variant * variant_count,
            "daily_volume": daily_volume,
            "estimated_days": days,
            "estimated_weeks": round(days / 7, 1),
        }

    def recommendations(self, analysis: PowerAnalysis) -> Dict[str, Any]:
        return power.recommendations(analysis)


class FrequentistService:
    def __init__(self, repo: StatsRepository):
        self.repo = repo

    def import_counts_csv(self, experiment_id: int, file_obj) -> None:
        """Replace the experiment's aggregate counts with an uploaded CSV."""
        with _unit_of_work(self.repo, "CSV import", experiment_id=experiment_id):
            df = load_experiment_csv(file_obj)
            self.repo.set_variant_counts(experiment_id, counts_from_frame(df))
        logger.info("Imported %d variant rows for experiment %s", len(df), experiment_id)

    def analyze(self, experiment_id: int) -> Dict[str, Dict[str, Any]]:
        with _unit_of_work(self.repo, "Frequentist analysis", experiment_id=experiment_id):
            experiment = self.repo.get_experiment(experiment_id)
            _require_mode(experiment, FREQUENTIST)
            stats = compute_conversion_stats(list(experiment.variants))
            self.repo.save_frequentist_results(experiment_id, stats)
        return stats


class StatsEngine:
    """
    Entry point for the service layer: one object per request/session,
    routing inbound events to the engine of the experiment's mode.
    """

    def __init__(self, repo: StatsRepository, rng: Optional[np.random.Generator] = None):
        self.repo = repo
        self.rng = rng if rng is not None else make_rng(config.RANDOM_SEED)
        self.bayesian = BayesianService(repo, self.rng)
        self.sequential = SequentialService(repo)
        self.bandit = BanditService(repo, self.rng)
        self.power = PowerAnalysisService(repo)
        self.frequentist = FrequentistService(repo)

    def record_outcome(self, event: OutcomeEvent):
        """Apply one resolved assignment to the experiment's mode state."""
        experiment = self.repo.get_experiment(event.experiment_id)
        if experiment.analysis_mode == BAYESIAN:
            return self.bayesian.update_posterior(event.experiment_id, event.variant_id, event.success)
        if experiment.analysis_mode == BANDIT:
            return self.bandit.update_reward(event.experiment_id, event.variant_id, 1 if event.success else 0)
        raise AnalysisModeError(
            f"Experiment {experiment.id} uses {experiment.analysis_mode} analysis, "
            "which works on aggregate counts; use update_counts instead",
            experiment_id=experiment.id,
        )

    def update_counts(self, experiment_id: int, counts) -> Optional[Dict[str, Any]]:
        """
        Store new aggregate counts. For sequential experiments this may
        trigger the next interim analysis, whose result is returned.
        """
        with _unit_of_work(self.repo, "Count update", experiment_id=experiment_id):
            self.repo.set_variant_counts(experiment_id, counts)

        experiment = self.repo.get_experiment(experiment_id)
        if experiment.analysis_mode == SEQUENTIAL and experiment.mode.plan is not None:
            return self.sequential.auto_check_if_needed(experiment_id)
        return None
