"""
Storage boundary of the engine.

StatsRepository is the capability the orchestration layer depends on;
SqlAlchemyRepository is the implementation backed by the ORM tables in
models.py. Everything crossing this boundary is an immutable record from
domain.py, never an ORM row.

Counter rows are read with SELECT ... FOR UPDATE when the caller intends to
write them back, so each variant's counters have a single writer per
transaction. (SQLite ignores the lock hint; it serializes writers anyway.)
"""
from typing import Dict, List, Optional, Protocol, Sequence

from sqlalchemy.orm import Session

from . import models
from .domain import (
    ANALYSIS_MODES,
    BANDIT,
    BAYESIAN,
    SEQUENTIAL,
    BanditArm,
    BanditMode,
    BayesianMode,
    BayesianState,
    Experiment,
    FrequentistMode,
    InterimSnapshot,
    PowerAnalysis,
    RegretSnapshot,
    SequentialMode,
    SequentialPlan,
    VariantCounts,
)
from .errors import (
    ExperimentNotFoundError,
    InvalidInputError,
    StateNotFoundError,
)
from .sequential import check_points


class StatsRepository(Protocol):
    def create_experiment(
        self,
        name: str,
        analysis_mode: str,
        variant_names: Sequence[str],
        hypothesis: Optional[str] = None,
    ) -> Experiment: ...

    def get_experiment(self, experiment_id: int) -> Experiment: ...

    def get_variant_counts(self, experiment_id: int) -> List[VariantCounts]: ...

    def set_variant_counts(self, experiment_id: int, counts: Sequence[VariantCounts]) -> None: ...

    def save_frequentist_results(self, experiment_id: int, results: Dict[str, dict]) -> None: ...

    def list_variant_states(self, experiment_id: int) -> List[BayesianState]: ...

    def get_variant_state(self, experiment_id: int, variant_id: int, for_update: bool = False) -> BayesianState: ...

    def save_variant_state(self, state: BayesianState) -> None: ...

    def list_bandit_arms(self, experiment_id: int, for_update: bool = False) -> List[BanditArm]: ...

    def get_bandit_arm(self, experiment_id: int, variant_id: int) -> BanditArm: ...

    def save_bandit_arm(self, arm: BanditArm) -> None: ...

    def set_bandit_algorithm(self, experiment_id: int, algorithm: str) -> None: ...

    def append_regret_snapshot(self, snapshot: RegretSnapshot) -> RegretSnapshot: ...

    def list_regret_snapshots(self, experiment_id: int) -> List[RegretSnapshot]: ...

    def get_experiment_plan(self, experiment_id: int) -> Optional[SequentialPlan]: ...

    def save_experiment_plan(self, plan: SequentialPlan) -> None: ...

    def append_sequential_snapshot(self, snapshot: InterimSnapshot) -> None: ...

    def list_sequential_snapshots(self, experiment_id: int) -> List[InterimSnapshot]: ...

    def save_power_analysis(self, analysis: PowerAnalysis) -> PowerAnalysis: ...

    def get_power_analysis(self, analysis_id: int) -> PowerAnalysis: ...

    def update_power_analysis_duration(self, analysis_id: int, daily_volume: int, duration: int) -> PowerAnalysis: ...

    def commit(self) -> None: ...

    def rollback(self) -> None: ...


def _to_counts(row: models.Variant) -> VariantCounts:
    return VariantCounts(
        variant_id=row.id,
        name=row.name,
        assignments=row.assignments or 0,
        conversions=row.conversions or 0,
    )


def _to_bayesian(row: models.BayesianStats) -> BayesianState:
    return BayesianState(
        experiment_id=row.experiment_id,
        variant_id=row.variant_id,
        name=row.variant.name,
        alpha_prior=row.alpha_prior,
        beta_prior=row.beta_prior,
        alpha_posterior=row.alpha_posterior,
        beta_posterior=row.beta_posterior,
        probability_best=row.probability_best,
        credible_interval_lower=row.credible_interval_lower,
        credible_interval_upper=row.credible_interval_upper,
        expected_loss=row.expected_loss,
    )


def _to_arm(row: models.BanditState) -> BanditArm:
    return BanditArm(
        experiment_id=row.experiment_id,
        variant_id=row.variant_id,
        name=row.variant.name,
        success_count=row.success_count,
        failure_count=row.failure_count,
        pulls=row.pulls,
        cumulative_reward=row.cumulative_reward,
        mean_reward=row.mean_reward,
        current_allocation=row.current_allocation,
        initial_allocation=row.initial_allocation,
    )


def _to_regret(row: models.BanditRegret) -> RegretSnapshot:
    return RegretSnapshot(
        experiment_id=row.experiment_id,
        total_pulls=row.total_pulls,
        cumulative_regret=row.cumulative_regret,
        optimal_variant_id=row.optimal_variant_id,
        recorded_at=row.recorded_at,
    )


def _to_plan(row: models.SequentialPlan) -> SequentialPlan:
    return SequentialPlan(
        experiment_id=row.experiment_id,
        planned_sample_size=row.planned_sample_size,
        num_checks=row.num_checks,
        check_points=check_points(row.planned_sample_size, row.num_checks),
        created_at=row.created_at,
    )


def _to_snapshot(row: models.SequentialAnalysis) -> InterimSnapshot:
    return InterimSnapshot(
        experiment_id=row.experiment_id,
        check_number=row.check_number,
        total_checks=row.total_checks,
        total_assignments=row.total_assignments,
        information_fraction=row.information_fraction,
        alpha_spent=row.alpha_spent,
        z_statistic=row.z_statistic,
        boundary_upper=row.boundary_upper,
        boundary_lower=row.boundary_lower,
        decision=row.decision,
        reason=row.decision_reason or "",
        checked_at=row.checked_at,
    )


def _to_power(row: models.PowerAnalysis) -> PowerAnalysis:
    return PowerAnalysis(
        id=row.id,
        experiment_id=row.experiment_id,
        baseline_rate=row.baseline_rate,
        mde=row.minimum_detectable_effect,
        relative_lift=round(row.minimum_detectable_effect / row.baseline_rate * 100, 1),
        power=row.desired_power,
        alpha=row.significance_level,
        sample_size_per_variant=row.required_sample_size,
        variant_count=row.variant_count,
        total_sample_size=row.total_sample_size,
        daily_volume=row.daily_volume,
        estimated_duration=row.estimated_duration_days,
        created_at=row.created_at,
    )


class SqlAlchemyRepository:
    """StatsRepository backed by a SQLAlchemy session owned by the caller."""

    def __init__(self, db: Session):
        self.db = db

    # -- experiments and variants -------------------------------------------

    def _experiment_row(self, experiment_id: int) -> models.Experiment:
        row = self.db.get(models.Experiment, experiment_id)
        if row is None:
            raise ExperimentNotFoundError(f"Experiment {experiment_id} not found", experiment_id=experiment_id)
        return row

    def create_experiment(self, name, analysis_mode, variant_names, hypothesis=None) -> Experiment:
        if analysis_mode not in ANALYSIS_MODES:
            raise InvalidInputError(
                f"Unknown analysis mode: {analysis_mode}",
                field="analysis_mode",
                value=analysis_mode,
            )
        experiment = models.Experiment(name=name, hypothesis=hypothesis, analysis_mode=analysis_mode)
        experiment.variants = [models.Variant(name=v, assignments=0, conversions=0) for v in variant_names]
        self.db.add(experiment)
        self.db.flush()
        return self.get_experiment(experiment.id)

    def get_experiment(self, experiment_id: int) -> Experiment:
        row = self._experiment_row(experiment_id)

        if row.analysis_mode == BAYESIAN:
            mode = BayesianMode(states=tuple(self.list_variant_states(experiment_id)))
        elif row.analysis_mode == SEQUENTIAL:
            mode = SequentialMode(
                plan=self.get_experiment_plan(experiment_id),
                history=tuple(self.list_sequential_snapshots(experiment_id)),
            )
        elif row.analysis_mode == BANDIT:
            mode = BanditMode(
                algorithm=row.bandit_algorithm,
                arms=tuple(self.list_bandit_arms(experiment_id)),
                regret_history=tuple(self.list_regret_snapshots(experiment_id)),
            )
        else:
            mode = FrequentistMode()

        return Experiment(
            id=row.id,
            name=row.name,
            hypothesis=row.hypothesis,
            mode=mode,
            variants=tuple(_to_counts(v) for v in row.variants),
            power_analysis=_to_power(row.power_analysis) if row.power_analysis else None,
        )

    def get_variant_counts(self, experiment_id: int) -> List[VariantCounts]:
        rows = (
            self.db.query(models.Variant)
            .filter(models.Variant.experiment_id == experiment_id)
            .order_by(models.Variant.name)
            .all()
        )
        return [_to_counts(r) for r in rows]

    def set_variant_counts(self, experiment_id: int, counts: Sequence[VariantCounts]) -> None:
        """Overwrite aggregate counts, matching variants by name."""
        rows = {
            r.name: r
            for r in self.db.query(models.Variant)
            .filter(models.Variant.experiment_id == experiment_id)
            .with_for_update()
        }
        for c in counts:
            row = rows.get(c.name)
            if row is None:
                raise StateNotFoundError(
                    f"Variant {c.name} not found in experiment {experiment_id}",
                    experiment_id=experiment_id,
                )
            row.assignments = c.assignments
            row.conversions = c.conversions
        self.db.flush()

    def save_frequentist_results(self, experiment_id: int, results: Dict[str, dict]) -> None:
        rows = (
            self.db.query(models.Variant)
            .filter(models.Variant.experiment_id == experiment_id)
            .all()
        )
        for row in rows:
            v = results.get(row.name)
            if v is None:
                continue
            row.conversion_rate = v["conversion_rate"]
            row.uplift = v.get("uplift")      # may be missing for control
            row.p_value = v.get("p_value")    # may be missing for control
        self.db.flush()

    # -- bayesian -------------------------------------------------------------

    def list_variant_states(self, experiment_id: int) -> List[BayesianState]:
        rows = (
            self.db.query(models.BayesianStats)
            .join(models.Variant, models.Variant.id == models.BayesianStats.variant_id)
            .filter(models.BayesianStats.experiment_id == experiment_id)
            .order_by(models.Variant.name)
            .all()
        )
        return [_to_bayesian(r) for r in rows]

    def _bayesian_row(self, experiment_id: int, variant_id: int, for_update: bool = False):
        query = self.db.query(models.BayesianStats).filter(
            models.BayesianStats.experiment_id == experiment_id,
            models.BayesianStats.variant_id == variant_id,
        )
        if for_update:
            query = query.with_for_update()
        return query.first()

    def get_variant_state(self, experiment_id: int, variant_id: int, for_update: bool = False) -> BayesianState:
        row = self._bayesian_row(experiment_id, variant_id, for_update)
        if row is None:
            raise StateNotFoundError(
                f"Bayesian stats not found for experiment {experiment_id}, variant {variant_id}",
                experiment_id=experiment_id,
                variant_id=variant_id,
            )
        return _to_bayesian(row)

    def save_variant_state(self, state: BayesianState) -> None:
        row = self._bayesian_row(state.experiment_id, state.variant_id)
        if row is None:
            row = models.BayesianStats(experiment_id=state.experiment_id, variant_id=state.variant_id)
            self.db.add(row)
        row.alpha_prior = state.alpha_prior
        row.beta_prior = state.beta_prior
        row.alpha_posterior = state.alpha_posterior
        row.beta_posterior = state.beta_posterior
        row.probability_best = state.probability_best
        row.credible_interval_lower = state.credible_interval_lower
        row.credible_interval_upper = state.credible_interval_upper
        row.expected_loss = state.expected_loss
        self.db.flush()

    # -- bandit -----------------------------------------------------------------

    def list_bandit_arms(self, experiment_id: int, for_update: bool = False) -> List[BanditArm]:
        query = (
            self.db.query(models.BanditState)
            .join(models.Variant, models.Variant.id == models.BanditState.variant_id)
            .filter(models.BanditState.experiment_id == experiment_id)
            .order_by(models.Variant.name)
        )
        if for_update:
            query = query.with_for_update()
        return [_to_arm(r) for r in query.all()]

    def _arm_row(self, experiment_id: int, variant_id: int):
        return (
            self.db.query(models.BanditState)
            .filter(
                models.BanditState.experiment_id == experiment_id,
                models.BanditState.variant_id == variant_id,
            )
            .first()
        )

    def get_bandit_arm(self, experiment_id: int, variant_id: int) -> BanditArm:
        row = self._arm_row(experiment_id, variant_id)
        if row is None:
            raise StateNotFoundError(
                f"Bandit state not found for experiment {experiment_id}, variant {variant_id}",
                experiment_id=experiment_id,
                variant_id=variant_id,
            )
        return _to_arm(row)

    def save_bandit_arm(self, arm: BanditArm) -> None:
        row = self._arm_row(arm.experiment_id, arm.variant_id)
        if row is None:
            row = models.BanditState(experiment_id=arm.experiment_id, variant_id=arm.variant_id)
            self.db.add(row)
        row.success_count = arm.success_count
        row.failure_count = arm.failure_count
        row.pulls = arm.pulls
        row.cumulative_reward = arm.cumulative_reward
        row.mean_reward = arm.mean_reward
        row.current_allocation = arm.current_allocation
        row.initial_allocation = arm.initial_allocation
        self.db.flush()

    def set_bandit_algorithm(self, experiment_id: int, algorithm: str) -> None:
        self._experiment_row(experiment_id).bandit_algorithm = algorithm
        self.db.flush()

    def append_regret_snapshot(self, snapshot: RegretSnapshot) -> RegretSnapshot:
        """Store a snapshot once per pull count; a replay returns the stored one."""
        existing = (
            self.db.query(models.BanditRegret)
            .filter(
                models.BanditRegret.experiment_id == snapshot.experiment_id,
                models.BanditRegret.total_pulls == snapshot.total_pulls,
            )
            .first()
        )
        if existing is not None:
            return _to_regret(existing)

        row = models.BanditRegret(
            experiment_id=snapshot.experiment_id,
            total_pulls=snapshot.total_pulls,
            cumulative_regret=snapshot.cumulative_regret,
            optimal_variant_id=snapshot.optimal_variant_id,
        )
        self.db.add(row)
        self.db.flush()
        return _to_regret(row)

    def list_regret_snapshots(self, experiment_id: int) -> List[RegretSnapshot]:
        rows = (
            self.db.query(models.BanditRegret)
            .filter(models.BanditRegret.experiment_id == experiment_id)
            .order_by(models.BanditRegret.total_pulls)
            .all()
        )
        return [_to_regret(r) for r in rows]

    # -- sequential ---------------------------------------------------------

    def get_experiment_plan(self, experiment_id: int) -> Optional[SequentialPlan]:
        row = (
            self.db.query(models.SequentialPlan)
            .filter(models.SequentialPlan.experiment_id == experiment_id)
            .first()
        )
        return _to_plan(row) if row else None

    def save_experiment_plan(self, plan: SequentialPlan) -> None:
        row = (
            self.db.query(models.SequentialPlan)
            .filter(models.SequentialPlan.experiment_id == plan.experiment_id)
            .first()
        )
        if row is None:
            row = models.SequentialPlan(experiment_id=plan.experiment_id)
            self.db.add(row)
        row.planned_sample_size = plan.planned_sample_size
        row.num_checks = plan.num_checks
        row.created_at = plan.created_at
        self.db.flush()

    def append_sequential_snapshot(self, snapshot: InterimSnapshot) -> None:
        exists = (
            self.db.query(models.SequentialAnalysis.id)
            .filter(
                models.SequentialAnalysis.experiment_id == snapshot.experiment_id,
                models.SequentialAnalysis.check_number == snapshot.check_number,
            )
            .first()
        )
        if exists:
            raise InvalidInputError(
                f"Check {snapshot.check_number} is already recorded for experiment {snapshot.experiment_id}",
                field="check_number",
                value=snapshot.check_number,
            )
        self.db.add(models.SequentialAnalysis(
            experiment_id=snapshot.experiment_id,
            check_number=snapshot.check_number,
            total_checks=snapshot.total_checks,
            total_assignments=snapshot.total_assignments,
            information_fraction=snapshot.information_fraction,
            alpha_spent=snapshot.alpha_spent,
            z_statistic=snapshot.z_statistic,
            boundary_upper=snapshot.boundary_upper,
            boundary_lower=snapshot.boundary_lower,
            decision=snapshot.decision,
            decision_reason=snapshot.reason,
            checked_at=snapshot.checked_at,
        ))
        self.db.flush()

    def list_sequential_snapshots(self, experiment_id: int) -> List[InterimSnapshot]:
        rows = (
            self.db.query(models.SequentialAnalysis)
            .filter(models.SequentialAnalysis.experiment_id == experiment_id)
            .order_by(models.SequentialAnalysis.check_number)
            .all()
        )
        return [_to_snapshot(r) for r in rows]

    # -- power analysis -----------------------------------------------------

    def save_power_analysis(self, analysis: PowerAnalysis) -> PowerAnalysis:
        row = models.PowerAnalysis(
            experiment_id=analysis.experiment_id,
            baseline_rate=analysis.baseline_rate,
            minimum_detectable_effect=analysis.mde,
            desired_power=analysis.power,
            significance_level=analysis.alpha,
            required_sample_size=analysis.sample_size_per_variant,
            variant_count=analysis.variant_count,
            total_sample_size=analysis.total_sample_size,
            daily_volume=analysis.daily_volume,
            estimated_duration_days=analysis.estimated_duration,
        )
        self.db.add(row)
        self.db.flush()
        if analysis.experiment_id is not None:
            self._experiment_row(analysis.experiment_id).power_analysis = row
            self.db.flush()
        return _to_power(row)

    def _power_row(self, analysis_id: int) -> models.PowerAnalysis:
        row = self.db.get(models.PowerAnalysis, analysis_id)
        if row is None:
            raise StateNotFoundError(f"Power analysis {analysis_id} not found")
        return row

    def get_power_analysis(self, analysis_id: int) -> PowerAnalysis:
        return _to_power(self._power_row(analysis_id))

    def update_power_analysis_duration(self, analysis_id: int, daily_volume: int, duration: int) -> PowerAnalysis:
        row = self._power_row(analysis_id)
        row.daily_volume = daily_volume
        row.estimated_duration_days = duration
        self.db.flush()
        return _to_power(row)

    # -- transactions -------------------------------------------------------

    def commit(self) -> None:
        self.db.commit()

    def rollback(self) -> None:
        self.db.rollback()
