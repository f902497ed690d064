"""
Immutable records passed between the repository and the pure engines.

The analysis mode of an experiment is a tagged union: an experiment holds
exactly one of BayesianMode, SequentialMode, BanditMode or FrequentistMode,
so bandit state can never appear on a Bayesian experiment.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Tuple, Union

BAYESIAN = "bayesian"
SEQUENTIAL = "sequential"
BANDIT = "bandit"
FREQUENTIST = "frequentist"
ANALYSIS_MODES = (BAYESIAN, SEQUENTIAL, BANDIT, FREQUENTIST)

THOMPSON = "thompson"
UCB = "ucb"
EPSILON_GREEDY = "epsilon_greedy"
BANDIT_ALGORITHMS = (THOMPSON, UCB, EPSILON_GREEDY)


@dataclass(frozen=True)
class VariantCounts:
    """Aggregate assignment/conversion counts for one variant."""
    variant_id: Optional[int]
    name: str
    assignments: int
    conversions: int

    @property
    def rate(self) -> float:
        return self.conversions / self.assignments if self.assignments > 0 else 0.0


@dataclass(frozen=True)
class OutcomeEvent:
    """An assignment resolution delivered by the event pipeline."""
    experiment_id: int
    variant_id: int
    success: bool


@dataclass(frozen=True)
class BayesianState:
    experiment_id: int
    variant_id: int
    name: str
    alpha_prior: float
    beta_prior: float
    alpha_posterior: float
    beta_posterior: float
    probability_best: Optional[float] = None
    credible_interval_lower: Optional[float] = None
    credible_interval_upper: Optional[float] = None
    expected_loss: Optional[float] = None

    @property
    def observations(self) -> int:
        """Outcomes absorbed into the posterior so far."""
        return int(
            (self.alpha_posterior - self.alpha_prior)
            + (self.beta_posterior - self.beta_prior)
        )


@dataclass(frozen=True)
class SequentialPlan:
    experiment_id: int
    planned_sample_size: int  # per variant
    num_checks: int
    check_points: Tuple[int, ...]
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class InterimSnapshot:
    """One interim analysis. Appended to the log and never modified."""
    experiment_id: int
    check_number: int
    total_checks: int
    total_assignments: int
    information_fraction: float
    alpha_spent: float
    z_statistic: float
    boundary_upper: float
    boundary_lower: float
    decision: str
    reason: str
    checked_at: Optional[datetime] = None


@dataclass(frozen=True)
class BanditArm:
    experiment_id: int
    variant_id: int
    name: str
    success_count: int = 0
    failure_count: int = 0
    pulls: int = 0
    cumulative_reward: float = 0.0
    mean_reward: float = 0.0
    current_allocation: float = 0.0
    initial_allocation: float = 0.0


@dataclass(frozen=True)
class RegretSnapshot:
    experiment_id: int
    total_pulls: int
    cumulative_regret: float
    optimal_variant_id: int
    recorded_at: Optional[datetime] = None


@dataclass(frozen=True)
class PowerAnalysis:
    baseline_rate: float
    mde: float
    relative_lift: float
    power: float
    alpha: float
    sample_size_per_variant: int
    variant_count: int
    total_sample_size: int
    daily_volume: Optional[int] = None
    estimated_duration: Optional[int] = None
    id: Optional[int] = None
    experiment_id: Optional[int] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        report = {
            "baseline_rate": self.baseline_rate,
            "mde": self.mde,
            "relative_lift": self.relative_lift,
            "power": self.power,
            "alpha": self.alpha,
            "sample_size_per_variant": self.sample_size_per_variant,
            "total_sample_size": self.total_sample_size,
            "variant_count": self.variant_count,
        }
        if self.estimated_duration is not None:
            report["estimated_duration"] = self.estimated_duration
            report["daily_volume"] = self.daily_volume
        if self.id is not None:
            report["id"] = self.id
        return report


@dataclass(frozen=True)
class BayesianMode:
    states: Tuple[BayesianState, ...] = ()
    tag: str = field(default=BAYESIAN, init=False)


@dataclass(frozen=True)
class SequentialMode:
    plan: Optional[SequentialPlan] = None
    history: Tuple[InterimSnapshot, ...] = ()
    tag: str = field(default=SEQUENTIAL, init=False)


@dataclass(frozen=True)
class BanditMode:
    algorithm: Optional[str] = None
    arms: Tuple[BanditArm, ...] = ()
    regret_history: Tuple[RegretSnapshot, ...] = ()
    tag: str = field(default=BANDIT, init=False)


@dataclass(frozen=True)
class FrequentistMode:
    tag: str = field(default=FREQUENTIST, init=False)


AnalysisMode = Union[BayesianMode, SequentialMode, BanditMode, FrequentistMode]


@dataclass(frozen=True)
class Experiment:
    id: int
    name: str
    mode: AnalysisMode
    variants: Tuple[VariantCounts, ...] = ()
    hypothesis: Optional[str] = None
    power_analysis: Optional[PowerAnalysis] = None

    @property
    def analysis_mode(self) -> str:
        return self.mode.tag
