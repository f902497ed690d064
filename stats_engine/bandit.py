"""
Multi-armed bandit traffic allocation.

Supported policies:
- thompson: sample Beta(successes + 1, failures + 1) per arm, take the max
- ucb: UCB1, mean reward plus sqrt(2 ln N / n_i); unpulled arms go first
- epsilon_greedy: explore uniformly with probability epsilon, else exploit

A pull is recorded when an arm is selected, before its reward is known.
Rewards arrive later through update_reward().
"""
from dataclasses import replace
from typing import Any, Dict, List, Optional, Sequence, Tuple
import math

import numpy as np

from .domain import BANDIT_ALGORITHMS, EPSILON_GREEDY, THOMPSON, UCB, BanditArm, RegretSnapshot
from .errors import InsufficientDataError, InvalidInputError, InvalidRangeError, StateNotFoundError
from .statmath import beta_sample


def initialize(
    experiment_id: int,
    variants: Sequence[Tuple[int, str, float]],
    algorithm: str = THOMPSON,
) -> List[BanditArm]:
    """
    variants are (variant_id, name, initial_allocation) triples. Allocations
    are expected to sum to 100 but are taken as given.
    """
    check_algorithm(algorithm)
    return [
        BanditArm(
            experiment_id=experiment_id,
            variant_id=variant_id,
            name=name,
            current_allocation=float(allocation),
            initial_allocation=float(allocation),
        )
        for variant_id, name, allocation in variants
    ]


def check_algorithm(algorithm: str) -> None:
    if algorithm not in BANDIT_ALGORITHMS:
        raise InvalidInputError(f"Unknown bandit algorithm: {algorithm}", field="algorithm", value=algorithm)


def _require_arms(arms: Sequence[BanditArm]) -> None:
    if not arms:
        raise InsufficientDataError("No arms to select from", field="arms")


def _argmax(arms: Sequence[BanditArm], scores: Sequence[float]) -> int:
    # strict comparison: ties keep the earliest arm
    best = 0
    for i in range(1, len(arms)):
        if scores[i] > scores[best]:
            best = i
    return arms[best].variant_id


def thompson_sampling(arms: Sequence[BanditArm], rng: np.random.Generator) -> int:
    _require_arms(arms)
    draws = [beta_sample(arm.success_count + 1, arm.failure_count + 1, rng) for arm in arms]
    return _argmax(arms, draws)


def upper_confidence_bound(arms: Sequence[BanditArm]) -> int:
    _require_arms(arms)
    total_pulls = sum(arm.pulls for arm in arms)
    scores = []
    for arm in arms:
        if arm.pulls == 0:
            scores.append(math.inf)
        else:
            scores.append(arm.mean_reward + math.sqrt(2 * math.log(total_pulls) / arm.pulls))
    return _argmax(arms, scores)


def epsilon_greedy(arms: Sequence[BanditArm], epsilon: float, rng: np.random.Generator) -> int:
    _require_arms(arms)
    if not 0 <= epsilon <= 1:
        raise InvalidRangeError(f"epsilon must be in [0, 1], got {epsilon}", field="epsilon", value=epsilon)

    if epsilon > 0 and rng.random() < epsilon:
        return arms[int(rng.integers(len(arms)))].variant_id
    return _argmax(arms, [arm.mean_reward for arm in arms])


def select_arm(
    arms: Sequence[BanditArm],
    algorithm: str,
    rng: np.random.Generator,
    epsilon: float = 0.1,
) -> int:
    check_algorithm(algorithm)
    if algorithm == THOMPSON:
        return thompson_sampling(arms, rng)
    if algorithm == UCB:
        return upper_confidence_bound(arms)
    return epsilon_greedy(arms, epsilon, rng)


def find_arm(arms: Sequence[BanditArm], variant_id: int) -> BanditArm:
    for arm in arms:
        if arm.variant_id == variant_id:
            return arm
    experiment_id = arms[0].experiment_id if arms else None
    raise StateNotFoundError(
        f"Bandit state not found for experiment {experiment_id}, variant {variant_id}",
        experiment_id=experiment_id,
        variant_id=variant_id,
    )


def record_pull(arm: BanditArm) -> BanditArm:
    return replace(arm, pulls=arm.pulls + 1)


def update_reward(arm: BanditArm, reward: int) -> BanditArm:
    """Resolve one outstanding pull of `arm` with a binary reward."""
    if reward not in (0, 1):
        raise InvalidRangeError(f"reward must be 0 or 1, got {reward}", field="reward", value=reward)
    if arm.success_count + arm.failure_count >= arm.pulls:
        raise InsufficientDataError(
            f"Variant {arm.variant_id} has no unresolved pull to reward",
            field="pulls",
            value=arm.pulls,
        )

    cumulative = arm.cumulative_reward + reward
    return replace(
        arm,
        success_count=arm.success_count + reward,
        failure_count=arm.failure_count + (1 - reward),
        cumulative_reward=cumulative,
        mean_reward=cumulative / arm.pulls,
    )


def total_pulls(arms: Sequence[BanditArm]) -> int:
    return sum(arm.pulls for arm in arms)


def reallocate(arms: Sequence[BanditArm]) -> List[BanditArm]:
    """Set current allocations proportional to each arm's share of pulls."""
    total = total_pulls(arms)
    if total == 0:
        return list(arms)
    return [replace(arm, current_allocation=arm.pulls / total * 100) for arm in arms]


def best_arm(arms: Sequence[BanditArm]) -> BanditArm:
    _require_arms(arms)
    best = arms[0]
    for arm in arms[1:]:
        if arm.mean_reward > best.mean_reward:
            best = arm
    return best


def regret(arms: Sequence[BanditArm]) -> float:
    """
    Cumulative regret against the running best-mean arm:
    optimal_mean * total_pulls - total reward, floored at zero.
    """
    if not arms:
        return 0.0
    optimal_mean = best_arm(arms).mean_reward
    actual = sum(arm.cumulative_reward for arm in arms)
    return max(0.0, optimal_mean * total_pulls(arms) - actual)


def regret_snapshot(arms: Sequence[BanditArm]) -> RegretSnapshot:
    _require_arms(arms)
    return RegretSnapshot(
        experiment_id=arms[0].experiment_id,
        total_pulls=total_pulls(arms),
        cumulative_regret=regret(arms),
        optimal_variant_id=best_arm(arms).variant_id,
    )


def is_due(total: int, interval: int) -> bool:
    return interval > 0 and total > 0 and total % interval == 0


def arm_to_dict(arm: BanditArm) -> Dict[str, Any]:
    return {
        "variant_id": arm.variant_id,
        "variant_name": arm.name,
        "current_allocation": arm.current_allocation,
        "initial_allocation": arm.initial_allocation,
        "mean_reward": arm.mean_reward,
        "pulls": arm.pulls,
        "success_count": arm.success_count,
        "failure_count": arm.failure_count,
    }


def summary(arms: Sequence[BanditArm], total_regret: float) -> Dict[str, Any]:
    pulls = total_pulls(arms)
    avg_regret = total_regret / pulls if pulls > 0 else 0.0
    return {
        "total_pulls": pulls,
        "total_regret": round(total_regret, 4),
        "avg_regret_per_pull": round(avg_regret, 6),
        "allocation_shifts": [
            {"variant": arm.name, "shift": arm.current_allocation - arm.initial_allocation}
            for arm in arms
        ],
        "message": f"Performed {pulls} pulls with {total_regret:.2f} cumulative regret. "
                   "Traffic dynamically allocated based on performance.",
    }


def results(
    algorithm: Optional[str],
    arms: Sequence[BanditArm],
    regret_history: Sequence[RegretSnapshot],
) -> Dict[str, Any]:
    total_regret = regret_history[-1].cumulative_regret if regret_history else 0.0
    best = best_arm(arms)
    return {
        "algorithm": algorithm or "unknown",
        "allocations": [arm_to_dict(arm) for arm in arms],
        "regret_history": [
            {
                "total_pulls": snap.total_pulls,
                "cumulative_regret": snap.cumulative_regret,
                "optimal_variant_id": snap.optimal_variant_id,
                "recorded_at": snap.recorded_at,
            }
            for snap in regret_history
        ],
        "total_regret": total_regret,
        "best_performer": {
            "variant_id": best.variant_id,
            "variant_name": best.name,
            "mean_reward": best.mean_reward,
        },
        "summary": summary(arms, total_regret),
    }
