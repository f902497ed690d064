"""
Group sequential testing with O'Brien-Fleming stopping boundaries.

An experiment gets a plan (sample size per variant, number of looks). At each
look we compare the first two variants with a pooled two-proportion Z test
and stop for efficacy or futility when Z crosses the boundary of that look.

Boundaries are z_{1-alpha/2} * sqrt(K/k) and alpha spent is
alpha * 2 * (1 - Phi(1.96 / sqrt(t))). Both are closed-form approximations,
not the exact recursive integrals.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple
import math

from .domain import InterimSnapshot, SequentialPlan, VariantCounts
from .errors import (
    InsufficientVariantsError,
    InvalidRangeError,
    PlanExhaustedError,
    PlanNotFoundError,
)
from .statmath import normal_cdf, normal_ppf, z_statistic

STOP_WINNER = "stop_winner"
STOP_FUTILE = "stop_futile"
CONTINUE = "continue"
STOP_PLANNED = "stop_planned"

NOT_STARTED = "not_started"
ONGOING = "ongoing"
STOPPED_EFFICACY = "stopped_efficacy"
STOPPED_FUTILITY = "stopped_futility"
COMPLETED = "completed"

# Two variants are compared at every look
COMPARED_ARMS = 2


def check_points(planned_sample_size: int, num_checks: int) -> Tuple[int, ...]:
    # half-up rounding: 2.5 -> 3
    return tuple(
        int(math.floor(k / num_checks * planned_sample_size + 0.5))
        for k in range(1, num_checks + 1)
    )


def initialize(
    experiment_id: int,
    planned_sample_size: int,
    num_checks: int = 5,
    created_at: Optional[datetime] = None,
) -> SequentialPlan:
    """Plan with evenly spaced looks; check_points are per-variant sample sizes."""
    if planned_sample_size <= 0:
        raise InvalidRangeError(
            "planned_sample_size must be positive",
            field="planned_sample_size",
            value=planned_sample_size,
        )
    if num_checks < 1:
        raise InvalidRangeError("num_checks must be at least 1", field="num_checks", value=num_checks)

    return SequentialPlan(
        experiment_id=experiment_id,
        planned_sample_size=planned_sample_size,
        num_checks=num_checks,
        check_points=check_points(planned_sample_size, num_checks),
        created_at=created_at or datetime.utcnow(),
    )


def _check_look(check_number: int, total_checks: int, alpha: float) -> None:
    if total_checks < 1:
        raise InvalidRangeError("total_checks must be at least 1", field="total_checks", value=total_checks)
    if not 1 <= check_number <= total_checks:
        raise InvalidRangeError(
            f"check_number must be between 1 and {total_checks}, got {check_number}",
            field="check_number",
            value=check_number,
        )
    if not 0 < alpha < 1:
        raise InvalidRangeError(f"alpha must be between 0 and 1, got {alpha}", field="alpha", value=alpha)


def obrien_fleming_bounds(check_number: int, total_checks: int, alpha: float = 0.05) -> Dict[str, float]:
    """Symmetric Z boundaries for look `check_number` of `total_checks`."""
    _check_look(check_number, total_checks, alpha)
    boundary = normal_ppf(1 - alpha / 2) * math.sqrt(total_checks / check_number)
    return {"upper": boundary, "lower": -boundary}


def alpha_spent(check_number: int, total_checks: int, alpha: float = 0.05) -> float:
    """Approximate cumulative type I error spent by look `check_number`."""
    _check_look(check_number, total_checks, alpha)
    t = check_number / total_checks
    return alpha * (2 * (1 - normal_cdf(1.96 / math.sqrt(t))))


def information_fraction(current_n: int, planned_n: int) -> float:
    """Observed share of the planned information, clamped to [0, 1]."""
    if planned_n <= 0:
        raise InvalidRangeError("planned_n must be positive", field="planned_n", value=planned_n)
    return min(max(current_n / planned_n, 0.0), 1.0)


def decide(z: float, upper: float, lower: float) -> Dict[str, Any]:
    if z >= upper:
        return {
            "should_stop": True,
            "decision": STOP_WINNER,
            "reason": f"Z-statistic ({z:.3f}) exceeds upper boundary ({upper:.3f}). "
                      "Significant difference found.",
        }
    if z <= lower:
        return {
            "should_stop": True,
            "decision": STOP_FUTILE,
            "reason": f"Z-statistic ({z:.3f}) below lower boundary ({lower:.3f}). "
                      "Unlikely to find significant difference.",
        }
    return {
        "should_stop": False,
        "decision": CONTINUE,
        "reason": f"Z-statistic ({z:.3f}) within boundaries. Continue collecting data.",
    }


def next_check_number(history: Sequence[InterimSnapshot]) -> int:
    return history[-1].check_number + 1 if history else 1


def require_remaining_checks(plan: SequentialPlan, history: Sequence[InterimSnapshot]) -> int:
    """Next check number, or PlanExhaustedError once every look is used."""
    number = next_check_number(history)
    if number > plan.num_checks:
        raise PlanExhaustedError(
            f"All {plan.num_checks} planned analyses have been performed",
            experiment_id=plan.experiment_id,
            check_number=number,
        )
    return number


def interim_analysis(
    plan: Optional[SequentialPlan],
    history: Sequence[InterimSnapshot],
    counts: Sequence[VariantCounts],
    alpha: float = 0.05,
    checked_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Run the next planned look.

    counts must be ordered the way variants are compared (by name); the
    first two are tested. The result carries a "snapshot" key holding the new
    InterimSnapshot to append, or None when no look was consumed (plan
    exhausted or a variant without data).
    """
    if plan is None:
        raise PlanNotFoundError("Sequential plan not found. Initialize the plan first.")
    if len(counts) < COMPARED_ARMS:
        raise InsufficientVariantsError(
            "Need at least 2 variants for sequential analysis",
            variant_count=len(counts),
        )

    try:
        check_number = require_remaining_checks(plan, history)
    except PlanExhaustedError as exc:
        return {
            "experiment_id": plan.experiment_id,
            "decision": STOP_PLANNED,
            "reason": "Reached planned number of analyses",
            "check_number": exc.check_number,
            "should_stop": True,
            "plan_exhausted": True,
            "error": exc,
            "snapshot": None,
        }

    a, b = counts[0], counts[1]
    if a.assignments == 0 or b.assignments == 0:
        return {
            "experiment_id": plan.experiment_id,
            "decision": CONTINUE,
            "reason": "Insufficient data for analysis",
            "check_number": check_number,
            "should_stop": False,
            "plan_exhausted": False,
            "error": None,
            "snapshot": None,
        }

    z = z_statistic(a.rate, a.assignments, b.rate, b.assignments)
    total_n = a.assignments + b.assignments
    info = information_fraction(total_n, plan.planned_sample_size * COMPARED_ARMS)
    bounds = obrien_fleming_bounds(check_number, plan.num_checks, alpha)
    spent = alpha_spent(check_number, plan.num_checks, alpha)
    verdict = decide(z, bounds["upper"], bounds["lower"])

    snapshot = InterimSnapshot(
        experiment_id=plan.experiment_id,
        check_number=check_number,
        total_checks=plan.num_checks,
        total_assignments=total_n,
        information_fraction=info,
        alpha_spent=spent,
        z_statistic=z,
        boundary_upper=bounds["upper"],
        boundary_lower=bounds["lower"],
        decision=verdict["decision"],
        reason=verdict["reason"],
        checked_at=checked_at or datetime.utcnow(),
    )

    return {
        "experiment_id": plan.experiment_id,
        "check_number": check_number,
        "total_checks": plan.num_checks,
        "z_statistic": z,
        "boundaries": bounds,
        "alpha_spent": spent,
        "information_fraction": info,
        "decision": verdict["decision"],
        "reason": verdict["reason"],
        "should_stop": verdict["should_stop"],
        "plan_exhausted": False,
        "error": None,
        "snapshot": snapshot,
        "data": {
            "variant_a": {"name": a.name, "n": a.assignments, "conversions": a.conversions, "rate": a.rate},
            "variant_b": {"name": b.name, "n": b.assignments, "conversions": b.conversions, "rate": b.rate},
        },
    }


def next_check_point(plan: SequentialPlan, history: Sequence[InterimSnapshot]) -> Dict[str, Any]:
    """
    Where the next look happens, as a total across the compared variants.
    """
    number = next_check_number(history)
    if number > plan.num_checks:
        return {"has_next": False, "message": "All planned checks completed"}

    totals = check_points(plan.planned_sample_size * COMPARED_ARMS, plan.num_checks)
    next_size = totals[number - 1]
    current = history[-1].total_assignments if history else 0
    return {
        "has_next": True,
        "next_check_number": number,
        "next_sample_size": next_size,
        "current_sample_size": current,
        "remaining": max(0, next_size - current),
    }


def current_status(history: Sequence[InterimSnapshot], next_point: Dict[str, Any]) -> Dict[str, str]:
    if not history:
        return {"status": NOT_STARTED, "message": "No interim analyses performed yet"}

    last = history[-1]
    if last.decision == STOP_WINNER:
        return {
            "status": STOPPED_EFFICACY,
            "message": "Stopped early: statistically significant difference found",
        }
    if last.decision == STOP_FUTILE:
        return {
            "status": STOPPED_FUTILITY,
            "message": "Stopped early: unlikely to find significant difference",
        }
    if not next_point["has_next"]:
        return {"status": COMPLETED, "message": "All planned analyses completed"}
    return {
        "status": ONGOING,
        "message": f"Check {last.check_number} completed. "
                   f"Continue to {next_point['next_sample_size']} total assignments.",
    }


def boundary_data(plan: SequentialPlan, alpha: float = 0.05) -> List[Dict[str, float]]:
    rows = []
    for k in range(1, plan.num_checks + 1):
        bounds = obrien_fleming_bounds(k, plan.num_checks, alpha)
        rows.append({"check_number": k, "upper": bounds["upper"], "lower": bounds["lower"]})
    return rows


def snapshot_to_dict(snapshot: InterimSnapshot) -> Dict[str, Any]:
    return {
        "check_number": snapshot.check_number,
        "total_assignments": snapshot.total_assignments,
        "information_fraction": snapshot.information_fraction,
        "alpha_spent": snapshot.alpha_spent,
        "z_statistic": snapshot.z_statistic,
        "boundaries": {"upper": snapshot.boundary_upper, "lower": snapshot.boundary_lower},
        "decision": snapshot.decision,
        "reason": snapshot.reason,
        "checked_at": snapshot.checked_at,
    }


def results(plan: SequentialPlan, history: Sequence[InterimSnapshot], alpha: float = 0.05) -> Dict[str, Any]:
    next_point = next_check_point(plan, history)
    return {
        "plan": {
            "planned_sample_size": plan.planned_sample_size,
            "num_checks": plan.num_checks,
            "check_points": list(plan.check_points),
        },
        "history": [snapshot_to_dict(s) for s in history],
        "next_check_point": next_point,
        "boundary_data": boundary_data(plan, alpha),
        "current_status": current_status(history, next_point),
    }
