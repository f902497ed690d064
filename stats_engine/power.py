"""
Power and sample-size planning for two-proportion experiments.

Effects are absolute: baseline 0.10 with mde 0.02 plans for detecting a move
from 10% to 12%.
"""
from typing import Any, Dict, List, Optional
import math

from .domain import PowerAnalysis
from .errors import InvalidRangeError
from .statmath import normal_cdf, normal_ppf

# Sample sizes (per variant) plotted by power_curve
POWER_CURVE_SIZES = (
    50, 100, 150, 200, 300, 400, 500, 750,
    1000, 1500, 2000, 3000, 4000, 5000,
)

MDE_SEARCH_ITERATIONS = 20
MDE_POWER_TOLERANCE = 0.001

# Computed power is kept inside the open interval (0, 1)
POWER_EPSILON = 1e-9


def _check_open_unit(name: str, value: float) -> None:
    if not 0 < value < 1:
        raise InvalidRangeError(f"{name} must be between 0 and 1, got {value}", field=name, value=value)


def _check_rates(baseline_rate: float, mde: float) -> None:
    _check_open_unit("baseline_rate", baseline_rate)
    _check_open_unit("mde", mde)
    if baseline_rate + mde >= 1:
        raise InvalidRangeError(
            f"baseline_rate + mde must stay below 1 (got {baseline_rate + mde})",
            field="mde",
            value=mde,
        )


def _check_sample_size(n: int) -> None:
    if n <= 0:
        raise InvalidRangeError(f"Sample size must be positive, got {n}", field="n", value=n)


def sample_size(baseline_rate: float, mde: float, power: float = 0.80, alpha: float = 0.05) -> int:
    """
    Required sample size per variant for a two-sided two-proportion test.
    """
    _check_rates(baseline_rate, mde)
    _check_open_unit("power", power)
    if power < 0.5:
        raise InvalidRangeError(
            f"power must be at least 0.5 for sample size planning, got {power}",
            field="power",
            value=power,
        )
    _check_open_unit("alpha", alpha)

    p1 = baseline_rate
    p2 = baseline_rate + mde
    z_alpha = normal_ppf(1 - alpha / 2)
    z_beta = normal_ppf(power)
    p_bar = (p1 + p2) / 2

    numerator = (
        z_alpha * math.sqrt(2 * p_bar * (1 - p_bar))
        + z_beta * math.sqrt(p1 * (1 - p1) + p2 * (1 - p2))
    ) ** 2
    denominator = (p2 - p1) ** 2
    return math.ceil(numerator / denominator)


def power(n: int, baseline_rate: float, mde: float, alpha: float = 0.05) -> float:
    """Statistical power reached with n observations per variant."""
    _check_sample_size(n)
    _check_rates(baseline_rate, mde)
    _check_open_unit("alpha", alpha)

    p1 = baseline_rate
    p2 = baseline_rate + mde
    z_alpha = normal_ppf(1 - alpha / 2)
    p_bar = (p1 + p2) / 2

    se1 = math.sqrt(p1 * (1 - p1) / n + p2 * (1 - p2) / n)
    se0 = math.sqrt(2 * p_bar * (1 - p_bar) / n)
    z_beta = (abs(p2 - p1) - z_alpha * se0) / se1
    return min(max(normal_cdf(z_beta), POWER_EPSILON), 1 - POWER_EPSILON)


def minimum_detectable_effect(
    n: int,
    baseline_rate: float,
    power_target: float = 0.80,
    alpha: float = 0.05,
) -> float:
    """
    Smallest absolute effect detectable with n per variant, found by bisection
    on power() over (0, 1 - baseline_rate).
    """
    _check_sample_size(n)
    _check_open_unit("baseline_rate", baseline_rate)
    _check_open_unit("power", power_target)
    _check_open_unit("alpha", alpha)

    low = 0.0
    high = 1 - baseline_rate
    mde = (low + high) / 2
    for _ in range(MDE_SEARCH_ITERATIONS):
        achieved = power(n, baseline_rate, mde, alpha)
        if abs(achieved - power_target) < MDE_POWER_TOLERANCE:
            break
        if achieved < power_target:
            low = mde
        else:
            high = mde
        mde = (low + high) / 2
    return mde


def power_curve(baseline_rate: float, mde: float, alpha: float = 0.05) -> List[Dict[str, float]]:
    """Power at each of POWER_CURVE_SIZES, ascending."""
    return [
        {"sample_size": n, "power": round(power(n, baseline_rate, mde, alpha), 4)}
        for n in POWER_CURVE_SIZES
    ]


def estimate_duration(sample_size_per_variant: int, variant_count: int, daily_volume: float) -> int:
    """Days needed to collect the full sample, never less than one."""
    if daily_volume <= 0:
        raise InvalidRangeError("daily_volume must be positive", field="daily_volume", value=daily_volume)
    if variant_count < 1:
        raise InvalidRangeError("variant_count must be at least 1", field="variant_count", value=variant_count)
    _check_sample_size(sample_size_per_variant)
    return max(1, math.ceil(sample_size_per_variant * variant_count / daily_volume))


def plan_experiment(
    baseline_rate: float,
    mde: float,
    power_target: float = 0.80,
    alpha: float = 0.05,
    variant_count: int = 2,
    daily_volume: Optional[int] = None,
    experiment_id: Optional[int] = None,
) -> PowerAnalysis:
    """
    Build the planning record: sample size per variant, totals and,
    when daily_volume is known, the estimated duration in days.
    """
    per_variant = sample_size(baseline_rate, mde, power_target, alpha)
    duration = None
    if daily_volume is not None:
        duration = estimate_duration(per_variant, variant_count, daily_volume)

    return PowerAnalysis(
        baseline_rate=baseline_rate,
        mde=mde,
        relative_lift=round(mde / baseline_rate * 100, 1),
        power=power_target,
        alpha=alpha,
        sample_size_per_variant=per_variant,
        variant_count=variant_count,
        total_sample_size=per_variant * variant_count,
        daily_volume=daily_volume,
        estimated_duration=duration,
        experiment_id=experiment_id,
    )


def recommendations(analysis: PowerAnalysis) -> Dict[str, Any]:
    """Planning warnings plus a one-line summary."""
    recs = []

    if analysis.sample_size_per_variant > 5000:
        recs.append({
            "type": "warning",
            "message": "Large sample size required. Consider increasing MDE or decreasing power.",
        })
    if analysis.estimated_duration and analysis.estimated_duration > 30:
        recs.append({
            "type": "warning",
            "message": (
                f"Long experiment duration ({analysis.estimated_duration} days). "
                "Consider increasing daily volume or MDE."
            ),
        })
    if analysis.power < 0.80:
        recs.append({
            "type": "error",
            "message": "Power below 80%. Increase sample size to reduce false negatives.",
        })
    if analysis.relative_lift and analysis.relative_lift < 10:
        recs.append({
            "type": "info",
            "message": f"Detecting small effect ({analysis.relative_lift}% lift) requires large sample.",
        })

    has_warnings = any(r["type"] in ("warning", "error") for r in recs)
    n = analysis.sample_size_per_variant
    if has_warnings:
        summary = f"Need {n} samples per variant. Review warnings before starting."
    elif analysis.estimated_duration:
        summary = (
            f"Need {n} samples per variant "
            f"(~{analysis.estimated_duration} days at {analysis.daily_volume}/day). Ready to start!"
        )
    else:
        summary = (
            f"Need {n} samples per variant to detect {analysis.relative_lift}% lift "
            f"with {analysis.power * 100:.0f}% power."
        )

    return {"recommendations": recs, "summary": summary}
