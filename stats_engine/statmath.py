"""
Numerical primitives shared by every analysis mode.

All functions are pure. Randomness always comes from an explicitly passed
numpy Generator so results are reproducible under a fixed seed.
"""
from typing import Optional, Tuple
import math

import numpy as np

from .errors import InsufficientDataError, InvalidPriorError, InvalidRangeError

# Zelen & Severo coefficients for the standard normal CDF
_CDF_P = 0.2316419
_CDF_D = 0.3989423
_CDF_B = (0.3193815, -0.3565638, 1.781478, -1.821256, 1.330274)

# Beasley-Springer-Moro coefficients for the inverse normal CDF
_PPF_A = (2.50662823884, -18.61500062529, 41.39119773534, -25.44106049637)
_PPF_B = (-8.47351093090, 23.08336743743, -21.06224101826, 3.13082909833)
_PPF_C = (
    0.3374754822726147,
    0.9761690190917186,
    0.1607979714918209,
    0.0276438810333863,
    0.0038405729373609,
    0.0003951896511919,
    0.0000321767881768,
    0.0000002888167364,
    0.0000003960315187,
)


def make_rng(seed: Optional[int] = None) -> np.random.Generator:
    """Build the random source handed to the sampling functions."""
    return np.random.default_rng(seed)


def _check_beta_params(alpha: float, beta: float) -> None:
    if not alpha > 0 or not beta > 0:
        raise InvalidPriorError(
            f"Beta parameters must be positive (alpha={alpha}, beta={beta})",
            field="alpha" if not alpha > 0 else "beta",
            value=alpha if not alpha > 0 else beta,
        )


def beta_sample(alpha: float, beta: float, rng: np.random.Generator) -> float:
    """Draw a single variate from Beta(alpha, beta)."""
    _check_beta_params(alpha, beta)
    return float(rng.beta(alpha, beta))


def beta_samples(alpha: float, beta: float, size: int, rng: np.random.Generator) -> np.ndarray:
    """Draw `size` independent Beta(alpha, beta) variates as a 1-d array."""
    _check_beta_params(alpha, beta)
    return rng.beta(alpha, beta, size=size)


def normal_cdf(z: float) -> float:
    """
    Cumulative distribution function for a standard normal variable.

    Rational approximation from Abramowitz & Stegun 26.2.17.
    Absolute error is below 1e-6.
    """
    t = 1 / (1 + _CDF_P * abs(z))
    d = _CDF_D * math.exp(-z * z / 2)
    b1, b2, b3, b4, b5 = _CDF_B
    p = d * t * (b1 + t * (b2 + t * (b3 + t * (b4 + t * b5))))
    return 1 - p if z > 0 else p


def normal_ppf(p: float) -> float:
    """
    Inverse of the standard normal CDF (the z-score for cumulative probability p).
    """
    if not 0 < p < 1:
        raise InvalidRangeError(f"Probability must be in (0, 1), got {p}", field="p", value=p)

    x = p - 0.5
    if abs(x) < 0.42:
        r = x * x
        a0, a1, a2, a3 = _PPF_A
        b0, b1, b2, b3 = _PPF_B
        return x * (((a3 * r + a2) * r + a1) * r + a0) / ((((b3 * r + b2) * r + b1) * r + b0) * r + 1)

    r = p if p < 0.5 else 1 - p
    r = math.log(-math.log(r))
    acc = 0.0
    for coef in reversed(_PPF_C):
        acc = coef + r * acc
    return -acc if p < 0.5 else acc


def z_statistic(p1: float, n1: int, p2: float, n2: int) -> float:
    """
    Two-proportion Z statistic with pooled variance.

    Positive when the first sample converts better than the second.
    Returns 0.0 when the pooled standard error is zero (identical
    degenerate proportions) instead of propagating NaN.
    """
    if n1 < 0 or n2 < 0:
        raise InvalidRangeError("Sample sizes cannot be negative", field="n", value=min(n1, n2))
    if n1 == 0 or n2 == 0:
        raise InsufficientDataError(
            "Both samples need at least one observation for a Z statistic",
            field="n1" if n1 == 0 else "n2",
            value=0,
        )
    for name, p in (("p1", p1), ("p2", p2)):
        if not 0 <= p <= 1:
            raise InvalidRangeError(f"{name} must be in [0, 1], got {p}", field=name, value=p)

    pooled = (p1 * n1 + p2 * n2) / (n1 + n2)
    se = math.sqrt(pooled * (1 - pooled) * (1 / n1 + 1 / n2))
    if se == 0:
        return 0.0
    return (p1 - p2) / se


def bayesian_posterior(
    successes: int,
    failures: int,
    alpha_prior: float = 1,
    beta_prior: float = 1,
) -> Tuple[float, float]:
    """
    Beta-Binomial conjugate update: (alpha_prior + successes, beta_prior + failures).
    """
    _check_beta_params(alpha_prior, beta_prior)
    if successes < 0 or failures < 0:
        raise InvalidRangeError(
            "Observed counts cannot be negative",
            field="successes" if successes < 0 else "failures",
            value=min(successes, failures),
        )
    return alpha_prior + successes, beta_prior + failures
