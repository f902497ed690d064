"""
Bayesian A/B testing with Beta-Binomial conjugate priors.

Each variant carries a Beta posterior over its conversion rate. From the
posteriors we estimate, by Monte Carlo, the probability that each variant is
best and the expected loss of shipping it, plus equal-tailed credible
intervals. All functions here are pure; persistence lives in service.py.
"""
from dataclasses import replace
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
from scipy import stats as sp_stats

from .domain import BayesianState
from .errors import InsufficientVariantsError, InvalidPriorError, InvalidRangeError
from .statmath import bayesian_posterior

DEFAULT_PRIOR = {"alpha": 1.0, "beta": 1.0}

DECLARE_WINNER = "declare_winner"
LIKELY_WINNER = "likely_winner"
CONTINUE = "continue"


def initialize(
    experiment_id: int,
    variants: Sequence[Tuple[int, str]],
    priors: Optional[Mapping[str, Mapping[str, float]]] = None,
) -> List[BayesianState]:
    """
    Create the starting state for each (variant_id, name) pair.

    priors maps a variant name to {"alpha": ..., "beta": ...}; variants
    without an entry get the uninformative Beta(1, 1).
    """
    states = []
    for variant_id, name in variants:
        prior = (priors or {}).get(name) or DEFAULT_PRIOR
        alpha = prior.get("alpha")
        beta = prior.get("beta")
        if alpha is None or beta is None or not alpha > 0 or not beta > 0:
            raise InvalidPriorError(
                f"Prior for variant {name} must have alpha > 0 and beta > 0 (got {prior})",
                field=name,
                value=prior,
            )
        states.append(BayesianState(
            experiment_id=experiment_id,
            variant_id=variant_id,
            name=name,
            alpha_prior=float(alpha),
            beta_prior=float(beta),
            alpha_posterior=float(alpha),
            beta_posterior=float(beta),
        ))
    return states


def update_posterior(state: BayesianState, success: bool) -> BayesianState:
    """Absorb one observed outcome. Apply exactly once per outcome."""
    alpha_post, beta_post = bayesian_posterior(
        1 if success else 0,
        0 if success else 1,
        state.alpha_posterior,
        state.beta_posterior,
    )
    return replace(state, alpha_posterior=alpha_post, beta_posterior=beta_post)


def _posterior_draws(
    states: Sequence[BayesianState],
    samples: int,
    rng: np.random.Generator,
) -> np.ndarray:
    if len(states) < 2:
        raise InsufficientVariantsError(
            "Need at least 2 variants for Bayesian analysis",
            variant_count=len(states),
        )
    if samples < 1:
        raise InvalidRangeError("samples must be at least 1", field="samples", value=samples)

    alphas = np.array([s.alpha_posterior for s in states], dtype=float)
    betas = np.array([s.beta_posterior for s in states], dtype=float)
    if not ((alphas > 0).all() and (betas > 0).all()):
        raise InvalidPriorError("Posterior parameters must be positive")
    # rows are Monte Carlo iterations, columns are variants
    return rng.beta(alphas, betas, size=(samples, len(states)))


def probability_best(
    states: Sequence[BayesianState],
    rng: np.random.Generator,
    samples: int = 10000,
) -> List[Dict[str, Any]]:
    """
    Share of Monte Carlo draws in which each variant has the highest rate.
    Ties go to the earlier variant.
    """
    draws = _posterior_draws(states, samples, rng)
    wins = np.bincount(draws.argmax(axis=1), minlength=len(states))
    return [
        {"id": s.variant_id, "probability": float(wins[i]) / samples}
        for i, s in enumerate(states)
    ]


def credible_interval(alpha: float, beta: float, confidence: float = 0.95) -> Dict[str, float]:
    """Equal-tailed credible interval of Beta(alpha, beta)."""
    if not alpha > 0 or not beta > 0:
        raise InvalidPriorError(f"Beta parameters must be positive (alpha={alpha}, beta={beta})")
    if not 0 < confidence < 1:
        raise InvalidRangeError(
            f"confidence must be between 0 and 1, got {confidence}",
            field="confidence",
            value=confidence,
        )

    tail = (1 - confidence) / 2
    lower, upper = sp_stats.beta.ppf([tail, 1 - tail], alpha, beta)
    return {
        "lower": float(lower),
        "mean": alpha / (alpha + beta),
        "upper": float(upper),
    }


def expected_loss(
    states: Sequence[BayesianState],
    rng: np.random.Generator,
    samples: int = 10000,
) -> List[Dict[str, Any]]:
    """Mean shortfall of each variant against the best draw in the same iteration."""
    draws = _posterior_draws(states, samples, rng)
    losses = (draws.max(axis=1, keepdims=True) - draws).mean(axis=0)
    return [
        {"id": s.variant_id, "loss": max(0.0, float(losses[i]))}
        for i, s in enumerate(states)
    ]


def recommend(
    results: Sequence[Mapping[str, Any]],
    winner_threshold: float = 0.95,
    likely_threshold: float = 0.80,
) -> Dict[str, Any]:
    """
    Decision for the variant with the highest probability of being best.

    results are the per-variant rows of analyze(), each with at least
    variant_name and probability_best.
    """
    if not results:
        raise InsufficientVariantsError("No variant results to recommend from")

    best = results[0]
    for row in results[1:]:
        if row["probability_best"] > best["probability_best"]:
            best = row
    prob = best["probability_best"]
    pct = f"{prob * 100:.1f}%"

    if prob >= winner_threshold:
        return {
            "decision": DECLARE_WINNER,
            "variant": best["variant_name"],
            "confidence": prob,
            "message": f"{best['variant_name']} has {pct} probability of being best. "
                       "Strong evidence to declare winner.",
        }
    if prob >= likely_threshold:
        return {
            "decision": LIKELY_WINNER,
            "variant": best["variant_name"],
            "confidence": prob,
            "message": f"{best['variant_name']} has {pct} probability of being best. "
                       "Moderate evidence, consider continuing.",
        }
    return {
        "decision": CONTINUE,
        "variant": None,
        "confidence": prob,
        "message": f"No clear winner yet (highest probability: {pct}). Continue experiment.",
    }


def should_stop(
    states: Sequence[BayesianState],
    sample_sizes: Mapping[int, int],
    rng: np.random.Generator,
    threshold: float = 0.95,
    min_sample_size: int = 100,
    samples: int = 10000,
) -> Dict[str, Any]:
    """
    Stop once one variant reaches `threshold` probability of being best,
    but never while any variant has fewer than min_sample_size observations.

    sample_sizes maps variant_id to its current assignment count.
    """
    if len(states) < 2:
        raise InsufficientVariantsError(
            "Need at least 2 variants for Bayesian analysis",
            variant_count=len(states),
        )

    min_sample = min(sample_sizes.get(s.variant_id, 0) for s in states)
    if min_sample < min_sample_size:
        return {
            "should_stop": False,
            "winner_id": None,
            "reason": f"Minimum sample size not met ({min_sample} < {min_sample_size})",
            "probabilities": [],
        }

    probabilities = probability_best(states, rng, samples)
    winner = probabilities[0]
    for row in probabilities[1:]:
        if row["probability"] > winner["probability"]:
            winner = row
    name = next(s.name for s in states if s.variant_id == winner["id"])
    max_prob = winner["probability"]

    if max_prob >= threshold:
        return {
            "should_stop": True,
            "winner_id": winner["id"],
            "reason": f"Variant {name} has {max_prob * 100:.1f}% probability of being best "
                      f"(threshold: {threshold * 100:g}%)",
            "probabilities": probabilities,
        }
    return {
        "should_stop": False,
        "winner_id": None,
        "reason": f"Highest probability is {max_prob * 100:.1f}% (threshold: {threshold * 100:g}%)",
        "probabilities": probabilities,
    }


def analyze(
    states: Sequence[BayesianState],
    rng: np.random.Generator,
    samples: int = 10000,
    confidence: float = 0.95,
    winner_threshold: float = 0.95,
    likely_threshold: float = 0.80,
) -> Tuple[List[BayesianState], Dict[str, Any]]:
    """
    Full Bayesian read-out.

    Returns the states with their derived fields filled in (ready to be
    saved) and the outbound report.
    """
    probs = {row["id"]: row["probability"] for row in probability_best(states, rng, samples)}
    losses = {row["id"]: row["loss"] for row in expected_loss(states, rng, samples)}

    updated = []
    rows = []
    for s in states:
        ci = credible_interval(s.alpha_posterior, s.beta_posterior, confidence)
        updated.append(replace(
            s,
            probability_best=probs[s.variant_id],
            credible_interval_lower=ci["lower"],
            credible_interval_upper=ci["upper"],
            expected_loss=losses[s.variant_id],
        ))
        rows.append({
            "variant_id": s.variant_id,
            "variant_name": s.name,
            "probability_best": probs[s.variant_id],
            "credible_interval": ci,
            "expected_loss": losses[s.variant_id],
            "posterior": {"alpha": s.alpha_posterior, "beta": s.beta_posterior},
        })

    report = {
        "variants": rows,
        "recommendation": recommend(rows, winner_threshold, likely_threshold),
    }
    return updated, report
