"""Bayesian-style confidence update rule.

Pure functions, no I/O.  A success moves confidence a fixed fraction
(``alpha``) of the remaining distance towards 1.0, so repeated successes
converge on 1.0 without reaching it.  A failure removes a fixed fraction
(``beta``) of the current confidence, so a confident pattern loses more in
absolute terms than a weak one and confidence never goes negative.

    >>> update_confidence(0.5, "success")
    0.55
    >>> round(update_confidence(0.64, "failure"), 3)
    0.544
"""

from __future__ import annotations

SUCCESS = "success"
FAILURE = "failure"

OUTCOMES: tuple[str, ...] = (SUCCESS, FAILURE)
"""Allowed values for a recorded outcome."""

ALPHA: float = 0.1
BETA: float = 0.15
SEED_SUCCESS: float = 0.6
SEED_FAILURE: float = 0.35


def clamp(value: float) -> float:
    """Clamp *value* into ``[0.0, 1.0]``."""
    return min(1.0, max(0.0, value))


def validate_outcome(outcome: str) -> str:
    """Return the normalised outcome or raise :class:`ValueError`."""
    normalised = outcome.strip().lower() if isinstance(outcome, str) else outcome
    if normalised not in OUTCOMES:
        raise ValueError(
            f"Invalid outcome {outcome!r}. Must be one of: {', '.join(OUTCOMES)}"
        )
    return normalised


def update_confidence(
    prior: float,
    outcome: str,
    *,
    alpha: float = ALPHA,
    beta: float = BETA,
) -> float:
    """Apply one outcome to *prior* and return the new confidence.

    Parameters
    ----------
    prior:
        The current confidence.  Values outside ``[0, 1]`` are clamped first.
    outcome:
        ``"success"`` or ``"failure"``.
    alpha:
        Success learning rate.
    beta:
        Failure decay rate.
    """
    outcome = validate_outcome(outcome)
    prior = clamp(prior)
    if outcome == SUCCESS:
        return clamp(prior + (1.0 - prior) * alpha)
    return clamp(prior - prior * beta)


def seed_confidence(
    outcome: str,
    *,
    on_success: float = SEED_SUCCESS,
    on_failure: float = SEED_FAILURE,
) -> float:
    """Initial confidence for a pattern first seen with *outcome*."""
    outcome = validate_outcome(outcome)
    return clamp(on_success if outcome == SUCCESS else on_failure)
