"""Central configuration for the engram pattern store.

All tunables live here with sensible defaults.  Values can be overridden
through environment variables prefixed with ``ENGRAM_`` (nested keys use
double underscores, e.g. ``ENGRAM_CONFIDENCE__ALPHA=0.2``).

Usage::

    from engram.config import get_config

    cfg = get_config()
    print(cfg.db_path)
    print(cfg.confidence.alpha)
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import TypeVar, get_type_hints

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Nested configuration sections
# ---------------------------------------------------------------------------


MATCHERS: tuple[str, ...] = ("substring", "embedding")
"""Names accepted by ``retrieval.matcher``."""


def _check_unit(name: str, value: float) -> None:
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"{name} must be between 0.0 and 1.0, got {value}")


def _check_min(name: str, value: float, minimum: float) -> None:
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")


@dataclass(frozen=True, slots=True)
class ConfidenceConfig:
    """Parameters of the Bayesian-style confidence update rule."""

    alpha: float = 0.1
    """Fraction of the remaining distance to 1.0 gained on each success."""

    beta: float = 0.15
    """Fraction of the current confidence lost on each failure."""

    seed_success: float = 0.6
    """Confidence of a pattern first recorded with a successful outcome."""

    seed_failure: float = 0.35
    """Confidence of a pattern first recorded with a failed outcome."""

    def __post_init__(self) -> None:
        _check_unit("confidence.alpha", self.alpha)
        _check_unit("confidence.beta", self.beta)
        _check_unit("confidence.seed_success", self.seed_success)
        _check_unit("confidence.seed_failure", self.seed_failure)


@dataclass(frozen=True, slots=True)
class RetrievalConfig:
    """Parameters that govern pattern retrieval for the pre-task hook."""

    top_n: int = 5
    min_confidence: float = 0.0
    candidate_limit: int = 1000  # patterns fetched per scoring batch
    matcher: str = "substring"
    """Matching strategy: ``"substring"`` (default) or ``"embedding"``."""

    min_similarity: float = 0.6
    """Cosine similarity below which the embedding matcher reports no match."""

    def __post_init__(self) -> None:
        _check_min("retrieval.top_n", self.top_n, 0)
        _check_unit("retrieval.min_confidence", self.min_confidence)
        _check_min("retrieval.candidate_limit", self.candidate_limit, 1)
        if self.matcher.strip().lower() not in MATCHERS:
            raise ValueError(
                f"retrieval.matcher must be one of: {', '.join(MATCHERS)}, "
                f"got {self.matcher!r}"
            )
        _check_unit("retrieval.min_similarity", self.min_similarity)


@dataclass(frozen=True, slots=True)
class FailureConfig:
    """Parameters for the failure log and repeated-failure warnings."""

    warn_threshold: int = 3
    recent_limit: int = 3  # error messages echoed alongside a warning
    retention_days: int = 90
    """Age after which ``prune-failures`` removes failure records.

    Failures are never touched by consolidation; this policy only applies
    when the maintenance command is run explicitly."""

    def __post_init__(self) -> None:
        _check_min("failures.warn_threshold", self.warn_threshold, 1)
        _check_min("failures.recent_limit", self.recent_limit, 0)
        _check_min("failures.retention_days", self.retention_days, 0)


@dataclass(frozen=True, slots=True)
class SessionConfig:
    """Thresholds for the pattern lists surfaced at session start."""

    proven_threshold: float = 0.8
    proven_limit: int = 5
    weak_threshold: float = 0.5
    weak_limit: int = 3
    weak_min_occurrences: int = 2

    def __post_init__(self) -> None:
        _check_unit("session.proven_threshold", self.proven_threshold)
        _check_min("session.proven_limit", self.proven_limit, 0)
        _check_unit("session.weak_threshold", self.weak_threshold)
        _check_min("session.weak_limit", self.weak_limit, 0)
        _check_min("session.weak_min_occurrences", self.weak_min_occurrences, 1)


@dataclass(frozen=True, slots=True)
class ConsolidationConfig:
    """Parameters for end-of-session pruning.

    A pattern is deleted only when all three conditions hold: confidence is
    below ``confidence_floor``, it has been seen more than
    ``occurrence_threshold`` times, and it was last seen more than
    ``retention_days`` ago.
    """

    confidence_floor: float = 0.2
    occurrence_threshold: int = 5
    retention_days: int = 7

    def __post_init__(self) -> None:
        _check_unit("consolidation.confidence_floor", self.confidence_floor)
        _check_min("consolidation.occurrence_threshold", self.occurrence_threshold, 0)
        _check_min("consolidation.retention_days", self.retention_days, 0)


# ---------------------------------------------------------------------------
# Top-level configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class EngramConfig:
    """Root configuration object for engram.

    ``db_path`` and ``backup_dir`` are project-relative by default: hooks run
    with the project as their working directory, so each project gets its
    own store.
    """

    db_path: Path = field(default_factory=lambda: Path(".engram/engram.db"))
    backup_dir: Path = field(default_factory=lambda: Path(".engram/backups"))
    backup_count: int = 5
    lock_timeout_seconds: float = 5.0

    ollama_url: str = "http://localhost:11434"
    embedding_model: str = "nomic-embed-text"

    confidence: ConfidenceConfig = field(default_factory=ConfidenceConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    failures: FailureConfig = field(default_factory=FailureConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    consolidation: ConsolidationConfig = field(default_factory=ConsolidationConfig)

    def __post_init__(self) -> None:
        # Expand ~ in path fields.  We use object.__setattr__ because the
        # dataclass is frozen.
        object.__setattr__(self, "db_path", Path(self.db_path).expanduser())
        object.__setattr__(self, "backup_dir", Path(self.backup_dir).expanduser())
        _check_min("backup_count", self.backup_count, 1)
        if not self.lock_timeout_seconds > 0:
            raise ValueError(
                f"lock_timeout_seconds must be > 0, got {self.lock_timeout_seconds}"
            )


# ---------------------------------------------------------------------------
# Environment-variable loader
# ---------------------------------------------------------------------------

_ENV_PREFIX = "ENGRAM_"
_NESTED_SEP = "__"


def _resolve_type_hints(dc_type: type) -> dict[str, type]:
    """Resolve stringified annotations back to real types.

    ``from __future__ import annotations`` turns all annotations into
    strings.  :func:`typing.get_type_hints` evaluates them in the correct
    module namespace so we get the actual :class:`type` objects.
    """
    module = sys.modules.get(dc_type.__module__, None)
    globalns = getattr(module, "__dict__", {}) if module else {}
    return get_type_hints(dc_type, globalns=globalns)


def _coerce(value: str, target_type: type[T]) -> T:
    """Cast an env-var string to the target field type."""
    if target_type is bool:
        return target_type(value.lower() in ("1", "true", "yes"))  # type: ignore[return-value]
    return target_type(value)  # type: ignore[return-value]


def _load_dataclass(dc_type: type[T], prefix: str) -> T:
    """Recursively build a dataclass from env-var overrides + defaults."""
    hints = _resolve_type_hints(dc_type)
    kwargs: dict[str, object] = {}

    for f in fields(dc_type):  # type: ignore[arg-type]
        field_type = hints[f.name]
        nested_prefix = f"{prefix}{f.name}{_NESTED_SEP}".upper()

        if hasattr(field_type, "__dataclass_fields__"):
            kwargs[f.name] = _load_dataclass(field_type, nested_prefix)
        else:
            env_key = f"{prefix}{f.name}".upper()
            raw = os.environ.get(env_key)
            if raw is not None:
                kwargs[f.name] = _coerce(raw, field_type)

    return dc_type(**kwargs)  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

_cached_config: EngramConfig | None = None


def get_config(*, reload: bool = False) -> EngramConfig:
    """Return the current :class:`EngramConfig`.

    On the first call the config is built by merging defaults with any
    ``ENGRAM_*`` environment variables.  The result is cached for the
    lifetime of the process unless *reload* is ``True``.

    Parameters
    ----------
    reload:
        Force re-reading environment variables and rebuilding the config.
    """
    global _cached_config  # noqa: PLW0603
    if _cached_config is None or reload:
        _cached_config = _load_dataclass(EngramConfig, _ENV_PREFIX)
    return _cached_config
