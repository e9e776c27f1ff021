"""Immutable record types returned by the store.

Each dataclass maps 1:1 to a row of its table.  Instances are frozen: the
store hands out copies, and the only way to change a persisted record is
through the store's transactional write path.

Timestamps are ISO-8601 UTC strings with microsecond precision, which sort
lexicographically in chronological order.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any


@dataclass(frozen=True, slots=True)
class Pattern:
    """A keyed, confidence-scored record of a recurring task or approach.

    Parameters
    ----------
    key:
        Unique, stable identifier (typically the task description).
    context:
        Free-text scope, e.g. a project name or task-category tag.
    confidence:
        Belief that this approach works, in ``[0, 1]``.
    last_outcome:
        ``"success"`` or ``"failure"``.
    occurrence_count:
        Number of outcomes recorded for this key (always >= 1).
    created_at:
        When the first outcome was recorded.
    last_seen:
        When the most recent outcome was recorded.
    """

    key: str
    context: str
    confidence: float
    last_outcome: str
    occurrence_count: int
    created_at: str
    last_seen: str

    @classmethod
    def from_row(cls, row: Any) -> Pattern:
        return cls(
            key=row["key"],
            context=row["context"],
            confidence=float(row["confidence"]),
            last_outcome=row["last_outcome"],
            occurrence_count=int(row["occurrence_count"]),
            created_at=row["created_at"],
            last_seen=row["last_seen"],
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class Failure:
    """One failed attempt.  Append-only."""

    id: int
    task: str
    error_message: str
    context: str
    occurred_at: str

    @classmethod
    def from_row(cls, row: Any) -> Failure:
        return cls(
            id=int(row["id"]),
            task=row["task"],
            error_message=row["error_message"],
            context=row["context"],
            occurred_at=row["occurred_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class Session:
    """Aggregate summary of one bounded window of activity.

    ``id`` is ``None`` until the session has been persisted.
    """

    summary: str
    success_count: int
    failure_count: int
    patterns_learned: int
    started_at: str
    ended_at: str
    id: int | None = None

    @classmethod
    def from_row(cls, row: Any) -> Session:
        return cls(
            id=int(row["id"]),
            summary=row["summary"],
            success_count=int(row["success_count"]),
            failure_count=int(row["failure_count"]),
            patterns_learned=int(row["patterns_learned"]),
            started_at=row["started_at"],
            ended_at=row["ended_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class CausalLink:
    """A cause -> effect relation with its own confidence score."""

    cause: str
    effect: str
    confidence: float
    occurrence_count: int
    created_at: str
    last_seen: str

    @classmethod
    def from_row(cls, row: Any) -> CausalLink:
        return cls(
            cause=row["cause"],
            effect=row["effect"],
            confidence=float(row["confidence"]),
            occurrence_count=int(row["occurrence_count"]),
            created_at=row["created_at"],
            last_seen=row["last_seen"],
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
