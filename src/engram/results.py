"""Typed results returned by the five hook verbs.

Every result carries a ``status`` and knows how to present itself to each
adapter: :meth:`HookResult.to_dict` for MCP tool responses,
:meth:`HookResult.render` for hook stdout, and :attr:`HookResult.exit_code`
for the hook process exit status.

- ``ok`` (exit 0) -- verb completed.
- ``degraded`` (exit 0) -- store unavailable; empty result, caller proceeds.
- ``blocked`` (exit 2) -- pre-command refused by the safety filter.
- ``rejected`` (exit 1) -- malformed input such as an empty key.
- ``error`` (exit 1) -- store corrupt or unexpected failure.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar

from engram.consolidation import ConsolidationResult
from engram.records import Pattern, Session
from engram.retrieval import RankedPattern
from engram.safety import ALLOW, Verdict

OK = "ok"
DEGRADED = "degraded"
BLOCKED = "blocked"
REJECTED = "rejected"
ERROR = "error"

STATUSES: tuple[str, ...] = (OK, DEGRADED, BLOCKED, REJECTED, ERROR)

_EXIT_CODES: dict[str, int] = {
    OK: 0,
    DEGRADED: 0,
    BLOCKED: 2,
    REJECTED: 1,
    ERROR: 1,
}

_PREFIX = "[engram]"


@dataclass
class HookResult:
    """Common fields of every hook result."""

    verb: ClassVar[str] = ""

    status: str = OK
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status in (OK, DEGRADED)

    @property
    def exit_code(self) -> int:
        return _EXIT_CODES.get(self.status, 1)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "verb": self.verb,
            "status": self.status,
            "exit_code": self.exit_code,
        }
        if self.message:
            data["message"] = self.message
        data.update(self._payload())
        return data

    def render(self) -> str:
        """Plain text for hook stdout.  Empty when there is nothing to say."""
        if self.status in (REJECTED, ERROR):
            return f"{_PREFIX} {self.verb} {self.status}: {self.message}"
        lines = self._render_lines()
        if self.status == DEGRADED and self.message:
            lines.insert(0, f"{_PREFIX} {self.message}")
        return "\n".join(lines)

    def _payload(self) -> dict[str, Any]:
        return {}

    def _render_lines(self) -> list[str]:
        return []


@dataclass
class PreTaskResult(HookResult):
    """Ranked patterns relevant to a task, plus any repeated-failure warning."""

    verb: ClassVar[str] = "pre-task"

    task: str = ""
    context: str = ""
    patterns: list[RankedPattern] = field(default_factory=list)
    warning: str | None = None
    failure_count: int = 0
    recent_errors: list[str] = field(default_factory=list)

    def _payload(self) -> dict[str, Any]:
        return {
            "task": self.task,
            "context": self.context,
            "patterns": [p.to_dict() for p in self.patterns],
            "warning": self.warning,
            "failure_count": self.failure_count,
            "recent_errors": list(self.recent_errors),
        }

    def _render_lines(self) -> list[str]:
        lines: list[str] = []
        if self.patterns:
            lines.append(f"{_PREFIX} Patterns that worked before for {self.task!r}:")
            for ranked in self.patterns:
                p = ranked.pattern
                lines.append(
                    f"  {ranked.rank}. {p.key} (confidence {p.confidence:.2f}, "
                    f"seen {p.occurrence_count}x, last {p.last_outcome})"
                )
        if self.warning:
            lines.append(f"{_PREFIX} Warning: {self.warning}")
            for error in self.recent_errors:
                lines.append(f"  - {error}")
        return lines


@dataclass
class PostTaskResult(HookResult):
    """Confirmation of a recorded outcome with the pattern's new confidence."""

    verb: ClassVar[str] = "post-task"

    task: str = ""
    outcome: str = ""
    pattern: Pattern | None = None
    failure_id: int | None = None

    def _payload(self) -> dict[str, Any]:
        return {
            "task": self.task,
            "outcome": self.outcome,
            "pattern": self.pattern.to_dict() if self.pattern else None,
            "confidence": self.pattern.confidence if self.pattern else None,
            "failure_id": self.failure_id,
        }

    def _render_lines(self) -> list[str]:
        if self.pattern is None:
            return []
        return [
            f"{_PREFIX} Recorded {self.outcome} for {self.pattern.key!r}: "
            f"confidence {self.pattern.confidence:.4f} "
            f"({self.pattern.occurrence_count} occurrences)"
        ]


@dataclass
class PreCommandResult(HookResult):
    """Safety verdict for a command, plus an advisory failure-history warning."""

    verb: ClassVar[str] = "pre-command"

    command: str = ""
    verdict: Verdict = ALLOW
    warning: str | None = None
    history_available: bool = True

    def _payload(self) -> dict[str, Any]:
        return {
            "command": self.command,
            "allowed": self.verdict.allowed,
            "rule": self.verdict.rule,
            "reason": self.verdict.reason,
            "warning": self.warning,
            "history_available": self.history_available,
        }

    def _render_lines(self) -> list[str]:
        if not self.verdict.allowed:
            return [f"{_PREFIX} BLOCKED: {self.verdict.reason} (rule: {self.verdict.rule})"]
        lines: list[str] = []
        if self.warning:
            lines.append(f"{_PREFIX} Warning: {self.warning}")
        if not self.history_available:
            lines.append(f"{_PREFIX} failure history unavailable")
        return lines


@dataclass
class SessionStartResult(HookResult):
    """Context surfaced when a session starts."""

    verb: ClassVar[str] = "session-start"

    last_session: Session | None = None
    proven: list[Pattern] = field(default_factory=list)
    needs_improvement: list[Pattern] = field(default_factory=list)
    window_start: str | None = None
    resumed: bool = False

    def _payload(self) -> dict[str, Any]:
        return {
            "last_session": self.last_session.to_dict() if self.last_session else None,
            "proven": [p.to_dict() for p in self.proven],
            "needs_improvement": [p.to_dict() for p in self.needs_improvement],
            "window_start": self.window_start,
            "resumed": self.resumed,
        }

    def _render_lines(self) -> list[str]:
        lines: list[str] = []
        if self.last_session:
            s = self.last_session
            lines.append(f"{_PREFIX} Last session ({s.ended_at}): {s.summary}")
        if self.proven:
            lines.append(f"{_PREFIX} Proven patterns:")
            lines.extend(f"  - {p.key} ({p.confidence:.2f})" for p in self.proven)
        if self.needs_improvement:
            lines.append(f"{_PREFIX} Needs improvement:")
            lines.extend(
                f"  - {p.key} ({p.confidence:.2f}, seen {p.occurrence_count}x)"
                for p in self.needs_improvement
            )
        return lines


@dataclass
class SessionEndResult(HookResult):
    """The persisted session summary and what consolidation did."""

    verb: ClassVar[str] = "session-end"

    session: Session | None = None
    consolidation: ConsolidationResult | None = None
    consolidation_error: str | None = None

    def _payload(self) -> dict[str, Any]:
        return {
            "session": self.session.to_dict() if self.session else None,
            "consolidation": self.consolidation.to_dict() if self.consolidation else None,
            "consolidation_error": self.consolidation_error,
        }

    def _render_lines(self) -> list[str]:
        lines: list[str] = []
        if self.session:
            lines.append(f"{_PREFIX} Session #{self.session.id} saved: {self.session.summary}")
        if self.consolidation and self.consolidation.pruned:
            lines.append(f"{_PREFIX} Pruned {self.consolidation.pruned} weak patterns")
        if self.consolidation_error:
            lines.append(f"{_PREFIX} Consolidation failed: {self.consolidation_error}")
        return lines


RESULT_TYPES: dict[str, type[HookResult]] = {
    cls.verb: cls
    for cls in (
        PreTaskResult,
        PostTaskResult,
        PreCommandResult,
        SessionStartResult,
        SessionEndResult,
    )
}
"""Result class for each hook verb."""
