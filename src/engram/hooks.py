"""Hook dispatcher: the five call points an agent uses to read and write the store.

Each verb maps onto the components below it:

- ``pre-task`` -- :class:`~engram.retrieval.RetrievalEngine` plus a
  repeated-failure warning from :class:`~engram.failures.FailureTracker`.
- ``post-task`` -- :meth:`~engram.storage.Storage.upsert_pattern`; failures
  are also appended to the failure log.
- ``pre-command`` -- :mod:`engram.safety`, then an advisory failure-history
  warning.
- ``session-start`` / ``session-end`` -- :class:`~engram.sessions.SessionManager`.

Store errors never escape a verb.  They become typed results (see
:mod:`engram.results`): an unavailable store degrades the read verbs to an
empty result, a corrupt store is an ``error`` telling the user to restore a
backup, and malformed input is ``rejected``.  A safety block is decided
before the store is touched and is never downgraded.

Usage::

    from engram.hooks import HookDispatcher

    dispatcher = HookDispatcher(Storage(cfg.db_path))
    result = await dispatcher.dispatch("pre-task", {"task": "add auth"})
    print(result.render())
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Awaitable, Callable

from engram.config import EngramConfig, get_config
from engram.consolidation import ConsolidationEngine
from engram.errors import Corrupt, StoreError, StoreUnavailable, ValidationError
from engram.failures import FailureTracker
from engram.matching import Matcher, build_matcher
from engram.results import (
    BLOCKED,
    DEGRADED,
    ERROR,
    REJECTED,
    RESULT_TYPES,
    HookResult,
    PostTaskResult,
    PreCommandResult,
    PreTaskResult,
    SessionEndResult,
    SessionStartResult,
)
from engram.retrieval import RetrievalEngine
from engram.safety import SafetyFilter
from engram.sessions import SessionManager
from engram.storage import HOOK_VERBS, Storage

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Payload adapters
# ---------------------------------------------------------------------------


def _project_name(cwd: str | None) -> str | None:
    """Extract a short project name from a working directory path."""
    if not cwd:
        return None
    return Path(cwd).name or None


def _text(payload: dict[str, Any], *keys: str) -> str:
    """First non-empty string value among *keys* in *payload*."""
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return ""


def _context(payload: dict[str, Any]) -> str:
    return _text(payload, "context") or _project_name(_text(payload, "cwd")) or ""


def _command(payload: dict[str, Any]) -> str:
    command = _text(payload, "command")
    if command:
        return command
    tool_input = payload.get("tool_input")
    if isinstance(tool_input, dict):
        return _text(tool_input, "command")
    return ""


def _outcome(payload: dict[str, Any]) -> str:
    outcome = _text(payload, "outcome")
    if not outcome and isinstance(payload.get("success"), bool):
        outcome = "success" if payload["success"] else "failure"
    return outcome


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class HookDispatcher:
    """Routes hook verbs to the engine components and shapes their results.

    Parameters
    ----------
    storage:
        The store handle.  It is initialised lazily on the first verb so
        that open failures surface as typed results.
    matcher:
        Retrieval matcher; built from ``config.retrieval.matcher`` when omitted.
    config:
        Configuration; defaults to :func:`~engram.config.get_config`.
    """

    def __init__(
        self,
        storage: Storage,
        matcher: Matcher | None = None,
        config: EngramConfig | None = None,
    ) -> None:
        self._config = config or get_config()
        self._storage = storage
        self._safety = SafetyFilter()
        self._retrieval = RetrievalEngine(
            storage, matcher or build_matcher(self._config), self._config.retrieval
        )
        self._failures = FailureTracker(storage, self._config.failures)
        self._consolidation = ConsolidationEngine(storage, self._config.consolidation)
        self._sessions = SessionManager(storage, self._consolidation, self._config.session)

        self._handlers: dict[str, Callable[[dict[str, Any]], Awaitable[HookResult]]] = {
            "pre-task": lambda p: self.pre_task(_text(p, "task", "prompt"), _context(p)),
            "post-task": lambda p: self.post_task(
                _text(p, "task", "prompt"),
                _outcome(p),
                _text(p, "error_message", "error"),
                _context(p),
            ),
            "pre-command": lambda p: self.pre_command(_command(p)),
            "session-start": lambda p: self.session_start(),
            "session-end": lambda p: self.session_end(_text(p, "summary") or None),
        }

    @property
    def storage(self) -> Storage:
        return self._storage

    @property
    def failures(self) -> FailureTracker:
        return self._failures

    @property
    def sessions(self) -> SessionManager:
        return self._sessions

    @property
    def consolidation(self) -> ConsolidationEngine:
        return self._consolidation

    # ------------------------------------------------------------------
    # Generic dispatch
    # ------------------------------------------------------------------

    async def dispatch(self, verb: str, payload: dict[str, Any] | None = None) -> HookResult:
        """Run *verb* with a raw JSON-style *payload*.

        Accepts the dispatcher's own field names (``task``, ``outcome``,
        ``command``, ...) as well as assistant hook payloads (``prompt``,
        ``tool_input.command``, ``cwd``).

        Raises
        ------
        ValueError
            *verb* is not one of :data:`~engram.storage.HOOK_VERBS`.
        """
        handler = self._handlers.get(verb)
        if handler is None:
            raise ValueError(
                f"Unknown hook verb {verb!r}. Must be one of: {', '.join(HOOK_VERBS)}"
            )
        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            return RESULT_TYPES[verb](
                status=REJECTED,
                message=f"payload must be a JSON object, got {type(payload).__name__}",
            )
        return await handler(payload)

    # ------------------------------------------------------------------
    # Verbs
    # ------------------------------------------------------------------

    async def pre_task(self, task: str, context: str = "") -> PreTaskResult:
        """Patterns that worked before for *task*, best first.

        *task* is the retrieval query; *context* is used instead when the
        task is blank.  Both blank returns the top patterns overall.
        """
        task = (task or "").strip()
        context = (context or "").strip()

        async def _run() -> PreTaskResult:
            ranked = await self._retrieval.retrieve(task or context)
            result = PreTaskResult(task=task, context=context, patterns=ranked)
            if await self._failures.should_warn(task):
                result.failure_count = await self._failures.count(task)
                result.warning = (
                    f"{task!r} has failed {result.failure_count} times before"
                )
                result.recent_errors = [
                    f.error_message for f in await self._failures.recent(task) if f.error_message
                ]
            return result

        return await self._guard(PreTaskResult, _run, read_only=True)

    async def post_task(
        self,
        task: str,
        outcome: str,
        error_message: str = "",
        context: str = "",
    ) -> PostTaskResult:
        """Record *outcome* for *task* and return the pattern's new confidence.

        A failure is appended to the failure log in the same transaction as
        the pattern update.
        """

        async def _run() -> PostTaskResult:
            pattern, failure = await self._storage.record_outcome(
                task, context, outcome, error_message
            )
            result = PostTaskResult(task=pattern.key, outcome=pattern.last_outcome, pattern=pattern)
            if failure is not None:
                result.failure_id = failure.id
            return result

        return await self._guard(PostTaskResult, _run, read_only=False)

    async def pre_command(self, command: str) -> PreCommandResult:
        """Gate *command* through the safety filter.

        A blocked command returns ``blocked`` (exit code 2) without touching
        the store.  An allowed command may carry an advisory warning when it
        has failed repeatedly; if the store cannot be read the command is
        still allowed and the result reports the history as unavailable.
        """
        t0 = time.monotonic()
        command = (command or "").strip()
        verdict = self._safety.check(command)

        if not verdict.allowed:
            log.warning("Blocked command %r (rule %s)", command, verdict.rule)
            result = PreCommandResult(
                status=BLOCKED,
                message=verdict.reason or "",
                command=command,
                verdict=verdict,
            )
        else:
            result = PreCommandResult(command=command, verdict=verdict)
            if command:
                try:
                    if await self._failures.should_warn(command):
                        count = await self._failures.count(command)
                        result.warning = f"this command has failed {count} times before"
                except StoreError as exc:
                    log.warning("pre-command hook: failure history unavailable: %s", exc)
                    result.history_available = False

        if result.history_available:
            await self._record_hook_stat("pre-command", result.status, t0)
        return result

    async def session_start(self) -> SessionStartResult:
        """Open (or resume) a session and surface proven and weak patterns."""
        return await self._guard(
            SessionStartResult, self._sessions.start_session, read_only=True
        )

    async def session_end(self, summary: str | None = None) -> SessionEndResult:
        """Close the session, persist its summary and run consolidation."""
        return await self._guard(
            SessionEndResult,
            lambda: self._sessions.end_session(summary=summary),
            read_only=False,
        )

    # ------------------------------------------------------------------
    # Non-hook operations (CLI and MCP)
    # ------------------------------------------------------------------

    async def status(self) -> dict[str, Any]:
        """Store statistics for the ``health`` command and ``status`` tool."""
        counts = await self._storage.table_counts()
        last_session = await self._storage.get_last_session()
        return {
            "db_path": str(self._storage.db_path),
            "db_size_mb": await self._storage.get_db_size_mb(),
            "integrity": await self._storage.check_integrity(),
            "session_state": await self._sessions.state(),
            "last_session": last_session.to_dict() if last_session else None,
            "matcher": self._retrieval.matcher.name,
            **counts,
        }

    async def consolidate(self, dry_run: bool = False) -> dict[str, Any]:
        """Run consolidation outside a session-end (manual maintenance)."""
        await self._storage.initialize()
        result = await self._consolidation.run(dry_run=dry_run)
        return result.to_dict()

    async def record_causal_link(
        self, cause: str, effect: str, outcome: str = "success"
    ) -> dict[str, Any]:
        link = await self._storage.upsert_causal_link(cause, effect, outcome)
        return link.to_dict()

    async def causal_links(
        self,
        cause_filter: str = "",
        min_confidence: float = 0.0,
        limit: int | None = 20,
    ) -> list[dict[str, Any]]:
        links = await self._storage.get_causal_links(cause_filter, min_confidence, limit)
        return [link.to_dict() for link in links]

    async def close(self) -> None:
        await self._storage.close()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _guard(
        self,
        result_cls: type[HookResult],
        fn: Callable[[], Awaitable[Any]],
        *,
        read_only: bool,
    ) -> Any:
        """Run *fn*, converting store errors into a typed *result_cls* result."""
        verb = result_cls.verb
        t0 = time.monotonic()
        store_failed = False
        try:
            await self._storage.initialize()
            result = await fn()
        except ValidationError as exc:
            log.info("%s hook: rejected input: %s", verb, exc)
            result = result_cls(status=REJECTED, message=str(exc))
        except StoreUnavailable as exc:
            store_failed = True
            if read_only:
                log.warning("%s hook: store unavailable, continuing without history: %s", verb, exc)
                result = result_cls(
                    status=DEGRADED,
                    message="pattern store unavailable; continuing without history",
                )
            else:
                log.error("%s hook: store unavailable: %s", verb, exc)
                result = result_cls(status=ERROR, message=f"pattern store unavailable: {exc}")
        except Corrupt as exc:
            store_failed = True
            log.error("%s hook: store corrupt: %s", verb, exc)
            result = result_cls(status=ERROR, message=self._corrupt_message(exc))
        except Exception as exc:
            log.error("%s hook: unexpected error: %s", verb, exc, exc_info=True)
            result = result_cls(status=ERROR, message=f"unexpected error: {exc}")

        if not store_failed:
            await self._record_hook_stat(verb, result.status, t0)
        return result

    def _corrupt_message(self, exc: Exception) -> str:
        return (
            f"pattern store {self._storage.db_path} is corrupt ({exc}); "
            f"restore it from a backup in {self._config.backup_dir} "
            "or delete it to start fresh"
        )

    async def _record_hook_stat(self, verb: str, status: str, t0: float) -> None:
        """Persist a hook invocation stat.

        Silently swallows store errors so it never blocks or crashes the hook.
        """
        latency_ms = int((time.monotonic() - t0) * 1000)
        try:
            await self._storage.record_hook_stat(verb, status, latency_ms)
        except (StoreError, OSError) as exc:
            log.debug("Failed to record hook stat: %s", exc)
