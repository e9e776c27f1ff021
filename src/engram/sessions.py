"""Session lifecycle: inactive -> active -> closed.

Hooks run as separate short-lived processes, so session state lives in the
store rather than in memory.  ``session-start`` writes an *active marker*
holding the window start; ``session-end`` aggregates everything recorded
since then, persists the session and clears the marker in one transaction,
then runs consolidation.

When ``session-end`` arrives without a preceding ``session-start`` the
window begins where the previous session ended, or at the beginning of
time for the very first session.
"""

from __future__ import annotations

import logging
import math

from engram.config import SessionConfig, get_config
from engram.consolidation import ConsolidationEngine
from engram.records import Session
from engram.results import SessionEndResult, SessionStartResult
from engram.storage import Storage

logger = logging.getLogger(__name__)

INACTIVE = "inactive"
ACTIVE = "active"
CLOSED = "closed"


def _plural(n: int, singular: str, plural: str) -> str:
    return f"{n} {singular if n == 1 else plural}"


def summarize(success_count: int, failure_count: int, patterns_learned: int) -> str:
    """One-line summary used when the caller does not supply one."""
    return ", ".join(
        (
            _plural(success_count, "success", "successes"),
            _plural(failure_count, "failure", "failures"),
            _plural(patterns_learned, "pattern", "patterns") + " learned",
        )
    )


class SessionManager:
    """Opens and closes sessions against the store.

    Parameters
    ----------
    storage:
        An initialised :class:`~engram.storage.Storage`.
    consolidation:
        Engine run after each session is persisted; one is built from
        *storage* when omitted.
    config:
        Session thresholds; defaults to ``get_config().session``.
    """

    def __init__(
        self,
        storage: Storage,
        consolidation: ConsolidationEngine | None = None,
        config: SessionConfig | None = None,
    ) -> None:
        self._storage = storage
        self._consolidation = consolidation or ConsolidationEngine(storage)
        self._cfg = config or get_config().session

    async def state(self) -> str:
        """Current lifecycle state, derived from persisted data."""
        if await self._storage.get_session_window() is not None:
            return ACTIVE
        if await self._storage.get_last_session() is not None:
            return CLOSED
        return INACTIVE

    async def start_session(self) -> SessionStartResult:
        """Mark a session active and gather context for the caller.

        An already-active session keeps its original window start.  The
        result carries the last closed session, up to ``proven_limit``
        patterns above ``proven_threshold`` and up to ``weak_limit``
        patterns below ``weak_threshold`` that have been seen at least
        ``weak_min_occurrences`` times.
        """
        window_start, created = await self._storage.begin_session_window()
        if created:
            logger.info("Session started at %s", window_start)
        else:
            logger.info("Session already active since %s; keeping its window", window_start)

        last_session = await self._storage.get_last_session()
        proven = await self._storage.get_patterns(
            "",
            min_confidence=math.nextafter(self._cfg.proven_threshold, math.inf),
            limit=self._cfg.proven_limit,
        )
        weak = await self._storage.get_patterns(
            "",
            limit=self._cfg.weak_limit,
            max_confidence=self._cfg.weak_threshold,
            min_occurrences=self._cfg.weak_min_occurrences,
        )
        return SessionStartResult(
            last_session=last_session,
            proven=proven,
            needs_improvement=weak,
            window_start=window_start,
            resumed=not created,
        )

    async def end_session(
        self,
        window_start: str | None = None,
        summary: str | None = None,
    ) -> SessionEndResult:
        """Close the current session, persist its summary and consolidate.

        Parameters
        ----------
        window_start:
            Override for the start of the aggregation window.  Defaults to
            the active marker, then the previous session's end, then the
            beginning of time.
        summary:
            Free-text summary; generated from the counts when empty.

        Returns
        -------
        SessionEndResult
            The persisted session (with its ``id``) and the consolidation
            outcome.  A consolidation failure is reported in
            ``consolidation_error`` and never undoes the persisted session.
        """

        def _build(started_at: str, ended_at: str, counts: dict[str, int]) -> Session:
            return Session(
                summary=(summary or "").strip() or summarize(**counts),
                success_count=counts["success_count"],
                failure_count=counts["failure_count"],
                patterns_learned=counts["patterns_learned"],
                started_at=started_at,
                ended_at=ended_at,
            )

        persisted = await self._storage.end_session_window(_build, window_start)
        logger.info(
            "Session #%s ended: %d successes, %d failures, %d patterns learned",
            persisted.id,
            persisted.success_count,
            persisted.failure_count,
            persisted.patterns_learned,
        )

        result = SessionEndResult(session=persisted)
        try:
            result.consolidation = await self._consolidation.run()
        except Exception as exc:
            logger.error("Consolidation after session #%s failed: %s", persisted.id, exc, exc_info=True)
            result.consolidation_error = str(exc)
        return result
