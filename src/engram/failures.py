"""Failure tracking and repeated-failure warnings.

Thin policy layer over the store's append-only failure log.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from engram.config import FailureConfig, get_config
from engram.errors import ValidationError
from engram.records import Failure
from engram.storage import Storage, format_timestamp

log = logging.getLogger(__name__)


class FailureTracker:
    """Records failed attempts and decides when to warn about them.

    Parameters
    ----------
    storage:
        An initialised :class:`~engram.storage.Storage`.
    config:
        Failure tunables; defaults to ``get_config().failures``.
    """

    def __init__(self, storage: Storage, config: FailureConfig | None = None) -> None:
        self._storage = storage
        self._cfg = config or get_config().failures

    @property
    def warn_threshold(self) -> int:
        return self._cfg.warn_threshold

    async def record(self, task: str, error_message: str = "", context: str = "") -> Failure:
        """Append a failed attempt to the log."""
        failure = await self._storage.append_failure(task, error_message, context)
        log.debug("Recorded failure #%d for %r", failure.id, failure.task)
        return failure

    async def count(self, task: str) -> int:
        """Number of recorded failures whose task contains *task*."""
        if not task or not task.strip():
            return 0
        return await self._storage.count_failures(task.strip())

    async def should_warn(self, task: str, threshold: int | None = None) -> bool:
        """Whether *task* has failed at least *threshold* times before.

        Failures are matched by case-insensitive substring on their task.
        A blank *task* never warns.
        """
        if threshold is None:
            threshold = self._cfg.warn_threshold
        if not task or not task.strip():
            return False
        return await self.count(task) >= threshold

    async def recent(self, task: str = "", limit: int | None = None) -> list[Failure]:
        """The most recent failures matching *task*, newest first."""
        if limit is None:
            limit = self._cfg.recent_limit
        return await self._storage.get_recent_failures((task or "").strip(), limit)

    async def prune(self, older_than_days: int | None = None) -> int:
        """Delete failures older than *older_than_days* (maintenance only).

        Returns
        -------
        int
            Number of failure records deleted.
        """
        if older_than_days is None:
            older_than_days = self._cfg.retention_days
        if older_than_days < 0:
            raise ValidationError(f"older_than_days must be >= 0, got {older_than_days}")
        cutoff = format_timestamp(self._storage.clock() - timedelta(days=older_than_days))
        return await self._storage.prune_failures(cutoff)
