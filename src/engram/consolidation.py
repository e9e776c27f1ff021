"""End-of-session pattern consolidation.

Removes patterns that have had every chance to prove themselves and keep
failing: a pattern is pruned only when *all* of these hold

- its confidence is below ``consolidation.confidence_floor`` (0.2),
- it has been seen more than ``consolidation.occurrence_threshold`` (5) times,
- it was last seen more than ``consolidation.retention_days`` (7) days ago.

Failures and sessions are never touched.  A run is guarded by the
``consolidation`` advisory lock, so two session-end hooks finishing at the
same moment do not both prune; the loser skips.  Every applied run is
written to the ``consolidation_log`` table for auditability.

Usage::

    from engram.consolidation import ConsolidationEngine

    engine = ConsolidationEngine(storage)
    result = await engine.run(dry_run=True)
    print(result.to_dict())
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from engram.config import ConsolidationConfig, get_config
from engram.storage import Storage, format_timestamp

logger = logging.getLogger(__name__)

_LOCK_NAME = "consolidation"


@dataclass
class ConsolidationResult:
    """Summary of a single consolidation run.

    Attributes
    ----------
    pruned:
        Number of patterns deleted (or that would be, for a dry run).
    pruned_keys:
        Keys of those patterns.
    skipped:
        ``True`` when another run held the lock and nothing was done.
    dry_run:
        Whether this was a preview run (no database mutations).
    """

    pruned: int = 0
    pruned_keys: list[str] = field(default_factory=list)
    skipped: bool = False
    dry_run: bool = False
    cutoff: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialise the result to a plain dict for hook and MCP responses."""
        return {
            "pruned": self.pruned,
            "pruned_keys": list(self.pruned_keys),
            "skipped": self.skipped,
            "dry_run": self.dry_run,
            "cutoff": self.cutoff,
        }


class ConsolidationEngine:
    """Prunes persistently weak, stale patterns.

    Parameters
    ----------
    storage:
        An initialised :class:`~engram.storage.Storage` instance.
    config:
        Consolidation thresholds; defaults to ``get_config().consolidation``.
    """

    def __init__(self, storage: Storage, config: ConsolidationConfig | None = None) -> None:
        self._storage = storage
        self._cfg = config or get_config().consolidation

    async def run(self, dry_run: bool = False) -> ConsolidationResult:
        """Run one consolidation pass.

        Parameters
        ----------
        dry_run:
            If ``True`` the engine reports what *would* be pruned without
            deleting anything or writing to the log.

        Returns
        -------
        ConsolidationResult
            Counts and keys of pruned patterns.
        """
        result = ConsolidationResult(dry_run=dry_run)
        cutoff = format_timestamp(
            self._storage.clock() - timedelta(days=self._cfg.retention_days)
        )
        result.cutoff = cutoff
        holder = uuid.uuid4().hex

        # Acquire advisory lock to prevent concurrent consolidation.
        def _try_lock(conn: sqlite3.Connection) -> bool:
            return self._storage.try_acquire_lock(conn, _LOCK_NAME, holder)

        acquired = await self._storage.execute_transaction(_try_lock)
        if not acquired:
            logger.warning("Consolidation already in progress; skipping")
            result.skipped = True
            return result

        try:
            params = (self._cfg.confidence_floor, self._cfg.occurrence_threshold, cutoff)
            where = "confidence < ? AND occurrence_count > ? AND last_seen < ?"

            def _prune(conn: sqlite3.Connection) -> list[str]:
                keys = [
                    row["key"]
                    for row in conn.execute(
                        f"SELECT key FROM patterns WHERE {where} ORDER BY key", params
                    ).fetchall()
                ]
                if keys and not dry_run:
                    conn.execute(f"DELETE FROM patterns WHERE {where}", params)
                    conn.execute(
                        """
                        INSERT INTO consolidation_log
                            (action, details, patterns_affected, created_at)
                        VALUES (?, ?, ?, ?)
                        """,
                        (
                            "prune",
                            json.dumps(
                                {
                                    "pruned": len(keys),
                                    "confidence_floor": self._cfg.confidence_floor,
                                    "occurrence_threshold": self._cfg.occurrence_threshold,
                                    "cutoff": cutoff,
                                }
                            ),
                            json.dumps(keys),
                            self._storage.now(),
                        ),
                    )
                return keys

            result.pruned_keys = await self._storage.execute_transaction(_prune)
            result.pruned = len(result.pruned_keys)
        finally:
            def _release(conn: sqlite3.Connection) -> None:
                Storage.release_lock(conn, _LOCK_NAME, holder)

            await self._storage.execute_transaction(_release)

        logger.info(
            "Consolidation %scomplete: pruned=%d (cutoff %s)",
            "(dry-run) " if dry_run else "",
            result.pruned,
            cutoff,
        )
        return result

    async def history(self, limit: int = 20) -> list[dict[str, Any]]:
        """Retrieve recent entries from the consolidation log, newest first."""
        rows = await self._storage.execute(
            """
            SELECT id, action, details, patterns_affected, created_at
            FROM consolidation_log
            ORDER BY id DESC
            LIMIT ?
            """,
            (limit,),
        )
        entries: list[dict[str, Any]] = []
        for row in rows:
            entry: dict[str, Any] = {
                "id": row["id"],
                "action": row["action"],
                "created_at": row["created_at"],
            }
            # Parse JSON columns back into Python objects.
            for column in ("details", "patterns_affected"):
                raw = row[column]
                if not raw:
                    entry[column] = None
                    continue
                try:
                    entry[column] = json.loads(raw)
                except (json.JSONDecodeError, TypeError):
                    entry[column] = raw
            entries.append(entry)
        return entries
