"""Shared fixtures and helpers for the engram test suite."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from engram.config import EngramConfig
from engram.hooks import HookDispatcher
from engram.records import Pattern
from engram.storage import Storage, format_timestamp


class FakeClock:
    """Deterministic clock; call it for the current time, move it with :meth:`advance`.

    With a *tick*, every call returns a strictly later time than the one
    before, even across threads.
    """

    def __init__(self, start: datetime | None = None, tick: timedelta | None = None) -> None:
        self.now = start or datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)
        self._tick = tick
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            if self._tick is not None:
                self.now += self._tick
            return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def config(tmp_path: Path) -> EngramConfig:
    """Default configuration with the database and backups inside ``tmp_path``."""
    return EngramConfig(
        db_path=tmp_path / "test.db",
        backup_dir=tmp_path / "backups",
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def storage(config: EngramConfig) -> Storage:
    """Provide an initialized Storage instance backed by a temp directory.

    The database file, backup directory, and all related artefacts live
    entirely inside ``tmp_path`` so tests never touch a real project store.
    """
    s = Storage(config.db_path, config=config)
    await s.initialize()
    yield s  # type: ignore[misc]
    await s.close()


@pytest.fixture
async def clocked_storage(config: EngramConfig, clock: FakeClock) -> Storage:
    """Like ``storage`` but driven by the ``clock`` fixture."""
    s = Storage(config.db_path, config=config, clock=clock)
    await s.initialize()
    yield s  # type: ignore[misc]
    await s.close()


@pytest.fixture
async def dispatcher(storage: Storage, config: EngramConfig) -> HookDispatcher:
    """A dispatcher over the temp ``storage`` using the substring matcher."""
    return HookDispatcher(storage, config=config)


# ---------------------------------------------------------------------------
# Shared test helpers -- direct SQL insertion bypassing the upsert path
# ---------------------------------------------------------------------------


def days_ago(days: float) -> str:
    """Timestamp *days* before now, in the store's format."""
    return format_timestamp(datetime.now(tz=timezone.utc) - timedelta(days=days))


async def insert_pattern(
    storage: Storage,
    key: str,
    confidence: float = 0.5,
    occurrence_count: int = 1,
    context: str = "",
    last_outcome: str = "success",
    last_seen: str | None = None,
    created_at: str | None = None,
) -> Pattern:
    """Insert a pattern directly via SQL with arbitrary field values."""
    if last_seen is None:
        last_seen = storage.now()
    if created_at is None:
        created_at = last_seen
    await storage.execute_write(
        """
        INSERT INTO patterns
            (key, context, confidence, last_outcome, occurrence_count,
             created_at, last_seen)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (key, context, confidence, last_outcome, occurrence_count, created_at, last_seen),
    )
    pattern = await storage.get_pattern(key)
    assert pattern is not None
    return pattern


async def insert_failure(
    storage: Storage,
    task: str,
    error_message: str = "boom",
    occurred_at: str | None = None,
) -> int:
    """Insert a failure record directly, optionally backdated."""
    return await storage.execute_write(
        "INSERT INTO failures (task, error_message, context, occurred_at) VALUES (?, ?, '', ?)",
        (task, error_message, occurred_at or storage.now()),
    )


async def count_rows(storage: Storage, table: str) -> int:
    rows = await storage.execute(f"SELECT COUNT(*) AS cnt FROM {table}")
    return rows[0]["cnt"]
