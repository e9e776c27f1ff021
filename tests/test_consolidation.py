"""Tests for the consolidation engine.

Tests exercise pruning of persistently weak, stale patterns: the three
conditions and their boundaries, dry-run preview, the advisory lock, and
audit logging.  Patterns are backdated against the ``clock`` fixture so the
retention window is deterministic.
"""

from __future__ import annotations

from datetime import timedelta

from engram.config import ConsolidationConfig
from engram.consolidation import ConsolidationEngine, ConsolidationResult
from engram.records import Session
from engram.storage import Storage, format_timestamp
from tests.conftest import FakeClock, count_rows, insert_failure, insert_pattern


def _days_before(clock: FakeClock, days: float) -> str:
    return format_timestamp(clock() - timedelta(days=days))


async def _weak_stale(storage: Storage, clock: FakeClock, key: str = "flaky", **overrides) -> None:
    """Insert a pattern that meets every pruning condition unless overridden."""
    fields = {"confidence": 0.1, "occurrence_count": 6, "last_seen": _days_before(clock, 8)}
    fields.update(overrides)
    await insert_pattern(storage, key, **fields)


class TestPruneConditions:

    async def test_prunes_when_all_conditions_hold(
        self, clocked_storage: Storage, clock: FakeClock
    ) -> None:
        await _weak_stale(clocked_storage, clock)
        await insert_pattern(clocked_storage, "healthy", confidence=0.9)

        result = await ConsolidationEngine(clocked_storage).run()
        assert result.pruned == 1
        assert result.pruned_keys == ["flaky"]
        assert await clocked_storage.get_pattern("flaky") is None
        assert await clocked_storage.get_pattern("healthy") is not None

    async def test_confidence_at_floor_kept(self, clocked_storage: Storage, clock: FakeClock) -> None:
        await _weak_stale(clocked_storage, clock, confidence=0.2)
        result = await ConsolidationEngine(clocked_storage).run()
        assert result.pruned == 0

    async def test_occurrences_at_threshold_kept(
        self, clocked_storage: Storage, clock: FakeClock
    ) -> None:
        await _weak_stale(clocked_storage, clock, occurrence_count=5)
        result = await ConsolidationEngine(clocked_storage).run()
        assert result.pruned == 0

    async def test_recently_seen_kept(self, clocked_storage: Storage, clock: FakeClock) -> None:
        await _weak_stale(clocked_storage, clock, last_seen=_days_before(clock, 7))
        await _weak_stale(clocked_storage, clock, key="fresh", last_seen=_days_before(clock, 1))
        result = await ConsolidationEngine(clocked_storage).run()
        assert result.pruned == 0

    async def test_custom_thresholds(self, clocked_storage: Storage, clock: FakeClock) -> None:
        await _weak_stale(clocked_storage, clock, confidence=0.3, occurrence_count=2)
        cfg = ConsolidationConfig(confidence_floor=0.4, occurrence_threshold=1, retention_days=3)
        result = await ConsolidationEngine(clocked_storage, cfg).run()
        assert result.pruned_keys == ["flaky"]

    async def test_failures_and_sessions_untouched(
        self, clocked_storage: Storage, clock: FakeClock
    ) -> None:
        await _weak_stale(clocked_storage, clock)
        await insert_failure(clocked_storage, "flaky", occurred_at=_days_before(clock, 400))
        await clocked_storage.persist_session(
            Session(
                summary="old",
                success_count=0,
                failure_count=3,
                patterns_learned=0,
                started_at=_days_before(clock, 400),
                ended_at=_days_before(clock, 399),
            )
        )
        result = await ConsolidationEngine(clocked_storage).run()
        assert result.pruned == 1
        assert await count_rows(clocked_storage, "failures") == 1
        assert await count_rows(clocked_storage, "sessions") == 1


class TestDryRun:

    async def test_dry_run_reports_without_deleting(
        self, clocked_storage: Storage, clock: FakeClock
    ) -> None:
        await _weak_stale(clocked_storage, clock)
        result = await ConsolidationEngine(clocked_storage).run(dry_run=True)
        assert result.dry_run is True
        assert result.pruned_keys == ["flaky"]
        assert await clocked_storage.get_pattern("flaky") is not None
        assert await count_rows(clocked_storage, "consolidation_log") == 0


class TestLocking:

    async def test_skips_when_lock_held(self, clocked_storage: Storage, clock: FakeClock) -> None:
        await _weak_stale(clocked_storage, clock)
        await clocked_storage.execute_write(
            "INSERT INTO locks (name, holder, acquired_at) VALUES (?, ?, ?)",
            ("consolidation", "other-process", _days_before(clock, 0)),
        )
        result = await ConsolidationEngine(clocked_storage).run()
        assert result.skipped is True
        assert result.pruned == 0
        assert await clocked_storage.get_pattern("flaky") is not None

    async def test_lock_released_after_run(self, clocked_storage: Storage) -> None:
        engine = ConsolidationEngine(clocked_storage)
        await engine.run()
        assert await count_rows(clocked_storage, "locks") == 0
        second = await engine.run()
        assert second.skipped is False

    async def test_stale_lock_is_reclaimed(self, clocked_storage: Storage, clock: FakeClock) -> None:
        await _weak_stale(clocked_storage, clock)
        await clocked_storage.execute_write(
            "INSERT INTO locks (name, holder, acquired_at) VALUES (?, ?, ?)",
            ("consolidation", "crashed-process", format_timestamp(clock() - timedelta(minutes=11))),
        )
        result = await ConsolidationEngine(clocked_storage).run()
        assert result.skipped is False
        assert result.pruned_keys == ["flaky"]


class TestHistory:

    async def test_applied_run_is_logged(self, clocked_storage: Storage, clock: FakeClock) -> None:
        await _weak_stale(clocked_storage, clock, key="a")
        await _weak_stale(clocked_storage, clock, key="b")
        engine = ConsolidationEngine(clocked_storage)
        await engine.run()

        history = await engine.history()
        assert len(history) == 1
        entry = history[0]
        assert entry["action"] == "prune"
        assert entry["patterns_affected"] == ["a", "b"]
        assert entry["details"]["pruned"] == 2
        assert entry["created_at"] == format_timestamp(clock())

    async def test_empty_run_not_logged(self, clocked_storage: Storage) -> None:
        engine = ConsolidationEngine(clocked_storage)
        await engine.run()
        assert await engine.history() == []

    async def test_history_newest_first_with_limit(
        self, clocked_storage: Storage, clock: FakeClock
    ) -> None:
        engine = ConsolidationEngine(clocked_storage)
        for key in ("first", "second", "third"):
            await _weak_stale(clocked_storage, clock, key=key)
            await engine.run()
        history = await engine.history(limit=2)
        assert [h["patterns_affected"] for h in history] == [["third"], ["second"]]


class TestConsolidationResult:

    def test_to_dict_contains_all_keys(self) -> None:
        data = ConsolidationResult(pruned=1, pruned_keys=["x"], cutoff="c").to_dict()
        assert set(data) == {"pruned", "pruned_keys", "skipped", "dry_run", "cutoff"}
        assert data["pruned_keys"] == ["x"]
