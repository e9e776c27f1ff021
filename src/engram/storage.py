"""Core storage layer for the engram pattern store.

Manages a single SQLite database holding patterns, their outcome history,
failures, sessions and causal links.  All public methods are async-friendly,
wrapping synchronous sqlite3 calls via :func:`anyio.to_thread.run_sync`.

Connection strategy:
    - A single ``threading.Lock`` serialises write operations inside the
      process; it is acquired with a timeout so a stuck writer surfaces as
      :class:`~engram.errors.StoreUnavailable` instead of blocking forever.
    - ``BEGIN IMMEDIATE`` plus ``busy_timeout`` serialise writers across
      processes (several hook processes may run at once).
    - Thread-local persistent connections: each thread pool worker keeps one
      long-lived connection open, eliminating per-call open/close overhead.
    - WAL mode enables snapshot-consistent readers alongside a single writer.

sqlite3 and OS errors are translated at this boundary into the types in
:mod:`engram.errors`.

Usage::

    from engram.storage import Storage

    store = Storage(config.db_path)
    await store.initialize()
    pattern = await store.upsert_pattern("add-auth", "myapp", "success")
"""

from __future__ import annotations

import dataclasses
import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Iterator, TypeVar

import anyio

from engram.config import EngramConfig, get_config
from engram.confidence import seed_confidence, update_confidence, validate_outcome
from engram.errors import Corrupt, InvalidKey, StoreError, StoreUnavailable, ValidationError
from engram.records import CausalLink, Failure, Pattern, Session

_T = TypeVar("_T")

log = logging.getLogger(__name__)

SCHEMA_VERSION = 1
"""Value written to ``PRAGMA user_version`` by this release."""

_STALE_LOCK_AGE = timedelta(minutes=10)

HOOK_VERBS: tuple[str, ...] = (
    "pre-task",
    "post-task",
    "pre-command",
    "session-start",
    "session-end",
)
"""The five hook call points, in lifecycle order."""

# OperationalError messages that mean "try again later" rather than "broken".
_UNAVAILABLE_MARKERS: tuple[str, ...] = (
    "locked",
    "busy",
    "unable to open",
    "disk i/o",
    "readonly",
)

# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """\
-- Recurring tasks/approaches and their confidence
CREATE TABLE IF NOT EXISTS patterns (
    key TEXT PRIMARY KEY CHECK(length(trim(key)) > 0),
    context TEXT NOT NULL DEFAULT '',
    confidence REAL NOT NULL CHECK(confidence >= 0.0 AND confidence <= 1.0),
    last_outcome TEXT NOT NULL CHECK(last_outcome IN ('success','failure')),
    occurrence_count INTEGER NOT NULL DEFAULT 1 CHECK(occurrence_count >= 1),
    created_at TEXT NOT NULL,
    last_seen TEXT NOT NULL,
    CHECK(last_seen >= created_at)
);

-- One row per recorded outcome, written in the same transaction as the
-- pattern upsert.  Session-end aggregates its counts from here.
CREATE TABLE IF NOT EXISTS pattern_outcomes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    pattern_key TEXT NOT NULL,
    outcome TEXT NOT NULL CHECK(outcome IN ('success','failure')),
    confidence REAL NOT NULL,
    recorded_at TEXT NOT NULL
);

-- Append-only log of failed attempts
CREATE TABLE IF NOT EXISTS failures (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task TEXT NOT NULL,
    error_message TEXT NOT NULL DEFAULT '',
    context TEXT NOT NULL DEFAULT '',
    occurred_at TEXT NOT NULL
);

-- Closed sessions (immutable once written)
CREATE TABLE IF NOT EXISTS sessions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    summary TEXT NOT NULL,
    success_count INTEGER NOT NULL DEFAULT 0,
    failure_count INTEGER NOT NULL DEFAULT 0,
    patterns_learned INTEGER NOT NULL DEFAULT 0,
    started_at TEXT NOT NULL,
    ended_at TEXT NOT NULL
);

-- Window start of the currently active session.  Singleton row: present
-- while a session is active, deleted when the session is closed.
CREATE TABLE IF NOT EXISTS active_session (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    started_at TEXT NOT NULL
);

-- Optional cause -> effect relations
CREATE TABLE IF NOT EXISTS causal_links (
    cause TEXT NOT NULL CHECK(length(trim(cause)) > 0),
    effect TEXT NOT NULL CHECK(length(trim(effect)) > 0),
    confidence REAL NOT NULL CHECK(confidence >= 0.0 AND confidence <= 1.0),
    occurrence_count INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    last_seen TEXT NOT NULL,
    PRIMARY KEY (cause, effect)
);

-- Audit log for consolidation actions
CREATE TABLE IF NOT EXISTS consolidation_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    action TEXT NOT NULL,
    details TEXT,
    patterns_affected TEXT,
    created_at TEXT NOT NULL
);

-- Advisory locks for cross-process mutual exclusion
CREATE TABLE IF NOT EXISTS locks (
    name TEXT PRIMARY KEY,
    holder TEXT,
    acquired_at TEXT NOT NULL
);

-- Hook invocation statistics for observability
CREATE TABLE IF NOT EXISTS hook_stats (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    verb TEXT NOT NULL CHECK(verb IN (
        'pre-task','post-task','pre-command','session-start','session-end'
    )),
    status TEXT NOT NULL,
    latency_ms INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);
"""

_INDEX_SQL = """\
CREATE INDEX IF NOT EXISTS idx_patterns_rank
    ON patterns(confidence DESC, occurrence_count DESC, last_seen DESC);
CREATE INDEX IF NOT EXISTS idx_patterns_last_seen ON patterns(last_seen);
CREATE INDEX IF NOT EXISTS idx_pattern_outcomes_recorded ON pattern_outcomes(recorded_at);
CREATE INDEX IF NOT EXISTS idx_pattern_outcomes_key ON pattern_outcomes(pattern_key);
CREATE INDEX IF NOT EXISTS idx_failures_occurred ON failures(occurred_at DESC);
CREATE INDEX IF NOT EXISTS idx_sessions_ended ON sessions(ended_at DESC);
CREATE INDEX IF NOT EXISTS idx_causal_links_confidence ON causal_links(confidence DESC);
CREATE INDEX IF NOT EXISTS idx_hook_stats_verb ON hook_stats(verb);
"""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def format_timestamp(dt: datetime) -> str:
    """Render *dt* as the ISO-8601 UTC string used in every timestamp column."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


BEGINNING_OF_TIME = format_timestamp(datetime.min.replace(tzinfo=timezone.utc))
"""Window start of the very first session."""


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


@contextmanager
def _translated(operation: str) -> Iterator[None]:
    """Translate sqlite3/OS errors raised inside the block into store errors."""
    try:
        yield
    except StoreError:
        raise
    except sqlite3.IntegrityError:
        raise
    except sqlite3.OperationalError as exc:
        message = str(exc).lower()
        if any(marker in message for marker in _UNAVAILABLE_MARKERS):
            raise StoreUnavailable(f"{operation}: {exc}") from exc
        raise Corrupt(f"{operation}: {exc}") from exc
    except sqlite3.DatabaseError as exc:
        raise Corrupt(f"{operation}: {exc}") from exc
    except OSError as exc:
        raise StoreUnavailable(f"{operation}: {exc}") from exc


def _validate_key(key: str, what: str = "Pattern key") -> str:
    if not isinstance(key, str) or not key.strip():
        raise InvalidKey(f"{what} must not be empty")
    return key.strip()


def _validate_outcome(outcome: str) -> str:
    try:
        return validate_outcome(outcome)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc


def _casefold(value: str | None) -> str | None:
    return value.casefold() if isinstance(value, str) else value


def _sql_limit(limit: int | None) -> int:
    """Convert an optional limit to SQLite's ``LIMIT`` value (-1 = unbounded)."""
    if limit is None:
        return -1
    if limit < 0:
        raise ValidationError(f"limit must be >= 0, got {limit}")
    return limit


# ---------------------------------------------------------------------------
# Storage class
# ---------------------------------------------------------------------------


class Storage:
    """Async-friendly SQLite storage backend for engram.

    Parameters
    ----------
    db_path:
        Filesystem path for the SQLite database file.  Parent directories
        are created automatically during :meth:`initialize`.
    config:
        Configuration to read tunables from; defaults to :func:`get_config`.
    clock:
        Callable returning the current time.  Defaults to UTC wall-clock
        time; tests inject fixed clocks.
    """

    def __init__(
        self,
        db_path: Path | None = None,
        *,
        config: EngramConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        cfg = config or get_config()
        self._db_path: Path = Path(db_path) if db_path else cfg.db_path
        self._backup_dir: Path = cfg.backup_dir
        self._backup_count: int = cfg.backup_count
        self._lock_timeout: float = cfg.lock_timeout_seconds
        self._alpha = cfg.confidence.alpha
        self._beta = cfg.confidence.beta
        self._seed_success = cfg.confidence.seed_success
        self._seed_failure = cfg.confidence.seed_failure
        self._clock = clock or _utcnow
        self._write_lock = threading.Lock()
        self._local = threading.local()  # thread-local persistent connections
        self._all_connections: list[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()  # guards _all_connections
        self._init_lock = threading.Lock()
        self._initialized = False

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def db_path(self) -> Path:
        """Filesystem path of the SQLite database."""
        return self._db_path

    @property
    def alpha(self) -> float:
        """Success learning rate applied by :meth:`upsert_pattern`."""
        return self._alpha

    @property
    def beta(self) -> float:
        """Failure decay rate applied by :meth:`upsert_pattern`."""
        return self._beta

    def clock(self) -> datetime:
        """Current time according to the store's clock."""
        return self._clock()

    def now(self) -> str:
        """Current time formatted for a timestamp column."""
        return format_timestamp(self._clock())

    # ------------------------------------------------------------------
    # Initialisation
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Prepare the database for use.

        This method is idempotent and cheap after the first call.  It creates
        the database directory, opens a connection in WAL mode, checks the
        schema version and creates all tables and indexes.

        Raises
        ------
        StoreUnavailable
            The file or its directory cannot be created or opened, or the
            database stayed locked beyond the lock timeout.
        Corrupt
            The file is not a SQLite database or was written by a newer
            schema version.
        """
        if self._initialized:
            return
        await anyio.to_thread.run_sync(self._initialize_sync)

    def _initialize_sync(self) -> None:
        """Synchronous initialisation run inside a worker thread."""
        # Concurrent first calls from several worker threads run the DDL once.
        with self._init_lock, _translated("initialize"):
            if self._initialized:
                return

            self._db_path.parent.mkdir(parents=True, exist_ok=True)

            # Use a dedicated one-time connection for schema setup (not thread-local).
            conn = self._open_connection()
            try:
                version = conn.execute("PRAGMA user_version").fetchone()[0]
                if version > SCHEMA_VERSION:
                    raise Corrupt(
                        f"{self._db_path} has schema version {version}; "
                        f"this release supports up to {SCHEMA_VERSION}"
                    )
                conn.executescript(_SCHEMA_SQL)
                conn.executescript(_INDEX_SQL)
                conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
                conn.commit()
            finally:
                conn.close()

            self._initialized = True
            log.info("Storage initialised at %s", self._db_path)

    # ------------------------------------------------------------------
    # Connection factory
    # ------------------------------------------------------------------

    def _get_connection(self) -> sqlite3.Connection:
        """Return the thread-local persistent :class:`sqlite3.Connection`."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = self._open_connection()
            self._local.conn = conn
            with self._connections_lock:
                self._all_connections.append(conn)
        return conn

    def _open_connection(self) -> sqlite3.Connection:
        """Open and configure a new :class:`sqlite3.Connection`.

        Every connection is configured with:

        - WAL journal mode for concurrent reads.
        - A busy timeout matching the configured lock timeout.
        - Row factory set to :class:`sqlite3.Row` for dict-like access.
        """
        conn = sqlite3.connect(
            str(self._db_path),
            timeout=self._lock_timeout,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row

        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute(f"PRAGMA busy_timeout={int(self._lock_timeout * 1000)}")
        conn.create_function("casefold", 1, _casefold, deterministic=True)

        return conn

    @contextmanager
    def _write_locked(self) -> Iterator[None]:
        """Hold the process write lock, giving up after the lock timeout."""
        if not self._write_lock.acquire(timeout=self._lock_timeout):
            raise StoreUnavailable(
                f"Timed out after {self._lock_timeout:.1f}s waiting for the "
                f"write lock on {self._db_path}"
            )
        try:
            yield
        finally:
            self._write_lock.release()

    async def _run(self, fn: Callable[[], _T]) -> _T:
        await self.initialize()
        return await anyio.to_thread.run_sync(fn)

    # ------------------------------------------------------------------
    # Query execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> list[sqlite3.Row]:
        """Execute a read-only query and return all rows."""
        return await self._run(lambda: self._execute_sync(sql, params))

    def _execute_sync(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> list[sqlite3.Row]:
        with _translated("read"):
            conn = self._get_connection()
            return conn.execute(sql, params).fetchall()

    async def execute_write(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> int:
        """Execute a write query under the write lock.

        Returns
        -------
        int
            The ``lastrowid`` of the executed statement.
        """
        return await self._run(lambda: self._execute_write_sync(sql, params))

    def _execute_write_sync(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> int:
        with _translated("write"), self._write_locked():
            conn = self._get_connection()
            try:
                cursor = conn.execute(sql, params)
                conn.commit()
                return cursor.lastrowid or 0
            except Exception:
                conn.rollback()
                raise

    async def execute_transaction(self, fn: Callable[[sqlite3.Connection], _T]) -> _T:
        """Execute a callback inside a single ``BEGIN IMMEDIATE`` transaction.

        The write lock is held for the entire duration, and the callback
        receives a raw :class:`sqlite3.Connection` that is already inside
        a ``BEGIN IMMEDIATE`` transaction.  Commit on success, rollback on
        exception.

        ``BEGIN IMMEDIATE`` acquires the SQLite write-lock upfront so that
        the read-modify-write inside the callback cannot interleave with a
        writer in another process.
        """
        return await self._run(lambda: self._execute_transaction_sync(fn))

    def _execute_transaction_sync(self, fn: Callable[[sqlite3.Connection], _T]) -> _T:
        with _translated("transaction"), self._write_locked():
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                result = fn(conn)
                conn.commit()
                return result
            except Exception:
                conn.rollback()
                raise

    async def read_snapshot(self, fn: Callable[[sqlite3.Connection], _T]) -> _T:
        """Run several reads against one consistent snapshot.

        The callback runs inside a deferred read transaction, so every query
        it issues sees the same committed state even while other processes
        write.
        """
        return await self._run(lambda: self._read_snapshot_sync(fn))

    def _read_snapshot_sync(self, fn: Callable[[sqlite3.Connection], _T]) -> _T:
        with _translated("read"):
            conn = self._get_connection()
            conn.execute("BEGIN")
            try:
                return fn(conn)
            finally:
                conn.rollback()

    # ------------------------------------------------------------------
    # Patterns
    # ------------------------------------------------------------------

    async def upsert_pattern(
        self,
        key: str,
        context: str = "",
        outcome: str = "success",
    ) -> Pattern:
        """Record one outcome for *key* and return the updated pattern.

        A previously unseen key is created with the seed confidence for
        *outcome*.  An existing key has the confidence update rule applied,
        its ``occurrence_count`` incremented and ``last_seen`` refreshed; a
        non-empty *context* replaces the stored one.  The read-modify-write
        runs in one ``BEGIN IMMEDIATE`` transaction, so concurrent callers
        never lose an update.

        Raises
        ------
        InvalidKey
            *key* is empty or blank.
        ValidationError
            *outcome* is not ``"success"`` or ``"failure"``.
        """
        key = _validate_key(key)
        outcome = _validate_outcome(outcome)
        context = (context or "").strip()

        pattern = await self.execute_transaction(
            lambda conn: self._upsert_sync(conn, key, context, outcome)
        )
        log.debug(
            "Pattern %r recorded %s -> confidence=%.4f occurrences=%d",
            pattern.key,
            outcome,
            pattern.confidence,
            pattern.occurrence_count,
        )
        return pattern

    async def record_outcome(
        self,
        key: str,
        context: str = "",
        outcome: str = "success",
        error_message: str = "",
    ) -> tuple[Pattern, Failure | None]:
        """Record an outcome and, for a failure, its failure-log entry.

        Same as :meth:`upsert_pattern`, except that a ``"failure"`` outcome
        also appends a failure for *key* in the same transaction.  Either
        both rows are written or neither is.

        Returns
        -------
        tuple[Pattern, Failure | None]
            The updated pattern and the appended failure (``None`` on
            success).
        """
        key = _validate_key(key)
        outcome = _validate_outcome(outcome)
        context = (context or "").strip()
        error_message = error_message or ""

        def _do_record(conn: sqlite3.Connection) -> tuple[Pattern, Failure | None]:
            pattern = self._upsert_sync(conn, key, context, outcome)
            if outcome != "failure":
                return pattern, None
            occurred_at = self.now()
            cursor = conn.execute(
                """
                INSERT INTO failures (task, error_message, context, occurred_at)
                VALUES (?, ?, ?, ?)
                """,
                (key, error_message, context, occurred_at),
            )
            failure = Failure(
                id=cursor.lastrowid,
                task=key,
                error_message=error_message,
                context=context,
                occurred_at=occurred_at,
            )
            return pattern, failure

        pattern, failure = await self.execute_transaction(_do_record)
        log.debug(
            "Pattern %r recorded %s -> confidence=%.4f occurrences=%d",
            pattern.key,
            outcome,
            pattern.confidence,
            pattern.occurrence_count,
        )
        return pattern, failure

    def _upsert_sync(
        self, conn: sqlite3.Connection, key: str, context: str, outcome: str
    ) -> Pattern:
        now = self.now()
        row = conn.execute("SELECT * FROM patterns WHERE key = ?", (key,)).fetchone()
        if row is None:
            confidence = seed_confidence(
                outcome,
                on_success=self._seed_success,
                on_failure=self._seed_failure,
            )
            conn.execute(
                """
                INSERT INTO patterns
                    (key, context, confidence, last_outcome,
                     occurrence_count, created_at, last_seen)
                VALUES (?, ?, ?, ?, 1, ?, ?)
                """,
                (key, context, confidence, outcome, now, now),
            )
        else:
            confidence = update_confidence(
                row["confidence"], outcome, alpha=self._alpha, beta=self._beta
            )
            # A clock that moved backwards must not move last_seen back.
            last_seen = max(now, row["last_seen"])
            conn.execute(
                """
                UPDATE patterns
                SET confidence = ?,
                    last_outcome = ?,
                    occurrence_count = occurrence_count + 1,
                    last_seen = ?,
                    context = ?
                WHERE key = ?
                """,
                (confidence, outcome, last_seen, context or row["context"], key),
            )
        conn.execute(
            """
            INSERT INTO pattern_outcomes (pattern_key, outcome, confidence, recorded_at)
            VALUES (?, ?, ?, ?)
            """,
            (key, outcome, confidence, now),
        )
        updated = conn.execute("SELECT * FROM patterns WHERE key = ?", (key,)).fetchone()
        return Pattern.from_row(updated)

    async def get_pattern(self, key: str) -> Pattern | None:
        """Return the pattern stored under *key*, or ``None``."""
        key = _validate_key(key)
        rows = await self.execute("SELECT * FROM patterns WHERE key = ?", (key,))
        return Pattern.from_row(rows[0]) if rows else None

    async def get_patterns(
        self,
        context_filter: str = "",
        min_confidence: float = 0.0,
        limit: int | None = None,
        *,
        max_confidence: float | None = None,
        min_occurrences: int | None = None,
    ) -> list[Pattern]:
        """Return patterns ordered by confidence, occurrences, then recency.

        Parameters
        ----------
        context_filter:
            Case-insensitive substring the pattern's ``context`` must
            contain.  Empty matches every pattern.
        min_confidence:
            Inclusive lower bound on confidence.
        limit:
            Maximum number of patterns; ``None`` for no limit.
        max_confidence:
            Optional exclusive upper bound on confidence.
        min_occurrences:
            Optional inclusive lower bound on ``occurrence_count``.

        Returns
        -------
        list[Pattern]
            Possibly empty; a filter that matches nothing is not an error.
        """
        clauses = ["confidence >= ?"]
        params: list[Any] = [min_confidence]
        if context_filter:
            clauses.append("instr(lower(context), lower(?)) > 0")
            params.append(context_filter)
        if max_confidence is not None:
            clauses.append("confidence < ?")
            params.append(max_confidence)
        if min_occurrences is not None:
            clauses.append("occurrence_count >= ?")
            params.append(min_occurrences)
        params.append(_sql_limit(limit))

        rows = await self.execute(
            f"""
            SELECT * FROM patterns
            WHERE {' AND '.join(clauses)}
            ORDER BY confidence DESC, occurrence_count DESC, last_seen DESC
            LIMIT ?
            """,
            tuple(params),
        )
        return [Pattern.from_row(row) for row in rows]

    async def search_patterns(
        self,
        query: str,
        min_confidence: float = 0.0,
        limit: int | None = None,
    ) -> list[Pattern]:
        """Patterns that overlap *query* as substrings, in store order.

        A pattern matches when the query occurs in its key or context, or
        when its key or non-empty context occurs in the query, ignoring
        case.  Matching happens in SQL before *limit* is applied, so a
        relevant pattern is found however many stronger unrelated ones the
        store holds.  A blank *query* matches every pattern.
        """
        needle = (query or "").casefold().strip()
        if not needle:
            return await self.get_patterns("", min_confidence, limit)

        rows = await self.execute(
            """
            SELECT * FROM patterns
            WHERE confidence >= :min_confidence
              AND (
                    instr(casefold(key), :needle) > 0
                 OR instr(:needle, casefold(key)) > 0
                 OR (context != '' AND (
                        instr(casefold(context), :needle) > 0
                     OR instr(:needle, casefold(context)) > 0))
              )
            ORDER BY confidence DESC, occurrence_count DESC, last_seen DESC
            LIMIT :limit
            """,
            {"min_confidence": min_confidence, "needle": needle, "limit": _sql_limit(limit)},
        )
        return [Pattern.from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Failures
    # ------------------------------------------------------------------

    async def append_failure(
        self,
        task: str,
        error_message: str = "",
        context: str = "",
    ) -> Failure:
        """Append one failed attempt to the failure log."""
        task = _validate_key(task, "Failure task")
        occurred_at = self.now()
        row_id = await self.execute_write(
            """
            INSERT INTO failures (task, error_message, context, occurred_at)
            VALUES (?, ?, ?, ?)
            """,
            (task, error_message or "", (context or "").strip(), occurred_at),
        )
        return Failure(
            id=row_id,
            task=task,
            error_message=error_message or "",
            context=(context or "").strip(),
            occurred_at=occurred_at,
        )

    async def get_recent_failures(
        self,
        task_filter: str = "",
        limit: int | None = None,
    ) -> list[Failure]:
        """Failures whose task contains *task_filter*, newest first."""
        rows = await self.execute(
            """
            SELECT * FROM failures
            WHERE ? = '' OR instr(lower(task), lower(?)) > 0
            ORDER BY occurred_at DESC, id DESC
            LIMIT ?
            """,
            (task_filter, task_filter, _sql_limit(limit)),
        )
        return [Failure.from_row(row) for row in rows]

    async def count_failures(self, task_filter: str = "") -> int:
        """Size of ``get_recent_failures(task_filter, limit=None)``."""
        rows = await self.execute(
            """
            SELECT COUNT(*) AS cnt FROM failures
            WHERE ? = '' OR instr(lower(task), lower(?)) > 0
            """,
            (task_filter, task_filter),
        )
        return int(rows[0]["cnt"])

    async def prune_failures(self, older_than: str) -> int:
        """Delete failures that occurred before *older_than*; return the count."""

        def _do_prune(conn: sqlite3.Connection) -> int:
            cursor = conn.execute(
                "DELETE FROM failures WHERE occurred_at < ?", (older_than,)
            )
            return cursor.rowcount

        deleted = await self.execute_transaction(_do_prune)
        if deleted:
            log.info("Pruned %d failures older than %s", deleted, older_than)
        return deleted

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    @staticmethod
    def _insert_session(conn: sqlite3.Connection, session: Session) -> Session:
        cursor = conn.execute(
            """
            INSERT INTO sessions
                (summary, success_count, failure_count, patterns_learned,
                 started_at, ended_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                session.summary,
                session.success_count,
                session.failure_count,
                session.patterns_learned,
                session.started_at,
                session.ended_at,
            ),
        )
        return dataclasses.replace(session, id=cursor.lastrowid)

    async def persist_session(self, session: Session) -> Session:
        """Insert *session* and return it with its assigned ``id``."""
        return await self.execute_transaction(
            lambda conn: self._insert_session(conn, session)
        )

    async def get_last_session(self) -> Session | None:
        """The most recently ended session, or ``None``."""
        rows = await self.execute(
            "SELECT * FROM sessions ORDER BY ended_at DESC, id DESC LIMIT 1"
        )
        return Session.from_row(rows[0]) if rows else None

    async def begin_session_window(self) -> tuple[str, bool]:
        """Mark a session as active.

        Returns
        -------
        tuple[str, bool]
            The window start and whether it was created by this call.  An
            already-active session keeps its original window start.
        """

        def _do_begin(conn: sqlite3.Connection) -> tuple[str, bool]:
            row = conn.execute(
                "SELECT started_at FROM active_session WHERE id = 1"
            ).fetchone()
            if row is not None:
                return row["started_at"], False
            started_at = self.now()
            conn.execute(
                "INSERT INTO active_session (id, started_at) VALUES (1, ?)",
                (started_at,),
            )
            return started_at, True

        return await self.execute_transaction(_do_begin)

    async def get_session_window(self) -> str | None:
        """Window start of the active session, or ``None`` when none is active."""
        rows = await self.execute("SELECT started_at FROM active_session WHERE id = 1")
        return rows[0]["started_at"] if rows else None

    async def close_session(self, session: Session) -> Session:
        """Persist *session* and clear the active marker in one transaction."""

        def _do_close(conn: sqlite3.Connection) -> Session:
            persisted = self._insert_session(conn, session)
            conn.execute("DELETE FROM active_session")
            return persisted

        return await self.execute_transaction(_do_close)

    async def end_session_window(
        self,
        build: Callable[[str, str, dict[str, int]], Session],
        window_start: str | None = None,
    ) -> Session:
        """Close the current session window and persist its session.

        Resolving the window, counting its activity, stamping the end time,
        inserting the session and clearing the active marker all happen in
        one ``BEGIN IMMEDIATE`` transaction.  An outcome recorded
        concurrently therefore lands either in this session's counts or
        after its ``ended_at``, where the next window picks it up.

        Parameters
        ----------
        build:
            Called as ``build(started_at, ended_at, counts)`` with the
            :meth:`window_counts` dict; returns the session to insert.
        window_start:
            Override for the window start.  Defaults to the active marker,
            then the previous session's end, then :data:`BEGINNING_OF_TIME`.
        """

        def _do_end(conn: sqlite3.Connection) -> Session:
            start = window_start
            if start is None:
                row = conn.execute(
                    "SELECT started_at FROM active_session WHERE id = 1"
                ).fetchone()
                start = row["started_at"] if row else None
            if start is None:
                row = conn.execute(
                    "SELECT ended_at FROM sessions ORDER BY ended_at DESC, id DESC LIMIT 1"
                ).fetchone()
                start = row["ended_at"] if row else BEGINNING_OF_TIME
            ended_at = max(self.now(), start)
            session = build(start, ended_at, self._count_window(conn, start))
            persisted = self._insert_session(conn, session)
            conn.execute("DELETE FROM active_session")
            return persisted

        return await self.execute_transaction(_do_end)

    async def window_counts(self, since: str) -> dict[str, int]:
        """Aggregate activity recorded at or after *since*.

        Returns
        -------
        dict[str, int]
            ``success_count`` and ``failure_count`` from the outcome history
            and ``patterns_learned``, the number of patterns last seen in
            the window.  All three are read from one snapshot.
        """
        return await self.read_snapshot(lambda conn: self._count_window(conn, since))

    @staticmethod
    def _count_window(conn: sqlite3.Connection, since: str) -> dict[str, int]:
        outcomes = conn.execute(
            """
            SELECT
                COALESCE(SUM(outcome = 'success'), 0) AS successes,
                COALESCE(SUM(outcome = 'failure'), 0) AS failures
            FROM pattern_outcomes
            WHERE recorded_at >= ?
            """,
            (since,),
        ).fetchone()
        learned = conn.execute(
            "SELECT COUNT(*) AS cnt FROM patterns WHERE last_seen >= ?",
            (since,),
        ).fetchone()
        return {
            "success_count": int(outcomes["successes"]),
            "failure_count": int(outcomes["failures"]),
            "patterns_learned": int(learned["cnt"]),
        }

    # ------------------------------------------------------------------
    # Causal links
    # ------------------------------------------------------------------

    async def upsert_causal_link(
        self,
        cause: str,
        effect: str,
        outcome: str = "success",
    ) -> CausalLink:
        """Record evidence for ``cause -> effect``.

        A confirming observation is a ``"success"``, a contradicting one a
        ``"failure"``; the pattern update rule and seeds apply unchanged.
        """
        cause = _validate_key(cause, "Causal link cause")
        effect = _validate_key(effect, "Causal link effect")
        outcome = _validate_outcome(outcome)

        def _do_upsert(conn: sqlite3.Connection) -> CausalLink:
            now = self.now()
            row = conn.execute(
                "SELECT * FROM causal_links WHERE cause = ? AND effect = ?",
                (cause, effect),
            ).fetchone()
            if row is None:
                confidence = seed_confidence(
                    outcome,
                    on_success=self._seed_success,
                    on_failure=self._seed_failure,
                )
                conn.execute(
                    """
                    INSERT INTO causal_links
                        (cause, effect, confidence, occurrence_count, created_at, last_seen)
                    VALUES (?, ?, ?, 1, ?, ?)
                    """,
                    (cause, effect, confidence, now, now),
                )
            else:
                confidence = update_confidence(
                    row["confidence"], outcome, alpha=self._alpha, beta=self._beta
                )
                conn.execute(
                    """
                    UPDATE causal_links
                    SET confidence = ?,
                        occurrence_count = occurrence_count + 1,
                        last_seen = ?
                    WHERE cause = ? AND effect = ?
                    """,
                    (confidence, max(now, row["last_seen"]), cause, effect),
                )
            updated = conn.execute(
                "SELECT * FROM causal_links WHERE cause = ? AND effect = ?",
                (cause, effect),
            ).fetchone()
            return CausalLink.from_row(updated)

        return await self.execute_transaction(_do_upsert)

    async def get_causal_links(
        self,
        cause_filter: str = "",
        min_confidence: float = 0.0,
        limit: int | None = None,
    ) -> list[CausalLink]:
        """Causal links whose cause contains *cause_filter*, strongest first."""
        rows = await self.execute(
            """
            SELECT * FROM causal_links
            WHERE (? = '' OR instr(lower(cause), lower(?)) > 0)
              AND confidence >= ?
            ORDER BY confidence DESC, occurrence_count DESC, last_seen DESC
            LIMIT ?
            """,
            (cause_filter, cause_filter, min_confidence, _sql_limit(limit)),
        )
        return [CausalLink.from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Advisory lock helpers
    # ------------------------------------------------------------------

    def try_acquire_lock(self, conn: sqlite3.Connection, name: str, holder: str | None = None) -> bool:
        """Attempt to acquire a named advisory lock inside a transaction.

        Locks acquired more than 10 minutes ago by the store's clock are
        treated as stale and cleaned up before the acquisition attempt.

        Returns
        -------
        bool
            ``True`` if the lock was acquired, ``False`` if another
            holder already owns it.
        """
        if holder is None:
            holder = uuid.uuid4().hex

        now = self.clock()
        conn.execute(
            "DELETE FROM locks WHERE name = ? AND acquired_at < ?",
            (name, format_timestamp(now - _STALE_LOCK_AGE)),
        )

        try:
            conn.execute(
                "INSERT INTO locks (name, holder, acquired_at) VALUES (?, ?, ?)",
                (name, holder, format_timestamp(now)),
            )
            return True
        except sqlite3.IntegrityError:
            return False

    @staticmethod
    def release_lock(conn: sqlite3.Connection, name: str, holder: str | None = None) -> None:
        """Release a named advisory lock inside a transaction.

        If *holder* is given, only releases the lock if it is held by that
        holder; otherwise releases unconditionally.
        """
        if holder is not None:
            conn.execute(
                "DELETE FROM locks WHERE name = ? AND holder = ?",
                (name, holder),
            )
        else:
            conn.execute("DELETE FROM locks WHERE name = ?", (name,))

    # ------------------------------------------------------------------
    # Hook statistics
    # ------------------------------------------------------------------

    async def record_hook_stat(self, verb: str, status: str, latency_ms: int) -> None:
        """Persist one hook invocation for the ``stats`` command."""
        await self.execute_write(
            "INSERT INTO hook_stats (verb, status, latency_ms, created_at) VALUES (?, ?, ?, ?)",
            (verb, status, latency_ms, self.now()),
        )

    async def hook_stats(self) -> list[dict[str, Any]]:
        """Invocation counts and mean latency per verb and status."""
        rows = await self.execute(
            """
            SELECT verb, status, COUNT(*) AS calls,
                   ROUND(AVG(latency_ms), 1) AS avg_latency_ms,
                   MAX(latency_ms) AS max_latency_ms
            FROM hook_stats
            GROUP BY verb, status
            ORDER BY verb, status
            """
        )
        return [dict(row) for row in rows]

    # ------------------------------------------------------------------
    # Maintenance operations
    # ------------------------------------------------------------------

    async def backup(self) -> Path:
        """Create a timestamped backup of the database.

        Old backups beyond the configured retention count are deleted.

        Returns
        -------
        Path
            Filesystem path of the newly created backup file.
        """
        return await self._run(self._backup_sync)

    def _backup_sync(self) -> Path:
        """Synchronous backup implementation."""
        with _translated("backup"):
            self._backup_dir.mkdir(parents=True, exist_ok=True)
            timestamp = self._clock().astimezone(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
            backup_path = self._backup_dir / f"engram_{timestamp}.db"

            # Use SQLite's online backup API for a consistent snapshot.
            src = sqlite3.connect(str(self._db_path))
            dst = sqlite3.connect(str(backup_path))
            try:
                src.backup(dst)
                log.info("Backup created: %s", backup_path)
            finally:
                dst.close()
                src.close()

        self._prune_backups()
        return backup_path

    def _prune_backups(self) -> None:
        """Delete old backups, keeping only the most recent ``backup_count``."""
        backups = sorted(
            self._backup_dir.glob("engram_*.db"),
            key=lambda p: p.name,
            reverse=True,
        )
        for old in backups[self._backup_count :]:
            try:
                old.unlink()
                log.debug("Pruned old backup: %s", old.name)
            except OSError as exc:
                log.warning("Failed to remove old backup %s: %s", old.name, exc)

    async def check_integrity(self) -> str:
        """Run ``PRAGMA integrity_check`` and return its first line (``"ok"`` when healthy)."""
        rows = await self.execute("PRAGMA integrity_check(1)")
        return str(rows[0][0]) if rows else "unknown"

    async def get_db_size_mb(self) -> float:
        """Database file size (including the WAL file) in megabytes."""
        return await anyio.to_thread.run_sync(self._get_db_size_mb_sync)

    def _get_db_size_mb_sync(self) -> float:
        if not self._db_path.exists():
            return 0.0
        size_bytes = self._db_path.stat().st_size
        wal_path = self._db_path.with_name(self._db_path.name + "-wal")
        if wal_path.exists():
            size_bytes += wal_path.stat().st_size
        return round(size_bytes / (1024 * 1024), 2)

    async def table_counts(self) -> dict[str, int]:
        """Return row counts for all record tables in one round-trip."""
        rows = await self.execute(
            """
            SELECT 'patterns'          AS tbl, COUNT(*) AS cnt FROM patterns
            UNION ALL
            SELECT 'pattern_outcomes',          COUNT(*)        FROM pattern_outcomes
            UNION ALL
            SELECT 'failures',                  COUNT(*)        FROM failures
            UNION ALL
            SELECT 'sessions',                  COUNT(*)        FROM sessions
            UNION ALL
            SELECT 'causal_links',              COUNT(*)        FROM causal_links
            UNION ALL
            SELECT 'consolidation_log',         COUNT(*)        FROM consolidation_log
            """
        )
        return {row["tbl"]: row["cnt"] for row in rows}

    # ------------------------------------------------------------------
    # Context manager support
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Close all persistent connections opened across all threads."""
        with self._connections_lock:
            conns = list(self._all_connections)
            self._all_connections.clear()

        for conn in conns:
            try:
                conn.close()
            except sqlite3.Error as exc:
                log.warning("Failed to close connection: %s", exc)

        self._local = threading.local()
        self._initialized = False
        log.debug("Storage closed (%d connections released)", len(conns))

    async def __aenter__(self) -> Storage:
        await self.initialize()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()
