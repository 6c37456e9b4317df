"""SQLite store and delta engine for pallet analytics."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from pallet_delta.config import EngineSettings
from pallet_delta.deltas import (
    EventPoint,
    Span,
    break_overlap_seconds,
    compute_delta,
    compute_partition,
)
from pallet_delta.errors import (
    ConcurrencyConflict,
    ConsistencyViolation,
    DuplicateEventConflict,
    Finding,
    TransientFailure,
)
from pallet_delta.models import (
    AggregateResult,
    BreakImpactRow,
    DailySummary,
    DeltaResult,
    DerivedRecord,
    FlagResult,
    NewBreak,
    NewEvent,
    PartitionSummary,
    RecomputeResult,
    format_timestamp,
    parse_timestamp,
)

SCHEMA = """
CREATE TABLE IF NOT EXISTS events (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    occurred_at TEXT NOT NULL,
    partition_key TEXT NOT NULL CHECK (partition_key <> ''),
    attributes TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS breaks (
    id TEXT PRIMARY KEY,
    break_start TEXT NOT NULL,
    break_end TEXT NOT NULL,
    partition_key TEXT,
    operator TEXT,
    break_type TEXT,
    created_at TEXT NOT NULL,
    CHECK (break_end > break_start)
);

CREATE TABLE IF NOT EXISTS derived_records (
    event_id TEXT PRIMARY KEY,
    occurred_at TEXT NOT NULL,
    partition_key TEXT NOT NULL,
    attributes TEXT NOT NULL DEFAULT '{}',
    predecessor_id TEXT,
    gross_delta_seconds INTEGER,
    break_overlap_seconds INTEGER NOT NULL DEFAULT 0,
    net_delta_seconds INTEGER,
    is_anomaly INTEGER NOT NULL DEFAULT 0,
    FOREIGN KEY (event_id) REFERENCES events(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS daily_summaries (
    summary_date TEXT NOT NULL,
    partition_key TEXT NOT NULL,
    event_count INTEGER NOT NULL,
    avg_net_delta_seconds REAL,
    min_net_delta_seconds INTEGER,
    max_net_delta_seconds INTEGER,
    anomaly_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    PRIMARY KEY (summary_date, partition_key)
);

CREATE INDEX IF NOT EXISTS idx_events_partition_ts ON events(partition_key, occurred_at, seq);
CREATE INDEX IF NOT EXISTS idx_breaks_range ON breaks(break_start, break_end);
CREATE INDEX IF NOT EXISTS idx_derived_partition_ts ON derived_records(partition_key, occurred_at);
CREATE INDEX IF NOT EXISTS idx_derived_occurred_at ON derived_records(occurred_at);
CREATE INDEX IF NOT EXISTS idx_daily_summaries_date ON daily_summaries(summary_date);
"""

logger = logging.getLogger(__name__)


def _now() -> str:
    return format_timestamp(datetime.now(timezone.utc))


def _is_busy(exc: sqlite3.OperationalError) -> bool:
    message = str(exc).lower()
    return "locked" in message or "busy" in message


class PartitionLocks:
    """One mutex per partition key.

    Appends and recomputes for the same partition queue up here. Different
    partitions never share a lock.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def _lock_for(self, partition_key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(partition_key)
            if lock is None:
                lock = self._locks[partition_key] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, partition_key: str, timeout: float) -> Iterator[None]:
        lock = self._lock_for(partition_key)
        if not lock.acquire(timeout=timeout):
            raise ConcurrencyConflict(partition_key, f"partition lock not acquired within {timeout}s")
        try:
            yield
        finally:
            lock.release()


_REGISTRY_GUARD = threading.Lock()
_LOCK_REGISTRY: dict[str, PartitionLocks] = {}


def _locks_for_path(path: Path) -> PartitionLocks:
    """Share partition locks between all stores opened on the same file."""
    key = str(Path(path).resolve())
    with _REGISTRY_GUARD:
        locks = _LOCK_REGISTRY.get(key)
        if locks is None:
            locks = _LOCK_REGISTRY[key] = PartitionLocks()
        return locks


def _point(row: sqlite3.Row) -> EventPoint:
    return EventPoint(row["id"], parse_timestamp(row["occurred_at"]), row["seq"])


def _row_to_record(row: sqlite3.Row) -> DerivedRecord:
    return DerivedRecord(
        event_id=row["event_id"],
        occurred_at=parse_timestamp(row["occurred_at"]),
        partition_key=row["partition_key"],
        attributes=json.loads(row["attributes"] or "{}"),
        predecessor_id=row["predecessor_id"],
        gross_delta_seconds=row["gross_delta_seconds"],
        break_overlap_seconds=row["break_overlap_seconds"],
        net_delta_seconds=row["net_delta_seconds"],
        is_anomaly=bool(row["is_anomaly"]),
    )


class EventStore:
    """SQLite-backed event store with an incremental delta engine.

    Not thread-safe. Each thread should have its own EventStore instance;
    stores opened on the same file share partition locks.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        *,
        settings: EngineSettings | None = None,
        locks: PartitionLocks | None = None,
    ) -> None:
        self._conn = conn
        self.settings = settings or EngineSettings()
        self._locks = locks or PartitionLocks()
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._init_schema()

    def __enter__(self) -> "EventStore":
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        self.close()

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def _init_schema(self) -> None:
        """Initialize database schema."""
        self._conn.executescript(SCHEMA)

    @classmethod
    def open(cls, path: Path, *, settings: EngineSettings | None = None) -> EventStore:
        """Open or create a database at the given path."""
        settings = settings or EngineSettings()
        # isolation_level=None: transactions are opened explicitly with BEGIN IMMEDIATE
        conn = sqlite3.connect(path, timeout=settings.busy_timeout_seconds, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return cls(conn, settings=settings, locks=_locks_for_path(path))

    @classmethod
    def open_in_memory(cls, *, settings: EngineSettings | None = None) -> EventStore:
        """Create an in-memory database for testing."""
        conn = sqlite3.connect(":memory:", isolation_level=None)
        conn.row_factory = sqlite3.Row
        return cls(conn, settings=settings)

    @contextmanager
    def _transaction(self, scope: str) -> Iterator[None]:
        """Run a block in one immediate write transaction.

        Commits on success and rolls back on any exception. A busy or locked
        database is reported as ConcurrencyConflict for the given scope.
        """
        try:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield
            except BaseException:
                self._conn.rollback()
                raise
            self._conn.commit()
        except sqlite3.OperationalError as exc:
            if self._conn.in_transaction:
                self._conn.rollback()
            if _is_busy(exc):
                raise ConcurrencyConflict(scope, str(exc)) from exc
            raise

    # ------------------------------------------------------------------
    # Write paths
    # ------------------------------------------------------------------

    def append_event(self, event: NewEvent) -> DerivedRecord:
        """Append an event and derive its record in one unit of work.

        Conflicts on the partition are retried with linear backoff. Appending
        an identical event again returns the stored record unchanged.

        Raises:
            DuplicateEventConflict: If the ID is stored with a different
                timestamp, partition or attributes. Nothing is written.
            TransientFailure: If every attempt hit a concurrency conflict.
        """
        attempts = self.settings.max_retries
        for attempt in range(1, attempts + 1):
            try:
                return self._append_once(event)
            except ConcurrencyConflict as exc:
                logger.info(
                    "Append of %s to %s conflicted (attempt %d/%d): %s",
                    event.id,
                    event.partition_key,
                    attempt,
                    attempts,
                    exc.reason,
                )
                if attempt < attempts:
                    time.sleep(self.settings.retry_backoff_seconds * attempt)
        raise TransientFailure(event.partition_key, attempts)

    def _append_once(self, event: NewEvent) -> DerivedRecord:
        key = event.partition_key
        with self._locks.hold(key, self.settings.lock_timeout_seconds):
            with self._transaction(key):
                attributes = json.dumps(event.attributes, sort_keys=True)
                occurred_at = format_timestamp(event.occurred_at)

                stored = self._stored_event(event.id)
                if stored is not None:
                    mismatched = [
                        field
                        for field, same in (
                            ("occurred_at", stored["occurred_at"] == occurred_at),
                            ("partition_key", stored["partition_key"] == key),
                            ("attributes", json.loads(stored["attributes"]) == json.loads(attributes)),
                        )
                        if not same
                    ]
                    if mismatched:
                        raise DuplicateEventConflict(event.id, mismatched)
                    logger.debug("Event %s already stored, returning existing record", event.id)
                    return self._require_record(event.id)

                cursor = self._conn.execute(
                    """
                    INSERT INTO events (id, occurred_at, partition_key, attributes, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (event.id, occurred_at, key, attributes, _now()),
                )
                point = EventPoint(event.id, parse_timestamp(occurred_at), cursor.lastrowid)

                delta = self._delta_for(point, key)
                self._conn.execute(
                    """
                    INSERT INTO derived_records
                    (event_id, occurred_at, partition_key, attributes, predecessor_id,
                     gross_delta_seconds, break_overlap_seconds, net_delta_seconds, is_anomaly)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0)
                    """,
                    (
                        event.id,
                        occurred_at,
                        key,
                        attributes,
                        delta.predecessor_id,
                        delta.gross_delta_seconds,
                        delta.break_overlap_seconds,
                        delta.net_delta_seconds,
                    ),
                )

                # An out-of-order arrival becomes the new predecessor of the next event
                successor = self._successor(point, key)
                if successor is not None:
                    self._rederive(successor, key)

                logger.debug(
                    "Derived %s in %s: net=%s predecessor=%s",
                    event.id,
                    key,
                    delta.net_delta_seconds,
                    delta.predecessor_id,
                )
                return self._require_record(event.id)

    def _rederive(self, point: EventPoint, partition_key: str) -> None:
        delta = self._delta_for(point, partition_key)
        self._conn.execute(
            """
            UPDATE derived_records
            SET predecessor_id = ?, gross_delta_seconds = ?, break_overlap_seconds = ?,
                net_delta_seconds = ?, is_anomaly = 0
            WHERE event_id = ?
            """,
            (
                delta.predecessor_id,
                delta.gross_delta_seconds,
                delta.break_overlap_seconds,
                delta.net_delta_seconds,
                point.id,
            ),
        )
        logger.debug(
            "Re-derived successor %s in %s: net=%s", point.id, partition_key, delta.net_delta_seconds
        )

    def add_break(self, brk: NewBreak) -> bool:
        """Record a break interval.

        Breaks only affect records derived after they are stored; run
        recompute to apply a late break to existing records.

        Returns:
            True if the break was inserted, False if its ID already existed.
        """
        cursor = self._conn.execute(
            """
            INSERT OR IGNORE INTO breaks
            (id, break_start, break_end, partition_key, operator, break_type, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                brk.id,
                format_timestamp(brk.start),
                format_timestamp(brk.end),
                brk.partition_key,
                brk.operator,
                brk.break_type,
                _now(),
            ),
        )
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Delta calculation
    # ------------------------------------------------------------------

    def _stored_event(self, event_id: str) -> sqlite3.Row | None:
        return self._conn.execute(
            "SELECT occurred_at, partition_key, attributes FROM events WHERE id = ?", (event_id,)
        ).fetchone()

    def _require_record(self, event_id: str) -> DerivedRecord:
        record = self.get_derived_record(event_id)
        if record is None:
            row = self._conn.execute(
                "SELECT partition_key FROM events WHERE id = ?", (event_id,)
            ).fetchone()
            partition_key = row["partition_key"] if row else ""
            finding = Finding("missing_derived", event_id, partition_key, "no derived record")
            logger.warning("Consistency violation: %s", finding)
            raise ConsistencyViolation([finding])
        return record

    def _predecessor(self, point: EventPoint, partition_key: str) -> EventPoint | None:
        ts = format_timestamp(point.occurred_at)
        row = self._conn.execute(
            """
            SELECT id, occurred_at, seq FROM events
            WHERE partition_key = ?
              AND (occurred_at < ? OR (occurred_at = ? AND seq < ?))
            ORDER BY occurred_at DESC, seq DESC
            LIMIT 1
            """,
            (partition_key, ts, ts, point.seq),
        ).fetchone()
        return _point(row) if row else None

    def _successor(self, point: EventPoint, partition_key: str) -> EventPoint | None:
        ts = format_timestamp(point.occurred_at)
        row = self._conn.execute(
            """
            SELECT id, occurred_at, seq FROM events
            WHERE partition_key = ?
              AND (occurred_at > ? OR (occurred_at = ? AND seq > ?))
            ORDER BY occurred_at ASC, seq ASC
            LIMIT 1
            """,
            (partition_key, ts, ts, point.seq),
        ).fetchone()
        return _point(row) if row else None

    def _spans_for(
        self,
        partition_key: str | None,
        start: datetime,
        end: datetime,
    ) -> list[Span]:
        """Load breaks intersecting [start, end] that apply to a partition.

        With partition_key None every break is considered.
        """
        query = "SELECT break_start, break_end FROM breaks WHERE break_start < ? AND break_end > ?"
        params: list[str] = [format_timestamp(end), format_timestamp(start)]
        if partition_key is not None:
            query += " AND (partition_key IS NULL OR partition_key = ?)"
            params.append(partition_key)
        rows = self._conn.execute(query, params).fetchall()
        return [Span(parse_timestamp(r["break_start"]), parse_timestamp(r["break_end"])) for r in rows]

    def _delta_for(self, point: EventPoint, partition_key: str) -> DeltaResult:
        predecessor = self._predecessor(point, partition_key)
        spans: list[Span] = []
        if predecessor is not None:
            spans = self._spans_for(partition_key, predecessor.occurred_at, point.occurred_at)
        return compute_delta(point, predecessor, spans, policy=self.settings.overlap_policy)

    def break_overlap(
        self,
        start: datetime,
        end: datetime,
        *,
        partition_key: str | None = None,
    ) -> int:
        """Seconds of break time inside [start, end].

        Args:
            start: Range start (timezone-aware).
            end: Range end (timezone-aware), after start.
            partition_key: Restrict to global breaks plus this partition's
                breaks. None considers every stored break.

        Raises:
            ValueError: If end is not after start.
        """
        if end <= start:
            raise ValueError("end must be after start")
        spans = self._spans_for(partition_key, start, end)
        return break_overlap_seconds(spans, start, end, policy=self.settings.overlap_policy)

    def compute_delta(self, event_id: str) -> DeltaResult:
        """Compute the delta for a stored event against current durable state.

        Does not write anything.

        Raises:
            KeyError: If no event has that ID.
        """
        row = self._conn.execute(
            "SELECT id, occurred_at, seq, partition_key FROM events WHERE id = ?",
            (event_id,),
        ).fetchone()
        if row is None:
            raise KeyError(event_id)
        return self._delta_for(_point(row), row["partition_key"])

    # ------------------------------------------------------------------
    # Batch operations
    # ------------------------------------------------------------------

    def recompute(self, partition_key: str | None = None) -> RecomputeResult:
        """Regenerate derived records from scratch.

        Each partition is deleted and rebuilt in its own transaction while
        holding its partition lock, so an interrupted run leaves every
        partition either fully rebuilt or untouched and can simply be re-run.
        Anomaly flags are cleared; run flag_anomalies afterwards.

        Args:
            partition_key: Partition to rebuild, or None for all partitions.
        """
        started = time.monotonic()
        keys = [partition_key] if partition_key is not None else self.get_partition_keys()
        written = 0
        for key in keys:
            written += self._recompute_partition(key)
        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Recomputed %d records across %d partition(s) in %d ms",
            written,
            len(keys),
            duration_ms,
        )
        return RecomputeResult(
            records_written=written,
            partitions_processed=len(keys),
            duration_ms=duration_ms,
        )

    def _recompute_partition(self, partition_key: str) -> int:
        with self._locks.hold(partition_key, self.settings.lock_timeout_seconds):
            with self._transaction(partition_key):
                self._conn.execute(
                    "DELETE FROM derived_records WHERE partition_key = ?", (partition_key,)
                )
                rows = self._conn.execute(
                    """
                    SELECT id, occurred_at, seq, attributes FROM events
                    WHERE partition_key = ?
                    ORDER BY occurred_at ASC, seq ASC
                    """,
                    (partition_key,),
                ).fetchall()
                if not rows:
                    return 0

                attributes = {row["id"]: row["attributes"] for row in rows}
                points = [_point(row) for row in rows]
                spans = self._spans_for(partition_key, points[0].occurred_at, points[-1].occurred_at)
                derived = compute_partition(points, spans, policy=self.settings.overlap_policy)

                self._conn.executemany(
                    """
                    INSERT INTO derived_records
                    (event_id, occurred_at, partition_key, attributes, predecessor_id,
                     gross_delta_seconds, break_overlap_seconds, net_delta_seconds, is_anomaly)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0)
                    """,
                    [
                        (
                            point.id,
                            format_timestamp(point.occurred_at),
                            partition_key,
                            attributes[point.id],
                            delta.predecessor_id,
                            delta.gross_delta_seconds,
                            delta.break_overlap_seconds,
                            delta.net_delta_seconds,
                        )
                        for point, delta in derived
                    ],
                )
                logger.debug("Rebuilt %d records for %s", len(derived), partition_key)
                return len(derived)

    def flag_anomalies(self, threshold_seconds: int | None = None) -> FlagResult:
        """Mark records whose net delta exceeds the threshold.

        Clears every flag first, so repeated runs with the same threshold
        give the same result. Records without a net delta are never flagged.

        Args:
            threshold_seconds: Defaults to settings.anomaly_threshold_seconds.

        Returns:
            Number of records flagged.
        """
        if threshold_seconds is None:
            threshold_seconds = self.settings.anomaly_threshold_seconds
        with self._transaction("flag_anomalies"):
            self._conn.execute("UPDATE derived_records SET is_anomaly = 0 WHERE is_anomaly <> 0")
            cursor = self._conn.execute(
                """
                UPDATE derived_records SET is_anomaly = 1
                WHERE net_delta_seconds IS NOT NULL AND net_delta_seconds > ?
                """,
                (threshold_seconds,),
            )
            updated = cursor.rowcount
        logger.info("Flagged %d anomalies above %ds", updated, threshold_seconds)
        return FlagResult(updated_count=updated)

    def _day_bounds(self, day: date) -> tuple[str, str]:
        tz = self.settings.tz
        start = datetime.combine(day, datetime.min.time(), tzinfo=tz)
        end = datetime.combine(day + timedelta(days=1), datetime.min.time(), tzinfo=tz)
        return format_timestamp(start), format_timestamp(end)

    def aggregate_day(self, day: date) -> AggregateResult:
        """Rebuild the daily summaries for one calendar day.

        The day is interpreted in settings.summary_timezone. Existing rows for
        the day are replaced in the same transaction.
        """
        started = time.monotonic()
        start, end = self._day_bounds(day)
        summary_date = day.isoformat()
        with self._transaction(f"aggregate:{summary_date}"):
            self._conn.execute("DELETE FROM daily_summaries WHERE summary_date = ?", (summary_date,))
            rows = self._conn.execute(
                """
                SELECT
                    partition_key,
                    COUNT(*) AS event_count,
                    AVG(net_delta_seconds) AS avg_net,
                    MIN(net_delta_seconds) AS min_net,
                    MAX(net_delta_seconds) AS max_net,
                    SUM(CASE WHEN is_anomaly = 1 THEN 1 ELSE 0 END) AS anomaly_count
                FROM derived_records
                WHERE occurred_at >= ? AND occurred_at < ?
                  AND net_delta_seconds IS NOT NULL
                GROUP BY partition_key
                ORDER BY partition_key
                """,
                (start, end),
            ).fetchall()
            created_at = _now()
            self._conn.executemany(
                """
                INSERT INTO daily_summaries
                (summary_date, partition_key, event_count, avg_net_delta_seconds,
                 min_net_delta_seconds, max_net_delta_seconds, anomaly_count, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        summary_date,
                        row["partition_key"],
                        row["event_count"],
                        round(row["avg_net"], 2),
                        row["min_net"],
                        row["max_net"],
                        row["anomaly_count"],
                        created_at,
                    )
                    for row in rows
                ],
            )
        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info("Aggregated %d partition(s) for %s in %d ms", len(rows), summary_date, duration_ms)
        return AggregateResult(partitions_processed=len(rows), duration_ms=duration_ms)

    # ------------------------------------------------------------------
    # Consistency
    # ------------------------------------------------------------------

    def check_consistency(self) -> list[Finding]:
        """Scan stored state for broken invariants.

        Findings are logged and returned, never repaired. Checks for events
        without a derived record, negative net deltas, net deltas that do
        not equal gross minus overlap, and NULL deltas anywhere but the
        first record of a partition.
        """
        findings: list[Finding] = []

        missing = self._conn.execute(
            """
            SELECT e.id, e.partition_key FROM events e
            LEFT JOIN derived_records d ON d.event_id = e.id
            WHERE d.event_id IS NULL
            ORDER BY e.seq
            """
        ).fetchall()
        for row in missing:
            findings.append(Finding("missing_derived", row["id"], row["partition_key"], "no derived record"))

        rows = self._conn.execute(
            """
            SELECT d.*, e.seq FROM derived_records d
            JOIN events e ON e.id = d.event_id
            ORDER BY d.partition_key, d.occurred_at, e.seq
            """
        ).fetchall()
        previous_key: str | None = None
        for row in rows:
            first = row["partition_key"] != previous_key
            previous_key = row["partition_key"]
            net = row["net_delta_seconds"]
            gross = row["gross_delta_seconds"]
            overlap = row["break_overlap_seconds"]

            if first and net is not None:
                findings.append(
                    Finding("first_has_delta", row["event_id"], row["partition_key"], f"net={net}")
                )
            elif not first and net is None:
                findings.append(
                    Finding("missing_delta", row["event_id"], row["partition_key"], "net is NULL")
                )
            if net is not None and net < 0:
                findings.append(
                    Finding("negative_net", row["event_id"], row["partition_key"], f"net={net}")
                )
            if net is not None and (gross is None or gross - overlap != net):
                findings.append(
                    Finding(
                        "net_mismatch",
                        row["event_id"],
                        row["partition_key"],
                        f"gross={gross} overlap={overlap} net={net}",
                    )
                )

        for finding in findings:
            logger.warning(
                "Consistency violation: %s %s in %s (%s)",
                finding.kind,
                finding.event_id,
                finding.partition_key,
                finding.detail,
            )
        return findings

    def assert_consistent(self) -> None:
        """Raise ConsistencyViolation if check_consistency finds anything."""
        findings = self.check_consistency()
        if findings:
            raise ConsistencyViolation(findings)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_partition_keys(self) -> list[str]:
        """Distinct partition keys that have at least one event."""
        cursor = self._conn.execute("SELECT DISTINCT partition_key FROM events ORDER BY partition_key")
        return [row["partition_key"] for row in cursor.fetchall()]

    def get_events(
        self,
        *,
        partition_key: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Query raw events in engine order (timestamp, then insertion)."""
        query = "SELECT * FROM events WHERE 1=1"
        params: list[str | int] = []
        if partition_key is not None:
            query += " AND partition_key = ?"
            params.append(partition_key)
        query += " ORDER BY occurred_at ASC, seq ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        rows = self._conn.execute(query, params).fetchall()
        return [{**dict(row), "attributes": json.loads(row["attributes"])} for row in rows]

    def get_breaks(self) -> list[dict[str, Any]]:
        """Get all breaks ordered by start."""
        cursor = self._conn.execute("SELECT * FROM breaks ORDER BY break_start, break_end")
        return [dict(row) for row in cursor.fetchall()]

    def get_derived_record(self, event_id: str) -> DerivedRecord | None:
        row = self._conn.execute(
            "SELECT * FROM derived_records WHERE event_id = ?", (event_id,)
        ).fetchone()
        return _row_to_record(row) if row else None

    def get_derived_records(
        self,
        *,
        partition_key: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
    ) -> list[DerivedRecord]:
        """Query derived records in engine order.

        Args:
            partition_key: Only this partition.
            start: Inclusive lower bound on occurred_at.
            end: Exclusive upper bound on occurred_at.
            limit: Maximum number of records.
        """
        query = """
            SELECT d.* FROM derived_records d
            JOIN events e ON e.id = d.event_id
            WHERE 1=1
        """
        params: list[str | int] = []
        if partition_key is not None:
            query += " AND d.partition_key = ?"
            params.append(partition_key)
        if start is not None:
            query += " AND d.occurred_at >= ?"
            params.append(format_timestamp(start))
        if end is not None:
            query += " AND d.occurred_at < ?"
            params.append(format_timestamp(end))
        query += " ORDER BY d.occurred_at ASC, e.seq ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        rows = self._conn.execute(query, params).fetchall()
        return [_row_to_record(row) for row in rows]

    def get_daily_summaries(
        self,
        *,
        start: date | None = None,
        end: date | None = None,
        partition_key: str | None = None,
    ) -> list[DailySummary]:
        """Daily summaries with summary_date in [start, end] (both inclusive)."""
        query = "SELECT * FROM daily_summaries WHERE 1=1"
        params: list[str] = []
        if start is not None:
            query += " AND summary_date >= ?"
            params.append(start.isoformat())
        if end is not None:
            query += " AND summary_date <= ?"
            params.append(end.isoformat())
        if partition_key is not None:
            query += " AND partition_key = ?"
            params.append(partition_key)
        query += " ORDER BY summary_date ASC, partition_key ASC"
        rows = self._conn.execute(query, params).fetchall()
        return [
            DailySummary(
                summary_date=date.fromisoformat(row["summary_date"]),
                partition_key=row["partition_key"],
                event_count=row["event_count"],
                avg_net_delta_seconds=row["avg_net_delta_seconds"],
                min_net_delta_seconds=row["min_net_delta_seconds"],
                max_net_delta_seconds=row["max_net_delta_seconds"],
                anomaly_count=row["anomaly_count"],
            )
            for row in rows
        ]

    def partition_summary(
        self,
        partition_key: str,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> PartitionSummary | None:
        """Summarize one partition's net deltas over an optional window.

        Both bounds are inclusive. Returns None when no record in the window
        has a net delta.
        """
        query = """
            SELECT
                COUNT(*) AS event_count,
                AVG(net_delta_seconds) AS avg_net,
                MIN(net_delta_seconds) AS min_net,
                MAX(net_delta_seconds) AS max_net,
                SUM(CASE WHEN is_anomaly = 1 THEN 1 ELSE 0 END) AS anomaly_count
            FROM derived_records
            WHERE partition_key = ? AND net_delta_seconds IS NOT NULL
        """
        params: list[str] = [partition_key]
        if start is not None:
            query += " AND occurred_at >= ?"
            params.append(format_timestamp(start))
        if end is not None:
            query += " AND occurred_at <= ?"
            params.append(format_timestamp(end))
        row = self._conn.execute(query, params).fetchone()
        if row is None or row["event_count"] == 0:
            return None
        return PartitionSummary(
            partition_key=partition_key,
            event_count=row["event_count"],
            avg_net_delta_seconds=round(row["avg_net"], 2),
            min_net_delta_seconds=row["min_net"],
            max_net_delta_seconds=row["max_net"],
            anomaly_count=row["anomaly_count"],
        )

    def break_impact(
        self,
        *,
        partition_key: str | None = None,
        limit: int | None = None,
    ) -> list[BreakImpactRow]:
        """Per-record share of each gap spent on breaks, newest first."""
        query = """
            SELECT d.* FROM derived_records d
            JOIN events e ON e.id = d.event_id
            WHERE d.net_delta_seconds IS NOT NULL
        """
        params: list[str | int] = []
        if partition_key is not None:
            query += " AND d.partition_key = ?"
            params.append(partition_key)
        query += " ORDER BY d.occurred_at DESC, e.seq DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        result: list[BreakImpactRow] = []
        for row in self._conn.execute(query, params).fetchall():
            record = _row_to_record(row)
            gross = record.gross_delta_seconds or 0
            overlap = record.break_overlap_seconds
            net = record.net_delta_seconds or 0
            result.append(
                BreakImpactRow(
                    event_id=record.event_id,
                    occurred_at=record.occurred_at,
                    partition_key=record.partition_key,
                    operator=record.attributes.get("operator"),
                    gross_delta_seconds=gross,
                    break_overlap_seconds=overlap,
                    net_delta_seconds=net,
                    gross_delta_minutes=round(gross / 60, 2),
                    break_overlap_minutes=round(overlap / 60, 2),
                    net_delta_minutes=round(net / 60, 2),
                    break_percentage=round(100 * overlap / gross, 2) if gross > 0 else 0.0,
                )
            )
        return result

    def get_last_event_per_partition(self) -> list[dict[str, Any]]:
        """Most recent event timestamp and event count for each partition.

        Ordered by last_occurred_at descending (most recent first).
        """
        cursor = self._conn.execute("""
            SELECT
                partition_key,
                MAX(occurred_at) AS last_occurred_at,
                COUNT(*) AS event_count
            FROM events
            GROUP BY partition_key
            ORDER BY last_occurred_at DESC
        """)
        return [dict(row) for row in cursor.fetchall()]

    def count_rows(self) -> dict[str, int]:
        """Row counts for the events, breaks, derived and summary tables."""
        counts = {}
        for table in ("events", "breaks", "derived_records", "daily_summaries"):
            counts[table] = self._conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
        return counts
