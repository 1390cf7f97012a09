"""Durable work item store backed by SQLite.

Every unit of deferred work (order submission, cancel, reconciliation...)
is a row in ``work_items``. Rows are never deleted; they are the audit trail
of what the engine did. Each execution attempt is additionally logged to
``work_item_runs``.

Several worker processes may share one database file. Every state change
that could race is a single conditional UPDATE (compare-and-set on
``status`` and, for completions, on the lease holder), so two workers can
never both claim or both complete the same item.

Storage uses SQLite with WAL mode and a busy timeout, consistent with the
``FillJournal`` pattern.

Schema:
    work_items(
        id TEXT PRIMARY KEY,              -- uuid4 hex
        type TEXT NOT NULL,               -- WorkItemType value
        payload TEXT NOT NULL,            -- JSON object
        status TEXT NOT NULL,             -- WorkItemStatus value
        attempts INTEGER NOT NULL,
        max_attempts INTEGER NOT NULL,
        idempotency_key TEXT UNIQUE,      -- NULLs are not unique-checked
        next_run_at TEXT NOT NULL,        -- ISO 8601 UTC
        last_error TEXT,
        last_error_kind TEXT,
        result TEXT,                      -- JSON (nullable)
        locked_by TEXT,
        locked_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    work_item_runs(
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        work_item_id TEXT NOT NULL,
        attempt_number INTEGER NOT NULL,
        worker_id TEXT,
        started_at TEXT NOT NULL,
        completed_at TEXT,
        status TEXT NOT NULL,             -- RUNNING | SUCCEEDED | FAILED
        error TEXT,
        duration_ms INTEGER
    )
"""

from __future__ import annotations

import json
import sqlite3
import uuid
from datetime import datetime, timedelta
from pathlib import Path

import structlog

from orderkeeper.clock import Clock, from_iso, to_iso, utc_now
from orderkeeper.work.types import (
    WorkItem,
    WorkItemRun,
    WorkItemStatus,
    WorkItemType,
)

logger = structlog.get_logger(__name__)

_COLUMNS = (
    "id, type, payload, status, attempts, max_attempts, idempotency_key, "
    "next_run_at, last_error, last_error_kind, result, locked_by, locked_at, "
    "created_at, updated_at"
)


class WorkItemStore:
    """SQLite-backed work queue table with atomic claim/complete operations.

    Parameters
    ----------
    db_path : str | Path
        Path to the SQLite database file. Created if it doesn't exist.
    clock : Callable[[], datetime]
        Source of the current UTC time (injectable for tests).
    default_max_attempts : int
        ``max_attempts`` for items enqueued without an explicit value.
    """

    def __init__(
        self,
        db_path: str | Path,
        clock: Clock = utc_now,
        default_max_attempts: int = 3,
    ) -> None:
        self.db_path = Path(db_path)
        self._clock = clock
        self._default_max_attempts = default_max_attempts
        self.conn = sqlite3.connect(str(self.db_path), timeout=5.0)
        self.conn.execute("PRAGMA journal_mode=WAL")
        self._create_tables()
        logger.debug("work_item_store_opened", db_path=str(self.db_path))

    def _create_tables(self) -> None:
        """Create the work item tables and indexes if they don't exist."""
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS work_items (
                id TEXT PRIMARY KEY,
                type TEXT NOT NULL,
                payload TEXT NOT NULL,
                status TEXT NOT NULL,
                attempts INTEGER NOT NULL DEFAULT 0,
                max_attempts INTEGER NOT NULL,
                idempotency_key TEXT UNIQUE,
                next_run_at TEXT NOT NULL,
                last_error TEXT,
                last_error_kind TEXT,
                result TEXT,
                locked_by TEXT,
                locked_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self.conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_work_items_due
            ON work_items(status, next_run_at)
        """)
        self.conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_work_items_type
            ON work_items(type)
        """)
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS work_item_runs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                work_item_id TEXT NOT NULL,
                attempt_number INTEGER NOT NULL,
                worker_id TEXT,
                started_at TEXT NOT NULL,
                completed_at TEXT,
                status TEXT NOT NULL,
                error TEXT,
                duration_ms INTEGER
            )
        """)
        self.conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_work_item_runs_item
            ON work_item_runs(work_item_id)
        """)
        self.conn.commit()

    # ------------------------------------------------------------------
    # Enqueue / lookup
    # ------------------------------------------------------------------

    def enqueue(
        self,
        type: WorkItemType,
        payload: dict | None = None,
        idempotency_key: str | None = None,
        max_attempts: int | None = None,
        not_before: datetime | None = None,
    ) -> WorkItem:
        """Insert a PENDING work item, or return the existing one for the key.

        The UNIQUE index on ``idempotency_key`` plus ``INSERT OR IGNORE``
        makes the duplicate check atomic across processes.

        Returns
        -------
        WorkItem
            The newly created item, or the pre-existing item with the same
            idempotency key.
        """
        now = self._clock()
        now_iso = to_iso(now)
        item_id = uuid.uuid4().hex
        attempts_allowed = max_attempts or self._default_max_attempts
        next_run_at = to_iso(not_before) if not_before is not None else now_iso

        with self.conn:
            cursor = self.conn.execute(
                """
                INSERT OR IGNORE INTO work_items
                (id, type, payload, status, attempts, max_attempts,
                 idempotency_key, next_run_at, created_at, updated_at)
                VALUES (?, ?, ?, ?, 0, ?, ?, ?, ?, ?)
                """,
                (
                    item_id,
                    WorkItemType(type).value,
                    json.dumps(payload or {}),
                    WorkItemStatus.PENDING.value,
                    attempts_allowed,
                    idempotency_key,
                    next_run_at,
                    now_iso,
                    now_iso,
                ),
            )

        if cursor.rowcount == 0:
            existing = self.get_by_idempotency_key(idempotency_key)
            logger.info(
                "work_item_duplicate",
                idempotency_key=idempotency_key,
                work_item_id=existing.id if existing else None,
            )
            if existing is None:
                raise sqlite3.IntegrityError(
                    f"Insert ignored but no item found for key {idempotency_key!r}"
                )
            return existing

        logger.info(
            "work_item_enqueued",
            work_item_id=item_id,
            type=WorkItemType(type).value,
            idempotency_key=idempotency_key,
            next_run_at=next_run_at,
        )
        item = self.get(item_id)
        if item is None:
            raise sqlite3.IntegrityError(f"Work item {item_id} not found after insert")
        return item

    def get(self, item_id: str) -> WorkItem | None:
        """Return a work item by id, or None."""
        row = self.conn.execute(
            f"SELECT {_COLUMNS} FROM work_items WHERE id = ?", (item_id,)
        ).fetchone()
        return self._row_to_item(row) if row is not None else None

    def get_by_idempotency_key(self, key: str | None) -> WorkItem | None:
        """Return the work item holding *key*, or None."""
        if key is None:
            return None
        row = self.conn.execute(
            f"SELECT {_COLUMNS} FROM work_items WHERE idempotency_key = ?", (key,)
        ).fetchone()
        return self._row_to_item(row) if row is not None else None

    def list_items(
        self,
        status: WorkItemStatus | None = None,
        type: WorkItemType | None = None,
        since: str | None = None,
        limit: int = 50,
    ) -> list[WorkItem]:
        """Query work items with AND-combined filters, newest first."""
        conditions: list[str] = []
        params: list[object] = []

        if status is not None:
            conditions.append("status = ?")
            params.append(WorkItemStatus(status).value)

        if type is not None:
            conditions.append("type = ?")
            params.append(WorkItemType(type).value)

        if since is not None:
            conditions.append("created_at >= ?")
            params.append(since)

        where_clause = ""
        if conditions:
            where_clause = "WHERE " + " AND ".join(conditions)

        sql = f"""
            SELECT {_COLUMNS} FROM work_items
            {where_clause}
            ORDER BY created_at DESC
            LIMIT ?
        """
        params.append(limit)

        rows = self.conn.execute(sql, params).fetchall()
        return [self._row_to_item(row) for row in rows]

    def count(
        self,
        status: WorkItemStatus | None = None,
        type: WorkItemType | None = None,
    ) -> int:
        """Count work items, optionally by status and/or type."""
        conditions: list[str] = []
        params: list[object] = []
        if status is not None:
            conditions.append("status = ?")
            params.append(WorkItemStatus(status).value)
        if type is not None:
            conditions.append("type = ?")
            params.append(WorkItemType(type).value)
        where_clause = ("WHERE " + " AND ".join(conditions)) if conditions else ""
        row = self.conn.execute(
            f"SELECT COUNT(*) FROM work_items {where_clause}", params
        ).fetchone()
        return row[0]

    # ------------------------------------------------------------------
    # Worker transitions
    # ------------------------------------------------------------------

    def claim_due(self, worker_id: str, limit: int = 1) -> list[WorkItem]:
        """Claim up to *limit* due PENDING items for *worker_id*.

        Candidates are read first, then each is claimed with a conditional
        UPDATE. An item claimed by another worker in between is skipped.
        """
        now_iso = to_iso(self._clock())
        candidates = self.conn.execute(
            """
            SELECT id FROM work_items
            WHERE status = ? AND next_run_at <= ?
            ORDER BY next_run_at ASC, created_at ASC
            LIMIT ?
            """,
            (WorkItemStatus.PENDING.value, now_iso, limit),
        ).fetchall()

        claimed: list[WorkItem] = []
        for (item_id,) in candidates:
            with self.conn:
                cursor = self.conn.execute(
                    """
                    UPDATE work_items
                    SET status = ?, locked_by = ?, locked_at = ?, updated_at = ?
                    WHERE id = ? AND status = ?
                    """,
                    (
                        WorkItemStatus.RUNNING.value,
                        worker_id,
                        now_iso,
                        now_iso,
                        item_id,
                        WorkItemStatus.PENDING.value,
                    ),
                )
            if cursor.rowcount == 1:
                item = self.get(item_id)
                if item is not None:
                    claimed.append(item)
            else:
                logger.debug("work_item_claim_lost", work_item_id=item_id, worker_id=worker_id)
        return claimed

    def mark_succeeded(
        self, item_id: str, worker_id: str, result: dict | None = None
    ) -> bool:
        """RUNNING -> SUCCEEDED, only while *worker_id* holds the lease."""
        now_iso = to_iso(self._clock())
        with self.conn:
            cursor = self.conn.execute(
                """
                UPDATE work_items
                SET status = ?, result = ?, locked_by = NULL, locked_at = NULL,
                    updated_at = ?
                WHERE id = ? AND status = ? AND locked_by = ?
                """,
                (
                    WorkItemStatus.SUCCEEDED.value,
                    json.dumps(result) if result is not None else None,
                    now_iso,
                    item_id,
                    WorkItemStatus.RUNNING.value,
                    worker_id,
                ),
            )
        return cursor.rowcount == 1

    def reschedule(
        self,
        item_id: str,
        worker_id: str,
        attempts: int,
        next_run_at: datetime,
        error: str,
        error_kind: str,
    ) -> bool:
        """RUNNING -> PENDING with an incremented attempt count and backoff."""
        now_iso = to_iso(self._clock())
        with self.conn:
            cursor = self.conn.execute(
                """
                UPDATE work_items
                SET status = ?, attempts = ?, next_run_at = ?, last_error = ?,
                    last_error_kind = ?, locked_by = NULL, locked_at = NULL,
                    updated_at = ?
                WHERE id = ? AND status = ? AND locked_by = ?
                """,
                (
                    WorkItemStatus.PENDING.value,
                    attempts,
                    to_iso(next_run_at),
                    error,
                    error_kind,
                    now_iso,
                    item_id,
                    WorkItemStatus.RUNNING.value,
                    worker_id,
                ),
            )
        return cursor.rowcount == 1

    def mark_dead_letter(
        self,
        item_id: str,
        worker_id: str,
        attempts: int,
        error: str,
        error_kind: str,
    ) -> bool:
        """RUNNING -> DEAD_LETTER. Only the worker calls this."""
        now_iso = to_iso(self._clock())
        with self.conn:
            cursor = self.conn.execute(
                """
                UPDATE work_items
                SET status = ?, attempts = ?, last_error = ?, last_error_kind = ?,
                    locked_by = NULL, locked_at = NULL, updated_at = ?
                WHERE id = ? AND status = ? AND locked_by = ?
                """,
                (
                    WorkItemStatus.DEAD_LETTER.value,
                    attempts,
                    error,
                    error_kind,
                    now_iso,
                    item_id,
                    WorkItemStatus.RUNNING.value,
                    worker_id,
                ),
            )
        return cursor.rowcount == 1

    def recover_stale(self, lease_seconds: float) -> list[str]:
        """Reset RUNNING items whose lease is older than *lease_seconds*.

        A RUNNING row only outlives its lease when the worker holding it
        crashed. Attempts are left unchanged; the handler is idempotent.

        Returns
        -------
        list[str]
            Ids of the recovered items.
        """
        now = self._clock()
        cutoff = to_iso(now - timedelta(seconds=lease_seconds))
        stale = self.conn.execute(
            "SELECT id, locked_by FROM work_items WHERE status = ? AND locked_at < ?",
            (WorkItemStatus.RUNNING.value, cutoff),
        ).fetchall()

        recovered: list[str] = []
        for item_id, locked_by in stale:
            with self.conn:
                cursor = self.conn.execute(
                    """
                    UPDATE work_items
                    SET status = ?, locked_by = NULL, locked_at = NULL,
                        next_run_at = ?, updated_at = ?
                    WHERE id = ? AND status = ? AND locked_at < ?
                    """,
                    (
                        WorkItemStatus.PENDING.value,
                        to_iso(now),
                        to_iso(now),
                        item_id,
                        WorkItemStatus.RUNNING.value,
                        cutoff,
                    ),
                )
            if cursor.rowcount == 1:
                recovered.append(item_id)
                logger.warning(
                    "work_item_lease_recovered",
                    work_item_id=item_id,
                    previous_worker=locked_by,
                )
        return recovered

    # ------------------------------------------------------------------
    # Operator transitions
    # ------------------------------------------------------------------

    def retry_dead_letter(self, item_id: str) -> WorkItem | None:
        """DEAD_LETTER -> PENDING with attempts reset to 0.

        Returns None if the item doesn't exist or is not dead-lettered.
        """
        now_iso = to_iso(self._clock())
        with self.conn:
            cursor = self.conn.execute(
                """
                UPDATE work_items
                SET status = ?, attempts = 0, next_run_at = ?, last_error = NULL,
                    last_error_kind = NULL, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    WorkItemStatus.PENDING.value,
                    now_iso,
                    now_iso,
                    item_id,
                    WorkItemStatus.DEAD_LETTER.value,
                ),
            )
        if cursor.rowcount == 0:
            return None
        logger.info("work_item_manual_retry", work_item_id=item_id)
        return self.get(item_id)

    def force_dead_letter(self, item_id: str, reason: str) -> WorkItem | None:
        """PENDING -> DEAD_LETTER on operator request.

        RUNNING items are refused: their outcome belongs to the worker
        holding the lease. Returns None when the transition doesn't apply.
        """
        now_iso = to_iso(self._clock())
        with self.conn:
            cursor = self.conn.execute(
                """
                UPDATE work_items
                SET status = ?, last_error = ?, last_error_kind = ?, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    WorkItemStatus.DEAD_LETTER.value,
                    reason,
                    "operator",
                    now_iso,
                    item_id,
                    WorkItemStatus.PENDING.value,
                ),
            )
        if cursor.rowcount == 0:
            return None
        logger.warning("work_item_forced_dead_letter", work_item_id=item_id, reason=reason)
        return self.get(item_id)

    # ------------------------------------------------------------------
    # Run log
    # ------------------------------------------------------------------

    def start_run(self, item: WorkItem, worker_id: str) -> int:
        """Log the start of an attempt and return the run id."""
        with self.conn:
            cursor = self.conn.execute(
                """
                INSERT INTO work_item_runs
                (work_item_id, attempt_number, worker_id, started_at, status)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    item.id,
                    item.attempts + 1,
                    worker_id,
                    to_iso(self._clock()),
                    WorkItemStatus.RUNNING.value,
                ),
            )
        return cursor.lastrowid

    def finish_run(
        self, run_id: int, status: WorkItemStatus, error: str | None = None
    ) -> None:
        """Close an attempt with SUCCEEDED or FAILED and its duration."""
        now = self._clock()
        row = self.conn.execute(
            "SELECT started_at FROM work_item_runs WHERE id = ?", (run_id,)
        ).fetchone()
        duration_ms = None
        if row is not None:
            duration_ms = int((now - from_iso(row[0])).total_seconds() * 1000)
        with self.conn:
            self.conn.execute(
                """
                UPDATE work_item_runs
                SET status = ?, completed_at = ?, error = ?, duration_ms = ?
                WHERE id = ?
                """,
                (WorkItemStatus(status).value, to_iso(now), error, duration_ms, run_id),
            )

    def get_runs(self, item_id: str) -> list[WorkItemRun]:
        """Return the attempt history of a work item, oldest first."""
        rows = self.conn.execute(
            """
            SELECT id, work_item_id, attempt_number, worker_id, started_at,
                   completed_at, status, error, duration_ms
            FROM work_item_runs WHERE work_item_id = ? ORDER BY id ASC
            """,
            (item_id,),
        ).fetchall()
        return [
            WorkItemRun(
                id=row[0],
                work_item_id=row[1],
                attempt_number=row[2],
                worker_id=row[3],
                started_at=row[4],
                completed_at=row[5],
                status=WorkItemStatus(row[6]),
                error=row[7],
                duration_ms=row[8],
            )
            for row in rows
        ]

    def _row_to_item(self, row: tuple) -> WorkItem:
        """Deserialize a database row (``_COLUMNS`` order) into a WorkItem."""
        return WorkItem(
            id=row[0],
            type=WorkItemType(row[1]),
            payload=json.loads(row[2]) if row[2] else {},
            status=WorkItemStatus(row[3]),
            attempts=row[4],
            max_attempts=row[5],
            idempotency_key=row[6],
            next_run_at=row[7],
            last_error=row[8],
            last_error_kind=row[9],
            result=json.loads(row[10]) if row[10] else None,
            locked_by=row[11],
            locked_at=row[12],
            created_at=row[13],
            updated_at=row[14],
        )

    def close(self) -> None:
        """Close the database connection."""
        self.conn.close()
        logger.debug("work_item_store_closed", db_path=str(self.db_path))
