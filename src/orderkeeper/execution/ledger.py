"""OrderLedger: the local record of orders, fills, positions and account.

Every order status change is a versioned compare-and-set on ``orders``
that appends an ``order_events`` row in the same transaction. Fills are
appended when the brokerage reports filled quantity growth. Positions and
the account snapshot mirror the brokerage and are overwritten by
reconciliation.

Writes can be grouped with :meth:`OrderLedger.transaction`; nested calls
join the outer transaction so reconciliation applies all of its changes
atomically.

Storage uses SQLite with WAL mode, consistent with the ``WorkItemStore``.

Schema:
    orders(client_order_id PK, broker_order_id, symbol, side, order_type,
           qty, notional, limit_price, time_in_force, status, attempts,
           version, outcome_unknown, filled_qty, filled_avg_price, source,
           work_item_id, needs_review, last_error, created_at, updated_at)
    order_events(id, client_order_id, from_status, to_status, reason,
                 created_at)
    fills(id, client_order_id, broker_order_id, symbol, side, qty, price,
          timestamp)
    positions(symbol PK, qty, side, avg_entry_price, current_price,
              market_value, unrealized_pl, updated_at)
    account_snapshot(id = 1, equity, cash, buying_power, last_equity,
                     captured_at)
    tradable_assets(symbol PK, tradable, updated_at)
    reconciliation_runs(id PK, trigger, started_at, completed_at, status,
                        mutations, counts, findings, error)
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from orderkeeper.clock import Clock, to_iso, utc_now
from orderkeeper.errors import ConcurrentTransitionError
from orderkeeper.execution.types import (
    TERMINAL_STATUSES,
    AccountSnapshot,
    FillRecord,
    OrderEvent,
    OrderExecutionRecord,
    OrderSource,
    OrderStatus,
    PositionRecord,
    status_from_broker,
)

if TYPE_CHECKING:
    from orderkeeper.execution.broker import BrokerOrder

logger = structlog.get_logger(__name__)

_QTY_EPSILON = 1e-9

_ORDER_COLUMNS = (
    "client_order_id, broker_order_id, symbol, side, order_type, qty, notional, "
    "limit_price, time_in_force, status, attempts, version, outcome_unknown, "
    "filled_qty, filled_avg_price, source, work_item_id, needs_review, "
    "last_error, created_at, updated_at"
)

# Fields that transition() may change besides status.
_MUTABLE_ORDER_FIELDS = frozenset(
    {
        "broker_order_id",
        "attempts",
        "outcome_unknown",
        "filled_qty",
        "filled_avg_price",
        "needs_review",
        "last_error",
        "work_item_id",
        "qty",
        "notional",
        "limit_price",
    }
)


class OrderLedger:
    """SQLite-backed order/fill/position ledger.

    Parameters
    ----------
    db_path : str | Path
        Path to the SQLite database file. Created if it doesn't exist.
    clock : Callable[[], datetime]
        Injectable UTC clock.
    """

    def __init__(self, db_path: str | Path, clock: Clock = utc_now) -> None:
        self.db_path = Path(db_path)
        self._clock = clock
        self._in_transaction = False
        self.conn = sqlite3.connect(str(self.db_path), timeout=5.0)
        self.conn.execute("PRAGMA journal_mode=WAL")
        self._create_tables()
        logger.debug("order_ledger_opened", db_path=str(self.db_path))

    def _create_tables(self) -> None:
        """Create ledger tables and indexes if they don't exist."""
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS orders (
                client_order_id TEXT PRIMARY KEY,
                broker_order_id TEXT,
                symbol TEXT NOT NULL,
                side TEXT NOT NULL,
                order_type TEXT NOT NULL,
                qty REAL,
                notional REAL,
                limit_price REAL,
                time_in_force TEXT NOT NULL,
                status TEXT NOT NULL,
                attempts INTEGER NOT NULL DEFAULT 0,
                version INTEGER NOT NULL DEFAULT 1,
                outcome_unknown INTEGER NOT NULL DEFAULT 0,
                filled_qty REAL NOT NULL DEFAULT 0,
                filled_avg_price REAL,
                source TEXT NOT NULL,
                work_item_id TEXT,
                needs_review INTEGER NOT NULL DEFAULT 0,
                last_error TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status);
            CREATE INDEX IF NOT EXISTS idx_orders_broker_id ON orders(broker_order_id);

            CREATE TABLE IF NOT EXISTS order_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                client_order_id TEXT NOT NULL,
                from_status TEXT,
                to_status TEXT NOT NULL,
                reason TEXT NOT NULL,
                created_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_order_events_coid
            ON order_events(client_order_id);

            CREATE TABLE IF NOT EXISTS fills (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                client_order_id TEXT NOT NULL,
                broker_order_id TEXT,
                symbol TEXT NOT NULL,
                side TEXT NOT NULL,
                qty REAL NOT NULL,
                price REAL,
                timestamp TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_fills_coid ON fills(client_order_id);

            CREATE TABLE IF NOT EXISTS positions (
                symbol TEXT PRIMARY KEY,
                qty REAL NOT NULL,
                side TEXT NOT NULL,
                avg_entry_price REAL,
                current_price REAL,
                market_value REAL NOT NULL,
                unrealized_pl REAL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS account_snapshot (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                equity REAL NOT NULL,
                cash REAL NOT NULL,
                buying_power REAL NOT NULL,
                last_equity REAL NOT NULL,
                captured_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS tradable_assets (
                symbol TEXT PRIMARY KEY,
                tradable INTEGER NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS reconciliation_runs (
                id TEXT PRIMARY KEY,
                trigger TEXT NOT NULL,
                started_at TEXT NOT NULL,
                completed_at TEXT,
                status TEXT NOT NULL,
                mutations INTEGER NOT NULL DEFAULT 0,
                counts TEXT,
                findings TEXT,
                error TEXT
            );
        """)
        self.conn.commit()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Group writes into one transaction; nested calls join the outer one."""
        if self._in_transaction:
            yield
            return
        self._in_transaction = True
        try:
            with self.conn:
                yield
        finally:
            self._in_transaction = False

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    def get_order(self, client_order_id: str) -> OrderExecutionRecord | None:
        """Return the order record for *client_order_id*, or None."""
        row = self.conn.execute(
            f"SELECT {_ORDER_COLUMNS} FROM orders WHERE client_order_id = ?",
            (client_order_id,),
        ).fetchone()
        return self._row_to_order(row) if row is not None else None

    def get_order_by_broker_id(self, broker_order_id: str) -> OrderExecutionRecord | None:
        row = self.conn.execute(
            f"SELECT {_ORDER_COLUMNS} FROM orders WHERE broker_order_id = ?",
            (broker_order_id,),
        ).fetchone()
        return self._row_to_order(row) if row is not None else None

    def insert_order(self, record: OrderExecutionRecord, reason: str) -> bool:
        """Insert a new order record with its first event.

        Returns False (and writes nothing) if the client order id already
        exists.
        """
        now_iso = to_iso(self._clock())
        record.created_at = record.created_at or now_iso
        record.updated_at = now_iso
        with self.transaction():
            cursor = self.conn.execute(
                f"""
                INSERT OR IGNORE INTO orders ({_ORDER_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.client_order_id,
                    record.broker_order_id,
                    record.symbol,
                    record.side,
                    record.order_type,
                    record.qty,
                    record.notional,
                    record.limit_price,
                    record.time_in_force,
                    record.status.value,
                    record.attempts,
                    record.version,
                    int(record.outcome_unknown),
                    record.filled_qty,
                    record.filled_avg_price,
                    OrderSource(record.source).value,
                    record.work_item_id,
                    int(record.needs_review),
                    record.last_error,
                    record.created_at,
                    record.updated_at,
                ),
            )
            if cursor.rowcount == 0:
                return False
            self._append_event(record.client_order_id, None, record.status, reason, now_iso)

        logger.info(
            "order_record_created",
            client_order_id=record.client_order_id,
            status=record.status.value,
            source=OrderSource(record.source).value,
        )
        return True

    def transition(
        self,
        client_order_id: str,
        expected_version: int,
        status: OrderStatus,
        reason: str,
        **changes: object,
    ) -> OrderExecutionRecord:
        """Versioned update of an order, appending an event atomically.

        Parameters
        ----------
        client_order_id : str
            Order to update.
        expected_version : int
            Version the caller read; the update fails if it moved on.
        status : OrderStatus
            New status (may equal the current one for field-only updates).
        reason : str
            Recorded on the order event.
        **changes
            Other fields to set (see ``_MUTABLE_ORDER_FIELDS``).

        Raises
        ------
        ConcurrentTransitionError
            If the record's version is no longer *expected_version*.
        """
        unknown = set(changes) - _MUTABLE_ORDER_FIELDS
        if unknown:
            raise ValueError(f"Cannot update order fields: {sorted(unknown)}")

        now_iso = to_iso(self._clock())
        assignments = ["status = ?", "version = version + 1", "updated_at = ?"]
        params: list[object] = [OrderStatus(status).value, now_iso]
        for name, value in changes.items():
            assignments.append(f"{name} = ?")
            params.append(int(value) if isinstance(value, bool) else value)
        params.extend([client_order_id, expected_version])

        with self.transaction():
            previous = self.conn.execute(
                "SELECT status FROM orders WHERE client_order_id = ?",
                (client_order_id,),
            ).fetchone()
            cursor = self.conn.execute(
                f"""
                UPDATE orders SET {", ".join(assignments)}
                WHERE client_order_id = ? AND version = ?
                """,
                params,
            )
            if cursor.rowcount != 1:
                raise ConcurrentTransitionError(client_order_id)
            self._append_event(
                client_order_id,
                OrderStatus(previous[0]) if previous else None,
                OrderStatus(status),
                reason,
                now_iso,
            )

        record = self.get_order(client_order_id)
        if record is None:
            raise ConcurrentTransitionError(client_order_id)
        logger.info(
            "order_transition",
            client_order_id=client_order_id,
            from_status=previous[0] if previous else None,
            to_status=OrderStatus(status).value,
            reason=reason,
            version=record.version,
        )
        return record

    def mirror_broker_order(
        self,
        record: OrderExecutionRecord,
        order: BrokerOrder,
        reason: str,
        clear_review: bool = False,
    ) -> OrderExecutionRecord | None:
        """Overwrite *record* with the brokerage's view of the order.

        Status, broker order id and fill progress are copied from *order*.
        Filled quantity growth is appended to ``fills`` in the same
        transaction. With *clear_review* a ``needs_review`` flag is reset.
        Returns None when nothing differs.

        Raises
        ------
        ConcurrentTransitionError
            If *record* is stale.
        """
        status = status_from_broker(order.status)
        changes: dict[str, object] = {}
        if order.broker_order_id and record.broker_order_id != order.broker_order_id:
            changes["broker_order_id"] = order.broker_order_id
        if abs(order.filled_qty - record.filled_qty) > _QTY_EPSILON:
            changes["filled_qty"] = order.filled_qty
            changes["filled_avg_price"] = order.filled_avg_price
        elif (
            order.filled_avg_price is not None
            and record.filled_avg_price != order.filled_avg_price
        ):
            changes["filled_avg_price"] = order.filled_avg_price
        if record.outcome_unknown:
            changes["outcome_unknown"] = False
        if clear_review and record.needs_review:
            changes["needs_review"] = False

        if status == record.status and not changes:
            return None

        delta = order.filled_qty - record.filled_qty
        with self.transaction():
            updated = self.transition(
                record.client_order_id, record.version, status, reason, **changes
            )
            if delta > _QTY_EPSILON:
                self.record_fill(
                    FillRecord(
                        client_order_id=record.client_order_id,
                        broker_order_id=order.broker_order_id,
                        symbol=record.symbol,
                        side=record.side,
                        qty=delta,
                        price=_delta_price(
                            record.filled_qty,
                            record.filled_avg_price,
                            order.filled_qty,
                            order.filled_avg_price,
                        ),
                        timestamp=to_iso(self._clock()),
                    )
                )
        return updated

    def list_orders(
        self,
        status: OrderStatus | None = None,
        symbol: str | None = None,
        needs_review: bool | None = None,
        non_terminal: bool = False,
        limit: int = 100,
    ) -> list[OrderExecutionRecord]:
        """Query orders with AND-combined filters, newest first."""
        conditions: list[str] = []
        params: list[object] = []

        if status is not None:
            conditions.append("status = ?")
            params.append(OrderStatus(status).value)

        if symbol is not None:
            conditions.append("symbol = ?")
            params.append(symbol)

        if needs_review is not None:
            conditions.append("needs_review = ?")
            params.append(int(needs_review))

        if non_terminal:
            placeholders = ", ".join("?" for _ in TERMINAL_STATUSES)
            conditions.append(f"status NOT IN ({placeholders})")
            params.extend(s.value for s in TERMINAL_STATUSES)

        where_clause = ""
        if conditions:
            where_clause = "WHERE " + " AND ".join(conditions)

        params.append(limit)
        rows = self.conn.execute(
            f"""
            SELECT {_ORDER_COLUMNS} FROM orders
            {where_clause}
            ORDER BY created_at DESC
            LIMIT ?
            """,
            params,
        ).fetchall()
        return [self._row_to_order(row) for row in rows]

    def get_events(self, client_order_id: str) -> list[OrderEvent]:
        """Return the status history of an order, oldest first."""
        rows = self.conn.execute(
            """
            SELECT id, client_order_id, from_status, to_status, reason, created_at
            FROM order_events WHERE client_order_id = ? ORDER BY id ASC
            """,
            (client_order_id,),
        ).fetchall()
        return [
            OrderEvent(
                id=row[0],
                client_order_id=row[1],
                from_status=OrderStatus(row[2]) if row[2] else None,
                to_status=OrderStatus(row[3]),
                reason=row[4],
                created_at=row[5],
            )
            for row in rows
        ]

    def _append_event(
        self,
        client_order_id: str,
        from_status: OrderStatus | None,
        to_status: OrderStatus,
        reason: str,
        created_at: str,
    ) -> None:
        self.conn.execute(
            """
            INSERT INTO order_events
            (client_order_id, from_status, to_status, reason, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                client_order_id,
                from_status.value if from_status else None,
                to_status.value,
                reason,
                created_at,
            ),
        )

    # ------------------------------------------------------------------
    # Fills
    # ------------------------------------------------------------------

    def record_fill(self, fill: FillRecord) -> int:
        """Append a fill and return its row id."""
        with self.transaction():
            cursor = self.conn.execute(
                """
                INSERT INTO fills
                (client_order_id, broker_order_id, symbol, side, qty, price, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    fill.client_order_id,
                    fill.broker_order_id,
                    fill.symbol,
                    fill.side,
                    fill.qty,
                    fill.price,
                    fill.timestamp,
                ),
            )
        fill.id = cursor.lastrowid
        logger.info(
            "fill_recorded",
            client_order_id=fill.client_order_id,
            symbol=fill.symbol,
            qty=fill.qty,
            price=fill.price,
        )
        return cursor.lastrowid

    def get_fills(
        self,
        client_order_id: str | None = None,
        symbol: str | None = None,
        limit: int = 1000,
    ) -> list[FillRecord]:
        """Query fills, oldest first."""
        conditions: list[str] = []
        params: list[object] = []
        if client_order_id is not None:
            conditions.append("client_order_id = ?")
            params.append(client_order_id)
        if symbol is not None:
            conditions.append("symbol = ?")
            params.append(symbol)
        where_clause = ("WHERE " + " AND ".join(conditions)) if conditions else ""
        params.append(limit)
        rows = self.conn.execute(
            f"""
            SELECT id, client_order_id, broker_order_id, symbol, side, qty, price, timestamp
            FROM fills {where_clause} ORDER BY id ASC LIMIT ?
            """,
            params,
        ).fetchall()
        return [
            FillRecord(
                id=row[0],
                client_order_id=row[1],
                broker_order_id=row[2],
                symbol=row[3],
                side=row[4],
                qty=row[5],
                price=row[6],
                timestamp=row[7],
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Positions and account
    # ------------------------------------------------------------------

    def get_positions(self) -> list[PositionRecord]:
        rows = self.conn.execute(
            """
            SELECT symbol, qty, side, avg_entry_price, current_price,
                   market_value, unrealized_pl, updated_at
            FROM positions ORDER BY symbol ASC
            """
        ).fetchall()
        return [
            PositionRecord(
                symbol=row[0],
                qty=row[1],
                side=row[2],
                avg_entry_price=row[3],
                current_price=row[4],
                market_value=row[5],
                unrealized_pl=row[6],
                updated_at=row[7],
            )
            for row in rows
        ]

    def upsert_position(self, position: PositionRecord) -> None:
        """Insert or overwrite the mirror row for ``position.symbol``."""
        position.updated_at = to_iso(self._clock())
        with self.transaction():
            self.conn.execute(
                """
                INSERT INTO positions
                (symbol, qty, side, avg_entry_price, current_price, market_value,
                 unrealized_pl, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(symbol) DO UPDATE SET
                    qty = excluded.qty,
                    side = excluded.side,
                    avg_entry_price = excluded.avg_entry_price,
                    current_price = excluded.current_price,
                    market_value = excluded.market_value,
                    unrealized_pl = excluded.unrealized_pl,
                    updated_at = excluded.updated_at
                """,
                (
                    position.symbol,
                    position.qty,
                    position.side,
                    position.avg_entry_price,
                    position.current_price,
                    position.market_value,
                    position.unrealized_pl,
                    position.updated_at,
                ),
            )

    def delete_position(self, symbol: str) -> None:
        with self.transaction():
            self.conn.execute("DELETE FROM positions WHERE symbol = ?", (symbol,))

    def get_account_snapshot(self) -> AccountSnapshot | None:
        row = self.conn.execute(
            """
            SELECT equity, cash, buying_power, last_equity, captured_at
            FROM account_snapshot WHERE id = 1
            """
        ).fetchone()
        if row is None:
            return None
        return AccountSnapshot(
            equity=row[0],
            cash=row[1],
            buying_power=row[2],
            last_equity=row[3],
            captured_at=row[4],
        )

    def save_account_snapshot(self, snapshot: AccountSnapshot) -> None:
        """Overwrite the single account snapshot row."""
        snapshot.captured_at = to_iso(self._clock())
        with self.transaction():
            self.conn.execute(
                """
                INSERT INTO account_snapshot
                (id, equity, cash, buying_power, last_equity, captured_at)
                VALUES (1, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    equity = excluded.equity,
                    cash = excluded.cash,
                    buying_power = excluded.buying_power,
                    last_equity = excluded.last_equity,
                    captured_at = excluded.captured_at
                """,
                (
                    snapshot.equity,
                    snapshot.cash,
                    snapshot.buying_power,
                    snapshot.last_equity,
                    snapshot.captured_at,
                ),
            )

    # ------------------------------------------------------------------
    # Tradable asset universe
    # ------------------------------------------------------------------

    def save_tradable_assets(self, assets: dict[str, bool]) -> int:
        """Upsert symbol tradability flags. Returns the number of rows written."""
        now_iso = to_iso(self._clock())
        with self.transaction():
            self.conn.executemany(
                """
                INSERT INTO tradable_assets (symbol, tradable, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(symbol) DO UPDATE SET
                    tradable = excluded.tradable,
                    updated_at = excluded.updated_at
                """,
                [(symbol, int(ok), now_iso) for symbol, ok in assets.items()],
            )
        return len(assets)

    def is_tradable(self, symbol: str) -> bool | None:
        """True/False if the symbol was qualified, None if never checked."""
        row = self.conn.execute(
            "SELECT tradable FROM tradable_assets WHERE symbol = ?", (symbol,)
        ).fetchone()
        return bool(row[0]) if row is not None else None

    # ------------------------------------------------------------------
    # Reconciliation run log
    # ------------------------------------------------------------------

    def start_reconciliation_run(self, run_id: str, trigger: str, started_at: str) -> None:
        with self.transaction():
            self.conn.execute(
                """
                INSERT INTO reconciliation_runs (id, trigger, started_at, status)
                VALUES (?, ?, ?, 'running')
                """,
                (run_id, trigger, started_at),
            )

    def finish_reconciliation_run(
        self,
        run_id: str,
        status: str,
        mutations: int = 0,
        counts: dict | None = None,
        findings: list[dict] | None = None,
        error: str | None = None,
    ) -> None:
        with self.transaction():
            self.conn.execute(
                """
                UPDATE reconciliation_runs
                SET completed_at = ?, status = ?, mutations = ?, counts = ?,
                    findings = ?, error = ?
                WHERE id = ?
                """,
                (
                    to_iso(self._clock()),
                    status,
                    mutations,
                    json.dumps(counts or {}),
                    json.dumps(findings or []),
                    error,
                    run_id,
                ),
            )

    def list_reconciliation_runs(self, limit: int = 20) -> list[dict]:
        """Return recent reconciliation runs as dicts, newest first."""
        rows = self.conn.execute(
            """
            SELECT id, trigger, started_at, completed_at, status, mutations,
                   counts, error
            FROM reconciliation_runs ORDER BY started_at DESC LIMIT ?
            """,
            (limit,),
        ).fetchall()
        return [
            {
                "id": row[0],
                "trigger": row[1],
                "started_at": row[2],
                "completed_at": row[3],
                "status": row[4],
                "mutations": row[5],
                "counts": json.loads(row[6]) if row[6] else {},
                "error": row[7],
            }
            for row in rows
        ]

    def _row_to_order(self, row: tuple) -> OrderExecutionRecord:
        """Deserialize an ``orders`` row (``_ORDER_COLUMNS`` order)."""
        return OrderExecutionRecord(
            client_order_id=row[0],
            broker_order_id=row[1],
            symbol=row[2],
            side=row[3],
            order_type=row[4],
            qty=row[5],
            notional=row[6],
            limit_price=row[7],
            time_in_force=row[8],
            status=OrderStatus(row[9]),
            attempts=row[10],
            version=row[11],
            outcome_unknown=bool(row[12]),
            filled_qty=row[13],
            filled_avg_price=row[14],
            source=OrderSource(row[15]),
            work_item_id=row[16],
            needs_review=bool(row[17]),
            last_error=row[18],
            created_at=row[19],
            updated_at=row[20],
        )

    def close(self) -> None:
        """Close the database connection."""
        self.conn.close()
        logger.debug("order_ledger_closed", db_path=str(self.db_path))


def _delta_price(
    old_qty: float,
    old_avg: float | None,
    new_qty: float,
    new_avg: float | None,
) -> float | None:
    """Average price of the quantity filled between two observations."""
    if new_avg is None:
        return None
    if old_qty <= 0 or old_avg is None:
        return new_avg
    delta = new_qty - old_qty
    return (new_avg * new_qty - old_avg * old_qty) / delta
