"""Shared test fixtures for the orderkeeper test suite."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from orderkeeper.clock import to_iso
from orderkeeper.execution.broker import (
    BrokerAccount,
    BrokerOrder,
    BrokerPosition,
    Brokerage,
)
from orderkeeper.execution.ledger import OrderLedger
from orderkeeper.risk.limits import RiskLimitsStore
from orderkeeper.work.store import WorkItemStore


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 15, 14, 30, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakeBrokerage(Brokerage):
    """In-memory brokerage that records every call.

    Knobs:
        create_delay  -- seconds create_order sleeps AFTER accepting the
                         order (simulates a lost response)
        create_error  -- exception create_order raises before accepting
        reject_reason -- create_order answers with a rejected order
        fail_reads    -- exception raised by every read call
        untradable    -- symbols qualify_symbols reports as not tradable
    """

    def __init__(self, clock: FakeClock | None = None) -> None:
        self.clock = clock or FakeClock()
        self.connected = False
        self.orders: dict[str, BrokerOrder] = {}
        self.positions: dict[str, BrokerPosition] = {}
        self.account = BrokerAccount(
            equity=100_000.0, cash=50_000.0, buying_power=200_000.0, last_equity=100_000.0
        )
        self.next_id = 42
        self.create_calls: list[dict] = []
        self.cancel_calls: list[str] = []
        self.create_delay = 0.0
        self.create_error: Exception | None = None
        self.reject_reason: str | None = None
        self.fail_reads: Exception | None = None
        self.untradable: set[str] = set()

    # -- helpers used by tests ------------------------------------------

    def add_order(self, **fields) -> BrokerOrder:
        broker_order_id = fields.pop("broker_order_id", None) or f"b-{self.next_id}"
        self.next_id += 1
        fields.setdefault("created_at", to_iso(self.clock()))
        order = BrokerOrder(broker_order_id=broker_order_id, **fields)
        self.orders[broker_order_id] = order
        return order

    def fill(self, broker_order_id: str, qty: float, price: float) -> BrokerOrder:
        order = self.orders[broker_order_id]
        order.filled_qty = qty
        order.filled_avg_price = price
        target = order.qty or qty
        order.status = "filled" if qty >= target else "partially_filled"
        return order

    def set_position(self, symbol: str, qty: float, market_value: float, side: str = "long") -> None:
        self.positions[symbol] = BrokerPosition(
            symbol=symbol,
            qty=qty,
            side=side,
            avg_entry_price=market_value / qty if qty else None,
            current_price=market_value / qty if qty else None,
            market_value=market_value,
        )

    def _check_reads(self) -> None:
        if self.fail_reads is not None:
            raise self.fail_reads

    # -- Brokerage ------------------------------------------------------

    async def connect(self) -> None:
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False

    def is_connected(self) -> bool:
        return self.connected

    async def create_order(
        self,
        client_order_id,
        symbol,
        side,
        qty=None,
        notional=None,
        order_type="market",
        limit_price=None,
        time_in_force="day",
    ) -> BrokerOrder:
        self.create_calls.append(
            {"client_order_id": client_order_id, "symbol": symbol, "side": side, "qty": qty}
        )
        if self.create_error is not None:
            raise self.create_error
        order = self.add_order(
            client_order_id=client_order_id,
            symbol=symbol,
            side=side,
            status="rejected" if self.reject_reason else "submitted",
            order_type=order_type,
            qty=qty,
            notional=notional,
            limit_price=limit_price,
            time_in_force=time_in_force,
            reject_reason=self.reject_reason,
        )
        if self.create_delay:
            await asyncio.sleep(self.create_delay)
        return BrokerOrder(**vars(order))

    async def get_order_by_client_id(self, client_order_id):
        self._check_reads()
        for order in self.orders.values():
            if order.client_order_id == client_order_id:
                return BrokerOrder(**vars(order))
        return None

    async def get_orders(self, status="all", limit=500):
        self._check_reads()
        orders = [BrokerOrder(**vars(o)) for o in self.orders.values()]
        if status == "open":
            orders = [o for o in orders if o.is_open]
        elif status == "closed":
            orders = [o for o in orders if not o.is_open]
        orders.sort(key=lambda o: o.created_at or "", reverse=True)
        return orders[:limit]

    async def get_positions(self):
        self._check_reads()
        return [BrokerPosition(**vars(p)) for p in self.positions.values()]

    async def cancel_order(self, broker_order_id):
        self.cancel_calls.append(broker_order_id)
        order = self.orders.get(broker_order_id)
        if order is None or not order.is_open:
            return False
        order.status = "canceled"
        return True

    async def cancel_all_orders(self):
        open_ids = [oid for oid, o in self.orders.items() if o.is_open]
        for oid in open_ids:
            await self.cancel_order(oid)
        return len(open_ids)

    async def close_position(self, symbol):
        position = self.positions.pop(symbol, None)
        if position is None:
            return None
        return self.add_order(
            client_order_id=f"close-{symbol}-test",
            symbol=symbol,
            side="sell" if position.side == "long" else "buy",
            status="submitted",
            qty=position.qty,
        )

    async def get_account(self):
        self._check_reads()
        return BrokerAccount(**vars(self.account))

    async def qualify_symbols(self, symbols):
        return {s: s not in self.untradable for s in symbols}


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    """Provide a temporary SQLite database path shared by all stores."""
    return tmp_path / "orderkeeper.db"


@pytest.fixture
def broker(clock: FakeClock) -> FakeBrokerage:
    return FakeBrokerage(clock)


@pytest.fixture
def work_store(db_path: Path, clock: FakeClock):
    store = WorkItemStore(db_path, clock=clock)
    yield store
    store.close()


@pytest.fixture
def ledger(db_path: Path, clock: FakeClock):
    led = OrderLedger(db_path, clock=clock)
    yield led
    led.close()


@pytest.fixture
def limits(db_path: Path, clock: FakeClock):
    store = RiskLimitsStore(db_path, clock=clock)
    yield store
    store.close()
