"""Brokerage interface and BrokerGateway, the ib_async implementation.

The execution core depends only on :class:`Brokerage`. ``BrokerGateway``
wraps ``ib_async.IB`` with:
- Automatic reconnection with exponential backoff
- Paper/live mode detection based on port
- Client order ids carried in IB's ``orderRef`` field so an order can be
  looked up after a timeout or restart
- Normalization of IB trades, portfolio items and account tags into the
  ``BrokerOrder``/``BrokerPosition``/``BrokerAccount`` records

Default port is 4002 (IB Gateway paper trading). Live ports require
``ORDERKEEPER_LIVE_CONFIRMED=true`` at engine start.

Every call made by the execution core goes through :func:`call_with_timeout`;
a timed-out call raises :class:`AmbiguousOutcomeError`.
"""

from __future__ import annotations

import asyncio
import uuid
from abc import ABC, abstractmethod
from collections.abc import Awaitable
from dataclasses import dataclass
from typing import TypeVar

import structlog
from ib_async import IB, LimitOrder, MarketOrder, Stock, Trade

from orderkeeper.errors import AmbiguousOutcomeError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# IB leaves unset doubles at sys.float_info.max.
_UNSET_THRESHOLD = 1e300

_IB_CANCELED_STATUSES = {"Cancelled", "ApiCancelled"}


@dataclass
class BrokerOrder:
    """An order as reported by the brokerage.

    ``status`` is normalized to one of ``submitted``, ``partially_filled``,
    ``filled``, ``canceled``, ``expired`` or ``rejected``.
    """

    broker_order_id: str
    client_order_id: str | None
    symbol: str
    side: str
    status: str
    order_type: str = "market"
    qty: float | None = None
    notional: float | None = None
    limit_price: float | None = None
    time_in_force: str = "day"
    filled_qty: float = 0.0
    filled_avg_price: float | None = None
    created_at: str | None = None
    reject_reason: str | None = None

    @property
    def is_open(self) -> bool:
        return self.status in ("submitted", "partially_filled")


@dataclass
class BrokerPosition:
    """A position as reported by the brokerage."""

    symbol: str
    qty: float
    side: str
    avg_entry_price: float | None = None
    current_price: float | None = None
    market_value: float = 0.0
    unrealized_pl: float | None = None


@dataclass
class BrokerAccount:
    """Account values as reported by the brokerage."""

    equity: float
    cash: float
    buying_power: float
    last_equity: float


class Brokerage(ABC):
    """Operations the execution core consumes from a brokerage.

    Implementations raise ordinary exceptions on failure; callers classify
    them with :func:`orderkeeper.errors.classify_error`.
    """

    @abstractmethod
    async def connect(self) -> None: ...

    @abstractmethod
    async def disconnect(self) -> None: ...

    @abstractmethod
    def is_connected(self) -> bool: ...

    @abstractmethod
    async def create_order(
        self,
        client_order_id: str,
        symbol: str,
        side: str,
        qty: float | None = None,
        notional: float | None = None,
        order_type: str = "market",
        limit_price: float | None = None,
        time_in_force: str = "day",
    ) -> BrokerOrder:
        """Submit a new order carrying *client_order_id*.

        An explicit refusal is returned as a ``BrokerOrder`` with status
        ``rejected`` (or raised as an exception whose message says so).
        """
        ...

    @abstractmethod
    async def get_order_by_client_id(self, client_order_id: str) -> BrokerOrder | None:
        """Return the order carrying *client_order_id*, or None if unknown."""
        ...

    @abstractmethod
    async def get_orders(self, status: str = "all", limit: int = 500) -> list[BrokerOrder]:
        """List orders, newest first. *status* is ``open``, ``closed`` or ``all``."""
        ...

    @abstractmethod
    async def get_positions(self) -> list[BrokerPosition]: ...

    @abstractmethod
    async def cancel_order(self, broker_order_id: str) -> bool:
        """Request cancellation. Returns False if the order is not open."""
        ...

    @abstractmethod
    async def cancel_all_orders(self) -> int:
        """Cancel every open order. Returns the number of orders targeted."""
        ...

    @abstractmethod
    async def close_position(self, symbol: str) -> BrokerOrder | None:
        """Flatten *symbol* with a market order. None if there is no position."""
        ...

    @abstractmethod
    async def get_account(self) -> BrokerAccount: ...

    @abstractmethod
    async def qualify_symbols(self, symbols: list[str]) -> dict[str, bool]:
        """Return ``{symbol: tradable}`` for each requested symbol."""
        ...


async def call_with_timeout(
    awaitable: Awaitable[T], operation: str, timeout: float
) -> T:
    """Await a brokerage call, converting a timeout to an ambiguous outcome."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as exc:
        logger.warning("broker_call_timeout", operation=operation, timeout=timeout)
        raise AmbiguousOutcomeError(operation, timeout) from exc


class BrokerGateway(Brokerage):
    """Wraps ib_async.IB with reconnection and order lifecycle normalization.

    Port mapping:
        4001 = IB Gateway live
        4002 = IB Gateway paper (default)
        7496 = TWS live
        7497 = TWS paper
    """

    LIVE_PORTS: set[int] = {4001, 7496}
    PAPER_PORTS: set[int] = {4002, 7497}

    MAX_RECONNECT_ATTEMPTS: int = 10
    INITIAL_BACKOFF_SECONDS: float = 1.0
    MAX_BACKOFF_SECONDS: float = 30.0

    ACK_TIMEOUT_SECONDS: float = 2.0
    ACK_POLL_SECONDS: float = 0.05

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 4002,
        client_id: int = 1,
        readonly: bool = False,
    ) -> None:
        self.ib = IB()
        self._host = host
        self._port = port
        self._client_id = client_id
        self._readonly = readonly

        mode = "PAPER" if self.is_paper else "LIVE"
        logger.info(
            "broker_gateway_init",
            host=host,
            port=port,
            client_id=client_id,
            readonly=readonly,
            mode=mode,
        )

    @property
    def is_paper(self) -> bool:
        """Return True if connected to a paper trading port."""
        return self._port in self.PAPER_PORTS

    @property
    def port(self) -> int:
        return self._port

    async def connect(self) -> None:
        """Connect to IB Gateway/TWS and register disconnect handler."""
        mode = "PAPER" if self.is_paper else "LIVE"
        logger.info(
            "broker_connecting",
            host=self._host,
            port=self._port,
            client_id=self._client_id,
            mode=mode,
        )
        await self.ib.connectAsync(
            self._host,
            self._port,
            clientId=self._client_id,
            readonly=self._readonly,
        )
        self.ib.disconnectedEvent += self._on_disconnect
        logger.info("broker_connected", mode=mode)

    async def disconnect(self) -> None:
        """Disconnect from IB Gateway/TWS."""
        self.ib.disconnectedEvent -= self._on_disconnect
        self.ib.disconnect()
        logger.info("broker_disconnected")

    def is_connected(self) -> bool:
        """Return True if currently connected to IB."""
        return self.ib.isConnected()

    async def reconnect(self) -> None:
        """Reconnect with exponential backoff.

        Raises:
            ConnectionError: After exhausting all retry attempts.
        """
        backoff = self.INITIAL_BACKOFF_SECONDS
        for attempt in range(1, self.MAX_RECONNECT_ATTEMPTS + 1):
            logger.info(
                "broker_reconnect_attempt",
                attempt=attempt,
                max_attempts=self.MAX_RECONNECT_ATTEMPTS,
                backoff_seconds=backoff,
            )
            try:
                await self.ib.connectAsync(
                    self._host,
                    self._port,
                    clientId=self._client_id,
                    readonly=self._readonly,
                )
                logger.info("broker_reconnected", attempt=attempt)
                return
            except (OSError, asyncio.TimeoutError) as exc:
                logger.warning(
                    "broker_reconnect_failed",
                    attempt=attempt,
                    backoff_seconds=backoff,
                    error=str(exc),
                )
                if attempt < self.MAX_RECONNECT_ATTEMPTS:
                    await asyncio.sleep(backoff)
                    backoff = min(backoff * 2, self.MAX_BACKOFF_SECONDS)

        msg = f"Failed to reconnect after {self.MAX_RECONNECT_ATTEMPTS} attempts"
        logger.error("broker_reconnect_exhausted")
        raise ConnectionError(msg)

    async def _on_disconnect(self) -> None:
        """Auto-reconnect handler registered on disconnectedEvent."""
        logger.warning("broker_disconnected_unexpected")
        try:
            await self.reconnect()
            self.ib.reqOpenOrders()
            logger.info("broker_state_resynced")
        except ConnectionError:
            logger.error("broker_auto_reconnect_failed")

    def _require_connection(self) -> None:
        if not self.ib.isConnected():
            raise ConnectionError("Not connected to IB Gateway/TWS")

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def create_order(
        self,
        client_order_id: str,
        symbol: str,
        side: str,
        qty: float | None = None,
        notional: float | None = None,
        order_type: str = "market",
        limit_price: float | None = None,
        time_in_force: str = "day",
    ) -> BrokerOrder:
        """Place a stock order tagged with ``orderRef=client_order_id``.

        Waits up to ``ACK_TIMEOUT_SECONDS`` for IB to acknowledge or reject
        the order. An order still pending after that is reported as
        ``submitted``; it carries an order id and can be looked up later.
        """
        self._require_connection()
        action = side.upper()
        contract = Stock(symbol, "SMART", "USD")
        if order_type == "limit":
            order = LimitOrder(action, qty or 0, limit_price)
        else:
            order = MarketOrder(action, qty or 0)
        if notional is not None:
            order.cashQty = notional
        order.orderRef = client_order_id
        order.tif = time_in_force.upper()

        trade = self.ib.placeOrder(contract, order)
        logger.info(
            "order_placed",
            client_order_id=client_order_id,
            symbol=symbol,
            side=side,
            order_type=order_type,
            order_id=trade.order.orderId,
        )

        elapsed = 0.0
        while trade.orderStatus.status in ("PendingSubmit", "ApiPending", ""):
            if elapsed >= self.ACK_TIMEOUT_SECONDS:
                break
            await asyncio.sleep(self.ACK_POLL_SECONDS)
            elapsed += self.ACK_POLL_SECONDS

        return self._trade_to_order(trade)

    async def get_order_by_client_id(self, client_order_id: str) -> BrokerOrder | None:
        """Search session trades, then completed orders, for the orderRef."""
        self._require_connection()
        for trade in self.ib.trades():
            if trade.order.orderRef == client_order_id:
                return self._trade_to_order(trade)
        completed = await self.ib.reqCompletedOrdersAsync(apiOnly=True)
        for trade in completed:
            if trade.order.orderRef == client_order_id:
                return self._trade_to_order(trade)
        return None

    async def get_orders(self, status: str = "all", limit: int = 500) -> list[BrokerOrder]:
        """Open trades plus completed API orders, newest first."""
        self._require_connection()
        trades: dict[str, Trade] = {}
        if status in ("open", "all"):
            for trade in self.ib.openTrades():
                trades[self._order_key(trade)] = trade
        if status in ("closed", "all"):
            for trade in await self.ib.reqCompletedOrdersAsync(apiOnly=True):
                trades.setdefault(self._order_key(trade), trade)

        orders = [self._trade_to_order(t) for t in trades.values()]
        if status == "open":
            orders = [o for o in orders if o.is_open]
        elif status == "closed":
            orders = [o for o in orders if not o.is_open]
        orders.sort(key=lambda o: o.created_at or "", reverse=True)
        return orders[:limit]

    async def cancel_order(self, broker_order_id: str) -> bool:
        """Cancel the open trade with the given IB order id."""
        self._require_connection()
        for trade in self.ib.openTrades():
            if self._order_key(trade) == broker_order_id:
                self.ib.cancelOrder(trade.order)
                logger.info("order_cancel_requested", broker_order_id=broker_order_id)
                return True
        logger.info("order_cancel_not_open", broker_order_id=broker_order_id)
        return False

    async def cancel_all_orders(self) -> int:
        """Issue a global cancel. Returns the number of open trades beforehand."""
        self._require_connection()
        n_open = len(self.ib.openTrades())
        self.ib.reqGlobalCancel()
        logger.warning("global_cancel_requested", n_open=n_open)
        return n_open

    async def close_position(self, symbol: str) -> BrokerOrder | None:
        """Flatten *symbol* with an opposite-side market order.

        An open close order for the symbol is returned instead of placing a
        second one.
        """
        self._require_connection()
        close_prefix = f"close-{symbol}-"
        for trade in self.ib.openTrades():
            if (trade.order.orderRef or "").startswith(close_prefix):
                return self._trade_to_order(trade)
        for item in self.ib.portfolio():
            if item.contract.symbol != symbol or item.position == 0:
                continue
            action = "SELL" if item.position > 0 else "BUY"
            order = MarketOrder(action, abs(item.position))
            order.orderRef = f"{close_prefix}{uuid.uuid4().hex[:8]}"
            contract = Stock(symbol, "SMART", "USD")
            trade = self.ib.placeOrder(contract, order)
            logger.warning(
                "position_close_placed",
                symbol=symbol,
                qty=abs(item.position),
                action=action,
            )
            return self._trade_to_order(trade)
        return None

    # ------------------------------------------------------------------
    # Positions, account, contracts
    # ------------------------------------------------------------------

    async def get_positions(self) -> list[BrokerPosition]:
        """Non-zero stock positions from the IB portfolio."""
        self._require_connection()
        positions: list[BrokerPosition] = []
        for item in self.ib.portfolio():
            if item.position == 0:
                continue
            positions.append(
                BrokerPosition(
                    symbol=item.contract.symbol,
                    qty=abs(float(item.position)),
                    side="long" if item.position > 0 else "short",
                    avg_entry_price=_clean(item.averageCost),
                    current_price=_clean(item.marketPrice),
                    market_value=float(item.marketValue),
                    unrealized_pl=_clean(item.unrealizedPNL),
                )
            )
        return positions

    async def get_account(self) -> BrokerAccount:
        """Read equity, cash, buying power and prior-day equity tags."""
        self._require_connection()
        values: dict[str, float] = {}
        for item in await self.ib.accountSummaryAsync():
            if item.currency not in ("USD", "BASE", ""):
                continue
            try:
                values[item.tag] = float(item.value)
            except (TypeError, ValueError):
                continue

        equity = values.get("NetLiquidation", 0.0)
        return BrokerAccount(
            equity=equity,
            cash=values.get("TotalCashValue", 0.0),
            buying_power=values.get("BuyingPower", 0.0),
            last_equity=values.get("PreviousDayEquityWithLoanValue", equity),
        )

    async def qualify_symbols(self, symbols: list[str]) -> dict[str, bool]:
        """Qualify each symbol as a SMART-routed USD stock."""
        self._require_connection()
        contracts = [Stock(s, "SMART", "USD") for s in symbols]
        qualified = await self.ib.qualifyContractsAsync(*contracts)
        tradable = {c.symbol for c in qualified if c is not None and getattr(c, "conId", 0)}
        return {s: s in tradable for s in symbols}

    # ------------------------------------------------------------------
    # Normalization
    # ------------------------------------------------------------------

    @staticmethod
    def _order_key(trade: Trade) -> str:
        return str(trade.order.orderId or trade.order.permId)

    @classmethod
    def _trade_to_order(cls, trade: Trade) -> BrokerOrder:
        order = trade.order
        order_status = trade.orderStatus
        filled = float(order_status.filled or 0.0)
        reject_reason = None
        for entry in reversed(trade.log):
            if getattr(entry, "errorCode", 0):
                reject_reason = entry.message
                break

        return BrokerOrder(
            broker_order_id=cls._order_key(trade),
            client_order_id=order.orderRef or None,
            symbol=trade.contract.symbol,
            side=order.action.lower(),
            status=_normalize_status(order_status.status, filled),
            order_type="limit" if order.orderType == "LMT" else "market",
            qty=_clean(order.totalQuantity) or None,
            notional=_clean(getattr(order, "cashQty", None)) or None,
            limit_price=_clean(getattr(order, "lmtPrice", None)),
            time_in_force=(order.tif or "DAY").lower(),
            filled_qty=filled,
            filled_avg_price=_clean(order_status.avgFillPrice) if filled else None,
            created_at=trade.log[0].time.isoformat() if trade.log else None,
            reject_reason=reject_reason,
        )


def _normalize_status(ib_status: str, filled: float) -> str:
    """Map an IB order status string onto the normalized vocabulary."""
    if ib_status == "Filled":
        return "filled"
    if ib_status in _IB_CANCELED_STATUSES:
        return "canceled"
    if ib_status == "Inactive":
        return "rejected"
    if filled > 0:
        return "partially_filled"
    return "submitted"


def _clean(value: float | None) -> float | None:
    """Drop IB's unset-double sentinel and NaN."""
    if value is None:
        return None
    value = float(value)
    if value != value or abs(value) >= _UNSET_THRESHOLD:
        return None
    return value
