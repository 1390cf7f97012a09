"""Order, fill, position and account records of the local ledger.

These are plain dataclasses. Only the order executor and the reconciler
write them (through :class:`~orderkeeper.execution.ledger.OrderLedger`);
every other component reads them.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum


class OrderStatus(str, Enum):
    """Local order lifecycle.

    SUBMITTING -> SUBMITTED -> PARTIALLY_FILLED -> FILLED, with CANCELED,
    REJECTED and FAILED reachable from the non-terminal states. FAILED is
    retryable; FILLED, CANCELED and REJECTED are terminal.
    """

    SUBMITTING = "SUBMITTING"
    SUBMITTED = "SUBMITTED"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    CANCELED = "CANCELED"
    REJECTED = "REJECTED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {OrderStatus.FILLED, OrderStatus.CANCELED, OrderStatus.REJECTED}
)

# Brokerage statuses normalized by the adapter -> local status.
BROKER_STATUS_MAP: dict[str, OrderStatus] = {
    "new": OrderStatus.SUBMITTED,
    "submitted": OrderStatus.SUBMITTED,
    "accepted": OrderStatus.SUBMITTED,
    "pending_new": OrderStatus.SUBMITTED,
    "partially_filled": OrderStatus.PARTIALLY_FILLED,
    "filled": OrderStatus.FILLED,
    "canceled": OrderStatus.CANCELED,
    "expired": OrderStatus.CANCELED,
    "rejected": OrderStatus.REJECTED,
}


def status_from_broker(broker_status: str) -> OrderStatus:
    """Map a normalized brokerage status onto the local lifecycle."""
    return BROKER_STATUS_MAP.get(broker_status.lower(), OrderStatus.SUBMITTED)


class OrderSource(str, Enum):
    """Who created a ledger order record."""

    ENGINE = "engine"
    RECONCILIATION = "reconciliation"


@dataclass
class OrderIntent:
    """A decided order, before it reaches the brokerage.

    Parameters
    ----------
    client_order_id : str
        Caller-chosen id; the idempotency anchor for the whole lifecycle.
    symbol : str
        Ticker.
    side : str
        ``"buy"`` or ``"sell"``.
    qty : float | None
        Share quantity. Exactly one of ``qty``/``notional`` is set.
    notional : float | None
        Dollar amount for notional market orders.
    order_type : str
        ``"market"`` or ``"limit"``.
    limit_price : float | None
        Required for limit orders.
    time_in_force : str
        ``"day"`` or ``"gtc"``.
    reference_price : float | None
        Price used by the risk gate to size the order when no limit price
        is given.
    strategy_id : str | None
        Decision source, informational.
    """

    client_order_id: str
    symbol: str
    side: str
    qty: float | None = None
    notional: float | None = None
    order_type: str = "market"
    limit_price: float | None = None
    time_in_force: str = "day"
    reference_price: float | None = None
    strategy_id: str | None = None

    def validate(self) -> list[str]:
        """Return a list of problems; empty when the intent is well formed."""
        problems: list[str] = []
        if not self.client_order_id:
            problems.append("client_order_id is required")
        if not self.symbol:
            problems.append("symbol is required")
        if self.side not in ("buy", "sell"):
            problems.append(f"side must be 'buy' or 'sell', got {self.side!r}")
        if (self.qty is None) == (self.notional is None):
            problems.append("exactly one of qty or notional is required")
        if self.qty is not None and self.qty <= 0:
            problems.append("qty must be positive")
        if self.notional is not None and self.notional <= 0:
            problems.append("notional must be positive")
        if self.order_type not in ("market", "limit"):
            problems.append(f"order_type must be 'market' or 'limit', got {self.order_type!r}")
        if self.order_type == "limit" and self.limit_price is None:
            problems.append("limit orders require limit_price")
        return problems

    @property
    def price(self) -> float | None:
        """Best known price for sizing: limit price, else reference price."""
        return self.limit_price if self.limit_price is not None else self.reference_price

    def order_value(self) -> float | None:
        """Absolute dollar value of the order, or None if no price is known."""
        if self.notional is not None:
            return abs(self.notional)
        if self.qty is None or self.price is None:
            return None
        return abs(self.qty * self.price)

    @classmethod
    def from_payload(cls, payload: dict) -> OrderIntent:
        """Build an intent from an ORDER_SUBMIT work item payload."""
        known = {f for f in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in payload.items() if k in known})

    def to_payload(self) -> dict:
        return asdict(self)


@dataclass
class OrderExecutionRecord:
    """Ledger row for one client order id."""

    client_order_id: str
    symbol: str
    side: str
    status: OrderStatus
    order_type: str = "market"
    qty: float | None = None
    notional: float | None = None
    limit_price: float | None = None
    time_in_force: str = "day"
    broker_order_id: str | None = None
    attempts: int = 0
    version: int = 1
    outcome_unknown: bool = False
    filled_qty: float = 0.0
    filled_avg_price: float | None = None
    source: OrderSource = OrderSource.ENGINE
    work_item_id: str | None = None
    needs_review: bool = False
    last_error: str | None = None
    created_at: str = ""
    updated_at: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


@dataclass
class OrderEvent:
    """One status transition of an order."""

    client_order_id: str
    from_status: OrderStatus | None
    to_status: OrderStatus
    reason: str
    created_at: str
    id: int | None = None


@dataclass
class FillRecord:
    """Fill quantity growth observed at the brokerage."""

    client_order_id: str
    symbol: str
    side: str
    qty: float
    price: float | None
    timestamp: str
    broker_order_id: str | None = None
    id: int | None = None


@dataclass
class PositionRecord:
    """Ledger mirror of a brokerage position."""

    symbol: str
    qty: float
    side: str
    avg_entry_price: float | None = None
    current_price: float | None = None
    market_value: float = 0.0
    unrealized_pl: float | None = None
    updated_at: str = ""


@dataclass
class AccountSnapshot:
    """Latest brokerage account values."""

    equity: float
    cash: float
    buying_power: float
    last_equity: float
    captured_at: str = ""

    @property
    def daily_pnl_fraction(self) -> float:
        """``(equity - last_equity) / last_equity``; 0 when last equity is unknown."""
        if self.last_equity <= 0:
            return 0.0
        return (self.equity - self.last_equity) / self.last_equity

