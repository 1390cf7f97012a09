"""Reconciler: keep the local ledger consistent with the brokerage.

The brokerage is the source of truth. A run has two phases:

1. **Plan** (read only). Fetch brokerage orders, positions and account,
   load the local non-terminal orders and positions, and look up by client
   order id every local candidate missing from the listing. Any brokerage
   error aborts the run here, before a single local write.
2. **Apply** (one ledger transaction). Classify every divergence and heal
   or flag it:

   =====================  ==============================  ================
   Situation              Action                          Finding
   =====================  ==============================  ================
   brokerage order only   insert mirror record            MISSING_LOCAL
   local only, never      local record -> CANCELED        UNREAL
   brokerage-confirmed
   local only, confirmed  flag ``needs_review``           ORPHANED_LOCAL
   both, identical        nothing                         SYNCED / NONE
   both, different        overwrite local from brokerage  SYNCED / HEALED
   =====================  ==============================  ================

   Local-only orders are only judged after the grace window and when their
   owning work item is no longer PENDING or RUNNING. Positions are
   inserted, overwritten or removed from the mirror; the account snapshot
   is refreshed.

A second run with no brokerage change applies zero mutations. Orders
already flagged for review are counted in ``pending_review`` instead of
being reported again.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from enum import Enum
from typing import TYPE_CHECKING

import structlog

from orderkeeper.clock import Clock, from_iso, to_iso, utc_now
from orderkeeper.execution.broker import (
    BrokerAccount,
    BrokerOrder,
    BrokerPosition,
    call_with_timeout,
)
from orderkeeper.execution.types import (
    AccountSnapshot,
    FillRecord,
    OrderExecutionRecord,
    OrderSource,
    OrderStatus,
    PositionRecord,
    status_from_broker,
)
from orderkeeper.work.types import WorkItemStatus

if TYPE_CHECKING:
    from orderkeeper.execution.broker import Brokerage
    from orderkeeper.execution.ledger import OrderLedger
    from orderkeeper.execution.risk_gate import RiskGate
    from orderkeeper.work.store import WorkItemStore

logger = structlog.get_logger(__name__)

_VALUE_TOLERANCE = 1e-6
UNREAL_STALE_AFTER = timedelta(hours=24)


class FindingCategory(str, Enum):
    MISSING_LOCAL = "MISSING_LOCAL"
    ORPHANED_LOCAL = "ORPHANED_LOCAL"
    UNREAL = "UNREAL"
    SYNCED = "SYNCED"


class Resolution(str, Enum):
    NONE = "NONE"
    AUTO_HEALED = "AUTO_HEALED"
    NEEDS_OPERATOR = "NEEDS_OPERATOR"


@dataclass
class ReconciliationFinding:
    """One classified comparison between a local and a brokerage record."""

    category: FindingCategory
    kind: str
    symbol: str
    resolution: Resolution
    local_ref: str | None = None
    broker_ref: str | None = None
    detail: str = ""

    def to_dict(self) -> dict:
        data = asdict(self)
        data["category"] = self.category.value
        data["resolution"] = self.resolution.value
        return data


@dataclass
class ReconciliationReport:
    """Result of one reconciliation run.

    Parameters
    ----------
    run_id : str
        Identifier in ``reconciliation_runs``.
    trigger : str
        ``periodic``, ``manual``, ``order_sync`` or a work item id.
    started_at, completed_at : str
        ISO 8601 UTC timestamps.
    findings : list[ReconciliationFinding]
        Every order and position compared.
    mutations : int
        Ledger changes applied.
    pending_review : int
        Orders still flagged ``needs_review`` from earlier runs.
    kill_switch_triggered : bool
        The refreshed account breached the daily-loss limit during this run.
    """

    run_id: str
    trigger: str
    started_at: str
    completed_at: str = ""
    findings: list[ReconciliationFinding] = field(default_factory=list)
    mutations: int = 0
    pending_review: int = 0
    kill_switch_triggered: bool = False

    @property
    def counts(self) -> dict[str, int]:
        counts = {c.value: 0 for c in FindingCategory}
        for finding in self.findings:
            counts[finding.category.value] += 1
        counts["pending_review"] = self.pending_review
        return counts

    @property
    def divergences(self) -> list[ReconciliationFinding]:
        """Findings other than unchanged SYNCED ones."""
        return [
            f
            for f in self.findings
            if not (f.category is FindingCategory.SYNCED and f.resolution is Resolution.NONE)
        ]

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "trigger": self.trigger,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "mutations": self.mutations,
            "counts": self.counts,
            "findings": [f.to_dict() for f in self.divergences],
            "kill_switch_triggered": self.kill_switch_triggered,
        }


@dataclass
class UnrealOrder:
    """A brokerage order that never became (or will never become) a real position."""

    broker_order_id: str
    client_order_id: str | None
    symbol: str
    status: str
    reason: str
    is_open: bool
    created_at: str | None = None


@dataclass
class _BrokerView:
    orders: list[BrokerOrder]
    positions: list[BrokerPosition]
    account: BrokerAccount
    local_orders: list[OrderExecutionRecord]
    lookups: dict[str, BrokerOrder | None]


class Reconciler:
    """Plans and applies ledger repairs from brokerage state.

    Parameters
    ----------
    broker : Brokerage
        Brokerage adapter (read calls only, plus cancels for cleanup).
    ledger : OrderLedger
        Local ledger to repair.
    work_store : WorkItemStore
        Consulted for the status of an order's owning work item.
    broker_timeout : float
        Timeout for every brokerage call.
    grace_seconds : float
        Minimum age before a local-only order counts as unreal/orphaned.
    order_limit : int
        Brokerage orders fetched per run.
    risk_gate : RiskGate, optional
        When set, the daily-loss limit is evaluated against the refreshed
        account snapshot at the end of every successful run.
    clock : Callable[[], datetime]
        Injectable UTC clock.
    """

    def __init__(
        self,
        broker: Brokerage,
        ledger: OrderLedger,
        work_store: WorkItemStore,
        broker_timeout: float = 10.0,
        grace_seconds: float = 180.0,
        order_limit: int = 500,
        risk_gate: RiskGate | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._broker = broker
        self._ledger = ledger
        self._work_store = work_store
        self._broker_timeout = broker_timeout
        self._grace = timedelta(seconds=grace_seconds)
        self._order_limit = order_limit
        self._risk_gate = risk_gate
        self._clock = clock

    async def _call(self, awaitable, operation: str):
        return await call_with_timeout(awaitable, operation, self._broker_timeout)

    # ------------------------------------------------------------------
    # Full reconciliation
    # ------------------------------------------------------------------

    async def reconcile(self, trigger: str = "manual") -> ReconciliationReport:
        """Run both phases and persist the run log.

        Raises whatever the brokerage raised during planning; the ledger is
        left untouched in that case.
        """
        report = ReconciliationReport(
            run_id=uuid.uuid4().hex,
            trigger=trigger,
            started_at=to_iso(self._clock()),
        )
        self._ledger.start_reconciliation_run(report.run_id, trigger, report.started_at)
        logger.info("reconciliation_started", run_id=report.run_id, trigger=trigger)

        try:
            view = await self._plan()
            with self._ledger.transaction():
                self._apply_orders(view, report)
                self._apply_positions(view, report)
                self._apply_account(view, report)
        except Exception as exc:
            self._ledger.finish_reconciliation_run(
                report.run_id, "failed", error=str(exc)
            )
            logger.error(
                "reconciliation_failed",
                run_id=report.run_id,
                trigger=trigger,
                error=str(exc),
            )
            raise

        report.completed_at = to_iso(self._clock())
        self._ledger.finish_reconciliation_run(
            report.run_id,
            "completed",
            mutations=report.mutations,
            counts=report.counts,
            findings=[f.to_dict() for f in report.divergences],
        )
        if self._risk_gate is not None:
            report.kill_switch_triggered = self._risk_gate.check_daily_loss()
        logger.info(
            "reconciliation_completed",
            run_id=report.run_id,
            trigger=trigger,
            mutations=report.mutations,
            kill_switch_triggered=report.kill_switch_triggered,
            **{k.lower(): v for k, v in report.counts.items()},
        )
        return report

    async def _plan(self) -> _BrokerView:
        """Phase 1: read everything needed, write nothing."""
        orders = await self._call(
            self._broker.get_orders(status="all", limit=self._order_limit), "get_orders"
        )
        positions = await self._call(self._broker.get_positions(), "get_positions")
        account = await self._call(self._broker.get_account(), "get_account")
        local_orders = self._ledger.list_orders(non_terminal=True, limit=100_000)

        listed_coids = {o.client_order_id for o in orders if o.client_order_id}
        listed_ids = {o.broker_order_id for o in orders}
        lookups: dict[str, BrokerOrder | None] = {}
        for record in local_orders:
            if record.client_order_id in listed_coids or record.broker_order_id in listed_ids:
                continue
            if not self._is_judgeable(record):
                continue
            lookups[record.client_order_id] = await self._call(
                self._broker.get_order_by_client_id(record.client_order_id),
                "get_order_by_client_id",
            )

        return _BrokerView(
            orders=orders,
            positions=positions,
            account=account,
            local_orders=local_orders,
            lookups=lookups,
        )

    def _is_judgeable(self, record: OrderExecutionRecord) -> bool:
        """Past the grace window and not owned by a live work item."""
        age = self._clock() - from_iso(record.created_at)
        if age < self._grace:
            return False
        if record.work_item_id:
            item = self._work_store.get(record.work_item_id)
            if item is not None and item.status in (WorkItemStatus.PENDING, WorkItemStatus.RUNNING):
                return False
        return True

    def _apply_orders(self, view: _BrokerView, report: ReconciliationReport) -> None:
        seen: set[str] = set()

        for order in view.orders:
            local = None
            if order.client_order_id:
                local = self._ledger.get_order(order.client_order_id)
            if local is None:
                local = self._ledger.get_order_by_broker_id(order.broker_order_id)

            if local is None:
                record = self._insert_missing(order)
                seen.add(record.client_order_id)
                report.mutations += 1
                report.findings.append(
                    ReconciliationFinding(
                        category=FindingCategory.MISSING_LOCAL,
                        kind="order",
                        symbol=order.symbol,
                        resolution=Resolution.AUTO_HEALED,
                        local_ref=record.client_order_id,
                        broker_ref=order.broker_order_id,
                        detail=f"inserted with status {record.status.value}",
                    )
                )
                continue

            seen.add(local.client_order_id)
            report.findings.append(self._sync_order(local, order, report))

        for record in view.local_orders:
            if record.client_order_id in seen:
                continue
            if record.client_order_id not in view.lookups:
                continue
            found = view.lookups[record.client_order_id]
            if found is not None:
                report.findings.append(self._sync_order(record, found, report))
                continue
            finding = self._resolve_local_only(record, report)
            if finding is not None:
                report.findings.append(finding)

    def _insert_missing(self, order: BrokerOrder) -> OrderExecutionRecord:
        """Insert a brokerage order the ledger never saw."""
        record = OrderExecutionRecord(
            client_order_id=order.client_order_id or f"broker-{order.broker_order_id}",
            broker_order_id=order.broker_order_id,
            symbol=order.symbol,
            side=order.side,
            status=status_from_broker(order.status),
            order_type=order.order_type,
            qty=order.qty,
            notional=order.notional,
            limit_price=order.limit_price,
            time_in_force=order.time_in_force,
            filled_qty=order.filled_qty,
            filled_avg_price=order.filled_avg_price,
            source=OrderSource.RECONCILIATION,
            created_at=order.created_at or "",
        )
        self._ledger.insert_order(record, "reconciliation_missing_local")
        if order.filled_qty > 0:
            self._ledger.record_fill(
                FillRecord(
                    client_order_id=record.client_order_id,
                    broker_order_id=order.broker_order_id,
                    symbol=order.symbol,
                    side=order.side,
                    qty=order.filled_qty,
                    price=order.filled_avg_price,
                    timestamp=to_iso(self._clock()),
                )
            )
        logger.warning(
            "reconciliation_missing_local",
            client_order_id=record.client_order_id,
            broker_order_id=order.broker_order_id,
            symbol=order.symbol,
            status=record.status.value,
        )
        return record

    def _sync_order(
        self,
        local: OrderExecutionRecord,
        order: BrokerOrder,
        report: ReconciliationReport,
    ) -> ReconciliationFinding:
        """Overwrite *local* from *order* when they differ."""
        before = local.status
        updated = self._ledger.mirror_broker_order(
            local, order, "reconciliation", clear_review=True
        )
        if updated is None:
            return ReconciliationFinding(
                category=FindingCategory.SYNCED,
                kind="order",
                symbol=local.symbol,
                resolution=Resolution.NONE,
                local_ref=local.client_order_id,
                broker_ref=order.broker_order_id,
            )

        report.mutations += 1
        logger.warning(
            "reconciliation_divergence",
            client_order_id=local.client_order_id,
            broker_order_id=order.broker_order_id,
            local_status=before.value,
            broker_status=order.status,
            local_filled=local.filled_qty,
            broker_filled=order.filled_qty,
        )
        return ReconciliationFinding(
            category=FindingCategory.SYNCED,
            kind="order",
            symbol=local.symbol,
            resolution=Resolution.AUTO_HEALED,
            local_ref=local.client_order_id,
            broker_ref=order.broker_order_id,
            detail=f"{before.value} -> {updated.status.value}",
        )

    def _resolve_local_only(
        self, record: OrderExecutionRecord, report: ReconciliationReport
    ) -> ReconciliationFinding | None:
        """Handle a judgeable local order the brokerage does not know."""
        if record.broker_order_id is None:
            self._ledger.transition(
                record.client_order_id,
                record.version,
                OrderStatus.CANCELED,
                "reconciliation_unreal",
                last_error="never reached the brokerage",
            )
            report.mutations += 1
            logger.warning(
                "reconciliation_unreal_order",
                client_order_id=record.client_order_id,
                previous_status=record.status.value,
            )
            return ReconciliationFinding(
                category=FindingCategory.UNREAL,
                kind="order",
                symbol=record.symbol,
                resolution=Resolution.AUTO_HEALED,
                local_ref=record.client_order_id,
                detail=f"{record.status.value} -> CANCELED",
            )

        if record.needs_review:
            report.pending_review += 1
            return None

        self._ledger.transition(
            record.client_order_id,
            record.version,
            record.status,
            "reconciliation_orphaned",
            needs_review=True,
        )
        report.mutations += 1
        logger.error(
            "reconciliation_orphaned_order",
            client_order_id=record.client_order_id,
            broker_order_id=record.broker_order_id,
            status=record.status.value,
        )
        return ReconciliationFinding(
            category=FindingCategory.ORPHANED_LOCAL,
            kind="order",
            symbol=record.symbol,
            resolution=Resolution.NEEDS_OPERATOR,
            local_ref=record.client_order_id,
            broker_ref=record.broker_order_id,
            detail="confirmed by brokerage earlier, now absent",
        )

    def _apply_positions(self, view: _BrokerView, report: ReconciliationReport) -> None:
        local = {p.symbol: p for p in self._ledger.get_positions()}
        remote = {p.symbol: p for p in view.positions}

        for symbol, position in remote.items():
            mirror = PositionRecord(
                symbol=symbol,
                qty=position.qty,
                side=position.side,
                avg_entry_price=position.avg_entry_price,
                current_price=position.current_price,
                market_value=position.market_value,
                unrealized_pl=position.unrealized_pl,
            )
            existing = local.get(symbol)
            if existing is None:
                self._ledger.upsert_position(mirror)
                report.mutations += 1
                category, resolution = FindingCategory.MISSING_LOCAL, Resolution.AUTO_HEALED
                logger.warning("reconciliation_position_missing_local", symbol=symbol, qty=position.qty)
            elif _position_differs(existing, mirror):
                self._ledger.upsert_position(mirror)
                report.mutations += 1
                category, resolution = FindingCategory.SYNCED, Resolution.AUTO_HEALED
            else:
                category, resolution = FindingCategory.SYNCED, Resolution.NONE
            report.findings.append(
                ReconciliationFinding(
                    category=category,
                    kind="position",
                    symbol=symbol,
                    resolution=resolution,
                    broker_ref=symbol,
                    local_ref=symbol if existing else None,
                )
            )

        for symbol in local.keys() - remote.keys():
            self._ledger.delete_position(symbol)
            report.mutations += 1
            logger.warning("reconciliation_position_orphaned", symbol=symbol, qty=local[symbol].qty)
            report.findings.append(
                ReconciliationFinding(
                    category=FindingCategory.ORPHANED_LOCAL,
                    kind="position",
                    symbol=symbol,
                    resolution=Resolution.AUTO_HEALED,
                    local_ref=symbol,
                    detail="removed from mirror",
                )
            )

    def _apply_account(self, view: _BrokerView, report: ReconciliationReport) -> None:
        account = view.account
        current = self._ledger.get_account_snapshot()
        fresh = AccountSnapshot(
            equity=account.equity,
            cash=account.cash,
            buying_power=account.buying_power,
            last_equity=account.last_equity,
        )
        if current is not None and not any(
            _differs(getattr(current, name), getattr(fresh, name))
            for name in ("equity", "cash", "buying_power", "last_equity")
        ):
            return
        self._ledger.save_account_snapshot(fresh)
        report.mutations += 1

    # ------------------------------------------------------------------
    # Partial runs
    # ------------------------------------------------------------------

    async def sync_orders(self) -> ReconciliationReport:
        """Refresh local orders that the brokerage lists; insert and flag nothing."""
        report = ReconciliationReport(
            run_id=uuid.uuid4().hex,
            trigger="order_sync",
            started_at=to_iso(self._clock()),
        )
        orders = await self._call(
            self._broker.get_orders(status="all", limit=self._order_limit), "get_orders"
        )
        with self._ledger.transaction():
            for order in orders:
                local = None
                if order.client_order_id:
                    local = self._ledger.get_order(order.client_order_id)
                if local is None:
                    local = self._ledger.get_order_by_broker_id(order.broker_order_id)
                if local is None or local.is_terminal:
                    continue
                report.findings.append(self._sync_order(local, order, report))
        report.completed_at = to_iso(self._clock())
        logger.info("order_sync_completed", mutations=report.mutations, n_orders=len(orders))
        return report

    async def identify_unreal_orders(self) -> list[UnrealOrder]:
        """Scan the brokerage listing for orders that are not, and will not be, real.

        Criteria: rejected; canceled or expired with no fill; zero quantity
        and zero notional; still open after 24 hours with no fill.
        """
        orders = await self._call(
            self._broker.get_orders(status="all", limit=self._order_limit), "get_orders"
        )
        now = self._clock()
        unreal: list[UnrealOrder] = []
        for order in orders:
            reason = None
            if order.status == "rejected":
                reason = "rejected"
            elif order.status in ("canceled", "expired") and order.filled_qty == 0:
                reason = f"{order.status}_without_fill"
            elif not order.qty and not order.notional:
                reason = "zero_quantity"
            elif (
                order.is_open
                and order.filled_qty == 0
                and order.created_at
                and now - from_iso(order.created_at) > UNREAL_STALE_AFTER
            ):
                reason = "stale_open_without_fill"
            if reason is None:
                continue
            unreal.append(
                UnrealOrder(
                    broker_order_id=order.broker_order_id,
                    client_order_id=order.client_order_id,
                    symbol=order.symbol,
                    status=order.status,
                    reason=reason,
                    is_open=order.is_open,
                    created_at=order.created_at,
                )
            )
        logger.info("unreal_orders_identified", n_unreal=len(unreal), n_scanned=len(orders))
        return unreal

    async def cleanup_unreal_orders(self) -> dict:
        """Cancel the unreal orders that are still open at the brokerage.

        Returns
        -------
        dict
            ``identified`` count, ``canceled`` broker ids and ``failed``
            ``{broker_order_id: error}`` for cancels that raised.
        """
        unreal = await self.identify_unreal_orders()
        canceled: list[str] = []
        failed: dict[str, str] = {}
        for order in unreal:
            if not order.is_open:
                continue
            try:
                if await self._call(
                    self._broker.cancel_order(order.broker_order_id), "cancel_order"
                ):
                    canceled.append(order.broker_order_id)
            except Exception as exc:
                failed[order.broker_order_id] = str(exc)
                logger.warning(
                    "unreal_order_cancel_failed",
                    broker_order_id=order.broker_order_id,
                    error=str(exc),
                )
        logger.info(
            "unreal_orders_cleaned",
            identified=len(unreal),
            canceled=len(canceled),
            failed=len(failed),
        )
        return {"identified": len(unreal), "canceled": canceled, "failed": failed}


def _differs(a: float | None, b: float | None) -> bool:
    if a is None or b is None:
        return a is not b
    return abs(a - b) > _VALUE_TOLERANCE


def _position_differs(a: PositionRecord, b: PositionRecord) -> bool:
    if a.side != b.side:
        return True
    return any(
        _differs(getattr(a, name), getattr(b, name))
        for name in ("qty", "avg_entry_price", "current_price", "market_value", "unrealized_pl")
    )
