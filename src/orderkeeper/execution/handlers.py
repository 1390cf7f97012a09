"""Work item handlers: one async function per WorkItemType.

Every handler takes the claimed :class:`WorkItem`, returns a small JSON
result dict and raises typed errors on failure; the worker turns those
into retries or dead letters. Handlers are idempotent: re-running one for
the same item after a crash or retry does not repeat its external effect.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from orderkeeper.errors import InvalidWorkItemError
from orderkeeper.execution.broker import call_with_timeout
from orderkeeper.execution.types import AccountSnapshot, OrderIntent, OrderStatus
from orderkeeper.risk.modes import SubmissionSource
from orderkeeper.work.types import WorkItem, WorkItemType
from orderkeeper.work.worker import HandlerRegistry

if TYPE_CHECKING:
    from orderkeeper.execution.broker import Brokerage
    from orderkeeper.execution.ledger import OrderLedger
    from orderkeeper.execution.order_executor import OrderExecutor
    from orderkeeper.execution.reconciler import Reconciler
    from orderkeeper.execution.risk_gate import RiskGate
    from orderkeeper.risk.limits import RiskLimitsStore

logger = structlog.get_logger(__name__)

QUALIFY_BATCH_SIZE = 50


class WorkItemHandlers:
    """Binds the execution components to the work item handler signatures.

    Parameters
    ----------
    broker : Brokerage
        Brokerage adapter.
    ledger : OrderLedger
        Local ledger.
    executor : OrderExecutor
        Idempotent order submission.
    risk_gate : RiskGate
        Consulted before every ORDER_SUBMIT.
    reconciler : Reconciler
        Full and partial reconciliation.
    limits : RiskLimitsStore
        Kill switch owner.
    broker_timeout : float
        Timeout for brokerage calls made directly by handlers.
    """

    def __init__(
        self,
        broker: Brokerage,
        ledger: OrderLedger,
        executor: OrderExecutor,
        risk_gate: RiskGate,
        reconciler: Reconciler,
        limits: RiskLimitsStore,
        broker_timeout: float = 10.0,
    ) -> None:
        self._broker = broker
        self._ledger = ledger
        self._executor = executor
        self._risk_gate = risk_gate
        self._reconciler = reconciler
        self._limits = limits
        self._broker_timeout = broker_timeout

    def registry(self) -> HandlerRegistry:
        """Return a registry with a handler for every work item type."""
        registry = HandlerRegistry()
        registry.register(WorkItemType.ORDER_SUBMIT, self.order_submit)
        registry.register(WorkItemType.ORDER_CANCEL, self.order_cancel)
        registry.register(WorkItemType.ORDER_SYNC, self.order_sync)
        registry.register(WorkItemType.POSITION_CLOSE, self.position_close)
        registry.register(WorkItemType.KILL_SWITCH, self.kill_switch)
        registry.register(WorkItemType.RECONCILE, self.reconcile)
        registry.register(WorkItemType.ASSET_UNIVERSE_SYNC, self.asset_universe_sync)
        return registry

    async def _call(self, awaitable, operation: str):
        return await call_with_timeout(awaitable, operation, self._broker_timeout)

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def order_submit(self, item: WorkItem) -> dict:
        """Tradability check -> risk gate -> executor.

        An order already past submission is reported as is, without
        consulting the gate again.
        """
        payload = item.payload
        try:
            intent = OrderIntent.from_payload(payload)
            source = SubmissionSource(payload.get("source", SubmissionSource.AUTOMATED.value))
        except (TypeError, ValueError) as exc:
            raise InvalidWorkItemError(f"Malformed ORDER_SUBMIT payload: {exc}") from exc
        problems = intent.validate()
        if problems:
            raise InvalidWorkItemError("; ".join(problems))

        existing = self._ledger.get_order(intent.client_order_id)
        if existing is not None and existing.status not in (
            OrderStatus.FAILED,
            OrderStatus.SUBMITTING,
        ):
            return _order_result(existing)

        if self._ledger.is_tradable(intent.symbol) is False:
            raise InvalidWorkItemError(f"Symbol {intent.symbol} is not tradable")

        account = await self._call(self._broker.get_account(), "get_account")
        self._ledger.save_account_snapshot(
            AccountSnapshot(
                equity=account.equity,
                cash=account.cash,
                buying_power=account.buying_power,
                last_equity=account.last_equity,
            )
        )

        self._risk_gate.check(intent, source).raise_if_refused()
        record = await self._executor.submit(intent, work_item_id=item.id)
        return _order_result(record)

    async def order_cancel(self, item: WorkItem) -> dict:
        coid = item.payload.get("client_order_id")
        if not coid:
            raise InvalidWorkItemError("ORDER_CANCEL requires client_order_id")
        record = await self._executor.cancel(coid)
        return _order_result(record)

    async def order_sync(self, item: WorkItem) -> dict:
        """Sync one order if ``client_order_id`` is given, else all listed orders."""
        coid = item.payload.get("client_order_id")
        if coid:
            record = await self._executor.sync(coid)
            if record is None:
                raise InvalidWorkItemError(f"Unknown client order id: {coid}")
            return _order_result(record)
        report = await self._reconciler.sync_orders()
        return {"mutations": report.mutations, "n_orders": len(report.findings)}

    # ------------------------------------------------------------------
    # Positions and kill switch
    # ------------------------------------------------------------------

    async def position_close(self, item: WorkItem) -> dict:
        symbol = item.payload.get("symbol")
        if not symbol:
            raise InvalidWorkItemError("POSITION_CLOSE requires symbol")
        order = await self._call(self._broker.close_position(symbol), "close_position")
        if order is None:
            logger.info("position_close_nothing_to_close", symbol=symbol)
            return {"symbol": symbol, "closed": False}
        return {"symbol": symbol, "closed": True, "broker_order_id": order.broker_order_id}

    async def kill_switch(self, item: WorkItem) -> dict:
        """Activate the kill switch, cancel all orders, optionally flatten.

        The switch is set first so no submission slips in while orders are
        being canceled.
        """
        payload = item.payload
        reason = payload.get("reason") or "kill switch work item"
        self._limits.activate_kill_switch(
            reason, activated_by=payload.get("activated_by", "operator")
        )
        n_canceled = await self._call(self._broker.cancel_all_orders(), "cancel_all_orders")

        closed: list[str] = []
        if payload.get("close_positions"):
            positions = await self._call(self._broker.get_positions(), "get_positions")
            for position in positions:
                order = await self._call(
                    self._broker.close_position(position.symbol), "close_position"
                )
                if order is not None:
                    closed.append(position.symbol)

        logger.critical(
            "kill_switch_executed",
            reason=reason,
            n_canceled=n_canceled,
            closed=closed,
        )
        return {"canceled": n_canceled, "closed_positions": closed}

    # ------------------------------------------------------------------
    # Reconciliation and asset universe
    # ------------------------------------------------------------------

    async def reconcile(self, item: WorkItem) -> dict:
        report = await self._reconciler.reconcile(
            trigger=item.payload.get("trigger", "periodic")
        )
        return {
            "run_id": report.run_id,
            "mutations": report.mutations,
            "counts": report.counts,
        }

    async def asset_universe_sync(self, item: WorkItem) -> dict:
        """Qualify the payload's symbols and store which ones are tradable."""
        symbols = item.payload.get("symbols") or []
        if not isinstance(symbols, list) or not symbols:
            raise InvalidWorkItemError("ASSET_UNIVERSE_SYNC requires a non-empty symbols list")

        results: dict[str, bool] = {}
        for start in range(0, len(symbols), QUALIFY_BATCH_SIZE):
            batch = [str(s).upper() for s in symbols[start : start + QUALIFY_BATCH_SIZE]]
            results.update(await self._call(self._broker.qualify_symbols(batch), "qualify_symbols"))

        self._ledger.save_tradable_assets(results)
        n_tradable = sum(1 for ok in results.values() if ok)
        logger.info(
            "asset_universe_synced",
            n_checked=len(results),
            n_tradable=n_tradable,
        )
        return {"checked": len(results), "tradable": n_tradable}


def _order_result(record) -> dict:
    return {
        "client_order_id": record.client_order_id,
        "broker_order_id": record.broker_order_id,
        "status": record.status.value,
    }
