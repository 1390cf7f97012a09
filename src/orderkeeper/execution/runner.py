"""ExecutionEngine: wires the durable queue, ledger, risk gate and brokerage.

Lifecycle:
    1. Refuse live ports unless ``ORDERKEEPER_LIVE_CONFIRMED=true``.
    2. Connect to the brokerage.
    3. Validate handlers and recover stale leases (worker start).
    4. Schedule two APScheduler jobs on one AsyncIOScheduler: the work
       queue poll, and a periodic trigger that enqueues one RECONCILE item
       per interval bucket.

Everything that touches the brokerage goes through the work queue; the
engine's public methods only enqueue, inspect or administer, except for
``reconcile_now`` and the unreal-order helpers which operators call
directly.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from pathlib import Path
from typing import TYPE_CHECKING

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from orderkeeper.clock import Clock, utc_now
from orderkeeper.config.settings import EngineConfig
from orderkeeper.errors import InvalidWorkItemError
from orderkeeper.execution.broker import BrokerGateway
from orderkeeper.execution.handlers import WorkItemHandlers
from orderkeeper.execution.ledger import OrderLedger
from orderkeeper.execution.order_executor import OrderExecutor
from orderkeeper.execution.reconciler import Reconciler
from orderkeeper.execution.risk_gate import RiskGate
from orderkeeper.execution.types import OrderIntent
from orderkeeper.risk.limits import RiskLimitsStore
from orderkeeper.risk.modes import SubmissionSource
from orderkeeper.work.store import WorkItemStore
from orderkeeper.work.types import (
    WorkItem,
    WorkItemFilter,
    WorkItemStatus,
    WorkItemType,
    reconcile_bucket_key,
)
from orderkeeper.work.worker import WorkQueueWorker

if TYPE_CHECKING:
    from orderkeeper.execution.broker import Brokerage
    from orderkeeper.execution.reconciler import ReconciliationReport, UnrealOrder
    from orderkeeper.risk.limits import RiskLimits

logger = structlog.get_logger(__name__)

RECONCILE_JOB_ID = "reconcile_trigger"
LIVE_CONFIRM_ENV = "ORDERKEEPER_LIVE_CONFIRMED"


class ExecutionEngine:
    """Owns every component of the execution stack for one process.

    Components are built from ``config``; the brokerage can be injected for
    tests or alternative gateways.

    Parameters
    ----------
    config : EngineConfig | None
        Runtime configuration. ``EngineConfig.from_env()`` if None.
    broker : Brokerage | None
        Brokerage adapter. An ib_async ``BrokerGateway`` built from the
        config's ``broker_*`` settings if None.
    clock : Callable[[], datetime]
        Injectable UTC clock shared by all components.
    worker_id : str | None
        Lease holder name; generated if None.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        broker: Brokerage | None = None,
        clock: Clock = utc_now,
        worker_id: str | None = None,
    ) -> None:
        self.config = config or EngineConfig.from_env()
        self._clock = clock
        self.broker = broker or BrokerGateway(
            host=self.config.broker_host,
            port=self.config.broker_port,
            client_id=self.config.broker_client_id,
        )

        db_path = self.config.db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self.work_store = WorkItemStore(
            db_path, clock=clock, default_max_attempts=self.config.default_max_attempts
        )
        self.ledger = OrderLedger(db_path, clock=clock)
        self.limits = RiskLimitsStore(db_path, clock=clock)

        timeout = self.config.broker_timeout_seconds
        self.executor = OrderExecutor(self.broker, self.ledger, broker_timeout=timeout, clock=clock)
        self.risk_gate = RiskGate(self.limits, self.ledger, self.work_store, clock=clock)
        self.reconciler = Reconciler(
            self.broker,
            self.ledger,
            self.work_store,
            broker_timeout=timeout,
            grace_seconds=self.config.reconcile_grace_seconds,
            order_limit=self.config.reconcile_order_limit,
            risk_gate=self.risk_gate,
            clock=clock,
        )
        self._scheduler = AsyncIOScheduler()
        self.handlers = WorkItemHandlers(
            self.broker,
            self.ledger,
            self.executor,
            self.risk_gate,
            self.reconciler,
            self.limits,
            broker_timeout=timeout,
        )
        self.worker = WorkQueueWorker(
            self.work_store,
            self.handlers.registry(),
            worker_id=worker_id,
            batch_size=self.config.batch_size,
            handler_timeout=self.config.handler_timeout_seconds,
            stale_lease_seconds=self.config.stale_lease_seconds,
            backoff_base=self.config.backoff_base_seconds,
            backoff_cap=self.config.backoff_cap_seconds,
            scheduler=self._scheduler,
            clock=clock,
        )

    @property
    def is_live(self) -> bool:
        return self.config.trading_mode == "live" or (
            self.config.broker_port in BrokerGateway.LIVE_PORTS
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Connect, start the worker and schedule periodic reconciliation.

        Raises
        ------
        ValueError
            If trading live and ORDERKEEPER_LIVE_CONFIRMED is not "true", or
            a work item type has no handler.
        """
        if self.is_live:
            confirmed = os.environ.get(LIVE_CONFIRM_ENV, "").lower()
            if confirmed != "true":
                raise ValueError(
                    f"Live trading requires {LIVE_CONFIRM_ENV}=true env var. "
                    "Set it explicitly to confirm live trading intent."
                )

        await self.broker.connect()

        if not self._scheduler.running:
            self._scheduler.configure(event_loop=asyncio.get_running_loop())
        self._scheduler.add_job(
            self.enqueue_periodic_reconcile,
            trigger=IntervalTrigger(seconds=self.config.reconcile_interval_seconds),
            id=RECONCILE_JOB_ID,
            name="Periodic reconciliation trigger",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.worker.start(poll_interval=self.config.poll_interval_seconds)
        self.enqueue_periodic_reconcile()

        logger.info(
            "engine_started",
            trading_mode=self.config.trading_mode,
            worker_id=self.worker.worker_id,
            reconcile_interval=self.config.reconcile_interval_seconds,
        )

    async def stop(self) -> None:
        """Stop jobs, disconnect the brokerage and close storage."""
        self.worker.stop()
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)

        await self.broker.disconnect()
        self.close()
        logger.info("engine_stopped")

    def close(self) -> None:
        """Close the SQLite connections without touching the brokerage."""
        self.work_store.close()
        self.ledger.close()
        self.limits.close()

    def enqueue_periodic_reconcile(self) -> WorkItem:
        """Enqueue the RECONCILE item for the current interval bucket.

        Repeated calls inside one bucket return the same item.
        """
        key = reconcile_bucket_key(
            self._clock().timestamp(), self.config.reconcile_interval_seconds
        )
        return self.work_store.enqueue(
            WorkItemType.RECONCILE, {"trigger": "periodic"}, idempotency_key=key
        )

    # ------------------------------------------------------------------
    # Work items
    # ------------------------------------------------------------------

    def enqueue(
        self,
        type: WorkItemType | str,
        payload: dict | None = None,
        idempotency_key: str | None = None,
        max_attempts: int | None = None,
    ) -> WorkItem:
        try:
            type = WorkItemType(type)
        except ValueError as exc:
            raise InvalidWorkItemError(f"Unknown work item type: {type}") from exc
        return self.work_store.enqueue(
            type, payload, idempotency_key=idempotency_key, max_attempts=max_attempts
        )

    def submit_order(
        self,
        intent: OrderIntent,
        source: SubmissionSource = SubmissionSource.AUTOMATED,
        idempotency_key: str | None = None,
    ) -> WorkItem:
        """Enqueue an ORDER_SUBMIT for *intent*.

        The client order id doubles as the idempotency key unless one is
        given, so submitting the same intent twice yields one work item. A
        missing client order id is generated.

        Raises
        ------
        InvalidWorkItemError
            If the intent fails validation.
        """
        if not intent.client_order_id:
            intent.client_order_id = f"ok-{uuid.uuid4().hex[:16]}"
        problems = intent.validate()
        if problems:
            raise InvalidWorkItemError("; ".join(problems))

        payload = intent.to_payload()
        payload["source"] = SubmissionSource(source).value
        return self.work_store.enqueue(
            WorkItemType.ORDER_SUBMIT,
            payload,
            idempotency_key=idempotency_key or f"order_submit:{intent.client_order_id}",
        )

    def get_work_items(self, filter: WorkItemFilter | None = None) -> list[WorkItem]:
        f = filter or WorkItemFilter()
        return self.work_store.list_items(
            status=f.status, type=f.type, since=f.since, limit=f.limit
        )

    def get_work_item_count(
        self,
        status: WorkItemStatus | None = None,
        type: WorkItemType | None = None,
    ) -> int:
        return self.work_store.count(status=status, type=type)

    def retry_work_item(self, item_id: str) -> WorkItem | None:
        """Move a DEAD_LETTER item back to PENDING with a fresh attempt budget."""
        return self.work_store.retry_dead_letter(item_id)

    def force_dead_letter(self, item_id: str, reason: str) -> WorkItem | None:
        """Operator override: dead-letter a PENDING item so it never runs."""
        return self.work_store.force_dead_letter(item_id, reason)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def reconcile_now(self) -> ReconciliationReport:
        return await self.reconciler.reconcile(trigger="manual")

    async def identify_unreal_orders(self) -> list[UnrealOrder]:
        return await self.reconciler.identify_unreal_orders()

    async def cleanup_unreal_orders(self) -> dict:
        return await self.reconciler.cleanup_unreal_orders()

    def get_active_executions(self) -> list[dict]:
        return self.executor.get_active_executions()

    # ------------------------------------------------------------------
    # Risk
    # ------------------------------------------------------------------

    def get_risk_limits(self) -> RiskLimits:
        return self.limits.get()

    def update_risk_limits(self, **changes: object) -> RiskLimits:
        return self.limits.update(**changes)

    def activate_kill_switch(
        self,
        reason: str,
        activated_by: str = "operator",
        close_positions: bool = False,
    ) -> WorkItem:
        """Stop new submissions now and queue the cancel/flatten work.

        The flag is set synchronously so the gate refuses submissions even
        before the KILL_SWITCH item runs.
        """
        self.limits.activate_kill_switch(reason, activated_by=activated_by)
        return self.work_store.enqueue(
            WorkItemType.KILL_SWITCH,
            {
                "reason": reason,
                "activated_by": activated_by,
                "close_positions": close_positions,
            },
        )

    def deactivate_kill_switch(self, deactivated_by: str = "operator") -> RiskLimits:
        return self.limits.deactivate_kill_switch(deactivated_by)
