"""WorkQueueWorker: polls the work item store and executes due items.

Each poll (an APScheduler interval job):
    1. Resets RUNNING items whose lease outlived ``stale_lease_seconds``.
    2. Claims up to ``batch_size`` due PENDING items by compare-and-set.
    3. Runs the registered handler for each item under a timeout.
    4. Applies the outcome:
        - success              -> SUCCEEDED, result stored
        - retryable failure    -> PENDING with exponential backoff, or
                                  DEAD_LETTER once attempts reach max_attempts
        - non-retryable        -> DEAD_LETTER immediately

A handler timeout is an ambiguous (retryable) failure. Handlers must be
idempotent: a retried or lease-recovered item runs its handler again.
"""

from __future__ import annotations

import asyncio
import socket
import sqlite3
import uuid
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import TYPE_CHECKING

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from orderkeeper.clock import Clock, utc_now
from orderkeeper.errors import (
    AmbiguousOutcomeError,
    InvalidWorkItemError,
    classify_error,
)
from orderkeeper.work.types import WorkItem, WorkItemStatus, WorkItemType

if TYPE_CHECKING:
    from orderkeeper.work.store import WorkItemStore

logger = structlog.get_logger(__name__)

Handler = Callable[[WorkItem], Awaitable["dict | None"]]

POLL_JOB_ID = "work_queue_poll"


class HandlerRegistry:
    """Maps every :class:`WorkItemType` to its async handler.

    The worker refuses to start while any type is unregistered, so adding a
    type without a handler fails at startup rather than at dispatch time.
    """

    def __init__(self) -> None:
        self._handlers: dict[WorkItemType, Handler] = {}

    def register(self, type: WorkItemType, handler: Handler) -> None:
        self._handlers[WorkItemType(type)] = handler

    def get(self, type: WorkItemType) -> Handler:
        handler = self._handlers.get(WorkItemType(type))
        if handler is None:
            raise InvalidWorkItemError(f"No handler registered for {type}")
        return handler

    def missing(self) -> list[WorkItemType]:
        """Return the types that have no handler, in enum order."""
        return [t for t in WorkItemType if t not in self._handlers]

    def validate(self) -> None:
        """Raise ``ValueError`` unless every work item type is registered."""
        missing = self.missing()
        if missing:
            names = ", ".join(t.value for t in missing)
            raise ValueError(f"Missing work item handlers: {names}")

    def __contains__(self, type: object) -> bool:
        return type in self._handlers


def compute_backoff(attempts: int, base_seconds: float, cap_seconds: float) -> float:
    """Retry delay after *attempts* failures: ``min(base * 2**attempts, cap)``."""
    return min(base_seconds * (2 ** attempts), cap_seconds)


def default_worker_id() -> str:
    """Hostname plus a short random suffix, unique per worker instance."""
    return f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"


class WorkQueueWorker:
    """Claims and executes due work items on an APScheduler interval job.

    Parameters
    ----------
    store : WorkItemStore
        Durable queue table.
    registry : HandlerRegistry
        Handlers for every work item type.
    worker_id : str | None
        Lease holder name written to ``locked_by``. Generated if None.
    batch_size : int
        Maximum items claimed per poll.
    handler_timeout : float
        Seconds a single handler invocation may take.
    stale_lease_seconds : float
        RUNNING items older than this are recovered to PENDING.
    backoff_base, backoff_cap : float
        Parameters of :func:`compute_backoff`.
    scheduler : AsyncIOScheduler | None
        Shared scheduler to add the poll job to. If None the worker creates
        and owns one.
    clock : Callable[[], datetime]
        Injectable UTC clock.
    """

    def __init__(
        self,
        store: WorkItemStore,
        registry: HandlerRegistry,
        worker_id: str | None = None,
        batch_size: int = 5,
        handler_timeout: float = 60.0,
        stale_lease_seconds: float = 300.0,
        backoff_base: float = 1.0,
        backoff_cap: float = 300.0,
        scheduler: AsyncIOScheduler | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._registry = registry
        self.worker_id = worker_id or default_worker_id()
        self._batch_size = batch_size
        self._handler_timeout = handler_timeout
        self._stale_lease_seconds = stale_lease_seconds
        self._backoff_base = backoff_base
        self._backoff_cap = backoff_cap
        self._clock = clock
        self._scheduler = scheduler
        self._owns_scheduler = scheduler is None
        self._poll_lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.get_job(POLL_JOB_ID) is not None

    def start(self, poll_interval: float = 1.0) -> None:
        """Validate handlers, recover stale leases and schedule the poll job.

        Must be called with an asyncio event loop running.

        Raises
        ------
        ValueError
            If any work item type has no registered handler.
        """
        self._registry.validate()
        recovered = self._store.recover_stale(self._stale_lease_seconds)

        if self._scheduler is None:
            self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self.run_once,
            trigger=IntervalTrigger(seconds=poll_interval),
            id=POLL_JOB_ID,
            name="Work queue poll",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        if not self._scheduler.running:
            self._scheduler.start()

        logger.info(
            "worker_started",
            worker_id=self.worker_id,
            poll_interval=poll_interval,
            batch_size=self._batch_size,
            recovered=len(recovered),
        )

    def stop(self) -> None:
        """Remove the poll job; shut the scheduler down if this worker owns it."""
        if self._scheduler is None:
            return
        if self._scheduler.get_job(POLL_JOB_ID) is not None:
            self._scheduler.remove_job(POLL_JOB_ID)
        if self._owns_scheduler:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
        logger.info("worker_stopped", worker_id=self.worker_id)

    async def run_once(self) -> int:
        """Run a single poll. Returns the number of items processed.

        Storage errors during a poll are logged and end the poll early; the
        next poll tries again.
        """
        async with self._poll_lock:
            try:
                self._store.recover_stale(self._stale_lease_seconds)
                items = self._store.claim_due(self.worker_id, self._batch_size)
            except sqlite3.Error as exc:
                logger.error("work_queue_poll_failed", error=str(exc))
                return 0

            for item in items:
                try:
                    await self.process(item)
                except sqlite3.Error as exc:
                    logger.error(
                        "work_item_outcome_not_recorded",
                        work_item_id=item.id,
                        error=str(exc),
                    )
            return len(items)

    async def process(self, item: WorkItem) -> None:
        """Execute one claimed item and record its outcome."""
        structlog.contextvars.bind_contextvars(
            work_item_id=item.id, work_item_type=item.type.value
        )
        run_id = self._store.start_run(item, self.worker_id)
        logger.info("work_item_started", attempt=item.attempts + 1)
        try:
            handler = self._registry.get(item.type)
            result = await asyncio.wait_for(handler(item), timeout=self._handler_timeout)
        except asyncio.TimeoutError:
            self._record_failure(
                item,
                run_id,
                AmbiguousOutcomeError(f"{item.type.value} handler", self._handler_timeout),
            )
        except Exception as exc:
            self._record_failure(item, run_id, exc)
        else:
            self._store.finish_run(run_id, WorkItemStatus.SUCCEEDED)
            if self._store.mark_succeeded(item.id, self.worker_id, result):
                logger.info("work_item_succeeded")
            else:
                logger.warning("work_item_lease_lost", outcome="succeeded")
        finally:
            structlog.contextvars.unbind_contextvars("work_item_id", "work_item_type")

    def _record_failure(self, item: WorkItem, run_id: int, error: Exception) -> None:
        """Apply retry or dead-letter policy for a failed attempt."""
        kind = classify_error(error)
        attempts = item.attempts + 1
        message = str(error) or type(error).__name__
        self._store.finish_run(run_id, WorkItemStatus.FAILED, message)

        if not kind.retryable or attempts >= item.max_attempts:
            applied = self._store.mark_dead_letter(
                item.id, self.worker_id, attempts, message, kind.value
            )
            if applied:
                logger.error(
                    "work_item_dead_lettered",
                    error=message,
                    error_kind=kind.value,
                    attempts=attempts,
                    reason="non_retryable" if not kind.retryable else "attempts_exhausted",
                )
            else:
                logger.warning("work_item_lease_lost", outcome="dead_letter")
            return

        delay = compute_backoff(attempts, self._backoff_base, self._backoff_cap)
        next_run_at = self._clock() + timedelta(seconds=delay)
        if self._store.reschedule(
            item.id, self.worker_id, attempts, next_run_at, message, kind.value
        ):
            logger.warning(
                "work_item_retry_scheduled",
                error=message,
                error_kind=kind.value,
                attempts=attempts,
                max_attempts=item.max_attempts,
                backoff_seconds=delay,
            )
        else:
            logger.warning("work_item_lease_lost", outcome="retry")
