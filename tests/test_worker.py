"""Tests for WorkQueueWorker -- handler dispatch, retry and dead-letter policy.

Uses a real WorkItemStore on tmp_path and a manually advanced clock; the
poll job is driven with ``run_once()`` instead of the scheduler except in
the lifecycle tests.
"""

from __future__ import annotations

import asyncio

import pytest

from orderkeeper.clock import from_iso
from orderkeeper.errors import (
    InvalidWorkItemError,
    OrderRejectedError,
    RiskRefusedError,
    TransientError,
)
from orderkeeper.work.worker import (
    POLL_JOB_ID,
    HandlerRegistry,
    WorkQueueWorker,
    compute_backoff,
)
from orderkeeper.work.types import WorkItemStatus, WorkItemType


def _registry(handler) -> HandlerRegistry:
    """Register *handler* for every work item type."""
    registry = HandlerRegistry()
    for t in WorkItemType:
        registry.register(t, handler)
    return registry


def _make_worker(store, clock, handler, **kwargs) -> WorkQueueWorker:
    defaults = dict(worker_id="w-test", backoff_base=1.0, backoff_cap=300.0, clock=clock)
    defaults.update(kwargs)
    return WorkQueueWorker(store, _registry(handler), **defaults)


class TestHandlerRegistry:
    def test_missing_types_fail_validation(self) -> None:
        registry = HandlerRegistry()

        async def handler(item):
            return None

        registry.register(WorkItemType.RECONCILE, handler)
        assert WorkItemType.ORDER_SUBMIT in registry.missing()
        with pytest.raises(ValueError, match="ORDER_SUBMIT"):
            registry.validate()

    def test_complete_registry_validates(self) -> None:
        async def handler(item):
            return None

        registry = _registry(handler)
        registry.validate()
        assert WorkItemType.KILL_SWITCH in registry

    def test_get_unregistered_raises_invalid(self) -> None:
        with pytest.raises(InvalidWorkItemError):
            HandlerRegistry().get(WorkItemType.RECONCILE)


class TestComputeBackoff:
    @pytest.mark.parametrize(
        ("attempts", "expected"),
        [(0, 1.0), (1, 2.0), (3, 8.0), (8, 256.0), (9, 300.0), (20, 300.0)],
    )
    def test_exponential_with_cap(self, attempts, expected) -> None:
        assert compute_backoff(attempts, 1.0, 300.0) == expected


class TestProcess:
    @pytest.mark.asyncio
    async def test_success_stores_result(self, work_store, clock) -> None:
        async def handler(item):
            return {"ok": True, "type": item.type.value}

        worker = _make_worker(work_store, clock, handler)
        item = work_store.enqueue(WorkItemType.RECONCILE)

        assert await worker.run_once() == 1
        stored = work_store.get(item.id)
        assert stored.status is WorkItemStatus.SUCCEEDED
        assert stored.result == {"ok": True, "type": "RECONCILE"}
        runs = work_store.get_runs(item.id)
        assert [r.status for r in runs] == [WorkItemStatus.SUCCEEDED]

    @pytest.mark.asyncio
    async def test_nothing_due(self, work_store, clock) -> None:
        async def handler(item):
            return None

        worker = _make_worker(work_store, clock, handler)
        assert await worker.run_once() == 0

    @pytest.mark.asyncio
    async def test_transient_failure_backs_off_then_dead_letters(self, work_store, clock) -> None:
        """Delays grow monotonically; DEAD_LETTER exactly at max_attempts."""
        calls = []

        async def handler(item):
            calls.append(item.attempts)
            raise TransientError("503 Service Unavailable")

        worker = _make_worker(work_store, clock, handler, backoff_cap=5.0)
        item = work_store.enqueue(WorkItemType.ORDER_SYNC, max_attempts=5)

        delays = []
        for expected_attempts in range(1, 5):
            await worker.run_once()
            stored = work_store.get(item.id)
            assert stored.status is WorkItemStatus.PENDING
            assert stored.attempts == expected_attempts
            assert stored.last_error_kind == "transient"
            delay = (from_iso(stored.next_run_at) - clock()).total_seconds()
            delays.append(delay)
            # not due before the backoff elapses
            assert await worker.run_once() == 0
            clock.advance(delay)

        assert delays == [2.0, 4.0, 5.0, 5.0]
        assert delays == sorted(delays)

        await worker.run_once()
        stored = work_store.get(item.id)
        assert stored.status is WorkItemStatus.DEAD_LETTER
        assert stored.attempts == 5
        assert calls == [0, 1, 2, 3, 4]
        assert len(work_store.get_runs(item.id)) == 5

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("error", "kind"),
        [
            (InvalidWorkItemError("missing symbol"), "invalid"),
            (OrderRejectedError("co-1", "insufficient buying power"), "rejection"),
            (RiskRefusedError(["kill_switch_active"]), "policy"),
        ],
    )
    async def test_non_retryable_dead_letters_immediately(
        self, work_store, clock, error, kind
    ) -> None:
        async def handler(item):
            raise error

        worker = _make_worker(work_store, clock, handler)
        item = work_store.enqueue(WorkItemType.ORDER_SUBMIT, max_attempts=5)
        await worker.run_once()

        stored = work_store.get(item.id)
        assert stored.status is WorkItemStatus.DEAD_LETTER
        assert stored.attempts == 1
        assert stored.last_error_kind == kind

    @pytest.mark.asyncio
    async def test_unknown_error_is_retried(self, work_store, clock) -> None:
        async def handler(item):
            raise RuntimeError("something odd")

        worker = _make_worker(work_store, clock, handler)
        item = work_store.enqueue(WorkItemType.ORDER_SYNC)
        await worker.run_once()

        stored = work_store.get(item.id)
        assert stored.status is WorkItemStatus.PENDING
        assert stored.last_error_kind == "unknown"
        assert stored.last_error == "something odd"

    @pytest.mark.asyncio
    async def test_handler_timeout_is_ambiguous(self, work_store, clock) -> None:
        async def handler(item):
            await asyncio.sleep(5)

        worker = _make_worker(work_store, clock, handler, handler_timeout=0.01)
        item = work_store.enqueue(WorkItemType.ORDER_SUBMIT)
        await worker.run_once()

        stored = work_store.get(item.id)
        assert stored.status is WorkItemStatus.PENDING
        assert stored.attempts == 1
        assert stored.last_error_kind == "ambiguous"

    @pytest.mark.asyncio
    async def test_lost_lease_outcome_is_not_recorded(self, work_store, clock) -> None:
        """A worker whose lease was recovered cannot overwrite the new holder."""

        async def handler(item):
            clock.advance(400)
            work_store.recover_stale(300)
            work_store.claim_due("other-worker")
            return {"late": True}

        worker = _make_worker(work_store, clock, handler)
        item = work_store.enqueue(WorkItemType.RECONCILE)
        await worker.run_once()

        stored = work_store.get(item.id)
        assert stored.status is WorkItemStatus.RUNNING
        assert stored.locked_by == "other-worker"
        assert stored.result is None


class TestLifecycle:
    def test_start_refuses_incomplete_registry(self, work_store, clock) -> None:
        worker = WorkQueueWorker(work_store, HandlerRegistry(), clock=clock)
        with pytest.raises(ValueError, match="Missing work item handlers"):
            worker.start()
        assert not worker.running

    @pytest.mark.asyncio
    async def test_start_and_stop(self, work_store, clock) -> None:
        async def handler(item):
            return None

        worker = _make_worker(work_store, clock, handler)
        worker.start(poll_interval=60)
        try:
            assert worker.running
        finally:
            worker.stop()
        assert not worker.running

    @pytest.mark.asyncio
    async def test_start_recovers_stale_leases(self, work_store, clock) -> None:
        async def handler(item):
            return None

        item = work_store.enqueue(WorkItemType.ORDER_SUBMIT)
        work_store.claim_due("crashed")
        clock.advance(600)

        worker = _make_worker(work_store, clock, handler)
        worker.start(poll_interval=60)
        try:
            assert work_store.get(item.id).status is WorkItemStatus.PENDING
        finally:
            worker.stop()

    def test_poll_job_id_is_stable(self) -> None:
        assert POLL_JOB_ID == "work_queue_poll"
