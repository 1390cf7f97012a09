"""Tests for OrderExecutor -- idempotent submission, adoption, cancel and sync.

The brokerage is the in-memory FakeBrokerage from conftest, so each test
can assert exactly how many times ``create_order`` was called.
"""

from __future__ import annotations

import asyncio

import pytest

from orderkeeper.errors import (
    AmbiguousOutcomeError,
    ConcurrentTransitionError,
    InvalidWorkItemError,
    OrderRejectedError,
)
from orderkeeper.execution.ledger import OrderLedger
from orderkeeper.execution.order_executor import SUBMIT_LEASE_MARGIN_SECONDS, OrderExecutor
from orderkeeper.execution.types import (
    OrderExecutionRecord,
    OrderIntent,
    OrderStatus,
)


def _make_intent(**overrides) -> OrderIntent:
    defaults = dict(client_order_id="co-1", symbol="XYZ", side="buy", qty=10.0)
    defaults.update(overrides)
    return OrderIntent(**defaults)


@pytest.fixture()
def executor(broker, ledger, clock):
    return OrderExecutor(broker, ledger, broker_timeout=0.5, clock=clock)


class TestSubmit:
    @pytest.mark.asyncio
    async def test_new_order_is_submitted(self, executor, broker, ledger) -> None:
        record = await executor.submit(_make_intent(), work_item_id="wi-1")

        assert record.status is OrderStatus.SUBMITTED
        assert record.broker_order_id == "b-42"
        assert record.attempts == 1
        assert record.work_item_id == "wi-1"
        assert len(broker.create_calls) == 1
        assert [e.to_status for e in ledger.get_events("co-1")] == [
            OrderStatus.SUBMITTING,
            OrderStatus.SUBMITTED,
        ]
        assert executor.get_active_executions() == []

    @pytest.mark.asyncio
    async def test_duplicate_submit_does_not_reach_broker(self, executor, broker) -> None:
        first = await executor.submit(_make_intent())
        second = await executor.submit(_make_intent())
        assert second.broker_order_id == first.broker_order_id
        assert len(broker.create_calls) == 1

    @pytest.mark.asyncio
    async def test_invalid_intent(self, executor, broker) -> None:
        with pytest.raises(InvalidWorkItemError, match="qty or notional"):
            await executor.submit(_make_intent(qty=None))
        assert broker.create_calls == []

    @pytest.mark.asyncio
    async def test_in_flight_client_order_id_is_refused(self, executor) -> None:
        executor._active["co-1"] = {"client_order_id": "co-1"}
        with pytest.raises(ConcurrentTransitionError):
            await executor.submit(_make_intent())

    @pytest.mark.asyncio
    async def test_transient_failure_then_resubmit(self, executor, broker, ledger) -> None:
        broker.create_error = ConnectionError("socket closed")
        with pytest.raises(ConnectionError):
            await executor.submit(_make_intent())
        record = ledger.get_order("co-1")
        assert record.status is OrderStatus.FAILED
        assert record.outcome_unknown is False

        broker.create_error = None
        record = await executor.submit(_make_intent())
        assert record.status is OrderStatus.SUBMITTED
        assert record.attempts == 2
        assert len(broker.create_calls) == 2

    @pytest.mark.asyncio
    async def test_timeout_after_acceptance_is_adopted(self, executor, broker, ledger) -> None:
        """The brokerage kept the order; the retry adopts it instead of resubmitting."""
        broker.create_delay = 5.0
        with pytest.raises(AmbiguousOutcomeError):
            await executor.submit(_make_intent())
        record = ledger.get_order("co-1")
        assert record.status is OrderStatus.FAILED
        assert record.outcome_unknown is True

        broker.create_delay = 0.0
        record = await executor.submit(_make_intent())
        assert record.status is OrderStatus.SUBMITTED
        assert record.broker_order_id == "b-42"
        assert record.outcome_unknown is False
        assert len(broker.create_calls) == 1

    @pytest.mark.asyncio
    async def test_rejected_response(self, executor, broker, ledger) -> None:
        broker.reject_reason = "insufficient buying power"
        with pytest.raises(OrderRejectedError, match="insufficient buying power"):
            await executor.submit(_make_intent())
        record = ledger.get_order("co-1")
        assert record.status is OrderStatus.REJECTED
        assert record.last_error == "insufficient buying power"

        # terminal: a second submit returns the record without calling out
        again = await executor.submit(_make_intent())
        assert again.status is OrderStatus.REJECTED
        assert len(broker.create_calls) == 1

    @pytest.mark.asyncio
    async def test_rejection_raised_as_exception(self, executor, broker, ledger) -> None:
        broker.create_error = Exception("Order rejected: invalid symbol")
        with pytest.raises(OrderRejectedError):
            await executor.submit(_make_intent())
        assert ledger.get_order("co-1").status is OrderStatus.REJECTED

    @pytest.mark.asyncio
    async def test_abandoned_submitting_record_is_resumed(
        self, executor, broker, ledger, clock
    ) -> None:
        """A SUBMITTING record left by a crash is looked up before resubmission."""
        ledger.insert_order(
            OrderExecutionRecord(
                client_order_id="co-1",
                symbol="XYZ",
                side="buy",
                status=OrderStatus.SUBMITTING,
                qty=10.0,
            ),
            "submit_requested",
        )
        clock.advance(SUBMIT_LEASE_MARGIN_SECONDS + 1)
        record = await executor.submit(_make_intent())
        assert record.status is OrderStatus.SUBMITTED
        assert len(broker.create_calls) == 1

    @pytest.mark.asyncio
    async def test_fresh_submitting_record_is_not_resubmitted(
        self, executor, broker, ledger
    ) -> None:
        """A young SUBMITTING record may still have create_order in flight elsewhere."""
        ledger.insert_order(
            OrderExecutionRecord(
                client_order_id="co-1",
                symbol="XYZ",
                side="buy",
                status=OrderStatus.SUBMITTING,
                qty=10.0,
            ),
            "submit_requested",
        )
        with pytest.raises(ConcurrentTransitionError):
            await executor.submit(_make_intent())
        assert broker.create_calls == []
        assert ledger.get_order("co-1").version == 1

    @pytest.mark.asyncio
    async def test_two_processes_submit_same_id_once(self, db_path, broker, clock) -> None:
        """Two executors on one database race for co-1; the brokerage sees one order."""
        broker.create_delay = 0.2
        ledgers = [OrderLedger(db_path, clock=clock) for _ in range(2)]
        try:
            executors = [
                OrderExecutor(broker, led, broker_timeout=1.0, clock=clock) for led in ledgers
            ]
            first = asyncio.create_task(executors[0].submit(_make_intent()))
            await asyncio.sleep(0.05)
            with pytest.raises(ConcurrentTransitionError):
                await executors[1].submit(_make_intent())

            record = await first
            assert record.status is OrderStatus.SUBMITTED
            assert len(broker.create_calls) == 1

            # once the first attempt has finished, a retry returns its result
            again = await executors[1].submit(_make_intent())
            assert again.broker_order_id == record.broker_order_id
            assert len(broker.create_calls) == 1
        finally:
            for led in ledgers:
                led.close()

    @pytest.mark.asyncio
    async def test_lookup_failure_on_resume_is_ambiguous(self, executor, broker, ledger) -> None:
        broker.create_error = ConnectionError("down")
        with pytest.raises(ConnectionError):
            await executor.submit(_make_intent())

        broker.create_error = None
        broker.fail_reads = ConnectionError("still down")
        with pytest.raises(AmbiguousOutcomeError):
            await executor.submit(_make_intent())
        assert len(broker.create_calls) == 1


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_open_order(self, executor, broker) -> None:
        await executor.submit(_make_intent())
        record = await executor.cancel("co-1")
        assert record.status is OrderStatus.CANCELED
        assert broker.cancel_calls == ["b-42"]

    @pytest.mark.asyncio
    async def test_cancel_unknown_id(self, executor) -> None:
        with pytest.raises(InvalidWorkItemError):
            await executor.cancel("nope")

    @pytest.mark.asyncio
    async def test_cancel_order_never_sent(self, executor, broker, ledger) -> None:
        ledger.insert_order(
            OrderExecutionRecord(
                client_order_id="co-9", symbol="XYZ", side="buy", status=OrderStatus.FAILED, qty=1.0
            ),
            "x",
        )
        record = await executor.cancel("co-9")
        assert record.status is OrderStatus.CANCELED
        assert broker.cancel_calls == []

    @pytest.mark.asyncio
    async def test_cancel_terminal_is_noop(self, executor, broker) -> None:
        await executor.submit(_make_intent())
        broker.fill("b-42", 10.0, 50.0)
        await executor.sync("co-1")
        record = await executor.cancel("co-1")
        assert record.status is OrderStatus.FILLED
        assert broker.cancel_calls == []


class TestSync:
    @pytest.mark.asyncio
    async def test_sync_mirrors_fill(self, executor, broker, ledger) -> None:
        await executor.submit(_make_intent())
        broker.fill("b-42", 10.0, 50.0)
        record = await executor.sync("co-1")
        assert record.status is OrderStatus.FILLED
        assert record.filled_avg_price == 50.0
        fills = ledger.get_fills(client_order_id="co-1")
        assert [(f.qty, f.price) for f in fills] == [(10.0, 50.0)]

    @pytest.mark.asyncio
    async def test_sync_unknown_returns_none(self, executor) -> None:
        assert await executor.sync("nope") is None
