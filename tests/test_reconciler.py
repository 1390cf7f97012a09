"""Tests for Reconciler -- ledger repair from brokerage state.

Covers:
- MISSING_LOCAL orders inserted with source=reconciliation (and their fills)
- SYNCED orders left alone or healed from the brokerage
- UNREAL local orders canceled once past the grace window
- ORPHANED_LOCAL orders flagged for review exactly once
- Position and account mirroring
- Idempotence of a second run
- Abort before any write when the brokerage fails
- Unreal order identification and cleanup
- Daily-loss breaker evaluated after every run
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from orderkeeper.clock import to_iso
from orderkeeper.execution.reconciler import (
    FindingCategory,
    Reconciler,
    Resolution,
)
from orderkeeper.execution.risk_gate import RiskGate
from orderkeeper.execution.types import (
    OrderExecutionRecord,
    OrderSource,
    OrderStatus,
    PositionRecord,
)
from orderkeeper.work.types import WorkItemType


@pytest.fixture()
def reconciler(broker, ledger, work_store, clock):
    return Reconciler(broker, ledger, work_store, broker_timeout=1.0, grace_seconds=180, clock=clock)


def _local(ledger, **overrides) -> OrderExecutionRecord:
    defaults = dict(
        client_order_id="co-1",
        symbol="XYZ",
        side="buy",
        status=OrderStatus.SUBMITTED,
        qty=10.0,
        broker_order_id="b-42",
    )
    defaults.update(overrides)
    ledger.insert_order(OrderExecutionRecord(**defaults), "seed")
    return ledger.get_order(defaults["client_order_id"])


def _findings(report, category, kind="order"):
    return [f for f in report.findings if f.category is category and f.kind == kind]


class TestOrders:
    @pytest.mark.asyncio
    async def test_missing_local_is_inserted(self, reconciler, broker, ledger) -> None:
        order = broker.add_order(
            client_order_id="ext-1", symbol="ABC", side="sell", status="filled", qty=5.0
        )
        broker.fill(order.broker_order_id, 5.0, 20.0)

        report = await reconciler.reconcile()

        record = ledger.get_order("ext-1")
        assert record.source is OrderSource.RECONCILIATION
        assert record.status is OrderStatus.FILLED
        assert record.broker_order_id == order.broker_order_id
        assert [(f.qty, f.price) for f in ledger.get_fills(client_order_id="ext-1")] == [(5.0, 20.0)]
        [finding] = _findings(report, FindingCategory.MISSING_LOCAL)
        assert finding.resolution is Resolution.AUTO_HEALED

    @pytest.mark.asyncio
    async def test_order_without_client_id_gets_synthetic_id(self, reconciler, broker, ledger) -> None:
        broker.add_order(
            broker_order_id="b-7", client_order_id=None, symbol="ABC", side="buy", status="submitted", qty=1.0
        )
        await reconciler.reconcile()
        assert ledger.get_order("broker-b-7") is not None

    @pytest.mark.asyncio
    async def test_identical_order_is_synced_without_mutation(self, reconciler, broker, ledger) -> None:
        broker.add_order(
            broker_order_id="b-42", client_order_id="co-1", symbol="XYZ", side="buy", status="submitted", qty=10.0
        )
        _local(ledger)

        report = await reconciler.reconcile()
        [finding] = _findings(report, FindingCategory.SYNCED)
        assert finding.resolution is Resolution.NONE
        assert ledger.get_order("co-1").version == 1

    @pytest.mark.asyncio
    async def test_divergent_status_is_healed(self, reconciler, broker, ledger) -> None:
        broker.add_order(
            broker_order_id="b-42", client_order_id="co-1", symbol="XYZ", side="buy", status="submitted", qty=10.0
        )
        broker.fill("b-42", 10.0, 50.0)
        _local(ledger)

        report = await reconciler.reconcile()
        record = ledger.get_order("co-1")
        assert record.status is OrderStatus.FILLED
        assert record.filled_qty == 10.0
        [finding] = _findings(report, FindingCategory.SYNCED)
        assert finding.resolution is Resolution.AUTO_HEALED
        assert finding.detail == "SUBMITTED -> FILLED"

    @pytest.mark.asyncio
    async def test_unreal_order_canceled_after_grace(self, reconciler, ledger, clock) -> None:
        _local(ledger, status=OrderStatus.SUBMITTING, broker_order_id=None)
        clock.advance(181)

        report = await reconciler.reconcile()
        assert ledger.get_order("co-1").status is OrderStatus.CANCELED
        [finding] = _findings(report, FindingCategory.UNREAL)
        assert finding.resolution is Resolution.AUTO_HEALED

    @pytest.mark.asyncio
    async def test_local_order_inside_grace_is_untouched(self, reconciler, ledger, clock) -> None:
        _local(ledger, status=OrderStatus.SUBMITTING, broker_order_id=None)
        clock.advance(60)

        report = await reconciler.reconcile()
        assert ledger.get_order("co-1").status is OrderStatus.SUBMITTING
        assert report.mutations == 1  # account snapshot only

    @pytest.mark.asyncio
    async def test_order_owned_by_live_work_item_is_untouched(
        self, reconciler, ledger, work_store, clock
    ) -> None:
        item = work_store.enqueue(WorkItemType.ORDER_SUBMIT, {"client_order_id": "co-1"})
        _local(ledger, status=OrderStatus.FAILED, broker_order_id=None, work_item_id=item.id)
        clock.advance(600)

        await reconciler.reconcile()
        assert ledger.get_order("co-1").status is OrderStatus.FAILED

    @pytest.mark.asyncio
    async def test_orphaned_order_flagged_once(self, reconciler, ledger, clock) -> None:
        _local(ledger)
        clock.advance(181)

        first = await reconciler.reconcile()
        record = ledger.get_order("co-1")
        assert record.needs_review
        assert record.status is OrderStatus.SUBMITTED
        [finding] = _findings(first, FindingCategory.ORPHANED_LOCAL)
        assert finding.resolution is Resolution.NEEDS_OPERATOR

        second = await reconciler.reconcile()
        assert second.mutations == 0
        assert second.counts["pending_review"] == 1
        assert _findings(second, FindingCategory.ORPHANED_LOCAL) == []

    @pytest.mark.asyncio
    async def test_order_found_by_lookup_is_synced(self, reconciler, broker, ledger, clock) -> None:
        """Outside the listing window, but the lookup by client order id finds it."""
        _local(ledger)
        clock.advance(181)
        reconciler._order_limit = 0
        broker.add_order(
            broker_order_id="b-42", client_order_id="co-1", symbol="XYZ", side="buy", status="canceled", qty=10.0
        )

        await reconciler.reconcile()
        record = ledger.get_order("co-1")
        assert record.status is OrderStatus.CANCELED
        assert not record.needs_review


class TestPositionsAndAccount:
    @pytest.mark.asyncio
    async def test_positions_are_mirrored(self, reconciler, broker, ledger) -> None:
        broker.set_position("XYZ", 10, 500.0)
        ledger.upsert_position(PositionRecord(symbol="OLD", qty=1, side="long", market_value=10))

        report = await reconciler.reconcile()
        assert [p.symbol for p in ledger.get_positions()] == ["XYZ"]
        assert _findings(report, FindingCategory.MISSING_LOCAL, kind="position")
        assert _findings(report, FindingCategory.ORPHANED_LOCAL, kind="position")

    @pytest.mark.asyncio
    async def test_changed_position_is_overwritten(self, reconciler, broker, ledger) -> None:
        broker.set_position("XYZ", 10, 500.0)
        await reconciler.reconcile()
        broker.set_position("XYZ", 20, 1_100.0)

        report = await reconciler.reconcile()
        assert ledger.get_positions()[0].qty == 20
        [finding] = _findings(report, FindingCategory.SYNCED, kind="position")
        assert finding.resolution is Resolution.AUTO_HEALED

    @pytest.mark.asyncio
    async def test_account_snapshot_refreshed(self, reconciler, broker, ledger) -> None:
        broker.account.equity = 123_456.0
        await reconciler.reconcile()
        assert ledger.get_account_snapshot().equity == 123_456.0


class TestDailyLossBreaker:
    @pytest.mark.asyncio
    async def test_falling_account_trips_kill_switch_without_submission(
        self, broker, ledger, work_store, limits, clock
    ) -> None:
        gate = RiskGate(limits, ledger, work_store, clock=clock)
        reconciler = Reconciler(
            broker, ledger, work_store, broker_timeout=1.0, risk_gate=gate, clock=clock
        )
        broker.account.equity = 80_000.0
        broker.account.last_equity = 100_000.0

        report = await reconciler.reconcile()

        assert report.kill_switch_triggered
        assert limits.get().kill_switch_active
        assert limits.get().kill_switch_activated_by == "daily_loss_limit"
        [item] = work_store.list_items(type=WorkItemType.KILL_SWITCH)
        assert item.payload["close_positions"] is True
        assert broker.create_calls == []

        again = await reconciler.reconcile()
        assert not again.kill_switch_triggered
        assert work_store.count(type=WorkItemType.KILL_SWITCH) == 1

    @pytest.mark.asyncio
    async def test_healthy_account_leaves_switch_off(
        self, broker, ledger, work_store, limits, clock
    ) -> None:
        gate = RiskGate(limits, ledger, work_store, clock=clock)
        reconciler = Reconciler(broker, ledger, work_store, risk_gate=gate, clock=clock)

        report = await reconciler.reconcile()

        assert not report.kill_switch_triggered
        assert not limits.get().kill_switch_active
        assert work_store.count(type=WorkItemType.KILL_SWITCH) == 0


class TestRunProperties:
    @pytest.mark.asyncio
    async def test_second_run_applies_nothing(self, reconciler, broker, ledger, clock) -> None:
        broker.add_order(client_order_id="ext-1", symbol="ABC", side="buy", status="submitted", qty=1.0)
        broker.set_position("ABC", 1, 10.0)
        _local(ledger, client_order_id="co-2", status=OrderStatus.SUBMITTING, broker_order_id=None)
        clock.advance(200)

        first = await reconciler.reconcile()
        assert first.mutations > 0
        second = await reconciler.reconcile()
        assert second.mutations == 0
        assert second.divergences == []

    @pytest.mark.asyncio
    async def test_brokerage_failure_aborts_before_writes(self, reconciler, broker, ledger) -> None:
        broker.add_order(client_order_id="ext-1", symbol="ABC", side="buy", status="submitted", qty=1.0)
        broker.fail_reads = ConnectionError("gateway down")

        with pytest.raises(ConnectionError):
            await reconciler.reconcile()
        assert ledger.get_order("ext-1") is None
        assert ledger.get_account_snapshot() is None
        [run] = ledger.list_reconciliation_runs()
        assert run["status"] == "failed"
        assert "gateway down" in run["error"]

    @pytest.mark.asyncio
    async def test_run_log_and_report(self, reconciler, ledger) -> None:
        report = await reconciler.reconcile(trigger="manual")
        [run] = ledger.list_reconciliation_runs()
        assert run["id"] == report.run_id
        assert run["trigger"] == "manual"
        assert run["status"] == "completed"
        assert run["counts"] == report.counts
        data = report.to_dict()
        assert set(data["counts"]) == {"MISSING_LOCAL", "ORPHANED_LOCAL", "UNREAL", "SYNCED", "pending_review"}


class TestSyncOrders:
    @pytest.mark.asyncio
    async def test_sync_orders_refreshes_known_only(self, reconciler, broker, ledger) -> None:
        broker.add_order(
            broker_order_id="b-42", client_order_id="co-1", symbol="XYZ", side="buy", status="filled", qty=10.0
        )
        broker.add_order(client_order_id="ext-1", symbol="ABC", side="buy", status="submitted", qty=1.0)
        _local(ledger)

        report = await reconciler.sync_orders()
        assert ledger.get_order("co-1").status is OrderStatus.FILLED
        assert ledger.get_order("ext-1") is None
        assert report.mutations == 1


class TestUnrealOrders:
    @pytest.mark.asyncio
    async def test_identify(self, reconciler, broker, clock) -> None:
        broker.add_order(
            broker_order_id="r", client_order_id="a", symbol="A", side="buy", status="rejected", qty=1.0
        )
        broker.add_order(
            broker_order_id="c", client_order_id="b", symbol="B", side="buy", status="canceled", qty=1.0
        )
        broker.add_order(
            broker_order_id="z", client_order_id="c", symbol="C", side="buy", status="submitted"
        )
        broker.add_order(
            broker_order_id="old",
            client_order_id="d",
            symbol="D",
            side="buy",
            status="submitted",
            qty=1.0,
            created_at=to_iso(clock() - timedelta(hours=25)),
        )
        broker.add_order(
            broker_order_id="live", client_order_id="e", symbol="E", side="buy", status="submitted", qty=1.0
        )

        reasons = {u.broker_order_id: u.reason for u in await reconciler.identify_unreal_orders()}
        assert reasons == {
            "r": "rejected",
            "c": "canceled_without_fill",
            "z": "zero_quantity",
            "old": "stale_open_without_fill",
        }

    @pytest.mark.asyncio
    async def test_cleanup_cancels_open_ones(self, reconciler, broker, clock) -> None:
        broker.add_order(
            broker_order_id="old",
            client_order_id="d",
            symbol="D",
            side="buy",
            status="submitted",
            qty=1.0,
            created_at=to_iso(clock() - timedelta(hours=25)),
        )
        broker.add_order(
            broker_order_id="r", client_order_id="a", symbol="A", side="buy", status="rejected", qty=1.0
        )

        result = await reconciler.cleanup_unreal_orders()
        assert result == {"identified": 2, "canceled": ["old"], "failed": {}}
        assert broker.orders["old"].status == "canceled"
