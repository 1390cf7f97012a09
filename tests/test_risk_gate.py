"""Tests for RiskGate -- mandatory pre-trade check.

Covers the kill switch, trading mode gating, the daily-loss breaker (which
activates the kill switch and queues a KILL_SWITCH item), price
availability and the exposure limits.
"""

from __future__ import annotations

import pytest

from orderkeeper.errors import RiskRefusedError
from orderkeeper.execution.risk_gate import RiskGate
from orderkeeper.execution.types import AccountSnapshot, OrderIntent, PositionRecord
from orderkeeper.risk.limits import RiskLimitsStore
from orderkeeper.risk.modes import SubmissionSource
from orderkeeper.work.types import WorkItemType


def _make_intent(**overrides) -> OrderIntent:
    defaults = dict(
        client_order_id="co-1", symbol="NEW", side="buy", qty=10.0, reference_price=100.0
    )
    defaults.update(overrides)
    return OrderIntent(**defaults)


@pytest.fixture()
def gate(limits, ledger, work_store, clock):
    ledger.save_account_snapshot(
        AccountSnapshot(equity=100_000, cash=50_000, buying_power=200_000, last_equity=100_000)
    )
    return RiskGate(limits, ledger, work_store, clock=clock)


def _seed_positions(ledger, n: int, value: float) -> None:
    for i in range(n):
        ledger.upsert_position(
            PositionRecord(symbol=f"S{i}", qty=100, side="long", market_value=value)
        )


class TestAllowed:
    def test_within_limits(self, gate) -> None:
        decision = gate.check(_make_intent())
        assert decision.allowed
        assert decision.reasons == []
        assert decision.projection.total_exposure_percent == pytest.approx(1.0)
        decision.raise_if_refused()


class TestKillSwitch:
    def test_active_kill_switch_refuses(self, gate, limits) -> None:
        limits.activate_kill_switch("operator halt")
        decision = gate.check(_make_intent())
        assert not decision.allowed
        assert decision.reasons == ["kill_switch_active"]
        with pytest.raises(RiskRefusedError):
            decision.raise_if_refused()

    def test_kill_switch_set_by_other_store_is_seen(self, gate, db_path, clock) -> None:
        other = RiskLimitsStore(db_path, clock=clock)
        try:
            other.activate_kill_switch("cli")
        finally:
            other.close()
        assert gate.check(_make_intent()).reasons == ["kill_switch_active"]


class TestModes:
    def test_manual_mode_refuses_automated(self, gate, limits) -> None:
        limits.update(mode="manual")
        assert gate.check(_make_intent()).reasons == ["manual_mode"]
        assert gate.check(_make_intent(), SubmissionSource.MANUAL).allowed

    def test_autonomous_mode_lets_manual_orders_exceed_limits(self, gate, limits, ledger) -> None:
        limits.update(mode="autonomous")
        _seed_positions(ledger, 6, 8_000)
        big = _make_intent(qty=70.0)
        assert not gate.check(big, SubmissionSource.AUTOMATED).allowed
        assert gate.check(big, SubmissionSource.MANUAL).allowed

    def test_semi_auto_blocks_manual_orders_over_limits(self, gate, ledger) -> None:
        _seed_positions(ledger, 6, 8_000)
        decision = gate.check(_make_intent(qty=70.0), SubmissionSource.MANUAL)
        assert decision.reasons == ["max_total_exposure"]


class TestDailyLoss:
    def test_breach_trips_kill_switch_and_enqueues_flatten(
        self, gate, ledger, limits, work_store
    ) -> None:
        ledger.save_account_snapshot(
            AccountSnapshot(equity=94_000, cash=0, buying_power=0, last_equity=100_000)
        )
        decision = gate.check(_make_intent())

        assert not decision.allowed
        assert decision.reasons == ["daily_loss_limit"]
        assert decision.kill_switch_triggered
        assert limits.get().kill_switch_active
        assert limits.get().kill_switch_activated_by == "daily_loss_limit"

        items = work_store.list_items(type=WorkItemType.KILL_SWITCH)
        assert len(items) == 1
        assert items[0].payload["close_positions"] is True

        # later checks are refused by the sticky switch; no second item
        assert gate.check(_make_intent()).reasons == ["kill_switch_active"]
        assert work_store.count(type=WorkItemType.KILL_SWITCH) == 1

    def test_loss_inside_limit_is_allowed(self, gate, ledger) -> None:
        ledger.save_account_snapshot(
            AccountSnapshot(equity=96_000, cash=0, buying_power=0, last_equity=100_000)
        )
        assert gate.check(_make_intent()).allowed

    def test_standalone_check_trips_without_an_order(self, gate, ledger, limits, work_store) -> None:
        ledger.save_account_snapshot(
            AccountSnapshot(equity=80_000, cash=0, buying_power=0, last_equity=100_000)
        )
        assert gate.check_daily_loss() is True
        assert limits.get().kill_switch_active
        assert work_store.count(type=WorkItemType.KILL_SWITCH) == 1

        # already tripped: nothing more to do
        assert gate.check_daily_loss() is False
        assert work_store.count(type=WorkItemType.KILL_SWITCH) == 1

    def test_standalone_check_inside_limit(self, gate, limits, work_store) -> None:
        assert gate.check_daily_loss() is False
        assert not limits.get().kill_switch_active
        assert work_store.count(type=WorkItemType.KILL_SWITCH) == 0

    def test_standalone_check_without_account(self, limits, ledger, work_store, clock) -> None:
        gate = RiskGate(limits, ledger, work_store, clock=clock)
        assert gate.check_daily_loss() is False
        assert not limits.get().kill_switch_active


class TestInputs:
    def test_missing_account(self, limits, ledger, work_store, clock) -> None:
        gate = RiskGate(limits, ledger, work_store, clock=clock)
        assert gate.check(_make_intent()).reasons == ["account_unavailable"]

    def test_missing_price(self, gate) -> None:
        decision = gate.check(_make_intent(reference_price=None))
        assert decision.reasons == ["price_unavailable"]

    def test_notional_order_needs_no_price(self, gate) -> None:
        assert gate.check(_make_intent(qty=None, notional=5_000, reference_price=None)).allowed


class TestExposure:
    def test_48_to_55_percent_is_blocked(self, gate, ledger) -> None:
        _seed_positions(ledger, 6, 8_000)
        decision = gate.check(_make_intent(notional=7_000, qty=None))
        assert not decision.allowed
        assert decision.reasons == ["max_total_exposure"]
        assert decision.projection.total_exposure_percent == pytest.approx(55.0)

    def test_reducing_order_allowed_over_limits(self, gate, ledger) -> None:
        _seed_positions(ledger, 12, 9_000)
        decision = gate.check(_make_intent(symbol="S0", side="sell", qty=5.0))
        assert decision.allowed
