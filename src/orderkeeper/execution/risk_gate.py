"""RiskGate: mandatory pre-trade check for every order submission.

Every ORDER_SUBMIT passes through ``RiskGate.check()`` before the order
executor is called. There is NO submission path that bypasses it. Cancels
and position closes do not go through the gate and stay available while
the kill switch is active.

Checks, in order:
    1. Kill switch active                      -> refuse
    2. Trading mode refuses the source         -> refuse
    3. Daily P&L at or below -daily_loss_limit -> activate kill switch,
                                                  enqueue KILL_SWITCH, refuse
    4. Exposure, position count, position size -> refuse if the mode
                                                  applies limits to the source

The daily-loss check also runs on its own after each reconciliation
(``check_daily_loss``), so a breach trips the kill switch without waiting
for the next submission.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog

from orderkeeper.clock import Clock, utc_now
from orderkeeper.errors import RiskRefusedError
from orderkeeper.risk.exposure import ExposureProjection, LimitCheck, check_exposure_limits
from orderkeeper.risk.modes import SubmissionSource, accepts_source, limits_apply
from orderkeeper.work.types import WorkItemType

if TYPE_CHECKING:
    from orderkeeper.execution.ledger import OrderLedger
    from orderkeeper.execution.types import AccountSnapshot, OrderIntent
    from orderkeeper.risk.limits import RiskLimits, RiskLimitsStore
    from orderkeeper.work.store import WorkItemStore

logger = structlog.get_logger(__name__)


@dataclass
class RiskDecision:
    """Outcome of a pre-trade check."""

    allowed: bool
    reasons: list[str] = field(default_factory=list)
    kill_switch_triggered: bool = False
    projection: ExposureProjection | None = None

    def raise_if_refused(self) -> None:
        """Raise :class:`RiskRefusedError` unless the order is allowed."""
        if not self.allowed:
            raise RiskRefusedError(self.reasons)


class RiskGate:
    """Pre-trade gate combining the kill switch, limits and trading mode.

    Parameters
    ----------
    limits : RiskLimitsStore
        Persisted limits and kill switch.
    ledger : OrderLedger
        Source of the account snapshot and position mirror.
    work_store : WorkItemStore
        Used to enqueue the KILL_SWITCH item when the daily-loss limit trips.
    clock : Callable[[], datetime]
        Injectable UTC clock.
    """

    def __init__(
        self,
        limits: RiskLimitsStore,
        ledger: OrderLedger,
        work_store: WorkItemStore,
        clock: Clock = utc_now,
    ) -> None:
        self._limits = limits
        self._ledger = ledger
        self._work_store = work_store
        self._clock = clock

    def check(
        self,
        intent: OrderIntent,
        source: SubmissionSource = SubmissionSource.AUTOMATED,
    ) -> RiskDecision:
        """Decide whether *intent* may be submitted. Makes no brokerage call.

        Limits are re-read from storage so a kill switch set by another
        process (e.g. the CLI) is honored immediately.
        """
        limits = self._limits.refresh()
        source = SubmissionSource(source)

        if limits.kill_switch_active:
            return self._refuse(intent, source, ["kill_switch_active"])

        if not accepts_source(limits.mode, source):
            return self._refuse(intent, source, ["manual_mode"])

        snapshot = self._ledger.get_account_snapshot()
        if snapshot is None or snapshot.equity <= 0:
            return self._refuse(intent, source, ["account_unavailable"])

        if self._daily_loss_breached(limits, snapshot):
            decision = self._refuse(intent, source, ["daily_loss_limit"])
            decision.kill_switch_triggered = True
            return decision

        order_value = intent.order_value()
        if order_value is None:
            return self._refuse(intent, source, ["price_unavailable"])

        projection = check_exposure_limits(
            positions=self._ledger.get_positions(),
            equity=snapshot.equity,
            symbol=intent.symbol,
            side=intent.side,
            order_value=order_value,
            max_total_exposure_percent=limits.max_total_exposure_percent,
            max_positions_count=limits.max_positions_count,
            max_position_size_percent=limits.max_position_size_percent,
        )
        if projection.triggered:
            if limits_apply(limits.mode, source):
                decision = self._refuse(intent, source, list(projection.triggered))
                decision.projection = projection
                return decision
            logger.warning(
                "risk_limits_bypassed_by_mode",
                client_order_id=intent.client_order_id,
                mode=limits.mode.value,
                source=source.value,
                triggered=projection.triggered,
            )

        logger.info(
            "order_allowed_by_risk",
            client_order_id=intent.client_order_id,
            symbol=intent.symbol,
            exposure_percent=round(projection.total_exposure_percent, 2),
        )
        return RiskDecision(allowed=True, projection=projection)

    def check_daily_loss(self) -> bool:
        """Trip the kill switch if the day's P&L has breached the loss limit.

        Called after every reconciliation so the breaker fires on a falling
        account even when no order is being submitted. Returns True if this
        call activated the kill switch.
        """
        limits = self._limits.refresh()
        if limits.kill_switch_active:
            return False
        snapshot = self._ledger.get_account_snapshot()
        if snapshot is None or snapshot.equity <= 0:
            return False
        return self._daily_loss_breached(limits, snapshot)

    def _daily_loss_breached(self, limits: RiskLimits, snapshot: AccountSnapshot) -> bool:
        daily_pnl_percent = snapshot.daily_pnl_fraction * 100.0
        daily_loss = LimitCheck(
            "daily_loss_limit", -limits.daily_loss_limit_percent, upper_bound=False
        )
        if daily_loss.check(daily_pnl_percent):
            return False
        self._trip_daily_loss(daily_pnl_percent, limits.daily_loss_limit_percent)
        return True

    def _refuse(
        self, intent: OrderIntent, source: SubmissionSource, reasons: list[str]
    ) -> RiskDecision:
        logger.warning(
            "order_blocked_by_risk",
            client_order_id=intent.client_order_id,
            symbol=intent.symbol,
            side=intent.side,
            source=source.value,
            triggered=reasons,
        )
        return RiskDecision(allowed=False, reasons=reasons)

    def _trip_daily_loss(self, daily_pnl_percent: float, limit_percent: float) -> None:
        """Activate the kill switch and queue the flatten-everything work item."""
        reason = (
            f"Daily loss {daily_pnl_percent:.2f}% breached limit -{limit_percent:g}%"
        )
        self._limits.activate_kill_switch(reason, activated_by="daily_loss_limit")
        day = self._clock().date().isoformat()
        self._work_store.enqueue(
            WorkItemType.KILL_SWITCH,
            {"close_positions": True, "reason": reason, "activated_by": "daily_loss_limit"},
            idempotency_key=f"kill_switch:daily_loss:{day}",
        )
