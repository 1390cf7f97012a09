"""OrderExecutor: idempotent order submission keyed on client order id.

Each client order id owns exactly one ledger record. ``submit`` walks it
through the state machine:

    SUBMITTING -> SUBMITTED -> PARTIALLY_FILLED -> FILLED
                            -> CANCELED | REJECTED
              -> FAILED (retryable)

A record that already exists is returned unchanged unless it is FAILED or
an abandoned SUBMITTING record (left by a crashed process). Those are
resumed, and resuming always starts with a brokerage lookup by client
order id: an order that reached the brokerage is adopted instead of being
submitted a second time. ``create_order`` is called at most once per
attempt.

SUBMITTING is abandoned only once its last write is older than the submit
lease (``broker_timeout`` plus a margin). A younger SUBMITTING record may
belong to an attempt in another process or work item, so ``submit`` raises
``ConcurrentTransitionError`` and the work item retries later.

Architecture:
    ORDER_SUBMIT handler -> RiskGate.check() -> OrderExecutor.submit()
                                              -> Brokerage.create_order()
"""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING

import structlog

from orderkeeper.clock import Clock, from_iso, to_iso, utc_now
from orderkeeper.errors import (
    AmbiguousOutcomeError,
    ConcurrentTransitionError,
    ErrorKind,
    InvalidWorkItemError,
    OrderRejectedError,
    classify_error,
)
from orderkeeper.execution.broker import BrokerOrder, call_with_timeout
from orderkeeper.execution.types import (
    OrderExecutionRecord,
    OrderIntent,
    OrderSource,
    OrderStatus,
    status_from_broker,
)

if TYPE_CHECKING:
    from orderkeeper.execution.broker import Brokerage
    from orderkeeper.execution.ledger import OrderLedger

logger = structlog.get_logger(__name__)

SUBMIT_LEASE_MARGIN_SECONDS = 30.0


class OrderExecutor:
    """Turns order intents into exactly one brokerage order each.

    Parameters
    ----------
    broker : Brokerage
        Brokerage adapter.
    ledger : OrderLedger
        Local order ledger; the executor is the only writer of new records.
    broker_timeout : float
        Timeout for every brokerage call. A timeout is an unknown outcome.
    clock : Callable[[], datetime]
        Injectable UTC clock.
    submit_lease_margin : float
        Seconds beyond ``broker_timeout`` before a SUBMITTING record that no
        attempt in this process owns counts as abandoned. Younger records
        may still have a ``create_order`` in flight in another process.
    """

    def __init__(
        self,
        broker: Brokerage,
        ledger: OrderLedger,
        broker_timeout: float = 10.0,
        clock: Clock = utc_now,
        submit_lease_margin: float = SUBMIT_LEASE_MARGIN_SECONDS,
    ) -> None:
        self._broker = broker
        self._ledger = ledger
        self._broker_timeout = broker_timeout
        self._clock = clock
        self._submit_lease = timedelta(seconds=broker_timeout + submit_lease_margin)
        self._active: dict[str, dict] = {}

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit(
        self, intent: OrderIntent, work_item_id: str | None = None
    ) -> OrderExecutionRecord:
        """Submit *intent* unless its client order id was already handled.

        Returns
        -------
        OrderExecutionRecord
            The record after this call: new, adopted or pre-existing.

        Raises
        ------
        InvalidWorkItemError
            Malformed intent.
        OrderRejectedError
            The brokerage refused the order (record is REJECTED).
        AmbiguousOutcomeError
            ``create_order`` or the resume lookup timed out.
        ConcurrentTransitionError
            Another attempt for the same client order id is in flight.
        """
        problems = intent.validate()
        if problems:
            raise InvalidWorkItemError("; ".join(problems))

        coid = intent.client_order_id
        if coid in self._active:
            raise ConcurrentTransitionError(coid)

        existing = self._ledger.get_order(coid)
        if existing is not None and existing.status is OrderStatus.SUBMITTING:
            if not self._is_abandoned(existing):
                logger.info(
                    "order_submit_in_flight_elsewhere",
                    client_order_id=coid,
                    updated_at=existing.updated_at,
                )
                raise ConcurrentTransitionError(coid)
        elif existing is not None and existing.status is not OrderStatus.FAILED:
            logger.info(
                "order_submit_duplicate",
                client_order_id=coid,
                status=existing.status.value,
            )
            return existing

        self._active[coid] = {
            "client_order_id": coid,
            "symbol": intent.symbol,
            "side": intent.side,
            "work_item_id": work_item_id,
            "started_at": to_iso(self._clock()),
        }
        try:
            if existing is not None:
                adopted = await self._adopt_if_present(existing)
                if adopted is not None:
                    return adopted
                record = self._ledger.transition(
                    coid,
                    existing.version,
                    OrderStatus.SUBMITTING,
                    "resubmit_after_lookup",
                    work_item_id=work_item_id or existing.work_item_id,
                )
            else:
                record = OrderExecutionRecord(
                    client_order_id=coid,
                    symbol=intent.symbol,
                    side=intent.side,
                    status=OrderStatus.SUBMITTING,
                    order_type=intent.order_type,
                    qty=intent.qty,
                    notional=intent.notional,
                    limit_price=intent.limit_price,
                    time_in_force=intent.time_in_force,
                    source=OrderSource.ENGINE,
                    work_item_id=work_item_id,
                )
                if not self._ledger.insert_order(record, "submit_requested"):
                    raise ConcurrentTransitionError(coid)
                record = self._ledger.get_order(coid)

            return await self._create(record, intent)
        finally:
            self._active.pop(coid, None)

    def _is_abandoned(self, record: OrderExecutionRecord) -> bool:
        """A SUBMITTING record whose last write is older than the submit lease.

        Any ``create_order`` started by the writer has timed out by then, so
        a brokerage lookup now sees the order if it was ever accepted.
        """
        if record.client_order_id in self._active:
            return False
        return self._clock() - from_iso(record.updated_at) >= self._submit_lease

    async def _adopt_if_present(
        self, record: OrderExecutionRecord
    ) -> OrderExecutionRecord | None:
        """Look the order up at the brokerage before any resubmission.

        Returns the adopted record, or None if the brokerage has never seen
        the client order id.
        """
        coid = record.client_order_id
        try:
            found = await call_with_timeout(
                self._broker.get_order_by_client_id(coid),
                "get_order_by_client_id",
                self._broker_timeout,
            )
        except AmbiguousOutcomeError:
            raise
        except Exception as exc:
            logger.warning("order_lookup_failed", client_order_id=coid, error=str(exc))
            raise AmbiguousOutcomeError("get_order_by_client_id") from exc

        if found is None:
            logger.info(
                "order_lookup_not_found",
                client_order_id=coid,
                previous_status=record.status.value,
                outcome_unknown=record.outcome_unknown,
            )
            return None

        adopted = self._ledger.mirror_broker_order(record, found, "adopted_from_broker")
        adopted = adopted or record
        logger.warning(
            "order_adopted",
            client_order_id=coid,
            broker_order_id=found.broker_order_id,
            status=adopted.status.value,
        )
        if adopted.status is OrderStatus.REJECTED:
            raise OrderRejectedError(coid, found.reject_reason or "rejected by brokerage")
        return adopted

    async def _create(
        self, record: OrderExecutionRecord, intent: OrderIntent
    ) -> OrderExecutionRecord:
        """Call ``create_order`` once and record its outcome."""
        coid = record.client_order_id
        attempts = record.attempts + 1
        try:
            result: BrokerOrder = await call_with_timeout(
                self._broker.create_order(
                    client_order_id=coid,
                    symbol=intent.symbol,
                    side=intent.side,
                    qty=intent.qty,
                    notional=intent.notional,
                    order_type=intent.order_type,
                    limit_price=intent.limit_price,
                    time_in_force=intent.time_in_force,
                ),
                "create_order",
                self._broker_timeout,
            )
        except Exception as exc:
            kind = classify_error(exc)
            if kind is ErrorKind.REJECTION:
                self._ledger.transition(
                    coid,
                    record.version,
                    OrderStatus.REJECTED,
                    "rejected_by_broker",
                    attempts=attempts,
                    last_error=str(exc),
                )
                logger.warning("order_rejected", client_order_id=coid, reason=str(exc))
                raise OrderRejectedError(coid, str(exc)) from exc

            self._ledger.transition(
                coid,
                record.version,
                OrderStatus.FAILED,
                "create_order_timeout" if kind is ErrorKind.AMBIGUOUS else "create_order_failed",
                attempts=attempts,
                outcome_unknown=kind is ErrorKind.AMBIGUOUS,
                last_error=str(exc),
            )
            logger.warning(
                "order_submit_failed",
                client_order_id=coid,
                error=str(exc),
                error_kind=kind.value,
                attempts=attempts,
            )
            raise

        status = status_from_broker(result.status)
        if status is OrderStatus.REJECTED:
            reason = result.reject_reason or "rejected by brokerage"
            self._ledger.transition(
                coid,
                record.version,
                OrderStatus.REJECTED,
                "rejected_by_broker",
                attempts=attempts,
                broker_order_id=result.broker_order_id,
                last_error=reason,
            )
            logger.warning("order_rejected", client_order_id=coid, reason=reason)
            raise OrderRejectedError(coid, reason)

        with self._ledger.transaction():
            record = self._ledger.transition(
                coid,
                record.version,
                OrderStatus.SUBMITTED,
                "accepted_by_broker",
                attempts=attempts,
                broker_order_id=result.broker_order_id,
                outcome_unknown=False,
                last_error=None,
            )
            if status is not OrderStatus.SUBMITTED:
                record = self._ledger.mirror_broker_order(record, result, "broker_status") or record

        logger.info(
            "order_submitted",
            client_order_id=coid,
            broker_order_id=result.broker_order_id,
            status=record.status.value,
            attempts=attempts,
        )
        return record

    # ------------------------------------------------------------------
    # Cancel and sync
    # ------------------------------------------------------------------

    async def cancel(self, client_order_id: str) -> OrderExecutionRecord:
        """Cancel a live order and mirror the brokerage's answer.

        Allowed while the kill switch is active. Terminal records are
        returned unchanged. A record the brokerage never saw is canceled
        locally.
        """
        record = self._ledger.get_order(client_order_id)
        if record is None:
            raise InvalidWorkItemError(f"Unknown client order id: {client_order_id}")
        if record.is_terminal:
            return record

        found = await call_with_timeout(
            self._broker.get_order_by_client_id(client_order_id),
            "get_order_by_client_id",
            self._broker_timeout,
        )
        if found is None:
            if record.broker_order_id is not None:
                raise AmbiguousOutcomeError("get_order_by_client_id")
            record = self._ledger.transition(
                client_order_id,
                record.version,
                OrderStatus.CANCELED,
                "canceled_before_broker",
            )
            logger.info("order_canceled_locally", client_order_id=client_order_id)
            return record

        if found.is_open:
            await call_with_timeout(
                self._broker.cancel_order(found.broker_order_id),
                "cancel_order",
                self._broker_timeout,
            )
            refreshed = await call_with_timeout(
                self._broker.get_order_by_client_id(client_order_id),
                "get_order_by_client_id",
                self._broker_timeout,
            )
            found = refreshed or found

        updated = self._ledger.mirror_broker_order(record, found, "cancel_requested")
        record = updated or record
        logger.info(
            "order_cancel_processed",
            client_order_id=client_order_id,
            status=record.status.value,
        )
        return record

    async def sync(self, client_order_id: str) -> OrderExecutionRecord | None:
        """Refresh one record from the brokerage. None if the id is unknown locally."""
        record = self._ledger.get_order(client_order_id)
        if record is None:
            return None
        found = await call_with_timeout(
            self._broker.get_order_by_client_id(client_order_id),
            "get_order_by_client_id",
            self._broker_timeout,
        )
        if found is None:
            return record
        return self._ledger.mirror_broker_order(record, found, "order_sync") or record

    def get_active_executions(self) -> list[dict]:
        """Submissions currently in flight in this process."""
        return [dict(entry) for entry in self._active.values()]
