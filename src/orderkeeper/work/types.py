"""Work item types, statuses and records shared by the store and worker."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from enum import Enum

from orderkeeper.clock import Clock, utc_now


class WorkItemType(str, Enum):
    """Closed set of work the engine knows how to execute.

    Adding a member requires registering a handler for it; the worker's
    registry refuses to start with a type left unhandled.
    """

    ORDER_SUBMIT = "ORDER_SUBMIT"
    ORDER_CANCEL = "ORDER_CANCEL"
    ORDER_SYNC = "ORDER_SYNC"
    POSITION_CLOSE = "POSITION_CLOSE"
    KILL_SWITCH = "KILL_SWITCH"
    RECONCILE = "RECONCILE"
    ASSET_UNIVERSE_SYNC = "ASSET_UNIVERSE_SYNC"


class WorkItemStatus(str, Enum):
    """Lifecycle of a work item.

    PENDING -> RUNNING -> SUCCEEDED | PENDING (retry) | DEAD_LETTER.
    FAILED only appears on individual attempts in the run log.
    """

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    DEAD_LETTER = "DEAD_LETTER"


@dataclass
class WorkItem:
    """A unit of deferred, retryable work.

    Parameters
    ----------
    id : str
        Opaque unique identifier (uuid4 hex).
    type : WorkItemType
        Dispatch key for the handler registry.
    payload : dict
        Handler input, stored as JSON.
    status : WorkItemStatus
        Current lifecycle status.
    attempts : int
        Failed attempts so far.
    max_attempts : int
        Attempts allowed before the item is dead-lettered.
    next_run_at : str
        ISO 8601 UTC time before which the item is not claimed.
    idempotency_key : str | None
        Unique when present; a second enqueue with the key returns this item.
    last_error : str | None
        Message of the most recent failure.
    last_error_kind : str | None
        ``ErrorKind`` value of the most recent failure.
    result : dict | None
        Handler output of the successful attempt.
    locked_by : str | None
        Worker id holding the RUNNING lease.
    locked_at : str | None
        When the lease was taken.
    created_at, updated_at : str
        ISO 8601 UTC timestamps.
    """

    id: str
    type: WorkItemType
    payload: dict
    status: WorkItemStatus
    attempts: int
    max_attempts: int
    next_run_at: str
    created_at: str
    updated_at: str
    idempotency_key: str | None = None
    last_error: str | None = None
    last_error_kind: str | None = None
    result: dict | None = None
    locked_by: str | None = None
    locked_at: str | None = None


@dataclass
class WorkItemRun:
    """One execution attempt of a work item."""

    work_item_id: str
    attempt_number: int
    started_at: str
    status: WorkItemStatus = WorkItemStatus.RUNNING
    worker_id: str | None = None
    completed_at: str | None = None
    error: str | None = None
    duration_ms: int | None = None
    id: int | None = None


@dataclass
class WorkItemFilter:
    """AND-combined filters for listing work items."""

    status: WorkItemStatus | None = None
    type: WorkItemType | None = None
    since: str | None = None
    limit: int = 50


def generate_idempotency_key(
    strategy_id: str,
    symbol: str,
    side: str,
    signal_hash: str = "",
    timeframe_bucket: str | None = None,
    clock: Clock = utc_now,
) -> str:
    """Derive a stable 32-char key for an automated order decision.

    Decisions for the same strategy, symbol and side within the same bucket
    (one minute of *clock* time by default) collapse into a single work
    item.
    """
    bucket = timeframe_bucket or str(int(clock().timestamp() // 60))
    data = f"{strategy_id}:{symbol}:{side}:{signal_hash}:{bucket}"
    return hashlib.sha256(data.encode()).hexdigest()[:32]


def reconcile_bucket_key(epoch_seconds: float, interval_seconds: int) -> str:
    """Idempotency key of the periodic reconciliation run covering *epoch_seconds*."""
    return f"reconcile:{int(epoch_seconds // interval_seconds)}"
