"""Durable work queue: SQLite-backed store and polling worker.

Public API:
    - WorkItem, WorkItemRun, WorkItemFilter: Work item records
    - WorkItemType, WorkItemStatus: Closed dispatch and lifecycle enums
    - WorkItemStore: Idempotent enqueue, CAS claim and guarded completion
    - WorkQueueWorker: APScheduler poll job with backoff and dead-lettering
    - HandlerRegistry: Exhaustive type -> handler mapping
    - generate_idempotency_key: Stable key for automated order decisions
"""

from orderkeeper.work.store import WorkItemStore
from orderkeeper.work.types import (
    WorkItem,
    WorkItemFilter,
    WorkItemRun,
    WorkItemStatus,
    WorkItemType,
    generate_idempotency_key,
    reconcile_bucket_key,
)
from orderkeeper.work.worker import HandlerRegistry, WorkQueueWorker, compute_backoff

__all__ = [
    "HandlerRegistry",
    "WorkItem",
    "WorkItemFilter",
    "WorkItemRun",
    "WorkItemStatus",
    "WorkItemStore",
    "WorkItemType",
    "WorkQueueWorker",
    "compute_backoff",
    "generate_idempotency_key",
    "reconcile_bucket_key",
]
