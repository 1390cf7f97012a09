"""Error taxonomy for the execution engine.

Four kinds of failure flow through the system and each one is retried (or not)
differently by the work queue worker:

    TRANSIENT  -- network, rate-limit and storage-busy errors. Retried with
                  backoff up to ``max_attempts``.
    AMBIGUOUS  -- a brokerage call timed out after the request may have been
                  received. Retried, but the retry path must look the order
                  up at the brokerage before re-submitting.
    REJECTION  -- the brokerage explicitly refused the order. Terminal.
    POLICY     -- the risk gate refused the order. Terminal, and no external
                  call was made.

Foreign exceptions (``ConnectionError``, ``asyncio.TimeoutError``, raw
broker messages) are mapped onto these kinds by :func:`classify_error`.
Anything unrecognised is ``UNKNOWN`` and is retried like a transient error;
handlers are idempotent, so a retry is always safe.
"""

from __future__ import annotations

import asyncio
import re
import sqlite3
from enum import Enum


class ErrorKind(str, Enum):
    """How the worker should treat a failed attempt."""

    TRANSIENT = "transient"
    AMBIGUOUS = "ambiguous"
    REJECTION = "rejection"
    POLICY = "policy"
    INVALID = "invalid"
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        return self in (ErrorKind.TRANSIENT, ErrorKind.AMBIGUOUS, ErrorKind.UNKNOWN)


class OrderKeeperError(Exception):
    """Base class for all engine errors."""

    kind: ErrorKind = ErrorKind.UNKNOWN


class TransientError(OrderKeeperError):
    """A failure that is expected to clear on its own (network, rate limit)."""

    kind = ErrorKind.TRANSIENT


class AmbiguousOutcomeError(TransientError):
    """A call timed out and its server-side effect is unknown."""

    kind = ErrorKind.AMBIGUOUS

    def __init__(self, operation: str, timeout: float | None = None) -> None:
        self.operation = operation
        self.timeout = timeout
        detail = f" after {timeout:g}s" if timeout is not None else ""
        super().__init__(f"Outcome of '{operation}' unknown: timed out{detail}")


class ConcurrentTransitionError(TransientError):
    """Another attempt advanced the same order record first."""

    def __init__(self, client_order_id: str) -> None:
        self.client_order_id = client_order_id
        super().__init__(
            f"Order {client_order_id} was modified by a concurrent attempt"
        )


class OrderRejectedError(OrderKeeperError):
    """The brokerage explicitly rejected an order. Never retried."""

    kind = ErrorKind.REJECTION

    def __init__(self, client_order_id: str, reason: str) -> None:
        self.client_order_id = client_order_id
        self.reason = reason
        super().__init__(f"Order {client_order_id} rejected: {reason}")


class RiskRefusedError(OrderKeeperError):
    """The risk gate refused a submission before any brokerage call."""

    kind = ErrorKind.POLICY

    def __init__(self, reasons: list[str]) -> None:
        self.reasons = list(reasons)
        super().__init__(f"Order refused by risk gate: {', '.join(self.reasons)}")


class InvalidWorkItemError(OrderKeeperError):
    """A work item payload cannot be executed as given."""

    kind = ErrorKind.INVALID


TRANSIENT_PATTERNS: list[re.Pattern[str]] = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"timeout",
        r"timed out",
        r"network",
        r"ECONNREFUSED",
        r"ETIMEDOUT",
        r"rate.?limit",
        r"\b429\b",
        r"\b5\d\d\b",
        r"temporar",
        r"unavailable",
        r"database is locked",
    )
]

REJECTION_PATTERNS: list[re.Pattern[str]] = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"invalid.*symbol",
        r"insufficient.*buying",
        r"insufficient.*funds",
        r"account.*blocked",
        r"not.*tradable",
        r"invalid.*quantity",
        r"market.*closed",
        r"rejected",
        r"\b4(?:0\d|1\d|2[0-8])\b",
    )
]


def classify_error(error: BaseException) -> ErrorKind:
    """Map any exception onto an :class:`ErrorKind`.

    Typed engine errors carry their own kind. Standard library timeouts are
    ambiguous; connection and storage errors are transient. Everything else
    is matched against known broker message patterns (rejections first, so
    "rejected: 503" style messages stay terminal).
    """
    if isinstance(error, OrderKeeperError):
        return error.kind
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return ErrorKind.AMBIGUOUS
    if isinstance(error, (ConnectionError, sqlite3.OperationalError)):
        return ErrorKind.TRANSIENT

    message = str(error)
    if any(p.search(message) for p in REJECTION_PATTERNS):
        return ErrorKind.REJECTION
    if any(p.search(message) for p in TRANSIENT_PATTERNS):
        return ErrorKind.TRANSIENT
    return ErrorKind.UNKNOWN
