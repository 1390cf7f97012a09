"""Trading mode gating for order submissions.

Three modes decide which submissions a failed risk limit blocks and whether
automated submissions are accepted at all.

Modes:
    AUTONOMOUS -- Limit failures block automated submissions only; an
                  operator's manual order goes through.
    SEMI_AUTO  -- Limit failures block every submission (default).
    MANUAL     -- As SEMI_AUTO, and automated submissions are refused
                  outright.
"""

from __future__ import annotations

from enum import Enum


class SubmissionSource(str, Enum):
    """Origin of a submission request."""

    AUTOMATED = "automated"
    MANUAL = "manual"


class TradingMode(str, Enum):
    """Operator-selected trading mode."""

    AUTONOMOUS = "autonomous"
    SEMI_AUTO = "semi-auto"
    MANUAL = "manual"


def limits_apply(mode: TradingMode, source: SubmissionSource) -> bool:
    """Return True if a failed limit check blocks a submission from *source*."""
    if TradingMode(mode) is TradingMode.AUTONOMOUS:
        return SubmissionSource(source) is SubmissionSource.AUTOMATED
    return True


def accepts_source(mode: TradingMode, source: SubmissionSource) -> bool:
    """Return False if *mode* refuses every submission from *source*."""
    if TradingMode(mode) is TradingMode.MANUAL:
        return SubmissionSource(source) is SubmissionSource.MANUAL
    return True
