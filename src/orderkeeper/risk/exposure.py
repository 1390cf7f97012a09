"""Pre-trade exposure limits.

Implements three limit checks evaluated against the portfolio as it would
look after the order fills:
    - max_total_exposure: sum of |market value| over equity
    - max_positions_count: number of open positions
    - max_position_size: |market value| of the traded symbol over equity

Checks are stateless. An order that does not increase the traded symbol's
exposure (a reduction or close) is never blocked by them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from orderkeeper.execution.types import PositionRecord


class LimitCheck:
    """Single threshold check.

    For upper-bound limits the check fails when the value EXCEEDS the
    threshold; for lower-bound limits (losses) when it falls BELOW it.
    """

    def __init__(self, name: str, threshold: float, upper_bound: bool = True) -> None:
        self.name = name
        self.threshold = threshold
        self.upper_bound = upper_bound

    def check(self, current_value: float) -> bool:
        """Return True if OK to trade at *current_value*."""
        if self.upper_bound:
            return current_value <= self.threshold
        return current_value > self.threshold


@dataclass
class ExposureProjection:
    """Portfolio figures after a hypothetical fill, in percent of equity."""

    total_exposure_percent: float
    position_percent: float
    positions_count: int
    increases_exposure: bool
    triggered: list[str] = field(default_factory=list)


def project_exposure(
    positions: list[PositionRecord],
    equity: float,
    symbol: str,
    side: str,
    order_value: float,
) -> ExposureProjection:
    """Project exposure after an order of *order_value* dollars on *symbol*.

    Buying into a long (or flat) position and selling into a short (or
    flat) one add to the symbol's exposure; anything else reduces it.
    """
    current = {p.symbol: p for p in positions}
    total = sum(abs(p.market_value) for p in positions)

    existing = current.get(symbol)
    existing_value = abs(existing.market_value) if existing else 0.0
    if existing is None:
        adds = True
    else:
        adds = (side == "buy") == (existing.side == "long")

    if adds:
        new_value = existing_value + order_value
    else:
        new_value = abs(existing_value - order_value)

    total_after = total - existing_value + new_value
    count_after = len(current)
    if existing is None and new_value > 0:
        count_after += 1
    elif existing is not None and new_value == 0:
        count_after -= 1

    return ExposureProjection(
        total_exposure_percent=total_after / equity * 100.0,
        position_percent=new_value / equity * 100.0,
        positions_count=count_after,
        increases_exposure=new_value > existing_value,
    )


def check_exposure_limits(
    positions: list[PositionRecord],
    equity: float,
    symbol: str,
    side: str,
    order_value: float,
    max_total_exposure_percent: float,
    max_positions_count: int,
    max_position_size_percent: float,
) -> ExposureProjection:
    """Evaluate all exposure limits for an order.

    Returns the projection with ``triggered`` holding the names of the
    failed limits (empty when the order is within limits).
    """
    projection = project_exposure(positions, equity, symbol, side, order_value)
    if not projection.increases_exposure:
        return projection

    checks = {
        "max_total_exposure": (
            LimitCheck("max_total_exposure", max_total_exposure_percent),
            projection.total_exposure_percent,
        ),
        "max_positions_count": (
            LimitCheck("max_positions_count", max_positions_count),
            projection.positions_count,
        ),
        "max_position_size": (
            LimitCheck("max_position_size", max_position_size_percent),
            projection.position_percent,
        ),
    }
    projection.triggered = [
        name for name, (limit, value) in checks.items() if not limit.check(value)
    ]
    return projection
