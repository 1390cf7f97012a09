"""Risk management module: persisted limits, kill switch, exposure checks, modes.

Public API:
    - RiskLimits: Frozen snapshot of the persisted limits row
    - RiskLimitsStore: Cached, lock-protected persistence incl. kill switch
    - TradingMode: autonomous / semi-auto / manual
    - LimitCheck: Single upper- or lower-bound threshold check
    - check_exposure_limits: Post-fill exposure, count and size checks
"""

from orderkeeper.risk.exposure import (
    ExposureProjection,
    LimitCheck,
    check_exposure_limits,
    project_exposure,
)
from orderkeeper.risk.limits import RiskLimits, RiskLimitsStore
from orderkeeper.risk.modes import (
    SubmissionSource,
    TradingMode,
    accepts_source,
    limits_apply,
)

__all__ = [
    "ExposureProjection",
    "LimitCheck",
    "RiskLimits",
    "RiskLimitsStore",
    "SubmissionSource",
    "TradingMode",
    "accepts_source",
    "check_exposure_limits",
    "limits_apply",
    "project_exposure",
]
