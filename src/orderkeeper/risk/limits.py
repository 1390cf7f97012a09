"""Persisted risk limits and the kill switch.

A single ``risk_limits`` row holds the kill switch state, the exposure and
daily-loss limits and the trading mode. ``RiskLimitsStore`` caches the row
in process: reads return the cache without locking, mutations take a lock,
write the row and refresh the cache from storage.

The kill switch is sticky. Once activated (by an operator or by the
daily-loss breaker) it stays active across restarts until
:meth:`RiskLimitsStore.deactivate_kill_switch` is called.
"""

from __future__ import annotations

import sqlite3
import threading
from dataclasses import dataclass, fields, replace
from pathlib import Path

import structlog

from orderkeeper.clock import Clock, to_iso, utc_now
from orderkeeper.risk.modes import TradingMode

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RiskLimits:
    """Snapshot of the persisted risk configuration.

    Attributes
    ----------
    kill_switch_active : bool
        Refuse every new submission while True.
    kill_switch_reason, kill_switch_activated_at, kill_switch_activated_by : str | None
        Who stopped trading, when and why.
    max_position_size_percent : float
        Largest single position as percent of equity.
    max_total_exposure_percent : float
        Largest sum of |market value| as percent of equity.
    max_positions_count : int
        Largest number of open positions.
    daily_loss_limit_percent : float
        Daily loss (vs. prior close equity) that trips the kill switch.
    mode : TradingMode
        Which submissions the limits apply to.
    updated_at : str
        ISO 8601 UTC time of the last change.
    """

    kill_switch_active: bool = False
    kill_switch_reason: str | None = None
    kill_switch_activated_at: str | None = None
    kill_switch_activated_by: str | None = None
    max_position_size_percent: float = 10.0
    max_total_exposure_percent: float = 50.0
    max_positions_count: int = 10
    daily_loss_limit_percent: float = 5.0
    mode: TradingMode = TradingMode.SEMI_AUTO
    updated_at: str = ""


# Fields update() accepts; the kill switch has its own methods.
UPDATABLE_FIELDS = frozenset(
    {
        "max_position_size_percent",
        "max_total_exposure_percent",
        "max_positions_count",
        "daily_loss_limit_percent",
        "mode",
    }
)

_COLUMNS = [f.name for f in fields(RiskLimits)]


class RiskLimitsStore:
    """SQLite-backed risk limits row with an in-process cache.

    Parameters
    ----------
    db_path : str | Path
        Path to the SQLite database file. Created if it doesn't exist.
    clock : Callable[[], datetime]
        Injectable UTC clock.
    """

    def __init__(self, db_path: str | Path, clock: Clock = utc_now) -> None:
        self.db_path = Path(db_path)
        self._clock = clock
        self._lock = threading.Lock()
        # Writers from any thread are serialized by _lock.
        self.conn = sqlite3.connect(str(self.db_path), timeout=5.0, check_same_thread=False)
        self.conn.execute("PRAGMA journal_mode=WAL")
        self._create_tables()
        self._cache = self._load()

    def _create_tables(self) -> None:
        """Create the risk_limits table and its default row."""
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS risk_limits (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                kill_switch_active INTEGER NOT NULL DEFAULT 0,
                kill_switch_reason TEXT,
                kill_switch_activated_at TEXT,
                kill_switch_activated_by TEXT,
                max_position_size_percent REAL NOT NULL,
                max_total_exposure_percent REAL NOT NULL,
                max_positions_count INTEGER NOT NULL,
                daily_loss_limit_percent REAL NOT NULL,
                mode TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        defaults = RiskLimits()
        self.conn.execute(
            """
            INSERT OR IGNORE INTO risk_limits
            (id, kill_switch_active, max_position_size_percent,
             max_total_exposure_percent, max_positions_count,
             daily_loss_limit_percent, mode, updated_at)
            VALUES (1, 0, ?, ?, ?, ?, ?, ?)
            """,
            (
                defaults.max_position_size_percent,
                defaults.max_total_exposure_percent,
                defaults.max_positions_count,
                defaults.daily_loss_limit_percent,
                defaults.mode.value,
                to_iso(self._clock()),
            ),
        )
        self.conn.commit()

    def _load(self) -> RiskLimits:
        row = self.conn.execute(
            f"SELECT {', '.join(_COLUMNS)} FROM risk_limits WHERE id = 1"
        ).fetchone()
        values = dict(zip(_COLUMNS, row))
        values["kill_switch_active"] = bool(values["kill_switch_active"])
        values["mode"] = TradingMode(values["mode"])
        return RiskLimits(**values)

    def _write(self, limits: RiskLimits) -> RiskLimits:
        """Persist *limits* and refresh the cache. Caller holds the lock."""
        limits = replace(limits, updated_at=to_iso(self._clock()))
        assignments = ", ".join(f"{name} = ?" for name in _COLUMNS)
        params = [
            int(v) if isinstance(v, bool) else (v.value if isinstance(v, TradingMode) else v)
            for v in (getattr(limits, name) for name in _COLUMNS)
        ]
        with self.conn:
            self.conn.execute(f"UPDATE risk_limits SET {assignments} WHERE id = 1", params)
        self._cache = self._load()
        return self._cache

    def get(self) -> RiskLimits:
        """Return the cached limits (no lock, no I/O)."""
        return self._cache

    def refresh(self) -> RiskLimits:
        """Reload the row, picking up changes made by other processes."""
        with self._lock:
            self._cache = self._load()
            return self._cache

    def update(self, **changes: object) -> RiskLimits:
        """Change limit values and/or the trading mode.

        Raises
        ------
        ValueError
            For unknown or kill-switch fields, or out-of-range values.
        """
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update risk limit fields: {sorted(unknown)}")
        if "mode" in changes:
            changes["mode"] = TradingMode(changes["mode"])
        for name in ("max_position_size_percent", "max_total_exposure_percent", "daily_loss_limit_percent"):
            if name in changes and not 0 < float(changes[name]) <= 100:
                raise ValueError(f"{name} must be in (0, 100]")
        if "max_positions_count" in changes and int(changes["max_positions_count"]) < 1:
            raise ValueError("max_positions_count must be >= 1")

        with self._lock:
            current = self._load()
            limits = self._write(replace(current, **changes))
        logger.info("risk_limits_updated", **{k: str(v) for k, v in changes.items()})
        return limits

    def activate_kill_switch(self, reason: str, activated_by: str = "operator") -> RiskLimits:
        """Stop all new submissions. Re-activation keeps the first reason."""
        with self._lock:
            current = self._load()
            if current.kill_switch_active:
                self._cache = current
                return current
            limits = self._write(
                replace(
                    current,
                    kill_switch_active=True,
                    kill_switch_reason=reason,
                    kill_switch_activated_at=to_iso(self._clock()),
                    kill_switch_activated_by=activated_by,
                )
            )
        logger.critical(
            "kill_switch_activated",
            reason=reason,
            activated_by=activated_by,
        )
        return limits

    def deactivate_kill_switch(self, deactivated_by: str = "operator") -> RiskLimits:
        """Clear the kill switch. The only way it is ever cleared."""
        with self._lock:
            current = self._load()
            limits = self._write(
                replace(
                    current,
                    kill_switch_active=False,
                    kill_switch_reason=None,
                    kill_switch_activated_at=None,
                    kill_switch_activated_by=None,
                )
            )
        if current.kill_switch_active:
            logger.warning(
                "kill_switch_deactivated",
                deactivated_by=deactivated_by,
                previous_reason=current.kill_switch_reason,
            )
        return limits

    def close(self) -> None:
        """Close the database connection."""
        self.conn.close()
