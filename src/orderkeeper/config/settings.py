"""Engine configuration: defaults, dict overrides and ORDERKEEPER_* env vars.

Precedence (highest first): explicit ``overrides`` dict, environment
variables, dataclass defaults. Every field maps to an env var named
``ORDERKEEPER_<FIELD_NAME_UPPER>``; for example ``poll_interval_seconds`` is
read from ``ORDERKEEPER_POLL_INTERVAL_SECONDS``.

Live brokerage ports additionally require ``ORDERKEEPER_LIVE_CONFIRMED=true``
at engine start (see ``ExecutionEngine.start``).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path

ENV_PREFIX = "ORDERKEEPER_"

DEFAULT_DB_PATH: Path = Path.home() / ".orderkeeper" / "orderkeeper.db"


@dataclass(frozen=True)
class EngineConfig:
    """Immutable runtime configuration for the execution engine.

    Attributes
    ----------
    db_path : str
        SQLite database shared by the work item store, ledger and risk limits.
    broker_host, broker_port, broker_client_id : str, int, int
        IB Gateway/TWS connection. Port 4002 (Gateway paper) by default.
    broker_timeout_seconds : float
        Timeout applied to every outbound brokerage call.
    poll_interval_seconds : float
        Worker poll interval.
    batch_size : int
        Maximum work items claimed per poll.
    handler_timeout_seconds : float
        Upper bound on a single handler invocation.
    stale_lease_seconds : float
        RUNNING items older than this are treated as abandoned.
    default_max_attempts : int
        ``max_attempts`` for items enqueued without an explicit value.
    backoff_base_seconds, backoff_cap_seconds : float
        Retry delay is ``min(base * 2**attempts, cap)``.
    reconcile_interval_seconds : int
        Period of the RECONCILE trigger; also the idempotency bucket width.
    reconcile_grace_seconds : float
        Age a local order must reach before its absence at the brokerage
        counts as evidence that it is unreal.
    reconcile_order_limit : int
        Number of brokerage orders fetched per reconciliation run.
    trading_mode : str
        ``"paper"`` or ``"live"``.
    """

    db_path: str = str(DEFAULT_DB_PATH)
    broker_host: str = "127.0.0.1"
    broker_port: int = 4002
    broker_client_id: int = 1
    broker_timeout_seconds: float = 10.0
    poll_interval_seconds: float = 1.0
    batch_size: int = 5
    handler_timeout_seconds: float = 60.0
    stale_lease_seconds: float = 300.0
    default_max_attempts: int = 3
    backoff_base_seconds: float = 1.0
    backoff_cap_seconds: float = 300.0
    reconcile_interval_seconds: int = 45
    reconcile_grace_seconds: float = 180.0
    reconcile_order_limit: int = 500
    trading_mode: str = "paper"

    @classmethod
    def from_env(
        cls,
        overrides: dict | None = None,
        environ: dict[str, str] | None = None,
    ) -> EngineConfig:
        """Build a config from the environment plus explicit overrides.

        Unknown override keys raise ``ValueError`` so typos surface early.
        """
        env = os.environ if environ is None else environ
        values: dict[str, object] = {}

        for f in fields(cls):
            raw = env.get(ENV_PREFIX + f.name.upper())
            if raw is not None and raw != "":
                values[f.name] = _coerce(raw, type(getattr(cls(), f.name)))

        for key, value in (overrides or {}).items():
            if key not in {f.name for f in fields(cls)}:
                raise ValueError(f"Unknown config key: {key}")
            if value is not None:
                values[key] = value

        config = replace(cls(), **values)
        config.validate()
        return config

    def validate(self) -> None:
        """Raise ``ValueError`` for settings that cannot work together."""
        if self.trading_mode not in ("paper", "live"):
            raise ValueError(
                f"trading_mode must be 'paper' or 'live', got {self.trading_mode!r}"
            )
        if self.default_max_attempts < 1:
            raise ValueError("default_max_attempts must be >= 1")
        if self.backoff_cap_seconds < self.backoff_base_seconds:
            raise ValueError("backoff_cap_seconds must be >= backoff_base_seconds")
        if self.reconcile_interval_seconds <= 0:
            raise ValueError("reconcile_interval_seconds must be positive")
        if self.handler_timeout_seconds >= self.stale_lease_seconds:
            raise ValueError("handler_timeout_seconds must be < stale_lease_seconds")


def _coerce(raw: str, target: type) -> object:
    """Convert an env var string to the type of the field's default."""
    if target is bool:
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if target is int:
        return int(raw)
    if target is float:
        return float(raw)
    return raw
