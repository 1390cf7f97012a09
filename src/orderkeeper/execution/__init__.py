"""Execution layer: brokerage adapter, order ledger, risk gate and reconciliation.

Public API:
    - Brokerage: Abstract brokerage protocol consumed by the engine
    - BrokerGateway: ib_async implementation with reconnection
    - OrderLedger: SQLite orders, events, fills, positions and account mirror
    - OrderExecutor: Idempotent submit/cancel/sync state machine
    - RiskGate: Mandatory pre-trade check for every submission
    - Reconciler: Brokerage-wins ledger repair and unreal-order cleanup
    - WorkItemHandlers: One handler per work item type
    - ExecutionEngine: Component wiring and APScheduler jobs
"""

from orderkeeper.execution.broker import (
    BrokerAccount,
    BrokerGateway,
    BrokerOrder,
    BrokerPosition,
    Brokerage,
    call_with_timeout,
)
from orderkeeper.execution.handlers import WorkItemHandlers
from orderkeeper.execution.ledger import OrderLedger
from orderkeeper.execution.order_executor import OrderExecutor
from orderkeeper.execution.reconciler import (
    FindingCategory,
    ReconciliationFinding,
    ReconciliationReport,
    Reconciler,
    Resolution,
    UnrealOrder,
)
from orderkeeper.execution.risk_gate import RiskDecision, RiskGate
from orderkeeper.execution.runner import ExecutionEngine
from orderkeeper.execution.types import (
    AccountSnapshot,
    FillRecord,
    OrderEvent,
    OrderExecutionRecord,
    OrderIntent,
    OrderSource,
    OrderStatus,
    PositionRecord,
)

__all__ = [
    "AccountSnapshot",
    "BrokerAccount",
    "BrokerGateway",
    "BrokerOrder",
    "BrokerPosition",
    "Brokerage",
    "ExecutionEngine",
    "FillRecord",
    "FindingCategory",
    "OrderEvent",
    "OrderExecutionRecord",
    "OrderExecutor",
    "OrderIntent",
    "OrderLedger",
    "OrderSource",
    "OrderStatus",
    "PositionRecord",
    "ReconciliationFinding",
    "ReconciliationReport",
    "Reconciler",
    "Resolution",
    "RiskDecision",
    "RiskGate",
    "UnrealOrder",
    "WorkItemHandlers",
    "call_with_timeout",
]
