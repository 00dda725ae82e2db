"""
Execution module.

Venue adapters and plan execution.

ARCHITECTURE:
    PlanExecutor (risk gate + order placement + ledger write)
        │
        ├── TradingExecutor  (CcxtFuturesBroker or PaperBroker)
        │
        └── PositionManager  (position lookup/close over a BrokerClient)
"""

from src.execution.plan_executor import (
    ExecutionReport,
    ExecutionStatus,
    PlanExecution,
    PlanExecutor,
)
from src.execution.position_manager import PositionManager

__all__ = [
    "ExecutionReport",
    "ExecutionStatus",
    "PlanExecution",
    "PlanExecutor",
    "PositionManager",
]
