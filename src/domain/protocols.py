"""
Domain protocols (interfaces) for dependency inversion.

The follow engine depends only on these contracts. Concrete adapters live in
src.execution (broker-backed position manager, ccxt broker), src.paper
(in-memory venue) and src.storage (SQL order history ledger). Tests replace
them with AsyncMock/MagicMock objects.
"""
from typing import List, Optional, Protocol, runtime_checkable

from src.domain.models import (
    AccountInfo,
    BrokerPosition,
    CloseResult,
    FollowPlan,
    OrderRecord,
    OrderResult,
    Position,
    ProfitExitRecord,
)


@runtime_checkable
class PositionManagerProtocol(Protocol):
    """Position-level operations against the caller's venue account."""

    async def clean_orphaned_orders(self) -> int: ...

    async def close_position(self, symbol: str, reason: str) -> CloseResult: ...

    async def find_live_position(self, symbol: str, detailed: bool = False) -> Optional[BrokerPosition]: ...

    def should_exit_position(self, position: Position) -> bool: ...

    def get_exit_reason(self, position: Position) -> str: ...


@runtime_checkable
class OrderHistoryManager(Protocol):
    """Idempotency ledger: which source epochs were already followed."""

    def is_order_processed(self, entry_oid: int, symbol: str) -> bool: ...

    def get_processed_orders_by_agent(self, agent_id: str) -> List[OrderRecord]: ...

    def add_processed_order(self, record: OrderRecord) -> None: ...

    def reload_history(self) -> None: ...

    def add_profit_exit_record(self, record: ProfitExitRecord) -> None: ...

    def get_latest_profit_exit(self, symbol: str) -> Optional[ProfitExitRecord]: ...

    def reset_symbol_order_status(self, symbol: str, entry_oid: int) -> None: ...


@runtime_checkable
class TradingExecutor(Protocol):
    """Account reads and order placement."""

    async def get_account_info(self) -> AccountInfo: ...

    async def get_positions(self) -> List[BrokerPosition]: ...

    async def place_order(self, plan: FollowPlan) -> OrderResult: ...


@runtime_checkable
class BrokerClient(Protocol):
    """Raw venue access used by the position manager."""

    def convert_symbol(self, symbol: str) -> str: ...

    async def get_positions(self, symbol: Optional[str] = None) -> List[BrokerPosition]: ...

    async def get_all_positions(self) -> List[BrokerPosition]: ...

    async def close_position(self, broker_symbol: str) -> OrderResult: ...

    async def cancel_orphaned_orders(self) -> int: ...
