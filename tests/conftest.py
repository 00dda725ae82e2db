"""
Pytest configuration and shared fixtures.
"""
import os

# Unit tests must never touch a real ledger database.
os.environ.setdefault("DATABASE_URL", "sqlite://")

from decimal import Decimal
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.config.config import (
    CapitalConfig,
    FollowConfig,
    ReconciliationConfig,
    RiskConfig,
)
from src.domain.models import (
    AccountInfo,
    BrokerPosition,
    CloseResult,
    ExitPlan,
    MarginType,
    Position,
)


def pytest_configure(config):
    """Register custom marks. Async tests require pytest-asyncio."""
    config.addinivalue_line("markers", "asyncio: mark test as async (pytest-asyncio).")


def make_position(
    symbol: str = "BTC",
    quantity: str = "0.01",
    entry_price: str = "50000",
    current_price: Optional[str] = None,
    leverage: str = "10",
    margin: str = "0",
    entry_oid: int = 12345,
    exit_plan: Optional[ExitPlan] = None,
) -> Position:
    """Source position with Decimal fields built from strings."""
    return Position(
        symbol=symbol,
        quantity=Decimal(quantity),
        entry_price=Decimal(entry_price),
        current_price=Decimal(current_price if current_price is not None else entry_price),
        leverage=Decimal(leverage),
        margin=Decimal(margin),
        entry_oid=entry_oid,
        exit_plan=exit_plan,
    )


def make_broker_position(
    symbol: str = "BTCUSDT",
    position_amt: str = "0.01",
    entry_price: str = "50000",
    leverage: str = "10",
    unrealized_profit: str = "0",
    margin_type: MarginType = MarginType.CROSSED,
    isolated_margin: str = "0",
) -> BrokerPosition:
    return BrokerPosition(
        symbol=symbol,
        position_amt=Decimal(position_amt),
        entry_price=Decimal(entry_price),
        leverage=Decimal(leverage),
        unrealized_profit=Decimal(unrealized_profit),
        margin_type=margin_type,
        isolated_margin=Decimal(isolated_margin),
        mark_price=Decimal(entry_price),
    )


@pytest.fixture
def pos():
    """Factory for source positions."""
    return make_position


@pytest.fixture
def live_pos():
    """Factory for our own venue positions."""
    return make_broker_position


@pytest.fixture
def follow_config() -> FollowConfig:
    return FollowConfig()


@pytest.fixture
def reconciliation_config() -> ReconciliationConfig:
    return ReconciliationConfig()


@pytest.fixture
def risk_config() -> RiskConfig:
    return RiskConfig()


@pytest.fixture
def capital_config() -> CapitalConfig:
    return CapitalConfig()


@pytest.fixture
def position_manager():
    """PositionManagerProtocol double: flat account, no exit triggers."""
    pm = MagicMock()
    pm.clean_orphaned_orders = AsyncMock(return_value=0)
    pm.close_position = AsyncMock(return_value=CloseResult(success=True))
    pm.find_live_position = AsyncMock(return_value=None)
    pm.should_exit_position = MagicMock(return_value=False)
    pm.get_exit_reason = MagicMock(return_value="")
    return pm


@pytest.fixture
def order_history():
    """OrderHistoryManager double with an empty ledger."""
    history = MagicMock()
    history.is_order_processed.return_value = False
    history.get_processed_orders_by_agent.return_value = []
    history.get_latest_profit_exit.return_value = None
    return history


@pytest.fixture
def trading_executor():
    """TradingExecutor double with 10k free balance and no positions."""
    executor = MagicMock()
    executor.get_account_info = AsyncMock(return_value=AccountInfo(available_balance=Decimal("10000")))
    executor.get_positions = AsyncMock(return_value=[])
    executor.place_order = AsyncMock()
    return executor


@pytest.fixture
def no_sleep():
    return AsyncMock()


@pytest.fixture(autouse=True)
def retry_sleep(monkeypatch):
    """Retry backoff never really sleeps in tests."""
    fake = AsyncMock()
    monkeypatch.setattr("src.utils.retry._sleep", fake)
    return fake


@pytest.fixture
def sqlite_history():
    """SqlOrderHistoryManager on a fresh in-memory SQLite database."""
    from src.storage.db import init_db
    from src.storage.order_history import SqlOrderHistoryManager

    db = init_db("sqlite://")
    yield SqlOrderHistoryManager(db)
    db.engine.dispose()
