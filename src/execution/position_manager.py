"""
Position Manager.

Venue-facing position operations used by the follow engine: live position
lookup by source symbol, closing, orphaned-order cleanup and stop/target
evaluation against the source trader's exit plan.
"""
from decimal import Decimal
from typing import List, Optional

from src.domain.models import BrokerPosition, CloseResult, Position, PositionSide
from src.domain.protocols import BrokerClient
from src.exceptions import DataError, OperationalError
from src.monitoring.logger import get_logger

logger = get_logger(__name__)


class PositionManager:
    """Implements PositionManagerProtocol on top of a BrokerClient."""

    def __init__(self, broker: BrokerClient):
        self._broker = broker

    async def find_live_position(self, symbol: str, detailed: bool = False) -> Optional[BrokerPosition]:
        """
        Our open position for a source symbol, or None.

        detailed=True reads the full position set, which carries margin
        type, isolated margin and unrealized PnL on every venue.
        """
        broker_symbol = self._broker.convert_symbol(symbol)
        if detailed:
            positions: List[BrokerPosition] = await self._broker.get_all_positions()
        else:
            positions = await self._broker.get_positions(broker_symbol)
        for position in positions:
            if position.symbol == broker_symbol and position.is_open:
                return position
        return None

    async def close_position(self, symbol: str, reason: str) -> CloseResult:
        broker_symbol = self._broker.convert_symbol(symbol)
        logger.info("CLOSE_POSITION", symbol=symbol, broker_symbol=broker_symbol, reason=reason)
        try:
            result = await self._broker.close_position(broker_symbol)
        except (OperationalError, DataError) as e:
            logger.error("CLOSE_POSITION_FAILED", symbol=symbol, error=str(e))
            return CloseResult(success=False, error=str(e))
        if not result.success:
            return CloseResult(success=False, error=result.error)
        return CloseResult(success=True)

    async def clean_orphaned_orders(self) -> int:
        """Cancel protective orders whose position is gone. Returns the count."""
        return await self._broker.cancel_orphaned_orders()

    @staticmethod
    def _price_crossed(side: PositionSide, current: Decimal, level: Decimal, stop: bool) -> bool:
        """
        True when current price has reached ``level``.

        Long: stop below, target above. Short: mirrored.
        """
        if level is None or level <= 0 or current <= 0:
            return False
        if side == PositionSide.LONG:
            return current <= level if stop else current >= level
        return current >= level if stop else current <= level

    def get_exit_reason(self, position: Position) -> str:
        plan = position.exit_plan
        if plan is None or not position.is_open:
            return ""
        if self._price_crossed(position.direction, position.current_price, plan.stop_loss, stop=True):
            return f"Stop loss hit at {position.current_price} (stop {plan.stop_loss})"
        if self._price_crossed(position.direction, position.current_price, plan.profit_target, stop=False):
            return f"Profit target hit at {position.current_price} (target {plan.profit_target})"
        return ""

    def should_exit_position(self, position: Position) -> bool:
        return bool(self.get_exit_reason(position))
