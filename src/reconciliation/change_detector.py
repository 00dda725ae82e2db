"""
Position change detection.

Two modes:

- compare mode diffs the source against the previous (reconstructed) state
  and classifies every symbol by entry_oid and quantity transitions;
- trust mode ignores history and asks the venue what is already held,
  emitting a new_position change only where the live position does not
  already mirror the source.

Profit targets are checked first in both modes and short-circuit any other
classification for that symbol.
"""
from decimal import Decimal
from typing import List, Optional

from src.config.config import FollowConfig
from src.domain.models import (
    ZERO,
    BrokerPosition,
    ChangeType,
    FollowOptions,
    Position,
    PositionChange,
)
from src.domain.protocols import PositionManagerProtocol
from src.exceptions import DataError, OperationalError
from src.monitoring.logger import get_logger

logger = get_logger(__name__)

HUNDRED = Decimal("100")


def user_margin_ratio(current_positions: List[Position], total_margin: Optional[Decimal]) -> Decimal:
    """
    User total margin / sum of the source's position margins.

    1 when no total margin is configured or the source reports no margin.
    """
    if total_margin is None or total_margin <= 0:
        return Decimal("1")
    agent_total = sum((p.notional_margin for p in current_positions if p.is_open), ZERO)
    if agent_total <= 0:
        return Decimal("1")
    return Decimal(str(total_margin)) / agent_total


def target_margin_for(
    position: Position, current_positions: List[Position], total_margin: Optional[Decimal]
) -> Decimal:
    """Margin the user should hold for this position."""
    return position.notional_margin * user_margin_ratio(current_positions, total_margin)


class ChangeDetector:
    """Classifies source positions into PositionChange objects."""

    def __init__(self, position_manager: PositionManagerProtocol, config: FollowConfig):
        self.position_manager = position_manager
        self.config = config

    # ---------- profit ----------

    async def calculate_profit_percentage(self, position: Position) -> Decimal:
        """
        Unrealized PnL of our live position as a percentage of its margin.

        Uses the venue's own PnL and margin figures. Any failure, missing
        position or non-finite result yields 0.
        """
        if not position.is_open:
            return ZERO
        try:
            live = await self.position_manager.find_live_position(position.symbol, detailed=True)
        except (OperationalError, DataError) as e:
            logger.error("PROFIT_CALC_FAILED", symbol=position.symbol, error=str(e))
            return ZERO

        if live is None or not live.is_open:
            logger.warning("PROFIT_CALC_NO_LIVE_POSITION", symbol=position.symbol)
            return ZERO

        margin = live.position_margin
        if margin <= 0:
            return ZERO
        profit_pct = live.unrealized_profit / margin * HUNDRED
        if not profit_pct.is_finite():
            logger.warning("PROFIT_CALC_INVALID", symbol=position.symbol, value=str(profit_pct))
            return ZERO

        logger.info(
            "PROFIT_CHECK",
            symbol=position.symbol,
            unrealized_pnl=str(live.unrealized_profit),
            margin=str(margin),
            margin_type=live.margin_type.value,
            profit_pct=f"{profit_pct:.2f}",
        )
        return profit_pct

    async def check_profit_target(
        self,
        position: Position,
        options: Optional[FollowOptions],
        previous: Optional[Position] = None,
    ) -> Optional[PositionChange]:
        if options is None or options.profit_target is None or not position.is_open:
            return None
        profit_pct = await self.calculate_profit_percentage(position)
        if profit_pct >= options.profit_target:
            logger.info(
                "PROFIT_TARGET_REACHED",
                symbol=position.symbol,
                profit_pct=f"{profit_pct:.2f}",
                target_pct=str(options.profit_target),
            )
            return PositionChange(
                symbol=position.symbol,
                type=ChangeType.PROFIT_TARGET_REACHED,
                current_position=position,
                previous_position=previous,
                profit_percentage=profit_pct,
            )
        return None

    # ---------- duplicate protection ----------

    def mirrors_live(self, position: Position, live: BrokerPosition, target_margin: Decimal) -> bool:
        """Same direction with margin and entry price within thresholds."""
        if live.direction != position.direction:
            return False
        margin_threshold = target_margin * Decimal(str(self.config.margin_diff_threshold_pct)) / HUNDRED
        price_threshold = position.entry_price * Decimal(str(self.config.price_diff_threshold_pct)) / HUNDRED
        margin_diff = abs(target_margin - live.notional_margin)
        price_diff = abs(position.entry_price - live.entry_price)
        return margin_diff < margin_threshold and price_diff < price_threshold

    async def find_live(self, symbol: str) -> Optional[BrokerPosition]:
        try:
            return await self.position_manager.find_live_position(symbol)
        except (OperationalError, DataError) as e:
            logger.error("LIVE_POSITION_LOOKUP_FAILED", symbol=symbol, error=str(e))
            return None

    # ---------- trust mode ----------

    async def detect_direct_changes(
        self, current_positions: List[Position], options: Optional[FollowOptions] = None
    ) -> List[PositionChange]:
        changes: List[PositionChange] = []
        total_margin = options.total_margin if options else None

        for position in current_positions:
            if not position.is_open:
                continue

            profit_change = await self.check_profit_target(position, options)
            if profit_change is not None:
                changes.append(profit_change)
                continue

            live = await self.find_live(position.symbol)
            if live is not None and live.is_open:
                target = target_margin_for(position, current_positions, total_margin)
                if self.mirrors_live(position, live, target):
                    logger.info(
                        "DUPLICATE_SKIPPED",
                        symbol=position.symbol,
                        live_margin=f"{live.notional_margin:.2f}",
                        target_margin=f"{target:.2f}",
                    )
                    continue

            changes.append(
                PositionChange(symbol=position.symbol, type=ChangeType.NEW_POSITION, current_position=position)
            )

        logger.info("DIRECT_CHANGES_DETECTED", positions=len(current_positions), changes=len(changes))
        return changes

    # ---------- compare mode ----------

    async def detect_changes(
        self,
        current_positions: List[Position],
        previous_positions: List[Position],
        options: Optional[FollowOptions] = None,
    ) -> List[PositionChange]:
        current_map = {p.symbol: p for p in current_positions}
        previous_map = {p.symbol: p for p in previous_positions}
        symbols = list(current_map) + [s for s in previous_map if s not in current_map]
        changes: List[PositionChange] = []

        for symbol in symbols:
            current = current_map.get(symbol)
            previous = previous_map.get(symbol)

            if current is not None:
                profit_change = await self.check_profit_target(current, options, previous)
                if profit_change is not None:
                    changes.append(profit_change)
                    continue

            current_qty = current.quantity if current is not None else ZERO

            if previous is None:
                if current_qty != 0:
                    changes.append(PositionChange(symbol, ChangeType.NEW_POSITION, current, None))
                continue

            if current is not None and current_qty != 0 and previous.entry_oid != current.entry_oid:
                logger.info("ENTRY_OID_CHANGED", symbol=symbol, previous=previous.entry_oid, current=current.entry_oid)
                changes.append(PositionChange(symbol, ChangeType.ENTRY_CHANGED, current, previous))
            elif previous.quantity != 0 and current_qty == 0:
                changes.append(PositionChange(symbol, ChangeType.POSITION_CLOSED, current, previous))
            else:
                changes.append(PositionChange(symbol, ChangeType.NO_CHANGE, current, previous))

        logger.info(
            "CHANGES_DETECTED",
            changes=len(changes),
            actionable=sum(1 for c in changes if c.type != ChangeType.NO_CHANGE),
        )
        return changes
