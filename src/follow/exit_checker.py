"""
Exit-condition checks driven by the source trader's own exit plan.
"""
from typing import List

from src.domain.models import FollowPlan, PlanAction, Position
from src.domain.protocols import PositionManagerProtocol
from src.monitoring.logger import get_logger

logger = get_logger(__name__)


class ExitConditionChecker:
    """Emits an EXIT plan for every open position whose stop or target was hit."""

    def __init__(self, position_manager: PositionManagerProtocol):
        self.position_manager = position_manager

    def check(self, positions: List[Position], agent_id: str) -> List[FollowPlan]:
        plans: List[FollowPlan] = []
        for position in positions:
            if not position.is_open or not self.position_manager.should_exit_position(position):
                continue
            reason = self.position_manager.get_exit_reason(position)
            plans.append(
                FollowPlan(
                    action=PlanAction.EXIT,
                    symbol=position.symbol,
                    side=position.side.opposite,
                    quantity=abs(position.quantity),
                    leverage=position.leverage,
                    agent_id=agent_id,
                    reason=f"{reason} by {agent_id}",
                    exit_price=position.current_price,
                    position=position,
                )
            )
            logger.info("EXIT_CONDITION_TRIGGERED", symbol=position.symbol, reason=reason)
        return plans
