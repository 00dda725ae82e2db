"""
Explicit result wrapping at the follow call boundary.

``guarded_follow`` serializes passes per agent and converts the engine's
domain exceptions into a FollowOutcome so schedulers and the CLI can report
failures without try/except around every call. Programming errors are not
wrapped.
"""
from dataclasses import dataclass, field
from typing import List, Optional

from src.domain.models import FollowOptions, FollowPlan, Position
from src.exceptions import FollowSystemError
from src.follow.agent_lock import AgentLockRegistry
from src.follow.follow_service import FollowService
from src.monitoring.logger import bind_agent_context, clear_agent_context, get_logger

logger = get_logger(__name__)


@dataclass
class FollowOutcome:
    agent_id: str
    plans: List[FollowPlan] = field(default_factory=list)
    error: Optional[FollowSystemError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def guarded_follow(
    service: FollowService,
    locks: AgentLockRegistry,
    agent_id: str,
    current_positions: List[Position],
    options: Optional[FollowOptions] = None,
    wait: bool = True,
) -> FollowOutcome:
    """Run ``follow_agent`` under the agent's lock and wrap the result."""
    bind_agent_context(agent_id)
    try:
        async with locks.acquire(agent_id, wait=wait):
            plans = await service.follow_agent(agent_id, current_positions, options)
        return FollowOutcome(agent_id=agent_id, plans=plans)
    except FollowSystemError as e:
        logger.error("FOLLOW_PASS_FAILED", agent_id=agent_id, error=str(e), error_type=type(e).__name__)
        return FollowOutcome(agent_id=agent_id, error=e)
    finally:
        clear_agent_context()
