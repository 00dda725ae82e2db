"""
Per-agent single-flight locks.

Two overlapping passes for the same agent could both see "no live position"
and submit twice, so passes are serialized per agent id. Distinct agents
never contend.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

from src.exceptions import AgentBusyError


class AgentLockRegistry:
    """
    Hands out one asyncio.Lock per agent id.

    A lock lives only while some pass holds or waits for it, so a
    long-running poll loop does not accumulate locks for agents it no
    longer follows.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        # holders plus waiters per agent
        self._users: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def is_busy(self, agent_id: str) -> bool:
        lock = self._locks.get(agent_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def acquire(self, agent_id: str, wait: bool = True) -> AsyncIterator[None]:
        """
        Hold the agent's lock for the duration of the block.

        Raises:
            AgentBusyError: wait=False and a pass is already running
        """
        if not wait and self.is_busy(agent_id):
            raise AgentBusyError(f"Follow pass already running for agent {agent_id}")

        lock = self._locks.setdefault(agent_id, asyncio.Lock())
        self._users[agent_id] = self._users.get(agent_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[agent_id] -= 1
            if self._users[agent_id] == 0:
                del self._users[agent_id]
                del self._locks[agent_id]
