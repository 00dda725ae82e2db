"""
Timed follow loop: poll the source, plan, execute, sleep, repeat.

One FollowService (and so one ConfirmationStore) and one AgentLockRegistry
are shared by every cycle, so a recorded confirmation and the single-flight
guard span passes. A failing cycle is logged and the loop carries on; a
failure while executing plans halts it.
"""
import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

from src.domain.models import FollowOptions, Position
from src.exceptions import FollowSystemError
from src.execution.plan_executor import ExecutionReport, PlanExecutor
from src.follow.agent_lock import AgentLockRegistry
from src.follow.follow_service import FollowService
from src.follow.handlers import Sleep
from src.follow.outcome import guarded_follow
from src.monitoring.logger import get_logger

logger = get_logger(__name__)

PositionSource = Callable[[], Awaitable[List[Position]]]


@dataclass
class CycleResult:
    cycle: int
    report: Optional[ExecutionReport] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class FollowLoop:
    """Runs follow passes for one agent every ``interval_seconds``."""

    def __init__(
        self,
        agent_id: str,
        service: FollowService,
        executor: PlanExecutor,
        source: PositionSource,
        options: Optional[FollowOptions] = None,
        interval_seconds: float = 60.0,
        max_cycles: Optional[int] = None,
        risk_only: bool = False,
        locks: Optional[AgentLockRegistry] = None,
        on_cycle: Optional[Callable[[CycleResult], None]] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.agent_id = agent_id
        self.service = service
        self.executor = executor
        self.source = source
        self.options = options or FollowOptions()
        self.interval_seconds = interval_seconds
        self.max_cycles = max_cycles
        self.risk_only = risk_only
        self.locks = locks or AgentLockRegistry()
        self.on_cycle = on_cycle
        self._sleep = sleep
        self.active = False
        self.halted = False
        self.cycles = 0

    def stop(self) -> None:
        self.active = False

    async def run_cycle(self) -> CycleResult:
        self.cycles += 1
        result = CycleResult(cycle=self.cycles)

        try:
            positions = await self.source()
        except FollowSystemError as e:
            logger.error("SOURCE_FETCH_FAILED", agent_id=self.agent_id, cycle=self.cycles, error=str(e))
            result.error = str(e)
            return result

        outcome = await guarded_follow(self.service, self.locks, self.agent_id, positions, self.options)
        if not outcome.ok:
            result.error = str(outcome.error)
            return result

        try:
            result.report = await self.executor.execute_plans(
                self.agent_id,
                outcome.plans,
                risk_only=self.risk_only,
                price_tolerance=self.options.price_tolerance,
                total_margin=self.options.total_margin,
            )
        except FollowSystemError as e:
            # a placed order may be missing from the ledger; another pass could duplicate it
            logger.critical("FOLLOW_LOOP_HALTED", agent_id=self.agent_id, cycle=self.cycles, error=str(e))
            result.error = str(e)
            self.halted = True
            self.stop()
        return result

    async def run(self) -> List[CycleResult]:
        """Loop until ``max_cycles`` is reached or ``stop()`` is called."""
        self.active = True
        results: List[CycleResult] = []
        logger.info(
            "FOLLOW_LOOP_START",
            agent_id=self.agent_id,
            interval_seconds=self.interval_seconds,
            max_cycles=self.max_cycles,
        )

        while self.active:
            if self.max_cycles is not None and self.cycles >= self.max_cycles:
                logger.info("FOLLOW_LOOP_MAX_CYCLES", agent_id=self.agent_id, cycles=self.cycles)
                break

            started = time.monotonic()
            result = await self.run_cycle()
            results.append(result)
            if self.on_cycle is not None:
                self.on_cycle(result)

            elapsed = time.monotonic() - started
            logger.info(
                "FOLLOW_CYCLE_SUMMARY",
                agent_id=self.agent_id,
                cycle=result.cycle,
                ok=result.ok,
                elapsed_seconds=f"{elapsed:.2f}",
                **(result.report.summary if result.report is not None else {}),
            )

            if not self.active or (self.max_cycles is not None and self.cycles >= self.max_cycles):
                continue
            await self._sleep(max(0.0, self.interval_seconds - elapsed))

        self.active = False
        logger.info("FOLLOW_LOOP_STOPPED", agent_id=self.agent_id, cycles=self.cycles)
        return results

