"""
Plan executor.

Takes the plans a follow pass produced, runs each through the risk gate and
places the survivors. Every successful order is written to the order history
ledger so the same source epoch is never followed twice.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from src.domain.models import (
    FollowPlan,
    OrderRecord,
    OrderResult,
    PlanAction,
    RiskAssessment,
)
from src.domain.protocols import OrderHistoryManager, TradingExecutor
from src.exceptions import DataError, OperationalError
from src.monitoring.logger import get_logger
from src.risk.risk_manager import RiskManager

logger = get_logger(__name__)


class ExecutionStatus(str, Enum):
    """Outcome of one plan."""
    NOOP = "noop"
    BLOCKED = "blocked"
    RISK_ONLY = "risk-only"
    EXECUTED = "executed"
    SKIPPED = "skipped"


@dataclass
class PlanExecution:
    plan: FollowPlan
    risk: RiskAssessment
    status: ExecutionStatus
    order: Optional[OrderResult] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "plan": self.plan.to_dict(),
            "status": self.status.value,
            "risk": {
                "is_valid": self.risk.is_valid,
                "risk_score": round(self.risk.risk_score, 2),
                "warnings": list(self.risk.warnings),
                "max_loss": str(self.risk.max_loss),
            },
        }
        if self.order is not None:
            data["order"] = {
                "success": self.order.success,
                "order_id": self.order.order_id,
                "error": self.order.error,
            }
        return data


@dataclass
class ExecutionReport:
    agent_id: str
    executions: List[PlanExecution] = field(default_factory=list)
    executed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def count(self, status: ExecutionStatus) -> int:
        return sum(1 for e in self.executions if e.status == status)

    @property
    def summary(self) -> Dict[str, int]:
        return {
            "total": len(self.executions),
            "executed": self.count(ExecutionStatus.EXECUTED),
            "blocked": self.count(ExecutionStatus.BLOCKED),
            "skipped": self.count(ExecutionStatus.SKIPPED),
            "risk_only": self.count(ExecutionStatus.RISK_ONLY),
            "noop": self.count(ExecutionStatus.NOOP),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "executed_at": self.executed_at.isoformat(),
            "plans": [e.to_dict() for e in self.executions],
            "summary": self.summary,
        }


class PlanExecutor:
    """Risk-gates and places follow plans."""

    def __init__(
        self,
        trading_executor: TradingExecutor,
        risk_manager: RiskManager,
        order_history: OrderHistoryManager,
    ):
        self.trading_executor = trading_executor
        self.risk_manager = risk_manager
        self.order_history = order_history

    def _assess(
        self,
        plan: FollowPlan,
        price_tolerance: Optional[Decimal],
        total_margin: Optional[Decimal],
    ) -> RiskAssessment:
        source = plan.position
        if plan.action == PlanAction.ENTER and source is not None and source.entry_price > 0:
            return self.risk_manager.assess_risk_with_price_tolerance(
                plan,
                source.entry_price,
                source.current_price,
                plan.symbol,
                custom_tolerance=price_tolerance,
                user_total_margin=total_margin,
            )
        current = source.current_price if source is not None else None
        return self.risk_manager.assess_risk(plan, total_margin, current)

    async def execute_plans(
        self,
        agent_id: str,
        plans: List[FollowPlan],
        risk_only: bool = False,
        price_tolerance: Optional[Decimal] = None,
        total_margin: Optional[Decimal] = None,
    ) -> ExecutionReport:
        report = ExecutionReport(agent_id=agent_id)
        for plan in plans:
            report.executions.append(
                await self._execute_one(agent_id, plan, risk_only, price_tolerance, total_margin)
            )
        logger.info("PLANS_EXECUTED", agent_id=agent_id, **report.summary)
        return report

    async def _execute_one(
        self,
        agent_id: str,
        plan: FollowPlan,
        risk_only: bool,
        price_tolerance: Optional[Decimal],
        total_margin: Optional[Decimal],
    ) -> PlanExecution:
        try:
            risk = self._assess(plan, price_tolerance, total_margin)
        except DataError as e:
            logger.warning("RISK_ASSESSMENT_FAILED", symbol=plan.symbol, error=str(e))
            risk = RiskAssessment(
                is_valid=False,
                risk_score=float(self.risk_manager.config.max_risk_score),
                warnings=[str(e)],
                max_loss=self.risk_manager.calculate_max_loss(plan),
                suggested_position_size=plan.quantity,
            )

        if plan.quantity <= 0:
            return PlanExecution(plan, risk, ExecutionStatus.NOOP)
        if not risk.is_valid:
            logger.warning("PLAN_BLOCKED", symbol=plan.symbol, risk_score=risk.risk_score, warnings=risk.warnings)
            return PlanExecution(plan, risk, ExecutionStatus.BLOCKED)
        if risk_only:
            return PlanExecution(plan, risk, ExecutionStatus.RISK_ONLY)

        try:
            result = await self.trading_executor.place_order(plan)
        except (OperationalError, DataError) as e:
            logger.error("ORDER_PLACEMENT_FAILED", symbol=plan.symbol, action=plan.action.value, error=str(e))
            return PlanExecution(plan, risk, ExecutionStatus.SKIPPED, OrderResult(success=False, error=str(e)))

        if not result.success:
            logger.warning("ORDER_REJECTED", symbol=plan.symbol, action=plan.action.value, error=result.error)
            return PlanExecution(plan, risk, ExecutionStatus.SKIPPED, result)

        self._record(agent_id, plan, result)
        return PlanExecution(plan, risk, ExecutionStatus.EXECUTED, result)

    def _record(self, agent_id: str, plan: FollowPlan, result: OrderResult) -> None:
        source = plan.position
        price = result.filled_price or plan.entry_price or plan.exit_price
        if price is None:
            price = source.current_price if source is not None else Decimal("0")
        record = OrderRecord(
            agent_id=agent_id,
            symbol=plan.symbol,
            side=plan.side,
            quantity=plan.quantity,
            price=price,
            entry_oid=source.entry_oid if source is not None else 0,
            action=plan.action,
            order_id=result.order_id,
            source_quantity=abs(source.quantity) if source is not None else None,
        )
        try:
            self.order_history.add_processed_order(record)
        except OperationalError as e:
            # The order is live; a missing ledger row would cause a duplicate next pass
            logger.critical("ORDER_RECORD_LOST", symbol=plan.symbol, order_id=result.order_id, error=str(e))
            raise
        logger.info(
            "ORDER_EXECUTED",
            agent_id=agent_id,
            symbol=plan.symbol,
            action=plan.action.value,
            side=plan.side.value,
            quantity=str(plan.quantity),
            order_id=result.order_id,
        )
