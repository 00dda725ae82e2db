"""
Follow service: one reconciliation and planning pass per agent.

Pass order:
    0. cancel protective orders left without a position
    1. validate recorded history against the source
    2. pick compare mode or trust mode from the validation policy
    3. detect changes
    4. check the source exit plans; a triggered symbol skips entry and close handling
    5. handle each remaining change into plans
    6. append exit-condition plans for symbols still held
    7. resize ENTER plans to the user's margin budget

The service keeps no per-agent state; callers serialize passes per agent
(see src.follow.agent_lock).
"""
import asyncio
from dataclasses import replace
from decimal import Decimal
from typing import Any, Dict, List, Optional

from src.config.config import Config, FollowConfig, ReconciliationConfig
from src.domain.models import (
    ZERO,
    ChangeType,
    ConfirmationAction,
    FollowOptions,
    FollowPlan,
    PlanAction,
    Position,
    ValidationAction,
    ValidationResult,
)
from src.domain.protocols import OrderHistoryManager, PositionManagerProtocol, TradingExecutor
from src.exceptions import DataError, FollowAbortedError, OperationalError, PositionValidationError
from src.follow.exit_checker import ExitConditionChecker
from src.follow.handlers import ChangeHandlers, Sleep
from src.monitoring.logger import get_logger
from src.portfolio.capital_allocator import CapitalAllocationEngine
from src.reconciliation.change_detector import ChangeDetector
from src.reconciliation.confirmation_store import ConfirmationStore
from src.reconciliation.consistency import ConsistencyValidator
from src.risk.risk_manager import RiskManager

logger = get_logger(__name__)

CONFIRMATION_OPTIONS = [
    {
        "value": ConfirmationAction.TRUST_ACTUAL.value,
        "label": "Trust actual positions",
        "description": "Ignore history differences and follow the source's current positions",
    },
    {
        "value": ConfirmationAction.REBUILD_HISTORY.value,
        "label": "Rebuild history",
        "description": "Reload the order history and compare against it",
    },
    {
        "value": ConfirmationAction.ABORT.value,
        "label": "Abort",
        "description": "Pause following until the account is checked manually",
    },
]


class FollowService:
    """Plans the trades that mirror one source agent."""

    def __init__(
        self,
        position_manager: PositionManagerProtocol,
        order_history: OrderHistoryManager,
        trading_executor: TradingExecutor,
        risk_manager: RiskManager,
        capital_engine: CapitalAllocationEngine,
        confirmation_store: ConfirmationStore,
        follow_config: Optional[FollowConfig] = None,
        reconciliation_config: Optional[ReconciliationConfig] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.position_manager = position_manager
        self.order_history = order_history
        self.trading_executor = trading_executor
        self.risk_manager = risk_manager
        self.capital_engine = capital_engine
        self.confirmation_store = confirmation_store
        self.follow_config = follow_config or FollowConfig()

        self.validator = ConsistencyValidator(order_history, reconciliation_config or ReconciliationConfig())
        self.detector = ChangeDetector(position_manager, self.follow_config)
        self.handlers = ChangeHandlers(
            position_manager,
            order_history,
            trading_executor,
            risk_manager,
            self.detector,
            self.follow_config,
            sleep=sleep,
        )
        self.exit_checker = ExitConditionChecker(position_manager)

    @classmethod
    def from_config(
        cls,
        config: Config,
        position_manager: PositionManagerProtocol,
        order_history: OrderHistoryManager,
        trading_executor: TradingExecutor,
        confirmation_store: Optional[ConfirmationStore] = None,
    ) -> "FollowService":
        return cls(
            position_manager=position_manager,
            order_history=order_history,
            trading_executor=trading_executor,
            risk_manager=RiskManager(config.risk),
            capital_engine=CapitalAllocationEngine(config.capital),
            confirmation_store=confirmation_store
            or ConfirmationStore(ttl_seconds=config.reconciliation.confirmation_ttl_seconds),
            follow_config=config.follow,
            reconciliation_config=config.reconciliation,
        )

    # ---------- consistency / confirmation ----------

    def validate_position_consistency(self, agent_id: str, current_positions: List[Position]) -> ValidationResult:
        return self.validator.validate(agent_id, current_positions)

    def needs_user_confirmation(self, agent_id: str, current_positions: List[Position]) -> bool:
        result = self.validate_position_consistency(agent_id, current_positions)
        return (
            result.action_required == ValidationAction.USER_CONFIRMATION
            and not self.confirmation_store.has_recent_confirmation(agent_id)
        )

    def get_confirmation_required_info(self, agent_id: str, current_positions: List[Position]) -> Dict[str, Any]:
        result = self.validate_position_consistency(agent_id, current_positions)
        return {
            "message": result.suggested_action,
            "discrepancies": result.discrepancies,
            "options": [dict(option) for option in CONFIRMATION_OPTIONS],
        }

    def handle_user_confirmation(self, agent_id: str, action: ConfirmationAction | str) -> None:
        self.confirmation_store.set_confirmation(agent_id, ConfirmationAction(action))

    # ---------- main pass ----------

    def _sanitize_options(self, options: Optional[FollowOptions]) -> FollowOptions:
        options = replace(options) if options is not None else FollowOptions()
        target = options.profit_target
        if target is not None:
            if target <= 0 or target > Decimal(str(self.follow_config.max_profit_target_pct)):
                logger.warning(
                    "INVALID_PROFIT_TARGET",
                    profit_target=str(target),
                    allowed=f"(0, {self.follow_config.max_profit_target_pct:g}]",
                )
                options.profit_target = None
            else:
                logger.info("PROFIT_TARGET_ENABLED", profit_target=str(target), auto_refollow=options.auto_refollow)
        return options

    def _resolve_policy(self, agent_id: str, validation: ValidationResult) -> ValidationAction:
        action = validation.action_required
        if action != ValidationAction.USER_CONFIRMATION:
            return action

        confirmation = self.confirmation_store.get_confirmation(agent_id)
        if confirmation is None:
            logger.warning(
                "CONFIRMATION_MISSING_TRUSTING_ACTUAL",
                agent_id=agent_id,
                suggested_action=validation.suggested_action,
            )
            return ValidationAction.TRUST_ACTUAL

        logger.info("USING_USER_CONFIRMATION", agent_id=agent_id, action=confirmation.action.value)
        if confirmation.action == ConfirmationAction.ABORT:
            raise FollowAbortedError(f"User chose to abort following agent {agent_id}")
        return ValidationAction(confirmation.action.value)

    async def follow_agent(
        self,
        agent_id: str,
        current_positions: List[Position],
        options: Optional[FollowOptions] = None,
    ) -> List[FollowPlan]:
        """
        Run one follow pass and return the plans to execute, in order.

        Raises:
            PositionValidationError: history could not be validated
            FollowAbortedError: the user confirmed an abort for this agent
        """
        logger.info("FOLLOW_PASS_START", agent_id=agent_id, positions=len(current_positions))
        options = self._sanitize_options(options)

        try:
            cancelled = await self.position_manager.clean_orphaned_orders()
            if cancelled:
                logger.info("ORPHANED_ORDERS_CLEANED", agent_id=agent_id, cancelled=cancelled)
        except OperationalError as e:
            logger.warning("ORPHANED_ORDER_CLEANUP_FAILED", agent_id=agent_id, error=str(e))

        validation = self.validate_position_consistency(agent_id, current_positions)
        if not validation.is_valid:
            logger.error("POSITION_VALIDATION_REJECTED", agent_id=agent_id, reason=validation.suggested_action)
            raise PositionValidationError(
                f"Position validation failed: {validation.suggested_action}", validation=validation
            )

        policy = self._resolve_policy(agent_id, validation)
        use_direct = False
        previous: List[Position] = []

        if validation.is_consistent:
            previous = self.validator.rebuild_last_positions(agent_id, current_positions)
        elif policy == ValidationAction.REBUILD_HISTORY:
            self.order_history.reload_history()
            previous = self.validator.rebuild_last_positions(agent_id, current_positions)
        else:
            use_direct = True

        logger.info(
            "FOLLOW_MODE_SELECTED",
            agent_id=agent_id,
            policy=policy.value,
            mode="trust" if use_direct else "compare",
        )

        if use_direct:
            changes = await self.detector.detect_direct_changes(current_positions, options)
        else:
            changes = await self.detector.detect_changes(current_positions, previous, options)

        exit_plans = self.exit_checker.check(current_positions, agent_id)
        exiting = {p.symbol for p in exit_plans}

        plans: List[FollowPlan] = []
        for change in changes:
            if change.symbol in exiting and change.type != ChangeType.PROFIT_TARGET_REACHED:
                logger.info("CHANGE_SUPERSEDED_BY_EXIT", symbol=change.symbol, change=change.type.value)
                continue
            plans.extend(await self.handlers.handle(change, agent_id, options, use_direct, current_positions))

        plans.extend(await self._held_exits(exit_plans))

        if options.total_margin is not None and options.total_margin > 0:
            await self.apply_capital_allocation(plans, options)

        logger.info(
            "FOLLOW_PASS_COMPLETE",
            agent_id=agent_id,
            plans=len(plans),
            enter=sum(1 for p in plans if p.action == PlanAction.ENTER),
            exit=sum(1 for p in plans if p.action == PlanAction.EXIT),
        )
        return plans

    async def _held_exits(self, exit_plans: List[FollowPlan]) -> List[FollowPlan]:
        """Keep exit-condition plans only for symbols we still hold."""
        held: List[FollowPlan] = []
        for plan in exit_plans:
            try:
                live = await self.position_manager.find_live_position(plan.symbol)
            except (OperationalError, DataError) as e:
                logger.warning("EXIT_LIVE_LOOKUP_FAILED", symbol=plan.symbol, error=str(e))
                held.append(plan)
                continue
            if live is not None and live.is_open:
                held.append(plan)
            else:
                logger.info("EXIT_CONDITION_NOTHING_HELD", symbol=plan.symbol)
        return held

    # ---------- capital allocation ----------

    async def _net_worth(self) -> tuple[Optional[Decimal], Optional[Decimal]]:
        """(available balance, available + held margin + unrealized PnL)."""
        try:
            account = await self.trading_executor.get_account_info()
            broker_positions = await self.trading_executor.get_positions()
        except (OperationalError, DataError) as e:
            logger.warning("NET_WORTH_LOOKUP_FAILED", error=str(e))
            return None, None
        open_positions = [p for p in broker_positions if p.is_open]
        held = sum((p.notional_margin for p in open_positions), ZERO)
        upnl = sum((p.unrealized_profit for p in open_positions), ZERO)
        return account.available_balance, account.available_balance + held + upnl

    @staticmethod
    def _plan_price(plan: FollowPlan) -> Decimal:
        if plan.entry_price is not None and plan.entry_price > 0:
            return plan.entry_price
        if plan.position is not None:
            return plan.position.current_price
        return ZERO

    async def apply_capital_allocation(self, plans: List[FollowPlan], options: FollowOptions) -> None:
        """Resize ENTER plans in place to the user's margin budget."""
        enter_plans = [
            p for p in plans
            if p.action == PlanAction.ENTER and p.position is not None and p.position.margin > 0
        ]
        if not enter_plans:
            return

        available, net_worth = await self._net_worth()

        total_required = sum(
            (p.quantity * self._plan_price(p) / p.leverage for p in enter_plans if p.leverage > 0),
            ZERO,
        )
        if net_worth is not None and net_worth > 0 and total_required > net_worth:
            ratio = net_worth / total_required
            logger.warning(
                "PLANS_SHRUNK_TO_NET_WORTH",
                required=f"{total_required:.2f}",
                net_worth=f"{net_worth:.2f}",
                ratio=f"{ratio:.4f}",
            )
            for plan in enter_plans:
                plan.quantity = self.capital_engine.round_quantity(plan.quantity * ratio, plan.symbol)

        result = self.capital_engine.allocate_margin(
            [p.position for p in enter_plans],
            total_margin=options.total_margin,
            available_balance=available,
            net_worth=net_worth,
            max_leverage=options.max_leverage,
        )
        self.capital_engine.validate_allocation(result)

        for plan in enter_plans:
            allocation = result.for_symbol(plan.symbol)
            if allocation is None:
                continue
            plan.original_margin = allocation.original_margin
            plan.allocated_margin = allocation.allocated_margin
            plan.notional_value = allocation.notional_value
            plan.allocation_ratio = allocation.allocation_ratio
            if plan.is_direct_strategy_adjustment:
                plan.adjusted_quantity = plan.quantity
            else:
                plan.adjusted_quantity = allocation.adjusted_quantity
                plan.quantity = allocation.adjusted_quantity
                plan.leverage = allocation.leverage
            logger.info(
                "PLAN_ALLOCATED",
                symbol=plan.symbol,
                ratio=f"{allocation.allocation_ratio:.4f}",
                allocated_margin=f"{allocation.allocated_margin:.2f}",
                quantity=str(plan.quantity),
                adjustment=plan.is_direct_strategy_adjustment,
            )
