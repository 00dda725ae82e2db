"""
Change handlers: turn detected PositionChanges into FollowPlans.

Handlers may touch the venue directly (closing a stale position before a
re-entry, closing on profit target) but never place entry orders; ENTER and
EXIT orders are returned as plans for the executor.
"""
import asyncio
from decimal import Decimal
from typing import Awaitable, Callable, List, Optional, Tuple

from src.config.config import FollowConfig
from src.domain.models import (
    ZERO,
    ChangeType,
    FollowOptions,
    FollowPlan,
    OrderRecord,
    PlanAction,
    Position,
    PositionChange,
    PriceToleranceCheck,
    ProfitExitRecord,
)
from src.domain.protocols import OrderHistoryManager, PositionManagerProtocol, TradingExecutor
from src.exceptions import DataError, OperationalError
from src.monitoring.logger import get_logger
from src.reconciliation.change_detector import ChangeDetector, target_margin_for
from src.risk.risk_manager import RiskManager

logger = get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class ChangeHandlers:
    """Dispatches each PositionChange to its handler."""

    def __init__(
        self,
        position_manager: PositionManagerProtocol,
        order_history: OrderHistoryManager,
        trading_executor: TradingExecutor,
        risk_manager: RiskManager,
        detector: ChangeDetector,
        config: FollowConfig,
        sleep: Sleep = asyncio.sleep,
    ):
        self.position_manager = position_manager
        self.order_history = order_history
        self.trading_executor = trading_executor
        self.risk_manager = risk_manager
        self.detector = detector
        self.config = config
        self._sleep = sleep

    async def handle(
        self,
        change: PositionChange,
        agent_id: str,
        options: Optional[FollowOptions],
        use_direct: bool,
        current_positions: List[Position],
    ) -> List[FollowPlan]:
        if change.type == ChangeType.ENTRY_CHANGED:
            return await self.handle_entry_changed(change, agent_id, options)
        if change.type == ChangeType.NEW_POSITION:
            return await self.handle_new_position(change, agent_id, options, use_direct, current_positions)
        if change.type == ChangeType.POSITION_CLOSED:
            return await self.handle_position_closed(change, agent_id)
        if change.type == ChangeType.PROFIT_TARGET_REACHED:
            await self.handle_profit_target(change, agent_id, options)
        return []

    # ---------- shared steps ----------

    async def _available_balance(self) -> Optional[Decimal]:
        try:
            account = await self.trading_executor.get_account_info()
        except (OperationalError, DataError) as e:
            logger.warning("BALANCE_SNAPSHOT_FAILED", error=str(e))
            return None
        return account.available_balance

    async def _wait_until_flat(self, symbol: str) -> None:
        await self._sleep(self.config.settlement_delay_seconds)
        for _ in range(self.config.close_confirm_attempts):
            try:
                live = await self.position_manager.find_live_position(symbol)
            except (OperationalError, DataError) as e:
                logger.warning("CLOSE_CONFIRM_LOOKUP_FAILED", symbol=symbol, error=str(e))
                return
            if live is None or not live.is_open:
                return
            await self._sleep(self.config.close_confirm_interval_seconds)
        logger.warning("CLOSE_NOT_CONFIRMED", symbol=symbol, attempts=self.config.close_confirm_attempts)

    async def close_with_margin_release(self, symbol: str, reason: str) -> Tuple[bool, Optional[Decimal]]:
        """
        Close the live position and measure the margin it gave back.

        Returns (closed, released_margin). released_margin is None when a
        balance snapshot failed or the delta was not positive.
        """
        before = await self._available_balance()

        try:
            result = await self.position_manager.close_position(symbol, reason)
        except (OperationalError, DataError) as e:
            logger.error("CLOSE_FAILED", symbol=symbol, error=str(e))
            return False, None
        if not result.success:
            logger.error("CLOSE_FAILED", symbol=symbol, error=result.error)
            return False, None

        await self._wait_until_flat(symbol)
        after = await self._available_balance()

        released = None
        if before is not None and after is not None:
            delta = after - before
            if delta > 0:
                released = delta
        logger.info(
            "POSITION_CLOSED_FOR_REENTRY",
            symbol=symbol,
            released_margin=str(released) if released is not None else None,
        )
        return True, released

    def price_gate(self, position: Position, options: Optional[FollowOptions]) -> Optional[PriceToleranceCheck]:
        """Tolerance check, or None when the entry is unusable or too far away."""
        custom = options.price_tolerance if options else None
        try:
            check = self.risk_manager.check_price_tolerance(
                position.entry_price, position.current_price, position.symbol, custom
            )
        except DataError as e:
            logger.warning("PRICE_CHECK_INVALID", symbol=position.symbol, error=str(e))
            return None
        if not check.within_tolerance:
            logger.info("PRICE_TOLERANCE_SKIP", symbol=position.symbol, reason=check.reason)
            return None
        return check

    def is_reentry_locked(self, position: Position, agent_id: str) -> bool:
        """
        True while a profit-target exit blocks following this symbol.

        The exited epoch itself is never re-entered. A later epoch is only
        followed once the exit was released for refollow. An ENTER recorded
        after the exit lifts the lock.
        """
        exit_record = self.order_history.get_latest_profit_exit(position.symbol)
        if exit_record is None:
            return False

        entries = [
            r for r in self.order_history.get_processed_orders_by_agent(agent_id)
            if r.symbol == position.symbol and r.action == PlanAction.ENTER
        ]
        if any(r.timestamp > exit_record.timestamp for r in entries):
            return False

        if exit_record.entry_oid == position.entry_oid:
            locked = True
        else:
            locked = not exit_record.refollow_allowed
        if locked:
            logger.info(
                "REENTRY_LOCKED_AFTER_PROFIT_EXIT",
                symbol=position.symbol,
                exited_oid=exit_record.entry_oid,
                current_oid=position.entry_oid,
            )
        return locked

    def is_epoch_exited(self, position: Position, agent_id: str) -> bool:
        """True when the ledger's latest record for this source epoch is an EXIT."""
        records = [
            r for r in self.order_history.get_processed_orders_by_agent(agent_id)
            if r.symbol == position.symbol and r.entry_oid == position.entry_oid
        ]
        if not records or records[-1].action != PlanAction.EXIT:
            return False
        logger.info("EPOCH_ALREADY_EXITED", symbol=position.symbol, entry_oid=position.entry_oid)
        return True

    def _enter_plan(
        self,
        position: Position,
        agent_id: str,
        reason: str,
        check: PriceToleranceCheck,
        options: Optional[FollowOptions],
        released_margin: Optional[Decimal] = None,
        quantity: Optional[Decimal] = None,
        is_adjustment: bool = False,
    ) -> FollowPlan:
        plan = FollowPlan(
            action=PlanAction.ENTER,
            symbol=position.symbol,
            side=position.side,
            quantity=abs(quantity if quantity is not None else position.quantity),
            leverage=position.leverage,
            agent_id=agent_id,
            reason=reason,
            entry_price=position.entry_price,
            position=position,
            price_tolerance=check,
            released_margin=released_margin,
            margin_type=options.margin_type if options else None,
            is_direct_strategy_adjustment=is_adjustment,
        )
        logger.info(
            "ENTER_PLAN",
            symbol=plan.symbol,
            side=plan.side.value,
            quantity=str(plan.quantity),
            entry_price=str(position.entry_price),
            entry_oid=position.entry_oid,
            adjustment=is_adjustment,
        )
        return plan

    # ---------- entry changed ----------

    async def handle_entry_changed(
        self, change: PositionChange, agent_id: str, options: Optional[FollowOptions]
    ) -> List[FollowPlan]:
        current, previous = change.current_position, change.previous_position
        if current is None or previous is None:
            return []

        if self.order_history.is_order_processed(current.entry_oid, current.symbol):
            logger.info("ALREADY_PROCESSED", symbol=current.symbol, entry_oid=current.entry_oid)
            return []
        if self.is_reentry_locked(current, agent_id):
            return []

        released = None
        live = await self.detector.find_live(current.symbol)
        if live is not None and live.is_open:
            reason = f"Entry order changed (OID: {previous.entry_oid} -> {current.entry_oid}) by {agent_id}"
            closed, released = await self.close_with_margin_release(current.symbol, reason)
            if not closed:
                return []

        check = self.price_gate(current, options)
        if check is None:
            return []

        if released is not None:
            reason = f"Reopening with released margin ${released:.2f} (OID: {current.entry_oid}) by {agent_id}"
        else:
            reason = f"Entry order changed (OID: {current.entry_oid}) by {agent_id}"
        return [self._enter_plan(current, agent_id, reason, check, options, released_margin=released)]

    # ---------- new position ----------

    async def handle_new_position(
        self,
        change: PositionChange,
        agent_id: str,
        options: Optional[FollowOptions],
        use_direct: bool,
        current_positions: List[Position],
    ) -> List[FollowPlan]:
        current = change.current_position
        if current is None or not current.is_open:
            return []

        if not use_direct and self.order_history.is_order_processed(current.entry_oid, current.symbol):
            logger.info("ALREADY_PROCESSED", symbol=current.symbol, entry_oid=current.entry_oid)
            return []
        if use_direct and self.is_epoch_exited(current, agent_id):
            return []
        if self.is_reentry_locked(current, agent_id):
            return []

        released = None
        live = await self.detector.find_live(current.symbol)

        if live is not None and live.is_open:
            if use_direct and live.direction == current.direction:
                return self._direct_top_up(current, live, agent_id, options, current_positions)

            reason = f"Replacing {live.direction.value} position to follow {agent_id} (OID: {current.entry_oid})"
            closed, released = await self.close_with_margin_release(current.symbol, reason)
            if not closed:
                return []

        check = self.price_gate(current, options)
        if check is None:
            return []

        if use_direct:
            reason = f"Direct entry based on actual position (OID: {current.entry_oid}) by {agent_id}"
        elif released is not None:
            reason = f"Reopening with released margin ${released:.2f} (OID: {current.entry_oid}) by {agent_id}"
        else:
            reason = f"New position opened by {agent_id} (OID: {current.entry_oid})"
        return [self._enter_plan(current, agent_id, reason, check, options, released_margin=released)]

    def _direct_top_up(self, current, live, agent_id, options, current_positions) -> List[FollowPlan]:
        total_margin = options.total_margin if options else None
        target = target_margin_for(current, current_positions, total_margin)
        existing = live.notional_margin

        if self.detector.mirrors_live(current, live, target):
            logger.info("DUPLICATE_SKIPPED", symbol=current.symbol, live_margin=f"{existing:.2f}", target_margin=f"{target:.2f}")
            return []
        if existing > target * Decimal(str(self.config.oversize_ratio)):
            logger.info("POSITION_OVERSIZED_SKIP", symbol=current.symbol, live_margin=f"{existing:.2f}", target_margin=f"{target:.2f}")
            return []

        increment = target - existing
        if increment <= Decimal(str(self.config.min_topup_margin)):
            logger.info("TOPUP_BELOW_MINIMUM", symbol=current.symbol, increment=f"{increment:.2f}")
            return []

        check = self.price_gate(current, options)
        if check is None:
            return []

        quantity = increment * current.leverage / current.entry_price
        reason = f"Top-up ${increment:.2f} margin to mirror {agent_id} (OID: {current.entry_oid})"
        return [self._enter_plan(current, agent_id, reason, check, options, quantity=quantity, is_adjustment=True)]

    # ---------- position closed ----------

    async def handle_position_closed(self, change: PositionChange, agent_id: str) -> List[FollowPlan]:
        """
        EXIT the followed position, or close the epoch in the ledger when
        nothing is held any more.
        """
        previous = change.previous_position
        if previous is None or not previous.is_open:
            return []
        source = change.current_position or previous

        try:
            live = await self.position_manager.find_live_position(change.symbol)
        except (OperationalError, DataError) as e:
            logger.warning("EXIT_LIVE_LOOKUP_FAILED", symbol=change.symbol, error=str(e))
        else:
            if live is None or not live.is_open:
                self._record_flat_exit(previous, source.current_price, agent_id)
                return []

        plan = FollowPlan(
            action=PlanAction.EXIT,
            symbol=change.symbol,
            side=previous.side.opposite,
            quantity=abs(previous.quantity),
            leverage=previous.leverage,
            agent_id=agent_id,
            reason=f"Position closed by {agent_id}",
            exit_price=source.current_price,
            position=previous,
        )
        logger.info("EXIT_PLAN", symbol=plan.symbol, side=plan.side.value, quantity=str(plan.quantity))
        return [plan]

    def _record_flat_exit(self, previous: Position, price: Decimal, agent_id: str) -> None:
        # no order placed: zero quantity, no order id
        record = OrderRecord(
            agent_id=agent_id,
            symbol=previous.symbol,
            side=previous.side.opposite,
            quantity=ZERO,
            price=price,
            entry_oid=previous.entry_oid,
            action=PlanAction.EXIT,
            source_quantity=abs(previous.quantity),
        )
        try:
            self.order_history.add_processed_order(record)
        except OperationalError as e:
            logger.error("FLAT_EXIT_RECORD_FAILED", symbol=previous.symbol, entry_oid=previous.entry_oid, error=str(e))
            return
        logger.info("EXIT_RECORDED_WITHOUT_ORDER", symbol=previous.symbol, entry_oid=previous.entry_oid)

    # ---------- profit target ----------

    async def handle_profit_target(
        self, change: PositionChange, agent_id: str, options: Optional[FollowOptions]
    ) -> None:
        current, profit_pct = change.current_position, change.profit_percentage
        if current is None or profit_pct is None:
            return

        reason = f"Profit target reached: {profit_pct:.2f}% by {agent_id}"
        try:
            result = await self.position_manager.close_position(current.symbol, reason)
        except (OperationalError, DataError) as e:
            logger.error("PROFIT_TARGET_CLOSE_FAILED", symbol=current.symbol, error=str(e))
            return
        if not result.success:
            logger.error("PROFIT_TARGET_CLOSE_FAILED", symbol=current.symbol, error=result.error)
            return

        self.order_history.add_profit_exit_record(
            ProfitExitRecord(
                symbol=current.symbol,
                entry_oid=current.entry_oid,
                exit_price=current.current_price,
                profit_percentage=profit_pct,
                reason=f"Profit target {profit_pct:.2f}% reached",
                agent_id=agent_id,
            )
        )

        if options is not None and options.auto_refollow:
            self.order_history.reset_symbol_order_status(current.symbol, current.entry_oid)
            logger.info("AUTO_REFOLLOW_RESET", symbol=current.symbol, entry_oid=current.entry_oid)
        logger.info("PROFIT_TARGET_CLOSED", symbol=current.symbol, profit_pct=f"{profit_pct:.2f}")
