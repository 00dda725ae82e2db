"""
Unit tests for change handlers (entry changed, new position, closed, profit target).
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from src.config.config import RiskConfig
from src.domain.models import (
    AccountInfo,
    ChangeType,
    CloseResult,
    FollowOptions,
    OrderRecord,
    OrderSide,
    PlanAction,
    PositionChange,
    ProfitExitRecord,
)
from src.exceptions import APIError, OperationalError
from src.follow.handlers import ChangeHandlers
from src.reconciliation.change_detector import ChangeDetector
from src.risk.risk_manager import RiskManager

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def handlers(position_manager, order_history, trading_executor, follow_config, no_sleep):
    detector = ChangeDetector(position_manager, follow_config)
    return ChangeHandlers(
        position_manager,
        order_history,
        trading_executor,
        RiskManager(RiskConfig()),
        detector,
        follow_config,
        sleep=no_sleep,
    )


def _balances(*values):
    return [AccountInfo(available_balance=Decimal(v)) for v in values]


def _ledger(action, oid=12345, minutes=0):
    return OrderRecord(
        agent_id="agent-1",
        symbol="BTC",
        side=OrderSide.BUY if action == PlanAction.ENTER else OrderSide.SELL,
        quantity=Decimal("0.01"),
        price=Decimal("50000"),
        entry_oid=oid,
        action=action,
        timestamp=T0 + timedelta(minutes=minutes),
    )


class TestEntryChanged:

    @pytest.mark.asyncio
    async def test_flat_account_enters_new_epoch(self, handlers, position_manager, pos):
        """A flat account enters the new epoch."""
        change = PositionChange("BTC", ChangeType.ENTRY_CHANGED, pos(entry_oid=67890), pos(entry_oid=12345))
        plans = await handlers.handle(change, "agent-1", None, False, [change.current_position])

        assert len(plans) == 1
        plan = plans[0]
        assert plan.action == PlanAction.ENTER
        assert plan.side == OrderSide.BUY
        assert plan.quantity == Decimal("0.01")
        assert plan.released_margin is None
        assert "Entry order changed (OID: 67890)" in plan.reason
        position_manager.close_position.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_live_position_closed_and_margin_release_reported(
        self, handlers, position_manager, trading_executor, no_sleep, pos, live_pos
    ):
        """The live position is closed and the released margin logged."""
        position_manager.find_live_position.side_effect = [live_pos(), None]
        trading_executor.get_account_info.side_effect = _balances("1000", "1050")
        change = PositionChange("BTC", ChangeType.ENTRY_CHANGED, pos(entry_oid=67890), pos(entry_oid=12345))

        plans = await handlers.handle(change, "agent-1", None, False, [change.current_position])

        position_manager.close_position.assert_awaited_once()
        assert plans[0].released_margin == Decimal("50")
        assert plans[0].reason.startswith("Reopening with released margin $50.00")
        no_sleep.assert_any_await(1.5)

    @pytest.mark.asyncio
    async def test_no_release_when_balance_did_not_grow(
        self, handlers, position_manager, trading_executor, pos, live_pos
    ):
        """No release is reported when balance did not grow."""
        position_manager.find_live_position.side_effect = [live_pos(), None]
        trading_executor.get_account_info.side_effect = _balances("1000", "990")
        change = PositionChange("BTC", ChangeType.ENTRY_CHANGED, pos(entry_oid=2), pos(entry_oid=1))

        plans = await handlers.handle(change, "agent-1", None, False, [change.current_position])
        assert plans[0].released_margin is None

    @pytest.mark.asyncio
    async def test_close_failure_drops_plan(self, handlers, position_manager, pos, live_pos):
        """A failed close drops the entry plan."""
        position_manager.find_live_position.return_value = live_pos()
        position_manager.close_position.return_value = CloseResult(success=False, error="rejected")
        change = PositionChange("BTC", ChangeType.ENTRY_CHANGED, pos(entry_oid=2), pos(entry_oid=1))

        assert await handlers.handle(change, "agent-1", None, False, [change.current_position]) == []

    @pytest.mark.asyncio
    async def test_price_outside_tolerance_drops_plan(self, handlers, pos):
        """An entry price outside tolerance drops the plan."""
        current = pos(entry_oid=2, entry_price="50000", current_price="51000")
        change = PositionChange("BTC", ChangeType.ENTRY_CHANGED, current, pos(entry_oid=1))
        assert await handlers.handle(change, "agent-1", None, False, [current]) == []

    @pytest.mark.asyncio
    async def test_custom_tolerance_from_options(self, handlers, pos):
        """The tolerance from options is honored."""
        current = pos(entry_oid=2, entry_price="50000", current_price="51000")
        change = PositionChange("BTC", ChangeType.ENTRY_CHANGED, current, pos(entry_oid=1))
        options = FollowOptions(price_tolerance=Decimal("3"))
        plans = await handlers.handle(change, "agent-1", options, False, [current])
        assert plans[0].price_tolerance.tolerance == Decimal("3")

    @pytest.mark.asyncio
    async def test_processed_epoch_is_not_reentered(self, handlers, order_history, position_manager, pos):
        """A processed epoch is not entered again."""
        order_history.is_order_processed.return_value = True
        change = PositionChange("BTC", ChangeType.ENTRY_CHANGED, pos(entry_oid=2), pos(entry_oid=1))
        assert await handlers.handle(change, "agent-1", None, False, [change.current_position]) == []
        position_manager.find_live_position.assert_not_awaited()


class TestNewPosition:

    @pytest.mark.asyncio
    async def test_compare_path_skips_processed_epoch(self, handlers, order_history, pos):
        """Compare mode skips a processed epoch."""
        order_history.is_order_processed.return_value = True
        change = PositionChange("BTC", ChangeType.NEW_POSITION, pos())
        assert await handlers.handle(change, "agent-1", None, False, [pos()]) == []

    @pytest.mark.asyncio
    async def test_trust_path_ignores_processed_flag(self, handlers, order_history, pos):
        """Trust mode ignores the processed flag."""
        order_history.is_order_processed.return_value = True
        change = PositionChange("BTC", ChangeType.NEW_POSITION, pos())
        plans = await handlers.handle(change, "agent-1", None, True, [pos()])
        assert len(plans) == 1
        assert plans[0].reason.startswith("Direct entry based on actual position")

    @pytest.mark.asyncio
    async def test_trust_path_skips_exited_epoch(self, handlers, order_history, pos):
        """Trust mode does not re-enter an exited epoch."""
        order_history.get_processed_orders_by_agent.return_value = [
            _ledger(PlanAction.ENTER, minutes=0),
            _ledger(PlanAction.EXIT, minutes=5),
        ]
        change = PositionChange("BTC", ChangeType.NEW_POSITION, pos())
        assert await handlers.handle(change, "agent-1", None, True, [pos()]) == []

    @pytest.mark.asyncio
    async def test_trust_path_follows_other_epoch_after_exit(self, handlers, order_history, pos):
        """Trust mode follows a new epoch after an exit."""
        order_history.get_processed_orders_by_agent.return_value = [_ledger(PlanAction.EXIT, oid=111)]
        change = PositionChange("BTC", ChangeType.NEW_POSITION, pos())
        assert len(await handlers.handle(change, "agent-1", None, True, [pos()])) == 1

    @pytest.mark.asyncio
    async def test_short_source_enters_sell(self, handlers, pos):
        """A short source position enters with a sell."""
        short = pos(symbol="ETH", quantity="-2", entry_price="3000")
        plans = await handlers.handle(PositionChange("ETH", ChangeType.NEW_POSITION, short), "agent-1", None, False, [short])
        assert plans[0].side == OrderSide.SELL
        assert plans[0].quantity == Decimal("2")

    @pytest.mark.asyncio
    async def test_compare_path_closes_existing_live_position(self, handlers, position_manager, pos, live_pos):
        """Compare mode closes the live position first."""
        position_manager.find_live_position.side_effect = [live_pos(), None]
        change = PositionChange("BTC", ChangeType.NEW_POSITION, pos())
        plans = await handlers.handle(change, "agent-1", None, False, [pos()])
        position_manager.close_position.assert_awaited_once()
        assert len(plans) == 1

    @pytest.mark.asyncio
    async def test_trust_path_tops_up_undersized_position(self, handlers, position_manager, pos, live_pos):
        """Trust mode tops up an undersized position."""
        # target margin 50, live margin 0.004 x 50000 / 10 = 20
        position_manager.find_live_position.return_value = live_pos(position_amt="0.004")
        change = PositionChange("BTC", ChangeType.NEW_POSITION, pos())

        plans = await handlers.handle(change, "agent-1", None, True, [pos()])

        assert len(plans) == 1
        assert plans[0].is_direct_strategy_adjustment is True
        assert plans[0].quantity == Decimal("0.006")
        position_manager.close_position.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_trust_path_skips_oversized_position(self, handlers, position_manager, pos, live_pos):
        """Trust mode leaves an oversized position alone."""
        position_manager.find_live_position.return_value = live_pos(position_amt="0.014")
        change = PositionChange("BTC", ChangeType.NEW_POSITION, pos())
        assert await handlers.handle(change, "agent-1", None, True, [pos()]) == []

    @pytest.mark.asyncio
    async def test_trust_path_skips_tiny_top_up(self, handlers, position_manager, pos, live_pos):
        """Trust mode skips a top-up below the minimum."""
        # entry far off so not a mirror; margin 0.00825 x 60000 / 10 = 49.5, increment 0.5
        position_manager.find_live_position.return_value = live_pos(position_amt="0.00825", entry_price="60000")
        change = PositionChange("BTC", ChangeType.NEW_POSITION, pos())
        assert await handlers.handle(change, "agent-1", None, True, [pos()]) == []

    @pytest.mark.asyncio
    async def test_trust_path_flips_opposite_position(self, handlers, position_manager, pos, live_pos):
        """Trust mode flips an opposite position."""
        position_manager.find_live_position.side_effect = [live_pos(position_amt="-0.01"), None]
        change = PositionChange("BTC", ChangeType.NEW_POSITION, pos())
        plans = await handlers.handle(change, "agent-1", None, True, [pos()])
        position_manager.close_position.assert_awaited_once()
        assert plans[0].quantity == Decimal("0.01")
        assert plans[0].is_direct_strategy_adjustment is False

    @pytest.mark.asyncio
    async def test_lookup_failure_treated_as_flat(self, handlers, position_manager, pos):
        """A failed live lookup is treated as flat."""
        position_manager.find_live_position.side_effect = APIError("timeout")
        change = PositionChange("BTC", ChangeType.NEW_POSITION, pos())
        plans = await handlers.handle(change, "agent-1", None, False, [pos()])
        assert len(plans) == 1


class TestReentryLock:

    def _exit(self, oid=12345, refollow=False, minutes=10):
        return ProfitExitRecord(
            symbol="BTC",
            entry_oid=oid,
            exit_price=Decimal("55000"),
            profit_percentage=Decimal("60"),
            reason="target",
            refollow_allowed=refollow,
            timestamp=T0 + timedelta(minutes=minutes),
        )

    def test_same_epoch_always_locked(self, handlers, order_history, pos):
        """The profit-exited epoch stays locked even with refollow."""
        order_history.get_latest_profit_exit.return_value = self._exit(refollow=True)
        assert handlers.is_reentry_locked(pos(entry_oid=12345), "agent-1") is True

    def test_new_epoch_locked_until_released(self, handlers, order_history, pos):
        """A new epoch stays locked until released."""
        order_history.get_latest_profit_exit.return_value = self._exit(refollow=False)
        assert handlers.is_reentry_locked(pos(entry_oid=99999), "agent-1") is True

        order_history.get_latest_profit_exit.return_value = self._exit(refollow=True)
        assert handlers.is_reentry_locked(pos(entry_oid=99999), "agent-1") is False

    def test_entry_after_exit_lifts_lock(self, handlers, order_history, pos):
        """An entry after the last exit lifts the lock."""
        order_history.get_latest_profit_exit.return_value = self._exit(minutes=10)
        order_history.get_processed_orders_by_agent.return_value = [
            OrderRecord(
                agent_id="agent-1",
                symbol="BTC",
                side=OrderSide.BUY,
                quantity=Decimal("0.01"),
                price=Decimal("50000"),
                entry_oid=12345,
                timestamp=T0 + timedelta(minutes=20),
            )
        ]
        assert handlers.is_reentry_locked(pos(entry_oid=12345), "agent-1") is False

    @pytest.mark.asyncio
    async def test_locked_symbol_produces_no_plan(self, handlers, order_history, pos):
        """A locked symbol produces no plan."""
        order_history.get_latest_profit_exit.return_value = self._exit()
        change = PositionChange("BTC", ChangeType.NEW_POSITION, pos())
        assert await handlers.handle(change, "agent-1", None, True, [pos()]) == []


class TestPositionClosed:

    @pytest.mark.asyncio
    async def test_exit_is_opposite_of_previous_side(self, handlers, position_manager, pos, live_pos):
        """Exit side is opposite to the previous side."""
        position_manager.find_live_position.return_value = live_pos(position_amt="0.1")
        previous = pos(quantity="0.1", current_price="51000")
        change = PositionChange("BTC", ChangeType.POSITION_CLOSED, pos(quantity="0", current_price="52000"), previous)
        plans = await handlers.handle(change, "agent-1", None, False, [])

        assert len(plans) == 1
        assert plans[0].action == PlanAction.EXIT
        assert plans[0].side == OrderSide.SELL
        assert plans[0].quantity == Decimal("0.1")
        assert plans[0].exit_price == Decimal("52000")

    @pytest.mark.asyncio
    async def test_dropped_symbol_uses_previous_price(self, handlers, position_manager, pos, live_pos):
        """A dropped symbol exits at the previous price."""
        position_manager.find_live_position.return_value = live_pos(position_amt="-1")
        previous = pos(quantity="-1", current_price="2900")
        change = PositionChange("BTC", ChangeType.POSITION_CLOSED, None, previous)
        plans = await handlers.handle(change, "agent-1", None, False, [])
        assert plans[0].side == OrderSide.BUY
        assert plans[0].exit_price == Decimal("2900")

    @pytest.mark.asyncio
    async def test_flat_account_records_exit_without_plan(self, handlers, order_history, pos):
        """A flat account records the exit without a plan."""
        previous = pos(quantity="-1", current_price="2900", entry_oid=7)
        change = PositionChange("BTC", ChangeType.POSITION_CLOSED, None, previous)

        assert await handlers.handle(change, "agent-1", None, False, []) == []

        record = order_history.add_processed_order.call_args.args[0]
        assert record.action == PlanAction.EXIT
        assert record.side == OrderSide.BUY
        assert record.entry_oid == 7
        assert record.quantity == Decimal("0")
        assert record.order_id is None
        assert record.price == Decimal("2900")

    @pytest.mark.asyncio
    async def test_ledger_failure_on_flat_exit_is_logged(self, handlers, order_history, pos):
        """A ledger failure on a flat exit is logged, not raised."""
        order_history.add_processed_order.side_effect = OperationalError("db down")
        change = PositionChange("BTC", ChangeType.POSITION_CLOSED, None, pos())
        assert await handlers.handle(change, "agent-1", None, False, []) == []

    @pytest.mark.asyncio
    async def test_lookup_failure_still_plans_exit(self, handlers, position_manager, order_history, pos):
        """A failed live lookup still plans the exit."""
        position_manager.find_live_position.side_effect = APIError("timeout")
        change = PositionChange("BTC", ChangeType.POSITION_CLOSED, None, pos())

        plans = await handlers.handle(change, "agent-1", None, False, [])

        assert [p.action for p in plans] == [PlanAction.EXIT]
        order_history.add_processed_order.assert_not_called()


class TestProfitTarget:

    def _change(self, pos):
        return PositionChange(
            "BTC", ChangeType.PROFIT_TARGET_REACHED, pos(), profit_percentage=Decimal("60")
        )

    @pytest.mark.asyncio
    async def test_closes_and_records_without_reset(self, handlers, position_manager, order_history, pos):
        """Target close is recorded and the symbol stays locked."""
        options = FollowOptions(profit_target=Decimal("50"), auto_refollow=False)
        plans = await handlers.handle(self._change(pos), "agent-1", options, False, [])

        assert plans == []
        position_manager.close_position.assert_awaited_once()
        order_history.add_profit_exit_record.assert_called_once()
        record = order_history.add_profit_exit_record.call_args[0][0]
        assert record.entry_oid == 12345
        assert record.profit_percentage == Decimal("60")
        order_history.reset_symbol_order_status.assert_not_called()

    @pytest.mark.asyncio
    async def test_auto_refollow_resets_symbol(self, handlers, order_history, pos):
        """Auto-refollow resets the symbol after the close."""
        options = FollowOptions(profit_target=Decimal("50"), auto_refollow=True)
        await handlers.handle(self._change(pos), "agent-1", options, False, [])
        order_history.reset_symbol_order_status.assert_called_once_with("BTC", 12345)

    @pytest.mark.asyncio
    async def test_close_failure_records_nothing(self, handlers, position_manager, order_history, pos):
        """A failed close records nothing."""
        position_manager.close_position.return_value = CloseResult(success=False, error="rejected")
        options = FollowOptions(profit_target=Decimal("50"), auto_refollow=True)
        await handlers.handle(self._change(pos), "agent-1", options, False, [])
        order_history.add_profit_exit_record.assert_not_called()
        order_history.reset_symbol_order_status.assert_not_called()
