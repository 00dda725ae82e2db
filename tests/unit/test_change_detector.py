"""
Unit tests for compare-mode and trust-mode change detection.
"""
from decimal import Decimal

import pytest

from src.domain.models import ChangeType, FollowOptions, MarginType
from src.exceptions import APIError
from src.reconciliation.change_detector import ChangeDetector, target_margin_for, user_margin_ratio


@pytest.fixture
def detector(position_manager, follow_config):
    return ChangeDetector(position_manager, follow_config)


class TestCompareMode:

    @pytest.mark.asyncio
    async def test_entry_oid_change_emits_single_entry_changed(self, detector, pos):
        """A new entry oid yields one ENTRY_CHANGED."""
        changes = await detector.detect_changes([pos(entry_oid=67890)], [pos(entry_oid=12345)])
        assert [c.type for c in changes] == [ChangeType.ENTRY_CHANGED]
        assert changes[0].previous_position.entry_oid == 12345
        assert changes[0].current_position.entry_oid == 67890

    @pytest.mark.asyncio
    async def test_quantity_to_zero_emits_position_closed(self, detector, pos):
        """A zero quantity yields POSITION_CLOSED."""
        changes = await detector.detect_changes([pos(quantity="0")], [pos(quantity="0.1")])
        assert [c.type for c in changes] == [ChangeType.POSITION_CLOSED]

    @pytest.mark.asyncio
    async def test_symbol_dropped_from_source_emits_position_closed(self, detector, pos):
        """A dropped symbol yields POSITION_CLOSED."""
        changes = await detector.detect_changes([], [pos(symbol="ETH", quantity="1")])
        assert [c.type for c in changes] == [ChangeType.POSITION_CLOSED]
        assert changes[0].current_position is None

    @pytest.mark.asyncio
    async def test_new_symbol_emits_new_position(self, detector, pos):
        """A new symbol yields NEW_POSITION."""
        changes = await detector.detect_changes([pos(symbol="SOL")], [])
        assert [c.type for c in changes] == [ChangeType.NEW_POSITION]

    @pytest.mark.asyncio
    async def test_unchanged_is_reported_every_pass(self, detector, pos):
        """Unchanged positions are reported every pass."""
        for _ in range(2):
            changes = await detector.detect_changes([pos()], [pos()])
            assert [c.type for c in changes] == [ChangeType.NO_CHANGE]

    @pytest.mark.asyncio
    async def test_flat_new_symbol_is_ignored(self, detector, pos):
        """A new symbol with zero quantity is ignored."""
        assert await detector.detect_changes([pos(quantity="0")], []) == []


class TestProfitTarget:

    @pytest.mark.asyncio
    async def test_profit_target_short_circuits_classification(self, detector, position_manager, pos, live_pos):
        """A reached profit target wins over other changes."""
        position_manager.find_live_position.return_value = live_pos(unrealized_profit="30")
        options = FollowOptions(profit_target=Decimal("50"))
        # live margin = 0.01 x 50000 / 10 = 50, pnl 30 -> 60%
        changes = await detector.detect_changes([pos(entry_oid=2)], [pos(entry_oid=1)], options)
        assert [c.type for c in changes] == [ChangeType.PROFIT_TARGET_REACHED]
        assert changes[0].profit_percentage == Decimal("60")
        position_manager.find_live_position.assert_awaited_with("BTC", detailed=True)

    @pytest.mark.asyncio
    async def test_isolated_margin_used_for_profit(self, detector, position_manager, pos, live_pos):
        """Isolated margin is used for the profit ratio."""
        position_manager.find_live_position.return_value = live_pos(
            unrealized_profit="10", margin_type=MarginType.ISOLATED, isolated_margin="20"
        )
        assert await detector.calculate_profit_percentage(pos()) == Decimal("50")

    @pytest.mark.asyncio
    async def test_lookup_failure_yields_zero(self, detector, position_manager, pos):
        """A failed live lookup counts as zero profit."""
        position_manager.find_live_position.side_effect = APIError("down")
        assert await detector.calculate_profit_percentage(pos()) == Decimal("0")

    @pytest.mark.asyncio
    async def test_no_target_means_no_lookup(self, detector, position_manager, pos):
        """Without a target no live lookup is made."""
        await detector.detect_changes([pos()], [pos()], FollowOptions())
        position_manager.find_live_position.assert_not_awaited()


class TestTrustMode:

    @pytest.mark.asyncio
    async def test_flat_account_emits_new_position(self, detector, pos):
        """A flat account with source positions yields NEW_POSITION."""
        changes = await detector.detect_direct_changes([pos(), pos(symbol="ETH", entry_price="3000")])
        assert [c.type for c in changes] == [ChangeType.NEW_POSITION, ChangeType.NEW_POSITION]

    @pytest.mark.asyncio
    async def test_mirrored_live_position_is_skipped(self, detector, position_manager, pos, live_pos):
        """A live position already mirroring the source is skipped."""
        position_manager.find_live_position.return_value = live_pos(position_amt="0.0101", entry_price="50100")
        assert await detector.detect_direct_changes([pos()]) == []

    @pytest.mark.asyncio
    async def test_opposite_live_position_is_not_a_duplicate(self, detector, position_manager, pos, live_pos):
        """An opposite live position is not a duplicate."""
        position_manager.find_live_position.return_value = live_pos(position_amt="-0.01")
        changes = await detector.detect_direct_changes([pos()])
        assert [c.type for c in changes] == [ChangeType.NEW_POSITION]

    @pytest.mark.asyncio
    async def test_closed_source_positions_are_ignored(self, detector, pos):
        """Closed source positions are ignored."""
        assert await detector.detect_direct_changes([pos(quantity="0")]) == []


class TestTargetMargin:

    def test_ratio_scales_to_user_budget(self, pos):
        """Quantities scale with the user budget ratio."""
        positions = [pos(quantity="0.1", leverage="10"), pos(symbol="ETH", quantity="1", entry_price="3000", leverage="10")]
        # source margins 500 + 300
        assert user_margin_ratio(positions, Decimal("80")) == Decimal("0.1")
        assert target_margin_for(positions[0], positions, Decimal("80")) == Decimal("50.0")

    def test_no_budget_is_one_to_one(self, pos):
        """Without a budget quantities are copied as is."""
        assert user_margin_ratio([pos()], None) == Decimal("1")
