"""
Test: Risk Manager scoring, warnings and price tolerance.
"""
import pytest
from decimal import Decimal

from src.config.config import RiskConfig
from src.domain.models import FollowPlan, OrderSide, PlanAction
from src.exceptions import ValidationError
from src.risk.risk_manager import RiskManager


def _plan(quantity="0.01", leverage="10", entry_price="50000", symbol="BTC"):
    return FollowPlan(
        action=PlanAction.ENTER,
        symbol=symbol,
        side=OrderSide.BUY,
        quantity=Decimal(quantity),
        leverage=Decimal(leverage),
        agent_id="agent-1",
        reason="test",
        entry_price=Decimal(entry_price) if entry_price is not None else None,
    )


class TestPriceTolerance:
    """Entry vs current price gating."""

    def test_within_default_tolerance(self):
        """A price within the default tolerance passes."""
        rm = RiskManager(RiskConfig())
        check = rm.check_price_tolerance(Decimal("50000"), Decimal("50400"), "BTC")
        assert check.price_difference == Decimal("0.8")
        assert check.within_tolerance is True
        assert check.should_execute is True
        assert "is within" in check.reason

    def test_outside_default_tolerance(self):
        """A price outside the default tolerance fails."""
        rm = RiskManager(RiskConfig())
        check = rm.check_price_tolerance(Decimal("50000"), Decimal("51000"), "BTC")
        assert check.price_difference == Decimal("2")
        assert check.within_tolerance is False
        assert check.should_execute is False
        assert "exceeds" in check.reason

    def test_custom_tolerance_wins(self):
        """A custom tolerance wins."""
        rm = RiskManager(RiskConfig())
        check = rm.check_price_tolerance(Decimal("50000"), Decimal("51000"), "BTC", Decimal("5"))
        assert check.tolerance == Decimal("5")
        assert check.within_tolerance is True

    def test_symbol_tolerance_matches_any_symbol_format(self):
        """Symbol tolerances match any symbol format."""
        rm = RiskManager(RiskConfig(symbol_tolerances={"BTCUSDT": 3.0}))
        assert rm.get_price_tolerance("BTC") == Decimal("3.0")
        assert rm.get_price_tolerance("BTC/USDT:USDT") == Decimal("3.0")
        assert rm.get_price_tolerance("ETH") == Decimal("1.0")

    def test_zero_entry_price_is_rejected(self):
        """A zero entry price is rejected."""
        rm = RiskManager(RiskConfig())
        with pytest.raises(ValidationError):
            rm.check_price_tolerance(Decimal("0"), Decimal("100"), "BTC")

    def test_non_positive_symbol_tolerance_rejected_by_config(self):
        """A non-positive symbol tolerance is rejected by config."""
        with pytest.raises(ValueError):
            RiskConfig(symbol_tolerances={"BTC": 0})


class TestRiskScore:
    """Score = 20 + leverage + position + interaction components."""

    def test_score_uses_notional_over_leverage(self):
        """The score uses notional over leverage."""
        rm = RiskManager(RiskConfig())
        # notional 500, margin 50, account 10000
        score = rm.calculate_risk_score(_plan(), current_price=Decimal("50000"))
        assert score == pytest.approx(20 + 25 + 0.15 + 0.005)

    def test_user_total_margin_replaces_reference_account(self):
        """The user's total margin replaces the reference account."""
        rm = RiskManager(RiskConfig())
        small = rm.calculate_risk_score(_plan(), Decimal("100"), Decimal("50000"))
        large = rm.calculate_risk_score(_plan(), Decimal("100000"), Decimal("50000"))
        assert small > large

    def test_score_capped_at_100(self):
        """The score is capped at 100."""
        rm = RiskManager(RiskConfig())
        score = rm.calculate_risk_score(_plan(quantity="100", leverage="50"), current_price=Decimal("50000"))
        assert score == 100.0

    def test_price_falls_back_to_contract_size(self):
        """Without an entry price the contract size stands in."""
        rm = RiskManager(RiskConfig())
        plan = _plan(entry_price=None)
        # 0.01 x 100 contract size = 1 notional, tiny margin
        assert rm.calculate_risk_score(plan) == pytest.approx(20 + 25, abs=0.01)

    def test_max_loss_ignores_leverage(self):
        """Max loss ignores leverage."""
        rm = RiskManager(RiskConfig())
        assert rm.calculate_max_loss(_plan(quantity="0.5", leverage="20")) == Decimal("50.0")


class TestWarnings:

    def test_high_leverage_and_large_notional(self):
        """High leverage and large notional add warnings."""
        rm = RiskManager(RiskConfig())
        plan = _plan(quantity="2", leverage="25")
        assessment = rm.assess_risk(plan, current_price=Decimal("50000"))
        assert any("High leverage" in w for w in assessment.warnings)
        assert any("Large notional" in w for w in assessment.warnings)

    def test_quiet_plan_has_no_warnings(self):
        """A quiet plan has no warnings."""
        rm = RiskManager(RiskConfig())
        assessment = rm.assess_risk(_plan(leverage="5"), current_price=Decimal("50000"))
        assert assessment.warnings == []
        assert assessment.is_valid is True

    def test_price_tolerance_failure_invalidates_assessment(self):
        """A price tolerance failure invalidates the assessment."""
        rm = RiskManager(RiskConfig())
        assessment = rm.assess_risk_with_price_tolerance(
            _plan(), Decimal("50000"), Decimal("52000"), "BTC"
        )
        assert assessment.is_valid is False
        assert assessment.price_tolerance is not None
        assert any("Price tolerance check failed" in w for w in assessment.warnings)
