"""
Risk assessment for follow plans and price tolerance gating.

Scores use one canonical notional formula (quantity x price) and one
max-loss formula (quantity x contract size, no leverage).
"""
from decimal import Decimal
from typing import List, Optional

from src.config.config import RiskConfig
from src.data.symbol_utils import normalize_symbol, normalize_to_base
from src.domain.models import FollowPlan, PriceToleranceCheck, RiskAssessment
from src.exceptions import ValidationError
from src.monitoring.logger import get_logger

logger = get_logger(__name__)

HUNDRED = Decimal("100")


class RiskManager:
    """
    Risk scoring and price tolerance checks.

    Score (0-100):
        20 base
        + min(leverage x 2.5, 50)
        + min(margin / account x 30, 30)
        + min(leverage x margin / (account x 10), 20)

    where account is the user's total margin when given, otherwise the
    configured reference account size.
    """

    def __init__(self, config: RiskConfig):
        self.config = config

    # ---------- configuration lookups ----------

    def get_price_tolerance(self, symbol: Optional[str] = None) -> Decimal:
        """Per-symbol tolerance (exact, broker or base key) or the default."""
        if symbol:
            tolerances = self.config.symbol_tolerances
            for key in (symbol, normalize_symbol(symbol), normalize_to_base(symbol)):
                if key in tolerances:
                    return Decimal(str(tolerances[key]))
            base_usdt = normalize_to_base(symbol) + "USDT"
            if base_usdt in tolerances:
                return Decimal(str(tolerances[base_usdt]))
        return Decimal(str(self.config.default_price_tolerance_pct))

    def get_contract_size(self, symbol: str) -> Decimal:
        size = self.config.contract_sizes.get(normalize_to_base(symbol))
        if size is None:
            size = self.config.default_contract_size
        return Decimal(str(size))

    # ---------- price tolerance ----------

    @staticmethod
    def calculate_price_difference(entry_price: Decimal, current_price: Decimal) -> Decimal:
        """Absolute percent difference of current vs entry."""
        if entry_price <= 0:
            raise ValidationError(f"Entry price must be greater than 0, got {entry_price}")
        return abs((current_price - entry_price) / entry_price) * HUNDRED

    def check_price_tolerance(
        self,
        entry_price: Decimal,
        current_price: Decimal,
        symbol: Optional[str] = None,
        custom_tolerance: Optional[Decimal] = None,
    ) -> PriceToleranceCheck:
        tolerance = Decimal(str(custom_tolerance)) if custom_tolerance else self.get_price_tolerance(symbol)
        difference = self.calculate_price_difference(entry_price, current_price)
        within = difference <= tolerance
        verdict = "is within" if within else "exceeds"
        return PriceToleranceCheck(
            entry_price=entry_price,
            current_price=current_price,
            price_difference=difference,
            tolerance=tolerance,
            within_tolerance=within,
            should_execute=within,
            reason=f"Price difference {difference:.2f}% {verdict} tolerance {tolerance}%",
        )

    # ---------- risk scoring ----------

    def _price_estimate(self, plan: FollowPlan, current_price: Optional[Decimal]) -> Decimal:
        for candidate in (current_price, plan.entry_price, plan.exit_price):
            if candidate is not None and candidate > 0:
                return candidate
        return self.get_contract_size(plan.symbol)

    def _reference_account(self, user_total_margin: Optional[Decimal]) -> Decimal:
        if user_total_margin is not None and user_total_margin > 0:
            return Decimal(str(user_total_margin))
        return Decimal(str(self.config.reference_account_size))

    def calculate_max_loss(self, plan: FollowPlan) -> Decimal:
        """quantity x contract size. Leverage is already in the margin."""
        return abs(plan.quantity) * self.get_contract_size(plan.symbol)

    def calculate_risk_score(
        self,
        plan: FollowPlan,
        user_total_margin: Optional[Decimal] = None,
        current_price: Optional[Decimal] = None,
    ) -> float:
        leverage = plan.leverage if plan.leverage > 0 else Decimal("1")
        notional = abs(plan.quantity) * self._price_estimate(plan, current_price)
        margin = notional / leverage
        account = self._reference_account(user_total_margin)

        leverage_risk = min(leverage * Decimal("2.5"), Decimal("50"))
        position_risk = min(margin / account * 30, Decimal("30"))
        interaction_risk = min(leverage * margin / (account * 10), Decimal("20"))

        return float(min(Decimal("20") + leverage_risk + position_risk + interaction_risk, HUNDRED))

    def generate_warnings(
        self,
        plan: FollowPlan,
        risk_score: float,
        user_total_margin: Optional[Decimal] = None,
        current_price: Optional[Decimal] = None,
    ) -> List[str]:
        cfg = self.config
        warnings: List[str] = []
        leverage = plan.leverage if plan.leverage > 0 else Decimal("1")
        notional = abs(plan.quantity) * self._price_estimate(plan, current_price)
        margin = notional / leverage
        margin_pct = margin / self._reference_account(user_total_margin) * HUNDRED

        if leverage > Decimal(str(cfg.high_leverage)):
            warnings.append(f"High leverage: {leverage}x exceeds {cfg.high_leverage:g}x")
        elif leverage > Decimal(str(cfg.medium_leverage)):
            warnings.append(f"Elevated leverage: {leverage}x exceeds {cfg.medium_leverage:g}x")

        if margin_pct > Decimal(str(cfg.high_margin_pct)):
            warnings.append(f"Heavy position: margin uses {margin_pct:.1f}% of account")
        elif margin_pct > Decimal(str(cfg.medium_margin_pct)):
            warnings.append(f"Medium position: margin uses {margin_pct:.1f}% of account")

        if risk_score > cfg.high_risk_score:
            warnings.append("High risk score: reduce size or leverage")
        elif risk_score > cfg.medium_risk_score:
            warnings.append("Medium risk score: confirm risk appetite")

        if notional > Decimal(str(cfg.large_notional)):
            warnings.append(f"Large notional value: ${notional:,.2f}")

        return warnings

    def assess_risk(
        self,
        plan: FollowPlan,
        user_total_margin: Optional[Decimal] = None,
        current_price: Optional[Decimal] = None,
    ) -> RiskAssessment:
        score = self.calculate_risk_score(plan, user_total_margin, current_price)
        return RiskAssessment(
            is_valid=score <= self.config.max_risk_score,
            risk_score=score,
            warnings=self.generate_warnings(plan, score, user_total_margin, current_price),
            max_loss=self.calculate_max_loss(plan),
            suggested_position_size=plan.quantity,
        )

    def assess_risk_with_price_tolerance(
        self,
        plan: FollowPlan,
        entry_price: Decimal,
        current_price: Decimal,
        symbol: Optional[str] = None,
        custom_tolerance: Optional[Decimal] = None,
        user_total_margin: Optional[Decimal] = None,
    ) -> RiskAssessment:
        assessment = self.assess_risk(plan, user_total_margin, current_price)
        check = self.check_price_tolerance(entry_price, current_price, symbol or plan.symbol, custom_tolerance)

        if not check.within_tolerance:
            assessment.warnings.append(f"Price tolerance check failed: {check.reason}")
            logger.info(
                "PRICE_TOLERANCE_EXCEEDED",
                symbol=plan.symbol,
                difference_pct=f"{check.price_difference:.2f}",
                tolerance_pct=str(check.tolerance),
            )

        assessment.price_tolerance = check
        assessment.is_valid = assessment.is_valid and check.within_tolerance
        return assessment
