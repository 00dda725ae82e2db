"""
Proportional margin allocation across source positions.

Each position's margin basis is its reported margin, or |quantity x price| /
leverage when the feed reports none. The user's total margin is split by
those weights, turned into notional with the position's (capped) leverage
and converted to a quantity rounded down to the venue's lot precision.
"""
from decimal import Decimal, ROUND_DOWN
from typing import List, Optional

from src.config.config import CapitalConfig
from src.data.symbol_utils import normalize_to_base
from src.domain.models import (
    ZERO,
    CapitalAllocation,
    CapitalAllocationResult,
    Position,
)
from src.monitoring.logger import get_logger

logger = get_logger(__name__)


class CapitalAllocationEngine:
    """Splits a total margin budget across positions by margin weight."""

    def __init__(self, config: CapitalConfig):
        self.config = config

    def get_quantity_precision(self, symbol: str) -> int:
        return self.config.quantity_precision.get(
            normalize_to_base(symbol), self.config.default_quantity_precision
        )

    def round_quantity(self, quantity: Decimal, symbol: str) -> Decimal:
        """Round down so the order never exceeds the allocated margin."""
        step = Decimal(1).scaleb(-self.get_quantity_precision(symbol))
        return quantity.quantize(step, rounding=ROUND_DOWN)

    @staticmethod
    def _pricing(position: Position) -> Decimal:
        return position.current_price if position.current_price > 0 else position.entry_price

    def allocate_margin(
        self,
        positions: List[Position],
        total_margin: Optional[Decimal] = None,
        available_balance: Optional[Decimal] = None,
        net_worth: Optional[Decimal] = None,
        max_leverage: Optional[Decimal] = None,
    ) -> CapitalAllocationResult:
        """
        Allocate ``total_margin`` across ``positions``.

        Args:
            positions: Source positions to mirror
            total_margin: User budget; the configured default when None
            available_balance: Free balance, used as ceiling when net worth is unknown
            net_worth: Available + held margin + unrealized PnL, preferred ceiling
            max_leverage: Caps each position's leverage

        Returns:
            CapitalAllocationResult (empty when nothing is allocatable)
        """
        budget = Decimal(str(total_margin)) if total_margin is not None else Decimal(str(self.config.default_total_margin))

        ceiling = net_worth if net_worth is not None and net_worth > 0 else available_balance
        if ceiling is not None and ceiling > 0 and budget > ceiling:
            logger.warning(
                "ALLOCATION_BUDGET_CLAMPED",
                requested=str(budget),
                ceiling=str(ceiling),
                source="net_worth" if ceiling is net_worth else "available_balance",
            )
            budget = ceiling

        prepared = []
        for position in positions:
            price = self._pricing(position)
            base_leverage = position.leverage if position.leverage > 0 else Decimal("1")
            leverage = base_leverage
            if max_leverage is not None and max_leverage > 0:
                leverage = min(base_leverage, Decimal(str(max_leverage)))

            if position.margin > 0:
                margin = position.margin
            elif price > 0:
                margin = abs(position.quantity) * price / base_leverage
            else:
                margin = ZERO

            if margin > 0 and price > 0:
                prepared.append((position, margin, leverage, price))

        total_original = sum((m for _, m, _, _ in prepared), ZERO)
        if not prepared or total_original <= 0:
            return CapitalAllocationResult(
                allocations=[],
                total_original_margin=ZERO,
                total_allocated_margin=ZERO,
                total_notional_value=ZERO,
            )

        allocations: List[CapitalAllocation] = []
        for position, margin, leverage, price in prepared:
            ratio = margin / total_original
            allocated = budget * ratio
            notional = allocated * leverage
            quantity = max(self.round_quantity(notional / price, position.symbol), ZERO)
            allocations.append(
                CapitalAllocation(
                    symbol=position.symbol,
                    original_margin=margin,
                    allocated_margin=allocated,
                    notional_value=notional,
                    adjusted_quantity=quantity,
                    allocation_ratio=ratio,
                    leverage=leverage,
                    side=position.side,
                )
            )

        result = CapitalAllocationResult(
            allocations=allocations,
            total_original_margin=total_original,
            total_allocated_margin=sum((a.allocated_margin for a in allocations), ZERO),
            total_notional_value=sum((a.notional_value for a in allocations), ZERO),
        )
        logger.info(
            "CAPITAL_ALLOCATED",
            positions=len(allocations),
            budget=str(budget),
            total_original_margin=str(result.total_original_margin),
        )
        return result

    def validate_allocation(self, result: CapitalAllocationResult) -> bool:
        """Allocation ratios must sum to 1 within tolerance."""
        if not result.allocations:
            return True
        total_ratio = sum((a.allocation_ratio for a in result.allocations), ZERO)
        if abs(total_ratio - 1) > Decimal(str(self.config.allocation_ratio_tolerance)):
            logger.warning("ALLOCATION_RATIO_MISMATCH", total_ratio=str(total_ratio))
            return False
        return True
