"""
Paper broker.

In-memory futures account used for dry runs and tests. Implements both
BrokerClient (for PositionManager) and TradingExecutor (for the follow
service and PlanExecutor). Market orders fill immediately at the plan's
entry or exit price.
"""
import json
import uuid
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

from src.data.symbol_utils import DEFAULT_QUOTE, normalize_symbol, to_broker_symbol
from src.domain.models import (
    ZERO,
    AccountInfo,
    BrokerPosition,
    FollowPlan,
    MarginType,
    OrderResult,
    OrderSide,
    PlanAction,
    to_decimal,
)
from src.exceptions import DataError
from src.monitoring.logger import get_logger

logger = get_logger(__name__)


class PaperBroker:
    """Simulated venue account."""

    def __init__(
        self,
        available_balance: Decimal = Decimal("10000"),
        positions: Optional[List[BrokerPosition]] = None,
        quote: str = DEFAULT_QUOTE,
        orphaned_orders: int = 0,
    ):
        self.available_balance = Decimal(available_balance)
        self.quote = quote
        self.orphaned_orders = orphaned_orders
        self.positions: Dict[str, BrokerPosition] = {}
        self.orders: List[Dict[str, Any]] = []
        for position in positions or []:
            self.positions[position.symbol] = position

    @classmethod
    def from_file(cls, path: Path | str, quote: str = DEFAULT_QUOTE) -> "PaperBroker":
        """
        Load an account snapshot.

        Format::

            {"available_balance": "1000",
             "positions": [{"symbol": "BTCUSDT", "position_amt": "0.01",
                            "entry_price": "60000", "leverage": "10"}]}
        """
        try:
            data = json.loads(Path(path).read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise DataError(f"Cannot read paper account {path}: {e}") from e

        positions = []
        for raw in data.get("positions", []):
            positions.append(
                BrokerPosition(
                    symbol=to_broker_symbol(raw["symbol"], quote),
                    position_amt=to_decimal(raw.get("position_amt")),
                    entry_price=to_decimal(raw.get("entry_price")),
                    leverage=to_decimal(raw.get("leverage"), Decimal("1")),
                    unrealized_profit=to_decimal(raw.get("unrealized_profit")),
                    margin_type=MarginType(raw.get("margin_type", MarginType.CROSSED.value)),
                    isolated_margin=to_decimal(raw.get("isolated_margin")),
                    mark_price=to_decimal(raw.get("mark_price")),
                )
            )
        return cls(
            available_balance=to_decimal(data.get("available_balance"), Decimal("10000")),
            positions=positions,
            quote=quote,
            orphaned_orders=int(data.get("orphaned_orders", 0)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "available_balance": str(self.available_balance),
            "orphaned_orders": self.orphaned_orders,
            "positions": [
                {
                    "symbol": p.symbol,
                    "position_amt": str(p.position_amt),
                    "entry_price": str(p.entry_price),
                    "leverage": str(p.leverage),
                    "unrealized_profit": str(p.unrealized_profit),
                    "margin_type": p.margin_type.value,
                    "isolated_margin": str(p.isolated_margin),
                    "mark_price": str(p.mark_price),
                }
                for p in self.positions.values()
                if p.is_open
            ],
        }

    def save(self, path: Path | str) -> None:
        Path(path).write_text(json.dumps(self.to_dict(), indent=2))

    # ---------- BrokerClient ----------

    def convert_symbol(self, symbol: str) -> str:
        return to_broker_symbol(symbol, self.quote)

    async def get_positions(self, symbol: Optional[str] = None) -> List[BrokerPosition]:
        if symbol is None:
            return list(self.positions.values())
        position = self.positions.get(normalize_symbol(symbol))
        return [position] if position is not None else []

    async def get_all_positions(self) -> List[BrokerPosition]:
        return list(self.positions.values())

    async def close_position(self, broker_symbol: str) -> OrderResult:
        position = self.positions.pop(normalize_symbol(broker_symbol), None)
        if position is None or not position.is_open:
            return OrderResult(success=False, error=f"No open position for {broker_symbol}")
        exit_price = position.mark_price if position.mark_price > 0 else position.entry_price
        pnl = (exit_price - position.entry_price) * position.position_amt
        self.available_balance += position.position_margin + pnl
        order_id = self._record_order(
            broker_symbol, OrderSide.SELL if position.position_amt > 0 else OrderSide.BUY,
            abs(position.position_amt), exit_price, reduce_only=True,
        )
        logger.info("PAPER_POSITION_CLOSED", symbol=broker_symbol, pnl=str(pnl), order_id=order_id)
        return OrderResult(success=True, order_id=order_id, filled_price=exit_price)

    async def cancel_orphaned_orders(self) -> int:
        cancelled, self.orphaned_orders = self.orphaned_orders, 0
        return cancelled

    # ---------- TradingExecutor ----------

    async def get_account_info(self) -> AccountInfo:
        held = sum((p.position_margin for p in self.positions.values() if p.is_open), ZERO)
        return AccountInfo(
            available_balance=self.available_balance,
            total_wallet_balance=self.available_balance + held,
        )

    async def place_order(self, plan: FollowPlan) -> OrderResult:
        broker_symbol = self.convert_symbol(plan.symbol)
        if plan.quantity <= 0:
            return OrderResult(success=False, error="Order quantity must be positive")

        if plan.action == PlanAction.EXIT:
            return await self.close_position(broker_symbol)

        price = plan.entry_price or (plan.position.current_price if plan.position else ZERO)
        if price <= 0:
            return OrderResult(success=False, error=f"No fill price for {plan.symbol}")

        leverage = plan.leverage if plan.leverage > 0 else Decimal("1")
        margin = plan.quantity * price / leverage
        if margin > self.available_balance:
            return OrderResult(
                success=False,
                error=f"Insufficient balance: need {margin:.2f}, have {self.available_balance:.2f}",
            )

        signed = plan.quantity if plan.side == OrderSide.BUY else -plan.quantity
        existing = self.positions.get(broker_symbol)
        if existing is not None and existing.is_open and (existing.position_amt > 0) == (signed > 0):
            total = existing.position_amt + signed
            existing.entry_price = (
                existing.entry_price * existing.position_amt + price * signed
            ) / total
            existing.position_amt = total
            if existing.margin_type == MarginType.ISOLATED:
                existing.isolated_margin += margin
        else:
            if existing is not None and existing.is_open:
                await self.close_position(broker_symbol)
            margin_type = plan.margin_type or MarginType.CROSSED
            self.positions[broker_symbol] = BrokerPosition(
                symbol=broker_symbol,
                position_amt=signed,
                entry_price=price,
                leverage=leverage,
                margin_type=margin_type,
                isolated_margin=margin if margin_type == MarginType.ISOLATED else ZERO,
                mark_price=price,
            )

        self.available_balance -= margin
        order_id = self._record_order(broker_symbol, plan.side, plan.quantity, price)
        logger.info(
            "PAPER_ORDER_FILLED",
            symbol=broker_symbol,
            side=plan.side.value,
            quantity=str(plan.quantity),
            price=str(price),
            order_id=order_id,
        )
        return OrderResult(success=True, order_id=order_id, filled_price=price)

    def _record_order(
        self, symbol: str, side: OrderSide, quantity: Decimal, price: Decimal, reduce_only: bool = False
    ) -> str:
        order_id = f"paper-{uuid.uuid4().hex[:12]}"
        self.orders.append(
            {
                "order_id": order_id,
                "symbol": symbol,
                "side": side.value,
                "quantity": str(quantity),
                "price": str(price),
                "reduce_only": reduce_only,
            }
        )
        return order_id
