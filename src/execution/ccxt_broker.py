"""
CCXT futures broker.

USDⓈ-M perpetual futures adapter over ccxt.async_support. Implements
BrokerClient (position lookup, close, orphaned-order cleanup) and
TradingExecutor (balance, positions, market order placement).

ccxt exceptions are translated at this boundary:
    RateLimitExceeded           -> RateLimitError
    NetworkError                -> APIError
    InsufficientFunds/InvalidOrder -> OrderExecutionError
    other ExchangeError         -> APIError
"""
from decimal import Decimal
from typing import Any, Dict, List, Optional

import ccxt.async_support as ccxt_async
from ccxt.base.errors import (
    ExchangeError,
    InsufficientFunds,
    InvalidOrder,
    NetworkError,
    RateLimitExceeded,
)

from src.config.config import ExchangeConfig
from src.data.symbol_utils import normalize_symbol, to_broker_symbol, to_unified_symbol
from src.domain.models import (
    AccountInfo,
    BrokerPosition,
    FollowPlan,
    MarginType,
    OrderResult,
    OrderSide,
    PlanAction,
    to_decimal,
)
from src.exceptions import APIError, OrderExecutionError, RateLimitError
from src.monitoring.logger import get_logger
from src.utils.retry import retry_on_transient_errors

logger = get_logger(__name__)

# Protective order types left behind when a position closes
_PROTECTIVE_TYPES = {"stop", "stop_market", "take_profit", "take_profit_market", "trailing_stop_market"}


def _translate(exc: Exception, action: str) -> Exception:
    if isinstance(exc, RateLimitExceeded):
        return RateLimitError(f"{action}: rate limited: {exc}")
    if isinstance(exc, NetworkError):
        return APIError(f"{action}: network error: {exc}")
    if isinstance(exc, (InsufficientFunds, InvalidOrder)):
        return OrderExecutionError(f"{action}: order rejected: {exc}")
    return APIError(f"{action}: {exc}")


class CcxtFuturesBroker:
    """Venue adapter for linear perpetual futures."""

    def __init__(self, config: ExchangeConfig, exchange: Any = None):
        self.config = config
        self.quote = config.quote_asset.upper()
        self._exchange = exchange

    def has_valid_credentials(self) -> bool:
        key, secret = self.config.api_key, self.config.api_secret
        return bool(key and secret and not key.startswith("${"))

    @property
    def exchange(self) -> Any:
        """
        Lazy ccxt exchange.

        Must be first touched inside the running event loop.
        """
        if self._exchange is None:
            exchange_class = getattr(ccxt_async, self.config.name)
            self._exchange = exchange_class({
                "apiKey": self.config.api_key,
                "secret": self.config.api_secret,
                "enableRateLimit": True,
                "timeout": self.config.request_timeout_ms,
                "options": {"defaultType": "future"},
            })
            if self.config.use_testnet:
                self._exchange.set_sandbox_mode(True)
            logger.info("CCXT_BROKER_INITIALIZED", exchange=self.config.name, testnet=self.config.use_testnet)
        return self._exchange

    async def close(self):
        """Cleanup resources."""
        if self._exchange is not None:
            await self._exchange.close()

    # ---------- symbols ----------

    def convert_symbol(self, symbol: str) -> str:
        return to_broker_symbol(symbol, self.quote)

    def _unified(self, symbol: str) -> str:
        return to_unified_symbol(symbol, self.quote)

    # ---------- mapping ----------

    def _to_broker_position(self, raw: Dict[str, Any]) -> BrokerPosition:
        info = raw.get("info") or {}
        contracts = to_decimal(raw.get("contracts"))
        if raw.get("side") == "short":
            contracts = -abs(contracts)
        margin_mode = (raw.get("marginMode") or info.get("marginType") or "cross").lower()
        margin_type = MarginType.ISOLATED if margin_mode.startswith("isolated") else MarginType.CROSSED
        return BrokerPosition(
            symbol=to_broker_symbol(raw.get("symbol") or info.get("symbol", ""), self.quote),
            position_amt=contracts,
            entry_price=to_decimal(raw.get("entryPrice")),
            leverage=to_decimal(raw.get("leverage"), Decimal("1")),
            unrealized_profit=to_decimal(raw.get("unrealizedPnl")),
            margin_type=margin_type,
            isolated_margin=to_decimal(info.get("isolatedMargin") or info.get("isolatedWallet")),
            mark_price=to_decimal(raw.get("markPrice")),
        )

    # ---------- BrokerClient / TradingExecutor ----------

    @retry_on_transient_errors(max_retries=3, base_delay=1.0)
    async def get_all_positions(self) -> List[BrokerPosition]:
        try:
            raw_positions = await self.exchange.fetch_positions()
        except (ExchangeError, NetworkError) as e:
            logger.error("FETCH_POSITIONS_FAILED", error=str(e))
            raise _translate(e, "fetch_positions") from e
        positions = [self._to_broker_position(p) for p in raw_positions]
        return [p for p in positions if p.is_open]

    async def get_positions(self, symbol: Optional[str] = None) -> List[BrokerPosition]:
        positions = await self.get_all_positions()
        if symbol is None:
            return positions
        wanted = normalize_symbol(symbol)
        return [p for p in positions if p.symbol == wanted]

    @retry_on_transient_errors(max_retries=3, base_delay=1.0)
    async def get_account_info(self) -> AccountInfo:
        try:
            balance = await self.exchange.fetch_balance()
        except (ExchangeError, NetworkError) as e:
            logger.error("FETCH_BALANCE_FAILED", error=str(e))
            raise _translate(e, "fetch_balance") from e
        free = (balance.get("free") or {}).get(self.quote)
        total = (balance.get("total") or {}).get(self.quote)
        return AccountInfo(available_balance=to_decimal(free), total_wallet_balance=to_decimal(total))

    async def _ensure_leverage(self, unified: str, leverage: Decimal, margin_type: Optional[MarginType]) -> None:
        if margin_type is not None:
            mode = "isolated" if margin_type == MarginType.ISOLATED else "cross"
            try:
                await self.exchange.set_margin_mode(mode, unified)
            except (ExchangeError, NetworkError) as e:
                # Venue rejects a no-op mode change
                if "no need" not in str(e).lower():
                    raise _translate(e, "set_margin_mode") from e
        if leverage > 0:
            try:
                await self.exchange.set_leverage(int(leverage), unified)
            except (ExchangeError, NetworkError) as e:
                raise _translate(e, "set_leverage") from e

    async def _market_order(
        self,
        unified: str,
        side: OrderSide,
        quantity: Decimal,
        reduce_only: bool = False,
    ) -> Dict[str, Any]:
        params = {"reduceOnly": True} if reduce_only else {}
        amount = float(self.exchange.amount_to_precision(unified, float(quantity)))
        try:
            return await self.exchange.create_order(unified, "market", side.value.lower(), amount, None, params)
        except (ExchangeError, NetworkError) as e:
            logger.error(
                "ORDER_REJECTED_BY_VENUE",
                symbol=unified,
                side=side.value,
                amount=amount,
                reduce_only=reduce_only,
                error=str(e),
            )
            raise _translate(e, "create_order") from e

    async def place_order(self, plan: FollowPlan) -> OrderResult:
        unified = self._unified(plan.symbol)
        if not self.exchange.markets:
            await self.exchange.load_markets()

        if plan.action == PlanAction.EXIT:
            return await self.close_position(self.convert_symbol(plan.symbol))

        await self._ensure_leverage(unified, plan.leverage, plan.margin_type)
        logger.info(
            "PLACING_FUTURES_ORDER",
            symbol=unified,
            side=plan.side.value,
            quantity=str(plan.quantity),
            leverage=str(plan.leverage),
        )
        order = await self._market_order(unified, plan.side, plan.quantity)
        filled = order.get("average") or order.get("price")
        return OrderResult(
            success=True,
            order_id=str(order.get("id")),
            filled_price=to_decimal(filled) if filled else None,
        )

    async def close_position(self, broker_symbol: str) -> OrderResult:
        """Reduce-only market order against the full open amount."""
        positions = await self.get_positions(broker_symbol)
        if not positions:
            logger.info("NO_POSITION_TO_CLOSE", symbol=broker_symbol)
            return OrderResult(success=False, error=f"No open position for {broker_symbol}")

        position = positions[0]
        unified = self._unified(broker_symbol)
        if not self.exchange.markets:
            await self.exchange.load_markets()
        close_side = OrderSide.SELL if position.position_amt > 0 else OrderSide.BUY
        logger.warning(
            "CLOSING_POSITION_MARKET",
            symbol=unified,
            size=str(abs(position.position_amt)),
            side=close_side.value,
        )
        order = await self._market_order(unified, close_side, abs(position.position_amt), reduce_only=True)
        filled = order.get("average") or order.get("price")
        return OrderResult(
            success=True,
            order_id=str(order.get("id")),
            filled_price=to_decimal(filled) if filled else None,
        )

    async def cancel_orphaned_orders(self) -> int:
        """Cancel stop/take-profit orders on symbols with no open position."""
        try:
            open_orders = await self.exchange.fetch_open_orders()
        except (ExchangeError, NetworkError) as e:
            raise _translate(e, "fetch_open_orders") from e

        live_symbols = {p.symbol for p in await self.get_all_positions()}
        cancelled = 0
        for order in open_orders:
            order_type = (order.get("type") or "").lower()
            symbol = to_broker_symbol(order.get("symbol", ""), self.quote)
            if order_type not in _PROTECTIVE_TYPES or symbol in live_symbols:
                continue
            try:
                await self.exchange.cancel_order(order["id"], order["symbol"])
            except ExchangeError as e:
                logger.warning("ORPHAN_CANCEL_FAILED", order_id=order.get("id"), symbol=symbol, error=str(e))
                continue
            cancelled += 1
            logger.info("ORPHAN_ORDER_CANCELLED", order_id=order.get("id"), symbol=symbol, type=order_type)
        return cancelled

