"""
Domain models for the copy-follow engine.

These are the core business objects shared by reconciliation, change
handling, capital allocation and execution. Money, prices and quantities
are Decimal. All timestamps use UTC timezone-aware datetimes.
"""
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional

ZERO = Decimal("0")


def to_decimal(value: Any, default: Decimal = ZERO) -> Decimal:
    """Convert API/JSON numbers to Decimal without float artifacts."""
    if value is None or value == "":
        return default
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return default


def _optional_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    return to_decimal(value)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PositionSide(str, Enum):
    """Direction of an open position."""
    LONG = "LONG"
    SHORT = "SHORT"


class OrderSide(str, Enum):
    """Order side."""
    BUY = "BUY"
    SELL = "SELL"

    @property
    def opposite(self) -> "OrderSide":
        return OrderSide.SELL if self == OrderSide.BUY else OrderSide.BUY


class OrderType(str, Enum):
    """Order type. The engine only emits market orders."""
    MARKET = "MARKET"


class PlanAction(str, Enum):
    """What a follow plan asks the executor to do."""
    ENTER = "ENTER"
    EXIT = "EXIT"


class MarginType(str, Enum):
    """Futures margin mode."""
    ISOLATED = "ISOLATED"
    CROSSED = "CROSSED"


class ChangeType(str, Enum):
    """Classification of a source position against its previous state."""
    ENTRY_CHANGED = "entry_changed"
    NEW_POSITION = "new_position"
    POSITION_CLOSED = "position_closed"
    PROFIT_TARGET_REACHED = "profit_target_reached"
    NO_CHANGE = "no_change"


class DiscrepancyType(str, Enum):
    """Ways the recorded history can disagree with the source."""
    MISSING_IN_HISTORY = "missing_in_history"
    EXTRA_IN_HISTORY = "extra_in_history"
    QUANTITY_MISMATCH = "quantity_mismatch"
    PRICE_MISMATCH = "price_mismatch"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ValidationAction(str, Enum):
    """Reconciliation policy chosen for a follow pass."""
    NONE = "none"
    TRUST_ACTUAL = "trust_actual"
    REBUILD_HISTORY = "rebuild_history"
    USER_CONFIRMATION = "user_confirmation"


class ConfirmationAction(str, Enum):
    """Decision a user can record for an inconsistent agent."""
    TRUST_ACTUAL = "trust_actual"
    REBUILD_HISTORY = "rebuild_history"
    ABORT = "abort"


# ============ SOURCE POSITIONS ============

@dataclass
class ExitPlan:
    """Exit levels published by the source trader."""
    profit_target: Optional[Decimal] = None
    stop_loss: Optional[Decimal] = None
    invalidation_condition: str = ""

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["ExitPlan"]:
        if not data:
            return None
        return cls(
            profit_target=_optional_decimal(data.get("profit_target")),
            stop_loss=_optional_decimal(data.get("stop_loss")),
            invalidation_condition=str(data.get("invalidation_condition") or ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "profit_target": str(self.profit_target) if self.profit_target is not None else None,
            "stop_loss": str(self.stop_loss) if self.stop_loss is not None else None,
            "invalidation_condition": self.invalidation_condition,
        }


@dataclass
class Position:
    """
    A position held by the source trader.

    ``quantity`` is signed: positive = long, negative = short, zero = flat.
    ``entry_oid`` changes whenever the source closed and reopened the symbol,
    so it identifies one position epoch.
    """
    symbol: str
    quantity: Decimal
    entry_price: Decimal
    current_price: Decimal
    leverage: Decimal
    margin: Decimal = ZERO
    entry_oid: int = 0
    confidence: Decimal = ZERO
    unrealized_pnl: Decimal = ZERO
    tp_oid: int = -1
    sl_oid: int = -1
    exit_plan: Optional[ExitPlan] = None

    @property
    def is_open(self) -> bool:
        return self.quantity != 0

    @property
    def side(self) -> OrderSide:
        """Order side that opens this position."""
        return OrderSide.BUY if self.quantity > 0 else OrderSide.SELL

    @property
    def direction(self) -> PositionSide:
        return PositionSide.LONG if self.quantity > 0 else PositionSide.SHORT

    @property
    def notional_margin(self) -> Decimal:
        """|quantity x entry| / leverage; zero when leverage is missing."""
        if self.leverage <= 0:
            return ZERO
        return abs(self.quantity * self.entry_price) / self.leverage

    @classmethod
    def from_dict(cls, data: Dict[str, Any], symbol: Optional[str] = None) -> "Position":
        """Build from the source feed JSON shape (snake_case keys)."""
        return cls(
            symbol=str(symbol or data.get("symbol") or ""),
            quantity=to_decimal(data.get("quantity")),
            entry_price=to_decimal(data.get("entry_price")),
            current_price=to_decimal(data.get("current_price")),
            leverage=to_decimal(data.get("leverage"), Decimal("1")),
            margin=to_decimal(data.get("margin")),
            entry_oid=int(data.get("entry_oid") or 0),
            confidence=to_decimal(data.get("confidence")),
            unrealized_pnl=to_decimal(data.get("unrealized_pnl")),
            tp_oid=int(data.get("tp_oid") if data.get("tp_oid") is not None else -1),
            sl_oid=int(data.get("sl_oid") if data.get("sl_oid") is not None else -1),
            exit_plan=ExitPlan.from_dict(data.get("exit_plan")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "quantity": str(self.quantity),
            "entry_price": str(self.entry_price),
            "current_price": str(self.current_price),
            "leverage": str(self.leverage),
            "margin": str(self.margin),
            "entry_oid": self.entry_oid,
            "confidence": str(self.confidence),
            "unrealized_pnl": str(self.unrealized_pnl),
            "tp_oid": self.tp_oid,
            "sl_oid": self.sl_oid,
            "exit_plan": self.exit_plan.to_dict() if self.exit_plan else None,
        }


# ============ BROKER STATE ============

@dataclass
class BrokerPosition:
    """The caller's own live position on the venue (signed amount)."""
    symbol: str
    position_amt: Decimal
    entry_price: Decimal
    leverage: Decimal = Decimal("1")
    unrealized_profit: Decimal = ZERO
    margin_type: MarginType = MarginType.CROSSED
    isolated_margin: Decimal = ZERO
    mark_price: Decimal = ZERO

    @property
    def is_open(self) -> bool:
        return self.position_amt != 0

    @property
    def direction(self) -> PositionSide:
        return PositionSide.LONG if self.position_amt > 0 else PositionSide.SHORT

    @property
    def notional_margin(self) -> Decimal:
        if self.leverage <= 0:
            return ZERO
        return abs(self.position_amt * self.entry_price) / self.leverage

    @property
    def position_margin(self) -> Decimal:
        """Isolated margin when isolated, otherwise the notional-derived margin."""
        if self.margin_type == MarginType.ISOLATED:
            return self.isolated_margin
        return self.notional_margin


@dataclass
class AccountInfo:
    """Futures wallet snapshot."""
    available_balance: Decimal
    total_wallet_balance: Decimal = ZERO


@dataclass
class CloseResult:
    success: bool
    error: Optional[str] = None


@dataclass
class OrderResult:
    success: bool
    order_id: Optional[str] = None
    error: Optional[str] = None
    filled_price: Optional[Decimal] = None


# ============ RECONCILIATION ============

@dataclass
class PositionChange:
    """One detected transition for a symbol."""
    symbol: str
    type: ChangeType
    current_position: Optional[Position] = None
    previous_position: Optional[Position] = None
    profit_percentage: Optional[Decimal] = None


@dataclass
class PositionDiscrepancy:
    """Disagreement between the source and the reconstructed history."""
    symbol: str
    type: DiscrepancyType
    severity: Severity
    actual_position: Optional[Position] = None
    historical_position: Optional[Position] = None
    quantity_diff: Optional[Decimal] = None
    price_diff: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "type": self.type.value,
            "severity": self.severity.value,
            "actual_quantity": str(self.actual_position.quantity) if self.actual_position else None,
            "historical_quantity": str(self.historical_position.quantity) if self.historical_position else None,
            "quantity_diff": str(self.quantity_diff) if self.quantity_diff is not None else None,
            "price_diff": str(self.price_diff) if self.price_diff is not None else None,
        }


@dataclass
class ValidationResult:
    """Outcome of a consistency check for one agent."""
    is_valid: bool
    is_consistent: bool
    discrepancies: List[PositionDiscrepancy] = field(default_factory=list)
    action_required: ValidationAction = ValidationAction.NONE
    suggested_action: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "is_consistent": self.is_consistent,
            "discrepancies": [d.to_dict() for d in self.discrepancies],
            "action_required": self.action_required.value,
            "suggested_action": self.suggested_action,
        }


@dataclass
class ConfirmationRecord:
    agent_id: str
    action: ConfirmationAction
    timestamp: float


# ============ PLANS ============

@dataclass
class FollowOptions:
    """Caller-supplied options for one follow pass."""
    total_margin: Optional[Decimal] = None
    profit_target: Optional[Decimal] = None  # percent
    auto_refollow: bool = False
    margin_type: Optional[MarginType] = None
    max_leverage: Optional[Decimal] = None
    price_tolerance: Optional[Decimal] = None  # percent


@dataclass
class PriceToleranceCheck:
    entry_price: Decimal
    current_price: Decimal
    price_difference: Decimal  # percent
    tolerance: Decimal  # percent
    within_tolerance: bool
    should_execute: bool
    reason: str


@dataclass
class FollowPlan:
    """
    An order the executor should place to mirror the source.

    Allocation metadata is filled in by the capital allocation step.
    """
    action: PlanAction
    symbol: str
    side: OrderSide
    quantity: Decimal
    leverage: Decimal
    agent_id: str
    reason: str
    order_type: OrderType = OrderType.MARKET
    entry_price: Optional[Decimal] = None
    exit_price: Optional[Decimal] = None
    position: Optional[Position] = None
    price_tolerance: Optional[PriceToleranceCheck] = None
    released_margin: Optional[Decimal] = None
    margin_type: Optional[MarginType] = None
    original_margin: Optional[Decimal] = None
    allocated_margin: Optional[Decimal] = None
    notional_value: Optional[Decimal] = None
    adjusted_quantity: Optional[Decimal] = None
    allocation_ratio: Optional[Decimal] = None
    is_direct_strategy_adjustment: bool = False
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        def _s(v):
            return str(v) if v is not None else None

        return {
            "action": self.action.value,
            "symbol": self.symbol,
            "side": self.side.value,
            "type": self.order_type.value,
            "quantity": str(self.quantity),
            "leverage": str(self.leverage),
            "entry_price": _s(self.entry_price),
            "exit_price": _s(self.exit_price),
            "reason": self.reason,
            "agent": self.agent_id,
            "timestamp": self.timestamp.isoformat(),
            "entry_oid": self.position.entry_oid if self.position else None,
            "released_margin": _s(self.released_margin),
            "margin_type": self.margin_type.value if self.margin_type else None,
            "original_margin": _s(self.original_margin),
            "allocated_margin": _s(self.allocated_margin),
            "notional_value": _s(self.notional_value),
            "adjusted_quantity": _s(self.adjusted_quantity),
            "allocation_ratio": _s(self.allocation_ratio),
            "is_direct_strategy_adjustment": self.is_direct_strategy_adjustment,
        }


@dataclass
class CapitalAllocation:
    """Per-symbol share of the user's capital."""
    symbol: str
    original_margin: Decimal
    allocated_margin: Decimal
    notional_value: Decimal
    adjusted_quantity: Decimal
    allocation_ratio: Decimal
    leverage: Decimal
    side: OrderSide


@dataclass
class CapitalAllocationResult:
    allocations: List[CapitalAllocation]
    total_original_margin: Decimal
    total_allocated_margin: Decimal
    total_notional_value: Decimal

    def for_symbol(self, symbol: str) -> Optional[CapitalAllocation]:
        for allocation in self.allocations:
            if allocation.symbol == symbol:
                return allocation
        return None


@dataclass
class RiskAssessment:
    is_valid: bool
    risk_score: float
    warnings: List[str]
    max_loss: Decimal
    suggested_position_size: Decimal
    price_tolerance: Optional[PriceToleranceCheck] = None


# ============ LEDGER ============

@dataclass
class OrderRecord:
    """A processed (executed) order, keyed by source epoch."""
    agent_id: str
    symbol: str
    side: OrderSide
    quantity: Decimal
    price: Decimal
    entry_oid: int
    action: PlanAction = PlanAction.ENTER
    order_id: Optional[str] = None
    source_quantity: Optional[Decimal] = None  # unsigned source size at follow time
    timestamp: datetime = field(default_factory=_utcnow)


@dataclass
class ProfitExitRecord:
    """Audit entry for a profit-target close."""
    symbol: str
    entry_oid: int
    exit_price: Decimal
    profit_percentage: Decimal
    reason: str
    agent_id: Optional[str] = None
    refollow_allowed: bool = False
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["exit_price"] = str(self.exit_price)
        data["profit_percentage"] = str(self.profit_percentage)
        data["timestamp"] = self.timestamp.isoformat()
        return data
