"""
Consistency validation between the source trader and our order history.

The ledger only stores processed orders, so the "last known" source state is
reconstructed from the most recent record per symbol and diffed against what
the source reports now. The result picks a reconciliation policy:

    none              -> history and source agree
    user_confirmation -> a critical quantity mismatch exists
    trust_actual      -> history is empty or only minor drift
    rebuild_history   -> history mostly remembers positions the source closed
"""
from decimal import Decimal
from typing import Dict, List

from src.config.config import ReconciliationConfig
from src.domain.models import (
    ZERO,
    DiscrepancyType,
    OrderRecord,
    OrderSide,
    PlanAction,
    Position,
    PositionDiscrepancy,
    Severity,
    ValidationAction,
    ValidationResult,
)
from src.domain.protocols import OrderHistoryManager
from src.exceptions import DataError, OperationalError
from src.monitoring.logger import get_logger

logger = get_logger(__name__)

HUNDRED = Decimal("100")


class ConsistencyValidator:
    """Diffs current source positions against the reconstructed history."""

    def __init__(self, order_history: OrderHistoryManager, config: ReconciliationConfig):
        self.order_history = order_history
        self.config = config

    # ---------- reconstruction ----------

    @staticmethod
    def _latest_by_symbol(records: List[OrderRecord]) -> Dict[str, OrderRecord]:
        latest: Dict[str, OrderRecord] = {}
        for record in records:
            existing = latest.get(record.symbol)
            if existing is None or record.timestamp >= existing.timestamp:
                latest[record.symbol] = record
        return latest

    @staticmethod
    def _record_quantity(record: OrderRecord) -> Decimal:
        if record.action == PlanAction.EXIT:
            return ZERO
        size = record.source_quantity if record.source_quantity is not None else record.quantity
        size = abs(size)
        return size if record.side == OrderSide.BUY else -size

    def rebuild_last_positions(self, agent_id: str, current_positions: List[Position]) -> List[Position]:
        """
        Reconstruct the last followed state of each symbol from the ledger.

        Symbols the source still reports borrow leverage, current price,
        confidence and exit plan from the current position. Symbols that
        were last entered but are gone from the source are rebuilt from the
        record alone.
        """
        records = self.order_history.get_processed_orders_by_agent(agent_id)
        if not records:
            logger.debug("NO_ORDER_HISTORY", agent_id=agent_id)
            return []

        latest = self._latest_by_symbol(records)
        current_by_symbol = {p.symbol: p for p in current_positions}
        rebuilt: List[Position] = []

        for position in current_positions:
            record = latest.get(position.symbol)
            if record is None:
                continue
            rebuilt.append(
                Position(
                    symbol=position.symbol,
                    quantity=self._record_quantity(record),
                    entry_price=record.price if record.price > 0 else position.entry_price,
                    current_price=position.current_price,
                    leverage=position.leverage,
                    margin=ZERO,
                    entry_oid=record.entry_oid,
                    confidence=position.confidence,
                    exit_plan=position.exit_plan,
                )
            )

        for symbol, record in latest.items():
            if symbol in current_by_symbol or record.action != PlanAction.ENTER:
                continue
            rebuilt.append(
                Position(
                    symbol=symbol,
                    quantity=self._record_quantity(record),
                    entry_price=record.price,
                    current_price=record.price,
                    leverage=Decimal("1"),
                    entry_oid=record.entry_oid,
                )
            )

        logger.debug("HISTORY_REBUILT", agent_id=agent_id, positions=len(rebuilt))
        return rebuilt

    # ---------- diffing ----------

    def find_discrepancies(
        self, current_positions: List[Position], historical_positions: List[Position]
    ) -> List[PositionDiscrepancy]:
        cfg = self.config
        quantity_epsilon = Decimal(str(cfg.quantity_epsilon))
        price_epsilon = Decimal(str(cfg.price_epsilon))
        critical_ratio = Decimal(str(cfg.critical_quantity_diff_pct)) / HUNDRED
        high_ratio = Decimal(str(cfg.high_price_diff_pct)) / HUNDRED

        current_map = {p.symbol: p for p in current_positions}
        historical_map = {p.symbol: p for p in historical_positions}
        discrepancies: List[PositionDiscrepancy] = []

        for symbol, actual in current_map.items():
            historical = historical_map.get(symbol)
            if historical is None:
                discrepancies.append(
                    PositionDiscrepancy(
                        symbol=symbol,
                        type=DiscrepancyType.MISSING_IN_HISTORY,
                        severity=Severity.HIGH,
                        actual_position=actual,
                    )
                )
                continue

            quantity_diff = abs(actual.quantity - historical.quantity)
            if quantity_diff > quantity_epsilon:
                discrepancies.append(
                    PositionDiscrepancy(
                        symbol=symbol,
                        type=DiscrepancyType.QUANTITY_MISMATCH,
                        severity=Severity.CRITICAL if quantity_diff > abs(actual.quantity) * critical_ratio else Severity.MEDIUM,
                        actual_position=actual,
                        historical_position=historical,
                        quantity_diff=quantity_diff,
                    )
                )

            price_diff = abs(actual.entry_price - historical.entry_price)
            if price_diff > price_epsilon:
                discrepancies.append(
                    PositionDiscrepancy(
                        symbol=symbol,
                        type=DiscrepancyType.PRICE_MISMATCH,
                        severity=Severity.HIGH if price_diff > actual.entry_price * high_ratio else Severity.LOW,
                        actual_position=actual,
                        historical_position=historical,
                        price_diff=price_diff,
                    )
                )

        for symbol, historical in historical_map.items():
            if symbol not in current_map:
                discrepancies.append(
                    PositionDiscrepancy(
                        symbol=symbol,
                        type=DiscrepancyType.EXTRA_IN_HISTORY,
                        severity=Severity.MEDIUM,
                        historical_position=historical,
                    )
                )

        return discrepancies

    @staticmethod
    def determine_validation_action(
        discrepancies: List[PositionDiscrepancy],
        current_positions: List[Position],
        historical_positions: List[Position],
    ) -> ValidationResult:
        if not discrepancies:
            return ValidationResult(
                is_valid=True,
                is_consistent=True,
                discrepancies=[],
                action_required=ValidationAction.NONE,
                suggested_action="Positions are consistent, continue with normal processing",
            )

        critical = [d for d in discrepancies if d.severity == Severity.CRITICAL]
        if critical:
            return ValidationResult(
                is_valid=True,
                is_consistent=False,
                discrepancies=discrepancies,
                action_required=ValidationAction.USER_CONFIRMATION,
                suggested_action=f"Found {len(critical)} critical issues. Please review and confirm action.",
            )

        if current_positions and not historical_positions:
            return ValidationResult(
                is_valid=True,
                is_consistent=False,
                discrepancies=discrepancies,
                action_required=ValidationAction.TRUST_ACTUAL,
                suggested_action="No historical data found, will trust actual positions and rebuild history",
            )

        extra = [d for d in discrepancies if d.type == DiscrepancyType.EXTRA_IN_HISTORY]
        other_medium = [
            d for d in discrepancies
            if d.severity == Severity.MEDIUM and d.type != DiscrepancyType.EXTRA_IN_HISTORY
        ]
        if len(extra) > len(other_medium):
            return ValidationResult(
                is_valid=True,
                is_consistent=False,
                discrepancies=discrepancies,
                action_required=ValidationAction.REBUILD_HISTORY,
                suggested_action="Historical data may be outdated, will rebuild history from actual positions",
            )

        return ValidationResult(
            is_valid=True,
            is_consistent=False,
            discrepancies=discrepancies,
            action_required=ValidationAction.TRUST_ACTUAL,
            suggested_action="Minor inconsistencies found, will trust actual positions and update history",
        )

    def validate(self, agent_id: str, current_positions: List[Position]) -> ValidationResult:
        """
        Validate recorded history against the source's current positions.

        A ledger failure yields ``is_valid=False`` with ``user_confirmation``;
        callers treat that as fatal for the pass.
        """
        try:
            historical = self.rebuild_last_positions(agent_id, current_positions)
        except (OperationalError, DataError, OSError) as e:
            logger.error("POSITION_VALIDATION_FAILED", agent_id=agent_id, error=str(e))
            return ValidationResult(
                is_valid=False,
                is_consistent=False,
                discrepancies=[],
                action_required=ValidationAction.USER_CONFIRMATION,
                suggested_action="Validation failed, please check logs and decide manually",
            )

        discrepancies = self.find_discrepancies(current_positions, historical)
        result = self.determine_validation_action(discrepancies, current_positions, historical)

        for d in discrepancies:
            logger.warning("POSITION_DISCREPANCY", agent_id=agent_id, symbol=d.symbol, type=d.type.value, severity=d.severity.value)
        logger.info(
            "POSITION_VALIDATION_COMPLETE",
            agent_id=agent_id,
            discrepancies=len(discrepancies),
            action_required=result.action_required.value,
        )
        return result
