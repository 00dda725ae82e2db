"""
Order history ledger.

Persists processed (executed) orders and profit-target exits, and answers
the idempotency questions the follow engine asks every pass. Reads are
served from an in-memory cache; ``reload_history()`` refreshes it from the
database.
"""
import threading
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import BigInteger, Boolean, Column, DateTime, Index, Integer, Numeric, String
from sqlalchemy.exc import SQLAlchemyError

from src.domain.models import OrderRecord, OrderSide, PlanAction, ProfitExitRecord
from src.exceptions import OperationalError
from src.monitoring.logger import get_logger
from src.storage.db import Base, Database

logger = get_logger(__name__)


# ORM Models
class ProcessedOrderModel(Base):
    """ORM model for orders placed to follow a source epoch."""
    __tablename__ = "processed_orders"
    __table_args__ = (
        Index("idx_processed_symbol_oid", "symbol", "entry_oid"),
        Index("idx_processed_agent", "agent_id", "timestamp"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    agent_id = Column(String, nullable=False)
    symbol = Column(String, nullable=False)
    side = Column(String, nullable=False)
    action = Column(String, nullable=False)
    quantity = Column(Numeric(precision=20, scale=8), nullable=False)
    price = Column(Numeric(precision=20, scale=8), nullable=False)
    source_quantity = Column(Numeric(precision=20, scale=8), nullable=True)
    entry_oid = Column(BigInteger, nullable=False)
    order_id = Column(String, nullable=True)
    refollow_reset = Column(Boolean, nullable=False, default=False)
    timestamp = Column(DateTime(timezone=True), nullable=False)


class ProfitExitModel(Base):
    """ORM model for profit-target exits."""
    __tablename__ = "profit_exits"
    __table_args__ = (Index("idx_profit_exit_symbol", "symbol", "timestamp"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    symbol = Column(String, nullable=False)
    entry_oid = Column(BigInteger, nullable=False)
    exit_price = Column(Numeric(precision=20, scale=8), nullable=False)
    profit_percentage = Column(Numeric(precision=12, scale=4), nullable=False)
    reason = Column(String, nullable=False)
    agent_id = Column(String, nullable=True)
    refollow_allowed = Column(Boolean, nullable=False, default=False)
    timestamp = Column(DateTime(timezone=True), nullable=False)


def _aware(ts: datetime) -> datetime:
    # SQLite drops tzinfo on the way back
    return ts if ts.tzinfo is not None else ts.replace(tzinfo=timezone.utc)


def _to_order_record(row: ProcessedOrderModel) -> OrderRecord:
    return OrderRecord(
        agent_id=row.agent_id,
        symbol=row.symbol,
        side=OrderSide(row.side),
        quantity=Decimal(str(row.quantity)),
        price=Decimal(str(row.price)),
        entry_oid=int(row.entry_oid),
        action=PlanAction(row.action),
        order_id=row.order_id,
        source_quantity=Decimal(str(row.source_quantity)) if row.source_quantity is not None else None,
        timestamp=_aware(row.timestamp),
    )


def _to_profit_exit(row: ProfitExitModel) -> ProfitExitRecord:
    return ProfitExitRecord(
        symbol=row.symbol,
        entry_oid=int(row.entry_oid),
        exit_price=Decimal(str(row.exit_price)),
        profit_percentage=Decimal(str(row.profit_percentage)),
        reason=row.reason,
        agent_id=row.agent_id,
        refollow_allowed=bool(row.refollow_allowed),
        timestamp=_aware(row.timestamp),
    )


class SqlOrderHistoryManager:
    """SQLAlchemy-backed OrderHistoryManager."""

    def __init__(self, db: Database):
        self.db = db
        self._lock = threading.RLock()
        self._orders: List[OrderRecord] = []
        # (symbol, entry_oid) pairs released for refollow
        self._reset: set[tuple[str, int]] = set()
        self._profit_exits: Dict[str, ProfitExitRecord] = {}
        self.reload_history()

    def reload_history(self) -> None:
        """Rebuild the cache from the database."""
        try:
            with self.db.get_session() as session:
                order_rows = session.query(ProcessedOrderModel).order_by(
                    ProcessedOrderModel.timestamp, ProcessedOrderModel.id
                ).all()
                orders = [_to_order_record(r) for r in order_rows]
                # a later ENTER for the same epoch re-marks it processed
                refollowed = {
                    (r.symbol, int(r.entry_oid))
                    for r in order_rows
                    if not r.refollow_reset and r.action == PlanAction.ENTER.value
                }
                reset = {
                    (r.symbol, int(r.entry_oid)) for r in order_rows if r.refollow_reset
                } - refollowed

                exit_rows = session.query(ProfitExitModel).order_by(
                    ProfitExitModel.timestamp, ProfitExitModel.id
                ).all()
                exits: Dict[str, ProfitExitRecord] = {}
                for row in exit_rows:
                    exits[row.symbol] = _to_profit_exit(row)
        except SQLAlchemyError as e:
            logger.error("ORDER_HISTORY_LOAD_FAILED", error=str(e))
            raise OperationalError(f"Cannot load order history: {e}") from e

        with self._lock:
            self._orders = orders
            self._reset = reset
            self._profit_exits = exits
        logger.info("ORDER_HISTORY_LOADED", orders=len(orders), profit_exits=len(exits))

    # ---------- processed orders ----------

    def is_order_processed(self, entry_oid: int, symbol: str) -> bool:
        with self._lock:
            if (symbol, entry_oid) in self._reset:
                return False
            return any(
                r.entry_oid == entry_oid and r.symbol == symbol and r.action == PlanAction.ENTER
                for r in self._orders
            )

    def get_processed_orders_by_agent(self, agent_id: str) -> List[OrderRecord]:
        with self._lock:
            return [r for r in self._orders if r.agent_id == agent_id]

    def add_processed_order(self, record: OrderRecord) -> None:
        try:
            with self.db.get_session() as session:
                session.add(
                    ProcessedOrderModel(
                        agent_id=record.agent_id,
                        symbol=record.symbol,
                        side=record.side.value,
                        action=record.action.value,
                        quantity=record.quantity,
                        price=record.price,
                        source_quantity=record.source_quantity,
                        entry_oid=record.entry_oid,
                        order_id=record.order_id,
                        refollow_reset=False,
                        timestamp=record.timestamp,
                    )
                )
        except SQLAlchemyError as e:
            logger.error("ORDER_RECORD_SAVE_FAILED", symbol=record.symbol, entry_oid=record.entry_oid, error=str(e))
            raise OperationalError(f"Cannot save processed order: {e}") from e

        with self._lock:
            self._orders.append(record)
            self._reset.discard((record.symbol, record.entry_oid))
        logger.debug(
            "ORDER_RECORDED",
            agent_id=record.agent_id,
            symbol=record.symbol,
            action=record.action.value,
            entry_oid=record.entry_oid,
        )

    # ---------- profit exits ----------

    def add_profit_exit_record(self, record: ProfitExitRecord) -> None:
        try:
            with self.db.get_session() as session:
                session.add(
                    ProfitExitModel(
                        symbol=record.symbol,
                        entry_oid=record.entry_oid,
                        exit_price=record.exit_price,
                        profit_percentage=record.profit_percentage,
                        reason=record.reason,
                        agent_id=record.agent_id,
                        refollow_allowed=record.refollow_allowed,
                        timestamp=record.timestamp,
                    )
                )
        except SQLAlchemyError as e:
            logger.error("PROFIT_EXIT_SAVE_FAILED", symbol=record.symbol, error=str(e))
            raise OperationalError(f"Cannot save profit exit: {e}") from e

        with self._lock:
            self._profit_exits[record.symbol] = record
        logger.info(
            "PROFIT_EXIT_RECORDED",
            symbol=record.symbol,
            entry_oid=record.entry_oid,
            profit_pct=str(record.profit_percentage),
        )

    def get_latest_profit_exit(self, symbol: str) -> Optional[ProfitExitRecord]:
        with self._lock:
            return self._profit_exits.get(symbol)

    def reset_symbol_order_status(self, symbol: str, entry_oid: int) -> None:
        """
        Release a symbol for refollow after a profit exit.

        Marks the epoch's processed orders as reset and flags the latest
        profit exit for the symbol as refollow_allowed.
        """
        try:
            with self.db.get_session() as session:
                session.query(ProcessedOrderModel).filter(
                    ProcessedOrderModel.symbol == symbol,
                    ProcessedOrderModel.entry_oid == entry_oid,
                ).update({ProcessedOrderModel.refollow_reset: True}, synchronize_session=False)

                latest = (
                    session.query(ProfitExitModel)
                    .filter(ProfitExitModel.symbol == symbol)
                    .order_by(ProfitExitModel.timestamp.desc(), ProfitExitModel.id.desc())
                    .first()
                )
                if latest is not None:
                    latest.refollow_allowed = True
        except SQLAlchemyError as e:
            logger.error("ORDER_STATUS_RESET_FAILED", symbol=symbol, entry_oid=entry_oid, error=str(e))
            raise OperationalError(f"Cannot reset order status: {e}") from e

        with self._lock:
            self._reset.add((symbol, entry_oid))
            exit_record = self._profit_exits.get(symbol)
            if exit_record is not None:
                exit_record.refollow_allowed = True
        logger.info("ORDER_STATUS_RESET", symbol=symbol, entry_oid=entry_oid)
