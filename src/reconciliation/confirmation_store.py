"""
Short-lived user confirmations for inconsistent agents.

One slot per agent. A confirmation expires after the configured TTL; it is
not consumed by a follow pass, so every pass inside the window reuses it.
"""
import threading
import time
from typing import Callable, Dict, Optional

from src.domain.models import ConfirmationAction, ConfirmationRecord
from src.monitoring.logger import get_logger

logger = get_logger(__name__)


class ConfirmationStore:
    """Thread-safe, clock-injected confirmation registry."""

    def __init__(self, ttl_seconds: float = 300.0, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._records: Dict[str, ConfirmationRecord] = {}
        self._lock = threading.Lock()

    def set_confirmation(self, agent_id: str, action: ConfirmationAction) -> ConfirmationRecord:
        record = ConfirmationRecord(agent_id=agent_id, action=ConfirmationAction(action), timestamp=self._clock())
        with self._lock:
            self._records[agent_id] = record
        logger.info("CONFIRMATION_RECORDED", agent_id=agent_id, action=record.action.value)
        return record

    def get_confirmation(self, agent_id: str) -> Optional[ConfirmationRecord]:
        """Latest unexpired confirmation for the agent, if any."""
        with self._lock:
            record = self._records.get(agent_id)
            if record is None:
                return None
            if self._is_expired(record, self.ttl_seconds):
                del self._records[agent_id]
                return None
            return record

    def clear_confirmation(self, agent_id: str) -> None:
        with self._lock:
            self._records.pop(agent_id, None)

    def has_recent_confirmation(self, agent_id: str, max_age_seconds: Optional[float] = None) -> bool:
        max_age = self.ttl_seconds if max_age_seconds is None else max_age_seconds
        with self._lock:
            record = self._records.get(agent_id)
            if record is None:
                return False
            if self._is_expired(record, max_age):
                # evict only past the store TTL, not a caller's stricter window
                if self._is_expired(record, self.ttl_seconds):
                    del self._records[agent_id]
                return False
            return True

    def _is_expired(self, record: ConfirmationRecord, max_age: float) -> bool:
        return self._clock() - record.timestamp > max_age
