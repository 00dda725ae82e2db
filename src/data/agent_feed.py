"""
Source trader feed client.

Reads the ``account-totals`` endpoint, which returns one snapshot per agent
per hourly marker, and exposes the latest snapshot for each agent.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import aiohttp

from src.config.config import FeedConfig
from src.domain.models import Position
from src.exceptions import APIError, DataError, RateLimitError
from src.monitoring.logger import get_logger
from src.utils.retry import retry_on_transient_errors

logger = get_logger(__name__)


@dataclass
class AgentAccount:
    """One agent snapshot from the feed."""
    id: str
    model_id: str
    marker: int
    positions: List[Position] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AgentAccount":
        try:
            raw_positions = data.get("positions") or {}
            positions = [
                Position.from_dict(raw, symbol=symbol)
                for symbol, raw in raw_positions.items()
            ]
            return cls(
                id=str(data["id"]),
                model_id=str(data["model_id"]),
                marker=int(data.get("since_inception_hourly_marker") or 0),
                positions=positions,
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise DataError(f"Malformed agent account: {e}") from e


def select_latest_accounts(accounts: List[AgentAccount]) -> Dict[str, AgentAccount]:
    """Latest snapshot per model_id by hourly marker."""
    latest: Dict[str, AgentAccount] = {}
    for account in accounts:
        existing = latest.get(account.model_id)
        if existing is None or account.marker > existing.marker:
            latest[account.model_id] = account
    return latest


class AgentFeedClient:
    """HTTP client for the source trader feed."""

    def __init__(self, config: FeedConfig, session: Optional[aiohttp.ClientSession] = None):
        self.config = config
        self._session = session

    @property
    def url(self) -> str:
        return self.config.base_url.rstrip("/") + self.config.account_totals_path

    @retry_on_transient_errors(max_retries=2, base_delay=1.0)
    async def fetch_account_totals(self, marker: Optional[int] = None) -> List[AgentAccount]:
        params = {"lastHourlyMarker": str(marker)} if marker is not None else None
        timeout = aiohttp.ClientTimeout(total=self.config.timeout_seconds)
        try:
            if self._session is not None:
                payload = await self._get(self._session, params)
            else:
                async with aiohttp.ClientSession(timeout=timeout) as session:
                    payload = await self._get(session, params)
        except aiohttp.ClientError as e:
            logger.error("FEED_REQUEST_FAILED", url=self.url, error=str(e))
            raise APIError(f"Feed request failed: {e}") from e

        accounts = []
        for raw in payload.get("accountTotals") or []:
            try:
                accounts.append(AgentAccount.from_dict(raw))
            except DataError as e:
                logger.warning("FEED_ACCOUNT_SKIPPED", error=str(e))
        logger.debug("FEED_ACCOUNTS_LOADED", count=len(accounts))
        return accounts

    async def _get(self, session: aiohttp.ClientSession, params: Optional[Dict[str, str]]) -> Dict[str, Any]:
        async with session.get(self.url, params=params) as response:
            if response.status == 429:
                raise RateLimitError("Feed rate limit exceeded")
            if response.status != 200:
                text = await response.text()
                raise APIError(f"Feed returned {response.status}: {text[:200]}")
            try:
                return await response.json()
            except (aiohttp.ContentTypeError, ValueError) as e:
                raise DataError(f"Feed returned invalid JSON: {e}") from e

    async def get_latest_accounts(self) -> Dict[str, AgentAccount]:
        return select_latest_accounts(await self.fetch_account_totals())

    async def get_agent_positions(self, agent_id: str) -> List[Position]:
        """
        Current positions for an agent, matched by model_id or account id.

        Raises:
            DataError: agent not present in the feed
        """
        for account in (await self.get_latest_accounts()).values():
            if agent_id in (account.model_id, account.id):
                return account.positions
        raise DataError(f"Agent {agent_id} not found in feed")
