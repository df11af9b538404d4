import asyncio
import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Tuple

from pydantic import BaseModel

from errors import PersistenceError
from schemas import AccessToken
from store import GovernanceStore

logger = logging.getLogger("sentinel.rate_limit")

HOUR = timedelta(hours=1)
DAY = timedelta(days=1)


class DegradePolicy(str, Enum):
    """
    What to do when usage counts cannot be read.
    FAIL_OPEN allows the request with quota enforcement skipped.
    FAIL_CLOSED rejects it.
    """
    FAIL_OPEN = "fail_open"
    FAIL_CLOSED = "fail_closed"


class QuotaStatus(BaseModel):
    allowed: bool
    hourly: int = 0
    daily: int = 0
    degraded: bool = False


class QuotaChecker:
    """
    Sliding-window hourly/daily ceilings computed from the usage ledger.
    Each read is bounded by a timeout and retried a fixed number of times
    before the degrade policy decides.
    """

    def __init__(
        self,
        store: GovernanceStore,
        policy: DegradePolicy,
        clock: Callable[[], datetime],
        read_timeout_ms: int = 250,
        read_attempts: int = 2,
    ):
        self._store = store
        self.policy = DegradePolicy(policy)
        self._clock = clock
        self._timeout = read_timeout_ms / 1000
        self._attempts = max(1, read_attempts)

    async def usage(self, token_id: str) -> Tuple[int, int]:
        """
        Returns (last hour, last day) counts from the ledger.
        Raises PersistenceError once every attempt has failed or timed out.
        """
        last_error = None

        for attempt in range(1, self._attempts + 1):
            try:
                return await asyncio.wait_for(self._read(token_id), timeout=self._timeout)
            except asyncio.TimeoutError:
                last_error = "timeout"
            except Exception as e:
                last_error = type(e).__name__

            logger.warning(f"Usage read attempt {attempt}/{self._attempts} failed: {last_error}")

        raise PersistenceError("Usage ledger unavailable", details={"last_error": last_error})

    async def check(self, token: AccessToken, in_flight: int = 0) -> QuotaStatus:
        """
        in_flight: authorized requests whose usage records are still queued.
        """
        try:
            hourly, daily = await self.usage(token.id)
        except PersistenceError:
            if self.policy is DegradePolicy.FAIL_OPEN:
                logger.error(f"Quota check unavailable for {token.id[:8]}: fail_open, governance disabled")
                return QuotaStatus(allowed=True, degraded=True)

            logger.error(f"Quota check unavailable for {token.id[:8]}: fail_closed, rejecting")
            return QuotaStatus(allowed=False, degraded=True)

        hourly += in_flight
        daily += in_flight

        if hourly >= token.max_requests_per_hour:
            logger.warning(f"Token {token.id[:8]} over hourly limit: {hourly}/{token.max_requests_per_hour}")
            return QuotaStatus(allowed=False, hourly=hourly, daily=daily)

        if daily >= token.max_requests_per_day:
            logger.warning(f"Token {token.id[:8]} over daily limit: {daily}/{token.max_requests_per_day}")
            return QuotaStatus(allowed=False, hourly=hourly, daily=daily)

        return QuotaStatus(allowed=True, hourly=hourly, daily=daily)

    async def _read(self, token_id: str) -> Tuple[int, int]:
        now = self._clock()
        hourly = await self._store.count_usage_since(token_id, now - HOUR)
        daily = await self._store.count_usage_since(token_id, now - DAY)
        return hourly, daily
