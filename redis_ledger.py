import logging
import uuid
from datetime import datetime, timedelta
from typing import List, Optional

import redis.asyncio as redis

from errors import PersistenceError
from schemas import AccessToken, BlockedIPRecord, SecurityAlert, UsageRecord
from store import GovernanceStore

logger = logging.getLogger("sentinel.store.redis")

# Longest window any ceiling looks at, plus slack
LEDGER_RETENTION = timedelta(hours=25)


def create_redis(redis_url: str) -> redis.Redis:
    return redis.Redis.from_url(redis_url, decode_responses=True)


def _usage_key(token_id: str) -> str:
    return f"usage:{token_id}"


class RedisUsageLedger(GovernanceStore):
    """
    Keeps sliding-window usage counts in Redis sorted sets so every gateway
    process sees the same counts. Everything else, including the durable copy
    of each usage record, goes to the wrapped store.
    """

    def __init__(self, inner: GovernanceStore, client: redis.Redis):
        self.inner = inner
        self._redis = client

    async def count_usage_since(self, token_id: str, since: datetime) -> int:
        try:
            return int(await self._redis.zcount(_usage_key(token_id), f"({since.timestamp()}", "+inf"))
        except redis.RedisError as e:
            raise PersistenceError(f"Redis error: {type(e).__name__}") from e

    async def append_usage_record(self, record: UsageRecord) -> None:
        if record.token_id:
            key = _usage_key(record.token_id)
            score = record.timestamp.timestamp()
            cutoff = (record.timestamp - LEDGER_RETENTION).timestamp()
            try:
                async with self._redis.pipeline(transaction=False) as pipe:
                    pipe.zadd(key, {uuid.uuid4().hex: score})
                    pipe.zremrangebyscore(key, "-inf", cutoff)
                    pipe.expire(key, int(LEDGER_RETENTION.total_seconds()))
                    await pipe.execute()
            except redis.RedisError as e:
                raise PersistenceError(f"Redis error: {type(e).__name__}") from e

        await self.inner.append_usage_record(record)

    async def purge_usage_before(self, before: datetime) -> int:
        return await self.inner.purge_usage_before(before)

    # ---- delegated ----

    async def create_token(self, token: AccessToken) -> AccessToken:
        return await self.inner.create_token(token)

    async def get_token_by_hash(self, token_hash: str) -> Optional[AccessToken]:
        return await self.inner.get_token_by_hash(token_hash)

    async def get_token_by_id(self, token_id: str) -> Optional[AccessToken]:
        return await self.inner.get_token_by_id(token_id)

    async def list_tokens(self) -> List[AccessToken]:
        return await self.inner.list_tokens()

    async def deactivate_token(self, token_id: str, reason: str, at: datetime) -> bool:
        return await self.inner.deactivate_token(token_id, reason, at)

    async def update_token_expiry(self, token_id: str, expires_at: datetime) -> None:
        await self.inner.update_token_expiry(token_id, expires_at)

    async def increment_usage(self, token_id: str, used_at: datetime) -> None:
        await self.inner.increment_usage(token_id, used_at)

    async def is_ip_blocked(self, ip: str, now: datetime) -> bool:
        return await self.inner.is_ip_blocked(ip, now)

    async def block_ip(self, record: BlockedIPRecord) -> None:
        await self.inner.block_ip(record)

    async def unblock_ip(self, ip: str) -> bool:
        return await self.inner.unblock_ip(ip)

    async def list_blocked_ips(self, now: datetime) -> List[BlockedIPRecord]:
        return await self.inner.list_blocked_ips(now)

    async def create_security_alert(self, alert: SecurityAlert) -> None:
        await self.inner.create_security_alert(alert)

    async def list_security_alerts(self, limit=50, since=None, severity=None) -> List[SecurityAlert]:
        return await self.inner.list_security_alerts(limit=limit, since=since, severity=severity)

    async def close(self) -> None:
        await self._redis.aclose()
        await self.inner.close()
