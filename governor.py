import asyncio
import logging
import time
import uuid
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from errors import NotFoundError, PersistenceError, ValidationError
from rate_limit import QuotaChecker
from reputation import IPReputationTracker
from schemas import (
    AccessToken,
    Authorized,
    Decision,
    IssuedToken,
    Rejected,
    TokenStats,
    UsageRecord,
)
from security import TokenSigner, hash_token, parse_duration
from store import GovernanceStore
from usage_logger import UsageWriter

logger = logging.getLogger("sentinel.governor")

DEFAULT_SCOPES = ("read", "write")
USAGE_RETENTION = timedelta(days=30)


class TokenGovernor:
    """
    Issues, validates, refreshes and revokes bearer tokens and enforces
    their hourly/daily ceilings.

    Validation order (cheapest first): IP ban, credential shape/signature,
    persisted record state, quota. Usage of authorized requests is handed to
    a background writer and never awaited for durability.
    """

    def __init__(
        self,
        store: GovernanceStore,
        signer: TokenSigner,
        quota: QuotaChecker,
        reputation: IPReputationTracker,
        clock: Callable[[], datetime],
        default_ttl: str = "30d",
        max_requests_per_hour: int = 1000,
        max_requests_per_day: int = 10000,
        cache_ttl_seconds: float = 30.0,
        usage_queue_size: int = 1000,
        usage_overflow: str = "drop_newest",
        public_paths: Iterable[str] = (),
    ):
        self._store = store
        self._signer = signer
        self.quota = quota
        self._reputation = reputation
        self._clock = clock
        self.default_ttl = default_ttl
        self.max_requests_per_hour = max_requests_per_hour
        self.max_requests_per_day = max_requests_per_day
        self.public_paths = tuple(public_paths)

        self.usage = UsageWriter(store, usage_queue_size, usage_overflow, on_settled=self._usage_settled)
        self._in_flight: Dict[str, int] = {}

        self._cache_ttl = cache_ttl_seconds
        self._cache: Dict[str, Tuple[AccessToken, float]] = {}

        # Serialises quota check + in-flight reservation per token
        self._token_locks: Dict[str, asyncio.Lock] = {}

    # ======================================================
    # Issue / revoke / refresh
    # ======================================================

    async def issue_token(
        self,
        name: str,
        description: str = "",
        ttl: Optional[str] = None,
        scopes: Optional[Iterable[str]] = None,
        max_requests_per_hour: Optional[int] = None,
        max_requests_per_day: Optional[int] = None,
        created_by: str = "system",
    ) -> IssuedToken:
        if not name or not name.strip():
            raise ValidationError("Token name is required")

        lifetime = _parse_ttl(ttl or self.default_ttl)
        scopes = sorted(set(scopes)) if scopes else list(DEFAULT_SCOPES)
        now = self._clock()
        token_id = str(uuid.uuid4())

        raw_token = self._signer.sign(token_id, name, scopes, int(now.timestamp()))
        record = AccessToken(
            id=token_id,
            name=name.strip(),
            description=description,
            token_hash=hash_token(raw_token),
            created_at=now,
            expires_at=now + lifetime,
            scopes=scopes,
            max_requests_per_hour=max_requests_per_hour or self.max_requests_per_hour,
            max_requests_per_day=max_requests_per_day or self.max_requests_per_day,
            created_by=created_by,
        )
        await self._store.create_token(record)

        logger.info(f"Issued token {token_id[:8]}... ({record.name}, expires {record.expires_at.isoformat()})")

        return IssuedToken(
            id=token_id,
            token=raw_token,
            name=record.name,
            description=description,
            scopes=scopes,
            expires_at=record.expires_at,
            created_at=now,
        )

    async def revoke_token(self, token_id: str, reason: str = "manual_revoke") -> bool:
        """
        Idempotent. Returns False when the token was already inactive.
        """
        token = await self._store.get_token_by_id(token_id)
        if token is None:
            raise NotFoundError("Token not found", details={"token_id": token_id})

        self._invalidate(token)

        if not token.active:
            logger.info(f"Token {token_id[:8]}... already inactive, revoke is a no-op")
            return False

        changed = await self._store.deactivate_token(token_id, reason, self._clock())
        logger.info(f"Revoked token {token_id[:8]}... (reason: {reason})")
        return changed

    async def refresh_token(self, token_id: str, new_ttl: str) -> AccessToken:
        """
        Moves expires_at to now + new_ttl. Revoked tokens cannot be refreshed.
        """
        lifetime = _parse_ttl(new_ttl)

        token = await self._store.get_token_by_id(token_id)
        if token is None:
            raise NotFoundError("Token not found", details={"token_id": token_id})
        if token.revoked or not token.active:
            raise ValidationError("Token has been revoked", details={"token_id": token_id})

        token.expires_at = self._clock() + lifetime
        await self._store.update_token_expiry(token_id, token.expires_at)
        self._invalidate(token)

        logger.info(f"Refreshed token {token_id[:8]}... until {token.expires_at.isoformat()}")
        return token

    # ======================================================
    # Validation (hot path)
    # ======================================================

    async def validate_request(
        self,
        raw_token: Optional[str],
        source_ip: str,
        path: str,
        method: str = "GET",
        user_agent: Optional[str] = None,
    ) -> Decision:
        started = time.monotonic()

        # 1. Banned IPs never get further
        if await self._reputation.is_blocked(source_ip):
            return self._reject("ip_blocked", source_ip, path)

        if self.is_public_path(path):
            return Authorized(token_id=None, scopes=[])

        # 2. Credential shape and signature
        if not raw_token:
            return self._reject("missing_token", source_ip, path)

        claims = self._signer.verify(raw_token)
        if claims is None:
            return self._reject("invalid_token", source_ip, path)

        # 3. Persisted record
        try:
            token = await self._lookup(hash_token(raw_token))
        except PersistenceError:
            logger.error("Token lookup failed, rejecting")
            return self._reject("service_unavailable", source_ip, path)

        if token is None or token.id != claims["jti"]:
            return self._reject("invalid_token", source_ip, path)
        if token.revoked:
            return self._reject("revoked", source_ip, path)
        if not token.active:
            return self._reject("inactive", source_ip, path)
        if token.is_expired(self._clock()):
            return self._reject("token_expired", source_ip, path)

        # 4. Quota. The slot is reserved before the lock is released so
        # concurrent requests on one token see each other.
        async with self._token_lock(token.id):
            status = await self.quota.check(token, in_flight=self._in_flight.get(token.id, 0))
            if status.allowed:
                self._in_flight[token.id] = self._in_flight.get(token.id, 0) + 1

        if not status.allowed:
            if status.degraded:
                return self._reject("service_unavailable", source_ip, path)
            await self._reputation.report_signal(source_ip, "rate_limited", f"token {token.id[:8]}")
            return self._reject("rate_limited", source_ip, path)

        # 5. Usage, off the response path
        record = UsageRecord(
            token_id=token.id,
            endpoint=f"{method} {path}",
            method=method,
            status_code=200,
            response_time_ms=int((time.monotonic() - started) * 1000),
            ip=source_ip,
            user_agent=(user_agent or "")[:500] or None,
            timestamp=self._clock(),
        )
        await self.usage.submit(record)

        return Authorized(token_id=token.id, scopes=token.scopes, degraded=status.degraded)

    def is_public_path(self, path: str) -> bool:
        return any(path == p or path.startswith(p.rstrip("/") + "/") for p in self.public_paths)

    # ======================================================
    # Administration
    # ======================================================

    async def list_tokens(self) -> List[AccessToken]:
        return await self._store.list_tokens()

    async def get_token_stats(self, token_id: str) -> TokenStats:
        token = await self._store.get_token_by_id(token_id)
        if token is None:
            raise NotFoundError("Token not found", details={"token_id": token_id})

        hourly, daily = await self.quota.usage(token_id)
        now = self._clock()

        if token.revoked:
            status = "revoked"
        elif not token.active:
            status = "inactive"
        elif token.is_expired(now):
            status = "expired"
        else:
            status = "active"

        return TokenStats(
            id=token.id,
            name=token.name,
            description=token.description,
            status=status,
            created_at=token.created_at,
            last_used_at=token.last_used_at,
            expires_at=token.expires_at,
            total_usage=token.usage_count,
            usage_last_hour=hourly,
            usage_last_day=daily,
            limits={"hourly": token.max_requests_per_hour, "daily": token.max_requests_per_day},
            scopes=token.scopes,
        )

    async def cleanup(self) -> int:
        """
        Purge usage records past retention. Returns number purged.
        """
        purged = await self._store.purge_usage_before(self._clock() - USAGE_RETENTION)
        if purged:
            logger.info(f"Purged {purged} usage records older than {USAGE_RETENTION.days} days")
        return purged

    def purge_cache(self) -> None:
        cutoff = time.monotonic() - self._cache_ttl
        for key in [k for k, (_, at) in self._cache.items() if at <= cutoff]:
            del self._cache[key]

        for token_id in [t for t, lock in self._token_locks.items() if not lock.locked()]:
            del self._token_locks[token_id]

    # ======================================================
    # Internals
    # ======================================================

    async def _lookup(self, token_hash: str) -> Optional[AccessToken]:
        if self._cache_ttl > 0:
            cached = self._cache.get(token_hash)
            if cached is not None and time.monotonic() - cached[1] < self._cache_ttl:
                return cached[0]

        token = await self._store.get_token_by_hash(token_hash)
        if token is not None and self._cache_ttl > 0:
            self._cache[token_hash] = (token, time.monotonic())
        return token

    def _token_lock(self, token_id: str) -> asyncio.Lock:
        lock = self._token_locks.get(token_id)
        if lock is None:
            lock = self._token_locks[token_id] = asyncio.Lock()
        return lock

    def _invalidate(self, token: AccessToken) -> None:
        self._cache.pop(token.token_hash, None)

    def _usage_settled(self, record: UsageRecord) -> None:
        if not record.token_id:
            return
        remaining = self._in_flight.get(record.token_id, 0) - 1
        if remaining > 0:
            self._in_flight[record.token_id] = remaining
        else:
            self._in_flight.pop(record.token_id, None)

    def _reject(self, reason: str, ip: str, path: str) -> Rejected:
        logger.info(f"Rejected {reason}: ip={ip} path={path}")
        return Rejected(reason=reason, timestamp=self._clock())


def _parse_ttl(value: str) -> timedelta:
    try:
        return parse_duration(value)
    except ValueError as e:
        raise ValidationError(str(e)) from e
