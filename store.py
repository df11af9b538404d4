import asyncio
import logging
from abc import ABC, abstractmethod
from bisect import bisect_left, bisect_right, insort
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, TypeVar

from sqlalchemy import func as sql_func
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from errors import PersistenceError
from models import APIToken, BlockedIP, SecurityAlertLog, UsageLog
from schemas import AccessToken, BlockedIPRecord, SecurityAlert, Severity, UsageRecord

logger = logging.getLogger("sentinel.store")

T = TypeVar("T")


class GovernanceStore(ABC):
    """
    Durable store for tokens, usage records, bans and alerts.
    Implementations raise PersistenceError when the backend fails.
    """

    # ---- tokens ----

    @abstractmethod
    async def create_token(self, token: AccessToken) -> AccessToken: ...

    @abstractmethod
    async def get_token_by_hash(self, token_hash: str) -> Optional[AccessToken]: ...

    @abstractmethod
    async def get_token_by_id(self, token_id: str) -> Optional[AccessToken]: ...

    @abstractmethod
    async def list_tokens(self) -> List[AccessToken]: ...

    @abstractmethod
    async def deactivate_token(self, token_id: str, reason: str, at: datetime) -> bool:
        """Returns False when the token was already inactive."""

    @abstractmethod
    async def update_token_expiry(self, token_id: str, expires_at: datetime) -> None: ...

    @abstractmethod
    async def increment_usage(self, token_id: str, used_at: datetime) -> None: ...

    # ---- usage ledger ----

    @abstractmethod
    async def count_usage_since(self, token_id: str, since: datetime) -> int: ...

    @abstractmethod
    async def append_usage_record(self, record: UsageRecord) -> None: ...

    @abstractmethod
    async def purge_usage_before(self, before: datetime) -> int: ...

    # ---- bans ----

    @abstractmethod
    async def is_ip_blocked(self, ip: str, now: datetime) -> bool: ...

    @abstractmethod
    async def block_ip(self, record: BlockedIPRecord) -> None: ...

    @abstractmethod
    async def unblock_ip(self, ip: str) -> bool: ...

    @abstractmethod
    async def list_blocked_ips(self, now: datetime) -> List[BlockedIPRecord]: ...

    # ---- alerts ----

    @abstractmethod
    async def create_security_alert(self, alert: SecurityAlert) -> None: ...

    @abstractmethod
    async def list_security_alerts(
        self,
        limit: int = 50,
        since: Optional[datetime] = None,
        severity: Optional[Severity] = None,
    ) -> List[SecurityAlert]: ...

    async def close(self) -> None:
        pass


# ======================================================
# In-memory store (default when no database is configured)
# ======================================================

class MemoryStore(GovernanceStore):
    """
    Process-local store. State is lost on restart.
    """

    def __init__(self):
        self._tokens: Dict[str, AccessToken] = {}
        self._ids_by_hash: Dict[str, str] = {}
        self._usage: List[UsageRecord] = []
        self._usage_times: Dict[str, List[datetime]] = {}
        self._blocks: Dict[str, BlockedIPRecord] = {}
        self._alerts: List[SecurityAlert] = []

    async def create_token(self, token: AccessToken) -> AccessToken:
        if token.token_hash in self._ids_by_hash:
            raise PersistenceError("Duplicate token hash")
        self._tokens[token.id] = token.model_copy(deep=True)
        self._ids_by_hash[token.token_hash] = token.id
        return token

    async def get_token_by_hash(self, token_hash: str) -> Optional[AccessToken]:
        token_id = self._ids_by_hash.get(token_hash)
        return await self.get_token_by_id(token_id) if token_id else None

    async def get_token_by_id(self, token_id: str) -> Optional[AccessToken]:
        token = self._tokens.get(token_id)
        return token.model_copy(deep=True) if token else None

    async def list_tokens(self) -> List[AccessToken]:
        return [t.model_copy(deep=True) for t in sorted(self._tokens.values(), key=lambda t: t.created_at)]

    async def deactivate_token(self, token_id: str, reason: str, at: datetime) -> bool:
        token = self._tokens.get(token_id)
        if token is None or not token.active:
            return False
        token.active = False
        token.revoked_at = at
        token.revoke_reason = reason
        return True

    async def update_token_expiry(self, token_id: str, expires_at: datetime) -> None:
        token = self._tokens.get(token_id)
        if token is not None:
            token.expires_at = expires_at

    async def increment_usage(self, token_id: str, used_at: datetime) -> None:
        token = self._tokens.get(token_id)
        if token is not None:
            token.usage_count += 1
            token.last_used_at = used_at

    async def count_usage_since(self, token_id: str, since: datetime) -> int:
        times = self._usage_times.get(token_id, [])
        return len(times) - bisect_right(times, since)

    async def append_usage_record(self, record: UsageRecord) -> None:
        self._usage.append(record)
        if record.token_id:
            insort(self._usage_times.setdefault(record.token_id, []), record.timestamp)

    async def purge_usage_before(self, before: datetime) -> int:
        kept = [r for r in self._usage if r.timestamp >= before]
        purged = len(self._usage) - len(kept)
        self._usage = kept
        for token_id, times in self._usage_times.items():
            self._usage_times[token_id] = times[bisect_left(times, before):]
        return purged

    async def is_ip_blocked(self, ip: str, now: datetime) -> bool:
        record = self._blocks.get(ip)
        return record is not None and record.is_active(now)

    async def block_ip(self, record: BlockedIPRecord) -> None:
        self._blocks[record.ip] = record

    async def unblock_ip(self, ip: str) -> bool:
        return self._blocks.pop(ip, None) is not None

    async def list_blocked_ips(self, now: datetime) -> List[BlockedIPRecord]:
        return [r for r in self._blocks.values() if r.is_active(now)]

    async def create_security_alert(self, alert: SecurityAlert) -> None:
        self._alerts.append(alert)

    async def list_security_alerts(self, limit=50, since=None, severity=None) -> List[SecurityAlert]:
        alerts = [
            a for a in reversed(self._alerts)
            if (since is None or a.timestamp >= since) and (severity is None or a.severity == severity)
        ]
        return alerts[:limit]


# ======================================================
# SQLAlchemy store
# ======================================================

def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo on the way back
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_token(row: APIToken) -> AccessToken:
    return AccessToken(
        id=row.id,
        name=row.name,
        description=row.description or "",
        token_hash=row.token_hash,
        created_at=_aware(row.created_at),
        expires_at=_aware(row.expires_at),
        active=row.is_active,
        usage_count=row.usage_count,
        last_used_at=_aware(row.last_used_at),
        scopes=[s for s in (row.scopes or "").split(",") if s],
        max_requests_per_hour=row.max_requests_per_hour,
        max_requests_per_day=row.max_requests_per_day,
        created_by=row.created_by,
        revoked_at=_aware(row.revoked_at),
        revoke_reason=row.revoke_reason,
    )


def _to_block(row: BlockedIP) -> BlockedIPRecord:
    return BlockedIPRecord(
        ip=row.ip_address,
        reason=row.reason,
        blocked_at=_aware(row.blocked_at),
        expires_at=_aware(row.expires_at),
        blocked_by=row.blocked_by,
    )


def _to_alert(row: SecurityAlertLog) -> SecurityAlert:
    return SecurityAlert(
        id=row.id,
        category=row.category,
        severity=Severity(row.severity),
        title=row.title,
        timestamp=_aware(row.created_at),
        ip=row.ip_address,
        details=row.details or {},
        resolved=row.resolved,
        delivered=row.delivered,
    )


def _active_block_clause(ip: str, now: datetime):
    return (
        (BlockedIP.ip_address == ip)
        & BlockedIP.is_active.is_(True)
        & (BlockedIP.expires_at.is_(None) | (BlockedIP.expires_at > now))
    )


class SQLStore(GovernanceStore):
    """
    SQLAlchemy-backed store. Blocking session work runs in a worker thread
    so the event loop never waits on the database driver.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    async def _run(self, fn: Callable[[Session], T]) -> T:
        return await asyncio.to_thread(self._run_sync, fn)

    def _run_sync(self, fn: Callable[[Session], T]) -> T:
        db = self._session_factory()
        try:
            result = fn(db)
            db.commit()
            return result
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Store operation failed: {type(e).__name__}")
            raise PersistenceError(f"Database error: {type(e).__name__}") from e
        finally:
            db.close()

    # ---- tokens ----

    async def create_token(self, token: AccessToken) -> AccessToken:
        def _create(db: Session) -> AccessToken:
            db.add(APIToken(
                id=token.id,
                name=token.name,
                description=token.description,
                token_hash=token.token_hash,
                scopes=",".join(token.scopes),
                is_active=token.active,
                usage_count=token.usage_count,
                max_requests_per_hour=token.max_requests_per_hour,
                max_requests_per_day=token.max_requests_per_day,
                created_by=token.created_by,
                created_at=token.created_at,
                expires_at=token.expires_at,
            ))
            return token

        return await self._run(_create)

    async def get_token_by_hash(self, token_hash: str) -> Optional[AccessToken]:
        def _get(db: Session) -> Optional[AccessToken]:
            row = db.execute(select(APIToken).where(APIToken.token_hash == token_hash)).scalar_one_or_none()
            return _to_token(row) if row else None

        return await self._run(_get)

    async def get_token_by_id(self, token_id: str) -> Optional[AccessToken]:
        def _get(db: Session) -> Optional[AccessToken]:
            row = db.get(APIToken, token_id)
            return _to_token(row) if row else None

        return await self._run(_get)

    async def list_tokens(self) -> List[AccessToken]:
        def _list(db: Session) -> List[AccessToken]:
            rows = db.execute(select(APIToken).order_by(APIToken.created_at)).scalars().all()
            return [_to_token(r) for r in rows]

        return await self._run(_list)

    async def deactivate_token(self, token_id: str, reason: str, at: datetime) -> bool:
        def _deactivate(db: Session) -> bool:
            result = db.execute(
                update(APIToken)
                .where(APIToken.id == token_id, APIToken.is_active.is_(True))
                .values(is_active=False, revoked_at=at, revoke_reason=reason)
            )
            return result.rowcount > 0

        return await self._run(_deactivate)

    async def update_token_expiry(self, token_id: str, expires_at: datetime) -> None:
        await self._run(lambda db: db.execute(
            update(APIToken).where(APIToken.id == token_id).values(expires_at=expires_at)
        ))

    async def increment_usage(self, token_id: str, used_at: datetime) -> None:
        await self._run(lambda db: db.execute(
            update(APIToken)
            .where(APIToken.id == token_id)
            .values(usage_count=APIToken.usage_count + 1, last_used_at=used_at)
        ))

    # ---- usage ledger ----

    async def count_usage_since(self, token_id: str, since: datetime) -> int:
        def _count(db: Session) -> int:
            return db.execute(
                select(sql_func.count(UsageLog.id))
                .where(UsageLog.token_id == token_id, UsageLog.created_at > since)
            ).scalar_one()

        return await self._run(_count)

    async def append_usage_record(self, record: UsageRecord) -> None:
        await self._run(lambda db: db.add(UsageLog(
            token_id=record.token_id,
            endpoint=record.endpoint[:512],
            method=record.method,
            status_code=record.status_code,
            response_time_ms=record.response_time_ms,
            ip_address=record.ip,
            user_agent=(record.user_agent or "")[:500] or None,
            created_at=record.timestamp,
        )))

    async def purge_usage_before(self, before: datetime) -> int:
        def _purge(db: Session) -> int:
            return db.query(UsageLog).filter(UsageLog.created_at < before).delete(synchronize_session=False)

        return await self._run(_purge)

    # ---- bans ----

    async def is_ip_blocked(self, ip: str, now: datetime) -> bool:
        def _check(db: Session) -> bool:
            count = db.execute(
                select(sql_func.count(BlockedIP.id)).where(_active_block_clause(ip, now))
            ).scalar_one()
            return count > 0

        return await self._run(_check)

    async def block_ip(self, record: BlockedIPRecord) -> None:
        def _block(db: Session) -> None:
            # One live row per IP: a renewed ban replaces the previous one
            db.execute(
                update(BlockedIP)
                .where(BlockedIP.ip_address == record.ip, BlockedIP.is_active.is_(True))
                .values(is_active=False)
            )
            db.add(BlockedIP(
                ip_address=record.ip,
                reason=record.reason[:255],
                blocked_by=record.blocked_by,
                is_active=True,
                blocked_at=record.blocked_at,
                expires_at=record.expires_at,
            ))

        await self._run(_block)

    async def unblock_ip(self, ip: str) -> bool:
        def _unblock(db: Session) -> bool:
            result = db.execute(
                update(BlockedIP)
                .where(BlockedIP.ip_address == ip, BlockedIP.is_active.is_(True))
                .values(is_active=False)
            )
            return result.rowcount > 0

        return await self._run(_unblock)

    async def list_blocked_ips(self, now: datetime) -> List[BlockedIPRecord]:
        def _list(db: Session) -> List[BlockedIPRecord]:
            rows = db.execute(
                select(BlockedIP)
                .where(
                    BlockedIP.is_active.is_(True),
                    BlockedIP.expires_at.is_(None) | (BlockedIP.expires_at > now),
                )
                .order_by(BlockedIP.blocked_at)
            ).scalars().all()
            return [_to_block(r) for r in rows]

        return await self._run(_list)

    # ---- alerts ----

    async def create_security_alert(self, alert: SecurityAlert) -> None:
        await self._run(lambda db: db.add(SecurityAlertLog(
            id=alert.id,
            category=alert.category,
            severity=alert.severity.value,
            title=alert.title[:255],
            ip_address=alert.ip,
            details=alert.details,
            resolved=alert.resolved,
            delivered=alert.delivered,
            created_at=alert.timestamp,
        )))

    async def list_security_alerts(self, limit=50, since=None, severity=None) -> List[SecurityAlert]:
        def _list(db: Session) -> List[SecurityAlert]:
            query = select(SecurityAlertLog).order_by(SecurityAlertLog.created_at.desc()).limit(limit)
            if since is not None:
                query = query.where(SecurityAlertLog.created_at >= since)
            if severity is not None:
                query = query.where(SecurityAlertLog.severity == severity.value)
            return [_to_alert(r) for r in db.execute(query).scalars().all()]

        return await self._run(_list)

    async def close(self) -> None:
        bind = self._session_factory.kw.get("bind")
        if bind is not None:
            await asyncio.to_thread(bind.dispose)
