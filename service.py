import asyncio
import ipaddress
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import httpx

from alerts import AlertDispatcher
from config import Settings
from db import create_db_engine, create_session_factory, init_db
from errors import PersistenceError, ValidationError
from governor import TokenGovernor
from rate_limit import DegradePolicy, QuotaChecker
from redis_ledger import RedisUsageLedger, create_redis
from reputation import IPReputationTracker
from schemas import (
    Authorized,
    BlockedIPRecord,
    Decision,
    InboundRequest,
    Rejected,
    SecurityAlert,
    Severity,
)
from security import TokenSigner, extract_token, parse_duration, resolve_signing_secret
from store import GovernanceStore, MemoryStore, SQLStore
from threats import ThreatDetector

logger = logging.getLogger("sentinel.service")

CLEANUP_INTERVAL = 60 * 60


def build_store(settings: Settings) -> GovernanceStore:
    """
    Chosen once from configuration: SQL when DATABASE_URL is set, otherwise
    process memory. REDIS_URL adds a shared usage ledger on top.
    """
    if settings.DATABASE_URL:
        engine = create_db_engine(settings.DATABASE_URL)
        init_db(engine)
        store: GovernanceStore = SQLStore(create_session_factory(engine))
        logger.info("Using SQL store")
    else:
        logger.warning("DATABASE_URL not set: tokens, bans and alerts live in process memory only")
        store = MemoryStore()

    if settings.REDIS_URL:
        store = RedisUsageLedger(store, create_redis(settings.REDIS_URL))
        logger.info("Using Redis usage ledger")

    return store


class GovernanceService:
    """
    One per process. Wires the governor, threat detector, reputation tracker
    and alert dispatcher, and runs the per-request pipeline:

        ban check -> token validation -> signature scan -> reputation -> alerts
    """

    def __init__(
        self,
        settings: Settings,
        store: Optional[GovernanceStore] = None,
        clock: Callable[[], float] = time.time,
        alert_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self.store = store if store is not None else build_store(settings)
        self._clock = clock

        self.detector = ThreatDetector()
        self.reputation = IPReputationTracker(
            self.store,
            self.detector,
            clock=clock,
            auto_block_enabled=settings.AUTO_BLOCK_ENABLED,
            block_minutes=settings.AUTO_BLOCK_MINUTES,
            block_threshold=settings.HIGH_SEVERITY_BLOCK_THRESHOLD,
            high_frequency_threshold=settings.HIGH_FREQUENCY_THRESHOLD,
            error_count_threshold=settings.ERROR_COUNT_THRESHOLD,
            error_rate_threshold=settings.ERROR_RATE_THRESHOLD,
            idle_eviction_hours=settings.IP_IDLE_EVICTION_HOURS,
        )
        self.quota = QuotaChecker(
            self.store,
            DegradePolicy(settings.RATE_LIMIT_DEGRADE_POLICY),
            clock=self.now,
            read_timeout_ms=settings.RATE_LIMIT_READ_TIMEOUT_MS,
            read_attempts=settings.RATE_LIMIT_READ_ATTEMPTS,
        )
        self.governor = TokenGovernor(
            self.store,
            TokenSigner(resolve_signing_secret(settings), settings.TOKEN_ISSUER),
            self.quota,
            self.reputation,
            clock=self.now,
            default_ttl=settings.TOKEN_DEFAULT_TTL,
            max_requests_per_hour=settings.MAX_REQUESTS_PER_HOUR,
            max_requests_per_day=settings.MAX_REQUESTS_PER_DAY,
            cache_ttl_seconds=settings.TOKEN_CACHE_TTL_SECONDS,
            usage_queue_size=settings.USAGE_QUEUE_MAX_SIZE,
            usage_overflow=settings.USAGE_QUEUE_OVERFLOW,
            public_paths=settings.PUBLIC_PATHS,
        )
        self.alerts = AlertDispatcher(
            self.store,
            webhook_url=settings.ALERT_WEBHOOK_URL,
            cooldown_seconds=settings.ALERT_COOLDOWN_SECONDS,
            max_per_hour=settings.MAX_ALERTS_PER_HOUR,
            send_timeout=settings.ALERT_SEND_TIMEOUT,
            clock=clock,
            transport=alert_transport,
        )

        self._sweeper: Optional[asyncio.Task] = None
        self._last_cleanup = 0.0

        logger.info(f"Rate-limit degrade policy: {self.quota.policy.value}")

    def now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), timezone.utc)

    # ======================================================
    # Lifecycle
    # ======================================================

    async def start(self) -> None:
        """
        Must be called once the event loop is running.
        """
        self.governor.usage.start()
        if self._sweeper is None:
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())

        await self.alerts.notify(
            Severity.INFO,
            "Security Monitor Started",
            {
                "Auto Block": "Enabled" if self.reputation.auto_block_enabled else "Disabled",
                "Degrade Policy": self.quota.policy.value,
                "Webhook Alerts": "Enabled" if self.settings.ALERT_WEBHOOK_URL else "Disabled",
            },
            event_type="startup",
        )
        logger.info("Governance service started")

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None

        await self.governor.usage.stop()
        await self.alerts.aclose()
        await self.store.close()
        logger.info("Governance service stopped")

    async def _sweep_loop(self) -> None:
        """
        Periodic maintenance on its own timer. Never touches the request path
        and never dies on a failed pass.
        """
        interval = self.settings.SWEEP_INTERVAL_SECONDS
        logger.info(f"Sweep loop started (every {interval:.0f}s)")

        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep_once()
            except Exception as e:
                logger.error(f"Sweep failed: {type(e).__name__}")

    async def sweep_once(self) -> None:
        self.reputation.sweep()
        self.alerts.sweep()
        self.governor.purge_cache()

        if self._clock() - self._last_cleanup >= CLEANUP_INTERVAL:
            self._last_cleanup = self._clock()
            try:
                await self.governor.cleanup()
            except PersistenceError as e:
                logger.warning(f"Usage cleanup failed: {e.message}")

    # ======================================================
    # Per-request pipeline
    # ======================================================

    async def check(self, request: InboundRequest) -> Decision:
        ip = request.source_ip
        was_blocked = self.reputation.is_blocked_locally(ip)

        decision = await self.governor.validate_request(
            extract_token(request),
            ip,
            request.path,
            method=request.method,
            user_agent=request.header("user-agent"),
        )

        hits = self.detector.classify(request)
        status_code = 200 if isinstance(decision, Authorized) else decision.to_error().status_code
        assessment = await self.reputation.observe(ip, status_code, hits)

        newly_blocked = not was_blocked and self.reputation.is_blocked_locally(ip)
        if newly_blocked and isinstance(decision, Authorized):
            # The ban applies to this request too
            decision = Rejected(reason="ip_blocked", timestamp=self.now())

        try:
            await self._raise_alerts(request, decision, hits, assessment.signals, newly_blocked)
        except Exception as e:
            logger.error(f"Alerting failed: {type(e).__name__}")

        return decision

    async def record_response(self, request: InboundRequest, decision: Decision, status_code: int) -> None:
        """
        Feed the upstream status of a forwarded request back into the
        IP's error window. A ban triggered here applies from the next request.
        """
        ip = request.source_ip
        was_blocked = self.reputation.is_blocked_locally(ip)
        assessment = await self.reputation.observe_response(ip, status_code)
        newly_blocked = not was_blocked and self.reputation.is_blocked_locally(ip)

        try:
            await self._raise_alerts(request, decision, frozenset(), assessment.signals, newly_blocked)
        except Exception as e:
            logger.error(f"Alerting failed: {type(e).__name__}")

    async def _raise_alerts(self, request, decision, hits, signals, newly_blocked) -> None:
        ip = request.source_ip
        user_agent = request.header("user-agent") or ""

        for hit in sorted(hits):
            await self.alerts.notify(
                self.detector.severity(hit.category),
                f"Security Alert: {hit.category}",
                {
                    "Type": hit.category,
                    "IP Address": ip,
                    "Path": request.path,
                    "Signature": hit.signature,
                    "User-Agent": user_agent[:200],
                },
                event_type=hit.category,
                ip=ip,
            )

        for signal in signals:
            if signal.name in ("high_frequency", "high_error_rate"):
                await self.alerts.notify(
                    signal.severity,
                    f"Security Alert: {signal.name}",
                    {"Type": signal.name, "IP Address": ip, "Details": signal.detail},
                    event_type=signal.name,
                    ip=ip,
                )

        if isinstance(decision, Rejected) and decision.reason in ("rate_limited", "invalid_token"):
            severity = Severity.HIGH if decision.reason == "rate_limited" else Severity.MEDIUM
            await self.alerts.notify(
                severity,
                f"Security Alert: {decision.reason}",
                {"Type": decision.reason, "IP Address": ip, "Path": request.path},
                event_type=decision.reason,
                ip=ip,
            )

        if newly_blocked:
            await self.alerts.notify(
                Severity.HIGH,
                "IP Address Blocked",
                {
                    "IP": ip,
                    "Reason": self.reputation.blocked_ips().get(ip, ""),
                    "Auto Block": "Yes",
                    "Duration": f"{self.settings.AUTO_BLOCK_MINUTES}m",
                },
                event_type="ip_blocked",
                ip=ip,
            )

    # ======================================================
    # Administration
    # ======================================================

    async def block_ip(
        self,
        ip: str,
        reason: str = "Manual block",
        duration: Optional[str] = "24h",
        blocked_by: str = "admin",
    ) -> BlockedIPRecord:
        """
        duration=None makes the ban permanent.
        """
        _validate_ip(ip)
        now = self.now()
        try:
            expires_at = now + parse_duration(duration) if duration else None
        except ValueError as e:
            raise ValidationError(str(e)) from e

        record = BlockedIPRecord(ip=ip, reason=reason, blocked_at=now, expires_at=expires_at, blocked_by=blocked_by)
        await self.reputation.manual_block(record)

        await self.alerts.notify(
            Severity.MEDIUM,
            "IP Address Manually Blocked",
            {
                "Blocked IP": ip,
                "Reason": reason,
                "Duration": duration or "permanent",
                "Blocked By": blocked_by,
            },
            event_type="manual_block",
            ip=ip,
        )
        return record

    async def unblock_ip(self, ip: str) -> bool:
        _validate_ip(ip)
        return await self.reputation.unblock(ip)

    async def list_blocked_ips(self) -> List[BlockedIPRecord]:
        records = {r.ip: r for r in await self.store.list_blocked_ips(self.now())}

        # Local bans whose persistence failed
        for ip, reason in self.reputation.blocked_ips().items():
            if ip not in records:
                records[ip] = BlockedIPRecord(ip=ip, reason=reason, blocked_by="auto")

        return sorted(records.values(), key=lambda r: r.blocked_at)

    async def alert_history(
        self,
        limit: int = 50,
        severity: Optional[Severity] = None,
        since: Optional[datetime] = None,
    ) -> List[SecurityAlert]:
        try:
            return await self.store.list_security_alerts(limit=limit, since=since, severity=severity)
        except PersistenceError:
            logger.warning("Alert store unavailable, serving in-memory history")
            return self.alerts.history(limit=limit, severity=severity, since=since)

    def security_stats(self) -> Dict[str, Any]:
        usage = self.governor.usage
        return {
            "monitoring": {
                "auto_block": self.reputation.auto_block_enabled,
                "degrade_policy": self.quota.policy.value,
                "webhook_alerts": bool(self.settings.ALERT_WEBHOOK_URL),
            },
            "alerts": self.alerts.stats(),
            "reputation": self.reputation.stats(),
            "usage_writer": {
                "queued": usage.pending,
                "written": usage.written,
                "dropped": usage.dropped,
                "failed": usage.failed,
            },
            "timestamp": self.now().isoformat(),
        }


def _validate_ip(ip: str) -> None:
    try:
        ipaddress.ip_address(ip)
    except ValueError as e:
        raise ValidationError("Invalid IP address", details={"ip": ip}) from e
