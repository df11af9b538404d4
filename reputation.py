import asyncio
import logging
import time
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Deque, Dict, Iterable, List, NamedTuple, Optional, Set, Tuple

from schemas import BlockedIPRecord, Severity
from store import GovernanceStore
from threats import ThreatDetector, ThreatHit

logger = logging.getLogger("sentinel.reputation")

HOUR = 60 * 60
TEN_MINUTES = 10 * 60
SIGNAL_DEBOUNCE = 60
MAX_EVENTS_PER_IP = 20_000

WINDOW_SIGNAL_SEVERITY = {
    "high_frequency": Severity.HIGH,
    "high_error_rate": Severity.HIGH,
    "rate_limited": Severity.HIGH,
}


class IPState(str, Enum):
    UNKNOWN = "unknown"
    WATCHED = "watched"
    BLOCKED = "blocked"


class Signal(NamedTuple):
    name: str
    severity: Severity
    detail: str = ""


class Assessment(NamedTuple):
    signals: List[Signal]
    block: Optional[BlockedIPRecord]


class IPActivity:
    """Rolling one-hour activity for a single IP."""

    def __init__(self, now: float):
        self.requests: Deque[Tuple[float, bool]] = deque(maxlen=MAX_EVENTS_PER_IP)
        self.threat_hits: Deque[Tuple[float, str]] = deque(maxlen=MAX_EVENTS_PER_IP)
        self.high_signals: Deque[float] = deque(maxlen=MAX_EVENTS_PER_IP)
        self.categories: Set[str] = set()  # every threat category ever seen from this IP
        self.last_signal_at: Dict[str, float] = {}
        self.last_seen = now
        self.blocked_until: Optional[float] = None  # inf = permanent (manual)
        self.block_reason: Optional[str] = None

    def trim(self, now: float) -> None:
        cutoff = now - HOUR
        for events in (self.requests, self.threat_hits):
            while events and events[0][0] <= cutoff:
                events.popleft()
        while self.high_signals and self.high_signals[0] <= cutoff:
            self.high_signals.popleft()

    def mark_error(self) -> bool:
        """
        Flag the newest successful request as failed. Returns False when
        there is none left in the window.
        """
        for i in range(len(self.requests) - 1, -1, -1):
            ts, is_error = self.requests[i]
            if not is_error:
                self.requests[i] = (ts, True)
                return True
        return False

    def is_blocked(self, now: float) -> bool:
        return self.blocked_until is not None and now < self.blocked_until

    @property
    def error_count(self) -> int:
        return sum(1 for _, is_error in self.requests if is_error)

    def threat_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for _, category in self.threat_hits:
            counts[category] = counts.get(category, 0) + 1
        return counts


class IPReputationTracker:
    """
    Per-IP rolling windows, abuse signals and automatic bans.

    Automatic policy (single authority):
    - any critical threat hit bans immediately
    - otherwise, high-severity signals reaching block_threshold within an hour ban
    Automatic bans last block_minutes and are renewed by new qualifying
    activity; they are never permanent.

    Mutations happen in await-free sections, so each one is atomic on the
    event loop. The per-IP lock only serialises ban persistence.
    """

    def __init__(
        self,
        store: GovernanceStore,
        detector: ThreatDetector,
        clock: Callable[[], float] = time.time,
        auto_block_enabled: bool = True,
        block_minutes: int = 30,
        block_threshold: int = 5,
        high_frequency_threshold: int = 100,
        error_count_threshold: int = 20,
        error_rate_threshold: float = 0.2,
        idle_eviction_hours: int = 24,
    ):
        self._store = store
        self._detector = detector
        self._clock = clock
        self.auto_block_enabled = auto_block_enabled
        self.block_seconds = block_minutes * 60
        self.block_threshold = block_threshold
        self.high_frequency_threshold = high_frequency_threshold
        self.error_count_threshold = error_count_threshold
        self.error_rate_threshold = error_rate_threshold
        self.idle_eviction_seconds = idle_eviction_hours * HOUR

        self._entries: Dict[str, IPActivity] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

        # Lifetime counter for statistics
        self.category_counts: Dict[str, int] = {}

    # ======================================================
    # State
    # ======================================================

    def _entry(self, ip: str, now: float) -> IPActivity:
        entry = self._entries.get(ip)
        if entry is None:
            entry = self._entries[ip] = IPActivity(now)
        return entry

    def _lock(self, ip: str) -> asyncio.Lock:
        lock = self._locks.get(ip)
        if lock is None:
            lock = self._locks[ip] = asyncio.Lock()
        return lock

    def state(self, ip: str) -> IPState:
        entry = self._entries.get(ip)
        if entry is None:
            return IPState.UNKNOWN
        if entry.is_blocked(self._clock()):
            return IPState.BLOCKED
        return IPState.WATCHED

    def is_blocked_locally(self, ip: str) -> bool:
        entry = self._entries.get(ip)
        if entry is None or entry.blocked_until is None:
            return False

        if entry.is_blocked(self._clock()):
            return True

        # Ban lapsed: back to Watched
        logger.info(f"Ban lapsed for {ip} ({entry.block_reason})")
        entry.blocked_until = None
        entry.block_reason = None
        return False

    async def is_blocked(self, ip: str) -> bool:
        """
        Local bans answer immediately; bans set elsewhere (manual, other
        processes) come from the store. A failing store falls back to local
        state only.
        """
        if self.is_blocked_locally(ip):
            return True

        try:
            return await self._store.is_ip_blocked(ip, self._now_dt())
        except Exception as e:
            logger.warning(f"Ban lookup failed for {ip}, using local state: {type(e).__name__}")
            return False

    # ======================================================
    # Record / Evaluate
    # ======================================================

    def record(self, ip: str, status_code: int = 200, hits: Iterable[ThreatHit] = ()) -> None:
        now = self._clock()
        entry = self._entry(ip, now)
        entry.last_seen = now
        entry.requests.append((now, status_code >= 400))

        for hit in hits:
            entry.threat_hits.append((now, hit.category))
            self.category_counts[hit.category] = self.category_counts.get(hit.category, 0) + 1
            entry.categories.add(hit.category)

        entry.trim(now)

    def evaluate(self, ip: str, hits: Iterable[ThreatHit] = ()) -> List[Signal]:
        """
        Window signals over the last 10 minutes, plus one signal per
        critical/high threat hit of the current request.
        """
        entry = self._entries.get(ip)
        if entry is None:
            return []

        now = self._clock()
        recent = [is_error for ts, is_error in entry.requests if ts > now - TEN_MINUTES]
        total = len(recent)
        errors = sum(recent)
        signals: List[Signal] = []

        if total > self.high_frequency_threshold:
            signals.append(Signal("high_frequency", Severity.HIGH, f"{total} requests/10min"))

        if errors > self.error_count_threshold and errors / total > self.error_rate_threshold:
            signals.append(Signal("high_error_rate", Severity.HIGH, f"{errors}/{total} errors/10min"))

        for hit in sorted(hits):
            severity = self._detector.severity(hit.category)
            if severity.rank >= Severity.HIGH.rank:
                signals.append(Signal(hit.category, severity, hit.signature))

        return signals

    async def observe(self, ip: str, status_code: int = 200, hits: Iterable[ThreatHit] = ()) -> Assessment:
        """
        Record one request, evaluate the IP and apply the auto-block policy.
        """
        hits = frozenset(hits)
        self.record(ip, status_code, hits)
        signals = self.evaluate(ip, hits)
        return await self._apply_policy(ip, signals)

    async def observe_response(self, ip: str, status_code: int) -> Assessment:
        """
        Correct the request recorded by observe() once the upstream status
        is known. Only failures change anything.
        """
        now = self._clock()
        entry = self._entry(ip, now)
        entry.last_seen = now
        if status_code < 400:
            return Assessment([], None)

        if not entry.mark_error():
            entry.requests.append((now, True))

        signals = self.evaluate(ip)
        return await self._apply_policy(ip, signals)

    async def _apply_policy(self, ip: str, signals: List[Signal]) -> Assessment:
        critical = [s for s in signals if s.severity is Severity.CRITICAL]
        high = [s for s in signals if s.severity is Severity.HIGH]
        self._count_high(ip, high)

        block = None
        if critical:
            block = await self.auto_block(ip, f"{critical[0].name} detected")
        elif self._high_signal_count(ip) >= self.block_threshold:
            block = await self.auto_block(ip, f"{self.block_threshold} high-severity signals within 1h")

        return Assessment(signals, block)

    async def report_signal(self, ip: str, name: str, detail: str = "") -> Optional[BlockedIPRecord]:
        """
        External signal (e.g. rate_limited from the token governor).
        """
        severity = WINDOW_SIGNAL_SEVERITY.get(name, Severity.MEDIUM)
        self._entry(ip, self._clock()).last_seen = self._clock()
        if severity is Severity.HIGH:
            self._count_high(ip, [Signal(name, severity, detail)])
            if self._high_signal_count(ip) >= self.block_threshold:
                return await self.auto_block(ip, f"{self.block_threshold} high-severity signals within 1h")
        return None

    def _count_high(self, ip: str, signals: Iterable[Signal]) -> None:
        now = self._clock()
        entry = self._entry(ip, now)
        for signal in signals:
            if signal.name in WINDOW_SIGNAL_SEVERITY:
                # One burst must not count as many signals
                last = entry.last_signal_at.get(signal.name)
                if last is not None and now - last < SIGNAL_DEBOUNCE:
                    continue
                entry.last_signal_at[signal.name] = now
            entry.high_signals.append(now)
        entry.trim(now)

    def _high_signal_count(self, ip: str) -> int:
        entry = self._entries.get(ip)
        return len(entry.high_signals) if entry else 0

    # ======================================================
    # Bans
    # ======================================================

    async def auto_block(self, ip: str, reason: str) -> Optional[BlockedIPRecord]:
        """
        Ban for block_seconds from now, renewing any shorter existing ban.
        """
        if not self.auto_block_enabled:
            logger.info(f"Auto-block disabled, not blocking {ip} ({reason})")
            return None

        now = self._clock()
        entry = self._entry(ip, now)
        expires = now + self.block_seconds
        renewed = entry.is_blocked(now)

        if entry.blocked_until is not None and entry.blocked_until >= expires:
            return None  # already banned for longer (e.g. permanent manual ban)

        entry.blocked_until = expires
        entry.block_reason = reason
        entry.high_signals.clear()

        record = BlockedIPRecord(
            ip=ip,
            reason=f"auto: {reason}",
            blocked_at=_to_dt(now),
            expires_at=_to_dt(expires),
            blocked_by="auto",
        )
        logger.warning(f"{'Renewed' if renewed else 'Auto-blocked'} {ip} for {self.block_seconds // 60}m: {reason}")

        async with self._lock(ip):
            try:
                await self._store.block_ip(record)
            except Exception as e:
                logger.error(f"Persisting ban for {ip} failed (local ban active): {type(e).__name__}")

        return record

    async def manual_block(self, record: BlockedIPRecord) -> None:
        """
        Manual bans go to the store first; a store failure propagates.
        """
        async with self._lock(record.ip):
            await self._store.block_ip(record)

        entry = self._entry(record.ip, self._clock())
        entry.blocked_until = record.expires_at.timestamp() if record.expires_at else float("inf")
        entry.block_reason = record.reason
        logger.warning(f"Manually blocked {record.ip} by {record.blocked_by}: {record.reason}")

    async def unblock(self, ip: str) -> bool:
        entry = self._entries.get(ip)
        was_local = entry is not None and entry.is_blocked(self._clock())
        if entry is not None:
            entry.blocked_until = None
            entry.block_reason = None

        async with self._lock(ip):
            was_stored = await self._store.unblock_ip(ip)

        if was_local or was_stored:
            logger.info(f"Unblocked {ip}")
        return was_local or was_stored

    # ======================================================
    # Maintenance / stats
    # ======================================================

    def sweep(self) -> int:
        """
        Evict IPs idle longer than idle_eviction_seconds and not banned.
        Returns number of evicted entries.
        """
        now = self._clock()
        evicted = 0

        for ip in list(self._entries):
            entry = self._entries[ip]
            entry.trim(now)
            if entry.blocked_until is not None and not entry.is_blocked(now):
                entry.blocked_until = None
                entry.block_reason = None
            if entry.is_blocked(now) or now - entry.last_seen <= self.idle_eviction_seconds:
                continue
            del self._entries[ip]
            lock = self._locks.get(ip)
            if lock is not None and not lock.locked():
                del self._locks[ip]
            evicted += 1

        if evicted:
            logger.info(f"Reputation sweep evicted {evicted} idle IPs")
        return evicted

    def blocked_ips(self) -> Dict[str, str]:
        now = self._clock()
        return {ip: e.block_reason or "" for ip, e in self._entries.items() if e.is_blocked(now)}

    def snapshot(self, ip: str) -> Optional[Dict[str, object]]:
        entry = self._entries.get(ip)
        if entry is None:
            return None
        entry.trim(self._clock())
        return {
            "state": self.state(ip).value,
            "requests_last_hour": len(entry.requests),
            "errors_last_hour": entry.error_count,
            "threat_hits_last_hour": entry.threat_counts(),
            "high_signals_last_hour": len(entry.high_signals),
        }

    def stats(self) -> Dict[str, object]:
        """
        count is lifetime; unique_ips covers IPs still being tracked.
        """
        unique: Dict[str, int] = {}
        for entry in self._entries.values():
            for category in entry.categories:
                unique[category] = unique.get(category, 0) + 1

        return {
            "tracked_ips": len(self._entries),
            "blocked_ips": self.blocked_ips(),
            "activities": {
                category: {"count": count, "unique_ips": unique.get(category, 0)}
                for category, count in self.category_counts.items()
            },
        }

    def _now_dt(self) -> datetime:
        return _to_dt(self._clock())


def _to_dt(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, timezone.utc)
