import asyncio
import logging
import time
import uuid
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Tuple

import httpx

from schemas import SecurityAlert, Severity
from store import GovernanceStore

logger = logging.getLogger("sentinel.alerts")

HOUR = 60 * 60
HISTORY_SIZE = 5000


class AlertDispatcher:
    """
    Security notifications to a webhook, with suppression:
    - a (event_type, ip) key does not re-fire inside the cooldown
    - at most max_per_hour deliveries in the trailing hour

    Every alert is kept in the history and handed to the store, delivered
    or not. Delivery runs in the background and its failures are logged,
    never raised.
    """

    def __init__(
        self,
        store: GovernanceStore,
        webhook_url: str = "",
        cooldown_seconds: float = 300.0,
        max_per_hour: int = 10,
        send_timeout: float = 3.0,
        clock: Callable[[], float] = time.time,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._store = store
        self.webhook_url = webhook_url
        self.cooldown_seconds = cooldown_seconds
        self.max_per_hour = max_per_hour
        self._clock = clock

        self._client: Optional[httpx.AsyncClient] = None
        if webhook_url:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(send_timeout), transport=transport)

        self._last_fired: Dict[Tuple[str, str], float] = {}
        self._deliveries: Deque[float] = deque()
        self._history: Deque[SecurityAlert] = deque(maxlen=HISTORY_SIZE)
        self._tasks: Set[asyncio.Task] = set()

        self.sent = 0
        self.send_failures = 0

    # ======================================================
    # Public API
    # ======================================================

    async def notify(
        self,
        severity: Severity,
        title: str,
        fields: Dict[str, Any],
        event_type: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> SecurityAlert:
        now = self._clock()
        category = event_type or title

        alert = SecurityAlert(
            id=f"alert_{int(now * 1000)}_{uuid.uuid4().hex[:9]}",
            category=category,
            severity=Severity(severity),
            title=title,
            timestamp=datetime.fromtimestamp(now, timezone.utc),
            ip=ip,
            details={k: _plain(v) for k, v in fields.items()},
            delivered=self._admit(category, ip, now),
        )
        self._history.append(alert)

        log = logger.warning if alert.severity.rank >= Severity.MEDIUM.rank else logger.info
        log(f"Security alert [{alert.severity.value}] {title} ip={ip or '-'} delivered={alert.delivered}")

        try:
            await self._store.create_security_alert(alert)
        except Exception as e:
            logger.error(f"Storing security alert failed: {type(e).__name__}")

        if alert.delivered and self._client is not None:
            task = asyncio.get_running_loop().create_task(self._send(alert))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        return alert

    def history(
        self,
        limit: int = 50,
        severity: Optional[Severity] = None,
        since: Optional[datetime] = None,
    ) -> List[SecurityAlert]:
        alerts = [
            a for a in reversed(self._history)
            if (severity is None or a.severity == severity) and (since is None or a.timestamp >= since)
        ]
        return alerts[:limit]

    def stats(self) -> Dict[str, int]:
        now = datetime.fromtimestamp(self._clock(), timezone.utc)
        last_hour = sum(1 for a in self._history if a.timestamp > now - timedelta(hours=1))
        last_day = sum(1 for a in self._history if a.timestamp > now - timedelta(days=1))
        return {
            "total": len(self._history),
            "last_hour": last_hour,
            "last_24h": last_day,
            "delivered_last_hour": len(self._deliveries),
            "send_failures": self.send_failures,
        }

    # ======================================================
    # Suppression
    # ======================================================

    def _admit(self, category: str, ip: Optional[str], now: float) -> bool:
        """
        Decides and books a delivery slot in one step.
        """
        key = (category, ip or "")

        last = self._last_fired.get(key)
        if last is not None and now - last < self.cooldown_seconds:
            return False

        while self._deliveries and self._deliveries[0] <= now - HOUR:
            self._deliveries.popleft()
        if len(self._deliveries) >= self.max_per_hour:
            return False

        self._last_fired[key] = now
        self._deliveries.append(now)
        return True

    def sweep(self) -> int:
        """
        Forget cooldown keys whose cooldown has passed.
        """
        cutoff = self._clock() - self.cooldown_seconds
        expired = [key for key, fired in self._last_fired.items() if fired <= cutoff]
        for key in expired:
            del self._last_fired[key]
        return len(expired)

    # ======================================================
    # Delivery
    # ======================================================

    async def _send(self, alert: SecurityAlert) -> None:
        payload = {
            "severity": alert.severity.value,
            "title": alert.title,
            "fields": alert.details,
            "timestamp": alert.timestamp.isoformat(),
        }
        try:
            resp = await self._client.post(self.webhook_url, json=payload)
            resp.raise_for_status()
            self.sent += 1
            logger.debug(f"Alert delivered: {alert.title}")
        except Exception as e:
            self.send_failures += 1
            logger.error(f"Alert delivery failed (dropped): {type(e).__name__}")

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()
        if self._client is not None:
            await self._client.aclose()


def _plain(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_plain(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _plain(v) for k, v in value.items()}
    return str(value)
