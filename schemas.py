from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from errors import (
    AuthenticationError,
    AuthorizationError,
    BlockedError,
    GovernanceError,
    PersistenceError,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Severity(str, Enum):
    INFO = "info"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.INFO: 0,
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


# ======================================================
# Persisted records
# ======================================================

class AccessToken(BaseModel):
    """
    Persisted token record. The raw signed credential is never stored,
    only its SHA-256 digest.
    """
    id: str
    name: str
    description: str = ""
    token_hash: str
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    active: bool = True
    usage_count: int = 0
    last_used_at: Optional[datetime] = None
    scopes: List[str] = Field(default_factory=lambda: ["read", "write"])
    max_requests_per_hour: int = 1000
    max_requests_per_day: int = 10000
    created_by: str = "system"
    revoked_at: Optional[datetime] = None
    revoke_reason: Optional[str] = None

    @property
    def revoked(self) -> bool:
        return self.revoked_at is not None

    def is_expired(self, now: datetime) -> bool:
        # Exclusive boundary: expires_at == now is already expired
        return now >= self.expires_at


class UsageRecord(BaseModel):
    token_id: Optional[str] = None
    endpoint: str
    method: str
    status_code: int
    response_time_ms: int = 0
    ip: str
    user_agent: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class BlockedIPRecord(BaseModel):
    ip: str
    reason: str
    blocked_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None  # None = permanent (manual only)
    blocked_by: str = "system"

    def is_active(self, now: datetime) -> bool:
        return self.expires_at is None or now < self.expires_at


class SecurityAlert(BaseModel):
    id: str
    category: str
    severity: Severity
    title: str
    timestamp: datetime = Field(default_factory=utcnow)
    ip: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    resolved: bool = False
    delivered: bool = False


# ======================================================
# Inbound request (facts only)
# ======================================================

class InboundRequest(BaseModel):
    method: str = "GET"
    path: str
    query: Dict[str, str] = Field(default_factory=dict)
    headers: Dict[str, str] = Field(default_factory=dict)
    source_ip: str

    def header(self, name: str) -> Optional[str]:
        name = name.lower()
        for key, value in self.headers.items():
            if key.lower() == name:
                return value
        return None


# ======================================================
# Governance outcomes
# ======================================================

class Authorized(BaseModel):
    token_id: Optional[str]
    scopes: List[str] = Field(default_factory=list)
    degraded: bool = False  # True when fail-open skipped the quota check


REJECTION_MESSAGES = {
    "ip_blocked": "Your IP has been blocked",
    "missing_token": "Access token is required",
    "invalid_token": "Token is invalid",
    "revoked": "Token has been revoked",
    "inactive": "Token is inactive",
    "token_expired": "Access token has expired",
    "rate_limited": "Too many requests",
    "service_unavailable": "Rate limit check unavailable",
}


class Rejected(BaseModel):
    reason: str
    timestamp: datetime = Field(default_factory=utcnow)

    @property
    def message(self) -> str:
        return REJECTION_MESSAGES.get(self.reason, "Request rejected")

    def to_error(self) -> GovernanceError:
        if self.reason == "ip_blocked":
            return BlockedError(message=self.message)
        if self.reason == "rate_limited":
            return AuthorizationError(message=self.message)
        if self.reason == "service_unavailable":
            return PersistenceError(message=self.message)
        return AuthenticationError(code=self.reason, message=self.message)


Decision = Union[Authorized, Rejected]


# ======================================================
# API payloads
# ======================================================

class IssuedToken(BaseModel):
    id: str
    token: str
    name: str
    description: str = ""
    scopes: List[str]
    expires_at: datetime
    created_at: datetime


class IssueTokenRequest(BaseModel):
    name: str
    description: str = ""
    ttl: Optional[str] = None
    scopes: Optional[List[str]] = None
    max_requests_per_hour: Optional[int] = None
    max_requests_per_day: Optional[int] = None


class RefreshTokenRequest(BaseModel):
    ttl: str


class BlockIPRequest(BaseModel):
    ip: str
    reason: str = "Manual block"
    duration: Optional[str] = "24h"  # None = permanent


class TokenStats(BaseModel):
    id: str
    name: str
    description: str
    status: str
    created_at: datetime
    last_used_at: Optional[datetime]
    expires_at: datetime
    total_usage: int
    usage_last_hour: int
    usage_last_day: int
    limits: Dict[str, int]
    scopes: List[str]


class HealthResponse(BaseModel):
    status: str
