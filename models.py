from sqlalchemy import Boolean, Column, DateTime, Integer, JSON, String, Text
from sqlalchemy.sql import func

from db import Base


class APIToken(Base):
    """
    Issued bearer tokens. Only the SHA-256 digest of the signed token is kept.
    """
    __tablename__ = "api_tokens"

    id = Column(String(36), primary_key=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=False, default="")
    token_hash = Column(String(64), nullable=False, unique=True, index=True)
    scopes = Column(String(255), nullable=False, default="read,write")
    is_active = Column(Boolean, nullable=False, default=True)
    usage_count = Column(Integer, nullable=False, default=0)
    max_requests_per_hour = Column(Integer, nullable=False)
    max_requests_per_day = Column(Integer, nullable=False)
    created_by = Column(String(255), nullable=False, default="system")
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    expires_at = Column(DateTime(timezone=True), nullable=False)
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    revoke_reason = Column(String(255), nullable=True)


class UsageLog(Base):
    """
    Append-only request ledger used for sliding-window quota counts.
    """
    __tablename__ = "api_usage_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    token_id = Column(String(36), nullable=True, index=True)
    endpoint = Column(String(512), nullable=False)
    method = Column(String(16), nullable=False)
    status_code = Column(Integer, nullable=False)
    response_time_ms = Column(Integer, nullable=False, default=0)
    ip_address = Column(String(64), nullable=False)
    user_agent = Column(String(500), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)


class BlockedIP(Base):
    """
    Tracks IPs temporarily or permanently blocked.
    expires_at NULL means permanent (manual bans only).
    """
    __tablename__ = "blocked_ips"

    id = Column(Integer, primary_key=True, autoincrement=True)
    ip_address = Column(String(64), nullable=False, index=True)
    reason = Column(String(255), nullable=False)
    blocked_by = Column(String(255), nullable=False, default="system")
    is_active = Column(Boolean, nullable=False, default=True)
    blocked_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)


class SecurityAlertLog(Base):
    """
    Audit trail of every security alert, delivered or suppressed.
    """
    __tablename__ = "security_alerts"

    id = Column(String(64), primary_key=True)
    category = Column(String(64), nullable=False, index=True)
    severity = Column(String(16), nullable=False)
    title = Column(String(255), nullable=False)
    ip_address = Column(String(64), nullable=True, index=True)
    details = Column(JSON, nullable=False, default=dict)
    resolved = Column(Boolean, nullable=False, default=False)
    delivered = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
