from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """
    Body returned for every rejection.
    Never carries stack traces, raw tokens or secrets.
    """
    error: str
    message: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    details: Dict[str, Any] = Field(default_factory=dict)


class GovernanceError(Exception):
    """Base exception for the access-governance layer."""

    status_code = 500

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(error=self.code, message=self.message, details=self.details)


class AuthenticationError(GovernanceError):
    """Missing, malformed, unknown, revoked or expired credential."""

    status_code = 401

    def __init__(self, code: str = "invalid_token", message: str = "Authentication failed",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(code, message, details)


class AuthorizationError(GovernanceError):
    """Quota exceeded."""

    status_code = 429

    def __init__(self, code: str = "rate_limited", message: str = "Too many requests",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(code, message, details)


class BlockedError(GovernanceError):
    """Source IP has an active ban."""

    status_code = 403

    def __init__(self, code: str = "ip_blocked", message: str = "Your IP has been blocked",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(code, message, details)


class PersistenceError(GovernanceError):
    """Store unavailable or failing."""

    status_code = 503

    def __init__(self, message: str = "Persistence unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("service_unavailable", message, details)


class ConfigurationError(GovernanceError):
    """Fatal at startup."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("configuration_error", message, details)


class NotFoundError(GovernanceError):
    status_code = 404

    def __init__(self, message: str = "Not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("not_found", message, details)


class ValidationError(GovernanceError):
    status_code = 400

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("validation_error", message, details)
