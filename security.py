import hashlib
import logging
import re
import secrets
from datetime import timedelta
from typing import Any, Dict, List, Optional

import jwt

from config import Settings
from errors import ConfigurationError
from schemas import InboundRequest

logger = logging.getLogger("sentinel.security")

TOKEN_TYPE = "api-access"
ALGORITHM = "HS256"


# =========================
# TOKEN EXTRACTION
# =========================

def extract_token(request: InboundRequest) -> Optional[str]:
    """
    Extract the bearer credential, in priority order:
    Authorization: Bearer <token>, ?token=<token>, X-API-Key: <token>
    """
    auth_header = request.header("authorization")
    if auth_header and auth_header.startswith("Bearer "):
        token = auth_header[len("Bearer "):].strip()
        if token:
            return token

    token = request.query.get("token")
    if token:
        return token

    return request.header("x-api-key") or None


# =========================
# HASHING
# =========================

def hash_token(raw_token: str) -> str:
    """
    Hash a signed token using SHA-256.
    Raw tokens are NEVER stored or logged.
    """
    return hashlib.sha256(raw_token.encode()).hexdigest()


# =========================
# DURATIONS ("30d", "1h", ...)
# =========================

_DURATION_RE = re.compile(r"^(\d+)([smhdw])$")

_UNIT_SECONDS = {
    "s": 1,
    "m": 60,
    "h": 60 * 60,
    "d": 24 * 60 * 60,
    "w": 7 * 24 * 60 * 60,
}


def parse_duration(value: str) -> timedelta:
    match = _DURATION_RE.match(value.strip()) if value else None
    if not match:
        raise ValueError(f"Invalid duration: {value!r} (expected e.g. '30d', '1h', '15m')")

    amount, unit = match.groups()
    seconds = int(amount) * _UNIT_SECONDS[unit]
    if seconds <= 0:
        raise ValueError(f"Duration must be positive: {value!r}")
    return timedelta(seconds=seconds)


# =========================
# SIGNING
# =========================

def resolve_signing_secret(settings: Settings) -> str:
    """
    Missing secret is fatal in production. Elsewhere a throwaway secret is
    generated, and every token issued with it dies with the process.
    """
    if settings.JWT_SECRET:
        return settings.JWT_SECRET

    if settings.is_production:
        raise ConfigurationError("JWT_SECRET must be set in production")

    logger.warning(
        "JWT_SECRET is not set: using an auto-generated signing secret. "
        "Tokens will not survive a restart. Set JWT_SECRET before deploying."
    )
    return secrets.token_hex(64)


class TokenSigner:
    """Signs and verifies the bearer credential. Expiry lives in the store."""

    def __init__(self, secret: str, issuer: str):
        if not secret:
            raise ConfigurationError("Signing secret is empty")
        self._secret = secret
        self.issuer = issuer

    def sign(self, token_id: str, subject: str, scopes: List[str], issued_at: int) -> str:
        payload = {
            "jti": token_id,
            "iat": issued_at,
            "iss": self.issuer,
            "sub": subject or "api-access",
            "type": TOKEN_TYPE,
            "scopes": list(scopes),
        }
        return jwt.encode(payload, self._secret, algorithm=ALGORITHM)

    def verify(self, raw_token: str) -> Optional[Dict[str, Any]]:
        """
        Returns decoded claims, or None if the signature, issuer or shape is wrong.
        """
        try:
            claims = jwt.decode(
                raw_token,
                self._secret,
                algorithms=[ALGORITHM],
                issuer=self.issuer,
                options={"require": ["jti", "iss"], "verify_exp": False, "verify_iat": False},
            )
        except jwt.PyJWTError:
            return None

        if claims.get("type") != TOKEN_TYPE:
            return None
        return claims
