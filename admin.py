import secrets
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from errors import NotFoundError
from schemas import (
    BlockIPRequest,
    BlockedIPRecord,
    IssuedToken,
    IssueTokenRequest,
    RefreshTokenRequest,
    SecurityAlert,
    Severity,
    TokenStats,
)
from service import GovernanceService


def get_service(request: Request) -> GovernanceService:
    return request.app.state.service


async def require_admin(
    request: Request,
    x_admin_key: Optional[str] = Header(default=None),
    service: GovernanceService = Depends(get_service),
) -> str:
    """
    Returns the caller identity used in audit fields.
    """
    expected = service.settings.ADMIN_API_KEY
    if not expected:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Admin API key not configured")

    client_ip = request.client.host if request.client else "unknown"
    if not x_admin_key or not secrets.compare_digest(x_admin_key, expected):
        # Failed admin attempts count against the caller's reputation
        await service.reputation.observe(client_ip, status.HTTP_401_UNAUTHORIZED)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Valid admin API key required")

    return f"admin@{client_ip}"


router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


# ======================================================
# Tokens
# ======================================================

@router.post("/tokens", status_code=status.HTTP_201_CREATED, response_model=IssuedToken)
async def issue_token(
    body: IssueTokenRequest,
    caller: str = Depends(require_admin),
    service: GovernanceService = Depends(get_service),
):
    return await service.governor.issue_token(
        body.name,
        description=body.description,
        ttl=body.ttl,
        scopes=body.scopes,
        max_requests_per_hour=body.max_requests_per_hour,
        max_requests_per_day=body.max_requests_per_day,
        created_by=caller,
    )


@router.get("/tokens")
async def list_tokens(service: GovernanceService = Depends(get_service)) -> List[Dict[str, Any]]:
    tokens = await service.governor.list_tokens()
    return [t.model_dump(mode="json", exclude={"token_hash"}) for t in tokens]


@router.get("/tokens/{token_id}/stats", response_model=TokenStats)
async def token_stats(token_id: str, service: GovernanceService = Depends(get_service)):
    return await service.governor.get_token_stats(token_id)


@router.delete("/tokens/{token_id}")
async def revoke_token(
    token_id: str,
    reason: str = "manual_revoke",
    service: GovernanceService = Depends(get_service),
):
    changed = await service.governor.revoke_token(token_id, reason)
    return {"id": token_id, "revoked": True, "changed": changed}


@router.post("/tokens/{token_id}/refresh")
async def refresh_token(
    token_id: str,
    body: RefreshTokenRequest,
    service: GovernanceService = Depends(get_service),
):
    token = await service.governor.refresh_token(token_id, body.ttl)
    return {"id": token.id, "expires_at": token.expires_at}


# ======================================================
# IPs
# ======================================================

@router.post("/ips/block", status_code=status.HTTP_201_CREATED, response_model=BlockedIPRecord)
async def block_ip(
    body: BlockIPRequest,
    request: Request,
    caller: str = Depends(require_admin),
    service: GovernanceService = Depends(get_service),
):
    if request.client and body.ip == request.client.host:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Cannot block your own IP")
    return await service.block_ip(body.ip, reason=body.reason, duration=body.duration, blocked_by=caller)


@router.delete("/ips/{ip}")
async def unblock_ip(ip: str, service: GovernanceService = Depends(get_service)):
    return {"ip": ip, "unblocked": await service.unblock_ip(ip)}


@router.get("/ips/blocked", response_model=List[BlockedIPRecord])
async def blocked_ips(service: GovernanceService = Depends(get_service)):
    return await service.list_blocked_ips()


@router.get("/ips/{ip}")
async def ip_reputation(ip: str, service: GovernanceService = Depends(get_service)):
    snapshot = service.reputation.snapshot(ip)
    if snapshot is None:
        raise NotFoundError("No recorded activity for this IP", details={"ip": ip})
    return {"ip": ip, **snapshot}


# ======================================================
# Alerts / stats
# ======================================================

@router.get("/alerts", response_model=List[SecurityAlert])
async def alerts(
    limit: int = 50,
    severity: Optional[Severity] = None,
    since: Optional[datetime] = None,
    service: GovernanceService = Depends(get_service),
):
    return await service.alert_history(limit=min(max(limit, 1), 200), severity=severity, since=since)


@router.get("/security/stats")
async def security_stats(service: GovernanceService = Depends(get_service)):
    return service.security_stats()
