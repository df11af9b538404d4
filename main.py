import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import httpx
import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from admin import get_service, router as admin_router
from config import Settings
from errors import ErrorResponse, GovernanceError
from proxy import UpstreamProxy
from schemas import Authorized, HealthResponse, InboundRequest, Rejected
from service import GovernanceService

logger = logging.getLogger("sentinel.gateway")


# ======================================================
# CORS (Gateway-level, authoritative)
# ======================================================

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, PATCH, OPTIONS",
    "Access-Control-Allow-Headers": "*",
    "Access-Control-Max-Age": "86400",
}


# ======================================================
# Request Context (Facts Only)
# ======================================================

class RequestContext(BaseModel):
    timestamp: str
    token_id: Optional[str]

    method: str
    path: str

    ip: str
    user_agent: Optional[str]

    decision: str
    reason: Optional[str]

    status_code: int
    latency_ms: int


def to_inbound(request: Request) -> InboundRequest:
    return InboundRequest(
        method=request.method,
        path=request.url.path,
        query=dict(request.query_params),
        headers=dict(request.headers),
        source_ip=request.client.host if request.client else "unknown",
    )


def rejection_response(decision: Rejected) -> JSONResponse:
    error = decision.to_error()
    body = ErrorResponse(error=decision.reason, message=decision.message, timestamp=decision.timestamp)
    return JSONResponse(status_code=error.status_code, content=body.model_dump(mode="json"), headers=CORS_HEADERS)


def log_request(inbound: InboundRequest, decision, status_code: int, started: float) -> None:
    ctx = RequestContext(
        timestamp=datetime.now(timezone.utc).isoformat(),
        token_id=decision.token_id if isinstance(decision, Authorized) else None,
        method=inbound.method,
        path=inbound.path,
        ip=inbound.source_ip,
        user_agent=inbound.header("user-agent"),
        decision="ALLOW" if isinstance(decision, Authorized) else "BLOCK",
        reason=decision.reason if isinstance(decision, Rejected) else None,
        status_code=status_code,
        latency_ms=int((time.monotonic() - started) * 1000),
    )
    logger.info(ctx.model_dump_json())


# ======================================================
# App Setup
# ======================================================

def create_app(
    settings: Optional[Settings] = None,
    service: Optional[GovernanceService] = None,
    upstream_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Settings and the service are built at startup, not at import.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = service.settings if service is not None else (settings or Settings())
        logging.basicConfig(level=cfg.LOG_LEVEL)

        svc = service or GovernanceService(cfg)
        proxy = UpstreamProxy(cfg.UPSTREAM_BASE_URL, transport=upstream_transport) if cfg.UPSTREAM_BASE_URL else None
        if proxy is None:
            logger.warning("UPSTREAM_BASE_URL not set: gateway answers authorization checks only")

        app.state.service = svc
        app.state.proxy = proxy
        await svc.start()
        try:
            yield
        finally:
            await svc.stop()
            if proxy is not None:
                await proxy.aclose()

    app = FastAPI(title="Sentinel Gateway", lifespan=lifespan)

    @app.exception_handler(GovernanceError)
    async def governance_error_handler(request: Request, exc: GovernanceError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_response().model_dump(mode="json"))

    # --------------------------------------------------
    # Health
    # --------------------------------------------------

    @app.get("/health", response_model=HealthResponse)
    def health_check(request: Request):
        ready = getattr(request.app.state, "service", None) is not None
        return {"status": "ok" if ready else "initializing"}

    # --------------------------------------------------
    # Admin surface
    # --------------------------------------------------

    app.include_router(admin_router)

    # --------------------------------------------------
    # Forward-auth check
    # --------------------------------------------------

    @app.get("/auth/validate")
    async def validate(request: Request, svc: GovernanceService = Depends(get_service)):
        started = time.monotonic()
        inbound = to_inbound(request)
        decision = await svc.check(inbound)

        if isinstance(decision, Rejected):
            response = rejection_response(decision)
            log_request(inbound, decision, response.status_code, started)
            return response

        log_request(inbound, decision, 200, started)
        return {
            "valid": True,
            "token_id": decision.token_id,
            "scopes": decision.scopes,
            "degraded": decision.degraded,
        }

    # --------------------------------------------------
    # Preflight (ABSOLUTE BYPASS)
    # --------------------------------------------------

    @app.options("/{path:path}")
    async def preflight_handler(path: str):
        return Response(status_code=200, headers=CORS_HEADERS)

    # --------------------------------------------------
    # Gateway (ALL REAL TRAFFIC)
    # --------------------------------------------------

    @app.api_route("/{path:path}", methods=["GET", "POST", "PUT", "DELETE", "PATCH"])
    async def gateway(path: str, request: Request, svc: GovernanceService = Depends(get_service)):
        started = time.monotonic()
        inbound = to_inbound(request)
        decision = await svc.check(inbound)

        if isinstance(decision, Rejected):
            response = rejection_response(decision)
            log_request(inbound, decision, response.status_code, started)
            return response

        proxy: Optional[UpstreamProxy] = request.app.state.proxy
        if proxy is None:
            log_request(inbound, decision, 404, started)
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No upstream configured")

        try:
            response = await proxy.forward(request, path, decision)
        except HTTPException as e:
            await svc.record_response(inbound, decision, e.status_code)
            log_request(inbound, decision, e.status_code, started)
            raise

        await svc.record_response(inbound, decision, response.status_code)
        log_request(inbound, decision, response.status_code, started)
        for k, v in CORS_HEADERS.items():
            response.headers.setdefault(k, v)
        return response

    return app


def run(settings: Optional[Settings] = None) -> None:
    cfg = settings or Settings()
    uvicorn.run(create_app(cfg), host=cfg.HOST, port=cfg.PORT, log_level=cfg.LOG_LEVEL.lower())


app = create_app()


if __name__ == "__main__":
    run()
