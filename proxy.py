from typing import Dict, Optional

import httpx
from fastapi import HTTPException, Request, status
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from schemas import Authorized

HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "host",  # httpx sets it from the URL
}

# The gateway credential never reaches the upstream
CREDENTIAL_HEADERS = {"authorization", "x-api-key"}
CREDENTIAL_QUERY_PARAMS = {"token"}


def _filter_headers(headers: Dict[str, str], drop: frozenset = frozenset()) -> Dict[str, str]:
    return {
        k: v
        for k, v in headers.items()
        if k.lower() not in HOP_BY_HOP_HEADERS and k.lower() not in drop
    }


class UpstreamProxy:
    """
    Forwards authorized requests to a single upstream, streaming the body
    both ways. Owns one shared client for the process lifetime.
    """

    def __init__(self, base_url: str, timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def forward(self, request: Request, path: str, auth: Authorized) -> StreamingResponse:
        headers = _filter_headers(dict(request.headers), drop=frozenset(CREDENTIAL_HEADERS))
        if auth.token_id:
            headers["X-Gateway-Token-Id"] = auth.token_id
            headers["X-Gateway-Scopes"] = ",".join(auth.scopes)

        params = [(k, v) for k, v in request.query_params.multi_items() if k not in CREDENTIAL_QUERY_PARAMS]

        upstream_request = self._client.build_request(
            method=request.method,
            url=f"{self.base_url}/{path.lstrip('/')}",
            headers=headers,
            params=params,
            content=request.stream(),
        )

        try:
            upstream = await self._client.send(upstream_request, stream=True)
        except httpx.RequestError as e:
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail=f"Upstream service unreachable: {type(e).__name__}",
            )

        return StreamingResponse(
            upstream.aiter_raw(),
            status_code=upstream.status_code,
            headers=_filter_headers(dict(upstream.headers), drop=frozenset({"content-length"})),
            media_type=upstream.headers.get("content-type"),
            background=BackgroundTask(upstream.aclose),
        )

    async def aclose(self) -> None:
        await self._client.aclose()
