import json
from unittest.mock import patch

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import ADMIN_KEY, build_settings
from main import create_app, run

UPSTREAM_URL = "http://backend.internal"
ADMIN = {"X-Admin-Key": ADMIN_KEY}


class Upstream:
    """Backend stand-in that echoes what the gateway forwarded."""

    def __init__(self):
        self.requests = []
        self.status_code = 200

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        body = json.dumps({"path": request.url.path, "query": dict(request.url.params)}).encode()
        # Unread stream, as a real transport returns it
        return httpx.Response(
            self.status_code,
            headers={"content-type": "application/json"},
            stream=httpx.ByteStream(body),
        )


@pytest.fixture
def upstream():
    return Upstream()


@pytest.fixture
def client(make_service, upstream):
    service = make_service(UPSTREAM_BASE_URL=UPSTREAM_URL)
    app = create_app(service=service, upstream_transport=httpx.MockTransport(upstream))
    with TestClient(app) as c:
        yield c


def _issue(client, **body):
    resp = client.post("/admin/tokens", json={"name": "ci-bot", **body}, headers=ADMIN)
    assert resp.status_code == 201
    return resp.json()


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_missing_token(client):
    """401 for missing token"""
    resp = client.get("/api/data")
    assert resp.status_code == 401
    body = resp.json()
    assert body["error"] == "missing_token"
    assert body["message"] == "Access token is required"
    assert "timestamp" in body


def test_invalid_token(client):
    resp = client.get("/api/data", headers={"Authorization": "Bearer not-a-real-token"})
    assert resp.status_code == 401
    assert resp.json()["error"] == "invalid_token"


def test_happy_path_proxies_without_credentials(client, upstream):
    """Full flow: ban check -> token -> quota -> proxy"""
    issued = _issue(client, scopes=["read"])

    resp = client.get("/users/123", params={"token": issued["token"], "page": "2"})
    assert resp.status_code == 200
    assert resp.json() == {"path": "/users/123", "query": {"page": "2"}}

    forwarded = upstream.requests[0]
    assert forwarded.headers["x-gateway-token-id"] == issued["id"]
    assert forwarded.headers["x-gateway-scopes"] == "read"
    assert "authorization" not in forwarded.headers
    assert "x-api-key" not in forwarded.headers


def test_upstream_errors_count_against_client_ip(client, upstream):
    issued = _issue(client, max_requests_per_hour=100)
    headers = {"Authorization": f"Bearer {issued['token']}"}
    upstream.status_code = 500

    for _ in range(21):
        assert client.get("/api/data", headers=headers).status_code == 500

    reputation = client.get("/admin/ips/testclient", headers=ADMIN).json()
    assert reputation["requests_last_hour"] == 21
    assert reputation["errors_last_hour"] == 21
    assert reputation["high_signals_last_hour"] == 1

    alerts = client.get("/admin/alerts", headers=ADMIN).json()
    assert "high_error_rate" in [a["category"] for a in alerts]


def test_forward_auth_endpoint(client):
    issued = _issue(client)

    resp = client.get("/auth/validate", headers={"X-API-Key": issued["token"]})
    assert resp.status_code == 200
    assert resp.json() == {"valid": True, "token_id": issued["id"], "scopes": ["read", "write"], "degraded": False}


def test_rate_limit_returns_429(client):
    issued = _issue(client, max_requests_per_hour=1)
    headers = {"Authorization": f"Bearer {issued['token']}"}

    assert client.get("/api/data", headers=headers).status_code == 200

    resp = client.get("/api/data", headers=headers)
    assert resp.status_code == 429
    assert resp.json()["error"] == "rate_limited"


def test_revoked_token(client):
    issued = _issue(client)
    headers = {"Authorization": f"Bearer {issued['token']}"}

    resp = client.delete(f"/admin/tokens/{issued['id']}", params={"reason": "leaked"}, headers=ADMIN)
    assert resp.json() == {"id": issued["id"], "revoked": True, "changed": True}

    resp = client.get("/api/data", headers=headers)
    assert resp.status_code == 401
    assert resp.json()["error"] == "revoked"


def test_sql_injection_gets_client_banned(client, upstream):
    issued = _issue(client)
    headers = {"Authorization": f"Bearer {issued['token']}"}

    resp = client.get("/api/data", params={"id": "1 UNION SELECT password FROM users"}, headers=headers)
    assert resp.status_code == 403
    assert resp.json()["error"] == "ip_blocked"

    resp = client.get("/api/data", headers=headers)
    assert resp.status_code == 403
    assert upstream.requests == []


def test_preflight_bypasses_governance(client):
    resp = client.options("/api/data")
    assert resp.status_code == 200
    assert resp.headers["access-control-allow-origin"] == "*"


def test_admin_requires_key(client):
    assert client.get("/admin/tokens").status_code == 401
    assert client.get("/admin/tokens", headers={"X-Admin-Key": "wrong"}).status_code == 401


def test_admin_token_management(client):
    issued = _issue(client, description="nightly jobs", ttl="1h")

    tokens = client.get("/admin/tokens", headers=ADMIN).json()
    assert [t["id"] for t in tokens] == [issued["id"]]
    assert "token_hash" not in tokens[0]

    stats = client.get(f"/admin/tokens/{issued['id']}/stats", headers=ADMIN).json()
    assert stats["status"] == "active"
    assert stats["description"] == "nightly jobs"

    resp = client.post(f"/admin/tokens/{issued['id']}/refresh", json={"ttl": "2h"}, headers=ADMIN)
    assert resp.status_code == 200

    resp = client.get("/admin/tokens/does-not-exist/stats", headers=ADMIN)
    assert resp.status_code == 404
    assert resp.json()["error"] == "not_found"

    resp = client.post("/admin/tokens", json={"name": "x", "ttl": "forever"}, headers=ADMIN)
    assert resp.status_code == 400
    assert resp.json()["error"] == "validation_error"


def test_admin_ip_management(client):
    resp = client.post("/admin/ips/block", json={"ip": "203.0.113.7", "reason": "abuse"}, headers=ADMIN)
    assert resp.status_code == 201
    assert resp.json()["blocked_by"] == "admin@testclient"

    blocked = client.get("/admin/ips/blocked", headers=ADMIN).json()
    assert [b["ip"] for b in blocked] == ["203.0.113.7"]

    resp = client.post("/admin/ips/block", json={"ip": "bogus"}, headers=ADMIN)
    assert resp.status_code == 400

    resp = client.delete("/admin/ips/203.0.113.7", headers=ADMIN)
    assert resp.json() == {"ip": "203.0.113.7", "unblocked": True}

    assert client.get("/admin/ips/198.51.100.1", headers=ADMIN).status_code == 404


def test_admin_alerts_and_stats(client):
    client.get("/.env")

    alerts = client.get("/admin/alerts", params={"severity": "medium"}, headers=ADMIN).json()
    assert "sensitive-path-probe" in [a["category"] for a in alerts]

    stats = client.get("/admin/security/stats", headers=ADMIN).json()
    assert stats["reputation"]["activities"]["sensitive-path-probe"]["count"] == 1

    reputation = client.get("/admin/ips/testclient", headers=ADMIN).json()
    assert reputation["state"] == "watched"


def test_no_upstream_configured(make_service):
    app = create_app(service=make_service())
    with TestClient(app) as c:
        issued = c.post("/admin/tokens", json={"name": "ci-bot"}, headers=ADMIN).json()
        resp = c.get("/api/data", headers={"Authorization": f"Bearer {issued['token']}"})
        assert resp.status_code == 404


def test_run_serves_configured_address():
    with patch("main.uvicorn.run") as serve:
        run(build_settings(HOST="127.0.0.1", PORT=9000, LOG_LEVEL="WARNING"))

    serve.assert_called_once()
    assert serve.call_args.kwargs == {"host": "127.0.0.1", "port": 9000, "log_level": "warning"}
