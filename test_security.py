from datetime import timedelta

import jwt
import pytest

from conftest import TEST_SECRET, build_settings
from errors import ConfigurationError
from schemas import InboundRequest
from security import TokenSigner, extract_token, hash_token, parse_duration, resolve_signing_secret


def _request(headers=None, query=None):
    return InboundRequest(path="/api/data", headers=headers or {}, query=query or {}, source_ip="1.2.3.4")


def test_extract_token_priority():
    """Bearer header wins over query param, query param over X-API-Key"""
    req = _request(headers={"Authorization": "Bearer from-header", "X-API-Key": "from-key"}, query={"token": "from-query"})
    assert extract_token(req) == "from-header"

    req = _request(headers={"X-API-Key": "from-key"}, query={"token": "from-query"})
    assert extract_token(req) == "from-query"

    req = _request(headers={"x-api-key": "from-key"})
    assert extract_token(req) == "from-key"


def test_extract_token_missing():
    assert extract_token(_request()) is None
    assert extract_token(_request(headers={"Authorization": "Basic abc"})) is None
    assert extract_token(_request(headers={"Authorization": "Bearer   "})) is None


def test_hash_token_is_sha256_hex():
    digest = hash_token("abc")
    assert digest == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
    assert hash_token("abc") == digest


@pytest.mark.parametrize("value,expected", [
    ("30d", timedelta(days=30)),
    ("1h", timedelta(hours=1)),
    ("15m", timedelta(minutes=15)),
    ("45s", timedelta(seconds=45)),
    ("2w", timedelta(weeks=2)),
])
def test_parse_duration(value, expected):
    assert parse_duration(value) == expected


@pytest.mark.parametrize("value", ["", "30", "d30", "1y", "-1h", "0h", "1.5h"])
def test_parse_duration_rejects_garbage(value):
    with pytest.raises(ValueError):
        parse_duration(value)


def test_signer_round_trip():
    signer = TokenSigner(TEST_SECRET, "sentinel-gateway")
    raw = signer.sign("tok-1", "ci-bot", ["read"], 1_700_000_000)

    claims = signer.verify(raw)
    assert claims["jti"] == "tok-1"
    assert claims["sub"] == "ci-bot"
    assert claims["scopes"] == ["read"]


def test_signer_rejects_foreign_tokens():
    signer = TokenSigner(TEST_SECRET, "sentinel-gateway")

    other_secret = TokenSigner("another-signing-secret-0123456789abcdef", "sentinel-gateway")
    assert signer.verify(other_secret.sign("tok-1", "x", [], 1_700_000_000)) is None

    other_issuer = TokenSigner(TEST_SECRET, "someone-else")
    assert signer.verify(other_issuer.sign("tok-1", "x", [], 1_700_000_000)) is None

    wrong_type = jwt.encode({"jti": "tok-1", "iss": "sentinel-gateway", "type": "refresh"}, TEST_SECRET, algorithm="HS256")
    assert signer.verify(wrong_type) is None

    assert signer.verify("not-a-jwt") is None


def test_signing_secret_required_in_production():
    with pytest.raises(ConfigurationError):
        resolve_signing_secret(build_settings(ENV="production", JWT_SECRET=""))


def test_signing_secret_generated_outside_production():
    secret = resolve_signing_secret(build_settings(JWT_SECRET=""))
    assert len(secret) == 128
    assert resolve_signing_secret(build_settings(JWT_SECRET="")) != secret
