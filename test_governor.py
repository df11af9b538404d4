import asyncio
import uuid
from datetime import timedelta

import pytest

from conftest import TEST_SECRET
from errors import NotFoundError, PersistenceError, ValidationError
from schemas import Authorized, BlockedIPRecord, Rejected, UsageRecord
from security import TokenSigner
from store import MemoryStore

IP = "1.2.3.4"


class FailingUsageStore(MemoryStore):
    def __init__(self):
        super().__init__()
        self.usage_reads = 0

    async def count_usage_since(self, token_id, since):
        self.usage_reads += 1
        raise PersistenceError("ledger down")


class FailingLookupStore(MemoryStore):
    async def get_token_by_hash(self, token_hash):
        raise PersistenceError("tokens down")


@pytest.mark.asyncio
async def test_issue_then_validate(service, store):
    """ci-bot token with a 30d ttl authorizes and records one use"""
    governor = service.governor
    issued = await governor.issue_token("ci-bot", ttl="30d")
    assert issued.expires_at - issued.created_at == timedelta(days=30)

    governor.usage.start()
    try:
        decision = await governor.validate_request(issued.token, IP, "/api/data")
        await governor.usage.flush()
    finally:
        await governor.usage.stop()

    assert isinstance(decision, Authorized)
    assert decision.token_id == issued.id
    assert decision.scopes == ["read", "write"]
    assert not decision.degraded

    token = await store.get_token_by_id(issued.id)
    assert token.usage_count == 1
    assert token.last_used_at is not None


@pytest.mark.asyncio
async def test_hourly_ceiling_rejects_1001st_call(service):
    """Queued usage counts toward the ceiling before it is written"""
    governor = service.governor
    issued = await governor.issue_token("ci-bot", ttl="30d", max_requests_per_hour=1000)

    for _ in range(1000):
        decision = await governor.validate_request(issued.token, IP, "/api/data")
        assert isinstance(decision, Authorized)

    decision = await governor.validate_request(issued.token, IP, "/api/data")
    assert isinstance(decision, Rejected)
    assert decision.reason == "rate_limited"
    assert decision.to_error().status_code == 429


@pytest.mark.asyncio
async def test_concurrent_requests_share_one_slot(make_service, sql_store):
    """Five simultaneous calls on a one-per-hour token: exactly one gets through"""
    governor = make_service(store=sql_store).governor
    issued = await governor.issue_token("ci-bot", max_requests_per_hour=1)

    decisions = await asyncio.gather(*[governor.validate_request(issued.token, IP, "/a") for _ in range(5)])

    assert sum(isinstance(d, Authorized) for d in decisions) == 1
    assert sorted(d.reason for d in decisions if isinstance(d, Rejected)) == ["rate_limited"] * 4


@pytest.mark.asyncio
async def test_ceiling_counts_written_usage(service, clock):
    governor = service.governor
    issued = await governor.issue_token("ci-bot", max_requests_per_hour=3, max_requests_per_day=5)

    governor.usage.start()
    try:
        for _ in range(3):
            assert isinstance(await governor.validate_request(issued.token, IP, "/a"), Authorized)
            await governor.usage.flush()

        decision = await governor.validate_request(issued.token, IP, "/a")
        assert decision.reason == "rate_limited"

        # Hourly window slides, daily ceiling still applies
        clock.advance(3601)
        for _ in range(2):
            assert isinstance(await governor.validate_request(issued.token, IP, "/a"), Authorized)
            await governor.usage.flush()

        decision = await governor.validate_request(issued.token, IP, "/a")
        assert decision.reason == "rate_limited"
    finally:
        await governor.usage.stop()


@pytest.mark.asyncio
async def test_missing_and_invalid_tokens(service, clock):
    governor = service.governor

    assert (await governor.validate_request(None, IP, "/a")).reason == "missing_token"
    assert (await governor.validate_request("", IP, "/a")).reason == "missing_token"
    assert (await governor.validate_request("garbage", IP, "/a")).reason == "invalid_token"

    # Correct signature, but never issued
    ghost = TokenSigner(TEST_SECRET, "sentinel-gateway").sign(str(uuid.uuid4()), "ghost", ["read"], int(clock()))
    assert (await governor.validate_request(ghost, IP, "/a")).reason == "invalid_token"


@pytest.mark.asyncio
async def test_expiry_boundary_is_exclusive(service, clock):
    governor = service.governor
    issued = await governor.issue_token("short", ttl="1h")

    clock.advance(3599)
    assert isinstance(await governor.validate_request(issued.token, IP, "/a"), Authorized)

    clock.advance(1)
    decision = await governor.validate_request(issued.token, IP, "/a")
    assert decision.reason == "token_expired"
    assert decision.to_error().status_code == 401


@pytest.mark.asyncio
async def test_revoke_is_idempotent_and_beats_cache(service):
    governor = service.governor
    issued = await governor.issue_token("ci-bot")

    # Warm the lookup cache
    assert isinstance(await governor.validate_request(issued.token, IP, "/a"), Authorized)

    assert await governor.revoke_token(issued.id, "leaked") is True
    assert (await governor.validate_request(issued.token, IP, "/a")).reason == "revoked"

    assert await governor.revoke_token(issued.id, "leaked") is False

    with pytest.raises(NotFoundError):
        await governor.revoke_token("does-not-exist")


@pytest.mark.asyncio
async def test_inactive_token_without_revocation(service, store):
    governor = service.governor
    issued = await governor.issue_token("ci-bot")
    store._tokens[issued.id].active = False

    assert (await governor.validate_request(issued.token, IP, "/a")).reason == "inactive"


@pytest.mark.asyncio
async def test_refresh_extends_from_now(service, clock):
    governor = service.governor
    issued = await governor.issue_token("short", ttl="1h")

    clock.advance(3000)
    token = await governor.refresh_token(issued.id, "2h")
    assert token.expires_at == service.now() + timedelta(hours=2)

    clock.advance(3600)
    assert isinstance(await governor.validate_request(issued.token, IP, "/a"), Authorized)


@pytest.mark.asyncio
async def test_refresh_rejects_revoked_and_bad_ttl(service):
    governor = service.governor
    issued = await governor.issue_token("ci-bot")

    with pytest.raises(ValidationError):
        await governor.refresh_token(issued.id, "soon")

    await governor.revoke_token(issued.id)
    with pytest.raises(ValidationError):
        await governor.refresh_token(issued.id, "1h")

    with pytest.raises(NotFoundError):
        await governor.refresh_token("does-not-exist", "1h")


@pytest.mark.asyncio
async def test_issue_requires_name(service):
    with pytest.raises(ValidationError):
        await service.governor.issue_token("   ")
    with pytest.raises(ValidationError):
        await service.governor.issue_token("ci-bot", ttl="forever")


@pytest.mark.asyncio
async def test_fail_closed_when_ledger_unreadable(make_service):
    store = FailingUsageStore()
    service = make_service(store=store, RATE_LIMIT_DEGRADE_POLICY="fail_closed", RATE_LIMIT_READ_ATTEMPTS=2)
    issued = await service.governor.issue_token("ci-bot")

    decision = await service.governor.validate_request(issued.token, IP, "/a")
    assert decision.reason == "service_unavailable"
    assert decision.to_error().status_code == 503
    assert store.usage_reads == 2


@pytest.mark.asyncio
async def test_fail_open_when_ledger_unreadable(make_service):
    service = make_service(store=FailingUsageStore(), RATE_LIMIT_DEGRADE_POLICY="fail_open")
    issued = await service.governor.issue_token("ci-bot")

    decision = await service.governor.validate_request(issued.token, IP, "/a")
    assert isinstance(decision, Authorized)
    assert decision.degraded is True


@pytest.mark.asyncio
async def test_token_lookup_failure_always_rejects(make_service):
    service = make_service(store=FailingLookupStore(), RATE_LIMIT_DEGRADE_POLICY="fail_open")
    issued = await service.governor.issue_token("ci-bot")

    decision = await service.governor.validate_request(issued.token, IP, "/a")
    assert decision.reason == "service_unavailable"


@pytest.mark.asyncio
async def test_banned_ip_rejected_before_token_checks(service, store):
    issued = await service.governor.issue_token("ci-bot")
    await store.block_ip(BlockedIPRecord(ip="6.6.6.6", reason="set by another process", expires_at=None))

    decision = await service.governor.validate_request(issued.token, "6.6.6.6", "/a")
    assert decision.reason == "ip_blocked"
    assert decision.to_error().status_code == 403

    # No token at all still reports the ban
    assert (await service.governor.validate_request(None, "6.6.6.6", "/a")).reason == "ip_blocked"


@pytest.mark.asyncio
async def test_public_paths_skip_token(make_service):
    service = make_service(PUBLIC_PATHS=["/public", "/status/"])
    governor = service.governor

    assert isinstance(await governor.validate_request(None, IP, "/public"), Authorized)
    assert isinstance(await governor.validate_request(None, IP, "/public/docs"), Authorized)
    assert isinstance(await governor.validate_request(None, IP, "/status/ping"), Authorized)
    assert (await governor.validate_request(None, IP, "/publicity")).reason == "missing_token"


@pytest.mark.asyncio
async def test_token_stats_and_listing(service, clock):
    governor = service.governor
    first = await governor.issue_token("first", ttl="1h", scopes=["read"])
    second = await governor.issue_token("second", description="nightly jobs")

    stats = await governor.get_token_stats(first.id)
    assert stats.status == "active"
    assert stats.scopes == ["read"]
    assert stats.limits == {"hourly": 1000, "daily": 10000}

    await governor.revoke_token(second.id)
    assert (await governor.get_token_stats(second.id)).status == "revoked"

    clock.advance(3600)
    assert (await governor.get_token_stats(first.id)).status == "expired"

    names = [t.name for t in await governor.list_tokens()]
    assert names == ["first", "second"]

    with pytest.raises(NotFoundError):
        await governor.get_token_stats("does-not-exist")


@pytest.mark.asyncio
async def test_cleanup_purges_old_usage(service, store):
    now = service.now()
    for age in (timedelta(days=31), timedelta(days=29)):
        await store.append_usage_record(UsageRecord(
            token_id="tok", endpoint="GET /a", method="GET", status_code=200, ip=IP, timestamp=now - age,
        ))

    assert await service.governor.cleanup() == 1
    assert await store.count_usage_since("tok", now - timedelta(days=60)) == 1
