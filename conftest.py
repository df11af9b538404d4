import time

import pytest

from config import Settings
from db import create_db_engine, create_session_factory, init_db
from service import GovernanceService
from store import MemoryStore, SQLStore
from threats import ThreatDetector

TEST_SECRET = "test-signing-secret-0123456789abcdef-0123456789"
ADMIN_KEY = "test-admin-key-must-be-longer-than-20-chars"


class FakeClock:
    """Wall clock in epoch seconds that only moves when told to."""

    def __init__(self, start=None):
        # Whole seconds keep datetime arithmetic exact
        self.now = float(int(time.time())) if start is None else start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def build_settings(**overrides) -> Settings:
    values = {
        "ENV": "test",
        "RATE_LIMIT_DEGRADE_POLICY": "fail_closed",
        "JWT_SECRET": TEST_SECRET,
        "ADMIN_API_KEY": ADMIN_KEY,
        "DATABASE_URL": "",
        "REDIS_URL": "",
        "ALERT_WEBHOOK_URL": "",
        "UPSTREAM_BASE_URL": "",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return build_settings()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def sql_store(tmp_path):
    # File-backed so concurrent worker threads get their own connections
    engine = create_db_engine(f"sqlite:///{tmp_path / 'governance.db'}")
    init_db(engine)
    return SQLStore(create_session_factory(engine))


@pytest.fixture
def detector():
    return ThreatDetector()


@pytest.fixture
def make_service(store, clock):
    def _make(store=store, alert_transport=None, **overrides):
        return GovernanceService(build_settings(**overrides), store=store, clock=clock, alert_transport=alert_transport)

    return _make


@pytest.fixture
def service(make_service):
    return make_service()
