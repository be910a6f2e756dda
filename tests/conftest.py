"""
Test fixtures for the settlement gate.

Provides an in-memory database, a controllable clock, a fake release
operation and a TestClient bound to a test container.
"""

from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Callable, Dict, Generator, List, Optional, Tuple

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

import fiatgate.models  # noqa: F401  (registers tables)
from fiatgate.container import Container, build_container
from fiatgate.core.circuit_breaker import CircuitRegistry
from fiatgate.core.config import Settings
from fiatgate.models.pending_settlement import PendingSettlement
from fiatgate.schemas import PaymentSucceeded
from fiatgate.services.settlement_store import PendingSettlementStore

# Use in-memory SQLite for unit tests (fast, isolated)
TEST_DATABASE_URL = "sqlite:///:memory:"

START = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

CRON_SECRET = "cron-secret"
ADMIN_TOKEN = "admin-token"
WEBHOOK_SECRET = "whsec_test"


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeRelease:
    """
    Release operation that records calls.

    Queue exceptions in `errors` to fail the next calls, set `always_fail`
    to fail every call, or set `on_release` to run code mid-release.
    """

    def __init__(self):
        self.calls: List[int] = []
        self.errors: List[Exception] = []
        self.always_fail: Optional[Exception] = None
        self.on_release: Optional[Callable[[PendingSettlement], None]] = None

    def __call__(self, record: PendingSettlement) -> str:
        self.calls.append(record.id)
        if self.on_release is not None:
            self.on_release(record)
        if self.always_fail is not None:
            raise self.always_fail
        if self.errors:
            raise self.errors.pop(0)
        return f"0xtx{record.id}"


class InProcessLease:
    """Sweep lease held in memory, for a single process."""

    def __init__(self, clock: Callable[[], datetime]):
        self.clock = clock
        self._holders: Dict[str, Tuple[str, datetime]] = {}
        self._lock = Lock()

    def acquire(self, name: str, holder: str, ttl_seconds: float) -> bool:
        now = self.clock()
        with self._lock:
            current = self._holders.get(name)
            if current is not None and current[0] != holder and current[1] > now:
                return False
            self._holders[name] = (holder, now + timedelta(seconds=ttl_seconds))
            return True

    def release(self, name: str, holder: str) -> None:
        with self._lock:
            current = self._holders.get(name)
            if current is not None and current[0] == holder:
                del self._holders[name]


@pytest.fixture(scope="function")
def test_engine():
    """Create a test database engine with in-memory SQLite."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def lease(clock) -> InProcessLease:
    return InProcessLease(clock)


@pytest.fixture
def release() -> FakeRelease:
    return FakeRelease()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        ENVIRONMENT="test",
        CRON_SECRET=CRON_SECRET,
        ADMIN_TOKEN=ADMIN_TOKEN,
        PROCESSOR_WEBHOOK_SECRET=WEBHOOK_SECRET,
        RUN_SCHEDULER=False,
        SETTLEMENT_MAX_RETRIES=5,
        SENTRY_DSN="",
    )


@pytest.fixture
def store(test_engine, clock) -> PendingSettlementStore:
    return PendingSettlementStore(test_engine, clock=clock, max_retries=5)


@pytest.fixture
def registry(clock) -> CircuitRegistry:
    return CircuitRegistry(clock=clock)


@pytest.fixture
def make_payment() -> Callable[..., PaymentSucceeded]:
    counter = {"n": 0}

    def _make(event_id: Optional[str] = None, amount_usd: float = 25.0, risk_score: int = 15, **kwargs):
        counter["n"] += 1
        return PaymentSucceeded(
            event_id=event_id or f"pi_{counter['n']}",
            amount_usd=amount_usd,
            risk_score=risk_score,
            beneficiary_address=kwargs.pop("beneficiary_address", "0x" + "ab" * 20),
            project_id=kwargs.pop("project_id", 7),
            chain_id=kwargs.pop("chain_id", 10),
            **kwargs,
        )

    return _make


@pytest.fixture
def container(test_settings, test_engine, clock, release, lease) -> Container:
    return build_container(
        settings=test_settings,
        engine=test_engine,
        clock=clock,
        release=release,
        lease=lease,
    )


@pytest.fixture
def client(container) -> Generator[TestClient, None, None]:
    from fiatgate.main import create_app

    with TestClient(create_app(container)) as test_client:
        yield test_client
