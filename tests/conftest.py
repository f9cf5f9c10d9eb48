"""
Pytest configuration and fixtures.
"""
import os

# Settings are read from the environment on first use
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_fake_key_for_testing")
os.environ.setdefault("STRIPE_PUBLISHABLE_KEY", "pk_test_fake_key_for_testing")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_fake_secret")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("LOCK_BACKEND", "local")
os.environ.setdefault("DEDUP_BACKEND", "memory")
os.environ.setdefault("APP_ENV", "test")

from datetime import timedelta  # noqa: E402
from typing import Any, AsyncGenerator  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker  # noqa: E402

from workshop_enrollment.config import AdmissionPolicy  # noqa: E402
from workshop_enrollment.core import (  # noqa: E402
    EnrollmentCore,
    InMemoryEventDeduplicator,
    LocalLockManager,
    LoggingNotifier,
)
from workshop_enrollment.database import build_engine, build_session_factory, init_db  # noqa: E402
from workshop_enrollment.stores import InMemoryEnrollmentStore  # noqa: E402

from tests.factories import FakeProvider, FrozenClock, make_workshop  # noqa: E402


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def policy() -> AdmissionPolicy:
    return AdmissionPolicy(
        claim_ttl=timedelta(hours=48),
        refund_retry_attempts=2,
        refund_retry_backoff_seconds=0,
        public_base_url="https://workshops.test",
    )


@pytest.fixture
def store() -> InMemoryEnrollmentStore:
    return InMemoryEnrollmentStore()


@pytest.fixture
def locks() -> LocalLockManager:
    return LocalLockManager()


@pytest.fixture
def notifier() -> LoggingNotifier:
    return LoggingNotifier()


@pytest.fixture
def dedup() -> InMemoryEventDeduplicator:
    return InMemoryEventDeduplicator(retention_seconds=3600)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def core(
    store: InMemoryEnrollmentStore,
    locks: LocalLockManager,
    provider: FakeProvider,
    notifier: LoggingNotifier,
    dedup: InMemoryEventDeduplicator,
    policy: AdmissionPolicy,
    clock: FrozenClock,
) -> EnrollmentCore:
    return EnrollmentCore(store, locks, provider, notifier, dedup, policy, clock=clock)


@pytest_asyncio.fixture
async def workshop(store: InMemoryEnrollmentStore) -> Any:
    """Two-seat workshop with the waitlist enabled."""
    return await store.save_workshop(make_workshop())


@pytest_asyncio.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], Any]:
    """Fresh in-memory SQLite database per test."""
    engine = build_engine("sqlite+aiosqlite:///:memory:")
    await init_db(engine)
    yield build_session_factory(engine)
    await engine.dispose()
