"""
Object graph wiring.

Chooses the store, lock, dedup and notification backends from settings and
assembles the EnrollmentCore with its webhook handler and health checks.
"""
from dataclasses import dataclass
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from workshop_enrollment.config import AdmissionPolicy, Settings, get_settings
from workshop_enrollment.core import (
    EnrollmentCore,
    EventDeduplicator,
    InMemoryEventDeduplicator,
    LocalLockManager,
    LockManager,
    LoggingNotifier,
    Notifier,
    OutboxNotifier,
    RedisEventDeduplicator,
    RedlockLockManager,
)
from workshop_enrollment.database import get_session_factory
from workshop_enrollment.integrations import PaymentProvider, StripeClient, WebhookHandler
from workshop_enrollment.monitoring.health import HealthCheck
from workshop_enrollment.stores import (
    EnrollmentStore,
    InMemoryEnrollmentStore,
    SqlAlchemyEnrollmentStore,
)

logger = structlog.get_logger(__name__)


@dataclass
class Application:
    """Everything the HTTP layer and the workers need, built once per process."""

    settings: Settings
    core: EnrollmentCore
    webhook_handler: WebhookHandler
    health: HealthCheck
    locks: LockManager
    dedup: EventDeduplicator
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None

    async def close(self) -> None:
        await self.dedup.close()
        await self.locks.close()


def build_locks(settings: Settings) -> LockManager:
    if settings.lock_backend == "redis":
        return RedlockLockManager(
            settings.redis_url,
            ttl_ms=settings.redis_lock_timeout_ms,
            retry_count=settings.redis_lock_retry_count,
            retry_delay=settings.redis_lock_retry_delay,
        )
    return LocalLockManager()


def build_dedup(settings: Settings) -> EventDeduplicator:
    if settings.dedup_backend == "redis":
        return RedisEventDeduplicator(
            settings.redis_url, retention_seconds=settings.webhook_dedup_ttl_seconds
        )
    return InMemoryEventDeduplicator(retention_seconds=settings.webhook_dedup_ttl_seconds)


def build_application(
    settings: Optional[Settings] = None,
    store: Optional[EnrollmentStore] = None,
    provider: Optional[PaymentProvider] = None,
    notifier: Optional[Notifier] = None,
) -> Application:
    """
    Assemble the application from settings.

    Args:
        settings: Application settings (defaults to the cached settings)
        store: Store override; otherwise chosen by ``store_backend``
        provider: Payment provider override; otherwise Stripe
        notifier: Notifier override; otherwise outbox-backed for the SQL store

    Returns:
        Application
    """
    settings = settings or get_settings()

    session_factory = None
    if store is None:
        if settings.store_backend == "sql":
            session_factory = get_session_factory()
            store = SqlAlchemyEnrollmentStore(session_factory)
        else:
            store = InMemoryEnrollmentStore()
    if notifier is None:
        notifier = OutboxNotifier(session_factory) if session_factory else LoggingNotifier()

    locks = build_locks(settings)
    dedup = build_dedup(settings)
    core = EnrollmentCore(
        store=store,
        locks=locks,
        provider=provider or StripeClient(settings),
        notifier=notifier,
        dedup=dedup,
        policy=AdmissionPolicy.from_settings(settings),
        cache_counts=settings.lock_backend == "local",
    )
    webhook_handler = WebhookHandler(settings.stripe_webhook_secret, core.on_payment_event)

    logger.info(
        "application_built",
        store_backend=settings.store_backend,
        lock_backend=settings.lock_backend,
        dedup_backend=settings.dedup_backend,
    )
    return Application(
        settings=settings,
        core=core,
        webhook_handler=webhook_handler,
        health=HealthCheck(session_factory, settings),
        locks=locks,
        dedup=dedup,
        session_factory=session_factory,
    )
