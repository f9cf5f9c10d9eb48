"""
Tests for application wiring, the waitlist sweeper worker and the CLI parser.
"""
from unittest.mock import AsyncMock, MagicMock

import pytest

from workshop_enrollment.bootstrap import build_application
from workshop_enrollment.cli import build_parser
from workshop_enrollment.config import get_settings
from workshop_enrollment.core import InMemoryEventDeduplicator, LocalLockManager, LoggingNotifier
from workshop_enrollment.domain import EnrollmentDecision, WaitlistStatus
from workshop_enrollment.stores import InMemoryEnrollmentStore
from workshop_enrollment.workers.waitlist_sweeper import WaitlistSweeper

from tests.factories import FakeProvider, make_customer, make_workshop, payment_failed


class TestBuildApplication:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_memory_backends_from_settings(self) -> None:
        application = build_application(provider=FakeProvider())

        assert isinstance(application.core.store, InMemoryEnrollmentStore)
        assert isinstance(application.locks, LocalLockManager)
        assert isinstance(application.dedup, InMemoryEventDeduplicator)
        assert isinstance(application.core.notifier, LoggingNotifier)
        assert application.core.ledger.cache_counts is True
        assert application.session_factory is None
        await application.close()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redis_locks_disable_count_cache(self) -> None:
        settings = get_settings().model_copy(update={"lock_backend": "redis"})

        application = build_application(settings=settings, provider=FakeProvider())

        assert application.core.ledger.cache_counts is False


class TestWaitlistSweeper:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_run_once_expires_overdue_offers(self, core, store, clock) -> None:
        await store.save_workshop(make_workshop(capacity=1))
        first = await core.request_enrollment(1, make_customer(1))
        waitlisted = await core.request_enrollment(1, make_customer(2))
        assert waitlisted.decision is EnrollmentDecision.WAITLISTED
        await core.on_payment_event(payment_failed(first.enrollment))
        clock.advance(hours=49)

        expired = await WaitlistSweeper(core).run_once()

        assert expired == 1
        entry = await store.get_waitlist_entry(waitlisted.waitlist_entry.id)
        assert entry.status is WaitlistStatus.EXPIRED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_run_survives_a_failed_pass(self) -> None:
        core = MagicMock()
        sweeper = WaitlistSweeper(core, interval_seconds=0.01)
        passes = []

        async def sweep() -> int:
            passes.append(1)
            if len(passes) == 1:
                raise RuntimeError("store unavailable")
            sweeper.stop()
            return 0

        core.sweep_expired_claims = AsyncMock(side_effect=sweep)

        await sweeper.run()

        assert core.sweep_expired_claims.await_count == 2


class TestCli:

    @pytest.mark.unit
    def test_commands(self) -> None:
        parser = build_parser()

        serve = parser.parse_args(["serve", "--port", "9000"])
        sweep = parser.parse_args(["sweep-waitlist", "--once"])

        assert serve.port == 9000
        assert serve.host is None
        assert sweep.once is True
        assert parser.parse_args(["init-db"]).command == "init-db"
        assert parser.parse_args(["publish-outbox"]).command == "publish-outbox"

    @pytest.mark.unit
    def test_command_is_required(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args([])
