"""
Per-workshop waitlist with single-use, time-bounded claim tokens.

Lifecycle of an entry:

    waiting --(promote_head)--> claim_offered --(claim)--> claimed
       ^                            |    |                    |
       |                            |    +--(ttl passed)--> expired
       +-------(requeue: seat lost at claim time)-------------+

Expiry is decided by a single rule, ``claim_expires_at <= now``, used both
by the periodic sweep and by the lazy check inside ``claim``.
"""
import secrets
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Dict, List, Optional
from uuid import UUID

import structlog

from workshop_enrollment.config import AdmissionPolicy
from workshop_enrollment.core.clock import Clock, utcnow
from workshop_enrollment.core.ledger import CapacityLedger
from workshop_enrollment.core.locks import LockManager
from workshop_enrollment.core.notifications import Notifier, notify_safely
from workshop_enrollment.domain import (
    UNLIMITED,
    ClaimOutcome,
    ClaimResult,
    Customer,
    WaitlistEntry,
    WaitlistEntryNotFoundError,
    WaitlistStatus,
    token_digest,
)
from workshop_enrollment.monitoring.metrics import metrics
from workshop_enrollment.stores import EnrollmentStore

logger = structlog.get_logger(__name__)

CLAIM_TOKEN_BYTES = 32


def redact_token(token: Optional[str]) -> Optional[str]:
    """Loggable prefix of a claim token."""
    return f"{token[:8]}..." if token else None


class WaitlistQueue:
    """
    Ordered waitlist per workshop.

    Every mutation runs under the workshop lock; notifications are sent after
    the lock is released.
    """

    def __init__(
        self,
        store: EnrollmentStore,
        locks: LockManager,
        notifier: Notifier,
        policy: AdmissionPolicy,
        clock: Clock = utcnow,
        ledger: Optional[CapacityLedger] = None,
    ):
        """
        Initialize the waitlist.

        Args:
            store: Enrollment store
            locks: Per-workshop lock manager
            notifier: Customer notifier
            policy: Admission policy (claim TTL, claim link base URL)
            clock: Source of the current time
            ledger: Seat ledger. When given, the expiry sweep also offers seats
                that are free while entries are still waiting.
        """
        self.store = store
        self.locks = locks
        self.notifier = notifier
        self.policy = policy
        self.clock = clock
        self.ledger = ledger

    async def enqueue(self, workshop_id: int, customer: Customer) -> WaitlistEntry:
        """
        Append a customer at the tail of a workshop's waitlist.

        A customer already waiting (or holding an open offer) for the same
        workshop gets their existing entry back instead of a second one.

        Args:
            workshop_id: Workshop to wait for
            customer: Customer identity

        Returns:
            WaitlistEntry: New or existing entry
        """
        async with self.locks.hold(workshop_id):
            existing = await self.store.find_active_waitlist_entry(workshop_id, customer.email)
            if existing is not None:
                logger.info(
                    "waitlist_entry_exists",
                    workshop_id=workshop_id,
                    entry_id=str(existing.id),
                    position=existing.position,
                )
                return existing
            entry = await self.store.append_waitlist_entry(workshop_id, customer, self.clock())

        logger.info(
            "waitlist_entry_added",
            workshop_id=workshop_id,
            entry_id=str(entry.id),
            position=entry.position,
        )
        await notify_safely(
            "waitlist_joined", self.notifier.waitlist_joined(entry), entry_id=str(entry.id)
        )
        return entry

    async def _promote_locked(
        self, workshop_id: int, ttl: Optional[timedelta] = None
    ) -> Optional[WaitlistEntry]:
        waiting = await self.store.list_waitlist(workshop_id, WaitlistStatus.WAITING)
        for head in waiting:
            now = self.clock()
            offered = await self.store.update_waitlist_entry(
                head.id,
                WaitlistStatus.CLAIM_OFFERED,
                now,
                claim_token=secrets.token_urlsafe(CLAIM_TOKEN_BYTES),
                claim_expires_at=now + (ttl or self.policy.claim_ttl),
                expected_status=WaitlistStatus.WAITING,
            )
            if offered is not None:
                return offered
        return None

    async def _announce_offer(self, entry: WaitlistEntry) -> None:
        metrics.record_waitlist_promotion()
        logger.info(
            "waitlist_claim_offered",
            workshop_id=entry.workshop_id,
            entry_id=str(entry.id),
            position=entry.position,
            claim_token=redact_token(entry.claim_token),
            claim_expires_at=entry.claim_expires_at.isoformat() if entry.claim_expires_at else None,
        )
        claim_url = self.policy.claim_url(entry.workshop_id, entry.claim_token or "")
        await notify_safely(
            "claim_offered",
            self.notifier.claim_offered(entry, claim_url),
            entry_id=str(entry.id),
        )

    async def promote_head(
        self, workshop_id: int, ttl: Optional[timedelta] = None
    ) -> Optional[WaitlistEntry]:
        """
        Offer a freed seat to the earliest waiting entry.

        Call once per freed seat, after the seat release has completed.

        Args:
            workshop_id: Workshop whose seat was freed
            ttl: Claim window (defaults to the policy's claim TTL)

        Returns:
            The promoted entry, or None if nobody is waiting
        """
        async with self.locks.hold(workshop_id):
            offered = await self._promote_locked(workshop_id, ttl)

        if offered is None:
            logger.info("waitlist_empty", workshop_id=workshop_id)
            return None
        await self._announce_offer(offered)
        return offered

    async def _expire_overdue_locked(self, workshop_id: int, now: datetime) -> int:
        offers = await self.store.list_waitlist(workshop_id, WaitlistStatus.CLAIM_OFFERED)
        expired = 0
        for entry in offers:
            if not entry.is_claim_expired(now):
                continue
            updated = await self.store.update_waitlist_entry(
                entry.id,
                WaitlistStatus.EXPIRED,
                now,
                claim_token=None,
                claim_expires_at=entry.claim_expires_at,
                spent_token_digest=token_digest(entry.claim_token) if entry.claim_token else None,
                expected_status=WaitlistStatus.CLAIM_OFFERED,
            )
            if updated is not None:
                expired += 1
                logger.info(
                    "waitlist_claim_expired",
                    workshop_id=workshop_id,
                    entry_id=str(entry.id),
                    position=entry.position,
                )
        metrics.record_expired_offers(expired)
        return expired

    async def _promote_times(self, workshop_id: int, count: int) -> None:
        for _ in range(count):
            if await self.promote_head(workshop_id) is None:
                break

    async def claim(self, workshop_id: int, token: str) -> ClaimResult:
        """
        Redeem a claim token.

        Overdue offers of the workshop are expired first, with the same rule
        the sweep uses, so a token is never accepted at or after its expiry.

        Args:
            workshop_id: Workshop the link was issued for
            token: Claim token from the link

        Returns:
            ClaimResult: Accepted (entry now claimed), Expired, Invalid or AlreadyClaimed
        """
        async with self.locks.hold(workshop_id):
            now = self.clock()
            expired = await self._expire_overdue_locked(workshop_id, now)
            result = await self._claim_locked(workshop_id, token, now)

        await self._promote_times(workshop_id, expired)

        metrics.record_waitlist_claim(result.outcome.value)
        logger.info(
            "waitlist_claim_attempted",
            workshop_id=workshop_id,
            outcome=result.outcome.value,
            entry_id=str(result.entry.id) if result.entry else None,
            claim_token=redact_token(token),
        )
        return result

    async def _claim_locked(self, workshop_id: int, token: str, now: datetime) -> ClaimResult:
        entry = await self.store.find_waitlist_entry_by_token(token) if token else None
        if entry is None or entry.workshop_id != workshop_id:
            return ClaimResult(ClaimOutcome.INVALID)

        holds_token = entry.claim_token is not None and secrets.compare_digest(
            entry.claim_token, token
        )
        if holds_token and entry.status is WaitlistStatus.CLAIM_OFFERED:
            if entry.is_claim_expired(now):
                return ClaimResult(ClaimOutcome.EXPIRED, entry)
            claimed = await self.store.update_waitlist_entry(
                entry.id,
                WaitlistStatus.CLAIMED,
                now,
                claim_token=None,
                claim_expires_at=entry.claim_expires_at,
                spent_token_digest=token_digest(token),
                expected_status=WaitlistStatus.CLAIM_OFFERED,
            )
            if claimed is None:
                return ClaimResult(ClaimOutcome.INVALID, entry)
            return ClaimResult(ClaimOutcome.ACCEPTED, claimed)

        if entry.status is WaitlistStatus.CLAIMED:
            return ClaimResult(ClaimOutcome.ALREADY_CLAIMED, entry)
        if entry.status is WaitlistStatus.EXPIRED:
            return ClaimResult(ClaimOutcome.EXPIRED, entry)
        return ClaimResult(ClaimOutcome.INVALID, entry)

    async def _fill_free_seats_locked(self, workshop_id: int) -> List[WaitlistEntry]:
        waiting = await self.store.list_waitlist(workshop_id, WaitlistStatus.WAITING)
        if not waiting:
            return []
        remaining = await self.ledger.remaining(workshop_id)
        if remaining is UNLIMITED:
            free = len(waiting)
        else:
            # Open offers and unconverted claims are already spoken for
            offered = await self.store.list_waitlist(workshop_id, WaitlistStatus.CLAIM_OFFERED)
            claimed = await self.store.list_waitlist(workshop_id, WaitlistStatus.CLAIMED)
            in_flight = len(offered) + sum(1 for e in claimed if e.enrollment_id is None)
            free = max(0, remaining - in_flight)

        offers: List[WaitlistEntry] = []
        for _ in range(min(free, len(waiting))):
            entry = await self._promote_locked(workshop_id)
            if entry is None:
                break
            offers.append(entry)
        return offers

    async def expire_sweep(self, now: Optional[datetime] = None) -> int:
        """
        Expire every overdue offer and promote the next entry for each.

        With a ledger the sweep also visits every workshop that has waiting
        entries and offers each seat that is free and not already offered.
        This recovers a promotion lost after a seat was released.

        Args:
            now: Cut-off instant (defaults to the clock)

        Returns:
            int: Number of offers expired
        """
        now = now or self.clock()
        overdue = await self.store.list_expired_offers(now)
        by_workshop: Dict[int, List[WaitlistEntry]] = defaultdict(list)
        for entry in overdue:
            by_workshop[entry.workshop_id].append(entry)
        if self.ledger is not None:
            for workshop_id in await self.store.list_waitlisted_workshops():
                by_workshop.setdefault(workshop_id, [])

        total = 0
        for workshop_id in sorted(by_workshop):
            offers: List[WaitlistEntry] = []
            async with self.locks.hold(workshop_id):
                expired = await self._expire_overdue_locked(workshop_id, now)
                if self.ledger is not None:
                    offers = await self._fill_free_seats_locked(workshop_id)

            if self.ledger is None:
                await self._promote_times(workshop_id, expired)
            else:
                if len(offers) > expired:
                    logger.warning(
                        "waitlist_free_seats_offered",
                        workshop_id=workshop_id,
                        offered=len(offers) - expired,
                    )
                for entry in offers:
                    await self._announce_offer(entry)
            total += expired

        if total:
            logger.info("waitlist_sweep_completed", expired=total, workshops=len(by_workshop))
        return total

    async def requeue(self, entry: WaitlistEntry) -> WaitlistEntry:
        """
        Put a claimed entry back to waiting at its original position.

        Used when the seat is gone by the time the claim is redeemed.
        """
        async with self.locks.hold(entry.workshop_id):
            requeued = await self.store.update_waitlist_entry(
                entry.id,
                WaitlistStatus.WAITING,
                self.clock(),
                claim_token=None,
                claim_expires_at=None,
                expected_status=WaitlistStatus.CLAIMED,
            )
        if requeued is None:
            raise WaitlistEntryNotFoundError(str(entry.id))
        logger.warning(
            "waitlist_entry_requeued",
            workshop_id=entry.workshop_id,
            entry_id=str(entry.id),
            position=requeued.position,
        )
        return requeued

    async def mark_converted(self, entry: WaitlistEntry, enrollment_id: UUID) -> WaitlistEntry:
        """Link a claimed entry to the enrollment created from it."""
        async with self.locks.hold(entry.workshop_id):
            converted = await self.store.update_waitlist_entry(
                entry.id,
                WaitlistStatus.CLAIMED,
                self.clock(),
                claim_token=None,
                claim_expires_at=entry.claim_expires_at,
                enrollment_id=enrollment_id,
                expected_status=WaitlistStatus.CLAIMED,
            )
        if converted is None:
            raise WaitlistEntryNotFoundError(str(entry.id))
        logger.info(
            "waitlist_entry_converted",
            workshop_id=entry.workshop_id,
            entry_id=str(entry.id),
            enrollment_id=str(enrollment_id),
        )
        return converted

    async def cancel(self, workshop_id: int, entry_id: UUID) -> WaitlistEntry:
        """
        Withdraw an entry from the waitlist.

        Cancelling an entry that holds an open offer passes the offer on to
        the next waiting entry.

        Raises:
            WaitlistEntryNotFoundError: If the entry does not belong to the workshop
        """
        async with self.locks.hold(workshop_id):
            entry = await self.store.get_waitlist_entry(entry_id)
            if entry is None or entry.workshop_id != workshop_id:
                raise WaitlistEntryNotFoundError(str(entry_id))
            if not entry.status.is_active:
                return entry
            had_offer = entry.status is WaitlistStatus.CLAIM_OFFERED
            cancelled = await self.store.update_waitlist_entry(
                entry.id,
                WaitlistStatus.CANCELLED,
                self.clock(),
                claim_token=None,
                claim_expires_at=None,
                spent_token_digest=token_digest(entry.claim_token) if entry.claim_token else None,
                expected_status=entry.status,
            )
            if cancelled is None:
                raise WaitlistEntryNotFoundError(str(entry_id))

        logger.info(
            "waitlist_entry_cancelled",
            workshop_id=workshop_id,
            entry_id=str(entry_id),
            had_offer=had_offer,
        )
        if had_offer:
            await self.promote_head(workshop_id)
        return cancelled

    async def position_of(self, workshop_id: int, email: str) -> Optional[int]:
        """Position of a customer's active entry, or None if not waiting."""
        entry = await self.store.find_active_waitlist_entry(workshop_id, email)
        return entry.position if entry else None
