"""
Seat accounting per workshop.

The seats-used count is a read model over pending and completed enrollments.
It is cached per workshop and invalidated inside the same workshop lock as
every write that changes it, so it is never stale relative to the store.
"""
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Union
from uuid import UUID, uuid4

import structlog

from workshop_enrollment.core.locks import LockManager
from workshop_enrollment.domain import (
    UNLIMITED,
    NoCapacity,
    Reserved,
    SeatReservation,
    Unlimited,
    WorkshopNotFoundError,
)
from workshop_enrollment.monitoring.metrics import metrics
from workshop_enrollment.stores import EnrollmentStore

logger = structlog.get_logger(__name__)

PersistReservation = Callable[[UUID], Awaitable[Any]]


class CapacityLedger:
    """
    Authoritative seat counter per workshop.

    A reservation is either persisted inside the lock (``on_reserved``), or
    "held" in memory from reserve_seat until its pending enrollment is stored
    (confirm_reservation) or it is given back (release_seat). Held
    reservations count against capacity.
    """

    def __init__(
        self,
        store: EnrollmentStore,
        locks: LockManager,
        cache_counts: bool = True,
        released_window: int = 10_000,
    ):
        """
        Initialize the ledger.

        Args:
            store: Enrollment store (capacity and active enrollment counts)
            locks: Per-workshop lock manager
            cache_counts: Cache seats-used between decisions. Only safe when this
                process is the single writer (local locks).
            released_window: How many recently released ids are remembered for
                idempotent release. Oldest ids are forgotten first.
        """
        self.store = store
        self.locks = locks
        self.cache_counts = cache_counts
        self._seats_used: Dict[int, int] = {}
        self._holds: Dict[int, Set[UUID]] = {}
        self.released_window = released_window
        self._released: "OrderedDict[UUID, int]" = OrderedDict()

    async def _seats_used_locked(self, workshop_id: int) -> int:
        cached = self._seats_used.get(workshop_id)
        if cached is not None:
            return cached
        active = await self.store.count_active_enrollments(workshop_id)
        return active + len(self._holds.get(workshop_id, ()))

    def _set_seats_used(self, workshop_id: int, used: int) -> None:
        if self.cache_counts:
            self._seats_used[workshop_id] = used

    async def reserve_seat(
        self,
        workshop_id: int,
        reservation_id: Optional[UUID] = None,
        on_reserved: Optional[PersistReservation] = None,
    ) -> SeatReservation:
        """
        Reserve one seat if the workshop has room.

        Capacity is re-read from the store on every call. When on_reserved is
        given it is awaited inside the lock with the reservation id, so the
        pending enrollment is stored before any other admission decision for
        the workshop can run. If it raises, the seat is not taken.

        Args:
            workshop_id: Workshop to reserve in
            reservation_id: Id to reserve under (becomes the enrollment id)
            on_reserved: Coroutine function persisting the reservation

        Returns:
            Reserved with the remaining seats, or NoCapacity

        Raises:
            WorkshopNotFoundError: If the workshop does not exist
        """
        reservation_id = reservation_id or uuid4()
        async with self.locks.hold(workshop_id):
            workshop = await self.store.load_workshop(workshop_id)
            if workshop is None:
                raise WorkshopNotFoundError(workshop_id)

            used = await self._seats_used_locked(workshop_id)
            if not workshop.is_unlimited and used >= workshop.capacity:
                metrics.record_seat_reservation("no_capacity")
                logger.info(
                    "seat_reservation_rejected",
                    workshop_id=workshop_id,
                    capacity=workshop.capacity,
                    seats_used=used,
                )
                return NoCapacity(workshop_id=workshop_id, capacity=workshop.capacity)

            if on_reserved is not None:
                try:
                    await on_reserved(reservation_id)
                except Exception:
                    self.invalidate(workshop_id)
                    raise
            else:
                self._holds.setdefault(workshop_id, set()).add(reservation_id)
            self._set_seats_used(workshop_id, used + 1)
            self._released.pop(reservation_id, None)

        remaining: Union[int, Unlimited] = (
            UNLIMITED if workshop.is_unlimited else workshop.capacity - used - 1
        )
        metrics.record_seat_reservation("reserved")
        logger.info(
            "seat_reserved",
            workshop_id=workshop_id,
            reservation_id=str(reservation_id),
            remaining=str(remaining),
        )
        return Reserved(
            workshop_id=workshop_id, reservation_id=reservation_id, remaining=remaining
        )

    async def confirm_reservation(self, workshop_id: int, reservation_id: UUID) -> None:
        """
        The pending enrollment for a held reservation has been persisted.

        The store now counts it, so the hold is dropped and the cache rebuilt
        on next use.
        """
        async with self.locks.hold(workshop_id):
            holds = self._holds.get(workshop_id)
            if holds is not None:
                holds.discard(reservation_id)
            self.invalidate(workshop_id)

    async def release_seat(self, workshop_id: int, reservation_id: UUID) -> bool:
        """
        Give a seat back.

        Called when an enrollment leaves pending/completed, or when a held
        reservation is abandoned before its enrollment was created.
        Idempotent per reservation id within the last released_window releases.

        Returns:
            bool: True if this call released the seat, False if already released
        """
        async with self.locks.hold(workshop_id):
            if reservation_id in self._released:
                metrics.record_seat_release("already_released")
                logger.info(
                    "seat_release_ignored",
                    workshop_id=workshop_id,
                    reservation_id=str(reservation_id),
                )
                return False
            self._remember_released(workshop_id, reservation_id)

            holds = self._holds.get(workshop_id, set())
            cached = self._seats_used.get(workshop_id)
            if reservation_id in holds and cached is not None:
                holds.discard(reservation_id)
                self._set_seats_used(workshop_id, max(0, cached - 1))
            else:
                # The store no longer counts the enrollment; recount on next use
                holds.discard(reservation_id)
                self.invalidate(workshop_id)

        metrics.record_seat_release("released")
        logger.info(
            "seat_released",
            workshop_id=workshop_id,
            reservation_id=str(reservation_id),
        )
        return True

    async def remaining(self, workshop_id: int) -> Union[int, Unlimited]:
        """
        Lock-free snapshot of the seats still available.

        Raises:
            WorkshopNotFoundError: If the workshop does not exist
        """
        workshop = await self.store.load_workshop(workshop_id)
        if workshop is None:
            raise WorkshopNotFoundError(workshop_id)
        if workshop.is_unlimited:
            return UNLIMITED

        used = self._seats_used.get(workshop_id)
        if used is None:
            used = await self.store.count_active_enrollments(workshop_id) + len(
                self._holds.get(workshop_id, ())
            )
        return max(0, workshop.capacity - used)

    def invalidate(self, workshop_id: int) -> None:
        """Drop the cached count. Callers must hold the workshop lock."""
        self._seats_used.pop(workshop_id, None)

    def _remember_released(self, workshop_id: int, reservation_id: UUID) -> None:
        # Oldest first out
        self._released[reservation_id] = workshop_id
        while len(self._released) > self.released_window:
            self._released.popitem(last=False)
