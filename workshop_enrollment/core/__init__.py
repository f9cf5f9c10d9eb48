"""Admission and reconciliation core."""
from .dedup import EventDeduplicator, InMemoryEventDeduplicator, RedisEventDeduplicator
from .enrollment_core import EnrollmentCore
from .ledger import CapacityLedger
from .locks import LocalLockManager, LockManager, RedlockLockManager, workshop_lock_key
from .notifications import LoggingNotifier, Notifier, OutboxNotifier
from .payment_events import PaymentEventProcessor
from .refunds import RefundCoordinator
from .waitlist import WaitlistQueue

__all__ = [
    "CapacityLedger",
    "EnrollmentCore",
    "EventDeduplicator",
    "InMemoryEventDeduplicator",
    "LocalLockManager",
    "LockManager",
    "LoggingNotifier",
    "Notifier",
    "OutboxNotifier",
    "PaymentEventProcessor",
    "RedisEventDeduplicator",
    "RedlockLockManager",
    "RefundCoordinator",
    "WaitlistQueue",
    "workshop_lock_key",
]
