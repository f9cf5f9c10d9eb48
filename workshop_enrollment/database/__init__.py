"""Database package for workshop enrollment."""
from .connection import (
    build_engine,
    build_session_factory,
    close_db,
    get_engine,
    get_session_factory,
    init_db,
)
from .models import (
    Base,
    EnrollmentEventRecord,
    EnrollmentRecord,
    OutboxEvent,
    WaitlistEntryRecord,
    WorkshopRecord,
)

__all__ = [
    "Base",
    "EnrollmentEventRecord",
    "EnrollmentRecord",
    "OutboxEvent",
    "WaitlistEntryRecord",
    "WorkshopRecord",
    "build_engine",
    "build_session_factory",
    "close_db",
    "get_engine",
    "get_session_factory",
    "init_db",
]
