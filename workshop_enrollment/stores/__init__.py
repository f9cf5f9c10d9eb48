"""Enrollment persistence backends."""
from .interfaces import EnrollmentStore
from .memory import InMemoryEnrollmentStore
from .sqlalchemy_store import SqlAlchemyEnrollmentStore

__all__ = ["EnrollmentStore", "InMemoryEnrollmentStore", "SqlAlchemyEnrollmentStore"]
