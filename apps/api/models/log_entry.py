"""Append-only log of every mutation applied to entitlements and bookings."""

from sqlalchemy import Column, DateTime, Integer, JSON, String, event
from sqlalchemy.orm import Session
from sqlalchemy.sql import func

from database import Base


class LogEntry(Base):
    """Immutable event record. Rows are inserted, never updated or deleted."""

    __tablename__ = "log_entries"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)
    actor_id = Column(String, nullable=False, index=True)
    action = Column(String, nullable=False, index=True)
    entity_id = Column(String, nullable=False, index=True)
    metadata_json = Column("metadata", JSON, nullable=True)

    def __repr__(self) -> str:
        return f"<LogEntry(id={self.id}, action={self.action}, entity={self.entity_id})>"


class AppendOnlyViolation(RuntimeError):
    """Raised when a flush would modify or remove an existing log entry."""


@event.listens_for(Session, "before_flush")
def _reject_log_entry_mutation(session, _flush_context, _instances):
    for obj in session.deleted:
        if isinstance(obj, LogEntry):
            raise AppendOnlyViolation(f"log entry {obj.id} cannot be deleted")
    for obj in session.dirty:
        if isinstance(obj, LogEntry) and session.is_modified(obj, include_collections=False):
            raise AppendOnlyViolation(f"log entry {obj.id} cannot be updated")
