"""Persistence layer — append-only audit log of election events."""

from agora.persistence.event_log import EventKind, EventLog, EventRecord

__all__ = ["EventKind", "EventLog", "EventRecord"]
