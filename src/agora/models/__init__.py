"""Core data models for Agora."""

from agora.models.election import (
    Election,
    Notification,
    NotificationKind,
    Proposal,
    Voter,
    WorkflowStatus,
)

__all__ = [
    "Election",
    "Notification",
    "NotificationKind",
    "Proposal",
    "Voter",
    "WorkflowStatus",
]
