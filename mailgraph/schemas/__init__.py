"""Pydantic schemas for API request/response models."""

from mailgraph.schemas.account import (
    AccountRead,
    AccountSyncStatusRead,
    ScheduledSyncResponse,
    SyncStateRead,
)
from mailgraph.schemas.contact import ContactListItem, ContactListResponse, ContactRead
from mailgraph.schemas.job import JobListItem, JobRead, JobRequeue

__all__ = [
    # Account
    "AccountRead",
    "AccountSyncStatusRead",
    "ScheduledSyncResponse",
    "SyncStateRead",
    # Contact
    "ContactListItem",
    "ContactListResponse",
    "ContactRead",
    # Job
    "JobListItem",
    "JobRead",
    "JobRequeue",
]
