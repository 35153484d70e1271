"""Enum definitions for application constants."""

from mailgraph.db.enums.jobs import (
    ACTIVE_JOB_STATUSES,
    QUEUED_JOB_STATUSES,
    JobPriority,
    JobStatus,
    JobType,
)
from mailgraph.db.enums.mail import (
    AccountSyncStatus,
    ContactStatus,
    EmailDirection,
    EnrichmentStatus,
    ExtractionSource,
    MailboxProvider,
    MessageIngestState,
    SyncMode,
)

__all__ = [
    "ACTIVE_JOB_STATUSES",
    "QUEUED_JOB_STATUSES",
    "AccountSyncStatus",
    "ContactStatus",
    "EmailDirection",
    "EnrichmentStatus",
    "ExtractionSource",
    "JobPriority",
    "JobStatus",
    "JobType",
    "MailboxProvider",
    "MessageIngestState",
    "SyncMode",
]
