"""Job-related enums."""

from enum import Enum, IntEnum


class JobType(str, Enum):
    """Types of background jobs."""

    MAILBOX_SYNC = "mailbox_sync"  # Orchestrator entry: initial/incremental/backfill
    SYNC_BATCH = "sync_batch"  # One page of message ids
    MESSAGE_FETCH = "message_fetch"  # Single-message retry after a transient failure
    CONTACT_EXTRACTION = "contact_extraction"
    CONTACT_STATS_RECALC = "contact_stats_recalc"
    CONTACT_ENRICHMENT = "contact_enrichment"
    GMAIL_WATCH_REFRESH = "gmail_watch_refresh"


class JobStatus(str, Enum):
    """Status of background jobs."""

    PENDING = "pending"
    SCHEDULED = "scheduled"
    PROCESSING = "processing"
    COMPLETED = "completed"
    DEAD = "dead"
    CANCELLED = "cancelled"


class JobPriority(IntEnum):
    """Claim order; lower value wins."""

    CRITICAL = 0
    HIGH = 1
    NORMAL = 2
    LOW = 3


QUEUED_JOB_STATUSES = (JobStatus.PENDING.value, JobStatus.SCHEDULED.value)
ACTIVE_JOB_STATUSES = (*QUEUED_JOB_STATUSES, JobStatus.PROCESSING.value)
