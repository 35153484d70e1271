"""Mailbox, sync and contact enums."""

from enum import Enum


class MailboxProvider(str, Enum):
    """Mailbox provider."""

    GMAIL = "gmail"


class AccountSyncStatus(str, Enum):
    """User-visible sync status for a linked account."""

    NEVER_SYNCED = "never_synced"
    SYNCING = "syncing"
    SYNCED = "synced"
    DEGRADED = "degraded"  # reason in Account.sync_status_reason
    NEEDS_REAUTH = "needs_reauth"


class SyncMode(str, Enum):
    """Which strategy the orchestrator is running for an account."""

    INITIAL = "initial"
    INCREMENTAL = "incremental"
    BACKFILL = "backfill"


class EmailDirection(str, Enum):
    """Canonical message / interaction direction."""

    INBOUND = "inbound"
    OUTBOUND = "outbound"


class MessageIngestState(str, Enum):
    """Pipeline state for a stored message."""

    STORED = "stored"
    QUARANTINED = "quarantined"


class ContactStatus(str, Enum):
    """Contact lifecycle status."""

    ACTIVE = "active"
    MERGED = "merged"
    DELETED = "deleted"


class EnrichmentStatus(str, Enum):
    """Result of the latest enrichment attempt."""

    PENDING = "pending"
    ENRICHED = "enriched"
    NOT_FOUND = "not_found"
    SKIPPED = "skipped"


class ExtractionSource(str, Enum):
    """Extraction strategy that produced a candidate field."""

    HEADER = "header"
    SIGNATURE = "signature"
    BODY = "body"
    DOMAIN = "domain"
    ENRICHMENT = "enrichment"
    USER = "user"
