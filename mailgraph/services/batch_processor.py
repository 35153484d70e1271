"""
Batch processor - one bounded page of a sync run.

A page is: list ids, fetch messages, parse and upsert each message on its
own, then (only after the messages are committed) advance the cursor or
backfill watermark and chain the next page. Re-running a page is harmless:
message upserts are keyed on (account, provider id) and extraction is only
re-queued for new, changed or never-extracted messages.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mailgraph.core.config import settings
from mailgraph.core.errors import JobCancelled, PermanentError, RateLimitedError
from mailgraph.db.enums import (
    AccountSyncStatus,
    JobPriority,
    JobType,
    MessageIngestState,
    SyncMode,
)
from mailgraph.db.models import Account, Job, Message
from mailgraph.jobs.events import SyncEvent, emit, sync_lane
from mailgraph.jobs.payloads import MailboxQuery, SyncBatchPayload
from mailgraph.services import job_service, sync_state_service
from mailgraph.services.gmail_client import MailboxClient, MessagePage
from mailgraph.services.message_parser import ParsedMessage, parse_gmail_message
from mailgraph.utils.time import ensure_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass
class IngestOutcome:
    message: Message
    created: bool = False
    changed: bool = False

    @property
    def needs_extraction(self) -> bool:
        return (
            self.message.ingest_state == MessageIngestState.STORED.value
            and (self.created or self.changed or self.message.extracted_at is None)
        )


@dataclass
class BatchStats:
    listed: int = 0
    stored: int = 0
    quarantined: int = 0
    requeued: int = 0
    extraction_queued: int = 0
    extra: dict = field(default_factory=dict)

    def as_dict(self) -> dict:
        return {
            "listed": self.listed,
            "stored": self.stored,
            "quarantined": self.quarantined,
            "requeued": self.requeued,
            "extraction_queued": self.extraction_queued,
            **self.extra,
        }


# =============================================================================
# Message upsert
# =============================================================================


def _get_message(db: Session, account_id: UUID, provider_message_id: str) -> Message | None:
    return (
        db.query(Message)
        .filter(
            Message.account_id == account_id,
            Message.provider_message_id == provider_message_id,
        )
        .first()
    )


def _apply_parsed(message: Message, parsed: ParsedMessage) -> None:
    message.thread_id = parsed.thread_id
    message.rfc_message_id = parsed.rfc_message_id
    message.sender_email = parsed.sender.email if parsed.sender else None
    message.sender_name = parsed.sender.name if parsed.sender else None
    message.to_recipients = [a.as_dict() for a in parsed.to]
    message.cc_recipients = [a.as_dict() for a in parsed.cc]
    message.bcc_recipients = [a.as_dict() for a in parsed.bcc]
    message.subject = parsed.subject
    message.snippet = parsed.snippet
    message.body_text = parsed.body_text
    message.body_html = parsed.body_html
    message.label_ids = list(parsed.label_ids)
    message.sent_at = parsed.sent_at
    message.history_id = parsed.history_id
    message.direction = parsed.direction.value
    message.ingest_state = MessageIngestState.STORED.value
    message.ingest_error = None
    message.content_hash = parsed.content_hash


def upsert_message(db: Session, account: Account, parsed: ParsedMessage) -> IngestOutcome:
    """Insert or update one message and commit it."""
    message = _get_message(db, account.id, parsed.provider_message_id)
    if message is None:
        message = Message(
            account_id=account.id,
            user_id=account.user_id,
            provider_message_id=parsed.provider_message_id,
        )
        _apply_parsed(message, parsed)
        db.add(message)
        try:
            db.commit()
            return IngestOutcome(message=message, created=True)
        except IntegrityError:
            db.rollback()
            message = _get_message(db, account.id, parsed.provider_message_id)
            if message is None:
                raise

    changed = (
        message.content_hash != parsed.content_hash
        or message.ingest_state != MessageIngestState.STORED.value
    )
    if changed or message.history_id != parsed.history_id or message.label_ids != parsed.label_ids:
        _apply_parsed(message, parsed)
        db.commit()
    return IngestOutcome(message=message, changed=changed)


def quarantine_message(
    db: Session, account: Account, provider_message_id: str, reason: str
) -> Message:
    """Record an unparseable/unfetchable message so it is visible, not retried."""
    message = _get_message(db, account.id, provider_message_id)
    if message is not None and message.ingest_state == MessageIngestState.STORED.value:
        # A good copy is already stored; keep it.
        logger.warning(
            "Message %s for account %s failed permanently but is already stored: %s",
            provider_message_id,
            account.id,
            reason,
        )
        return message
    if message is None:
        message = Message(
            account_id=account.id,
            user_id=account.user_id,
            provider_message_id=provider_message_id,
        )
        db.add(message)
    message.ingest_state = MessageIngestState.QUARANTINED.value
    message.ingest_error = reason[:2000]
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return quarantine_message(db, account, provider_message_id, reason)
    logger.warning("Quarantined message %s for account %s: %s", provider_message_id, account.id, reason)
    return message


def ingest_raw_message(db: Session, account: Account, raw: dict) -> IngestOutcome | None:
    """Parse and store one fetched resource; quarantines on parse failure."""
    try:
        parsed = parse_gmail_message(raw, owner_email=account.email_address)
    except PermanentError as exc:
        provider_message_id = raw.get("id") if isinstance(raw, dict) else None
        if provider_message_id:
            quarantine_message(db, account, str(provider_message_id), exc.reason)
        else:
            logger.error("Dropping message without id for account %s: %s", account.id, exc.reason)
        return None
    return upsert_message(db, account, parsed)


def _queue_extraction(db: Session, account: Account, outcome: IngestOutcome) -> bool:
    if not outcome.needs_extraction:
        return False
    emit(db, SyncEvent.MESSAGE_STORED, message_id=outcome.message.id, account_id=account.id)
    return True


# =============================================================================
# Pages
# =============================================================================


def _check_cancelled(db: Session, job: Job | None) -> None:
    if job is not None and job_service.is_cancel_requested(db, job.id):
        raise JobCancelled(f"Job {job.id} cancelled")


def load_enabled_account(db: Session, account_id: UUID) -> Account:
    account = db.query(Account).filter(Account.id == account_id).populate_existing().first()
    if account is None or not account.is_enabled:
        raise JobCancelled(f"Account {account_id} is not linked")
    return account


async def process_sync_batch(
    db: Session,
    job: Job | None,
    payload: SyncBatchPayload,
    client: MailboxClient,
) -> dict:
    """Process one page of ``payload`` and chain the next one."""
    account = load_enabled_account(db, payload.account_id)
    _check_cancelled(db, job)

    page = await client.list_message_ids(account, payload.query, payload.page_token)
    stats = BatchStats(listed=len(page.ids))
    fetched = await client.get_messages(account, page.ids) if page.ids else None

    outcomes: list[IngestOutcome] = []
    if fetched is not None:
        for raw in fetched.messages:
            outcome = ingest_raw_message(db, account, raw)
            if outcome is None:
                stats.quarantined += 1
            else:
                outcomes.append(outcome)
                stats.stored += 1

        for provider_message_id, error in fetched.failures.items():
            if isinstance(error, RateLimitedError):
                # Picked up again when the page is re-run.
                continue
            if isinstance(error, PermanentError):
                quarantine_message(db, account, provider_message_id, error.reason)
                stats.quarantined += 1
            else:
                emit(
                    db,
                    SyncEvent.MESSAGE_FETCH_FAILED,
                    account_id=account.id,
                    provider_message_id=provider_message_id,
                )
                stats.requeued += 1

    for outcome in outcomes:
        if _queue_extraction(db, account, outcome):
            stats.extraction_queued += 1

    if fetched is not None and fetched.retry_after is not None:
        # Stored messages stay committed; the cursor and next page wait for the retry.
        logger.warning(
            "Sync batch %s page %s for account %s throttled after storing %s messages",
            payload.mode,
            payload.page_number,
            account.id,
            stats.stored,
        )
        raise RateLimitedError(fetched.retry_after)

    # Messages for this page are committed; only now move the cursor.
    if payload.mode == SyncMode.INCREMENTAL.value:
        sync_state_service.advance_cursor(db, account.id, _page_cursor(payload, page))

    if page.next_page_token:
        _check_cancelled(db, job)
        next_payload = payload.model_copy(
            update={"page_token": page.next_page_token, "page_number": payload.page_number + 1}
        )
        job_service.enqueue_job(
            db,
            JobType.SYNC_BATCH,
            next_payload,
            priority=job.priority if job is not None else JobPriority.NORMAL,
            dedupe_key=sync_lane(payload.mode, account.id),
            account_id=account.id,
        )
        stats.extra["next_page"] = payload.page_number + 1
    else:
        stats.extra.update(await _finish_run(db, account, payload, client))

    logger.info(
        "Sync batch %s page %s for account %s: %s",
        payload.mode,
        payload.page_number,
        account.id,
        stats.as_dict(),
    )
    return stats.as_dict()


def _page_cursor(payload: SyncBatchPayload, page: MessagePage) -> int | None:
    """
    Cursor to store after an incremental page.

    A single-page run can take the mailbox's current history id; for later
    pages only the newest record actually read is safe.
    """
    if page.next_page_token is None and payload.page_number == 1:
        return page.history_id or page.max_record_history_id
    return page.max_record_history_id


async def _finish_run(
    db: Session,
    account: Account,
    payload: SyncBatchPayload,
    client: MailboxClient,
) -> dict:
    if payload.mode == SyncMode.INITIAL.value:
        return _finish_initial(db, account)
    if payload.mode == SyncMode.BACKFILL.value:
        return await _finish_backfill_window(db, account, payload.query, client)
    _set_status(
        db,
        account,
        AccountSyncStatus.SYNCED,
        only_from={AccountSyncStatus.NEVER_SYNCED.value, AccountSyncStatus.SYNCING.value},
    )
    return {}


def _set_status(
    db: Session,
    account: Account,
    status: AccountSyncStatus,
    *,
    reason: str | None = None,
    only_from: set[str] | None = None,
) -> None:
    if only_from is not None and account.sync_status not in only_from:
        return
    if account.sync_status == AccountSyncStatus.NEEDS_REAUTH.value:
        return
    account.sync_status = status.value
    account.sync_status_reason = reason
    db.commit()


def _finish_initial(db: Session, account: Account) -> dict:
    state = sync_state_service.complete_initial_sync(db, account.id)
    if state is None:
        # Already handed over (duplicate last page).
        return {"initial_sync": "already_completed"}
    _set_status(db, account, AccountSyncStatus.SYNCED)
    emit(db, SyncEvent.INITIAL_SYNC_COMPLETED, account_id=account.id)
    logger.info("Initial sync completed for account %s (cursor=%s)", account.id, state.history_id)
    return {"initial_sync": "completed", "history_id": state.history_id}


def backfill_horizon():
    return utcnow() - timedelta(days=settings.SYNC_BACKFILL_HORIZON_DAYS)


async def _finish_backfill_window(
    db: Session,
    account: Account,
    query: MailboxQuery,
    client: MailboxClient,
) -> dict:
    window_start = ensure_utc(query.after)
    completed = window_start is None or window_start <= backfill_horizon()
    if not completed:
        # Anything older than this window at all?
        probe = await client.list_message_ids(account, MailboxQuery(before=window_start))
        completed = not probe.ids

    sync_state_service.record_backfill_progress(
        db,
        account.id,
        before=window_start or backfill_horizon(),
        completed=completed,
    )
    if completed:
        if account.history_gap_detected:
            account.history_gap_detected = False
            db.commit()
        logger.info("Backfill completed for account %s", account.id)
        return {"backfill": "completed"}

    emit(db, SyncEvent.BACKFILL_WINDOW_COMPLETED, account_id=account.id)
    return {"backfill": "window_completed", "backfill_before": window_start.isoformat()}


async def fetch_single_message(
    db: Session,
    account_id: UUID,
    provider_message_id: str,
    client: MailboxClient,
) -> dict:
    """Retry path for a message whose fetch failed inside a batch."""
    account = load_enabled_account(db, account_id)
    try:
        raw = await client.get_message(account, provider_message_id)
    except PermanentError as exc:
        quarantine_message(db, account, provider_message_id, exc.reason)
        return {"status": "quarantined"}

    outcome = ingest_raw_message(db, account, raw)
    if outcome is None:
        return {"status": "quarantined"}
    queued = _queue_extraction(db, account, outcome)
    return {"status": "stored", "created": outcome.created, "extraction_queued": queued}
