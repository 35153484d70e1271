"""
Sync orchestrator - decides what a mailbox sync run does.

Modes:

- initial: capture the mailbox's current history id as the baseline, fetch a
  bounded recent window, and hand over to incremental once the window's last
  page is stored.
- incremental: read history from the stored cursor. Pushes and the fallback
  poll coalesce into one queued job per account.
- backfill: walk backward in fixed windows until the horizon or the start of
  the mailbox, one low-priority job per window.

An expired cursor resets the account to a fresh initial sync and flags a
possible history gap; it never fails the job.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from uuid import UUID

from sqlalchemy.orm import Session

from mailgraph.core.config import settings
from mailgraph.core.errors import CursorExpiredError, PermanentError, SyncError
from mailgraph.db.enums import (
    ACTIVE_JOB_STATUSES,
    AccountSyncStatus,
    MailboxProvider,
    SyncMode,
)
from mailgraph.db.models import Account, Job, SyncState
from mailgraph.jobs.events import SyncEvent, emit, sync_lane
from mailgraph.jobs.payloads import MailboxQuery, MailboxSyncPayload, SyncBatchPayload
from mailgraph.services import batch_processor, job_service, sync_state_service
from mailgraph.services.gmail_client import MailboxClient
from mailgraph.utils.normalization import mask_email, normalize_email
from mailgraph.utils.time import ensure_utc, utcnow

logger = logging.getLogger(__name__)

WATCH_RENEW_BEFORE = timedelta(hours=24)


# =============================================================================
# Account lifecycle
# =============================================================================


def get_account(db: Session, account_id: UUID) -> Account | None:
    return db.query(Account).filter(Account.id == account_id).first()


def get_account_by_email(db: Session, email_address: str) -> Account | None:
    email = normalize_email(email_address)
    if not email:
        return None
    return (
        db.query(Account)
        .filter(
            Account.email_address == email,
            Account.provider == MailboxProvider.GMAIL.value,
            Account.is_enabled.is_(True),
        )
        .order_by(Account.created_at.desc())
        .first()
    )


def link_account(
    db: Session,
    *,
    user_id: UUID,
    email_address: str,
    refresh_token: str | None,
    display_name: str | None = None,
) -> Account:
    """Create (or re-enable) a mailbox account and queue its initial sync."""
    email = normalize_email(email_address)
    if not email:
        raise PermanentError(f"Invalid mailbox address: {email_address!r}")

    account = (
        db.query(Account)
        .filter(
            Account.user_id == user_id,
            Account.provider == MailboxProvider.GMAIL.value,
            Account.email_address == email,
        )
        .first()
    )
    if account is None:
        account = Account(
            user_id=user_id,
            provider=MailboxProvider.GMAIL.value,
            email_address=email,
            display_name=display_name,
            refresh_token=refresh_token,
            sync_status=AccountSyncStatus.NEVER_SYNCED.value,
        )
        db.add(account)
        db.flush()
        db.add(SyncState(account_id=account.id, mode=SyncMode.INITIAL.value, version=0))
    else:
        if refresh_token:
            account.refresh_token = refresh_token
        if display_name:
            account.display_name = display_name
        was_disabled = not account.is_enabled
        account.is_enabled = True
        account.disabled_at = None
        if account.sync_status == AccountSyncStatus.NEEDS_REAUTH.value or was_disabled:
            account.sync_status = AccountSyncStatus.NEVER_SYNCED.value
            account.sync_status_reason = None
    db.commit()
    db.refresh(account)

    state = sync_state_service.get_or_create_state(db, account.id)
    if state.history_id is None:
        emit(db, SyncEvent.ACCOUNT_LINKED, account_id=account.id)
    else:
        # Relinked with a live cursor: catch up instead of starting over.
        emit(db, SyncEvent.POLL_TICK, account_id=account.id, reason="account_relinked")
    logger.info("Linked mailbox %s for user %s", mask_email(email), user_id)
    return account


def unlink_account(db: Session, account: Account) -> dict:
    """Disable the account and cancel its work. Stored data is kept."""
    account.is_enabled = False
    account.disabled_at = utcnow()
    db.commit()
    result = job_service.cancel_account_jobs(db, account.id, reason="account unlinked")
    logger.info(
        "Unlinked account %s: cancelled=%s flagged=%s",
        account.id,
        result["cancelled"],
        result["flagged"],
    )
    return result


def mark_needs_reauth(db: Session, account_id: UUID, error: str) -> None:
    account = get_account(db, account_id)
    if account is None:
        return
    account.sync_status = AccountSyncStatus.NEEDS_REAUTH.value
    account.sync_status_reason = error[:500]
    db.commit()
    logger.warning("Account %s needs re-authorization: %s", account_id, error)


def mark_degraded(db: Session, account_id: UUID, reason: str) -> None:
    account = get_account(db, account_id)
    if account is None or account.sync_status == AccountSyncStatus.NEEDS_REAUTH.value:
        return
    account.sync_status = AccountSyncStatus.DEGRADED.value
    account.sync_status_reason = reason
    db.commit()


def _set_syncing(db: Session, account: Account) -> None:
    if account.sync_status in (
        AccountSyncStatus.NEVER_SYNCED.value,
        AccountSyncStatus.SYNCED.value,
    ):
        account.sync_status = AccountSyncStatus.SYNCING.value
        account.sync_status_reason = None
        db.commit()


# =============================================================================
# Sync runs
# =============================================================================


async def run_mailbox_sync(
    db: Session,
    job: Job | None,
    payload: MailboxSyncPayload,
    client: MailboxClient,
) -> dict:
    """Entry point for ``mailbox_sync`` jobs."""
    account = batch_processor.load_enabled_account(db, payload.account_id)
    try:
        if payload.mode == SyncMode.INITIAL.value:
            return await start_initial_sync(db, job, account, client)
        if payload.mode == SyncMode.BACKFILL.value:
            return await run_backfill_window(db, job, account, client)
        return await run_incremental_sync(db, job, account, client, payload)
    except CursorExpiredError as exc:
        return handle_cursor_expired(db, account.id, exc.reason)


async def run_sync_batch(
    db: Session,
    job: Job | None,
    payload: SyncBatchPayload,
    client: MailboxClient,
) -> dict:
    """Entry point for ``sync_batch`` (follow-up page) jobs."""
    try:
        return await batch_processor.process_sync_batch(db, job, payload, client)
    except CursorExpiredError as exc:
        return handle_cursor_expired(db, payload.account_id, exc.reason)


async def start_initial_sync(
    db: Session,
    job: Job | None,
    account: Account,
    client: MailboxClient,
) -> dict:
    profile = await client.get_profile(account)
    window_start = utcnow() - timedelta(days=settings.SYNC_INITIAL_WINDOW_DAYS)
    sync_state_service.begin_initial_sync(
        db,
        account.id,
        baseline_history_id=profile.history_id,
        window_start=window_start,
    )
    _set_syncing(db, account)
    logger.info(
        "Starting initial sync for account %s (baseline=%s, window_start=%s)",
        account.id,
        profile.history_id,
        window_start.isoformat(),
    )
    batch = SyncBatchPayload(
        account_id=account.id,
        mode=SyncMode.INITIAL.value,
        query=MailboxQuery(after=window_start),
        baseline_history_id=profile.history_id,
    )
    return await batch_processor.process_sync_batch(db, job, batch, client)


def _initial_sync_in_flight(db: Session, account_id: UUID, state: SyncState) -> bool:
    if state.mode != SyncMode.INITIAL.value or state.initial_started_at is None:
        return False
    return (
        db.query(Job.id)
        .filter(
            Job.dedupe_key == sync_lane(SyncMode.INITIAL.value, account_id),
            Job.status.in_(ACTIVE_JOB_STATUSES),
        )
        .first()
        is not None
    )


async def run_incremental_sync(
    db: Session,
    job: Job | None,
    account: Account,
    client: MailboxClient,
    payload: MailboxSyncPayload,
) -> dict:
    state = sync_state_service.get_or_create_state(db, account.id)
    if state.history_id is None:
        if _initial_sync_in_flight(db, account.id, state):
            return {"status": "waiting_for_initial_sync"}
        return await start_initial_sync(db, job, account, client)

    if payload.push_history_id is not None and payload.push_history_id <= state.history_id:
        return {"status": "up_to_date", "history_id": state.history_id}

    batch = SyncBatchPayload(
        account_id=account.id,
        mode=SyncMode.INCREMENTAL.value,
        query=MailboxQuery(start_history_id=state.history_id),
    )
    return await batch_processor.process_sync_batch(db, job, batch, client)


async def run_backfill_window(
    db: Session,
    job: Job | None,
    account: Account,
    client: MailboxClient,
) -> dict:
    state = sync_state_service.get_or_create_state(db, account.id)
    if state.backfill_completed_at is not None:
        return {"status": "backfill_complete"}
    if state.history_id is None or state.mode == SyncMode.INITIAL.value:
        # A reset happened; the next initial sync schedules backfill again.
        return {"status": "waiting_for_initial_sync"}

    horizon = batch_processor.backfill_horizon()
    before = ensure_utc(state.backfill_before or state.initial_window_start) or utcnow()
    if before <= horizon:
        sync_state_service.record_backfill_progress(db, account.id, before=before, completed=True)
        return {"status": "backfill_complete"}

    after = max(before - timedelta(days=settings.SYNC_BACKFILL_WINDOW_DAYS), horizon)
    batch = SyncBatchPayload(
        account_id=account.id,
        mode=SyncMode.BACKFILL.value,
        query=MailboxQuery(after=after, before=before),
    )
    return await batch_processor.process_sync_batch(db, job, batch, client)


def handle_cursor_expired(db: Session, account_id: UUID, reason: str) -> dict:
    """Full resync from now; the old cursor cannot be resumed."""
    logger.warning("History cursor expired for account %s: %s", account_id, reason)
    sync_state_service.reset_cursor(db, account_id, reason=reason)
    account = get_account(db, account_id)
    if account is not None:
        account.history_gap_detected = True
        db.commit()
    mark_degraded(db, account_id, "history_gap")
    emit(db, SyncEvent.CURSOR_EXPIRED, account_id=account_id)
    return {"status": "cursor_expired"}


# =============================================================================
# Poll sweep & watch
# =============================================================================


def watch_is_due(account: Account, *, now=None) -> bool:
    if not settings.GMAIL_PUSH_TOPIC or not account.is_enabled:
        return False
    expiration = ensure_utc(account.watch_expiration_at)
    if expiration is None:
        return True
    return expiration <= (ensure_utc(now) or utcnow()) + WATCH_RENEW_BEFORE


def schedule_incremental_sync_jobs(db: Session) -> dict[str, int]:
    """Fallback poll: incremental sync (and due watch renewals) for every account."""
    now = utcnow()
    accounts = (
        db.query(Account)
        .filter(
            Account.is_enabled.is_(True),
            Account.sync_status != AccountSyncStatus.NEEDS_REAUTH.value,
        )
        .all()
    )

    jobs_created = 0
    duplicates = 0
    watch_jobs = 0
    for account in accounts:
        for job in emit(db, SyncEvent.POLL_TICK, commit=False, account_id=account.id):
            if ensure_utc(job.created_at) >= now:
                jobs_created += 1
            else:
                duplicates += 1
        if watch_is_due(account, now=now):
            emit(db, SyncEvent.WATCH_DUE, commit=False, account_id=account.id)
            watch_jobs += 1

    db.commit()
    return {
        "accounts_checked": len(accounts),
        "jobs_created": jobs_created,
        "duplicates_skipped": duplicates,
        "watch_jobs_queued": watch_jobs,
    }


async def refresh_watch(db: Session, account: Account, client: MailboxClient) -> dict:
    """Create or renew the Gmail push subscription."""
    if not settings.GMAIL_PUSH_TOPIC:
        account.watch_last_error = "GMAIL_PUSH_TOPIC not configured"
        db.commit()
        return {"status": "skipped"}
    if not watch_is_due(account):
        return {"status": "not_due"}
    try:
        result = await client.watch(account)
    except SyncError as exc:
        account.watch_last_error = str(exc)[:500]
        db.commit()
        raise
    account.watch_expiration_at = result.expires_at
    account.watch_last_renewed_at = utcnow()
    account.watch_last_error = None
    db.commit()
    logger.info(
        "Renewed Gmail watch for account %s until %s",
        account.id,
        result.expires_at.isoformat() if result.expires_at else None,
    )
    return {"status": "renewed"}
