"""End-to-end tests for the sync pipeline: orchestrator, batches, extraction."""
import base64
import uuid
from datetime import timedelta

import httpx
import pytest

from mailgraph.core.errors import PermanentError, RateLimitedError, TransientError
from mailgraph.db.enums import (
    AccountSyncStatus,
    JobPriority,
    JobStatus,
    JobType,
    MessageIngestState,
    SyncMode,
)
from mailgraph.db.models import Account, Contact, Interaction, Job, Message
from mailgraph.jobs.events import SyncEvent, emit
from mailgraph.jobs.payloads import MailboxQuery, MailboxSyncPayload, SyncBatchPayload
from mailgraph.services import batch_processor, job_service, sync_orchestrator, sync_state_service
from mailgraph.services.gmail_client import GmailClient
from mailgraph.utils.time import ensure_utc, utcnow
from conftest import OWNER_EMAIL, drain_jobs, make_raw_message


def _jobs(db, job_type: JobType, **filters):
    query = db.query(Job).filter(Job.job_type == job_type.value)
    for name, value in filters.items():
        query = query.filter(getattr(Job, name) == value)
    return query.all()


def _contact(db, email):
    return db.query(Contact).filter(Contact.email == email).first()


def _seed_incremental(db, account, mailbox, cursor=100):
    sync_state_service.advance_cursor(db, account.id, cursor)
    mailbox.history_id = cursor


# =============================================================================
# Incremental sync
# =============================================================================


@pytest.mark.asyncio
async def test_push_notification_syncs_new_messages_and_extracts_contacts(db, account, mailbox):
    _seed_incremental(db, account, mailbox)
    mailbox.add_message(
        make_raw_message(
            "m1",
            body="Hi,\n\nPlease loop in b@y.com for the contract review.",
        ),
        history_id=103,
    )
    mailbox.add_message(make_raw_message("m2", body="Following up on this."), history_id=105)

    emit(db, SyncEvent.PUSH_RECEIVED, account_id=account.id, push_history_id=105)
    emit(db, SyncEvent.PUSH_RECEIVED, account_id=account.id, push_history_id=105)
    sync_jobs = _jobs(db, JobType.MAILBOX_SYNC)
    assert len(sync_jobs) == 1
    assert sync_jobs[0].priority == JobPriority.HIGH
    assert sync_jobs[0].dedupe_key == f"sync:{account.id}"

    processed = await drain_jobs(db)

    assert processed[0] == ("mailbox_sync", "completed")
    assert all(status == "completed" for _, status in processed)
    assert sync_state_service.get_state(db, account.id).history_id == 105

    messages = db.query(Message).filter(Message.account_id == account.id).all()
    assert {m.provider_message_id for m in messages} == {"m1", "m2"}
    assert all(m.ingest_state == MessageIngestState.STORED.value for m in messages)
    assert all(m.extracted_at is not None for m in messages)

    sender = _contact(db, "a@x.com")
    assert sender is not None
    assert sender.display_name == "Alice Smith"
    assert sender.field_provenance["display_name"]["confidence"] == 1.0
    assert sender.field_provenance["display_name"]["source"] == "header"
    assert sender.domain == "x.com"
    assert sender.interaction_count == 2
    assert sender.inbound_count == 2
    assert sender.relationship_strength > 0

    mentioned = _contact(db, "b@y.com")
    assert mentioned is not None
    assert mentioned.domain == "y.com"
    assert mentioned.interaction_count == 0

    assert _contact(db, OWNER_EMAIL) is None
    assert len(_jobs(db, JobType.CONTACT_STATS_RECALC)) == 1

    db.refresh(account)
    assert account.sync_status == AccountSyncStatus.SYNCED.value


@pytest.mark.asyncio
async def test_push_at_or_behind_cursor_is_a_no_op(db, account, mailbox):
    _seed_incremental(db, account, mailbox, cursor=200)
    emit(db, SyncEvent.PUSH_RECEIVED, account_id=account.id, push_history_id=150)

    processed = await drain_jobs(db)

    assert processed == [("mailbox_sync", "completed")]
    assert not [call for call in mailbox.calls if call[0] == "list"]
    assert sync_state_service.get_state(db, account.id).history_id == 200


@pytest.mark.asyncio
async def test_multi_page_incremental_sync_advances_to_records_read(db, account, mailbox):
    _seed_incremental(db, account, mailbox)
    mailbox.page_size = 1
    for offset in (1, 2, 3):
        mailbox.add_message(make_raw_message(f"m{offset}"), history_id=100 + offset)
    mailbox.history_id = 110

    emit(db, SyncEvent.POLL_TICK, account_id=account.id)
    processed = await drain_jobs(db, job_types=["mailbox_sync", "sync_batch"])

    assert [job_type for job_type, _ in processed] == ["mailbox_sync", "sync_batch", "sync_batch"]
    assert db.query(Message).count() == 3
    assert sync_state_service.get_state(db, account.id).history_id == 103

    emit(db, SyncEvent.POLL_TICK, account_id=account.id)
    await drain_jobs(db, job_types=["mailbox_sync", "sync_batch"])
    assert sync_state_service.get_state(db, account.id).history_id == 110


@pytest.mark.asyncio
async def test_rerunning_a_page_is_idempotent(db, account, mailbox):
    _seed_incremental(db, account, mailbox)
    mailbox.add_message(make_raw_message("m1", body="Ping c@z.org please"), history_id=101)
    mailbox.add_message(make_raw_message("m2"), history_id=102)
    payload = SyncBatchPayload(
        account_id=account.id,
        mode=SyncMode.INCREMENTAL.value,
        query=MailboxQuery(start_history_id=100),
    )

    first = await batch_processor.process_sync_batch(db, None, payload, mailbox)
    assert first["stored"] == 2
    assert first["extraction_queued"] == 2

    # Replayed before extraction ran: coalesces into the queued jobs.
    await batch_processor.process_sync_batch(db, None, payload, mailbox)
    assert len(_jobs(db, JobType.CONTACT_EXTRACTION)) == 2

    await drain_jobs(db)
    contacts_before = db.query(Contact).count()
    interactions_before = db.query(Interaction).count()

    again = await batch_processor.process_sync_batch(db, None, payload, mailbox)

    assert again["extraction_queued"] == 0
    assert db.query(Message).count() == 2
    assert db.query(Contact).count() == contacts_before
    assert db.query(Interaction).count() == interactions_before
    assert sync_state_service.get_state(db, account.id).history_id == 102


@pytest.mark.asyncio
async def test_changed_message_is_reextracted(db, account, mailbox):
    _seed_incremental(db, account, mailbox)
    mailbox.add_message(make_raw_message("m1", body="First draft"), history_id=101)
    payload = SyncBatchPayload(
        account_id=account.id,
        mode=SyncMode.INCREMENTAL.value,
        query=MailboxQuery(start_history_id=100),
    )
    await batch_processor.process_sync_batch(db, None, payload, mailbox)
    await drain_jobs(db)

    mailbox.add_message(make_raw_message("m1", body="Edited: also d@w.io"))
    stats = await batch_processor.process_sync_batch(db, None, payload, mailbox)

    assert stats["extraction_queued"] == 1
    await drain_jobs(db)
    assert _contact(db, "d@w.io") is not None


@pytest.mark.asyncio
async def test_fetch_failures_quarantine_or_retry_without_blocking_cursor(db, account, mailbox):
    _seed_incremental(db, account, mailbox)
    mailbox.add_message(make_raw_message("ok"), history_id=101)
    mailbox.add_message(make_raw_message("gone"), history_id=102)
    mailbox.add_message(make_raw_message("flaky"), history_id=103)
    no_sender = base64.urlsafe_b64encode(b"Subject: orphan\r\n\r\nbody\r\n").decode("ascii")
    mailbox.add_message({"id": "broken", "raw": no_sender}, history_id=104)
    mailbox.fetch_errors = {
        "gone": PermanentError("Gmail API error 404: Requested entity was not found."),
        "flaky": TransientError("Gmail request timed out"),
    }

    emit(db, SyncEvent.POLL_TICK, account_id=account.id)
    processed = await drain_jobs(db, job_types=["mailbox_sync"])

    assert processed == [("mailbox_sync", "completed")]
    assert sync_state_service.get_state(db, account.id).history_id == 104

    by_id = {m.provider_message_id: m for m in db.query(Message).all()}
    assert by_id["ok"].ingest_state == MessageIngestState.STORED.value
    assert by_id["gone"].ingest_state == MessageIngestState.QUARANTINED.value
    assert "404" in by_id["gone"].ingest_error
    assert by_id["broken"].ingest_state == MessageIngestState.QUARANTINED.value
    assert "flaky" not in by_id

    retries = _jobs(db, JobType.MESSAGE_FETCH)
    assert len(retries) == 1
    assert retries[0].dedupe_key == f"fetch:{account.id}:flaky"
    assert retries[0].status == JobStatus.SCHEDULED.value

    mailbox.fetch_errors.clear()
    processed = await drain_jobs(db, job_types=["message_fetch"])
    assert processed == [("message_fetch", "completed")]
    flaky = db.query(Message).filter(Message.provider_message_id == "flaky").one()
    assert flaky.ingest_state == MessageIngestState.STORED.value



class _Tokens:
    async def get_valid_token(self, account):
        return "token"


@pytest.mark.asyncio
async def test_throttled_sibling_keeps_fetched_messages_and_holds_cursor(db, account):
    sync_state_service.advance_cursor(db, account.id, 100)
    resources = {f"m{n}": make_raw_message(f"m{n}") for n in range(4)}
    throttled = {"m3"}

    def handler(request):
        path = request.url.path
        if path.endswith("/history"):
            return httpx.Response(
                200,
                json={
                    "historyId": "110",
                    "history": [
                        {"id": str(101 + n), "messagesAdded": [{"message": {"id": f"m{n}"}}]}
                        for n in range(4)
                    ],
                },
            )
        message_id = path.rsplit("/", 1)[-1]
        if message_id in throttled:
            return httpx.Response(
                429, json={"error": {"code": 429, "message": "slow down"}}, headers={"Retry-After": "30"}
            )
        return httpx.Response(200, json=resources[message_id])

    client = GmailClient(
        token_provider=_Tokens(),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        base_url="https://gmail.test/gmail/v1/users/me",
    )
    payload = SyncBatchPayload(
        account_id=account.id,
        mode=SyncMode.INCREMENTAL.value,
        query=MailboxQuery(start_history_id=100),
    )

    with pytest.raises(RateLimitedError) as excinfo:
        await batch_processor.process_sync_batch(db, None, payload, client)

    assert excinfo.value.retry_after == 30.0
    stored = {m.provider_message_id for m in db.query(Message).all()}
    assert stored == {"m0", "m1", "m2"}
    assert sync_state_service.get_state(db, account.id).history_id == 100
    assert _jobs(db, JobType.MESSAGE_FETCH) == []

    throttled.clear()
    stats = await batch_processor.process_sync_batch(db, None, payload, client)

    assert stats["stored"] == 4
    assert db.query(Message).count() == 4
    assert sync_state_service.get_state(db, account.id).history_id == 110


# =============================================================================
# Initial sync & backfill
# =============================================================================


@pytest.mark.asyncio
async def test_linking_runs_initial_sync_then_backfill(db, mailbox):
    now = utcnow()
    mailbox.history_id = 500
    mailbox.page_size = 2
    for days in (1, 2, 3, 4, 5):
        mailbox.add_message(make_raw_message(f"recent-{days}", sent_at=now - timedelta(days=days)))
    mailbox.add_message(make_raw_message("old", sent_at=now - timedelta(days=200)))

    account = sync_orchestrator.link_account(
        db,
        user_id=uuid.uuid4(),
        email_address="Owner@MyCompany.com",
        refresh_token="refresh-token",
    )
    assert account.email_address == OWNER_EMAIL
    initial = _jobs(db, JobType.MAILBOX_SYNC)
    assert len(initial) == 1
    assert initial[0].payload["mode"] == "initial"
    assert len(_jobs(db, JobType.GMAIL_WATCH_REFRESH)) == 1

    processed = await drain_jobs(db, job_types=["mailbox_sync", "sync_batch"], max_jobs=3)
    assert [job_type for job_type, _ in processed] == ["mailbox_sync", "sync_batch", "sync_batch"]

    state = sync_state_service.get_state(db, account.id)
    assert state.mode == SyncMode.INCREMENTAL.value
    assert state.history_id == 500
    assert db.query(Message).count() == 5
    backfill = _jobs(db, JobType.MAILBOX_SYNC, status=JobStatus.SCHEDULED.value)
    assert len(backfill) == 1
    assert backfill[0].payload["mode"] == "backfill"
    assert backfill[0].priority == JobPriority.LOW

    await drain_jobs(db)

    state = sync_state_service.get_state(db, account.id)
    assert state.backfill_completed_at is not None
    assert ensure_utc(state.backfill_before) < now - timedelta(days=200)
    assert db.query(Message).count() == 6
    assert state.history_id == 500
    db.refresh(account)
    assert account.sync_status == AccountSyncStatus.SYNCED.value


@pytest.mark.asyncio
async def test_incremental_waits_while_initial_sync_in_flight(db, account, mailbox):
    mailbox.page_size = 1
    mailbox.add_message(make_raw_message("m1"))
    mailbox.add_message(make_raw_message("m2"))
    emit(db, SyncEvent.ACCOUNT_LINKED, account_id=account.id)
    await drain_jobs(db, job_types=["mailbox_sync"], max_jobs=1)

    result = await sync_orchestrator.run_mailbox_sync(
        db,
        None,
        MailboxSyncPayload(account_id=account.id, mode="incremental", push_history_id=101),
        mailbox,
    )

    assert result == {"status": "waiting_for_initial_sync"}
    assert sync_state_service.get_state(db, account.id).history_id is None

    await drain_jobs(db, job_types=["mailbox_sync", "sync_batch"])

    state = sync_state_service.get_state(db, account.id)
    assert state.history_id == mailbox.history_id
    assert state.mode == SyncMode.INCREMENTAL.value
    assert db.query(Message).count() == 2


# =============================================================================
# Cursor expiry
# =============================================================================


@pytest.mark.asyncio
async def test_expired_cursor_resets_to_initial_sync_and_flags_gap(db, account, mailbox):
    _seed_incremental(db, account, mailbox)
    mailbox.history_expired = True
    mailbox.add_message(make_raw_message("m1"))

    emit(db, SyncEvent.POLL_TICK, account_id=account.id)
    processed = await drain_jobs(db, max_jobs=1)

    assert processed == [("mailbox_sync", "completed")]
    db.refresh(account)
    assert account.history_gap_detected is True
    assert account.sync_status == AccountSyncStatus.DEGRADED.value
    assert account.sync_status_reason == "history_gap"
    state = sync_state_service.get_state(db, account.id)
    assert state.history_id is None
    assert state.mode == SyncMode.INITIAL.value

    resync = _jobs(db, JobType.MAILBOX_SYNC, status=JobStatus.PENDING.value)
    assert len(resync) == 1
    assert resync[0].payload == {
        "account_id": str(account.id),
        "mode": "initial",
        "reason": "cursor_expired",
    }
    assert resync[0].dedupe_key == f"initial:{account.id}"

    mailbox.history_expired = False
    await drain_jobs(db)

    db.refresh(account)
    assert account.history_gap_detected is False
    assert account.sync_status == AccountSyncStatus.SYNCED.value
    assert sync_state_service.get_state(db, account.id).history_id == 100


# =============================================================================
# Unlink & cancellation
# =============================================================================


@pytest.mark.asyncio
async def test_unlink_cancels_queued_and_running_jobs(db, account, mailbox):
    from mailgraph.worker import execute_job

    _seed_incremental(db, account, mailbox)
    emit(db, SyncEvent.POLL_TICK, account_id=account.id)
    running = job_service.claim_next_job(db, "w1")
    emit(db, SyncEvent.WATCH_DUE, account_id=account.id)

    result = sync_orchestrator.unlink_account(db, account)

    assert result == {"cancelled": 1, "flagged": 1}
    status = await execute_job(db, running)
    assert status == JobStatus.CANCELLED.value
    db.refresh(account)
    assert account.is_enabled is False
    assert account.disabled_at is not None
    assert db.query(Account).count() == 1


@pytest.mark.asyncio
async def test_running_batch_observes_cancel_flag(db, account, mailbox):
    from mailgraph.worker import execute_job

    _seed_incremental(db, account, mailbox)
    mailbox.add_message(make_raw_message("m1"), history_id=101)
    emit(db, SyncEvent.POLL_TICK, account_id=account.id)
    running = job_service.claim_next_job(db, "w1")

    job_service.cancel_account_jobs(db, account.id)
    status = await execute_job(db, running)

    assert status == JobStatus.CANCELLED.value
    assert db.query(Message).count() == 0
    assert sync_state_service.get_state(db, account.id).history_id == 100


def test_relinking_with_live_cursor_polls_instead_of_resyncing(db, account, mailbox):
    _seed_incremental(db, account, mailbox)
    sync_orchestrator.unlink_account(db, account)

    relinked = sync_orchestrator.link_account(
        db,
        user_id=account.user_id,
        email_address=account.email_address,
        refresh_token="new-token",
    )

    assert relinked.id == account.id
    assert relinked.is_enabled is True
    assert relinked.refresh_token == "new-token"
    queued = _jobs(db, JobType.MAILBOX_SYNC, status=JobStatus.PENDING.value)
    assert len(queued) == 1
    assert queued[0].payload["mode"] == "incremental"
    assert queued[0].payload["reason"] == "account_relinked"


# =============================================================================
# Poll sweep
# =============================================================================


def test_scheduled_poll_coalesces_per_account(db, account, monkeypatch):
    from mailgraph.core.config import settings

    monkeypatch.setattr(settings, "GMAIL_PUSH_TOPIC", "projects/p/topics/gmail")

    first = sync_orchestrator.schedule_incremental_sync_jobs(db)
    second = sync_orchestrator.schedule_incremental_sync_jobs(db)

    assert first == {
        "accounts_checked": 1,
        "jobs_created": 1,
        "duplicates_skipped": 0,
        "watch_jobs_queued": 1,
    }
    assert second["jobs_created"] == 0
    assert second["duplicates_skipped"] == 1
    assert len(_jobs(db, JobType.MAILBOX_SYNC)) == 1
    assert len(_jobs(db, JobType.GMAIL_WATCH_REFRESH)) == 1


def test_scheduled_poll_skips_accounts_needing_reauth(db, account):
    account.sync_status = AccountSyncStatus.NEEDS_REAUTH.value
    db.commit()

    result = sync_orchestrator.schedule_incremental_sync_jobs(db)

    assert result["accounts_checked"] == 0
    assert _jobs(db, JobType.MAILBOX_SYNC) == []


@pytest.mark.asyncio
async def test_watch_refresh_records_expiration(db, account, mailbox, monkeypatch):
    from mailgraph.core.config import settings

    monkeypatch.setattr(settings, "GMAIL_PUSH_TOPIC", "projects/p/topics/gmail")

    result = await sync_orchestrator.refresh_watch(db, account, mailbox)

    assert result == {"status": "renewed"}
    db.refresh(account)
    assert ensure_utc(account.watch_expiration_at) > utcnow() + timedelta(days=6)
    assert account.watch_last_error is None
    assert await sync_orchestrator.refresh_watch(db, account, mailbox) == {"status": "not_due"}
