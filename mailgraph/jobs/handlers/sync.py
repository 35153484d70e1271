"""Mailbox sync job handlers."""

from __future__ import annotations

from mailgraph.services import batch_processor, job_service, sync_orchestrator
from mailgraph.services.gmail_client import get_mailbox_client


async def process_mailbox_sync(db, job) -> dict:
    """Run one initial / incremental / backfill step for an account."""
    payload = job_service.get_payload(job)
    return await sync_orchestrator.run_mailbox_sync(db, job, payload, get_mailbox_client())


async def process_sync_batch(db, job) -> dict:
    """Process a follow-up page of a sync run."""
    payload = job_service.get_payload(job)
    return await sync_orchestrator.run_sync_batch(db, job, payload, get_mailbox_client())


async def process_message_fetch(db, job) -> dict:
    """Retry a single message whose fetch failed inside a batch."""
    payload = job_service.get_payload(job)
    return await batch_processor.fetch_single_message(
        db,
        payload.account_id,
        payload.provider_message_id,
        get_mailbox_client(),
    )


async def process_gmail_watch_refresh(db, job) -> dict:
    """Create or renew the Gmail push subscription."""
    payload = job_service.get_payload(job)
    account = batch_processor.load_enabled_account(db, payload.account_id)
    return await sync_orchestrator.refresh_watch(db, account, get_mailbox_client())
