"""Job handler registry."""

from __future__ import annotations

from typing import Awaitable, Callable, Mapping

from mailgraph.db.enums import JobType
from mailgraph.jobs.handlers import contacts, sync

JobHandler = Callable[[object, object], Awaitable[object]]

JOB_HANDLERS: Mapping[str, JobHandler] = {
    JobType.MAILBOX_SYNC.value: sync.process_mailbox_sync,
    JobType.SYNC_BATCH.value: sync.process_sync_batch,
    JobType.MESSAGE_FETCH.value: sync.process_message_fetch,
    JobType.GMAIL_WATCH_REFRESH.value: sync.process_gmail_watch_refresh,
    JobType.CONTACT_EXTRACTION.value: contacts.process_contact_extraction,
    JobType.CONTACT_STATS_RECALC.value: contacts.process_contact_stats_recalc,
    JobType.CONTACT_ENRICHMENT.value: contacts.process_contact_enrichment,
}


def resolve_job_handler(job_type: str) -> JobHandler:
    handler = JOB_HANDLERS.get(job_type)
    if handler is None:
        raise ValueError(f"Unknown job type: {job_type}")
    return handler
