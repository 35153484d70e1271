"""Typed job payloads.

Each JobType maps to exactly one pydantic model. Payloads are validated when
a job is enqueued and again when a worker claims it, so a handler never sees
a shape it does not understand.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, ValidationError, model_validator

from mailgraph.core.errors import PermanentError
from mailgraph.db.enums import JobType


class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class MailboxSyncPayload(_Payload):
    account_id: UUID
    mode: Literal["initial", "incremental", "backfill"] = "incremental"
    reason: str = "poll"
    push_history_id: int | None = None
    pubsub_message_id: str | None = None


class MailboxQuery(_Payload):
    """Either a history cursor (incremental) or a time window (initial/backfill)."""

    start_history_id: int | None = None
    after: datetime | None = None
    before: datetime | None = None

    @model_validator(mode="after")
    def _one_kind(self) -> "MailboxQuery":
        if self.start_history_id is None and self.after is None and self.before is None:
            raise ValueError("query needs start_history_id or a time window")
        if self.start_history_id is not None and (self.after or self.before):
            raise ValueError("query cannot mix history cursor and time window")
        return self


class SyncBatchPayload(_Payload):
    account_id: UUID
    mode: Literal["initial", "incremental", "backfill"]
    query: MailboxQuery
    page_token: str | None = None
    page_number: int = 1
    # Initial sync only: cursor to install once the window is exhausted.
    baseline_history_id: int | None = None


class MessageFetchPayload(_Payload):
    account_id: UUID
    provider_message_id: str
    history_id: int | None = None


class ContactExtractionPayload(_Payload):
    message_id: UUID


class ContactStatsRecalcPayload(_Payload):
    contact_id: UUID


class ContactEnrichmentPayload(_Payload):
    contact_id: UUID


class WatchRefreshPayload(_Payload):
    account_id: UUID
    reason: str = "scheduled"


JOB_PAYLOADS: dict[str, type[_Payload]] = {
    JobType.MAILBOX_SYNC.value: MailboxSyncPayload,
    JobType.SYNC_BATCH.value: SyncBatchPayload,
    JobType.MESSAGE_FETCH.value: MessageFetchPayload,
    JobType.CONTACT_EXTRACTION.value: ContactExtractionPayload,
    JobType.CONTACT_STATS_RECALC.value: ContactStatsRecalcPayload,
    JobType.CONTACT_ENRICHMENT.value: ContactEnrichmentPayload,
    JobType.GMAIL_WATCH_REFRESH.value: WatchRefreshPayload,
}


def _job_type_value(job_type: JobType | str) -> str:
    return job_type.value if isinstance(job_type, JobType) else str(job_type)


def validate_payload(job_type: JobType | str, payload: dict | BaseModel) -> _Payload:
    """Return the typed payload for ``job_type`` or raise PermanentError."""
    model = JOB_PAYLOADS.get(_job_type_value(job_type))
    if model is None:
        raise PermanentError(f"Unknown job type: {job_type}")
    if isinstance(payload, model):
        return payload
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json")
    try:
        return model.model_validate(payload or {})
    except ValidationError as exc:
        raise PermanentError(f"Invalid payload for {_job_type_value(job_type)}: {exc}") from exc


def dump_payload(job_type: JobType | str, payload: dict | BaseModel) -> dict:
    """Validate and serialise a payload for the JSON column."""
    return validate_payload(job_type, payload).model_dump(mode="json", exclude_none=True)
