"""Event -> job table.

Every follow-up job in the pipeline is enqueued through ``emit``; this
module is the one place that says which events fan out to which jobs, with
what priority, delay and dedupe key.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Callable, Mapping
from uuid import UUID

from sqlalchemy.orm import Session

from mailgraph.core.config import settings
from mailgraph.db.enums import JobPriority, JobType
from mailgraph.db.models import Job
from mailgraph.services import job_service
from mailgraph.utils.time import utcnow

logger = logging.getLogger(__name__)


class SyncEvent(str, Enum):
    ACCOUNT_LINKED = "account_linked"
    PUSH_RECEIVED = "push_received"
    POLL_TICK = "poll_tick"
    CURSOR_EXPIRED = "cursor_expired"
    INITIAL_SYNC_COMPLETED = "initial_sync_completed"
    BACKFILL_WINDOW_COMPLETED = "backfill_window_completed"
    MESSAGE_STORED = "message_stored"
    MESSAGE_FETCH_FAILED = "message_fetch_failed"
    CONTACT_CREATED = "contact_created"
    INTERACTIONS_CHANGED = "interactions_changed"
    WATCH_DUE = "watch_due"


def sync_lane(mode: str, account_id) -> str:
    """Dedupe key shared by a sync mode's orchestrator job and its page batches."""
    prefix = {"initial": "initial", "incremental": "sync", "backfill": "backfill"}[mode]
    return f"{prefix}:{account_id}"


@dataclass(frozen=True)
class JobSpec:
    job_type: JobType
    priority: JobPriority
    dedupe_key: Callable[[dict], str | None]
    payload: Callable[[dict], dict]
    delay_seconds: Callable[[], float] | None = None


def _mailbox_sync(mode: str, reason: str) -> Callable[[dict], dict]:
    def build(ctx: dict) -> dict:
        payload = {"account_id": ctx["account_id"], "mode": mode, "reason": ctx.get("reason", reason)}
        if ctx.get("push_history_id") is not None:
            payload["push_history_id"] = ctx["push_history_id"]
        if ctx.get("pubsub_message_id"):
            payload["pubsub_message_id"] = ctx["pubsub_message_id"]
        return payload

    return build


EVENT_JOBS: Mapping[SyncEvent, tuple[JobSpec, ...]] = {
    SyncEvent.ACCOUNT_LINKED: (
        JobSpec(
            JobType.MAILBOX_SYNC,
            JobPriority.HIGH,
            lambda ctx: sync_lane("initial", ctx["account_id"]),
            _mailbox_sync("initial", "account_linked"),
        ),
        JobSpec(
            JobType.GMAIL_WATCH_REFRESH,
            JobPriority.NORMAL,
            lambda ctx: f"watch:{ctx['account_id']}",
            lambda ctx: {"account_id": ctx["account_id"], "reason": "account_linked"},
        ),
    ),
    # Push outranks the poll; both coalesce in the incremental lane.
    SyncEvent.PUSH_RECEIVED: (
        JobSpec(
            JobType.MAILBOX_SYNC,
            JobPriority.HIGH,
            lambda ctx: sync_lane("incremental", ctx["account_id"]),
            _mailbox_sync("incremental", "gmail_push"),
        ),
    ),
    SyncEvent.POLL_TICK: (
        JobSpec(
            JobType.MAILBOX_SYNC,
            JobPriority.NORMAL,
            lambda ctx: sync_lane("incremental", ctx["account_id"]),
            _mailbox_sync("incremental", "poll"),
        ),
    ),
    SyncEvent.CURSOR_EXPIRED: (
        JobSpec(
            JobType.MAILBOX_SYNC,
            JobPriority.HIGH,
            lambda ctx: sync_lane("initial", ctx["account_id"]),
            _mailbox_sync("initial", "cursor_expired"),
        ),
    ),
    SyncEvent.INITIAL_SYNC_COMPLETED: (
        JobSpec(
            JobType.MAILBOX_SYNC,
            JobPriority.LOW,
            lambda ctx: sync_lane("backfill", ctx["account_id"]),
            _mailbox_sync("backfill", "initial_sync_completed"),
            delay_seconds=lambda: settings.SYNC_BACKFILL_YIELD_SECONDS,
        ),
    ),
    # Yield between windows so incremental work interleaves.
    SyncEvent.BACKFILL_WINDOW_COMPLETED: (
        JobSpec(
            JobType.MAILBOX_SYNC,
            JobPriority.LOW,
            lambda ctx: sync_lane("backfill", ctx["account_id"]),
            _mailbox_sync("backfill", "backfill_window_completed"),
            delay_seconds=lambda: settings.SYNC_BACKFILL_YIELD_SECONDS,
        ),
    ),
    SyncEvent.MESSAGE_STORED: (
        JobSpec(
            JobType.CONTACT_EXTRACTION,
            JobPriority.NORMAL,
            lambda ctx: f"extract:{ctx['message_id']}",
            lambda ctx: {"message_id": ctx["message_id"]},
        ),
    ),
    SyncEvent.MESSAGE_FETCH_FAILED: (
        JobSpec(
            JobType.MESSAGE_FETCH,
            JobPriority.NORMAL,
            lambda ctx: f"fetch:{ctx['account_id']}:{ctx['provider_message_id']}",
            lambda ctx: {
                "account_id": ctx["account_id"],
                "provider_message_id": ctx["provider_message_id"],
            },
            delay_seconds=lambda: settings.JOB_RETRY_BASE_DELAY,
        ),
    ),
    SyncEvent.CONTACT_CREATED: (
        JobSpec(
            JobType.CONTACT_ENRICHMENT,
            JobPriority.LOW,
            lambda ctx: f"enrich:{ctx['contact_id']}",
            lambda ctx: {"contact_id": ctx["contact_id"]},
        ),
    ),
    # Debounced: bursts of interactions collapse into one recalc.
    SyncEvent.INTERACTIONS_CHANGED: (
        JobSpec(
            JobType.CONTACT_STATS_RECALC,
            JobPriority.LOW,
            lambda ctx: f"contact_stats:{ctx['contact_id']}",
            lambda ctx: {"contact_id": ctx["contact_id"]},
            delay_seconds=lambda: settings.STATS_DEBOUNCE_SECONDS,
        ),
    ),
    SyncEvent.WATCH_DUE: (
        JobSpec(
            JobType.GMAIL_WATCH_REFRESH,
            JobPriority.NORMAL,
            lambda ctx: f"watch:{ctx['account_id']}",
            lambda ctx: {"account_id": ctx["account_id"], "reason": ctx.get("reason", "scheduled")},
        ),
    ),
}


def emit(db: Session, event: SyncEvent, *, commit: bool = True, **ctx) -> list[Job]:
    """Enqueue every job registered for ``event``."""
    specs = EVENT_JOBS.get(event)
    if specs is None:
        raise ValueError(f"No jobs registered for event {event}")

    ctx = {key: _stringify_ids(value) for key, value in ctx.items()}
    now = utcnow()
    jobs: list[Job] = []
    for spec in specs:
        delay = spec.delay_seconds() if spec.delay_seconds else 0
        account_id = ctx.get("account_id")
        jobs.append(
            job_service.enqueue_job(
                db,
                spec.job_type,
                spec.payload(ctx),
                priority=spec.priority,
                run_at=now + timedelta(seconds=delay) if delay else now,
                dedupe_key=spec.dedupe_key(ctx),
                account_id=_as_uuid(account_id),
                commit=commit,
            )
        )
    logger.debug("Emitted %s -> %s", event.value, [job.job_type for job in jobs])
    return jobs


def _stringify_ids(value):
    return str(value) if isinstance(value, UUID) else value


def _as_uuid(value) -> UUID | None:
    if value is None:
        return None
    return value if isinstance(value, UUID) else UUID(str(value))
