"""Job service - durable, prioritized, leased background job queue.

State machine::

    pending -> processing -> completed
    scheduled -> processing -> scheduled (retry / rate limited)
                            -> dead (attempts exhausted, auth expired, permanent)
    pending|scheduled -> cancelled (account unlinked)

``pending`` jobs are due now; ``scheduled`` jobs wait for ``run_at``. Both
count as *queued*. Claims are a compare-and-swap on status, so two workers
never hold the same job, and a partial unique index on ``dedupe_key`` keeps at
most one job per key in ``processing``. Enqueues of one key are serialized
(advisory lock on Postgres) so concurrent producers coalesce.
"""

from __future__ import annotations

import logging
import random
from datetime import datetime, timedelta
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy import func, or_, select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, aliased

from mailgraph.core.config import settings
from mailgraph.core.errors import PermanentError
from mailgraph.db.enums import (
    QUEUED_JOB_STATUSES,
    JobPriority,
    JobStatus,
    JobType,
)
from mailgraph.db.models import Job
from mailgraph.jobs.payloads import dump_payload, validate_payload
from mailgraph.utils.time import ensure_utc, utcnow

logger = logging.getLogger(__name__)

CLAIM_CANDIDATES = 10
MAX_ERROR_LENGTH = 2000


def _type_value(job_type: JobType | str) -> str:
    return job_type.value if isinstance(job_type, JobType) else str(job_type)


def _truncate(error: str | None) -> str | None:
    if error is None:
        return None
    return error[:MAX_ERROR_LENGTH]


# =============================================================================
# Backoff
# =============================================================================


def compute_backoff_seconds(
    attempt: int,
    *,
    base: float | None = None,
    max_delay: float | None = None,
    jitter: float | None = None,
    rng: random.Random | None = None,
) -> float:
    """
    Delay before retry number ``attempt`` (1-based).

    ``base * 2**(attempt-1)`` stretched by up to ``jitter`` (clamped to 0..1)
    and capped at ``max_delay``. With jitter <= 1 the largest delay for attempt
    n never exceeds the smallest for attempt n+1, so delays are non-decreasing.
    """
    base = settings.JOB_RETRY_BASE_DELAY if base is None else base
    max_delay = settings.JOB_RETRY_MAX_DELAY if max_delay is None else max_delay
    jitter = settings.JOB_RETRY_JITTER if jitter is None else jitter
    jitter = min(max(jitter, 0.0), 1.0)
    attempt = max(1, attempt)

    delay = base * (2 ** (attempt - 1))
    spread = (rng or random).uniform(0.0, jitter) if jitter else 0.0
    return min(delay * (1.0 + spread), max_delay)


# =============================================================================
# Enqueue
# =============================================================================


def _lock_dedupe_key(db: Session, dedupe_key: str) -> bool:
    """
    Serialize enqueues of one key until the transaction ends.

    The queued-job lookup below can come back empty for two writers at once;
    on Postgres a transaction-scoped advisory lock makes the second wait and
    then see the first one's row. SQLite already serializes writers.
    """
    if db.get_bind().dialect.name != "postgresql":
        return False
    db.execute(text("SELECT pg_advisory_xact_lock(hashtext(:key))"), {"key": dedupe_key})
    return True


def enqueue_job(
    db: Session,
    job_type: JobType | str,
    payload: dict | BaseModel,
    *,
    priority: JobPriority | int = JobPriority.NORMAL,
    run_at: datetime | None = None,
    max_attempts: int | None = None,
    dedupe_key: str | None = None,
    account_id: UUID | None = None,
    commit: bool = True,
) -> Job:
    """
    Enqueue a background job.

    The payload is validated against the job type's model (PermanentError on
    mismatch). With a ``dedupe_key``, an already-queued job for that key is
    returned instead of inserting a new one; it is merged by raising its
    priority and pulling ``run_at`` earlier, never pushing it later.
    """
    now = utcnow()
    type_value = _type_value(job_type)
    data = dump_payload(type_value, payload)
    run_at = ensure_utc(run_at) or now
    priority = int(priority)

    if dedupe_key:
        _lock_dedupe_key(db, dedupe_key)
        existing = (
            db.query(Job)
            .filter(
                Job.dedupe_key == dedupe_key,
                Job.status.in_(QUEUED_JOB_STATUSES),
            )
            .order_by(Job.run_at, Job.created_at)
            .with_for_update()
            .first()
        )
        if existing:
            _merge_queued_job(existing, priority=priority, run_at=run_at, now=now)
            if commit:
                db.commit()
            else:
                db.flush()
            logger.debug(
                "Coalesced %s into queued job %s (key=%s)",
                type_value,
                existing.id,
                dedupe_key,
            )
            return existing

    job = Job(
        job_type=type_value,
        payload=data,
        priority=priority,
        run_at=run_at,
        status=(JobStatus.SCHEDULED if run_at > now else JobStatus.PENDING).value,
        max_attempts=max_attempts or settings.JOB_DEFAULT_MAX_ATTEMPTS,
        dedupe_key=dedupe_key,
        account_id=account_id,
    )
    db.add(job)
    if commit:
        db.commit()
        db.refresh(job)
    else:
        db.flush()
    return job


def _merge_queued_job(job: Job, *, priority: int, run_at: datetime, now: datetime) -> None:
    if priority < job.priority:
        job.priority = priority
    current = ensure_utc(job.run_at)
    if run_at < current:
        job.run_at = run_at
        current = run_at
    if current <= now and job.status == JobStatus.SCHEDULED.value:
        job.status = JobStatus.PENDING.value


# =============================================================================
# Claim & lease
# =============================================================================


def claim_next_job(
    db: Session,
    worker_id: str,
    *,
    job_types: list[str] | None = None,
    now: datetime | None = None,
    lease_seconds: int | None = None,
) -> Job | None:
    """
    Atomically claim one ready job for ``worker_id``.

    Candidates are ordered by (priority, run_at, created_at); keys that already
    have a job in flight are skipped. Each candidate is taken with
    ``UPDATE ... WHERE status IN (pending, scheduled)`` so a lost race just
    moves on to the next one. Jobs whose stored payload no longer validates
    are moved to dead here rather than handed to a handler.
    """
    now = ensure_utc(now) or utcnow()
    lease_seconds = lease_seconds or settings.JOB_LEASE_SECONDS

    in_flight = aliased(Job)
    busy_keys = select(in_flight.dedupe_key).where(
        in_flight.status == JobStatus.PROCESSING.value,
        in_flight.dedupe_key.isnot(None),
    )

    query = db.query(Job).filter(
        Job.status.in_(QUEUED_JOB_STATUSES),
        Job.run_at <= now,
        or_(Job.dedupe_key.is_(None), Job.dedupe_key.not_in(busy_keys)),
    )
    if job_types:
        query = query.filter(Job.job_type.in_(job_types))

    candidates = (
        query.order_by(Job.priority, Job.run_at, Job.created_at)
        .limit(CLAIM_CANDIDATES)
        .with_for_update(skip_locked=True, of=Job)
        .all()
    )
    candidate_ids = [job.id for job in candidates]
    seen_keys: set[str] = set()

    for job_id, candidate in zip(candidate_ids, candidates):
        key = candidate.dedupe_key
        if key and key in seen_keys:
            continue
        try:
            claimed = (
                db.query(Job)
                .filter(Job.id == job_id, Job.status.in_(QUEUED_JOB_STATUSES))
                .update(
                    {
                        Job.status: JobStatus.PROCESSING.value,
                        Job.attempts: Job.attempts + 1,
                        Job.lease_expires_at: now + timedelta(seconds=lease_seconds),
                        Job.claimed_by: worker_id,
                        Job.started_at: now,
                        Job.updated_at: now,
                    },
                    synchronize_session=False,
                )
            )
            db.commit()
        except IntegrityError:
            # Another worker started a job with the same dedupe key.
            db.rollback()
            if key:
                seen_keys.add(key)
            continue

        if claimed != 1:
            continue

        job = db.get(Job, job_id, populate_existing=True)
        if job is None:
            continue
        try:
            validate_payload(job.job_type, job.payload)
        except PermanentError as exc:
            logger.error("Job %s has an invalid payload: %s", job.id, exc)
            mark_job_dead(db, job, str(exc))
            continue
        return job

    return None


def extend_lease(db: Session, job: Job, *, lease_seconds: int | None = None) -> bool:
    """Heartbeat a long-running job. Returns False if the lease was lost."""
    now = utcnow()
    lease_seconds = lease_seconds or settings.JOB_LEASE_SECONDS
    updated = (
        db.query(Job)
        .filter(
            Job.id == job.id,
            Job.status == JobStatus.PROCESSING.value,
            Job.claimed_by == job.claimed_by,
        )
        .update(
            {
                Job.lease_expires_at: now + timedelta(seconds=lease_seconds),
                Job.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    db.commit()
    return updated == 1


def recover_expired_leases(db: Session, *, now: datetime | None = None) -> int:
    """
    Return crashed workers' jobs to the queue.

    Expired ``processing`` jobs revert to ``pending`` (their claim already
    counted as an attempt), or to ``dead`` when attempts are exhausted.
    """
    now = ensure_utc(now) or utcnow()
    expired = (
        db.query(Job)
        .filter(
            Job.status == JobStatus.PROCESSING.value,
            Job.lease_expires_at.isnot(None),
            Job.lease_expires_at < now,
        )
        .all()
    )
    recovered = 0
    for job in expired:
        exhausted = job.attempts >= job.max_attempts
        values = {
            Job.status: (JobStatus.DEAD if exhausted else JobStatus.PENDING).value,
            Job.lease_expires_at: None,
            Job.claimed_by: None,
            Job.last_error: f"Lease expired (worker={job.claimed_by})",
            Job.updated_at: now,
        }
        if exhausted:
            values[Job.completed_at] = now
        else:
            values[Job.run_at] = now
        updated = (
            db.query(Job)
            .filter(
                Job.id == job.id,
                Job.status == JobStatus.PROCESSING.value,
                Job.lease_expires_at < now,
            )
            .update(values, synchronize_session=False)
        )
        if updated:
            recovered += 1
            logger.warning(
                "Recovered job %s (type=%s) from expired lease -> %s",
                job.id,
                job.job_type,
                "dead" if exhausted else "pending",
            )
    db.commit()
    return recovered


def get_payload(job: Job):
    """Typed payload for a claimed job."""
    return validate_payload(job.job_type, job.payload)


# =============================================================================
# Transitions out of processing
# =============================================================================


def _finish(db: Session, job: Job, values: dict) -> bool:
    """Apply a transition only while this worker still owns the job."""
    values[Job.updated_at] = utcnow()
    values.setdefault(Job.lease_expires_at, None)
    updated = (
        db.query(Job)
        .filter(
            Job.id == job.id,
            Job.status == JobStatus.PROCESSING.value,
            Job.claimed_by == job.claimed_by,
        )
        .update(values, synchronize_session=False)
    )
    db.commit()
    db.refresh(job)
    if updated != 1:
        logger.warning("Job %s lost its lease before %s", job.id, values.get(Job.status))
        return False
    return True


def mark_job_completed(db: Session, job: Job) -> Job:
    """Mark a job as completed."""
    now = utcnow()
    _finish(
        db,
        job,
        {
            Job.status: JobStatus.COMPLETED.value,
            Job.completed_at: now,
            Job.last_error: None,
        },
    )
    return job


def mark_job_failed(
    db: Session,
    job: Job,
    error: str,
    *,
    rng: random.Random | None = None,
) -> Job:
    """
    Mark a job as failed.

    If attempts < max_attempts, reschedule with exponential backoff;
    otherwise move it to dead.
    """
    if job.attempts >= job.max_attempts:
        return mark_job_dead(db, job, error)

    delay = compute_backoff_seconds(job.attempts, rng=rng)
    _finish(
        db,
        job,
        {
            Job.status: JobStatus.SCHEDULED.value,
            Job.run_at: utcnow() + timedelta(seconds=delay),
            Job.last_error: _truncate(error),
            Job.claimed_by: None,
        },
    )
    logger.info("Job %s retry %s/%s in %.1fs", job.id, job.attempts, job.max_attempts, delay)
    return job


def reschedule_rate_limited(db: Session, job: Job, retry_after: float, error: str) -> Job:
    """
    Put a throttled job back after the provider's delay.

    The claim's attempt is refunded: throttling counts against
    ``rate_limit_hits`` (budget ``JOB_MAX_RATE_LIMIT_HITS``), not ``attempts``.
    """
    hits = (job.rate_limit_hits or 0) + 1
    if hits > settings.JOB_MAX_RATE_LIMIT_HITS:
        job_error = f"Rate limit budget exhausted after {hits - 1} reschedules: {error}"
        return mark_job_dead(db, job, job_error)

    _finish(
        db,
        job,
        {
            Job.status: JobStatus.SCHEDULED.value,
            Job.run_at: utcnow() + timedelta(seconds=retry_after),
            Job.attempts: max(0, job.attempts - 1),
            Job.rate_limit_hits: hits,
            Job.last_error: _truncate(error),
            Job.claimed_by: None,
        },
    )
    return job


def mark_job_dead(db: Session, job: Job, error: str) -> Job:
    """Terminal failure; stays visible for operators (list_dead_jobs)."""
    _finish(
        db,
        job,
        {
            Job.status: JobStatus.DEAD.value,
            Job.completed_at: utcnow(),
            Job.last_error: _truncate(error),
        },
    )
    return job


def mark_job_cancelled(db: Session, job: Job, reason: str = "cancelled") -> Job:
    """Running job observed its cancellation flag and exited."""
    _finish(
        db,
        job,
        {
            Job.status: JobStatus.CANCELLED.value,
            Job.completed_at: utcnow(),
            Job.last_error: _truncate(reason),
        },
    )
    return job


# =============================================================================
# Cancellation
# =============================================================================


def cancel_account_jobs(db: Session, account_id: UUID, reason: str = "account unlinked") -> dict:
    """
    Cancel all queued jobs for an account and flag its running ones.

    Does not wait for in-flight jobs; they observe ``cancel_requested`` at
    their next page/batch boundary.
    """
    now = utcnow()
    cancelled = (
        db.query(Job)
        .filter(Job.account_id == account_id, Job.status.in_(QUEUED_JOB_STATUSES))
        .update(
            {
                Job.status: JobStatus.CANCELLED.value,
                Job.completed_at: now,
                Job.last_error: reason,
                Job.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    flagged = (
        db.query(Job)
        .filter(Job.account_id == account_id, Job.status == JobStatus.PROCESSING.value)
        .update(
            {Job.cancel_requested: True, Job.updated_at: now},
            synchronize_session=False,
        )
    )
    db.commit()
    logger.info(
        "Cancelled %s queued and flagged %s running jobs for account %s",
        cancelled,
        flagged,
        account_id,
    )
    return {"cancelled": cancelled, "flagged": flagged}


def is_cancel_requested(db: Session, job_id: UUID) -> bool:
    """Re-read the cancellation flag (another process may have set it)."""
    value = db.execute(select(Job.cancel_requested).where(Job.id == job_id)).scalar_one_or_none()
    return bool(value)


# =============================================================================
# Queries & operator surface
# =============================================================================


def get_job(db: Session, job_id: UUID) -> Job | None:
    """Get a job by ID."""
    return db.query(Job).filter(Job.id == job_id).first()


def list_jobs(
    db: Session,
    *,
    status: JobStatus | None = None,
    job_type: JobType | None = None,
    account_id: UUID | None = None,
    limit: int = 50,
) -> list[Job]:
    """List jobs with optional filters, newest first."""
    query = db.query(Job)
    if status:
        query = query.filter(Job.status == status.value)
    if job_type:
        query = query.filter(Job.job_type == job_type.value)
    if account_id:
        query = query.filter(Job.account_id == account_id)
    return query.order_by(Job.created_at.desc()).limit(limit).all()


def list_dead_jobs(db: Session, *, account_id: UUID | None = None, limit: int = 50) -> list[Job]:
    """Dead-letter view."""
    return list_jobs(db, status=JobStatus.DEAD, account_id=account_id, limit=limit)


def requeue_dead_job(db: Session, job_id: UUID, *, max_attempts: int | None = None) -> Job | None:
    """Give a dead job a fresh attempt budget. Returns None if not dead."""
    job = get_job(db, job_id)
    if not job or job.status != JobStatus.DEAD.value:
        return None
    now = utcnow()
    job.status = JobStatus.PENDING.value
    job.run_at = now
    job.attempts = 0
    job.rate_limit_hits = 0
    job.lease_expires_at = None
    job.claimed_by = None
    job.cancel_requested = False
    job.completed_at = None
    if max_attempts:
        job.max_attempts = max_attempts
    db.commit()
    db.refresh(job)
    logger.info("Requeued dead job %s (type=%s)", job.id, job.job_type)
    return job


def count_active_jobs(db: Session, account_id: UUID) -> dict[str, dict[str, int]]:
    """{job_type: {status: count}} for queued/processing jobs of an account."""
    rows = (
        db.query(Job.job_type, Job.status, func.count(Job.id))
        .filter(
            Job.account_id == account_id,
            Job.status.in_((*QUEUED_JOB_STATUSES, JobStatus.PROCESSING.value)),
        )
        .group_by(Job.job_type, Job.status)
        .all()
    )
    summary: dict[str, dict[str, int]] = {}
    for job_type, status, count in rows:
        summary.setdefault(job_type, {})[status] = count
    return summary
