"""
Background worker for processing queued jobs.

Usage:
    python -m mailgraph.worker

Runs ``WORKER_CONCURRENCY`` claim loops over the shared job queue, each with
its own database session, plus a sweeper that returns jobs with expired
leases to the queue. For production, run this as a separate process (or via
``mailgraph.worker_service`` behind a health endpoint).
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import socket

from mailgraph.core.config import settings
from mailgraph.core.errors import (
    AuthExpiredError,
    InvariantViolation,
    JobCancelled,
    PermanentError,
    RateLimitedError,
)
from mailgraph.core.structured_logging import (
    build_log_context,
    configure_logging,
    report_exception,
    setup_error_reporting,
)
from mailgraph.db.enums import JobStatus, JobType
from mailgraph.db.session import SessionLocal
from mailgraph.jobs.registry import JOB_HANDLERS, resolve_job_handler
from mailgraph.services import job_service, sync_orchestrator
from mailgraph.services.gmail_client import get_mailbox_client

logger = logging.getLogger(__name__)

_SYNC_JOB_TYPES = {JobType.MAILBOX_SYNC.value, JobType.SYNC_BATCH.value}


def parse_worker_job_types(raw: str | None) -> list[str] | None:
    """``WORKER_JOB_TYPES`` as a list; empty means every registered type."""
    if not raw:
        return None
    requested = [item.strip() for item in raw.split(",") if item.strip()]
    unknown = [item for item in requested if item not in JOB_HANDLERS]
    if unknown:
        raise ValueError(f"Unknown job types in WORKER_JOB_TYPES: {', '.join(unknown)}")
    return requested or None


def _worker_id(index: int) -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{index}"


def _log_context(job) -> dict:
    return build_log_context(
        account_id=str(job.account_id) if job.account_id else None,
        job_id=str(job.id),
        job_type=job.job_type,
        route="worker",
        method="background",
    )


async def _heartbeat(job_id, claimed_by: str, interval: float) -> None:
    """Keep the lease alive while a long handler runs."""
    while True:
        await asyncio.sleep(interval)
        with SessionLocal() as db:
            job = job_service.get_job(db, job_id)
            if job is None or job.claimed_by != claimed_by:
                return
            if not job_service.extend_lease(db, job):
                logger.warning("Lost lease on job %s", job_id)
                return


async def execute_job(db, job) -> str:
    """
    Run the handler for a claimed job and record the outcome.

    Returns the job's resulting status. Exceptions are classified here; none
    escape except the worker's own cancellation.
    """
    context = _log_context(job)
    logger.info(
        "Processing job %s (type=%s, attempt=%s)",
        job.id,
        job.job_type,
        job.attempts,
        extra=context,
    )
    heartbeat = asyncio.create_task(
        _heartbeat(job.id, job.claimed_by, max(1.0, settings.JOB_LEASE_SECONDS / 3))
    )
    try:
        handler = resolve_job_handler(job.job_type)
        result = await handler(db, job)
    except JobCancelled as exc:
        db.rollback()
        job_service.mark_job_cancelled(db, job, str(exc))
        logger.info("Job %s cancelled: %s", job.id, exc, extra=context)
    except RateLimitedError as exc:
        db.rollback()
        job_service.reschedule_rate_limited(db, job, exc.retry_after, str(exc))
        logger.info("Job %s rate limited, retry in %.0fs", job.id, exc.retry_after, extra=context)
    except AuthExpiredError as exc:
        db.rollback()
        job_service.mark_job_dead(db, job, f"AuthExpiredError: {exc}")
        if job.account_id:
            sync_orchestrator.mark_needs_reauth(db, job.account_id, str(exc))
    except InvariantViolation as exc:
        db.rollback()
        logger.error("Invariant violated in job %s: %s", job.id, exc, extra=context)
        report_exception(exc)
        job_service.mark_job_dead(db, job, f"InvariantViolation: {exc}")
    except PermanentError as exc:
        db.rollback()
        logger.warning("Job %s failed permanently: %s", job.id, exc.reason, extra=context)
        job_service.mark_job_dead(db, job, f"PermanentError: {exc.reason}")
    except Exception as exc:
        db.rollback()
        logger.error("Job %s failed: %s", job.id, type(exc).__name__, extra=context)
        job_service.mark_job_failed(db, job, f"{type(exc).__name__}: {exc}")
        if job.status == JobStatus.DEAD.value:
            report_exception(exc)
    else:
        job_service.mark_job_completed(db, job)
        logger.info("Job %s completed: %s", job.id, result, extra=context)
    finally:
        heartbeat.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await heartbeat

    if job.status == JobStatus.DEAD.value and job.account_id and job.job_type in _SYNC_JOB_TYPES:
        sync_orchestrator.mark_degraded(db, job.account_id, "sync_job_dead")
    return job.status


async def _sleep(stop: asyncio.Event, seconds: float) -> None:
    with contextlib.suppress(asyncio.TimeoutError):
        await asyncio.wait_for(stop.wait(), timeout=seconds)


async def worker_loop(
    index: int = 0,
    *,
    stop: asyncio.Event | None = None,
    job_types: list[str] | None = None,
) -> None:
    """Claim and run jobs until ``stop`` is set."""
    stop = stop or asyncio.Event()
    worker_id = _worker_id(index)
    logger.info("Worker %s starting (job types: %s)", worker_id, job_types or "all")
    while not stop.is_set():
        processed = False
        with SessionLocal() as db:
            try:
                job = job_service.claim_next_job(db, worker_id, job_types=job_types)
                if job is not None:
                    await execute_job(db, job)
                    processed = True
            except Exception as exc:
                logger.exception("Error in worker loop %s", worker_id)
                report_exception(exc)
        if not processed:
            await _sleep(stop, settings.WORKER_POLL_INTERVAL)


async def lease_sweeper(stop: asyncio.Event) -> None:
    while not stop.is_set():
        with SessionLocal() as db:
            try:
                recovered = job_service.recover_expired_leases(db)
                if recovered:
                    logger.warning("Recovered %s jobs from expired leases", recovered)
            except Exception as exc:
                logger.exception("Lease sweep failed")
                report_exception(exc)
        await _sleep(stop, settings.WORKER_LEASE_SWEEP_SECONDS)


async def run_worker(
    *,
    concurrency: int | None = None,
    job_types: list[str] | None = None,
    stop: asyncio.Event | None = None,
) -> None:
    """Run the worker pool until ``stop`` is set or the task is cancelled."""
    stop = stop or asyncio.Event()
    concurrency = max(1, concurrency or settings.WORKER_CONCURRENCY)
    if job_types is None:
        job_types = parse_worker_job_types(settings.WORKER_JOB_TYPES)
    logger.info(
        "Worker pool starting (concurrency=%s, poll interval=%ss)",
        concurrency,
        settings.WORKER_POLL_INTERVAL,
    )
    tasks = [
        asyncio.create_task(worker_loop(i, stop=stop, job_types=job_types))
        for i in range(concurrency)
    ]
    tasks.append(asyncio.create_task(lease_sweeper(stop)))
    try:
        await asyncio.gather(*tasks)
    finally:
        stop.set()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        client = get_mailbox_client()
        aclose = getattr(client, "aclose", None)
        if aclose is not None:
            await aclose()


def main() -> None:
    """Entry point for the worker."""
    configure_logging()
    setup_error_reporting("mailgraph-worker")
    try:
        asyncio.run(run_worker())
    except KeyboardInterrupt:
        logger.info("Worker shutting down")
    except Exception as exc:
        report_exception(exc)
        logger.exception(
            "Worker crashed",
            extra=build_log_context(route="worker", method="background"),
        )
        raise


if __name__ == "__main__":
    main()
