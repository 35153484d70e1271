"""Jobs router - inspect the job queue and the dead-letter view (internal only)."""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from mailgraph.core.deps import get_db, verify_internal_secret
from mailgraph.db.enums import JobStatus, JobType
from mailgraph.schemas.job import JobListItem, JobRead, JobRequeue
from mailgraph.services import job_service

router = APIRouter(tags=["Jobs"], dependencies=[Depends(verify_internal_secret)])


@router.get("", response_model=list[JobListItem])
def list_jobs(
    status: JobStatus | None = None,
    job_type: JobType | None = None,
    account_id: UUID | None = None,
    limit: int = 50,
    db: Session = Depends(get_db),
):
    """List recent jobs, newest first."""
    return job_service.list_jobs(
        db,
        status=status,
        job_type=job_type,
        account_id=account_id,
        limit=min(limit, 100),
    )


@router.get("/dead", response_model=list[JobListItem])
def list_dead_jobs(
    account_id: UUID | None = None,
    limit: int = 50,
    db: Session = Depends(get_db),
):
    """Dead-letter view: jobs that exhausted retries or failed permanently."""
    return job_service.list_dead_jobs(db, account_id=account_id, limit=min(limit, 100))


@router.get("/{job_id}", response_model=JobRead)
def get_job(job_id: UUID, db: Session = Depends(get_db)):
    """Get a job by ID."""
    job = job_service.get_job(db, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@router.post("/{job_id}/requeue", response_model=JobRead)
def requeue_job(
    job_id: UUID,
    body: JobRequeue | None = None,
    db: Session = Depends(get_db),
):
    """Return a dead job to the queue with a fresh attempt budget."""
    job = job_service.get_job(db, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    requeued = job_service.requeue_dead_job(
        db, job_id, max_attempts=body.max_attempts if body else None
    )
    if not requeued:
        raise HTTPException(status_code=409, detail=f"Job is {job.status}, only dead jobs can be requeued")
    return requeued
