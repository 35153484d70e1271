"""Job queue ORM model."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    Index,
    Integer,
    String,
    Text,
    false,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from mailgraph.db.base import Base
from mailgraph.db.enums import JobPriority, JobStatus
from mailgraph.utils.time import utcnow

_PROCESSING_WITH_KEY = "status = 'processing' AND dedupe_key IS NOT NULL"


class Job(Base):
    """
    Background job for async processing.

    Used for: mailbox sync, page batches, contact extraction, stats recalc,
    enrichment and watch renewal. Workers claim ready jobs by
    (priority, run_at, created_at) and hold them under a lease.
    """

    __tablename__ = "jobs"
    __table_args__ = (
        Index("idx_jobs_ready", "status", "priority", "run_at"),
        Index("idx_jobs_account_status", "account_id", "status"),
        Index("idx_jobs_dedupe_key", "dedupe_key", "status"),
        # At most one in-flight job per dedupe key; keyed work is serialized.
        Index(
            "uq_jobs_dedupe_processing",
            "dedupe_key",
            unique=True,
            postgresql_where=text(_PROCESSING_WITH_KEY),
            sqlite_where=text(_PROCESSING_WITH_KEY),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)

    job_type: Mapped[str] = mapped_column(String(50), nullable=False)
    payload: Mapped[dict] = mapped_column(nullable=False, default=dict)
    priority: Mapped[int] = mapped_column(
        Integer, nullable=False, default=JobPriority.NORMAL.value
    )
    run_at: Mapped[datetime] = mapped_column(
        nullable=False, default=utcnow, server_default=func.now()
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=JobStatus.PENDING.value
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=5, server_default=text("5"))
    # Provider throttling is budgeted separately from attempts.
    rate_limit_hits: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text("0")
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    dedupe_key: Mapped[str | None] = mapped_column(String(255), nullable=True)

    lease_expires_at: Mapped[datetime | None] = mapped_column(nullable=True)
    claimed_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    cancel_requested: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )

    created_at: Mapped[datetime] = mapped_column(
        nullable=False, default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        nullable=False, default=utcnow, onupdate=utcnow, server_default=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return f"<Job {self.id} {self.job_type} {self.status}>"
