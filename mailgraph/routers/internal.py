"""
Internal endpoints for scheduled/cron operations.

Protected by X-Internal-Secret header.
Call from external cron (Cloud Scheduler, GH Actions).
"""

import logging

from fastapi import APIRouter, Depends

from mailgraph.core.deps import verify_internal_secret
from mailgraph.core.structured_logging import build_log_context
from mailgraph.db.session import SessionLocal
from mailgraph.schemas.account import ScheduledSyncResponse
from mailgraph.services import sync_orchestrator

router = APIRouter(
    prefix="/internal/scheduled",
    tags=["internal"],
    dependencies=[Depends(verify_internal_secret)],
)
logger = logging.getLogger(__name__)


@router.post("/mail-sync", response_model=ScheduledSyncResponse)
def schedule_mail_sync():
    """
    Fallback poll for every enabled account.

    Queues an incremental sync per account (deduplicated against any queued
    sync) and a watch renewal where the push subscription is close to expiry.
    """
    with SessionLocal() as db:
        result = sync_orchestrator.schedule_incremental_sync_jobs(db)
    logger.info(
        "Scheduled mail sync: %s",
        result,
        extra=build_log_context(route="/internal/scheduled/mail-sync", method="POST"),
    )
    return ScheduledSyncResponse(**result)
