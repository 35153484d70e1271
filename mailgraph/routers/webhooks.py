"""Webhooks router - mailbox provider push notifications."""

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from mailgraph.core.deps import get_db
from mailgraph.core.rate_limit import limiter, webhook_limit
from mailgraph.services.webhooks.gmail import GmailPushWebhookHandler

router = APIRouter()
logger = logging.getLogger(__name__)

gmail_push = GmailPushWebhookHandler()


@router.post("/google-gmail")
@limiter.limit(webhook_limit)
async def receive_gmail_push(
    request: Request,
    db: Session = Depends(get_db),
):
    """
    Receive a Gmail Pub/Sub push notification.

    Security:
    - Validates the shared verification token (query or header); 501 when unset outside test mode
    - Caps the payload size

    Processing:
    - Resolves the mailbox and queues an incremental sync (deduplicated per account)
    - Returns 202 fast; the worker does the fetching
    """
    return await gmail_push.handle(request, db)
