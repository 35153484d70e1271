"""Gmail Pub/Sub push webhook handler."""

from __future__ import annotations

import base64
import binascii
import hmac
import json
import logging

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from mailgraph.core.config import settings
from mailgraph.core.structured_logging import build_log_context, report_exception
from mailgraph.jobs.events import SyncEvent, emit
from mailgraph.services import sync_orchestrator
from mailgraph.utils.normalization import mask_email, normalize_email

logger = logging.getLogger(__name__)
MAX_PAYLOAD_BYTES = 256 * 1024


async def _read_body_safe(request: Request) -> bytes:
    content_length = request.headers.get("content-length")
    if content_length:
        try:
            if int(content_length) > MAX_PAYLOAD_BYTES:
                raise HTTPException(413, "Payload too large")
        except ValueError:
            pass

    chunks: list[bytes] = []
    total = 0
    async for chunk in request.stream():
        if not chunk:
            continue
        total += len(chunk)
        if total > MAX_PAYLOAD_BYTES:
            raise HTTPException(413, "Payload too large")
        chunks.append(chunk)
    return b"".join(chunks)


def _verify_token(request: Request) -> None:
    expected = settings.GMAIL_PUSH_VERIFICATION_TOKEN
    if not expected:
        if settings.GMAIL_PUSH_TEST_MODE:
            return
        logger.error("Gmail push webhook rejected: GMAIL_PUSH_VERIFICATION_TOKEN not configured")
        raise HTTPException(501, "GMAIL_PUSH_VERIFICATION_TOKEN not configured")
    provided = request.query_params.get("token") or request.headers.get("X-Goog-Channel-Token") or ""
    if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        logger.warning("Gmail push webhook rejected: bad verification token")
        raise HTTPException(403, "Invalid verification token")


def decode_push_message(body: bytes) -> tuple[str | None, int | None, str | None]:
    """
    Unwrap a Pub/Sub push envelope.

    Returns (email_address, history_id, pubsub_message_id); fields that are
    missing or malformed come back as None.
    """
    try:
        envelope = json.loads(body or b"{}")
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None, None, None
    message = envelope.get("message") if isinstance(envelope, dict) else None
    if not isinstance(message, dict):
        return None, None, None

    pubsub_message_id = message.get("messageId") or message.get("message_id")
    data = message.get("data")
    if not data:
        return None, None, pubsub_message_id
    try:
        decoded = json.loads(base64.b64decode(str(data) + "=" * (-len(str(data)) % 4)))
    except (binascii.Error, ValueError):
        return None, None, pubsub_message_id
    if not isinstance(decoded, dict):
        return None, None, pubsub_message_id

    history_id = decoded.get("historyId")
    try:
        history_id = int(history_id) if history_id not in (None, "") else None
    except (TypeError, ValueError):
        history_id = None
    return decoded.get("emailAddress"), history_id, pubsub_message_id


class GmailPushWebhookHandler:
    async def handle(self, request: Request, db: Session, **kwargs):
        """
        Receive a Gmail push notification and queue an incremental sync.

        Answers 202 for anything authenticated, including unknown mailboxes
        and internal failures, so Pub/Sub does not redeliver in a loop; the
        fallback poll covers anything dropped here.
        """
        body = await _read_body_safe(request)
        _verify_token(request)

        email_address, history_id, pubsub_message_id = decode_push_message(body)
        email = normalize_email(email_address)
        if not email:
            return JSONResponse(status_code=202, content={"status": "ignored", "reason": "missing_email"})

        try:
            account = sync_orchestrator.get_account_by_email(db, email)
            if account is None:
                logger.info("Gmail push for unknown mailbox %s", mask_email(email))
                return JSONResponse(
                    status_code=202, content={"status": "ignored", "reason": "account_not_found"}
                )
            emit(
                db,
                SyncEvent.PUSH_RECEIVED,
                account_id=account.id,
                push_history_id=history_id,
                pubsub_message_id=pubsub_message_id,
            )
        except Exception as exc:
            db.rollback()
            logger.error(
                "Gmail push enqueue failed for %s: %s",
                mask_email(email),
                type(exc).__name__,
                extra=build_log_context(route="/webhooks/google-gmail", method="POST"),
            )
            report_exception(exc)
            return JSONResponse(status_code=202, content={"status": "error"})

        return JSONResponse(status_code=202, content={"status": "accepted"})
