"""Normalize Gmail ``format=raw`` messages into storable records."""

from __future__ import annotations

import base64
import binascii
import hashlib
import html as html_module
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email import policy
from email.parser import BytesParser
from email.utils import getaddresses, parsedate_to_datetime

from mailgraph.core.errors import PermanentError
from mailgraph.db.enums import EmailDirection
from mailgraph.utils.normalization import normalize_email, normalize_name
from mailgraph.utils.time import from_epoch_ms


@dataclass(frozen=True)
class Address:
    email: str
    name: str | None = None

    def as_dict(self) -> dict:
        return {"email": self.email, "name": self.name}


@dataclass
class ParsedMessage:
    provider_message_id: str
    thread_id: str | None
    rfc_message_id: str | None
    sender: Address | None
    to: list[Address] = field(default_factory=list)
    cc: list[Address] = field(default_factory=list)
    bcc: list[Address] = field(default_factory=list)
    subject: str | None = None
    snippet: str | None = None
    body_text: str | None = None
    body_html: str | None = None
    label_ids: list[str] = field(default_factory=list)
    sent_at: datetime | None = None
    history_id: int | None = None
    direction: EmailDirection = EmailDirection.INBOUND

    @property
    def content_hash(self) -> str:
        """Stable hash over the fields extraction reads."""
        digest = hashlib.sha256()
        for part in (
            self.sender.email if self.sender else "",
            self.sender.name if self.sender and self.sender.name else "",
            ",".join(a.email for a in self.to),
            ",".join(a.email for a in self.cc),
            ",".join(a.email for a in self.bcc),
            self.subject or "",
            self.body_text or "",
        ):
            digest.update(part.encode("utf-8"))
            digest.update(b"\x00")
        return digest.hexdigest()


def _addresses(header_value: str) -> list[Address]:
    out: list[Address] = []
    seen: set[str] = set()
    for name, raw_email in getaddresses([header_value]):
        email_addr = normalize_email(raw_email)
        if not email_addr or email_addr in seen:
            continue
        seen.add(email_addr)
        out.append(Address(email=email_addr, name=normalize_name(name)))
    return out


def html_to_text(content: str) -> str:
    """Convert HTML into readable text for extraction.

    Keeps line structure for block elements so signature detection still
    sees separate lines.
    """
    text = re.sub(r"<(script|style)[^>]*>.*?</\1>", "", content, flags=re.DOTALL | re.I)
    text = re.sub(r"<br\s*/?>|</(p|div|tr|li|h[1-6])>", "\n", text, flags=re.I)
    text = re.sub(r"<[^>]+>", " ", text)
    text = html_module.unescape(text)
    lines = [" ".join(line.split()) for line in text.splitlines()]
    return "\n".join(lines).strip()


def _decode_part(part) -> str | None:
    payload = part.get_payload(decode=True)
    if payload is None:
        return None
    charset = part.get_content_charset() or "utf-8"
    try:
        return payload.decode(charset, errors="replace")
    except LookupError:
        return payload.decode("utf-8", errors="replace")


def _decode_raw(raw: str) -> bytes:
    padded = raw + "=" * (-len(raw) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii"))
    except (binascii.Error, ValueError, UnicodeEncodeError) as exc:
        raise PermanentError("raw payload is not valid base64url") from exc


def _parse_history_id(value) -> int | None:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_gmail_message(data: dict, *, owner_email: str | None = None) -> ParsedMessage:
    """
    Parse a Gmail API message resource fetched with ``format=raw``.

    Raises:
        PermanentError: the message cannot be parsed (quarantine it).
    """
    if not isinstance(data, dict) or not data.get("id"):
        raise PermanentError("message resource has no id")
    raw = data.get("raw")
    if not raw:
        raise PermanentError("message resource has no raw payload")

    message = BytesParser(policy=policy.default).parsebytes(_decode_raw(str(raw)))

    try:
        senders = _addresses(str(message.get("From") or ""))
        to = _addresses(str(message.get("To") or ""))
        cc = _addresses(str(message.get("Cc") or ""))
        bcc = _addresses(str(message.get("Bcc") or ""))
        subject = str(message.get("Subject") or "").strip() or None
    except (ValueError, IndexError, TypeError) as exc:
        raise PermanentError(f"unparseable headers: {type(exc).__name__}") from exc

    if not senders:
        raise PermanentError("message has no parseable From address")
    sender = senders[0]

    sent_at = from_epoch_ms(data.get("internalDate"))
    if sent_at is None and message.get("Date"):
        try:
            sent_at = parsedate_to_datetime(str(message.get("Date")))
        except (TypeError, ValueError):
            sent_at = None
        if sent_at and sent_at.tzinfo is None:
            sent_at = sent_at.replace(tzinfo=timezone.utc)

    body_text = None
    body_html = None
    for part in message.walk() if message.is_multipart() else [message]:
        if part.is_multipart():
            continue
        disposition = str(part.get("Content-Disposition") or "").lower()
        if part.get_filename() or "attachment" in disposition:
            continue
        content_type = part.get_content_type()
        if content_type == "text/plain" and body_text is None:
            body_text = _decode_part(part)
        elif content_type == "text/html" and body_html is None:
            body_html = _decode_part(part)

    if body_text is None and body_html:
        body_text = html_to_text(body_html)

    owner = normalize_email(owner_email)
    direction = (
        EmailDirection.OUTBOUND if owner and sender.email == owner else EmailDirection.INBOUND
    )

    return ParsedMessage(
        provider_message_id=str(data["id"]),
        thread_id=data.get("threadId"),
        rfc_message_id=str(message.get("Message-ID") or "").strip() or None,
        sender=sender,
        to=to,
        cc=cc,
        bcc=bcc,
        subject=subject,
        snippet=data.get("snippet"),
        body_text=body_text,
        body_html=body_html,
        label_ids=[str(label) for label in data.get("labelIds") or []],
        sent_at=sent_at,
        history_id=_parse_history_id(data.get("historyId")),
        direction=direction,
    )
