"""
Extraction strategies.

Each strategy reads an ``ExtractionContext`` and returns candidates. The
runner isolates them: a strategy that raises is logged and contributes
nothing, and addresses belonging to the mailbox owner are dropped.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Protocol

from mailgraph.db.enums import ExtractionSource
from mailgraph.db.models import Message
from mailgraph.services.extraction.candidates import ExtractedContactCandidate
from mailgraph.services.extraction.domain import classify_address
from mailgraph.services.extraction.signature import (
    EMAIL_RE,
    parse_signature,
    strip_quoted_text,
)
from mailgraph.utils.normalization import name_from_local_part, normalize_email, normalize_name

logger = logging.getLogger(__name__)

HEADER_SENDER_CONFIDENCE = 1.0
HEADER_RECIPIENT_CONFIDENCE = 0.9
SIGNATURE_CONFIDENCE = 0.7
DOMAIN_CONFIDENCE = 0.6
ROLE_ADDRESS_FACTOR = 0.5
BODY_CONFIDENCE = 0.5

# "Jane Doe <jane@x.com>" / "Jane Doe (jane@x.com)" in free text.
_NAMED_ADDRESS_RE = re.compile(
    r"([A-Z][\w'.-]+(?:[ \t]+[A-Z][\w'.-]+){1,3})[ \t]*[<(]\s*("
    + EMAIL_RE.pattern.replace(r"\b", "")
    + r")\s*[>)]"
)


@dataclass
class ExtractionContext:
    sender: dict | None
    to: list[dict] = field(default_factory=list)
    cc: list[dict] = field(default_factory=list)
    bcc: list[dict] = field(default_factory=list)
    body_text: str | None = None
    owner_emails: frozenset[str] = frozenset()

    @classmethod
    def from_message(cls, message: Message, owner_emails) -> "ExtractionContext":
        sender = (
            {"email": message.sender_email, "name": message.sender_name}
            if message.sender_email
            else None
        )
        return cls(
            sender=sender,
            to=list(message.to_recipients or []),
            cc=list(message.cc_recipients or []),
            bcc=list(message.bcc_recipients or []),
            body_text=message.body_text,
            owner_emails=frozenset(
                email for email in (normalize_email(e) for e in owner_emails) if email
            ),
        )

    def header_addresses(self) -> list[tuple[str, dict]]:
        out: list[tuple[str, dict]] = []
        if self.sender:
            out.append(("from", self.sender))
        for role, entries in (("to", self.to), ("cc", self.cc), ("bcc", self.bcc)):
            out.extend((role, entry) for entry in entries if isinstance(entry, dict))
        return out

    def body_addresses(self) -> list[str]:
        if not self.body_text:
            return []
        found: list[str] = []
        for match in EMAIL_RE.finditer(strip_quoted_text(self.body_text)):
            email = normalize_email(match.group(0))
            if email and email not in found:
                found.append(email)
        return found


class ExtractionStrategy(Protocol):
    source: ExtractionSource

    def extract(self, ctx: ExtractionContext) -> list[ExtractedContactCandidate]: ...


class HeaderStrategy:
    source = ExtractionSource.HEADER

    def extract(self, ctx: ExtractionContext) -> list[ExtractedContactCandidate]:
        candidates = []
        for role, entry in ctx.header_addresses():
            email = normalize_email(entry.get("email"))
            if not email:
                continue
            name = normalize_name(entry.get("name"))
            if name and normalize_email(name) == email:
                name = None
            candidates.append(
                ExtractedContactCandidate(
                    email=email,
                    source=self.source,
                    confidence=(
                        HEADER_SENDER_CONFIDENCE if role == "from" else HEADER_RECIPIENT_CONFIDENCE
                    ),
                    fields={"display_name": name or name_from_local_part(email)},
                    participant_role=role,
                )
            )
        return candidates


class SignatureStrategy:
    """Attributes the trailing signature block to the sender."""

    source = ExtractionSource.SIGNATURE

    def extract(self, ctx: ExtractionContext) -> list[ExtractedContactCandidate]:
        sender = normalize_email((ctx.sender or {}).get("email"))
        if not sender:
            return []
        info = parse_signature(ctx.body_text)
        if info is None:
            return []
        fields = {
            "display_name": info.name,
            "job_title": info.job_title,
            "company": info.company,
            "phone": info.phones[0] if info.phones else None,
            "website": info.website,
            "linkedin_url": info.linkedin_url,
            "twitter_handle": info.twitter_handle,
            "github_handle": info.github_handle,
        }
        fields = {key: value for key, value in fields.items() if value}
        if not fields:
            return []
        return [
            ExtractedContactCandidate(
                email=sender,
                source=self.source,
                confidence=SIGNATURE_CONFIDENCE,
                fields=fields,
            )
        ]


class BodyStrategy:
    """Addresses mentioned in the message text (quoted replies excluded)."""

    source = ExtractionSource.BODY

    def extract(self, ctx: ExtractionContext) -> list[ExtractedContactCandidate]:
        if not ctx.body_text:
            return []
        names: dict[str, str] = {}
        for match in _NAMED_ADDRESS_RE.finditer(strip_quoted_text(ctx.body_text)):
            email = normalize_email(match.group(2))
            name = normalize_name(match.group(1))
            if email and name and email not in names:
                names[email] = name
        return [
            ExtractedContactCandidate(
                email=email,
                source=self.source,
                confidence=BODY_CONFIDENCE,
                fields={"display_name": names[email]} if email in names else {},
            )
            for email in ctx.body_addresses()
        ]


class DomainStrategy:
    source = ExtractionSource.DOMAIN

    def extract(self, ctx: ExtractionContext) -> list[ExtractedContactCandidate]:
        emails: list[str] = []
        for _role, entry in ctx.header_addresses():
            email = normalize_email(entry.get("email"))
            if email and email not in emails:
                emails.append(email)
        for email in ctx.body_addresses():
            if email not in emails:
                emails.append(email)

        candidates = []
        for email in emails:
            info = classify_address(email)
            if info is None:
                continue
            confidence = DOMAIN_CONFIDENCE
            if info.is_role_address:
                confidence *= ROLE_ADDRESS_FACTOR
            candidates.append(
                ExtractedContactCandidate(
                    email=email,
                    source=self.source,
                    confidence=confidence,
                    fields={
                        "domain": info.domain,
                        "is_freemail": info.is_freemail,
                        "is_role_address": info.is_role_address,
                        "company": info.company,
                    },
                )
            )
        return candidates


DEFAULT_STRATEGIES: tuple[ExtractionStrategy, ...] = (
    HeaderStrategy(),
    SignatureStrategy(),
    BodyStrategy(),
    DomainStrategy(),
)


def run_strategies(
    ctx: ExtractionContext,
    strategies: tuple[ExtractionStrategy, ...] | list[ExtractionStrategy] = DEFAULT_STRATEGIES,
) -> list[ExtractedContactCandidate]:
    candidates: list[ExtractedContactCandidate] = []
    for strategy in strategies:
        try:
            produced = strategy.extract(ctx)
        except Exception:
            logger.exception("Extraction strategy %s failed", type(strategy).__name__)
            continue
        candidates.extend(c for c in produced if c.email not in ctx.owner_emails)
    return candidates
