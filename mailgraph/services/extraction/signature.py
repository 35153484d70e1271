"""
Signature block detection and parsing.

``parse_signature`` is a pure function of the message text so it can be
tested table-driven without a database. Heuristics are conservative: a line
only becomes a name, title or company when it looks like one and carries no
contact details.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from mailgraph.utils.normalization import normalize_email, normalize_phone

EMAIL_RE = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
PHONE_RE = re.compile(
    r"""
    (?:\+?\d{1,3}[\s.-]?)?
    (?:\(?\d{2,4}\)?[\s.-]?)?
    \d{3,4}[\s.-]?\d{3,4}
    """,
    re.VERBOSE,
)
URL_RE = re.compile(r"\b(?:https?://|www\.)\S+\b|\b[a-z0-9-]+(?:\.[a-z0-9-]+)*\.(?:com|io|co|net|org|ai|dev)(?:/\S*)?\b", re.I)

LINKEDIN_RE = re.compile(r"linkedin\.com/in/([A-Za-z0-9_%-]+)", re.I)
GITHUB_RE = re.compile(r"github\.com/([A-Za-z0-9](?:[A-Za-z0-9-]{0,38}))", re.I)
TWITTER_URL_RE = re.compile(r"(?:twitter|x)\.com/@?([A-Za-z0-9_]{1,15})\b", re.I)
TWITTER_HANDLE_RE = re.compile(r"(?:twitter|tw|x)\s*[:|]\s*@?([A-Za-z0-9_]{1,15})\b", re.I)

QUOTED_REPLY_PATTERNS = [
    re.compile(r"^On .* wrote:\s*$", re.MULTILINE),
    re.compile(r"^-{2,}\s*Original Message\s*-{2,}", re.MULTILINE | re.I),
    re.compile(r"^-{2,}\s*Forwarded message\s*-{2,}", re.MULTILINE | re.I),
    re.compile(r"^Begin forwarded message:", re.MULTILINE | re.I),
]

SIGNATURE_DELIMITERS = [
    re.compile(r"^--\s*$", re.MULTILINE),
    re.compile(r"^(?:best|kind|warm|warmest)\s+(?:regards|wishes)\s*,?\s*$", re.MULTILINE | re.I),
    re.compile(r"^(?:regards|thanks|thank\s+you|cheers|best|sincerely|yours\s+truly)\s*,?\s*$", re.MULTILINE | re.I),
    re.compile(r"^thanks\s*(?:and|&)\s*regards\s*,?\s*$", re.MULTILINE | re.I),
    re.compile(r"^regards\s*(?:and|&)\s*thanks\s*,?\s*$", re.MULTILINE | re.I),
]

TITLE_RE = re.compile(
    r"\b(?:ceo|cto|cfo|coo|cmo|vp|svp|evp|founder|co-founder|cofounder|president|director|"
    r"manager|engineer|head\s+of|lead|partner|consultant|analyst|designer|developer|"
    r"officer|principal|associate|specialist|architect|recruiter|executive|"
    r"account\s+executive|product|marketing|sales|operations|counsel|attorney)\b",
    re.I,
)
COMPANY_SUFFIX_RE = re.compile(
    r"\b(?:inc|llc|ltd|gmbh|pvt|plc|corp|co|corporation|limited|ag|bv)\b(?!-)\.?", re.I
)

MAX_SIGNATURE_LINES = 10
MAX_TRAILING_LINE_LENGTH = 72


@dataclass(frozen=True)
class SignatureInfo:
    name: str | None = None
    job_title: str | None = None
    company: str | None = None
    phones: tuple[str, ...] = ()
    emails: tuple[str, ...] = ()
    website: str | None = None
    linkedin_url: str | None = None
    twitter_handle: str | None = None
    github_handle: str | None = None

    @property
    def is_empty(self) -> bool:
        return not any(
            (
                self.name,
                self.job_title,
                self.company,
                self.phones,
                self.emails,
                self.website,
                self.linkedin_url,
                self.twitter_handle,
                self.github_handle,
            )
        )


def strip_quoted_text(text: str) -> str:
    """Drop quoted replies, forwarded blocks and ``>`` lines."""
    for pattern in QUOTED_REPLY_PATTERNS:
        text = pattern.split(text, maxsplit=1)[0]
    lines = [line for line in text.splitlines() if not line.lstrip().startswith(">")]
    return "\n".join(lines).strip()


def _contains_contact_info(line: str) -> bool:
    return bool(EMAIL_RE.search(line) or URL_RE.search(line) or _phones_in(line))


def _phones_in(text: str) -> list[str]:
    found: list[str] = []
    for match in PHONE_RE.finditer(text):
        raw = match.group(0).strip()
        # At least 8 digits, otherwise dates and zip codes match.
        if len(re.sub(r"\D", "", raw)) < 8:
            continue
        phone = normalize_phone(raw) or " ".join(raw.split())
        if phone not in found:
            found.append(phone)
    return found


def find_signature_block(text: str | None) -> str | None:
    """
    Locate the trailing signature block.

    Tries, in order: the last ``--`` or closing-salutation line, then a
    short trailing paragraph that carries contact details.
    """
    if not text:
        return None
    body = strip_quoted_text(text)
    if not body:
        return None

    last_end = None
    for pattern in SIGNATURE_DELIMITERS:
        for match in pattern.finditer(body):
            if last_end is None or match.end() > last_end:
                last_end = match.end()
    if last_end is not None:
        lines = [line.strip() for line in body[last_end:].splitlines() if line.strip()]
        if lines:
            return "\n".join(lines[:MAX_SIGNATURE_LINES])

    paragraphs = [p for p in re.split(r"\n\s*\n", body) if p.strip()]
    if len(paragraphs) < 2:
        return None
    lines = [line.strip() for line in paragraphs[-1].splitlines() if line.strip()]
    if not 2 <= len(lines) <= 6:
        return None
    if any(len(line) > MAX_TRAILING_LINE_LENGTH for line in lines):
        return None
    if not any(_contains_contact_info(line) for line in lines):
        return None
    return "\n".join(lines)


def _looks_like_name(line: str) -> bool:
    if _contains_contact_info(line) or len(line) > 80:
        return False
    if TITLE_RE.search(line) or COMPANY_SUFFIX_RE.search(line):
        return False
    tokens = line.split()
    if not 2 <= len(tokens) <= 4:
        return False
    if not all(token[0].isupper() for token in tokens if token[0].isalpha()):
        return False
    alpha_ratio = sum(ch.isalpha() for ch in line) / max(1, len(line))
    return alpha_ratio > 0.7


def _looks_like_company(line: str) -> bool:
    if _contains_contact_info(line) or len(line) > 60:
        return False
    return bool(COMPANY_SUFFIX_RE.search(line))


def _split_title_company(line: str) -> tuple[str | None, str | None]:
    """``VP Sales, Acme Inc`` / ``VP Sales at Acme`` / ``VP Sales | Acme``."""
    for separator in (r"\s+at\s+", r"\s*,\s*", r"\s*\|\s*", r"\s+@\s+"):
        parts = re.split(separator, line, maxsplit=1)
        if len(parts) == 2 and parts[0] and parts[1]:
            title, company = parts[0].strip(), parts[1].strip()
            if TITLE_RE.search(title) and not TITLE_RE.search(company):
                return title, company
    return line.strip(), None


def _website(urls: list[str]) -> str | None:
    for url in urls:
        lowered = url.lower()
        if any(host in lowered for host in ("linkedin.com", "twitter.com", "x.com/", "github.com")):
            continue
        url = url.rstrip(").,;]>")
        if not lowered.startswith(("http://", "https://")):
            url = f"https://{url}"
        return url
    return None


def parse_signature(text: str | None) -> SignatureInfo | None:
    """
    Parse contact details out of a message body's signature block.

    Returns None when no signature block is found or it yields nothing.
    """
    block = find_signature_block(text)
    if not block:
        return None
    lines = block.splitlines()

    name = None
    job_title = None
    company = None

    # "Name | Title | Company" on one line.
    piped = [part.strip() for part in lines[0].split("|") if part.strip()]
    if len(piped) >= 2 and _looks_like_name(piped[0]):
        name = piped[0]
        if TITLE_RE.search(piped[1]):
            job_title = piped[1]
            if len(piped) >= 3 and not _contains_contact_info(piped[2]):
                company = piped[2]
        elif not _contains_contact_info(piped[1]):
            company = piped[1]
        lines = lines[1:]

    for line in lines[:5]:
        if name is None and _looks_like_name(line):
            name = line
            continue
        if _contains_contact_info(line):
            continue
        if job_title is None and TITLE_RE.search(line):
            job_title, inline_company = _split_title_company(line)
            if company is None and inline_company:
                company = inline_company
            continue
        if company is None and _looks_like_company(line):
            company = line

    phones: list[str] = []
    for line in block.splitlines():
        for phone in _phones_in(EMAIL_RE.sub(" ", URL_RE.sub(" ", line))):
            if phone not in phones:
                phones.append(phone)

    emails = []
    for match in EMAIL_RE.finditer(block):
        email = normalize_email(match.group(0))
        if email and email not in emails:
            emails.append(email)

    no_emails = EMAIL_RE.sub(" ", block)
    urls = [match.group(0) for match in URL_RE.finditer(no_emails)]

    linkedin = LINKEDIN_RE.search(block)
    github = GITHUB_RE.search(block)
    twitter = TWITTER_URL_RE.search(block) or TWITTER_HANDLE_RE.search(block)

    info = SignatureInfo(
        name=name,
        job_title=job_title,
        company=company,
        phones=tuple(phones),
        emails=tuple(emails),
        website=_website(urls),
        linkedin_url=f"https://www.linkedin.com/in/{linkedin.group(1)}" if linkedin else None,
        twitter_handle=twitter.group(1) if twitter else None,
        github_handle=github.group(1) if github else None,
    )
    return None if info.is_empty else info
