"""Domain intelligence: freemail vs enterprise, role mailboxes, company guess."""

from __future__ import annotations

from dataclasses import dataclass

from mailgraph.utils.normalization import normalize_email

FREEMAIL_DOMAINS = frozenset(
    {
        "gmail.com",
        "googlemail.com",
        "yahoo.com",
        "yahoo.co.uk",
        "ymail.com",
        "outlook.com",
        "hotmail.com",
        "live.com",
        "msn.com",
        "icloud.com",
        "me.com",
        "mac.com",
        "aol.com",
        "proton.me",
        "protonmail.com",
        "gmx.com",
        "gmx.de",
        "mail.com",
        "zoho.com",
        "yandex.com",
        "yandex.ru",
        "fastmail.com",
        "hey.com",
        "qq.com",
        "163.com",
    }
)

ROLE_LOCAL_PARTS = frozenset(
    {
        "admin",
        "billing",
        "contact",
        "careers",
        "help",
        "hello",
        "hi",
        "hr",
        "info",
        "jobs",
        "legal",
        "mailer-daemon",
        "marketing",
        "news",
        "newsletter",
        "no-reply",
        "noreply",
        "do-not-reply",
        "donotreply",
        "notifications",
        "office",
        "postmaster",
        "press",
        "privacy",
        "sales",
        "security",
        "support",
        "team",
        "webmaster",
    }
)

# Second-level labels that are part of the public suffix (acme.co.uk).
_COMPOUND_SUFFIX_LABELS = {"co", "com", "org", "net", "ac", "gov", "edu"}
_DOMAIN_PREFIXES = {"mail", "email", "smtp", "mx", "corp", "www"}


@dataclass(frozen=True)
class DomainInfo:
    domain: str
    is_freemail: bool
    is_role_address: bool
    company: str | None


def is_role_local_part(local: str) -> bool:
    local = local.lower()
    if local in ROLE_LOCAL_PARTS:
        return True
    head = local.split("+", 1)[0]
    return head in ROLE_LOCAL_PARTS


def infer_company(domain: str) -> str | None:
    """``acme-corp.co.uk`` -> ``Acme Corp``; freemail domains yield None."""
    domain = domain.lower().strip(".")
    if not domain or domain in FREEMAIL_DOMAINS:
        return None
    labels = [label for label in domain.split(".") if label]
    if len(labels) < 2:
        return None
    labels = labels[:-1]
    if len(labels) >= 2 and labels[-1] in _COMPOUND_SUFFIX_LABELS:
        labels = labels[:-1]
    while len(labels) > 1 and labels[0] in _DOMAIN_PREFIXES:
        labels = labels[1:]
    core = labels[-1]
    words = [word for word in core.replace("_", "-").split("-") if word]
    if not words:
        return None
    return " ".join(word.capitalize() for word in words)


def classify_address(email: str | None) -> DomainInfo | None:
    normalized = normalize_email(email)
    if not normalized:
        return None
    local, domain = normalized.split("@", 1)
    freemail = domain in FREEMAIL_DOMAINS
    return DomainInfo(
        domain=domain,
        is_freemail=freemail,
        is_role_address=is_role_local_part(local),
        company=None if freemail else infer_company(domain),
    )
