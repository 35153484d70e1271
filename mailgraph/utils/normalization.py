"""Data normalization utilities for consistent contact data quality."""

import re
from typing import Optional

_EMAIL_RE = re.compile(r"^[A-Za-z0-9._%+'\-]+@[A-Za-z0-9\-]+(\.[A-Za-z0-9\-]+)+$")
_LOCAL_PART_SPLIT = re.compile(r"[._\-+]+")


def normalize_email(email: Optional[str]) -> Optional[str]:
    """
    Normalize email to lowercase, stripping whitespace, angle brackets and a
    trailing dot.

    Args:
        email: Raw email input

    Returns:
        Lowercased email or None if empty / not an address
    """
    if not email:
        return None
    cleaned = email.strip().strip("<>").strip().rstrip(".").lower()
    if not cleaned or not _EMAIL_RE.match(cleaned):
        return None
    return cleaned


def normalize_name(name: Optional[str]) -> Optional[str]:
    """
    Normalize name by stripping whitespace, wrapping quotes and collapsing
    multiple spaces.

    Args:
        name: Raw name input

    Returns:
        Cleaned name or None if empty
    """
    if not name:
        return None
    cleaned = " ".join(name.strip().strip("\"'").split())
    return cleaned or None


def name_from_local_part(email: Optional[str]) -> Optional[str]:
    """
    Derive a display name from an address local part.

    ``jane.doe@x.com`` -> ``Jane Doe``; single tokens and digit-heavy parts
    (``j12345``) yield None.
    """
    normalized = normalize_email(email)
    if not normalized:
        return None
    local = normalized.split("@", 1)[0]
    tokens = [t for t in _LOCAL_PART_SPLIT.split(local) if t]
    if len(tokens) < 2:
        return None
    if any(any(ch.isdigit() for ch in token) for token in tokens):
        return None
    return " ".join(token.capitalize() for token in tokens)


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    """
    Normalize phone to E.164-like format (+15551234567).

    Accepts:
    - 10 digits: 5551234567 -> +15551234567
    - 11 digits starting with 1: 15551234567 -> +15551234567
    - International with leading +: +44 20 7946 0958 -> +442079460958

    Returns:
        Normalized phone or None if it cannot be a phone number
    """
    if not phone:
        return None

    cleaned = phone.strip()
    digits = re.sub(r"\D", "", cleaned)
    if cleaned.startswith("+"):
        if 8 <= len(digits) <= 15:
            return f"+{digits}"
        return None

    if len(digits) == 10:
        return f"+1{digits}"
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"
    return None


def extract_email_domain(email: Optional[str]) -> Optional[str]:
    """
    Extract lowercased email domain.

    Expects a normalized email, but will normalize if needed.
    """
    normalized = normalize_email(email)
    if not normalized:
        return None
    return normalized.split("@", 1)[1]


def mask_email(email: Optional[str]) -> str:
    """PII-safe rendering of an address for logs."""
    if not email:
        return ""
    local, _, domain = email.partition("@")
    prefix = local[:3] if local else ""
    return f"{prefix}...@{domain}" if domain else f"{prefix}..."
