"""Utility modules."""

from mailgraph.utils.normalization import (
    extract_email_domain,
    mask_email,
    name_from_local_part,
    normalize_email,
    normalize_name,
    normalize_phone,
)
from mailgraph.utils.time import ensure_utc, from_epoch_ms, utcnow

__all__ = [
    # Normalization
    "extract_email_domain",
    "mask_email",
    "name_from_local_part",
    "normalize_email",
    "normalize_name",
    "normalize_phone",
    # Time
    "ensure_utc",
    "from_epoch_ms",
    "utcnow",
]
