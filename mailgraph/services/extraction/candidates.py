"""In-memory candidate records produced by the extraction strategies."""

from __future__ import annotations

from dataclasses import dataclass, field

from mailgraph.db.enums import ExtractionSource

CONTACT_FIELDS = (
    "display_name",
    "company",
    "job_title",
    "phone",
    "website",
    "linkedin_url",
    "twitter_handle",
    "github_handle",
    "domain",
    "is_freemail",
    "is_role_address",
)

# Tie-break when two sources report a field with equal confidence.
SOURCE_RANK = {
    ExtractionSource.USER: 0,
    ExtractionSource.HEADER: 1,
    ExtractionSource.SIGNATURE: 2,
    ExtractionSource.ENRICHMENT: 3,
    ExtractionSource.DOMAIN: 4,
    ExtractionSource.BODY: 5,
}


@dataclass
class ExtractedContactCandidate:
    """One strategy's view of one address in one message."""

    email: str
    source: ExtractionSource
    confidence: float
    fields: dict[str, object] = field(default_factory=dict)
    # Header strategy only: "from", "to", "cc" or "bcc".
    participant_role: str | None = None

    @property
    def is_participant(self) -> bool:
        return self.participant_role is not None


@dataclass(frozen=True)
class FieldValue:
    value: object
    confidence: float
    source: ExtractionSource

    def outranks(self, other: "FieldValue | None") -> bool:
        """Total order so merging is independent of candidate order."""
        if other is None:
            return True
        if self.confidence != other.confidence:
            return self.confidence > other.confidence
        if SOURCE_RANK[self.source] != SOURCE_RANK[other.source]:
            return SOURCE_RANK[self.source] < SOURCE_RANK[other.source]
        return str(self.value) < str(other.value)


@dataclass
class MergedContact:
    email: str
    fields: dict[str, FieldValue] = field(default_factory=dict)
    confidence: float = 0.0
    participant_roles: set[str] = field(default_factory=set)

    @property
    def is_participant(self) -> bool:
        return bool(self.participant_roles)


def merge_candidates(
    candidates: list[ExtractedContactCandidate],
) -> dict[str, MergedContact]:
    """
    Group candidates by normalized email and keep, per field, the
    highest-confidence value.

    The result does not depend on the order of ``candidates``.
    """
    merged: dict[str, MergedContact] = {}
    for candidate in candidates:
        contact = merged.setdefault(candidate.email, MergedContact(email=candidate.email))
        contact.confidence = max(contact.confidence, candidate.confidence)
        if candidate.participant_role:
            contact.participant_roles.add(candidate.participant_role)
        for name, value in candidate.fields.items():
            if name not in CONTACT_FIELDS or value is None or value == "":
                continue
            proposed = FieldValue(value, candidate.confidence, candidate.source)
            if proposed.outranks(contact.fields.get(name)):
                contact.fields[name] = proposed
    return merged
