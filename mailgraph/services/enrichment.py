"""Third-party contact enrichment (off the sync path, own low-priority job)."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol

import httpx
from sqlalchemy.orm import Session

from mailgraph.core.config import settings
from mailgraph.core.errors import PermanentError, RateLimitedError, TransientError
from mailgraph.db.enums import ContactStatus, EnrichmentStatus, ExtractionSource
from mailgraph.db.models import Contact
from mailgraph.services import contact_service
from mailgraph.services.extraction.candidates import CONTACT_FIELDS, FieldValue
from mailgraph.utils.normalization import mask_email
from mailgraph.utils.time import parse_retry_after, utcnow

logger = logging.getLogger(__name__)


@dataclass
class EnrichmentResult:
    found: bool
    confidence: float = 0.0
    fields: dict[str, object] = field(default_factory=dict)


class EnrichmentProvider(Protocol):
    async def enrich(self, contact: Contact) -> EnrichmentResult: ...


class NullEnrichmentProvider:
    """Used when no enrichment source is configured."""

    async def enrich(self, contact: Contact) -> EnrichmentResult:
        return EnrichmentResult(found=False)


class HttpEnrichmentProvider:
    """
    Generic JSON enrichment API.

    ``GET {ENRICHMENT_API_URL}?email=...`` answering
    ``{"found": bool, "confidence": float, "fields": {...}}``.
    """

    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url or settings.ENRICHMENT_API_URL
        self.api_key = api_key if api_key is not None else settings.ENRICHMENT_API_KEY
        self._client = http_client

    async def enrich(self, contact: Contact) -> EnrichmentResult:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        client = self._client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.ENRICHMENT_TIMEOUT_SECONDS)
        )
        try:
            response = await client.get(self.base_url, params={"email": contact.email}, headers=headers)
        except httpx.TimeoutException as exc:
            raise TransientError("Enrichment request timed out") from exc
        except httpx.TransportError as exc:
            raise TransientError(f"Enrichment transport error: {type(exc).__name__}") from exc
        finally:
            if self._client is None:
                await client.aclose()

        if response.status_code == 404:
            return EnrichmentResult(found=False)
        if response.status_code == 429:
            raise RateLimitedError(parse_retry_after(response.headers.get("Retry-After")))
        if response.status_code >= 500:
            raise TransientError(f"Enrichment API error {response.status_code}")
        if response.status_code >= 400:
            raise PermanentError(f"Enrichment API rejected request: {response.status_code}")

        payload = response.json()
        if not isinstance(payload, dict):
            raise PermanentError("Enrichment response was not an object")
        fields = payload.get("fields") or {}
        return EnrichmentResult(
            found=bool(payload.get("found")),
            confidence=min(max(float(payload.get("confidence") or 0.0), 0.0), 1.0),
            fields={k: v for k, v in fields.items() if k in CONTACT_FIELDS},
        )


def get_enrichment_provider() -> EnrichmentProvider:
    if settings.ENRICHMENT_API_URL:
        return HttpEnrichmentProvider()
    return NullEnrichmentProvider()


async def enrich_contact(
    db: Session,
    contact_id,
    *,
    provider: EnrichmentProvider | None = None,
) -> dict:
    """Run the provider for one contact and merge what it found."""
    contact = contact_service.get_contact(db, contact_id)
    if contact is None or contact.status != ContactStatus.ACTIVE.value:
        return {"status": "skipped"}

    provider = provider or get_enrichment_provider()
    if isinstance(provider, NullEnrichmentProvider):
        contact.enrichment_status = EnrichmentStatus.SKIPPED.value
        db.commit()
        return {"status": "skipped"}

    result = await provider.enrich(contact)
    contact = contact_service.lock_contact(db, contact_id)
    if contact is None or contact.status != ContactStatus.ACTIVE.value:
        db.commit()
        return {"status": "skipped"}
    changed: list[str] = []
    if result.found:
        changed = contact_service.apply_fields(
            contact,
            {
                name: FieldValue(value, result.confidence, ExtractionSource.ENRICHMENT)
                for name, value in result.fields.items()
                if value not in (None, "")
            },
        )
        contact.enrichment_status = EnrichmentStatus.ENRICHED.value
    else:
        contact.enrichment_status = EnrichmentStatus.NOT_FOUND.value
    contact.enriched_at = utcnow()
    db.commit()
    logger.info(
        "Enriched contact %s: found=%s changed=%s",
        mask_email(contact.email),
        result.found,
        changed,
    )
    return {"status": contact.enrichment_status, "changed_fields": changed}
