"""Run extraction for one stored message and reconcile the results."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from uuid import UUID

from sqlalchemy.orm import Session

from mailgraph.db.enums import MessageIngestState
from mailgraph.db.models import Account, Contact, Message
from mailgraph.jobs.events import SyncEvent, emit
from mailgraph.services import contact_service, interaction_service
from mailgraph.services.extraction.candidates import merge_candidates
from mailgraph.services.extraction.strategies import (
    DEFAULT_STRATEGIES,
    ExtractionContext,
    run_strategies,
)
from mailgraph.utils.time import utcnow

logger = logging.getLogger(__name__)


@dataclass
class ExtractionOutcome:
    created: list[UUID] = field(default_factory=list)
    updated: list[UUID] = field(default_factory=list)
    interactions: list[UUID] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "contacts_created": len(self.created),
            "contacts_updated": len(self.updated),
            "interactions_created": len(self.interactions),
        }


def extract_message_contacts(
    db: Session,
    message: Message,
    account: Account,
    *,
    strategies=DEFAULT_STRATEGIES,
) -> ExtractionOutcome:
    """
    Extract, merge and reconcile contacts for ``message``.

    Idempotent: a re-run creates no contacts or interactions that already
    exist and never downgrades a stored field.
    """
    outcome = ExtractionOutcome()
    if message.ingest_state != MessageIngestState.STORED.value:
        return outcome

    ctx = ExtractionContext.from_message(message, owner_emails=[account.email_address])
    merged = merge_candidates(run_strategies(ctx, strategies))

    participants: list[Contact] = []
    for email in sorted(merged):
        result = contact_service.reconcile_contact(db, message.user_id, merged[email])
        if result.created:
            outcome.created.append(result.contact.id)
            emit(db, SyncEvent.CONTACT_CREATED, contact_id=result.contact.id, account_id=account.id)
        elif result.changed_fields:
            outcome.updated.append(result.contact.id)
        if merged[email].is_participant:
            participants.append(result.contact)

    outcome.interactions = interaction_service.record_interactions(db, message, participants)
    for contact_id in outcome.interactions:
        emit(db, SyncEvent.INTERACTIONS_CHANGED, contact_id=contact_id, account_id=account.id)

    message.extracted_at = utcnow()
    db.commit()
    logger.info(
        "Extracted contacts for message %s: %s",
        message.id,
        outcome.as_dict(),
    )
    return outcome
