"""Interaction edges and per-contact aggregate stats."""

from __future__ import annotations

import logging
from datetime import datetime
from uuid import UUID

from sqlalchemy import case, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mailgraph.core.errors import InvariantViolation
from mailgraph.db.enums import EmailDirection
from mailgraph.db.models import Contact, Interaction, Message
from mailgraph.services.relationship_scoring import (
    DEFAULT_SCORER,
    RelationshipInputs,
    RelationshipScorer,
)
from mailgraph.utils.time import ensure_utc, utcnow

logger = logging.getLogger(__name__)


def _existing_contact_ids(db: Session, message_id: UUID, direction: str) -> set[UUID]:
    rows = (
        db.query(Interaction.contact_id)
        .filter(
            Interaction.message_id == message_id,
            Interaction.direction == direction,
        )
        .all()
    )
    return {row[0] for row in rows}


def record_interactions(db: Session, message: Message, contacts: list[Contact]) -> list[UUID]:
    """
    Upsert one interaction per (message, contact, direction).

    Returns the ids of contacts that gained a new interaction. Re-running for
    the same message inserts nothing.
    """
    direction = message.direction or EmailDirection.INBOUND.value
    occurred_at = message.sent_at or message.created_at or utcnow()

    for attempt in (1, 2):
        existing = _existing_contact_ids(db, message.id, direction)
        new_ids: list[UUID] = []
        for contact in contacts:
            if contact.id in existing or contact.id in new_ids:
                continue
            db.add(
                Interaction(
                    message_id=message.id,
                    contact_id=contact.id,
                    account_id=message.account_id,
                    user_id=message.user_id,
                    direction=direction,
                    occurred_at=occurred_at,
                )
            )
            new_ids.append(contact.id)
        try:
            db.commit()
            return new_ids
        except IntegrityError as exc:
            db.rollback()
            if attempt == 2:
                raise InvariantViolation(
                    f"Interaction upsert for message {message.id} kept colliding"
                ) from exc
            logger.info("Interaction insert raced for message %s, re-reading", message.id)
    return []


def recalculate_contact_stats(
    db: Session,
    contact_id: UUID,
    *,
    scorer: RelationshipScorer | None = None,
    now: datetime | None = None,
) -> Contact | None:
    """Recompute counts, first/last interaction and relationship strength."""
    contact = db.query(Contact).filter(Contact.id == contact_id).first()
    if contact is None:
        return None
    now = ensure_utc(now) or utcnow()
    scorer = scorer or DEFAULT_SCORER

    inbound = EmailDirection.INBOUND.value
    outbound = EmailDirection.OUTBOUND.value
    total, inbound_count, outbound_count, first_at, last_at = (
        db.query(
            func.count(Interaction.id),
            func.coalesce(func.sum(case((Interaction.direction == inbound, 1), else_=0)), 0),
            func.coalesce(func.sum(case((Interaction.direction == outbound, 1), else_=0)), 0),
            func.min(Interaction.occurred_at),
            func.max(Interaction.occurred_at),
        )
        .filter(Interaction.contact_id == contact_id)
        .one()
    )

    contact.interaction_count = int(total or 0)
    contact.inbound_count = int(inbound_count or 0)
    contact.outbound_count = int(outbound_count or 0)
    contact.first_interaction_at = first_at
    contact.last_interaction_at = last_at
    contact.relationship_strength = scorer.score(
        RelationshipInputs(
            now=now,
            last_interaction_at=ensure_utc(last_at) if isinstance(last_at, datetime) else None,
            interaction_count=contact.interaction_count,
            inbound_count=contact.inbound_count,
            outbound_count=contact.outbound_count,
        )
    )
    contact.stats_updated_at = now
    db.commit()
    db.refresh(contact)
    return contact
