"""Contact extraction, stats and enrichment job handlers."""

from __future__ import annotations

import logging

from mailgraph.core.errors import JobCancelled
from mailgraph.db.models import Account, Message
from mailgraph.services import enrichment, interaction_service, job_service
from mailgraph.services.extraction.pipeline import extract_message_contacts

logger = logging.getLogger(__name__)


async def process_contact_extraction(db, job) -> dict:
    """Extract contacts and interactions from one stored message."""
    payload = job_service.get_payload(job)
    message = db.query(Message).filter(Message.id == payload.message_id).first()
    if message is None:
        logger.warning("Message %s no longer exists, skipping extraction", payload.message_id)
        return {"status": "skipped"}
    account = db.query(Account).filter(Account.id == message.account_id).first()
    if account is None or not account.is_enabled:
        raise JobCancelled(f"Account {message.account_id} is not linked")
    return extract_message_contacts(db, message, account).as_dict()


async def process_contact_stats_recalc(db, job) -> dict:
    """Recompute a contact's interaction aggregates."""
    payload = job_service.get_payload(job)
    contact = interaction_service.recalculate_contact_stats(db, payload.contact_id)
    if contact is None:
        return {"status": "skipped"}
    return {
        "interaction_count": contact.interaction_count,
        "relationship_strength": contact.relationship_strength,
    }


async def process_contact_enrichment(db, job) -> dict:
    """Look a new contact up with the configured enrichment provider."""
    payload = job_service.get_payload(job)
    return await enrichment.enrich_contact(db, payload.contact_id)
