"""Contact service - reconcile extracted candidates into stored contacts."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mailgraph.db.enums import ContactStatus, ExtractionSource
from mailgraph.db.models import Contact
from mailgraph.services.extraction.candidates import CONTACT_FIELDS, FieldValue, MergedContact
from mailgraph.utils.normalization import mask_email, normalize_email
from mailgraph.utils.time import utcnow

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    contact: Contact
    created: bool = False
    changed_fields: list[str] = field(default_factory=list)


def get_contact(db: Session, contact_id: UUID) -> Contact | None:
    return db.query(Contact).filter(Contact.id == contact_id).first()


def get_active_contact(
    db: Session, user_id: UUID, email: str, *, for_update: bool = False
) -> Contact | None:
    query = db.query(Contact).filter(
        Contact.user_id == user_id,
        Contact.email == email,
        Contact.status == ContactStatus.ACTIVE.value,
    )
    if for_update:
        # Provenance is merged read-modify-write; always merge into the latest row.
        query = query.with_for_update().populate_existing()
    return query.first()


def lock_contact(db: Session, contact_id: UUID) -> Contact | None:
    """Re-read a contact under a row lock before changing its fields."""
    return (
        db.query(Contact)
        .filter(Contact.id == contact_id)
        .with_for_update()
        .populate_existing()
        .first()
    )


def list_contacts(
    db: Session,
    user_id: UUID,
    *,
    limit: int = 50,
    offset: int = 0,
    domain: str | None = None,
) -> list[Contact]:
    """Active contacts, most recently contacted first."""
    query = db.query(Contact).filter(
        Contact.user_id == user_id,
        Contact.status == ContactStatus.ACTIVE.value,
    )
    if domain:
        query = query.filter(Contact.domain == domain.lower())
    return (
        query.order_by(
            Contact.last_interaction_at.desc().nulls_last(),
            Contact.created_at.desc(),
        )
        .offset(offset)
        .limit(limit)
        .all()
    )


def _is_empty(value) -> bool:
    return value is None or value == ""


def _should_apply(contact: Contact, name: str, proposed: FieldValue) -> bool:
    """
    A field is written when it is empty or the proposal is strictly more
    confident than what produced the stored value. User edits are final.
    """
    provenance = (contact.field_provenance or {}).get(name) or {}
    if provenance.get("user_edited"):
        return False
    current = getattr(contact, name)
    if _is_empty(current):
        return True
    if current == proposed.value:
        return False
    return proposed.confidence > float(provenance.get("confidence") or 0.0)


def apply_fields(contact: Contact, fields: dict[str, FieldValue]) -> list[str]:
    """Apply proposals in place; returns the names of fields that changed."""
    provenance = dict(contact.field_provenance or {})
    now = utcnow().isoformat()
    changed: list[str] = []
    for name in sorted(fields):
        if name not in CONTACT_FIELDS:
            continue
        proposed = fields[name]
        if not _should_apply(contact, name, proposed):
            continue
        setattr(contact, name, proposed.value)
        provenance[name] = {
            "source": proposed.source.value,
            "confidence": proposed.confidence,
            "user_edited": False,
            "updated_at": now,
        }
        changed.append(name)
    if changed:
        # Reassign so the JSON column is flagged dirty.
        contact.field_provenance = provenance
    return changed


def reconcile_contact(db: Session, user_id: UUID, merged: MergedContact) -> ReconcileResult:
    """
    Create the contact for ``merged.email`` or backfill its fields.

    Commits. A concurrent create of the same (user, email) loses on the
    partial unique index and falls through to the update path.
    """
    email = normalize_email(merged.email)
    if not email:
        raise ValueError(f"Cannot reconcile invalid address {merged.email!r}")

    contact = get_active_contact(db, user_id, email, for_update=True)
    if contact is None:
        contact = Contact(
            user_id=user_id,
            email=email,
            domain=email.rsplit("@", 1)[1],
            field_provenance={},
        )
        changed = apply_fields(contact, merged.fields)
        db.add(contact)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            contact = get_active_contact(db, user_id, email, for_update=True)
            if contact is None:
                raise
            logger.info("Contact %s created concurrently, merging", mask_email(email))
        else:
            db.refresh(contact)
            return ReconcileResult(contact=contact, created=True, changed_fields=changed)

    changed = apply_fields(contact, merged.fields)
    # Commit even when unchanged to release the row lock.
    db.commit()
    if changed:
        db.refresh(contact)
    return ReconcileResult(contact=contact, changed_fields=changed)


def apply_user_edit(db: Session, contact: Contact, name: str, value) -> Contact:
    """Record a manual edit; extraction and enrichment never overwrite it."""
    if name not in CONTACT_FIELDS:
        raise ValueError(f"Unknown contact field {name!r}")
    locked = lock_contact(db, contact.id)
    if locked is None:
        raise ValueError(f"Contact {contact.id} no longer exists")
    contact = locked
    provenance = dict(contact.field_provenance or {})
    setattr(contact, name, value)
    provenance[name] = {
        "source": ExtractionSource.USER.value,
        "confidence": 1.0,
        "user_edited": True,
        "updated_at": utcnow().isoformat(),
    }
    contact.field_provenance = provenance
    db.commit()
    db.refresh(contact)
    return contact
