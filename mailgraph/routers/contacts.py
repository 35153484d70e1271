"""Contacts router (internal only)."""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from mailgraph.core.deps import get_db, verify_internal_secret
from mailgraph.schemas.contact import ContactRead
from mailgraph.services import contact_service

router = APIRouter(
    prefix="/contacts",
    tags=["contacts"],
    dependencies=[Depends(verify_internal_secret)],
)


@router.get("/{contact_id}", response_model=ContactRead)
def get_contact(contact_id: UUID, db: Session = Depends(get_db)):
    contact = contact_service.get_contact(db, contact_id)
    if not contact:
        raise HTTPException(status_code=404, detail="Contact not found")
    return contact
