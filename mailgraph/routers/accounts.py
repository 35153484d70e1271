"""Accounts router - sync status and per-account contact listings (internal only)."""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from mailgraph.core.deps import get_db, verify_internal_secret
from mailgraph.schemas.account import AccountRead, AccountSyncStatusRead, SyncStateRead
from mailgraph.schemas.contact import ContactListItem, ContactListResponse
from mailgraph.services import contact_service, job_service, sync_orchestrator, sync_state_service

router = APIRouter(
    prefix="/accounts",
    tags=["accounts"],
    dependencies=[Depends(verify_internal_secret)],
)


@router.get("/{account_id}/sync-status", response_model=AccountSyncStatusRead)
def get_sync_status(account_id: UUID, db: Session = Depends(get_db)):
    """Account status, cursor and in-flight sync work."""
    account = sync_orchestrator.get_account(db, account_id)
    if not account:
        raise HTTPException(status_code=404, detail="Account not found")
    state = sync_state_service.get_state(db, account_id)
    return AccountSyncStatusRead(
        account=AccountRead.model_validate(account),
        sync_state=SyncStateRead.model_validate(state) if state else None,
        active_jobs=job_service.count_active_jobs(db, account_id),
    )


@router.get("/{account_id}/contacts", response_model=ContactListResponse)
def list_account_contacts(
    account_id: UUID,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    domain: str | None = None,
    db: Session = Depends(get_db),
):
    """Contacts owned by the account's user, most recently contacted first."""
    account = sync_orchestrator.get_account(db, account_id)
    if not account:
        raise HTTPException(status_code=404, detail="Account not found")
    contacts = contact_service.list_contacts(
        db, account.user_id, limit=limit, offset=offset, domain=domain
    )
    return ContactListResponse(
        items=[ContactListItem.model_validate(contact) for contact in contacts],
        limit=limit,
        offset=offset,
    )
