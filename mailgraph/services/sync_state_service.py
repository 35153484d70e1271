"""Per-account sync cursor store.

All writes are compare-and-swap on ``SyncState.version``: read the row,
compute the new values, and ``UPDATE ... WHERE version = :seen``. A lost race
re-reads and re-decides, so two workers can never rewind the cursor.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mailgraph.core.errors import StaleStateError
from mailgraph.db.enums import SyncMode
from mailgraph.db.models import SyncState
from mailgraph.utils.time import utcnow

logger = logging.getLogger(__name__)

CAS_RETRIES = 5


def get_state(db: Session, account_id: UUID) -> SyncState | None:
    """Fresh read (bypasses the identity map)."""
    return (
        db.query(SyncState)
        .filter(SyncState.account_id == account_id)
        .populate_existing()
        .first()
    )


def get_or_create_state(db: Session, account_id: UUID) -> SyncState:
    state = get_state(db, account_id)
    if state:
        return state
    state = SyncState(account_id=account_id, mode=SyncMode.INITIAL.value, version=0)
    db.add(state)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        state = get_state(db, account_id)
        if state is None:
            raise
    return state


def compare_and_swap(db: Session, account_id: UUID, expected_version: int, values: dict) -> bool:
    """Apply ``values`` only if the row is still at ``expected_version``."""
    payload = {getattr(SyncState, key): value for key, value in values.items()}
    payload[SyncState.version] = expected_version + 1
    payload[SyncState.updated_at] = utcnow()
    updated = (
        db.query(SyncState)
        .filter(
            SyncState.account_id == account_id,
            SyncState.version == expected_version,
        )
        .update(payload, synchronize_session=False)
    )
    db.commit()
    return updated == 1


def update_state(
    db: Session,
    account_id: UUID,
    decide: Callable[[SyncState], dict | None],
) -> SyncState | None:
    """
    Read-decide-CAS loop.

    ``decide`` returns the column values to write, or None to leave the row
    untouched. Returns the refreshed state when a write happened, else None.
    """
    for _ in range(CAS_RETRIES):
        state = get_or_create_state(db, account_id)
        values = decide(state)
        if not values:
            return None
        if compare_and_swap(db, account_id, state.version, values):
            return get_state(db, account_id)
        logger.info("Sync state CAS conflict for account %s, retrying", account_id)
    raise StaleStateError(f"Could not update sync state for account {account_id}")


def advance_cursor(
    db: Session,
    account_id: UUID,
    history_id: int | None,
    *,
    mark_success: bool = True,
) -> bool:
    """Move the cursor forward only. Returns True if it moved."""
    if history_id is None:
        return False

    def decide(state: SyncState) -> dict | None:
        if state.history_id is not None and history_id <= state.history_id:
            return None
        values: dict = {"history_id": history_id, "last_error": None}
        if mark_success:
            values["last_success_at"] = utcnow()
        return values

    return update_state(db, account_id, decide) is not None


def reset_cursor(db: Session, account_id: UUID, *, reason: str) -> SyncState:
    """Explicit full resync: the only path that moves the cursor backwards."""
    logger.warning("Resetting sync cursor for account %s: %s", account_id, reason)
    state = update_state(
        db,
        account_id,
        lambda _state: {
            "history_id": None,
            "baseline_history_id": None,
            "mode": SyncMode.INITIAL.value,
            "initial_started_at": None,
            "last_error": reason,
        },
    )
    return state or get_or_create_state(db, account_id)


def begin_initial_sync(
    db: Session,
    account_id: UUID,
    *,
    baseline_history_id: int | None,
    window_start: datetime,
) -> SyncState:
    state = update_state(
        db,
        account_id,
        lambda _state: {
            "mode": SyncMode.INITIAL.value,
            "baseline_history_id": baseline_history_id,
            "initial_window_start": window_start,
            "initial_started_at": utcnow(),
            "last_error": None,
        },
    )
    return state or get_or_create_state(db, account_id)


def complete_initial_sync(db: Session, account_id: UUID) -> SyncState | None:
    """
    Install the baseline captured at the start of the initial sync as the
    cursor and hand over to incremental mode.
    """

    def decide(state: SyncState) -> dict | None:
        if state.mode != SyncMode.INITIAL.value:
            return None
        values: dict = {
            "mode": SyncMode.INCREMENTAL.value,
            "last_success_at": utcnow(),
            "last_error": None,
        }
        baseline = state.baseline_history_id
        if baseline is not None and (state.history_id is None or baseline > state.history_id):
            values["history_id"] = baseline
        if state.backfill_before is None:
            values["backfill_before"] = state.initial_window_start
        return values

    return update_state(db, account_id, decide)


def record_backfill_progress(
    db: Session,
    account_id: UUID,
    *,
    before: datetime,
    completed: bool,
) -> SyncState | None:
    """Backfill watermark only moves further into the past."""

    def decide(state: SyncState) -> dict | None:
        values: dict = {}
        if state.backfill_before is None or before < state.backfill_before:
            values["backfill_before"] = before
        if completed and state.backfill_completed_at is None:
            values["backfill_completed_at"] = utcnow()
        return values or None

    return update_state(db, account_id, decide)


def record_error(db: Session, account_id: UUID, error: str) -> None:
    update_state(db, account_id, lambda _state: {"last_error": error[:2000]})
