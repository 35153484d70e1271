"""Tests for the per-account sync cursor store."""
from datetime import timedelta

import pytest

from mailgraph.core.errors import StaleStateError
from mailgraph.db.enums import SyncMode
from mailgraph.services import sync_state_service
from mailgraph.utils.time import ensure_utc, utcnow


def test_advance_cursor_only_moves_forward(db, account):
    assert sync_state_service.advance_cursor(db, account.id, 100) is True
    assert sync_state_service.advance_cursor(db, account.id, 90) is False
    assert sync_state_service.advance_cursor(db, account.id, 100) is False
    assert sync_state_service.advance_cursor(db, account.id, None) is False

    state = sync_state_service.get_state(db, account.id)
    assert state.history_id == 100
    assert state.last_success_at is not None

    assert sync_state_service.advance_cursor(db, account.id, 150) is True
    assert sync_state_service.get_state(db, account.id).history_id == 150


def test_every_write_bumps_version(db, account):
    start = sync_state_service.get_state(db, account.id).version
    sync_state_service.advance_cursor(db, account.id, 10)
    sync_state_service.record_error(db, account.id, "boom")
    assert sync_state_service.get_state(db, account.id).version == start + 2


def test_compare_and_swap_rejects_stale_version(db, account):
    state = sync_state_service.get_state(db, account.id)
    seen = state.version

    assert sync_state_service.compare_and_swap(db, account.id, seen, {"history_id": 200}) is True
    assert sync_state_service.compare_and_swap(db, account.id, seen, {"history_id": 50}) is False
    assert sync_state_service.get_state(db, account.id).history_id == 200


def test_update_state_gives_up_after_repeated_conflicts(db, account, monkeypatch):
    monkeypatch.setattr(sync_state_service, "compare_and_swap", lambda *args, **kwargs: False)
    with pytest.raises(StaleStateError):
        sync_state_service.advance_cursor(db, account.id, 10)


def test_reset_cursor_is_the_only_way_back(db, account):
    sync_state_service.advance_cursor(db, account.id, 500)

    state = sync_state_service.reset_cursor(db, account.id, reason="history cursor expired")

    assert state.history_id is None
    assert state.mode == SyncMode.INITIAL.value
    assert state.last_error == "history cursor expired"
    assert sync_state_service.advance_cursor(db, account.id, 20) is True


def test_complete_initial_sync_installs_baseline(db, account):
    window_start = utcnow() - timedelta(days=30)
    sync_state_service.begin_initial_sync(
        db, account.id, baseline_history_id=300, window_start=window_start
    )
    assert sync_state_service.get_state(db, account.id).history_id is None

    state = sync_state_service.complete_initial_sync(db, account.id)

    assert state.mode == SyncMode.INCREMENTAL.value
    assert state.history_id == 300
    assert ensure_utc(state.backfill_before) == ensure_utc(window_start)
    # Second completion (duplicate last page) is a no-op.
    assert sync_state_service.complete_initial_sync(db, account.id) is None


def test_complete_initial_sync_never_rewinds_newer_cursor(db, account):
    sync_state_service.begin_initial_sync(
        db, account.id, baseline_history_id=300, window_start=utcnow()
    )
    sync_state_service.advance_cursor(db, account.id, 400)

    state = sync_state_service.complete_initial_sync(db, account.id)

    assert state.history_id == 400


def test_backfill_watermark_only_moves_into_the_past(db, account):
    now = utcnow()
    sync_state_service.record_backfill_progress(
        db, account.id, before=now - timedelta(days=30), completed=False
    )
    sync_state_service.record_backfill_progress(
        db, account.id, before=now - timedelta(days=10), completed=False
    )
    state = sync_state_service.get_state(db, account.id)
    assert ensure_utc(state.backfill_before) == now - timedelta(days=30)
    assert state.backfill_completed_at is None

    state = sync_state_service.record_backfill_progress(
        db, account.id, before=now - timedelta(days=60), completed=True
    )
    assert ensure_utc(state.backfill_before) == now - timedelta(days=60)
    assert state.backfill_completed_at is not None
