"""Linked mailbox accounts and their sync cursor."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    false,
    func,
    text,
    true,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from mailgraph.db.base import Base
from mailgraph.db.enums import AccountSyncStatus, MailboxProvider, SyncMode
from mailgraph.utils.time import utcnow


class Account(Base):
    """Mailbox linked by a user; unlink disables, never deletes."""

    __tablename__ = "accounts"
    __table_args__ = (
        UniqueConstraint("user_id", "provider", "email_address", name="uq_accounts_user_provider_email"),
        Index("idx_accounts_email_enabled", "email_address", "is_enabled"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(nullable=False)
    provider: Mapped[str] = mapped_column(
        String(20), nullable=False, default=MailboxProvider.GMAIL.value
    )
    email_address: Mapped[str] = mapped_column(String(320), nullable=False)
    display_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Opaque to everything except the token provider.
    refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)

    is_enabled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=true()
    )
    disabled_at: Mapped[datetime | None] = mapped_column(nullable=True)

    sync_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AccountSyncStatus.NEVER_SYNCED.value
    )
    sync_status_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    history_gap_detected: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )

    watch_expiration_at: Mapped[datetime | None] = mapped_column(nullable=True)
    watch_last_renewed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    watch_last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        nullable=False, default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        nullable=False, default=utcnow, onupdate=utcnow, server_default=func.now()
    )

    sync_state: Mapped["SyncState | None"] = relationship(
        back_populates="account", uselist=False, cascade="all, delete-orphan"
    )


class SyncState(Base):
    """
    Per-account sync cursor.

    Writers go through sync_state_service, which guards every update with a
    compare-and-swap on ``version`` so concurrent workers cannot rewind it.
    """

    __tablename__ = "sync_states"

    account_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), primary_key=True
    )
    history_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    mode: Mapped[str] = mapped_column(String(20), nullable=False, default=SyncMode.INITIAL.value)
    baseline_history_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    initial_window_start: Mapped[datetime | None] = mapped_column(nullable=True)
    initial_started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    backfill_before: Mapped[datetime | None] = mapped_column(nullable=True)
    backfill_completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_success_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    updated_at: Mapped[datetime] = mapped_column(
        nullable=False, default=utcnow, server_default=func.now()
    )

    account: Mapped["Account"] = relationship(back_populates="sync_state")
