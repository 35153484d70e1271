"""Ingested mailbox messages."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from mailgraph.db.base import Base
from mailgraph.db.enums import EmailDirection, MessageIngestState
from mailgraph.utils.time import utcnow


class Message(Base):
    """One provider message per account; re-ingestion updates in place."""

    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("account_id", "provider_message_id", name="uq_messages_account_provider_id"),
        Index("idx_messages_account_sent", "account_id", "sent_at"),
        Index("idx_messages_account_thread", "account_id", "thread_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(nullable=False)
    provider_message_id: Mapped[str] = mapped_column(String(255), nullable=False)
    thread_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    rfc_message_id: Mapped[str | None] = mapped_column(Text, nullable=True)

    sender_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    sender_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Lists of {"email": ..., "name": ...}
    to_recipients: Mapped[list] = mapped_column(nullable=False, default=list)
    cc_recipients: Mapped[list] = mapped_column(nullable=False, default=list)
    bcc_recipients: Mapped[list] = mapped_column(nullable=False, default=list)
    subject: Mapped[str | None] = mapped_column(Text, nullable=True)
    snippet: Mapped[str | None] = mapped_column(Text, nullable=True)
    body_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    body_html: Mapped[str | None] = mapped_column(Text, nullable=True)
    label_ids: Mapped[list] = mapped_column(nullable=False, default=list)
    sent_at: Mapped[datetime | None] = mapped_column(nullable=True)
    history_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    direction: Mapped[str] = mapped_column(
        String(20), nullable=False, default=EmailDirection.INBOUND.value
    )

    ingest_state: Mapped[str] = mapped_column(
        String(20), nullable=False, default=MessageIngestState.STORED.value
    )
    ingest_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    content_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    extracted_at: Mapped[datetime | None] = mapped_column(nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        nullable=False, default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        nullable=False, default=utcnow, onupdate=utcnow, server_default=func.now()
    )
