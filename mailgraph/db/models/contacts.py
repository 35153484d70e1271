"""Contacts and the message/contact interaction edges."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    false,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from mailgraph.db.base import Base
from mailgraph.db.enums import ContactStatus
from mailgraph.utils.time import utcnow

_ACTIVE = "status = 'active'"


class Contact(Base):
    """
    A person (or role mailbox) the user corresponds with.

    ``field_provenance`` maps field name to
    ``{"source", "confidence", "user_edited", "updated_at"}`` so later merges
    never downgrade a stronger value.
    """

    __tablename__ = "contacts"
    __table_args__ = (
        Index(
            "uq_contacts_user_email_active",
            "user_id",
            "email",
            unique=True,
            postgresql_where=text(_ACTIVE),
            sqlite_where=text(_ACTIVE),
        ),
        Index("idx_contacts_user_last_interaction", "user_id", "last_interaction_at"),
        Index("idx_contacts_domain", "user_id", "domain"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False)

    display_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    company: Mapped[str | None] = mapped_column(Text, nullable=True)
    job_title: Mapped[str | None] = mapped_column(Text, nullable=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    website: Mapped[str | None] = mapped_column(Text, nullable=True)
    linkedin_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    twitter_handle: Mapped[str | None] = mapped_column(String(100), nullable=True)
    github_handle: Mapped[str | None] = mapped_column(String(100), nullable=True)
    domain: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_freemail: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )
    is_role_address: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )
    field_provenance: Mapped[dict] = mapped_column(nullable=False, default=dict)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ContactStatus.ACTIVE.value
    )
    merged_into_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("contacts.id", ondelete="SET NULL"), nullable=True
    )

    interaction_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    inbound_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    outbound_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    first_interaction_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_interaction_at: Mapped[datetime | None] = mapped_column(nullable=True)
    relationship_strength: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    stats_updated_at: Mapped[datetime | None] = mapped_column(nullable=True)

    enrichment_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    enriched_at: Mapped[datetime | None] = mapped_column(nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        nullable=False, default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        nullable=False, default=utcnow, onupdate=utcnow, server_default=func.now()
    )


class Interaction(Base):
    """Edge between a stored message and a resolved contact."""

    __tablename__ = "interactions"
    __table_args__ = (
        UniqueConstraint("message_id", "contact_id", "direction", name="uq_interactions_message_contact_direction"),
        Index("idx_interactions_contact_occurred", "contact_id", "occurred_at"),
        Index("idx_interactions_account", "account_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    message_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("messages.id", ondelete="CASCADE"), nullable=False
    )
    contact_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False
    )
    account_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(nullable=False)
    direction: Mapped[str] = mapped_column(String(20), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        nullable=False, default=utcnow, server_default=func.now()
    )
