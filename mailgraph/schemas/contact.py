"""Pydantic schemas for extracted contacts."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class ContactListItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    email: str
    display_name: str | None
    company: str | None
    job_title: str | None
    domain: str | None
    interaction_count: int
    last_interaction_at: datetime | None
    relationship_strength: float


class ContactRead(BaseModel):
    """Contact with field provenance and interaction stats."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    email: str
    display_name: str | None
    company: str | None
    job_title: str | None
    phone: str | None
    website: str | None
    linkedin_url: str | None
    twitter_handle: str | None
    github_handle: str | None
    domain: str | None
    is_freemail: bool
    is_role_address: bool
    field_provenance: dict
    status: str
    interaction_count: int
    inbound_count: int
    outbound_count: int
    first_interaction_at: datetime | None
    last_interaction_at: datetime | None
    relationship_strength: float
    stats_updated_at: datetime | None
    enrichment_status: str | None
    enriched_at: datetime | None
    created_at: datetime
    updated_at: datetime


class ContactListResponse(BaseModel):
    items: list[ContactListItem]
    limit: int
    offset: int
