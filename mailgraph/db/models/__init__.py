"""SQLAlchemy ORM models."""

from mailgraph.db.models.accounts import Account, SyncState
from mailgraph.db.models.contacts import Contact, Interaction
from mailgraph.db.models.jobs import Job
from mailgraph.db.models.messages import Message

__all__ = [
    "Account",
    "Contact",
    "Interaction",
    "Job",
    "Message",
    "SyncState",
]
