"""API routers."""

from mailgraph.routers.accounts import router as accounts_router
from mailgraph.routers.contacts import router as contacts_router
from mailgraph.routers.internal import router as internal_router
from mailgraph.routers.jobs import router as jobs_router
from mailgraph.routers.webhooks import router as webhooks_router

__all__ = [
    "accounts_router",
    "contacts_router",
    "internal_router",
    "jobs_router",
    "webhooks_router",
]
