"""FastAPI application entry point."""
import logging

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from sqlalchemy import text

from mailgraph.core.config import settings
from mailgraph.core.structured_logging import configure_logging
from mailgraph.db.session import engine

configure_logging()

# ============================================================================
# Sentry Integration (optional, for production error tracking)
# ============================================================================

if settings.sentry_enabled:
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENV,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
        ],
        traces_sample_rate=0.1,  # 10% of requests for performance monitoring
        send_default_pii=False,  # Mail addresses are PII
    )
    logging.info("Sentry initialized for error tracking")

# ============================================================================
# Rate Limiting
# ============================================================================

from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from mailgraph.core.rate_limit import limiter

# ============================================================================
# FastAPI App
# ============================================================================

app = FastAPI(
    title="Mailgraph API",
    description="Mailbox sync, contact extraction and relationship data",
    version=settings.VERSION,
    docs_url="/docs" if settings.ENV == "dev" else None,
    redoc_url="/redoc" if settings.ENV == "dev" else None,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# ============================================================================
# Routers
# ============================================================================

from mailgraph.routers import (
    accounts_router,
    contacts_router,
    internal_router,
    jobs_router,
    webhooks_router,
)

# Push ingress (Gmail Pub/Sub)
app.include_router(webhooks_router, prefix="/webhooks", tags=["webhooks"])

# Ops and read endpoints (protected by INTERNAL_SECRET)
app.include_router(accounts_router)
app.include_router(contacts_router)
app.include_router(jobs_router, prefix="/jobs", tags=["jobs"])

# Internal endpoints (scheduled/cron jobs)
app.include_router(internal_router)


@app.get("/health")
def health_check():
    """Liveness plus a database round trip."""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as exc:
        logging.getLogger(__name__).error("Health check failed: %s", type(exc).__name__)
        return JSONResponse(status_code=503, content={"status": "unhealthy", "database": "error"})
    return {"status": "ok", "version": settings.VERSION}
