"""Structured logging helpers (PII-safe)."""

import logging
from typing import Any

from mailgraph.core.config import settings


def build_log_context(
    *,
    account_id: str | None = None,
    user_id: str | None = None,
    job_id: str | None = None,
    job_type: str | None = None,
    route: str | None = None,
    method: str | None = None,
) -> dict[str, Any]:
    """Return a PII-safe log context dict."""
    context: dict[str, Any] = {}
    if account_id:
        context["account_id"] = account_id
    if user_id:
        context["user_id"] = user_id
    if job_id:
        context["job_id"] = job_id
    if job_type:
        context["job_type"] = job_type
    if route:
        context["route"] = route
    if method:
        context["method"] = method
    return context


def configure_logging(level: int = logging.INFO) -> None:
    """Configure root logging for worker/CLI processes."""
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def setup_error_reporting(service_name: str) -> bool:
    """Initialise Sentry when configured. Returns whether reporting is active."""
    if not settings.sentry_enabled:
        return False

    import sentry_sdk

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENV,
        server_name=service_name,
        release=settings.VERSION,
        traces_sample_rate=0.1,
        send_default_pii=False,
    )
    logging.getLogger(__name__).info("Sentry initialized for %s", service_name)
    return True


def report_exception(exc: BaseException) -> None:
    """Forward an exception to Sentry if it is active."""
    if not settings.sentry_enabled:
        return
    import sentry_sdk

    sentry_sdk.capture_exception(exc)
