"""
Error reporting — Sentry plus structured logs.

Every error the interpreter catches goes through ``report_error`` so that it
is logged with structlog and, when a DSN is configured, captured by Sentry
with the session/node/organization tags attached.
"""
from __future__ import annotations

import sentry_sdk
import structlog
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.httpx import HttpxIntegration

logger = structlog.get_logger()


def init_error_tracking(settings) -> bool:
    """Initialize Sentry for error tracking. No-op without a DSN."""
    cfg = settings.error_tracking
    if not cfg.sentry_dsn:
        return False
    sentry_sdk.init(
        dsn=cfg.sentry_dsn,
        environment=cfg.environment,
        traces_sample_rate=cfg.traces_sample_rate,
        integrations=[
            FastApiIntegration(),
            HttpxIntegration(),
        ],
        attach_stacktrace=True,
        send_default_pii=False,
    )
    logger.info("sentry_initialized", environment=cfg.environment)
    return True


def report_error(
    error: BaseException,
    operation: str,
    session_id: str = "",
    node_id: str = "",
    organization_id: str = "",
    **extra,
) -> None:
    """Log ``error`` and capture it with flow tags."""
    session_id = session_id or getattr(error, "session_id", "")
    node_id = node_id or getattr(error, "node_id", "")

    logger.error(
        f"{operation}_failed",
        error=str(error),
        error_type=type(error).__name__,
        session_id=session_id,
        node_id=node_id,
        organization_id=organization_id,
        **extra,
    )

    with sentry_sdk.new_scope() as scope:
        scope.set_tag("operation", operation)
        if session_id:
            scope.set_tag("session_id", session_id)
        if node_id:
            scope.set_tag("node_id", node_id)
        if organization_id:
            scope.set_tag("organization_id", organization_id)
        for key, value in extra.items():
            scope.set_extra(key, value)
        sentry_sdk.capture_exception(error)
