"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter. The Limiter instance
is created in formflow/__init__.py with no default limits; this module
applies limits per route category, keyed by tenant when one is known.

Usage:
    from formflow.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import g, request as flask_request

logger = logging.getLogger(__name__)

WORKFLOW_WRITE_LIMIT = "60/minute"
READ_LIMIT = "200/minute"


def tenant_rate_limit_key():
    """Rate limit key: tenant when known, else remote IP."""
    tenant_id = getattr(g, "tenant_id", None)
    if tenant_id:
        return f"tenant:{tenant_id}"
    return flask_request.remote_addr or "unknown"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per tenant, falling back to remote IP):
        - Workflow writes (POST/PATCH/DELETE on forms):  60/minute
        - Reads:                                         200/minute
        - Health check:                                  exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    bp = app.blueprints.get("forms")
    if bp:
        limiter.limit(WORKFLOW_WRITE_LIMIT, key_func=tenant_rate_limit_key, methods=["POST", "PATCH", "DELETE"])(bp)
        limiter.limit(READ_LIMIT, key_func=tenant_rate_limit_key, methods=["GET"])(bp)

    bp = app.blueprints.get("permissions")
    if bp:
        limiter.limit(READ_LIMIT, key_func=tenant_rate_limit_key)(bp)

    app.logger.info(
        "Rate limiter configured — workflow writes: %s, reads: %s",
        WORKFLOW_WRITE_LIMIT, READ_LIMIT,
    )
