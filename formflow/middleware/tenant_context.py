"""
Tenant Context Middleware — resolves the caller and tenant of an API request.

Reads two headers set by the upstream gateway:
    X-Tenant-Id   the tenant the request acts in
    X-User-Id     the authenticated user

The ids are validated and stored on ``flask.g`` (``g.tenant_id``,
``g.user_id``, ``g.tenant``). Blueprints pass them explicitly into the
services; services never read ``g``.

Chain order:
    tenant_context.py  →  route handler
"""

import logging
import uuid

from flask import g, request

from formflow.models import db
from formflow.models.auth import Tenant
from formflow.utils.errors import E, api_error
from formflow.utils.helpers import as_int

logger = logging.getLogger(__name__)

# Paths that need no tenant context
TENANT_SKIP_PREFIXES = (
    "/api/v1/health",
    "/static/",
)


def init_tenant_context(app):
    """Register tenant context middleware as a before_request hook."""

    @app.before_request
    def _tenant_context():
        g.tenant = None
        g.tenant_id = None
        g.user_id = None
        g.request_id = request.headers.get("X-Request-Id") or uuid.uuid4().hex[:16]

        if not request.path.startswith("/api/v1/"):
            return None
        for prefix in TENANT_SKIP_PREFIXES:
            if request.path.startswith(prefix):
                return None

        tenant_id = as_int(request.headers.get("X-Tenant-Id"))
        user_id = as_int(request.headers.get("X-User-Id"))
        if tenant_id is None or user_id is None:
            return api_error(E.UNAUTHENTICATED, "X-Tenant-Id and X-User-Id headers are required")

        tenant = db.session.get(Tenant, tenant_id)
        if tenant is None:
            logger.warning(
                "Request for unknown tenant %s", tenant_id,
                extra={"tenant_id": tenant_id, "user_id": user_id, "request_id": g.request_id},
            )
            return api_error(E.FORBIDDEN, "Tenant not found")
        if not tenant.is_active:
            logger.warning(
                "Request for deactivated tenant %s", tenant_id,
                extra={"tenant_id": tenant_id, "user_id": user_id, "request_id": g.request_id},
            )
            return api_error(E.FORBIDDEN, "Tenant account is deactivated")

        g.tenant = tenant
        g.tenant_id = tenant_id
        g.user_id = user_id
        return None

    logger.info("Tenant context middleware installed")
