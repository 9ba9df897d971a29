"""
Permission Decorators — tenant-scoped RBAC decorators for route protection.

Usage:
    @bp.route("/permissions/users/<int:user_id>", methods=["GET"])
    @require_any_permission("members.view", "members.manage")
    def user_permissions(user_id):
        ...

The user and tenant come from ``g`` (set by tenant_context) and are passed
explicitly to the permission service.
"""

import functools
import logging

from flask import g

from formflow.services.permission_service import has_permission
from formflow.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def _guard(codenames: list[str], f):
    @functools.wraps(f)
    def decorated(*args, **kwargs):
        user_id = getattr(g, "user_id", None)
        tenant_id = getattr(g, "tenant_id", None)
        if user_id is None or tenant_id is None:
            return api_error(E.UNAUTHENTICATED, "Authentication required")

        if not has_permission(user_id, tenant_id, codenames):
            logger.warning(
                "User %s denied: missing any of %s on %s",
                user_id, codenames, f.__name__,
                extra={"tenant_id": tenant_id, "user_id": user_id},
            )
            return api_error(E.FORBIDDEN, "Permission denied", details={"required_any": codenames})

        return f(*args, **kwargs)
    return decorated


def require_permission(codename: str):
    """Decorator: require a specific permission in the request's tenant."""
    def decorator(f):
        return _guard([codename], f)
    return decorator


def require_any_permission(*codenames: str):
    """Decorator: require at least ONE of the listed permissions."""
    def decorator(f):
        return _guard(list(codenames), f)
    return decorator
