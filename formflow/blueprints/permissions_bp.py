"""
Permissions Blueprint — read-only view of the permission resolver.

Endpoints:
    GET /api/v1/permissions/me                      caller's role + effective permissions
    GET /api/v1/permissions/evaluate?permission=x   decision breakdown for the caller
    GET /api/v1/permissions/users/<uid>             another member (members.view)
"""

from flask import Blueprint, g, jsonify, request

from formflow.middleware.permission_required import require_any_permission
from formflow.services import membership_service, permission_service
from formflow.utils.errors import E, api_error

permissions_bp = Blueprint("permissions", __name__, url_prefix="/api/v1/permissions")


@permissions_bp.route("/me", methods=["GET"])
def my_permissions():
    return jsonify(membership_service.get_tenant_context(g.user_id, g.tenant_id))


@permissions_bp.route("/evaluate", methods=["GET"])
def evaluate():
    codename = (request.args.get("permission") or "").strip()
    if not codename:
        return api_error(E.VALIDATION_REQUIRED, "Query parameter 'permission' is required")
    return jsonify(permission_service.evaluate_permission(g.user_id, g.tenant_id, codename))


@permissions_bp.route("/users/<int:user_id>", methods=["GET"])
@require_any_permission("members.view", "members.manage")
def user_permissions(user_id: int):
    return jsonify(membership_service.get_tenant_context(user_id, g.tenant_id))
