"""
Forms Workflow Blueprint.

Thin HTTP adapter over ``workflow_engine``. The caller and tenant come from
``g`` (tenant_context middleware) and are passed explicitly to the engine.

Endpoints:
    GET    /api/v1/forms/instances?status=<s>           all instances in the tenant
    POST   /api/v1/forms/templates/<tid>/instances      create a draft
    GET    /api/v1/forms/instances/<iid>                instance + available actions
    PATCH  /api/v1/forms/instances/<iid>/data           merge form data
    POST   /api/v1/forms/instances/<iid>/submit         owner submits the draft
    POST   /api/v1/forms/instances/<iid>/advance        approver decision
           Body: { "decision": "approve|reject", "notes": "...", "expected_version": 3 }
    POST   /api/v1/forms/instances/<iid>/complete       approved → completed
    DELETE /api/v1/forms/instances/<iid>                soft delete
    GET    /api/v1/forms/instances/<iid>/history        ordered workflow history
    GET    /api/v1/forms/instances/<iid>/actions        available actions
    GET    /api/v1/forms/overdue                        SLA breaches in the tenant
    GET    /api/v1/forms/notifications                  caller's notifications

Layer contract:
    - Blueprint: parse + validate input shape, call the engine, return JSON.
    - Domain exceptions are mapped to responses by the app-level handlers.
"""

import logging

from flask import Blueprint, g, jsonify, request

from formflow.core.exceptions import NotFoundError
from formflow.middleware.permission_required import require_any_permission, require_permission
from formflow.models.forms import INSTANCE_STATUSES, WORKFLOW_DECISIONS
from formflow.services import workflow_engine
from formflow.services.notification import NotificationService
from formflow.utils.errors import E, api_error
from formflow.utils.helpers import as_int

logger = logging.getLogger(__name__)

forms_bp = Blueprint("forms", __name__, url_prefix="/api/v1/forms")


# ── Helpers ────────────────────────────────────────────────────────────────────


def _expected_version(data: dict):
    """Return (version, err_response). Absent → (None, None)."""
    raw = data.get("expected_version")
    if raw is None:
        return None, None
    version = as_int(raw)
    if version is None:
        return None, api_error(E.VALIDATION_INVALID, "expected_version must be an integer")
    return version, None


def _visible_instance(instance_id: int):
    instance = workflow_engine.get_instance(instance_id, g.tenant_id)
    if not workflow_engine.can_view(g.user_id, g.tenant_id, instance):
        raise NotFoundError(resource="FormInstance", resource_id=instance_id, tenant_id=g.tenant_id)
    return instance


# ── Routes ─────────────────────────────────────────────────────────────────────


@forms_bp.route("/templates/<int:template_id>/instances", methods=["POST"])
def create_instance(template_id: int):
    data = request.get_json(silent=True) or {}
    form_data = data.get("form_data") or {}
    if not isinstance(form_data, dict):
        return api_error(E.VALIDATION_INVALID, "form_data must be an object")
    instance = workflow_engine.create_instance(template_id, g.user_id, g.tenant_id, form_data)
    return jsonify(instance.to_dict()), 201


@forms_bp.route("/instances", methods=["GET"])
@require_permission("forms.view_all")
def list_instances():
    status = request.args.get("status")
    if status and status not in INSTANCE_STATUSES:
        return api_error(E.VALIDATION_INVALID, f"Invalid status. Must be one of {sorted(INSTANCE_STATUSES)}")
    items = workflow_engine.list_instances(g.tenant_id, status)
    return jsonify({"items": [i.to_dict(include_history=False) for i in items], "total": len(items)})


@forms_bp.route("/instances/<int:instance_id>", methods=["GET"])
def get_instance(instance_id: int):
    instance = _visible_instance(instance_id)
    body = instance.to_dict()
    body["available_actions"] = workflow_engine.available_actions(g.user_id, g.tenant_id, instance)
    return jsonify(body)


@forms_bp.route("/instances/<int:instance_id>/data", methods=["PATCH"])
def update_data(instance_id: int):
    data = request.get_json(silent=True) or {}
    values = data.get("values")
    if not isinstance(values, dict):
        return api_error(E.VALIDATION_REQUIRED, "Field 'values' (object) is required")
    version, err = _expected_version(data)
    if err:
        return err
    instance = workflow_engine.update_form_data(
        instance_id, g.user_id, g.tenant_id, values, expected_version=version,
    )
    return jsonify(instance.to_dict())


@forms_bp.route("/instances/<int:instance_id>/submit", methods=["POST"])
def submit_instance(instance_id: int):
    data = request.get_json(silent=True) or {}
    version, err = _expected_version(data)
    if err:
        return err
    result = workflow_engine.submit(instance_id, g.user_id, g.tenant_id, expected_version=version)
    return jsonify(result)


@forms_bp.route("/instances/<int:instance_id>/advance", methods=["POST"])
def advance_instance(instance_id: int):
    data = request.get_json(silent=True) or {}
    decision = (data.get("decision") or "").strip()
    if not decision:
        return api_error(E.VALIDATION_REQUIRED, "Field 'decision' is required")
    if decision not in WORKFLOW_DECISIONS:
        return api_error(
            E.VALIDATION_INVALID,
            f"Invalid decision '{decision}'",
            details={"valid_decisions": sorted(WORKFLOW_DECISIONS)},
        )
    version, err = _expected_version(data)
    if err:
        return err
    notes = data.get("notes")
    result = workflow_engine.advance(
        instance_id, g.user_id, g.tenant_id, decision, notes, expected_version=version,
    )
    return jsonify(result)


@forms_bp.route("/instances/<int:instance_id>/complete", methods=["POST"])
def complete_instance(instance_id: int):
    data = request.get_json(silent=True) or {}
    version, err = _expected_version(data)
    if err:
        return err
    result = workflow_engine.complete(
        instance_id, g.user_id, g.tenant_id, data.get("notes"), expected_version=version,
    )
    return jsonify(result)


@forms_bp.route("/instances/<int:instance_id>", methods=["DELETE"])
def delete_instance(instance_id: int):
    workflow_engine.delete_instance(instance_id, g.user_id, g.tenant_id)
    return "", 204


@forms_bp.route("/instances/<int:instance_id>/history", methods=["GET"])
def instance_history(instance_id: int):
    instance = _visible_instance(instance_id)
    history = instance.workflow_history
    return jsonify({"instance_id": instance.id, "items": history, "total": len(history)})


@forms_bp.route("/instances/<int:instance_id>/actions", methods=["GET"])
def instance_actions(instance_id: int):
    instance = _visible_instance(instance_id)
    return jsonify({
        "instance_id": instance.id,
        "status": instance.status,
        "current_workflow_step": instance.current_workflow_step,
        "can_approve": workflow_engine.can_approve(g.user_id, g.tenant_id, instance),
        "actions": workflow_engine.available_actions(g.user_id, g.tenant_id, instance),
    })


@forms_bp.route("/overdue", methods=["GET"])
@require_any_permission("forms.view_all", "forms.admin")
def overdue_instances():
    items = workflow_engine.find_overdue_instances(g.tenant_id)
    return jsonify({"items": items, "total": len(items)})


@forms_bp.route("/notifications", methods=["GET"])
def my_notifications():
    unread_only = request.args.get("unread_only", "false").lower() == "true"
    limit = min(as_int(request.args.get("limit")) or 50, 200)
    items = NotificationService.list_for_user(g.user_id, g.tenant_id, unread_only=unread_only, limit=limit)
    return jsonify({
        "items": [n.to_dict() for n in items],
        "unread": NotificationService.unread_count(g.user_id, g.tenant_id),
    })


@forms_bp.route("/notifications/<int:notification_id>/read", methods=["POST"])
def mark_notification_read(notification_id: int):
    notif = NotificationService.mark_read(notification_id, g.user_id, g.tenant_id)
    if notif is None:
        return api_error(E.NOT_FOUND, "Notification not found")
    return jsonify(notif.to_dict())
