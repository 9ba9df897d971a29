"""
Workflow Engine — form instance state machine.

    draft ──submit──▶ submitted ──approve──▶ in_review(step n) ──approve──▶ approved ──complete──▶ completed
                          │                        │
                          └────────reject──────────┴──▶ rejected

Every transition follows the same steps:
  1. load the instance row for update (tenant-scoped, FOR UPDATE where supported)
  2. compare the caller's expected_version, if given
  3. validate the state and the actor's rights (denials are audited)
  4. mutate, append exactly one history entry, write audit
  5. commit (optimistic lock on FormInstance.version → StaleStateError)
  6. hand the committed state to the notifier (never raises)

The tenant is an explicit argument of every public function.

Usage:
    from formflow.services import workflow_engine

    result = workflow_engine.advance(
        instance_id=12, actor_id=4, tenant_id=1,
        decision="approve", notes="Looks good", expected_version=3,
    )
"""

import logging
import secrets
import string
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

from flask import current_app, has_app_context
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from formflow.core.exceptions import (
    FormValidationError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    StaleStateError,
    ValidationError,
    WorkflowConfigurationError,
)
from formflow.models import db
from formflow.models.audit import write_audit
from formflow.models.auth import User
from formflow.models.forms import (
    REVIEW_STATUSES,
    WORKFLOW_DECISIONS,
    FormInstance,
    FormWorkflowEvent,
)
from formflow.services import permission_service, template_service
from formflow.services.form_validation import (
    DEFAULT_MAX_DEPTH,
    completion_percentage,
    conditions_met,
    nesting_depth_exceeded,
    validate_form_data,
)
from formflow.services.notification import notifier

logger = logging.getLogger(__name__)

CREATE_PERMISSIONS = ["forms.create", "forms.admin"]
VIEW_ALL_PERMISSIONS = ["forms.view_all", "forms.admin"]
COMPLETE_PERMISSIONS = ["forms.complete", "forms.admin"]
DELETE_PERMISSIONS = ["forms.delete", "forms.admin"]

DEFAULT_SLA_HOURS = 72
_CODE_ALPHABET = string.ascii_uppercase + string.digits


def _utcnow():
    return datetime.now(timezone.utc)


def _setting(key, default):
    if has_app_context():
        return (current_app.config.get("FORM_ENGINE") or {}).get(key, default)
    return default


def _log_extra(instance, actor_id, event_type):
    return {
        "tenant_id": instance.tenant_id,
        "instance_id": instance.id,
        "user_id": actor_id,
        "event_type": event_type,
    }


# ═════════════════════════════════════════════════════════════════════════════
# Instance store
# ═════════════════════════════════════════════════════════════════════════════


def get_instance(instance_id: int, tenant_id: int) -> FormInstance:
    """Tenant-scoped read. Cross-tenant ids surface as NotFoundError."""
    instance = FormInstance.get_for_tenant(instance_id, tenant_id)
    if instance is None or instance.is_deleted:
        raise NotFoundError(resource="FormInstance", resource_id=instance_id, tenant_id=tenant_id)
    return instance


def load_instance_for_update(instance_id: int, tenant_id: int) -> FormInstance:
    """Load and row-lock an instance, refreshing any stale identity-map copy."""
    stmt = (
        select(FormInstance)
        .where(
            FormInstance.id == instance_id,
            FormInstance.tenant_id == tenant_id,
            FormInstance.deleted_at.is_(None),
        )
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    instance = db.session.execute(stmt).scalar_one_or_none()
    if instance is None:
        db.session.rollback()
        raise NotFoundError(resource="FormInstance", resource_id=instance_id, tenant_id=tenant_id)
    return instance


@contextmanager
def stale_guard(instance_id: int):
    """Translate a lost optimistic-lock race into StaleStateError.

    Any flush inside the block (audit writes, autoflush before a query)
    may issue the versioned UPDATE, so the whole mutation runs under it.
    """
    try:
        yield
    except StaleDataError as exc:
        db.session.rollback()
        logger.warning(
            "Concurrent modification of form instance %s", instance_id,
            extra={"instance_id": instance_id, "event_type": "stale_state"},
        )
        raise StaleStateError(instance_id) from exc
    except IntegrityError as exc:
        db.session.rollback()
        if "form_workflow_events" in str(exc.orig) or "uq_workflow_event_sequence" in str(exc.orig):
            raise StaleStateError(instance_id) from exc
        raise


def save_instance(instance: FormInstance) -> None:
    """Commit the instance and its new history entry."""
    with stale_guard(instance.id):
        db.session.commit()


def _check_expected_version(instance: FormInstance, expected_version: int | None) -> None:
    if expected_version is not None and instance.version != expected_version:
        instance_id, actual = instance.id, instance.version
        db.session.rollback()
        raise StaleStateError(instance_id, expected_version=expected_version, actual_version=actual)


def _invalid(instance: FormInstance, action: str, reason: str):
    status = instance.status
    db.session.rollback()
    raise InvalidTransitionError(action, status, reason)


def _deny(instance: FormInstance, actor_id: int, action: str, reason: str):
    """Audit a refused attempt, then raise PermissionDeniedError.

    The history of the instance is not touched; only successful
    transitions are recorded there.
    """
    instance_id, tenant_id, status = instance.id, instance.tenant_id, instance.status
    step = instance.current_workflow_step
    db.session.rollback()
    logger.warning(
        "Denied %s on form instance %s: %s", action, instance_id, reason,
        extra={"tenant_id": tenant_id, "instance_id": instance_id, "user_id": actor_id,
               "event_type": "form_instance.denied"},
    )
    try:
        write_audit(
            entity_type="form_instance",
            entity_id=instance_id,
            action="form_instance.denied",
            tenant_id=tenant_id,
            actor_user_id=actor_id if db.session.get(User, actor_id) else None,
            diff={"attempted": action, "reason": reason, "status": status,
                  "step": step, "actor_id": actor_id},
        )
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Could not audit denied %s on form instance %s", action, instance_id)
    raise PermissionDeniedError(actor_id, action, reason)


# ═════════════════════════════════════════════════════════════════════════════
# Step resolution
# ═════════════════════════════════════════════════════════════════════════════


def next_applicable_step(template, form_data: dict, after: str | None = None) -> dict | None:
    """First step after ``after`` (or the first step) whose conditions hold."""
    steps = template_service.get_workflow_steps(template)
    start = 0
    if after is not None:
        names = [s.get("step_name") for s in steps]
        if after not in names:
            return None
        start = names.index(after) + 1
    for step in steps[start:]:
        if conditions_met(step.get("conditions"), form_data or {}):
            return step
    return None


def _enter_step(instance: FormInstance, step: dict, now: datetime) -> None:
    instance.current_workflow_step = step["step_name"]
    instance.step_started_at = now
    role = step.get("approver_role")
    if role and not permission_service.role_exists_in_tenant(role, instance.tenant_id):
        err = WorkflowConfigurationError(step["step_name"], role, instance.tenant_id)
        logger.error(str(err), extra=_log_extra(instance, None, "workflow_configuration_error"))
        instance.configuration_warnings = list(instance.configuration_warnings or []) + [
            err.as_warning(now.isoformat())
        ]


def _leave_workflow(instance: FormInstance) -> None:
    instance.current_workflow_step = None
    instance.step_started_at = None


def _append_event(
    instance: FormInstance,
    decision: str,
    actor_id: int | None,
    step_name: str | None,
    from_status: str | None,
    now: datetime,
    notes: str | None = None,
) -> FormWorkflowEvent:
    evt = FormWorkflowEvent(
        tenant_id=instance.tenant_id,
        sequence=len(instance.events) + 1,
        step_name=step_name,
        actor_id=actor_id,
        decision=decision,
        notes=notes,
        from_status=from_status,
        to_status=instance.status,
        timestamp=now,
    )
    instance.events.append(evt)
    instance.updated_at = now
    return evt


def _result(instance: FormInstance, action: str, previous_status: str, previous_step: str | None) -> dict:
    return {
        "instance_id": instance.id,
        "instance_code": instance.instance_code,
        "action": action,
        "previous_status": previous_status,
        "new_status": instance.status,
        "previous_step": previous_step,
        "current_workflow_step": instance.current_workflow_step,
        "configuration_warnings": list(instance.configuration_warnings or []),
        "version": instance.version,
    }


# ═════════════════════════════════════════════════════════════════════════════
# Authorization
# ═════════════════════════════════════════════════════════════════════════════


def _approval_decision(user_id: int, tenant_id: int, instance: FormInstance) -> tuple[bool, str]:
    if instance.tenant_id != tenant_id or instance.is_deleted:
        return False, "instance is not in this tenant"
    if instance.status not in REVIEW_STATUSES:
        return False, f"instance is {instance.status}"
    step = template_service.find_workflow_step(instance.template, instance.current_workflow_step)
    if step is None:
        return False, "instance has no current workflow step"

    role = step.get("approver_role")
    if role:
        if not permission_service.role_exists_in_tenant(role, tenant_id):
            return False, f"approver role '{role}' is not defined in this tenant"
        if permission_service.has_role(user_id, tenant_id, role):
            return True, "approver_role"
    required = step.get("required_permissions") or []
    if required and permission_service.has_permission(user_id, tenant_id, required):
        return True, "required_permission"
    return False, f"not an approver for step '{step.get('step_name')}'"


def can_approve(user_id: int, tenant_id: int, instance: FormInstance) -> bool:
    """True iff the user may approve or reject the instance's current step.

    ``advance`` gates on this same decision.
    """
    allowed, _ = _approval_decision(user_id, tenant_id, instance)
    return allowed


def can_edit(user_id: int, tenant_id: int, instance: FormInstance) -> bool:
    if instance.tenant_id != tenant_id or instance.is_deleted:
        return False
    if instance.status == "draft":
        return instance.owner_user_id == user_id and permission_service.get_membership(user_id, tenant_id) is not None
    if instance.status in REVIEW_STATUSES:
        return can_approve(user_id, tenant_id, instance)
    return False


def can_complete(user_id: int, tenant_id: int, instance: FormInstance) -> bool:
    if instance.tenant_id != tenant_id or instance.status != "approved":
        return False
    if instance.owner_user_id == user_id and permission_service.get_membership(user_id, tenant_id):
        return True
    return permission_service.has_permission(user_id, tenant_id, COMPLETE_PERMISSIONS)


def can_delete(user_id: int, tenant_id: int, instance: FormInstance) -> bool:
    if instance.tenant_id != tenant_id or instance.is_deleted:
        return False
    if instance.status == "draft" and instance.owner_user_id == user_id:
        return permission_service.get_membership(user_id, tenant_id) is not None
    return permission_service.has_permission(user_id, tenant_id, DELETE_PERMISSIONS)


def can_view(user_id: int, tenant_id: int, instance: FormInstance) -> bool:
    if instance.tenant_id != tenant_id or permission_service.get_membership(user_id, tenant_id) is None:
        return False
    if instance.owner_user_id == user_id:
        return True
    if any(e.actor_id == user_id for e in instance.events):
        return True
    if can_approve(user_id, tenant_id, instance):
        return True
    return permission_service.has_permission(user_id, tenant_id, VIEW_ALL_PERMISSIONS)


def available_actions(user_id: int, tenant_id: int, instance: FormInstance) -> list[dict]:
    """UI hints: the actions this user could take right now."""
    actions = []
    if instance.status == "draft" and can_edit(user_id, tenant_id, instance):
        actions.append({"action": "edit", "label": "Edit"})
        actions.append({"action": "submit", "label": "Submit"})
    elif can_approve(user_id, tenant_id, instance):
        actions.append({"action": "approve", "label": "Approve", "requires_comment": False})
        actions.append({"action": "reject", "label": "Reject", "requires_comment": True})
        actions.append({"action": "edit", "label": "Edit"})
    elif can_complete(user_id, tenant_id, instance):
        actions.append({"action": "complete", "label": "Mark completed"})
    if can_delete(user_id, tenant_id, instance):
        actions.append({"action": "delete", "label": "Delete"})
    return actions


# ═════════════════════════════════════════════════════════════════════════════
# Operations
# ═════════════════════════════════════════════════════════════════════════════


def _generate_instance_code(template, tenant_id: int) -> str:
    """CATEGORY-YYMMDD-XXXX, unique within the tenant."""
    prefix_len = _setting("instance_code_prefix_length", 3)
    prefix = (template.category or "FRM")[:prefix_len].upper().ljust(prefix_len, "X")
    stamp = _utcnow().strftime("%y%m%d")
    for _ in range(10):
        suffix = "".join(secrets.choice(_CODE_ALPHABET) for _ in range(4))
        code = f"{prefix}-{stamp}-{suffix}"
        exists = FormInstance.query_for_tenant(tenant_id).filter_by(instance_code=code).first()
        if exists is None:
            return code
    raise RuntimeError("Could not allocate a unique instance code")


def _check_structure(form_data) -> None:
    if not isinstance(form_data, dict):
        raise ValidationError("form_data must be an object", details={"form_data": "must be an object"})
    max_depth = _setting("max_nesting_depth", DEFAULT_MAX_DEPTH)
    if nesting_depth_exceeded(form_data, max_depth):
        raise ValidationError(
            f"form_data exceeds maximum nesting depth of {max_depth}",
            details={"form_data": "too deeply nested"},
        )


def create_instance(
    template_id: int,
    owner_id: int,
    tenant_id: int,
    form_data: dict | None = None,
) -> FormInstance:
    """Start a draft from an active template of the same tenant."""
    permission_service.check_permission(owner_id, tenant_id, CREATE_PERMISSIONS)
    template = template_service.get_template(template_id, tenant_id)
    if not template.is_active:
        raise ValidationError(
            "Template is not active; start new forms from its latest version",
            details={"template_id": template_id},
        )
    form_data = dict(form_data or {})
    _check_structure(form_data)

    instance = FormInstance(
        tenant_id=tenant_id,
        template_id=template.id,
        owner_user_id=owner_id,
        instance_code=_generate_instance_code(template, tenant_id),
        form_data=form_data,
        status="draft",
        configuration_warnings=[],
        completion_percentage=completion_percentage(template, form_data),
    )
    db.session.add(instance)
    db.session.flush()
    write_audit(
        entity_type="form_instance",
        entity_id=instance.id,
        action="form_instance.create",
        tenant_id=tenant_id,
        actor_user_id=owner_id,
        diff={"template_id": template.id, "template_version": template.version},
    )
    db.session.commit()
    logger.info(
        "Form instance %s created from template %s", instance.instance_code, template.id,
        extra=_log_extra(instance, owner_id, "form_instance.create"),
    )
    return instance


def update_form_data(
    instance_id: int,
    actor_id: int,
    tenant_id: int,
    values: dict,
    *,
    expected_version: int | None = None,
) -> FormInstance:
    """Merge ``values`` into form_data.

    The owner edits while draft; the current step's approvers edit while
    the instance is under review; terminal states are immutable.
    """
    if not isinstance(values, dict):
        raise ValidationError("values must be an object", details={"values": "must be an object"})
    instance = load_instance_for_update(instance_id, tenant_id)
    _check_expected_version(instance, expected_version)

    if instance.is_terminal:
        _invalid(instance, "update", "Form data of a finished form cannot change")
    if not can_edit(actor_id, tenant_id, instance):
        _deny(instance, actor_id, "update", "not allowed to edit this form in its current state")

    merged = {**(instance.form_data or {}), **values}
    try:
        _check_structure(merged)
    except ValidationError:
        db.session.rollback()
        raise

    with stale_guard(instance_id):
        now = _utcnow()
        instance.form_data = merged
        instance.completion_percentage = completion_percentage(instance.template, merged)
        instance.updated_at = now
        write_audit(
            entity_type="form_instance",
            entity_id=instance.id,
            action="form_instance.update_data",
            tenant_id=tenant_id,
            actor_user_id=actor_id,
            diff={"fields": sorted(values)},
        )
        save_instance(instance)
    return instance


def submit(instance_id: int, actor_id: int, tenant_id: int, *, expected_version: int | None = None) -> dict:
    """Owner submits a draft. Validates form_data, then enters the first applicable step.

    A template without workflow steps approves the instance immediately,
    with a single history entry.

    Raises:
        NotFoundError, StaleStateError, InvalidTransitionError,
        PermissionDeniedError, FormValidationError
    """
    instance = load_instance_for_update(instance_id, tenant_id)
    _check_expected_version(instance, expected_version)

    if instance.status != "draft":
        _invalid(instance, "submit", "Only drafts can be submitted")
    if instance.owner_user_id != actor_id or permission_service.get_membership(actor_id, tenant_id) is None:
        _deny(instance, actor_id, "submit", "only the owner can submit a draft")

    template = instance.template
    form_data = instance.form_data or {}
    errors = validate_form_data(template, form_data)
    if errors:
        db.session.rollback()
        raise FormValidationError(errors)

    now = _utcnow()
    previous_status = instance.status
    with stale_guard(instance_id):
        instance.submitted_at = now
        instance.completion_percentage = completion_percentage(template, form_data)

        first = next_applicable_step(template, form_data)
        if first is None:
            instance.status = "approved"
            instance.approved_at = now
            _leave_workflow(instance)
            decision, event_type = "auto_approved", "form_approved"
        else:
            instance.status = "submitted"
            _enter_step(instance, first, now)
            decision, event_type = "submitted", "form_submitted"

        _append_event(instance, decision, actor_id, None, previous_status, now)
        write_audit(
            entity_type="form_instance",
            entity_id=instance.id,
            action="form_instance.submit",
            tenant_id=tenant_id,
            actor_user_id=actor_id,
            diff={"status": {"old": previous_status, "new": instance.status},
                  "step": instance.current_workflow_step},
        )
        save_instance(instance)
    logger.info(
        "Form instance %s submitted → %s", instance_id, instance.status,
        extra=_log_extra(instance, actor_id, "form_instance.submit"),
    )
    notifier.notify(event_type, instance, actor_id, first)
    return _result(instance, "submit", previous_status, None)


def advance(
    instance_id: int,
    actor_id: int,
    tenant_id: int,
    decision: str,
    notes: str | None = None,
    *,
    expected_version: int | None = None,
) -> dict:
    """Apply an approver's decision to the current step.

    approve: move to the next applicable step (status in_review), or to
             approved when none is left.
    reject:  rejected, step cleared.

    Raises:
        ValidationError, NotFoundError, StaleStateError,
        InvalidTransitionError, PermissionDeniedError
    """
    if decision not in WORKFLOW_DECISIONS:
        raise ValidationError(
            f"Unknown decision '{decision}'",
            details={"decision": f"must be one of {sorted(WORKFLOW_DECISIONS)}"},
        )
    instance = load_instance_for_update(instance_id, tenant_id)
    _check_expected_version(instance, expected_version)

    if instance.status not in REVIEW_STATUSES:
        _invalid(instance, decision, "Instance is not awaiting review")
    allowed, reason = _approval_decision(actor_id, tenant_id, instance)
    if not allowed:
        _deny(instance, actor_id, decision, reason)

    now = _utcnow()
    previous_status = instance.status
    previous_step = instance.current_workflow_step
    next_step = None

    with stale_guard(instance_id):
        if decision == "approve":
            next_step = next_applicable_step(instance.template, instance.form_data, after=previous_step)
            if next_step is not None:
                instance.status = "in_review"
                _enter_step(instance, next_step, now)
                event_type = "form_step_assigned"
            else:
                instance.status = "approved"
                instance.approved_at = now
                _leave_workflow(instance)
                event_type = "form_approved"
        else:
            instance.status = "rejected"
            instance.rejected_at = now
            _leave_workflow(instance)
            event_type = "form_rejected"

        _append_event(instance, decision, actor_id, previous_step, previous_status, now, notes)
        write_audit(
            entity_type="form_instance",
            entity_id=instance.id,
            action=f"form_instance.{decision}",
            tenant_id=tenant_id,
            actor_user_id=actor_id,
            diff={"status": {"old": previous_status, "new": instance.status},
                  "step": {"old": previous_step, "new": instance.current_workflow_step},
                  "notes": notes},
        )
        save_instance(instance)
    logger.info(
        "Form instance %s: %s at step %s → %s", instance_id, decision, previous_step, instance.status,
        extra=_log_extra(instance, actor_id, f"form_instance.{decision}"),
    )
    notifier.notify(event_type, instance, actor_id, next_step)
    return _result(instance, decision, previous_status, previous_step)


def complete(
    instance_id: int,
    actor_id: int,
    tenant_id: int,
    notes: str | None = None,
    *,
    expected_version: int | None = None,
) -> dict:
    """Close an approved instance (owner, or forms.complete / forms.admin)."""
    instance = load_instance_for_update(instance_id, tenant_id)
    _check_expected_version(instance, expected_version)

    if instance.status != "approved":
        _invalid(instance, "complete", "Only approved forms can be completed")
    if not can_complete(actor_id, tenant_id, instance):
        _deny(instance, actor_id, "complete", "only the owner or a forms.complete holder can complete")

    now = _utcnow()
    previous_status = instance.status
    with stale_guard(instance_id):
        instance.status = "completed"
        instance.completed_at = now
        _append_event(instance, "completed", actor_id, None, previous_status, now, notes)
        write_audit(
            entity_type="form_instance",
            entity_id=instance.id,
            action="form_instance.complete",
            tenant_id=tenant_id,
            actor_user_id=actor_id,
            diff={"status": {"old": previous_status, "new": "completed"}},
        )
        save_instance(instance)
    notifier.notify("form_completed", instance, actor_id)
    return _result(instance, "complete", previous_status, None)


def delete_instance(instance_id: int, actor_id: int, tenant_id: int) -> None:
    """Soft delete: the owner's own draft, or any instance with forms.delete."""
    instance = load_instance_for_update(instance_id, tenant_id)
    if not can_delete(actor_id, tenant_id, instance):
        _deny(instance, actor_id, "delete", "not allowed to delete this form")
    status = instance.status
    with stale_guard(instance_id):
        instance.soft_delete()
        write_audit(
            entity_type="form_instance",
            entity_id=instance.id,
            action="form_instance.delete",
            tenant_id=tenant_id,
            actor_user_id=actor_id,
            diff={"status": status},
        )
        save_instance(instance)


def get_history(instance_id: int, tenant_id: int) -> list[dict]:
    return get_instance(instance_id, tenant_id).workflow_history


# ═════════════════════════════════════════════════════════════════════════════
# SLA
# ═════════════════════════════════════════════════════════════════════════════


def find_overdue_instances(tenant_id: int, now: datetime | None = None) -> list[dict]:
    """Instances whose current step has been open longer than its sla_hours."""
    now = now or _utcnow()
    default_sla = _setting("default_sla_hours", DEFAULT_SLA_HOURS)
    rows = (
        FormInstance.query_active()
        .filter(
            FormInstance.tenant_id == tenant_id,
            FormInstance.status.in_(REVIEW_STATUSES),
            FormInstance.step_started_at.isnot(None),
        )
        .order_by(FormInstance.step_started_at)
        .all()
    )
    overdue = []
    for inst in rows:
        step = template_service.find_workflow_step(inst.template, inst.current_workflow_step) or {}
        sla_hours = step.get("sla_hours")
        if sla_hours is None:
            sla_hours = default_sla
        started = inst.step_started_at
        if started.tzinfo is None:
            started = started.replace(tzinfo=timezone.utc)
        due_at = started + timedelta(hours=sla_hours)
        if now > due_at:
            overdue.append({
                "instance_id": inst.id,
                "instance_code": inst.instance_code,
                "step_name": inst.current_workflow_step,
                "approver_role": step.get("approver_role"),
                "sla_hours": sla_hours,
                "step_started_at": started.isoformat(),
                "due_at": due_at.isoformat(),
                "hours_overdue": round((now - due_at).total_seconds() / 3600, 1),
            })
    return overdue


def list_instances(tenant_id: int, status: str | None = None) -> list[FormInstance]:
    q = FormInstance.query_active().filter(FormInstance.tenant_id == tenant_id)
    if status:
        q = q.filter(FormInstance.status == status)
    return q.order_by(FormInstance.created_at.desc(), FormInstance.id.desc()).all()
