"""
Template Service — versioned form templates and their workflow definitions.

Templates are immutable per version: ``create_version`` writes a new row
with the minor version bumped ("1.0" → "1.1") and deactivates the previous
one. Instances keep pointing at the version they were created from.

Workflow configuration shape::

    {"steps": [
        {"step_name": "class_teacher_review",
         "approver_role": "teacher",
         "required_permissions": ["forms.approve"],
         "sla_hours": 48,
         "conditions": [{"field": "days", "operator": "gt", "value": 3}]},
        ...
    ]}
"""

import copy
import logging

from formflow.core.exceptions import NotFoundError, ValidationError
from formflow.models import db
from formflow.models.audit import write_audit
from formflow.models.forms import CONDITION_OPERATORS, FIELD_TYPES, FormTemplate
from formflow.services import permission_service
from formflow.services.form_validation import field_type, iter_fields

logger = logging.getLogger(__name__)


# ── Structure validation ─────────────────────────────────────────────────────


def _validate_steps(steps) -> dict:
    errors: dict[str, str] = {}
    if not isinstance(steps, list):
        return {"steps": "must be a list of steps"}
    seen: set[str] = set()
    for s_idx, step in enumerate(steps):
        if not isinstance(step, dict) or not isinstance(step.get("sections", []), list):
            errors[f"steps[{s_idx}]"] = "must be an object with a 'sections' list"
            continue
        for sec_idx, section in enumerate(step.get("sections") or []):
            if not isinstance(section, dict) or not isinstance(section.get("fields", []), list):
                errors[f"steps[{s_idx}].sections[{sec_idx}]"] = "must be an object with a 'fields' list"
                continue
            for f_idx, field in enumerate(section.get("fields") or []):
                path = f"steps[{s_idx}].sections[{sec_idx}].fields[{f_idx}]"
                if not isinstance(field, dict):
                    errors[path] = "must be an object"
                    continue
                field_id = field.get("field_id")
                if not field_id:
                    errors[path] = "field_id is required"
                elif field_id in seen:
                    errors[path] = f"duplicate field_id '{field_id}'"
                else:
                    seen.add(field_id)
                if field_type(field) not in FIELD_TYPES:
                    errors[f"{path}.type"] = f"unknown field type '{field_type(field)}'"
                required_if = field.get("required_if")
                if isinstance(required_if, dict):
                    required_if = [required_if]
                _validate_conditions(required_if, f"{path}.required_if", errors)
    return errors


def _validate_conditions(conditions, path: str, errors: dict) -> None:
    if conditions is None:
        return
    if not isinstance(conditions, list):
        errors[path] = "must be a list"
        return
    for c_idx, cond in enumerate(conditions):
        if not isinstance(cond, dict) or not cond.get("field"):
            errors[f"{path}[{c_idx}]"] = "condition needs a 'field'"
        elif cond.get("operator", "equals") not in CONDITION_OPERATORS:
            errors[f"{path}[{c_idx}]"] = f"unknown operator '{cond.get('operator')}'"
        elif cond.get("operator") in ("in", "not_in") and not isinstance(cond.get("value"), list):
            errors[f"{path}[{c_idx}].value"] = f"'{cond['operator']}' needs a list value"


def _validate_workflow(workflow_configuration) -> dict:
    errors: dict[str, str] = {}
    if not isinstance(workflow_configuration, dict):
        return {"workflow_configuration": "must be an object"}
    steps = workflow_configuration.get("steps") or []
    if not isinstance(steps, list):
        return {"workflow_configuration.steps": "must be a list"}
    names: set[str] = set()
    for idx, step in enumerate(steps):
        path = f"workflow_configuration.steps[{idx}]"
        if not isinstance(step, dict):
            errors[path] = "must be an object"
            continue
        name = step.get("step_name")
        if not name:
            errors[f"{path}.step_name"] = "required"
        elif name in names:
            errors[f"{path}.step_name"] = f"duplicate step_name '{name}'"
        else:
            names.add(name)
        if not step.get("approver_role") and not step.get("required_permissions"):
            errors[path] = "needs an approver_role or required_permissions"
        perms = step.get("required_permissions")
        if perms is not None and not (isinstance(perms, list) and all(isinstance(p, str) for p in perms)):
            errors[f"{path}.required_permissions"] = "must be a list of codenames"
        sla = step.get("sla_hours")
        if sla is not None and (isinstance(sla, bool) or not isinstance(sla, (int, float)) or sla < 0):
            errors[f"{path}.sla_hours"] = "must be a non-negative number"
        _validate_conditions(step.get("conditions"), f"{path}.conditions", errors)
    return errors


def validate_template_definition(steps, workflow_configuration) -> None:
    """Raise ValidationError with a path → message map for a malformed template."""
    errors = _validate_steps(steps)
    errors.update(_validate_workflow(workflow_configuration))
    if errors:
        raise ValidationError("Invalid form template definition", details=errors)


# ── CRUD ─────────────────────────────────────────────────────────────────────


def create_template(
    tenant_id: int,
    name: str,
    *,
    steps: list,
    workflow_configuration: dict | None = None,
    category: str = "general",
    description: str = "",
    created_by: int | None = None,
) -> FormTemplate:
    name = (name or "").strip()
    if not name:
        raise ValidationError("Template name is required", details={"name": "required"})
    workflow_configuration = workflow_configuration or {"steps": []}
    validate_template_definition(steps, workflow_configuration)

    template = FormTemplate(
        tenant_id=tenant_id,
        name=name,
        description=description,
        category=category or "general",
        version="1.0",
        steps=copy.deepcopy(steps),
        workflow_configuration=copy.deepcopy(workflow_configuration),
        is_active=True,
        created_by=created_by,
    )
    db.session.add(template)
    db.session.flush()
    write_audit(
        entity_type="form_template",
        entity_id=template.id,
        action="form_template.create",
        tenant_id=tenant_id,
        actor_user_id=created_by,
        diff={"name": name, "version": template.version},
    )
    db.session.commit()
    logger.info(
        "Form template %s created (%s)", template.id, name,
        extra={"tenant_id": tenant_id, "event_type": "form_template.create"},
    )
    return template


def get_template(template_id: int, tenant_id: int | None = None) -> FormTemplate:
    """Load a template, scoped to the tenant when one is given."""
    template = db.session.get(FormTemplate, template_id)
    if template is None or template.is_deleted:
        raise NotFoundError(resource="FormTemplate", resource_id=template_id, tenant_id=tenant_id)
    if tenant_id is not None and template.tenant_id != tenant_id:
        raise NotFoundError(resource="FormTemplate", resource_id=template_id, tenant_id=tenant_id)
    return template


def list_templates(tenant_id: int, *, active_only: bool = True) -> list[FormTemplate]:
    q = FormTemplate.query_active().filter_by(tenant_id=tenant_id)
    if active_only:
        q = q.filter(FormTemplate.is_active.is_(True))
    return q.order_by(FormTemplate.name, FormTemplate.id).all()


def next_version_number(version: str) -> str:
    """Bump the minor part: 1.0 → 1.1, 1.9 → 1.10. Unparseable input gives 1.1."""
    major, _, minor = (version or "1.0").partition(".")
    try:
        return f"{int(major)}.{int(minor or 0) + 1}"
    except ValueError:
        return "1.1"


def create_version(
    template_id: int,
    tenant_id: int,
    changes: dict | None = None,
    *,
    created_by: int | None = None,
) -> FormTemplate:
    """Write a new template version; the current one is deactivated."""
    current = get_template(template_id, tenant_id)
    changes = changes or {}
    allowed = {"name", "description", "category", "steps", "workflow_configuration"}
    unknown = set(changes) - allowed
    if unknown:
        raise ValidationError(
            "Unsupported template changes",
            details={k: "cannot be changed" for k in sorted(unknown)},
        )

    steps = copy.deepcopy(changes.get("steps", current.steps))
    workflow = copy.deepcopy(changes.get("workflow_configuration", current.workflow_configuration))
    validate_template_definition(steps, workflow)

    new_template = FormTemplate(
        tenant_id=current.tenant_id,
        name=changes.get("name", current.name),
        description=changes.get("description", current.description),
        category=changes.get("category", current.category),
        version=next_version_number(current.version),
        parent_template_id=current.id,
        steps=steps,
        workflow_configuration=workflow,
        is_active=True,
        created_by=created_by,
    )
    current.is_active = False
    db.session.add(new_template)
    db.session.flush()
    write_audit(
        entity_type="form_template",
        entity_id=new_template.id,
        action="form_template.new_version",
        tenant_id=current.tenant_id,
        actor_user_id=created_by,
        diff={"version": {"old": current.version, "new": new_template.version},
              "parent_template_id": current.id},
    )
    db.session.commit()
    return new_template


# ── Definition access ────────────────────────────────────────────────────────


def get_all_fields(template: FormTemplate) -> dict[str, dict]:
    """field_id → field definition, in template order."""
    return {f["field_id"]: f for f in iter_fields(template.steps) if f.get("field_id")}


def get_workflow_steps(template: FormTemplate) -> list[dict]:
    return template.workflow_steps


def find_workflow_step(template: FormTemplate, step_name: str | None) -> dict | None:
    if step_name is None:
        return None
    for step in template.workflow_steps:
        if step.get("step_name") == step_name:
            return step
    return None


def find_configuration_issues(template: FormTemplate, tenant_id: int | None = None) -> list[dict]:
    """Workflow steps whose approver_role is not defined for the tenant."""
    tenant_id = template.tenant_id if tenant_id is None else tenant_id
    issues = []
    for step in template.workflow_steps:
        role = step.get("approver_role")
        if role and not permission_service.role_exists_in_tenant(role, tenant_id):
            issues.append({
                "template_id": template.id,
                "step_name": step.get("step_name"),
                "approver_role": role,
                "message": f"Role '{role}' does not exist in tenant {tenant_id}",
            })
    return issues
