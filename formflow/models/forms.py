"""
Tenant Forms Workflow Core
Forms domain model.

Models:
    - FormTemplate: versioned form definition (steps → sections → fields)
      plus its approval workflow configuration.
    - FormInstance: one filled-in copy of a template moving through the
      workflow state machine.
    - FormWorkflowEvent: append-only workflow history of an instance.

FormTemplate content is immutable per version; edits go through
``template_service.create_version`` which writes a new row.
FormInstance.version is the optimistic-lock counter: every UPDATE is
issued as ``... WHERE id = :id AND version = :old`` and a zero row match
surfaces as ``StaleDataError`` at flush.
"""

from datetime import datetime, timezone

from sqlalchemy import event

from formflow.models import db
from formflow.models.base import TenantModel
from formflow.models.soft_delete import SoftDeleteMixin

# ── Constants ────────────────────────────────────────────────────────────────

FIELD_TYPES = {
    "text", "textarea", "email", "phone", "url",
    "number", "currency", "date",
    "select", "radio", "checkbox", "multiselect",
    "boolean", "json", "structured", "file_upload",
}

INSTANCE_STATUSES = {"draft", "submitted", "in_review", "approved", "rejected", "completed"}
REVIEW_STATUSES = {"submitted", "in_review"}
TERMINAL_STATUSES = {"approved", "rejected", "completed"}

WORKFLOW_DECISIONS = {"approve", "reject"}
# Decisions recorded in history; the first two come from callers of advance().
HISTORY_DECISIONS = WORKFLOW_DECISIONS | {"submitted", "auto_approved", "completed"}

CONDITION_OPERATORS = {
    "equals", "not_equals", "in", "not_in",
    "gt", "gte", "lt", "lte", "exists",
}


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


def _in_check(column: str, values: set) -> str:
    return f"{column} IN (" + ",".join(f"'{v}'" for v in sorted(values)) + ")"


# ═══════════════════════════════════════════════════════════════
# 1. FORM TEMPLATES
# ═══════════════════════════════════════════════════════════════
class FormTemplate(SoftDeleteMixin, TenantModel):
    __tablename__ = "form_templates"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    category = db.Column(db.String(50), nullable=False, default="general")
    version = db.Column(db.String(20), nullable=False, default="1.0")
    parent_template_id = db.Column(
        db.Integer, db.ForeignKey("form_templates.id", ondelete="SET NULL"), nullable=True,
    )
    steps = db.Column(db.JSON, nullable=False, default=list)
    workflow_configuration = db.Column(db.JSON, nullable=False, default=dict)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_by = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        db.Index("ix_form_templates_tenant_category", "tenant_id", "category"),
    )

    instances = db.relationship("FormInstance", back_populates="template", lazy="dynamic")

    @property
    def workflow_steps(self) -> list[dict]:
        return list((self.workflow_configuration or {}).get("steps") or [])

    @property
    def has_workflow(self) -> bool:
        return bool(self.workflow_steps)

    def to_dict(self, include_definition=True):
        d = {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "version": self.version,
            "parent_template_id": self.parent_template_id,
            "is_active": self.is_active,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
        }
        if include_definition:
            d["steps"] = self.steps or []
            d["workflow_configuration"] = self.workflow_configuration or {}
        return d

    def __repr__(self):
        return f"<FormTemplate {self.id}: {self.name} v{self.version}>"


# ═══════════════════════════════════════════════════════════════
# 2. FORM INSTANCES
# ═══════════════════════════════════════════════════════════════
class FormInstance(SoftDeleteMixin, TenantModel):
    __tablename__ = "form_instances"

    id = db.Column(db.Integer, primary_key=True)
    instance_code = db.Column(db.String(40), nullable=False)
    template_id = db.Column(
        db.Integer, db.ForeignKey("form_templates.id", ondelete="RESTRICT"), nullable=False, index=True,
    )
    owner_user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True,
    )
    form_data = db.Column(db.JSON, nullable=False, default=dict)
    status = db.Column(db.String(20), nullable=False, default="draft")
    current_workflow_step = db.Column(db.String(100), nullable=True)
    step_started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    configuration_warnings = db.Column(db.JSON, nullable=False, default=list)
    completion_percentage = db.Column(db.Integer, nullable=False, default=0)

    submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejected_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    version = db.Column(db.Integer, nullable=False)

    __table_args__ = (
        db.UniqueConstraint("tenant_id", "instance_code", name="uq_form_instance_tenant_code"),
        db.Index("ix_form_instances_tenant_status", "tenant_id", "status"),
        db.CheckConstraint(_in_check("status", INSTANCE_STATUSES), name="ck_form_instance_status"),
    )
    __mapper_args__ = {"version_id_col": version}

    template = db.relationship("FormTemplate", back_populates="instances")
    events = db.relationship(
        "FormWorkflowEvent",
        back_populates="instance",
        order_by="FormWorkflowEvent.sequence",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    @property
    def workflow_history(self) -> list[dict]:
        return [e.to_dict() for e in self.events]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self, include_history=True):
        d = {
            "id": self.id,
            "instance_code": self.instance_code,
            "tenant_id": self.tenant_id,
            "template_id": self.template_id,
            "template_version": self.template.version if self.template else None,
            "owner_user_id": self.owner_user_id,
            "form_data": self.form_data or {},
            "status": self.status,
            "current_workflow_step": self.current_workflow_step,
            "step_started_at": _iso(self.step_started_at),
            "configuration_warnings": list(self.configuration_warnings or []),
            "completion_percentage": self.completion_percentage,
            "submitted_at": _iso(self.submitted_at),
            "approved_at": _iso(self.approved_at),
            "rejected_at": _iso(self.rejected_at),
            "completed_at": _iso(self.completed_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "version": self.version,
        }
        if include_history:
            d["workflow_history"] = self.workflow_history
        return d

    def __repr__(self):
        return f"<FormInstance {self.id}: {self.instance_code} [{self.status}]>"


# ═══════════════════════════════════════════════════════════════
# 3. WORKFLOW HISTORY (append-only)
# ═══════════════════════════════════════════════════════════════
class FormWorkflowEvent(TenantModel):
    """One transition of a form instance.

    ``sequence`` is dense per instance starting at 1; the unique
    constraint on (instance_id, sequence) rejects a second writer that
    appended from the same observed history.
    """

    __tablename__ = "form_workflow_events"

    id = db.Column(db.Integer, primary_key=True)
    instance_id = db.Column(
        db.Integer, db.ForeignKey("form_instances.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    sequence = db.Column(db.Integer, nullable=False)
    step_name = db.Column(db.String(100), nullable=True)
    actor_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    decision = db.Column(db.String(30), nullable=False)
    notes = db.Column(db.Text, nullable=True)
    from_status = db.Column(db.String(20), nullable=True)
    to_status = db.Column(db.String(20), nullable=False)
    timestamp = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        db.UniqueConstraint("instance_id", "sequence", name="uq_workflow_event_sequence"),
        db.CheckConstraint(_in_check("decision", HISTORY_DECISIONS), name="ck_workflow_event_decision"),
    )

    instance = db.relationship("FormInstance", back_populates="events")

    def to_dict(self):
        return {
            "sequence": self.sequence,
            "step_name": self.step_name,
            "actor_id": self.actor_id,
            "decision": self.decision,
            "notes": self.notes,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "timestamp": _iso(self.timestamp),
        }

    def __repr__(self):
        return f"<FormWorkflowEvent {self.instance_id}#{self.sequence}: {self.decision}>"


@event.listens_for(FormWorkflowEvent, "before_update")
def _reject_history_update(mapper, connection, target):
    raise ValueError(
        f"Workflow history is append-only (instance={target.instance_id}, sequence={target.sequence})"
    )
