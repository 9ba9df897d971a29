"""
Tenant Forms Workflow Core
Audit domain model.

Models:
    - AuditLog: immutable, append-only audit trail for membership, role
      and workflow actions (including denied workflow attempts).
"""

import json
from datetime import UTC, datetime

from formflow.models import db

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {"membership", "role", "form_template", "form_instance"}

AUDIT_ACTIONS = {
    # Membership administration
    "membership.add",
    "membership.assign_role",
    "membership.grant_permission",
    "membership.deny_permission",
    "membership.clear_permission",
    "membership.set_custom_permissions",
    "membership.deactivate",
    "membership.activate",
    "membership.set_current",
    # Roles
    "role.create",
    "role.set_permissions",
    # Templates
    "form_template.create",
    "form_template.new_version",
    # Workflow
    "form_instance.create",
    "form_instance.update_data",
    "form_instance.submit",
    "form_instance.approve",
    "form_instance.reject",
    "form_instance.complete",
    "form_instance.delete",
    "form_instance.denied",
}


class AuditLog(db.Model):
    """
    Immutable audit trail.

    One row per action.  ``diff_json`` carries old→new snapshots for
    field-level changes and the reason for denied attempts.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(
        db.Integer,
        db.ForeignKey("tenants.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    entity_type = db.Column(db.String(30), nullable=False)
    entity_id = db.Column(db.String(36), nullable=False)
    action = db.Column(db.String(60), nullable=False)
    actor_user_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    diff_json = db.Column(db.Text, default="{}")
    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor_user_id": self.actor_user_id,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id,
    action: str,
    tenant_id: int | None,
    actor_user_id: int | None = None,
    diff: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.

    The tenant is always passed by the caller; nothing is read from the
    request context.
    """
    log = AuditLog(
        tenant_id=tenant_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor_user_id=actor_user_id,
        diff_json=json.dumps(diff or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
