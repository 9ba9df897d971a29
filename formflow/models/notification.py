"""
Tenant Forms Workflow Core
Notification domain model.

Models:
    - Notification: in-app notification record with read tracking,
      written by the workflow notifier after a transition commits.
"""

from datetime import datetime, timezone

from formflow.models import db
from formflow.models.base import TenantModel

# ── Constants ────────────────────────────────────────────────────────────────

NOTIFICATION_EVENTS = {
    "form_submitted",
    "form_step_assigned",
    "form_approved",
    "form_rejected",
    "form_completed",
}
NOTIFICATION_SEVERITIES = {"info", "warning", "error", "success"}


class Notification(TenantModel):
    """
    In-app notification entity.

    One record per recipient per event.
    """

    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    recipient_user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    event_type = db.Column(db.String(40), nullable=False)
    title = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, default="")
    severity = db.Column(db.String(20), default="info")

    entity_type = db.Column(db.String(30), default="form_instance")
    entity_id = db.Column(db.Integer, nullable=True)

    is_read = db.Column(db.Boolean, default=False)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def mark_read(self):
        self.is_read = True
        self.read_at = datetime.now(timezone.utc)

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "recipient_user_id": self.recipient_user_id,
            "event_type": self.event_type,
            "title": self.title,
            "message": self.message,
            "severity": self.severity,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "is_read": self.is_read,
            "read_at": self.read_at.isoformat() if self.read_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Notification {self.id}: {self.title[:40]}>"
