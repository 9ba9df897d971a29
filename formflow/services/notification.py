"""
Tenant Forms Workflow Core
Notification Service — workflow notifier and in-app notification queries.

The workflow engine calls ``notifier.notify(...)`` only after a transition
has committed. The notifier snapshots what it needs from the instance and
delivers on a worker pool (or inline when NOTIFICATIONS_ASYNC is off).
Delivery failures are logged and never reach the caller: a committed
transition is never undone by a notification problem.
"""

import logging
from concurrent.futures import ThreadPoolExecutor

from flask import current_app

from formflow.models import db
from formflow.models.auth import TenantMembership
from formflow.models.notification import Notification
from formflow.services import permission_service

logger = logging.getLogger(__name__)

_EVENT_TITLES = {
    "form_submitted": "Form {code} submitted for review",
    "form_step_assigned": "Form {code} is waiting for your review ({step})",
    "form_approved": "Form {code} was approved",
    "form_rejected": "Form {code} was rejected",
    "form_completed": "Form {code} was completed",
}
_EVENT_SEVERITY = {
    "form_approved": "success",
    "form_completed": "success",
    "form_rejected": "warning",
}
# Events addressed to the approvers of the instance's current step
_APPROVER_EVENTS = {"form_submitted", "form_step_assigned"}


def build_payload(event_type: str, instance, actor_id: int | None, step: dict | None) -> dict:
    """Plain-data snapshot of an instance; safe to hand to another thread."""
    return {
        "event_type": event_type,
        "instance_id": instance.id,
        "instance_code": instance.instance_code,
        "tenant_id": instance.tenant_id,
        "owner_user_id": instance.owner_user_id,
        "status": instance.status,
        "step_name": instance.current_workflow_step,
        "approver_role": (step or {}).get("approver_role"),
        "required_permissions": list((step or {}).get("required_permissions") or []),
        "actor_id": actor_id,
    }


def step_approver_ids(tenant_id: int, approver_role: str | None, required_permissions: list[str]) -> list[int]:
    """Active members of the tenant who satisfy a step's approver rule."""
    if not approver_role and not required_permissions:
        return []
    user_ids = [
        row[0] for row in
        db.session.query(TenantMembership.user_id)
        .filter_by(tenant_id=tenant_id, status="active")
        .order_by(TenantMembership.user_id)
        .all()
    ]
    approvers = []
    for uid in user_ids:
        if approver_role and permission_service.has_role(uid, tenant_id, approver_role):
            approvers.append(uid)
        elif required_permissions and permission_service.has_permission(uid, tenant_id, required_permissions):
            approvers.append(uid)
    return approvers


def resolve_recipients(payload: dict) -> list[int]:
    if payload["event_type"] in _APPROVER_EVENTS:
        recipients = step_approver_ids(
            payload["tenant_id"], payload["approver_role"], payload["required_permissions"],
        )
    else:
        recipients = [payload["owner_user_id"]]
    return [uid for uid in recipients if uid != payload["actor_id"]]


class WorkflowNotifier:
    """Post-commit, fire-and-forget notification dispatcher."""

    def __init__(self, app=None):
        self._executor: ThreadPoolExecutor | None = None
        self._async = False
        if app is not None:
            self.init_app(app)

    def init_app(self, app):
        self._async = bool(app.config.get("NOTIFICATIONS_ASYNC", True))
        if self._async and self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=app.config.get("NOTIFIER_MAX_WORKERS", 4),
                thread_name_prefix="formflow-notify",
            )
        app.extensions["workflow_notifier"] = self

    def notify(self, event_type: str, instance, actor_id: int | None, step: dict | None = None) -> None:
        """Schedule delivery. Never raises."""
        try:
            payload = build_payload(event_type, instance, actor_id, step)
            if self._async and self._executor is not None:
                app = current_app._get_current_object()
                self._executor.submit(self._deliver_in_app_context, app, payload)
            else:
                self.deliver(payload)
        except Exception:
            logger.exception(
                "Workflow notification could not be scheduled",
                extra={"tenant_id": getattr(instance, "tenant_id", None), "event_type": event_type},
            )

    def _deliver_in_app_context(self, app, payload: dict) -> None:
        with app.app_context():
            self.deliver(payload)

    def deliver(self, payload: dict) -> int:
        """Write one Notification per recipient. Returns the count written (0 on failure)."""
        try:
            recipients = resolve_recipients(payload)
            title_tpl = _EVENT_TITLES.get(payload["event_type"], "Form {code} updated")
            title = title_tpl.format(code=payload["instance_code"], step=payload["step_name"])
            for uid in recipients:
                db.session.add(Notification(
                    tenant_id=payload["tenant_id"],
                    recipient_user_id=uid,
                    event_type=payload["event_type"],
                    title=title,
                    message=f"Status: {payload['status']}",
                    severity=_EVENT_SEVERITY.get(payload["event_type"], "info"),
                    entity_type="form_instance",
                    entity_id=payload["instance_id"],
                ))
            db.session.commit()
            logger.info(
                "Delivered %s to %d recipient(s)", payload["event_type"], len(recipients),
                extra={"tenant_id": payload["tenant_id"], "event_type": payload["event_type"]},
            )
            return len(recipients)
        except Exception:
            db.session.rollback()
            logger.exception(
                "Workflow notification delivery failed",
                extra={"tenant_id": payload.get("tenant_id"), "event_type": payload.get("event_type")},
            )
            return 0

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None


notifier = WorkflowNotifier()


class NotificationService:
    """Stateless queries over in-app notifications."""

    @staticmethod
    def list_for_user(user_id: int, tenant_id: int, *, unread_only=False, limit=50, offset=0):
        q = Notification.query_for_tenant(tenant_id).filter_by(recipient_user_id=user_id)
        if unread_only:
            q = q.filter(Notification.is_read.is_(False))
        return q.order_by(Notification.created_at.desc(), Notification.id.desc()).offset(offset).limit(limit).all()

    @staticmethod
    def unread_count(user_id: int, tenant_id: int) -> int:
        return (
            Notification.query_for_tenant(tenant_id)
            .filter_by(recipient_user_id=user_id, is_read=False)
            .count()
        )

    @staticmethod
    def mark_read(notification_id: int, user_id: int, tenant_id: int):
        notif = Notification.get_for_tenant(notification_id, tenant_id)
        if notif is None or notif.recipient_user_id != user_id:
            return None
        notif.mark_read()
        db.session.commit()
        return notif
