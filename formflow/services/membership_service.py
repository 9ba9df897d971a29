"""
Membership Service — tenant membership and role administration.

Every mutation here:
  1. validates input (NotFoundError / ConflictError / ValidationError)
  2. writes the change and an audit row
  3. commits
  4. invalidates the permission cache synchronously, so the next
     ``has_permission`` call in any request sees the new state
"""

import logging
import re

from formflow.core.exceptions import ConflictError, NotFoundError, ValidationError
from formflow.models import db
from formflow.models.audit import write_audit
from formflow.models.auth import (
    Permission,
    Role,
    RolePermission,
    Tenant,
    TenantMembership,
    User,
)
from formflow.services import permission_service

logger = logging.getLogger(__name__)

_CODENAME_RE = re.compile(r"^(\*|[a-z0-9_]+(\.[a-z0-9_]+)*(\.\*)?)$")
USER_STATUSES = ("active", "inactive", "suspended")


# ── Helpers ──────────────────────────────────────────────────────────────────


def _validate_codename(codename: str) -> str:
    codename = (codename or "").strip()
    if not _CODENAME_RE.match(codename):
        raise ValidationError(
            f"Invalid permission codename '{codename}'",
            details={"codename": "Use dotted lowercase names, optionally ending in '.*'"},
        )
    return codename


def _require_tenant(tenant_id: int) -> Tenant:
    tenant = db.session.get(Tenant, tenant_id)
    if tenant is None:
        raise NotFoundError(resource="Tenant", resource_id=tenant_id)
    return tenant


def _require_user(user_id: int) -> User:
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFoundError(resource="User", resource_id=user_id)
    return user


def _membership_or_404(user_id: int, tenant_id: int) -> TenantMembership:
    membership = TenantMembership.query.filter_by(user_id=user_id, tenant_id=tenant_id).first()
    if membership is None:
        raise NotFoundError(resource="TenantMembership", resource_id=user_id, tenant_id=tenant_id)
    return membership


def resolve_role(tenant_id: int, role_name: str) -> Role:
    """Return the tenant's role by name, preferring a tenant role over a global one."""
    role = Role.query.filter_by(tenant_id=tenant_id, name=role_name).first()
    if role is None:
        role = Role.query.filter(Role.tenant_id.is_(None), Role.name == role_name).first()
    if role is None:
        raise NotFoundError(resource="Role", resource_id=role_name, tenant_id=tenant_id)
    return role


def _commit_membership(membership: TenantMembership, action: str, actor_id: int | None, diff: dict):
    write_audit(
        entity_type="membership",
        entity_id=membership.id,
        action=action,
        tenant_id=membership.tenant_id,
        actor_user_id=actor_id,
        diff=diff,
    )
    db.session.commit()
    permission_service.invalidate_membership(membership.user_id, membership.tenant_id)
    logger.info(
        "%s user=%s",
        action, membership.user_id,
        extra={"tenant_id": membership.tenant_id, "user_id": membership.user_id, "event_type": action},
    )
    return membership


# ═════════════════════════════════════════════════════════════════════════════
# Memberships
# ═════════════════════════════════════════════════════════════════════════════


def add_member(
    user_id: int,
    tenant_id: int,
    role_name: str | None = None,
    *,
    granted: list[str] | None = None,
    denied: list[str] | None = None,
    actor_id: int | None = None,
) -> TenantMembership:
    _require_user(user_id)
    _require_tenant(tenant_id)
    if TenantMembership.query.filter_by(user_id=user_id, tenant_id=tenant_id).first():
        raise ConflictError("TenantMembership", "user_id", str(user_id))

    role = resolve_role(tenant_id, role_name) if role_name else None
    membership = TenantMembership(
        user_id=user_id,
        tenant_id=tenant_id,
        role_id=role.id if role else None,
        granted_permissions=sorted({_validate_codename(c) for c in granted or []}),
        denied_permissions=sorted({_validate_codename(c) for c in denied or []}),
        status="active",
        is_current=not TenantMembership.query.filter_by(user_id=user_id, is_current=True).count(),
    )
    db.session.add(membership)
    db.session.flush()
    return _commit_membership(membership, "membership.add", actor_id, {
        "role": {"old": None, "new": role_name},
    })


def assign_role(user_id: int, tenant_id: int, role_name: str, *, actor_id: int | None = None):
    membership = _membership_or_404(user_id, tenant_id)
    role = resolve_role(tenant_id, role_name)
    old = membership.role.name if membership.role else None
    membership.role_id = role.id
    return _commit_membership(membership, "membership.assign_role", actor_id, {
        "role": {"old": old, "new": role.name},
    })


def grant_permission(user_id: int, tenant_id: int, codename: str, *, actor_id: int | None = None):
    """Add a per-member grant; lifts an identical denial."""
    codename = _validate_codename(codename)
    membership = _membership_or_404(user_id, tenant_id)
    granted = set(membership.granted_permissions or [])
    denied = set(membership.denied_permissions or [])
    granted.add(codename)
    denied.discard(codename)
    membership.granted_permissions = sorted(granted)
    membership.denied_permissions = sorted(denied)
    return _commit_membership(membership, "membership.grant_permission", actor_id, {
        "granted": codename,
    })


def deny_permission(user_id: int, tenant_id: int, codename: str, *, actor_id: int | None = None):
    """Add a per-member denial; drops an identical grant."""
    codename = _validate_codename(codename)
    membership = _membership_or_404(user_id, tenant_id)
    granted = set(membership.granted_permissions or [])
    denied = set(membership.denied_permissions or [])
    denied.add(codename)
    granted.discard(codename)
    membership.granted_permissions = sorted(granted)
    membership.denied_permissions = sorted(denied)
    return _commit_membership(membership, "membership.deny_permission", actor_id, {
        "denied": codename,
    })


def clear_custom_permission(user_id: int, tenant_id: int, codename: str, *, actor_id: int | None = None):
    """Remove a codename from both the grant and the deny list."""
    membership = _membership_or_404(user_id, tenant_id)
    membership.granted_permissions = sorted(set(membership.granted_permissions or []) - {codename})
    membership.denied_permissions = sorted(set(membership.denied_permissions or []) - {codename})
    return _commit_membership(membership, "membership.clear_permission", actor_id, {
        "cleared": codename,
    })


def set_custom_permissions(
    user_id: int,
    tenant_id: int,
    granted: list[str],
    denied: list[str],
    *,
    actor_id: int | None = None,
):
    """Replace both override lists at once."""
    membership = _membership_or_404(user_id, tenant_id)
    old = {
        "granted": list(membership.granted_permissions or []),
        "denied": list(membership.denied_permissions or []),
    }
    membership.granted_permissions = sorted({_validate_codename(c) for c in granted or []})
    membership.denied_permissions = sorted({_validate_codename(c) for c in denied or []})
    return _commit_membership(membership, "membership.set_custom_permissions", actor_id, {
        "granted": {"old": old["granted"], "new": membership.granted_permissions},
        "denied": {"old": old["denied"], "new": membership.denied_permissions},
    })


def deactivate_member(user_id: int, tenant_id: int, *, actor_id: int | None = None):
    membership = _membership_or_404(user_id, tenant_id)
    if membership.status == "inactive":
        return membership
    membership.status = "inactive"
    membership.is_current = False
    return _commit_membership(membership, "membership.deactivate", actor_id, {
        "status": {"old": "active", "new": "inactive"},
    })


def activate_member(user_id: int, tenant_id: int, *, actor_id: int | None = None):
    membership = _membership_or_404(user_id, tenant_id)
    if membership.status == "active":
        return membership
    membership.status = "active"
    return _commit_membership(membership, "membership.activate", actor_id, {
        "status": {"old": "inactive", "new": "active"},
    })


def set_current_tenant(user_id: int, tenant_id: int) -> TenantMembership:
    """Mark one active membership as the user's current tenant.

    Exactly one membership per user carries ``is_current`` afterwards.
    """
    membership = _membership_or_404(user_id, tenant_id)
    if not membership.is_active:
        raise ValidationError("Cannot switch to an inactive membership")
    (
        TenantMembership.query
        .filter(TenantMembership.user_id == user_id, TenantMembership.id != membership.id)
        .update({TenantMembership.is_current: False}, synchronize_session="fetch")
    )
    membership.is_current = True
    return _commit_membership(membership, "membership.set_current", user_id, {})


def set_user_status(user_id: int, status: str, *, actor_id: int | None = None) -> User:
    """Change a user's account status; affects every tenant the user belongs to."""
    if status not in USER_STATUSES:
        raise ValidationError(
            f"Invalid user status '{status}'",
            details={"status": f"Must be one of {list(USER_STATUSES)}"},
        )
    user = _require_user(user_id)
    old = user.status
    if old == status:
        return user
    user.status = status
    write_audit(
        entity_type="user",
        entity_id=user.id,
        action="user.status",
        tenant_id=None,
        actor_user_id=actor_id,
        diff={"status": {"old": old, "new": status}},
    )
    db.session.commit()
    permission_service.invalidate_user(user.id)
    logger.info("User %s status %s → %s", user.id, old, status, extra={"user_id": user.id})
    return user


def get_tenant_context(user_id: int, tenant_id: int) -> dict:
    """Role, effective permissions and overrides of a user in a tenant."""
    membership = permission_service.get_membership(user_id, tenant_id)
    if membership is None:
        raise NotFoundError(resource="TenantMembership", resource_id=user_id, tenant_id=tenant_id)
    return {
        "user_id": user_id,
        "tenant_id": tenant_id,
        "role": permission_service.get_tenant_role_name(user_id, tenant_id),
        "permissions": sorted(permission_service.get_effective_permissions(user_id, tenant_id)),
        "custom_permissions": {
            "granted": list(membership.granted_permissions or []),
            "denied": list(membership.denied_permissions or []),
        },
        "is_current": membership.is_current,
    }


# ═════════════════════════════════════════════════════════════════════════════
# Roles
# ═════════════════════════════════════════════════════════════════════════════


def _ensure_permission(codename: str) -> Permission:
    perm = Permission.query.filter_by(codename=codename).first()
    if perm is None:
        category = codename.split(".", 1)[0] if codename != "*" else "global"
        perm = Permission(codename=codename, category=category)
        db.session.add(perm)
        db.session.flush()
    return perm


def create_role(
    tenant_id: int | None,
    name: str,
    permissions: list[str] | None = None,
    *,
    display_name: str | None = None,
    actor_id: int | None = None,
) -> Role:
    """Create a tenant role (or a global one when tenant_id is None)."""
    name = (name or "").strip()
    if not name:
        raise ValidationError("Role name is required", details={"name": "required"})
    if tenant_id is not None:
        _require_tenant(tenant_id)
    if Role.query.filter_by(tenant_id=tenant_id, name=name).first():
        raise ConflictError("Role", "name", name)

    role = Role(tenant_id=tenant_id, name=name, display_name=display_name or name)
    db.session.add(role)
    db.session.flush()
    for codename in sorted({_validate_codename(c) for c in permissions or []}):
        db.session.add(RolePermission(role_id=role.id, permission_id=_ensure_permission(codename).id))

    write_audit(
        entity_type="role",
        entity_id=role.id,
        action="role.create",
        tenant_id=tenant_id,
        actor_user_id=actor_id,
        diff={"name": name, "permissions": sorted(permissions or [])},
    )
    db.session.commit()
    permission_service.invalidate_role(role.id)
    return role


def set_role_permissions(role_id: int, permissions: list[str], *, actor_id: int | None = None) -> Role:
    """Replace a role's permission set; applies live to every membership using it."""
    role = db.session.get(Role, role_id)
    if role is None:
        raise NotFoundError(resource="Role", resource_id=role_id)
    wanted = {_validate_codename(c) for c in permissions or []}
    current = {rp.permission.codename: rp for rp in role.role_permissions.all()}

    for codename, rp in current.items():
        if codename not in wanted:
            db.session.delete(rp)
    for codename in sorted(wanted - set(current)):
        db.session.add(RolePermission(role_id=role.id, permission_id=_ensure_permission(codename).id))

    write_audit(
        entity_type="role",
        entity_id=role.id,
        action="role.set_permissions",
        tenant_id=role.tenant_id,
        actor_user_id=actor_id,
        diff={"permissions": {"old": sorted(current), "new": sorted(wanted)}},
    )
    db.session.commit()
    permission_service.invalidate_role(role.id)
    logger.info(
        "Role %s permissions replaced (%d codenames)", role.name, len(wanted),
        extra={"tenant_id": role.tenant_id, "event_type": "role.set_permissions"},
    )
    return role
