"""
Permission Service — tenant-scoped, membership-driven RBAC with cache.

Effective permissions of a user inside a tenant:

    (role_permissions ∪ granted) − denied

Evaluation is deterministic and deny-by-default:
  - no active membership (or inactive tenant / user) → nothing is granted
  - ``forms.*`` covers every codename under ``forms.``; ``*`` covers all
  - a denial (exact, or a denied wildcard covering the codename) always
    wins, including over wildcard grants
  - a list of codenames is any-of
  - ``has_permission`` never raises; database errors are logged and deny

The tenant is always an explicit argument. Nothing here reads request
context.
"""

import logging
import threading
import time
from typing import NamedTuple, Optional

from flask import current_app, has_app_context
from sqlalchemy.exc import SQLAlchemyError

from formflow.core.exceptions import PermissionDeniedError
from formflow.models import db
from formflow.models.auth import (
    Permission,
    Role,
    RolePermission,
    Tenant,
    TenantMembership,
    User,
)

logger = logging.getLogger(__name__)

CACHE_TTL = 300  # 5 minutes; overridden by PERMISSION_CACHE_TTL

WILDCARD_ALL = "*"


class PermissionSet(NamedTuple):
    """Resolved permissions of one membership."""

    role: str | None
    allowed: frozenset
    denied: frozenset


# Cache keys: role_id → codenames, (user_id, tenant_id) → PermissionSet
_role_cache: dict[int, tuple[float, frozenset]] = {}
_membership_cache: dict[tuple[int, int], tuple[float, PermissionSet]] = {}
_cache_lock = threading.Lock()


# ── Cache ────────────────────────────────────────────────────────────────────


def _ttl() -> int:
    if has_app_context():
        return current_app.config.get("PERMISSION_CACHE_TTL", CACHE_TTL)
    return CACHE_TTL


def _get_cached(cache: dict, key):
    ttl = _ttl()
    with _cache_lock:
        entry = cache.get(key)
        if entry is None:
            return None
        cached_at, value = entry
        if time.time() - cached_at > ttl:
            del cache[key]
            return None
        return value


def _set_cached(cache: dict, key, value) -> None:
    if _ttl() <= 0:
        return
    with _cache_lock:
        cache[key] = (time.time(), value)


def invalidate_membership(user_id: int, tenant_id: int) -> None:
    with _cache_lock:
        _membership_cache.pop((user_id, tenant_id), None)


def invalidate_user(user_id: int) -> None:
    with _cache_lock:
        for k in [k for k in _membership_cache if k[0] == user_id]:
            _membership_cache.pop(k, None)


def invalidate_role(role_id: int) -> None:
    """Drop a role's permission set and every resolved membership.

    Any membership may reference the role, so all resolved sets go.
    """
    with _cache_lock:
        _role_cache.pop(role_id, None)
        _membership_cache.clear()


def invalidate_all_cache() -> None:
    with _cache_lock:
        _role_cache.clear()
        _membership_cache.clear()


# ── Wildcard matching ────────────────────────────────────────────────────────


def is_wildcard(codename: str) -> bool:
    return codename == WILDCARD_ALL or codename.endswith(".*")


def covers(pattern: str, codename: str) -> bool:
    """True if ``pattern`` (exact or wildcard) covers ``codename``."""
    if pattern == codename or pattern == WILDCARD_ALL:
        return True
    if pattern.endswith(".*"):
        return codename.startswith(pattern[:-1])
    return False


def _decide(perms: PermissionSet, codename: str) -> str:
    if any(covers(d, codename) for d in perms.denied):
        return "deny_explicit"
    if codename in perms.allowed:
        return "allow_exact"
    if any(covers(p, codename) for p in perms.allowed if is_wildcard(p)):
        return "allow_wildcard"
    return "deny_by_default"


# ── Lookups ──────────────────────────────────────────────────────────────────


def get_membership(user_id: int, tenant_id: int) -> Optional[TenantMembership]:
    """Return the user's active membership in an active tenant, else None."""
    return (
        TenantMembership.query
        .join(TenantMembership.tenant)
        .join(TenantMembership.user)
        .filter(
            TenantMembership.user_id == user_id,
            TenantMembership.tenant_id == tenant_id,
            TenantMembership.status == "active",
            Tenant.is_active.is_(True),
            User.status == "active",
        )
        .one_or_none()
    )


def get_role_permissions(role_id: int | None) -> frozenset:
    if role_id is None:
        return frozenset()
    cached = _get_cached(_role_cache, role_id)
    if cached is not None:
        return cached

    rows = (
        db.session.query(Permission.codename)
        .join(RolePermission, RolePermission.permission_id == Permission.id)
        .filter(RolePermission.role_id == role_id)
        .all()
    )
    perms = frozenset(r[0] for r in rows)
    _set_cached(_role_cache, role_id, perms)
    return perms


def _resolve(user_id: int, tenant_id: int) -> Optional[PermissionSet]:
    cached = _get_cached(_membership_cache, (user_id, tenant_id))
    if cached is not None:
        return cached

    membership = get_membership(user_id, tenant_id)
    if membership is None:
        return None

    role = membership.role
    role_perms = frozenset()
    role_name = None
    if role is not None:
        if role.tenant_id is None or role.tenant_id == tenant_id:
            role_name = role.name
            role_perms = get_role_permissions(role.id)
        else:
            logger.warning(
                "Membership %s references role %s of another tenant; ignoring role",
                membership.id, role.id,
                extra={"tenant_id": tenant_id, "user_id": user_id},
            )

    granted = frozenset(membership.granted_permissions or [])
    denied = frozenset(membership.denied_permissions or [])
    resolved = PermissionSet(
        role=role_name,
        allowed=(role_perms | granted) - denied,
        denied=denied,
    )
    _set_cached(_membership_cache, (user_id, tenant_id), resolved)
    return resolved


def get_effective_permissions(user_id: int, tenant_id: int) -> set[str]:
    """Return the effective codename set (wildcards included verbatim)."""
    resolved = _resolve(user_id, tenant_id)
    return set(resolved.allowed) if resolved else set()


def get_tenant_role_name(user_id: int, tenant_id: int) -> str | None:
    resolved = _resolve(user_id, tenant_id)
    return resolved.role if resolved else None


# ── Checks ───────────────────────────────────────────────────────────────────


def has_permission(user_id: int, tenant_id: int, permission) -> bool:
    """Check one codename, or any-of a list of codenames.

    Never raises: lookup failures are logged and treated as a denial.
    """
    codenames = [permission] if isinstance(permission, str) else list(permission or [])
    if not codenames or user_id is None or tenant_id is None:
        return False
    try:
        resolved = _resolve(user_id, tenant_id)
    except SQLAlchemyError:
        logger.exception(
            "Permission lookup failed; denying",
            extra={"tenant_id": tenant_id, "user_id": user_id},
        )
        return False
    if resolved is None:
        return False
    return any(_decide(resolved, c).startswith("allow") for c in codenames)


def has_role(user_id: int, tenant_id: int, role) -> bool:
    """True if the user's active membership carries the role (or any of the roles)."""
    names = {role} if isinstance(role, str) else set(role or [])
    try:
        resolved = _resolve(user_id, tenant_id)
    except SQLAlchemyError:
        logger.exception(
            "Role lookup failed; denying",
            extra={"tenant_id": tenant_id, "user_id": user_id},
        )
        return False
    return bool(resolved and resolved.role in names)


def role_exists_in_tenant(role_name: str, tenant_id: int) -> bool:
    """True if the role is defined for the tenant or globally."""
    return (
        db.session.query(Role.id)
        .filter(
            Role.name == role_name,
            db.or_(Role.tenant_id == tenant_id, Role.tenant_id.is_(None)),
        )
        .first()
    ) is not None


def evaluate_permission(user_id: int, tenant_id: int, codename: str) -> dict:
    """Explain a single decision.

    Decisions: allow_exact, allow_wildcard, deny_explicit,
    deny_no_membership, deny_by_default.
    """
    resolved = _resolve(user_id, tenant_id)
    if resolved is None:
        return {
            "allowed": False,
            "decision": "deny_no_membership",
            "role": None,
            "permission": codename,
            "tenant_id": tenant_id,
        }
    decision = _decide(resolved, codename)
    return {
        "allowed": decision.startswith("allow"),
        "decision": decision,
        "role": resolved.role,
        "permission": codename,
        "tenant_id": tenant_id,
    }


def check_permission(user_id: int, tenant_id: int, permission) -> None:
    """Raise PermissionDeniedError unless ``has_permission`` allows."""
    if not has_permission(user_id, tenant_id, permission):
        wanted = permission if isinstance(permission, str) else " | ".join(permission)
        raise PermissionDeniedError(user_id, wanted, reason=f"missing permission in tenant {tenant_id}")
