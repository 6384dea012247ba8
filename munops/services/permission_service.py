"""
Permission Service — tenant RBAC with optional per-service scope, cached.

A grant is a ``(permission_key, requesting_service_id | None)`` pair derived
from the user's active role assignments.  Evaluation is deny-by-default:

  - ADMIN users hold the wildcard grant ("*", None)
  - a grant with service None applies to every requesting service
  - a scoped grant only matches the same requesting service, or a check
    that is not tied to any service

Grants are cached per (user_id, tenant_id) for CACHE_TTL seconds; every
assignment/role change invalidates the cache for the affected users.
"""

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Optional

from munops.core.exceptions import ConflictError, NotFoundError, PermissionDenied, ValidationError
from munops.models import db
from munops.models.audit import write_audit
from munops.models.auth import RequestingService, User
from munops.models.rbac import (
    PERMISSIONS,
    SYSTEM_ROLES,
    RbacAssignment,
    RbacPermission,
    RbacRole,
    RbacRolePermission,
)
from munops.utils.helpers import to_utc

logger = logging.getLogger(__name__)

CACHE_TTL = 300  # 5 minutes
WILDCARD = "*"

Grant = tuple[str, Optional[int]]

# Cache key: (user_id, tenant_id)
_grant_cache: dict[tuple[int, int], tuple[float, list[Grant]]] = {}
_cache_lock = threading.Lock()


def _get_cached(key: tuple[int, int]) -> Optional[list[Grant]]:
    with _cache_lock:
        entry = _grant_cache.get(key)
        if entry is None:
            return None
        cached_at, grants = entry
        if time.time() - cached_at > CACHE_TTL:
            del _grant_cache[key]
            return None
        return grants


def _set_cached(key: tuple[int, int], grants: list[Grant]) -> None:
    with _cache_lock:
        _grant_cache[key] = (time.time(), grants)


def invalidate_cache(user_id: int) -> None:
    with _cache_lock:
        keys = [k for k in _grant_cache if k[0] == user_id]
        for k in keys:
            _grant_cache.pop(k, None)


def invalidate_all_cache() -> None:
    with _cache_lock:
        _grant_cache.clear()


# ═══════════════════════════════════════════════════════════════
# Evaluation
# ═══════════════════════════════════════════════════════════════

def _assignment_is_current(assignment: RbacAssignment, now: datetime) -> bool:
    if not assignment.is_active:
        return False
    starts_at = to_utc(assignment.starts_at)
    ends_at = to_utc(assignment.ends_at)
    if starts_at and now < starts_at:
        return False
    if ends_at and now > ends_at:
        return False
    return True


def load_grants(user: User, now: datetime | None = None) -> list[Grant]:
    """Effective grants of *user* in their own tenant."""
    if user.is_admin:
        return [(WILDCARD, None)]

    use_cache = now is None
    key = (user.id, user.tenant_id)
    if use_cache:
        cached = _get_cached(key)
        if cached is not None:
            return cached

    now = to_utc(now) or datetime.now(timezone.utc)
    assignments = (
        RbacAssignment.query_for_tenant(user.tenant_id)
        .join(RbacRole, RbacRole.id == RbacAssignment.role_id)
        .filter(RbacAssignment.user_id == user.id, RbacRole.is_active.is_(True))
        .all()
    )

    grants: set[Grant] = set()
    for a in assignments:
        if not _assignment_is_current(a, now):
            continue
        for perm_key in a.role.permission_keys:
            grants.add((perm_key, a.requesting_service_id))

    result = sorted(grants, key=lambda g: (g[0], g[1] or 0))
    if use_cache:
        _set_cached(key, result)
    return result


def has_permission(grants: list[Grant], key: str, service_id: int | None = None) -> bool:
    """
    Check a permission key against a grant list.

    Args:
        grants: Output of ``load_grants``.
        key: Permission key, e.g. ``requests.approve``.
        service_id: Requesting service the action targets (None = not service-bound).

    Returns:
        True if at least one grant covers the key in the given scope.
    """
    for grant_key, grant_service in grants:
        if grant_key != key and grant_key != WILDCARD:
            continue
        # Unscoped grant applies everywhere
        if grant_service is None:
            return True
        if service_id is None or grant_service == service_id:
            return True
    return False


def user_has_permission(user: User, key: str, service_id: int | None = None) -> bool:
    return has_permission(load_grants(user), key, service_id)


def check_permission(user: User, key: str, service_id: int | None = None) -> None:
    """
    Assert the user holds *key*; raise PermissionDenied if not.

    Raises:
        PermissionDenied: If no grant covers the key in the given scope.
    """
    if not user_has_permission(user, key, service_id):
        logger.info(
            "Permission denied: user=%s key=%s service=%s", user.id, key, service_id,
            extra={"tenant_id": user.tenant_id},
        )
        raise PermissionDenied(user.id, key, service_id)


def user_has_role(user: User, role_key: str) -> bool:
    """True if *user* holds a current assignment of the role *role_key*."""
    now = datetime.now(timezone.utc)
    assignments = (
        RbacAssignment.query_for_tenant(user.tenant_id)
        .join(RbacRole, RbacRole.id == RbacAssignment.role_id)
        .filter(
            RbacAssignment.user_id == user.id,
            RbacRole.key == role_key,
            RbacRole.is_active.is_(True),
        )
        .all()
    )
    return any(_assignment_is_current(a, now) for a in assignments)


# ═══════════════════════════════════════════════════════════════
# Catalogue & roles
# ═══════════════════════════════════════════════════════════════

def seed_permission_catalogue() -> int:
    """Insert missing catalogue permissions. Returns count created."""
    existing = {p.key for p in RbacPermission.query.all()}
    created = 0
    for key, description in PERMISSIONS.items():
        if key in existing:
            continue
        db.session.add(RbacPermission(key=key, description=description))
        created += 1
    db.session.flush()
    return created


def _permissions_by_key(keys) -> list[RbacPermission]:
    keys = sorted(set(keys))
    unknown = [k for k in keys if k not in PERMISSIONS]
    if unknown:
        raise ValidationError("Unknown permission keys", details={"permissions": unknown})
    seed_permission_catalogue()
    return RbacPermission.query.filter(RbacPermission.key.in_(keys)).all()


def seed_system_roles(tenant_id: int) -> int:
    """Create the system roles for a tenant. Returns count created."""
    created = 0
    for key, (name, perm_keys) in SYSTEM_ROLES.items():
        role = RbacRole.query_for_tenant(tenant_id).filter_by(key=key).first()
        if role is not None:
            continue
        role = RbacRole(tenant_id=tenant_id, key=key, name=name, is_system=True)
        for perm in _permissions_by_key(perm_keys):
            role.role_permissions.append(RbacRolePermission(permission=perm))
        db.session.add(role)
        created += 1
    db.session.flush()
    return created


def create_role(tenant_id: int, *, key: str, name: str, permission_keys, actor: User) -> RbacRole:
    """Create a custom (non-system) role."""
    if RbacRole.query_for_tenant(tenant_id).filter_by(key=key).first():
        raise ConflictError("RbacRole", "key", key)
    role = RbacRole(tenant_id=tenant_id, key=key, name=name, is_system=False)
    for perm in _permissions_by_key(permission_keys):
        role.role_permissions.append(RbacRolePermission(permission=perm))
    db.session.add(role)
    db.session.flush()
    write_audit(
        entity_type="rbac_role", entity_id=role.id, action="rbac.role_created",
        tenant_id=tenant_id, actor_user_id=actor.id,
        diff={"key": key, "permissions": role.permission_keys},
    )
    db.session.commit()
    logger.info("RBAC role created: %s", key, extra={"tenant_id": tenant_id})
    return role


def assign_role(
    tenant_id: int,
    *,
    user_id: int,
    role_key: str,
    requesting_service_id: int | None = None,
    starts_at: datetime | None = None,
    ends_at: datetime | None = None,
    actor: User,
) -> RbacAssignment:
    """Grant *role_key* to a user, optionally scoped to one requesting service."""
    user = db.session.get(User, user_id)
    if user is None or user.tenant_id != tenant_id:
        raise NotFoundError("User", user_id, tenant_id)
    role = RbacRole.query_for_tenant(tenant_id).filter_by(key=role_key, is_active=True).first()
    if role is None:
        raise NotFoundError("RbacRole", role_key, tenant_id)
    if requesting_service_id is not None and RequestingService.get_for_tenant(
        tenant_id, requesting_service_id
    ) is None:
        raise NotFoundError("RequestingService", requesting_service_id, tenant_id)
    if starts_at and ends_at and ends_at <= starts_at:
        raise ValidationError("ends_at must be after starts_at")

    assignment = RbacAssignment(
        tenant_id=tenant_id,
        user_id=user.id,
        role_id=role.id,
        requesting_service_id=requesting_service_id,
        starts_at=starts_at,
        ends_at=ends_at,
        created_by=actor.id,
    )
    db.session.add(assignment)
    db.session.flush()
    write_audit(
        entity_type="rbac_assignment", entity_id=assignment.id,
        action="rbac.assignment_created", tenant_id=tenant_id, actor_user_id=actor.id,
        diff={"user_id": user.id, "role": role_key, "requesting_service_id": requesting_service_id},
    )
    db.session.commit()
    invalidate_cache(user.id)
    return assignment


def revoke_assignment(tenant_id: int, assignment_id: int, *, actor: User) -> RbacAssignment:
    assignment = RbacAssignment.get_for_tenant(tenant_id, assignment_id)
    if assignment is None:
        raise NotFoundError("RbacAssignment", assignment_id, tenant_id)
    assignment.is_active = False
    write_audit(
        entity_type="rbac_assignment", entity_id=assignment.id,
        action="rbac.assignment_revoked", tenant_id=tenant_id, actor_user_id=actor.id,
        diff={"user_id": assignment.user_id},
    )
    db.session.commit()
    invalidate_cache(assignment.user_id)
    return assignment
