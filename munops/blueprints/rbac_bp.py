"""
RBAC Blueprint — custom roles, scoped role assignments, effective grants.

Endpoints:
    GET    /api/v1/rbac/roles                    tenant roles with permission keys
    POST   /api/v1/rbac/roles                    {key, name, permissions: [...]}
    GET    /api/v1/rbac/assignments              ?user_id=
    POST   /api/v1/rbac/assignments              {user_id, role_key, requesting_service_id?, starts_at?, ends_at?}
    DELETE /api/v1/rbac/assignments/<id>         deactivate
    GET    /api/v1/rbac/me                       caller's effective grants

Everything except /rbac/me needs ADMIN or ``users.manage``.
"""

import logging

from flask import Blueprint, jsonify, request

from munops.blueprints import current_actor, register_error_handlers
from munops.core.exceptions import PermissionDenied
from munops.models.rbac import RbacAssignment, RbacRole
from munops.services import permission_service
from munops.utils.errors import E, api_error
from munops.utils.helpers import clean_str, parse_datetime

logger = logging.getLogger(__name__)

rbac_bp = Blueprint("rbac", __name__, url_prefix="/api/v1/rbac")
register_error_handlers(rbac_bp)


def _require_manager():
    actor = current_actor()
    if not actor.is_admin and not permission_service.user_has_permission(actor, "users.manage"):
        raise PermissionDenied(actor.id, "users.manage")
    return actor


@rbac_bp.route("/roles", methods=["GET"])
def list_roles():
    actor = _require_manager()
    roles = RbacRole.query_for_tenant(actor.tenant_id).order_by(RbacRole.key).all()
    return jsonify({"items": [r.to_dict() for r in roles]})


@rbac_bp.route("/roles", methods=["POST"])
def create_role():
    actor = _require_manager()
    data = request.get_json(silent=True) or {}
    key = (clean_str(data.get("key"), 60) or "").upper()
    name = clean_str(data.get("name"), 200)
    permissions = data.get("permissions") or []
    if not key or not name:
        return api_error(E.VALIDATION_REQUIRED, "key and name are required")
    if not isinstance(permissions, list) or not permissions:
        return api_error(E.VALIDATION_REQUIRED, "permissions must be a non-empty list")
    role = permission_service.create_role(
        actor.tenant_id, key=key, name=name, permission_keys=permissions, actor=actor,
    )
    return jsonify(role.to_dict()), 201


@rbac_bp.route("/assignments", methods=["GET"])
def list_assignments():
    actor = _require_manager()
    q = RbacAssignment.query_for_tenant(actor.tenant_id)
    user_id = request.args.get("user_id", type=int)
    if user_id:
        q = q.filter_by(user_id=user_id)
    return jsonify({"items": [a.to_dict() for a in q.order_by(RbacAssignment.id.desc()).all()]})


@rbac_bp.route("/assignments", methods=["POST"])
def create_assignment():
    actor = _require_manager()
    data = request.get_json(silent=True) or {}
    user_id = data.get("user_id")
    role_key = clean_str(data.get("role_key"), 60)
    if not user_id or not role_key:
        return api_error(E.VALIDATION_REQUIRED, "user_id and role_key are required")
    starts_at, ends_at = parse_datetime(data.get("starts_at")), parse_datetime(data.get("ends_at"))
    if (data.get("starts_at") and starts_at is None) or (data.get("ends_at") and ends_at is None):
        return api_error(E.VALIDATION_INVALID, "starts_at/ends_at must be ISO-8601 dates")
    assignment = permission_service.assign_role(
        actor.tenant_id,
        user_id=user_id,
        role_key=role_key.upper(),
        requesting_service_id=data.get("requesting_service_id"),
        starts_at=starts_at,
        ends_at=ends_at,
        actor=actor,
    )
    return jsonify(assignment.to_dict()), 201


@rbac_bp.route("/assignments/<int:assignment_id>", methods=["DELETE"])
def revoke_assignment(assignment_id):
    actor = _require_manager()
    assignment = permission_service.revoke_assignment(actor.tenant_id, assignment_id, actor=actor)
    return jsonify(assignment.to_dict())


@rbac_bp.route("/me", methods=["GET"])
def my_grants():
    actor = current_actor()
    grants = permission_service.load_grants(actor)
    return jsonify({
        "user_id": actor.id,
        "role": actor.role,
        "grants": [{"permission": key, "requesting_service_id": svc} for key, svc in grants],
    })
