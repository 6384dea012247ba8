"""
Municipal Asset Blueprint — patrimony records, movements, disposal and policy.

Endpoints:
    GET    /api/v1/assets                                 list (status, service_id, q)
    GET    /api/v1/assets/<id>
    GET    /api/v1/assets/<id>/history                    events, movements, assignments
    POST   /api/v1/assets/<id>/movements                  manual movement
    GET    /api/v1/assets/<id>/disposals
    POST   /api/v1/assets/<id>/disposals                  open a disposal process
    POST   /api/v1/assets/disposals/<disposal_id>/decision  {decision, note}
    POST   /api/v1/assets/disposals/<disposal_id>/complete  {note}
    GET    /api/v1/assets/policy                          admin
    PUT    /api/v1/assets/policy                          admin
"""

import logging

from flask import Blueprint, jsonify, request

from munops.blueprints import current_actor, paginate_query, register_error_handlers
from munops.core.exceptions import PermissionDenied
from munops.services import asset_service, permission_service
from munops.utils.errors import E, api_error
from munops.utils.helpers import clean_str

logger = logging.getLogger(__name__)

assets_bp = Blueprint("assets", __name__, url_prefix="/api/v1")
register_error_handlers(assets_bp)

_POLICY_BOOL_FIELDS = ("require_transfer_approval", "require_disposal_approval")
_POLICY_ROLE_FIELDS = ("transfer_approver_role_key", "disposal_approver_role_key")


def _require_view(actor, service_id=None):
    if not permission_service.user_has_permission(actor, "assets.view", service_id):
        raise PermissionDenied(actor.id, "assets.view", service_id)


def _require_admin(actor):
    if not actor.is_admin:
        raise PermissionDenied(actor.id, "admin")


# ── Policy (registered before /assets/<id> so the literal path wins) ────────


@assets_bp.route("/assets/policy", methods=["GET"])
def get_policy():
    actor = current_actor()
    _require_admin(actor)
    policy = asset_service.get_policy(actor.tenant_id)
    return jsonify(policy.to_dict())


@assets_bp.route("/assets/policy", methods=["PUT"])
def update_policy():
    data = request.get_json(silent=True) or {}
    changes = {}
    for field in _POLICY_BOOL_FIELDS:
        if field in data:
            if not isinstance(data[field], bool):
                return api_error(E.VALIDATION_INVALID, f"{field} must be a boolean")
            changes[field] = data[field]
    for field in _POLICY_ROLE_FIELDS:
        if field in data:
            changes[field] = clean_str(data[field], 60)
    if not changes:
        return api_error(E.VALIDATION_REQUIRED, "No policy fields supplied")
    actor = current_actor()
    policy = asset_service.update_policy(actor.tenant_id, actor, changes)
    return jsonify(policy.to_dict())


# ── Assets ───────────────────────────────────────────────────────────────────


@assets_bp.route("/assets", methods=["GET"])
def list_assets():
    actor = current_actor()
    service_id = request.args.get("service_id", type=int)
    _require_view(actor, service_id)
    query = asset_service.list_assets(
        actor.tenant_id,
        status=request.args.get("status"),
        service_id=service_id,
        search=clean_str(request.args.get("q"), 100),
    )
    items, total = paginate_query(query)
    return jsonify({"items": [a.to_dict() for a in items], "total": total})


@assets_bp.route("/assets/<int:asset_id>", methods=["GET"])
def get_asset(asset_id):
    actor = current_actor()
    asset = asset_service.get_asset(actor.tenant_id, asset_id)
    _require_view(actor, asset.requesting_service_id)
    return jsonify(asset.to_dict())


@assets_bp.route("/assets/<int:asset_id>/history", methods=["GET"])
def asset_history(asset_id):
    actor = current_actor()
    asset = asset_service.get_asset(actor.tenant_id, asset_id)
    _require_view(actor, asset.requesting_service_id)
    return jsonify(asset_service.asset_history(asset))


@assets_bp.route("/assets/<int:asset_id>/movements", methods=["POST"])
def register_movement(asset_id):
    """Body: {type, status_after?, to_location_id?, to_service_id?,
              to_custodian_user_id?, document_ref?, note?}"""
    data = request.get_json(silent=True) or {}
    movement_type = (data.get("type") or "").strip().upper()
    if not movement_type:
        return api_error(E.VALIDATION_REQUIRED, "type is required")
    actor = current_actor()
    movement = asset_service.register_movement(actor.tenant_id, asset_id, actor, {
        "type": movement_type,
        "status_after": clean_str(data.get("status_after")),
        "to_location_id": data.get("to_location_id"),
        "to_service_id": data.get("to_service_id"),
        "to_custodian_user_id": data.get("to_custodian_user_id"),
        "document_ref": clean_str(data.get("document_ref"), 500),
        "note": clean_str(data.get("note")),
    })
    return jsonify(movement.to_dict()), 201


# ── Disposal ─────────────────────────────────────────────────────────────────


@assets_bp.route("/assets/<int:asset_id>/disposals", methods=["GET"])
def list_disposals(asset_id):
    actor = current_actor()
    asset = asset_service.get_asset(actor.tenant_id, asset_id)
    _require_view(actor, asset.requesting_service_id)
    return jsonify({"items": [p.to_dict() for p in asset_service.list_disposals(actor.tenant_id, asset_id)]})


@assets_bp.route("/assets/<int:asset_id>/disposals", methods=["POST"])
def open_disposal(asset_id):
    """Body: {document_ref, reason_code?, reason_detail?}"""
    data = request.get_json(silent=True) or {}
    actor = current_actor()
    process = asset_service.open_disposal(actor.tenant_id, asset_id, actor, {
        "document_ref": clean_str(data.get("document_ref"), 500),
        "reason_code": clean_str(data.get("reason_code"), 40),
        "reason_detail": clean_str(data.get("reason_detail")),
    })
    return jsonify(process.to_dict()), 201


@assets_bp.route("/assets/disposals/<int:disposal_id>/decision", methods=["POST"])
def decide_disposal(disposal_id):
    data = request.get_json(silent=True) or {}
    decision = (data.get("decision") or "").strip().upper()
    if not decision:
        return api_error(E.VALIDATION_REQUIRED, "decision is required")
    actor = current_actor()
    process = asset_service.decide_disposal(
        actor.tenant_id, disposal_id, actor, decision, note=clean_str(data.get("note"))
    )
    return jsonify(process.to_dict())


@assets_bp.route("/assets/disposals/<int:disposal_id>/complete", methods=["POST"])
def complete_disposal(disposal_id):
    data = request.get_json(silent=True) or {}
    actor = current_actor()
    process = asset_service.complete_disposal(
        actor.tenant_id, disposal_id, actor, note=clean_str(data.get("note"))
    )
    return jsonify(process.to_dict())
