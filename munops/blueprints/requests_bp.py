"""
Requisition Blueprint — request lifecycle, signatures and warehouse execution.

Endpoints:
    GET    /api/v1/requests                          list (status, type, service_id filters)
    POST   /api/v1/requests                          create a STANDARD draft
    GET    /api/v1/requests/<id>                     detail with items
    GET    /api/v1/requests/<id>/history             status audits + workflow events
    POST   /api/v1/requests/<id>/actions             {action, note} workflow transition
    PATCH  /api/v1/requests/<id>/status              {status, note} admin override
    POST   /api/v1/requests/<id>/signature           approval signature
    POST   /api/v1/requests/<id>/signature/void      {reason}
    POST   /api/v1/requests/<id>/pickup-signature    pickup signature (restocks RETURN units)
    POST   /api/v1/requests/<id>/pickup-signature/void
    GET    /api/v1/requests/<id>/execute             in-stock unit options per item
    POST   /api/v1/requests/<id>/execute             idempotent warehouse fulfilment

Layer contract:
    - Blueprint: parse + validate input shape, call service, return JSON.
    - Services own permission checks, state assertions and commits.
"""

import logging

from flask import Blueprint, jsonify, request

from munops.blueprints import current_actor, paginate_query, register_error_handlers
from munops.services import execution_service, request_workflow
from munops.utils.errors import E, api_error
from munops.utils.helpers import clean_str

logger = logging.getLogger(__name__)

requests_bp = Blueprint("requests", __name__, url_prefix="/api/v1")
register_error_handlers(requests_bp)


def _signature_payload(data: dict):
    name = clean_str(data.get("name"), 200)
    if not name:
        return None, api_error(E.VALIDATION_REQUIRED, "name is required")
    data_url = data.get("data_url")
    if not data_url:
        return None, api_error(E.VALIDATION_REQUIRED, "data_url is required")
    return {"name": name, "title": clean_str(data.get("title"), 200), "data_url": data_url}, None


def _void_reason(data: dict):
    reason = clean_str(data.get("reason"), 500)
    if not reason:
        return None, api_error(E.VALIDATION_REQUIRED, "reason is required")
    return reason, None


# ── Collection ───────────────────────────────────────────────────────────────


@requests_bp.route("/requests", methods=["GET"])
def list_requests():
    query = request_workflow.list_requests(
        current_actor(),
        status=request.args.get("status"),
        req_type=request.args.get("type"),
        service_id=request.args.get("service_id", type=int),
    )
    items, total = paginate_query(query)
    return jsonify({"items": [r.to_dict(include_items=False) for r in items], "total": total})


@requests_bp.route("/requests", methods=["POST"])
def create_request():
    """Create a DRAFT request.

    Body: {title?, notes?, requesting_service_id?, items: [{product_id, quantity, destination?}]}
    """
    data = request.get_json(silent=True) or {}
    items = data.get("items")
    if not isinstance(items, list) or not items:
        return api_error(E.VALIDATION_REQUIRED, "items must be a non-empty list")

    req = request_workflow.create_request(
        current_actor(),
        req_type=data.get("type", "STANDARD"),
        items=items,
        requesting_service_id=data.get("requesting_service_id"),
        title=clean_str(data.get("title"), 300),
        notes=clean_str(data.get("notes")),
    )
    return jsonify(req.to_dict()), 201


# ── Single request ───────────────────────────────────────────────────────────


@requests_bp.route("/requests/<int:request_id>", methods=["GET"])
def get_request(request_id):
    req = request_workflow.get_request_for_actor(current_actor(), request_id)
    return jsonify(req.to_dict())


@requests_bp.route("/requests/<int:request_id>/history", methods=["GET"])
def request_history(request_id):
    req = request_workflow.get_request_for_actor(current_actor(), request_id)
    return jsonify(request_workflow.request_history(req))


@requests_bp.route("/requests/<int:request_id>/actions", methods=["POST"])
def apply_action(request_id):
    data = request.get_json(silent=True) or {}
    action = (data.get("action") or "").strip().upper()
    if not action:
        return api_error(E.VALIDATION_REQUIRED, "action is required")
    result = request_workflow.apply_action(
        request_id, action, current_actor(), note=clean_str(data.get("note"))
    )
    return jsonify(result)


@requests_bp.route("/requests/<int:request_id>/status", methods=["PATCH"])
def set_status(request_id):
    data = request.get_json(silent=True) or {}
    status = (data.get("status") or "").strip().upper()
    if not status:
        return api_error(E.VALIDATION_REQUIRED, "status is required")
    req = request_workflow.set_status(request_id, status, current_actor(), note=clean_str(data.get("note")))
    return jsonify(req.to_dict())


# ── Signatures ───────────────────────────────────────────────────────────────


@requests_bp.route("/requests/<int:request_id>/signature", methods=["POST"])
def sign_approval(request_id):
    payload, err = _signature_payload(request.get_json(silent=True) or {})
    if err:
        return err
    req = request_workflow.sign_approval(request_id, current_actor(), **payload)
    return jsonify(req.to_dict())


@requests_bp.route("/requests/<int:request_id>/signature/void", methods=["POST"])
def void_approval_signature(request_id):
    reason, err = _void_reason(request.get_json(silent=True) or {})
    if err:
        return err
    req = request_workflow.void_approval_signature(request_id, current_actor(), reason)
    return jsonify(req.to_dict())


@requests_bp.route("/requests/<int:request_id>/pickup-signature", methods=["POST"])
def sign_pickup(request_id):
    payload, err = _signature_payload(request.get_json(silent=True) or {})
    if err:
        return err
    return jsonify(request_workflow.sign_pickup(request_id, current_actor(), **payload))


@requests_bp.route("/requests/<int:request_id>/pickup-signature/void", methods=["POST"])
def void_pickup_signature(request_id):
    reason, err = _void_reason(request.get_json(silent=True) or {})
    if err:
        return err
    req = request_workflow.void_pickup_signature(request_id, current_actor(), reason)
    return jsonify(req.to_dict())


# ── Warehouse execution ──────────────────────────────────────────────────────


@requests_bp.route("/requests/<int:request_id>/execute", methods=["GET"])
def execution_options(request_id):
    return jsonify(execution_service.execution_options(current_actor(), request_id))


@requests_bp.route("/requests/<int:request_id>/execute", methods=["POST"])
def execute_request(request_id):
    """Fulfil an approved request.

    Body: {idempotency_key (8-120), document_ref (3-500), note?, received_by_name?,
           received_by_title?, lines?: [{request_item_id, unit_code}]}
    Returns 200 both for a fresh execution and for a replayed key
    (``idempotent`` tells them apart).
    """
    data = request.get_json(silent=True) or {}
    key = (data.get("idempotency_key") or "").strip()
    if not 8 <= len(key) <= 120:
        return api_error(E.VALIDATION_INVALID, "idempotency_key must be 8-120 characters",
                         details={"idempotency_key": "length"})
    document_ref = (data.get("document_ref") or "").strip()
    if not 3 <= len(document_ref) <= 500:
        return api_error(E.VALIDATION_INVALID, "document_ref must be 3-500 characters",
                         details={"document_ref": "length"})
    lines = data.get("lines") or []
    if not isinstance(lines, list) or any(not isinstance(line, dict) for line in lines):
        return api_error(E.VALIDATION_INVALID, "lines must be a list of objects")

    result = execution_service.execute_request(current_actor(), request_id, {
        "idempotency_key": key,
        "document_ref": document_ref,
        "note": data.get("note"),
        "received_by_name": clean_str(data.get("received_by_name"), 200),
        "received_by_title": clean_str(data.get("received_by_title"), 200),
        "lines": lines,
    })
    return jsonify(result)
