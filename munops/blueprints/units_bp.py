"""
Product Unit Blueprint — unit status transitions, substitution, intake and the stock ledger.

Endpoints:
    GET    /api/v1/units/<code>
    POST   /api/v1/units/<code>/acquire       {assigned_to_user_id?, reason?, cost_center?, notes?}
    POST   /api/v1/units/<code>/return        {reason?, notes?}  → RETURN request
    POST   /api/v1/units/<code>/repair-out    {reason?, notes?}
    POST   /api/v1/units/<code>/repair-in     {notes?}
    POST   /api/v1/units/<code>/lost          {reason}           admin
    POST   /api/v1/units/<code>/scrap         {reason}           admin
    POST   /api/v1/units/substitute           swap an issued unit for a replacement
    POST   /api/v1/intake                     receive an invoice into stock
    GET    /api/v1/stock-movements            cursor-paginated ledger
"""

import logging

from flask import Blueprint, jsonify, request

from munops.blueprints import current_actor, register_error_handlers
from munops.services import intake_service, stock_service, substitution_service, unit_service
from munops.utils.errors import E, api_error
from munops.utils.helpers import clean_str, parse_datetime

logger = logging.getLogger(__name__)

units_bp = Blueprint("units", __name__, url_prefix="/api/v1")
register_error_handlers(units_bp)


@units_bp.route("/units/<code>", methods=["GET"])
def get_unit(code):
    return jsonify(unit_service.get_unit(current_actor(), code).to_dict())


@units_bp.route("/units/<code>/acquire", methods=["POST"])
def acquire_unit(code):
    data = request.get_json(silent=True) or {}
    unit = unit_service.acquire_unit(
        current_actor(), code,
        assigned_to_user_id=data.get("assigned_to_user_id"),
        reason=clean_str(data.get("reason"), 500),
        cost_center=clean_str(data.get("cost_center"), 120),
        notes=clean_str(data.get("notes")),
    )
    return jsonify(unit.to_dict())


@units_bp.route("/units/<code>/return", methods=["POST"])
def return_unit(code):
    data = request.get_json(silent=True) or {}
    result = unit_service.return_unit(
        current_actor(), code,
        reason=clean_str(data.get("reason"), 500),
        notes=clean_str(data.get("notes")),
    )
    return jsonify(result), 201


@units_bp.route("/units/<code>/repair-out", methods=["POST"])
def repair_out(code):
    data = request.get_json(silent=True) or {}
    unit = unit_service.repair_out(
        current_actor(), code,
        reason=clean_str(data.get("reason"), 500),
        notes=clean_str(data.get("notes")),
    )
    return jsonify(unit.to_dict())


@units_bp.route("/units/<code>/repair-in", methods=["POST"])
def repair_in(code):
    data = request.get_json(silent=True) or {}
    unit = unit_service.repair_in(current_actor(), code, notes=clean_str(data.get("notes")))
    return jsonify(unit.to_dict())


@units_bp.route("/units/<code>/lost", methods=["POST"])
def mark_lost(code):
    data = request.get_json(silent=True) or {}
    unit = unit_service.mark_lost(current_actor(), code, reason=clean_str(data.get("reason"), 500))
    return jsonify(unit.to_dict())


@units_bp.route("/units/<code>/scrap", methods=["POST"])
def scrap(code):
    data = request.get_json(silent=True) or {}
    unit = unit_service.scrap(current_actor(), code, reason=clean_str(data.get("reason"), 500))
    return jsonify(unit.to_dict())


@units_bp.route("/units/substitute", methods=["POST"])
def substitute():
    """Retire the old unit and issue the new one in one transaction.

    Body: {old_code, new_code, old_disposition?, return_reason_code?,
           return_reason_detail?, assigned_to_user_id?, reason?, cost_center?,
           ticket_number?, notes?, compatibility_override_reason?}
    """
    data = request.get_json(silent=True) or {}
    if not data.get("old_code") or not data.get("new_code"):
        return api_error(E.VALIDATION_REQUIRED, "old_code and new_code are required")
    result = substitution_service.substitute_units(current_actor(), {
        "old_code": clean_str(data.get("old_code"), 120),
        "new_code": clean_str(data.get("new_code"), 120),
        "old_disposition": clean_str(data.get("old_disposition")),
        "return_reason_code": clean_str(data.get("return_reason_code")),
        "return_reason_detail": clean_str(data.get("return_reason_detail"), 500),
        "assigned_to_user_id": data.get("assigned_to_user_id"),
        "reason": clean_str(data.get("reason"), 500),
        "cost_center": clean_str(data.get("cost_center"), 120),
        "ticket_number": clean_str(data.get("ticket_number"), 60),
        "notes": clean_str(data.get("notes"), 1000),
        "compatibility_override_reason": clean_str(data.get("compatibility_override_reason"), 500),
    })
    return jsonify(result), 201


@units_bp.route("/intake", methods=["POST"])
def intake():
    """Receive goods against an invoice.

    Body: {invoice_number, quantity, product_id | product{name, sku, unit_tracked?,
           patrimonializable?}, unit_codes?, supplier?, issued_at?, notes?,
           request_id?, requesting_service_id?}
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return api_error(E.VALIDATION_REQUIRED, "JSON body is required")
    result = intake_service.receive_stock(current_actor(), data)
    return jsonify(result), 201


@units_bp.route("/stock-movements", methods=["GET"])
def list_stock_movements():
    """Ledger page, newest first. ``cursor`` is the ``next_cursor`` of the previous page."""
    actor = current_actor()
    since_raw, until_raw = request.args.get("since"), request.args.get("until")
    since, until = parse_datetime(since_raw), parse_datetime(until_raw)
    if (since_raw and since is None) or (until_raw and until is None):
        return api_error(E.VALIDATION_INVALID, "since/until must be ISO-8601 dates")
    page = stock_service.list_movements(
        actor.tenant_id,
        movement_type=request.args.get("type"),
        product_id=request.args.get("product_id", type=int),
        unit_id=request.args.get("unit_id", type=int),
        request_id=request.args.get("request_id", type=int),
        performed_by=request.args.get("performed_by", type=int),
        since=since,
        until=until,
        cursor=request.args.get("cursor", type=int),
        limit=request.args.get("limit", stock_service.DEFAULT_PAGE_SIZE, type=int),
    )
    return jsonify(page)
