"""
Warehouse Execution Service — idempotent fulfilment of approved STANDARD requests.

The client sends an ``idempotency_key``; a RequestExecution row with that key
is unique per tenant.  A repeated submission, whether it arrives after the
first one committed or races it to the commit, gets the stored execution
back with ``idempotent: True`` instead of a second delivery.

The replay is only served to actors allowed to execute the request, and
only for the request the key was first used on; a key reused on another
request is a 409.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError

from munops.core.exceptions import StateConflictError, ValidationError
from munops.models import db
from munops.models.inventory import ProductUnit
from munops.models.request import RequestExecution
from munops.services import asset_service, permission_service, request_workflow, stock_service
from munops.services.notification import NotificationService

logger = logging.getLogger(__name__)

CANDIDATE_LIMIT = 50


def _now():
    return datetime.now(timezone.utc)


def find_execution(tenant_id: int, idempotency_key: str) -> RequestExecution | None:
    return (
        RequestExecution.query_for_tenant(tenant_id)
        .filter_by(idempotency_key=idempotency_key)
        .first()
    )


def _idempotent_result(execution: RequestExecution) -> dict:
    req = request_workflow.get_request(execution.tenant_id, execution.request_id)
    return {
        "idempotent": True,
        "execution": execution.to_dict(),
        "request": {"id": req.id, "status": req.status, "gtmi_number": req.gtmi_number},
    }


def _replay(execution: RequestExecution, request_id: int) -> dict:
    """Stored result for a repeated key; the key must belong to *request_id*."""
    if execution.request_id != request_id:
        raise StateConflictError(
            f"Idempotency key already used for another request ({execution.request_id})"
        )
    return _idempotent_result(execution)


def execution_options(actor, request_id: int) -> dict:
    """In-stock unit candidates per unit-tracked item, oldest first."""
    req = request_workflow.get_request(actor.tenant_id, request_id)
    permission_service.check_permission(actor, "requests.execute", req.requesting_service_id)
    options = {}
    for item in req.items:
        if item.product is None or not item.product.unit_tracked:
            options[item.id] = []
            continue
        candidates = (
            ProductUnit.query_for_tenant(actor.tenant_id)
            .filter_by(product_id=item.product_id, status="IN_STOCK")
            .order_by(ProductUnit.id.asc())
            .limit(CANDIDATE_LIMIT)
            .all()
        )
        options[item.id] = [
            {"id": u.id, "code": u.code, "serial_number": u.serial_number} for u in candidates
        ]
    return {
        "request": {"id": req.id, "status": req.status, "type": req.type,
                    "gtmi_number": req.gtmi_number},
        "options": options,
    }


def _pick_unit(tenant_id: int, item, requested_code: str | None) -> ProductUnit:
    code = (requested_code or "").strip() or (item.destination or "").strip()
    q = ProductUnit.query_for_tenant(tenant_id).filter_by(product_id=item.product_id, status="IN_STOCK")
    unit = q.filter_by(code=code).first() if code else q.order_by(ProductUnit.id.asc()).first()
    if unit is None:
        raise ValidationError(
            f"No unit in stock for {item.product.name}",
            details={"request_item_id": item.id, "unit_code": code or None},
        )
    return unit


def _deliver_tracked_item(req, item, actor, requested_code, document_ref) -> dict:
    if item.quantity != 1:
        raise ValidationError(
            "Unit-tracked lines must have quantity 1", details={"request_item_id": item.id}
        )
    unit = _pick_unit(req.tenant_id, item, requested_code)
    try:
        stock_service.claim_unit(unit, ["IN_STOCK"], {
            "status": "ACQUIRED",
            "acquired_at": _now(),
            "acquired_by_user_id": actor.id,
            "assigned_to_user_id": req.requested_by_user_id,
            "acquired_reason": f"Delivery {req.gtmi_number}",
        })
    except StateConflictError as exc:
        raise StateConflictError(f"Unit {unit.code} is no longer available") from exc

    item.destination = unit.code
    item.unit_id = unit.id
    stock_service.record_movement(
        tenant_id=req.tenant_id, movement_type="OUT", product=unit.product, unit=unit,
        request_id=req.id, performed_by=actor.id, assigned_to=req.requested_by_user_id,
        reason=f"Delivery {req.gtmi_number}", notes=document_ref,
    )
    stock_service.adjust_quantity(unit.product, -1)

    line = {"request_item_id": item.id, "product_id": item.product_id, "quantity": 1,
            "unit_code": unit.code, "asset_code": None}
    if unit.product.patrimonializable:
        asset = asset_service.deliver_unit_as_asset(
            unit, actor_id=actor.id, request=req,
            custodian_user_id=req.requested_by_user_id, document_ref=document_ref,
        )
        line["asset_code"] = asset.code
    return line


def _deliver_bulk_item(req, item, actor, document_ref) -> dict:
    stock_service.adjust_quantity(item.product, -item.quantity, require_stock=True)
    stock_service.record_movement(
        tenant_id=req.tenant_id, movement_type="OUT", product=item.product,
        quantity=item.quantity, request_id=req.id, performed_by=actor.id,
        assigned_to=req.requested_by_user_id, reason=f"Delivery {req.gtmi_number}",
        notes=document_ref,
    )
    return {"request_item_id": item.id, "product_id": item.product_id,
            "quantity": item.quantity, "unit_code": None, "asset_code": None}


def execute_request(actor, request_id: int, data: dict) -> dict:
    """Deliver every line of an APPROVED request and mark it FULFILLED.

    Args:
        data: {"idempotency_key", "document_ref", "note", "received_by_name",
               "received_by_title", "lines": [{"request_item_id", "unit_code"}]}

    Returns:
        {"idempotent": bool, "execution": {...}, "request": {...}}

    Raises:
        ValidationError, PermissionDenied, StateConflictError, NotFoundError
    """
    key = data["idempotency_key"]
    req = request_workflow.get_request(actor.tenant_id, request_id)
    permission_service.check_permission(actor, "requests.execute", req.requesting_service_id)
    existing = find_execution(actor.tenant_id, key)
    if existing is not None:
        logger.info("Execution key %s replayed", key,
                    extra={"tenant_id": actor.tenant_id, "entity_id": existing.request_id})
        return _replay(existing, req.id)

    if req.type != "STANDARD":
        raise ValidationError("Warehouse execution supports STANDARD requests only")
    if req.status == "FULFILLED":
        raise StateConflictError(f"Request {req.gtmi_number} is already fulfilled")
    if req.status != "APPROVED":
        raise ValidationError("Request must be APPROVED before warehouse execution")

    requested_codes = {
        line.get("request_item_id"): line.get("unit_code") for line in data.get("lines") or []
    }
    document_ref = data["document_ref"]
    lines = []
    for item in req.items:
        if item.quantity <= 0 or item.product is None:
            continue
        if item.product.unit_tracked:
            lines.append(_deliver_tracked_item(req, item, actor, requested_codes.get(item.id), document_ref))
        else:
            lines.append(_deliver_bulk_item(req, item, actor, document_ref))

    from_status = req.status
    received_by = (data.get("received_by_name") or "").strip() or req.requester_name or "Receipt confirmed"
    request_workflow.set_stage(req, req.workflow_stage, "FULFILLED", {
        "pickup_signature_name": received_by,
        "pickup_signature_title": (data.get("received_by_title") or "").strip() or None,
        "pickup_signature_data_url": None,
        "pickup_signed_at": _now(),
        "pickup_signed_by_user_id": actor.id,
        "pickup_voided_at": None,
        "pickup_voided_by_user_id": None,
        "pickup_void_reason": None,
    })
    execution = RequestExecution(
        tenant_id=actor.tenant_id,
        request_id=req.id,
        idempotency_key=key,
        document_ref=document_ref,
        note=(data.get("note") or "").strip() or None,
        received_by_name=received_by,
        received_by_title=(data.get("received_by_title") or "").strip() or None,
        executed_by_user_id=actor.id,
        lines_json=lines,
    )
    request_workflow.write_status_audit(
        req, from_status, "FULFILLED", actor.id, "WAREHOUSE_EXECUTION",
        execution.note or f"Warehouse execution ({document_ref})",
    )
    NotificationService.notify_admins(
        tenant_id=actor.tenant_id, kind="request.executed",
        title=f"Request {req.gtmi_number} executed",
        message=f"Warehouse delivered and closed the request ({document_ref}).",
        entity_type="request", entity_id=req.id,
    )
    NotificationService.notify_user(
        tenant_id=actor.tenant_id, user_id=req.requested_by_user_id, kind="request.executed",
        title=f"Request {req.gtmi_number} delivered",
        message=f"Delivery completed and recorded ({document_ref}).",
        entity_type="request", entity_id=req.id,
    )
    request_workflow.publish_status_change(req, from_status, actor.id)

    # Added last so a duplicate key fails at commit, not in an earlier flush
    try:
        db.session.add(execution)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        existing = find_execution(actor.tenant_id, key)
        if existing is None:
            raise
        logger.warning("Execution key %s committed concurrently", key,
                       extra={"tenant_id": actor.tenant_id, "entity_id": existing.request_id})
        return _replay(existing, request_id)

    logger.info(
        "Request %s executed (%d lines)", req.gtmi_number, len(lines),
        extra={"tenant_id": actor.tenant_id, "gtmi_number": req.gtmi_number},
    )
    return {"idempotent": False, "execution": execution.to_dict(), "request": req.to_dict()}
