"""
Product Unit Service — status transitions of serialised units.

    IN_STOCK ─acquire→ ACQUIRED ─return→ (RETURN request, restocked on pickup signature)
        │                 │
        └──repair_out──→ IN_REPAIR ─repair_in→ IN_STOCK
    IN_STOCK / ACQUIRED / IN_REPAIR ─mark_lost→ LOST
    IN_STOCK / ACQUIRED / IN_REPAIR ─scrap→ SCRAPPED

Each transition claims the unit with a conditional update, writes a stock
movement (and the matching asset movement when the unit is patrimony) and
commits.
"""

import logging
from datetime import datetime, timezone

from munops.core.exceptions import NotFoundError, PermissionDenied, ValidationError
from munops.models import db
from munops.models.audit import write_audit
from munops.models.auth import User
from munops.models.inventory import CLEARED_ASSIGNMENT, ProductUnit
from munops.services import asset_service, permission_service, stock_service
from munops.services import request_workflow
from munops.services.notification import NotificationService

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = ("SCRAPPED", "LOST")


def _now():
    return datetime.now(timezone.utc)


def _check_assignee(tenant_id: int, user_id: int | None):
    if user_id is None:
        return
    user = db.session.get(User, user_id)
    if user is None or user.tenant_id != tenant_id:
        raise NotFoundError("User", user_id, tenant_id)


def get_unit(actor: User, code: str) -> ProductUnit:
    return stock_service.get_unit_by_code(actor.tenant_id, code)


def acquire_unit(
    actor: User,
    code: str,
    *,
    assigned_to_user_id: int | None = None,
    reason: str | None = None,
    cost_center: str | None = None,
    notes: str | None = None,
) -> ProductUnit:
    """Hand an in-stock unit to a user (OUT movement, quantity −1)."""
    permission_service.check_permission(actor, "units.manage")
    unit = stock_service.get_unit_by_code(actor.tenant_id, code)
    if unit.status == "ACQUIRED":
        raise ValidationError(f"Unit {code} is already acquired")
    if unit.status != "IN_STOCK":
        raise ValidationError(f"Unit {code} is not in stock (status={unit.status})")
    _check_assignee(actor.tenant_id, assigned_to_user_id)

    stock_service.claim_unit(unit, ["IN_STOCK"], {
        "status": "ACQUIRED",
        "assigned_to_user_id": assigned_to_user_id,
        "acquired_at": _now(),
        "acquired_by_user_id": actor.id,
        "acquired_reason": reason,
        "cost_center": cost_center,
        "notes": notes,
    })
    stock_service.record_movement(
        tenant_id=actor.tenant_id, movement_type="OUT", product=unit.product, unit=unit,
        performed_by=actor.id, assigned_to=assigned_to_user_id,
        reason=reason, cost_center=cost_center, notes=notes,
    )
    stock_service.adjust_quantity(unit.product, -1)
    db.session.commit()
    logger.info("Unit %s acquired", code, extra={"tenant_id": actor.tenant_id, "unit_code": code})
    return unit


def return_unit(actor: User, code: str, *, reason: str | None = None, notes: str | None = None) -> dict:
    """Open a RETURN request for an acquired unit.

    Stock is not touched here; the unit comes back when the pickup
    signature of the generated request is captured.
    """
    permission_service.check_permission(actor, "units.manage")
    unit = stock_service.get_unit_by_code(actor.tenant_id, code)
    if unit.status != "ACQUIRED":
        raise ValidationError(f"Only acquired units can be returned (status={unit.status})")

    requester = db.session.get(User, unit.assigned_to_user_id) if unit.assigned_to_user_id else None

    def _open_return():
        req = request_workflow.build_request(
            actor,
            req_type="RETURN",
            items=[{"product_id": unit.product_id, "quantity": 1, "destination": unit.code,
                    "role": "OLD", "unit_id": unit.id}],
            title=f"Return of {unit.code}",
            notes="\n".join(p for p in (reason, notes) if p) or None,
            requester=requester,
        )
        from_status = req.status
        req.status = "SUBMITTED"
        req.workflow_stage = "SUBMITTED"
        req.submitted_at = _now()
        request_workflow.write_status_audit(
            req, from_status, "SUBMITTED", actor.id, "UNIT_RETURN", reason,
        )
        NotificationService.notify_admins(
            tenant_id=actor.tenant_id, kind="request.submitted",
            title=f"Return request {req.gtmi_number} for unit {unit.code}",
            message=reason or "", entity_type="request", entity_id=req.id,
        )
        request_workflow.publish_status_change(req, from_status, actor.id)
        db.session.commit()
        return req

    req = request_workflow.with_number_retry(_open_return)
    logger.info(
        "Return request %s opened for unit %s", req.gtmi_number, code,
        extra={"tenant_id": actor.tenant_id, "unit_code": code, "gtmi_number": req.gtmi_number},
    )
    return {"unit": unit.to_dict(), "request": req.to_dict()}


def repair_out(actor: User, code: str, *, reason: str | None = None, notes: str | None = None) -> ProductUnit:
    """Send a unit to repair (REPAIR_OUT movement, quantity −1 only if it was in stock)."""
    permission_service.check_permission(actor, "units.manage")
    unit = stock_service.get_unit_by_code(actor.tenant_id, code)
    if unit.status == "IN_REPAIR":
        raise ValidationError(f"Unit {code} is already in repair")
    if unit.status in TERMINAL_STATUSES:
        raise ValidationError(f"Unit {code} is {unit.status} and cannot be repaired")

    was_in_stock = unit.status == "IN_STOCK"
    stock_service.claim_unit(unit, [unit.status], {
        "status": "IN_REPAIR", **CLEARED_ASSIGNMENT})
    stock_service.record_movement(
        tenant_id=actor.tenant_id, movement_type="REPAIR_OUT", product=unit.product, unit=unit,
        performed_by=actor.id, reason=reason, notes=notes,
    )
    if was_in_stock:
        stock_service.adjust_quantity(unit.product, -1)
    asset_service.mirror_unit_transition(unit, "REPAIR_OUT", actor.id, reason)
    db.session.commit()
    logger.info("Unit %s sent to repair", code, extra={"tenant_id": actor.tenant_id, "unit_code": code})
    return unit


def repair_in(actor: User, code: str, *, notes: str | None = None) -> ProductUnit:
    """Receive a repaired unit back into stock (REPAIR_IN movement, quantity +1)."""
    permission_service.check_permission(actor, "units.manage")
    unit = stock_service.get_unit_by_code(actor.tenant_id, code)
    if unit.status != "IN_REPAIR":
        raise ValidationError(f"Unit {code} is not in repair (status={unit.status})")

    stock_service.claim_unit(unit, ["IN_REPAIR"], {"status": "IN_STOCK"})
    stock_service.record_movement(
        tenant_id=actor.tenant_id, movement_type="REPAIR_IN", product=unit.product, unit=unit,
        performed_by=actor.id, notes=notes,
    )
    stock_service.adjust_quantity(unit.product, +1)
    asset_service.mirror_unit_transition(unit, "REPAIR_IN", actor.id, notes)
    db.session.commit()
    return unit


def _retire(actor: User, code: str, target: str, movement_type: str, audit_action: str, reason: str):
    if not actor.is_admin:
        raise PermissionDenied(actor.id, "admin")
    if not reason:
        raise ValidationError("reason is required", details={"reason": "required"})
    unit = stock_service.get_unit_by_code(actor.tenant_id, code)
    if unit.status in TERMINAL_STATUSES:
        raise ValidationError(f"Unit {code} is already {unit.status}")

    previous = unit.status
    stock_service.claim_unit(unit, [previous], {
        "status": target, **CLEARED_ASSIGNMENT})
    stock_service.record_movement(
        tenant_id=actor.tenant_id, movement_type=movement_type, product=unit.product, unit=unit,
        performed_by=actor.id, reason=reason,
    )
    if previous == "IN_STOCK":
        stock_service.adjust_quantity(unit.product, -1)
    asset_service.mirror_unit_transition(unit, "STATUS_CHANGE", actor.id, reason)
    write_audit(
        entity_type="product_unit", entity_id=unit.id, action=audit_action,
        tenant_id=actor.tenant_id, actor_user_id=actor.id,
        diff={"code": code, "status": {"old": previous, "new": target}, "reason": reason},
    )
    db.session.commit()
    logger.info("Unit %s %s → %s", code, previous, target,
                extra={"tenant_id": actor.tenant_id, "unit_code": code})
    return unit


def mark_lost(actor: User, code: str, *, reason: str) -> ProductUnit:
    return _retire(actor, code, "LOST", "LOST", "unit.lost", reason)


def scrap(actor: User, code: str, *, reason: str) -> ProductUnit:
    return _retire(actor, code, "SCRAPPED", "SCRAP", "unit.scrapped", reason)
