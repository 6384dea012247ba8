"""
Requisition Workflow Service

Manages Request status transitions with:
  - Transition validation (action × current workflow stage)
  - Scoped permission check (grant must cover the request's service)
  - Optimistic state assertion (UPDATE ... WHERE workflow_stage = expected)
  - Workflow event + status audit rows in the same transaction
  - Requester / admin notifications and realtime event after commit

Stages refine the SUBMITTED status into two approval levels:

    DRAFT ─SUBMIT→ SUBMITTED ─APPROVE→ AWAITING_ADMIN_APPROVAL ─APPROVE→ APPROVED ─FULFILL→ FULFILLED
                      │                        │                           │
                      └──REJECT──────────────→ REJECTED ←──────REJECT──────┘
    PRESIDENCY_APPROVE / PRESIDENCY_REJECT short-circuit either pending stage.

Usage:
    from munops.services.request_workflow import apply_action

    result = apply_action(request_id=12, action="APPROVE", actor=user, note="ok")
"""

import base64
import binascii
import logging
from datetime import datetime, timezone

from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError

from munops.core.exceptions import (
    NotFoundError,
    PermissionDenied,
    StateConflictError,
    TransitionError,
    ValidationError,
)
from munops.models import db
from munops.models.audit import AuditLog, write_audit
from munops.models.auth import RequestingService, User
from munops.models.inventory import CLEARED_ASSIGNMENT, Product, ProductUnit
from munops.models.request import (
    ITEM_ROLES,
    REQUEST_STATUSES,
    REQUEST_TYPES,
    Request,
    RequestItem,
    RequestStatusAudit,
    RequestWorkflowEvent,
)
from munops.services import permission_service
from munops.services.notification import NotificationService
from munops.services.realtime import build_event, publish_after_commit

logger = logging.getLogger(__name__)

NUMBER_RETRIES = 5

# action → list of rules; the first rule whose "from" contains the stage wins
WORKFLOW_TRANSITIONS = {
    "SUBMIT": [
        {"from": ["DRAFT"], "to": "SUBMITTED", "permission": None},
    ],
    "APPROVE": [
        {"from": ["SUBMITTED"], "to": "AWAITING_ADMIN_APPROVAL", "permission": "requests.approve"},
        {"from": ["AWAITING_ADMIN_APPROVAL"], "to": "APPROVED", "permission": "requests.final_approve"},
    ],
    "REJECT": [
        {"from": ["SUBMITTED"], "to": "REJECTED", "permission": "requests.reject"},
        {"from": ["AWAITING_ADMIN_APPROVAL", "APPROVED"], "to": "REJECTED",
         "permission": "requests.final_reject"},
    ],
    "PRESIDENCY_APPROVE": [
        {"from": ["SUBMITTED", "AWAITING_ADMIN_APPROVAL"], "to": "APPROVED",
         "permission": "presidency.approve"},
    ],
    "PRESIDENCY_REJECT": [
        {"from": ["SUBMITTED", "AWAITING_ADMIN_APPROVAL"], "to": "REJECTED",
         "permission": "presidency.approve"},
    ],
    "FULFILL": [
        {"from": ["APPROVED"], "to": "FULFILLED", "permission": "requests.pickup_sign"},
    ],
}

# Stages that are not themselves statuses
_STAGE_STATUS = {"AWAITING_ADMIN_APPROVAL": "SUBMITTED"}

_STATUS_TIMESTAMP = {
    "SUBMITTED": "submitted_at",
    "APPROVED": "approved_at",
    "REJECTED": "rejected_at",
    "FULFILLED": "fulfilled_at",
}

PNG_DATA_URL_PREFIX = "data:image/png;base64,"
PNG_MAGIC = b"\x89PNG\r\n\x1a\n"
MAX_SIGNATURE_BYTES = 512 * 1024


def status_for_stage(stage: str) -> str:
    return _STAGE_STATUS.get(stage, stage)


def _now():
    return datetime.now(timezone.utc)


# ── Lookups ──────────────────────────────────────────────────────────────────

def get_request(tenant_id: int, request_id: int) -> Request:
    req = Request.get_for_tenant(tenant_id, request_id)
    if req is None:
        raise NotFoundError("Request", request_id, tenant_id)
    return req


def _can_view(actor: User, req: Request) -> bool:
    if req.requested_by_user_id == actor.id:
        return True
    return permission_service.user_has_permission(
        actor, "requests.view", req.requesting_service_id
    )


def get_request_for_actor(actor: User, request_id: int) -> Request:
    req = get_request(actor.tenant_id, request_id)
    if not _can_view(actor, req):
        # 404, not 403: do not confirm existence to non-viewers
        raise NotFoundError("Request", request_id, actor.tenant_id)
    return req


def list_requests(actor: User, *, status=None, req_type=None, service_id=None):
    """Query of requests visible to *actor*, newest first."""
    q = Request.query_for_tenant(actor.tenant_id)
    grants = permission_service.load_grants(actor)
    view_scopes = {svc for key, svc in grants if key in ("requests.view", permission_service.WILDCARD)}
    if None not in view_scopes:
        visible = Request.requested_by_user_id == actor.id
        if view_scopes:
            visible = or_(visible, Request.requesting_service_id.in_(sorted(view_scopes)))
        q = q.filter(visible)
    if status:
        q = q.filter(Request.status == status)
    if req_type:
        q = q.filter(Request.type == req_type)
    if service_id:
        q = q.filter(Request.requesting_service_id == service_id)
    return q.order_by(Request.id.desc())


def request_history(req: Request) -> dict:
    audits = (
        RequestStatusAudit.query.filter_by(request_id=req.id)
        .order_by(RequestStatusAudit.id.asc()).all()
    )
    events = (
        RequestWorkflowEvent.query.filter_by(request_id=req.id)
        .order_by(RequestWorkflowEvent.id.asc()).all()
    )
    return {
        "status_audits": [a.to_dict() for a in audits],
        "workflow_events": [e.to_dict() for e in events],
        "audit_log": [a.to_dict() for a in AuditLog.for_entity(req.tenant_id, "request", req.id)],
    }


# ── Numbering ────────────────────────────────────────────────────────────────

def next_gtmi_number(tenant_id: int, year: int | None = None) -> str:
    """Next ``GTMI-{year}-{seq:06d}`` for the tenant (max + 1)."""
    year = year or _now().year
    prefix = f"GTMI-{year}-"
    last = (
        db.session.query(func.max(Request.gtmi_number))
        .filter(Request.tenant_id == tenant_id, Request.gtmi_number.like(f"{prefix}%"))
        .scalar()
    )
    seq = 1
    if last:
        try:
            seq = int(last[len(prefix):]) + 1
        except ValueError:
            seq = Request.query_for_tenant(tenant_id).count() + 1
    return f"{prefix}{seq:06d}"


def is_number_conflict(exc: IntegrityError) -> bool:
    text = str(exc.orig).lower()
    return "gtmi" in text


def with_number_retry(fn, *args, **kwargs):
    """Run a committing operation, retrying when the request number collided."""
    for attempt in range(1, NUMBER_RETRIES + 1):
        try:
            return fn(*args, **kwargs)
        except IntegrityError as exc:
            db.session.rollback()
            if not is_number_conflict(exc) or attempt == NUMBER_RETRIES:
                raise
            logger.warning("Request number collision, retrying (attempt %d)", attempt)
    raise RuntimeError("unreachable")


# ── Creation ─────────────────────────────────────────────────────────────────

def build_request(
    actor: User,
    *,
    req_type: str = "STANDARD",
    items: list[dict],
    requesting_service_id: int | None = None,
    title: str | None = None,
    notes: str | None = None,
    requester: User | None = None,
) -> Request:
    """Add a DRAFT request with its items to the session (flushes, no commit)."""
    if req_type not in REQUEST_TYPES:
        raise ValidationError(f"Invalid request type: {req_type}")
    if not items:
        raise ValidationError("At least one item is required", details={"items": "empty"})
    if requesting_service_id is not None and RequestingService.get_for_tenant(
        actor.tenant_id, requesting_service_id
    ) is None:
        raise NotFoundError("RequestingService", requesting_service_id, actor.tenant_id)

    requester = requester or actor
    req = Request(
        tenant_id=actor.tenant_id,
        gtmi_number=next_gtmi_number(actor.tenant_id),
        type=req_type,
        status="DRAFT",
        workflow_stage="DRAFT",
        title=title,
        notes=notes,
        requested_by_user_id=requester.id,
        requester_name=requester.display_name,
        requester_email=requester.email,
        requesting_service_id=requesting_service_id,
    )
    for index, raw in enumerate(items):
        if not isinstance(raw, dict):
            raise ValidationError("Each item must be an object", details={"items": index})
        product_id = raw.get("product_id")
        if isinstance(product_id, bool) or not isinstance(product_id, int):
            raise ValidationError("Item product_id must be an integer",
                                  details={"items": index, "product_id": product_id})
        product = Product.get_for_tenant(actor.tenant_id, product_id)
        if product is None:
            raise NotFoundError("Product", product_id, actor.tenant_id)
        role = raw.get("role", "NORMAL")
        if role not in ITEM_ROLES:
            raise ValidationError(f"Invalid item role: {role}")
        # Omitted means one; an explicit value must be a positive integer
        quantity = raw.get("quantity", 1)
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise ValidationError("Item quantity must be a positive integer",
                                  details={"items": index, "quantity": quantity})
        req.items.append(RequestItem(
            product_id=product.id,
            quantity=quantity,
            destination=raw.get("destination"),
            role=role,
            unit_id=raw.get("unit_id"),
        ))
    db.session.add(req)
    db.session.flush()
    return req


def create_request(actor: User, **kwargs) -> Request:
    """Create a STANDARD DRAFT request and commit.

    RETURN requests are only generated by unit returns and substitutions.
    """
    if kwargs.get("req_type", "STANDARD") != "STANDARD":
        raise ValidationError("Return requests are created through unit returns")

    def _create():
        req = build_request(actor, **kwargs)
        db.session.commit()
        return req

    req = with_number_retry(_create)
    logger.info(
        "Request %s created", req.gtmi_number,
        extra={"tenant_id": actor.tenant_id, "gtmi_number": req.gtmi_number},
    )
    return req


# ── Audit rows ───────────────────────────────────────────────────────────────

def write_status_audit(req: Request, from_status, to_status, actor_id, source, note=None):
    audit = RequestStatusAudit(
        tenant_id=req.tenant_id,
        request_id=req.id,
        from_status=from_status,
        to_status=to_status,
        changed_by_user_id=actor_id,
        source=source,
        note=note,
    )
    db.session.add(audit)
    return audit


def publish_status_change(req: Request, from_status: str, actor_id: int | None):
    publish_after_commit(build_event(
        "request.status_changed",
        req.tenant_id,
        {
            "request_id": req.id,
            "gtmi_number": req.gtmi_number,
            "from_status": from_status,
            "to_status": req.status,
            "workflow_stage": req.workflow_stage,
            "actor_user_id": actor_id,
        },
        user_id=req.requested_by_user_id,
    ))


# ── Transitions ──────────────────────────────────────────────────────────────

def validate_transition(req: Request, action: str) -> dict:
    """Validate whether an action is valid for the request's current stage."""
    rules = WORKFLOW_TRANSITIONS.get(action)
    if not rules:
        return {"valid": False, "from": req.workflow_stage, "to": None, "permission": None,
                "reason": f"Unknown action: {action}"}
    for rule in rules:
        if req.workflow_stage in rule["from"]:
            return {"valid": True, "from": req.workflow_stage, "to": rule["to"],
                    "permission": rule["permission"], "reason": None}
    return {"valid": False, "from": req.workflow_stage, "to": None, "permission": None,
            "reason": f"Cannot '{action}' from stage '{req.workflow_stage}'"}


def _check_action_permission(req: Request, action: str, permission: str | None, actor: User):
    if permission is None:
        # SUBMIT: the requester, or someone allowed to create for this service
        if req.requested_by_user_id == actor.id:
            return
        permission = "requests.create"
    permission_service.check_permission(actor, permission, req.requesting_service_id)


def set_stage(req: Request, from_stage: str, to_stage: str, extra_values: dict | None = None):
    """Conditional UPDATE on the expected stage; raises if someone else moved it."""
    db.session.flush()
    to_status = status_for_stage(to_stage)
    values = {"workflow_stage": to_stage, "status": to_status, "updated_at": _now()}
    ts_field = _STATUS_TIMESTAMP.get(to_status)
    if ts_field and to_status != status_for_stage(from_stage):
        values[ts_field] = _now()
    values.update(extra_values or {})
    result = db.session.execute(
        update(Request)
        .where(Request.id == req.id, Request.workflow_stage == from_stage)
        .values(**values)
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount != 1:
        raise StateConflictError(f"Request {req.gtmi_number} was changed by another operation")
    db.session.refresh(req)


def transition(
    req: Request,
    action: str,
    actor: User,
    *,
    note: str | None = None,
    source: str = "WORKFLOW",
    skip_permission: bool = False,
) -> dict:
    """
    Execute one workflow transition inside the caller's transaction (no commit).

    Returns:
        {"request_id", "action", "previous_stage", "new_stage",
         "previous_status", "new_status"}

    Raises:
        TransitionError, PermissionDenied, StateConflictError, ValidationError
    """
    validation = validate_transition(req, action)
    if not validation["valid"]:
        raise TransitionError(f"request {req.gtmi_number}", action, req.workflow_stage,
                              validation["reason"])

    if not skip_permission:
        _check_action_permission(req, action, validation["permission"], actor)

    if action == "FULFILL" and req.type == "RETURN" and not req.has_pickup_signature:
        raise ValidationError("Return requests require a pickup signature before fulfilment")

    from_stage = req.workflow_stage
    from_status = req.status
    set_stage(req, from_stage, validation["to"])

    db.session.add(RequestWorkflowEvent(
        tenant_id=req.tenant_id,
        request_id=req.id,
        action=action,
        from_stage=from_stage,
        to_stage=req.workflow_stage,
        actor_user_id=actor.id,
        note=note,
    ))
    if req.status != from_status:
        write_status_audit(req, from_status, req.status, actor.id, source, note)

    if action == "SUBMIT":
        NotificationService.notify_admins(
            tenant_id=req.tenant_id, kind="request.submitted",
            title=f"Request {req.gtmi_number} submitted",
            message=req.title or "", entity_type="request", entity_id=req.id,
        )
    if req.requested_by_user_id != actor.id:
        NotificationService.notify_user(
            tenant_id=req.tenant_id, user_id=req.requested_by_user_id,
            kind="request.status_changed",
            title=f"Request {req.gtmi_number}: {req.workflow_stage}",
            message=note or "", entity_type="request", entity_id=req.id,
        )
    publish_status_change(req, from_status, actor.id)
    db.session.flush()

    logger.info(
        "Request %s %s: %s → %s", req.gtmi_number, action, from_stage, req.workflow_stage,
        extra={"tenant_id": req.tenant_id, "gtmi_number": req.gtmi_number, "action": action},
    )
    return {
        "request_id": req.id,
        "action": action,
        "previous_stage": from_stage,
        "new_stage": req.workflow_stage,
        "previous_status": from_status,
        "new_status": req.status,
    }


def apply_action(request_id: int, action: str, actor: User, note: str | None = None) -> dict:
    """Public entry point: transition and commit."""
    req = get_request(actor.tenant_id, request_id)
    result = transition(req, action, actor, note=note)
    db.session.commit()
    return result


def set_status(request_id: int, status: str, actor: User, note: str | None = None) -> Request:
    """Administrative status override (bypasses the stage machine, keeps the ledger)."""
    if not actor.is_admin:
        raise PermissionDenied(actor.id, "admin")
    if status not in REQUEST_STATUSES:
        raise ValidationError(f"Invalid status: {status}")
    req = get_request(actor.tenant_id, request_id)
    if req.status == status:
        raise StateConflictError(f"Request {req.gtmi_number} is already {status}")
    if status == "FULFILLED" and req.type == "RETURN" and not req.has_pickup_signature:
        raise ValidationError("Return requests require a pickup signature before fulfilment")

    from_status = req.status
    set_stage(req, req.workflow_stage, status)
    write_status_audit(req, from_status, status, actor.id, "ADMIN_STATUS_CHANGE", note)
    NotificationService.notify_user(
        tenant_id=req.tenant_id, user_id=req.requested_by_user_id,
        kind="request.status_changed",
        title=f"Request {req.gtmi_number}: {status}",
        message=note or "", entity_type="request", entity_id=req.id,
    )
    publish_status_change(req, from_status, actor.id)
    db.session.commit()
    return req


# ── Signatures ───────────────────────────────────────────────────────────────

def validate_signature_data_url(data_url: str | None) -> str:
    """Accept only base64 PNG data URLs within the size cap."""
    if not data_url or not data_url.startswith(PNG_DATA_URL_PREFIX):
        raise ValidationError("Signature must be a PNG data URL",
                              details={"data_url": "expected data:image/png;base64,..."})
    encoded = data_url[len(PNG_DATA_URL_PREFIX):]
    try:
        raw = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError("Signature is not valid base64") from exc
    if not raw.startswith(PNG_MAGIC):
        raise ValidationError("Signature is not a PNG image")
    if len(raw) > MAX_SIGNATURE_BYTES:
        raise ValidationError("Signature image is too large")
    return data_url


def sign_approval(request_id: int, actor: User, *, name: str, title: str | None, data_url: str) -> Request:
    req = get_request(actor.tenant_id, request_id)
    if not (
        permission_service.user_has_permission(actor, "requests.final_approve", req.requesting_service_id)
        or permission_service.user_has_permission(actor, "presidency.approve", req.requesting_service_id)
    ):
        raise PermissionDenied(actor.id, "requests.final_approve", req.requesting_service_id)
    if req.status != "APPROVED":
        raise ValidationError("Only approved requests can receive the approval signature")
    if req.has_approval_signature:
        raise StateConflictError(f"Request {req.gtmi_number} already has an approval signature")
    validate_signature_data_url(data_url)

    req.signature_name = name
    req.signature_title = title
    req.signature_data_url = data_url
    req.signed_at = _now()
    req.signed_by_user_id = actor.id
    req.signature_voided_at = None
    req.signature_voided_by_user_id = None
    req.signature_void_reason = None
    db.session.commit()
    logger.info("Approval signature captured for %s", req.gtmi_number,
                extra={"tenant_id": req.tenant_id, "gtmi_number": req.gtmi_number})
    return req


def void_approval_signature(request_id: int, actor: User, reason: str) -> Request:
    if not actor.is_admin:
        raise PermissionDenied(actor.id, "admin")
    req = get_request(actor.tenant_id, request_id)
    if not req.has_approval_signature:
        raise ValidationError("Request has no active approval signature")
    req.signature_voided_at = _now()
    req.signature_voided_by_user_id = actor.id
    req.signature_void_reason = reason
    write_audit(
        entity_type="request", entity_id=req.id,
        action="request.approval_signature_voided",
        tenant_id=req.tenant_id, actor_user_id=actor.id, diff={"reason": reason},
    )
    db.session.commit()
    return req


def _restock_returned_units(req: Request, actor: User) -> list[str]:
    """Bring OLD-item units of a RETURN request back into stock."""
    from munops.services import stock_service

    restocked = []
    for item in req.items:
        if item.role != "OLD" or not item.destination:
            continue
        unit = ProductUnit.query_for_tenant(req.tenant_id).filter_by(code=item.destination).first()
        if unit is None or unit.status != "ACQUIRED":
            continue
        stock_service.claim_unit(
            unit, ["ACQUIRED"],
            {"status": "IN_STOCK", **CLEARED_ASSIGNMENT},
        )
        stock_service.record_movement(
            tenant_id=req.tenant_id, movement_type="RETURN", product=unit.product, unit=unit,
            request_id=req.id, performed_by=actor.id,
            reason="Return pickup signature", notes=f"REQ:{req.gtmi_number}",
        )
        stock_service.adjust_quantity(unit.product, +1)
        restocked.append(unit.code)
    return restocked


def sign_pickup(request_id: int, actor: User, *, name: str, title: str | None, data_url: str) -> dict:
    req = get_request(actor.tenant_id, request_id)
    permission_service.check_permission(actor, "requests.pickup_sign", req.requesting_service_id)
    if req.status not in ("APPROVED", "FULFILLED"):
        raise ValidationError("Pickup signature requires an approved request")
    if req.has_pickup_signature:
        raise StateConflictError(f"Request {req.gtmi_number} already has a pickup signature")
    validate_signature_data_url(data_url)

    req.pickup_signature_name = name
    req.pickup_signature_title = title
    req.pickup_signature_data_url = data_url
    req.pickup_signed_at = _now()
    req.pickup_signed_by_user_id = actor.id
    req.pickup_voided_at = None
    req.pickup_voided_by_user_id = None
    req.pickup_void_reason = None
    db.session.flush()

    restocked = []
    if req.type == "RETURN":
        restocked = _restock_returned_units(req, actor)
    if req.status == "APPROVED":
        transition(req, "FULFILL", actor, note="Pickup signature captured",
                   source="PICKUP_SIGNATURE", skip_permission=True)
    db.session.commit()
    return {"request": req.to_dict(), "restocked_units": restocked}


def void_pickup_signature(request_id: int, actor: User, reason: str) -> Request:
    if not actor.is_admin:
        raise PermissionDenied(actor.id, "admin")
    req = get_request(actor.tenant_id, request_id)
    if not req.has_pickup_signature:
        raise ValidationError("Request has no active pickup signature")
    req.pickup_voided_at = _now()
    req.pickup_voided_by_user_id = actor.id
    req.pickup_void_reason = reason
    write_audit(
        entity_type="request", entity_id=req.id,
        action="request.pickup_signature_voided",
        tenant_id=req.tenant_id, actor_user_id=actor.id, diff={"reason": reason},
    )
    db.session.commit()
    return req
