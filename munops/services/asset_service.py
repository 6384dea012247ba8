"""
Municipal Asset Service — patrimony custody, movements and disposal.

Every status change of a MunicipalAsset goes through ``apply_movement``,
which appends the movement row and, when the status changed, an event row
(and an assignment row when custody/location/service changed), all in the
caller's transaction.

Disposal (abate) lifecycle:

    open ─→ UNDER_REVIEW ─decide→ APPROVED ─complete→ COMPLETED
                             └───→ REJECTED
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import func

from munops.core.exceptions import (
    NotFoundError,
    PermissionDenied,
    StateConflictError,
    ValidationError,
)
from munops.models import db
from munops.models.asset import (
    ASSET_STATUSES,
    DISPOSAL_ACTIVE_STATUSES,
    DOCUMENT_REQUIRED_TYPES,
    IMPLIED_STATUS,
    MOVEMENT_TYPES,
    AssetDisposalProcess,
    AssetLocation,
    AssetPolicy,
    MunicipalAsset,
    MunicipalAssetAssignment,
    MunicipalAssetEvent,
    MunicipalAssetMovement,
)
from munops.models.audit import write_audit
from munops.models.auth import RequestingService, User
from munops.services import permission_service

logger = logging.getLogger(__name__)

_POLICY_FIELDS = (
    "require_transfer_approval",
    "require_disposal_approval",
    "transfer_approver_role_key",
    "disposal_approver_role_key",
)


def _now():
    return datetime.now(timezone.utc)


# ── Lookups ──────────────────────────────────────────────────────────────────

def get_asset(tenant_id: int, asset_id: int) -> MunicipalAsset:
    asset = MunicipalAsset.get_for_tenant(tenant_id, asset_id)
    if asset is None:
        raise NotFoundError("MunicipalAsset", asset_id, tenant_id)
    return asset


def list_assets(tenant_id: int, *, status=None, service_id=None, search=None):
    q = MunicipalAsset.query_for_tenant(tenant_id)
    if status:
        q = q.filter(MunicipalAsset.status == status)
    if service_id:
        q = q.filter(MunicipalAsset.requesting_service_id == service_id)
    if search:
        like = f"%{search}%"
        q = q.filter(MunicipalAsset.code.ilike(like) | MunicipalAsset.name.ilike(like))
    return q.order_by(MunicipalAsset.id.desc())


def asset_history(asset: MunicipalAsset) -> dict:
    events = (
        MunicipalAssetEvent.query.filter_by(asset_id=asset.id)
        .order_by(MunicipalAssetEvent.id.asc()).all()
    )
    movements = (
        MunicipalAssetMovement.query.filter_by(asset_id=asset.id)
        .order_by(MunicipalAssetMovement.id.asc()).all()
    )
    assignments = (
        MunicipalAssetAssignment.query.filter_by(asset_id=asset.id)
        .order_by(MunicipalAssetAssignment.id.asc()).all()
    )
    return {
        "asset": asset.to_dict(),
        "events": [e.to_dict() for e in events],
        "movements": [m.to_dict() for m in movements],
        "assignments": [a.to_dict() for a in assignments],
    }


# ── Policy ───────────────────────────────────────────────────────────────────

def get_policy(tenant_id: int) -> AssetPolicy:
    """Tenant policy; a default row is created on first access."""
    policy = AssetPolicy.query_for_tenant(tenant_id).first()
    if policy is None:
        policy = AssetPolicy(tenant_id=tenant_id)
        db.session.add(policy)
        db.session.flush()
    return policy


def update_policy(tenant_id: int, actor: User, data: dict) -> AssetPolicy:
    if not actor.is_admin:
        raise PermissionDenied(actor.id, "admin")
    policy = get_policy(tenant_id)
    before = policy.to_dict()
    for field in _POLICY_FIELDS:
        if field in data:
            setattr(policy, field, data[field])
    write_audit(
        entity_type="asset_policy", entity_id=policy.id, action="asset_policy.update",
        tenant_id=tenant_id, actor_user_id=actor.id,
        diff={"before": before, "after": {f: getattr(policy, f) for f in _POLICY_FIELDS}},
    )
    db.session.commit()
    return policy


def _actor_holds_policy_role(actor: User, role_key: str | None) -> bool:
    if actor.is_admin:
        return True
    return bool(role_key) and permission_service.user_has_role(actor, role_key)


# ── Movements ────────────────────────────────────────────────────────────────

def apply_movement(
    asset: MunicipalAsset,
    movement_type: str,
    actor_id: int | None,
    *,
    status_after: str | None = None,
    to_location_id: int | None = None,
    to_service_id: int | None = None,
    to_custodian_user_id: int | None = None,
    document_ref: str | None = None,
    note: str | None = None,
    request_id: int | None = None,
    enforce_document: bool = True,
) -> MunicipalAssetMovement:
    """Append a movement and update the asset (no permission check, no commit)."""
    if movement_type not in MOVEMENT_TYPES:
        raise ValidationError(f"Invalid movement type: {movement_type}")
    if enforce_document and movement_type in DOCUMENT_REQUIRED_TYPES and not document_ref:
        raise ValidationError(
            f"document_ref is required for {movement_type}",
            details={"document_ref": "required"},
        )
    if movement_type == "STATUS_CHANGE" and not status_after:
        raise ValidationError("status_after is required for STATUS_CHANGE")
    if status_after and status_after not in ASSET_STATUSES:
        raise ValidationError(f"Invalid asset status: {status_after}")

    status_before = asset.status
    new_status = status_after or IMPLIED_STATUS.get(movement_type) or status_before

    movement = MunicipalAssetMovement(
        tenant_id=asset.tenant_id,
        asset_id=asset.id,
        type=movement_type,
        status_before=status_before,
        status_after=new_status,
        from_location_id=asset.location_id,
        to_location_id=to_location_id,
        from_service_id=asset.requesting_service_id,
        to_service_id=to_service_id,
        from_custodian_user_id=asset.custodian_user_id,
        to_custodian_user_id=to_custodian_user_id,
        document_ref=document_ref,
        request_id=request_id,
        note=note,
        actor_user_id=actor_id,
    )
    db.session.add(movement)

    if to_location_id is not None:
        asset.location_id = to_location_id
    if to_service_id is not None:
        asset.requesting_service_id = to_service_id
    if to_custodian_user_id is not None:
        asset.custodian_user_id = to_custodian_user_id
    asset.status = new_status

    if new_status != status_before:
        db.session.add(MunicipalAssetEvent(
            tenant_id=asset.tenant_id,
            asset_id=asset.id,
            from_status=status_before,
            to_status=new_status,
            note=note or movement_type,
            actor_user_id=actor_id,
        ))
    if any(v is not None for v in (to_location_id, to_service_id, to_custodian_user_id)):
        db.session.add(MunicipalAssetAssignment(
            tenant_id=asset.tenant_id,
            asset_id=asset.id,
            custodian_user_id=asset.custodian_user_id,
            requesting_service_id=asset.requesting_service_id,
            location_id=asset.location_id,
            assigned_by_user_id=actor_id,
            note=note,
        ))
    db.session.flush()
    return movement


def _validate_targets(tenant_id: int, data: dict):
    if data.get("to_location_id") is not None and AssetLocation.get_for_tenant(
        tenant_id, data["to_location_id"]
    ) is None:
        raise NotFoundError("AssetLocation", data["to_location_id"], tenant_id)
    if data.get("to_service_id") is not None and RequestingService.get_for_tenant(
        tenant_id, data["to_service_id"]
    ) is None:
        raise NotFoundError("RequestingService", data["to_service_id"], tenant_id)
    if data.get("to_custodian_user_id") is not None:
        user = db.session.get(User, data["to_custodian_user_id"])
        if user is None or user.tenant_id != tenant_id:
            raise NotFoundError("User", data["to_custodian_user_id"], tenant_id)


def register_movement(tenant_id: int, asset_id: int, actor: User, data: dict) -> MunicipalAssetMovement:
    """HTTP entry point for manual asset movements."""
    asset = get_asset(tenant_id, asset_id)
    permission_service.check_permission(actor, "assets.move", asset.requesting_service_id)

    movement_type = data.get("type")
    if movement_type in ("DISPOSAL_INIT", "DISPOSAL_APPROVED", "DISPOSED"):
        raise ValidationError("Disposal movements are recorded through the disposal process")
    if asset.status == "DISPOSED":
        raise ValidationError("Disposed assets cannot be moved")
    if movement_type == "TRANSFER":
        policy = get_policy(tenant_id)
        if policy.require_transfer_approval and not _actor_holds_policy_role(
            actor, policy.transfer_approver_role_key
        ):
            raise PermissionDenied(actor.id, f"role:{policy.transfer_approver_role_key}")
    _validate_targets(tenant_id, data)

    movement = apply_movement(
        asset, movement_type, actor.id,
        status_after=data.get("status_after"),
        to_location_id=data.get("to_location_id"),
        to_service_id=data.get("to_service_id"),
        to_custodian_user_id=data.get("to_custodian_user_id"),
        document_ref=data.get("document_ref"),
        note=data.get("note"),
    )
    db.session.commit()
    logger.info(
        "Asset %s movement %s → %s", asset.code, movement_type, asset.status,
        extra={"tenant_id": tenant_id, "entity_id": asset.id, "action": movement_type},
    )
    return movement


def mirror_unit_transition(unit, movement_type: str, actor_id: int | None, note: str | None = None):
    """Record a unit-driven status change on the unit's asset, if it has one."""
    asset = MunicipalAsset.query_for_tenant(unit.tenant_id).filter_by(unit_id=unit.id).first()
    if asset is None or asset.status == "DISPOSED":
        return None
    status_after = None
    if movement_type == "STATUS_CHANGE":
        status_after = {"LOST": "LOST", "SCRAPPED": "TO_DISPOSE", "IN_STOCK": "IN_SERVICE"}.get(
            unit.status, asset.status
        )
    return apply_movement(
        asset, movement_type, actor_id,
        status_after=status_after, note=note or f"Unit {unit.code}: {unit.status}",
        enforce_document=False,
    )


def deliver_unit_as_asset(
    unit,
    *,
    actor_id: int,
    request,
    custodian_user_id: int | None,
    document_ref: str,
) -> MunicipalAsset:
    """Create (ASSIGN) or re-home (TRANSFER) the patrimony record of a delivered unit."""
    asset = MunicipalAsset.query_for_tenant(unit.tenant_id).filter_by(unit_id=unit.id).first()
    is_new = asset is None
    if is_new:
        asset = MunicipalAsset(
            tenant_id=unit.tenant_id,
            code=f"AST-{_now().year}-{unit.code}",
            name=unit.product.name if unit.product else unit.code,
            status="REGISTERED",
            product_id=unit.product_id,
            unit_id=unit.id,
        )
        db.session.add(asset)
        db.session.flush()
    apply_movement(
        asset, "ASSIGN" if is_new else "TRANSFER", actor_id,
        status_after="IN_SERVICE",
        to_service_id=request.requesting_service_id,
        to_custodian_user_id=custodian_user_id,
        document_ref=document_ref,
        request_id=request.id,
        note=f"Delivered with {request.gtmi_number}",
    )
    return asset


# ── Disposal ─────────────────────────────────────────────────────────────────

def _next_disposal_code(tenant_id: int) -> str:
    prefix = f"ABT-{_now().year}-"
    last = (
        db.session.query(func.max(AssetDisposalProcess.code))
        .filter(AssetDisposalProcess.tenant_id == tenant_id,
                AssetDisposalProcess.code.like(f"{prefix}%"))
        .scalar()
    )
    seq = int(last[len(prefix):]) + 1 if last else 1
    return f"{prefix}{seq:04d}"


def _get_disposal(tenant_id: int, disposal_id: int) -> AssetDisposalProcess:
    process = AssetDisposalProcess.get_for_tenant(tenant_id, disposal_id)
    if process is None:
        raise NotFoundError("AssetDisposalProcess", disposal_id, tenant_id)
    return process


def list_disposals(tenant_id: int, asset_id: int) -> list[AssetDisposalProcess]:
    get_asset(tenant_id, asset_id)
    return (
        AssetDisposalProcess.query_for_tenant(tenant_id)
        .filter_by(asset_id=asset_id)
        .order_by(AssetDisposalProcess.id.desc())
        .all()
    )


def open_disposal(tenant_id: int, asset_id: int, actor: User, data: dict) -> AssetDisposalProcess:
    asset = get_asset(tenant_id, asset_id)
    permission_service.check_permission(actor, "assets.dispose_init", asset.requesting_service_id)
    document_ref = (data.get("document_ref") or "").strip()
    if not document_ref:
        raise ValidationError("document_ref is required", details={"document_ref": "required"})
    if asset.status == "DISPOSED":
        raise ValidationError("Asset is already disposed")
    active = (
        AssetDisposalProcess.query_for_tenant(tenant_id)
        .filter(AssetDisposalProcess.asset_id == asset.id,
                AssetDisposalProcess.status.in_(DISPOSAL_ACTIVE_STATUSES))
        .first()
    )
    if active is not None:
        raise StateConflictError(f"Asset {asset.code} already has an active disposal process {active.code}")

    process = AssetDisposalProcess(
        tenant_id=tenant_id,
        code=_next_disposal_code(tenant_id),
        asset_id=asset.id,
        status="UNDER_REVIEW",
        reason_code=data.get("reason_code"),
        reason_detail=data.get("reason_detail"),
        document_ref=document_ref,
        opened_by_user_id=actor.id,
    )
    db.session.add(process)
    db.session.flush()
    apply_movement(
        asset, "DISPOSAL_INIT", actor.id,
        status_after="TO_DISPOSE", document_ref=document_ref,
        note=f"Disposal {process.code} opened",
    )
    db.session.commit()
    logger.info("Disposal %s opened for asset %s", process.code, asset.code,
                extra={"tenant_id": tenant_id, "entity_id": asset.id})
    return process


def decide_disposal(tenant_id: int, disposal_id: int, actor: User, decision: str, note: str | None = None):
    process = _get_disposal(tenant_id, disposal_id)
    asset = get_asset(tenant_id, process.asset_id)
    permission_service.check_permission(actor, "assets.dispose_approve", asset.requesting_service_id)
    policy = get_policy(tenant_id)
    if policy.require_disposal_approval and not _actor_holds_policy_role(
        actor, policy.disposal_approver_role_key
    ):
        raise PermissionDenied(actor.id, f"role:{policy.disposal_approver_role_key}")
    if decision not in ("APPROVED", "REJECTED"):
        raise ValidationError("decision must be APPROVED or REJECTED")
    if process.status == "COMPLETED":
        raise StateConflictError(f"Disposal {process.code} is already completed")

    process.status = decision
    process.decided_by_user_id = actor.id
    process.decided_at = _now()
    process.decision_note = note
    if decision == "APPROVED":
        apply_movement(
            asset, "DISPOSAL_APPROVED", actor.id,
            status_after="TO_DISPOSE", document_ref=process.document_ref,
            note=note or f"Disposal {process.code} approved",
        )
    else:
        apply_movement(
            asset, "STATUS_CHANGE", actor.id,
            status_after="IN_SERVICE", note=note or f"Disposal {process.code} rejected",
        )
    db.session.commit()
    return process


def complete_disposal(tenant_id: int, disposal_id: int, actor: User, note: str | None = None):
    process = _get_disposal(tenant_id, disposal_id)
    asset = get_asset(tenant_id, process.asset_id)
    permission_service.check_permission(actor, "assets.dispose_approve", asset.requesting_service_id)
    if process.status != "APPROVED":
        raise ValidationError(f"Disposal {process.code} must be APPROVED to complete (is {process.status})")

    process.status = "COMPLETED"
    process.closed_at = _now()
    apply_movement(
        asset, "DISPOSED", actor.id,
        document_ref=process.document_ref, note=note or f"Disposal {process.code} completed",
    )
    db.session.commit()
    logger.info("Disposal %s completed", process.code,
                extra={"tenant_id": tenant_id, "entity_id": asset.id})
    return process
