"""
Municipal Operations Back-Office
Municipal asset (patrimony) domain model.

Models:
    - AssetLocation: physical location an asset can sit in
    - MunicipalAsset: patrimony record derived from a delivered ProductUnit
    - MunicipalAssetEvent: append-only status change trail
    - MunicipalAssetMovement: append-only custody / location ledger
    - MunicipalAssetAssignment: custody assignment history
    - AssetDisposalProcess: write-off (abate) process
    - AssetPolicy: per-tenant approval rules for transfers and disposals
"""

from munops.models import db
from munops.models.base import TenantModel, iso, utcnow

# ── Constants ────────────────────────────────────────────────────────────────

ASSET_STATUSES = (
    "REGISTERED", "IN_SERVICE", "IN_REPAIR", "LOANED", "LOST", "STOLEN",
    "TO_DISPOSE", "TRANSFERRED_OUT", "DONATED", "DISPOSED",
    # legacy values still present in imported data
    "ACTIVE", "ASSIGNED", "MAINTENANCE", "SCRAPPED",
)

MOVEMENT_TYPES = (
    "REGISTER", "ASSIGN", "TRANSFER", "STOCK_IN", "STOCK_OUT",
    "LOAN_OUT", "LOAN_RETURN", "REPAIR_OUT", "REPAIR_IN", "STATUS_CHANGE",
    "DISPOSAL_INIT", "DISPOSAL_APPROVED", "DISPOSED", "NOTE",
)

# Movement type → status the asset ends up in
IMPLIED_STATUS = {
    "LOAN_OUT": "LOANED",
    "LOAN_RETURN": "IN_SERVICE",
    "REPAIR_OUT": "IN_REPAIR",
    "REPAIR_IN": "IN_SERVICE",
    "DISPOSED": "DISPOSED",
}

DOCUMENT_REQUIRED_TYPES = frozenset({
    "TRANSFER", "REPAIR_OUT", "REPAIR_IN",
    "DISPOSAL_INIT", "DISPOSAL_APPROVED", "DISPOSED",
})

DISPOSAL_STATUSES = ("DRAFT", "UNDER_REVIEW", "APPROVED", "REJECTED", "COMPLETED")
DISPOSAL_ACTIVE_STATUSES = ("DRAFT", "UNDER_REVIEW", "APPROVED")


class AssetLocation(TenantModel):
    __tablename__ = "asset_locations"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(40), nullable=False)
    name = db.Column(db.String(200), nullable=False)

    def to_dict(self):
        return {"id": self.id, "code": self.code, "name": self.name}


class MunicipalAsset(TenantModel):
    __tablename__ = "municipal_assets"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(80), nullable=False)
    name = db.Column(db.String(200), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="REGISTERED")
    product_id = db.Column(db.Integer, db.ForeignKey("products.id", ondelete="SET NULL"))
    unit_id = db.Column(db.Integer, db.ForeignKey("product_units.id", ondelete="SET NULL"), index=True)
    location_id = db.Column(db.Integer, db.ForeignKey("asset_locations.id", ondelete="SET NULL"))
    requesting_service_id = db.Column(
        db.Integer, db.ForeignKey("requesting_services.id", ondelete="SET NULL")
    )
    custodian_user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        db.UniqueConstraint("tenant_id", "code", name="uq_municipal_asset_code"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "status": self.status,
            "product_id": self.product_id,
            "unit_id": self.unit_id,
            "location_id": self.location_id,
            "requesting_service_id": self.requesting_service_id,
            "custodian_user_id": self.custodian_user_id,
            "notes": self.notes,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }


class MunicipalAssetEvent(TenantModel):
    __tablename__ = "municipal_asset_events"

    id = db.Column(db.Integer, primary_key=True)
    asset_id = db.Column(
        db.Integer, db.ForeignKey("municipal_assets.id", ondelete="CASCADE"), nullable=False, index=True
    )
    from_status = db.Column(db.String(20))
    to_status = db.Column(db.String(20), nullable=False)
    note = db.Column(db.Text)
    actor_user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "asset_id": self.asset_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "note": self.note,
            "actor_user_id": self.actor_user_id,
            "created_at": iso(self.created_at),
        }


class MunicipalAssetMovement(TenantModel):
    __tablename__ = "municipal_asset_movements"

    id = db.Column(db.Integer, primary_key=True)
    asset_id = db.Column(
        db.Integer, db.ForeignKey("municipal_assets.id", ondelete="CASCADE"), nullable=False, index=True
    )
    type = db.Column(db.String(30), nullable=False)
    status_before = db.Column(db.String(20))
    status_after = db.Column(db.String(20))
    from_location_id = db.Column(db.Integer, db.ForeignKey("asset_locations.id", ondelete="SET NULL"))
    to_location_id = db.Column(db.Integer, db.ForeignKey("asset_locations.id", ondelete="SET NULL"))
    from_service_id = db.Column(db.Integer, db.ForeignKey("requesting_services.id", ondelete="SET NULL"))
    to_service_id = db.Column(db.Integer, db.ForeignKey("requesting_services.id", ondelete="SET NULL"))
    from_custodian_user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    to_custodian_user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    document_ref = db.Column(db.String(500))
    request_id = db.Column(db.Integer, db.ForeignKey("requests.id", ondelete="SET NULL"))
    note = db.Column(db.Text)
    actor_user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "asset_id": self.asset_id,
            "type": self.type,
            "status_before": self.status_before,
            "status_after": self.status_after,
            "from_location_id": self.from_location_id,
            "to_location_id": self.to_location_id,
            "from_service_id": self.from_service_id,
            "to_service_id": self.to_service_id,
            "from_custodian_user_id": self.from_custodian_user_id,
            "to_custodian_user_id": self.to_custodian_user_id,
            "document_ref": self.document_ref,
            "request_id": self.request_id,
            "note": self.note,
            "actor_user_id": self.actor_user_id,
            "created_at": iso(self.created_at),
        }


class MunicipalAssetAssignment(TenantModel):
    __tablename__ = "municipal_asset_assignments"

    id = db.Column(db.Integer, primary_key=True)
    asset_id = db.Column(
        db.Integer, db.ForeignKey("municipal_assets.id", ondelete="CASCADE"), nullable=False, index=True
    )
    custodian_user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    requesting_service_id = db.Column(
        db.Integer, db.ForeignKey("requesting_services.id", ondelete="SET NULL")
    )
    location_id = db.Column(db.Integer, db.ForeignKey("asset_locations.id", ondelete="SET NULL"))
    assigned_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    note = db.Column(db.Text)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "asset_id": self.asset_id,
            "custodian_user_id": self.custodian_user_id,
            "requesting_service_id": self.requesting_service_id,
            "location_id": self.location_id,
            "assigned_by_user_id": self.assigned_by_user_id,
            "note": self.note,
            "created_at": iso(self.created_at),
        }


class AssetDisposalProcess(TenantModel):
    __tablename__ = "asset_disposal_processes"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(40), nullable=False)
    asset_id = db.Column(
        db.Integer, db.ForeignKey("municipal_assets.id", ondelete="CASCADE"), nullable=False, index=True
    )
    status = db.Column(db.String(20), nullable=False, default="UNDER_REVIEW")
    reason_code = db.Column(db.String(40))
    reason_detail = db.Column(db.Text)
    document_ref = db.Column(db.String(500), nullable=False)
    opened_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    decided_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    decided_at = db.Column(db.DateTime(timezone=True))
    decision_note = db.Column(db.Text)
    closed_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        db.UniqueConstraint("tenant_id", "code", name="uq_asset_disposal_code"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "code": self.code,
            "asset_id": self.asset_id,
            "status": self.status,
            "reason_code": self.reason_code,
            "reason_detail": self.reason_detail,
            "document_ref": self.document_ref,
            "opened_by_user_id": self.opened_by_user_id,
            "decided_by_user_id": self.decided_by_user_id,
            "decided_at": iso(self.decided_at),
            "decision_note": self.decision_note,
            "closed_at": iso(self.closed_at),
            "created_at": iso(self.created_at),
        }


class AssetPolicy(TenantModel):
    __tablename__ = "asset_policies"

    id = db.Column(db.Integer, primary_key=True)
    require_transfer_approval = db.Column(db.Boolean, default=False)
    require_disposal_approval = db.Column(db.Boolean, default=True)
    transfer_approver_role_key = db.Column(db.String(60), default="ASSET_MANAGER")
    disposal_approver_role_key = db.Column(db.String(60), default="ASSET_MANAGER")
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        db.UniqueConstraint("tenant_id", name="uq_asset_policy_tenant"),
    )

    def to_dict(self):
        return {
            "require_transfer_approval": self.require_transfer_approval,
            "require_disposal_approval": self.require_disposal_approval,
            "transfer_approver_role_key": self.transfer_approver_role_key,
            "disposal_approver_role_key": self.disposal_approver_role_key,
            "updated_at": iso(self.updated_at),
        }
