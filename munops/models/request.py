"""
Municipal Operations Back-Office
Requisition domain model.

Models:
    - Request: requisition document moving through the approval workflow
    - RequestItem: one line of a requisition
    - RequestStatusAudit: append-only status change trail
    - RequestWorkflowEvent: append-only workflow action trail (stage level)
    - RequestExecution: warehouse execution record, unique per idempotency key
"""

from munops.models import db
from munops.models.base import TenantModel, iso, utcnow

# ── Constants ────────────────────────────────────────────────────────────────

REQUEST_STATUSES = ("DRAFT", "SUBMITTED", "APPROVED", "REJECTED", "FULFILLED")
REQUEST_TYPES = ("STANDARD", "RETURN")
ITEM_ROLES = ("NORMAL", "OLD", "NEW")

# Workflow stages refine SUBMITTED into the two approval levels
WORKFLOW_STAGES = (
    "DRAFT",
    "SUBMITTED",
    "AWAITING_ADMIN_APPROVAL",
    "APPROVED",
    "REJECTED",
    "FULFILLED",
)


class Request(TenantModel):
    __tablename__ = "requests"

    id = db.Column(db.Integer, primary_key=True)
    gtmi_number = db.Column(db.String(40), nullable=False)
    type = db.Column(db.String(20), nullable=False, default="STANDARD")
    status = db.Column(db.String(20), nullable=False, default="DRAFT", index=True)
    workflow_stage = db.Column(db.String(40), nullable=False, default="DRAFT")

    title = db.Column(db.String(300))
    notes = db.Column(db.Text)

    # Requester snapshot (kept even if the user is renamed later)
    requested_by_user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), index=True
    )
    requester_name = db.Column(db.String(200))
    requester_email = db.Column(db.String(200))
    requesting_service_id = db.Column(
        db.Integer, db.ForeignKey("requesting_services.id", ondelete="SET NULL"), index=True
    )

    # Approval signature
    signature_name = db.Column(db.String(200))
    signature_title = db.Column(db.String(200))
    signature_data_url = db.Column(db.Text)
    signed_at = db.Column(db.DateTime(timezone=True))
    signed_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    signature_voided_at = db.Column(db.DateTime(timezone=True))
    signature_voided_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    signature_void_reason = db.Column(db.String(500))

    # Pickup signature
    pickup_signature_name = db.Column(db.String(200))
    pickup_signature_title = db.Column(db.String(200))
    pickup_signature_data_url = db.Column(db.Text)
    pickup_signed_at = db.Column(db.DateTime(timezone=True))
    pickup_signed_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    pickup_voided_at = db.Column(db.DateTime(timezone=True))
    pickup_voided_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    pickup_void_reason = db.Column(db.String(500))

    # Workflow timestamps
    submitted_at = db.Column(db.DateTime(timezone=True))
    approved_at = db.Column(db.DateTime(timezone=True))
    rejected_at = db.Column(db.DateTime(timezone=True))
    fulfilled_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        db.UniqueConstraint("tenant_id", "gtmi_number", name="uq_request_gtmi"),
    )

    items = db.relationship(
        "RequestItem", back_populates="request", lazy="selectin",
        cascade="all, delete-orphan", order_by="RequestItem.id",
    )

    @property
    def has_approval_signature(self) -> bool:
        return self.signed_at is not None and self.signature_voided_at is None

    @property
    def has_pickup_signature(self) -> bool:
        return self.pickup_signed_at is not None and self.pickup_voided_at is None

    def to_dict(self, include_items=True):
        d = {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "gtmi_number": self.gtmi_number,
            "type": self.type,
            "status": self.status,
            "workflow_stage": self.workflow_stage,
            "title": self.title,
            "notes": self.notes,
            "requested_by_user_id": self.requested_by_user_id,
            "requester_name": self.requester_name,
            "requester_email": self.requester_email,
            "requesting_service_id": self.requesting_service_id,
            "approval_signature": {
                "name": self.signature_name,
                "title": self.signature_title,
                "signed_at": iso(self.signed_at),
                "signed_by_user_id": self.signed_by_user_id,
                "voided_at": iso(self.signature_voided_at),
                "void_reason": self.signature_void_reason,
            },
            "pickup_signature": {
                "name": self.pickup_signature_name,
                "title": self.pickup_signature_title,
                "signed_at": iso(self.pickup_signed_at),
                "signed_by_user_id": self.pickup_signed_by_user_id,
                "voided_at": iso(self.pickup_voided_at),
                "void_reason": self.pickup_void_reason,
            },
            "submitted_at": iso(self.submitted_at),
            "approved_at": iso(self.approved_at),
            "rejected_at": iso(self.rejected_at),
            "fulfilled_at": iso(self.fulfilled_at),
            "created_at": iso(self.created_at),
        }
        if include_items:
            d["items"] = [i.to_dict() for i in self.items]
        return d


class RequestItem(db.Model):
    __tablename__ = "request_items"

    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(
        db.Integer, db.ForeignKey("requests.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product_id = db.Column(db.Integer, db.ForeignKey("products.id", ondelete="SET NULL"))
    quantity = db.Column(db.Integer, nullable=False, default=1)
    destination = db.Column(db.String(120), comment="Unit code once known")
    role = db.Column(db.String(10), nullable=False, default="NORMAL")
    unit_id = db.Column(db.Integer, db.ForeignKey("product_units.id", ondelete="SET NULL"))

    request = db.relationship("Request", back_populates="items")
    product = db.relationship("Product", lazy="joined")

    def to_dict(self):
        return {
            "id": self.id,
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else None,
            "quantity": self.quantity,
            "destination": self.destination,
            "role": self.role,
            "unit_id": self.unit_id,
        }


class RequestStatusAudit(TenantModel):
    __tablename__ = "request_status_audits"

    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(
        db.Integer, db.ForeignKey("requests.id", ondelete="CASCADE"), nullable=False, index=True
    )
    from_status = db.Column(db.String(20))
    to_status = db.Column(db.String(20), nullable=False)
    changed_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    source = db.Column(db.String(40), nullable=False, default="WORKFLOW")
    note = db.Column(db.Text)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "request_id": self.request_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "changed_by_user_id": self.changed_by_user_id,
            "source": self.source,
            "note": self.note,
            "created_at": iso(self.created_at),
        }


class RequestWorkflowEvent(TenantModel):
    __tablename__ = "request_workflow_events"

    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(
        db.Integer, db.ForeignKey("requests.id", ondelete="CASCADE"), nullable=False, index=True
    )
    action = db.Column(db.String(40), nullable=False)
    from_stage = db.Column(db.String(40))
    to_stage = db.Column(db.String(40), nullable=False)
    actor_user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    note = db.Column(db.Text)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "request_id": self.request_id,
            "action": self.action,
            "from_stage": self.from_stage,
            "to_stage": self.to_stage,
            "actor_user_id": self.actor_user_id,
            "note": self.note,
            "created_at": iso(self.created_at),
        }


class RequestExecution(TenantModel):
    __tablename__ = "request_executions"

    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(
        db.Integer, db.ForeignKey("requests.id", ondelete="CASCADE"), nullable=False, index=True
    )
    idempotency_key = db.Column(db.String(120), nullable=False)
    document_ref = db.Column(db.String(500), nullable=False)
    note = db.Column(db.Text)
    received_by_name = db.Column(db.String(200))
    received_by_title = db.Column(db.String(200))
    executed_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    lines_json = db.Column(db.JSON, default=list)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        db.UniqueConstraint("tenant_id", "idempotency_key", name="uq_request_execution_key"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "request_id": self.request_id,
            "idempotency_key": self.idempotency_key,
            "document_ref": self.document_ref,
            "note": self.note,
            "received_by_name": self.received_by_name,
            "received_by_title": self.received_by_title,
            "executed_by_user_id": self.executed_by_user_id,
            "lines": self.lines_json or [],
            "created_at": iso(self.created_at),
        }
