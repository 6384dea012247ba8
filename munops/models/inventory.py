"""
Municipal Operations Back-Office
Inventory domain model.

Models:
    - Product: stocked article with an on-hand quantity
    - Invoice: purchase document units arrive on
    - ProductUnit: one serialised physical instance of a product
    - StockMovement: immutable ledger row for every quantity change
"""

from munops.models import db
from munops.models.base import TenantModel, iso, utcnow

# ── Constants ────────────────────────────────────────────────────────────────

UNIT_STATUSES = ("IN_STOCK", "ACQUIRED", "IN_REPAIR", "SCRAPPED", "LOST")
MOVEMENT_TYPES = ("IN", "OUT", "RETURN", "REPAIR_OUT", "REPAIR_IN", "SCRAP", "LOST")

LOW_STOCK_THRESHOLD = 20

# Column values that detach a unit from its holder, merged into claim_unit values
CLEARED_ASSIGNMENT = {
    "assigned_to_user_id": None,
    "acquired_at": None,
    "acquired_by_user_id": None,
    "acquired_reason": None,
    "cost_center": None,
}


def product_status_for(quantity: int) -> str:
    """Availability label shown for a product with *quantity* on hand."""
    if quantity > LOW_STOCK_THRESHOLD:
        return "Available"
    if quantity > 0:
        return "Stock Low"
    return "Stock Out"


class Product(TenantModel):
    __tablename__ = "products"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    sku = db.Column(db.String(80))
    quantity = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default="Stock Out")
    unit_tracked = db.Column(db.Boolean, default=True, comment="Serialised per unit")
    patrimonializable = db.Column(
        db.Boolean, default=False, comment="Delivered units become municipal assets",
    )
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    def refresh_status(self):
        self.status = product_status_for(self.quantity or 0)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "sku": self.sku,
            "quantity": self.quantity,
            "status": self.status,
            "unit_tracked": self.unit_tracked,
            "patrimonializable": self.patrimonializable,
        }


class Invoice(TenantModel):
    __tablename__ = "invoices"

    id = db.Column(db.Integer, primary_key=True)
    number = db.Column(db.String(80), nullable=False)
    supplier = db.Column(db.String(200))
    issued_at = db.Column(db.Date)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id", ondelete="SET NULL"), index=True)
    quantity = db.Column(db.Integer, nullable=False, default=0)
    request_id = db.Column(db.Integer, db.ForeignKey("requests.id", ondelete="SET NULL"))
    requesting_service_id = db.Column(
        db.Integer, db.ForeignKey("requesting_services.id", ondelete="SET NULL")
    )
    notes = db.Column(db.Text)
    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "number": self.number,
            "supplier": self.supplier,
            "issued_at": self.issued_at.isoformat() if self.issued_at else None,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "request_id": self.request_id,
            "requesting_service_id": self.requesting_service_id,
            "notes": self.notes,
            "created_by_user_id": self.created_by_user_id,
            "created_at": iso(self.created_at),
        }


class ProductUnit(TenantModel):
    __tablename__ = "product_units"

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(
        db.Integer, db.ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True
    )
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id", ondelete="SET NULL"))
    code = db.Column(db.String(80), nullable=False)
    serial_number = db.Column(db.String(120))
    status = db.Column(db.String(20), nullable=False, default="IN_STOCK")

    assigned_to_user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    acquired_at = db.Column(db.DateTime(timezone=True))
    acquired_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    acquired_reason = db.Column(db.String(500))
    cost_center = db.Column(db.String(80))
    notes = db.Column(db.Text)

    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        db.UniqueConstraint("tenant_id", "code", name="uq_product_unit_code"),
    )

    product = db.relationship("Product", lazy="joined")

    def to_dict(self):
        return {
            "id": self.id,
            "code": self.code,
            "serial_number": self.serial_number,
            "status": self.status,
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else None,
            "invoice_id": self.invoice_id,
            "assigned_to_user_id": self.assigned_to_user_id,
            "acquired_at": iso(self.acquired_at),
            "acquired_by_user_id": self.acquired_by_user_id,
            "acquired_reason": self.acquired_reason,
            "cost_center": self.cost_center,
            "notes": self.notes,
        }


class StockMovement(TenantModel):
    """Append-only ledger.  Rows are never updated or deleted."""

    __tablename__ = "stock_movements"
    __table_args__ = (
        db.Index("ix_stock_movements_tenant_type", "tenant_id", "type"),
    )

    id = db.Column(db.Integer, primary_key=True)
    type = db.Column(db.String(20), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    product_id = db.Column(
        db.Integer, db.ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True
    )
    unit_id = db.Column(db.Integer, db.ForeignKey("product_units.id", ondelete="SET NULL"), index=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id", ondelete="SET NULL"))
    request_id = db.Column(db.Integer, db.ForeignKey("requests.id", ondelete="SET NULL"), index=True)
    performed_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    assigned_to_user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    reason = db.Column(db.String(500))
    cost_center = db.Column(db.String(80))
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow, nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "type": self.type,
            "quantity": self.quantity,
            "product_id": self.product_id,
            "unit_id": self.unit_id,
            "invoice_id": self.invoice_id,
            "request_id": self.request_id,
            "performed_by_user_id": self.performed_by_user_id,
            "assigned_to_user_id": self.assigned_to_user_id,
            "reason": self.reason,
            "cost_center": self.cost_center,
            "notes": self.notes,
            "created_at": iso(self.created_at),
        }
