"""
Stock Service — unit claims, quantity adjustments and the movement ledger.

All helpers flush but never commit; they are building blocks for the unit,
substitution and execution services, which own the transaction.

Concurrency: a unit changes status only through ``claim_unit``, an
``UPDATE ... WHERE status IN (expected)`` whose affected-row count is
checked.  Quantity changes are applied as ``quantity = quantity + delta``
in SQL so concurrent adjustments do not overwrite each other.
"""

import logging

from sqlalchemy import update

from munops.core.exceptions import NotFoundError, StateConflictError, ValidationError
from munops.models import db
from munops.models.inventory import MOVEMENT_TYPES, Product, ProductUnit, StockMovement
from munops.utils.helpers import to_utc

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100


def get_unit_by_code(tenant_id: int, code: str) -> ProductUnit:
    unit = ProductUnit.query_for_tenant(tenant_id).filter_by(code=code).first()
    if unit is None:
        raise NotFoundError("ProductUnit", code, tenant_id)
    return unit


def claim_unit(unit: ProductUnit, expected_statuses, values: dict) -> ProductUnit:
    """Conditionally update *unit*; raise StateConflictError if it moved meanwhile."""
    db.session.flush()
    result = db.session.execute(
        update(ProductUnit)
        .where(ProductUnit.id == unit.id, ProductUnit.status.in_(list(expected_statuses)))
        .values(**values)
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount != 1:
        raise StateConflictError(f"Unit {unit.code} is no longer available")
    db.session.refresh(unit)
    return unit


def adjust_quantity(product: Product, delta: int, *, require_stock: bool = False) -> Product:
    """Apply ``quantity += delta`` in SQL and recompute the availability label."""
    stmt = update(Product).where(Product.id == product.id)
    if require_stock and delta < 0:
        stmt = stmt.where(Product.quantity >= -delta)
    result = db.session.execute(
        stmt.values(quantity=Product.quantity + delta)
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount != 1:
        raise ValidationError(
            f"Insufficient stock for {product.name}",
            details={"product_id": product.id, "requested": -delta},
        )
    db.session.refresh(product, ["quantity"])
    product.refresh_status()
    db.session.flush()
    return product


def record_movement(
    *,
    tenant_id: int,
    movement_type: str,
    product: Product,
    unit: ProductUnit | None = None,
    quantity: int = 1,
    request_id: int | None = None,
    invoice_id: int | None = None,
    performed_by: int | None = None,
    assigned_to: int | None = None,
    reason: str | None = None,
    cost_center: str | None = None,
    notes: str | None = None,
) -> StockMovement:
    """Append one ledger row."""
    if movement_type not in MOVEMENT_TYPES:
        raise ValueError(f"Unknown stock movement type: {movement_type}")
    movement = StockMovement(
        tenant_id=tenant_id,
        type=movement_type,
        quantity=quantity,
        product_id=product.id,
        unit_id=unit.id if unit is not None else None,
        invoice_id=invoice_id if invoice_id is not None else (unit.invoice_id if unit is not None else None),
        request_id=request_id,
        performed_by_user_id=performed_by,
        assigned_to_user_id=assigned_to,
        reason=reason,
        cost_center=cost_center,
        notes=notes,
    )
    db.session.add(movement)
    db.session.flush()
    logger.debug(
        "Stock movement %s qty=%d product=%s", movement_type, quantity, product.id,
        extra={"tenant_id": tenant_id, "unit_code": unit.code if unit is not None else None},
    )
    return movement


def list_movements(
    tenant_id: int,
    *,
    movement_type: str | None = None,
    product_id: int | None = None,
    unit_id: int | None = None,
    request_id: int | None = None,
    performed_by: int | None = None,
    since=None,
    until=None,
    cursor: int | None = None,
    limit: int = DEFAULT_PAGE_SIZE,
) -> dict:
    """Newest-first ledger page. ``next_cursor`` is None on the last page."""
    limit = max(1, min(limit or DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE))
    q = StockMovement.query_for_tenant(tenant_id)
    if movement_type:
        q = q.filter(StockMovement.type == movement_type)
    if product_id:
        q = q.filter(StockMovement.product_id == product_id)
    if unit_id:
        q = q.filter(StockMovement.unit_id == unit_id)
    if request_id:
        q = q.filter(StockMovement.request_id == request_id)
    if performed_by:
        q = q.filter(StockMovement.performed_by_user_id == performed_by)
    if since:
        q = q.filter(StockMovement.created_at >= to_utc(since))
    if until:
        q = q.filter(StockMovement.created_at <= to_utc(until))
    if cursor:
        q = q.filter(StockMovement.id < cursor)

    rows = q.order_by(StockMovement.id.desc()).limit(limit + 1).all()
    has_more = len(rows) > limit
    rows = rows[:limit]
    return {
        "items": [m.to_dict() for m in rows],
        "next_cursor": rows[-1].id if has_more and rows else None,
    }
