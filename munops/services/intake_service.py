"""
Stock Intake Service — receive goods against a supplier invoice.

    invoice ──→ N × ProductUnit(IN_STOCK)  (unit-tracked products)
            └─→ product quantity += N, one IN stock movement

The product is either an existing one (``product_id``) or created on the
fly from ``product: {name, sku, ...}``.  Unit codes are taken from
``unit_codes`` when given, otherwise generated from the SKU.

Usage:
    from munops.services.intake_service import receive_stock

    result = receive_stock(actor, {"invoice_number": "FT 2026/118",
                                   "product_id": 4, "quantity": 3})
"""

import logging
import uuid

from munops.core.exceptions import ConflictError, NotFoundError, ValidationError
from munops.models import db
from munops.models.audit import write_audit
from munops.models.auth import RequestingService, User
from munops.models.inventory import Invoice, Product, ProductUnit
from munops.services import permission_service, request_workflow, stock_service
from munops.utils.helpers import parse_datetime

logger = logging.getLogger(__name__)

MAX_INTAKE_QUANTITY = 1000
CODE_PREVIEW = 24


def _positive_int(value, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValidationError(f"{field} must be a positive integer", details={field: "invalid"})
    return value


def _text(data: dict, field: str, max_len: int, required: bool = False):
    value = data.get(field)
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise ValidationError(f"{field} is required", details={field: "required"})
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string", details={field: "invalid"})
    value = value.strip()
    if len(value) > max_len:
        raise ValidationError(f"{field} is too long (max {max_len})", details={field: "too_long"})
    return value


def _validate_input(data: dict) -> dict:
    quantity = _positive_int(data.get("quantity"), "quantity")
    if quantity > MAX_INTAKE_QUANTITY:
        raise ValidationError(f"quantity cannot exceed {MAX_INTAKE_QUANTITY}",
                              details={"quantity": "too_large"})

    product_id = data.get("product_id")
    new_product = data.get("product")
    if (product_id is None) == (new_product is None):
        raise ValidationError("Give either product_id or product",
                              details={"product_id": "xor", "product": "xor"})
    if new_product is not None:
        if not isinstance(new_product, dict):
            raise ValidationError("product must be an object", details={"product": "invalid"})
        new_product = {
            "name": _text(new_product, "name", 200, required=True),
            "sku": _text(new_product, "sku", 80, required=True),
            "unit_tracked": bool(new_product.get("unit_tracked", True)),
            "patrimonializable": bool(new_product.get("patrimonializable", False)),
        }
    else:
        product_id = _positive_int(product_id, "product_id")

    unit_codes = data.get("unit_codes")
    if unit_codes is not None:
        if not isinstance(unit_codes, list) or not all(isinstance(c, str) and c.strip() for c in unit_codes):
            raise ValidationError("unit_codes must be a list of codes", details={"unit_codes": "invalid"})
        unit_codes = [c.strip() for c in unit_codes]
        if len(unit_codes) != quantity:
            raise ValidationError("unit_codes must have one code per unit received",
                                  details={"unit_codes": len(unit_codes), "quantity": quantity})
        if len(set(unit_codes)) != len(unit_codes):
            raise ValidationError("unit_codes contains duplicates", details={"unit_codes": "duplicate"})

    issued_raw = data.get("issued_at")
    issued_at = parse_datetime(issued_raw)
    if issued_raw and issued_at is None:
        raise ValidationError("issued_at must be an ISO-8601 date", details={"issued_at": "invalid"})

    request_id = data.get("request_id")
    service_id = data.get("requesting_service_id")
    return {
        "invoice_number": _text(data, "invoice_number", 80, required=True),
        "supplier": _text(data, "supplier", 200),
        "notes": _text(data, "notes", 500),
        "issued_at": issued_at.date() if issued_at else None,
        "quantity": quantity,
        "product_id": product_id,
        "product": new_product,
        "unit_codes": unit_codes,
        "request_id": _positive_int(request_id, "request_id") if request_id is not None else None,
        "requesting_service_id": (
            _positive_int(service_id, "requesting_service_id") if service_id is not None else None
        ),
    }


def _resolve_product(tenant_id: int, params: dict) -> Product:
    if params["product_id"] is not None:
        product = Product.get_for_tenant(tenant_id, params["product_id"])
        if product is None:
            raise NotFoundError("Product", params["product_id"], tenant_id)
        return product

    fields = params["product"]
    if Product.query_for_tenant(tenant_id).filter_by(sku=fields["sku"]).first() is not None:
        raise ConflictError("Product", "sku", fields["sku"])
    product = Product(tenant_id=tenant_id, quantity=0, status="Stock Out", **fields)
    db.session.add(product)
    db.session.flush()
    return product


def _unit_codes(tenant_id: int, product: Product, params: dict) -> list[str]:
    codes = params["unit_codes"]
    if codes is None:
        prefix = (product.sku or "UN").upper()
        return [f"{prefix}-{uuid.uuid4().hex[:8].upper()}" for _ in range(params["quantity"])]
    taken = (
        ProductUnit.query_for_tenant(tenant_id)
        .filter(ProductUnit.code.in_(codes))
        .order_by(ProductUnit.code)
        .first()
    )
    if taken is not None:
        raise ConflictError("ProductUnit", "code", taken.code)
    return codes


def receive_stock(actor: User, data: dict) -> dict:
    """Register an invoice and bring its goods into stock.

    Returns:
        {"product": {...}, "invoice": {...}, "units": {"count", "codes"}}

    Raises:
        ValidationError, PermissionDenied, NotFoundError, ConflictError
    """
    params = _validate_input(data)
    permission_service.check_permission(actor, "units.manage")
    tenant_id = actor.tenant_id

    service_id = params["requesting_service_id"]
    if service_id is not None:
        service = RequestingService.get_for_tenant(tenant_id, service_id)
        if service is None:
            raise NotFoundError("RequestingService", service_id, tenant_id)
        if not service.is_active:
            raise ValidationError("Requesting service is inactive",
                                  details={"requesting_service_id": service_id})
    if params["request_id"] is not None:
        request_workflow.get_request(tenant_id, params["request_id"])

    product = _resolve_product(tenant_id, params)
    codes = _unit_codes(tenant_id, product, params) if product.unit_tracked else []

    invoice = Invoice(
        tenant_id=tenant_id,
        number=params["invoice_number"],
        supplier=params["supplier"],
        issued_at=params["issued_at"],
        product_id=product.id,
        quantity=params["quantity"],
        request_id=params["request_id"],
        requesting_service_id=service_id,
        notes=params["notes"],
        created_by_user_id=actor.id,
    )
    db.session.add(invoice)
    db.session.flush()

    db.session.add_all([
        ProductUnit(tenant_id=tenant_id, product_id=product.id, invoice_id=invoice.id,
                    code=code, status="IN_STOCK")
        for code in codes
    ])
    stock_service.adjust_quantity(product, params["quantity"])
    stock_service.record_movement(
        tenant_id=tenant_id, movement_type="IN", product=product, quantity=params["quantity"],
        request_id=params["request_id"], invoice_id=invoice.id, performed_by=actor.id,
        reason="Intake", notes=params["notes"],
    )
    write_audit(
        entity_type="invoice", entity_id=invoice.id, action="stock.intake",
        tenant_id=tenant_id, actor_user_id=actor.id,
        diff={"invoice_number": invoice.number, "product_id": product.id,
              "quantity": params["quantity"], "units": len(codes)},
    )
    db.session.commit()
    logger.info(
        "Intake %s: %d × product %s", invoice.number, params["quantity"], product.id,
        extra={"tenant_id": tenant_id},
    )
    return {
        "product": product.to_dict(),
        "invoice": invoice.to_dict(),
        "units": {"count": len(codes), "codes": codes[:CODE_PREVIEW]},
    }
