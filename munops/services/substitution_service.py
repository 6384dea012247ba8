"""
Unit Substitution Service — swap an issued unit for a replacement in one transaction.

    old unit (ACQUIRED | IN_REPAIR) ──disposition──→ IN_STOCK | IN_REPAIR | SCRAPPED | LOST
    new unit (IN_STOCK)             ──────────────→ ACQUIRED

Both sides are tied to an auto-submitted RETURN request (items OLD + NEW)
and to one substitution id that is stamped on every stock movement note.

Usage:
    from munops.services.substitution_service import substitute_units

    result = substitute_units(actor, {"old_code": "UN-1", "new_code": "UN-2",
                                      "old_disposition": "REPAIR",
                                      "return_reason_code": "AVARIA"})
"""

import logging
import uuid
from datetime import datetime, timezone

from munops.core.exceptions import NotFoundError, PermissionDenied, ValidationError
from munops.models import db
from munops.models.audit import write_audit
from munops.models.auth import User
from munops.models.inventory import CLEARED_ASSIGNMENT
from munops.services import asset_service, permission_service, request_workflow, stock_service

logger = logging.getLogger(__name__)

DISPOSITIONS = ("RETURN", "REPAIR", "SCRAP", "LOST")
ADMIN_ONLY_DISPOSITIONS = ("SCRAP", "LOST")

REASON_LABELS = {
    "AVARIA": "Avaria",
    "FIM_USO": "Fim de uso",
    "TROCA": "Troca",
    "EXTRAVIO": "Extravio",
    "OUTRO": "Outro",
}

# disposition → (unit status after, stock movement type, quantity delta)
_DISPOSITION_EFFECT = {
    "RETURN": ("IN_STOCK", "RETURN", +1),
    "REPAIR": ("IN_REPAIR", "REPAIR_OUT", 0),
    "SCRAP": ("SCRAPPED", "SCRAP", 0),
    "LOST": ("LOST", "LOST", 0),
}

_OLD_ITEM_LABEL = {
    "RETURN": "Old unit (return)",
    "REPAIR": "Old unit (repair)",
    "SCRAP": "Old unit (scrap)",
    "LOST": "Old unit (lost)",
}


def build_reason_text(code: str, detail: str | None, fallback: str | None) -> str:
    label = REASON_LABELS.get(code, code)
    if detail and detail.strip():
        return f"{label}: {detail.strip()}"
    if fallback and fallback.strip():
        return f"{label}: {fallback.strip()}"
    return label


def compose_notes(notes, substitution_id, old_code, new_code, ticket_number=None) -> str:
    parts = [
        notes.strip() if notes and notes.strip() else None,
        f"SUB:{substitution_id}",
        f"OLD:{old_code}",
        f"NEW:{new_code}",
        f"TICKET:{ticket_number}" if ticket_number else None,
    ]
    return " | ".join(p for p in parts if p)


def _validate_input(data: dict) -> dict:
    old_code = (data.get("old_code") or "").strip()
    new_code = (data.get("new_code") or "").strip()
    if not old_code or not new_code:
        raise ValidationError("old_code and new_code are required",
                              details={"old_code": old_code or "required", "new_code": new_code or "required"})
    if old_code == new_code:
        raise ValidationError("Old and new units must be different")

    disposition = data.get("old_disposition") or "RETURN"
    if disposition not in DISPOSITIONS:
        raise ValidationError(f"Invalid old_disposition: {disposition}")
    reason_code = data.get("return_reason_code") or "OUTRO"
    if reason_code not in REASON_LABELS:
        raise ValidationError(f"Invalid return_reason_code: {reason_code}")
    detail = (data.get("return_reason_detail") or "").strip() or None

    if reason_code == "OUTRO" and not detail:
        raise ValidationError("return_reason_detail is required when return_reason_code=OUTRO",
                              details={"return_reason_detail": "required"})
    if reason_code == "AVARIA" and disposition not in ("REPAIR", "SCRAP"):
        raise ValidationError("AVARIA requires old_disposition=REPAIR or SCRAP")
    if reason_code == "EXTRAVIO" and disposition != "LOST":
        raise ValidationError("EXTRAVIO requires old_disposition=LOST")
    if reason_code in ("FIM_USO", "TROCA") and disposition != "RETURN":
        raise ValidationError("FIM_USO/TROCA require old_disposition=RETURN")

    return {
        "old_code": old_code,
        "new_code": new_code,
        "disposition": disposition,
        "reason_code": reason_code,
        "reason_detail": detail,
        "assigned_to_user_id": data.get("assigned_to_user_id"),
        "reason": data.get("reason"),
        "cost_center": data.get("cost_center"),
        "ticket_number": data.get("ticket_number"),
        "notes": data.get("notes"),
        "compatibility_override_reason": (data.get("compatibility_override_reason") or "").strip() or None,
    }


def _deny_restricted_disposition(actor: User, params: dict):
    logger.warning(
        "Unit substitution denied: non-admin requested %s", params["disposition"],
        extra={"tenant_id": actor.tenant_id, "user_id": actor.id, "unit_code": params["old_code"]},
    )
    write_audit(
        entity_type="product_unit", entity_id=params["old_code"], action="substitution.denied",
        tenant_id=actor.tenant_id, actor_user_id=actor.id,
        diff={"old_code": params["old_code"], "new_code": params["new_code"],
              "old_disposition": params["disposition"]},
    )
    db.session.commit()
    raise PermissionDenied(actor.id, "admin")


def substitute_units(actor: User, data: dict) -> dict:
    """Retire the old unit, issue the new one and link both to a RETURN request.

    Raises:
        ValidationError, PermissionDenied, NotFoundError, StateConflictError
    """
    params = _validate_input(data)
    if params["disposition"] in ADMIN_ONLY_DISPOSITIONS and not actor.is_admin:
        _deny_restricted_disposition(actor, params)
    permission_service.check_permission(actor, "units.manage")

    def _substitute():
        old_unit = stock_service.get_unit_by_code(actor.tenant_id, params["old_code"])
        new_unit = stock_service.get_unit_by_code(actor.tenant_id, params["new_code"])
        disposition = params["disposition"]

        if old_unit.status not in ("ACQUIRED", "IN_REPAIR"):
            raise ValidationError(f"Old unit state does not allow substitution ({old_unit.status})")
        if disposition == "REPAIR" and old_unit.status == "IN_REPAIR":
            raise ValidationError(
                f"Old unit state {old_unit.status} does not allow old_disposition={disposition}"
            )
        if new_unit.status != "IN_STOCK":
            raise ValidationError(f"New unit must be IN_STOCK ({new_unit.status})")
        products_differ = old_unit.product_id != new_unit.product_id
        if products_differ and not params["compatibility_override_reason"]:
            raise ValidationError("Old/new product mismatch requires compatibility_override_reason")

        assigned_to = params["assigned_to_user_id"] or old_unit.assigned_to_user_id
        owner = db.session.get(User, assigned_to) if assigned_to else actor
        if owner is None or owner.tenant_id != actor.tenant_id:
            raise NotFoundError("User", assigned_to, actor.tenant_id)

        substitution_id = str(uuid.uuid4())
        performed_at = datetime.now(timezone.utc)
        reason_text = build_reason_text(params["reason_code"], params["reason_detail"], params["reason"])
        movement_notes = compose_notes(params["notes"], substitution_id, old_unit.code,
                                       new_unit.code, params["ticket_number"])
        if products_differ:
            movement_notes += f" | SKU_OVERRIDE:{params['compatibility_override_reason']}"

        req = request_workflow.build_request(
            actor,
            req_type="RETURN",
            items=[
                {"product_id": old_unit.product_id, "quantity": 1, "destination": old_unit.code,
                 "role": "OLD", "unit_id": old_unit.id},
                {"product_id": new_unit.product_id, "quantity": 1, "destination": new_unit.code,
                 "role": "NEW", "unit_id": new_unit.id},
            ],
            title=f"Substitution {old_unit.code} → {new_unit.code}",
            notes=params["notes"],
            requester=owner,
        )
        request_workflow.transition(
            req, "SUBMIT", actor,
            note=f"Created automatically by substitution {substitution_id}",
            source="SUBSTITUTION", skip_permission=True,
        )

        # Old unit
        status_after, movement_type, delta = _DISPOSITION_EFFECT[disposition]
        previous_assignee = old_unit.assigned_to_user_id
        stock_service.claim_unit(old_unit, [old_unit.status],
                                 {"status": status_after, **CLEARED_ASSIGNMENT})
        stock_service.record_movement(
            tenant_id=actor.tenant_id, movement_type=movement_type, product=old_unit.product,
            unit=old_unit, request_id=req.id, performed_by=actor.id, assigned_to=previous_assignee,
            reason=reason_text, cost_center=params["cost_center"], notes=movement_notes,
        )
        if delta:
            stock_service.adjust_quantity(old_unit.product, delta)
        asset_service.mirror_unit_transition(
            old_unit, "REPAIR_OUT" if disposition == "REPAIR" else "STATUS_CHANGE",
            actor.id, reason_text,
        )

        # New unit
        stock_service.claim_unit(new_unit, ["IN_STOCK"], {
            "status": "ACQUIRED",
            "assigned_to_user_id": assigned_to,
            "acquired_at": performed_at,
            "acquired_by_user_id": actor.id,
            "acquired_reason": reason_text,
            "cost_center": params["cost_center"],
            "notes": movement_notes,
        })
        stock_service.record_movement(
            tenant_id=actor.tenant_id, movement_type="OUT", product=new_unit.product,
            unit=new_unit, request_id=req.id, performed_by=actor.id, assigned_to=assigned_to,
            reason=reason_text, cost_center=params["cost_center"], notes=movement_notes,
        )
        stock_service.adjust_quantity(new_unit.product, -1)

        write_audit(
            entity_type="product_unit", entity_id=old_unit.id, action="substitution.completed",
            tenant_id=actor.tenant_id, actor_user_id=actor.id,
            diff={
                "substitution_id": substitution_id,
                "old_code": old_unit.code,
                "new_code": new_unit.code,
                "old_disposition": disposition,
                "return_reason_code": params["reason_code"],
                "linked_request_id": req.id,
                "linked_request_gtmi_number": req.gtmi_number,
                "compatibility_override_reason": params["compatibility_override_reason"],
            },
        )
        db.session.commit()

        return {
            "substitution_id": substitution_id,
            "old_unit": {"id": old_unit.id, "code": old_unit.code, "status_after": old_unit.status},
            "new_unit": {"id": new_unit.id, "code": new_unit.code, "status_after": new_unit.status},
            "meta": {
                "reason": reason_text,
                "reason_code": params["reason_code"],
                "reason_detail": params["reason_detail"],
                "cost_center": params["cost_center"],
                "ticket_number": params["ticket_number"],
                "notes": params["notes"],
                "compatibility_override_reason": (
                    params["compatibility_override_reason"] if products_differ else None
                ),
                "performed_at": performed_at.isoformat(),
            },
            "linked_request": {
                "id": req.id,
                "gtmi_number": req.gtmi_number,
                "owner_user_id": owner.id,
                "owner_name": owner.display_name,
            },
        }

    result = request_workflow.with_number_retry(_substitute)
    logger.info(
        "Unit substitution %s: %s → %s", result["substitution_id"],
        result["old_unit"]["code"], result["new_unit"]["code"],
        extra={"tenant_id": actor.tenant_id, "unit_code": result["old_unit"]["code"],
               "gtmi_number": result["linked_request"]["gtmi_number"]},
    )
    return result
