"""
Tests: unit substitution (POST /api/v1/units/substitute).

Covers:
    - RETURN / REPAIR / LOST dispositions and their stock effects
    - reason code ↔ disposition rules
    - admin-only dispositions with the denial audit row
    - product mismatch override
    - linked RETURN request (owner, items, status)
    - note composition on both movements
"""

import pytest

from munops.models import db
from munops.models.audit import AuditLog
from munops.models.inventory import Product, ProductUnit, StockMovement
from munops.models.request import Request
from munops.services.substitution_service import build_reason_text, compose_notes


@pytest.fixture()
def monitor(make_product):
    return make_product("Monitor 24\"", quantity=1)


@pytest.fixture()
def old_unit(monitor, make_unit, requester):
    return make_unit(monitor, "MON-OLD", status="ACQUIRED", assigned_to_user_id=requester.id)


@pytest.fixture()
def new_unit(monitor, make_unit):
    return make_unit(monitor, "MON-NEW")


@pytest.fixture()
def operator(make_user, grant_role):
    user = make_user("tecnico@camara.test")
    grant_role(user, "ASSET_MANAGER")
    return user


def _substitute(client, headers, **body):
    payload = {"old_code": "MON-OLD", "new_code": "MON-NEW"}
    payload.update(body)
    return client.post("/api/v1/units/substitute", json=payload, headers=headers)


def _unit(code):
    db.session.expire_all()
    return ProductUnit.query.filter_by(code=code).one()


# ═════════════════════════════════════════════════════════════════════════
# HELPERS
# ═════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
class TestHelpers:
    def test_reason_text_prefers_detail(self):
        assert build_reason_text("AVARIA", " ecrã partido ", "ignored") == "Avaria: ecrã partido"

    def test_reason_text_falls_back(self):
        assert build_reason_text("TROCA", None, "upgrade") == "Troca: upgrade"
        assert build_reason_text("FIM_USO", "", None) == "Fim de uso"

    def test_compose_notes(self):
        notes = compose_notes("  urgente ", "abc", "A-1", "B-2", "TCK-1")
        assert notes == "urgente | SUB:abc | OLD:A-1 | NEW:B-2 | TICKET:TCK-1"
        assert compose_notes(None, "abc", "A-1", "B-2") == "SUB:abc | OLD:A-1 | NEW:B-2"


# ═════════════════════════════════════════════════════════════════════════
# HAPPY PATHS
# ═════════════════════════════════════════════════════════════════════════


class TestSubstitution:
    def test_return_disposition(self, client, auth_headers, operator, requester, monitor,
                                old_unit, new_unit):
        res = _substitute(client, auth_headers(operator), old_disposition="RETURN",
                          return_reason_code="TROCA", return_reason_detail="upgrade",
                          ticket_number="TCK-2026-ABC123", cost_center="CC-7")
        body = res.get_json()
        assert res.status_code == 201
        assert body["old_unit"] == {"id": old_unit.id, "code": "MON-OLD", "status_after": "IN_STOCK"}
        assert body["new_unit"]["status_after"] == "ACQUIRED"
        assert body["meta"]["reason"] == "Troca: upgrade"
        assert body["meta"]["compatibility_override_reason"] is None
        assert body["linked_request"]["owner_user_id"] == requester.id
        assert body["linked_request"]["owner_name"] == "Rui Requester"

        old, new = _unit("MON-OLD"), _unit("MON-NEW")
        assert old.assigned_to_user_id is None
        assert new.assigned_to_user_id == requester.id
        assert new.acquired_by_user_id == operator.id
        assert new.cost_center == "CC-7"
        # +1 for the returned unit, -1 for the issued one
        assert db.session.get(Product, monitor.id).quantity == 1

        sub_id = body["substitution_id"]
        movements = StockMovement.query.filter_by(request_id=body["linked_request"]["id"]).all()
        assert sorted(m.type for m in movements) == ["OUT", "RETURN"]
        for m in movements:
            assert f"SUB:{sub_id}" in m.notes
            assert "TICKET:TCK-2026-ABC123" in m.notes

    def test_linked_request_shape(self, client, auth_headers, operator, requester, old_unit, new_unit):
        body = _substitute(client, auth_headers(operator), return_reason_code="FIM_USO").get_json()
        req = db.session.get(Request, body["linked_request"]["id"])
        assert req.type == "RETURN"
        assert req.status == "SUBMITTED"
        assert req.requested_by_user_id == requester.id
        roles = {(i.role, i.destination) for i in req.items}
        assert roles == {("OLD", "MON-OLD"), ("NEW", "MON-NEW")}

    def test_repair_disposition(self, client, auth_headers, operator, monitor, old_unit, new_unit):
        res = _substitute(client, auth_headers(operator), old_disposition="REPAIR",
                          return_reason_code="AVARIA", return_reason_detail="não liga")
        assert res.status_code == 201
        assert _unit("MON-OLD").status == "IN_REPAIR"
        assert db.session.get(Product, monitor.id).quantity == 0

    def test_admin_lost_disposition(self, client, auth_headers, admin_user, old_unit, new_unit):
        res = _substitute(client, auth_headers(admin_user), old_disposition="LOST",
                          return_reason_code="EXTRAVIO", return_reason_detail="deixado no comboio")
        assert res.status_code == 201
        assert _unit("MON-OLD").status == "LOST"
        assert AuditLog.query.filter_by(action="substitution.completed").count() == 1

    def test_explicit_assignee_wins(self, client, auth_headers, operator, make_user, old_unit, new_unit):
        colleague = make_user("colega@camara.test")
        body = _substitute(client, auth_headers(operator), return_reason_code="TROCA",
                           assigned_to_user_id=colleague.id).get_json()
        assert body["linked_request"]["owner_user_id"] == colleague.id
        assert _unit("MON-NEW").assigned_to_user_id == colleague.id

    def test_product_mismatch_with_override(self, client, auth_headers, operator, make_product,
                                            make_unit, old_unit):
        other = make_product("Monitor 27\"", quantity=1)
        make_unit(other, "MON27-1")
        res = _substitute(client, auth_headers(operator), new_code="MON27-1",
                          return_reason_code="TROCA", compatibility_override_reason="sem stock 24")
        body = res.get_json()
        assert res.status_code == 201
        assert body["meta"]["compatibility_override_reason"] == "sem stock 24"
        out = StockMovement.query.filter_by(type="OUT").one()
        assert "SKU_OVERRIDE:sem stock 24" in out.notes


# ═════════════════════════════════════════════════════════════════════════
# REFUSALS
# ═════════════════════════════════════════════════════════════════════════


class TestSubstitutionRefusals:
    @pytest.mark.parametrize("code,disposition", [
        ("AVARIA", "RETURN"),
        ("EXTRAVIO", "RETURN"),
        ("FIM_USO", "REPAIR"),
        ("TROCA", "LOST"),
    ])
    def test_reason_must_fit_disposition(self, client, auth_headers, admin_user, old_unit, new_unit,
                                         code, disposition):
        res = _substitute(client, auth_headers(admin_user), old_disposition=disposition,
                          return_reason_code=code, return_reason_detail="x")
        assert res.status_code == 400

    def test_outro_requires_detail(self, client, auth_headers, operator, old_unit, new_unit):
        res = _substitute(client, auth_headers(operator), return_reason_code="OUTRO")
        assert res.status_code == 400
        assert res.get_json()["details"] == {"return_reason_detail": "required"}

    def test_same_codes(self, client, auth_headers, operator, old_unit):
        res = _substitute(client, auth_headers(operator), new_code="MON-OLD", return_reason_code="TROCA")
        assert res.status_code == 400

    def test_missing_codes(self, client, auth_headers, operator):
        res = client.post("/api/v1/units/substitute", json={"old_code": "MON-OLD"},
                          headers=auth_headers(operator))
        assert res.status_code == 400

    def test_non_admin_scrap_is_denied_and_audited(self, client, auth_headers, operator, old_unit, new_unit):
        res = _substitute(client, auth_headers(operator), old_disposition="SCRAP",
                          return_reason_code="AVARIA", return_reason_detail="queimado")
        assert res.status_code == 403
        denied = AuditLog.query.filter_by(action="substitution.denied").one()
        assert denied.diff["old_disposition"] == "SCRAP"
        assert _unit("MON-OLD").status == "ACQUIRED"
        assert Request.query.count() == 0

    def test_old_unit_in_stock_is_refused(self, client, auth_headers, operator, monitor, make_unit, new_unit):
        make_unit(monitor, "MON-SHELF")
        res = _substitute(client, auth_headers(operator), old_code="MON-SHELF", return_reason_code="TROCA")
        assert res.status_code == 400
        assert "does not allow substitution" in res.get_json()["error"]

    def test_repair_of_unit_already_in_repair(self, client, auth_headers, operator, monitor, make_unit,
                                              new_unit):
        make_unit(monitor, "MON-REP", status="IN_REPAIR")
        res = _substitute(client, auth_headers(operator), old_code="MON-REP", old_disposition="REPAIR",
                          return_reason_code="AVARIA", return_reason_detail="x")
        assert res.status_code == 400

    def test_new_unit_must_be_in_stock(self, client, auth_headers, operator, monitor, make_unit,
                                       requester, old_unit):
        make_unit(monitor, "MON-BUSY", status="ACQUIRED", assigned_to_user_id=requester.id)
        res = _substitute(client, auth_headers(operator), new_code="MON-BUSY", return_reason_code="TROCA")
        assert res.status_code == 400
        assert "must be IN_STOCK" in res.get_json()["error"]

    def test_product_mismatch_without_override(self, client, auth_headers, operator, make_product,
                                               make_unit, old_unit):
        other = make_product("Teclado", quantity=1)
        make_unit(other, "KB-1")
        res = _substitute(client, auth_headers(operator), new_code="KB-1", return_reason_code="TROCA")
        assert res.status_code == 400

    def test_requires_units_manage(self, client, auth_headers, requester, old_unit, new_unit):
        res = _substitute(client, auth_headers(requester), return_reason_code="TROCA")
        assert res.status_code == 403

    def test_failed_substitution_leaves_nothing_behind(self, client, auth_headers, operator, old_unit):
        res = _substitute(client, auth_headers(operator), new_code="DOES-NOT-EXIST",
                          return_reason_code="TROCA")
        assert res.status_code == 404
        assert Request.query.count() == 0
        assert StockMovement.query.count() == 0
