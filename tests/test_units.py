"""
Tests: product unit transitions and the stock movement ledger.

Covers:
    - acquire / repair-out / repair-in quantity bookkeeping
    - admin-only lost / scrap with audit rows
    - asset mirroring for patrimony units
    - tenant isolation of unit codes
    - claims on a unit moved by another transaction
    - cursor pagination and filters of GET /stock-movements
"""

import pytest
from sqlalchemy import update

from munops.core.exceptions import StateConflictError
from munops.models import db
from munops.models.asset import MunicipalAsset
from munops.models.audit import AuditLog
from munops.models.auth import Tenant
from munops.models.inventory import (
    CLEARED_ASSIGNMENT,
    Product,
    ProductUnit,
    StockMovement,
    product_status_for,
)
from munops.services import stock_service


@pytest.fixture()
def laptop(make_product):
    return make_product("Portátil Lenovo", quantity=2)


@pytest.fixture()
def units(laptop, make_unit):
    return make_unit(laptop, "LAP-001"), make_unit(laptop, "LAP-002")


@pytest.fixture()
def operator(make_user, grant_role):
    user = make_user("operador@camara.test")
    grant_role(user, "ASSET_MANAGER")
    return user


def _qty(product_id):
    db.session.expire_all()
    return db.session.get(Product, product_id).quantity


def _post(client, headers, path, body=None):
    return client.post(f"/api/v1{path}", json=body or {}, headers=headers)


# ═════════════════════════════════════════════════════════════════════════
# PRODUCT STATUS LABEL
# ═════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
@pytest.mark.parametrize("quantity,label", [
    (0, "Stock Out"), (-1, "Stock Out"), (1, "Stock Low"), (20, "Stock Low"), (21, "Available"),
])
def test_product_status_for(quantity, label):
    assert product_status_for(quantity) == label


# ═════════════════════════════════════════════════════════════════════════
# ACQUIRE
# ═════════════════════════════════════════════════════════════════════════


class TestAcquire:
    def test_acquire_decrements_stock(self, client, auth_headers, operator, requester, laptop, units):
        res = _post(client, auth_headers(operator), "/units/LAP-001/acquire", {
            "assigned_to_user_id": requester.id, "reason": "Novo colaborador", "cost_center": "CC-10",
        })
        body = res.get_json()
        assert res.status_code == 200
        assert body["status"] == "ACQUIRED"
        assert body["assigned_to_user_id"] == requester.id
        assert body["acquired_by_user_id"] == operator.id
        assert _qty(laptop.id) == 1

        movement = StockMovement.query.filter_by(unit_id=units[0].id).one()
        assert movement.type == "OUT"
        assert movement.cost_center == "CC-10"
        assert movement.assigned_to_user_id == requester.id

    def test_acquire_twice_is_400(self, client, auth_headers, operator, units):
        _post(client, auth_headers(operator), "/units/LAP-001/acquire")
        res = _post(client, auth_headers(operator), "/units/LAP-001/acquire")
        assert res.status_code == 400
        assert "already acquired" in res.get_json()["error"]

    def test_acquire_needs_units_manage(self, client, auth_headers, requester, units):
        res = _post(client, auth_headers(requester), "/units/LAP-001/acquire")
        assert res.status_code == 403

    def test_unknown_assignee_is_404(self, client, auth_headers, operator, units):
        res = _post(client, auth_headers(operator), "/units/LAP-001/acquire", {"assigned_to_user_id": 4242})
        assert res.status_code == 404
        assert db.session.get(ProductUnit, units[0].id).status == "IN_STOCK"

    def test_unknown_unit_is_404(self, client, auth_headers, operator):
        res = client.get("/api/v1/units/NOPE-1", headers=auth_headers(operator))
        assert res.status_code == 404
        assert res.get_json()["error"] == "ProductUnit not found"

    def test_other_tenant_unit_is_invisible(self, client, auth_headers, make_user, units):
        other = Tenant(name="Outra", slug="outra")
        db.session.add(other)
        db.session.commit()
        stranger = make_user("admin@outra.test", role="ADMIN", tenant_id=other.id)
        res = client.get("/api/v1/units/LAP-001", headers=auth_headers(stranger))
        assert res.status_code == 404


# ═════════════════════════════════════════════════════════════════════════
# REPAIR
# ═════════════════════════════════════════════════════════════════════════


class TestRepair:
    def test_repair_round_trip_from_stock(self, client, auth_headers, operator, laptop, units):
        res = _post(client, auth_headers(operator), "/units/LAP-002/repair-out", {"reason": "ecrã partido"})
        assert res.get_json()["status"] == "IN_REPAIR"
        assert _qty(laptop.id) == 1

        res = _post(client, auth_headers(operator), "/units/LAP-002/repair-in", {"notes": "reparado"})
        assert res.get_json()["status"] == "IN_STOCK"
        assert _qty(laptop.id) == 2

        types = [m.type for m in StockMovement.query.filter_by(unit_id=units[1].id)
                 .order_by(StockMovement.id).all()]
        assert types == ["REPAIR_OUT", "REPAIR_IN"]

    def test_repair_out_of_acquired_keeps_quantity(self, client, auth_headers, operator, requester,
                                                   laptop, units):
        _post(client, auth_headers(operator), "/units/LAP-001/acquire", {"assigned_to_user_id": requester.id})
        res = _post(client, auth_headers(operator), "/units/LAP-001/repair-out")
        assert res.get_json()["assigned_to_user_id"] is None
        assert _qty(laptop.id) == 1

    def test_repair_out_twice_is_400(self, client, auth_headers, operator, units):
        _post(client, auth_headers(operator), "/units/LAP-001/repair-out")
        assert _post(client, auth_headers(operator), "/units/LAP-001/repair-out").status_code == 400

    def test_repair_in_requires_in_repair(self, client, auth_headers, operator, units):
        assert _post(client, auth_headers(operator), "/units/LAP-001/repair-in").status_code == 400

    def test_repair_is_mirrored_on_asset(self, client, auth_headers, operator, default_tenant, laptop, units):
        asset = MunicipalAsset(tenant_id=default_tenant.id, code="AST-LAP-001", name="Portátil",
                               status="IN_SERVICE", unit_id=units[0].id, product_id=laptop.id)
        db.session.add(asset)
        db.session.commit()

        _post(client, auth_headers(operator), "/units/LAP-001/repair-out", {"reason": "teclado"})
        assert db.session.get(MunicipalAsset, asset.id).status == "IN_REPAIR"
        _post(client, auth_headers(operator), "/units/LAP-001/repair-in")
        assert db.session.get(MunicipalAsset, asset.id).status == "IN_SERVICE"


# ═════════════════════════════════════════════════════════════════════════
# LOST / SCRAP
# ═════════════════════════════════════════════════════════════════════════


class TestRetire:
    def test_lost_requires_admin(self, client, auth_headers, operator, units):
        res = _post(client, auth_headers(operator), "/units/LAP-001/lost", {"reason": "furto"})
        assert res.status_code == 403

    def test_lost_requires_reason(self, client, auth_headers, admin_user, units):
        assert _post(client, auth_headers(admin_user), "/units/LAP-001/lost").status_code == 400

    def test_mark_lost_from_stock(self, client, auth_headers, admin_user, laptop, units):
        res = _post(client, auth_headers(admin_user), "/units/LAP-001/lost", {"reason": "furto"})
        assert res.get_json()["status"] == "LOST"
        assert _qty(laptop.id) == 1
        audit = AuditLog.query.filter_by(action="unit.lost").one()
        assert audit.diff["status"] == {"old": "IN_STOCK", "new": "LOST"}

        again = _post(client, auth_headers(admin_user), "/units/LAP-001/lost", {"reason": "furto"})
        assert again.status_code == 400

    def test_scrap_acquired_keeps_quantity(self, client, auth_headers, admin_user, requester, laptop, units):
        _post(client, auth_headers(admin_user), "/units/LAP-002/acquire", {"assigned_to_user_id": requester.id})
        res = _post(client, auth_headers(admin_user), "/units/LAP-002/scrap", {"reason": "obsoleto"})
        body = res.get_json()
        assert body["status"] == "SCRAPPED"
        assert body["assigned_to_user_id"] is None
        assert body["acquired_at"] is None
        assert body["acquired_reason"] is None
        assert _qty(laptop.id) == 1
        assert AuditLog.query.filter_by(action="unit.scrapped").count() == 1

    def test_scrapped_unit_cannot_go_to_repair(self, client, auth_headers, admin_user, units):
        _post(client, auth_headers(admin_user), "/units/LAP-001/scrap", {"reason": "obsoleto"})
        assert _post(client, auth_headers(admin_user), "/units/LAP-001/repair-out").status_code == 400


# ═════════════════════════════════════════════════════════════════════════
# STALE CLAIMS
# ═════════════════════════════════════════════════════════════════════════


def _take_behind_session(unit_id, status="ACQUIRED"):
    """Change a unit row without refreshing the loaded object, as another worker would."""
    db.session.execute(
        update(ProductUnit).where(ProductUnit.id == unit_id).values(status=status)
        .execution_options(synchronize_session=False)
    )


class TestStaleClaims:
    def test_claim_on_moved_unit_raises(self, units):
        unit = units[0]
        assert unit.status == "IN_STOCK"
        _take_behind_session(unit.id)
        assert unit.status == "IN_STOCK"

        with pytest.raises(StateConflictError):
            stock_service.claim_unit(unit, ["IN_STOCK"], {"status": "IN_REPAIR", **CLEARED_ASSIGNMENT})
        db.session.rollback()

    def test_claim_matches_current_status(self, units):
        unit = units[0]
        stock_service.claim_unit(unit, ["IN_STOCK", "ACQUIRED"], {"status": "IN_REPAIR", **CLEARED_ASSIGNMENT})
        assert unit.status == "IN_REPAIR"
        db.session.rollback()

    def test_acquire_racing_another_claim_is_409(self, client, auth_headers, operator, laptop, units,
                                                 monkeypatch):
        real_get = stock_service.get_unit_by_code

        def _get_then_taken(tenant_id, code):
            unit = real_get(tenant_id, code)
            _take_behind_session(unit.id)
            return unit

        monkeypatch.setattr(stock_service, "get_unit_by_code", _get_then_taken)
        res = _post(client, auth_headers(operator), "/units/LAP-001/acquire")
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_STATE"
        assert _qty(laptop.id) == 2
        assert StockMovement.query.count() == 0


# ═════════════════════════════════════════════════════════════════════════
# RETURN
# ═════════════════════════════════════════════════════════════════════════


class TestReturn:
    def test_return_requires_acquired(self, client, auth_headers, operator, units):
        assert _post(client, auth_headers(operator), "/units/LAP-001/return").status_code == 400

    def test_return_does_not_touch_stock(self, client, auth_headers, operator, requester, laptop, units):
        _post(client, auth_headers(operator), "/units/LAP-001/acquire", {"assigned_to_user_id": requester.id})
        res = _post(client, auth_headers(operator), "/units/LAP-001/return", {"reason": "saída"})
        assert res.status_code == 201
        assert res.get_json()["unit"]["status"] == "ACQUIRED"
        assert res.get_json()["request"]["items"][0]["role"] == "OLD"
        assert _qty(laptop.id) == 1


# ═════════════════════════════════════════════════════════════════════════
# STOCK LEDGER
# ═════════════════════════════════════════════════════════════════════════


class TestStockMovements:
    def _three_movements(self, client, headers):
        _post(client, headers, "/units/LAP-001/acquire")
        _post(client, headers, "/units/LAP-002/repair-out")
        _post(client, headers, "/units/LAP-002/repair-in")

    def test_cursor_pagination_newest_first(self, client, auth_headers, operator, units):
        headers = auth_headers(operator)
        self._three_movements(client, headers)

        page1 = client.get("/api/v1/stock-movements?limit=2", headers=headers).get_json()
        assert [m["type"] for m in page1["items"]] == ["REPAIR_IN", "REPAIR_OUT"]
        assert page1["next_cursor"] == page1["items"][-1]["id"]

        page2 = client.get(f"/api/v1/stock-movements?limit=2&cursor={page1['next_cursor']}",
                           headers=headers).get_json()
        assert [m["type"] for m in page2["items"]] == ["OUT"]
        assert page2["next_cursor"] is None

    def test_filter_by_type_and_unit(self, client, auth_headers, operator, units):
        headers = auth_headers(operator)
        self._three_movements(client, headers)
        res = client.get("/api/v1/stock-movements?type=OUT", headers=headers).get_json()
        assert len(res["items"]) == 1
        res = client.get(f"/api/v1/stock-movements?unit_id={units[1].id}", headers=headers).get_json()
        assert len(res["items"]) == 2

    def test_since_filter(self, client, auth_headers, operator, units):
        headers = auth_headers(operator)
        self._three_movements(client, headers)
        res = client.get("/api/v1/stock-movements?since=2000-01-01", headers=headers).get_json()
        assert len(res["items"]) == 3
        res = client.get("/api/v1/stock-movements?since=2999-01-01T00:00:00Z", headers=headers).get_json()
        assert res["items"] == []

    def test_invalid_since_is_400(self, client, auth_headers, operator):
        res = client.get("/api/v1/stock-movements?since=yesterday", headers=auth_headers(operator))
        assert res.status_code == 400
