"""
Tests: warehouse execution (GET/POST /api/v1/requests/<id>/execute).

Covers:
    - in-stock unit options per item
    - oldest-first unit pick, explicit unit codes, bulk lines
    - patrimony asset created on delivery
    - idempotency key replay and the already-fulfilled conflict
    - replay guarded by permission and bound to the original request
    - a key committed concurrently returns the stored execution
    - insufficient stock rolls the whole execution back
"""

from datetime import datetime, timezone

import pytest

from munops.models import db
from munops.models.asset import MunicipalAsset
from munops.models.inventory import Product, ProductUnit, StockMovement
from munops.models.request import Request, RequestExecution
from munops.services import execution_service


@pytest.fixture()
def laptop(make_product):
    return make_product("Portátil HP", quantity=3, patrimonializable=True)


@pytest.fixture()
def laptop_units(laptop, make_unit):
    return [make_unit(laptop, code) for code in ("HP-001", "HP-002", "HP-003")]


@pytest.fixture()
def paper(make_product):
    return make_product("Resma A4", quantity=10, unit_tracked=False)


@pytest.fixture()
def warehouse(make_user, grant_role):
    user = make_user("armazem@camara.test")
    grant_role(user, "ASSET_MANAGER")
    return user


def _execute(client, headers, request_id, key="exec-key-0001", **body):
    payload = {"idempotency_key": key, "document_ref": "GR-2026/118"}
    payload.update(body)
    return client.post(f"/api/v1/requests/{request_id}/execute", json=payload, headers=headers)


def _qty(product_id):
    db.session.expire_all()
    return db.session.get(Product, product_id).quantity


def _approve_all(client, auth_headers, user, admin, request_id):
    for actor, action in ((user, "SUBMIT"), (admin, "APPROVE"), (admin, "APPROVE")):
        res = client.post(f"/api/v1/requests/{request_id}/actions", json={"action": action},
                          headers=auth_headers(actor))
        assert res.status_code == 200, res.get_json()


# ═════════════════════════════════════════════════════════════════════════
# OPTIONS
# ═════════════════════════════════════════════════════════════════════════


class TestExecutionOptions:
    def test_lists_in_stock_units_oldest_first(self, client, auth_headers, warehouse, requester,
                                               laptop, laptop_units, approved_request):
        laptop_units[0].status = "IN_REPAIR"
        db.session.commit()
        req = approved_request(requester, laptop)
        res = client.get(f"/api/v1/requests/{req['id']}/execute", headers=auth_headers(warehouse))
        body = res.get_json()
        assert res.status_code == 200
        assert body["request"]["status"] == "APPROVED"
        item_id = str(req["items"][0]["id"])
        assert [u["code"] for u in body["options"][item_id]] == ["HP-002", "HP-003"]

    def test_bulk_items_have_no_options(self, client, auth_headers, warehouse, requester, paper,
                                        approved_request):
        req = approved_request(requester, paper, quantity=2)
        body = client.get(f"/api/v1/requests/{req['id']}/execute",
                          headers=auth_headers(warehouse)).get_json()
        assert body["options"] == {str(req["items"][0]["id"]): []}

    def test_options_require_execute_permission(self, client, auth_headers, requester, laptop,
                                                approved_request):
        req = approved_request(requester, laptop)
        res = client.get(f"/api/v1/requests/{req['id']}/execute", headers=auth_headers(requester))
        assert res.status_code == 403


# ═════════════════════════════════════════════════════════════════════════
# EXECUTE
# ═════════════════════════════════════════════════════════════════════════


class TestExecute:
    def test_delivers_oldest_unit_and_creates_asset(self, client, auth_headers, warehouse, requester,
                                                    laptop, laptop_units, approved_request):
        req = approved_request(requester, laptop)
        res = _execute(client, auth_headers(warehouse), req["id"], received_by_name="Rui")
        body = res.get_json()
        assert res.status_code == 200
        assert body["idempotent"] is False
        assert body["request"]["status"] == "FULFILLED"
        assert body["request"]["pickup_signature"]["name"] == "Rui"

        year = datetime.now(timezone.utc).year
        line = body["execution"]["lines"][0]
        assert line["unit_code"] == "HP-001"
        assert line["asset_code"] == f"AST-{year}-HP-001"

        unit = ProductUnit.query.filter_by(code="HP-001").one()
        assert unit.status == "ACQUIRED"
        assert unit.assigned_to_user_id == requester.id
        assert _qty(laptop.id) == 2

        asset = MunicipalAsset.query.filter_by(unit_id=unit.id).one()
        assert asset.status == "IN_SERVICE"
        assert asset.custodian_user_id == requester.id

    def test_replayed_key_is_idempotent(self, client, auth_headers, warehouse, requester, laptop,
                                        laptop_units, approved_request):
        req = approved_request(requester, laptop)
        first = _execute(client, auth_headers(warehouse), req["id"]).get_json()
        res = _execute(client, auth_headers(warehouse), req["id"])
        body = res.get_json()
        assert res.status_code == 200
        assert body["idempotent"] is True
        assert body["execution"]["id"] == first["execution"]["id"]
        assert body["request"]["status"] == "FULFILLED"
        assert _qty(laptop.id) == 2
        assert RequestExecution.query.count() == 1
        assert StockMovement.query.filter_by(request_id=req["id"]).count() == 1

    def test_new_key_on_fulfilled_request_is_409(self, client, auth_headers, warehouse, requester,
                                                 laptop, laptop_units, approved_request):
        req = approved_request(requester, laptop)
        _execute(client, auth_headers(warehouse), req["id"])
        res = _execute(client, auth_headers(warehouse), req["id"], key="exec-key-0002")
        assert res.status_code == 409

    @pytest.mark.parametrize("body", [
        {"idempotency_key": "short"},
        {"document_ref": "x"},
        {"lines": "HP-001"},
    ])
    def test_input_shape_is_checked(self, client, auth_headers, warehouse, requester, laptop,
                                    laptop_units, approved_request, body):
        req = approved_request(requester, laptop)
        res = _execute(client, auth_headers(warehouse), req["id"], **body)
        assert res.status_code == 400

    def test_request_must_be_approved(self, client, auth_headers, warehouse, requester, laptop,
                                      laptop_units, create_request):
        req = create_request(requester, laptop)
        res = _execute(client, auth_headers(warehouse), req["id"])
        assert res.status_code == 400
        assert "APPROVED" in res.get_json()["error"]

    def test_explicit_unit_code(self, client, auth_headers, warehouse, requester, laptop,
                                laptop_units, approved_request):
        req = approved_request(requester, laptop)
        item_id = req["items"][0]["id"]
        body = _execute(client, auth_headers(warehouse), req["id"],
                        lines=[{"request_item_id": item_id, "unit_code": "HP-003"}]).get_json()
        assert body["execution"]["lines"][0]["unit_code"] == "HP-003"
        assert ProductUnit.query.filter_by(code="HP-001").one().status == "IN_STOCK"

    def test_item_destination_is_honoured(self, client, auth_headers, warehouse, requester, laptop,
                                          laptop_units, approved_request):
        req = approved_request(requester, laptop, destination="HP-002")
        body = _execute(client, auth_headers(warehouse), req["id"]).get_json()
        assert body["execution"]["lines"][0]["unit_code"] == "HP-002"

    def test_unknown_unit_code_is_400(self, client, auth_headers, warehouse, requester, laptop,
                                      laptop_units, approved_request):
        req = approved_request(requester, laptop)
        item_id = req["items"][0]["id"]
        res = _execute(client, auth_headers(warehouse), req["id"],
                       lines=[{"request_item_id": item_id, "unit_code": "HP-999"}])
        assert res.status_code == 400
        assert res.get_json()["details"]["unit_code"] == "HP-999"

    def test_bulk_and_tracked_lines(self, client, auth_headers, warehouse, requester, admin_user,
                                    laptop, laptop_units, paper):
        res = client.post("/api/v1/requests", json={"items": [
            {"product_id": laptop.id, "quantity": 1},
            {"product_id": paper.id, "quantity": 4},
        ]}, headers=auth_headers(requester))
        req_id = res.get_json()["id"]
        _approve_all(client, auth_headers, requester, admin_user, req_id)

        body = _execute(client, auth_headers(warehouse), req_id).get_json()
        lines = body["execution"]["lines"]
        assert [(ln["quantity"], ln["unit_code"]) for ln in lines] == [(1, "HP-001"), (4, None)]
        assert _qty(paper.id) == 6
        assert _qty(laptop.id) == 2

    def test_insufficient_stock_rolls_back(self, client, auth_headers, warehouse, requester,
                                           admin_user, laptop, laptop_units, paper):
        res = client.post("/api/v1/requests", json={"items": [
            {"product_id": laptop.id, "quantity": 1},
            {"product_id": paper.id, "quantity": 25},
        ]}, headers=auth_headers(requester))
        req_id = res.get_json()["id"]
        _approve_all(client, auth_headers, requester, admin_user, req_id)

        res = _execute(client, auth_headers(warehouse), req_id)
        assert res.status_code == 400
        assert "Insufficient stock" in res.get_json()["error"]

        db.session.expire_all()
        assert db.session.get(Request, req_id).status == "APPROVED"
        assert ProductUnit.query.filter_by(code="HP-001").one().status == "IN_STOCK"
        assert _qty(laptop.id) == 3
        assert _qty(paper.id) == 10
        assert RequestExecution.query.count() == 0

    def test_tracked_line_needs_quantity_one(self, client, auth_headers, warehouse, requester,
                                             laptop, laptop_units, approved_request):
        req = approved_request(requester, laptop, quantity=2)
        assert _execute(client, auth_headers(warehouse), req["id"]).status_code == 400

    def test_requires_execute_permission(self, client, auth_headers, make_user, requester, laptop,
                                         laptop_units, approved_request):
        clerk = make_user("balcao@camara.test")
        req = approved_request(requester, laptop)
        assert _execute(client, auth_headers(clerk), req["id"]).status_code == 403


# ═════════════════════════════════════════════════════════════════════════
# IDEMPOTENCY KEY
# ═════════════════════════════════════════════════════════════════════════


class TestIdempotencyKey:
    def test_replay_requires_execute_permission(self, client, auth_headers, make_user, warehouse,
                                                requester, laptop, laptop_units, approved_request):
        req = approved_request(requester, laptop)
        assert _execute(client, auth_headers(warehouse), req["id"]).status_code == 200

        clerk = make_user("balcao@camara.test")
        res = _execute(client, auth_headers(clerk), req["id"])
        assert res.status_code == 403
        assert "execution" not in res.get_json()

    def test_key_reused_on_another_request_is_409(self, client, auth_headers, warehouse, requester,
                                                  laptop, laptop_units, approved_request):
        first = approved_request(requester, laptop)
        second = approved_request(requester, laptop)
        assert _execute(client, auth_headers(warehouse), first["id"]).status_code == 200

        res = _execute(client, auth_headers(warehouse), second["id"])
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_STATE"
        db.session.expire_all()
        assert db.session.get(Request, second["id"]).status == "APPROVED"
        assert _qty(laptop.id) == 2

    def test_key_committed_concurrently_returns_stored_execution(
        self, client, auth_headers, warehouse, requester, laptop, laptop_units, approved_request,
        monkeypatch,
    ):
        req = approved_request(requester, laptop)
        # Another worker commits the same key after our lookup missed it
        rival = RequestExecution(
            tenant_id=requester.tenant_id, request_id=req["id"], idempotency_key="exec-key-0001",
            document_ref="GR-2026/118", executed_by_user_id=warehouse.id, lines_json=[],
        )
        db.session.add(rival)
        db.session.commit()
        rival_id = rival.id

        real_find = execution_service.find_execution
        lookups = []

        def _miss_first(tenant_id, key):
            lookups.append(key)
            return None if len(lookups) == 1 else real_find(tenant_id, key)

        monkeypatch.setattr(execution_service, "find_execution", _miss_first)

        res = _execute(client, auth_headers(warehouse), req["id"])
        body = res.get_json()
        assert res.status_code == 200, body
        assert body["idempotent"] is True
        assert body["execution"]["id"] == rival_id
        assert len(lookups) == 2

        db.session.expire_all()
        assert RequestExecution.query.count() == 1
        assert ProductUnit.query.filter_by(code="HP-001").one().status == "IN_STOCK"
        assert _qty(laptop.id) == 3
        assert StockMovement.query.filter_by(request_id=req["id"]).count() == 0
