"""
Tests: approval and pickup signatures.

Covers:
    - PNG data-URL validation
    - Approval signature capture, duplicate guard and voiding
    - Pickup signature fulfilling a STANDARD request
    - RETURN request restocking its OLD unit on pickup signature
"""

import base64

import pytest

from munops.core.exceptions import ValidationError
from munops.models import db
from munops.models.audit import AuditLog
from munops.models.inventory import Product, ProductUnit, StockMovement
from munops.services.request_workflow import validate_signature_data_url

PNG_DATA_URL = "data:image/png;base64," + base64.b64encode(b"\x89PNG\r\n\x1a\n" + b"\x00" * 32).decode()


@pytest.fixture()
def product(make_product):
    return make_product("Cadeira ergonómica", quantity=10, unit_tracked=False)


def _sign(client, headers, request_id, kind="signature", **overrides):
    body = {"name": "Maria Silva", "title": "Diretora", "data_url": PNG_DATA_URL}
    body.update(overrides)
    return client.post(f"/api/v1/requests/{request_id}/{kind}", json=body, headers=headers)


# ═════════════════════════════════════════════════════════════════════════
# DATA URL VALIDATION
# ═════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
class TestDataUrlValidation:
    def test_accepts_png(self):
        assert validate_signature_data_url(PNG_DATA_URL) == PNG_DATA_URL

    def test_rejects_other_mime(self):
        with pytest.raises(ValidationError):
            validate_signature_data_url("data:image/jpeg;base64,AAAA")

    def test_rejects_bad_base64(self):
        with pytest.raises(ValidationError):
            validate_signature_data_url("data:image/png;base64,@@@not-base64@@@")

    def test_rejects_non_png_payload(self):
        payload = base64.b64encode(b"GIF89a" + b"\x00" * 10).decode()
        with pytest.raises(ValidationError):
            validate_signature_data_url(f"data:image/png;base64,{payload}")

    def test_rejects_oversized_image(self):
        raw = b"\x89PNG\r\n\x1a\n" + b"\x00" * (512 * 1024)
        payload = base64.b64encode(raw).decode()
        with pytest.raises(ValidationError):
            validate_signature_data_url(f"data:image/png;base64,{payload}")


# ═════════════════════════════════════════════════════════════════════════
# APPROVAL SIGNATURE
# ═════════════════════════════════════════════════════════════════════════


class TestApprovalSignature:
    def test_sign_approved_request(self, client, auth_headers, requester, admin_user, product,
                                   approved_request):
        req = approved_request(requester, product)
        res = _sign(client, auth_headers(admin_user), req["id"])
        assert res.status_code == 200
        sig = res.get_json()["approval_signature"]
        assert sig["name"] == "Maria Silva"
        assert sig["signed_by_user_id"] == admin_user.id
        assert sig["voided_at"] is None

    def test_second_signature_is_409(self, client, auth_headers, requester, admin_user, product,
                                     approved_request):
        req = approved_request(requester, product)
        _sign(client, auth_headers(admin_user), req["id"])
        assert _sign(client, auth_headers(admin_user), req["id"]).status_code == 409

    def test_sign_draft_is_400(self, client, auth_headers, requester, admin_user, product, create_request):
        req = create_request(requester, product)
        assert _sign(client, auth_headers(admin_user), req["id"]).status_code == 400

    def test_sign_requires_name(self, client, auth_headers, requester, admin_user, product,
                                approved_request):
        req = approved_request(requester, product)
        res = _sign(client, auth_headers(admin_user), req["id"], name="  ")
        assert res.status_code == 400

    def test_requester_cannot_sign(self, client, auth_headers, requester, product, approved_request):
        req = approved_request(requester, product)
        assert _sign(client, auth_headers(requester), req["id"]).status_code == 403

    def test_void_then_sign_again(self, client, auth_headers, requester, admin_user, product,
                                  approved_request):
        req = approved_request(requester, product)
        _sign(client, auth_headers(admin_user), req["id"])
        res = client.post(f"/api/v1/requests/{req['id']}/signature/void",
                          json={"reason": "assinatura ilegível"}, headers=auth_headers(admin_user))
        assert res.status_code == 200
        assert res.get_json()["approval_signature"]["void_reason"] == "assinatura ilegível"
        assert AuditLog.query.filter_by(action="request.approval_signature_voided").count() == 1
        history = client.get(f"/api/v1/requests/{req['id']}/history",
                             headers=auth_headers(admin_user)).get_json()
        assert [a["action"] for a in history["audit_log"]] == ["request.approval_signature_voided"]

        assert _sign(client, auth_headers(admin_user), req["id"]).status_code == 200

    def test_void_requires_reason(self, client, auth_headers, requester, admin_user, product,
                                  approved_request):
        req = approved_request(requester, product)
        _sign(client, auth_headers(admin_user), req["id"])
        res = client.post(f"/api/v1/requests/{req['id']}/signature/void", json={},
                          headers=auth_headers(admin_user))
        assert res.status_code == 400

    def test_void_without_signature_is_400(self, client, auth_headers, requester, admin_user, product,
                                           approved_request):
        req = approved_request(requester, product)
        res = client.post(f"/api/v1/requests/{req['id']}/signature/void", json={"reason": "x"},
                          headers=auth_headers(admin_user))
        assert res.status_code == 400


# ═════════════════════════════════════════════════════════════════════════
# PICKUP SIGNATURE
# ═════════════════════════════════════════════════════════════════════════


class TestPickupSignature:
    def test_pickup_fulfils_standard_request(self, client, auth_headers, requester, make_user,
                                             grant_role, product, approved_request):
        office = make_user("armazem@camara.test")
        grant_role(office, "ASSET_MANAGER")
        req = approved_request(requester, product)

        res = _sign(client, auth_headers(office), req["id"], kind="pickup-signature")
        body = res.get_json()
        assert res.status_code == 200
        assert body["request"]["status"] == "FULFILLED"
        assert body["restocked_units"] == []

    def test_pickup_on_submitted_is_400(self, client, auth_headers, requester, admin_user, product,
                                        create_request):
        req = create_request(requester, product)
        client.post(f"/api/v1/requests/{req['id']}/actions", json={"action": "SUBMIT"},
                    headers=auth_headers(requester))
        res = _sign(client, auth_headers(admin_user), req["id"], kind="pickup-signature")
        assert res.status_code == 400

    def test_return_request_restocks_on_pickup(self, client, auth_headers, requester, admin_user,
                                               make_product, make_unit):
        laptop = make_product("Portátil Dell", quantity=0)
        make_unit(laptop, "UN-0001", status="ACQUIRED", assigned_to_user_id=requester.id)

        res = client.post("/api/v1/units/UN-0001/return", json={"reason": "fim de contrato"},
                          headers=auth_headers(admin_user))
        assert res.status_code == 201
        ret = res.get_json()["request"]
        assert ret["type"] == "RETURN"
        assert ret["status"] == "SUBMITTED"
        assert ret["requested_by_user_id"] == requester.id

        # FULFILL without a pickup signature is refused for RETURN requests
        for _ in range(2):
            client.post(f"/api/v1/requests/{ret['id']}/actions", json={"action": "APPROVE"},
                        headers=auth_headers(admin_user))
        res = client.post(f"/api/v1/requests/{ret['id']}/actions", json={"action": "FULFILL"},
                          headers=auth_headers(admin_user))
        assert res.status_code == 400

        res = _sign(client, auth_headers(admin_user), ret["id"], kind="pickup-signature")
        body = res.get_json()
        assert res.status_code == 200
        assert body["restocked_units"] == ["UN-0001"]
        assert body["request"]["status"] == "FULFILLED"

        unit = ProductUnit.query.filter_by(code="UN-0001").one()
        assert unit.status == "IN_STOCK"
        assert unit.assigned_to_user_id is None
        assert db.session.get(Product, laptop.id).quantity == 1
        assert StockMovement.query.filter_by(type="RETURN", unit_id=unit.id).count() == 1

    def test_void_pickup_signature(self, client, auth_headers, requester, admin_user, product,
                                   approved_request):
        req = approved_request(requester, product)
        _sign(client, auth_headers(admin_user), req["id"], kind="pickup-signature")
        res = client.post(f"/api/v1/requests/{req['id']}/pickup-signature/void",
                          json={"reason": "assinou a pessoa errada"}, headers=auth_headers(admin_user))
        assert res.status_code == 200
        assert res.get_json()["pickup_signature"]["voided_at"] is not None
        # Status is not rolled back by voiding
        assert res.get_json()["status"] == "FULFILLED"
