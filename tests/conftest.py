"""
Shared pytest fixtures for the municipal back-office test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - default_tenant: Pre-created Tenant entity
    - admin_user / requester: Pre-created ADMIN and USER accounts
    - make_user, make_product, make_unit, make_service: ORM builders
    - grant_role: assign a system role (optionally scoped to one service)
    - auth_headers: Bearer header for a user
"""

import pytest

from munops import create_app
from munops.models import db as _db
from munops.services.permission_service import invalidate_all_cache
from munops.services.realtime import bus


def _ensure_default_tenant():
    """Create the default tenant for tests if it doesn't exist."""
    from munops.models.auth import Tenant
    t = Tenant.query.filter_by(slug="test-default").first()
    if not t:
        t = Tenant(name="Test Default", slug="test-default")
        _db.session.add(t)
        _db.session.commit()
    return t.id


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        # ids are reused across tests; stale grants keyed by user_id must go
        invalidate_all_cache()
        bus.reset()
        _ensure_default_tenant()
        yield
        invalidate_all_cache()
        bus.reset()
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def default_tenant():
    """Return the auto-created default test tenant."""
    from munops.models.auth import Tenant
    return Tenant.query.filter_by(slug="test-default").first()


# ── Builders ─────────────────────────────────────────────────────────────


@pytest.fixture()
def make_user(default_tenant):
    """Factory: make_user(email, role="USER", tenant_id=None, full_name=None)."""
    from munops.models.auth import User

    def _make(email, role="USER", tenant_id=None, full_name=None):
        user = User(
            tenant_id=tenant_id or default_tenant.id,
            email=email,
            full_name=full_name or email.split("@")[0].title(),
            role=role,
        )
        _db.session.add(user)
        _db.session.commit()
        return user

    return _make


@pytest.fixture()
def admin_user(make_user):
    return make_user("admin@camara.test", role="ADMIN", full_name="Ana Admin")


@pytest.fixture()
def requester(make_user):
    return make_user("rui@camara.test", full_name="Rui Requester")


@pytest.fixture()
def make_service(default_tenant):
    """Factory: make_service(code, name=None) → RequestingService."""
    from munops.models.auth import RequestingService

    def _make(code, name=None, tenant_id=None):
        svc = RequestingService(tenant_id=tenant_id or default_tenant.id, code=code, name=name or code)
        _db.session.add(svc)
        _db.session.commit()
        return svc

    return _make


@pytest.fixture()
def make_product(default_tenant):
    """Factory: make_product(name, quantity=0, unit_tracked=True, patrimonializable=False)."""
    from munops.models.inventory import Product, product_status_for

    def _make(name="Portátil", quantity=0, unit_tracked=True, patrimonializable=False, tenant_id=None):
        product = Product(
            tenant_id=tenant_id or default_tenant.id,
            name=name,
            quantity=quantity,
            status=product_status_for(quantity),
            unit_tracked=unit_tracked,
            patrimonializable=patrimonializable,
        )
        _db.session.add(product)
        _db.session.commit()
        return product

    return _make


@pytest.fixture()
def make_unit(default_tenant):
    """Factory: make_unit(product, code, status="IN_STOCK", assigned_to_user_id=None)."""
    from munops.models.inventory import ProductUnit

    def _make(product, code, status="IN_STOCK", assigned_to_user_id=None):
        unit = ProductUnit(
            tenant_id=product.tenant_id,
            product_id=product.id,
            code=code,
            serial_number=f"SN-{code}",
            status=status,
            assigned_to_user_id=assigned_to_user_id,
        )
        _db.session.add(unit)
        _db.session.commit()
        return unit

    return _make


@pytest.fixture()
def grant_role():
    """Factory: grant_role(user, role_key, service_id=None) using the seeded system roles."""
    from munops.services import permission_service

    def _grant(user, role_key, service_id=None):
        permission_service.seed_permission_catalogue()
        permission_service.seed_system_roles(user.tenant_id)
        _db.session.commit()
        return permission_service.assign_role(
            user.tenant_id,
            user_id=user.id,
            role_key=role_key,
            requesting_service_id=service_id,
            actor=user,
        )

    return _grant


@pytest.fixture()
def auth_headers():
    """Factory: auth_headers(user) → {"Authorization": "Bearer <token>"}."""
    from munops.services.jwt_service import generate_access_token

    def _headers(user):
        token = generate_access_token(user.id, user.tenant_id, user.role)
        return {"Authorization": f"Bearer {token}"}

    return _headers


# ── Request helpers ──────────────────────────────────────────────────────


@pytest.fixture()
def create_request(client, auth_headers):
    """Factory: create a DRAFT request through the API and return its JSON."""

    def _create(user, product, quantity=1, service_id=None, destination=None):
        item = {"product_id": product.id, "quantity": quantity}
        if destination:
            item["destination"] = destination
        body = {"title": "Material de escritório", "items": [item]}
        if service_id is not None:
            body["requesting_service_id"] = service_id
        res = client.post("/api/v1/requests", json=body, headers=auth_headers(user))
        assert res.status_code == 201, res.get_json()
        return res.get_json()

    return _create


@pytest.fixture()
def approved_request(client, auth_headers, create_request, admin_user):
    """Factory: create, submit and approve (both levels) a request."""

    def _approved(user, product, **kwargs):
        req = create_request(user, product, **kwargs)
        for actor, action in ((user, "SUBMIT"), (admin_user, "APPROVE"), (admin_user, "APPROVE")):
            res = client.post(
                f"/api/v1/requests/{req['id']}/actions",
                json={"action": action},
                headers=auth_headers(actor),
            )
            assert res.status_code == 200, res.get_json()
        return req

    return _approved
