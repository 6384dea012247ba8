"""
Municipal Operations Back-Office
Flask application factory.

    from munops import create_app
    app = create_app()            # APP_ENV, else "development"
    app = create_app("testing")
"""

import logging
import os

from flask import Flask, abort, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as sa_engine
from sqlalchemy import event as sa_event

from munops.config import config
from munops.models import db
from munops.middleware.jwt_auth import init_jwt_middleware
from munops.middleware.logging_config import configure_logging
from munops.middleware.timing import init_request_timing

logger = logging.getLogger(__name__)

MAX_BODY_BYTES = 2 * 1024 * 1024
MUTATING_LIMIT = "120/minute"


@sa_event.listens_for(sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """SQLite ignores FOREIGN KEY clauses unless asked per connection."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
# Limits are attached per blueprint in create_app
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],
    storage_uri=os.getenv("REDIS_URL") or "memory://",
)


def _import_models():
    """Register every table on ``db.metadata`` before create_all / Alembic."""
    from munops.models import asset, audit, auth, inventory, notification, rbac, request, ticket  # noqa: F401


def _register_guards(app):
    app.config.setdefault("MAX_CONTENT_LENGTH", MAX_BODY_BYTES)

    @app.before_request
    def _guard_request():
        max_len = app.config.get("MAX_CONTENT_LENGTH")
        if max_len and request.content_length and request.content_length > max_len:
            abort(413, description="Request body too large")
        if (request.method in ("POST", "PUT", "PATCH") and request.path.startswith("/api/")
                and request.data and not request.is_json):
            abort(415, description="Content-Type must be application/json")


def _register_blueprints(app):
    from munops.blueprints.assets_bp import assets_bp
    from munops.blueprints.notifications_bp import notifications_bp
    from munops.blueprints.rbac_bp import rbac_bp
    from munops.blueprints.realtime_bp import realtime_bp
    from munops.blueprints.requests_bp import requests_bp
    from munops.blueprints.tickets_bp import tickets_bp
    from munops.blueprints.units_bp import units_bp

    limited = (requests_bp, units_bp, assets_bp, tickets_bp, rbac_bp)
    for bp in limited:
        limiter.limit(MUTATING_LIMIT, methods=["POST", "PUT", "PATCH", "DELETE"])(bp)
    for bp in limited + (notifications_bp, realtime_bp):
        app.register_blueprint(bp)


def _register_cli(app):
    @app.cli.command("seed-rbac")
    def seed_rbac_cmd():
        """Seed the permission catalogue and the system roles of every tenant."""
        from munops.models.auth import Tenant
        from munops.services.permission_service import seed_permission_catalogue, seed_system_roles

        created = seed_permission_catalogue()
        roles = sum(seed_system_roles(t.id) for t in Tenant.query.order_by(Tenant.id).all())
        db.session.commit()
        logger.info("Seeded %s permissions and %s system roles", created, roles)


def _register_error_handlers(app):
    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(413)
    @app.errorhandler(415)
    def bad_body(e):
        return {"error": e.description}, e.code

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error"}, 500


def create_app(config_name=None):
    """Build the application for ``config_name`` (development, testing or production)."""
    config_name = config_name or os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    # Instantiated so ProductionConfig can refuse to start without its secrets
    app.config.from_object(config[config_name]())

    configure_logging(app)

    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    origins = app.config.get("CORS_ORIGINS") or ""
    if origins == "*":
        CORS(app)
    elif origins:
        CORS(app, origins=[o.strip() for o in origins.split(",") if o.strip()])

    # Order matters: timing first so rejected requests still get a request id
    init_request_timing(app)
    _register_guards(app)
    init_jwt_middleware(app)

    _import_models()
    with app.app_context():
        db.create_all()

    _register_blueprints(app)
    _register_cli(app)

    @app.route("/api/v1/health")
    def health():
        return {"status": "ok"}

    _register_error_handlers(app)
    return app
