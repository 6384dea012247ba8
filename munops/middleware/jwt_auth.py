"""
JWT Auth Middleware — Parses JWT from Authorization header, resolves the actor.

Chain:
  1. Authorization: Bearer <token>  →  g.jwt_user_id, g.jwt_tenant_id, g.jwt_role
  2. User row lookup (active, same tenant, tenant active)  →  g.current_user
  3. Any /api/v1/ path outside JWT_SKIP_PREFIXES without an actor → 401
"""

import logging

import jwt as pyjwt
from flask import g, request

from munops.models import db
from munops.models.auth import Tenant, User
from munops.services.jwt_service import decode_access_token
from munops.utils.errors import E, api_error

logger = logging.getLogger(__name__)

# Paths that skip JWT auth entirely
JWT_SKIP_PREFIXES = (
    "/api/v1/health",
)


def _resolve_actor():
    """Decode the bearer token and load the acting user, or return None."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None

    token = auth_header[7:]  # Strip "Bearer "
    try:
        payload = decode_access_token(token)
    except pyjwt.ExpiredSignatureError:
        logger.info("Expired access token", extra={"path": request.path})
        return None
    except pyjwt.InvalidTokenError:
        logger.info("Invalid access token", extra={"path": request.path})
        return None

    try:
        g.jwt_user_id = int(payload.get("sub"))
    except (TypeError, ValueError):
        return None
    g.jwt_tenant_id = payload.get("tenant_id")
    g.jwt_role = payload.get("role")

    user = db.session.get(User, g.jwt_user_id)
    if user is None or not user.is_active or user.tenant_id != g.jwt_tenant_id:
        return None
    tenant = db.session.get(Tenant, user.tenant_id)
    if tenant is None or not tenant.is_active:
        return None
    return user


def init_jwt_middleware(app):
    """Register JWT middleware as a before_request hook."""

    @app.before_request
    def _jwt_auth():
        g.jwt_user_id = None
        g.jwt_tenant_id = None
        g.jwt_role = None
        g.current_user = None

        path = request.path
        if not path.startswith("/api/v1/"):
            return None
        for prefix in JWT_SKIP_PREFIXES:
            if path.startswith(prefix):
                return None
        if request.method == "OPTIONS":
            return None

        g.current_user = _resolve_actor()
        if g.current_user is None:
            return api_error(E.UNAUTHORIZED, "Authentication required")
        return None
