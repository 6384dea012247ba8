"""
Access tokens for the back-office API (PyJWT, HS256).

Claims: ``sub`` (user id, string as PyJWT requires), ``tenant_id``, ``role``
(ADMIN | USER), ``type`` = "access", ``iat``, ``exp``, ``jti``.

Tokens are minted by the municipal identity portal with the same secret;
``generate_access_token`` exists for the CLI and the test suite.
"""

import uuid
from datetime import datetime, timedelta, timezone

import jwt
from flask import current_app

ALGORITHM = "HS256"
TOKEN_TYPE = "access"


def _signing_key() -> str:
    return current_app.config.get("JWT_SECRET_KEY") or current_app.config["SECRET_KEY"]


def generate_access_token(user_id: int, tenant_id: int, role: str) -> str:
    now = datetime.now(timezone.utc)
    lifetime = timedelta(seconds=current_app.config.get("JWT_ACCESS_EXPIRES", 900))
    claims = {
        "sub": str(user_id),
        "tenant_id": tenant_id,
        "role": role,
        "type": TOKEN_TYPE,
        "iat": now,
        "exp": now + lifetime,
        "jti": uuid.uuid4().hex,
    }
    return jwt.encode(claims, _signing_key(), algorithm=ALGORITHM)


def decode_access_token(token: str) -> dict:
    """Verify signature, expiry and token type; return the claims.

    Raises:
        jwt.ExpiredSignatureError: the token is past ``exp``.
        jwt.InvalidTokenError: bad signature, malformed token, missing
            claims or a non-access token.
    """
    claims = jwt.decode(
        token, _signing_key(), algorithms=[ALGORITHM],
        options={"require": ["sub", "exp", "tenant_id"]},
    )
    if claims.get("type") != TOKEN_TYPE:
        raise jwt.InvalidTokenError(f"Expected an access token, got {claims.get('type')!r}")
    return claims
