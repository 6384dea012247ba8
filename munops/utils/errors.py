"""JSON error responses shared by the middleware and every blueprint.

Bodies always carry ``error`` (human text) and ``code`` (stable ``ERR_*``
string the front office switches on), plus ``details`` when a field or a
conflicting value can be pointed at::

    return api_error(E.VALIDATION_REQUIRED, "old_code is required",
                     details={"old_code": "required"})
"""

from __future__ import annotations

from flask import jsonify

from munops.core.exceptions import (
    ConflictError,
    NotFoundError,
    PermissionDenied,
    StateConflictError,
    TransitionError,
    ValidationError,
)


class E:
    """Error codes."""

    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    BUSINESS_RULE = "ERR_BUSINESS_RULE"
    TRANSITION_INVALID = "ERR_TRANSITION_INVALID"
    UNAUTHORIZED = "ERR_UNAUTHORIZED"
    FORBIDDEN = "ERR_FORBIDDEN"
    NOT_FOUND = "ERR_NOT_FOUND"
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    CONFLICT_STATE = "ERR_CONFLICT_STATE"
    DATABASE = "ERR_DATABASE"


_STATUS_BY_CODE: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.BUSINESS_RULE: 400,
    E.TRANSITION_INVALID: 400,
    E.UNAUTHORIZED: 401,
    E.FORBIDDEN: 403,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.CONFLICT_STATE: 409,
    E.DATABASE: 500,
}

# Order matters only where classes would overlap; they currently do not.
_CODE_BY_EXCEPTION = (
    (NotFoundError, E.NOT_FOUND),
    (ValidationError, E.BUSINESS_RULE),
    (TransitionError, E.TRANSITION_INVALID),
    (PermissionDenied, E.FORBIDDEN),
    (ConflictError, E.CONFLICT_DUPLICATE),
    (StateConflictError, E.CONFLICT_STATE),
)


def api_error(code: str, message: str, *, status: int | None = None, details: dict | None = None):
    """Build ``(response, status)`` for a view to return.

    ``status`` defaults to the code's usual HTTP status, or 400 for codes
    outside the table.
    """
    body: dict = {"error": message, "code": code}
    if details:
        body["details"] = details
    return jsonify(body), status or _STATUS_BY_CODE.get(code, 400)


def error_for_exception(exc: Exception):
    """Translate a domain exception into the matching ``api_error`` response."""
    for exc_type, code in _CODE_BY_EXCEPTION:
        if isinstance(exc, exc_type):
            break
    else:
        raise TypeError(f"No error mapping for {type(exc).__name__}")

    if isinstance(exc, NotFoundError):
        message = exc.public_message
    else:
        message = str(exc)
    return api_error(code, message, details=getattr(exc, "details", None))
