"""
Municipal Operations Back-Office
Blueprint registry helpers.
"""

import logging

from flask import g, jsonify, request
from werkzeug.exceptions import HTTPException

from munops.core.exceptions import (
    ConflictError,
    NotFoundError,
    PermissionDenied,
    StateConflictError,
    TransitionError,
    ValidationError,
)
from munops.models import db
from munops.utils.errors import error_for_exception

logger = logging.getLogger(__name__)


def current_actor():
    """The authenticated User resolved by the JWT middleware."""
    return g.current_user


def paginate_query(query, default_limit=50, max_limit=200):
    """Apply limit/offset pagination to a SQLAlchemy query.

    Query params:
        limit  — max items (default 50, capped at max_limit)
        offset — starting position (default 0)

    Returns:
        (items_list, total_count)
    """
    total = query.count()
    try:
        limit = min(int(request.args.get("limit", default_limit)), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    items = query.limit(limit).offset(offset).all()
    return items, total


def register_error_handlers(bp):
    """Map the service exception hierarchy to JSON responses on *bp*.

    Every handler rolls the session back first: services flush as they go,
    so a failure halfway through leaves pending rows behind.
    """

    @bp.errorhandler(NotFoundError)
    @bp.errorhandler(ValidationError)
    @bp.errorhandler(TransitionError)
    @bp.errorhandler(ConflictError)
    @bp.errorhandler(StateConflictError)
    def _handle_domain_error(error):
        db.session.rollback()
        return error_for_exception(error)

    @bp.errorhandler(PermissionDenied)
    def _handle_forbidden(error: PermissionDenied):
        db.session.rollback()
        logger.info("Permission denied: %s", error,
                    extra={"user_id": error.user_id, "action": error.permission})
        return error_for_exception(error)

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        if isinstance(error, HTTPException):
            return error
        db.session.rollback()
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return jsonify({"error": "Internal server error"}), 500

    return bp
