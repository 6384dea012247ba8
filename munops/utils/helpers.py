"""Shared utility functions for blueprints and services.

parse_datetime:      ISO-8601 query/body values → aware datetime (None on bad input)
to_utc:              normalise naive (SQLite) datetimes to UTC-aware
clean_str:           strip + length-cap optional text inputs
db_commit_or_error:  commit, or an api_error response (409 on constraint violations)
"""
import logging
from datetime import date, datetime, timezone

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from munops.models import db
from munops.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def to_utc(value):
    """Normalise a datetime to UTC-aware regardless of input tz-awareness.

    SQLite hands back naive datetimes even for ``DateTime(timezone=True)``
    columns; they were written as UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value):
    """Parse an ISO date or datetime string to an aware UTC datetime.

    Returns None for empty/invalid input.  A bare date maps to midnight UTC.
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return to_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return to_utc(datetime.fromisoformat(text))
    except (ValueError, TypeError):
        return None


def clean_str(value, max_len=None):
    """Strip a string input; empty → None; optionally cap length."""
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    if max_len is not None:
        text = text[:max_len]
    return text


# ── Commit helper ────────────────────────────────────────────────────────────

def db_commit_or_error():
    """Commit the session; on failure roll back and return an error response.

    Returns None when the commit succeeds, otherwise ``(response, status)``
    for the view to return as-is::

        err = db_commit_or_error()
        if err:
            return err

    A constraint violation maps to 409; anything else the database raises
    maps to 500.
    """
    try:
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("Commit rejected by a constraint: %s", exc.orig)
        return api_error(E.CONFLICT_DUPLICATE, "Duplicate or constraint violation")
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Commit failed")
        return api_error(E.DATABASE, "Database error")
    return None
