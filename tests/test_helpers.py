"""
Tests: shared helpers in munops.utils.helpers.
"""

from datetime import date, datetime, timedelta, timezone

import pytest

from munops.models import db
from munops.models.auth import Tenant
from munops.utils.helpers import clean_str, db_commit_or_error, parse_datetime, to_utc


@pytest.mark.unit
class TestDatetimeHelpers:
    def test_naive_is_treated_as_utc(self):
        assert to_utc(datetime(2026, 3, 1, 9, 0)) == datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)

    def test_aware_is_converted(self):
        lisbon_summer = timezone(timedelta(hours=1))
        value = datetime(2026, 7, 1, 10, 0, tzinfo=lisbon_summer)
        assert to_utc(value).hour == 9

    @pytest.mark.parametrize("raw,expected", [
        ("2026-02-01", datetime(2026, 2, 1, tzinfo=timezone.utc)),
        ("2026-02-01T12:30:00Z", datetime(2026, 2, 1, 12, 30, tzinfo=timezone.utc)),
        (date(2026, 2, 1), datetime(2026, 2, 1, tzinfo=timezone.utc)),
        ("amanhã", None),
        ("", None),
        (None, None),
    ])
    def test_parse_datetime(self, raw, expected):
        assert parse_datetime(raw) == expected

    def test_clean_str(self):
        assert clean_str("  Obras  ") == "Obras"
        assert clean_str("   ") is None
        assert clean_str("abcdef", max_len=3) == "abc"


class TestCommitOrError:
    def test_success_returns_none(self):
        db.session.add(Tenant(name="Junta", slug="junta"))
        assert db_commit_or_error() is None
        assert Tenant.query.filter_by(slug="junta").count() == 1

    def test_integrity_error_is_409(self):
        db.session.add(Tenant(name="Duplicada", slug="test-default"))
        response, status = db_commit_or_error()
        assert status == 409
        assert response.get_json()["error"] == "Duplicate or constraint violation"
        assert response.get_json()["code"] == "ERR_CONFLICT_DUPLICATE"
        # the session is usable again after the rollback
        assert Tenant.query.count() == 1
