"""
TenantModel — Abstract base class for tenant-scoped models.

All back-office tables are owned by a tenant (one municipality).
Inheriting from TenantModel adds:
  - tenant_id FK column with index
  - query_for_tenant(tenant_id) classmethod
  - get_for_tenant(tenant_id, pk) scoped primary-key lookup
"""

from datetime import datetime, timezone

from munops.models import db


def utcnow():
    return datetime.now(timezone.utc)


def iso(value):
    """Serialise a datetime (or None) for ``to_dict`` payloads."""
    return value.isoformat() if value else None


class TenantModel(db.Model):
    """Abstract base for tenant-scoped tables."""
    __abstract__ = True

    tenant_id = db.Column(
        db.Integer,
        db.ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    @classmethod
    def query_for_tenant(cls, tenant_id):
        """Return a query filtered by tenant_id."""
        return cls.query.filter_by(tenant_id=tenant_id)

    @classmethod
    def get_for_tenant(cls, tenant_id, pk):
        """Primary-key lookup that refuses rows owned by another tenant."""
        obj = db.session.get(cls, pk)
        if obj is None or obj.tenant_id != tenant_id:
            return None
        return obj
