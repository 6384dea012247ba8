"""
Municipal Operations Back-Office
Generic audit trail.

Requests, units, assets and tickets keep their own ledgers (status audits,
stock movements, asset events, ticket audits).  ``AuditLog`` covers the
actions that have no ledger table of their own: substitutions, terminal unit
moves, RBAC changes, asset policy edits and voided signatures.
"""

from munops.models import db
from munops.models.base import iso, utcnow

AUDIT_ACTIONS = frozenset({
    "substitution.completed",
    "substitution.denied",
    "unit.lost",
    "unit.scrapped",
    "stock.intake",
    "rbac.role_created",
    "rbac.assignment_created",
    "rbac.assignment_revoked",
    "asset_policy.update",
    "request.approval_signature_voided",
    "request.pickup_signature_voided",
})


class AuditLog(db.Model):
    """Append-only; rows are never updated once written."""

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "tenant_id", "entity_type", "entity_id"),
        db.Index("idx_audit_action", "action"),
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id", ondelete="SET NULL"), nullable=True)
    entity_type = db.Column(db.String(30), nullable=False,
                            comment="product_unit | invoice | substitution | rbac_role | rbac_assignment | asset_policy | request")
    entity_id = db.Column(db.String(64), nullable=False)
    action = db.Column(db.String(60), nullable=False)
    actor_user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    diff = db.Column(db.JSON, nullable=False, default=dict)
    timestamp = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    @classmethod
    def for_entity(cls, tenant_id, entity_type, entity_id):
        """Trail of one entity, oldest first."""
        return (
            cls.query.filter_by(tenant_id=tenant_id, entity_type=entity_type, entity_id=str(entity_id))
            .order_by(cls.id.asc())
        )

    def to_dict(self):
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor_user_id": self.actor_user_id,
            "diff": self.diff or {},
            "timestamp": iso(self.timestamp),
        }

    def __repr__(self):
        return f"<AuditLog {self.action} {self.entity_type}/{self.entity_id}>"


def write_audit(*, entity_type, entity_id, action, tenant_id=None, actor_user_id=None, diff=None):
    """Add one audit row and flush; the caller decides when to commit.

    Raises:
        ValueError: ``action`` is not one of ``AUDIT_ACTIONS``.
    """
    if action not in AUDIT_ACTIONS:
        raise ValueError(f"Unknown audit action: {action}")
    log = AuditLog(
        tenant_id=tenant_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor_user_id=actor_user_id,
        diff=diff or {},
    )
    db.session.add(log)
    db.session.flush()
    return log
