"""
RBAC Models — permission catalogue, tenant roles and scoped assignments.

Permissions are a global catalogue keyed by dotted codenames
(``requests.approve``).  Roles are per tenant; system roles are seeded by
``flask seed-rbac`` and cannot be edited through the API.  An assignment
binds a user to a role, optionally narrowed to one requesting service and
to a validity window.
"""

from munops.models import db
from munops.models.base import TenantModel, iso, utcnow


# Permission catalogue: key → description
PERMISSIONS = {
    "requests.view": "View all requisitions",
    "requests.create": "Create and submit requisitions",
    "requests.approve": "First-level (division head) approval",
    "requests.reject": "First-level rejection",
    "requests.final_approve": "Final (asset office) approval",
    "requests.final_reject": "Final rejection",
    "requests.pickup_sign": "Capture pickup signatures and fulfil",
    "requests.execute": "Warehouse execution of approved requisitions",
    "presidency.approve": "Presidency decision on requisitions",
    "assets.view": "View municipal assets",
    "assets.manage": "Edit municipal asset records",
    "assets.move": "Register asset movements",
    "assets.dispose_init": "Open disposal processes",
    "assets.dispose_approve": "Decide disposal processes",
    "units.manage": "Acquire, return and repair product units",
    "tickets.manage": "Handle support tickets",
    "users.manage": "Manage users and role assignments",
    "reports.view": "View reports",
}

SYSTEM_ROLES = {
    "PRESIDENT": ("Presidency", ["presidency.approve", "requests.view", "reports.view"]),
    "DIVISION_HEAD": ("Division head", ["requests.view", "requests.approve", "requests.reject"]),
    "ASSET_MANAGER": (
        "Asset office",
        [
            "assets.view", "assets.manage", "assets.move",
            "assets.dispose_init", "assets.dispose_approve",
            "units.manage", "requests.view",
            "requests.final_approve", "requests.final_reject",
            "requests.pickup_sign", "requests.execute",
        ],
    ),
    "SERVICE_MANAGER": ("Service manager", ["requests.view", "requests.create"]),
    "AUDITOR": ("Auditor", ["requests.view", "assets.view", "reports.view"]),
    "SUPPORT_ADMIN": ("Support desk", ["tickets.manage"]),
}


class RbacPermission(db.Model):
    __tablename__ = "rbac_permissions"

    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(100), unique=True, nullable=False)
    description = db.Column(db.String(300))

    def to_dict(self):
        return {"id": self.id, "key": self.key, "description": self.description}


class RbacRole(TenantModel):
    __tablename__ = "rbac_roles"

    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(60), nullable=False)
    name = db.Column(db.String(200), nullable=False)
    is_system = db.Column(db.Boolean, default=False)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        db.UniqueConstraint("tenant_id", "key", name="uq_rbac_role_tenant_key"),
    )

    role_permissions = db.relationship(
        "RbacRolePermission", back_populates="role", lazy="selectin",
        cascade="all, delete-orphan",
    )

    @property
    def permission_keys(self) -> list[str]:
        return sorted(rp.permission.key for rp in self.role_permissions)

    def to_dict(self):
        return {
            "id": self.id,
            "key": self.key,
            "name": self.name,
            "is_system": self.is_system,
            "is_active": self.is_active,
            "permissions": self.permission_keys,
        }


class RbacRolePermission(db.Model):
    __tablename__ = "rbac_role_permissions"

    id = db.Column(db.Integer, primary_key=True)
    role_id = db.Column(
        db.Integer, db.ForeignKey("rbac_roles.id", ondelete="CASCADE"), nullable=False
    )
    permission_id = db.Column(
        db.Integer, db.ForeignKey("rbac_permissions.id", ondelete="CASCADE"), nullable=False
    )

    __table_args__ = (
        db.UniqueConstraint("role_id", "permission_id", name="uq_rbac_role_permission"),
    )

    role = db.relationship("RbacRole", back_populates="role_permissions")
    permission = db.relationship("RbacPermission", lazy="joined")


class RbacAssignment(TenantModel):
    __tablename__ = "rbac_assignments"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    role_id = db.Column(
        db.Integer, db.ForeignKey("rbac_roles.id", ondelete="CASCADE"), nullable=False
    )
    # NULL = grant applies to every requesting service
    requesting_service_id = db.Column(
        db.Integer, db.ForeignKey("requesting_services.id", ondelete="CASCADE"), nullable=True
    )
    is_active = db.Column(db.Boolean, default=True)
    starts_at = db.Column(db.DateTime(timezone=True), nullable=True)
    ends_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    role = db.relationship("RbacRole", lazy="joined")

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "role_id": self.role_id,
            "role_key": self.role.key if self.role else None,
            "requesting_service_id": self.requesting_service_id,
            "is_active": self.is_active,
            "starts_at": iso(self.starts_at),
            "ends_at": iso(self.ends_at),
        }
