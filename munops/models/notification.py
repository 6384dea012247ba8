"""
Municipal Operations Back-Office
Notification domain model.

Models:
    - Notification: in-app notification addressed to a role audience or to
      a single user, with read tracking
"""

from datetime import datetime, timezone

from munops.models import db
from munops.models.base import TenantModel, iso

RECIPIENT_ROLES = ("ADMIN", "USER")


class Notification(TenantModel):
    """
    In-app notification entity.

    Exactly one of ``recipient_role`` / ``recipient_user_id`` is set.
    """

    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    recipient_role = db.Column(db.String(10), nullable=True, index=True)
    recipient_user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=True, index=True,
    )
    kind = db.Column(db.String(60), nullable=False, default="system")
    title = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, default="")

    # Link to source entity
    entity_type = db.Column(db.String(30), default="")
    entity_id = db.Column(db.Integer, nullable=True)

    is_read = db.Column(db.Boolean, default=False)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def mark_read(self):
        self.is_read = True
        self.read_at = datetime.now(timezone.utc)

    def to_dict(self):
        return {
            "id": self.id,
            "recipient_role": self.recipient_role,
            "recipient_user_id": self.recipient_user_id,
            "kind": self.kind,
            "title": self.title,
            "message": self.message,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "is_read": self.is_read,
            "read_at": iso(self.read_at),
            "created_at": iso(self.created_at),
        }
