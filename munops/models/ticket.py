"""
Municipal Operations Back-Office
Support ticket domain model.

Models:
    - Ticket: support ticket with SLA due dates and escalation state
    - TicketMessage: conversation thread
    - TicketAudit: append-only action trail
    - TicketRequestLink: ticket ↔ requisition link
"""

from munops.models import db
from munops.models.base import TenantModel, iso, utcnow

# ── Constants ────────────────────────────────────────────────────────────────

TICKET_TYPES = ("INCIDENT", "REQUEST", "QUESTION", "CHANGE")
TICKET_PRIORITIES = ("LOW", "NORMAL", "HIGH", "CRITICAL")
TICKET_LEVELS = ("L1", "L2", "L3")
TICKET_STATUSES = (
    "OPEN", "IN_PROGRESS", "WAITING_CUSTOMER", "ESCALATED", "RESOLVED", "CLOSED",
)
TICKET_AUDIT_ACTIONS = (
    "TICKET_CREATED", "TICKET_UPDATED", "TICKET_CLOSED",
    "REQUEST_LINKED", "REQUEST_UNLINKED", "MESSAGE_CREATED", "SLA_ESCALATED",
)


class Ticket(TenantModel):
    __tablename__ = "tickets"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(40), nullable=False)
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text)
    type = db.Column(db.String(20), nullable=False, default="INCIDENT")
    priority = db.Column(db.String(20), nullable=False, default="NORMAL")
    level = db.Column(db.String(5), nullable=False, default="L1")
    status = db.Column(db.String(20), nullable=False, default="OPEN", index=True)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    assigned_to_user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    requesting_service_id = db.Column(
        db.Integer, db.ForeignKey("requesting_services.id", ondelete="SET NULL")
    )

    # SLA
    first_response_due_at = db.Column(db.DateTime(timezone=True))
    resolution_due_at = db.Column(db.DateTime(timezone=True))
    first_response_at = db.Column(db.DateTime(timezone=True))
    resolved_at = db.Column(db.DateTime(timezone=True))
    closed_at = db.Column(db.DateTime(timezone=True))
    sla_breached_at = db.Column(db.DateTime(timezone=True))
    last_escalated_at = db.Column(db.DateTime(timezone=True))
    escalation_count = db.Column(db.Integer, nullable=False, default=0)
    escalation_reason = db.Column(db.Text)

    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        db.UniqueConstraint("tenant_id", "code", name="uq_ticket_code"),
    )

    messages = db.relationship(
        "TicketMessage", lazy="dynamic", cascade="all, delete-orphan",
        order_by="TicketMessage.id",
    )
    request_links = db.relationship(
        "TicketRequestLink", lazy="selectin", cascade="all, delete-orphan",
    )

    def to_dict(self, include_messages=False):
        d = {
            "id": self.id,
            "code": self.code,
            "title": self.title,
            "description": self.description,
            "type": self.type,
            "priority": self.priority,
            "level": self.level,
            "status": self.status,
            "created_by_user_id": self.created_by_user_id,
            "assigned_to_user_id": self.assigned_to_user_id,
            "requesting_service_id": self.requesting_service_id,
            "first_response_due_at": iso(self.first_response_due_at),
            "resolution_due_at": iso(self.resolution_due_at),
            "first_response_at": iso(self.first_response_at),
            "resolved_at": iso(self.resolved_at),
            "closed_at": iso(self.closed_at),
            "sla_breached_at": iso(self.sla_breached_at),
            "last_escalated_at": iso(self.last_escalated_at),
            "escalation_count": self.escalation_count,
            "escalation_reason": self.escalation_reason,
            "linked_request_ids": [link.request_id for link in self.request_links],
            "created_at": iso(self.created_at),
        }
        if include_messages:
            d["messages"] = [m.to_dict() for m in self.messages.all()]
        return d


class TicketMessage(TenantModel):
    __tablename__ = "ticket_messages"

    id = db.Column(db.Integer, primary_key=True)
    ticket_id = db.Column(
        db.Integer, db.ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True
    )
    author_user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    body = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "ticket_id": self.ticket_id,
            "author_user_id": self.author_user_id,
            "body": self.body,
            "created_at": iso(self.created_at),
        }


class TicketAudit(TenantModel):
    __tablename__ = "ticket_audits"

    id = db.Column(db.Integer, primary_key=True)
    ticket_id = db.Column(
        db.Integer, db.ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True
    )
    action = db.Column(db.String(30), nullable=False)
    actor_user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    data = db.Column(db.JSON, default=dict)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "ticket_id": self.ticket_id,
            "action": self.action,
            "actor_user_id": self.actor_user_id,
            "data": self.data or {},
            "created_at": iso(self.created_at),
        }


class TicketRequestLink(TenantModel):
    __tablename__ = "ticket_request_links"

    id = db.Column(db.Integer, primary_key=True)
    ticket_id = db.Column(
        db.Integer, db.ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True
    )
    request_id = db.Column(
        db.Integer, db.ForeignKey("requests.id", ondelete="CASCADE"), nullable=False
    )
    linked_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        db.UniqueConstraint("ticket_id", "request_id", name="uq_ticket_request_link"),
    )
