"""
Support Ticket Service — tickets, SLA due dates, messages, request links, escalation.

SLA targets are derived from priority and measured from ``created_at``:

    LOW       first response  8h   resolution 48h
    NORMAL    first response  4h   resolution 24h
    HIGH      first response  1h   resolution  8h
    CRITICAL  first response 15m   resolution  4h

``escalate_overdue`` is meant to be run periodically (cron or the
``POST /api/v1/tickets/sla/run`` endpoint); every escalation bumps the
level, flips the ticket to ESCALATED and observes a cooldown.
"""

import logging
import secrets
import string
from datetime import datetime, timedelta, timezone

from flask import current_app
from sqlalchemy import or_

from munops.core.exceptions import (
    NotFoundError,
    PermissionDenied,
    StateConflictError,
    ValidationError,
)
from munops.models import db
from munops.models.auth import User
from munops.models.request import Request
from munops.models.ticket import (
    TICKET_LEVELS,
    TICKET_PRIORITIES,
    TICKET_STATUSES,
    TICKET_TYPES,
    Ticket,
    TicketAudit,
    TicketMessage,
    TicketRequestLink,
)
from munops.services import permission_service
from munops.services.notification import NotificationService
from munops.services.realtime import build_event, publish_after_commit
from munops.utils.helpers import to_utc

logger = logging.getLogger(__name__)

# priority → (first response minutes, resolution minutes)
SLA_RULES = {
    "LOW": (8 * 60, 48 * 60),
    "NORMAL": (4 * 60, 24 * 60),
    "HIGH": (60, 8 * 60),
    "CRITICAL": (15, 4 * 60),
}

TERMINAL_STATUSES = ("RESOLVED", "CLOSED")
DEFAULT_COOLDOWN_MINUTES = 30
CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_ATTEMPTS = 8

_UPDATABLE_FIELDS = ("title", "description", "type", "priority", "level", "status",
                     "assigned_to_user_id", "escalation_reason")


def _now():
    return datetime.now(timezone.utc)


def compute_sla_targets(priority: str, created_at: datetime) -> tuple[datetime, datetime]:
    first_minutes, resolution_minutes = SLA_RULES[priority]
    created_at = to_utc(created_at)
    return (created_at + timedelta(minutes=first_minutes),
            created_at + timedelta(minutes=resolution_minutes))


def level_for_priority(priority: str) -> str:
    if priority == "CRITICAL":
        return "L3"
    if priority == "HIGH":
        return "L2"
    return "L1"


def next_level(level: str) -> str:
    index = TICKET_LEVELS.index(level) if level in TICKET_LEVELS else 0
    return TICKET_LEVELS[min(index + 1, len(TICKET_LEVELS) - 1)]


def _random_code(now: datetime) -> str:
    suffix = "".join(secrets.choice(CODE_ALPHABET) for _ in range(6))
    return f"TCK-{now.year}-{suffix}"


def next_ticket_code(tenant_id: int, now: datetime | None = None) -> str:
    now = now or _now()
    for _ in range(CODE_ATTEMPTS):
        code = _random_code(now)
        if not Ticket.query_for_tenant(tenant_id).filter_by(code=code).first():
            return code
    raise StateConflictError("Could not allocate a unique ticket code")


def is_ticket_manager(actor: User) -> bool:
    return actor.is_admin or permission_service.user_has_permission(actor, "tickets.manage")


def _can_access(actor: User, ticket: Ticket) -> bool:
    if is_ticket_manager(actor):
        return True
    return actor.id in (ticket.created_by_user_id, ticket.assigned_to_user_id)


def _audit(ticket: Ticket, action: str, actor_id: int | None, data: dict | None = None):
    db.session.add(TicketAudit(
        tenant_id=ticket.tenant_id,
        ticket_id=ticket.id,
        action=action,
        actor_user_id=actor_id,
        data=data or {},
    ))


def _publish(ticket: Ticket, event_type: str, payload: dict, user_ids=()):
    publish_after_commit(build_event(event_type, ticket.tenant_id, payload, audience="ADMIN"))
    for uid in {u for u in user_ids if u}:
        publish_after_commit(build_event(event_type, ticket.tenant_id, payload,
                                         audience="USER", user_id=uid))


def _check_user(tenant_id: int, user_id: int | None):
    if user_id is None:
        return
    user = db.session.get(User, user_id)
    if user is None or user.tenant_id != tenant_id:
        raise ValidationError("Assigned user not found in tenant",
                              details={"assigned_to_user_id": user_id})


# ── Queries ──────────────────────────────────────────────────────────────────

def get_ticket(actor: User, ticket_id: int) -> Ticket:
    ticket = Ticket.get_for_tenant(actor.tenant_id, ticket_id)
    if ticket is None:
        raise NotFoundError("Ticket", ticket_id, actor.tenant_id)
    if not _can_access(actor, ticket):
        raise PermissionDenied(actor.id, "tickets.manage")
    return ticket


def list_tickets(actor: User, *, status=None, priority=None, level=None):
    q = Ticket.query_for_tenant(actor.tenant_id)
    if not is_ticket_manager(actor):
        q = q.filter(or_(Ticket.created_by_user_id == actor.id,
                         Ticket.assigned_to_user_id == actor.id))
    if status:
        q = q.filter(Ticket.status == status)
    if priority:
        q = q.filter(Ticket.priority == priority)
    if level:
        q = q.filter(Ticket.level == level)
    return q.order_by(Ticket.id.desc())


def ticket_audits(ticket: Ticket) -> list[TicketAudit]:
    return (
        TicketAudit.query.filter_by(ticket_id=ticket.id)
        .order_by(TicketAudit.id.desc())
        .all()
    )


# ── Create / update ──────────────────────────────────────────────────────────

def create_ticket(actor: User, data: dict) -> Ticket:
    title = (data.get("title") or "").strip()
    if not title:
        raise ValidationError("title is required", details={"title": "required"})
    ticket_type = data.get("type") or "INCIDENT"
    priority = data.get("priority") or "NORMAL"
    if ticket_type not in TICKET_TYPES:
        raise ValidationError(f"Invalid ticket type: {ticket_type}")
    if priority not in TICKET_PRIORITIES:
        raise ValidationError(f"Invalid priority: {priority}")

    now = _now()
    first_due, resolution_due = compute_sla_targets(priority, now)
    ticket = Ticket(
        tenant_id=actor.tenant_id,
        code=next_ticket_code(actor.tenant_id, now),
        title=title[:300],
        description=data.get("description"),
        type=ticket_type,
        priority=priority,
        level=level_for_priority(priority),
        status="OPEN",
        created_by_user_id=actor.id,
        requesting_service_id=data.get("requesting_service_id"),
        first_response_due_at=first_due,
        resolution_due_at=resolution_due,
        created_at=now,
    )
    db.session.add(ticket)
    db.session.flush()
    _audit(ticket, "TICKET_CREATED", actor.id, {"priority": priority, "level": ticket.level})

    if data.get("request_id"):
        _link(ticket, actor, data["request_id"])

    NotificationService.notify_admins(
        tenant_id=actor.tenant_id, kind="ticket.created",
        title=f"New ticket {ticket.code}", message=ticket.title,
        entity_type="ticket", entity_id=ticket.id,
    )
    _publish(ticket, "ticket.created", {"ticket_id": ticket.id, "code": ticket.code},
             [actor.id])
    db.session.commit()
    logger.info("Ticket %s created", ticket.code,
                extra={"tenant_id": actor.tenant_id, "entity_id": ticket.id})
    return ticket


def update_ticket(actor: User, ticket_id: int, data: dict) -> Ticket:
    """Staff update of status, priority, level, assignee and text fields."""
    ticket = get_ticket(actor, ticket_id)
    if not is_ticket_manager(actor):
        raise PermissionDenied(actor.id, "tickets.manage")

    changes = {k: data[k] for k in _UPDATABLE_FIELDS if k in data}
    if not changes:
        raise ValidationError("No updatable fields supplied")
    if "type" in changes and changes["type"] not in TICKET_TYPES:
        raise ValidationError(f"Invalid ticket type: {changes['type']}")
    if "priority" in changes and changes["priority"] not in TICKET_PRIORITIES:
        raise ValidationError(f"Invalid priority: {changes['priority']}")
    if "level" in changes and changes["level"] not in TICKET_LEVELS:
        raise ValidationError(f"Invalid level: {changes['level']}")
    if "status" in changes and changes["status"] not in TICKET_STATUSES:
        raise ValidationError(f"Invalid status: {changes['status']}")
    if "assigned_to_user_id" in changes:
        _check_user(actor.tenant_id, changes["assigned_to_user_id"])

    before = {k: getattr(ticket, k) for k in changes}
    previous_status = ticket.status
    for field, value in changes.items():
        setattr(ticket, field, value)

    if "priority" in changes:
        if "level" not in changes:
            ticket.level = level_for_priority(ticket.priority)
        ticket.first_response_due_at, ticket.resolution_due_at = compute_sla_targets(
            ticket.priority, ticket.created_at
        )

    if "status" in changes and ticket.status != previous_status:
        now = _now()
        if ticket.status == "RESOLVED":
            ticket.resolved_at = now
            ticket.closed_at = None
        elif ticket.status == "CLOSED":
            ticket.closed_at = now
            if ticket.resolved_at is None:
                ticket.resolved_at = now
        else:
            ticket.resolved_at = None
            ticket.closed_at = None

    action = "TICKET_CLOSED" if changes.get("status") == "CLOSED" else "TICKET_UPDATED"
    _audit(ticket, action, actor.id, {
        "before": before,
        "after": {k: getattr(ticket, k) for k in changes},
    })
    if ticket.created_by_user_id != actor.id:
        NotificationService.notify_user(
            tenant_id=ticket.tenant_id, user_id=ticket.created_by_user_id,
            kind="ticket.updated", title=f"Ticket {ticket.code} updated ({ticket.status})",
            entity_type="ticket", entity_id=ticket.id,
        )
    _publish(ticket, "ticket.updated",
             {"ticket_id": ticket.id, "code": ticket.code, "status": ticket.status},
             [ticket.created_by_user_id, ticket.assigned_to_user_id])
    db.session.commit()
    logger.info("Ticket %s updated: %s", ticket.code, ", ".join(sorted(changes)),
                extra={"tenant_id": ticket.tenant_id, "entity_id": ticket.id, "action": action})
    return ticket


# ── Request links ────────────────────────────────────────────────────────────

def _link(ticket: Ticket, actor: User, request_id: int) -> TicketRequestLink:
    req = Request.get_for_tenant(actor.tenant_id, request_id)
    if req is None or (not is_ticket_manager(actor) and req.requested_by_user_id != actor.id):
        raise NotFoundError("Request", request_id, actor.tenant_id)
    link = TicketRequestLink.query.filter_by(ticket_id=ticket.id, request_id=req.id).first()
    if link is not None:
        return link
    link = TicketRequestLink(
        tenant_id=ticket.tenant_id, ticket_id=ticket.id,
        request_id=req.id, linked_by_user_id=actor.id,
    )
    db.session.add(link)
    db.session.add(TicketMessage(
        tenant_id=ticket.tenant_id, ticket_id=ticket.id, author_user_id=actor.id,
        body=f"Request linked: {req.gtmi_number}.",
    ))
    _audit(ticket, "REQUEST_LINKED", actor.id, {"request_id": req.id, "gtmi_number": req.gtmi_number})
    db.session.flush()
    return link


def link_request(actor: User, ticket_id: int, request_id: int) -> Ticket:
    """Staff link any request; the ticket creator may link their own requests."""
    ticket = get_ticket(actor, ticket_id)
    if not is_ticket_manager(actor) and ticket.created_by_user_id != actor.id:
        raise PermissionDenied(actor.id, "tickets.manage")
    _link(ticket, actor, request_id)
    db.session.commit()
    return ticket


def unlink_request(actor: User, ticket_id: int, request_id: int) -> Ticket:
    ticket = get_ticket(actor, ticket_id)
    if not is_ticket_manager(actor):
        raise PermissionDenied(actor.id, "tickets.manage")
    link = TicketRequestLink.query.filter_by(ticket_id=ticket.id, request_id=request_id).first()
    if link is None:
        raise NotFoundError("TicketRequestLink", request_id, actor.tenant_id)
    gtmi_number = db.session.get(Request, request_id).gtmi_number
    db.session.delete(link)
    db.session.add(TicketMessage(
        tenant_id=ticket.tenant_id, ticket_id=ticket.id, author_user_id=actor.id,
        body=f"Request unlinked: {gtmi_number}.",
    ))
    _audit(ticket, "REQUEST_UNLINKED", actor.id, {"request_id": request_id, "gtmi_number": gtmi_number})
    db.session.commit()
    db.session.refresh(ticket)
    return ticket


# ── Messages ─────────────────────────────────────────────────────────────────

def add_message(actor: User, ticket_id: int, body: str) -> TicketMessage:
    ticket = get_ticket(actor, ticket_id)
    body = (body or "").strip()
    if not body:
        raise ValidationError("body is required", details={"body": "required"})
    if ticket.status == "CLOSED":
        raise StateConflictError(f"Ticket {ticket.code} is closed and accepts no new messages")

    message = TicketMessage(
        tenant_id=ticket.tenant_id, ticket_id=ticket.id, author_user_id=actor.id, body=body,
    )
    db.session.add(message)
    if (
        ticket.first_response_at is None
        and actor.id != ticket.created_by_user_id
        and is_ticket_manager(actor)
    ):
        ticket.first_response_at = _now()
        if ticket.status == "OPEN":
            ticket.status = "IN_PROGRESS"
    db.session.flush()
    _audit(ticket, "MESSAGE_CREATED", actor.id, {"message_id": message.id})

    for uid in {ticket.created_by_user_id, ticket.assigned_to_user_id} - {actor.id, None}:
        NotificationService.notify_user(
            tenant_id=ticket.tenant_id, user_id=uid, kind="ticket.message",
            title=f"New message on ticket {ticket.code}", message=body[:200],
            entity_type="ticket", entity_id=ticket.id,
        )
    _publish(ticket, "ticket.message",
             {"ticket_id": ticket.id, "code": ticket.code, "message_id": message.id},
             [ticket.created_by_user_id, ticket.assigned_to_user_id])
    db.session.commit()
    return message


# ── SLA escalation ───────────────────────────────────────────────────────────

def _cooldown_minutes() -> int:
    return current_app.config.get("TICKET_ESCALATION_COOLDOWN_MINUTES", DEFAULT_COOLDOWN_MINUTES)


def escalate_overdue(tenant_id: int, now: datetime | None = None) -> list[str]:
    """Escalate every open ticket whose first response or resolution is overdue.

    Returns:
        Codes of the tickets escalated in this run.
    """
    now = to_utc(now) if now else _now()
    cooldown = timedelta(minutes=_cooldown_minutes())
    candidates = (
        Ticket.query_for_tenant(tenant_id)
        .filter(~Ticket.status.in_(TERMINAL_STATUSES))
        .filter(or_(
            Ticket.first_response_at.is_(None) & (Ticket.first_response_due_at < now),
            Ticket.resolution_due_at < now,
        ))
        .order_by(Ticket.id.asc())
        .all()
    )

    escalated = []
    for ticket in candidates:
        first_breached = (
            ticket.first_response_at is None
            and ticket.first_response_due_at is not None
            and to_utc(ticket.first_response_due_at) < now
        )
        resolution_breached = (
            ticket.resolution_due_at is not None and to_utc(ticket.resolution_due_at) < now
        )
        if not (first_breached or resolution_breached):
            continue
        if ticket.last_escalated_at and now - to_utc(ticket.last_escalated_at) < cooldown:
            continue

        reason = ("Escalated automatically: first response SLA breached."
                  if first_breached else
                  "Escalated automatically: resolution SLA breached.")
        ticket.level = next_level(ticket.level)
        ticket.status = "ESCALATED"
        ticket.escalation_reason = (
            f"{ticket.escalation_reason}\n{reason}" if ticket.escalation_reason else reason
        )
        if ticket.sla_breached_at is None:
            ticket.sla_breached_at = now
        ticket.last_escalated_at = now
        ticket.escalation_count = (ticket.escalation_count or 0) + 1
        _audit(ticket, "SLA_ESCALATED", None, {
            "level": ticket.level,
            "first_response_breached": first_breached,
            "resolution_breached": resolution_breached,
        })

        title = f"Ticket {ticket.code} escalated automatically"
        message = f"{ticket.title} was escalated to {ticket.level} after an SLA breach."
        NotificationService.notify_admins(
            tenant_id=tenant_id, kind="ticket.escalated", title=title, message=message,
            entity_type="ticket", entity_id=ticket.id,
        )
        for uid in {ticket.created_by_user_id, ticket.assigned_to_user_id} - {None}:
            NotificationService.notify_user(
                tenant_id=tenant_id, user_id=uid, kind="ticket.escalated",
                title=title, message=message, entity_type="ticket", entity_id=ticket.id,
            )
        _publish(ticket, "ticket.escalated",
                 {"ticket_id": ticket.id, "code": ticket.code, "level": ticket.level, "reason": reason},
                 [ticket.created_by_user_id, ticket.assigned_to_user_id])
        escalated.append(ticket.code)

    db.session.commit()
    if escalated:
        logger.info("Escalated %d ticket(s): %s", len(escalated), ", ".join(escalated),
                    extra={"tenant_id": tenant_id})
    return escalated
