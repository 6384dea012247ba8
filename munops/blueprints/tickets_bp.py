"""
Support Ticket Blueprint.

Endpoints:
    GET    /api/v1/tickets                         list (status, priority, level)
    POST   /api/v1/tickets                         create
    GET    /api/v1/tickets/<id>                    detail with messages and audits
    PATCH  /api/v1/tickets/<id>                    staff update
    POST   /api/v1/tickets/<id>/messages           {body}
    POST   /api/v1/tickets/<id>/requests           {request_id} link
    DELETE /api/v1/tickets/<id>/requests/<rid>     unlink
    POST   /api/v1/tickets/sla/run                 escalate overdue tickets (admin)
"""

import logging

from flask import Blueprint, jsonify, request

from munops.blueprints import current_actor, paginate_query, register_error_handlers
from munops.core.exceptions import PermissionDenied
from munops.services import ticket_service
from munops.utils.errors import E, api_error
from munops.utils.helpers import clean_str

logger = logging.getLogger(__name__)

tickets_bp = Blueprint("tickets", __name__, url_prefix="/api/v1")
register_error_handlers(tickets_bp)


def _ticket_detail(ticket):
    d = ticket.to_dict(include_messages=True)
    d["audits"] = [a.to_dict() for a in ticket_service.ticket_audits(ticket)]
    return d


@tickets_bp.route("/tickets", methods=["GET"])
def list_tickets():
    query = ticket_service.list_tickets(
        current_actor(),
        status=request.args.get("status"),
        priority=request.args.get("priority"),
        level=request.args.get("level"),
    )
    items, total = paginate_query(query)
    return jsonify({"items": [t.to_dict() for t in items], "total": total})


@tickets_bp.route("/tickets", methods=["POST"])
def create_ticket():
    """Body: {title, description?, type?, priority?, requesting_service_id?, request_id?}"""
    data = request.get_json(silent=True) or {}
    if not clean_str(data.get("title")):
        return api_error(E.VALIDATION_REQUIRED, "title is required")
    ticket = ticket_service.create_ticket(current_actor(), {
        "title": clean_str(data.get("title"), 300),
        "description": clean_str(data.get("description")),
        "type": clean_str(data.get("type")),
        "priority": clean_str(data.get("priority")),
        "requesting_service_id": data.get("requesting_service_id"),
        "request_id": data.get("request_id"),
    })
    return jsonify(_ticket_detail(ticket)), 201


@tickets_bp.route("/tickets/<int:ticket_id>", methods=["GET"])
def get_ticket(ticket_id):
    ticket = ticket_service.get_ticket(current_actor(), ticket_id)
    return jsonify(_ticket_detail(ticket))


@tickets_bp.route("/tickets/<int:ticket_id>", methods=["PATCH"])
def update_ticket(ticket_id):
    data = request.get_json(silent=True) or {}
    ticket = ticket_service.update_ticket(current_actor(), ticket_id, data)
    return jsonify(_ticket_detail(ticket))


@tickets_bp.route("/tickets/<int:ticket_id>/messages", methods=["POST"])
def add_message(ticket_id):
    data = request.get_json(silent=True) or {}
    body = clean_str(data.get("body"), 10000)
    if not body:
        return api_error(E.VALIDATION_REQUIRED, "body is required")
    message = ticket_service.add_message(current_actor(), ticket_id, body)
    return jsonify(message.to_dict()), 201


@tickets_bp.route("/tickets/<int:ticket_id>/requests", methods=["POST"])
def link_request(ticket_id):
    data = request.get_json(silent=True) or {}
    request_id = data.get("request_id")
    if not isinstance(request_id, int):
        return api_error(E.VALIDATION_REQUIRED, "request_id is required")
    ticket = ticket_service.link_request(current_actor(), ticket_id, request_id)
    return jsonify(_ticket_detail(ticket))


@tickets_bp.route("/tickets/<int:ticket_id>/requests/<int:request_id>", methods=["DELETE"])
def unlink_request(ticket_id, request_id):
    ticket = ticket_service.unlink_request(current_actor(), ticket_id, request_id)
    return jsonify(_ticket_detail(ticket))


@tickets_bp.route("/tickets/sla/run", methods=["POST"])
def run_sla_escalation():
    actor = current_actor()
    if not actor.is_admin:
        raise PermissionDenied(actor.id, "admin")
    escalated = ticket_service.escalate_overdue(actor.tenant_id)
    return jsonify({"escalated": escalated, "count": len(escalated)})
