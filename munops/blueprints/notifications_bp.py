"""
Notification Blueprint — the caller's in-app inbox.

Endpoints:
    GET    /api/v1/notifications                 ?unread_only=1&limit=&offset=
    GET    /api/v1/notifications/unread-count
    POST   /api/v1/notifications/<id>/read
    POST   /api/v1/notifications/read-all
"""

import logging

from flask import Blueprint, jsonify, request

from munops.blueprints import current_actor, register_error_handlers
from munops.core.exceptions import NotFoundError
from munops.services.notification import NotificationService
from munops.utils.helpers import db_commit_or_error

logger = logging.getLogger(__name__)

notifications_bp = Blueprint("notifications", __name__, url_prefix="/api/v1/notifications")
register_error_handlers(notifications_bp)


@notifications_bp.route("", methods=["GET"])
def list_notifications():
    actor = current_actor()
    unread_only = request.args.get("unread_only", "").lower() in ("1", "true", "yes")
    limit = max(1, min(request.args.get("limit", 50, type=int), 200))
    offset = max(request.args.get("offset", 0, type=int), 0)
    items, total = NotificationService.list_for_user(actor, unread_only, limit, offset)
    return jsonify({
        "items": [n.to_dict() for n in items],
        "total": total,
        "unread_count": NotificationService.unread_count(actor),
    })


@notifications_bp.route("/unread-count", methods=["GET"])
def unread_count():
    return jsonify({"unread_count": NotificationService.unread_count(current_actor())})


@notifications_bp.route("/<int:notification_id>/read", methods=["POST"])
def mark_read(notification_id):
    actor = current_actor()
    notif = NotificationService.mark_read(actor, notification_id)
    if notif is None:
        raise NotFoundError("Notification", notification_id, actor.tenant_id)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(notif.to_dict())


@notifications_bp.route("/read-all", methods=["POST"])
def mark_all_read():
    count = NotificationService.mark_all_read(current_actor())
    err = db_commit_or_error()
    if err:
        return err
    return jsonify({"updated": count})
