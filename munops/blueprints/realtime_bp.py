"""
Realtime Blueprint — Server-Sent Events stream of the caller's tenant events.

    GET /api/v1/realtime/stream

Frames:
    event: ready          sent once on connect
    : ping                heartbeat every REALTIME_HEARTBEAT_SECONDS
    event: <type>         one per delivered envelope, data = JSON envelope
"""

import logging

from flask import Blueprint, Response, current_app, stream_with_context

from munops.blueprints import current_actor, register_error_handlers
from munops.services.realtime import bus, format_sse

logger = logging.getLogger(__name__)

realtime_bp = Blueprint("realtime", __name__, url_prefix="/api/v1/realtime")
register_error_handlers(realtime_bp)


@realtime_bp.route("/stream", methods=["GET"])
def stream():
    actor = current_actor()
    heartbeat = current_app.config.get("REALTIME_HEARTBEAT_SECONDS", 15)
    sub = bus.subscribe(tenant_id=actor.tenant_id, user_id=actor.id, is_admin=actor.is_admin)
    logger.info("Realtime stream opened", extra={"tenant_id": actor.tenant_id, "user_id": actor.id})

    def generate():
        try:
            yield format_sse("ready", {"tenant_id": actor.tenant_id, "user_id": actor.id})
            while True:
                event = sub.get(timeout=heartbeat)
                if event is None:
                    yield ": ping\n\n"
                    continue
                yield format_sse(event["type"], event)
        finally:
            bus.unsubscribe(sub)
            logger.info("Realtime stream closed", extra={"tenant_id": sub.tenant_id, "user_id": sub.user_id})

    return Response(
        stream_with_context(generate()),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
