"""
Realtime event bus — in-process publish/subscribe feeding the SSE stream.

Every published event is an envelope:

    {
        "id": "<uuid4 hex>",
        "type": "request.status_changed",
        "tenant_id": 1,
        "audience": "ADMIN" | "USER" | "ALL",
        "user_id": 7 | None,
        "created_at": "2026-01-01T00:00:00+00:00",
        "payload": {...}
    }

Delivery rules (``can_deliver``):
  - tenant must match
  - ADMIN subscribers receive everything in their tenant
  - ADMIN-audience events are hidden from everyone else
  - events without user_id go to every subscriber
  - otherwise only the addressed user receives the event

Services never publish directly while a transaction is open: they call
``publish_after_commit`` and the envelope is released by the session's
``after_commit`` hook, or dropped on rollback.

Usage:
    from munops.services.realtime import bus, build_event, publish_after_commit

    publish_after_commit(build_event("request.status_changed", tenant_id, {...}))
"""

import json
import logging
import queue
import threading
import uuid
from datetime import datetime, timezone

from sqlalchemy import event as sa_event
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

AUDIENCES = ("ADMIN", "USER", "ALL")
SUBSCRIBER_QUEUE_SIZE = 500

_PENDING_KEY = "munops_pending_realtime"


def build_event(
    event_type: str,
    tenant_id: int,
    payload: dict | None = None,
    *,
    audience: str = "ALL",
    user_id: int | None = None,
) -> dict:
    """Build a realtime envelope."""
    if audience not in AUDIENCES:
        raise ValueError(f"Unknown audience: {audience}")
    return {
        "id": uuid.uuid4().hex,
        "type": event_type,
        "tenant_id": tenant_id,
        "audience": audience,
        "user_id": user_id,
        "created_at": datetime.now(timezone.utc).isoformat(),
        "payload": payload or {},
    }


def can_deliver(event: dict, *, tenant_id: int, user_id: int, is_admin: bool) -> bool:
    """Decide whether *event* is visible to a subscriber."""
    if event.get("tenant_id") != tenant_id:
        return False
    if is_admin:
        return True
    if event.get("audience") == "ADMIN":
        return False
    target = event.get("user_id")
    if target is None:
        return True
    return target == user_id


def format_sse(event_type: str, data: dict) -> str:
    """Serialise one Server-Sent-Events frame."""
    return f"event: {event_type}\ndata: {json.dumps(data, default=str)}\n\n"


class Subscription:
    """One connected SSE client."""

    def __init__(self, tenant_id: int, user_id: int, is_admin: bool, maxsize: int):
        self.id = uuid.uuid4().hex
        self.tenant_id = tenant_id
        self.user_id = user_id
        self.is_admin = is_admin
        self.queue: queue.Queue = queue.Queue(maxsize=maxsize)

    def get(self, timeout: float):
        """Next event or None after *timeout* seconds."""
        try:
            return self.queue.get(timeout=timeout)
        except queue.Empty:
            return None


class RealtimeBus:
    """Thread-safe fan-out of envelopes to subscriber queues."""

    def __init__(self, queue_size: int = SUBSCRIBER_QUEUE_SIZE):
        self._lock = threading.Lock()
        self._subscribers: dict[str, Subscription] = {}
        self._queue_size = queue_size

    def subscribe(self, *, tenant_id: int, user_id: int, is_admin: bool) -> Subscription:
        sub = Subscription(tenant_id, user_id, is_admin, self._queue_size)
        with self._lock:
            self._subscribers[sub.id] = sub
        logger.debug("Realtime subscriber added", extra={"tenant_id": tenant_id})
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            self._subscribers.pop(sub.id, None)

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, event: dict) -> int:
        """Deliver *event* to every matching subscriber. Returns delivery count."""
        with self._lock:
            targets = [
                s for s in self._subscribers.values()
                if can_deliver(event, tenant_id=s.tenant_id, user_id=s.user_id, is_admin=s.is_admin)
            ]
        delivered = 0
        for sub in targets:
            try:
                sub.queue.put_nowait(event)
                delivered += 1
            except queue.Full:
                logger.warning(
                    "Realtime queue full, dropping %s for subscriber %s",
                    event.get("type"), sub.id, extra={"tenant_id": sub.tenant_id},
                )
        return delivered

    def reset(self) -> None:
        with self._lock:
            self._subscribers.clear()


bus = RealtimeBus()


# ── Transaction-bound publishing ─────────────────────────────────────────────

def publish_after_commit(event: dict, session=None) -> None:
    """Queue *event* on the session; it is published once the commit succeeds."""
    if session is None:
        from munops.models import db
        session = db.session()
    session.info.setdefault(_PENDING_KEY, []).append(event)


@sa_event.listens_for(Session, "after_commit")
def _release_pending(session):
    pending = session.info.pop(_PENDING_KEY, None)
    for evt in pending or ():
        bus.publish(evt)


@sa_event.listens_for(Session, "after_rollback")
def _drop_pending(session):
    session.info.pop(_PENDING_KEY, None)
