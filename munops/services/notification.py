"""
Municipal Operations Back-Office
Notification Service.

Writes in-app notification rows and queues a ``notification.created``
realtime event for each one.  Nothing here commits: rows join the caller's
transaction and the realtime event is released only after that commit.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import or_

from munops.models import db
from munops.models.notification import Notification
from munops.services.realtime import build_event, publish_after_commit

logger = logging.getLogger(__name__)


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def notify_admins(*, tenant_id, kind, title, message="", entity_type="", entity_id=None):
        """Create a notification addressed to the ADMIN audience."""
        notif = Notification(
            tenant_id=tenant_id,
            recipient_role="ADMIN",
            kind=kind,
            title=title,
            message=message,
            entity_type=entity_type,
            entity_id=entity_id,
        )
        db.session.add(notif)
        db.session.flush()
        publish_after_commit(build_event(
            "notification.created", tenant_id, notif.to_dict(), audience="ADMIN",
        ))
        return notif

    @staticmethod
    def notify_user(*, tenant_id, user_id, kind, title, message="", entity_type="", entity_id=None):
        """Create a notification for a single user.  ``user_id=None`` is a no-op."""
        if user_id is None:
            return None
        notif = Notification(
            tenant_id=tenant_id,
            recipient_user_id=user_id,
            kind=kind,
            title=title,
            message=message,
            entity_type=entity_type,
            entity_id=entity_id,
        )
        db.session.add(notif)
        db.session.flush()
        publish_after_commit(build_event(
            "notification.created", tenant_id, notif.to_dict(), audience="USER", user_id=user_id,
        ))
        return notif

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def _visible_query(user):
        return Notification.query_for_tenant(user.tenant_id).filter(
            or_(
                Notification.recipient_user_id == user.id,
                Notification.recipient_role == user.role,
            )
        )

    @staticmethod
    def list_for_user(user, unread_only=False, limit=50, offset=0):
        """Notifications visible to *user*: unread first, newest first."""
        q = NotificationService._visible_query(user)
        if unread_only:
            q = q.filter(Notification.is_read.is_(False))
        total = q.count()
        items = (
            q.order_by(Notification.is_read.asc(), Notification.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return items, total

    @staticmethod
    def unread_count(user):
        return NotificationService._visible_query(user).filter(
            Notification.is_read.is_(False)
        ).count()

    # ── Update ────────────────────────────────────────────────────────────

    @staticmethod
    def mark_read(user, notification_id):
        """Mark one visible notification read. Returns it, or None if not visible.

        Flushes only; the caller commits.
        """
        notif = NotificationService._visible_query(user).filter(
            Notification.id == notification_id
        ).first()
        if notif is None:
            return None
        if not notif.is_read:
            notif.mark_read()
            db.session.flush()
        return notif

    @staticmethod
    def mark_all_read(user):
        """Mark every visible notification read. Returns count updated."""
        now = datetime.now(timezone.utc)
        unread = NotificationService._visible_query(user).filter(
            Notification.is_read.is_(False)
        ).all()
        for n in unread:
            n.is_read = True
            n.read_at = now
        db.session.flush()
        logger.info(
            "Marked %d notifications read", len(unread),
            extra={"tenant_id": user.tenant_id},
        )
        return len(unread)
