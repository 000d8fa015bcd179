"""
Trade Ops Core
Notification Service.

Central service for creating and querying in-app notifications raised by
state transitions, SLA sweeps and workflow pauses.

``notify`` only flushes: callers own the transaction.  ``send`` is the
fire-and-forget variant used where a failed notification must never stop
the caller; it isolates the insert in a SAVEPOINT and logs failures.
"""

import logging
from datetime import datetime, timezone

from app.models import db
from app.models.notification import Notification

logger = logging.getLogger(__name__)


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def notify(target, event_code, payload=None, *, title=None, category="workflow",
               severity="info", entity_type="", entity_id=None):
        """
        Create one notification for a role or user id.

        Returns:
            The flushed Notification instance.
        """
        payload = payload or {}
        notif = Notification(
            recipient=target or "all",
            event_code=event_code,
            title=title or _default_title(event_code, payload),
            payload=payload,
            category=category,
            severity=severity,
            entity_type=entity_type,
            entity_id=entity_id,
        )
        db.session.add(notif)
        db.session.flush()
        return notif

    @staticmethod
    def send(target, event_code, payload=None, **kwargs):
        """
        Fire-and-forget ``notify``.

        Returns:
            The Notification, or None when delivery failed (already logged).
        """
        try:
            with db.session.begin_nested():
                return NotificationService.notify(target, event_code, payload, **kwargs)
        except Exception:
            logger.exception(
                "Notification %s to %s failed", event_code, target,
                extra={"event_type": "notification_failed",
                       "entity_type": kwargs.get("entity_type"),
                       "entity_id": kwargs.get("entity_id")},
            )
            return None

    @staticmethod
    def broadcast(targets, event_code, payload=None, **kwargs):
        """Notify every target; returns the notifications that were created."""
        sent = []
        for target in targets or ["all"]:
            notif = NotificationService.send(target, event_code, payload, **kwargs)
            if notif is not None:
                sent.append(notif)
        return sent

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_recipient(recipient="all", unread_only=False, event_code=None,
                           limit=50, offset=0):
        """
        Retrieve notifications for a recipient, newest first.
        """
        q = Notification.query.filter(
            (Notification.recipient == recipient) | (Notification.recipient == "all")
        )
        if unread_only:
            q = q.filter_by(is_read=False)
        if event_code:
            q = q.filter_by(event_code=event_code)
        total = q.count()
        items = q.order_by(Notification.id.desc()).offset(offset).limit(limit).all()
        return items, total

    # ── Actions ───────────────────────────────────────────────────────────

    @staticmethod
    def mark_read(notification_id):
        """Mark a single notification as read."""
        notif = db.session.get(Notification, notification_id)
        if notif:
            notif.mark_read()
            db.session.commit()
        return notif

    @staticmethod
    def mark_all_read(recipient):
        """Mark all notifications for a recipient as read."""
        now = datetime.now(timezone.utc)
        count = (
            Notification.query
            .filter_by(recipient=recipient, is_read=False)
            .update({"is_read": True, "read_at": now}, synchronize_session="fetch")
        )
        db.session.commit()
        return count


def _default_title(event_code, payload):
    entity = payload.get("entity_kind") or payload.get("entity_type") or ""
    item_id = payload.get("item_id") or payload.get("entity_id")
    if entity and item_id is not None:
        return f"{event_code.replace('_', ' ').title()}: {entity} {item_id}"
    return event_code.replace("_", " ").title()
