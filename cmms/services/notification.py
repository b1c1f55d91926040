"""
Notification Service.

Creates and queries in-app notifications for permit and work-order
events. ``NotificationService`` raises on failure like any service;
``notify_user`` / ``notify_many`` are the best-effort wrappers used
after a primary mutation has committed.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import select

from cmms.core.exceptions import NotFoundError
from cmms.models import db
from cmms.models.notification import (
    NOTIFICATION_CATEGORIES,
    NOTIFICATION_SEVERITIES,
    Notification,
)

logger = logging.getLogger(__name__)


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def notify(user_id, message, *, tenant_id=None, title=None, category="permit",
               severity="info", entity_type="", entity_id=None):
        """
        Create a single notification record for ``user_id``.

        Returns:
            The created Notification instance (already committed).
        """
        if category not in NOTIFICATION_CATEGORIES:
            raise ValueError(f"Unknown notification category: {category}")
        if severity not in NOTIFICATION_SEVERITIES:
            raise ValueError(f"Unknown notification severity: {severity}")
        notif = Notification(
            tenant_id=tenant_id,
            recipient_user_id=int(user_id),
            title=title or message[:300],
            message=message,
            category=category,
            severity=severity,
            entity_type=entity_type,
            entity_id=entity_id,
        )
        db.session.add(notif)
        db.session.commit()
        return notif

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_recipient(user_id, *, tenant_id, unread_only=False, limit=50, offset=0):
        """Retrieve notifications for a recipient, newest first."""
        q = Notification.query.filter_by(tenant_id=tenant_id, recipient_user_id=user_id)
        if unread_only:
            q = q.filter_by(is_read=False)
        total = q.count()
        items = (
            q.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(offset).limit(limit).all()
        )
        return items, total

    @staticmethod
    def unread_count(user_id, *, tenant_id):
        """Return count of unread notifications."""
        return Notification.query.filter_by(
            tenant_id=tenant_id, recipient_user_id=user_id, is_read=False,
        ).count()

    # ── Actions ───────────────────────────────────────────────────────────

    @staticmethod
    def mark_read(notification_id, *, user_id, tenant_id):
        """Mark one of the recipient's notifications as read."""
        stmt = select(Notification).where(
            Notification.id == notification_id,
            Notification.tenant_id == tenant_id,
            Notification.recipient_user_id == user_id,
        )
        notif = db.session.execute(stmt).scalar_one_or_none()
        if notif is None:
            raise NotFoundError(resource="Notification", resource_id=notification_id)
        if not notif.is_read:
            notif.mark_read()
            db.session.commit()
        return notif


# ── Best-effort helpers ──────────────────────────────────────────────────────


def notify_user(user_id, message, **kwargs) -> bool:
    """Notify one user; failures are rolled back and logged, never raised."""
    if user_id is None:
        return False
    try:
        NotificationService.notify(user_id, message, **kwargs)
        return True
    except Exception:
        db.session.rollback()
        logger.exception(
            "Notification to user %s failed", user_id,
            extra={"tenant_id": kwargs.get("tenant_id"), "user_id": user_id},
        )
        return False


def notify_many(user_ids, message, **kwargs) -> int:
    """Notify each user independently. Returns the number delivered."""
    delivered = 0
    for user_id in user_ids or []:
        if notify_user(user_id, message, **kwargs):
            delivered += 1
    return delivered
