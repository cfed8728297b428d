"""
Roster Governance Engine
Notification Service.

Creates in-app notification records summarising resolutions, rejections
and import runs.  Delivery happens elsewhere; a failure here is logged and
never blocks the state transition that triggered it.
"""

import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from roster.models import db
from roster.models.notification import Notification

logger = logging.getLogger(__name__)


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def create(*, title, message="", category="system", severity="info",
               recipient="all", entity_type="", entity_id=None):
        """
        Create a single notification record.

        Uses ``flush`` so the caller keeps transaction control.
        """
        notif = Notification(
            recipient=recipient,
            title=title,
            message=message,
            category=category,
            severity=severity,
            entity_type=entity_type,
            entity_id=str(entity_id) if entity_id is not None else None,
        )
        db.session.add(notif)
        db.session.flush()
        return notif

    @staticmethod
    def broadcast(*, title, message="", category="system", severity="info",
                  entity_type="", entity_id=None, recipients=None):
        """
        Send a notification to multiple recipients (or 'all' if none given).

        Returns:
            List of created Notification instances.
        """
        targets = recipients or ["all"]
        return [
            NotificationService.create(
                title=title, message=message, category=category, severity=severity,
                recipient=r, entity_type=entity_type, entity_id=entity_id,
            )
            for r in targets
        ]

    @staticmethod
    def notify_quietly(**kwargs) -> bool:
        """Best-effort ``broadcast`` inside a savepoint.

        Returns False (and logs) instead of raising when the write fails.
        """
        try:
            with db.session.begin_nested():
                NotificationService.broadcast(**kwargs)
            return True
        except SQLAlchemyError:
            logger.warning(
                "Notification not recorded: %s", kwargs.get("title"),
                exc_info=True,
            )
            return False

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_recipient(recipient="all", unread_only=False, limit=50, offset=0):
        """
        Retrieve notifications for a recipient (plus broadcasts), newest first.
        """
        stmt = select(Notification).where(Notification.recipient.in_([recipient, "all"]))
        if unread_only:
            stmt = stmt.where(Notification.is_read.is_(False))
        stmt = stmt.order_by(Notification.created_at.desc(), Notification.id.desc())
        return db.session.execute(stmt.limit(limit).offset(offset)).scalars().all()

    @staticmethod
    def mark_read(notification_id, recipient=None):
        """Mark one notification read; another recipient's notification counts as missing."""
        notif = db.session.get(Notification, notification_id)
        if not notif or (recipient is not None and notif.recipient not in (recipient, "all")):
            return None
        notif.mark_read()
        db.session.commit()
        return notif
