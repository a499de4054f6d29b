"""
ERP Approval Workflow Engine
Notification Service.

Central service for queueing, delivering and querying in-app notifications.

Approval and delegation services never write ``Notification`` rows
directly: they ``enqueue`` into the outbox inside their own transaction and
the outbox is drained after commit by ``dispatch_pending`` (inline from the
decision processor, or from the ``notification_outbox_dispatch`` job).
"""

import logging
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from app.models import db
from app.models.notification import (
    NOTIFICATION_TYPES,
    OUTBOX_DELIVERED,
    OUTBOX_FAILED,
    OUTBOX_MAX_ATTEMPTS,
    OUTBOX_PENDING,
    Notification,
    NotificationOutbox,
)
from app.services import org_directory

logger = logging.getLogger(__name__)


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Outbox ────────────────────────────────────────────────────────────

    @staticmethod
    def enqueue(*, recipient_id, type, title, message="", ref_type="", ref_id=None, link=None):
        """
        Queue one notification.  Does not commit; the row becomes visible
        together with the state change that produced it.
        """
        if type not in NOTIFICATION_TYPES:
            raise ValueError(f"Unknown notification type: {type}")
        entry = NotificationOutbox(
            recipient_id=recipient_id,
            type=type,
            title=title,
            message=message,
            ref_type=ref_type,
            ref_id=str(ref_id) if ref_id is not None else None,
            link=link,
        )
        db.session.add(entry)
        return entry

    @staticmethod
    def enqueue_many(recipient_ids, **kwargs):
        """Queue the same notification for several recipients (duplicates dropped)."""
        entries = []
        for rid in dict.fromkeys(r for r in recipient_ids if r is not None):
            entries.append(NotificationService.enqueue(recipient_id=rid, **kwargs))
        return entries

    @staticmethod
    def dispatch_pending(limit=200):
        """
        Move pending outbox rows into ``notifications``.

        Rows whose recipient no longer exists are retried up to
        ``OUTBOX_MAX_ATTEMPTS`` times, then marked FAILED.

        Returns:
            Dict with delivered / failed / remaining counts.
        """
        pending = (
            NotificationOutbox.query
            .filter_by(status=OUTBOX_PENDING)
            .order_by(NotificationOutbox.id)
            .limit(limit)
            .all()
        )
        known = org_directory.existing_employee_ids(p.recipient_id for p in pending)
        now = datetime.now(timezone.utc)
        delivered = failed = 0

        for entry in pending:
            entry.attempts = (entry.attempts or 0) + 1
            if entry.recipient_id not in known:
                entry.last_error = f"recipient {entry.recipient_id} not found"
                if entry.attempts >= OUTBOX_MAX_ATTEMPTS:
                    entry.status = OUTBOX_FAILED
                    failed += 1
                continue
            db.session.add(Notification(
                recipient_id=entry.recipient_id,
                type=entry.type,
                title=entry.title,
                message=entry.message,
                ref_type=entry.ref_type,
                ref_id=entry.ref_id,
                link=entry.link,
            ))
            entry.status = OUTBOX_DELIVERED
            entry.delivered_at = now
            delivered += 1

        db.session.commit()
        remaining = NotificationOutbox.query.filter_by(status=OUTBOX_PENDING).count()
        if pending:
            logger.info("Outbox dispatch: delivered=%d failed=%d remaining=%d",
                        delivered, failed, remaining)
        return {"delivered": delivered, "failed": failed, "remaining": remaining}

    @staticmethod
    def dispatch_after_commit():
        """
        Drain the outbox right after a business commit when
        ``NOTIFICATION_DISPATCH_INLINE`` is on.  Failures are logged and left
        for the scheduled dispatcher; the committed change is never undone.
        """
        if not current_app.config.get("NOTIFICATION_DISPATCH_INLINE", True):
            return None
        try:
            return NotificationService.dispatch_pending()
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Inline outbox dispatch failed; rows stay PENDING")
            return None

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_recipient(recipient_id, unread_only=False, limit=50, offset=0):
        """
        Retrieve notifications for a recipient, newest first.
        """
        q = Notification.query.filter_by(recipient_id=recipient_id)
        if unread_only:
            q = q.filter_by(is_read=False)
        total = q.count()
        items = (
            q.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(offset).limit(limit).all()
        )
        return items, total

    @staticmethod
    def unread_count(recipient_id):
        """Return count of unread notifications."""
        return Notification.query.filter_by(recipient_id=recipient_id, is_read=False).count()

    # ── Actions ───────────────────────────────────────────────────────────

    @staticmethod
    def mark_read(notification_id, recipient_id=None):
        """Mark a single notification as read."""
        notif = db.session.get(Notification, notification_id)
        if notif and (recipient_id is None or notif.recipient_id == recipient_id):
            notif.mark_read()
            db.session.commit()
            return notif
        return None

    @staticmethod
    def mark_all_read(recipient_id):
        """Mark all notifications for a recipient as read."""
        now = datetime.now(timezone.utc)
        count = (
            Notification.query
            .filter_by(recipient_id=recipient_id, is_read=False)
            .update({"is_read": True, "read_at": now}, synchronize_session="fetch")
        )
        db.session.commit()
        return count
