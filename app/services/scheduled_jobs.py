"""
ERP Approval Workflow Engine
Scheduled Jobs.

Concrete job implementations that run on a schedule.

Jobs:
    - notification_outbox_dispatch: Delivers queued approval/delegation notifications
    - stale_notification_cleanup: Deletes old read notifications and delivered outbox rows
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from app.models import db
from app.models.notification import OUTBOX_DELIVERED, Notification, NotificationOutbox
from app.services.notification import NotificationService
from app.services.scheduler_service import register_job

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job 1: Notification Outbox Dispatch
# ═══════════════════════════════════════════════════════════════════════════

@register_job("notification_outbox_dispatch", every=timedelta(seconds=30))
def dispatch_notification_outbox(app) -> dict[str, Any]:
    """Deliver pending outbox rows into the notifications table."""
    batch = app.config.get("NOTIFICATION_DISPATCH_BATCH", 200)
    totals = {"delivered": 0, "failed": 0, "remaining": 0, "batches": 0}
    while True:
        result = NotificationService.dispatch_pending(limit=batch)
        totals["batches"] += 1
        totals["delivered"] += result["delivered"]
        totals["failed"] += result["failed"]
        totals["remaining"] = result["remaining"]
        # rows stuck below max attempts stay PENDING; stop once a batch makes no progress
        if not result["remaining"] or not (result["delivered"] or result["failed"]):
            break
    return totals


# ═══════════════════════════════════════════════════════════════════════════
#  Job 2: Stale Notification Cleanup
# ═══════════════════════════════════════════════════════════════════════════

@register_job("stale_notification_cleanup", every=timedelta(days=1))
def cleanup_stale_notifications(app) -> dict[str, Any]:
    """Delete read notifications and delivered outbox rows older than 30 days."""
    cutoff = datetime.now(timezone.utc) - timedelta(days=app.config.get("NOTIFICATION_RETENTION_DAYS", 30))

    deleted = Notification.query.filter(
        Notification.is_read.is_(True),
        Notification.read_at < cutoff,
    ).delete(synchronize_session="fetch")
    purged = NotificationOutbox.query.filter(
        NotificationOutbox.status == OUTBOX_DELIVERED,
        NotificationOutbox.delivered_at < cutoff,
    ).delete(synchronize_session="fetch")

    db.session.commit()
    logger.info("Stale notification cleanup: deleted %d notifications, %d outbox rows", deleted, purged)
    return {"deleted": deleted, "outbox_purged": purged, "cutoff": cutoff.isoformat()}
