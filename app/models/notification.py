"""
ERP Approval Workflow Engine
Notification domain model.

Models:
    - Notification: in-app notification record with read tracking
    - NotificationOutbox: pending delivery written inside business transactions
    - ApprovalCCSetting: employees copied when an approval flow completes
"""

from datetime import datetime, timezone

from app.models import db


# ── Constants ────────────────────────────────────────────────────────────────

NOTIFICATION_TYPES = {
    "DELEGATION_REQUEST",
    "DELEGATION_ACCEPTED",
    "DELEGATION_REJECTED",
    "DELEGATION_CANCELLED",
    "APPROVAL_REQUEST",
    "APPROVAL_APPROVED",
    "APPROVAL_REJECTED",
    "APPROVAL_CC",
    "APPROVAL_CANCELLED",
}

OUTBOX_PENDING = "PENDING"
OUTBOX_DELIVERED = "DELIVERED"
OUTBOX_FAILED = "FAILED"
OUTBOX_STATUSES = {OUTBOX_PENDING, OUTBOX_DELIVERED, OUTBOX_FAILED}

OUTBOX_MAX_ATTEMPTS = 5


class Notification(db.Model):
    """
    In-app notification entity.

    One record per recipient per event.
    """

    __tablename__ = "notifications"
    __table_args__ = (
        db.Index("idx_notification_recipient_read", "recipient_id", "is_read"),
    )

    id = db.Column(db.Integer, primary_key=True)
    recipient_id = db.Column(
        db.Integer, db.ForeignKey("employees.id", ondelete="CASCADE"), nullable=False,
    )
    type = db.Column(db.String(40), nullable=False)
    title = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, default="")

    # Link to source entity
    ref_type = db.Column(db.String(30), default="", comment="delegation / flow_execution")
    ref_id = db.Column(db.String(64), nullable=True)
    link = db.Column(db.String(300), nullable=True)

    # Read tracking
    is_read = db.Column(db.Boolean, default=False)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def mark_read(self):
        self.is_read = True
        self.read_at = datetime.now(timezone.utc)

    def to_dict(self):
        return {
            "id": self.id,
            "recipient_id": self.recipient_id,
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "ref_type": self.ref_type,
            "ref_id": self.ref_id,
            "link": self.link,
            "is_read": self.is_read,
            "read_at": self.read_at.isoformat() if self.read_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Notification {self.id}: {self.title[:40]}>"


class NotificationOutbox(db.Model):
    """
    Transactional outbox row.

    Written in the same transaction as the state change that caused it and
    drained into ``Notification`` rows after commit (or by the scheduled
    dispatcher).  Delivery is at-least-once.
    """

    __tablename__ = "notification_outbox"
    __table_args__ = (
        db.Index("idx_outbox_status", "status", "id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    recipient_id = db.Column(db.Integer, nullable=False)
    type = db.Column(db.String(40), nullable=False)
    title = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, default="")
    ref_type = db.Column(db.String(30), default="")
    ref_id = db.Column(db.String(64), nullable=True)
    link = db.Column(db.String(300), nullable=True)

    status = db.Column(db.String(20), nullable=False, default=OUTBOX_PENDING)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "recipient_id": self.recipient_id,
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "ref_type": self.ref_type,
            "ref_id": self.ref_id,
            "link": self.link,
            "status": self.status,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
        }

    def __repr__(self):
        return f"<NotificationOutbox {self.id}: {self.type}→{self.recipient_id} {self.status}>"


class ApprovalCCSetting(db.Model):
    """
    CC recipients for completed approvals.

    ``company_id`` NULL holds the group-wide default; a company row
    overrides it.
    """

    __tablename__ = "approval_cc_settings"

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(
        db.Integer, db.ForeignKey("companies.id", ondelete="CASCADE"), nullable=True, unique=True,
    )
    cc_employee_ids = db.Column(db.JSON, nullable=False, default=list)
    updated_by_id = db.Column(db.Integer, db.ForeignKey("employees.id", ondelete="SET NULL"), nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "company_id": self.company_id,
            "cc_employee_ids": list(self.cc_employee_ids or []),
            "updated_by_id": self.updated_by_id,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<ApprovalCCSetting company={self.company_id} {len(self.cc_employee_ids or [])} cc>"
