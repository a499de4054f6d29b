"""
ERP Approval Workflow Engine
Delegation domain model.

Models:
    - Delegation: time-bounded grant from a delegator to a delegate
    - DelegationPermission: one permission type carried by a delegation

Lifecycle:
    PENDING → ACCEPTED | REJECTED
    PENDING | ACCEPTED → CANCELLED
    REJECTED and CANCELLED are terminal.
"""

from datetime import datetime, timezone

from app.models import db
from app.utils.helpers import ensure_utc


# ── Constants ────────────────────────────────────────────────────────────────

DELEGATION_PENDING = "PENDING"
DELEGATION_ACCEPTED = "ACCEPTED"
DELEGATION_REJECTED = "REJECTED"
DELEGATION_CANCELLED = "CANCELLED"

DELEGATION_STATUSES = {
    DELEGATION_PENDING, DELEGATION_ACCEPTED, DELEGATION_REJECTED, DELEGATION_CANCELLED,
}
OPEN_DELEGATION_STATUSES = {DELEGATION_PENDING, DELEGATION_ACCEPTED}

DELEGATION_TRANSITIONS = {
    DELEGATION_PENDING: {DELEGATION_ACCEPTED, DELEGATION_REJECTED, DELEGATION_CANCELLED},
    DELEGATION_ACCEPTED: {DELEGATION_CANCELLED},
    DELEGATION_REJECTED: set(),
    DELEGATION_CANCELLED: set(),
}

# Permission type → (label, category)
PERMISSION_TYPES = {
    "APPROVE_LEAVE": ("代理審核請假", "approve"),
    "APPROVE_EXPENSE": ("代理審核費用核銷", "approve"),
    "APPROVE_SEAL": ("代理審核用印", "approve"),
    "APPROVE_CARD": ("代理審核名片", "approve"),
    "APPROVE_STATIONERY": ("代理審核文具", "approve"),
    "APPLY_LEAVE": ("代理申請請假", "apply"),
    "APPLY_EXPENSE": ("代理申請費用核銷", "apply"),
    "VIEW_REPORTS": ("代理查看報表", "view"),
}

MIN_CANCEL_REASON_LENGTH = 10


def validate_delegation_transition(current: str, target: str) -> bool:
    """Return True if moving a delegation from *current* to *target* is allowed."""
    return target in DELEGATION_TRANSITIONS.get(current, set())


class Delegation(db.Model):
    """
    Delegation of approval (and related) authority.

    At most one PENDING/ACCEPTED delegation may exist per
    (delegator, delegate, company); the partial unique index backs the
    service-level check under concurrent creates.
    """

    __tablename__ = "delegations"
    __table_args__ = (
        db.Index(
            "uq_delegation_open_pair",
            "delegator_id", "delegate_id", "company_id",
            unique=True,
            postgresql_where=db.text("status IN ('PENDING', 'ACCEPTED')"),
            sqlite_where=db.text("status IN ('PENDING', 'ACCEPTED')"),
        ),
        db.Index("idx_delegation_delegate_status", "delegate_id", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(
        db.Integer, db.ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    delegator_id = db.Column(
        db.Integer, db.ForeignKey("employees.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    delegate_id = db.Column(
        db.Integer, db.ForeignKey("employees.id", ondelete="CASCADE"), nullable=False,
    )
    created_by_id = db.Column(db.Integer, db.ForeignKey("employees.id", ondelete="SET NULL"), nullable=True)
    cancelled_by_id = db.Column(db.Integer, db.ForeignKey("employees.id", ondelete="SET NULL"), nullable=True)

    status = db.Column(db.String(20), nullable=False, default=DELEGATION_PENDING)
    start_date = db.Column(db.DateTime(timezone=True), nullable=False)
    end_date = db.Column(db.DateTime(timezone=True), nullable=True, comment="NULL = open-ended")

    responded_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    reject_reason = db.Column(db.Text, nullable=True)
    cancel_reason = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    permissions = db.relationship(
        "DelegationPermission", back_populates="delegation",
        cascade="all, delete-orphan", lazy="selectin",
    )
    delegator = db.relationship("Employee", foreign_keys=[delegator_id])
    delegate = db.relationship("Employee", foreign_keys=[delegate_id])

    @property
    def permission_types(self) -> list[str]:
        return sorted(p.permission_type for p in self.permissions)

    def is_active(self, now: datetime | None = None) -> bool:
        """ACCEPTED and *now* falls inside [start_date, end_date]."""
        if self.status != DELEGATION_ACCEPTED:
            return False
        now = ensure_utc(now or datetime.now(timezone.utc))
        if ensure_utc(self.start_date) > now:
            return False
        return self.end_date is None or ensure_utc(self.end_date) >= now

    def to_dict(self, include_people=False):
        d = {
            "id": self.id,
            "company_id": self.company_id,
            "delegator_id": self.delegator_id,
            "delegate_id": self.delegate_id,
            "created_by_id": self.created_by_id,
            "cancelled_by_id": self.cancelled_by_id,
            "status": self.status,
            "permissions": self.permission_types,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "responded_at": self.responded_at.isoformat() if self.responded_at else None,
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
            "reject_reason": self.reject_reason,
            "cancel_reason": self.cancel_reason,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_people:
            d["delegator"] = self.delegator.to_dict() if self.delegator else None
            d["delegate"] = self.delegate.to_dict() if self.delegate else None
        return d

    def __repr__(self):
        return f"<Delegation {self.id}: {self.delegator_id}→{self.delegate_id} {self.status}>"


class DelegationPermission(db.Model):
    __tablename__ = "delegation_permissions"
    __table_args__ = (
        db.UniqueConstraint("delegation_id", "permission_type", name="uq_delegation_permission"),
    )

    id = db.Column(db.Integer, primary_key=True)
    delegation_id = db.Column(
        db.Integer, db.ForeignKey("delegations.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    permission_type = db.Column(db.String(30), nullable=False)

    delegation = db.relationship("Delegation", back_populates="permissions")

    def __repr__(self):
        return f"<DelegationPermission {self.delegation_id}:{self.permission_type}>"
