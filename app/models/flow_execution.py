"""
ERP Approval Workflow Engine
Flow execution (workflow instance) domain model.

Models:
    - FlowExecution: one running approval for one business request
    - FlowApprovalRecord: per-step decision slot, created up front at start
    - FlowApprovalCandidate: every employee eligible to act on a record

Lifecycle:
    PENDING → APPROVED | REJECTED | CANCELLED  (exactly once)
"""

from datetime import datetime, timezone

from app.models import db


# ── Constants ────────────────────────────────────────────────────────────────

EXECUTION_PENDING = "PENDING"
EXECUTION_APPROVED = "APPROVED"
EXECUTION_REJECTED = "REJECTED"
EXECUTION_CANCELLED = "CANCELLED"
EXECUTION_STATUSES = {EXECUTION_PENDING, EXECUTION_APPROVED, EXECUTION_REJECTED, EXECUTION_CANCELLED}

EXECUTION_TRANSITIONS = {
    EXECUTION_PENDING: {EXECUTION_APPROVED, EXECUTION_REJECTED, EXECUTION_CANCELLED},
    EXECUTION_APPROVED: set(),
    EXECUTION_REJECTED: set(),
    EXECUTION_CANCELLED: set(),
}

DECISION_APPROVED = "APPROVED"
DECISION_REJECTED = "REJECTED"
DECISION_SKIPPED = "SKIPPED"
DECISIONS = {DECISION_APPROVED, DECISION_REJECTED, DECISION_SKIPPED}

ACTION_APPROVE = "APPROVE"
ACTION_REJECT = "REJECT"
ACTIONS = {ACTION_APPROVE: DECISION_APPROVED, ACTION_REJECT: DECISION_REJECTED}

SOURCE_TEMPLATE = "TEMPLATE"
SOURCE_DEFINITION = "DEFINITION"


def validate_execution_transition(current: str, target: str) -> bool:
    """Return True if moving an execution from *current* to *target* is allowed."""
    return target in EXECUTION_TRANSITIONS.get(current, set())


class FlowExecution(db.Model):
    """
    Approval instance bound to one originating business request.

    ``source_version`` and the per-step records freeze the flow as it was
    when the instance started; later template or definition edits never
    touch running instances.
    """

    __tablename__ = "flow_executions"
    __table_args__ = (
        db.Index(
            "uq_flow_execution_open_reference",
            "module_type", "reference_id",
            unique=True,
            postgresql_where=db.text("status = 'PENDING'"),
            sqlite_where=db.text("status = 'PENDING'"),
        ),
        db.Index("idx_flow_execution_reference", "module_type", "reference_id"),
        db.Index("idx_flow_execution_applicant", "applicant_id", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    module_type = db.Column(db.String(30), nullable=False)
    reference_id = db.Column(db.String(64), nullable=False, comment="Id of the originating request")
    applicant_id = db.Column(
        db.Integer, db.ForeignKey("employees.id", ondelete="CASCADE"), nullable=False,
    )
    company_id = db.Column(
        db.Integer, db.ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True,
    )

    source = db.Column(db.String(20), nullable=False, default=SOURCE_TEMPLATE, comment="TEMPLATE | DEFINITION")
    template_id = db.Column(
        db.Integer, db.ForeignKey("flow_templates.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    definition_id = db.Column(
        db.Integer, db.ForeignKey("workflow_definitions.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    source_version = db.Column(db.Integer, nullable=False, default=1)
    flow_name = db.Column(db.String(200), nullable=True)

    current_step = db.Column(db.Integer, nullable=False, default=1)
    total_steps = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default=EXECUTION_PENDING)
    request_data = db.Column(db.JSON, nullable=True, comment="Snapshot used for condition routing")

    submitted_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_by_id = db.Column(db.Integer, db.ForeignKey("employees.id", ondelete="SET NULL"), nullable=True)
    cancel_reason = db.Column(db.Text, nullable=True)

    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    records = db.relationship(
        "FlowApprovalRecord", back_populates="execution",
        cascade="all, delete-orphan", order_by="FlowApprovalRecord.step_order", lazy="selectin",
    )
    applicant = db.relationship("Employee", foreign_keys=[applicant_id])

    @property
    def is_pending(self) -> bool:
        return self.status == EXECUTION_PENDING

    def record_for_step(self, step_order):
        for rec in self.records:
            if rec.step_order == step_order:
                return rec
        return None

    @property
    def current_record(self):
        if not self.is_pending:
            return None
        return self.record_for_step(self.current_step)

    def to_dict(self, include_records=True):
        d = {
            "id": self.id,
            "module_type": self.module_type,
            "reference_id": self.reference_id,
            "applicant_id": self.applicant_id,
            "company_id": self.company_id,
            "source": self.source,
            "template_id": self.template_id,
            "definition_id": self.definition_id,
            "source_version": self.source_version,
            "flow_name": self.flow_name,
            "current_step": self.current_step,
            "total_steps": self.total_steps,
            "status": self.status,
            "request_data": self.request_data,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "cancelled_by_id": self.cancelled_by_id,
            "cancel_reason": self.cancel_reason,
        }
        if include_records:
            d["records"] = [r.to_dict() for r in self.records]
        return d

    def __repr__(self):
        return f"<FlowExecution {self.id}: {self.module_type}/{self.reference_id} {self.status}>"


class FlowApprovalRecord(db.Model):
    __tablename__ = "flow_approval_records"
    __table_args__ = (
        db.UniqueConstraint("execution_id", "step_order", name="uq_flow_record_step"),
    )

    id = db.Column(db.Integer, primary_key=True)
    execution_id = db.Column(
        db.Integer, db.ForeignKey("flow_executions.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    step_order = db.Column(db.Integer, nullable=False)
    step_name = db.Column(db.String(100), nullable=False)
    assignee_type = db.Column(db.String(30), nullable=True)
    is_required = db.Column(db.Boolean, nullable=False, default=True)
    assignee_id = db.Column(
        db.Integer, db.ForeignKey("employees.id", ondelete="SET NULL"), nullable=True, index=True,
        comment="Primary resolved approver; NULL only for unresolvable optional steps",
    )

    decision = db.Column(db.String(20), nullable=True, comment="NULL | APPROVED | REJECTED | SKIPPED")
    decided_at = db.Column(db.DateTime(timezone=True), nullable=True)
    comment = db.Column(db.Text, nullable=True)
    actual_approver_id = db.Column(
        db.Integer, db.ForeignKey("employees.id", ondelete="SET NULL"), nullable=True,
        comment="Set when someone other than assignee_id decided",
    )
    delegation_id = db.Column(
        db.Integer, db.ForeignKey("delegations.id", ondelete="SET NULL"), nullable=True,
    )
    assigned_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    execution = db.relationship("FlowExecution", back_populates="records")
    candidates = db.relationship(
        "FlowApprovalCandidate", back_populates="record",
        cascade="all, delete-orphan", lazy="selectin",
    )

    @property
    def candidate_ids(self) -> list[int]:
        return [c.employee_id for c in self.candidates]

    @property
    def decided_by(self):
        return self.actual_approver_id or self.assignee_id

    def to_dict(self):
        return {
            "id": self.id,
            "execution_id": self.execution_id,
            "step_order": self.step_order,
            "step_name": self.step_name,
            "assignee_type": self.assignee_type,
            "is_required": self.is_required,
            "assignee_id": self.assignee_id,
            "candidate_ids": self.candidate_ids,
            "decision": self.decision,
            "decided_at": self.decided_at.isoformat() if self.decided_at else None,
            "comment": self.comment,
            "actual_approver_id": self.actual_approver_id,
            "delegation_id": self.delegation_id,
            "assigned_at": self.assigned_at.isoformat() if self.assigned_at else None,
        }

    def __repr__(self):
        return f"<FlowApprovalRecord {self.execution_id}#{self.step_order} {self.decision or 'open'}>"


class FlowApprovalCandidate(db.Model):
    __tablename__ = "flow_approval_candidates"
    __table_args__ = (
        db.UniqueConstraint("record_id", "employee_id", name="uq_flow_candidate"),
    )

    id = db.Column(db.Integer, primary_key=True)
    record_id = db.Column(
        db.Integer, db.ForeignKey("flow_approval_records.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    employee_id = db.Column(
        db.Integer, db.ForeignKey("employees.id", ondelete="CASCADE"), nullable=False, index=True,
    )

    record = db.relationship("FlowApprovalRecord", back_populates="candidates")

    def __repr__(self):
        return f"<FlowApprovalCandidate record={self.record_id} emp={self.employee_id}>"
