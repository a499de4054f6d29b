"""
ERP Approval Workflow Engine
Flow template domain model.

Models:
    - FlowTemplate: per (company, module) linear approval chain
    - FlowStep: one ordered step with its assignee rule
"""

from datetime import datetime, timezone

from app.models import db


# ── Constants ────────────────────────────────────────────────────────────────

MAX_APPROVAL_STEPS = 4

# Module type → (form label, short name used in messages)
MODULE_TYPES = {
    "LEAVE": ("請假申請", "請假"),
    "EXPENSE": ("費用核銷", "費用核銷"),
    "SEAL": ("用印申請", "用印"),
    "CARD": ("名片申請", "名片"),
    "STATIONERY": ("文具申請", "文具"),
    "OVERTIME": ("加班申請", "加班"),
    "BUSINESS_TRIP": ("出差申請", "出差"),
}


def module_type_name(module_type: str) -> str:
    """Short module name for notification text (e.g. "請假")."""
    return MODULE_TYPES.get(module_type, (module_type, module_type))[1]


ASSIGNEE_DIRECT_SUPERVISOR = "DIRECT_SUPERVISOR"
ASSIGNEE_POSITION = "POSITION"
ASSIGNEE_SPECIFIC_PERSON = "SPECIFIC_PERSON"
ASSIGNEE_TYPES = {ASSIGNEE_DIRECT_SUPERVISOR, ASSIGNEE_POSITION, ASSIGNEE_SPECIFIC_PERSON}


class FlowTemplate(db.Model):
    __tablename__ = "flow_templates"
    __table_args__ = (
        db.UniqueConstraint("company_id", "module_type", name="uq_flow_template_company_module"),
    )

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(
        db.Integer, db.ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    module_type = db.Column(db.String(30), nullable=False)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    version = db.Column(db.Integer, nullable=False, default=1)
    is_active = db.Column(db.Boolean, default=True)
    created_by_id = db.Column(db.Integer, db.ForeignKey("employees.id", ondelete="SET NULL"), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    steps = db.relationship(
        "FlowStep", back_populates="template",
        cascade="all, delete-orphan", order_by="FlowStep.step_order", lazy="selectin",
    )

    def to_dict(self, include_steps=True):
        d = {
            "id": self.id,
            "company_id": self.company_id,
            "module_type": self.module_type,
            "module_label": MODULE_TYPES.get(self.module_type, (self.module_type,))[0],
            "name": self.name,
            "description": self.description,
            "version": self.version,
            "is_active": self.is_active,
            "created_by_id": self.created_by_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_steps:
            d["steps"] = [s.to_dict() for s in self.steps]
        return d

    def __repr__(self):
        return f"<FlowTemplate {self.id}: {self.company_id}/{self.module_type} v{self.version}>"


class FlowStep(db.Model):
    __tablename__ = "flow_steps"
    __table_args__ = (
        db.UniqueConstraint("template_id", "step_order", name="uq_flow_step_order"),
    )

    id = db.Column(db.Integer, primary_key=True)
    template_id = db.Column(
        db.Integer, db.ForeignKey("flow_templates.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    step_order = db.Column(db.Integer, nullable=False)
    name = db.Column(db.String(100), nullable=False)
    assignee_type = db.Column(db.String(30), nullable=False)
    position_id = db.Column(db.Integer, db.ForeignKey("positions.id", ondelete="SET NULL"), nullable=True)
    specific_employee_id = db.Column(
        db.Integer, db.ForeignKey("employees.id", ondelete="SET NULL"), nullable=True,
    )
    is_required = db.Column(db.Boolean, nullable=False, default=True)

    template = db.relationship("FlowTemplate", back_populates="steps")

    def to_dict(self):
        return {
            "id": self.id,
            "step_order": self.step_order,
            "name": self.name,
            "assignee_type": self.assignee_type,
            "position_id": self.position_id,
            "specific_employee_id": self.specific_employee_id,
            "is_required": self.is_required,
        }

    def __repr__(self):
        return f"<FlowStep {self.template_id}#{self.step_order} {self.assignee_type}>"
