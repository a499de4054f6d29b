"""
ERP Approval Workflow Engine
Workflow definition (graph form) domain model.

Models:
    - WorkflowDefinition: scoped, versioned approval graph header
    - WorkflowNode: START / APPROVAL / CONDITION / END node
    - WorkflowEdge: directed edge with an optional condition on request data

Scope precedence when an instance starts: EMPLOYEE > REQUEST_TYPE > DEFAULT.
"""

from datetime import datetime, timezone

from app.models import db


# ── Constants ────────────────────────────────────────────────────────────────

SCOPE_EMPLOYEE = "EMPLOYEE"
SCOPE_REQUEST_TYPE = "REQUEST_TYPE"
SCOPE_DEFAULT = "DEFAULT"
SCOPE_TYPES = {SCOPE_EMPLOYEE, SCOPE_REQUEST_TYPE, SCOPE_DEFAULT}
SCOPE_PRECEDENCE = (SCOPE_EMPLOYEE, SCOPE_REQUEST_TYPE, SCOPE_DEFAULT)

NODE_START = "START"
NODE_APPROVAL = "APPROVAL"
NODE_CONDITION = "CONDITION"
NODE_END = "END"
NODE_TYPES = {NODE_START, NODE_APPROVAL, NODE_CONDITION, NODE_END}

CONDITION_OPERATORS = {
    "EQUALS", "NOT_EQUALS",
    "GREATER_THAN", "LESS_THAN", "GREATER_OR_EQUAL", "LESS_OR_EQUAL",
    "CONTAINS", "IN", "NOT_IN",
}


class WorkflowDefinition(db.Model):
    __tablename__ = "workflow_definitions"
    __table_args__ = (
        db.Index("idx_wfdef_scope", "scope_type", "is_active"),
        db.Index("idx_wfdef_company_request", "company_id", "request_type"),
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    scope_type = db.Column(db.String(20), nullable=False, comment="EMPLOYEE | REQUEST_TYPE | DEFAULT")
    company_id = db.Column(
        db.Integer, db.ForeignKey("companies.id", ondelete="CASCADE"), nullable=True, index=True,
    )
    group_id = db.Column(
        db.Integer, db.ForeignKey("company_groups.id", ondelete="CASCADE"), nullable=True,
    )
    employee_id = db.Column(
        db.Integer, db.ForeignKey("employees.id", ondelete="CASCADE"), nullable=True, index=True,
    )
    request_type = db.Column(db.String(30), nullable=True, comment="Module type for REQUEST_TYPE scope")
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    version = db.Column(db.Integer, nullable=False, default=1)
    effective_from = db.Column(db.DateTime(timezone=True), nullable=True)
    effective_to = db.Column(db.DateTime(timezone=True), nullable=True)
    created_by_id = db.Column(db.Integer, db.ForeignKey("employees.id", ondelete="SET NULL"), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    nodes = db.relationship(
        "WorkflowNode", back_populates="definition",
        cascade="all, delete-orphan", order_by="WorkflowNode.sort_order", lazy="selectin",
    )
    edges = db.relationship(
        "WorkflowEdge", back_populates="definition",
        cascade="all, delete-orphan", order_by="WorkflowEdge.sort_order", lazy="selectin",
    )

    def to_dict(self, include_graph=False):
        d = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "scope_type": self.scope_type,
            "company_id": self.company_id,
            "group_id": self.group_id,
            "employee_id": self.employee_id,
            "request_type": self.request_type,
            "is_active": self.is_active,
            "version": self.version,
            "effective_from": self.effective_from.isoformat() if self.effective_from else None,
            "effective_to": self.effective_to.isoformat() if self.effective_to else None,
            "created_by_id": self.created_by_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "node_count": len(self.nodes),
        }
        if include_graph:
            d["nodes"] = [n.to_dict() for n in self.nodes]
            d["edges"] = [e.to_dict() for e in self.edges]
        return d

    def __repr__(self):
        return f"<WorkflowDefinition {self.id}: {self.scope_type} v{self.version}>"


class WorkflowNode(db.Model):
    __tablename__ = "workflow_nodes"
    __table_args__ = (
        db.UniqueConstraint("definition_id", "node_key", name="uq_workflow_node_key"),
    )

    id = db.Column(db.Integer, primary_key=True)
    definition_id = db.Column(
        db.Integer, db.ForeignKey("workflow_definitions.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    node_key = db.Column(db.String(50), nullable=False, comment="Client-side id, unique per definition")
    node_type = db.Column(db.String(20), nullable=False)
    name = db.Column(db.String(100), nullable=False)
    assignee_type = db.Column(db.String(30), nullable=True)
    position_id = db.Column(db.Integer, db.ForeignKey("positions.id", ondelete="SET NULL"), nullable=True)
    specific_employee_id = db.Column(
        db.Integer, db.ForeignKey("employees.id", ondelete="SET NULL"), nullable=True,
    )
    is_required = db.Column(db.Boolean, nullable=False, default=True)
    sort_order = db.Column(db.Integer, nullable=False, default=0)
    pos_x = db.Column(db.Float, default=0)
    pos_y = db.Column(db.Float, default=0)

    definition = db.relationship("WorkflowDefinition", back_populates="nodes")

    def to_dict(self):
        return {
            "id": self.id,
            "node_key": self.node_key,
            "node_type": self.node_type,
            "name": self.name,
            "assignee_type": self.assignee_type,
            "position_id": self.position_id,
            "specific_employee_id": self.specific_employee_id,
            "is_required": self.is_required,
            "sort_order": self.sort_order,
            "pos_x": self.pos_x,
            "pos_y": self.pos_y,
        }

    def __repr__(self):
        return f"<WorkflowNode {self.definition_id}:{self.node_key} {self.node_type}>"


class WorkflowEdge(db.Model):
    __tablename__ = "workflow_edges"

    id = db.Column(db.Integer, primary_key=True)
    definition_id = db.Column(
        db.Integer, db.ForeignKey("workflow_definitions.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    from_node_key = db.Column(db.String(50), nullable=False)
    to_node_key = db.Column(db.String(50), nullable=False)
    condition_field = db.Column(db.String(100), nullable=True)
    condition_operator = db.Column(db.String(20), nullable=True)
    condition_value = db.Column(db.JSON, nullable=True)
    is_default = db.Column(db.Boolean, nullable=False, default=False)
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    definition = db.relationship("WorkflowDefinition", back_populates="edges")

    @property
    def has_condition(self) -> bool:
        return bool(self.condition_field and self.condition_operator)

    def to_dict(self):
        return {
            "id": self.id,
            "from_node_key": self.from_node_key,
            "to_node_key": self.to_node_key,
            "condition_field": self.condition_field,
            "condition_operator": self.condition_operator,
            "condition_value": self.condition_value,
            "is_default": self.is_default,
            "sort_order": self.sort_order,
        }

    def __repr__(self):
        return f"<WorkflowEdge {self.from_node_key}→{self.to_node_key}>"
