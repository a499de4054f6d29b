"""
ERP Approval Workflow Engine
Audit domain model.

Models:
    - AuditLog: immutable, append-only audit trail for approval events.
"""

import json
from datetime import UTC, datetime

from app.models import db


# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {
    "delegation", "flow_template", "workflow_definition", "flow_execution",
    "approval_cc_setting",
}

AUDIT_ACTIONS = {
    # Delegation lifecycle
    "delegation.create",
    "delegation.accept",
    "delegation.reject",
    "delegation.cancel",
    # Templates / definitions
    "flow_template.upsert",
    "flow_template.delete",
    "workflow_definition.create",
    "workflow_definition.update",
    "workflow_definition.save_design",
    "workflow_definition.duplicate",
    "workflow_definition.delete",
    # Execution lifecycle
    "flow_execution.start",
    "flow_execution.approve",
    "flow_execution.reject",
    "flow_execution.cancel",
    # Settings
    "approval_cc_setting.update",
}


class AuditLog(db.Model):
    """
    Immutable audit trail for every lifecycle event.

    One row per action.  ``diff_json`` carries the before/after snapshot
    of the fields that changed.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_company", "company_id"),
        db.Index("idx_audit_actor", "actor_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(
        db.Integer,
        db.ForeignKey("companies.id", ondelete="SET NULL"),
        nullable=True,
    )

    # Polymorphic entity reference
    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="delegation | flow_template | flow_execution | …",
    )
    entity_id = db.Column(db.String(64), nullable=False)

    # What happened
    action = db.Column(db.String(60), nullable=False, comment="flow_execution.approve | …")
    actor_id = db.Column(
        db.Integer,
        db.ForeignKey("employees.id", ondelete="SET NULL"),
        nullable=True,
        comment="Employee who acted (NULL for system)",
    )

    diff_json = db.Column(db.Text, default="{}")

    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor_id": self.actor_id,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id,
    action: str,
    actor_id: int | None = None,
    company_id: int | None = None,
    diff: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.

    Returns the (flushed) AuditLog instance.
    """
    if entity_type not in AUDIT_ENTITY_TYPES or action not in AUDIT_ACTIONS:
        raise ValueError(f"Unknown audit event: {entity_type} / {action}")
    log = AuditLog(
        company_id=company_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor_id=actor_id,
        diff_json=json.dumps(diff or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
