"""
ERP Approval Workflow Engine
Organisation directory models.

Models:
    - CompanyGroup: top-level corporate group
    - Company: subsidiary legal entity (tenant scope for flows)
    - Employee: a person, independent of which companies employ them
    - Position: job position defined per company
    - EmployeeAssignment: employee ↔ company ↔ position link with supervisor

The approval engine only reads these tables.  Maintenance of the directory
belongs to the HR module.
"""

from datetime import datetime, timezone

from app.models import db


# ── Constants ────────────────────────────────────────────────────────────────

ASSIGNMENT_ACTIVE = "ACTIVE"
ASSIGNMENT_INACTIVE = "INACTIVE"
ASSIGNMENT_RESIGNED = "RESIGNED"
ASSIGNMENT_STATUSES = {ASSIGNMENT_ACTIVE, ASSIGNMENT_INACTIVE, ASSIGNMENT_RESIGNED}


class CompanyGroup(db.Model):
    __tablename__ = "company_groups"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    companies = db.relationship("Company", back_populates="group", lazy="dynamic")

    def to_dict(self):
        return {"id": self.id, "name": self.name}

    def __repr__(self):
        return f"<CompanyGroup {self.id}: {self.name}>"


class Company(db.Model):
    __tablename__ = "companies"

    id = db.Column(db.Integer, primary_key=True)
    group_id = db.Column(
        db.Integer, db.ForeignKey("company_groups.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    code = db.Column(db.String(30), nullable=False, unique=True)
    name = db.Column(db.String(200), nullable=False)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    group = db.relationship("CompanyGroup", back_populates="companies")

    def to_dict(self):
        return {
            "id": self.id,
            "group_id": self.group_id,
            "code": self.code,
            "name": self.name,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<Company {self.code}>"


class Employee(db.Model):
    __tablename__ = "employees"

    id = db.Column(db.Integer, primary_key=True)
    employee_no = db.Column(db.String(30), nullable=False, unique=True)
    name = db.Column(db.String(150), nullable=False)
    email = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    assignments = db.relationship(
        "EmployeeAssignment",
        back_populates="employee",
        foreign_keys="EmployeeAssignment.employee_id",
        lazy="select",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "employee_no": self.employee_no,
            "name": self.name,
            "email": self.email,
        }

    def __repr__(self):
        return f"<Employee {self.employee_no}: {self.name}>"


class Position(db.Model):
    __tablename__ = "positions"

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(
        db.Integer, db.ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    name = db.Column(db.String(150), nullable=False)
    level = db.Column(db.Integer, default=0, comment="Higher = more senior")

    def to_dict(self):
        return {"id": self.id, "company_id": self.company_id, "name": self.name, "level": self.level}

    def __repr__(self):
        return f"<Position {self.id}: {self.name}>"


class EmployeeAssignment(db.Model):
    """
    Employment of one employee at one company.

    ``supervisor_id`` points at the supervisor's *assignment* row, so the
    reporting line is always company-scoped.
    """

    __tablename__ = "employee_assignments"
    __table_args__ = (
        db.Index("idx_assignment_emp_company", "employee_id", "company_id"),
        db.Index("idx_assignment_position_status", "position_id", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    employee_id = db.Column(
        db.Integer, db.ForeignKey("employees.id", ondelete="CASCADE"), nullable=False,
    )
    company_id = db.Column(
        db.Integer, db.ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    position_id = db.Column(
        db.Integer, db.ForeignKey("positions.id", ondelete="SET NULL"), nullable=True,
    )
    supervisor_id = db.Column(
        db.Integer, db.ForeignKey("employee_assignments.id", ondelete="SET NULL"), nullable=True,
    )
    status = db.Column(db.String(20), nullable=False, default=ASSIGNMENT_ACTIVE,
                       comment="ACTIVE | INACTIVE | RESIGNED")
    is_primary = db.Column(db.Boolean, default=True)
    start_date = db.Column(db.Date, nullable=True)
    end_date = db.Column(db.Date, nullable=True)

    employee = db.relationship("Employee", back_populates="assignments", foreign_keys=[employee_id])
    company = db.relationship("Company")
    position = db.relationship("Position")
    supervisor = db.relationship("EmployeeAssignment", remote_side=[id], foreign_keys=[supervisor_id])

    def to_dict(self):
        return {
            "id": self.id,
            "employee_id": self.employee_id,
            "company_id": self.company_id,
            "position_id": self.position_id,
            "supervisor_id": self.supervisor_id,
            "status": self.status,
            "is_primary": self.is_primary,
        }

    def __repr__(self):
        return f"<EmployeeAssignment emp={self.employee_id} company={self.company_id} {self.status}>"
