"""
Organisation directory lookups.

Read-only queries the approval engine makes against the HR tables:
active assignments, direct supervisors and position holders.  Nothing in
this module writes.
"""

from __future__ import annotations

import logging

from sqlalchemy import select

from app.models import db
from app.models.organization import (
    ASSIGNMENT_ACTIVE,
    Company,
    Employee,
    EmployeeAssignment,
)

logger = logging.getLogger(__name__)


def get_employee(employee_id: int) -> Employee | None:
    return db.session.get(Employee, employee_id)


def get_company(company_id: int) -> Company | None:
    return db.session.get(Company, company_id)


def get_company_group_id(company_id: int) -> int | None:
    company = get_company(company_id)
    return company.group_id if company else None


def existing_employee_ids(employee_ids) -> set[int]:
    """Return the subset of *employee_ids* that exist."""
    ids = {int(i) for i in employee_ids or []}
    if not ids:
        return set()
    rows = db.session.execute(select(Employee.id).where(Employee.id.in_(ids))).scalars().all()
    return set(rows)


def has_active_assignment(employee_id: int, company_id: int | None = None) -> bool:
    stmt = select(EmployeeAssignment.id).where(
        EmployeeAssignment.employee_id == employee_id,
        EmployeeAssignment.status == ASSIGNMENT_ACTIVE,
    )
    if company_id is not None:
        stmt = stmt.where(EmployeeAssignment.company_id == company_id)
    return db.session.execute(stmt.limit(1)).scalar_one_or_none() is not None


def get_active_assignment(employee_id: int, company_id: int) -> EmployeeAssignment | None:
    """Return the employee's ACTIVE assignment at *company_id*, primary first."""
    stmt = (
        select(EmployeeAssignment)
        .where(
            EmployeeAssignment.employee_id == employee_id,
            EmployeeAssignment.company_id == company_id,
            EmployeeAssignment.status == ASSIGNMENT_ACTIVE,
        )
        .order_by(EmployeeAssignment.is_primary.desc(), EmployeeAssignment.id)
        .limit(1)
    )
    return db.session.execute(stmt).scalar_one_or_none()


def get_direct_supervisor_id(employee_id: int, company_id: int) -> int | None:
    """Employee id of the applicant's supervisor at *company_id*, if any.

    An INACTIVE or RESIGNED supervisor assignment does not count.
    """
    assignment = get_active_assignment(employee_id, company_id)
    if assignment is None or assignment.supervisor_id is None:
        return None
    supervisor = db.session.get(EmployeeAssignment, assignment.supervisor_id)
    if supervisor is None or supervisor.status != ASSIGNMENT_ACTIVE:
        return None
    return supervisor.employee_id


def get_position_holder_ids(position_id: int, company_id: int) -> list[int]:
    """All employees with an ACTIVE assignment to *position_id*, oldest assignment first."""
    stmt = (
        select(EmployeeAssignment.employee_id)
        .where(
            EmployeeAssignment.position_id == position_id,
            EmployeeAssignment.company_id == company_id,
            EmployeeAssignment.status == ASSIGNMENT_ACTIVE,
        )
        .order_by(EmployeeAssignment.id)
    )
    seen: list[int] = []
    for emp_id in db.session.execute(stmt).scalars():
        if emp_id not in seen:
            seen.append(emp_id)
    return seen
