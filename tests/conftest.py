"""
Shared pytest fixtures for the approval workflow test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - org: a small organisation (group, two companies, employees, positions)
"""

from types import SimpleNamespace

import pytest

from app import create_app
from app.models import db as _db
from app.models.organization import (
    ASSIGNMENT_ACTIVE,
    ASSIGNMENT_RESIGNED,
    Company,
    CompanyGroup,
    Employee,
    EmployeeAssignment,
    Position,
)
from app.services import cache_service, request_callbacks


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        # ids are reused after recreation; stale inbox entries must not leak between tests
        cache_service.clear_all()
        yield
        cache_service.clear_all()
        for module_type in list(request_callbacks.get_registered_handlers()):
            request_callbacks.unregister_decision_handler(module_type)
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Builders ─────────────────────────────────────────────────────────────


def _make_employee(employee_no, name=None):
    emp = Employee(employee_no=employee_no, name=name or employee_no, email=f"{employee_no.lower()}@example.com")
    _db.session.add(emp)
    _db.session.flush()
    return emp


def _assign(employee, company, position=None, supervisor=None, status=ASSIGNMENT_ACTIVE):
    """Create an assignment; *supervisor* is the supervisor's assignment row."""
    row = EmployeeAssignment(
        employee_id=employee.id,
        company_id=company.id,
        position_id=position.id if position else None,
        supervisor_id=supervisor.id if supervisor else None,
        status=status,
    )
    _db.session.add(row)
    _db.session.flush()
    return row


# ── Organisation fixture ─────────────────────────────────────────────────


@pytest.fixture()
def org():
    """
    Group G with companies C (main) and C2.

    C:
        S1  manager (position MGR)      ← supervisor of A
        A   staff, applicant
        E2  finance controller (specific-person approver)
        H1, H2  both hold position HR
        D   delegator, also holds MGR
        G   delegate of D
        X   resigned employee
    C2:
        O   other-company employee
    """
    group = CompanyGroup(name="Group")
    _db.session.add(group)
    _db.session.flush()
    company = Company(group_id=group.id, code="C", name="Company C")
    company2 = Company(group_id=group.id, code="C2", name="Company C2")
    _db.session.add_all([company, company2])
    _db.session.flush()

    mgr = Position(company_id=company.id, name="Manager", level=5)
    hr = Position(company_id=company.id, name="HR Officer", level=3)
    empty = Position(company_id=company.id, name="Vacant", level=1)
    _db.session.add_all([mgr, hr, empty])
    _db.session.flush()

    people = {code: _make_employee(code, name) for code, name in [
        ("S1", "主管一"), ("A", "申請人"), ("E2", "財務"), ("H1", "人資一"), ("H2", "人資二"),
        ("D", "委託人"), ("G", "代理人"), ("X", "離職者"), ("O", "他公司"),
    ]}
    s1_assignment = _assign(people["S1"], company, mgr)
    d_assignment = _assign(people["D"], company, mgr)
    a_assignment = _assign(people["A"], company, supervisor=s1_assignment)
    _assign(people["E2"], company)
    _assign(people["H1"], company, hr)
    _assign(people["H2"], company, hr)
    _assign(people["G"], company, supervisor=d_assignment)
    _assign(people["X"], company, status=ASSIGNMENT_RESIGNED)
    _assign(people["O"], company2)
    _db.session.commit()

    return SimpleNamespace(
        group=group, company=company, company2=company2,
        mgr=mgr, hr=hr, empty=empty,
        a_assignment=a_assignment,
        **people,
    )
