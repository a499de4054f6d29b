"""
Flow Execution & Decision Processor unit tests.

Tests cover:
  - Start: steps frozen from the template, NoDefinitionFound, duplicate PENDING
  - Two-step approval to APPROVED with the business callback
  - Rejection ends the flow, applicant notified with the comment
  - Delegated decision inside / after the delegation window
  - Sequential steps, no double decision, terminal immutability
  - Non-required step auto-skip and POSITION any-holder policy
  - Unroutable required steps
  - Cancel by applicant / admin
  - CC recipients on final approval
  - Pending, proxy-pending and history queries
"""
from datetime import datetime, timezone

import pytest

from app.core.exceptions import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    UnroutableStepError,
    ValidationError,
)
from app.models import db
from app.models.audit import AuditLog
from app.models.flow_execution import FlowExecution
from app.models.notification import Notification
from app.services import (
    approval_cc_service,
    decision_service,
    delegation_service,
    flow_engine,
    flow_template_service,
    request_callbacks,
)


def _utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


SUPERVISOR = {"name": "直屬主管", "assignee_type": "DIRECT_SUPERVISOR"}


def _person(employee, name="財務審核", **kw):
    return {"name": name, "assignee_type": "SPECIFIC_PERSON", "specific_employee_id": employee.id, **kw}


def _position(position, name="人資審核", **kw):
    return {"name": name, "assignee_type": "POSITION", "position_id": position.id, **kw}


def _template(org, *steps, module_type="LEAVE"):
    payload = [{"step_order": i, **s} for i, s in enumerate(steps, start=1)]
    return flow_template_service.upsert_template(org.company.id, module_type, f"{module_type} 流程", payload)


def _start(org, reference_id="L-1", module_type="LEAVE", applicant=None, now=None):
    result = decision_service.start(
        module_type, reference_id, (applicant or org.A).id, org.company.id, now=now,
    )
    assert result.started
    return result.execution


def _record(execution, step_order):
    return execution.record_for_step(step_order)


def _decide(execution, step_order, signer, action="APPROVE", **kw):
    return decision_service.decide(execution.id, _record(execution, step_order).id, action, signer.id, **kw)


def _notes(employee, type_):
    return Notification.query.filter_by(recipient_id=employee.id, type=type_).all()


@pytest.fixture()
def calls():
    """Capture LEAVE decision callbacks."""
    seen = []

    @request_callbacks.register_decision_handler("LEAVE")
    def _apply(reference_id, final_status, execution_id):
        seen.append((reference_id, final_status, execution_id))

    return seen


# ═════════════════════════════════════════════════════════════════════════
# START
# ═════════════════════════════════════════════════════════════════════════

class TestStart:
    def test_start_freezes_resolved_steps(self, org):
        t = _template(org, SUPERVISOR, _person(org.E2))
        execution = _start(org)
        assert execution.status == "PENDING"
        assert execution.current_step == 1
        assert execution.total_steps == 2
        assert execution.source == "TEMPLATE"
        assert execution.template_id == t.id
        assert [r.assignee_id for r in execution.records] == [org.S1.id, org.E2.id]
        assert all(r.decision is None for r in execution.records)

    def test_first_approver_notified(self, org):
        _template(org, SUPERVISOR, _person(org.E2))
        execution = _start(org)
        notes = _notes(org.S1, "APPROVAL_REQUEST")
        assert len(notes) == 1
        assert notes[0].ref_id == str(execution.id)
        assert _notes(org.E2, "APPROVAL_REQUEST") == []

    def test_no_definition_found(self, org):
        result = decision_service.start("EXPENSE", "E-1", org.A.id, org.company.id)
        assert result.started is False
        assert isinstance(result, flow_engine.NoDefinitionFound)
        assert result.module_type == "EXPENSE"
        assert db.session.query(FlowExecution).count() == 0

    def test_duplicate_pending_rejected(self, org):
        _template(org, SUPERVISOR)
        _start(org)
        with pytest.raises(ConflictError, match="此申請已有審核中的流程"):
            _start(org)
        assert db.session.query(FlowExecution).count() == 1

    def test_restart_after_rejection(self, org):
        _template(org, SUPERVISOR)
        first = _start(org)
        _decide(first, 1, org.S1, action="REJECT", comment="日期衝突")
        second = _start(org)
        assert second.id != first.id
        assert flow_engine.get_by_reference("LEAVE", "L-1").id == second.id

    def test_unknown_module(self, org):
        with pytest.raises(ValidationError):
            decision_service.start("PAYROLL", "P-1", org.A.id, org.company.id)

    def test_missing_supervisor_is_unroutable(self, org):
        _template(org, SUPERVISOR)
        with pytest.raises(UnroutableStepError) as exc:
            _start(org, applicant=org.E2)
        assert exc.value.step_order == 1
        assert db.session.query(FlowExecution).count() == 0

    def test_vacant_position_is_unroutable(self, org):
        _template(org, SUPERVISOR, _position(org.empty, name="空缺職位"))
        with pytest.raises(UnroutableStepError, match="空缺職位"):
            _start(org)

    def test_all_optional_rejected(self, org):
        _template(org, _person(org.E2, is_required=False))
        with pytest.raises(ValidationError, match="流程至少需要一個必要審核關卡"):
            _start(org)

    def test_start_is_audited(self, org):
        _template(org, SUPERVISOR)
        execution = _start(org)
        assert AuditLog.query.filter_by(action="flow_execution.start", entity_id=str(execution.id)).count() == 1


# ═════════════════════════════════════════════════════════════════════════
# APPROVE / REJECT
# ═════════════════════════════════════════════════════════════════════════

class TestDecisions:
    def test_two_step_approval(self, org, calls):
        _template(org, SUPERVISOR, _person(org.E2))
        execution = _start(org)

        outcome = _decide(execution, 1, org.S1)
        assert outcome.final_status is None
        assert outcome.execution.current_step == 2
        assert _record(execution, 1).decision == "APPROVED"
        assert _record(execution, 1).actual_approver_id is None
        assert calls == []
        assert len(_notes(org.E2, "APPROVAL_REQUEST")) == 1

        outcome = _decide(execution, 2, org.E2)
        assert outcome.is_final
        assert outcome.execution.status == "APPROVED"
        assert outcome.execution.completed_at is not None
        assert calls == [("L-1", "APPROVED", execution.id)]
        assert len(_notes(org.A, "APPROVAL_APPROVED")) == 1

    def test_reject_ends_flow(self, org, calls):
        _template(org, SUPERVISOR, _person(org.E2))
        execution = _start(org)

        outcome = _decide(execution, 1, org.S1, action="REJECT", comment="insufficient coverage")
        assert outcome.execution.status == "REJECTED"
        assert _record(execution, 1).decision == "REJECTED"
        assert _record(execution, 2).decision is None
        assert calls == [("L-1", "REJECTED", execution.id)]
        notes = _notes(org.A, "APPROVAL_REJECTED")
        assert len(notes) == 1
        assert "insufficient coverage" in notes[0].message

    def test_invalid_action(self, org):
        _template(org, SUPERVISOR)
        execution = _start(org)
        with pytest.raises(ValidationError):
            _decide(execution, 1, org.S1, action="MAYBE")

    def test_stranger_forbidden(self, org):
        _template(org, SUPERVISOR)
        execution = _start(org)
        with pytest.raises(ForbiddenError):
            _decide(execution, 1, org.E2)
        db.session.expire_all()
        assert _record(execution, 1).decision is None

    def test_record_of_other_execution(self, org):
        _template(org, SUPERVISOR)
        first = _start(org, reference_id="L-1")
        second = _start(org, reference_id="L-2")
        with pytest.raises(NotFoundError):
            decision_service.decide(first.id, _record(second, 1).id, "APPROVE", org.S1.id)

    def test_missing_execution(self, org):
        with pytest.raises(NotFoundError):
            decision_service.decide(9999, 1, "APPROVE", org.S1.id)

    def test_decisions_are_audited(self, org):
        _template(org, SUPERVISOR)
        execution = _start(org)
        _decide(execution, 1, org.S1, action="REJECT")
        log = AuditLog.query.filter_by(action="flow_execution.reject", entity_id=str(execution.id)).one()
        assert log.diff["decision"] == "REJECTED"
        assert log.actor_id == org.S1.id


# ═════════════════════════════════════════════════════════════════════════
# EXECUTION RULES
# ═════════════════════════════════════════════════════════════════════════

class TestExecutionRules:
    def test_later_step_not_actionable_early(self, org):
        _template(org, SUPERVISOR, _person(org.E2))
        execution = _start(org)
        with pytest.raises(ValidationError, match="尚未輪到此關卡"):
            _decide(execution, 2, org.E2)
        db.session.expire_all()
        assert _record(execution, 2).decision is None

    def test_no_double_decision(self, org):
        _template(org, SUPERVISOR, _person(org.E2))
        execution = _start(org)
        _decide(execution, 1, org.S1)
        with pytest.raises(ValidationError, match="此簽核紀錄已處理"):
            _decide(execution, 1, org.S1)
        assert execution.current_step == 2

    @pytest.mark.parametrize("final_action", ["APPROVE", "REJECT"])
    def test_terminal_is_immutable(self, org, final_action):
        _template(org, SUPERVISOR, _person(org.E2))
        execution = _start(org)
        _decide(execution, 1, org.S1, action=final_action)
        if final_action == "APPROVE":
            _decide(execution, 2, org.E2)
        with pytest.raises(ValidationError, match="此流程已結束"):
            _decide(execution, 2, org.E2)
        with pytest.raises(ValidationError, match="此流程已結束，無法取消"):
            decision_service.cancel(execution.id, org.A.id)

    def test_cancelled_is_immutable(self, org):
        _template(org, SUPERVISOR)
        execution = _start(org)
        decision_service.cancel(execution.id, org.A.id)
        with pytest.raises(ValidationError, match="此流程已結束"):
            _decide(execution, 1, org.S1)


# ═════════════════════════════════════════════════════════════════════════
# SKIP / POSITION POLICIES
# ═════════════════════════════════════════════════════════════════════════

class TestPolicies:
    def test_optional_middle_step_skipped(self, org):
        _template(org, SUPERVISOR, _person(org.E2, is_required=False), _position(org.hr))
        execution = _start(org)
        _decide(execution, 1, org.S1)
        skipped = _record(execution, 2)
        assert skipped.decision == "SKIPPED"
        assert skipped.comment == flow_engine.MSG_AUTO_SKIP
        assert execution.current_step == 3
        assert _notes(org.E2, "APPROVAL_REQUEST") == []

    def test_optional_first_step_skipped_at_start(self, org):
        _template(org, _person(org.E2, is_required=False), SUPERVISOR)
        execution = _start(org)
        assert _record(execution, 1).decision == "SKIPPED"
        assert execution.current_step == 2
        assert len(_notes(org.S1, "APPROVAL_REQUEST")) == 1

    def test_optional_last_step_skipped_on_final_approval(self, org, calls):
        _template(org, SUPERVISOR, _position(org.empty, name="空缺", is_required=False))
        execution = _start(org)
        outcome = _decide(execution, 1, org.S1)
        assert outcome.final_status == "APPROVED"
        assert _record(execution, 2).decision == "SKIPPED"
        assert _record(execution, 2).assignee_id is None

    def test_any_position_holder_decides(self, org):
        _template(org, _position(org.hr), _person(org.E2))
        execution = _start(org)
        assert sorted(_record(execution, 1).candidate_ids) == sorted([org.H1.id, org.H2.id])
        assert len(_notes(org.H1, "APPROVAL_REQUEST")) == 1
        assert len(_notes(org.H2, "APPROVAL_REQUEST")) == 1

        _decide(execution, 1, org.H2)
        record = _record(execution, 1)
        assert record.assignee_id == org.H1.id
        assert record.actual_approver_id == org.H2.id
        assert record.delegation_id is None

        with pytest.raises(ValidationError, match="此簽核紀錄已處理"):
            _decide(execution, 1, org.H1)


# ═════════════════════════════════════════════════════════════════════════
# DELEGATION
# ═════════════════════════════════════════════════════════════════════════

class TestDelegatedDecision:
    @pytest.fixture()
    def delegation(self, org):
        d = delegation_service.create_delegation(
            org.company.id, org.D.id, org.G.id, ["APPROVE_LEAVE"], "2024-01-01", "2024-01-31",
        )
        delegation_service.accept_delegation(d.id, org.G.id, now=_utc(2023, 12, 28))
        return d

    def test_delegate_signs_inside_window(self, org, delegation):
        _template(org, _person(org.D, name="部門主管"))
        execution = _start(org, now=_utc(2024, 1, 10))

        outcome = _decide(execution, 1, org.G, now=_utc(2024, 1, 15))
        record = outcome.record
        assert record.decision == "APPROVED"
        assert record.assignee_id == org.D.id
        assert record.actual_approver_id == org.G.id
        assert record.delegation_id == delegation.id
        assert outcome.authority.on_behalf_of == org.D.id

    def test_delegate_rejected_after_window(self, org, delegation):
        _template(org, _person(org.D, name="部門主管"))
        execution = _start(org, reference_id="L-2", now=_utc(2024, 1, 30))
        with pytest.raises(ForbiddenError):
            _decide(execution, 1, org.G, now=_utc(2024, 2, 1))
        db.session.expire_all()
        assert _record(execution, 1).decision is None

    def test_delegation_accepted_after_start_counts(self, org):
        _template(org, _person(org.D, name="部門主管"))
        execution = _start(org, now=_utc(2024, 1, 2))
        d = delegation_service.create_delegation(
            org.company.id, org.D.id, org.G.id, ["APPROVE_LEAVE"], "2024-01-01", None,
        )
        with pytest.raises(ForbiddenError):
            _decide(execution, 1, org.G, now=_utc(2024, 1, 3))
        delegation_service.accept_delegation(d.id, org.G.id)
        assert _decide(execution, 1, org.G, now=_utc(2024, 1, 4)).final_status == "APPROVED"

    def test_delegation_for_other_company_forbidden(self, org):
        d = delegation_service.create_delegation(
            org.company2.id, org.D.id, org.G.id, ["APPROVE_LEAVE"], "2024-01-01", "2024-01-31",
        )
        delegation_service.accept_delegation(d.id, org.G.id, now=_utc(2023, 12, 28))
        _template(org, _person(org.D, name="部門主管"))
        execution = _start(org, now=_utc(2024, 1, 10))
        with pytest.raises(ForbiddenError):
            _decide(execution, 1, org.G, now=_utc(2024, 1, 15))

    def test_delegator_still_decides(self, org, delegation):
        _template(org, _person(org.D, name="部門主管"))
        execution = _start(org, now=_utc(2024, 1, 10))
        outcome = _decide(execution, 1, org.D, now=_utc(2024, 1, 15))
        assert outcome.record.actual_approver_id is None
        assert outcome.authority.is_delegated is False


# ═════════════════════════════════════════════════════════════════════════
# CANCEL
# ═════════════════════════════════════════════════════════════════════════

class TestCancel:
    def test_applicant_cancels(self, org, calls):
        _template(org, SUPERVISOR, _person(org.E2))
        execution = _start(org)
        out = decision_service.cancel(execution.id, org.A.id, reason="行程取消")
        assert out.status == "CANCELLED"
        assert out.cancelled_by_id == org.A.id
        assert out.cancel_reason == "行程取消"
        assert calls == [("L-1", "CANCELLED", execution.id)]
        notes = _notes(org.S1, "APPROVAL_CANCELLED")
        assert len(notes) == 1
        assert "行程取消" in notes[0].message

    def test_other_employee_cannot_cancel(self, org):
        _template(org, SUPERVISOR)
        execution = _start(org)
        with pytest.raises(ForbiddenError):
            decision_service.cancel(execution.id, org.S1.id)

    def test_admin_cancels(self, org):
        _template(org, SUPERVISOR)
        execution = _start(org)
        assert decision_service.cancel(execution.id, org.H1.id, is_admin=True).status == "CANCELLED"


# ═════════════════════════════════════════════════════════════════════════
# CALLBACKS & CC
# ═════════════════════════════════════════════════════════════════════════

class TestAfterCommit:
    def test_callback_failure_keeps_decision(self, org):
        @request_callbacks.register_decision_handler("LEAVE")
        def _boom(reference_id, final_status, execution_id):
            raise RuntimeError("leave module unavailable")

        _template(org, SUPERVISOR)
        execution = _start(org)
        outcome = _decide(execution, 1, org.S1)
        assert outcome.final_status == "APPROVED"
        db.session.expire_all()
        assert db.session.get(FlowExecution, execution.id).status == "APPROVED"

    def test_missing_callback_is_tolerated(self, org):
        _template(org, SUPERVISOR)
        execution = _start(org)
        assert request_callbacks.apply_final_decision("LEAVE", "L-1", "APPROVED", execution.id) is False

    def test_global_cc_on_final_approval(self, org):
        approval_cc_service.update_cc_setting(None, [org.H1.id, org.A.id])
        _template(org, SUPERVISOR)
        execution = _start(org)
        _decide(execution, 1, org.S1)
        assert len(_notes(org.H1, "APPROVAL_CC")) == 1
        assert _notes(org.A, "APPROVAL_CC") == []

    def test_company_cc_overrides_global(self, org):
        approval_cc_service.update_cc_setting(None, [org.H1.id])
        approval_cc_service.update_cc_setting(org.company.id, [org.H2.id])
        _template(org, SUPERVISOR)
        execution = _start(org)
        _decide(execution, 1, org.S1)
        assert len(_notes(org.H2, "APPROVAL_CC")) == 1
        assert _notes(org.H1, "APPROVAL_CC") == []

    def test_no_cc_on_rejection(self, org):
        approval_cc_service.update_cc_setting(None, [org.H1.id])
        _template(org, SUPERVISOR)
        execution = _start(org)
        _decide(execution, 1, org.S1, action="REJECT")
        assert _notes(org.H1, "APPROVAL_CC") == []

    def test_cc_setting_rejects_unknown_employee(self, org):
        with pytest.raises(ValidationError, match="找不到員工"):
            approval_cc_service.update_cc_setting(None, [org.H1.id, 9999])


# ═════════════════════════════════════════════════════════════════════════
# QUERIES
# ═════════════════════════════════════════════════════════════════════════

class TestQueries:
    def test_pending_follows_current_step(self, org):
        _template(org, SUPERVISOR, _person(org.E2))
        execution = _start(org)
        pending = flow_engine.get_pending_approvals(org.S1.id)
        assert [p["id"] for p in pending] == [execution.id]
        assert pending[0]["record"]["step_order"] == 1
        assert flow_engine.get_pending_approvals(org.E2.id) == []

        _decide(execution, 1, org.S1)
        assert flow_engine.get_pending_approvals(org.S1.id) == []
        assert [p["id"] for p in flow_engine.get_pending_approvals(org.E2.id)] == [execution.id]

    def test_pending_for_every_position_holder(self, org):
        _template(org, _position(org.hr))
        execution = _start(org)
        assert [p["id"] for p in flow_engine.get_pending_approvals(org.H2.id)] == [execution.id]
        _decide(execution, 1, org.H1)
        assert flow_engine.get_pending_approvals(org.H2.id) == []

    def test_proxy_pending(self, org):
        d = delegation_service.create_delegation(
            org.company.id, org.D.id, org.G.id, ["APPROVE_LEAVE"], "2024-01-01", "2024-01-31",
        )
        delegation_service.accept_delegation(d.id, org.G.id, now=_utc(2023, 12, 28))
        _template(org, _person(org.D, name="部門主管"))
        _template(org, _person(org.D, name="部門主管"), module_type="EXPENSE")
        leave = _start(org, now=_utc(2024, 1, 10))
        _start(org, reference_id="E-1", module_type="EXPENSE", now=_utc(2024, 1, 10))

        items = flow_engine.get_proxy_pending_approvals(org.G.id, now=_utc(2024, 1, 15))
        assert [i["id"] for i in items] == [leave.id]
        assert items[0]["delegation"]["id"] == d.id
        assert flow_engine.get_proxy_pending_approvals(org.G.id, now=_utc(2024, 2, 15)) == []

    def test_history_counts_actual_signer(self, org):
        d = delegation_service.create_delegation(
            org.company.id, org.D.id, org.G.id, ["APPROVE_LEAVE"], "2024-01-01", "2024-01-31",
        )
        delegation_service.accept_delegation(d.id, org.G.id, now=_utc(2023, 12, 28))
        _template(org, _person(org.D, name="部門主管"))
        first = _start(org, reference_id="L-1", now=_utc(2024, 1, 10))
        second = _start(org, reference_id="L-2", now=_utc(2024, 1, 10))
        _decide(first, 1, org.G, now=_utc(2024, 1, 11))
        _decide(second, 1, org.D, action="REJECT", now=_utc(2024, 1, 12))

        items, total = flow_engine.get_approval_history(org.G.id)
        assert total == 1
        assert items[0]["execution"]["id"] == first.id
        items, total = flow_engine.get_approval_history(org.D.id)
        assert total == 1
        assert items[0]["decision"] == "REJECTED"

    def test_skipped_steps_not_in_history(self, org):
        _template(org, _person(org.E2, is_required=False), SUPERVISOR)
        _start(org)
        assert flow_engine.get_approval_history(org.E2.id) == ([], 0)
