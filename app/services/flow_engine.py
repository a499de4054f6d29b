"""
Flow Execution tracker.

Runs one approval instance per business request:

    start_instance    pick the flow in force, resolve every step's
                      candidates, freeze them into records
    process_approval  APPROVE / REJECT the current step
    cancel_instance   applicant or admin withdraws a PENDING instance

State machine: PENDING → APPROVED | REJECTED | CANCELLED, all terminal.

Non-required steps are skipped (decision SKIPPED) the moment the flow
reaches them, both at start and after each approval.  Steps are strictly
sequential: only the record at ``current_step`` is actionable.

Functions here only flush.  ``decision_service`` owns the transaction,
the audit entry and everything that happens after commit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import ClassVar

from flask import current_app
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError

from app.core.exceptions import ConflictError, ForbiddenError, NotFoundError, ValidationError
from app.models import db
from app.models.flow_execution import (
    ACTION_REJECT,
    ACTIONS,
    DECISION_APPROVED,
    DECISION_REJECTED,
    DECISION_SKIPPED,
    EXECUTION_APPROVED,
    EXECUTION_CANCELLED,
    EXECUTION_PENDING,
    EXECUTION_REJECTED,
    SOURCE_DEFINITION,
    SOURCE_TEMPLATE,
    FlowApprovalCandidate,
    FlowApprovalRecord,
    FlowExecution,
    validate_execution_transition,
)
from app.models.flow_template import module_type_name
from app.services import (
    approval_cc_service,
    cache_service,
    delegation_service,
    flow_template_service,
    org_directory,
    workflow_definition_service,
)
from app.services.assignee_resolution import (
    MODULE_APPROVE_PERMISSION,
    ResolutionContext,
    SignerAuthority,
    authorize_signer,
    plan_template_steps,
    resolve_steps,
)
from app.services.notification import NotificationService
from app.utils.helpers import ensure_utc

logger = logging.getLogger(__name__)

APPROVAL_LINK = "/dashboard/approval"
REF_TYPE = "flow_execution"

MSG_NOT_FOUND = "找不到審核流程"
MSG_RECORD_NOT_FOUND = "找不到簽核紀錄"
MSG_ALREADY_RUNNING = "此申請已有審核中的流程"
MSG_NO_REQUIRED_STEP = "流程至少需要一個必要審核關卡"
MSG_FINISHED = "此流程已結束"
MSG_RECORD_DECIDED = "此簽核紀錄已處理"
MSG_NOT_CURRENT_STEP = "尚未輪到此關卡"
MSG_CANNOT_CANCEL = "此流程已結束，無法取消"
MSG_CANCEL_FORBIDDEN = "只有申請人或管理員可以取消此流程"
MSG_AUTO_SKIP = "非必要關卡，自動略過"


# ═════════════════════════════════════════════════════════════════════════
# Results
# ═════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class Started:
    execution: FlowExecution
    started: ClassVar[bool] = True


@dataclass(frozen=True)
class NoDefinitionFound:
    """No definition or template covers this request; the caller falls back
    to its own single-step approval."""

    module_type: str
    company_id: int
    started: ClassVar[bool] = False


StartResult = Started | NoDefinitionFound


@dataclass(frozen=True)
class DecisionOutcome:
    execution: FlowExecution
    record: FlowApprovalRecord
    authority: SignerAuthority
    final_status: str | None = None

    @property
    def is_final(self) -> bool:
        return self.final_status is not None


# ═════════════════════════════════════════════════════════════════════════
# Helpers
# ═════════════════════════════════════════════════════════════════════════


def _now(now: datetime | None) -> datetime:
    return ensure_utc(now) if now is not None else datetime.now(timezone.utc)


def _employee_name(employee_id: int | None) -> str:
    emp = org_directory.get_employee(employee_id) if employee_id else None
    return emp.name if emp else "員工"


def _lock_execution(execution_id: int) -> FlowExecution:
    """Load the execution with a row lock (ignored by SQLite)."""
    stmt = (
        select(FlowExecution)
        .where(FlowExecution.id == execution_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    execution = db.session.execute(stmt).scalar_one_or_none()
    if execution is None:
        raise NotFoundError("FlowExecution", execution_id, message=MSG_NOT_FOUND)
    return execution


def _notify_step(execution: FlowExecution, record: FlowApprovalRecord, first: bool) -> None:
    applicant = _employee_name(execution.applicant_id)
    module = module_type_name(execution.module_type)
    if first:
        message = f"{applicant} 提交了{module}申請，請審核"
    else:
        message = f"{applicant} 的{module}申請已通過前一關審核，請審核"
    NotificationService.enqueue_many(
        record.candidate_ids,
        type="APPROVAL_REQUEST",
        title="新的審核申請",
        message=message,
        ref_type=REF_TYPE,
        ref_id=execution.id,
        link=APPROVAL_LINK,
    )


def _skip(record: FlowApprovalRecord, now: datetime) -> None:
    record.decision = DECISION_SKIPPED
    record.decided_at = now
    record.comment = MSG_AUTO_SKIP


def _advance(execution: FlowExecution, after_step: int, now: datetime) -> FlowApprovalRecord | None:
    """Move to the first required step after *after_step*.

    Non-required steps on the way are skipped.  Returns the new current
    record, or None when no required step is left.
    """
    for record in execution.records:
        if record.step_order <= after_step or record.decision is not None:
            continue
        if not record.is_required:
            _skip(record, now)
            continue
        execution.current_step = record.step_order
        record.assigned_at = now
        return record
    return None


def _finish(execution: FlowExecution, status: str, now: datetime) -> None:
    if not validate_execution_transition(execution.status, status):
        raise ValidationError(MSG_FINISHED, details={"status": execution.status})
    execution.status = status
    execution.completed_at = now


# ═════════════════════════════════════════════════════════════════════════
# Start
# ═════════════════════════════════════════════════════════════════════════


def _pending_for_reference(module_type: str, reference_id: str) -> FlowExecution | None:
    stmt = select(FlowExecution).where(
        FlowExecution.module_type == module_type,
        FlowExecution.reference_id == reference_id,
        FlowExecution.status == EXECUTION_PENDING,
    )
    return db.session.execute(stmt).scalar_one_or_none()


def start_instance(
    module_type: str,
    reference_id,
    applicant_id: int,
    company_id: int,
    request_data: dict | None = None,
    now: datetime | None = None,
) -> StartResult:
    """Start the approval flow for one business request.

    A matching workflow definition wins over the company's flow template.

    Returns:
        ``Started(execution)`` or ``NoDefinitionFound`` when neither exists.

    Raises:
        ValidationError: unknown module, or a flow with no required step.
        ConflictError: the request already has a PENDING instance.
        UnroutableStepError: a required step resolves to nobody.
    """
    flow_template_service.validate_module_type(module_type)
    reference_id = str(reference_id)
    request_data = dict(request_data or {})
    now = _now(now)

    if _pending_for_reference(module_type, reference_id) is not None:
        raise ConflictError("FlowExecution", "reference_id", reference_id, message=MSG_ALREADY_RUNNING)

    definition = workflow_definition_service.get_applicable_definition(
        applicant_id, company_id, module_type,
        group_id=org_directory.get_company_group_id(company_id), now=now,
    )
    template = None
    if definition is not None:
        planned = workflow_definition_service.plan_definition_steps(definition, request_data)
    else:
        template = flow_template_service.get_by_company_and_module(company_id, module_type)
        if template is None:
            logger.info("No approval flow for module=%s company=%s", module_type, company_id,
                        extra={"company_id": company_id})
            return NoDefinitionFound(module_type=module_type, company_id=company_id)
        planned = plan_template_steps(template)

    if not any(step.is_required for step in planned):
        raise ValidationError(MSG_NO_REQUIRED_STEP, details={"steps": len(planned)})

    resolved = resolve_steps(planned, ResolutionContext(applicant_id=applicant_id, company_id=company_id))

    execution = FlowExecution(
        module_type=module_type,
        reference_id=reference_id,
        applicant_id=applicant_id,
        company_id=company_id,
        source=SOURCE_DEFINITION if definition is not None else SOURCE_TEMPLATE,
        template_id=template.id if template is not None else None,
        definition_id=definition.id if definition is not None else None,
        source_version=(definition or template).version,
        flow_name=(definition or template).name,
        current_step=1,
        total_steps=len(resolved),
        status=EXECUTION_PENDING,
        request_data=request_data,
        submitted_at=now,
    )
    for step in resolved:
        record = FlowApprovalRecord(
            step_order=step.step_order,
            step_name=step.name,
            assignee_type=step.assignee_type,
            is_required=step.is_required,
            assignee_id=step.primary_assignee_id,
            assigned_at=now,
        )
        record.candidates = [FlowApprovalCandidate(employee_id=eid) for eid in step.candidate_ids]
        execution.records.append(record)

    current = _advance(execution, 0, now)
    db.session.add(execution)
    try:
        db.session.flush()
    except IntegrityError as exc:
        raise ConflictError("FlowExecution", "reference_id", reference_id, message=MSG_ALREADY_RUNNING) from exc

    _notify_step(execution, current, first=True)
    logger.info(
        "Flow started id=%s module=%s ref=%s source=%s steps=%d current=%d",
        execution.id, module_type, reference_id, execution.source,
        execution.total_steps, execution.current_step,
        extra={"company_id": company_id, "execution_id": execution.id, "employee_id": applicant_id},
    )
    return Started(execution)


# ═════════════════════════════════════════════════════════════════════════
# Decide
# ═════════════════════════════════════════════════════════════════════════


def process_approval(
    execution_id: int,
    record_id: int,
    action: str,
    signer_id: int,
    comment: str | None = None,
    delegation_id: int | None = None,
    now: datetime | None = None,
    cc_resolver=None,
) -> DecisionOutcome:
    """Apply one APPROVE / REJECT to the current step.

    The decision write is conditional on the record still being undecided,
    so of two concurrent deciders exactly one wins.

    Raises:
        NotFoundError: unknown execution or record.
        ValidationError: finished flow, decided record, or not this step's turn.
        ForbiddenError: signer is neither a candidate nor a covering delegate.
    """
    if action not in ACTIONS:
        raise ValidationError(f"Invalid action '{action}'", details={"action": sorted(ACTIONS)})
    now = _now(now)
    cc_resolver = cc_resolver or approval_cc_service.resolve_cc_recipients

    execution = _lock_execution(execution_id)
    record = db.session.get(FlowApprovalRecord, record_id)
    if record is None or record.execution_id != execution.id:
        raise NotFoundError("FlowApprovalRecord", record_id, message=MSG_RECORD_NOT_FOUND)
    if not execution.is_pending:
        raise ValidationError(MSG_FINISHED, details={"status": execution.status})
    if record.decision is not None:
        raise ValidationError(MSG_RECORD_DECIDED, details={"decision": record.decision})
    if record.step_order != execution.current_step:
        raise ValidationError(MSG_NOT_CURRENT_STEP, details={
            "step_order": record.step_order, "current_step": execution.current_step,
        })

    authority = authorize_signer(
        record.candidate_ids, signer_id, execution.module_type, execution.company_id,
        now=now, delegation_id=delegation_id,
    )

    decision = ACTIONS[action]
    actual_approver_id = signer_id if signer_id != record.assignee_id else None
    result = db.session.execute(
        update(FlowApprovalRecord)
        .where(FlowApprovalRecord.id == record.id, FlowApprovalRecord.decision.is_(None))
        .values(
            decision=decision,
            decided_at=now,
            comment=comment,
            actual_approver_id=actual_approver_id,
            delegation_id=authority.delegation_id,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ValidationError(MSG_RECORD_DECIDED)
    db.session.refresh(record)

    applicant_id = execution.applicant_id
    module = module_type_name(execution.module_type)
    final_status = None

    if action == ACTION_REJECT:
        _finish(execution, EXECUTION_REJECTED, now)
        final_status = EXECUTION_REJECTED
        message = f"您的{module}申請已被拒絕"
        if comment:
            message += f"，原因：{comment}"
        NotificationService.enqueue(
            recipient_id=applicant_id, type="APPROVAL_REJECTED", title="申請被拒絕",
            message=message, ref_type=REF_TYPE, ref_id=execution.id, link=APPROVAL_LINK,
        )
    else:
        next_record = _advance(execution, record.step_order, now)
        if next_record is None:
            _finish(execution, EXECUTION_APPROVED, now)
            final_status = EXECUTION_APPROVED
            NotificationService.enqueue(
                recipient_id=applicant_id, type="APPROVAL_APPROVED", title="申請已核准",
                message=f"您的{module}申請已全部核准", ref_type=REF_TYPE, ref_id=execution.id,
                link=APPROVAL_LINK,
            )
            NotificationService.enqueue_many(
                cc_resolver(execution),
                type="APPROVAL_CC",
                title="審核完成通知（抄送）",
                message=f"{_employee_name(applicant_id)} 的{module}申請已核准",
                ref_type=REF_TYPE, ref_id=execution.id, link=APPROVAL_LINK,
            )
        else:
            _notify_step(execution, next_record, first=False)

    db.session.flush()
    logger.info(
        "Flow decision id=%s step=%d action=%s signer=%s delegated=%s final=%s",
        execution.id, record.step_order, action, signer_id, authority.is_delegated, final_status,
        extra={"company_id": execution.company_id, "execution_id": execution.id, "employee_id": signer_id},
    )
    return DecisionOutcome(execution=execution, record=record, authority=authority, final_status=final_status)


# ═════════════════════════════════════════════════════════════════════════
# Cancel
# ═════════════════════════════════════════════════════════════════════════


def cancel_instance(
    execution_id: int,
    cancelled_by_id: int,
    reason: str | None = None,
    is_admin: bool = False,
    now: datetime | None = None,
) -> FlowExecution:
    """Withdraw a PENDING instance (applicant or admin only)."""
    now = _now(now)
    execution = _lock_execution(execution_id)
    if not is_admin and cancelled_by_id != execution.applicant_id:
        raise ForbiddenError(MSG_CANCEL_FORBIDDEN, actor_id=cancelled_by_id)
    if not execution.is_pending:
        raise ValidationError(MSG_CANNOT_CANCEL, details={"status": execution.status})

    current = execution.current_record
    _finish(execution, EXECUTION_CANCELLED, now)
    execution.cancelled_by_id = cancelled_by_id
    execution.cancel_reason = reason

    if current is not None:
        message = f"{_employee_name(execution.applicant_id)} 的{module_type_name(execution.module_type)}申請已取消"
        if reason:
            message += f"，原因：{reason}"
        NotificationService.enqueue_many(
            current.candidate_ids,
            type="APPROVAL_CANCELLED", title="審核申請已取消", message=message,
            ref_type=REF_TYPE, ref_id=execution.id, link=APPROVAL_LINK,
        )
    db.session.flush()
    logger.info("Flow cancelled id=%s by=%s admin=%s", execution.id, cancelled_by_id, is_admin,
                extra={"company_id": execution.company_id, "execution_id": execution.id})
    return execution


# ═════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════


def get_execution(execution_id: int) -> FlowExecution:
    execution = db.session.get(FlowExecution, execution_id)
    if execution is None:
        raise NotFoundError("FlowExecution", execution_id, message=MSG_NOT_FOUND)
    return execution


def get_by_reference(module_type: str, reference_id) -> FlowExecution | None:
    """Latest execution for a business request (any status)."""
    stmt = (
        select(FlowExecution)
        .where(FlowExecution.module_type == module_type, FlowExecution.reference_id == str(reference_id))
        .order_by(FlowExecution.id.desc())
        .limit(1)
    )
    return db.session.execute(stmt).scalar_one_or_none()


def _open_records_for(candidate_ids) -> list[FlowApprovalRecord]:
    """Actionable records (current step of a PENDING execution) offered to any of *candidate_ids*."""
    offered = select(FlowApprovalCandidate.record_id).where(
        FlowApprovalCandidate.employee_id.in_(list(candidate_ids)),
    )
    stmt = (
        select(FlowApprovalRecord)
        .join(FlowExecution, FlowExecution.id == FlowApprovalRecord.execution_id)
        .where(
            FlowExecution.status == EXECUTION_PENDING,
            FlowApprovalRecord.step_order == FlowExecution.current_step,
            FlowApprovalRecord.decision.is_(None),
            FlowApprovalRecord.id.in_(offered),
        )
        .order_by(FlowExecution.submitted_at, FlowExecution.id)
    )
    return list(db.session.execute(stmt).scalars())


def _pending_item(record: FlowApprovalRecord) -> dict:
    item = record.execution.to_dict(include_records=False)
    item["module_label"] = module_type_name(record.execution.module_type)
    item["applicant_name"] = _employee_name(record.execution.applicant_id)
    item["record"] = record.to_dict()
    return item


def _cache_ttl() -> int:
    return current_app.config.get("PENDING_APPROVALS_CACHE_TTL", cache_service.PENDING_TTL)


def get_pending_approvals(employee_id: int) -> list[dict]:
    """Steps waiting on *employee_id* as a candidate.  Cached per employee."""
    return cache_service.get_cached(
        cache_service.pending_key(employee_id),
        ttl=_cache_ttl(),
        loader=lambda: [_pending_item(r) for r in _open_records_for([employee_id])],
    )


def _load_proxy_pending(employee_id: int, now: datetime | None) -> list[dict]:
    items, seen = [], set()
    for delegation in delegation_service.get_active_delegations(employee_id, now):
        granted = set(delegation.permission_types)
        for record in _open_records_for([delegation.delegator_id]):
            execution = record.execution
            if execution.company_id != delegation.company_id:
                continue
            if record.id in seen or MODULE_APPROVE_PERMISSION.get(execution.module_type) not in granted:
                continue
            seen.add(record.id)
            item = _pending_item(record)
            item["delegation"] = delegation.to_dict(include_people=True)
            items.append(item)
    return items


def get_proxy_pending_approvals(employee_id: int, now: datetime | None = None) -> list[dict]:
    """Steps *employee_id* may decide as a delegate, each with its delegation.

    Only cached for "now"; an explicit *now* always reads through.
    """
    if now is not None:
        return _load_proxy_pending(employee_id, now)
    return cache_service.get_cached(
        cache_service.proxy_pending_key(employee_id),
        ttl=_cache_ttl(),
        loader=lambda: _load_proxy_pending(employee_id, None),
    )


def get_approval_history(employee_id: int, limit: int = 50, offset: int = 0) -> tuple[list[dict], int]:
    """Decisions *employee_id* made, directly or as a delegate, newest first."""
    decided_by_me = or_(
        FlowApprovalRecord.actual_approver_id == employee_id,
        and_(FlowApprovalRecord.assignee_id == employee_id, FlowApprovalRecord.actual_approver_id.is_(None)),
    )
    base = select(FlowApprovalRecord).where(
        FlowApprovalRecord.decision.in_([DECISION_APPROVED, DECISION_REJECTED]),
        decided_by_me,
    )
    total = db.session.execute(select(func.count()).select_from(base.subquery())).scalar_one()
    rows = db.session.execute(
        base.order_by(FlowApprovalRecord.decided_at.desc(), FlowApprovalRecord.id.desc())
        .offset(offset).limit(limit)
    ).scalars()
    items = []
    for record in rows:
        item = record.to_dict()
        item["execution"] = record.execution.to_dict(include_records=False)
        item["module_label"] = module_type_name(record.execution.module_type)
        items.append(item)
    return items, total
