"""
Decision Processor.

Transaction boundary around the flow engine.  Every call:

    1. runs the engine operation (flush only)
    2. writes the audit entry in the same transaction
    3. commits, or rolls back and re-raises on any error
    4. after commit: business-module callback, pending-list cache
       invalidation, outbox dispatch

Step 4 failures are logged and never undo the committed decision.
Signer authority, including delegation, is evaluated inside the engine at
call time, so a delegation that started or ended between steps is honoured.
"""

from __future__ import annotations

import logging
from datetime import datetime

from app.models import db
from app.models.audit import write_audit
from app.models.flow_execution import ACTION_APPROVE, EXECUTION_CANCELLED, FlowExecution
from app.services import cache_service, flow_engine, request_callbacks
from app.services.approval_cc_service import resolve_cc_recipients
from app.services.notification import NotificationService

logger = logging.getLogger(__name__)


def _log_extra(execution: FlowExecution) -> dict:
    return {"company_id": execution.company_id, "execution_id": execution.id}


def _after_commit(execution: FlowExecution, final_status: str | None, touched_employee_ids) -> None:
    if final_status is not None:
        try:
            request_callbacks.apply_final_decision(
                execution.module_type, execution.reference_id, final_status, execution.id,
            )
        except Exception:
            db.session.rollback()
            logger.exception(
                "Decision callback failed module=%s ref=%s status=%s",
                execution.module_type, execution.reference_id, final_status,
                extra=_log_extra(execution),
            )
    cache_service.invalidate_approval_inbox(touched_employee_ids)
    NotificationService.dispatch_after_commit()


def _candidate_ids(execution: FlowExecution) -> set[int]:
    ids = set()
    for record in execution.records:
        ids.update(record.candidate_ids)
    return ids


def start(
    module_type: str,
    reference_id,
    applicant_id: int,
    company_id: int,
    request_data: dict | None = None,
    now: datetime | None = None,
) -> flow_engine.StartResult:
    """Start an approval instance and commit it."""
    try:
        result = flow_engine.start_instance(
            module_type, reference_id, applicant_id, company_id, request_data=request_data, now=now,
        )
        if not result.started:
            db.session.rollback()
            return result
        execution = result.execution
        write_audit(
            entity_type="flow_execution", entity_id=execution.id, action="flow_execution.start",
            actor_id=applicant_id, company_id=company_id,
            diff={
                "module_type": module_type, "reference_id": execution.reference_id,
                "source": execution.source, "source_version": execution.source_version,
                "total_steps": execution.total_steps, "current_step": execution.current_step,
            },
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    _after_commit(execution, None, _candidate_ids(execution))
    return result


def decide(
    execution_id: int,
    record_id: int,
    action: str,
    signer_id: int,
    comment: str | None = None,
    delegation_id: int | None = None,
    now: datetime | None = None,
) -> flow_engine.DecisionOutcome:
    """APPROVE or REJECT a step and commit."""
    try:
        outcome = flow_engine.process_approval(
            execution_id, record_id, action, signer_id, comment=comment,
            delegation_id=delegation_id, now=now, cc_resolver=resolve_cc_recipients,
        )
        execution, record = outcome.execution, outcome.record
        write_audit(
            entity_type="flow_execution", entity_id=execution.id,
            action="flow_execution.approve" if action == ACTION_APPROVE else "flow_execution.reject",
            actor_id=signer_id, company_id=execution.company_id,
            diff={
                "record_id": record.id, "step_order": record.step_order, "decision": record.decision,
                "on_behalf_of": outcome.authority.on_behalf_of,
                "delegation_id": outcome.authority.delegation_id,
                "current_step": execution.current_step, "status": execution.status,
            },
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    touched = _candidate_ids(execution) | {signer_id, outcome.authority.on_behalf_of}
    _after_commit(execution, outcome.final_status, touched)
    return outcome


def cancel(
    execution_id: int,
    cancelled_by_id: int,
    reason: str | None = None,
    is_admin: bool = False,
    now: datetime | None = None,
) -> FlowExecution:
    """Cancel a PENDING instance and commit."""
    try:
        execution = flow_engine.cancel_instance(
            execution_id, cancelled_by_id, reason=reason, is_admin=is_admin, now=now,
        )
        write_audit(
            entity_type="flow_execution", entity_id=execution.id, action="flow_execution.cancel",
            actor_id=cancelled_by_id, company_id=execution.company_id,
            diff={"reason": reason, "is_admin": is_admin, "current_step": execution.current_step},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    _after_commit(execution, EXECUTION_CANCELLED, _candidate_ids(execution))
    return execution
