"""
Approval Resolution Engine.

Turns a step's assignee rule into concrete employees, and decides at
decision time whether a signer may act on a step (directly or through an
active delegation).

Assignee rules form a closed tagged union:

    DirectSupervisorRule   → supervisor of the applicant's assignment
    PositionRule(pos_id)   → every ACTIVE holder of the position
    SpecificPersonRule(id) → the named employee

Each rule exposes ``resolve(ctx) -> list[int]``.  A POSITION step with
several holders lets any one of them act; the first decision binds the
step.  Resolution happens once, when the instance starts; authority
(including delegation) is evaluated each time someone decides.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import ClassVar

from app.core.exceptions import ForbiddenError, UnroutableStepError, ValidationError
from app.models.flow_template import (
    ASSIGNEE_DIRECT_SUPERVISOR,
    ASSIGNEE_POSITION,
    ASSIGNEE_SPECIFIC_PERSON,
    FlowTemplate,
)
from app.services import delegation_service, org_directory

logger = logging.getLogger(__name__)

MSG_NOT_ASSIGNEE = "您不是此關卡的審核人"
MSG_NO_DELEGATION = "您沒有代理此人審核的權限"

# Module type → delegation permission that lets a delegate approve it.
# OVERTIME and BUSINESS_TRIP approvals cannot be delegated.
MODULE_APPROVE_PERMISSION = {
    "LEAVE": "APPROVE_LEAVE",
    "EXPENSE": "APPROVE_EXPENSE",
    "SEAL": "APPROVE_SEAL",
    "CARD": "APPROVE_CARD",
    "STATIONERY": "APPROVE_STATIONERY",
}


# ═════════════════════════════════════════════════════════════════════════
# Assignee rules
# ═════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class ResolutionContext:
    """Who is applying, and in which company."""

    applicant_id: int
    company_id: int


@dataclass(frozen=True)
class DirectSupervisorRule:
    kind: ClassVar[str] = ASSIGNEE_DIRECT_SUPERVISOR

    def resolve(self, ctx: ResolutionContext) -> list[int]:
        supervisor_id = org_directory.get_direct_supervisor_id(ctx.applicant_id, ctx.company_id)
        return [supervisor_id] if supervisor_id is not None else []


@dataclass(frozen=True)
class PositionRule:
    position_id: int
    kind: ClassVar[str] = ASSIGNEE_POSITION

    def resolve(self, ctx: ResolutionContext) -> list[int]:
        return org_directory.get_position_holder_ids(self.position_id, ctx.company_id)


@dataclass(frozen=True)
class SpecificPersonRule:
    employee_id: int
    kind: ClassVar[str] = ASSIGNEE_SPECIFIC_PERSON

    def resolve(self, ctx: ResolutionContext) -> list[int]:
        if org_directory.get_employee(self.employee_id) is None:
            return []
        return [self.employee_id]


AssigneeRule = DirectSupervisorRule | PositionRule | SpecificPersonRule


def rule_for(
    assignee_type: str | None,
    position_id: int | None = None,
    specific_employee_id: int | None = None,
) -> AssigneeRule:
    """Build the rule for a stored step or node."""
    if assignee_type == ASSIGNEE_DIRECT_SUPERVISOR:
        return DirectSupervisorRule()
    if assignee_type == ASSIGNEE_POSITION and position_id:
        return PositionRule(position_id)
    if assignee_type == ASSIGNEE_SPECIFIC_PERSON and specific_employee_id:
        return SpecificPersonRule(specific_employee_id)
    raise ValidationError(
        f"Incomplete assignee rule: {assignee_type}",
        details={"assignee_type": assignee_type, "position_id": position_id,
                 "specific_employee_id": specific_employee_id},
    )


# ═════════════════════════════════════════════════════════════════════════
# Step planning & resolution
# ═════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class PlannedStep:
    """One approval step of the flow in force, before resolution."""

    step_order: int
    name: str
    is_required: bool
    rule: AssigneeRule


@dataclass(frozen=True)
class ResolvedStep:
    step_order: int
    name: str
    is_required: bool
    assignee_type: str
    candidate_ids: tuple[int, ...] = field(default_factory=tuple)

    @property
    def primary_assignee_id(self) -> int | None:
        return self.candidate_ids[0] if self.candidate_ids else None


def plan_template_steps(template: FlowTemplate) -> list[PlannedStep]:
    return [
        PlannedStep(
            step_order=step.step_order,
            name=step.name,
            is_required=bool(step.is_required),
            rule=rule_for(step.assignee_type, step.position_id, step.specific_employee_id),
        )
        for step in sorted(template.steps, key=lambda s: s.step_order)
    ]


def resolve_steps(planned: list[PlannedStep], ctx: ResolutionContext) -> list[ResolvedStep]:
    """Resolve every planned step up front.

    Raises:
        UnroutableStepError: a required step resolves to nobody.
    """
    resolved = []
    for step in planned:
        candidates = tuple(step.rule.resolve(ctx))
        if not candidates and step.is_required:
            logger.warning(
                "Unroutable step %s (%s) for applicant=%s company=%s",
                step.step_order, step.rule.kind, ctx.applicant_id, ctx.company_id,
                extra={"company_id": ctx.company_id, "employee_id": ctx.applicant_id},
            )
            raise UnroutableStepError(step.step_order, step.name, reason=step.rule.kind)
        resolved.append(ResolvedStep(
            step_order=step.step_order,
            name=step.name,
            is_required=step.is_required,
            assignee_type=step.rule.kind,
            candidate_ids=candidates,
        ))
    return resolved


# ═════════════════════════════════════════════════════════════════════════
# Signer authority
# ═════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class SignerAuthority:
    """Why a signer may act on a step."""

    signer_id: int
    on_behalf_of: int
    delegation_id: int | None = None

    @property
    def is_delegated(self) -> bool:
        return self.delegation_id is not None


def authorize_signer(
    candidate_ids,
    signer_id: int,
    module_type: str,
    company_id: int,
    now: datetime | None = None,
    delegation_id: int | None = None,
) -> SignerAuthority:
    """Check that *signer_id* may decide a step assigned to *candidate_ids*.

    A candidate acts directly.  Anyone else needs an active delegation from
    a candidate, in the execution's company, carrying the module's
    APPROVE_* permission.

    Raises:
        ForbiddenError: neither a candidate nor a covering delegate.
    """
    candidate_ids = list(candidate_ids or [])
    if signer_id in candidate_ids:
        return SignerAuthority(signer_id=signer_id, on_behalf_of=signer_id)

    permission = MODULE_APPROVE_PERMISSION.get(module_type)
    delegation = None
    if permission is not None:
        delegation = delegation_service.find_covering_delegation(
            candidate_ids, signer_id, company_id, permission, now=now, delegation_id=delegation_id,
        )
    if delegation is None:
        raise ForbiddenError(MSG_NO_DELEGATION if delegation_id else MSG_NOT_ASSIGNEE, actor_id=signer_id)

    return SignerAuthority(
        signer_id=signer_id,
        on_behalf_of=delegation.delegator_id,
        delegation_id=delegation.id,
    )
