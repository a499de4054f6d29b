"""
Delegation Registry Service.

Owns the delegation lifecycle (create → accept/reject → cancel) and the
queries the approval engine uses to decide whether a delegate may act on a
delegator's behalf.

Business rules enforced here:
    - A delegator cannot delegate to themselves.
    - The delegate must hold at least one ACTIVE assignment.
    - At most one PENDING/ACCEPTED delegation per (delegator, delegate,
      company).  The partial unique index on ``delegations`` catches races.
    - Only the named delegate may accept or reject, and only while PENDING.
    - Cancellation needs a reason of at least 10 characters and is open to
      the delegator, the delegate and whoever created the delegation.

Every mutation commits its own transaction and queues notifications into
the outbox before committing.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError

from app.core.exceptions import ForbiddenError, NotFoundError, ValidationError
from app.models import db
from app.models.audit import write_audit
from app.models.delegation import (
    DELEGATION_ACCEPTED,
    DELEGATION_CANCELLED,
    DELEGATION_PENDING,
    DELEGATION_REJECTED,
    DELEGATION_STATUSES,
    MIN_CANCEL_REASON_LENGTH,
    OPEN_DELEGATION_STATUSES,
    PERMISSION_TYPES,
    Delegation,
    DelegationPermission,
    validate_delegation_transition,
)
from app.services import cache_service, org_directory
from app.services.notification import NotificationService
from app.utils.helpers import ensure_utc, parse_datetime

logger = logging.getLogger(__name__)

DELEGATION_LINK = "/dashboard/hr/delegation"

MSG_SELF_DELEGATION = "不能指定自己為代理人"
MSG_DELEGATE_INACTIVE = "該員工已離職，無法擔任代理人"
MSG_DUPLICATE = "已有進行中的代理設定"
MSG_NOT_FOUND = "找不到代理設定"
MSG_NOT_DELEGATE = "您不是此代理的指定人"
MSG_ALREADY_HANDLED = "此代理邀請已處理"
MSG_CANNOT_CANCEL = "此代理已無法取消"
MSG_CANCEL_REASON = f"取消原因至少 {MIN_CANCEL_REASON_LENGTH} 個字"
MSG_NOT_PARTY = "您無權取消此代理"


# ── Private helpers ────────────────────────────────────────────────────────────


def _now(now: datetime | None) -> datetime:
    return ensure_utc(now) if now is not None else datetime.now(timezone.utc)


def _load(delegation_id: int) -> Delegation:
    delegation = db.session.get(Delegation, delegation_id)
    if delegation is None:
        raise NotFoundError("Delegation", delegation_id, message=MSG_NOT_FOUND)
    return delegation


def _employee_name(employee_id: int | None) -> str:
    emp = org_directory.get_employee(employee_id) if employee_id else None
    return emp.name if emp else "員工"


def _normalise_permissions(permissions) -> list[str]:
    if not permissions:
        raise ValidationError("至少需要選擇一項代理權限", details={"permissions": "required"})
    unknown = sorted({p for p in permissions if p not in PERMISSION_TYPES})
    if unknown:
        raise ValidationError(
            f"未知的代理權限：{', '.join(unknown)}",
            details={"permissions": unknown},
        )
    return list(dict.fromkeys(permissions))


def _open_delegation_exists(delegator_id: int, delegate_id: int, company_id: int) -> bool:
    stmt = select(Delegation.id).where(
        Delegation.delegator_id == delegator_id,
        Delegation.delegate_id == delegate_id,
        Delegation.company_id == company_id,
        Delegation.status.in_(OPEN_DELEGATION_STATUSES),
    )
    return db.session.execute(stmt.limit(1)).scalar_one_or_none() is not None


# ── Reference data ─────────────────────────────────────────────────────────────


def permission_types() -> list[dict]:
    return [
        {"value": value, "label": label, "category": category}
        for value, (label, category) in PERMISSION_TYPES.items()
    ]


def check_can_be_delegate(employee_id: int) -> dict:
    """Whether *employee_id* can currently be named as a delegate."""
    can = org_directory.has_active_assignment(employee_id)
    return {"can_be_delegate": can, "reason": None if can else MSG_DELEGATE_INACTIVE}


# ── Lifecycle ──────────────────────────────────────────────────────────────────


def create_delegation(
    company_id: int,
    delegator_id: int,
    delegate_id: int,
    permissions: list[str],
    start_date,
    end_date=None,
    created_by_id: int | None = None,
) -> Delegation:
    """Create a PENDING delegation and invite the delegate.

    ``start_date``/``end_date`` accept datetimes or ISO strings; a date-only
    end date covers the whole of that day.

    Raises:
        ValidationError: self-delegation, inactive delegate, duplicate open
            delegation, bad permissions or an inverted date range.
    """
    if delegator_id == delegate_id:
        raise ValidationError(MSG_SELF_DELEGATION)

    if not org_directory.has_active_assignment(delegate_id):
        raise ValidationError(MSG_DELEGATE_INACTIVE)

    perms = _normalise_permissions(permissions)

    try:
        start = parse_datetime(start_date)
        end = parse_datetime(end_date, end_of_day=True)
    except ValueError as exc:
        raise ValidationError(str(exc), details={"start_date": start_date, "end_date": end_date}) from exc
    if start is None:
        raise ValidationError("start_date is required", details={"start_date": "required"})
    if end is not None and end < start:
        raise ValidationError("結束日期不能早於開始日期", details={"end_date": "before start_date"})

    if _open_delegation_exists(delegator_id, delegate_id, company_id):
        raise ValidationError(MSG_DUPLICATE)

    delegation = Delegation(
        company_id=company_id,
        delegator_id=delegator_id,
        delegate_id=delegate_id,
        created_by_id=created_by_id or delegator_id,
        status=DELEGATION_PENDING,
        start_date=start,
        end_date=end,
        permissions=[DelegationPermission(permission_type=p) for p in perms],
    )
    db.session.add(delegation)
    try:
        db.session.flush()
    except IntegrityError as exc:
        db.session.rollback()
        logger.info("Concurrent delegation create rejected delegator=%s delegate=%s",
                    delegator_id, delegate_id)
        raise ValidationError(MSG_DUPLICATE) from exc

    NotificationService.enqueue(
        recipient_id=delegate_id,
        type="DELEGATION_REQUEST",
        title="職務代理邀請",
        message=f"{_employee_name(delegator_id)} 邀請您擔任職務代理人",
        ref_type="Delegation",
        ref_id=delegation.id,
        link=DELEGATION_LINK,
    )
    write_audit(
        entity_type="delegation",
        entity_id=delegation.id,
        action="delegation.create",
        actor_id=delegation.created_by_id,
        company_id=company_id,
        diff={"delegator_id": delegator_id, "delegate_id": delegate_id, "permissions": perms},
    )
    db.session.commit()
    NotificationService.dispatch_after_commit()

    logger.info(
        "Delegation created id=%s delegator=%s delegate=%s",
        delegation.id, delegator_id, delegate_id,
        extra={"company_id": company_id, "employee_id": delegator_id},
    )
    return delegation


def accept_delegation(delegation_id: int, employee_id: int, now: datetime | None = None) -> Delegation:
    """Delegate accepts a PENDING invitation."""
    delegation = _load(delegation_id)
    if delegation.delegate_id != employee_id:
        raise ForbiddenError(MSG_NOT_DELEGATE, actor_id=employee_id)
    if delegation.status != DELEGATION_PENDING:
        raise ValidationError(MSG_ALREADY_HANDLED)

    delegation.status = DELEGATION_ACCEPTED
    delegation.responded_at = _now(now)

    NotificationService.enqueue(
        recipient_id=delegation.delegator_id,
        type="DELEGATION_ACCEPTED",
        title="代理邀請已接受",
        message=f"{_employee_name(delegation.delegate_id)} 已接受您的代理邀請",
        ref_type="Delegation",
        ref_id=delegation.id,
        link=DELEGATION_LINK,
    )
    write_audit(
        entity_type="delegation", entity_id=delegation.id, action="delegation.accept",
        actor_id=employee_id, company_id=delegation.company_id,
        diff={"status": {"old": DELEGATION_PENDING, "new": DELEGATION_ACCEPTED}},
    )
    db.session.commit()
    cache_service.invalidate_approval_inbox()
    NotificationService.dispatch_after_commit()
    logger.info("Delegation accepted id=%s", delegation.id, extra={"employee_id": employee_id})
    return delegation


def reject_delegation(
    delegation_id: int, employee_id: int, reason: str | None = None, now: datetime | None = None,
) -> Delegation:
    """Delegate declines a PENDING invitation."""
    delegation = _load(delegation_id)
    if delegation.delegate_id != employee_id:
        raise ForbiddenError(MSG_NOT_DELEGATE, actor_id=employee_id)
    if delegation.status != DELEGATION_PENDING:
        raise ValidationError(MSG_ALREADY_HANDLED)

    reason = (reason or "").strip() or None
    delegation.status = DELEGATION_REJECTED
    delegation.responded_at = _now(now)
    delegation.reject_reason = reason

    suffix = f"，原因：{reason}" if reason else ""
    NotificationService.enqueue(
        recipient_id=delegation.delegator_id,
        type="DELEGATION_REJECTED",
        title="代理邀請被拒絕",
        message=f"{_employee_name(delegation.delegate_id)} 已拒絕您的代理邀請{suffix}",
        ref_type="Delegation",
        ref_id=delegation.id,
        link=DELEGATION_LINK,
    )
    write_audit(
        entity_type="delegation", entity_id=delegation.id, action="delegation.reject",
        actor_id=employee_id, company_id=delegation.company_id,
        diff={"status": {"old": DELEGATION_PENDING, "new": DELEGATION_REJECTED}, "reason": reason},
    )
    db.session.commit()
    NotificationService.dispatch_after_commit()
    logger.info("Delegation rejected id=%s", delegation.id, extra={"employee_id": employee_id})
    return delegation


def cancel_delegation(
    delegation_id: int, cancelled_by_id: int, reason: str, now: datetime | None = None,
) -> Delegation:
    """Cancel a PENDING or ACCEPTED delegation and notify the other party."""
    reason = (reason or "").strip()
    if len(reason) < MIN_CANCEL_REASON_LENGTH:
        raise ValidationError(MSG_CANCEL_REASON, details={"reason": f"min {MIN_CANCEL_REASON_LENGTH} chars"})

    delegation = _load(delegation_id)
    if not validate_delegation_transition(delegation.status, DELEGATION_CANCELLED):
        raise ValidationError(MSG_CANNOT_CANCEL)
    parties = {delegation.delegator_id, delegation.delegate_id, delegation.created_by_id}
    if cancelled_by_id not in parties:
        raise ForbiddenError(MSG_NOT_PARTY, actor_id=cancelled_by_id)

    old_status = delegation.status
    delegation.status = DELEGATION_CANCELLED
    delegation.cancelled_at = _now(now)
    delegation.cancelled_by_id = cancelled_by_id
    delegation.cancel_reason = reason

    if cancelled_by_id == delegation.delegator_id:
        notify_id = delegation.delegate_id
    else:
        notify_id = delegation.delegator_id
    NotificationService.enqueue(
        recipient_id=notify_id,
        type="DELEGATION_CANCELLED",
        title="代理已取消",
        message=f"{_employee_name(cancelled_by_id)} 已取消代理關係，原因：{reason}",
        ref_type="Delegation",
        ref_id=delegation.id,
        link=DELEGATION_LINK,
    )
    write_audit(
        entity_type="delegation", entity_id=delegation.id, action="delegation.cancel",
        actor_id=cancelled_by_id, company_id=delegation.company_id,
        diff={"status": {"old": old_status, "new": DELEGATION_CANCELLED}, "reason": reason},
    )
    db.session.commit()
    cache_service.invalidate_approval_inbox()
    NotificationService.dispatch_after_commit()
    logger.info("Delegation cancelled id=%s by=%s", delegation.id, cancelled_by_id)
    return delegation


# ── Queries ────────────────────────────────────────────────────────────────────


def get_delegation(delegation_id: int) -> Delegation:
    return _load(delegation_id)


def list_delegations(company_id: int | None = None, status: str | None = None) -> list[Delegation]:
    stmt = select(Delegation).order_by(Delegation.created_at.desc(), Delegation.id.desc())
    if company_id is not None:
        stmt = stmt.where(Delegation.company_id == company_id)
    if status:
        if status not in DELEGATION_STATUSES:
            raise ValidationError(f"Invalid status '{status}'", details={"status": sorted(DELEGATION_STATUSES)})
        stmt = stmt.where(Delegation.status == status)
    return list(db.session.execute(stmt).scalars())


def get_my_delegations(employee_id: int) -> dict:
    """Open delegations where *employee_id* is delegator or delegate."""
    stmt = (
        select(Delegation)
        .where(
            or_(Delegation.delegator_id == employee_id, Delegation.delegate_id == employee_id),
            Delegation.status.in_(OPEN_DELEGATION_STATUSES),
        )
        .order_by(Delegation.created_at.desc(), Delegation.id.desc())
    )
    rows = list(db.session.execute(stmt).scalars())
    return {
        "as_delegator": [d for d in rows if d.delegator_id == employee_id],
        "as_delegate": [d for d in rows if d.delegate_id == employee_id],
    }


def get_active_delegations(employee_id: int, now: datetime | None = None) -> list[Delegation]:
    """ACCEPTED delegations naming *employee_id* as delegate and in force at *now*."""
    now = _now(now)
    stmt = (
        select(Delegation)
        .where(
            Delegation.delegate_id == employee_id,
            Delegation.status == DELEGATION_ACCEPTED,
            Delegation.start_date <= now,
            or_(Delegation.end_date.is_(None), Delegation.end_date >= now),
        )
        .order_by(Delegation.id)
    )
    return [d for d in db.session.execute(stmt).scalars() if d.is_active(now)]


def find_covering_delegation(
    delegator_ids,
    delegate_id: int,
    company_id: int,
    permission_type: str,
    now: datetime | None = None,
    delegation_id: int | None = None,
) -> Delegation | None:
    """Active delegation from any of *delegator_ids* to *delegate_id* granting *permission_type*.

    When *delegation_id* is given only that delegation is considered.
    """
    delegator_ids = set(delegator_ids or [])
    if not delegator_ids:
        return None
    for delegation in get_active_delegations(delegate_id, now):
        if delegation_id is not None and delegation.id != delegation_id:
            continue
        if delegation.delegator_id not in delegator_ids:
            continue
        if delegation.company_id != company_id:
            continue
        if permission_type in delegation.permission_types:
            return delegation
    return None
