"""
Approval CC settings.

Who gets copied when an approval finishes.  A company row overrides the
global row (``company_id`` NULL).  Read once per finalisation through
``resolve_cc_recipients``.
"""

from __future__ import annotations

import logging

from sqlalchemy import select

from app.core.exceptions import ValidationError
from app.models import db
from app.models.audit import write_audit
from app.models.notification import ApprovalCCSetting
from app.services import org_directory

logger = logging.getLogger(__name__)


def _setting_row(company_id: int | None) -> ApprovalCCSetting | None:
    if company_id is None:
        stmt = select(ApprovalCCSetting).where(ApprovalCCSetting.company_id.is_(None))
    else:
        stmt = select(ApprovalCCSetting).where(ApprovalCCSetting.company_id == company_id)
    return db.session.execute(stmt).scalar_one_or_none()


def get_cc_setting(company_id: int | None = None) -> ApprovalCCSetting | None:
    """The company's setting, else the global one, else None."""
    row = _setting_row(company_id) if company_id is not None else None
    return row or _setting_row(None)


def update_cc_setting(company_id: int | None, employee_ids, actor_id: int | None = None) -> ApprovalCCSetting:
    """Replace the CC list for *company_id* (None = global)."""
    if employee_ids is None or not isinstance(employee_ids, (list, tuple)):
        raise ValidationError("cc_employee_ids must be a list", details={"cc_employee_ids": "list"})
    try:
        ids = list(dict.fromkeys(int(e) for e in employee_ids))
    except (TypeError, ValueError) as exc:
        raise ValidationError("cc_employee_ids must contain employee ids") from exc

    missing = sorted(set(ids) - org_directory.existing_employee_ids(ids))
    if missing:
        raise ValidationError(f"找不到員工：{', '.join(map(str, missing))}", details={"missing": missing})

    row = _setting_row(company_id)
    old = list(row.cc_employee_ids or []) if row else []
    if row is None:
        row = ApprovalCCSetting(company_id=company_id)
        db.session.add(row)
    row.cc_employee_ids = ids
    row.updated_by_id = actor_id
    db.session.flush()

    write_audit(
        entity_type="approval_cc_setting", entity_id=row.id,
        action="approval_cc_setting.update", actor_id=actor_id, company_id=company_id,
        diff={"old": old, "new": ids},
    )
    db.session.commit()
    logger.info("Approval CC list updated company=%s count=%d", company_id, len(ids),
                extra={"company_id": company_id})
    return row


def resolve_cc_recipients(execution) -> list[int]:
    """CC recipients for a finished *execution*; unknown employees are dropped."""
    setting = get_cc_setting(execution.company_id)
    if setting is None or not setting.cc_employee_ids:
        return []
    ids = [int(e) for e in setting.cc_employee_ids]
    known = org_directory.existing_employee_ids(ids)
    return [e for e in ids if e in known and e != execution.applicant_id]
