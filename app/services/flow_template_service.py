"""
Flow Template Store.

Per (company, module) linear approval chains of 1–4 steps.  Upserting an
existing template replaces its steps wholesale and bumps the version in one
transaction; running executions keep the steps they were started with.
"""

from __future__ import annotations

import logging

from sqlalchemy import func, select

from app.core.exceptions import NotFoundError, ValidationError
from app.models import db
from app.models.audit import write_audit
from app.models.flow_execution import EXECUTION_PENDING, FlowExecution
from app.models.flow_template import (
    ASSIGNEE_POSITION,
    ASSIGNEE_SPECIFIC_PERSON,
    ASSIGNEE_TYPES,
    MAX_APPROVAL_STEPS,
    MODULE_TYPES,
    FlowStep,
    FlowTemplate,
)

logger = logging.getLogger(__name__)

MSG_NOT_FOUND = "找不到流程範本"
MSG_TOO_MANY_STEPS = f"審核層級最多 {MAX_APPROVAL_STEPS} 層"


# ── Validation ─────────────────────────────────────────────────────────────────


def validate_module_type(module_type: str) -> None:
    if module_type not in MODULE_TYPES:
        raise ValidationError(
            f"Invalid module_type '{module_type}'",
            details={"module_type": sorted(MODULE_TYPES)},
        )


def _step_int(value, order, field):
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(f"步驟 {order} 的 {field} 必須為數字", details={field: "integer"})
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"步驟 {order} 的 {field} 必須為數字", details={field: "integer"}) from exc


def normalise_steps(steps: list[dict]) -> list[dict]:
    """Validate step payloads and return cleaned copies sorted by step_order.

    Fields that do not belong to a step's assignee type are dropped, so a
    POSITION step never carries a stale specific_employee_id.
    """
    if not steps:
        raise ValidationError("至少需要一個審核步驟", details={"steps": "required"})
    if len(steps) > MAX_APPROVAL_STEPS:
        raise ValidationError(MSG_TOO_MANY_STEPS, details={"steps": f"max {MAX_APPROVAL_STEPS}"})

    cleaned = []
    for idx, raw in enumerate(steps, start=1):
        if not isinstance(raw, dict):
            raise ValidationError(f"步驟 {idx} 格式錯誤", details={"step": idx})
        order = _step_int(raw.get("step_order", idx), idx, "step_order")
        name = raw.get("name")
        name = name.strip() if isinstance(name, str) else ""
        assignee_type = raw.get("assignee_type")
        if not name:
            raise ValidationError(f"步驟 {order} 需要名稱", details={"step_order": order})
        if assignee_type not in ASSIGNEE_TYPES:
            raise ValidationError(
                f"步驟 {order}「{name}」的審核人類型無效",
                details={"assignee_type": sorted(ASSIGNEE_TYPES)},
            )
        position_id = raw.get("position_id") if assignee_type == ASSIGNEE_POSITION else None
        specific_id = raw.get("specific_employee_id") if assignee_type == ASSIGNEE_SPECIFIC_PERSON else None
        position_id = _step_int(position_id, order, "position_id")
        specific_id = _step_int(specific_id, order, "specific_employee_id")
        if assignee_type == ASSIGNEE_POSITION and not position_id:
            raise ValidationError(f"步驟 {order}「{name}」需要選擇職位", details={"step_order": order})
        if assignee_type == ASSIGNEE_SPECIFIC_PERSON and not specific_id:
            raise ValidationError(f"步驟 {order}「{name}」需要選擇指定人員", details={"step_order": order})
        cleaned.append({
            "step_order": order,
            "name": name,
            "assignee_type": assignee_type,
            "position_id": position_id,
            "specific_employee_id": specific_id,
            "is_required": bool(raw.get("is_required", True)),
        })

    cleaned.sort(key=lambda s: s["step_order"])
    orders = [s["step_order"] for s in cleaned]
    if orders != list(range(1, len(cleaned) + 1)):
        raise ValidationError("步驟順序必須為 1 起的連續數字", details={"step_orders": orders})
    return cleaned


# ── Mutations ──────────────────────────────────────────────────────────────────


def upsert_template(
    company_id: int,
    module_type: str,
    name: str,
    steps: list[dict],
    description: str | None = None,
    created_by_id: int | None = None,
    is_active: bool = True,
) -> FlowTemplate:
    """Create the (company, module) template or replace its steps.

    Raises:
        ValidationError: unknown module, > MAX_APPROVAL_STEPS steps, or a
            step whose assignee fields do not match its type.
    """
    validate_module_type(module_type)
    name = (name or "").strip()
    if not name:
        raise ValidationError("name is required", details={"name": "required"})
    if not isinstance(is_active, bool):
        raise ValidationError("is_active must be a boolean", details={"is_active": "boolean"})
    cleaned = normalise_steps(steps)

    template = db.session.execute(
        select(FlowTemplate).where(
            FlowTemplate.company_id == company_id,
            FlowTemplate.module_type == module_type,
        )
    ).scalar_one_or_none()

    if template is None:
        template = FlowTemplate(
            company_id=company_id,
            module_type=module_type,
            name=name,
            description=description,
            version=1,
            is_active=is_active,
            created_by_id=created_by_id,
        )
        db.session.add(template)
        action_version = 1
    else:
        template.name = name
        template.description = description
        template.is_active = is_active
        template.version = (template.version or 1) + 1
        template.steps.clear()
        # old rows must be gone before the (template_id, step_order) unique key sees new ones
        db.session.flush()
        action_version = template.version

    template.steps.extend(FlowStep(**s) for s in cleaned)
    db.session.flush()

    write_audit(
        entity_type="flow_template",
        entity_id=template.id,
        action="flow_template.upsert",
        actor_id=created_by_id,
        company_id=company_id,
        diff={"module_type": module_type, "version": action_version, "steps": len(cleaned),
              "is_active": is_active},
    )
    db.session.commit()

    logger.info(
        "Flow template saved id=%s company=%s module=%s version=%s steps=%d",
        template.id, company_id, module_type, template.version, len(cleaned),
        extra={"company_id": company_id},
    )
    return template


def delete_template(template_id: int, actor_id: int | None = None) -> None:
    """Delete a template unless PENDING executions still use it."""
    template = get_template(template_id)
    in_flight = db.session.execute(
        select(func.count(FlowExecution.id)).where(
            FlowExecution.template_id == template_id,
            FlowExecution.status == EXECUTION_PENDING,
        )
    ).scalar_one()
    if in_flight:
        raise ValidationError(
            f"有 {in_flight} 個審核中的申請使用此流程，無法刪除",
            details={"pending_executions": in_flight},
        )

    company_id = template.company_id
    write_audit(
        entity_type="flow_template", entity_id=template_id, action="flow_template.delete",
        actor_id=actor_id, company_id=company_id,
        diff={"module_type": template.module_type, "version": template.version},
    )
    db.session.delete(template)
    db.session.commit()
    logger.info("Flow template deleted id=%s", template_id, extra={"company_id": company_id})


# ── Queries ────────────────────────────────────────────────────────────────────


def get_template(template_id: int) -> FlowTemplate:
    template = db.session.get(FlowTemplate, template_id)
    if template is None:
        raise NotFoundError("FlowTemplate", template_id, message=MSG_NOT_FOUND)
    return template


def list_templates(company_id: int) -> list[FlowTemplate]:
    stmt = (
        select(FlowTemplate)
        .where(FlowTemplate.company_id == company_id)
        .order_by(FlowTemplate.module_type)
    )
    return list(db.session.execute(stmt).scalars())


def get_by_company_and_module(company_id: int, module_type: str) -> FlowTemplate | None:
    stmt = select(FlowTemplate).where(
        FlowTemplate.company_id == company_id,
        FlowTemplate.module_type == module_type,
        FlowTemplate.is_active.is_(True),
    )
    return db.session.execute(stmt).scalar_one_or_none()


def module_types() -> list[dict]:
    return [{"value": value, "label": label} for value, (label, _short) in MODULE_TYPES.items()]
