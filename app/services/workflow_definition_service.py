"""
Workflow Definition Store.

Graph-form approval flows scoped to an employee, a request type or a
company/group default.  Also home of the two pieces of the resolution
engine that are definition-specific:

    get_applicable_definition  scope precedence EMPLOYEE > REQUEST_TYPE > DEFAULT
    plan_definition_steps      walk START → … → END, picking edges by the
                               request data, and return the APPROVAL nodes
                               on the chosen path as ordered steps

Both run once when an instance starts; the resulting steps are frozen into
the execution's records.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

from sqlalchemy import and_, func, or_, select

from app.core.exceptions import NotFoundError, ValidationError
from app.models import db
from app.models.audit import write_audit
from app.models.flow_execution import EXECUTION_PENDING, FlowExecution
from app.models.flow_template import ASSIGNEE_TYPES, MODULE_TYPES
from app.models.workflow import (
    CONDITION_OPERATORS,
    NODE_APPROVAL,
    NODE_END,
    NODE_START,
    NODE_TYPES,
    SCOPE_EMPLOYEE,
    SCOPE_PRECEDENCE,
    SCOPE_REQUEST_TYPE,
    SCOPE_TYPES,
    WorkflowDefinition,
    WorkflowEdge,
    WorkflowNode,
)
from app.services.assignee_resolution import PlannedStep, rule_for
from app.utils.helpers import ensure_utc, parse_datetime

logger = logging.getLogger(__name__)

MSG_NOT_FOUND = "找不到流程定義"
MSG_EMPLOYEE_REQUIRED = "員工特殊路徑需要指定員工"
MSG_REQUEST_TYPE_REQUIRED = "申請類型流程需要指定申請類型"
MSG_SCOPE_OWNER_REQUIRED = "預設流程需要指定公司或集團"

_HEADER_FIELDS = ("name", "description", "is_active")


# ═════════════════════════════════════════════════════════════════════════
# Validation
# ═════════════════════════════════════════════════════════════════════════


def _validate_scope(scope_type, company_id, group_id, employee_id, request_type) -> None:
    if scope_type not in SCOPE_TYPES:
        raise ValidationError(f"Invalid scope_type '{scope_type}'", details={"scope_type": sorted(SCOPE_TYPES)})
    if scope_type == SCOPE_EMPLOYEE and not employee_id:
        raise ValidationError(MSG_EMPLOYEE_REQUIRED)
    if scope_type == SCOPE_REQUEST_TYPE:
        if not request_type:
            raise ValidationError(MSG_REQUEST_TYPE_REQUIRED)
        if request_type not in MODULE_TYPES:
            raise ValidationError(f"Invalid request_type '{request_type}'",
                                  details={"request_type": sorted(MODULE_TYPES)})
    if scope_type != SCOPE_EMPLOYEE and not (company_id or group_id):
        raise ValidationError(MSG_SCOPE_OWNER_REQUIRED)


def _parse_window(effective_from, effective_to):
    try:
        start = parse_datetime(effective_from)
        end = parse_datetime(effective_to, end_of_day=True)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc
    if start and end and end < start:
        raise ValidationError("生效結束日不能早於生效開始日")
    return start, end


def validate_design(nodes: list[dict], edges: list[dict]) -> None:
    """Structural checks on a submitted graph.

    One START, at least one END, unique node keys, APPROVAL nodes with a
    complete assignee rule, edges between known nodes with known operators.
    """
    keys = [n.get("node_key") for n in nodes]
    if any(not k for k in keys):
        raise ValidationError("每個節點都需要 node_key")
    if len(set(keys)) != len(keys):
        raise ValidationError("node_key 不可重複", details={"node_keys": keys})

    types = [n.get("node_type") for n in nodes]
    bad_types = sorted({t for t in types if t not in NODE_TYPES})
    if bad_types:
        raise ValidationError(f"Invalid node_type: {', '.join(map(str, bad_types))}")
    if types.count(NODE_START) != 1:
        raise ValidationError("流程需要剛好一個開始節點")
    if NODE_END not in types:
        raise ValidationError("流程缺少結束節點")

    for node in nodes:
        if node.get("node_type") != NODE_APPROVAL:
            continue
        if node.get("assignee_type") not in ASSIGNEE_TYPES:
            raise ValidationError(f"節點「{node.get('name')}」需要設定審核人類型")
        rule_for(node.get("assignee_type"), node.get("position_id"), node.get("specific_employee_id"))

    key_set = set(keys)
    for edge in edges:
        if edge.get("from_node_key") not in key_set or edge.get("to_node_key") not in key_set:
            raise ValidationError("連線指向不存在的節點", details={"edge": edge})
        op = edge.get("condition_operator")
        if op and op not in CONDITION_OPERATORS:
            raise ValidationError(f"Invalid condition_operator '{op}'",
                                  details={"condition_operator": sorted(CONDITION_OPERATORS)})


def _build_nodes(nodes: list[dict]) -> list[WorkflowNode]:
    built = []
    for idx, n in enumerate(nodes):
        is_approval = n.get("node_type") == NODE_APPROVAL
        built.append(WorkflowNode(
            node_key=n["node_key"],
            node_type=n["node_type"],
            name=(n.get("name") or n["node_type"]).strip(),
            assignee_type=n.get("assignee_type") if is_approval else None,
            position_id=n.get("position_id") if is_approval else None,
            specific_employee_id=n.get("specific_employee_id") if is_approval else None,
            is_required=bool(n.get("is_required", True)),
            sort_order=n.get("sort_order", idx),
            pos_x=n.get("pos_x", 0),
            pos_y=n.get("pos_y", 0),
        ))
    return built


def _build_edges(edges: list[dict]) -> list[WorkflowEdge]:
    return [
        WorkflowEdge(
            from_node_key=e["from_node_key"],
            to_node_key=e["to_node_key"],
            condition_field=e.get("condition_field"),
            condition_operator=e.get("condition_operator"),
            condition_value=e.get("condition_value"),
            is_default=bool(e.get("is_default", False)),
            sort_order=e.get("sort_order", idx),
        )
        for idx, e in enumerate(edges)
    ]


# ═════════════════════════════════════════════════════════════════════════
# CRUD
# ═════════════════════════════════════════════════════════════════════════


def create_definition(data: dict, created_by_id: int | None = None) -> WorkflowDefinition:
    """Create a definition header (optionally with an initial design)."""
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("name is required", details={"name": "required"})
    scope_type = data.get("scope_type")
    _validate_scope(scope_type, data.get("company_id"), data.get("group_id"),
                    data.get("employee_id"), data.get("request_type"))
    effective_from, effective_to = _parse_window(data.get("effective_from"), data.get("effective_to"))

    nodes = data.get("nodes") or []
    edges = data.get("edges") or []
    if nodes or edges:
        validate_design(nodes, edges)

    definition = WorkflowDefinition(
        name=name,
        description=data.get("description"),
        scope_type=scope_type,
        company_id=data.get("company_id"),
        group_id=data.get("group_id"),
        employee_id=data.get("employee_id") if scope_type == SCOPE_EMPLOYEE else None,
        request_type=data.get("request_type") if scope_type == SCOPE_REQUEST_TYPE else None,
        is_active=_is_active(data.get("is_active", True)),
        version=1,
        effective_from=effective_from,
        effective_to=effective_to,
        created_by_id=created_by_id,
        nodes=_build_nodes(nodes),
        edges=_build_edges(edges),
    )
    db.session.add(definition)
    db.session.flush()
    write_audit(
        entity_type="workflow_definition", entity_id=definition.id,
        action="workflow_definition.create", actor_id=created_by_id,
        company_id=definition.company_id,
        diff={"scope_type": scope_type, "name": name},
    )
    db.session.commit()
    logger.info("Workflow definition created id=%s scope=%s", definition.id, scope_type,
                extra={"company_id": definition.company_id})
    return definition


def _is_active(value) -> bool:
    if not isinstance(value, bool):
        raise ValidationError("is_active must be a boolean", details={"is_active": "boolean"})
    return value


def update_definition(definition_id: int, data: dict, actor_id: int | None = None) -> WorkflowDefinition:
    """Update header fields (name, description, active flag, effective window)."""
    definition = get_definition(definition_id)
    changes = {}
    for f in _HEADER_FIELDS:
        if f in data:
            old = getattr(definition, f)
            new = data[f].strip() if f == "name" and isinstance(data[f], str) else data[f]
            if f == "is_active":
                new = _is_active(new)
            if f == "name" and not new:
                raise ValidationError("name is required", details={"name": "required"})
            if old != new:
                setattr(definition, f, new)
                changes[f] = {"old": old, "new": new}
    if "effective_from" in data or "effective_to" in data:
        start, end = _parse_window(
            data.get("effective_from", definition.effective_from),
            data.get("effective_to", definition.effective_to),
        )
        definition.effective_from, definition.effective_to = start, end
        changes["effective"] = {"from": start, "to": end}

    if changes:
        write_audit(
            entity_type="workflow_definition", entity_id=definition.id,
            action="workflow_definition.update", actor_id=actor_id,
            company_id=definition.company_id, diff=changes,
        )
    db.session.commit()
    return definition


def save_design(definition_id: int, nodes: list[dict], edges: list[dict],
                actor_id: int | None = None) -> WorkflowDefinition:
    """Replace the graph atomically and bump the version."""
    definition = get_definition(definition_id)
    validate_design(nodes, edges)

    definition.edges.clear()
    definition.nodes.clear()
    db.session.flush()
    definition.nodes.extend(_build_nodes(nodes))
    definition.edges.extend(_build_edges(edges))
    definition.version = (definition.version or 1) + 1

    write_audit(
        entity_type="workflow_definition", entity_id=definition.id,
        action="workflow_definition.save_design", actor_id=actor_id,
        company_id=definition.company_id,
        diff={"version": definition.version, "nodes": len(nodes), "edges": len(edges)},
    )
    db.session.commit()
    logger.info("Workflow design saved id=%s version=%s nodes=%d",
                definition.id, definition.version, len(nodes))
    return definition


def delete_definition(definition_id: int, actor_id: int | None = None) -> None:
    definition = get_definition(definition_id)
    running = db.session.execute(
        select(func.count(FlowExecution.id)).where(
            FlowExecution.definition_id == definition_id,
            FlowExecution.status == EXECUTION_PENDING,
        )
    ).scalar_one()
    if running:
        raise ValidationError(
            f"此流程有 {running} 個執行中的實例，無法刪除",
            details={"pending_executions": running},
        )
    write_audit(
        entity_type="workflow_definition", entity_id=definition_id,
        action="workflow_definition.delete", actor_id=actor_id,
        company_id=definition.company_id, diff={"name": definition.name},
    )
    db.session.delete(definition)
    db.session.commit()
    logger.info("Workflow definition deleted id=%s", definition_id)


def duplicate_definition(definition_id: int, new_name: str, created_by_id: int | None = None) -> WorkflowDefinition:
    """Copy a definition and its graph; the copy starts inactive at version 1."""
    original = db.session.get(WorkflowDefinition, definition_id)
    if original is None:
        raise NotFoundError("WorkflowDefinition", definition_id, message="找不到原始流程定義")
    new_name = (new_name or "").strip()
    if not new_name:
        raise ValidationError("new_name is required", details={"new_name": "required"})

    copy = WorkflowDefinition(
        name=new_name,
        description=original.description,
        scope_type=original.scope_type,
        company_id=original.company_id,
        group_id=original.group_id,
        employee_id=original.employee_id,
        request_type=original.request_type,
        is_active=False,
        version=1,
        effective_from=original.effective_from,
        effective_to=original.effective_to,
        created_by_id=created_by_id,
        nodes=_build_nodes([n.to_dict() for n in original.nodes]),
        edges=_build_edges([e.to_dict() for e in original.edges]),
    )
    db.session.add(copy)
    db.session.flush()
    write_audit(
        entity_type="workflow_definition", entity_id=copy.id,
        action="workflow_definition.duplicate", actor_id=created_by_id,
        company_id=copy.company_id, diff={"source_id": definition_id},
    )
    db.session.commit()
    return copy


# ═════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════


def get_definition(definition_id: int) -> WorkflowDefinition:
    definition = db.session.get(WorkflowDefinition, definition_id)
    if definition is None:
        raise NotFoundError("WorkflowDefinition", definition_id, message=MSG_NOT_FOUND)
    return definition


def list_definitions(company_id=None, group_id=None, scope_type=None, is_active=None) -> list[WorkflowDefinition]:
    stmt = select(WorkflowDefinition).order_by(WorkflowDefinition.updated_at.desc(), WorkflowDefinition.id.desc())
    if company_id is not None:
        stmt = stmt.where(WorkflowDefinition.company_id == company_id)
    if group_id is not None:
        stmt = stmt.where(WorkflowDefinition.group_id == group_id)
    if scope_type:
        stmt = stmt.where(WorkflowDefinition.scope_type == scope_type)
    if is_active is not None:
        stmt = stmt.where(WorkflowDefinition.is_active.is_(bool(is_active)))
    return list(db.session.execute(stmt).scalars())


def get_applicable_definition(
    employee_id: int,
    company_id: int,
    request_type: str,
    group_id: int | None = None,
    now: datetime | None = None,
) -> WorkflowDefinition | None:
    """Pick the definition in force for this applicant and request type.

    EMPLOYEE beats REQUEST_TYPE beats DEFAULT.  Within a scope a
    company-level definition beats a group-level one, then the highest
    version wins.  Only active definitions inside their effective window
    and carrying at least one node count.
    """
    now = ensure_utc(now) if now else datetime.now(timezone.utc)
    owner_clause = WorkflowDefinition.company_id == company_id
    if group_id is not None:
        owner_clause = or_(
            owner_clause,
            and_(WorkflowDefinition.group_id == group_id, WorkflowDefinition.company_id.is_(None)),
        )
    base = select(WorkflowDefinition).where(
        WorkflowDefinition.is_active.is_(True),
        or_(WorkflowDefinition.effective_from.is_(None), WorkflowDefinition.effective_from <= now),
        or_(WorkflowDefinition.effective_to.is_(None), WorkflowDefinition.effective_to >= now),
    )

    for scope in SCOPE_PRECEDENCE:
        stmt = base.where(WorkflowDefinition.scope_type == scope)
        if scope == SCOPE_EMPLOYEE:
            stmt = stmt.where(
                WorkflowDefinition.employee_id == employee_id,
                or_(WorkflowDefinition.company_id.is_(None), owner_clause),
            )
        elif scope == SCOPE_REQUEST_TYPE:
            stmt = stmt.where(WorkflowDefinition.request_type == request_type, owner_clause)
        else:
            stmt = stmt.where(owner_clause)
        candidates = [d for d in db.session.execute(stmt).scalars() if d.nodes]
        if not candidates:
            continue
        candidates.sort(key=lambda d: (d.company_id == company_id, d.version, d.id), reverse=True)
        chosen = candidates[0]
        logger.debug("Applicable definition id=%s scope=%s for employee=%s",
                     chosen.id, scope, employee_id, extra={"company_id": company_id})
        return chosen
    return None


# ═════════════════════════════════════════════════════════════════════════
# Graph walk
# ═════════════════════════════════════════════════════════════════════════


def _as_number(value):
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return None


def _as_list(condition_value) -> list[str]:
    if isinstance(condition_value, (list, tuple)):
        return [_as_text(v).strip() for v in condition_value]
    return [s.strip() for s in str(condition_value).split(",")]


def _as_text(value) -> str:
    """JSON-style text form: booleans as true/false, None as null."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    return str(value)


def evaluate_condition(value, operator: str, condition_value) -> bool:
    """Evaluate one edge condition against a request-data value.

    Non-numeric operators compare JSON-style text forms, so ``True``
    equals "true" and a missing field reads as "null".  Numeric operators
    compare as decimals and are false when either side is not a number.  IN / NOT_IN accept a list or a comma-separated string.
    """
    if condition_value is None:
        return False
    if operator == "EQUALS":
        return _as_text(value) == _as_text(condition_value)
    if operator == "NOT_EQUALS":
        return _as_text(value) != _as_text(condition_value)
    if operator in ("GREATER_THAN", "LESS_THAN", "GREATER_OR_EQUAL", "LESS_OR_EQUAL"):
        left, right = _as_number(value), _as_number(condition_value)
        if left is None or right is None:
            return False
        return {
            "GREATER_THAN": left > right,
            "LESS_THAN": left < right,
            "GREATER_OR_EQUAL": left >= right,
            "LESS_OR_EQUAL": left <= right,
        }[operator]
    if operator == "CONTAINS":
        return _as_text(condition_value) in _as_text(value)
    if operator == "IN":
        return _as_text(value) in _as_list(condition_value)
    if operator == "NOT_IN":
        return _as_text(value) not in _as_list(condition_value)
    return False


def _next_edge(outgoing: list[WorkflowEdge], request_data: dict) -> WorkflowEdge:
    """First matching conditional edge, else the default edge, else the first edge."""
    for edge in outgoing:
        if edge.has_condition:
            if evaluate_condition(request_data.get(edge.condition_field),
                                  edge.condition_operator, edge.condition_value):
                return edge
    for edge in outgoing:
        if edge.is_default:
            return edge
    unconditional = [e for e in outgoing if not e.has_condition]
    return unconditional[0] if unconditional else outgoing[0]


def plan_definition_steps(definition: WorkflowDefinition, request_data: dict | None = None) -> list[PlannedStep]:
    """Ordered approval steps along the path chosen by *request_data*.

    Without edges the APPROVAL nodes are taken in ``sort_order``.

    Raises:
        ValidationError: the walk hits a cycle or a dead end before END.
    """
    request_data = request_data or {}
    approval_nodes = [n for n in definition.nodes if n.node_type == NODE_APPROVAL]

    if not definition.edges:
        path = sorted(approval_nodes, key=lambda n: (n.sort_order, n.id or 0))
    else:
        by_key = {n.node_key: n for n in definition.nodes}
        outgoing: dict[str, list[WorkflowEdge]] = {}
        for edge in sorted(definition.edges, key=lambda e: e.sort_order):
            outgoing.setdefault(edge.from_node_key, []).append(edge)

        start = next((n for n in definition.nodes if n.node_type == NODE_START), None)
        if start is None:
            raise ValidationError(f"流程定義「{definition.name}」缺少開始節點")
        path, visited, node = [], set(), start
        while node.node_type != NODE_END:
            if node.node_key in visited:
                raise ValidationError(f"流程定義「{definition.name}」包含循環")
            visited.add(node.node_key)
            if node.node_type == NODE_APPROVAL:
                path.append(node)
            edges = outgoing.get(node.node_key)
            if not edges:
                raise ValidationError(f"流程定義「{definition.name}」的節點「{node.name}」沒有後續連線")
            node = by_key[_next_edge(edges, request_data).to_node_key]

    return [
        PlannedStep(
            step_order=i,
            name=node.name,
            is_required=bool(node.is_required),
            rule=rule_for(node.assignee_type, node.position_id, node.specific_employee_id),
        )
        for i, node in enumerate(path, start=1)
    ]

