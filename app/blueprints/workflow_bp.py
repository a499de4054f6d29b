"""
Workflow Definition Blueprint.

Routes:
  GET    /workflow-definitions                       – list (company_id, group_id, scope_type, is_active)
  POST   /workflow-definitions                       – create header (+ optional design)
  GET    /workflow-definitions/applicable            – definition in force for employee/company/request_type
  GET    /workflow-definitions/<wid>                 – header + graph
  PUT    /workflow-definitions/<wid>                 – update header
  PUT    /workflow-definitions/<wid>/design          – replace nodes + edges (version + 1)
  POST   /workflow-definitions/<wid>/duplicate       – inactive copy
  POST   /workflow-definitions/<wid>/preview         – approval path for sample request data
  DELETE /workflow-definitions/<wid>                 – delete (blocked by PENDING executions)
"""

from flask import Blueprint, jsonify, request

from app.blueprints import actor_id
from app.services import org_directory, workflow_definition_service
from app.utils.errors import E, api_error, register_service_error_handlers

workflow_bp = Blueprint("workflow", __name__, url_prefix="/api/v1")
register_service_error_handlers(workflow_bp)


def _bool_arg(name):
    raw = request.args.get(name)
    if raw is None or raw == "":
        return None
    return raw.lower() in ("1", "true", "yes")


@workflow_bp.route("/workflow-definitions", methods=["GET"])
def list_definitions():
    rows = workflow_definition_service.list_definitions(
        company_id=request.args.get("company_id", type=int),
        group_id=request.args.get("group_id", type=int),
        scope_type=request.args.get("scope_type") or None,
        is_active=_bool_arg("is_active"),
    )
    return jsonify([d.to_dict() for d in rows])


@workflow_bp.route("/workflow-definitions", methods=["POST"])
def create_definition():
    """Create a definition.

    Body: { name, scope_type, company_id?, group_id?, employee_id?, request_type?,
            effective_from?, effective_to?, nodes?, edges?, actor_id? }
    """
    data = request.get_json(silent=True) or {}
    definition = workflow_definition_service.create_definition(data, created_by_id=actor_id(data, required=False))
    return jsonify(definition.to_dict(include_graph=True)), 201


@workflow_bp.route("/workflow-definitions/applicable", methods=["GET"])
def applicable_definition():
    employee_id = request.args.get("employee_id", type=int)
    company_id = request.args.get("company_id", type=int)
    request_type = request.args.get("request_type")
    if not (employee_id and company_id and request_type):
        return api_error(E.VALIDATION_REQUIRED, "employee_id, company_id and request_type are required")
    definition = workflow_definition_service.get_applicable_definition(
        employee_id, company_id, request_type, group_id=org_directory.get_company_group_id(company_id),
    )
    return jsonify({"definition": definition.to_dict(include_graph=True) if definition else None})


@workflow_bp.route("/workflow-definitions/<int:wid>", methods=["GET"])
def get_definition(wid):
    return jsonify(workflow_definition_service.get_definition(wid).to_dict(include_graph=True))


@workflow_bp.route("/workflow-definitions/<int:wid>", methods=["PUT"])
def update_definition(wid):
    data = request.get_json(silent=True) or {}
    definition = workflow_definition_service.update_definition(wid, data, actor_id=actor_id(data, required=False))
    return jsonify(definition.to_dict(include_graph=True))


@workflow_bp.route("/workflow-definitions/<int:wid>/design", methods=["PUT"])
def save_design(wid):
    """Body: { nodes: [...], edges: [...], actor_id? }"""
    data = request.get_json(silent=True) or {}
    nodes, edges = data.get("nodes"), data.get("edges", [])
    if not isinstance(nodes, list) or not isinstance(edges, list):
        return api_error(E.VALIDATION_REQUIRED, "nodes and edges must be arrays")
    definition = workflow_definition_service.save_design(wid, nodes, edges, actor_id=actor_id(data, required=False))
    return jsonify(definition.to_dict(include_graph=True))


@workflow_bp.route("/workflow-definitions/<int:wid>/duplicate", methods=["POST"])
def duplicate_definition(wid):
    data = request.get_json(silent=True) or {}
    copy = workflow_definition_service.duplicate_definition(
        wid, data.get("new_name"), created_by_id=actor_id(data, required=False),
    )
    return jsonify(copy.to_dict(include_graph=True)), 201


@workflow_bp.route("/workflow-definitions/<int:wid>/preview", methods=["POST"])
def preview_path(wid):
    """Ordered approval steps the definition would produce for ``request_data``."""
    data = request.get_json(silent=True) or {}
    definition = workflow_definition_service.get_definition(wid)
    steps = workflow_definition_service.plan_definition_steps(definition, data.get("request_data") or {})
    return jsonify([
        {"step_order": s.step_order, "name": s.name, "is_required": s.is_required, "assignee_type": s.rule.kind}
        for s in steps
    ])


@workflow_bp.route("/workflow-definitions/<int:wid>", methods=["DELETE"])
def delete_definition(wid):
    workflow_definition_service.delete_definition(wid, actor_id=actor_id(required=False))
    return jsonify({"deleted": True})
