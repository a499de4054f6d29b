"""
Flow Template Blueprint.

Routes:
  GET    /flow-templates/module-types                    – module catalogue
  GET    /companies/<cid>/flow-templates                 – list a company's templates
  GET    /companies/<cid>/flow-templates/<module_type>   – active template for a module
  PUT    /companies/<cid>/flow-templates/<module_type>   – create or replace (version + 1)
  GET    /flow-templates/<tid>                           – single template
  DELETE /flow-templates/<tid>                           – delete (blocked by PENDING executions)
"""

from flask import Blueprint, jsonify, request

from app.blueprints import actor_id
from app.services import flow_template_service
from app.utils.errors import E, api_error, register_service_error_handlers

flow_template_bp = Blueprint("flow_template", __name__, url_prefix="/api/v1")
register_service_error_handlers(flow_template_bp)


@flow_template_bp.route("/flow-templates/module-types", methods=["GET"])
def list_module_types():
    return jsonify(flow_template_service.module_types())


@flow_template_bp.route("/companies/<int:cid>/flow-templates", methods=["GET"])
def list_templates(cid):
    return jsonify([t.to_dict() for t in flow_template_service.list_templates(cid)])


@flow_template_bp.route("/companies/<int:cid>/flow-templates/<module_type>", methods=["GET"])
def get_company_template(cid, module_type):
    flow_template_service.validate_module_type(module_type)
    template = flow_template_service.get_by_company_and_module(cid, module_type)
    if template is None:
        return api_error(E.NOT_FOUND, flow_template_service.MSG_NOT_FOUND)
    return jsonify(template.to_dict())


@flow_template_bp.route("/companies/<int:cid>/flow-templates/<module_type>", methods=["PUT"])
def upsert_template(cid, module_type):
    """Create or replace a template.

    Body: { name, description?, steps: [{step_order, name, assignee_type,
            position_id?, specific_employee_id?, is_required?}], is_active?, actor_id? }
    """
    data = request.get_json(silent=True) or {}
    steps = data.get("steps")
    if not isinstance(steps, list):
        return api_error(E.VALIDATION_REQUIRED, "steps must be an array")
    template = flow_template_service.upsert_template(
        company_id=cid,
        module_type=module_type,
        name=data.get("name"),
        steps=steps,
        description=data.get("description"),
        created_by_id=actor_id(data, required=False),
        is_active=data.get("is_active", True),
    )
    return jsonify(template.to_dict()), 200 if template.version > 1 else 201


@flow_template_bp.route("/flow-templates/<int:tid>", methods=["GET"])
def get_template(tid):
    return jsonify(flow_template_service.get_template(tid).to_dict())


@flow_template_bp.route("/flow-templates/<int:tid>", methods=["DELETE"])
def delete_template(tid):
    flow_template_service.delete_template(tid, actor_id=actor_id(required=False))
    return jsonify({"deleted": True})
