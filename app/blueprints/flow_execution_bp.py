"""
Flow Execution Blueprint.

Routes:
  POST   /flow-executions                                 – start an instance for a business request
  GET    /flow-executions/by-reference                    – latest instance for module_type + reference_id
  GET    /flow-executions/<xid>                           – instance with its step records
  POST   /flow-executions/<xid>/records/<rid>/decide      – APPROVE / REJECT the current step
  POST   /flow-executions/<xid>/cancel                    – applicant or admin cancels
  GET    /approvals/pending                               – steps waiting on the actor
  GET    /approvals/proxy-pending                         – steps the actor may decide as a delegate
  GET    /approvals/history                               – decisions the actor made
"""

import logging

from flask import Blueprint, jsonify, request

from app.blueprints import actor_id, int_field, pagination_args
from app.services import decision_service, flow_engine
from app.utils.errors import E, api_error, register_service_error_handlers

logger = logging.getLogger(__name__)

flow_execution_bp = Blueprint("flow_execution", __name__, url_prefix="/api/v1")
register_service_error_handlers(flow_execution_bp)


@flow_execution_bp.route("/flow-executions", methods=["POST"])
def start_execution():
    """Start an approval instance.

    Body: { module_type, reference_id, applicant_id, company_id, request_data? }

    201 with the instance when started; 200 with ``started: false`` when no
    definition or template covers the request.
    """
    data = request.get_json(silent=True) or {}
    module_type = data.get("module_type")
    reference_id = data.get("reference_id")
    if not module_type or reference_id in (None, ""):
        return api_error(E.VALIDATION_REQUIRED, "module_type and reference_id are required")
    request_data = data.get("request_data") or {}
    if not isinstance(request_data, dict):
        return api_error(E.VALIDATION_INVALID, "request_data must be an object")

    result = decision_service.start(
        module_type=module_type,
        reference_id=reference_id,
        applicant_id=int_field(data, "applicant_id"),
        company_id=int_field(data, "company_id"),
        request_data=request_data,
    )
    if not result.started:
        return jsonify({
            "started": False,
            "module_type": result.module_type,
            "company_id": result.company_id,
            "message": "此申請類型尚未設定審核流程",
        }), 200
    return jsonify({"started": True, "execution": result.execution.to_dict()}), 201


@flow_execution_bp.route("/flow-executions/by-reference", methods=["GET"])
def get_by_reference():
    module_type = request.args.get("module_type")
    reference_id = request.args.get("reference_id")
    if not module_type or not reference_id:
        return api_error(E.VALIDATION_REQUIRED, "module_type and reference_id are required")
    execution = flow_engine.get_by_reference(module_type, reference_id)
    if execution is None:
        return api_error(E.NOT_FOUND, flow_engine.MSG_NOT_FOUND)
    return jsonify(execution.to_dict())


@flow_execution_bp.route("/flow-executions/<int:xid>", methods=["GET"])
def get_execution(xid):
    return jsonify(flow_engine.get_execution(xid).to_dict())


@flow_execution_bp.route("/flow-executions/<int:xid>/records/<int:rid>/decide", methods=["POST"])
def decide(xid, rid):
    """Body: { action: APPROVE|REJECT, signer_id, comment?, delegation_id? }"""
    data = request.get_json(silent=True) or {}
    outcome = decision_service.decide(
        execution_id=xid,
        record_id=rid,
        action=(data.get("action") or "").upper(),
        signer_id=actor_id(data, name="signer_id"),
        comment=data.get("comment"),
        delegation_id=int_field(data, "delegation_id", required=False),
    )
    return jsonify({
        "execution": outcome.execution.to_dict(),
        "record": outcome.record.to_dict(),
        "delegated": outcome.authority.is_delegated,
        "final_status": outcome.final_status,
    })


@flow_execution_bp.route("/flow-executions/<int:xid>/cancel", methods=["POST"])
def cancel_execution(xid):
    """Body: { actor_id, reason?, is_admin? }"""
    data = request.get_json(silent=True) or {}
    execution = decision_service.cancel(
        xid, actor_id(data), reason=data.get("reason"), is_admin=bool(data.get("is_admin", False)),
    )
    return jsonify(execution.to_dict())


@flow_execution_bp.route("/approvals/pending", methods=["GET"])
def pending_approvals():
    employee_id = request.args.get("employee_id", type=int) or actor_id(name="employee_id")
    items = flow_engine.get_pending_approvals(employee_id)
    return jsonify({"items": items, "total": len(items)})


@flow_execution_bp.route("/approvals/proxy-pending", methods=["GET"])
def proxy_pending_approvals():
    employee_id = request.args.get("employee_id", type=int) or actor_id(name="employee_id")
    items = flow_engine.get_proxy_pending_approvals(employee_id)
    return jsonify({"items": items, "total": len(items)})


@flow_execution_bp.route("/approvals/history", methods=["GET"])
def approval_history():
    employee_id = request.args.get("employee_id", type=int) or actor_id(name="employee_id")
    limit, offset = pagination_args()
    items, total = flow_engine.get_approval_history(employee_id, limit=limit, offset=offset)
    return jsonify({"items": items, "total": total, "limit": limit, "offset": offset})
