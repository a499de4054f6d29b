"""
Delegation Registry Blueprint.

Routes:
  GET    /delegations/permission-types            – permission catalogue
  GET    /delegations/check-delegate/<eid>        – can this employee be a delegate?
  GET    /delegations                             – list (company_id, status filters)
  GET    /delegations/mine                        – open delegations of the actor
  GET    /delegations/active                      – delegations the actor may use now
  GET    /delegations/<did>                       – single delegation
  POST   /delegations                             – create (PENDING)
  POST   /delegations/<did>/accept                – delegate accepts
  POST   /delegations/<did>/reject                – delegate declines
  POST   /delegations/<did>/cancel                – any party cancels (reason ≥ 10 chars)
"""

import logging

from flask import Blueprint, jsonify, request

from app.blueprints import actor_id, int_field
from app.services import delegation_service
from app.utils.errors import register_service_error_handlers

logger = logging.getLogger(__name__)

delegation_bp = Blueprint("delegation", __name__, url_prefix="/api/v1")
register_service_error_handlers(delegation_bp)


@delegation_bp.route("/delegations/permission-types", methods=["GET"])
def list_permission_types():
    return jsonify(delegation_service.permission_types())


@delegation_bp.route("/delegations/check-delegate/<int:eid>", methods=["GET"])
def check_delegate(eid):
    return jsonify(delegation_service.check_can_be_delegate(eid))


@delegation_bp.route("/delegations", methods=["GET"])
def list_delegations():
    rows = delegation_service.list_delegations(
        company_id=request.args.get("company_id", type=int),
        status=request.args.get("status") or None,
    )
    return jsonify({"items": [d.to_dict(include_people=True) for d in rows], "total": len(rows)})


@delegation_bp.route("/delegations/mine", methods=["GET"])
def my_delegations():
    mine = delegation_service.get_my_delegations(actor_id())
    return jsonify({
        "as_delegator": [d.to_dict(include_people=True) for d in mine["as_delegator"]],
        "as_delegate": [d.to_dict(include_people=True) for d in mine["as_delegate"]],
    })


@delegation_bp.route("/delegations/active", methods=["GET"])
def active_delegations():
    rows = delegation_service.get_active_delegations(actor_id())
    return jsonify([d.to_dict(include_people=True) for d in rows])


@delegation_bp.route("/delegations/<int:did>", methods=["GET"])
def get_delegation(did):
    return jsonify(delegation_service.get_delegation(did).to_dict(include_people=True))


@delegation_bp.route("/delegations", methods=["POST"])
def create_delegation():
    """Create a delegation.

    Body: { company_id, delegator_id, delegate_id, permissions: [...],
            start_date, end_date?, actor_id? }
    """
    data = request.get_json(silent=True) or {}
    delegator_id = int_field(data, "delegator_id")
    delegation = delegation_service.create_delegation(
        company_id=int_field(data, "company_id"),
        delegator_id=delegator_id,
        delegate_id=int_field(data, "delegate_id"),
        permissions=data.get("permissions") or [],
        start_date=data.get("start_date"),
        end_date=data.get("end_date"),
        created_by_id=actor_id(data, required=False) or delegator_id,
    )
    return jsonify(delegation.to_dict(include_people=True)), 201


@delegation_bp.route("/delegations/<int:did>/accept", methods=["POST"])
def accept_delegation(did):
    data = request.get_json(silent=True) or {}
    delegation = delegation_service.accept_delegation(did, actor_id(data))
    return jsonify(delegation.to_dict(include_people=True))


@delegation_bp.route("/delegations/<int:did>/reject", methods=["POST"])
def reject_delegation(did):
    data = request.get_json(silent=True) or {}
    delegation = delegation_service.reject_delegation(did, actor_id(data), reason=data.get("reason"))
    return jsonify(delegation.to_dict(include_people=True))


@delegation_bp.route("/delegations/<int:did>/cancel", methods=["POST"])
def cancel_delegation(did):
    data = request.get_json(silent=True) or {}
    delegation = delegation_service.cancel_delegation(did, actor_id(data), data.get("reason") or "")
    return jsonify(delegation.to_dict(include_people=True))
