"""
ERP Approval Workflow Engine
Notification & Scheduling Blueprint.

Provides:
    - In-app notification inbox (list, unread count, mark read)
    - Outbox dispatch trigger
    - Approval CC settings (company override / global default)
    - Scheduled job management (list, trigger)
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from app.blueprints import actor_id, int_field, pagination_args
from app.services import approval_cc_service
from app.services.notification import NotificationService
from app.services.scheduler_service import SchedulerService
from app.utils.errors import E, api_error, register_service_error_handlers

logger = logging.getLogger(__name__)

notification_bp = Blueprint("notification", __name__, url_prefix="/api/v1")
register_service_error_handlers(notification_bp)


def _recipient_id():
    return request.args.get("recipient_id", type=int) or actor_id(name="recipient_id")


# ═══════════════════════════════════════════════════════════════════════════
#  INBOX
# ═══════════════════════════════════════════════════════════════════════════

@notification_bp.route("/notifications", methods=["GET"])
def list_notifications():
    """List notifications for a recipient (newest first)."""
    recipient_id = _recipient_id()
    unread_only = request.args.get("unread_only", "false").lower() == "true"
    limit, offset = pagination_args()
    items, total = NotificationService.list_for_recipient(
        recipient_id, unread_only=unread_only, limit=limit, offset=offset,
    )
    return jsonify({
        "items": [n.to_dict() for n in items],
        "total": total,
        "unread_count": NotificationService.unread_count(recipient_id),
    })


@notification_bp.route("/notifications/unread-count", methods=["GET"])
def unread_count():
    return jsonify({"unread_count": NotificationService.unread_count(_recipient_id())})


@notification_bp.route("/notifications/<int:nid>/read", methods=["PATCH"])
def mark_read(nid):
    data = request.get_json(silent=True) or {}
    notif = NotificationService.mark_read(nid, recipient_id=actor_id(data, name="recipient_id", required=False))
    if not notif:
        return api_error(E.NOT_FOUND, "Notification not found")
    return jsonify(notif.to_dict())


@notification_bp.route("/notifications/mark-all-read", methods=["POST"])
def mark_all_read():
    data = request.get_json(silent=True) or {}
    count = NotificationService.mark_all_read(actor_id(data, name="recipient_id"))
    return jsonify({"marked_read": count})


@notification_bp.route("/notifications/dispatch", methods=["POST"])
def dispatch_outbox():
    """Drain one batch of the outbox now."""
    data = request.get_json(silent=True) or {}
    try:
        limit = max(1, min(int(data.get("limit", 200)), 1000))
    except (TypeError, ValueError):
        return api_error(E.VALIDATION_INVALID, "limit must be an integer")
    return jsonify(NotificationService.dispatch_pending(limit=limit))


# ═══════════════════════════════════════════════════════════════════════════
#  APPROVAL CC SETTINGS
# ═══════════════════════════════════════════════════════════════════════════

@notification_bp.route("/notification-settings/approval-cc", methods=["GET"])
def get_approval_cc():
    """CC list in force for ``company_id`` (global default when omitted)."""
    company_id = request.args.get("company_id", type=int)
    setting = approval_cc_service.get_cc_setting(company_id)
    if setting is None:
        return jsonify({"company_id": company_id, "cc_employee_ids": [], "inherited": False})
    body = setting.to_dict()
    body["inherited"] = company_id is not None and setting.company_id is None
    return jsonify(body)


@notification_bp.route("/notification-settings/approval-cc", methods=["PUT"])
def update_approval_cc():
    """Body: { company_id?, cc_employee_ids: [...], actor_id? }"""
    data = request.get_json(silent=True) or {}
    setting = approval_cc_service.update_cc_setting(
        int_field(data, "company_id", required=False),
        data.get("cc_employee_ids"),
        actor_id=actor_id(data, required=False),
    )
    return jsonify(setting.to_dict())


# ═══════════════════════════════════════════════════════════════════════════
#  SCHEDULED JOBS
# ═══════════════════════════════════════════════════════════════════════════

@notification_bp.route("/scheduler/jobs", methods=["GET"])
def list_jobs():
    return jsonify(SchedulerService.list_jobs())


@notification_bp.route("/scheduler/jobs/<job_name>/run", methods=["POST"])
def run_job(job_name):
    result = SchedulerService.run_job(job_name)
    if result.get("status") == "error":
        return api_error(E.NOT_FOUND, result.get("error", "Unknown job"))
    return jsonify(result)
