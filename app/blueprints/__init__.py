"""
ERP Approval Workflow Engine
Blueprint registry and shared request helpers.
"""

from flask import request

from app.core.exceptions import ValidationError


def pagination_args(default_limit=50, max_limit=200):
    """Parse limit/offset query params.

    Returns:
        (limit, offset)
    """
    try:
        limit = min(int(request.args.get("limit", default_limit)), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    return limit, offset


def int_field(data, name, required=True):
    """Read an integer id from a JSON body, raising ValidationError when bad."""
    value = data.get(name)
    if value is None or value == "":
        if required:
            raise ValidationError(f"{name} is required", details={name: "required"})
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{name} must be an integer", details={name: "integer"}) from exc


def actor_id(data=None, name="actor_id", required=True):
    """Acting employee id: JSON body field first, then the X-Employee-Id header."""
    data = data if data is not None else (request.get_json(silent=True) or {})
    if data.get(name) is None and request.headers.get("X-Employee-Id"):
        data = {name: request.headers.get("X-Employee-Id")}
    return int_field(data, name, required=required)
