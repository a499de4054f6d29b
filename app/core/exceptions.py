"""
Application-wide exception hierarchy.

Services raise these at the point of violation; blueprints register
handlers against them once (see ``app.utils.errors``) and get consistent
HTTP status codes everywhere.

Usage:
    from app.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Delegation", resource_id=42, message="找不到代理設定")
    raise ValidationError("審核層級最多 4 層", details={"steps": "max 4"})
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "FlowExecution").
        resource_id: The PK that was looked up.
        message: Optional user-facing text; replaces the generated message.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        message: str | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        if message is None:
            message = f"{resource}"
            if resource_id is not None:
                message += f" id={resource_id}"
            message += " not found"
        super().__init__(message)


class ValidationError(Exception):
    """Raised when input violates a business rule in the service layer.

    Maps to HTTP 400 (BAD_REQUEST) in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ForbiddenError(Exception):
    """Raised when the acting employee may not perform the operation.

    Maps to HTTP 403.
    """

    def __init__(self, message: str, actor_id: int | None = None) -> None:
        self.actor_id = actor_id
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would duplicate a uniquely-held state.

    Maps to HTTP 409.

    Args:
        resource: Model name.
        field: The unique field that would be duplicated.
        value: The conflicting value.
        message: Optional user-facing text.
    """

    def __init__(
        self, resource: str, field: str, value: str | None = None, message: str | None = None,
    ) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(message or f"{resource} with {field}={value!r} already exists")


class UnroutableStepError(Exception):
    """Raised when a required approval step resolves to no approver.

    Distinct from ValidationError so callers can tell a configuration gap
    (missing supervisor, vacant position) from bad input.  Maps to HTTP 422.
    """

    def __init__(self, step_order: int, step_name: str, reason: str | None = None) -> None:
        self.step_order = step_order
        self.step_name = step_name
        self.reason = reason
        super().__init__(f"無法決定第 {step_order} 關「{step_name}」的審核人")
