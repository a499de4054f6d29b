"""
Business-module decision callbacks.

Each request module (leave, expense, seal, card, stationery, ...) registers
the function that applies a finished approval to its own request:

    @register_decision_handler("LEAVE")
    def apply_leave_decision(reference_id, final_status, execution_id):
        ...

``final_status`` is APPROVED, REJECTED or CANCELLED.  Handlers run after
the decision has been committed.
"""

from __future__ import annotations

import logging
from typing import Callable

logger = logging.getLogger(__name__)


_handler_registry: dict[str, Callable] = {}


def register_decision_handler(module_type: str):
    """Decorator to register a module's decision handler.

    Usage:
        @register_decision_handler("LEAVE")
        def apply_leave_decision(reference_id, final_status, execution_id):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        _handler_registry[module_type] = fn
        return fn
    return decorator


def unregister_decision_handler(module_type: str) -> None:
    _handler_registry.pop(module_type, None)


def get_registered_handlers() -> dict[str, Callable]:
    """Return all registered handlers."""
    return dict(_handler_registry)


def apply_final_decision(module_type: str, reference_id: str, final_status: str, execution_id: int) -> bool:
    """Call the module's handler.  Returns False when none is registered."""
    handler = _handler_registry.get(module_type)
    if handler is None:
        logger.warning("No decision handler for module=%s (ref=%s status=%s)",
                       module_type, reference_id, final_status,
                       extra={"execution_id": execution_id})
        return False
    handler(reference_id, final_status, execution_id)
    logger.info("Decision applied module=%s ref=%s status=%s", module_type, reference_id, final_status,
                extra={"execution_id": execution_id})
    return True
