"""
Operation context: one id per public ledger operation, propagated to logs.
"""

import contextvars
import uuid
from typing import Optional

_operation_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "operation_id", default=None
)
_operation_name_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "operation_name", default=None
)


def get_operation_id() -> Optional[str]:
    """Get the current operation ID from context."""
    return _operation_id_var.get()


def get_operation_name() -> Optional[str]:
    return _operation_name_var.get()


def set_operation_id(operation_id: str) -> contextvars.Token:
    """Set the operation ID in context. Returns token for reset."""
    return _operation_id_var.set(operation_id)


def generate_operation_id() -> str:
    return f"op-{uuid.uuid4().hex[:16]}"


class OperationContext:
    """
    Context manager for operation-scoped logging.

    Nested contexts reuse the outer id, so a cascade triggered inside an
    operation logs under the operation that caused it.

    Usage:
        with OperationContext("transition_lifecycle") as ctx:
            logger.info("Completing", extra={"operation_id": ctx.operation_id})
    """

    def __init__(self, name: Optional[str] = None, operation_id: Optional[str] = None):
        self.name = name
        self.operation_id = operation_id or get_operation_id() or generate_operation_id()
        self._id_token: Optional[contextvars.Token] = None
        self._name_token: Optional[contextvars.Token] = None

    def __enter__(self) -> "OperationContext":
        self._id_token = set_operation_id(self.operation_id)
        if get_operation_name() is None:
            self._name_token = _operation_name_var.set(self.name)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._name_token is not None:
            _operation_name_var.reset(self._name_token)
        if self._id_token is not None:
            _operation_id_var.reset(self._id_token)
