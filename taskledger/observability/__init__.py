"""
Observability: structured logging and operation ids.

Usage:
    from taskledger.observability import configure_logging, OperationContext

    configure_logging("DEBUG", json_format=False)

    with OperationContext("close_session") as ctx:
        logger.info("Closing", extra={"task_id": 7})
"""

from .context import OperationContext, get_operation_id, set_operation_id
from .logging import HumanFormatter, JSONFormatter, configure_logging

__all__ = [
    "configure_logging",
    "JSONFormatter",
    "HumanFormatter",
    "OperationContext",
    "get_operation_id",
    "set_operation_id",
]
