"""
Ledger log formatting: one JSON object per line, or a readable line on a
terminal. Both carry the current operation id.
"""

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

from .context import get_operation_id, get_operation_name

# Extras the ledger attaches to records via ``extra=``
LEDGER_FIELDS = ("task_id", "session_id", "duration")


class JSONFormatter(logging.Formatter):
    """
    Records as JSON: timestamp, level, logger, message, the operation id
    and name when one is active, and any ledger fields present.
    """

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, UTC)
        log_obj: dict[str, Any] = {
            "timestamp": created.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        operation_id = get_operation_id()
        if operation_id:
            log_obj["operation_id"] = operation_id
            log_obj["operation"] = get_operation_name()

        for key in LEDGER_FIELDS:
            if hasattr(record, key):
                log_obj[key] = getattr(record, key)

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_obj, default=str)


class HumanFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime("%Y-%m-%d %H:%M:%S")
        operation_id = get_operation_id()
        op_str = f"[{operation_id[:11]}] " if operation_id else ""
        line = f"{timestamp} [{record.levelname}] {record.name}: {op_str}{record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(level: str = "INFO", json_format: bool | None = None) -> None:
    """
    Install a single stderr handler on the root logger.

    json_format=None picks JSON when stderr is not a terminal.
    """
    if json_format is None:
        json_format = not sys.stderr.isatty()

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if json_format else HumanFormatter())
    root_logger.addHandler(handler)
