"""Logging setup and module entry point for the deployment orchestrator.

Logs are structured: every module logs through ``logging.getLogger``
with context in ``extra={...}``, and ``setup_logging`` renders records
as one JSON object per line for production, or as plain text for
interactive use.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime

# LogRecord attributes that are not user-supplied ``extra`` fields
_RESERVED_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)

TEXT_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Enums, datetimes and paths in extras are rendered with str()
        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO", json_logs: bool = True) -> None:
    """Configure root logging.

    Args:
        level: Root log level name.
        json_logs: JSON lines on stdout if True, plain text otherwise.
    """
    handler = logging.StreamHandler(sys.stdout if json_logs else sys.stderr)
    handler.setFormatter(JsonFormatter() if json_logs else logging.Formatter(TEXT_FORMAT))

    root_logger = logging.getLogger()
    # Re-running setup (tests, repeated CLI invocations) must not duplicate output
    for existing in list(root_logger.handlers):
        if getattr(existing, "_orchestrator_handler", False):
            root_logger.removeHandler(existing)
    handler._orchestrator_handler = True  # type: ignore[attr-defined]
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())

    # Reduce noise from asyncio debug output
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def main() -> None:
    """Entry point for ``python -m orchestrator.main``."""
    from .cli import cli

    cli()


if __name__ == "__main__":
    main()
