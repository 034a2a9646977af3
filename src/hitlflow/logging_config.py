"""Structured logging configuration for hitlflow."""

import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from rich.console import Console
from rich.logging import RichHandler


class StructuredFormatter(logging.Formatter):
    """Formatter that renders log records as JSON lines."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for attr in ("error_data", "audit_data", "approval_context"):
            if hasattr(record, attr):
                log_entry[attr] = getattr(record, attr)

        if record.exc_info:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": self.formatException(record.exc_info)
            }

        return json.dumps(log_entry, default=str)


class HITLLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that attaches approval context to every record."""

    def __init__(self, logger: logging.Logger, extra: Optional[Dict[str, Any]] = None):
        super().__init__(logger, extra or {})

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple[str, Dict[str, Any]]:
        if 'extra' not in kwargs:
            kwargs['extra'] = {}

        kwargs['extra'].setdefault("approval_context", {}).update(self.extra)
        return msg, kwargs

    def log_audit_event(
        self,
        action: str,
        request_id: Optional[str] = None,
        actor: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        """Log an approval audit trail entry (who did what to which request)."""
        audit_data = {
            "action": action,
            "request_id": request_id,
            "actor": actor,
            "details": details or {}
        }

        self.info(
            f"Audit: {action}",
            extra={"audit_data": audit_data}
        )


def setup_logging(
    level: str = "INFO",
    log_file: Optional[Path] = None,
    structured: bool = False,
    console_output: bool = True,
    rich_console: bool = True
) -> None:
    """Set up logging for applications embedding hitlflow.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Path to log file (optional)
        structured: Use structured JSON logging
        console_output: Enable console output
        rich_console: Use Rich console formatting
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    handlers = []

    if console_output:
        if rich_console:
            console_handler = RichHandler(
                console=Console(stderr=True),
                rich_tracebacks=True,
                show_path=False,
                show_time=True
            )
            console_handler.setFormatter(
                logging.Formatter("%(message)s", datefmt="[%X]")
            )
        else:
            console_handler = logging.StreamHandler(sys.stdout)
            if structured:
                console_handler.setFormatter(StructuredFormatter())
            else:
                console_handler.setFormatter(
                    logging.Formatter(
                        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
                    )
                )

        console_handler.setLevel(log_level)
        handlers.append(console_handler)

    if log_file:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)

        if structured:
            file_handler.setFormatter(StructuredFormatter())
        else:
            file_handler.setFormatter(
                logging.Formatter(
                    "%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s"
                )
            )

        file_handler.setLevel(log_level)
        handlers.append(file_handler)

    logging.basicConfig(
        level=log_level,
        handlers=handlers,
        force=True
    )

    # asyncio logs every destroyed pending timer task at DEBUG
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    logging.getLogger().info(
        f"Logging configured: level={level}, structured={structured}, file={log_file}"
    )


def get_logger(name: str, **context) -> HITLLoggerAdapter:
    """Get a hitlflow logger with optional context.

    Args:
        name: Logger name (usually __name__)
        **context: Additional context to include in all log messages

    Returns:
        Configured logger adapter
    """
    return HITLLoggerAdapter(logging.getLogger(name), context)


class LoggingContext:
    """Context manager for adding temporary logging context."""

    def __init__(self, logger: HITLLoggerAdapter, **context):
        self.logger = logger
        self.context = context
        self.original_extra = dict(logger.extra)

    def __enter__(self):
        self.logger.extra.update(self.context)
        return self.logger

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.logger.extra = self.original_extra


def get_approval_logger(component: str, execution_id: Optional[str] = None) -> HITLLoggerAdapter:
    """Get logger for approval components."""
    context = {"component": component}
    if execution_id:
        context["execution_id"] = execution_id
    return get_logger(f"hitlflow.approval.{component}", **context)
