"""Structured logging setup for portbot."""

import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import orjson
import structlog
from structlog.types import Processor

from .config import get_settings


def setup_logging(level: str | None = None, format_type: str | None = None) -> None:
    """
    Set up structured logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format_type: Output format ('json' or 'text')
    """
    settings = get_settings()
    log_level = level or settings.logging.level
    log_format = format_type or settings.logging.format

    log_file = Path(settings.logging.file).expanduser()
    log_file.parent.mkdir(parents=True, exist_ok=True)

    # Standard library logging carries structlog output and third-party libs (httpx, aiohttp)
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper()),
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.handlers.RotatingFileHandler(
                log_file,
                maxBytes=settings.logging.max_size_mb * 1024 * 1024,
                backupCount=settings.logging.backup_count,
            ),
        ],
        force=True,
    )

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors: list[Processor] = [
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [
            *shared_processors,
            structlog.dev.ConsoleRenderer(colors=False),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """
    Get a logger instance.

    Args:
        name: Logger name (usually __name__ of the calling module)

    Returns:
        Configured structured logger
    """
    return structlog.get_logger(name)


class AuditLogger:
    """
    Separate audit logger for change-control lifecycle events.

    Always writes one JSON object per line so the trail of submitted,
    approved and started change controls can be parsed after the fact.
    """

    def __init__(self, audit_file: str | Path | None = None) -> None:
        settings = get_settings()
        path = Path(audit_file or settings.logging.audit_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)

        self._logger = logging.getLogger("portbot.audit")
        self._logger.setLevel(logging.INFO)
        self._logger.propagate = False

        if not any(
            isinstance(h, logging.handlers.RotatingFileHandler)
            and Path(h.baseFilename) == path.resolve()
            for h in self._logger.handlers
        ):
            handler = logging.handlers.RotatingFileHandler(
                path,
                maxBytes=settings.logging.max_size_mb * 1024 * 1024,
                backupCount=settings.logging.backup_count,
            )
            handler.setFormatter(logging.Formatter("%(message)s"))
            self._logger.addHandler(handler)

    def log(
        self,
        event: str,
        workflow_id: str,
        status: str = "info",
        details: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> None:
        """
        Log an audit event.

        Args:
            event: Event name (e.g., "change_submitted", "change_failed")
            workflow_id: Change-control id the event belongs to
            status: Event status (info, warning, error)
            details: Additional event details
            **kwargs: Additional fields to include
        """
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event": event,
            "workflow_id": workflow_id,
            "status": status,
            "details": details or {},
            **kwargs,
        }
        self._logger.info(orjson.dumps(log_entry).decode())

    def change_transition(self, workflow_id: str, from_state: str, to_state: str, **kwargs: Any) -> None:
        """Log a forward lifecycle transition."""
        self.log(
            event=f"change_{to_state}",
            workflow_id=workflow_id,
            details={"from": from_state, "to": to_state},
            **kwargs,
        )

    def change_failed(self, workflow_id: str, step: str, error: str, orphaned: bool, **kwargs: Any) -> None:
        """Log a failed pipeline step."""
        self.log(
            event="change_failed",
            workflow_id=workflow_id,
            status="error",
            details={"step": step, "error": error, "orphaned": orphaned},
            **kwargs,
        )


_audit_logger: AuditLogger | None = None


def get_audit_logger() -> AuditLogger:
    """Get the global audit logger instance."""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger
