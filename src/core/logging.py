"""
Structured Logging Configuration with structlog

Outputs JSON logs that are searchable in ELK, Loki or CloudWatch.
Every log includes: upload_id, version, stage, timestamp, and other context.
"""

import sys
import logging
import structlog
from typing import Optional, Any, Dict
from datetime import datetime
from contextvars import ContextVar

# Context variables for request-scoped logging
upload_id_var: ContextVar[Optional[str]] = ContextVar("upload_id", default=None)
stage_var: ContextVar[Optional[str]] = ContextVar("stage", default=None)

# Application version
APP_VERSION = "1.0.0"


def add_app_context(
    logger: logging.Logger,
    method_name: str,
    event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Add application context to every log entry."""
    event_dict["version"] = APP_VERSION

    upload_id = upload_id_var.get()
    if upload_id:
        event_dict["upload_id"] = upload_id

    stage = stage_var.get()
    if stage:
        event_dict.setdefault("stage", stage)

    return event_dict


def add_timestamp(
    logger: logging.Logger,
    method_name: str,
    event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Add ISO format timestamp."""
    event_dict["timestamp"] = datetime.utcnow().isoformat() + "Z"
    return event_dict


def setup_logging(
    log_level: str = "INFO",
    json_format: bool = True
):
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_format: If True, output JSON; if False, output colored console logs
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    # Silence noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("boto3").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("PIL").setLevel(logging.WARNING)

    if json_format:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            add_timestamp,
            add_app_context,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.UnicodeDecoder(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


class LogContext:
    """
    Context manager for setting logging context.

    Usage:
        with LogContext(upload_id="abc123", stage="processing"):
            logger.info("processing_started")
    """

    def __init__(self, upload_id: Optional[str] = None, stage: Optional[str] = None):
        self.upload_id = upload_id
        self.stage = stage
        self._upload_id_token = None
        self._stage_tokens = []

    def __enter__(self):
        if self.upload_id:
            self._upload_id_token = upload_id_var.set(self.upload_id)
        if self.stage:
            self._stage_tokens.append(stage_var.set(self.stage))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        while self._stage_tokens:
            stage_var.reset(self._stage_tokens.pop())
        if self._upload_id_token:
            upload_id_var.reset(self._upload_id_token)
        return False

    def set_stage(self, stage: str):
        """Update the current stage."""
        self.stage = stage
        self._stage_tokens.append(stage_var.set(stage))


# Example log output structure:
# {
#   "timestamp": "2024-05-20T10:00:00Z",
#   "level": "info",
#   "event": "artifact_uploaded",
#   "stage": "storing",
#   "upload_id": "3f2c9a0e5b1d4c6f8a7e2d1c0b9a8f7e",
#   "version": "1.0.0",
#   "key": "gallery/rtx-4090-build/9c1e5a7b3d2f__1280w.webp",
#   "size_bytes": 184233
# }
