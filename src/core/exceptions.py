"""
Global Exception Handling

Provides the media pipeline error taxonomy and structured error responses.
"""

import traceback
from typing import Optional, Dict, Any
from datetime import datetime
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from src.core.logging import get_logger, upload_id_var

logger = get_logger(__name__)


# =============================================================================
# Custom Exceptions
# =============================================================================

class MediaBaseException(Exception):
    """Base exception for the media pipeline."""

    # Message returned to clients instead of the internal one (None = expose)
    public_message: Optional[str] = None

    def __init__(
        self,
        message: str,
        code: int = 500,
        upload_id: Optional[str] = None,
        stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.upload_id = upload_id or upload_id_var.get()
        self.stage = stage
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(MediaBaseException):
    """Declared or received metadata is not acceptable. User-correctable."""

    def __init__(self, message: str, field: Optional[str] = None, reason_code: Optional[str] = None, **kwargs):
        super().__init__(message, code=400, **kwargs)
        if field:
            self.details["field"] = field
        if reason_code:
            self.details["reason"] = reason_code


class DecodeError(MediaBaseException):
    """Bytes are not a decodable image despite passing declared-type validation."""

    def __init__(self, message: str = "Image could not be decoded", **kwargs):
        super().__init__(message, code=422, **kwargs)


class EncodeError(MediaBaseException):
    """Codec failure while producing an artifact."""

    public_message = "Image processing failed"

    def __init__(self, message: str, codec: Optional[str] = None, **kwargs):
        super().__init__(message, code=500, **kwargs)
        if codec:
            self.details["codec"] = codec


class StorageError(MediaBaseException):
    """Storage backend unreachable or write rejected. Retryable by the caller."""

    def __init__(self, message: str, backend: Optional[str] = None, **kwargs):
        super().__init__(message, code=503, **kwargs)
        self.details["retryable"] = True
        if backend:
            self.details["backend"] = backend


class NotFoundError(MediaBaseException):
    """Upload session, stored object or asset is unknown or expired."""

    def __init__(self, message: str, resource: Optional[str] = None, **kwargs):
        super().__init__(message, code=404, **kwargs)
        if resource:
            self.details["resource"] = resource


class SessionStateError(MediaBaseException):
    """Raised on an illegal upload session transition."""

    def __init__(self, current: str, requested: str, **kwargs):
        super().__init__(
            f"Upload session cannot move from {current} to {requested}",
            code=409,
            **kwargs
        )
        self.details["current_state"] = current
        self.details["requested_state"] = requested


class ProcessingTimeoutError(MediaBaseException):
    """Raised when completing an upload exceeds the request deadline."""

    def __init__(self, timeout_seconds: float, **kwargs):
        super().__init__(
            f"Upload processing exceeded {timeout_seconds:.0f}s",
            code=504,
            **kwargs
        )
        self.details["timeout_seconds"] = timeout_seconds


# =============================================================================
# Exception Handlers
# =============================================================================

def error_payload(exc: MediaBaseException) -> Dict[str, Any]:
    """Render an exception into the public error body."""
    return {
        "error": exc.public_message or exc.message,
        "upload_id": exc.upload_id or upload_id_var.get(),
        "code": exc.code,
        "stage": exc.stage,
        "details": exc.details,
        "timestamp": datetime.utcnow().isoformat() + "Z"
    }


def register_exception_handlers(app: FastAPI):
    """Register custom exception handlers with FastAPI app."""

    @app.exception_handler(MediaBaseException)
    async def media_exception_handler(request: Request, exc: MediaBaseException):
        log = logger.warning if exc.code < 500 else logger.error
        log(
            "media_exception",
            error=exc.message,
            error_type=type(exc).__name__,
            code=exc.code,
            stage=exc.stage,
            details=exc.details,
            path=str(request.url.path)
        )

        return JSONResponse(
            status_code=exc.code,
            content=error_payload(exc)
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
            traceback=traceback.format_exc()
        )

        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "upload_id": upload_id_var.get(),
                "code": 500,
                "timestamp": datetime.utcnow().isoformat() + "Z"
            }
        )
