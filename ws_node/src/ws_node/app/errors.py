from __future__ import annotations

"""
Error taxonomy for the workspace node.

Every error carries an HTTP status and a short machine-readable kind; the
handlers installed by install_exception_handlers render them as
{"detail": <message>, "error": <kind>} without stack traces.

CleanupFailure is special: the application-deletion flow always downgrades it
to a warning, so it should never reach the HTTP boundary from that path.
"""

import logging
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger("workspace_node")


class WorkspaceError(Exception):
    """Base class for all domain errors raised by ws_node."""

    status_code: int = 500
    kind: str = "workspace_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message or self.__class__.__name__

    def to_payload(self) -> Dict[str, Any]:
        return {"detail": self.message, "error": self.kind}


class InvalidArgument(WorkspaceError, ValueError):
    """Missing or malformed identifiers/paths; user-correctable."""

    status_code = 400
    kind = "invalid_argument"


class NotFound(WorkspaceError):
    """Log file, record or file is absent."""

    status_code = 404
    kind = "not_found"


class ConcurrentModification(WorkspaceError):
    """Optimistic-lock mismatch; caller must reload and retry."""

    status_code = 409
    kind = "concurrent_modification"


class Unauthorized(WorkspaceError):
    status_code = 401
    kind = "unauthorized"


class Forbidden(WorkspaceError):
    status_code = 403
    kind = "forbidden"


class IOFailure(WorkspaceError):
    """Permission, device or partial read/write failure."""

    status_code = 500
    kind = "io_failure"


class LogReadError(IOFailure):
    """A log file was located but could not be read."""

    kind = "log_read_failed"


class CleanupFailure(WorkspaceError):
    """Best-effort housekeeping failed (reclaim or run-log cleanup)."""

    status_code = 500
    kind = "cleanup_failure"


# --------------------------
# HTTP boundary
# --------------------------

async def _workspace_error_handler(request: Request, exc: WorkspaceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("request failed: %s %s kind=%s err=%s", request.method, request.url.path, exc.kind, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # missing or malformed query/body fields are user-correctable, like InvalidArgument
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p not in ("query", "body"))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return JSONResponse(
        status_code=InvalidArgument.status_code,
        content={"detail": "; ".join(parts) or "invalid request", "error": InvalidArgument.kind},
    )


async def _unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled error: %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "internal error", "error": "internal_error"})


def install_exception_handlers(app: FastAPI) -> None:
    """
    Render domain errors as {"detail", "error"} and keep stack traces in the log.
    """
    app.add_exception_handler(WorkspaceError, _workspace_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.add_exception_handler(Exception, _unexpected_error_handler)


__all__ = [
    "install_exception_handlers",
    "WorkspaceError",
    "InvalidArgument",
    "NotFound",
    "ConcurrentModification",
    "Unauthorized",
    "Forbidden",
    "IOFailure",
    "LogReadError",
    "CleanupFailure",
]
