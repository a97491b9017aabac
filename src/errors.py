"""Moderation error taxonomy.

Services raise these; the API layer maps them onto the standard error
envelope (see ``register_error_handlers``).
"""
from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from src.middleware.request_id import current_request_id

logger = logging.getLogger(__name__)


class ModerationError(Exception):
    """Base class for every error the moderation core surfaces to callers."""

    code = "moderation_error"
    status_code = 400
    retryable = False

    def __init__(self, message: str = "", **extra: Any):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.extra = extra

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message, **self.extra}


class NotFound(ModerationError):
    code = "not_found"
    status_code = 404


class Conflict(ModerationError):
    """Lost a conditional-update race. Refresh, then decide the next action."""

    code = "conflict"
    status_code = 409


class AlreadyClaimed(Conflict):
    code = "already_claimed"

    def __init__(self, report_id: str, handled_by: Optional[str]):
        super().__init__(
            f"Report {report_id} is already claimed by {handled_by}",
            report_id=report_id,
            handled_by=handled_by,
        )
        self.handled_by = handled_by


class AlreadyHandled(Conflict):
    code = "already_handled"

    def __init__(self, report_id: str, status: str, handled_by: Optional[str] = None):
        super().__init__(
            f"Report {report_id} was already {status}",
            report_id=report_id,
            status=status,
            handled_by=handled_by,
        )
        self.status = status
        self.handled_by = handled_by


class InvalidTransition(ModerationError):
    code = "invalid_transition"
    status_code = 409


class Forbidden(ModerationError):
    code = "forbidden"
    status_code = 403


class ValidationError(ModerationError):
    code = "validation_error"
    status_code = 422


class StorageFailure(ModerationError):
    code = "storage_failure"
    status_code = 503
    retryable = True


def _envelope(status_code: int, body: dict) -> JSONResponse:
    rid = current_request_id()
    if rid:
        body = {**body, "request_id": rid}
    return JSONResponse(status_code=status_code, content=body)


def register_error_handlers(app: FastAPI) -> None:
    """Install the error envelope for domain, validation, HTTP and unexpected errors."""

    @app.exception_handler(ModerationError)
    async def moderation_error_handler(request: Request, exc: ModerationError):
        if exc.status_code >= 500:
            logger.warning("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
        return _envelope(exc.status_code, exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        details = [
            {"field": " → ".join(str(loc) for loc in err["loc"]) if err.get("loc") else "unknown",
             "message": err["msg"]}
            for err in exc.errors()
        ]
        return _envelope(422, {
            "error": ValidationError.code,
            "message": "Invalid request data",
            "details": details,
        })

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return _envelope(exc.status_code, {
            "error": exc.detail if isinstance(exc.detail, str) else "error",
            "message": exc.detail,
        })

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        """Never leak stack traces."""
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return _envelope(500, {
            "error": "internal_error",
            "message": "Something went wrong. Please try again.",
        })
