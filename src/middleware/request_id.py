"""X-Request-ID propagation.

The id travels in a ContextVar so log records and error envelopes raised deep
inside the moderation services can name the request that caused them.
"""
from __future__ import annotations

import re
import uuid
from contextvars import ContextVar
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# Client-supplied ids end up in logs; anything else gets a fresh uuid4
_SAFE_ID = re.compile(r"^[A-Za-z0-9._:-]{1,64}$")


def current_request_id() -> Optional[str]:
    return request_id_var.get() or None


def _pick_id(supplied: Optional[str]) -> str:
    if supplied and _SAFE_ID.match(supplied):
        return supplied
    return str(uuid.uuid4())


class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        rid = _pick_id(request.headers.get("x-request-id"))
        token = request_id_var.set(rid)
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)
        response.headers["X-Request-ID"] = rid
        return response
