from __future__ import annotations

import re
import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from prospect_crm.context import reset_correlation_id, set_correlation_id
from prospect_crm.core.context import RequestContext

_CORRELATION_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def _resolve_correlation_id(raw: str | None) -> str:
    if raw and _CORRELATION_ID_RE.match(raw):
        return raw
    return str(uuid.uuid4())


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = _resolve_correlation_id(request.headers.get("x-correlation-id"))
        request.state.correlation_id = correlation_id
        request.state.context = RequestContext(
            request_id=correlation_id,
            correlation_id=correlation_id,
            user_id=None,
        )
        token = set_correlation_id(correlation_id)
        span = trace.get_current_span()
        if span is not None and span.is_recording():
            span.set_attribute("correlation_id", correlation_id)
        try:
            response = await call_next(request)
        finally:
            reset_correlation_id(token)

        response.headers["x-correlation-id"] = correlation_id
        response.headers["x-request-id"] = correlation_id
        return response
