from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from prospect_crm.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("prospect_crm.request")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Emits one metric sample and one ``http.request`` line per request, keyed by route template."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            self._record(request, 500, started, failed=True)
            raise
        self._record(request, response.status_code, started)
        return response

    @staticmethod
    def _record(request: Request, status_code: int, started: float, failed: bool = False) -> None:
        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        # Resolved afterwards so the matched route template is available.
        path = resolve_http_path_label(request)
        observe_http_request(method=request.method, path=path, status=status_code, duration=duration_ms / 1000)

        context = getattr(request.state, "context", None)
        fields = {
            "method": request.method,
            "path": path,
            "status_code": status_code,
            "duration_ms": duration_ms,
            "user_id": getattr(context, "user_id", None),
        }
        if failed:
            logger.error("http.error", exc_info=True, extra=fields)
        else:
            logger.info("http.request", extra=fields)
