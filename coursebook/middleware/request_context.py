from __future__ import annotations
import logging
import time
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from ..observability.logging import get_request_id, request_id_var
from ..config import get_settings

S = get_settings()
log = logging.getLogger("coursebook.request")


class RequestContextMiddleware(BaseHTTPMiddleware):
    """One `request` log line per call; the id is echoed back and bound for service logs."""

    async def dispatch(self, request: Request, call_next):
        rid = get_request_id(request)
        request.state.request_id = rid
        token = request_id_var.set(rid)
        start = time.perf_counter()
        fields = {"path": request.url.path, "method": request.method}
        try:
            try:
                response = await call_next(request)
            except Exception:
                fields["ms"] = int((time.perf_counter() - start) * 1000)
                log.exception("unhandled_error", extra=fields)
                raise

            fields.update(status=response.status_code, ms=int((time.perf_counter() - start) * 1000))
            response.headers[S.REQUEST_ID_HEADER] = rid
            if request.headers.get("authorization"):
                fields["authenticated"] = True
            log.info("request", extra=fields)
            return response
        finally:
            request_id_var.reset(token)
