from __future__ import annotations
import logging
import sys
import uuid
from contextvars import ContextVar
from pythonjsonlogger import jsonlogger
from fastapi import Request
from ..config import get_settings

S = get_settings()

# set by RequestContextMiddleware so service-level records carry the id too
request_id_var: ContextVar[str] = ContextVar("request_id", default="-")


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "request_id", None):
            record.request_id = request_id_var.get()
        record.service = S.APP_NAME
        return True


def setup_logging() -> None:
    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RequestIdFilter())
    handler.setFormatter(jsonlogger.JsonFormatter(
        "%(asctime)s %(levelname)s %(service)s %(name)s %(message)s %(request_id)s"
    ))
    root.addHandler(handler)
    root.setLevel(S.LOG_LEVEL)

    for noisy in ("uvicorn.access", "stripe", "twilio.http_client", "httpx"):
        logging.getLogger(noisy).setLevel("WARNING")


def get_request_id(req: Request) -> str:
    """Inbound request id header, or a fresh hex id when the caller sent none."""
    return req.headers.get(S.REQUEST_ID_HEADER) or uuid.uuid4().hex
