"""
Logging configuration.

Modules log through `logging.getLogger(__name__)`. configure_logging()
is called once by the API at startup; every record gets the id of the
HTTP request it was emitted under (or "-" outside a request).
"""
from __future__ import annotations
from contextvars import ContextVar
import logging
import os

_request_id: ContextVar[str] = ContextVar("request_id", default="-")

LOG_FORMAT = "%(asctime)s %(levelname)s [%(request_id)s] %(name)s: %(message)s"


def get_request_id() -> str:
    return _request_id.get()


def set_request_id(request_id: str):
    """Bind a request id to the current context. Returns a token for reset_request_id()."""
    return _request_id.set(request_id)


def reset_request_id(token) -> None:
    _request_id.reset(token)


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = _request_id.get()
        return True


def configure_logging(level: str | int | None = None) -> None:
    """Configure the root logger once. Safe to call repeatedly."""
    level = level or os.getenv("LOG_LEVEL", "INFO")
    root = logging.getLogger()
    root.setLevel(level)

    for handler in root.handlers:
        if getattr(handler, "_invoicesync", False):
            return

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(RequestIdFilter())
    handler._invoicesync = True
    root.addHandler(handler)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
