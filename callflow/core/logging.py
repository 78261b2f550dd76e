"""Application logging configuration and middleware.

Logging is configured once through ``logging.config.dictConfig`` with a
key-value format. Two context variables are stamped onto every record: the
HTTP request ID (set by ``RequestIdMiddleware``) and the call ID (set by the
traversal engine's consumer task, so its log lines and those of the background
work it starts carry the call they belong to).
"""

from __future__ import annotations

import logging
import logging.config
import os
import uuid
from contextvars import ContextVar
from typing import Any

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

request_id_ctx_var: ContextVar[str | None] = ContextVar("request_id", default=None)
call_id_ctx_var: ContextVar[str | None] = ContextVar("call_id", default=None)


class ContextFilter(logging.Filter):
    """Inject the request and call IDs from contextvars into log records."""

    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover - small
        record.request_id = request_id_ctx_var.get() or "-"
        record.call_id = call_id_ctx_var.get() or "-"
        return True


def _build_config(log_level: str) -> dict[str, Any]:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {"context": {"()": ContextFilter}},
        "formatters": {
            "kv": {
                "format": (
                    "level=%(levelname)s logger=%(name)s request_id=%(request_id)s "
                    "call_id=%(call_id)s message=%(message)s"
                )
            }
        },
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stdout",
                "formatter": "kv",
                "filters": ["context"],
                "level": log_level,
            }
        },
        "root": {"handlers": ["default"], "level": log_level},
    }


def setup_logging(level: str | None = None) -> None:
    """Configure root logging using key-value formatting.

    The level defaults to the ``LOG_LEVEL`` environment variable (INFO).
    """

    log_level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.config.dictConfig(_build_config(log_level))


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Populate a unique request ID for each incoming HTTP request.

    Uses the ``X-Request-ID`` header if provided, otherwise a new UUID4. The ID
    is echoed back in the ``X-Request-ID`` response header.
    """

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        token = request_id_ctx_var.set(request_id)
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            request_id_ctx_var.reset(token)


__all__ = [
    "ContextFilter",
    "RequestIdMiddleware",
    "call_id_ctx_var",
    "request_id_ctx_var",
    "setup_logging",
]
