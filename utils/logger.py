"""
Logging setup and per-request log context.

Every record emitted while a request is in flight carries that request's id
(``%(request_id)s``), so service logs such as notification outcomes or
webhook no-ops can be tied back to the HTTP call that produced them.
"""
import logging
import os
import sys
import time
import uuid
from contextvars import ContextVar
from typing import Callable

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.getenv(
    "LOG_FORMAT",
    "%(asctime)s %(levelname)s [%(name)s] rid=%(request_id)s %(message)s",
)

request_id_var: ContextVar[str] = ContextVar("request_id", default="-")

# Load balancer probes; not worth a log line each
_QUIET_PATHS = frozenset({"/health", "/health/db"})


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get()
        return True


def setup_logging() -> None:
    """Configure the root logger once (LOG_LEVEL, stdout) and quiet chatty clients."""
    level = getattr(logging, LOG_LEVEL, logging.INFO)
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
    for handler in root.handlers:
        if not any(isinstance(f, RequestIdFilter) for f in handler.filters):
            handler.addFilter(RequestIdFilter())
    root.setLevel(level)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logging.getLogger(name).setLevel(level)
    # Outbound calls (CAPTCHA, webhooks, Stripe) are logged by our services
    for name in ("httpx", "stripe"):
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


class RequestContextLogMiddleware(BaseHTTPMiddleware):
    """Binds a request id (incoming ``x-request-id`` or a new one) to the log
    context, logs the request outcome with latency, and echoes the id back.
    """

    def __init__(self, app):
        super().__init__(app)
        self.logger = logging.getLogger("backend.http")

    async def dispatch(self, request: Request, call_next: Callable):
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        token = request_id_var.set(request_id)
        started = time.perf_counter()
        quiet = request.url.path in _QUIET_PATHS
        try:
            response = await call_next(request)
        except Exception:
            self.logger.exception(
                "%s %s failed after %dms", request.method, request.url.path, self._elapsed(started)
            )
            raise
        finally:
            request_id_var.reset(token)

        response.headers["x-request-id"] = request_id
        if not quiet:
            self.logger.info(
                "%s %s -> %s in %dms client=%s rid=%s",
                request.method,
                request.url.path,
                response.status_code,
                self._elapsed(started),
                request.client.host if request.client else "-",
                request_id,
            )
        return response

    @staticmethod
    def _elapsed(started: float) -> int:
        return int((time.perf_counter() - started) * 1000)
