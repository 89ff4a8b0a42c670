import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from tabchat.metrics import record_http_request


# Set per HTTP request; copied into background tasks spawned by that request
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

_QUIET_LOGGERS = {
    "uvicorn.access": None,  # replaced by RequestLoggingMiddleware
    "httpx": logging.WARNING,
}


class ChatJsonFormatter(jsonlogger.JsonFormatter):
    """One JSON object per line: ts, level, logger, message, request_id."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        log_record.setdefault('ts', _utc_timestamp())
        log_record['level'] = record.levelname
        req_id = request_id_ctx.get()
        if req_id and 'request_id' not in log_record:
            log_record['request_id'] = req_id


def _utc_timestamp() -> str:
    now = datetime.now(timezone.utc)
    return now.strftime('%Y-%m-%dT%H:%M:%S.') + f"{now.microsecond // 1000:03d}Z"


def setup_logging(log_level: str = "INFO"):
    """
    Route the root and uvicorn loggers through a single JSON stdout handler.

    Args:
        log_level: Logging level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ChatJsonFormatter('%(ts)s %(level)s %(name)s %(message)s'))

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [handler]

    for name in ("uvicorn", "uvicorn.error"):
        server_logger = logging.getLogger(name)
        server_logger.handlers = [handler]
        server_logger.propagate = False

    for name, level in _QUIET_LOGGERS.items():
        if level is None:
            logging.getLogger(name).disabled = True
        else:
            logging.getLogger(name).setLevel(level)

    return root


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Tags each request with an id, records HTTP metrics and writes one
    "Request completed" line carrying method, path, status, latency_ms and,
    when the route resolved one, the acting user_id.
    """

    logger = logging.getLogger("tabchat.requests")

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = uuid.uuid4().hex
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        started = time.perf_counter()
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            self._finish(request, response, time.perf_counter() - started)
            return response
        finally:
            request_id_ctx.reset(token)

    def _finish(self, request: Request, response: Response, elapsed: float) -> None:
        # Metrics are labelled by route template so ids do not explode cardinality
        route = request.scope.get("route")
        template = getattr(route, "path", request.url.path)
        if template != "/metrics":
            record_http_request(request.method, template, response.status_code, elapsed)

        fields = {
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "latency_ms": round(elapsed * 1000, 2),
        }
        user_id = getattr(request.state, "user_id", None)
        if user_id:
            fields["user_id"] = user_id

        if response.status_code >= 500:
            level = logging.ERROR
        elif response.status_code >= 400:
            level = logging.WARNING
        else:
            level = logging.INFO
        self.logger.log(level, "Request completed", extra=fields)
