import logging
import sys
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Iterator, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from chatrelay.metrics import record_http_request

LOG_FORMAT = '%(ts)s %(level)s %(name)s %(message)s'

# Third-party loggers that drown the relay's own lines at DEBUG
QUIET_LOGGERS = ("botocore", "boto3", "urllib3", "httpx", "httpcore")

# Correlation id for the current HTTP request or queue message
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def get_request_id() -> Optional[str]:
    return request_id_ctx.get()


@contextmanager
def request_context(request_id: Optional[str] = None) -> Iterator[str]:
    """
    Bind a correlation id for everything logged inside the block.

    HTTP requests get a fresh uuid; the consumer passes the queue message
    id so one envelope's forward and delete lines can be joined.
    """
    request_id = request_id or str(uuid.uuid4())
    token = request_id_ctx.set(request_id)
    try:
        yield request_id
    finally:
        request_id_ctx.reset(token)


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON lines with an ISO-8601 UTC ``ts``, ``level`` and the bound request_id."""

    def add_fields(self, log_record, record, message_dict):
        super(CustomJsonFormatter, self).add_fields(log_record, record, message_dict)
        if not log_record.get('ts'):
            now = datetime.fromtimestamp(record.created, tz=timezone.utc)
            log_record['ts'] = now.strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'
        log_record['level'] = record.levelname

        request_id = get_request_id()
        if request_id and 'request_id' not in log_record:
            log_record['request_id'] = request_id


def setup_logging(log_level: str = "INFO"):
    """
    Route every logger, uvicorn's included, to one JSON handler on stdout.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CustomJsonFormatter(LOG_FORMAT))

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [handler]

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers = [handler]
        uvicorn_logger.propagate = False
    # RequestLoggingMiddleware writes the access line
    logging.getLogger("uvicorn.access").disabled = True

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(root.level, logging.INFO))

    return root


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    One structured line per HTTP request, plus request metrics.

    Log keys: ts, level, request_id, method, path, status, latency_ms.

    Send endpoints also attach:
    - recipient: the requested recipient
    - kind: text, image or document
    - result: sent, send_failed or validation_error
    - queued: whether the outbound event reached the relay queue
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        with request_context() as request_id:
            request.state.request_id = request_id
            started = time.monotonic()

            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            latency_seconds = time.monotonic() - started

            path = request.url.path
            if path != "/metrics":
                record_http_request(request.method, path, response.status_code, latency_seconds)

            log_data = {
                "request_id": request_id,
                "method": request.method,
                "path": path,
                "status": response.status_code,
                "latency_ms": round(latency_seconds * 1000, 2),
            }
            log_data.update(getattr(request.state, "send_log_data", {}))

            if response.status_code >= 500:
                level = logging.ERROR
            elif response.status_code >= 400:
                level = logging.WARNING
            else:
                level = logging.INFO
            logging.getLogger("chatrelay.requests").log(level, "Request completed", extra=log_data)
            return response


def log_send_data(request: Request, recipient: str = None, kind: str = None,
                  result: str = None, queued: bool = False):
    """
    Attach send-specific fields to the request state for the middleware's
    request line.
    """
    send_data = {"queued": queued}
    if recipient is not None:
        send_data["recipient"] = recipient
    if kind is not None:
        send_data["kind"] = kind
    if result is not None:
        send_data["result"] = result
    request.state.send_log_data = send_data
