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

from social_insight.metrics import record_http_request


REQUEST_ID_HEADER = "X-Request-ID"

# Third-party loggers that would otherwise log every media download at INFO
NOISY_LOGGERS = ("httpx", "httpcore")

# Context variable to store request_id for the current request
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding ISO-8601 `ts`, `level` and the current request_id."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        if not log_record.get('ts'):
            moment = datetime.fromtimestamp(record.created, tz=timezone.utc)
            log_record['ts'] = moment.strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'
        log_record['level'] = record.levelname

        if 'request_id' not in log_record:
            req_id = request_id_ctx.get()
            if req_id:
                log_record['request_id'] = req_id


def setup_logging(log_level: str = "INFO"):
    """
    Setup structured JSON logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = []

    json_handler = logging.StreamHandler(sys.stdout)
    json_handler.setFormatter(CustomJsonFormatter('%(ts)s %(level)s %(name)s %(message)s'))
    root.addHandler(json_handler)

    # Uvicorn logs through the same JSON handler; access lines come from our middleware
    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(logger_name)
        uvicorn_logger.handlers = [json_handler]
        uvicorn_logger.propagate = False
    logging.getLogger("uvicorn.access").disabled = True

    for logger_name in NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.WARNING)

    return root


def _log_completed(request: Request, log_data: dict, status: int) -> None:
    logger = logging.getLogger("social_insight.requests")
    if hasattr(request.state, "webhook_log_data"):
        log_data.update(request.state.webhook_log_data)

    if status >= 500:
        logger.error("Request completed", extra=log_data)
    elif status >= 400:
        logger.warning("Request completed", extra=log_data)
    else:
        logger.info("Request completed", extra=log_data)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs one structured line per HTTP request.

    Keys: ts, level, request_id, method, path, status, latency_ms.
    Webhook requests add result, messages, media and skipped.

    An incoming X-Request-ID is reused; otherwise one is generated.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        started = time.perf_counter()

        try:
            try:
                response = await call_next(request)
            except Exception:
                latency_seconds = time.perf_counter() - started
                record_http_request(request.method, request.url.path, 500, latency_seconds)
                _log_completed(request, {
                    "request_id": request_id,
                    "method": request.method,
                    "path": request.url.path,
                    "status": 500,
                    "latency_ms": round(latency_seconds * 1000, 2),
                }, 500)
                raise

            latency_seconds = time.perf_counter() - started
            response.headers[REQUEST_ID_HEADER] = request_id

            # /metrics scrapes are not counted
            if request.url.path != "/metrics":
                record_http_request(request.method, request.url.path, response.status_code, latency_seconds)

            _log_completed(request, {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_ms": round(latency_seconds * 1000, 2),
            }, response.status_code)
            return response
        finally:
            request_id_ctx.reset(token)


def log_webhook_data(request: Request, result: str, messages: int = 0, media: int = 0, skipped: int = 0):
    """
    Attach webhook outcome fields to the request log line.

    Args:
        request: FastAPI request object
        result: ok, invalid_json, unreadable_body, error, verified or verification_failed
        messages: Messages persisted from the payload
        media: Attachments decrypted and stored
        skipped: Messages dropped for lack of a conversation identifier
    """
    request.state.webhook_log_data = {
        "result": result,
        "messages": messages,
        "media": media,
        "skipped": skipped,
    }
