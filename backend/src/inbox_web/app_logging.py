"""Logging setup for the inbox service.

Records go to a single stream handler on the ``inbox_web`` logger, either as
human-readable lines or, with ``LOG_JSON=true``, one JSON object per line.
The access-log middleware writes one structured line per request with a
request id that is echoed back as ``X-Request-Id``.
"""

from __future__ import annotations

import json
import logging
import time
from uuid import uuid4

from fastapi import FastAPI, Request

from .config import Settings

PACKAGE_LOGGER = "inbox_web"
ACCESS_LOGGER = "inbox_web.access"

SENSITIVE_FIELDS = {
    "authorization",
    "cookie",
    "set-cookie",
    "token",
    "access_token",
    "x-api-key",
    "x-hub-signature-256",
    "hub.verify_token",
}


class JsonFormatter(logging.Formatter):
    """Minimal JSON log formatter used when LOG_JSON=true."""

    def format(self, record: logging.LogRecord) -> str:
        log_record = {
            "level": record.levelname,
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_record["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(log_record)


def _get_formatter(log_json: bool) -> logging.Formatter:
    if log_json:
        return JsonFormatter()
    return logging.Formatter("[%(asctime)s] %(levelname)s in %(name)s: %(message)s")


def _scrub(data: object) -> object:
    """Recursively mask sensitive keys in dictionaries and lists."""
    if isinstance(data, dict):
        return {
            key: ("***" if str(key).lower() in SENSITIVE_FIELDS else _scrub(value))
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [_scrub(value) for value in data]
    return data


def configure_logging(settings: Settings) -> logging.Logger:
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(getattr(logging, settings.log_level, logging.INFO))
    for handler in list(logger.handlers):
        if getattr(handler, "_inbox_web_handler", False):
            logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(_get_formatter(settings.log_json))
    handler._inbox_web_handler = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
    return logger


def install_access_logging(app: FastAPI, *, skip_paths: set[str] | None = None) -> None:
    access_logger = logging.getLogger(ACCESS_LOGGER)
    skipped = skip_paths or set()

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        if request.url.path in skipped:
            return await call_next(request)

        request_id = request.headers.get("X-Request-Id") or uuid4().hex
        request.state.request_id = request_id
        start = time.time()

        response = await call_next(request)

        client_ip = request.headers.get("X-Forwarded-For")
        if not client_ip and request.client is not None:
            client_ip = request.client.host
        log_data = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "latency_ms": round((time.time() - start) * 1000, 2),
            "client_ip": client_ip,
            "headers": _scrub(dict(request.headers)),
        }
        response.headers["X-Request-Id"] = request_id
        access_logger.info(json.dumps(log_data, default=str))
        return response
