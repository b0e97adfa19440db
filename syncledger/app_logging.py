"""Application and access logging setup.

This module centralizes logging configuration for the sync service. It provides:

- A JSON formatter (opt-in via LOG_JSON) that also carries the connector
  bookkeeping fields attached through ``extra=`` (connector, tenant_id,
  dedupe_key, attempt, retry_count), or a human-readable formatter.
- Timed rotation of log files for both application logs (syncledger.log) and
  access logs (access.log), honoring retention and timezone options.
- An HTTP middleware that records structured access logs (method, route,
  status, latency, client IP, headers) with basic secret scrubbing.

Environment variables: LOG_DIR, LOG_LEVEL, LOG_JSON, LOG_RETENTION_DAYS,
LOG_ROTATE_UTC.
"""

from __future__ import annotations

import json
import logging
import os
import time
from logging.handlers import TimedRotatingFileHandler
from typing import Any, cast
from uuid import uuid4

from fastapi import FastAPI, Request

APP_LOGGER_NAME = "syncledger"
ACCESS_LOGGER_NAME = "uvicorn.access"

CONTEXT_FIELDS = ("connector", "tenant_id", "dedupe_key", "attempt", "retry_count", "failed")


class JsonFormatter(logging.Formatter):
    """JSON log formatter used when LOG_JSON=true."""

    def format(self, record: logging.LogRecord) -> str:
        log_record: dict[str, Any] = {
            "level": record.levelname,
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_record[field] = value
        if record.exc_info:
            log_record["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(log_record, default=str)


def _get_formatter(log_json: bool) -> logging.Formatter:
    if log_json:
        return JsonFormatter()
    return logging.Formatter("[%(asctime)s] %(levelname)s in %(name)s: %(message)s")


SENSITIVE_FIELDS = {
    "authorization",
    "cookie",
    "set-cookie",
    "x-api-key",
    "token",
}


def _scrub(data: object) -> object:
    """Recursively scrub sensitive fields from dictionaries and lists."""

    if isinstance(data, dict):
        return {
            k: ("***" if k.lower() in SENSITIVE_FIELDS else _scrub(v))
            for k, v in data.items()
        }
    if isinstance(data, list):
        return [_scrub(v) for v in data]
    return data


def _client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client is not None else None


def _level_for_status(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


def _install_access_logging(app: FastAPI) -> None:
    """Log one JSON line per operator request and echo an ``X-Request-Id`` header.

    Lines carry the matched route template and the ``error_id`` path parameter
    so retries and resolutions of ledger entries can be traced per tenant.
    Client errors are logged at WARNING and server errors at ERROR.
    """

    skip_paths = {"/api/health", "/api/metrics"}
    access_logger = logging.getLogger(ACCESS_LOGGER_NAME)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        if request.url.path in skip_paths:
            return await call_next(request)

        request_id = request.headers.get("X-Request-Id") or uuid4().hex
        request.state.request_id = request_id
        start = time.perf_counter()

        response = await call_next(request)

        route = request.scope.get("route")
        path_params = request.scope.get("path_params") or {}
        log_data = {
            "request_id": request_id,
            "method": request.method,
            "route": getattr(route, "path", request.url.path),
            "status": response.status_code,
            "latency_ms": round((time.perf_counter() - start) * 1000, 2),
            "tenant_id": request.headers.get("X-Tenant-Id"),
            "error_id": path_params.get("error_id"),
            "client_ip": _client_ip(request),
            "headers": _scrub(dict(request.headers)),
        }
        response.headers["X-Request-Id"] = request_id
        access_logger.log(
            _level_for_status(response.status_code), json.dumps(log_data, default=str)
        )
        return response


def _rotating_handler(path: str, retention_days: int, rotate_utc: bool) -> TimedRotatingFileHandler:
    return TimedRotatingFileHandler(
        path,
        when="midnight",
        backupCount=retention_days,
        utc=rotate_utc,
    )


def init_logging(app: FastAPI | None = None) -> None:
    """Initialise application and access loggers."""

    log_dir = os.getenv("LOG_DIR", "logs")
    log_level_str = os.getenv("LOG_LEVEL", "INFO").upper()
    log_json = os.getenv("LOG_JSON", "false").lower() == "true"
    retention_days = int(os.getenv("LOG_RETENTION_DAYS", "7"))
    rotate_utc = os.getenv("LOG_ROTATE_UTC", "false").lower() == "true"

    os.makedirs(log_dir, exist_ok=True)

    formatter = _get_formatter(log_json)
    log_level = getattr(logging, log_level_str, logging.INFO)

    app_logger = logging.getLogger(APP_LOGGER_NAME)
    if not app_logger.handlers:
        handler = _rotating_handler(
            os.path.join(log_dir, "syncledger.log"), retention_days, rotate_utc
        )
        handler.setFormatter(formatter)
        app_logger.addHandler(handler)
    app_logger.setLevel(log_level)

    access_logger = logging.getLogger(ACCESS_LOGGER_NAME)
    access_logger.handlers.clear()
    handler = _rotating_handler(os.path.join(log_dir, "access.log"), retention_days, rotate_utc)
    handler.setFormatter(formatter)
    access_logger.addHandler(handler)
    access_logger.setLevel(log_level)

    if app is not None:
        cast(Any, app).logger = app_logger
        _install_access_logging(app)
