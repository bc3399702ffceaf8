"""Logging setup for the worker and the webhook intake.

Application records from the ``replyforce`` logger tree go to ``app.log``;
one line per webhook request goes to ``access.log`` through the
``uvicorn.access`` logger. Both files rotate at midnight.

Environment variables: LOG_DIR, LOG_LEVEL, LOG_JSON, LOG_REQUEST_BODIES,
LOG_RETENTION_DAYS, LOG_ROTATE_UTC.
"""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass
from logging.handlers import TimedRotatingFileHandler
from typing import Any, cast
from uuid import uuid4

from fastapi import FastAPI, Request

APP_LOGGER = "replyforce"
ACCESS_LOGGER = "uvicorn.access"


class JsonFormatter(logging.Formatter):
    """One JSON object per record; selected with LOG_JSON=true."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "level": record.levelname,
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload)


def _get_formatter(log_json: bool) -> logging.Formatter:
    if log_json:
        return JsonFormatter()
    return logging.Formatter("[%(asctime)s] %(levelname)s %(name)s: %(message)s")


# Header and payload keys masked in access logs.
SENSITIVE_FIELDS = {
    "authorization",
    "cookie",
    "set-cookie",
    "password",
    "token",
    "access_token",
    "refresh_token",
    "x-hub-signature",
    "x-hub-signature-256",
    "x-twitter-webhooks-signature",
    "app_secret",
    "hub.verify_token",
    "api_key",
}


def _scrub(data: object) -> object:
    """Mask sensitive keys at any depth of a dict/list structure."""

    if isinstance(data, dict):
        return {
            key: "***" if str(key).lower() in SENSITIVE_FIELDS else _scrub(value)
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [_scrub(item) for item in data]
    return data


@dataclass(frozen=True)
class LoggingOptions:
    log_dir: str = "logs"
    level: int = logging.INFO
    json: bool = False
    retention_days: int = 7
    rotate_utc: bool = False
    request_bodies: bool = False

    @classmethod
    def from_env(cls) -> LoggingOptions:
        level_name = os.getenv("LOG_LEVEL", "INFO").upper()
        return cls(
            log_dir=os.getenv("LOG_DIR", "logs"),
            level=getattr(logging, level_name, logging.INFO),
            json=os.getenv("LOG_JSON", "false").lower() == "true",
            retention_days=int(os.getenv("LOG_RETENTION_DAYS", "7")),
            rotate_utc=os.getenv("LOG_ROTATE_UTC", "false").lower() == "true",
            request_bodies=os.getenv("LOG_REQUEST_BODIES", "false").lower() == "true",
        )

    def handler(self, filename: str) -> TimedRotatingFileHandler:
        handler = TimedRotatingFileHandler(
            os.path.join(self.log_dir, filename),
            when="midnight",
            backupCount=self.retention_days,
            utc=self.rotate_utc,
        )
        handler.setFormatter(_get_formatter(self.json))
        return handler


def _install_access_logging(app: FastAPI, options: LoggingOptions) -> None:
    """Log each request as JSON and echo an ``X-Request-Id`` header."""

    skip_paths = {"/api/health"}
    access_logger = logging.getLogger(ACCESS_LOGGER)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        if request.url.path in skip_paths:
            return await call_next(request)

        request_id = request.headers.get("X-Request-Id") or uuid4().hex
        request.state.request_id = request_id
        started = time.perf_counter()

        body: object | None = None
        if options.request_bodies:
            raw = await request.body()

            async def receive() -> dict:
                return {"type": "http.request", "body": raw, "more_body": False}

            request._receive = receive  # type: ignore[attr-defined]
            if raw:
                try:
                    body = _scrub(json.loads(raw))
                except ValueError:
                    body = raw.decode("utf-8", errors="replace")

        response = await call_next(request)

        client_ip = request.headers.get("X-Forwarded-For")
        if not client_ip and request.client is not None:
            client_ip = request.client.host
        entry: dict[str, Any] = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "latency_ms": round((time.perf_counter() - started) * 1000, 2),
            "client_ip": client_ip,
            "headers": _scrub(dict(request.headers)),
        }
        if body is not None:
            entry["body"] = body

        response.headers["X-Request-Id"] = request_id
        access_logger.info(json.dumps(entry, default=str))
        return response


def init_logging(app: FastAPI | None = None) -> None:
    """Configure the application and access loggers from the environment."""

    options = LoggingOptions.from_env()
    os.makedirs(options.log_dir, exist_ok=True)

    app_logger = logging.getLogger(APP_LOGGER)
    if not app_logger.handlers:
        app_logger.addHandler(options.handler("app.log"))
    app_logger.setLevel(options.level)

    access_logger = logging.getLogger(ACCESS_LOGGER)
    access_logger.handlers.clear()
    access_logger.addHandler(options.handler("access.log"))
    access_logger.setLevel(options.level)

    if app is not None:
        cast(Any, app).logger = app_logger
        _install_access_logging(app, options)
