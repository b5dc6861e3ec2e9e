"""Application and access logging for the turn pipeline.

``init_logging`` attaches timed-rotating file handlers to the ``app`` logger
hierarchy (``app.log``) and to ``uvicorn.access`` (``access.log``). Pipeline
modules pass turn context through ``extra=`` and the JSON formatter lifts it
into top-level keys, so one conversation can be followed across the service,
the model invoker and the background workers.

The access middleware writes one JSON line per request tagged with the
conversation or agent the route addresses. Message text is never written to
the access log: request bodies, when enabled, keep their keys but ``content``
is reduced to its length and Hebrew flag.

Environment variables: LOG_DIR, LOG_LEVEL, LOG_JSON, LOG_REQUEST_BODIES,
LOG_RETENTION_DAYS, LOG_ROTATE_UTC.
"""

from __future__ import annotations

import json
import logging
import os
import re
import time
from dataclasses import dataclass
from logging.handlers import TimedRotatingFileHandler
from typing import Any, cast
from uuid import uuid4

from fastapi import FastAPI, Request

from .core.rate_limit import get_client_ip
from .nlp import is_hebrew

CONTEXT_FIELDS = (
    "conversation_id",
    "agent_id",
    "message_id",
    "work_id",
    "attempt",
    "error_type",
)

SENSITIVE_FIELDS = {
    "authorization",
    "cookie",
    "set-cookie",
    "password",
    "token",
    "api_key",
    "x-api-key",
    "openai_api_key",
}

# Keys whose values are end-user text.
TEXT_FIELDS = {"content", "reason"}

UNLOGGED_PATHS = {"/api/health", "/api/metrics"}

_ROUTE_SUBJECTS = (
    ("conversation_id", re.compile(r"^/(?:api|ws)/conversations/([^/]+)")),
    ("agent_id", re.compile(r"^/api/agents/([^/]+)")),
)


def _env_flag(name: str) -> bool:
    return os.getenv(name, "false").lower() == "true"


@dataclass(frozen=True)
class LoggingConfig:
    log_dir: str = "logs"
    level: int = logging.INFO
    json_format: bool = False
    request_bodies: bool = False
    retention_days: int = 7
    rotate_utc: bool = False

    @classmethod
    def from_env(cls) -> "LoggingConfig":
        return cls(
            log_dir=os.getenv("LOG_DIR", "logs"),
            level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
            json_format=_env_flag("LOG_JSON"),
            request_bodies=_env_flag("LOG_REQUEST_BODIES"),
            retention_days=int(os.getenv("LOG_RETENTION_DAYS", "7")),
            rotate_utc=_env_flag("LOG_ROTATE_UTC"),
        )


class JsonFormatter(logging.Formatter):
    """One JSON object per record, including any turn context fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "level": record.levelname,
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(
            (key, getattr(record, key))
            for key in CONTEXT_FIELDS
            if getattr(record, key, None) is not None
        )
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def _formatter(config: LoggingConfig) -> logging.Formatter:
    if config.json_format:
        return JsonFormatter()
    return logging.Formatter("[%(asctime)s] %(levelname)s in %(name)s: %(message)s")


def _rotating_handler(config: LoggingConfig, filename: str) -> TimedRotatingFileHandler:
    handler = TimedRotatingFileHandler(
        os.path.join(config.log_dir, filename),
        when="midnight",
        backupCount=config.retention_days,
        utc=config.rotate_utc,
        encoding="utf-8",
    )
    handler.setFormatter(_formatter(config))
    return handler


def redact(data: object) -> object:
    """Mask credentials and reduce end-user text to a length summary."""

    if isinstance(data, dict):
        cleaned: dict[str, object] = {}
        for key, value in data.items():
            lowered = str(key).lower()
            if lowered in SENSITIVE_FIELDS:
                cleaned[key] = "***"
            elif lowered in TEXT_FIELDS and isinstance(value, str):
                cleaned[key] = {"chars": len(value), "is_hebrew": is_hebrew(value)}
            else:
                cleaned[key] = redact(value)
        return cleaned
    if isinstance(data, list):
        return [redact(item) for item in data]
    return data


def route_subject(path: str) -> dict[str, str]:
    """Conversation or agent id addressed by ``path``, if any."""

    for field_name, pattern in _ROUTE_SUBJECTS:
        match = pattern.match(path)
        if match:
            return {field_name: match.group(1)}
    return {}


def _install_access_logging(app: FastAPI, config: LoggingConfig) -> None:
    access_logger = logging.getLogger("uvicorn.access")

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        if request.url.path in UNLOGGED_PATHS:
            return await call_next(request)

        request_id = request.headers.get("X-Request-Id") or uuid4().hex
        request.state.request_id = request_id
        started = time.perf_counter()

        body: object = None
        if config.request_bodies:
            raw = await request.body()

            async def receive() -> dict:  # pragma: no cover - replays the body
                return {"type": "http.request", "body": raw, "more_body": False}

            request._receive = receive  # type: ignore[attr-defined]
            if raw:
                try:
                    body = redact(json.loads(raw))
                except ValueError:
                    body = {"bytes": len(raw)}

        response = await call_next(request)

        entry: dict[str, Any] = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            **route_subject(request.url.path),
            "status": response.status_code,
            "latency_ms": round((time.perf_counter() - started) * 1000, 2),
            "client_ip": get_client_ip(request),
            "headers": redact(dict(request.headers)),
        }
        if body is not None:
            entry["body"] = body

        response.headers["X-Request-Id"] = request_id
        access_logger.info(json.dumps(entry, ensure_ascii=False, default=str))
        return response


def init_logging(app: FastAPI | None = None) -> None:
    """Attach rotating handlers and, given an app, the access middleware."""

    config = LoggingConfig.from_env()
    os.makedirs(config.log_dir, exist_ok=True)

    app_logger = logging.getLogger("app")
    if not app_logger.handlers:
        app_logger.addHandler(_rotating_handler(config, "app.log"))
    app_logger.setLevel(config.level)

    access_logger = logging.getLogger("uvicorn.access")
    access_logger.handlers.clear()
    access_logger.addHandler(_rotating_handler(config, "access.log"))
    access_logger.setLevel(config.level)

    if app is not None:
        cast(Any, app).logger = app_logger
        _install_access_logging(app, config)
