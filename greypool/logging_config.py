from __future__ import annotations

import json
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from flask import Flask, g, has_request_context, request

# Attributes callers attach with ``extra=`` that are worth keeping in JSON output.
CONTEXT_FIELDS = ("task_id", "task_type", "share", "drive", "method", "path",
                  "status_code", "duration_ms")


def request_id_of(record: logging.LogRecord) -> Optional[str]:
    request_id = getattr(record, "request_id", None)
    if request_id is None and has_request_context():
        request_id = g.get("request_id")
    return request_id


class JsonFormatter(logging.Formatter):
    """One JSON object per line, carrying task or request context when present."""

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        payload: Dict[str, Any] = {
            "timestamp": created.isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }
        request_id = request_id_of(record)
        if request_id:
            payload["request_id"] = request_id
        payload.update(
            (name, getattr(record, name)) for name in CONTEXT_FIELDS if hasattr(record, name)
        )
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True)


def configure_logging(level: str = "INFO", json_output: bool = False) -> None:
    """Send every greypool logger to stderr through one root handler."""
    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s [%(threadName)s] %(message)s"
        ))

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())

    # APScheduler logs every job execution at INFO.
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


def init_request_logging(app: Flask) -> None:
    """Tag each API request with an X-Request-ID and log it once it completes."""

    @app.before_request
    def _start_request() -> None:  # pragma: no cover - flask runtime hook
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        g.request_started = time.monotonic()

    @app.after_request
    def _finish_request(response):  # pragma: no cover - flask runtime hook
        request_id = g.get("request_id")
        if request_id:
            response.headers["X-Request-ID"] = request_id
        started = g.get("request_started")
        elapsed_ms = None if started is None else round((time.monotonic() - started) * 1000, 2)

        app.logger.info(
            f"{request.method} {request.path} -> {response.status_code}",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.path,
                "status_code": response.status_code,
                "duration_ms": elapsed_ms,
            },
        )
        return response
