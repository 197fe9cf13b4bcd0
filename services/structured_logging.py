"""
Structured JSON Logging
========================
Configures Python's logging for the custody core.

Usage:
    from services.structured_logging import init_logging
    init_logging(app, level="INFO", env="production")

In production each log line is a JSON object containing:
  - timestamp (ISO-8601 UTC)
  - level
  - logger (module name)
  - message
  - chain_id / evidence_id / sequence_number (when passed via ``extra=``)
  - request_id / method / path (if inside a Flask request context)

Other environments get a human-readable single-line format.
"""

import json
import logging
import sys
import uuid
from datetime import datetime, timezone
from typing import Optional

from flask import Flask, g, has_request_context, request

CONTEXT_FIELDS = ("chain_id", "evidence_id", "sequence_number")


class JSONFormatter(logging.Formatter):
    """Emit each log record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                payload[name] = value

        if has_request_context():
            payload["request_id"] = getattr(g, "request_id", None)
            payload["method"] = request.method
            payload["path"] = request.path

        if record.exc_info and record.exc_info[0] is not None:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


def _assign_request_id() -> None:
    g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex


def _log_request_end(response):
    logging.getLogger("custody.http").info(
        "request_end %s %s status=%d",
        request.method,
        request.path,
        response.status_code,
    )
    request_id = getattr(g, "request_id", None)
    if request_id:
        response.headers["X-Request-ID"] = request_id
    return response


def configure_logging(level: Optional[str] = None, env: str = "development") -> str:
    """
    Install a stdout handler on the root logger, replacing the one from
    any earlier call.

    Returns the effective level name. Defaults to INFO in production,
    DEBUG otherwise.
    """
    is_production = env == "production"
    if level is None:
        level = "INFO" if is_production else "DEBUG"
    level = level.upper()

    root = logging.getLogger()
    root.setLevel(getattr(logging, level, logging.INFO))
    for handler in root.handlers[:]:
        if getattr(handler, "_custody_handler", False):
            root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler._custody_handler = True
    if is_production:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
    root.addHandler(handler)
    return level


def init_logging(app: Flask, *, level: Optional[str] = None, env: Optional[str] = None) -> None:
    """
    Attach logging to the Flask application.

    Parameters
    ----------
    app : Flask
        The Flask application instance.
    level : str, optional
        Override log level (DEBUG, INFO, WARNING, ERROR).
    env : str, optional
        Deployment environment; ``production`` selects JSON output.
    """
    env = env or app.config.get("ENV_NAME", "development")
    effective = configure_logging(level, env)

    app.before_request(_assign_request_id)
    app.after_request(_log_request_end)

    logging.getLogger("custody").info(
        "Logging initialised (level=%s, json=%s)",
        effective,
        env == "production",
    )
