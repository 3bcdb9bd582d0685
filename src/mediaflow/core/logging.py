"""Structured JSON logging for the mediaflow pipeline."""

import contextvars
import json
import logging
import sys
import time
import traceback
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, MutableMapping

REDACTED = "[REDACTED]"

SENSITIVE_KEYWORDS = (
    "password",
    "token",
    "secret",
    "key",
    "auth",
    "cookie",
    "session",
    "credential",
    "bearer",
)

# Request-scoped envelope fields
request_id_context: contextvars.ContextVar[str | None] = contextvars.ContextVar("request_id", default=None)
user_id_context: contextvars.ContextVar[str | None] = contextvars.ContextVar("user_id", default=None)
session_id_context: contextvars.ContextVar[str | None] = contextvars.ContextVar("session_id", default=None)
action_context: contextvars.ContextVar[str | None] = contextvars.ContextVar("action", default=None)

# extra={...} keys promoted to the envelope instead of nested under "context"
ENVELOPE_EXTRAS = {
    "request_id": "requestId",
    "user_id": "userId",
    "session_id": "sessionId",
    "action": "action",
}
NESTED_EXTRAS = ("context", "error", "metrics")

STANDARD_RECORD_FIELDS = frozenset(
    [
        "name", "msg", "args", "created", "filename", "funcName",
        "levelname", "levelno", "lineno", "module", "msecs",
        "message", "pathname", "process", "processName",
        "relativeCreated", "thread", "threadName", "exc_info",
        "exc_text", "stack_info", "getMessage", "taskName",
    ]
)


def is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(keyword in lowered for keyword in SENSITIVE_KEYWORDS)


def redact(value: Any) -> Any:
    """Return a copy of ``value`` with sensitive keys masked at any depth."""
    if isinstance(value, dict):
        return {
            k: REDACTED if is_sensitive_key(str(k)) else redact(v)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact(item) for item in value]
    return value


@contextmanager
def log_context(
    request_id: str | None = None,
    user_id: str | None = None,
    session_id: str | None = None,
    action: str | None = None,
) -> Iterator[None]:
    """Set envelope fields for every log call made inside the block."""
    tokens = []
    for var, value in (
        (request_id_context, request_id),
        (user_id_context, user_id),
        (session_id_context, session_id),
        (action_context, action),
    ):
        if value is not None:
            tokens.append((var, var.set(value)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


class StructuredFormatter(logging.Formatter):
    """JSON line formatter with a fixed envelope.

    Every record becomes one JSON object holding timestamp, level,
    service, the request-scoped ids, the message and three nested
    objects: ``context``, ``error`` and ``metrics``. Sensitive keys in
    the nested objects are masked before serialisation.
    """

    def __init__(self, service: str = "mediaflow"):
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc)
            .isoformat()
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "service": self.service,
        }

        for key, var in (
            ("requestId", request_id_context),
            ("userId", user_id_context),
            ("sessionId", session_id_context),
            ("action", action_context),
        ):
            value = var.get()
            if value is not None:
                log_entry[key] = value

        log_entry["message"] = record.getMessage()
        log_entry["logger"] = record.name

        context: Dict[str, Any] = {}
        nested: Dict[str, Any] = {}
        for key, value in record.__dict__.items():
            if key in STANDARD_RECORD_FIELDS or key.startswith("_"):
                continue
            if key in ENVELOPE_EXTRAS:
                if value is not None:
                    log_entry[ENVELOPE_EXTRAS[key]] = value
            elif key in NESTED_EXTRAS:
                nested[key] = value
            else:
                context[key] = value

        if isinstance(nested.get("context"), dict):
            context = {**context, **nested["context"]}
        if context:
            log_entry["context"] = redact(context)

        error = nested.get("error")
        if record.exc_info:
            exc_type, exc_value, _ = record.exc_info
            error = {
                **(error if isinstance(error, dict) else {}),
                "type": exc_type.__name__ if exc_type else "Unknown",
                "message": str(exc_value) if exc_value else "",
                "stack": "".join(traceback.format_exception(*record.exc_info)),
            }
        if error is not None:
            log_entry["error"] = redact(error if isinstance(error, dict) else {"message": str(error)})

        if nested.get("metrics") is not None:
            log_entry["metrics"] = redact(nested["metrics"])

        return json.dumps(log_entry, default=str, ensure_ascii=False)


class StructuredLogger(logging.LoggerAdapter):
    """Logger adapter that carries a bound context into every call."""

    def __init__(self, logger: logging.Logger, context: Dict[str, Any] | None = None):
        super().__init__(logger, dict(context or {}))

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        extra = dict(kwargs.get("extra") or {})
        if self.extra:
            extra["context"] = {**self.extra, **(extra.get("context") or {})}
        kwargs["extra"] = extra
        return msg, kwargs

    def bind(self, **context: Any) -> "StructuredLogger":
        """Return a child logger with additional bound context."""
        return StructuredLogger(self.logger, {**self.extra, **context})

    @contextmanager
    def timed(self, action: str, **context: Any) -> Iterator[None]:
        """Log ``action`` with its elapsed time under ``metrics.durationMs``."""
        start = time.perf_counter()
        failed = False
        try:
            yield
        except Exception:
            failed = True
            raise
        finally:
            duration_ms = round((time.perf_counter() - start) * 1000, 2)
            level = logging.WARNING if failed else logging.INFO
            self.log(
                level,
                f"{action} {'failed' if failed else 'completed'}",
                extra={
                    "action": action,
                    "context": context,
                    "metrics": {"durationMs": duration_ms},
                },
            )


def get_logger(name: str, **context: Any) -> StructuredLogger:
    return StructuredLogger(logging.getLogger(name), context)


def setup_logging() -> None:
    """Configure structured logging for the application.

    Routes every record to stdout. Non-local environments get the JSON
    formatter; ``ENV=local`` keeps a readable text format.
    """
    from mediaflow.core.config import settings

    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)

    if settings.ENV == "local":
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )
    else:
        formatter = StructuredFormatter(service=settings.SERVICE_NAME)

    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    for logger_name in ["uvicorn", "uvicorn.access", "uvicorn.error"]:
        uvicorn_logger = logging.getLogger(logger_name)
        uvicorn_logger.setLevel(log_level)
        uvicorn_logger.handlers.clear()
        uvicorn_logger.addHandler(handler)
        uvicorn_logger.propagate = False
