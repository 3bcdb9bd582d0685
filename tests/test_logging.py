"""Tests for structured JSON logging."""

import json
import logging

import pytest

from mediaflow.core.logging import (
    REDACTED,
    StructuredFormatter,
    get_logger,
    is_sensitive_key,
    log_context,
    redact,
)


class ListHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        self.lines = []

    def emit(self, record):
        self.lines.append(json.loads(self.format(record)))


@pytest.fixture
def captured():
    handler = ListHandler()
    handler.setFormatter(StructuredFormatter(service="mediaflow-test"))
    logger = logging.getLogger("mediaflow.tests.logging")
    logger.setLevel(logging.DEBUG)
    logger.addHandler(handler)
    logger.propagate = False
    yield logger, handler.lines
    logger.removeHandler(handler)


def test_envelope_fields(captured):
    logger, lines = captured
    logger.info("hello", extra={"context": {"filename": "a.jpg"}, "metrics": {"durationMs": 3}})

    entry = lines[0]
    assert entry["level"] == "INFO"
    assert entry["service"] == "mediaflow-test"
    assert entry["message"] == "hello"
    assert entry["timestamp"].endswith("Z")
    assert entry["context"] == {"filename": "a.jpg"}
    assert entry["metrics"] == {"durationMs": 3}


def test_log_context_sets_request_scoped_ids(captured):
    logger, lines = captured
    with log_context(request_id="req-1", user_id="user-1", action="upload"):
        logger.info("inside")
    logger.info("outside")

    assert lines[0]["requestId"] == "req-1"
    assert lines[0]["userId"] == "user-1"
    assert lines[0]["action"] == "upload"
    assert "requestId" not in lines[1]


def test_plain_extras_fold_into_context(captured):
    logger, lines = captured
    logger.info("stored", extra={"object_name": "images/u/h/a.webp", "session_id": "s-1"})

    assert lines[0]["context"] == {"object_name": "images/u/h/a.webp"}
    assert lines[0]["sessionId"] == "s-1"


def test_sensitive_keys_redacted_at_any_depth(captured):
    logger, lines = captured
    logger.info(
        "config",
        extra={
            "context": {
                "password": "hunter2",
                "nested": {"apiKey": "abc", "safe": 1},
                "items": [{"authToken": "t"}, {"name": "ok"}],
            }
        },
    )

    context = lines[0]["context"]
    assert context["password"] == REDACTED
    assert context["nested"] == {"apiKey": REDACTED, "safe": 1}
    assert context["items"] == [{"authToken": REDACTED}, {"name": "ok"}]


def test_exception_populates_error(captured):
    logger, lines = captured
    try:
        raise ValueError("boom")
    except ValueError:
        logger.error("failed", exc_info=True, extra={"error": {"category": "SYSTEM_ERROR"}})

    error = lines[0]["error"]
    assert error["type"] == "ValueError"
    assert error["message"] == "boom"
    assert error["category"] == "SYSTEM_ERROR"
    assert "Traceback" in error["stack"]


def test_is_sensitive_key():
    assert is_sensitive_key("Authorization")
    assert is_sensitive_key("client_secret")
    assert not is_sensitive_key("filename")


def test_redact_leaves_scalars():
    assert redact("text") == "text"
    assert redact({"a": [1, 2]}) == {"a": [1, 2]}


def test_timed_logs_duration(captured):
    logger, lines = captured
    structured = get_logger(logger.name, processor="image")

    with structured.timed("resize", filename="a.jpg"):
        pass

    entry = lines[0]
    assert entry["message"] == "resize completed"
    assert entry["action"] == "resize"
    assert entry["context"] == {"processor": "image", "filename": "a.jpg"}
    assert entry["metrics"]["durationMs"] >= 0


def test_timed_failure_logs_warning_and_reraises(captured):
    logger, lines = captured
    structured = get_logger(logger.name)

    with pytest.raises(RuntimeError):
        with structured.timed("transcode"):
            raise RuntimeError("ffmpeg died")

    assert lines[0]["level"] == "WARNING"
    assert lines[0]["message"] == "transcode failed"


def test_bind_merges_context(captured):
    logger, lines = captured
    structured = get_logger(logger.name, processor="video").bind(stage="probe")

    structured.info("probing")

    assert lines[0]["context"] == {"processor": "video", "stage": "probe"}
