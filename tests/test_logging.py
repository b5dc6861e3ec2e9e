import json
import logging
from logging.handlers import TimedRotatingFileHandler

import pytest
from starlette.testclient import TestClient

from app.app_logging import JsonFormatter, init_logging, redact, route_subject


def _clear_handlers(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.handlers.clear()
    return logger


@pytest.fixture
def log_dir(monkeypatch, tmp_path):
    monkeypatch.setenv("LOG_DIR", str(tmp_path))
    yield tmp_path
    _clear_handlers("app")
    _clear_handlers("uvicorn.access")


def test_timed_rotating_handler_configuration(log_dir, monkeypatch):
    monkeypatch.setenv("LOG_RETENTION_DAYS", "5")
    app_logger = _clear_handlers("app")
    access_logger = _clear_handlers("uvicorn.access")
    access_logger.addHandler(logging.StreamHandler())

    init_logging()

    app_handler = next(
        h for h in app_logger.handlers if isinstance(h, TimedRotatingFileHandler)
    )
    assert app_handler.when == "MIDNIGHT"
    assert app_handler.backupCount == 5
    assert all(isinstance(h, TimedRotatingFileHandler) for h in access_logger.handlers)


def test_access_log_redacts_secrets_and_echoes_request_id(log_dir, app_factory):
    _clear_handlers("app")
    _clear_handlers("uvicorn.access")
    app = app_factory(log_dir, log_request_bodies=True)

    @app.post("/api/conversations/{conversation_id}/messages")
    async def message(conversation_id: str):
        return {"conversation_id": conversation_id}

    with TestClient(app) as client:
        resp = client.post(
            "/api/conversations/c-42/messages",
            json={"api_key": "sk-secret", "content": "שלום"},
            headers={"Authorization": "Bearer secret", "X-Request-Id": "turn-1"},
        )
    assert resp.status_code == 200
    assert resp.headers["X-Request-Id"] == "turn-1"

    for handler in logging.getLogger("uvicorn.access").handlers:
        handler.flush()
    line = (log_dir / "access.log").read_text(encoding="utf-8").splitlines()[-1]
    data = json.loads(line.split(": ", 1)[1])
    assert data["request_id"] == "turn-1"
    assert data["conversation_id"] == "c-42"
    assert data["headers"]["authorization"] == "***"
    assert data["body"]["api_key"] == "***"
    assert data["body"]["content"] == {"chars": 4, "is_hebrew": True}
    assert "שלום" not in line


def test_health_requests_are_not_access_logged(log_dir, app_factory, caplog):
    app = app_factory(log_dir)

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    with TestClient(app) as client, caplog.at_level(logging.INFO, logger="uvicorn.access"):
        client.get("/api/health")
    assert [r for r in caplog.records if r.name == "uvicorn.access"] == []


@pytest.mark.parametrize(
    "path, expected",
    [
        ("/api/conversations/c-1/messages", {"conversation_id": "c-1"}),
        ("/ws/conversations/c-2", {"conversation_id": "c-2"}),
        ("/api/agents/support-bot/documents", {"agent_id": "support-bot"}),
        ("/api/version", {}),
    ],
)
def test_route_subject(path, expected):
    assert route_subject(path) == expected


def test_redact_masks_credentials_and_summarises_text():
    cleaned = redact(
        {"openai_api_key": "sk-1", "items": [{"content": "hello", "reason": None}]}
    )

    assert cleaned == {
        "openai_api_key": "***",
        "items": [{"content": {"chars": 5, "is_hebrew": False}, "reason": None}],
    }


def test_json_formatter_includes_turn_context():
    record = logging.LogRecord(
        "app.conversations.service", logging.WARNING, __file__, 1,
        "Model call failed (attempt %d/%d)", (1, 3), None,
    )
    record.conversation_id = "c-1"
    record.attempt = 1
    record.error_type = "ModelTimeoutError"

    data = json.loads(JsonFormatter().format(record))

    assert data["message"] == "Model call failed (attempt 1/3)"
    assert data["logger"] == "app.conversations.service"
    assert data["conversation_id"] == "c-1"
    assert data["attempt"] == 1
    assert data["error_type"] == "ModelTimeoutError"
    assert "agent_id" not in data
