# tests/test_config.py
from __future__ import annotations

import json
import logging

from httpx import AsyncClient, ASGITransport

from apps.api.main import app
from relay.core.logging import JsonFormatter, PlainFormatter, configure_logging
from relay.core.settings import AppSettings


async def test_module_app_serves_health() -> None:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        resp = await ac.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert "time" in data


def test_env_overrides(monkeypatch) -> None:
    monkeypatch.setenv("MODEL_ID", "gpt-test")
    monkeypatch.setenv("MAX_CONTEXT_TOKENS", "1234")
    monkeypatch.setenv("PROVIDER_BASE_URL", "https://api.example.com/")
    monkeypatch.setenv("PROVIDER_CHAT_PATH", "v1/chat/completions")
    monkeypatch.setenv("CORS_ALLOWED_ORIGINS", "http://a.test, http://b.test")
    s = AppSettings(_env_file=None)
    assert s.chat_model == "gpt-test"
    assert s.max_context_tokens == 1234
    assert s.provider_chat_url == "https://api.example.com/v1/chat/completions"
    assert s.cors_origins == ["http://a.test", "http://b.test"]


def test_defaults() -> None:
    s = AppSettings(_env_file=None, db_url="sqlite:///x.db")
    assert s.log_format == "json"
    assert s.temperature == 0.6
    assert s.default_max_output_tokens <= s.max_output_tokens_limit
    assert s.reject_concurrent_turns is False


def _record(msg) -> logging.LogRecord:
    return logging.LogRecord("app.chat", logging.INFO, __file__, 1, msg, None, None)


def test_json_formatter_flattens_dict_messages() -> None:
    out = json.loads(JsonFormatter().format(_record({"event": "chat.turn", "conversation_id": "c1"})))
    assert out["event"] == "chat.turn"
    assert out["conversation_id"] == "c1"
    assert out["level"] == "INFO"
    assert out["logger"] == "app.chat"


def test_plain_formatter_leads_with_event_and_conversation() -> None:
    line = PlainFormatter().format(_record({"error": "two words", "conversation_id": "c1", "event": "chat.turn"}))
    assert line.endswith('app.chat: chat.turn [c1] error="two words"')


def test_json_formatter_wraps_plain_messages() -> None:
    out = json.loads(JsonFormatter().format(_record("started")))
    assert out["message"] == "started"
    assert "event" not in out


def test_configure_logging_selects_formatter() -> None:
    root = logging.getLogger()
    saved = root.handlers[:], root.level
    try:
        configure_logging("debug", fmt="plain")
        assert isinstance(root.handlers[0].formatter, PlainFormatter)
        assert root.level == logging.DEBUG
        assert logging.getLogger("httpx").level == logging.WARNING
        configure_logging("info")
        assert isinstance(root.handlers[0].formatter, JsonFormatter)
    finally:
        root.handlers[:] = saved[0]
        root.setLevel(saved[1])
