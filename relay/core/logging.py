# relay/core/logging.py
"""Log records are dicts with an ``event`` key, e.g.

    log.info({"event": "chat.turn", "conversation_id": cid, "interrupted": False})

Both formatters put ``event`` and ``conversation_id`` first so one turn can be
followed across the request, provider, cancel and store loggers.
"""
from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, List, Optional, Tuple

from fastapi import Request, Response

CONVERSATION_HEADER = "X-Conversation-Id"

_LEADING_KEYS = ("event", "conversation_id")
# Per-request INFO lines from the HTTP client duplicate provider.stream_open
_NOISY_LOGGERS = ("httpx", "httpcore")


def _split_fields(record: logging.LogRecord) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """(leading, rest) fields of a record; plain string messages go under ``message``."""
    msg = record.msg
    fields = dict(msg) if isinstance(msg, dict) else {"message": record.getMessage()}
    leading = {k: fields.pop(k) for k in _LEADING_KEYS if k in fields}
    return leading, fields


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        leading, rest = _split_fields(record)
        payload: Dict[str, Any] = {
            "level": record.levelname,
            "time": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "logger": record.name,
            **leading,
            **rest,
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def _plain_value(value: Any) -> str:
    text = json.dumps(value, ensure_ascii=False, default=str) if isinstance(value, (dict, list)) else str(value)
    if " " in text or ";" in text:
        text = f'"{text}"'
    return text


class PlainFormatter(logging.Formatter):
    """``<time> | LEVEL | logger: event [conversation] key=value ...``"""

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        leading, rest = _split_fields(record)
        ts = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(record.created))
        parts: List[str] = [f"{ts} | {record.levelname.ljust(5)} | {record.name}:"]
        if "event" in leading:
            parts.append(str(leading["event"]))
        if leading.get("conversation_id"):
            parts.append(f"[{leading['conversation_id']}]")
        if isinstance(record.msg, dict):
            parts.extend(f"{k}={_plain_value(v)}" for k, v in rest.items())
        else:
            parts.append(rest["message"])
        text = " ".join(parts)
        if record.exc_info:
            text += "\n" + self.formatException(record.exc_info)
        return text.rstrip()


def configure_logging(level: str = "INFO", fmt: str = "json") -> None:
    root = logging.getLogger()
    root.setLevel(level.upper())

    handler = logging.StreamHandler()
    if fmt.lower() in ("plain", "text", "human"):
        handler.setFormatter(PlainFormatter())
    else:
        handler.setFormatter(JsonFormatter())

    root.handlers.clear()
    root.addHandler(handler)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


async def request_logging_middleware(request: Request, call_next):
    start = time.perf_counter()
    response: Optional[Response] = None
    try:
        response = await call_next(request)
        return response
    finally:
        entry: Dict[str, Any] = {
            "event": "http.request",
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code if response is not None else 500,
            "duration_ms": round((time.perf_counter() - start) * 1000, 2),
            "trace_id": request.headers.get("x-trace-id"),
        }
        if response is not None and CONVERSATION_HEADER in response.headers:
            entry["conversation_id"] = response.headers[CONVERSATION_HEADER]
        logging.getLogger("app.request").info(entry)
