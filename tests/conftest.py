from __future__ import annotations

import asyncio
import os
import tempfile
from typing import Dict, List, Optional, Sequence

# The module-level app in apps.api.main opens DB_URL on import; keep it out of the repo.
os.environ.setdefault("DB_URL", f"sqlite:///{tempfile.mkdtemp(prefix='relay-test-')}/relay.db")

import pytest
from httpx import ASGITransport, AsyncClient

from relay.core.settings import AppSettings
from relay.orchestration.background import BackgroundTasks
from relay.orchestration.cancellation import AbortHandle, InProcessCancellationRegistry
from relay.orchestration.chat_turn import ChatProxy
from relay.storage.repo import SqlConversationStore, make_engine

PROVIDER_BASE = "http://provider.test"
PROVIDER_URL = f"{PROVIDER_BASE}/v1/chat/completions"


def sse(*pieces: str, done: bool = True) -> bytes:
    import json

    body = b"".join(
        b"data: " + json.dumps({"choices": [{"delta": {"content": p}}]}).encode("utf-8") + b"\n\n"
        for p in pieces
    )
    if done:
        body += b"data: [DONE]\n\n"
    return body


class FakeStream:
    def __init__(self, pieces: Sequence[str], abort: Optional[AbortHandle], hang_after: Optional[int]) -> None:
        self.pieces = list(pieces)
        self.abort = abort
        self.hang_after = hang_after
        self.closed = False

    async def fragments(self):
        for i, piece in enumerate(self.pieces):
            if self.hang_after is not None and i >= self.hang_after:
                await asyncio.Event().wait()
            if self.abort is not None:
                self.abort.raise_if_aborted()
            yield piece
            await asyncio.sleep(0)
        if self.hang_after is not None and self.hang_after >= len(self.pieces):
            await asyncio.Event().wait()

    async def aclose(self) -> None:
        self.closed = True


class FakeProvider:
    """In-memory provider: yields ``pieces``; can fail or stall on demand."""

    def __init__(
        self,
        pieces: Sequence[str] = ("Hel", "lo", "!"),
        *,
        unavailable: int = 0,
        error: Optional[Exception] = None,
        hang_after: Optional[int] = None,
    ) -> None:
        self.pieces = pieces
        self.unavailable = unavailable
        self.error = error
        self.hang_after = hang_after
        self.calls: List[Dict] = []
        self.streams: List[FakeStream] = []

    async def open_stream(self, messages, *, model, temperature, max_tokens, abort=None):
        from relay.core.errors import ProviderUnavailable

        self.calls.append(
            {"messages": messages, "model": model, "temperature": temperature, "max_tokens": max_tokens}
        )
        if self.unavailable > 0:
            self.unavailable -= 1
            raise ProviderUnavailable("connection refused")
        if self.error is not None:
            raise self.error
        stream = FakeStream(self.pieces, abort, self.hang_after)
        self.streams.append(stream)
        return stream


@pytest.fixture
def settings(tmp_path) -> AppSettings:
    return AppSettings(
        db_url=f"sqlite:///{tmp_path}/relay.db",
        provider_base_url=PROVIDER_BASE,
        chat_model="test-model",
        temperature=0.5,
        default_max_output_tokens=256,
        max_output_tokens_limit=512,
        max_context_tokens=4000,
        rate_limit_max_requests=100,
        rate_limit_window_sec=60,
        system_prompt="You are a test assistant.",
    )


@pytest.fixture
def store(settings):
    s = SqlConversationStore(make_engine(settings.db_url))
    yield s
    s.dispose()


@pytest.fixture
def registry() -> InProcessCancellationRegistry:
    return InProcessCancellationRegistry()


@pytest.fixture
def tasks() -> BackgroundTasks:
    return BackgroundTasks()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def proxy(provider, store, registry, tasks, settings) -> ChatProxy:
    return ChatProxy(provider=provider, store=store, registry=registry, tasks=tasks, settings=settings)


@pytest.fixture
def app(settings, provider, store, registry):
    from apps.api.main import create_app

    return create_app(settings, provider=provider, store=store, registry=registry)


@pytest.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
