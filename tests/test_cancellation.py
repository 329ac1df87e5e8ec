from __future__ import annotations

import asyncio

import pytest

from relay.core.errors import ConversationBusy
from relay.orchestration.cancellation import AbortHandle, GenerationAborted, InProcessCancellationRegistry


def test_cancel_unknown_id_is_not_found(registry) -> None:
    assert registry.cancel("nope") is False
    assert len(registry) == 0


def test_cancel_aborts_and_removes(registry) -> None:
    h = AbortHandle()
    registry.register("c1", h)
    assert registry.cancel("c1") is True
    assert h.aborted
    assert "c1" not in registry
    assert registry.cancel("c1") is False


def test_clear_removes_without_abort(registry) -> None:
    h = AbortHandle()
    registry.register("c1", h)
    registry.clear("c1")
    assert "c1" not in registry
    assert not h.aborted


def test_register_overwrites_last_writer_wins(registry) -> None:
    first, second = AbortHandle(), AbortHandle()
    registry.register("c1", first)
    registry.register("c1", second)
    # The finishing first turn must not remove the second turn's handle
    registry.clear("c1", first)
    assert "c1" in registry
    assert registry.cancel("c1") is True
    assert second.aborted and not first.aborted
    registry.register("c1", second)
    registry.clear("c1", second)
    assert "c1" not in registry


def test_reject_concurrent_turns() -> None:
    reg = InProcessCancellationRegistry(reject_concurrent=True)
    reg.register("c1", AbortHandle())
    with pytest.raises(ConversationBusy):
        reg.register("c1", AbortHandle())


def test_raise_if_aborted() -> None:
    h = AbortHandle()
    h.raise_if_aborted()
    h.abort("user stop")
    with pytest.raises(GenerationAborted, match="user stop"):
        h.raise_if_aborted()


async def test_abort_cancels_bound_task() -> None:
    h = AbortHandle()
    task = asyncio.create_task(asyncio.Event().wait())
    h.bind(task)
    await asyncio.sleep(0)
    h.abort()
    with pytest.raises(asyncio.CancelledError):
        await task


async def test_bind_after_abort_cancels_immediately() -> None:
    h = AbortHandle()
    h.abort()
    task = asyncio.create_task(asyncio.Event().wait())
    h.bind(task)
    with pytest.raises(asyncio.CancelledError):
        await task
