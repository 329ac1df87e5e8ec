"""Abort handles and the registry that maps conversation ids to them.

A handle lives for exactly one turn: registered right before the provider
call, cleared as soon as that call's stream has drained. Cancellation is
cooperative (the provider checks ``raise_if_aborted`` between reads) but a
handle also cancels the tasks bound to it, so a stalled upstream read does
not keep the turn alive after an explicit cancel.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional, Protocol, Set

from relay.core.errors import ConversationBusy

log = logging.getLogger("app.cancel")


class GenerationAborted(Exception):
    """Raised inside a stream whose abort handle fired. Not an error."""


class AbortHandle:
    def __init__(self) -> None:
        self._aborted = False
        self._reason: Optional[str] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def aborted(self) -> bool:
        return self._aborted

    def bind(self, task: asyncio.Task) -> None:
        if self._aborted:
            task.cancel()
            return
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def abort(self, reason: str = "cancelled") -> None:
        if self._aborted:
            return
        self._aborted = True
        self._reason = reason
        for task in list(self._tasks):
            task.cancel()

    def raise_if_aborted(self) -> None:
        if self._aborted:
            raise GenerationAborted(self._reason or "cancelled")


class CancellationRegistry(Protocol):
    def register(self, conversation_id: str, handle: AbortHandle) -> None: ...

    def cancel(self, conversation_id: str) -> bool: ...

    def clear(self, conversation_id: str, handle: Optional[AbortHandle] = None) -> None: ...


class InProcessCancellationRegistry:
    """Process-local registry. Single-key dict operations only; no awaits inside."""

    def __init__(self, *, reject_concurrent: bool = False) -> None:
        self._entries: Dict[str, AbortHandle] = {}
        self.reject_concurrent = reject_concurrent

    def __contains__(self, conversation_id: str) -> bool:
        return conversation_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def register(self, conversation_id: str, handle: AbortHandle) -> None:
        previous = self._entries.get(conversation_id)
        if previous is not None:
            if self.reject_concurrent:
                raise ConversationBusy(f"conversation {conversation_id} already has a turn in flight")
            # Last writer wins; the earlier turn can no longer be cancelled by id.
            log.warning({"event": "cancel.handle_replaced", "conversation_id": conversation_id})
        self._entries[conversation_id] = handle

    def cancel(self, conversation_id: str) -> bool:
        handle = self._entries.pop(conversation_id, None)
        if handle is None:
            return False
        handle.abort()
        log.info({"event": "cancel.aborted", "conversation_id": conversation_id})
        return True

    def clear(self, conversation_id: str, handle: Optional[AbortHandle] = None) -> None:
        current = self._entries.get(conversation_id)
        if current is None:
            return
        if handle is not None and current is not handle:
            return
        del self._entries[conversation_id]
