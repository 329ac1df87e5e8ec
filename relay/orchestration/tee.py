from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable, Generic, List, Optional, Tuple, TypeVar

from relay.orchestration.cancellation import GenerationAborted

T = TypeVar("T")
log = logging.getLogger("app.chat")


class _End:
    __slots__ = ("error",)

    def __init__(self, error: Optional[BaseException]) -> None:
        self.error = error


class TeeBranch(Generic[T]):
    """One independent cursor over a teed stream.

    Backed by an unbounded queue: a slow reader on one branch never holds up
    the other branch or the pump.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._detached = False

    def _feed(self, item: T) -> None:
        if not self._detached:
            self._queue.put_nowait(item)

    def _finish(self, error: Optional[BaseException]) -> None:
        if not self._detached:
            self._queue.put_nowait(_End(error))

    def __aiter__(self) -> "TeeBranch[T]":
        return self

    async def __anext__(self) -> T:
        item = await self._queue.get()
        if isinstance(item, _End):
            # Leave the terminal marker for any later reads
            self._queue.put_nowait(item)
            if item.error is not None:
                raise item.error
            raise StopAsyncIteration
        return item

    async def aclose(self) -> None:
        """Stop buffering for this branch; the other branches keep flowing."""
        self._detached = True
        while not self._queue.empty():
            self._queue.get_nowait()


class StreamTee(Generic[T]):
    """Fan one async source out to ``count`` independent branches.

    A single pump task reads the source and copies every item to each branch.
    Source errors are delivered to every branch after the items that preceded
    them. Cancelling the pump (e.g. from an abort handle) ends every branch
    with ``GenerationAborted``.
    """

    def __init__(
        self,
        source: AsyncIterator[T],
        count: int = 2,
        *,
        on_close: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> None:
        self._source = source
        self._branches: List[TeeBranch[T]] = [TeeBranch() for _ in range(count)]
        self._on_close = on_close
        self._task: Optional[asyncio.Task] = None
        self._finished = False
        self._closer: Optional[asyncio.Task] = None

    @property
    def branches(self) -> Tuple[TeeBranch[T], ...]:
        return tuple(self._branches)

    def start(self) -> asyncio.Task:
        if self._task is None:
            self._task = asyncio.create_task(self._pump(), name="stream-tee-pump")
            self._task.add_done_callback(self._pump_done)
        return self._task

    def _pump_done(self, task: asyncio.Task) -> None:
        # A task cancelled before its first step never runs _pump's finally
        if self._finished:
            return
        self._finish(GenerationAborted("stream cancelled"))
        self._closer = asyncio.ensure_future(self._close_source())

    def _finish(self, error: Optional[BaseException]) -> None:
        self._finished = True
        for branch in self._branches:
            branch._finish(error)

    async def _pump(self) -> None:
        error: Optional[BaseException] = None
        cancelled = False
        try:
            async for item in self._source:
                for branch in self._branches:
                    branch._feed(item)
        except asyncio.CancelledError:
            cancelled = True
            error = GenerationAborted("stream cancelled")
        except Exception as exc:  # noqa: BLE001 - delivered to the branches
            error = exc
        finally:
            await self._close_source()
            self._finish(error)
        if cancelled:
            raise asyncio.CancelledError()

    async def _close_source(self) -> None:
        aclose = getattr(self._source, "aclose", None)
        try:
            if aclose is not None:
                await aclose()
            if self._on_close is not None:
                await self._on_close()
        except Exception:  # noqa: BLE001
            log.warning({"event": "tee.close_failed"}, exc_info=True)
