from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict
from typing import Any, AsyncIterator, Awaitable, Callable, Generic, TypeVar

from vidtsx_mcp.errors import ServiceError
from vidtsx_mcp.types import ProgressEvent

logger = logging.getLogger(__name__)

T = TypeVar("T")

Emit = Callable[[ProgressEvent], None]

# Unread events beyond this are dropped oldest-first.
EVENT_BUFFER = 256


class JobHandle(Generic[T]):
    """Cancellable handle over one long-running operation.

    Progress is delivered through ``events()``, a finite async iterator that
    ends when the operation finishes, and the outcome through ``result()``.
    A consumer that falls behind only sees the most recent events.
    """

    def __init__(self, name: str, on_cancel: Callable[[], None]) -> None:
        self.name = name
        self._on_cancel = on_cancel
        self._queue: asyncio.Queue[ProgressEvent | None] = asyncio.Queue(maxsize=EVENT_BUFFER)
        self._task: asyncio.Task[T] | None = None
        self.latest: ProgressEvent | None = None

    def emit(self, event: ProgressEvent) -> None:
        self.latest = event
        self._push(event)

    async def events(self) -> AsyncIterator[ProgressEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event

    async def result(self) -> T:
        if self._task is None:
            raise RuntimeError(f"Job {self.name} was never started")
        return await self._task

    def cancel(self) -> None:
        self._on_cancel()

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    @property
    def error(self) -> BaseException | None:
        if not self.done or self._task is None or self._task.cancelled():
            return None
        return self._task.exception()

    @property
    def value(self) -> T | None:
        if not self.done or self._task is None or self._task.cancelled():
            return None
        if self._task.exception() is not None:
            return None
        return self._task.result()

    def status(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"name": self.name, "done": self.done}
        if self.latest is not None:
            payload.update(asdict(self.latest))
        error = self.error
        if error is not None:
            payload["error"] = getattr(error, "code", "service_error")
            payload["error_message"] = str(error)
        return payload

    def _push(self, item: ProgressEvent | None) -> None:
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(item)

    def _attach(self, task: asyncio.Task[T]) -> None:
        self._task = task
        task.add_done_callback(self._finished)

    def _finished(self, task: asyncio.Task[T]) -> None:
        self._push(None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None and not isinstance(exc, ServiceError):
            logger.error("Job %s crashed", self.name, exc_info=exc)


def launch(
    name: str,
    run: Callable[[Emit], Awaitable[T]],
    on_cancel: Callable[[], None],
) -> JobHandle[T]:
    """Run ``run(emit)`` as a background task and return its handle.

    Must be called from inside a running event loop.
    """
    handle: JobHandle[T] = JobHandle(name, on_cancel)
    task = asyncio.get_running_loop().create_task(run(handle.emit), name=name)
    handle._attach(task)
    return handle
