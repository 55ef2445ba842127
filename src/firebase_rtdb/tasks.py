"""Cancellation primitives and handles for background work."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable, Coroutine, Generator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

CompletionCallback = Callable[[Any, BaseException | None], None]


def call_in_loop(loop: asyncio.AbstractEventLoop, fn: Callable[[], Any]) -> None:
    """Run ``fn`` on ``loop``: directly when already on it, else thread-safely."""
    try:
        running = asyncio.get_running_loop()
    except RuntimeError:
        running = None

    if running is loop:
        fn()
    elif not loop.is_closed():
        loop.call_soon_threadsafe(fn)


@dataclass
class CancellationToken:
    """Cooperative cancellation flag, safe to set from any thread.

    ``guard()`` holds a re-entrant lock that ``cancel()`` also takes, so work
    done under the guard either finishes before cancellation lands or sees
    the flag already set.
    """

    reason: str | None = None
    cancelled_at: datetime | None = None
    _flag: threading.Event = field(default_factory=threading.Event, repr=False)
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    def guard(self) -> threading.RLock:
        return self._lock

    def cancel(self, reason: str = "requested") -> bool:
        """Mark token as cancelled. Returns False if it already was."""
        with self._lock:
            if self._flag.is_set():
                return False
            self.reason = reason
            self.cancelled_at = datetime.now(timezone.utc)
            self._flag.set()
            return True

    def is_cancelled(self) -> bool:
        """Return True if cancellation was requested."""
        return self._flag.is_set()


class PendingRequest(Generic[T]):
    """Handle for a request running on its own task.

    Await it for the result, or pass ``on_complete`` to be called once with
    ``(result, None)`` or ``(None, error)``. Cancelling delivers
    ``asyncio.CancelledError`` to the callback.

    Must be created from inside a running event loop.
    """

    def __init__(
        self,
        coro: Coroutine[Any, Any, T],
        on_complete: CompletionCallback | None = None,
        name: str | None = None,
    ):
        self._loop = asyncio.get_running_loop()
        self._task: asyncio.Task[T] = self._loop.create_task(coro, name=name)
        self._on_complete = on_complete
        self._task.add_done_callback(self._deliver)

    def _deliver(self, task: asyncio.Task[T]) -> None:
        if self._on_complete is None:
            # The caller may never await us; retrieving the exception keeps
            # asyncio from reporting it as never retrieved.
            if not task.cancelled() and task.exception() is not None:
                logger.debug(f"Request {task.get_name()} failed: {task.exception()!r}")
            return
        if task.cancelled():
            result, error = None, asyncio.CancelledError()
        elif task.exception() is not None:
            result, error = None, task.exception()
        else:
            result, error = task.result(), None

        try:
            self._on_complete(result, error)
        except Exception:
            logger.exception(f"Completion callback for {task.get_name()} failed")

    def cancel(self) -> None:
        """Request cancellation (safe from any thread)."""
        call_in_loop(self._loop, self._task.cancel)

    def done(self) -> bool:
        return self._task.done()

    def cancelled(self) -> bool:
        return self._task.cancelled()

    def result(self) -> T:
        """Result of a finished request (raises like ``asyncio.Task.result``)."""
        return self._task.result()

    async def wait(self, timeout: float | None = None) -> T:
        """Wait for the result without cancelling the request on timeout."""
        return await asyncio.wait_for(asyncio.shield(self._task), timeout)

    def __await__(self) -> Generator[Any, None, T]:
        return self._task.__await__()
