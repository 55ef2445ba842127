"""Realtime subscriptions over a server-sent event stream.

State machine:

    IDLE -> CONNECTING -> LISTENING -> CANCELLED | FAILED | ENDED

- CONNECTING: the streamed GET has been sent
- LISTENING: status 200 with ``text/event-stream``; frames are dispatched
- CANCELLED: ``cancel()`` was called (from any thread or any callback)
- FAILED: handshake rejected or the connection broke; ``on_error`` has
  already been called with the cause
- ENDED: the server closed the stream

Callbacks run on the receive loop's task. Keep them short: the store's
keep-alives only count if the loop keeps reading.

Reconnecting is never done here. ``ReconnectingSubscription`` layers an
opt-in ``ReconnectPolicy`` on top.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx

from .config import ClientConfig
from .constants import EVENT_STREAM_CONTENT_TYPE
from .errors import (
    FrameDecodeError,
    HandlerAlreadyRegistered,
    StreamHandshakeFailed,
    TransportError,
)
from .events import RealtimeEvent, RealtimeEventType, decode_frame
from .sse import EventStreamReader
from .tasks import CancellationToken, call_in_loop
from .transport import Transport, stream_chunks

logger = logging.getLogger(__name__)

# Callbacks may be plain functions or coroutine functions
EventCallback = Callable[[str, RealtimeEvent], Any]
ErrorCallback = Callable[[Exception], Any]


class SubscriptionState(str, Enum):
    """Subscription state machine."""

    IDLE = "idle"
    CONNECTING = "connecting"
    LISTENING = "listening"
    CANCELLED = "cancelled"
    FAILED = "failed"
    ENDED = "ended"

    @property
    def is_terminal(self) -> bool:
        return self in (
            SubscriptionState.CANCELLED,
            SubscriptionState.FAILED,
            SubscriptionState.ENDED,
        )


ACTIVE_STATES = frozenset({SubscriptionState.CONNECTING, SubscriptionState.LISTENING})


async def _maybe_await(result: Any) -> None:
    if inspect.isawaitable(result):
        await result


def _absorb_cancellation() -> None:
    """Undo a cancellation of the current task that we requested ourselves."""
    task = asyncio.current_task()
    if task is not None:
        task.uncancel()


def _content_type(response: httpx.Response) -> str | None:
    value = response.headers.get("content-type")
    if value is None:
        return None
    return value.split(";", 1)[0].strip().lower()


class RealtimeSubscription:
    """One event-stream connection and the loop that dispatches its events.

    Usage:
        sub = ref.with_realtime_events(on_event=print)
        task = sub.start()
        ...
        sub.cancel()
        await task
    """

    def __init__(
        self,
        transport: Transport,
        url: str,
        on_event: EventCallback | None = None,
        on_error: ErrorCallback | None = None,
        config: ClientConfig | None = None,
        token: CancellationToken | None = None,
        label: str | None = None,
    ):
        self._transport = transport
        self._url = url
        self._on_event = on_event
        self._on_error = on_error
        self.config = config or ClientConfig()
        self._token = token or CancellationToken()
        self._label = label or url.split("?", 1)[0]

        self._state = SubscriptionState.IDLE
        self._error: Exception | None = None
        self._handlers: dict[str, EventCallback] = {}
        self._queues: list[asyncio.Queue[RealtimeEvent | None]] = []
        # queues fed with events but not closed when this connection finishes
        self._sinks: list[asyncio.Queue[RealtimeEvent | None]] = []
        self._loop: asyncio.AbstractEventLoop | None = None
        self._task: asyncio.Task[Any] | None = None
        self._closed = asyncio.Event()
        self._reached_listening = False

    # -- state -------------------------------------------------------------

    @property
    def state(self) -> SubscriptionState:
        """Current subscription state."""
        return self._state

    @property
    def error(self) -> Exception | None:
        """The error that moved the subscription to FAILED, if any."""
        return self._error

    @property
    def is_active(self) -> bool:
        return self._state in ACTIVE_STATES

    @property
    def reached_listening(self) -> bool:
        """True once the handshake has succeeded on this connection."""
        return self._reached_listening

    def _set_state(self, state: SubscriptionState) -> None:
        logger.debug(f"Subscription {self._label}: {self._state.value} -> {state.value}")
        self._state = state

    def _finish(self, state: SubscriptionState) -> None:
        if self._state.is_terminal:
            return
        self._set_state(state)
        for queue in self._queues:
            queue.put_nowait(None)
        self._closed.set()

    # -- handlers ----------------------------------------------------------

    def on(self, event_type: str | RealtimeEventType, handler: EventCallback) -> RealtimeSubscription:
        """Register a handler for one event type (in addition to ``on_event``).

        Raises:
            HandlerAlreadyRegistered: If ``event_type`` already has a handler
        """
        key = event_type.value if isinstance(event_type, RealtimeEventType) else event_type
        if key in self._handlers:
            raise HandlerAlreadyRegistered(key)
        self._handlers[key] = handler
        return self

    # -- lifecycle ---------------------------------------------------------

    def start(self) -> asyncio.Task[SubscriptionState]:
        """Run the receive loop on a dedicated task."""
        if self._task is not None or self._state is not SubscriptionState.IDLE:
            raise RuntimeError("Subscription already started")
        self._loop = asyncio.get_running_loop()
        self._task = self._loop.create_task(self.listen(), name=f"realtime:{self._label}")
        return self._task

    async def listen(self) -> SubscriptionState:
        """Connect and dispatch events until cancelled, failed or ended.

        Returns the terminal state. Handshake and transport failures are
        reported through ``on_error`` and the FAILED state, not raised.
        """
        if self._state is not SubscriptionState.IDLE:
            if self._state.is_terminal:
                return self._state
            raise RuntimeError("Subscription is already listening")

        self._loop = asyncio.get_running_loop()
        if self._task is None:
            self._task = asyncio.current_task()

        if self._token.is_cancelled():
            self._finish(SubscriptionState.CANCELLED)
            return self._state

        try:
            self._set_state(SubscriptionState.CONNECTING)
            async with self._transport.open_stream(self._url) as response:
                self._check_handshake(response)
                self._reached_listening = True
                self._set_state(SubscriptionState.LISTENING)
                logger.info(f"Listening for realtime events on {self._label}")

                await self._receive(response)

            if self._token.is_cancelled():
                self._finish(SubscriptionState.CANCELLED)
            else:
                logger.info(f"Realtime stream {self._label} ended by server")
                self._finish(SubscriptionState.ENDED)

        except asyncio.CancelledError:
            self._finish(SubscriptionState.CANCELLED)
            if not self._token.is_cancelled():
                raise
            # We asked for this cancellation; don't leak it to the caller's task
            _absorb_cancellation()
            logger.info(f"Realtime stream {self._label} cancelled")

        except (StreamHandshakeFailed, TransportError) as e:
            await self._fail(e)

        except Exception as e:
            logger.exception(f"Unexpected error in realtime stream {self._label}")
            await self._fail(e)
            raise

        return self._state

    def _check_handshake(self, response: httpx.Response) -> None:
        content_type = _content_type(response)
        if response.status_code != 200 or content_type != EVENT_STREAM_CONTENT_TYPE:
            raise StreamHandshakeFailed(response.status_code, content_type)

    async def _receive(self, response: httpx.Response) -> None:
        reader = EventStreamReader()
        async for frame in reader.frames(stream_chunks(response)):
            if self._token.is_cancelled():
                break

            try:
                event = decode_frame(frame)
            except FrameDecodeError as e:
                logger.warning(f"Skipping undecodable frame on {self._label}: {e}")
                await self._report_error(e)
            else:
                if event.kind is not RealtimeEventType.KEEP_ALIVE or self.config.keep_alive_events:
                    await self._dispatch(event)

            # a callback may have cancelled us
            if self._token.is_cancelled():
                break

    async def _dispatch(self, event: RealtimeEvent) -> None:
        with self._token.guard():
            if self._token.is_cancelled():
                return
            for queue in (*self._queues, *self._sinks):
                queue.put_nowait(event)

        handler = self._handlers.get(event.type)
        if handler is not None:
            await self._invoke(handler, event, f"handler for {event.type!r}")

        # the handler may have cancelled us; _invoke checks again
        if self._on_event is not None:
            await self._invoke(self._on_event, event, "event callback")

    async def _invoke(self, callback: EventCallback, event: RealtimeEvent, what: str) -> None:
        # Only the cancel check and the call itself run under the guard. The
        # guard is a thread lock, so it is never held across an await.
        with self._token.guard():
            if self._token.is_cancelled():
                return
            try:
                result = callback(event.type, event)
            except Exception:
                logger.exception(f"Error in {what} on {self._label}")
                return

        try:
            await _maybe_await(result)
        except Exception:
            logger.exception(f"Error in {what} on {self._label}")

    async def _report_error(self, error: Exception) -> None:
        if self._on_error is None:
            logger.error(f"Realtime stream {self._label}: {error}")
            return
        try:
            await _maybe_await(self._on_error(error))
        except Exception:
            logger.exception(f"Error in error callback on {self._label}")

    async def _fail(self, error: Exception) -> None:
        logger.error(f"Realtime stream {self._label} failed: {error}")
        self._error = error
        try:
            await self._report_error(error)
        except asyncio.CancelledError:
            self._finish(SubscriptionState.CANCELLED)
            if not self._token.is_cancelled():
                raise
            _absorb_cancellation()
        finally:
            self._finish(SubscriptionState.FAILED)

    # -- cancellation ------------------------------------------------------

    def cancel(self, reason: str = "cancelled by caller") -> None:
        """Stop the subscription. Idempotent and safe from any thread.

        Once this returns no further event callback starts. When called from
        another thread it waits for a callback that is being started at that
        moment; a coroutine callback already awaiting is interrupted with
        ``asyncio.CancelledError``.
        """
        self._token.cancel(reason)
        loop = self._loop
        if loop is None:
            # never started: nothing to interrupt
            self._finish(SubscriptionState.CANCELLED)
            return
        call_in_loop(loop, self.interrupt)

    def interrupt(self) -> None:
        """Cancel the receive task if it is still active. Loop thread only."""
        if self._state is SubscriptionState.IDLE and self._token.is_cancelled():
            # cancelled before the task got to run
            self._finish(SubscriptionState.CANCELLED)
        if asyncio.current_task() is self._task:
            # cancelled from one of our own callbacks; the receive loop stops
            # after the callback returns
            return
        if self._state in ACTIVE_STATES and self._task is not None and not self._task.done():
            self._task.cancel()

    async def wait_closed(self) -> SubscriptionState:
        """Wait until the subscription reaches a terminal state."""
        await self._closed.wait()
        return self._state

    async def events(self) -> AsyncIterator[RealtimeEvent]:
        """Iterate over dispatched events until the subscription stops.

        Usage:
            sub.start()
            async for event in sub.events():
                if event.kind is RealtimeEventType.PUT:
                    ...
        """
        queue: asyncio.Queue[RealtimeEvent | None] = asyncio.Queue()
        if self._state.is_terminal:
            return
        self._queues.append(queue)
        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield event
        finally:
            self._queues.remove(queue)

    async def __aenter__(self) -> RealtimeSubscription:
        self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        self.cancel()
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)


@dataclass
class ReconnectPolicy:
    """Opt-in reconnection with exponential backoff."""

    delay: float = 1.0
    max_delay: float = 30.0
    backoff: float = 2.0
    max_attempts: int | None = None
    reconnect_on_end: bool = True

    def should_reconnect(self, subscription: RealtimeSubscription) -> bool:
        state = subscription.state
        if state is SubscriptionState.ENDED:
            return self.reconnect_on_end
        if state is SubscriptionState.FAILED:
            return isinstance(subscription.error, TransportError)
        return False


class ReconnectingSubscription:
    """Runs fresh ``RealtimeSubscription``s until cancelled or the policy gives up.

    Handshake failures and cancellation are final. Each new connection gets
    the handlers registered here; the backoff resets after a connection
    reaches LISTENING. ``events()`` and ``wait_closed()`` span every
    connection and only finish once this subscription does.
    """

    def __init__(
        self,
        factory: Callable[[CancellationToken], RealtimeSubscription],
        policy: ReconnectPolicy | None = None,
    ):
        self._factory = factory
        self.policy = policy or ReconnectPolicy()
        self._token = CancellationToken()
        self._handlers: dict[str, EventCallback] = {}
        self._queues: list[asyncio.Queue[RealtimeEvent | None]] = []
        self._current: RealtimeSubscription | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._task: asyncio.Task[Any] | None = None
        self._closed = asyncio.Event()
        self._sleeping = False
        self._state = SubscriptionState.IDLE
        self.attempts = 0

    @property
    def state(self) -> SubscriptionState:
        return self._state

    @property
    def error(self) -> Exception | None:
        """The error of the last connection, if it failed."""
        if self._current is None:
            return None
        return self._current.error

    @property
    def is_active(self) -> bool:
        return not self._closed.is_set() and self._state is not SubscriptionState.IDLE

    @property
    def current(self) -> RealtimeSubscription | None:
        """The connection currently (or most recently) in use."""
        return self._current

    def on(
        self, event_type: str | RealtimeEventType, handler: EventCallback
    ) -> ReconnectingSubscription:
        key = event_type.value if isinstance(event_type, RealtimeEventType) else event_type
        if key in self._handlers:
            raise HandlerAlreadyRegistered(key)
        self._handlers[key] = handler
        return self

    def start(self) -> asyncio.Task[SubscriptionState]:
        if self._task is not None:
            raise RuntimeError("Subscription already started")
        self._loop = asyncio.get_running_loop()
        self._task = self._loop.create_task(self.listen(), name="realtime-reconnecting")
        return self._task

    async def listen(self) -> SubscriptionState:
        self._loop = asyncio.get_running_loop()
        if self._task is None:
            self._task = asyncio.current_task()
        try:
            self._state = await self._run()
        finally:
            self._close()
        return self._state

    async def _run(self) -> SubscriptionState:
        delay = self.policy.delay
        while True:
            subscription = self._factory(self._token)
            for key, handler in self._handlers.items():
                subscription.on(key, handler)
            subscription._sinks = self._queues
            self._current = subscription
            self._state = SubscriptionState.CONNECTING

            state = await subscription.listen()
            self._state = state

            if state is SubscriptionState.CANCELLED or self._token.is_cancelled():
                return SubscriptionState.CANCELLED
            if not self.policy.should_reconnect(subscription):
                return state

            if subscription.reached_listening:
                delay = self.policy.delay
                self.attempts = 0
            self.attempts += 1
            if self.policy.max_attempts is not None and self.attempts > self.policy.max_attempts:
                logger.warning(f"Giving up after {self.policy.max_attempts} reconnect attempts")
                return state

            logger.warning(
                f"Realtime stream {state.value}. Reconnecting in {delay}s "
                f"(attempt {self.attempts})..."
            )
            try:
                self._sleeping = True
                await asyncio.sleep(delay)
            except asyncio.CancelledError:
                if not self._token.is_cancelled():
                    raise
                _absorb_cancellation()
                return SubscriptionState.CANCELLED
            finally:
                self._sleeping = False

            if self._token.is_cancelled():
                return SubscriptionState.CANCELLED
            delay = min(delay * self.policy.backoff, self.policy.max_delay)

    def _close(self) -> None:
        if self._closed.is_set():
            return
        for queue in self._queues:
            queue.put_nowait(None)
        self._closed.set()

    def cancel(self, reason: str = "cancelled by caller") -> None:
        """Stop the current connection and any pending reconnect."""
        self._token.cancel(reason)
        if self._loop is None:
            self._state = SubscriptionState.CANCELLED
            self._close()
            return
        call_in_loop(self._loop, self._interrupt)

    def _interrupt(self) -> None:
        if self._current is not None and self._current.is_active:
            self._current.interrupt()
        elif self._sleeping and self._task is not None and not self._task.done():
            self._task.cancel()

    async def wait_closed(self) -> SubscriptionState:
        """Wait until no further connection will be attempted."""
        await self._closed.wait()
        return self._state

    async def events(self) -> AsyncIterator[RealtimeEvent]:
        """Iterate over events from every connection until the subscription stops."""
        queue: asyncio.Queue[RealtimeEvent | None] = asyncio.Queue()
        if self._closed.is_set():
            return
        self._queues.append(queue)
        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield event
        finally:
            self._queues.remove(queue)

    async def __aenter__(self) -> ReconnectingSubscription:
        self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        self.cancel()
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
