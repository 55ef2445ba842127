"""Integration tests for realtime subscriptions over a mocked event stream.

Verifies:
- State transitions (IDLE -> CONNECTING -> LISTENING -> terminal)
- Handshake validation (status, content type)
- Frame dispatch, keep-alive delivery and per-type handlers
- Cancellation from the caller, from a callback and from another thread
- Stalled and reset connections
"""

from __future__ import annotations

import asyncio
import threading
import time
from unittest.mock import MagicMock

import httpx
import pytest

from fakes import ChunkedStream, FakeDatabase, sse_frame, sse_response
from firebase_rtdb import (
    ClientConfig,
    FrameDecodeError,
    HandlerAlreadyRegistered,
    RealtimeEvent,
    RealtimeEventType,
    StreamHandshakeFailed,
    StreamStalled,
    SubscriptionState,
    TransportError,
)


def stream_db(*chunks: str, hold_open: bool = False, error: Exception | None = None) -> FakeDatabase:
    """Database whose every GET is answered with the given event stream."""
    return FakeDatabase(
        lambda request: sse_response(ChunkedStream(list(chunks), hold_open=hold_open, error=error))
    )


class Recorder:
    """Collects events and signals when a given count is reached."""

    def __init__(self, expected: int = 1):
        self.events: list[RealtimeEvent] = []
        self.expected = expected
        self.reached = asyncio.Event()

    def __call__(self, event_type: str, event: RealtimeEvent) -> None:
        self.events.append(event)
        if len(self.events) >= self.expected:
            self.reached.set()


# =============================================================================
# Tests: Lifecycle
# =============================================================================


class TestLifecycle:
    """State machine and handshake."""

    @pytest.mark.asyncio
    async def test_receives_events_until_server_closes(self) -> None:
        db = stream_db(
            sse_frame("put", {"path": "/", "data": {"a": 1}}),
            sse_frame("patch", {"path": "/b", "data": {"c": 2}}),
        )
        recorder = Recorder()
        sub = db.reference().at("items").with_realtime_events(on_event=recorder)

        assert sub.state is SubscriptionState.IDLE
        state = await sub.listen()

        assert state is SubscriptionState.ENDED
        assert [e.type for e in recorder.events] == ["put", "patch"]
        assert recorder.events[0].data == {"a": 1}
        assert recorder.events[1].path == "/b"

    @pytest.mark.asyncio
    async def test_sends_streaming_get(self) -> None:
        db = stream_db()
        await db.reference(auth="tok").at("items").with_realtime_events().listen()

        request = db.requests[0]
        assert request.method == "GET"
        assert request.headers["accept"] == "text/event-stream"
        assert request.url.path == "/items.json"
        assert request.url.params["auth"] == "tok"

    @pytest.mark.asyncio
    async def test_listening_state_while_open(self) -> None:
        recorder = Recorder()
        db = stream_db(sse_frame("put", {"path": "/", "data": 1}), hold_open=True)
        sub = db.reference().with_realtime_events(on_event=recorder)

        task = sub.start()
        await recorder.reached.wait()
        assert sub.state is SubscriptionState.LISTENING
        assert sub.is_active

        sub.cancel()
        assert await task is SubscriptionState.CANCELLED
        assert sub.state is SubscriptionState.CANCELLED

    @pytest.mark.asyncio
    async def test_follows_redirect(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "test-db.firebaseio.com":
                return httpx.Response(
                    307, headers={"location": "https://s-usc1.firebaseio.com/items.json?ns=test-db"}
                )
            return sse_response(ChunkedStream([sse_frame("put", {"path": "/", "data": 5})]))

        recorder = Recorder()
        db = FakeDatabase(handler)
        state = await db.reference().at("items").with_realtime_events(on_event=recorder).listen()

        assert state is SubscriptionState.ENDED
        assert len(db.requests) == 2
        assert recorder.events[0].data == 5

    @pytest.mark.asyncio
    async def test_handshake_bad_status(self) -> None:
        db = FakeDatabase(lambda request: httpx.Response(401, content=b'{"error": "Permission denied"}'))
        on_error = MagicMock()
        on_event = MagicMock()
        sub = db.reference().with_realtime_events(on_event=on_event, on_error=on_error)

        state = await sub.listen()

        assert state is SubscriptionState.FAILED
        assert isinstance(sub.error, StreamHandshakeFailed)
        assert sub.error.status_code == 401
        on_error.assert_called_once_with(sub.error)
        on_event.assert_not_called()
        assert not sub.reached_listening

    @pytest.mark.asyncio
    async def test_handshake_wrong_content_type(self) -> None:
        db = FakeDatabase(
            lambda request: httpx.Response(
                200, headers={"content-type": "application/json"}, content=b"null"
            )
        )
        sub = db.reference().with_realtime_events()

        assert await sub.listen() is SubscriptionState.FAILED
        assert isinstance(sub.error, StreamHandshakeFailed)
        assert sub.error.content_type == "application/json"

    @pytest.mark.asyncio
    async def test_connect_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        on_error = MagicMock()
        sub = FakeDatabase(handler).reference().with_realtime_events(on_error=on_error)

        assert await sub.listen() is SubscriptionState.FAILED
        assert isinstance(sub.error, TransportError)
        on_error.assert_called_once()

    @pytest.mark.asyncio
    async def test_listen_twice_returns_terminal_state(self) -> None:
        sub = stream_db().reference().with_realtime_events()
        assert await sub.listen() is SubscriptionState.ENDED
        assert await sub.listen() is SubscriptionState.ENDED

    @pytest.mark.asyncio
    async def test_start_twice_raises(self) -> None:
        sub = stream_db(hold_open=True).reference().with_realtime_events()
        task = sub.start()
        with pytest.raises(RuntimeError):
            sub.start()
        sub.cancel()
        await task


# =============================================================================
# Tests: Dispatch
# =============================================================================


class TestDispatch:
    """Frame decoding and callback dispatch."""

    @pytest.mark.asyncio
    async def test_bad_frame_is_reported_and_skipped(self) -> None:
        db = stream_db(
            "event: put\ndata: {not json\n\n",
            sse_frame("put", {"path": "/", "data": "ok"}),
        )
        recorder = Recorder()
        errors: list[Exception] = []
        sub = db.reference().with_realtime_events(on_event=recorder, on_error=errors.append)

        assert await sub.listen() is SubscriptionState.ENDED
        assert len(errors) == 1
        assert isinstance(errors[0], FrameDecodeError)
        assert [e.data for e in recorder.events] == ["ok"]

    @pytest.mark.asyncio
    async def test_keep_alive_delivered_by_default(self) -> None:
        db = stream_db(
            sse_frame("keep-alive", None),
            sse_frame("put", {"path": "/", "data": 1}),
        )
        recorder = Recorder()
        await db.reference().with_realtime_events(on_event=recorder).listen()

        assert [e.type for e in recorder.events] == ["keep-alive", "put"]
        assert recorder.events[0].kind is RealtimeEventType.KEEP_ALIVE
        assert recorder.events[0].data is None

    @pytest.mark.asyncio
    async def test_keep_alive_dropped_when_disabled(self) -> None:
        db = stream_db(
            sse_frame("keep-alive", None),
            sse_frame("put", {"path": "/", "data": 1}),
        )
        recorder = Recorder()
        ref = db.reference(config=ClientConfig(keep_alive_events=False))
        await ref.with_realtime_events(on_event=recorder).listen()

        assert [e.type for e in recorder.events] == ["put"]

    @pytest.mark.asyncio
    async def test_frames_split_across_chunks(self) -> None:
        frame = sse_frame("put", {"path": "/", "data": {"name": "Ada"}})
        db = stream_db(frame[:7], frame[7:20], frame[20:])
        recorder = Recorder()
        await db.reference().with_realtime_events(on_event=recorder).listen()

        assert recorder.events[0].data == {"name": "Ada"}

    @pytest.mark.asyncio
    async def test_cancel_and_auth_revoked_events(self) -> None:
        db = stream_db(
            "event: cancel\ndata: null\n\n",
            sse_frame("auth_revoked", "credential is no longer valid"),
            sse_frame("rules_changed", {"x": 1}),
        )
        recorder = Recorder()
        await db.reference().with_realtime_events(on_event=recorder).listen()

        kinds = [e.kind for e in recorder.events]
        assert kinds == [
            RealtimeEventType.CANCEL,
            RealtimeEventType.AUTH_REVOKED,
            RealtimeEventType.UNKNOWN,
        ]
        assert recorder.events[2].type == "rules_changed"

    @pytest.mark.asyncio
    async def test_per_type_handlers(self) -> None:
        db = stream_db(
            sse_frame("put", {"path": "/", "data": 1}),
            sse_frame("patch", {"path": "/", "data": {"a": 2}}),
        )
        puts = MagicMock()
        all_events = Recorder()
        sub = db.reference().with_realtime_events(on_event=all_events)
        sub.on(RealtimeEventType.PUT, puts)

        await sub.listen()

        assert puts.call_count == 1
        assert puts.call_args[0][0] == "put"
        assert len(all_events.events) == 2

    @pytest.mark.asyncio
    async def test_duplicate_handler_rejected(self) -> None:
        sub = stream_db().reference().with_realtime_events()
        sub.on("put", MagicMock())
        with pytest.raises(HandlerAlreadyRegistered):
            sub.on(RealtimeEventType.PUT, MagicMock())

    @pytest.mark.asyncio
    async def test_async_callback(self) -> None:
        db = stream_db(sse_frame("put", {"path": "/", "data": 1}))
        seen: list[str] = []

        async def on_event(event_type: str, event: RealtimeEvent) -> None:
            await asyncio.sleep(0)
            seen.append(event_type)

        await db.reference().with_realtime_events(on_event=on_event).listen()
        assert seen == ["put"]

    @pytest.mark.asyncio
    async def test_callback_error_does_not_stop_stream(self) -> None:
        db = stream_db(
            sse_frame("put", {"path": "/", "data": 1}),
            sse_frame("put", {"path": "/", "data": 2}),
        )
        seen: list[int] = []

        def on_event(event_type: str, event: RealtimeEvent) -> None:
            seen.append(event.data)
            raise RuntimeError("handler bug")

        state = await db.reference().with_realtime_events(on_event=on_event).listen()

        assert state is SubscriptionState.ENDED
        assert seen == [1, 2]

    @pytest.mark.asyncio
    async def test_events_iterator(self) -> None:
        db = stream_db(
            sse_frame("put", {"path": "/", "data": 1}),
            sse_frame("put", {"path": "/", "data": 2}),
        )
        sub = db.reference().with_realtime_events()
        sub.start()

        data = [event.data async for event in sub.events()]

        assert data == [1, 2]
        assert sub.state is SubscriptionState.ENDED


# =============================================================================
# Tests: Cancellation
# =============================================================================


class TestCancellation:
    """No callback starts after cancel() returns."""

    @pytest.mark.asyncio
    async def test_cancel_before_start(self) -> None:
        db = stream_db()
        sub = db.reference().with_realtime_events()
        sub.cancel()

        assert sub.state is SubscriptionState.CANCELLED
        assert await sub.listen() is SubscriptionState.CANCELLED
        assert db.requests == []

    @pytest.mark.asyncio
    async def test_cancel_before_task_runs(self) -> None:
        db = stream_db(hold_open=True)
        sub = db.reference().with_realtime_events()
        task = sub.start()
        sub.cancel()

        assert await task is SubscriptionState.CANCELLED
        assert db.requests == []

    @pytest.mark.asyncio
    async def test_cancel_from_callback(self) -> None:
        db = stream_db(
            sse_frame("put", {"path": "/", "data": 1}),
            sse_frame("put", {"path": "/", "data": 2}),
            hold_open=True,
        )
        seen: list[int] = []
        sub = None

        def on_event(event_type: str, event: RealtimeEvent) -> None:
            seen.append(event.data)
            sub.cancel()

        sub = db.reference().with_realtime_events(on_event=on_event)
        state = await asyncio.wait_for(sub.listen(), timeout=2)

        assert state is SubscriptionState.CANCELLED
        assert seen == [1]

    @pytest.mark.asyncio
    async def test_handler_cancel_skips_on_event(self) -> None:
        db = stream_db(sse_frame("put", {"path": "/", "data": 1}), hold_open=True)
        on_event = MagicMock()
        sub = db.reference().with_realtime_events(on_event=on_event)
        sub.on("put", lambda event_type, event: sub.cancel())

        assert await asyncio.wait_for(sub.listen(), timeout=2) is SubscriptionState.CANCELLED
        on_event.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancel_from_other_thread(self) -> None:
        db = stream_db(sse_frame("put", {"path": "/", "data": 1}), hold_open=True)
        recorder = Recorder()
        sub = db.reference().with_realtime_events(on_event=recorder)
        task = sub.start()
        await recorder.reached.wait()

        await asyncio.to_thread(sub.cancel)

        assert await asyncio.wait_for(task, timeout=2) is SubscriptionState.CANCELLED
        assert len(recorder.events) == 1

    @pytest.mark.asyncio
    async def test_cancel_waits_for_running_callback(self) -> None:
        """A cancel from another thread returns only after a plain callback finishes."""
        db = stream_db(sse_frame("put", {"path": "/", "data": 1}), hold_open=True)
        entered = threading.Event()
        finished: list[bool] = []
        cancel_returned_after_callback: list[bool] = []

        def on_event(event_type: str, event: RealtimeEvent) -> None:
            entered.set()
            time.sleep(0.05)
            finished.append(True)

        sub = db.reference().with_realtime_events(on_event=on_event)
        task = sub.start()

        def cancel_when_entered() -> None:
            entered.wait(timeout=2)
            sub.cancel()
            cancel_returned_after_callback.append(bool(finished))

        await asyncio.to_thread(cancel_when_entered)

        assert await asyncio.wait_for(task, timeout=2) is SubscriptionState.CANCELLED
        assert cancel_returned_after_callback == [True]

    @pytest.mark.asyncio
    async def test_async_callback_can_cancel_through_worker_thread(self) -> None:
        """A coroutine callback awaiting a thread that cancels does not deadlock."""
        db = stream_db(sse_frame("put", {"path": "/", "data": 1}), hold_open=True)
        calls: list[RealtimeEvent] = []

        async def on_event(event_type: str, event: RealtimeEvent) -> None:
            calls.append(event)
            await asyncio.to_thread(sub.cancel)

        sub = db.reference().with_realtime_events(on_event=on_event)
        task = sub.start()

        assert await asyncio.wait_for(task, timeout=2) is SubscriptionState.CANCELLED
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_cancel_during_async_error_callback(self) -> None:
        """Cancelling while on_error is awaiting still reaches a terminal state."""
        db = FakeDatabase(lambda request: httpx.Response(500, content=b"{}"))
        entered = asyncio.Event()

        async def on_error(error: Exception) -> None:
            entered.set()
            await asyncio.sleep(10)

        sub = db.reference().with_realtime_events(on_error=on_error)
        task = sub.start()
        await asyncio.wait_for(entered.wait(), timeout=2)

        sub.cancel()

        assert await asyncio.wait_for(task, timeout=2) is SubscriptionState.CANCELLED
        assert sub.state.is_terminal
        assert not sub.is_active
        assert await asyncio.wait_for(sub.wait_closed(), timeout=1) is SubscriptionState.CANCELLED
        assert isinstance(sub.error, StreamHandshakeFailed)

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(self) -> None:
        sub = stream_db(hold_open=True).reference().with_realtime_events()
        task = sub.start()
        await asyncio.sleep(0)
        sub.cancel()
        sub.cancel()
        assert await task is SubscriptionState.CANCELLED

    @pytest.mark.asyncio
    async def test_context_manager(self) -> None:
        recorder = Recorder()
        db = stream_db(sse_frame("put", {"path": "/", "data": 1}), hold_open=True)

        async with db.reference().with_realtime_events(on_event=recorder) as sub:
            await recorder.reached.wait()

        assert sub.state is SubscriptionState.CANCELLED

    @pytest.mark.asyncio
    async def test_stream_closed_on_cancel(self) -> None:
        stream = ChunkedStream([], hold_open=True)
        db = FakeDatabase(lambda request: sse_response(stream))
        sub = db.reference().with_realtime_events()
        task = sub.start()
        while stream.sent == 0 and sub.state is not SubscriptionState.LISTENING:
            await asyncio.sleep(0.01)

        sub.cancel()
        await task
        assert stream.closed


# =============================================================================
# Tests: Broken connections
# =============================================================================


class TestBrokenConnection:
    """Stalls and resets end in FAILED with on_error called once."""

    @pytest.mark.asyncio
    async def test_stall(self) -> None:
        db = stream_db(
            sse_frame("put", {"path": "/", "data": 1}),
            error=httpx.ReadTimeout("no data"),
        )
        recorder = Recorder()
        on_error = MagicMock()
        sub = db.reference().with_realtime_events(on_event=recorder, on_error=on_error)

        assert await sub.listen() is SubscriptionState.FAILED
        assert isinstance(sub.error, StreamStalled)
        on_error.assert_called_once_with(sub.error)
        assert len(recorder.events) == 1

    @pytest.mark.asyncio
    async def test_connection_reset(self) -> None:
        db = stream_db(error=httpx.ReadError("connection reset by peer"))
        on_error = MagicMock()
        sub = db.reference().with_realtime_events(on_error=on_error)

        assert await sub.listen() is SubscriptionState.FAILED
        assert isinstance(sub.error, TransportError)
        assert not isinstance(sub.error, StreamStalled)
        on_error.assert_called_once()

    @pytest.mark.asyncio
    async def test_failure_without_error_callback_is_logged(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        db = stream_db(error=httpx.ReadError("connection reset by peer"))
        await db.reference().with_realtime_events().listen()
        assert "connection reset by peer" in caplog.text

    @pytest.mark.asyncio
    async def test_unfinished_frame_discarded(self) -> None:
        db = stream_db('event: put\ndata: {"path": "/", "data": 1}\n')
        recorder = Recorder()
        assert (
            await db.reference().with_realtime_events(on_event=recorder).listen()
            is SubscriptionState.ENDED
        )
        assert recorder.events == []
