"""Realtime event vocabulary and frame decoding.

The store sends five event types on a realtime stream:

- put: ``{"path": ..., "data": ...}`` replaces the data at ``path``
- patch: ``{"path": ..., "data": {...}}`` updates children at ``path``
- keep-alive: ``null``, sent periodically to hold the connection open
- cancel: the security rules no longer allow reading this location
- auth_revoked: the auth token expired or was revoked

Anything else is passed through as ``UNKNOWN`` so later additions to the
protocol are still visible to callers.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Any, TypeVar

from pydantic import BaseModel

from . import codec
from .errors import FrameDecodeError
from .sse import SseFrame

T = TypeVar("T")


class RealtimeEventType(str, Enum):
    """Event types of the realtime protocol."""

    PUT = "put"
    PATCH = "patch"
    KEEP_ALIVE = "keep-alive"
    CANCEL = "cancel"
    AUTH_REVOKED = "auth_revoked"
    UNKNOWN = "unknown"

    @classmethod
    def classify(cls, event_type: str) -> RealtimeEventType:
        try:
            kind = cls(event_type)
        except ValueError:
            return cls.UNKNOWN
        return kind


DATA_EVENTS = frozenset({RealtimeEventType.PUT, RealtimeEventType.PATCH})


class RealtimeEvent(BaseModel):
    """A decoded realtime event.

    ``type`` is the event name exactly as received; ``kind`` is its
    classification. ``path`` is only set for put and patch.
    """

    type: str
    kind: RealtimeEventType
    path: str | None = None
    data: Any = None
    id: str | None = None

    def is_data_event(self) -> bool:
        """Check if this event carries a data change."""
        return self.kind in DATA_EVENTS

    def data_as(self, type_: type[T]) -> T:
        """Validate ``data`` into ``type_`` (raises DecodeError)."""
        return codec.convert(self.data, type_)


def decode_frame(frame: SseFrame) -> RealtimeEvent:
    """Decode one frame.

    Raises:
        FrameDecodeError: If a put/patch frame is not ``{"path", "data"}`` JSON
    """
    kind = RealtimeEventType.classify(frame.event_type)
    text = frame.data_text

    if kind in DATA_EVENTS:
        try:
            body = json.loads(text)
        except json.JSONDecodeError as e:
            raise FrameDecodeError(frame.event_type, text, f"invalid JSON: {e}") from e
        if not isinstance(body, dict) or not isinstance(body.get("path"), str):
            raise FrameDecodeError(frame.event_type, text, "expected an object with a 'path'")
        return RealtimeEvent(
            type=frame.event_type,
            kind=kind,
            path=body["path"],
            data=body.get("data"),
            id=frame.id,
        )

    # Non-data events carry JSON when the server sends it, plain text otherwise
    try:
        data = json.loads(text) if text else None
    except json.JSONDecodeError:
        data = text
    return RealtimeEvent(type=frame.event_type, kind=kind, data=data, id=frame.id)
