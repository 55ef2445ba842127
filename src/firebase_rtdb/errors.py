"""Exception taxonomy for the client.

Construction-time errors (bad URLs, bad segments, conflicting query
parameters) are raised synchronously where the value is built. Runtime
errors are raised to the caller of a CRUD call or delivered through a
subscription's error callback. Nothing here is retried automatically.
"""

from __future__ import annotations


class FirebaseError(Exception):
    """Base class for all client errors."""


class UrlParseError(FirebaseError, ValueError):
    """The database URL could not be used."""


class InvalidUrl(UrlParseError):
    """The URL could not be parsed."""


class NotHttps(UrlParseError):
    """The URL scheme is not https."""

    def __init__(self, url: str):
        super().__init__(f"The URL protocol should be https: {url}")
        self.url = url


class InvalidPathSegment(FirebaseError, ValueError):
    """A path segment is empty or contains characters the store rejects."""

    def __init__(self, segment: str, reason: str):
        super().__init__(f"Invalid path segment {segment!r}: {reason}")
        self.segment = segment
        self.reason = reason


class ConflictingQueryParams(FirebaseError, ValueError):
    """Query parameters that cannot be combined were set together."""


class TransportError(FirebaseError):
    """Network or TLS failure talking to the store."""


class RequestFailed(TransportError):
    """The store answered a CRUD request with a non-success status."""

    def __init__(self, method: str, url: str, status_code: int, body: str = ""):
        super().__init__(f"{method} {url} failed with status {status_code}: {body[:200]}")
        self.method = method
        self.url = url
        self.status_code = status_code
        self.body = body


class StreamStalled(TransportError):
    """No bytes arrived on the event stream within the read timeout."""


class StreamHandshakeFailed(FirebaseError):
    """The event stream was answered with a bad status or content type."""

    def __init__(self, status_code: int, content_type: str | None):
        super().__init__(
            f"Event stream handshake failed: status={status_code}, "
            f"content-type={content_type or 'missing'}"
        )
        self.status_code = status_code
        self.content_type = content_type


class FrameDecodeError(FirebaseError):
    """A single event-stream frame could not be decoded."""

    def __init__(self, event_type: str, data: str, reason: str):
        super().__init__(f"Failed to decode {event_type!r} frame: {reason}")
        self.event_type = event_type
        self.data = data
        self.reason = reason


class DecodeError(FirebaseError):
    """A response body does not match the requested type."""


class RecordNotFound(FirebaseError):
    """The location holds no data (the body is ``null``)."""

    def __init__(self, url: str):
        super().__init__(f"Body is null or record is not found: {url}")
        self.url = url


class HandlerAlreadyRegistered(FirebaseError):
    """A handler for this event type is already registered."""

    def __init__(self, event_type: str):
        super().__init__(f"Handler already registered for event {event_type!r}")
        self.event_type = event_type
