"""Firebase Realtime Database client over REST and server-sent events.

Two ways to talk to the database:
- CRUD: ``get``/``set``/``update``/``push``/``delete`` on a Reference, either
  awaited directly or run in the background via ``ref.background``
- Realtime: ``ref.with_realtime_events()`` returns a subscription that
  dispatches put/patch/keep-alive/cancel/auth_revoked events
"""

from .config import ClientConfig
from .errors import (
    ConflictingQueryParams,
    DecodeError,
    FirebaseError,
    FrameDecodeError,
    HandlerAlreadyRegistered,
    InvalidPathSegment,
    InvalidUrl,
    NotHttps,
    RecordNotFound,
    RequestFailed,
    StreamHandshakeFailed,
    StreamStalled,
    TransportError,
    UrlParseError,
)
from .events import RealtimeEvent, RealtimeEventType, decode_frame
from .params import QueryParams, QueryParamsBuilder
from .path import PathBuilder
from .reference import BackgroundAPI, PushResult, Reference, create_reference
from .sse import EventStreamReader, SseFrame
from .subscription import (
    RealtimeSubscription,
    ReconnectingSubscription,
    ReconnectPolicy,
    SubscriptionState,
)
from .tasks import CancellationToken, PendingRequest
from .transport import HTTPXTransport, Transport

__all__ = [
    # Facade
    "Reference",
    "BackgroundAPI",
    "PushResult",
    "create_reference",
    # Path model
    "PathBuilder",
    "QueryParams",
    "QueryParamsBuilder",
    # Realtime
    "RealtimeSubscription",
    "ReconnectingSubscription",
    "ReconnectPolicy",
    "SubscriptionState",
    "RealtimeEvent",
    "RealtimeEventType",
    "EventStreamReader",
    "SseFrame",
    "decode_frame",
    # Transport & config
    "Transport",
    "HTTPXTransport",
    "ClientConfig",
    # Tasks
    "CancellationToken",
    "PendingRequest",
    # Errors
    "FirebaseError",
    "UrlParseError",
    "InvalidUrl",
    "NotHttps",
    "InvalidPathSegment",
    "ConflictingQueryParams",
    "TransportError",
    "RequestFailed",
    "StreamStalled",
    "StreamHandshakeFailed",
    "FrameDecodeError",
    "DecodeError",
    "RecordNotFound",
    "HandlerAlreadyRegistered",
]
