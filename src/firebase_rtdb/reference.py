"""Reference facade: location, query, CRUD and realtime events.

Usage:
    db = create_reference("https://my-db.firebaseio.com", auth=token)
    users = db.at("users")

    await users.at("alice").set({"name": "Alice", "score": 10})
    top = await users.with_params().order_by("score").limit_to_last(3).finish().get()

    sub = users.with_realtime_events(on_event=lambda kind, event: print(kind, event.data))
    sub.start()
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import Any, TypeVar

from pydantic import BaseModel

from . import codec
from .config import ClientConfig
from .errors import RecordNotFound
from .params import QueryParams, QueryParamsBuilder
from .path import PathBuilder
from .subscription import (
    ErrorCallback,
    EventCallback,
    RealtimeSubscription,
    ReconnectingSubscription,
    ReconnectPolicy,
)
from .tasks import CancellationToken, CompletionCallback, PendingRequest
from .transport import HTTPXTransport, Transport

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PushResult(BaseModel):
    """Body returned by POST: the generated child key."""

    name: str


@dataclass(frozen=True)
class Reference:
    """A location in the database plus the transport used to reach it.

    References are immutable. ``at()`` and ``with_params().finish()`` return
    new references; the transport is shared between them.
    """

    path: PathBuilder
    transport: Transport = field(compare=False, repr=False)
    config: ClientConfig = field(default_factory=ClientConfig, compare=False, repr=False)

    @classmethod
    def from_url(
        cls,
        url: str,
        auth: str | None = None,
        transport: Transport | None = None,
        config: ClientConfig | None = None,
    ) -> Reference:
        """Create a reference from an https database URL.

        Raises:
            NotHttps: If the scheme is not https
            InvalidUrl: If the URL cannot be parsed
            InvalidPathSegment: If the URL path holds a forbidden key
        """
        config = config or ClientConfig()
        return cls(
            path=PathBuilder.from_url(url, auth=auth),
            transport=transport or HTTPXTransport(config),
            config=config,
        )

    # -- location ----------------------------------------------------------

    @property
    def key(self) -> str | None:
        return self.path.key

    @property
    def segments(self) -> tuple[str, ...]:
        return self.path.segments

    @property
    def params(self) -> QueryParams:
        return self.path.params

    def at(self, segment: str) -> Reference:
        """Child reference one segment down.

        Raises:
            InvalidPathSegment: If the segment is empty, contains ``/``, or a
                character the store forbids in keys (``. # $ [ ]``)
        """
        return replace(self, path=self.path.at(segment))

    def parent(self) -> Reference | None:
        parent = self.path.parent()
        return None if parent is None else replace(self, path=parent)

    def with_params(self) -> QueryParamsBuilder[Reference]:
        """Start a query on this location; ``finish()`` returns the new reference."""
        return QueryParamsBuilder(self.path.params, self._with_query)

    def _with_query(self, params: QueryParams) -> Reference:
        return replace(self, path=self.path.with_query(params))

    def to_url(self, suffix: str = ".json") -> str:
        return self.path.to_url(suffix)

    def __str__(self) -> str:
        return str(self.path)

    # -- CRUD --------------------------------------------------------------

    async def _request(self, method: str, value: Any = None, *, has_body: bool = False) -> bytes:
        body = codec.encode(value) if has_body else None
        logger.debug(f"{method} {self.path}")
        return await self.transport.request(method, self.to_url(), body)

    async def get(self, type_: type[T] = Any) -> T:  # type: ignore[assignment]
        """Read the value at this location (``None`` when empty).

        Raises:
            TransportError: On network failure or an error status
            DecodeError: If the body does not match ``type_``
        """
        body = await self._request("GET")
        return codec.decode(body, type_)

    async def get_or_raise(self, type_: type[T] = Any) -> T:  # type: ignore[assignment]
        """Like ``get`` but raise RecordNotFound when the location is empty."""
        body = await self._request("GET")
        if body.strip() == b"null":
            raise RecordNotFound(str(self.path))
        return codec.decode(body, type_)

    async def set(self, value: Any) -> Any:
        """Replace the value at this location (PUT). Returns the server echo."""
        body = await self._request("PUT", value, has_body=True)
        return codec.decode(body)

    async def update(self, value: Mapping[str, Any] | BaseModel) -> Any:
        """Merge children into this location (PATCH). Returns the server echo."""
        if not isinstance(value, (Mapping, BaseModel)):
            raise TypeError(f"update expects a mapping of children, got {type(value).__name__}")
        body = await self._request("PATCH", value, has_body=True)
        return codec.decode(body)

    async def push(self, value: Any) -> str:
        """Append a child with a generated key (POST). Returns the new key."""
        body = await self._request("POST", value, has_body=True)
        return codec.decode(body, PushResult).name

    async def delete(self) -> None:
        """Remove the value at this location (DELETE)."""
        await self._request("DELETE")

    @property
    def background(self) -> BackgroundAPI:
        """Non-blocking CRUD returning cancellable handles."""
        return BackgroundAPI(_ref=self)

    # -- realtime ----------------------------------------------------------

    def with_realtime_events(
        self,
        on_event: EventCallback | None = None,
        on_error: ErrorCallback | None = None,
        reconnect: ReconnectPolicy | None = None,
    ) -> RealtimeSubscription | ReconnectingSubscription:
        """Create a subscription for changes at this location.

        Nothing is sent until ``start()`` or ``listen()``. Pass ``reconnect``
        to get a ``ReconnectingSubscription`` that opens a new stream after
        disconnects.
        """

        def factory(token: CancellationToken | None = None) -> RealtimeSubscription:
            return RealtimeSubscription(
                self.transport,
                self.to_url(),
                on_event=on_event,
                on_error=on_error,
                config=self.config,
                token=token,
                label=str(self.path),
            )

        if reconnect is not None:
            return ReconnectingSubscription(factory, reconnect)
        return factory()

    async def close(self) -> None:
        """Close the shared transport."""
        await self.transport.close()

    async def __aenter__(self) -> Reference:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()


@dataclass
class BackgroundAPI:
    """CRUD operations that run on their own task.

    Each call returns a ``PendingRequest``; ``on_complete`` is called with
    ``(result, None)`` or ``(None, error)``.
    """

    _ref: Reference

    def get(
        self, type_: type[T] = Any, on_complete: CompletionCallback | None = None  # type: ignore[assignment]
    ) -> PendingRequest[T]:
        return PendingRequest(self._ref.get(type_), on_complete, name=f"GET {self._ref}")

    def set(self, value: Any, on_complete: CompletionCallback | None = None) -> PendingRequest[Any]:
        return PendingRequest(self._ref.set(value), on_complete, name=f"PUT {self._ref}")

    def update(
        self, value: Mapping[str, Any] | BaseModel, on_complete: CompletionCallback | None = None
    ) -> PendingRequest[Any]:
        return PendingRequest(self._ref.update(value), on_complete, name=f"PATCH {self._ref}")

    def push(self, value: Any, on_complete: CompletionCallback | None = None) -> PendingRequest[str]:
        return PendingRequest(self._ref.push(value), on_complete, name=f"POST {self._ref}")

    def delete(self, on_complete: CompletionCallback | None = None) -> PendingRequest[None]:
        return PendingRequest(self._ref.delete(), on_complete, name=f"DELETE {self._ref}")


def create_reference(
    url: str,
    auth: str | None = None,
    config: ClientConfig | None = None,
) -> Reference:
    """Create a root reference for an https database URL.

    Args:
        url: Database URL, e.g. ``https://<db>.firebaseio.com``
        auth: Auth token or database secret, sent as the ``auth`` parameter
        config: Client configuration (default: ``ClientConfig.from_env()``)

    Returns:
        Reference backed by an ``HTTPXTransport``
    """
    return Reference.from_url(url, auth=auth, config=config or ClientConfig.from_env())
