"""JSON marshal capability backed by pydantic.

``decode`` validates raw bytes into any type pydantic understands (models,
dataclasses, TypedDicts, builtin containers). ``encode`` serializes any such
value back to JSON bytes.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Any, TypeVar

from pydantic import TypeAdapter, ValidationError

from .errors import DecodeError

T = TypeVar("T")


@lru_cache(maxsize=128)
def _adapter(type_: Any) -> TypeAdapter[Any]:
    return TypeAdapter(type_)


def decode(data: bytes | str, type_: type[T] = Any) -> T:  # type: ignore[assignment]
    """Decode JSON ``data`` into ``type_``; raise DecodeError on mismatch."""
    try:
        return _adapter(type_).validate_json(data)
    except ValidationError as e:
        raise DecodeError(f"Response does not match {getattr(type_, '__name__', type_)}: {e}") from e


def convert(value: Any, type_: type[T]) -> T:
    """Validate already-parsed JSON into ``type_``."""
    try:
        return _adapter(type_).validate_python(value)
    except ValidationError as e:
        raise DecodeError(f"Value does not match {getattr(type_, '__name__', type_)}: {e}") from e


def encode(value: Any) -> bytes:
    """Serialize ``value`` to JSON bytes."""
    return _adapter(Any).dump_json(value)
