"""Query parameters for ordering and filtering reads.

``equal_to`` and the ``start_at``/``end_at`` range are not checked against
each other: the store decides how they combine, so picking a meaningful
combination is the caller's job. ``limit_to_first`` and ``limit_to_last``
can never be combined and are rejected by ``finish()``.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Generic, TypeVar, Union

from .constants import (
    END_AT,
    EQUAL_TO,
    EXPORT,
    FORMAT,
    LIMIT_TO_FIRST,
    LIMIT_TO_LAST,
    ORDER_BY,
    SHALLOW,
    START_AT,
)
from .errors import ConflictingQueryParams

JsonScalar = Union[str, int, float, bool]

R = TypeVar("R")


def _check_scalar(name: str, value: object) -> JsonScalar:
    if not isinstance(value, (str, int, float, bool)):
        raise TypeError(f"{name} expects a JSON scalar, got {type(value).__name__}")
    return value


def _check_limit(name: str, count: int) -> int:
    if isinstance(count, bool) or not isinstance(count, int):
        raise TypeError(f"{name} expects an int, got {type(count).__name__}")
    if count < 0:
        raise ValueError(f"{name} must not be negative: {count}")
    return count


@dataclass(frozen=True)
class QueryParams:
    """Immutable set of query parameters. ``None`` means unset."""

    order_by: str | None = None
    start_at: JsonScalar | None = None
    end_at: JsonScalar | None = None
    equal_to: JsonScalar | None = None
    limit_to_first: int | None = None
    limit_to_last: int | None = None
    shallow: bool | None = None
    export_format: bool = False

    def is_empty(self) -> bool:
        return self == QueryParams()

    def validate(self) -> None:
        """Raise ConflictingQueryParams for combinations the store rejects."""
        if self.limit_to_first is not None and self.limit_to_last is not None:
            raise ConflictingQueryParams("limit_to_first and limit_to_last cannot both be set")

    def to_query_pairs(self) -> list[tuple[str, str]]:
        """Wire pairs sorted by key. Values are JSON encoded."""
        values = {
            ORDER_BY: self.order_by,
            START_AT: self.start_at,
            END_AT: self.end_at,
            EQUAL_TO: self.equal_to,
            LIMIT_TO_FIRST: self.limit_to_first,
            LIMIT_TO_LAST: self.limit_to_last,
            SHALLOW: self.shallow,
        }
        pairs = [(key, json.dumps(value)) for key, value in values.items() if value is not None]
        if self.export_format:
            pairs.append((FORMAT, EXPORT))
        return sorted(pairs)


class QueryParamsBuilder(Generic[R]):
    """Chainable builder; ``finish()`` validates and hands the params back.

    Usage:
        top = ref.with_params().order_by("score").limit_to_last(10).finish()
    """

    def __init__(self, params: QueryParams, on_finish: Callable[[QueryParams], R]):
        self._params = params
        self._on_finish = on_finish

    def _set(self, **changes: object) -> QueryParamsBuilder[R]:
        self._params = replace(self._params, **changes)
        return self

    def order_by(self, key: str) -> QueryParamsBuilder[R]:
        if not isinstance(key, str) or not key:
            raise ValueError("order_by expects a non-empty key such as '$key' or 'name'")
        return self._set(order_by=key)

    def start_at(self, value: JsonScalar) -> QueryParamsBuilder[R]:
        return self._set(start_at=_check_scalar("start_at", value))

    def end_at(self, value: JsonScalar) -> QueryParamsBuilder[R]:
        return self._set(end_at=_check_scalar("end_at", value))

    def equal_to(self, value: JsonScalar) -> QueryParamsBuilder[R]:
        return self._set(equal_to=_check_scalar("equal_to", value))

    def limit_to_first(self, count: int) -> QueryParamsBuilder[R]:
        return self._set(limit_to_first=_check_limit("limit_to_first", count))

    def limit_to_last(self, count: int) -> QueryParamsBuilder[R]:
        return self._set(limit_to_last=_check_limit("limit_to_last", count))

    def shallow(self, flag: bool = True) -> QueryParamsBuilder[R]:
        return self._set(shallow=bool(flag))

    def export_format(self) -> QueryParamsBuilder[R]:
        """Ask for priority information in the response (``format=export``)."""
        return self._set(export_format=True)

    @property
    def params(self) -> QueryParams:
        return self._params

    def finish(self) -> R:
        self._params.validate()
        return self._on_finish(self._params)
