"""Path model: base URL, immutable segment tuple, query parameters."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from urllib.parse import parse_qsl, quote, unquote, urlencode, urlsplit

from .constants import AUTH, FORBIDDEN_KEY_CHARS, JSON_SUFFIX
from .errors import InvalidPathSegment, InvalidUrl, NotHttps
from .params import QueryParams, QueryParamsBuilder

MAX_KEY_BYTES = 768


def validate_segment(segment: str) -> str:
    """Return the trimmed segment or raise InvalidPathSegment."""
    if not isinstance(segment, str):
        raise InvalidPathSegment(repr(segment), "segments must be strings")

    trimmed = segment.strip("/")
    if not trimmed:
        raise InvalidPathSegment(segment, "segment is empty")
    if "/" in trimmed:
        raise InvalidPathSegment(segment, "use one at() call per segment")

    bad = sorted(set(trimmed) & FORBIDDEN_KEY_CHARS)
    if bad:
        raise InvalidPathSegment(segment, f"contains forbidden characters {''.join(bad)!r}")
    if any(ord(ch) < 32 or ord(ch) == 127 for ch in trimmed):
        raise InvalidPathSegment(segment, "contains control characters")
    if len(trimmed.encode("utf-8")) > MAX_KEY_BYTES:
        raise InvalidPathSegment(segment, f"longer than {MAX_KEY_BYTES} bytes")
    return trimmed


@dataclass(frozen=True)
class PathBuilder:
    """An immutable location in the database.

    ``segments`` is a tuple, so children built with ``at()`` never share
    mutable state with their parent or siblings.
    """

    base_url: str
    segments: tuple[str, ...] = ()
    params: QueryParams = field(default_factory=QueryParams)
    auth: str | None = field(default=None, repr=False)

    @classmethod
    def from_url(cls, url: str, auth: str | None = None) -> PathBuilder:
        """Parse a database URL such as ``https://<db>.firebaseio.com/users``.

        A trailing ``.json`` is dropped and any path becomes validated
        segments. An ``auth`` query parameter in the URL is kept unless
        ``auth`` is given explicitly.
        """
        try:
            parts = urlsplit(url)
        except ValueError as e:
            raise InvalidUrl(f"Error while parsing the URL {url!r}: {e}") from e

        if parts.scheme != "https":
            raise NotHttps(url)
        if not parts.netloc:
            raise InvalidUrl(f"URL has no host: {url!r}")

        path = parts.path
        if path.endswith(JSON_SUFFIX):
            path = path[: -len(JSON_SUFFIX)]
        segments = tuple(validate_segment(unquote(p)) for p in path.split("/") if p)

        if auth is None:
            auth = dict(parse_qsl(parts.query)).get(AUTH)

        return cls(base_url=f"https://{parts.netloc}", segments=segments, auth=auth)

    @property
    def key(self) -> str | None:
        """Last segment, or None at the root."""
        return self.segments[-1] if self.segments else None

    @property
    def path(self) -> str:
        """Slash-joined, unencoded path (``/`` at the root)."""
        return "/" + "/".join(self.segments)

    def at(self, segment: str) -> PathBuilder:
        """Child location one segment below this one (query params reset)."""
        child = validate_segment(segment)
        return replace(self, segments=(*self.segments, child), params=QueryParams())

    def parent(self) -> PathBuilder | None:
        if not self.segments:
            return None
        return replace(self, segments=self.segments[:-1], params=QueryParams())

    def with_query(self, params: QueryParams) -> PathBuilder:
        params.validate()
        return replace(self, params=params)

    def with_params(self) -> QueryParamsBuilder[PathBuilder]:
        return QueryParamsBuilder(self.params, self.with_query)

    def to_url(self, suffix: str = JSON_SUFFIX, *, include_auth: bool = True) -> str:
        """Full request URL. Pure: the same builder always yields the same URL."""
        encoded = "/".join(quote(s, safe="") for s in self.segments)
        url = f"{self.base_url}/{encoded}{suffix}"

        pairs = self.params.to_query_pairs()
        if self.auth and include_auth:
            pairs.append((AUTH, self.auth))
        if pairs:
            url = f"{url}?{urlencode(pairs)}"
        return url

    def __str__(self) -> str:
        # Safe for logs: the auth token is left out
        return self.to_url(include_auth=False)
