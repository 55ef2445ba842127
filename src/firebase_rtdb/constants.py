"""Wire-level names shared across the client."""

# Query string parameters
AUTH = "auth"
ORDER_BY = "orderBy"
LIMIT_TO_FIRST = "limitToFirst"
LIMIT_TO_LAST = "limitToLast"
START_AT = "startAt"
END_AT = "endAt"
EQUAL_TO = "equalTo"
SHALLOW = "shallow"
FORMAT = "format"
EXPORT = "export"

JSON_SUFFIX = ".json"

# Characters the store rejects in keys
FORBIDDEN_KEY_CHARS = frozenset(".#$[]")

EVENT_STREAM_CONTENT_TYPE = "text/event-stream"
DEFAULT_SSE_EVENT = "message"
