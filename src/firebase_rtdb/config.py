"""Client configuration."""

from __future__ import annotations

import os
from dataclasses import dataclass, field


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return float(raw)


def _env_flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.lower() in ("1", "true", "yes")


@dataclass
class ClientConfig:
    """Client configuration.

    Timeouts are in seconds. ``read_timeout`` applies to CRUD responses;
    ``stall_timeout`` is the longest gap tolerated between bytes on an event
    stream. The store sends a keep-alive every 30 seconds, so the default
    leaves room for one missed keep-alive. Keep-alive events are dispatched
    like any other unless ``keep_alive_events`` is turned off.
    """

    # Connection settings
    connect_timeout: float = 10.0
    read_timeout: float = 30.0
    stall_timeout: float = 75.0
    follow_redirects: bool = True

    # Realtime settings
    keep_alive_events: bool = True

    headers: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_env(cls) -> ClientConfig:
        """Build a config from ``FIREBASE_RTDB_*`` environment variables."""
        return cls(
            connect_timeout=_env_float("FIREBASE_RTDB_CONNECT_TIMEOUT", cls.connect_timeout),
            read_timeout=_env_float("FIREBASE_RTDB_READ_TIMEOUT", cls.read_timeout),
            stall_timeout=_env_float("FIREBASE_RTDB_STALL_TIMEOUT", cls.stall_timeout),
            follow_redirects=_env_flag("FIREBASE_RTDB_FOLLOW_REDIRECTS", cls.follow_redirects),
            keep_alive_events=_env_flag("FIREBASE_RTDB_KEEP_ALIVE_EVENTS", cls.keep_alive_events),
        )
