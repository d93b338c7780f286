"""Shared key-value store used for breaker state and flag caching.

The core only needs three operations, ``get`` / ``put`` / ``delete``, so the
store is a small Protocol.  :class:`RedisStore` backs it with redis-py for
multi-process deployments; :class:`MemoryStore` is a process-local
implementation with the same TTL semantics for single-process runs and tests.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from collections.abc import Callable

    import redis as redis_lib

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Key-building helpers
# ---------------------------------------------------------------------------

KEY_PREFIX = "releaseguard"


def breaker_key(name: str) -> str:
    """Build the state key for the breaker guarding *name*."""
    return f"{KEY_PREFIX}:breaker:{name}"


def flag_key(flag: str, identity: str | None = None) -> str:
    """Build the cache key for *flag*, optionally scoped to an *identity*."""
    suffix = f":{identity}" if identity else ""
    return f"{KEY_PREFIX}:flag:{flag}{suffix}"


# ---------------------------------------------------------------------------
# KeyValueStore protocol
# ---------------------------------------------------------------------------


class KeyValueStore(Protocol):
    """Minimal synchronous string store with per-key expiry."""

    def get(self, key: str) -> str | None:
        """Return the value at *key*, or ``None`` if absent or expired."""
        ...

    def put(self, key: str, value: str, ttl: int | None = None) -> None:
        """Store *value* at *key*, expiring after *ttl* seconds when given."""
        ...

    def delete(self, key: str) -> None:
        """Remove *key* if present."""
        ...


# ---------------------------------------------------------------------------
# RedisStore
# ---------------------------------------------------------------------------


@dataclass
class RedisStore:
    """:class:`KeyValueStore` backed by a redis-py client.

    Errors from Redis propagate; callers that must fail open (the breaker,
    the cache probe, the flag client) catch them at their own boundary.
    """

    client: redis_lib.Redis

    @classmethod
    def from_url(cls, url: str, socket_timeout: float = 3.0) -> RedisStore:
        """Connect lazily to the Redis instance at *url*."""
        import redis as redis_lib

        client = redis_lib.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client=client)

    def get(self, key: str) -> str | None:
        return self.client.get(key)

    def put(self, key: str, value: str, ttl: int | None = None) -> None:
        self.client.set(key, value, ex=ttl)

    def delete(self, key: str) -> None:
        self.client.delete(key)


# ---------------------------------------------------------------------------
# MemoryStore
# ---------------------------------------------------------------------------


@dataclass
class MemoryStore:
    """Thread-safe in-process :class:`KeyValueStore` with lazy expiry.

    Attributes:
        clock: Wall-clock source in seconds; injectable for tests.
    """

    clock: Callable[[], float] = time.time
    _data: dict[str, tuple[str, float | None]] = field(default_factory=dict, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at is not None and self.clock() >= expires_at:
                del self._data[key]
                return None
            return value

    def put(self, key: str, value: str, ttl: int | None = None) -> None:
        expires_at = self.clock() + ttl if ttl else None
        with self._lock:
            self._data[key] = (value, expires_at)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self) -> list[str]:
        """Return all live keys (expired entries are skipped)."""
        with self._lock:
            now = self.clock()
            return [k for k, (_, exp) in self._data.items() if exp is None or now < exp]
