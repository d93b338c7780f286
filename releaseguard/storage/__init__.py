"""Shared key-value storage for releaseguard."""

from __future__ import annotations

from .store import (
    KeyValueStore,
    MemoryStore,
    RedisStore,
    breaker_key,
    flag_key,
)

__all__ = [
    "KeyValueStore",
    "MemoryStore",
    "RedisStore",
    "breaker_key",
    "flag_key",
]
