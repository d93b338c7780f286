"""Feature-flag provider client with breaker protection and layered fallbacks.

Lookup order for :meth:`FeatureFlagClient.get_flag`:

1. short cache (``cache_ttl``)
2. provider API, if the circuit breaker allows the call
3. on failure or open circuit: fallback cache (``cache_ttl * 12``),
   then the short cache, then the configured default, then the caller default

A disabled client never touches the network and answers from configured
defaults only.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

import httpx

from releaseguard.exceptions import DependencyUnavailable
from releaseguard.storage.store import flag_key

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from releaseguard.resilience.circuit_breaker import CircuitBreaker
    from releaseguard.storage.store import KeyValueStore

logger = logging.getLogger(__name__)

FALLBACK_TTL_FACTOR = 12
_MISSING = object()


class FeatureFlagClient:
    """Reads flags from a Flagsmith-compatible REST API.

    ``GET {api_url}flags/`` for environment flags, ``GET
    {api_url}identities/?identifier=...`` for identity flags; both
    authenticated with the ``X-Environment-Key`` header.
    """

    def __init__(
        self,
        api_url: str,
        environment_key: str,
        store: KeyValueStore,
        breaker: CircuitBreaker,
        *,
        enabled: bool = True,
        cache_ttl: int = 300,
        defaults: Mapping[str, Any] | None = None,
        timeout: float = 10.0,
        client: httpx.Client | None = None,
    ) -> None:
        self.api_url = api_url if api_url.endswith("/") else api_url + "/"
        self.enabled = enabled
        self.cache_ttl = cache_ttl
        self.defaults = dict(defaults or {})
        self.timeout = timeout
        self.breaker = breaker
        self._store = store
        self._client = client or httpx.Client(
            headers={"X-Environment-Key": environment_key},
            timeout=timeout,
        )
        self._known_keys: set[str] = set()

    # ── Provider calls ───────────────────────────────────────────────

    def _fetch_flags(self, identity: str | None, timeout: float) -> dict[str, Any]:
        if identity:
            resp = self._client.get(
                self.api_url + "identities/",
                params={"identifier": identity},
                timeout=timeout,
            )
            resp.raise_for_status()
            body = resp.json()
            if not isinstance(body, dict):
                raise ValueError(f"unexpected identities payload: {type(body).__name__}")
            states = body.get("flags", [])
        else:
            resp = self._client.get(self.api_url + "flags/", timeout=timeout)
            resp.raise_for_status()
            states = resp.json()
        if not isinstance(states, list):
            raise ValueError(f"unexpected flags payload: {type(states).__name__}")
        values: dict[str, Any] = {}
        for state in states:
            if not isinstance(state, dict) or not isinstance(state.get("feature"), dict):
                raise ValueError(f"malformed flag state: {state!r}")
            name = state["feature"].get("name")
            if not name:
                continue
            value = state.get("feature_state_value")
            values[name] = state.get("enabled", False) if value is None else value
        return values

    # ── Cache helpers ────────────────────────────────────────────────

    def _cache_get(self, key: str) -> Any:
        try:
            raw = self._store.get(key)
        except Exception as exc:
            logger.warning("Flag cache read failed for %s: %s", key, exc)
            return _MISSING
        if raw is None:
            return _MISSING
        try:
            return json.loads(raw)
        except ValueError as exc:
            logger.warning("Flag cache entry %s is not JSON: %s", key, exc)
            return _MISSING

    def _cache_put(self, key: str, value: Any, ttl: int) -> None:
        try:
            self._store.put(key, json.dumps(value), ttl=ttl)
        except Exception as exc:
            logger.warning("Flag cache write failed for %s: %s", key, exc)
            return
        self._known_keys.add(key)

    # ── Public API ───────────────────────────────────────────────────

    def get_flag(self, name: str, default: Any = False, identity: str | None = None) -> Any:
        """Return the value of flag *name*, never raising."""
        if not self.enabled:
            return self.defaults.get(name, default)

        key = flag_key(name, identity)
        fallback_key = f"{key}:fallback"

        cached = self._cache_get(key)
        if cached is not _MISSING:
            return cached

        try:
            if not self.breaker.allow():
                raise DependencyUnavailable(self.breaker.name)
            try:
                flags = self._fetch_flags(identity, self.timeout)
            except (httpx.HTTPError, ValueError):
                self.breaker.record_failure()
                raise
            self.breaker.record_success()
        except (DependencyUnavailable, httpx.HTTPError, ValueError) as exc:
            logger.warning(
                "Feature flag provider unavailable (flag=%s identity=%s): %s", name, identity, exc
            )
            for candidate in (fallback_key, key):
                value = self._cache_get(candidate)
                if value is not _MISSING:
                    return value
            return self.defaults.get(name, default)

        value = flags.get(name, default)
        self._cache_put(key, value, self.cache_ttl)
        self._cache_put(fallback_key, value, self.cache_ttl * FALLBACK_TTL_FACTOR)
        return value

    def is_enabled(self, name: str, identity: str | None = None) -> bool:
        return bool(self.get_flag(name, False, identity))

    def get_flags(
        self,
        names: Iterable[str] | Mapping[str, Any],
        identity: str | None = None,
    ) -> dict[str, Any]:
        """Look up several flags; a mapping supplies per-flag defaults."""
        if hasattr(names, "items"):
            pairs = list(names.items())
        else:
            pairs = [(n, False) for n in names]
        return {name: self.get_flag(name, default, identity) for name, default in pairs}

    def clear_cache(self, name: str | None = None, identity: str | None = None) -> None:
        """Drop cached values for one flag, or every flag this client cached."""
        if name is None:
            keys = set(self._known_keys)
        else:
            key = flag_key(name, identity)
            keys = {key, f"{key}:fallback"}
        for key in keys:
            self._store.delete(key)
            self._known_keys.discard(key)

    def health_check(self, timeout: float | None = None) -> bool:
        """Call the provider once and report the outcome to the breaker.

        Raises :class:`DependencyUnavailable` without calling when the
        circuit is open.
        """
        if not self.breaker.allow():
            raise DependencyUnavailable(self.breaker.name)
        try:
            self._fetch_flags(None, timeout or self.timeout)
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Feature flag provider health check failed: %s", exc)
            self.breaker.record_failure()
            return False
        self.breaker.record_success()
        return True

    def close(self) -> None:
        self._client.close()
