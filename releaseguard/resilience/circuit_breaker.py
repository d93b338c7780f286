"""Circuit breaker for unreliable external dependencies.

States:
- CLOSED: Healthy, calls pass through
- OPEN: Failing, calls short-circuited until ``open_duration`` elapses
- HALF_OPEN: One trial call let through; its outcome closes or re-opens

Breaker state lives in a shared :class:`KeyValueStore` under
``releaseguard:breaker:{name}`` so every process that guards the same
dependency sees the same circuit, and a restart does not forget an open one.
The OPEN → HALF_OPEN transition is computed lazily on the next ``allow()``.

The breaker never raises.  Callers check :meth:`CircuitBreaker.allow` first
and report exactly one of :meth:`record_success` / :meth:`record_failure`.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import asdict, dataclass, replace
from enum import Enum
from typing import TYPE_CHECKING, Any

from releaseguard.storage.store import breaker_key

if TYPE_CHECKING:
    from collections.abc import Callable

    from releaseguard.storage.store import KeyValueStore

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_THRESHOLD = 5
DEFAULT_OPEN_DURATION = 300.0
DEFAULT_STATE_TTL = 3_600


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class BreakerSnapshot:
    """Persisted breaker state for one dependency."""

    failure_count: int = 0
    last_failure_at: float | None = None
    state: CircuitState = CircuitState.CLOSED
    trial_started_at: float | None = None

    def dumps(self) -> str:
        data = asdict(self)
        data["state"] = self.state.value
        return json.dumps(data)

    @classmethod
    def loads(cls, raw: str) -> BreakerSnapshot:
        data = json.loads(raw)
        return cls(
            failure_count=max(0, int(data.get("failure_count", 0))),
            last_failure_at=data.get("last_failure_at"),
            state=CircuitState(data.get("state", CircuitState.CLOSED.value)),
            trial_started_at=data.get("trial_started_at"),
        )


class CircuitBreaker:
    """Store-persisted circuit breaker guarding one named dependency."""

    def __init__(
        self,
        name: str,
        store: KeyValueStore,
        *,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        open_duration: float = DEFAULT_OPEN_DURATION,
        state_ttl: int = DEFAULT_STATE_TTL,
        clock: Callable[[], float] = time.time,
        lock: threading.Lock | None = None,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self.name = name
        self.failure_threshold = failure_threshold
        self.open_duration = open_duration
        self.state_ttl = state_ttl
        self._store = store
        self._clock = clock
        self._lock = lock or threading.Lock()
        self._last = BreakerSnapshot()

    @property
    def key(self) -> str:
        return breaker_key(self.name)

    # ── Persistence ──────────────────────────────────────────────────

    def _load(self) -> BreakerSnapshot:
        """Read the shared state; falls back to this process's last view when the store fails."""
        try:
            raw = self._store.get(self.key)
        except Exception as exc:
            logger.warning("Circuit %s: state read failed (%s), using last local state", self.name, exc)
            return replace(self._last)
        if raw is None:
            snap = BreakerSnapshot()
        else:
            try:
                snap = BreakerSnapshot.loads(raw)
            except (ValueError, TypeError) as exc:
                logger.warning("Circuit %s: unreadable state %r (%s), treating as closed", self.name, raw, exc)
                snap = BreakerSnapshot()
        self._last = replace(snap)
        return snap

    def _save(self, snap: BreakerSnapshot) -> None:
        self._last = replace(snap)
        try:
            self._store.put(self.key, snap.dumps(), ttl=self.state_ttl)
        except Exception as exc:
            logger.warning("Circuit %s: state write failed (%s), kept locally only", self.name, exc)

    # ── Read side ────────────────────────────────────────────────────

    def snapshot(self) -> BreakerSnapshot:
        """Current persisted state, with the lazy OPEN → HALF_OPEN applied."""
        with self._lock:
            snap = self._load()
        if snap.state is CircuitState.OPEN and self._window_elapsed(snap.last_failure_at):
            snap.state = CircuitState.HALF_OPEN
        return snap

    @property
    def state(self) -> CircuitState:
        return self.snapshot().state

    @property
    def failure_count(self) -> int:
        return self.snapshot().failure_count

    def _window_elapsed(self, since: float | None) -> bool:
        return since is None or self._clock() - since >= self.open_duration

    # ── Gate ─────────────────────────────────────────────────────────

    def allow(self) -> bool:
        """Return ``True`` if the guarded call may be attempted now.

        In HALF_OPEN exactly one caller gets ``True`` per trial window.
        """
        with self._lock:
            snap = self._load()
            if snap.state is CircuitState.CLOSED:
                return True

            now = self._clock()
            if snap.state is CircuitState.OPEN:
                if not self._window_elapsed(snap.last_failure_at):
                    return False
                snap.state = CircuitState.HALF_OPEN
                snap.trial_started_at = now
                self._save(snap)
                logger.info("Circuit %s → HALF_OPEN (trial call permitted)", self.name)
                return True

            # HALF_OPEN: a trial is out; permit another only if it never reported back.
            if self._window_elapsed(snap.trial_started_at):
                snap.trial_started_at = now
                self._save(snap)
                logger.info("Circuit %s: previous trial unreported, permitting another", self.name)
                return True
            return False

    # ── Outcome callbacks ────────────────────────────────────────────

    def record_success(self) -> None:
        """Record a successful guarded call; closes the circuit."""
        with self._lock:
            snap = self._load()
            if snap.state is CircuitState.CLOSED and snap.failure_count == 0:
                return
            prev = snap.state
            self._save(BreakerSnapshot())
        if prev is not CircuitState.CLOSED:
            logger.info("Circuit %s → CLOSED (recovered)", self.name)

    def record_failure(self) -> None:
        """Record a failed guarded call; may open the circuit."""
        with self._lock:
            snap = self._load()
            now = self._clock()
            snap.failure_count += 1

            if snap.state is CircuitState.HALF_OPEN:
                snap.state = CircuitState.OPEN
                snap.last_failure_at = now
                snap.trial_started_at = None
                self._save(snap)
                logger.warning("Circuit %s → OPEN (half-open trial failed)", self.name)
                return

            if snap.state is CircuitState.OPEN:
                # Late report from a call admitted before the circuit opened.
                self._save(snap)
                return

            snap.last_failure_at = now
            if snap.failure_count >= self.failure_threshold:
                snap.state = CircuitState.OPEN
                logger.warning(
                    "Circuit %s → OPEN (%d failures)", self.name, snap.failure_count
                )
            self._save(snap)

    def reset(self) -> None:
        """Force the circuit back to CLOSED."""
        with self._lock:
            self._last = BreakerSnapshot()
            try:
                self._store.delete(self.key)
            except Exception as exc:
                logger.warning("Circuit %s: state delete failed (%s)", self.name, exc)
        logger.info("Circuit %s force-reset to CLOSED", self.name)

    def to_dict(self) -> dict[str, Any]:
        """Snapshot for the inspection endpoint."""
        snap = self.snapshot()
        return {
            "state": snap.state.value,
            "failure_count": snap.failure_count,
            "last_failure_at": snap.last_failure_at,
            "failure_threshold": self.failure_threshold,
            "open_duration": self.open_duration,
        }


class CircuitBreakerRegistry:
    """Hands out one breaker per dependency name, all sharing one store.

    Breakers obtained for the same name share a lock, so concurrent callers
    in this process serialize their read-modify-write of that key.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        open_duration: float = DEFAULT_OPEN_DURATION,
        state_ttl: int = DEFAULT_STATE_TTL,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self._defaults = {
            "failure_threshold": failure_threshold,
            "open_duration": open_duration,
            "state_ttl": state_ttl,
            "clock": clock,
        }
        self._breakers: dict[str, CircuitBreaker] = {}
        self._guard = threading.Lock()

    def get(self, name: str) -> CircuitBreaker:
        """Get or create the breaker for *name*."""
        with self._guard:
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(name, self.store, **self._defaults)
                self._breakers[name] = breaker
            return breaker

    @property
    def names(self) -> list[str]:
        with self._guard:
            return sorted(self._breakers)

    def get_all_states(self) -> dict[str, dict[str, Any]]:
        """Snapshot every breaker created so far."""
        return {name: self.get(name).to_dict() for name in self.names}
