"""Shared test fixtures for releaseguard.

Nothing here touches the network, Redis, Postgres or ssh: every external
collaborator is replaced by an in-process fake.
"""

from __future__ import annotations

from collections.abc import Callable
from unittest.mock import MagicMock

import httpx
import pytest

from releaseguard.config import Settings
from releaseguard.deploy.process import ProcessOutcome
from releaseguard.deploy.rollback import RollbackOrchestrator
from releaseguard.flags import FeatureFlagClient
from releaseguard.resilience.circuit_breaker import CircuitBreaker
from releaseguard.resilience.health import HealthAggregator
from releaseguard.resilience.probes import CallableProbe, Criticality, ProbeStatus
from releaseguard.services import Services
from releaseguard.storage.store import MemoryStore


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRunner:
    """Process runner that records commands and replays canned outcomes.

    ``responses`` maps a command prefix (e.g. ``"ps:rebuild"``) to a
    :class:`ProcessOutcome` or an exception to raise.
    """

    def __init__(self, responses: dict | None = None):
        self.responses = dict(responses or {})
        self.calls: list[tuple[str, float]] = []

    def run(self, command: str, timeout: float) -> ProcessOutcome:
        self.calls.append((command, timeout))
        for prefix, outcome in self.responses.items():
            if command.startswith(prefix):
                if isinstance(outcome, Exception):
                    raise outcome
                return outcome
        return ProcessOutcome(0)

    @property
    def commands(self) -> list[str]:
        return [c for c, _ in self.calls]

    def ran(self, prefix: str) -> bool:
        return any(c.startswith(prefix) for c in self.commands)


class BrokenStore:
    """Store whose every operation fails, like Redis during an outage."""

    def __init__(self, exc: Exception | None = None):
        self.exc = exc or ConnectionError("redis down")

    def get(self, key):
        raise self.exc

    def put(self, key, value, ttl=None):
        raise self.exc

    def delete(self, key):
        raise self.exc


def static_probe(
    name: str,
    status: ProbeStatus | str = ProbeStatus.HEALTHY,
    criticality: Criticality = Criticality.OPTIONAL,
    message: str = "",
    timeout: float = 1.0,
) -> CallableProbe:
    """Probe that always reports *status*."""
    status = ProbeStatus(status)
    return CallableProbe(name, lambda _t: (status, message), criticality, timeout)


def releases_outcome(*releases: str) -> ProcessOutcome:
    return ProcessOutcome(0, "\n".join(releases) + "\n")


@pytest.fixture(autouse=True)
def set_test_env(monkeypatch):
    """Keep the app from connecting anything during tests."""
    monkeypatch.setenv("TESTING", "1")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock) -> MemoryStore:
    return MemoryStore(clock=clock)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        environment="test",
        version="1.2.3",
        settle_delay=0.0,
        health_retry_interval=0.0,
        sentry_dsn="",
        flagsmith_enabled=False,
        grafana_enabled=False,
        tls_host="localhost",
        database_url="",
        redis_url="",
    )


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def flag_handler() -> dict:
    """Mutable behaviour for the mock flag provider: set ``status`` or ``flags``."""
    return {
        "status": 200,
        "flags": [
            {"feature": {"name": "new_checkout"}, "enabled": True, "feature_state_value": None},
            {"feature": {"name": "banner_text"}, "enabled": True, "feature_state_value": "hello"},
        ],
        "calls": 0,
    }


@pytest.fixture
def make_flags(store, clock, flag_handler) -> Callable[..., FeatureFlagClient]:
    """Build a FeatureFlagClient wired to an httpx.MockTransport provider."""

    def handler(request: httpx.Request) -> httpx.Response:
        flag_handler["calls"] += 1
        if flag_handler["status"] >= 400:
            return httpx.Response(flag_handler["status"], json={"detail": "boom"})
        if request.url.path.endswith("/identities/"):
            return httpx.Response(200, json={"flags": flag_handler["flags"]})
        return httpx.Response(200, json=flag_handler["flags"])

    def factory(**kwargs) -> FeatureFlagClient:
        breaker = kwargs.pop(
            "breaker",
            CircuitBreaker("flagsmith", store, failure_threshold=2, open_duration=60, clock=clock),
        )
        client = httpx.Client(
            transport=httpx.MockTransport(handler),
            headers={"X-Environment-Key": "env-key"},
        )
        return FeatureFlagClient(
            "https://flags.test/api/v1/",
            "env-key",
            store,
            breaker,
            client=client,
            **kwargs,
        )

    return factory


class StubServices(Services):
    """Services with a test-chosen deployment probe set and rollback collaborators."""

    def __init__(self, settings, probes=(), *, runner=None, verification=(), sink=None):
        self.probes = list(probes)
        self.verification = list(verification)
        self.sink = sink or MagicMock()
        self.runner = runner or FakeRunner()
        aggregator = HealthAggregator()
        orchestrator = RollbackOrchestrator(
            self.runner,
            aggregator,
            lambda app_id: self.verification,
            sink=self.sink,
            settle_delay=0.0,
        )
        super().__init__(
            settings,
            store=MemoryStore(),
            aggregator=aggregator,
            orchestrator=orchestrator,
        )

    def deployment_probes(self, critical_only=False):
        if critical_only:
            return [p for p in self.probes if p.criticality is Criticality.CRITICAL]
        return list(self.probes)


@pytest.fixture
def make_services(settings) -> Callable[..., StubServices]:
    def factory(probes=(), **kwargs) -> StubServices:
        return StubServices(settings, probes, **kwargs)

    return factory
