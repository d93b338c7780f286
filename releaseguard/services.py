"""Wires settings into the shared collaborators used by every surface."""

from __future__ import annotations

import logging
import re
from functools import partial

from releaseguard.config import Settings
from releaseguard.deploy.guard import DeploymentGuard
from releaseguard.deploy.notify import (
    CompositeNotificationSink,
    LoggingNotificationSink,
    WebhookNotificationSink,
)
from releaseguard.deploy.process import DokkuCommands, ProcessRunner, SshProcessRunner
from releaseguard.deploy.rollback import RollbackOrchestrator
from releaseguard.exceptions import InvalidAppName, InvalidReleaseName
from releaseguard.flags import FeatureFlagClient
from releaseguard.resilience.circuit_breaker import CircuitBreakerRegistry
from releaseguard.resilience.health import (
    HealthAggregator,
    HealthReport,
    deployment_probes,
    verification_probes,
)
from releaseguard.resilience.probes import Criticality, Probe
from releaseguard.storage.store import KeyValueStore, MemoryStore, RedisStore

logger = logging.getLogger(__name__)

FLAG_PROVIDER = "flagsmith"


class Services:
    """One instance per process; surfaces share it."""

    def __init__(
        self,
        settings: Settings,
        *,
        store: KeyValueStore | None = None,
        runner: ProcessRunner | None = None,
        flags: FeatureFlagClient | None = None,
        aggregator: HealthAggregator | None = None,
        orchestrator: RollbackOrchestrator | None = None,
    ) -> None:
        self.settings = settings
        if store is None:
            if settings.redis_url:
                store = RedisStore.from_url(settings.redis_url, socket_timeout=settings.cache_timeout)
            else:
                logger.warning("No redis_url configured; breaker state is process-local")
                store = MemoryStore()
        self.store = store
        self.breakers = CircuitBreakerRegistry(
            store,
            failure_threshold=settings.breaker_failure_threshold,
            open_duration=settings.breaker_open_duration,
            state_ttl=settings.breaker_state_ttl,
        )
        self.flags = flags or FeatureFlagClient(
            settings.flagsmith_api_url,
            settings.flagsmith_environment_key,
            store,
            self.breakers.get(FLAG_PROVIDER),
            enabled=settings.flagsmith_enabled,
            cache_ttl=settings.flag_cache_ttl,
            defaults=settings.default_flags,
            timeout=settings.feature_flags_timeout,
        )
        self.aggregator = aggregator or HealthAggregator()
        self.orchestrator = orchestrator or RollbackOrchestrator(
            runner or SshProcessRunner.from_settings(settings),
            self.aggregator,
            partial(verification_probes, settings=settings, flags=self.flags),
            sink=self._build_sink(),
            commands=DokkuCommands.from_settings(settings),
            settle_delay=settings.settle_delay,
            command_timeout=settings.command_timeout,
            list_timeout=settings.list_timeout,
        )
        self._app_name = re.compile(settings.app_name_pattern)
        self._release_name = re.compile(settings.release_pattern)

    def _build_sink(self) -> CompositeNotificationSink:
        sinks = [LoggingNotificationSink()]
        if self.settings.notify_webhook_url:
            sinks.append(WebhookNotificationSink(self.settings.notify_webhook_url))
        return CompositeNotificationSink(*sinks)

    def deployment_probes(self, critical_only: bool = False) -> list[Probe]:
        probes = deployment_probes(self.settings, self.store, self.flags)
        if critical_only:
            probes = [p for p in probes if p.criticality is Criticality.CRITICAL]
        return probes

    def health(self, critical_only: bool = False) -> HealthReport:
        return self.aggregator.evaluate(self.deployment_probes(critical_only))

    def guard(self) -> DeploymentGuard:
        return DeploymentGuard(
            self.aggregator,
            self.deployment_probes,
            self.orchestrator,
            retries=self.settings.health_retries,
            retry_interval=self.settings.health_retry_interval,
            auto_rollback=self.settings.auto_rollback,
        )

    def validate_app_id(self, app_id: str) -> str:
        if not self._app_name.fullmatch(app_id):
            raise InvalidAppName(app_id, self._app_name.pattern)
        return app_id

    def validate_release(self, release: str | None) -> str | None:
        if release is not None and not self._release_name.fullmatch(release):
            raise InvalidReleaseName(release, self._release_name.pattern)
        return release

    def close(self) -> None:
        self.orchestrator.close()
        self.flags.close()
