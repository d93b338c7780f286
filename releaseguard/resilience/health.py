"""Health aggregation: many probe results → one deployment verdict.

Two aggregation rules exist and are kept apart on purpose:

``aggregate`` (critical/optional rule), in priority order
  1. any *critical* probe ``unhealthy``            → ``unhealthy``
  2. any probe ``unhealthy``/``degraded``, or a
     validity probe reporting ``invalid``         → ``degraded``
  3. otherwise                                    → ``healthy``

``quorum_status`` (quorum rule)
  a group is ``healthy`` when at least ⌈2/3 · n⌉ of its counted members
  report ``healthy``; otherwise ``unhealthy``.

``disabled`` and ``not_applicable`` results are ignored by both rules.
Reports are recomputed on every call; nothing is cached between calls.
"""

from __future__ import annotations

import concurrent.futures
import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from fractions import Fraction
from typing import TYPE_CHECKING, Any

from releaseguard.resilience.probes import (
    CacheProbe,
    Criticality,
    DatabaseProbe,
    ErrorTrackingProbe,
    FeatureFlagsProbe,
    HttpProbe,
    MetricsProbe,
    Probe,
    ProbeResult,
    ProbeStatus,
    TlsCertificateProbe,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from releaseguard.config import Settings
    from releaseguard.flags import FeatureFlagClient
    from releaseguard.storage.store import KeyValueStore

logger = logging.getLogger(__name__)

QUORUM_FRACTION = Fraction(2, 3)
INVALID_VALIDITY = "invalid"


class OverallStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"

    @property
    def http_status(self) -> int:
        return 503 if self is OverallStatus.UNHEALTHY else 200

    @property
    def operational(self) -> bool:
        return self is not OverallStatus.UNHEALTHY


# ---------------------------------------------------------------------------
# Pure aggregation rules
# ---------------------------------------------------------------------------


def aggregate(results: Iterable[ProbeResult]) -> OverallStatus:
    """Critical/optional rule.  Pure function of *results*."""
    counted = [r for r in results if r.status.counts]
    if any(
        r.criticality is Criticality.CRITICAL and r.status is ProbeStatus.UNHEALTHY
        for r in counted
    ):
        return OverallStatus.UNHEALTHY
    if any(r.status in (ProbeStatus.UNHEALTHY, ProbeStatus.DEGRADED) for r in counted):
        return OverallStatus.DEGRADED
    if any(r.validity == INVALID_VALIDITY for r in counted):
        return OverallStatus.DEGRADED
    return OverallStatus.HEALTHY


def quorum_required(count: int, fraction: Fraction = QUORUM_FRACTION) -> int:
    """Number of healthy members a group of *count* needs: ⌈fraction · count⌉."""
    return math.ceil(fraction * count)


def quorum_status(
    results: Iterable[ProbeResult],
    fraction: Fraction = QUORUM_FRACTION,
) -> OverallStatus:
    """Quorum rule.  Pure function of *results*."""
    counted = [r for r in results if r.status.counts]
    healthy = sum(1 for r in counted if r.status is ProbeStatus.HEALTHY)
    if healthy >= quorum_required(len(counted), fraction):
        return OverallStatus.HEALTHY
    return OverallStatus.UNHEALTHY


# ---------------------------------------------------------------------------
# HealthReport
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class HealthReport:
    """Read-only verdict over an ordered tuple of probe results."""

    overall_status: OverallStatus
    results: tuple[ProbeResult, ...] = ()
    evaluated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def http_status(self) -> int:
        return self.overall_status.http_status

    def get(self, probe_name: str) -> ProbeResult | None:
        for r in self.results:
            if r.probe_name == probe_name:
                return r
        return None

    def failing(self) -> list[str]:
        """Names of probes reporting ``unhealthy`` or ``degraded``."""
        return [
            r.probe_name
            for r in self.results
            if r.status in (ProbeStatus.UNHEALTHY, ProbeStatus.DEGRADED)
        ]

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.overall_status.value,
            "timestamp": self.evaluated_at.isoformat(),
            "checks": [r.to_dict() for r in self.results],
        }

    def to_document(self, ssl_probe: str = "tls-certificate") -> dict[str, Any]:
        """Public health document: ``status``, ``timestamp``, ``services``, ``ssl``."""
        services = {
            r.probe_name: r.status.value for r in self.results if r.probe_name != ssl_probe
        }
        tls = self.get(ssl_probe)
        if tls is None:
            ssl_doc: dict[str, Any] = {"status": "unknown"}
        else:
            ssl_doc = {"status": tls.validity or tls.status.value, "message": tls.message}
            ssl_doc.update(tls.details)
        return {
            "status": self.overall_status.value,
            "timestamp": self.evaluated_at.isoformat(),
            "services": services,
            "ssl": ssl_doc,
        }


# ---------------------------------------------------------------------------
# HealthAggregator
# ---------------------------------------------------------------------------


class HealthAggregator:
    """Runs probes concurrently and folds their results into a report.

    Each probe is bounded by its own ``timeout``; an overrun yields an
    ``unhealthy`` result with message ``"timeout"`` while the others are
    unaffected.  No retries happen here.
    """

    def run_probes(self, probes: Sequence[Probe]) -> list[ProbeResult]:
        """Run every probe and return results in input order."""
        if not probes:
            return []
        executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=len(probes), thread_name_prefix="probe"
        )
        try:
            started = time.monotonic()
            futures = [(p, executor.submit(p.check, p.timeout)) for p in probes]
            return [self._collect(p, fut, started) for p, fut in futures]
        finally:
            # Never wait on a probe that overran; its thread finishes on its own.
            executor.shutdown(wait=False, cancel_futures=True)

    def _collect(
        self,
        probe: Probe,
        fut: concurrent.futures.Future[ProbeResult],
        started: float,
    ) -> ProbeResult:
        remaining = probe.timeout - (time.monotonic() - started)
        try:
            return fut.result(timeout=max(0.0, remaining))
        except concurrent.futures.TimeoutError:
            fut.cancel()
            elapsed = time.monotonic() - started
            logger.warning("Probe %s timed out after %.2fs", probe.name, elapsed)
            return probe.timed_out(elapsed)
        except Exception as exc:
            logger.exception("Probe %s crashed outside its own guard", probe.name)
            return probe.result(ProbeStatus.UNHEALTHY, f"{type(exc).__name__}: {exc}")

    def evaluate(self, probes: Sequence[Probe]) -> HealthReport:
        """Critical/optional verdict over a fresh run of *probes*."""
        results = self.run_probes(probes)
        report = HealthReport(aggregate(results), tuple(results))
        logger.info(
            "Health evaluated: %s (%s)",
            report.overall_status.value,
            ", ".join(f"{r.probe_name}={r.status.value}" for r in results) or "no probes",
        )
        return report

    def evaluate_quorum(
        self,
        probes: Sequence[Probe],
        fraction: Fraction = QUORUM_FRACTION,
    ) -> HealthReport:
        """Quorum verdict over a fresh run of *probes*."""
        results = self.run_probes(probes)
        return HealthReport(quorum_status(results, fraction), tuple(results))


class QuorumProbe(Probe):
    """A group of probes judged collectively by the quorum rule.

    Yields ``healthy`` when the group meets quorum, else ``unhealthy``; the
    members' individual statuses are kept under ``details["members"]``.
    """

    def __init__(
        self,
        name: str,
        members: Sequence[Probe],
        criticality: Criticality = Criticality.CRITICAL,
        *,
        fraction: Fraction = QUORUM_FRACTION,
        aggregator: HealthAggregator | None = None,
        grace: float = 1.0,
    ) -> None:
        if not members:
            raise ValueError(f"quorum group {name!r} needs at least one member")
        super().__init__(name, criticality, max(m.timeout for m in members) + grace)
        self.members = tuple(members)
        self.fraction = fraction
        self._aggregator = aggregator or HealthAggregator()

    def _run(self, timeout: float) -> ProbeResult:
        report = self._aggregator.evaluate_quorum(self.members, self.fraction)
        counted = [r for r in report.results if r.status.counts]
        healthy = sum(1 for r in counted if r.status is ProbeStatus.HEALTHY)
        required = quorum_required(len(counted), self.fraction)
        status = (
            ProbeStatus.HEALTHY
            if report.overall_status is OverallStatus.HEALTHY
            else ProbeStatus.UNHEALTHY
        )
        return self.result(
            status,
            f"{healthy}/{len(counted)} services healthy (need {required})",
            details={"members": {r.probe_name: r.status.value for r in report.results}},
        )


# ---------------------------------------------------------------------------
# Standard probe sets
# ---------------------------------------------------------------------------

DEPLOYMENT_PROBES = (
    "database",
    "cache",
    "error-tracking",
    "feature-flags",
    "metrics",
    "tls-certificate",
)
SERVICE_INTEGRATION = "service-integration"


def service_integration_probes(
    settings: Settings,
    flags: FeatureFlagClient,
) -> list[Probe]:
    """Optional third-party integrations: error tracking, flags, metrics."""
    return [
        ErrorTrackingProbe(settings.sentry_dsn, timeout=settings.error_tracking_timeout),
        FeatureFlagsProbe(flags, timeout=settings.feature_flags_timeout),
        MetricsProbe(
            settings.grafana_enabled,
            settings.grafana_health_url,
            timeout=settings.metrics_timeout,
        ),
    ]


def deployment_probes(
    settings: Settings,
    store: KeyValueStore,
    flags: FeatureFlagClient,
) -> list[Probe]:
    """The public health set: database and cache critical, the rest optional."""
    return [
        DatabaseProbe(settings.database_url, timeout=settings.database_timeout),
        CacheProbe(store, timeout=settings.cache_timeout),
        *service_integration_probes(settings, flags),
        TlsCertificateProbe(
            settings.tls_host,
            settings.tls_port,
            timeout=settings.tls_timeout,
            warning_days=settings.tls_warning_days,
        ),
    ]


def verification_probes(
    app_id: str,
    settings: Settings,
    flags: FeatureFlagClient,
) -> list[Probe]:
    """Post-rollback set: app reachability plus the service-integration quorum."""
    return [
        HttpProbe(
            "reachability",
            settings.app_url_template.format(app=app_id),
            Criticality.CRITICAL,
            settings.reachability_timeout,
        ),
        QuorumProbe(SERVICE_INTEGRATION, service_integration_probes(settings, flags)),
    ]
