"""Resilience primitives: probes, health aggregation and circuit breakers."""

from __future__ import annotations

from .circuit_breaker import (
    BreakerSnapshot,
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
)
from .health import (
    HealthAggregator,
    HealthReport,
    OverallStatus,
    QuorumProbe,
    aggregate,
    deployment_probes,
    quorum_status,
    verification_probes,
)
from .probes import (
    CallableProbe,
    Criticality,
    Probe,
    ProbeResult,
    ProbeStatus,
)

__all__ = [
    "BreakerSnapshot",
    "CallableProbe",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitState",
    "Criticality",
    "HealthAggregator",
    "HealthReport",
    "OverallStatus",
    "Probe",
    "ProbeResult",
    "ProbeStatus",
    "QuorumProbe",
    "aggregate",
    "deployment_probes",
    "quorum_status",
    "verification_probes",
]
