"""Health probes: one named, criticality-tagged check each.

Every probe implements :meth:`Probe.check`, which never raises: any error
inside the probe body becomes an ``unhealthy`` :class:`ProbeResult`.  The
aggregator holds a homogeneous list of probes and never dispatches on type.

Concrete probes:
- DatabaseProbe: psycopg connect + ``SELECT 1``
- CacheProbe: write/read/delete round-trip on the shared store
- HttpProbe: GET a URL (used for app reachability)
- ErrorTrackingProbe: reachability of the error-tracking DSN host
- FeatureFlagsProbe: breaker-guarded flag provider health check
- MetricsProbe: metrics backend health URL
- TlsCertificateProbe: peer certificate validity and expiry
- CallableProbe: wraps a plain function
"""

from __future__ import annotations

import ipaddress
import logging
import socket
import ssl
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any
from urllib.parse import urlsplit

import httpx

from releaseguard.exceptions import DependencyUnavailable

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from releaseguard.flags import FeatureFlagClient
    from releaseguard.storage.store import KeyValueStore

logger = logging.getLogger(__name__)

DEFAULT_PROBE_TIMEOUT = 10.0


class Criticality(str, Enum):
    CRITICAL = "critical"
    OPTIONAL = "optional"


class ProbeStatus(str, Enum):
    """Outcome of a single probe.

    ``DISABLED`` and ``NOT_APPLICABLE`` never influence a verdict.
    """

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    DISABLED = "disabled"
    NOT_APPLICABLE = "not_applicable"

    @property
    def counts(self) -> bool:
        """Whether this status takes part in aggregation."""
        return self not in (ProbeStatus.DISABLED, ProbeStatus.NOT_APPLICABLE)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ProbeResult:
    """Immutable outcome of one probe run.

    ``criticality`` is copied from the probe so a report's verdict can be
    computed from its results alone.  ``validity`` is set only by probes that
    judge validity of an artifact (the TLS certificate probe).
    """

    probe_name: str
    status: ProbeStatus
    message: str = ""
    duration: float = 0.0
    measured_at: datetime = field(default_factory=_utcnow)
    criticality: Criticality = Criticality.OPTIONAL
    validity: str | None = None
    details: Mapping[str, Any] = field(default_factory=dict, hash=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "details", MappingProxyType(dict(self.details)))

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.probe_name,
            "status": self.status.value,
            "criticality": self.criticality.value,
            "message": self.message,
            "duration_ms": round(self.duration * 1000.0, 2),
            "measured_at": self.measured_at.isoformat(),
        }
        if self.validity is not None:
            data["validity"] = self.validity
        if self.details:
            data["details"] = dict(self.details)
        return data


class Probe(ABC):
    """Base class for all probes.

    Subclasses implement :meth:`_run` and return a result built with
    :meth:`result`; :meth:`check` adds timing and turns exceptions into
    ``unhealthy`` results.
    """

    def __init__(
        self,
        name: str,
        criticality: Criticality = Criticality.OPTIONAL,
        timeout: float = DEFAULT_PROBE_TIMEOUT,
    ) -> None:
        if timeout <= 0:
            raise ValueError(f"probe {name!r}: timeout must be positive")
        self.name = name
        self.criticality = criticality
        self.timeout = timeout

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r}, {self.criticality.value}, timeout={self.timeout})"

    def result(self, status: ProbeStatus, message: str = "", **kwargs: Any) -> ProbeResult:
        """Build a result stamped with this probe's name and criticality."""
        return ProbeResult(
            probe_name=self.name,
            status=status,
            message=message,
            criticality=self.criticality,
            **kwargs,
        )

    def timed_out(self, elapsed: float) -> ProbeResult:
        """The result reported when this probe overran its budget."""
        return self.result(ProbeStatus.UNHEALTHY, "timeout", duration=elapsed)

    def check(self, timeout: float | None = None) -> ProbeResult:
        """Run the probe within *timeout* seconds (default: the probe's own)."""
        budget = self.timeout if timeout is None else timeout
        start = time.perf_counter()
        try:
            outcome = self._run(budget)
        except Exception as exc:
            logger.warning("Probe %s failed: %s", self.name, exc)
            outcome = self.result(ProbeStatus.UNHEALTHY, f"{type(exc).__name__}: {exc}")
        return replace(outcome, duration=time.perf_counter() - start)

    @abstractmethod
    def _run(self, timeout: float) -> ProbeResult:
        """Perform the check; may raise."""


# ---------------------------------------------------------------------------
# Generic probes
# ---------------------------------------------------------------------------


class CallableProbe(Probe):
    """Probe backed by a function of the timeout.

    The function returns a :class:`ProbeStatus`, a ``(status, message)`` pair,
    or a bool (``True`` → healthy).
    """

    def __init__(
        self,
        name: str,
        fn: Callable[[float], Any],
        criticality: Criticality = Criticality.OPTIONAL,
        timeout: float = DEFAULT_PROBE_TIMEOUT,
    ) -> None:
        super().__init__(name, criticality, timeout)
        self._fn = fn

    def _run(self, timeout: float) -> ProbeResult:
        value = self._fn(timeout)
        if isinstance(value, tuple):
            status, message = value
            return self.result(ProbeStatus(status), message)
        if isinstance(value, bool):
            return self.result(ProbeStatus.HEALTHY if value else ProbeStatus.UNHEALTHY)
        return self.result(ProbeStatus(value))


class HttpProbe(Probe):
    """GET *url*; 2xx is healthy, slower than *degraded_after* is degraded."""

    def __init__(
        self,
        name: str,
        url: str,
        criticality: Criticality = Criticality.OPTIONAL,
        timeout: float = DEFAULT_PROBE_TIMEOUT,
        *,
        degraded_after: float | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        super().__init__(name, criticality, timeout)
        self.url = url
        self.degraded_after = degraded_after
        self._client = client

    def _get(self, url: str, timeout: float) -> httpx.Response:
        if self._client is not None:
            return self._client.get(url, timeout=timeout)
        return httpx.get(url, timeout=timeout, follow_redirects=True)

    def _run(self, timeout: float) -> ProbeResult:
        start = time.perf_counter()
        resp = self._get(self.url, timeout)
        latency = time.perf_counter() - start
        details = {"url": self.url, "status_code": resp.status_code}
        if not resp.is_success:
            return self.result(ProbeStatus.UNHEALTHY, f"HTTP {resp.status_code}", details=details)
        if self.degraded_after is not None and latency > self.degraded_after:
            return self.result(
                ProbeStatus.DEGRADED, f"slow response ({latency:.2f}s)", details=details
            )
        return self.result(ProbeStatus.HEALTHY, f"HTTP {resp.status_code}", details=details)


# ---------------------------------------------------------------------------
# Deployment probes
# ---------------------------------------------------------------------------


class DatabaseProbe(Probe):
    """Connect to Postgres and run ``SELECT 1``."""

    def __init__(
        self,
        dsn: str,
        criticality: Criticality = Criticality.CRITICAL,
        timeout: float = 5.0,
        *,
        name: str = "database",
        connect: Callable[..., Any] | None = None,
    ) -> None:
        super().__init__(name, criticality, timeout)
        self.dsn = dsn
        self._connect = connect

    def _run(self, timeout: float) -> ProbeResult:
        if not self.dsn:
            return self.result(ProbeStatus.UNHEALTHY, "database not configured")
        connect = self._connect
        if connect is None:
            import psycopg

            connect = psycopg.connect
        with connect(self.dsn, connect_timeout=max(1, int(timeout))) as conn:
            conn.execute("SELECT 1")
        return self.result(ProbeStatus.HEALTHY, "database connection successful")


class CacheProbe(Probe):
    """Write, read back and delete a throwaway key in the shared store."""

    def __init__(
        self,
        store: KeyValueStore,
        criticality: Criticality = Criticality.CRITICAL,
        timeout: float = 3.0,
        *,
        name: str = "cache",
    ) -> None:
        super().__init__(name, criticality, timeout)
        self.store = store

    def _run(self, timeout: float) -> ProbeResult:
        key = f"releaseguard:health_check:{uuid.uuid4().hex}"
        expected = f"test_{uuid.uuid4().hex[:8]}"
        self.store.put(key, expected, ttl=10)
        try:
            retrieved = self.store.get(key)
        finally:
            self.store.delete(key)
        if retrieved != expected:
            return self.result(ProbeStatus.UNHEALTHY, "cache value mismatch")
        return self.result(ProbeStatus.HEALTHY, "cache operations successful")


class ErrorTrackingProbe(HttpProbe):
    """Reachability of the error-tracking service named by a DSN.

    Disabled when no DSN is configured.  Any HTTP answer below 500 counts as
    reachable; the ingest host is not expected to serve a health page.
    """

    def __init__(
        self,
        dsn: str,
        criticality: Criticality = Criticality.OPTIONAL,
        timeout: float = 10.0,
        *,
        name: str = "error-tracking",
        client: httpx.Client | None = None,
    ) -> None:
        parts = urlsplit(dsn) if dsn else None
        url = f"{parts.scheme}://{parts.hostname}/" if parts and parts.hostname else ""
        super().__init__(name, url, criticality, timeout, client=client)
        self.dsn = dsn

    def _run(self, timeout: float) -> ProbeResult:
        if not self.dsn:
            return self.result(ProbeStatus.DISABLED, "error tracking not configured")
        if not self.url:
            return self.result(ProbeStatus.UNHEALTHY, "invalid DSN")
        resp = self._get(self.url, timeout)
        if resp.status_code >= 500:
            return self.result(ProbeStatus.UNHEALTHY, f"HTTP {resp.status_code}")
        return self.result(ProbeStatus.HEALTHY, "error tracking reachable")


class FeatureFlagsProbe(Probe):
    """Health of the feature-flag provider, through its circuit breaker."""

    def __init__(
        self,
        flags: FeatureFlagClient,
        criticality: Criticality = Criticality.OPTIONAL,
        timeout: float = 10.0,
        *,
        name: str = "feature-flags",
    ) -> None:
        super().__init__(name, criticality, timeout)
        self.flags = flags

    def _run(self, timeout: float) -> ProbeResult:
        if not self.flags.enabled:
            return self.result(ProbeStatus.DISABLED, "feature flags disabled")
        try:
            ok = self.flags.health_check(timeout=timeout)
        except DependencyUnavailable:
            return self.result(ProbeStatus.DEGRADED, "circuit open")
        if ok:
            return self.result(ProbeStatus.HEALTHY, "feature flag provider reachable")
        return self.result(ProbeStatus.UNHEALTHY, "feature flag provider unreachable")


class MetricsProbe(HttpProbe):
    """Metrics backend health; disabled when metrics shipping is off."""

    def __init__(
        self,
        enabled: bool,
        url: str = "",
        criticality: Criticality = Criticality.OPTIONAL,
        timeout: float = 10.0,
        *,
        name: str = "metrics",
        client: httpx.Client | None = None,
    ) -> None:
        super().__init__(name, url, criticality, timeout, client=client)
        self.enabled = enabled

    def _run(self, timeout: float) -> ProbeResult:
        if not self.enabled:
            return self.result(ProbeStatus.DISABLED, "metrics shipping disabled")
        if not self.url:
            # Write-only backend without a health page: configuration is all we can check.
            return self.result(ProbeStatus.HEALTHY, "metrics shipping configured")
        return super()._run(timeout)


# ---------------------------------------------------------------------------
# TLS certificate
# ---------------------------------------------------------------------------

# OpenSSL X509_V_ERR_* codes surfaced by ssl.SSLCertVerificationError.
_X509_NOT_YET_VALID = 9
_X509_EXPIRED = 10


def _is_local(host: str) -> bool:
    if host in ("localhost", "127.0.0.1", "::1"):
        return True
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


def fetch_peer_certificate(host: str, port: int, timeout: float) -> dict[str, Any]:
    """Open a verified TLS connection and return the decoded peer certificate."""
    context = ssl.create_default_context()
    with socket.create_connection((host, port), timeout=timeout) as sock:
        with context.wrap_socket(sock, server_hostname=host) as tls:
            return tls.getpeercert() or {}


def _rdn_value(rdns: Any, attr: str) -> str:
    for rdn in rdns or ():
        for key, value in rdn:
            if key == attr:
                return value
    return "Unknown"


class TlsCertificateProbe(Probe):
    """Validity and expiry of the certificate served for *host*.

    Validity values: ``valid``, ``expiring_soon`` (degraded), ``expired`` and
    ``not_yet_valid`` (unhealthy), ``invalid`` (no usable certificate).
    """

    def __init__(
        self,
        host: str,
        port: int = 443,
        criticality: Criticality = Criticality.OPTIONAL,
        timeout: float = 10.0,
        *,
        warning_days: int = 30,
        name: str = "tls-certificate",
        fetch: Callable[[str, int, float], dict[str, Any]] = fetch_peer_certificate,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(name, criticality, timeout)
        self.host = host
        self.port = port
        self.warning_days = warning_days
        self._fetch = fetch
        self._clock = clock

    def _run(self, timeout: float) -> ProbeResult:
        if _is_local(self.host):
            return self.result(
                ProbeStatus.NOT_APPLICABLE,
                "TLS check not applicable for localhost/IP",
                details={"domain": self.host},
            )
        try:
            cert = self._fetch(self.host, self.port, timeout)
        except ssl.SSLCertVerificationError as exc:
            validity = {
                _X509_EXPIRED: "expired",
                _X509_NOT_YET_VALID: "not_yet_valid",
            }.get(exc.verify_code, "invalid")
            return self._invalid(validity, exc.verify_message or str(exc))
        except (OSError, ssl.SSLError) as exc:
            return self._invalid("invalid", f"cannot connect: {exc}")

        if not cert or "notAfter" not in cert:
            return self._invalid("invalid", "no certificate found")

        valid_to = ssl.cert_time_to_seconds(cert["notAfter"])
        valid_from = ssl.cert_time_to_seconds(cert["notBefore"]) if "notBefore" in cert else None
        now = self._clock()
        days_left = (valid_to - now) / 86_400

        if valid_from is not None and now < valid_from:
            validity, status = "not_yet_valid", ProbeStatus.UNHEALTHY
        elif now > valid_to:
            validity, status = "expired", ProbeStatus.UNHEALTHY
        elif days_left < self.warning_days:
            validity, status = "expiring_soon", ProbeStatus.DEGRADED
        else:
            validity, status = "valid", ProbeStatus.HEALTHY

        details = {
            "domain": self.host,
            "issuer": _rdn_value(cert.get("issuer"), "commonName"),
            "subject": _rdn_value(cert.get("subject"), "commonName"),
            "valid_from": cert.get("notBefore"),
            "valid_to": cert.get("notAfter"),
            "days_until_expiry": round(days_left, 1),
            "serial_number": cert.get("serialNumber"),
        }
        return self.result(
            status,
            f"certificate {validity.replace('_', ' ')}",
            validity=validity,
            details=details,
        )

    def _invalid(self, validity: str, message: str) -> ProbeResult:
        return self.result(
            ProbeStatus.UNHEALTHY,
            message,
            validity=validity,
            details={"domain": self.host},
        )
