"""Tests for health aggregation.

Covers:
- critical/optional rule priorities (property-based over random probe sets)
- disabled / not_applicable never affect the verdict
- validity probe reporting ``invalid`` degrades the verdict
- quorum rule: ⌈2/3·n⌉ healthy members, kept distinct from the critical rule
- concurrent evaluation: per-probe timeout, isolation, input order, no caching
- HealthReport document shape and HTTP status mapping
"""

from __future__ import annotations

import threading
import time

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from releaseguard.resilience.health import (
    HealthAggregator,
    HealthReport,
    OverallStatus,
    QuorumProbe,
    aggregate,
    quorum_required,
    quorum_status,
)
from releaseguard.resilience.probes import (
    CallableProbe,
    Criticality,
    ProbeResult,
    ProbeStatus,
)

from conftest import static_probe

statuses = st.sampled_from(list(ProbeStatus))
criticalities = st.sampled_from(list(Criticality))
result_sets = st.lists(
    st.builds(
        lambda i, s, c: ProbeResult(f"p{i}", s, criticality=c),
        st.integers(0, 99),
        statuses,
        criticalities,
    ),
    max_size=12,
)


class TestAggregateRule:
    @given(st.lists(criticalities, max_size=10))
    def test_all_healthy_is_healthy(self, crits):
        results = [ProbeResult(f"p{i}", ProbeStatus.HEALTHY, criticality=c) for i, c in enumerate(crits)]
        assert aggregate(results) is OverallStatus.HEALTHY

    @given(result_sets)
    def test_critical_unhealthy_dominates(self, results):
        results = [*results, ProbeResult("db", ProbeStatus.UNHEALTHY, criticality=Criticality.CRITICAL)]
        assert aggregate(results) is OverallStatus.UNHEALTHY

    @given(result_sets)
    def test_verdict_matches_rule(self, results):
        counted = [r for r in results if r.status.counts]
        if any(r.criticality is Criticality.CRITICAL and r.status is ProbeStatus.UNHEALTHY for r in counted):
            expected = OverallStatus.UNHEALTHY
        elif any(r.status in (ProbeStatus.UNHEALTHY, ProbeStatus.DEGRADED) for r in counted):
            expected = OverallStatus.DEGRADED
        else:
            expected = OverallStatus.HEALTHY
        assert aggregate(results) is expected

    @given(result_sets)
    def test_disabled_and_not_applicable_are_ignored(self, results):
        noise = [
            ProbeResult("off", ProbeStatus.DISABLED, criticality=Criticality.CRITICAL),
            ProbeResult("na", ProbeStatus.NOT_APPLICABLE, criticality=Criticality.CRITICAL),
        ]
        assert aggregate(results + noise) is aggregate(results)

    def test_optional_failure_is_degraded(self):
        results = [
            ProbeResult("database", ProbeStatus.HEALTHY, criticality=Criticality.CRITICAL),
            ProbeResult("metrics", ProbeStatus.UNHEALTHY),
        ]
        assert aggregate(results) is OverallStatus.DEGRADED

    def test_critical_degraded_is_only_degraded(self):
        results = [ProbeResult("database", ProbeStatus.DEGRADED, criticality=Criticality.CRITICAL)]
        assert aggregate(results) is OverallStatus.DEGRADED

    def test_invalid_validity_degrades(self):
        results = [ProbeResult("tls", ProbeStatus.HEALTHY, validity="invalid")]
        assert aggregate(results) is OverallStatus.DEGRADED

    def test_empty_is_healthy(self):
        assert aggregate([]) is OverallStatus.HEALTHY


class TestQuorumRule:
    @pytest.mark.parametrize(("n", "required"), [(0, 0), (1, 1), (2, 2), (3, 2), (4, 3), (6, 4), (9, 6)])
    def test_required(self, n, required):
        assert quorum_required(n) == required

    def test_two_of_three_is_enough(self):
        results = [
            ProbeResult("a", ProbeStatus.HEALTHY),
            ProbeResult("b", ProbeStatus.HEALTHY),
            ProbeResult("c", ProbeStatus.UNHEALTHY),
        ]
        assert quorum_status(results) is OverallStatus.HEALTHY

    def test_one_of_three_fails(self):
        results = [
            ProbeResult("a", ProbeStatus.HEALTHY),
            ProbeResult("b", ProbeStatus.DEGRADED),
            ProbeResult("c", ProbeStatus.UNHEALTHY),
        ]
        assert quorum_status(results) is OverallStatus.UNHEALTHY

    def test_disabled_members_shrink_the_group(self):
        results = [
            ProbeResult("a", ProbeStatus.HEALTHY),
            ProbeResult("b", ProbeStatus.DISABLED),
            ProbeResult("c", ProbeStatus.DISABLED),
        ]
        assert quorum_status(results) is OverallStatus.HEALTHY

    def test_differs_from_critical_rule(self):
        # Same results, different rules, different answers.
        results = [
            ProbeResult("a", ProbeStatus.HEALTHY),
            ProbeResult("b", ProbeStatus.HEALTHY),
            ProbeResult("c", ProbeStatus.UNHEALTHY),
        ]
        assert aggregate(results) is OverallStatus.DEGRADED
        assert quorum_status(results) is OverallStatus.HEALTHY

    @given(st.lists(statuses, max_size=12))
    def test_quorum_matches_ceiling(self, sts):
        results = [ProbeResult(f"p{i}", s) for i, s in enumerate(sts)]
        counted = [s for s in sts if s.counts]
        healthy = sum(1 for s in counted if s is ProbeStatus.HEALTHY)
        expected = healthy * 3 >= len(counted) * 2
        assert (quorum_status(results) is OverallStatus.HEALTHY) is expected


class TestHealthAggregator:
    def test_results_in_input_order(self):
        probes = [static_probe(n) for n in ("c", "a", "b")]
        report = HealthAggregator().evaluate(probes)
        assert [r.probe_name for r in report.results] == ["c", "a", "b"]

    def test_no_probes(self):
        report = HealthAggregator().evaluate([])
        assert report.overall_status is OverallStatus.HEALTHY
        assert report.results == ()

    def test_timeout_is_localized(self):
        release = threading.Event()

        def hang(_timeout):
            release.wait(5)
            return True

        probes = [
            CallableProbe("slow", hang, Criticality.CRITICAL, timeout=0.2),
            static_probe("fast", criticality=Criticality.CRITICAL),
        ]
        try:
            started = time.monotonic()
            report = HealthAggregator().evaluate(probes)
            elapsed = time.monotonic() - started
        finally:
            release.set()
        assert elapsed < 2.0
        slow, fast = report.results
        assert slow.status is ProbeStatus.UNHEALTHY
        assert slow.message == "timeout"
        assert fast.status is ProbeStatus.HEALTHY
        assert report.overall_status is OverallStatus.UNHEALTHY

    def test_probes_run_concurrently(self):
        barrier = threading.Barrier(3, timeout=2)

        def meet(_timeout):
            barrier.wait()
            return True

        probes = [CallableProbe(f"p{i}", meet, timeout=3.0) for i in range(3)]
        report = HealthAggregator().evaluate(probes)
        assert report.overall_status is OverallStatus.HEALTHY

    def test_crash_in_one_probe_does_not_affect_others(self):
        def boom(_timeout):
            raise RuntimeError("kaput")

        report = HealthAggregator().evaluate([CallableProbe("bad", boom), static_probe("good")])
        assert report.get("bad").status is ProbeStatus.UNHEALTHY
        assert report.get("good").status is ProbeStatus.HEALTHY
        assert report.overall_status is OverallStatus.DEGRADED

    def test_every_evaluation_is_fresh(self):
        calls = []
        probe = CallableProbe("p", lambda t: calls.append(1) or True)
        agg = HealthAggregator()
        first = agg.evaluate([probe])
        second = agg.evaluate([probe])
        assert len(calls) == 2
        assert first.overall_status is second.overall_status
        assert first is not second

    @settings(max_examples=25, deadline=None)
    @given(st.lists(st.tuples(statuses, criticalities), max_size=6))
    def test_evaluate_agrees_with_pure_rule(self, pairs):
        probes = [static_probe(f"p{i}", s, c) for i, (s, c) in enumerate(pairs)]
        report = HealthAggregator().evaluate(probes)
        assert report.overall_status is aggregate(report.results)


class TestQuorumProbe:
    def test_healthy_when_quorum_met(self):
        group = QuorumProbe(
            "service-integration",
            [static_probe("a"), static_probe("b"), static_probe("c", "unhealthy")],
        )
        result = group.check()
        assert result.status is ProbeStatus.HEALTHY
        assert result.criticality is Criticality.CRITICAL
        assert result.message == "2/3 services healthy (need 2)"
        assert result.details["members"] == {"a": "healthy", "b": "healthy", "c": "unhealthy"}

    def test_unhealthy_when_quorum_missed(self):
        group = QuorumProbe(
            "service-integration",
            [static_probe("a"), static_probe("b", "degraded"), static_probe("c", "unhealthy")],
        )
        assert group.check().status is ProbeStatus.UNHEALTHY

    def test_timeout_covers_members(self):
        group = QuorumProbe("g", [static_probe("a", timeout=3.0), static_probe("b", timeout=7.0)])
        assert group.timeout == 8.0

    def test_requires_members(self):
        with pytest.raises(ValueError):
            QuorumProbe("g", [])


class TestHealthReport:
    def _report(self, status: OverallStatus) -> HealthReport:
        return HealthReport(
            status,
            (
                ProbeResult("database", ProbeStatus.HEALTHY, criticality=Criticality.CRITICAL),
                ProbeResult("metrics", ProbeStatus.DISABLED),
                ProbeResult(
                    "tls-certificate",
                    ProbeStatus.DEGRADED,
                    "certificate expiring soon",
                    validity="expiring_soon",
                    details={"domain": "app.example.com", "days_until_expiry": 12.0},
                ),
            ),
        )

    @pytest.mark.parametrize(
        ("status", "code"),
        [(OverallStatus.HEALTHY, 200), (OverallStatus.DEGRADED, 200), (OverallStatus.UNHEALTHY, 503)],
    )
    def test_http_status(self, status, code):
        assert self._report(status).http_status == code

    def test_document(self):
        doc = self._report(OverallStatus.DEGRADED).to_document()
        assert doc["status"] == "degraded"
        assert doc["services"] == {"database": "healthy", "metrics": "disabled"}
        assert doc["ssl"]["status"] == "expiring_soon"
        assert doc["ssl"]["domain"] == "app.example.com"
        assert "timestamp" in doc

    def test_hashable(self):
        report = self._report(OverallStatus.DEGRADED)
        assert hash(report) == hash(report)
        assert report in {report}

    def test_document_without_tls_probe(self):
        doc = HealthReport(OverallStatus.HEALTHY).to_document()
        assert doc["ssl"] == {"status": "unknown"}

    def test_failing(self):
        assert self._report(OverallStatus.DEGRADED).failing() == ["tls-certificate"]
