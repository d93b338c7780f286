"""Tests for the background rollback worker."""

from __future__ import annotations

import threading
import time

import pytest

from releaseguard.deploy.rollback import RollbackOrchestrator, RollbackRequest
from releaseguard.deploy.worker import RollbackWorker
from releaseguard.resilience.health import HealthAggregator

from conftest import FakeRunner, static_probe


def _orchestrator(settle_delay: float = 0.0) -> RollbackOrchestrator:
    return RollbackOrchestrator(
        FakeRunner(),
        HealthAggregator(),
        lambda app_id: [static_probe("reachability")],
        settle_delay=settle_delay,
    )


class TestRollbackWorker:
    def test_runs_off_the_calling_thread(self):
        names = []
        orch = _orchestrator()
        original = orch.rollback

        def spy(request, cancel=None):
            names.append(threading.current_thread().name)
            return original(request, cancel)

        orch.rollback = spy
        worker = RollbackWorker(orch)
        try:
            result = worker.submit(RollbackRequest("shop", target_release="v1")).result(timeout=5)
        finally:
            worker.stop()
        assert result.success is True
        assert names[0].startswith("rollback-worker")

    def test_stop_cancels_settle_wait(self):
        worker = RollbackWorker(_orchestrator(settle_delay=60.0))
        future = worker.submit(RollbackRequest("shop", target_release="v1"))
        while not (future.running() or future.done()):
            time.sleep(0.01)
        worker.stop(wait=True)
        result = future.result(timeout=5)
        assert result.verification_skipped is True
        assert result.verification is None

    def test_submit_after_stop_rejected(self):
        worker = RollbackWorker(_orchestrator())
        worker.stop()
        with pytest.raises(RuntimeError):
            worker.submit(RollbackRequest("shop", target_release="v1"))

    def test_finished_rollbacks_are_forgotten(self):
        worker = RollbackWorker(_orchestrator())
        try:
            worker.submit(RollbackRequest("shop", target_release="v1")).result(timeout=5)
        finally:
            worker.stop()
        assert worker.in_flight == 0
