"""Post-deploy guard: confirm a new release is healthy or roll it back.

The guard re-evaluates deployment health a bounded number of times, spaced
by a fixed interval, and stops at the first non-``unhealthy`` report.  If
every attempt is ``unhealthy`` and automatic rollback is enabled, it runs
one automatic rollback.  A failed rollback is reported, never retried.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from releaseguard.deploy.rollback import RollbackMode, RollbackRequest
from releaseguard.resilience.health import OverallStatus

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from releaseguard.deploy.rollback import RollbackOrchestrator, RollbackResult
    from releaseguard.resilience.health import HealthAggregator, HealthReport
    from releaseguard.resilience.probes import Probe

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GuardOutcome:
    report: HealthReport
    attempts: int
    rollback: RollbackResult | None = None

    @property
    def healthy(self) -> bool:
        return self.report.overall_status.operational

    @property
    def exit_code(self) -> int:
        if self.healthy:
            return 0
        return 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.report.overall_status.value,
            "attempts": self.attempts,
            "health": self.report.to_dict(),
            "rollback": self.rollback.to_dict() if self.rollback else None,
        }


class DeploymentGuard:
    def __init__(
        self,
        aggregator: HealthAggregator,
        probes: Callable[[], Sequence[Probe]],
        orchestrator: RollbackOrchestrator,
        *,
        retries: int = 3,
        retry_interval: float = 10.0,
        auto_rollback: bool = True,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if retries < 1:
            raise ValueError("retries must be >= 1")
        self.aggregator = aggregator
        self.orchestrator = orchestrator
        self.retries = retries
        self.retry_interval = retry_interval
        self.auto_rollback = auto_rollback
        self._probes = probes
        self._sleep = sleep

    def check(self, app_id: str, initiated_by: str = "deployment-pipeline") -> GuardOutcome:
        """Verify *app_id* after a deploy; roll back if it stays unhealthy."""
        report = None
        for attempt in range(1, self.retries + 1):
            report = self.aggregator.evaluate(self._probes())
            if report.overall_status is not OverallStatus.UNHEALTHY:
                logger.info(
                    "Deployment of %s is %s (attempt %d/%d)",
                    app_id,
                    report.overall_status.value,
                    attempt,
                    self.retries,
                )
                return GuardOutcome(report, attempt)
            logger.warning(
                "Deployment of %s unhealthy (attempt %d/%d): %s",
                app_id,
                attempt,
                self.retries,
                ", ".join(report.failing()),
            )
            if attempt < self.retries:
                self._sleep(self.retry_interval)

        if not self.auto_rollback:
            logger.error("Deployment of %s unhealthy; automatic rollback disabled", app_id)
            return GuardOutcome(report, self.retries)

        reason = "Health check failed: " + ", ".join(report.failing())
        result = self.orchestrator.rollback(
            RollbackRequest(
                app_id=app_id,
                reason=reason,
                mode=RollbackMode.AUTOMATIC,
                initiated_by=initiated_by,
            )
        )
        return GuardOutcome(report, self.retries, result)
