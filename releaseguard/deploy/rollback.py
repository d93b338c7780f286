"""Rollback orchestration: revert an app to a previous release and verify it.

Pipeline (strictly linear, single attempt):

    ResolveTarget → Stop → Rebuild → Settle → Verify → Report

- ResolveTarget: explicit ``target_release`` or the second entry of the
  most-recent-first release list.  Fewer than two releases →
  ``NoPreviousRelease``; nothing else runs.
- Stop: a non-zero exit is logged and ignored.
- Rebuild: a non-zero exit is fatal → ``RebuildFailed``.
- Settle: the only wait in the pipeline; cut short by cancellation, in
  which case Verify is skipped.
- Verify: fresh evaluation of the verification probe set.  An
  ``unhealthy`` verdict is reported as a failed result but the release
  switch is not undone, and no second rollback is attempted.
- Report: the result goes to the notification sink; sink errors are logged
  only.

Pipeline errors become a :class:`RollbackResult`.  Only
:class:`~releaseguard.exceptions.ProcessRunnerError` escapes.
"""

from __future__ import annotations

import concurrent.futures
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from releaseguard.deploy.process import DokkuCommands
from releaseguard.exceptions import (
    NoPreviousRelease,
    RebuildFailed,
    RollbackError,
    RollbackInProgress,
    VerificationFailed,
)
from releaseguard.resilience.health import OverallStatus

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from releaseguard.deploy.notify import NotificationSink
    from releaseguard.deploy.process import ProcessRunner
    from releaseguard.exceptions import ProcessRunnerError
    from releaseguard.resilience.health import HealthAggregator, HealthReport
    from releaseguard.resilience.probes import Probe

logger = logging.getLogger(__name__)

VERIFICATION_SKIPPED_MESSAGE = "rollback applied; verification skipped (cancelled)"


class RollbackMode(str, Enum):
    AUTOMATIC = "automatic"
    MANUAL = "manual"


class RollbackStep(str, Enum):
    RESOLVE_TARGET = "resolve_target"
    STOP = "stop"
    REBUILD = "rebuild"
    SETTLE = "settle"
    VERIFY = "verify"
    REPORT = "report"


@dataclass(frozen=True)
class Release:
    """Opaque release identifier as listed by the process manager."""

    identifier: str
    deployed_at: datetime | None = None

    def __str__(self) -> str:
        return self.identifier


@dataclass(frozen=True)
class RollbackRequest:
    app_id: str
    reason: str = ""
    target_release: str | None = None
    mode: RollbackMode = RollbackMode.AUTOMATIC
    initiated_by: str = "system"


@dataclass(frozen=True)
class RollbackResult:
    """Terminal outcome of one rollback attempt.

    ``steps`` lists the steps that were started, in order; ``failed_step``
    names the one that ended the attempt.
    """

    success: bool
    message: str
    release_used: str | None = None
    verification: HealthReport | None = None
    app_id: str = ""
    mode: RollbackMode = RollbackMode.AUTOMATIC
    initiated_by: str = "system"
    failed_step: RollbackStep | None = None
    verification_skipped: bool = False
    steps: tuple[RollbackStep, ...] = field(default_factory=tuple)

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1

    @property
    def http_status(self) -> int:
        return 200 if self.success else 500

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "app_id": self.app_id,
            "release_used": self.release_used,
            "mode": self.mode.value,
            "initiated_by": self.initiated_by,
            "failed_step": self.failed_step.value if self.failed_step else None,
            "steps": [s.value for s in self.steps],
            "verification_skipped": self.verification_skipped,
            "verification": self.verification.to_dict() if self.verification else None,
        }

    @classmethod
    def failed(
        cls,
        request: RollbackRequest,
        exc: Exception,
        *,
        step: RollbackStep | None = None,
        release: str | None = None,
        steps: Sequence[RollbackStep] = (),
        verification: HealthReport | None = None,
    ) -> RollbackResult:
        return cls(
            success=False,
            message=f"{type(exc).__name__}: {exc}",
            release_used=release,
            verification=verification,
            app_id=request.app_id,
            mode=request.mode,
            initiated_by=request.initiated_by,
            failed_step=step,
            steps=tuple(steps),
        )

    @classmethod
    def runner_fault(cls, request: RollbackRequest, exc: ProcessRunnerError) -> RollbackResult:
        """Result for a process-runner fault, which counts as a failed rebuild."""
        return cls(
            success=False,
            message=f"RebuildFailed: {exc}",
            release_used=request.target_release,
            app_id=request.app_id,
            mode=request.mode,
            initiated_by=request.initiated_by,
            failed_step=RollbackStep.REBUILD,
        )


class RollbackOrchestrator:
    """Drives one rollback per call; at most one in flight per app."""

    def __init__(
        self,
        runner: ProcessRunner,
        aggregator: HealthAggregator,
        verification_probes: Callable[[str], Sequence[Probe]],
        *,
        sink: NotificationSink | None = None,
        commands: DokkuCommands | None = None,
        settle_delay: float = 10.0,
        command_timeout: float = 600.0,
        list_timeout: float = 30.0,
    ) -> None:
        self.runner = runner
        self.aggregator = aggregator
        self.commands = commands or DokkuCommands()
        self.settle_delay = settle_delay
        self.command_timeout = command_timeout
        self.list_timeout = list_timeout
        self._verification_probes = verification_probes
        self._sink = sink
        self._notifier = concurrent.futures.ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="rollback-notify"
        )
        self._pending: set[concurrent.futures.Future[None]] = set()
        self._pending_guard = threading.Lock()
        self._app_locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, app_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._app_locks.setdefault(app_id, threading.Lock())

    # ── Queries ──────────────────────────────────────────────────────

    def list_releases(self, app_id: str) -> list[Release]:
        """Deployed releases for *app_id*, most recent first."""
        outcome = self.runner.run(self.commands.list_releases_for(app_id), self.list_timeout)
        if not outcome.ok:
            logger.warning(
                "Listing releases for %s exited %d: %s",
                app_id,
                outcome.exit_code,
                outcome.stderr.strip(),
            )
            return []
        return [Release(line.strip()) for line in outcome.stdout.splitlines() if line.strip()]

    # ── Pipeline ─────────────────────────────────────────────────────

    def rollback(
        self,
        request: RollbackRequest,
        cancel: threading.Event | None = None,
    ) -> RollbackResult:
        """Run the rollback pipeline once for *request*."""
        lock = self._lock_for(request.app_id)
        if not lock.acquire(blocking=False):
            logger.warning("Rejected rollback of %s: another one is running", request.app_id)
            return RollbackResult.failed(request, RollbackInProgress(request.app_id))

        logger.info(
            "Starting %s rollback for %s (reason=%r, initiated_by=%s)",
            request.mode.value,
            request.app_id,
            request.reason,
            request.initiated_by,
        )
        try:
            result = self._execute(request, cancel or threading.Event())
        finally:
            lock.release()

        self._report(request, result)
        return result

    def _execute(self, request: RollbackRequest, cancel: threading.Event) -> RollbackResult:
        app_id = request.app_id
        steps: list[RollbackStep] = []
        release: str | None = None
        verification: HealthReport | None = None

        def enter(step: RollbackStep) -> RollbackStep:
            steps.append(step)
            logger.info("Rollback %s: %s", app_id, step.value)
            return step

        step = enter(RollbackStep.RESOLVE_TARGET)
        try:
            release = self._resolve_target(request)

            step = enter(RollbackStep.STOP)
            self._stop(app_id)

            step = enter(RollbackStep.REBUILD)
            self._rebuild(app_id, release)

            step = enter(RollbackStep.SETTLE)
            if cancel.wait(self.settle_delay):
                logger.warning("Rollback %s cancelled while settling; verification skipped", app_id)
                return RollbackResult(
                    success=False,
                    message=VERIFICATION_SKIPPED_MESSAGE,
                    release_used=release,
                    app_id=app_id,
                    mode=request.mode,
                    initiated_by=request.initiated_by,
                    verification_skipped=True,
                    steps=tuple(steps),
                )

            step = enter(RollbackStep.VERIFY)
            verification = self.aggregator.evaluate(self._verification_probes(app_id))
            if verification.overall_status is OverallStatus.UNHEALTHY:
                raise VerificationFailed(app_id, verification.overall_status.value)
        except RollbackError as exc:
            logger.error("Rollback %s failed at %s: %s", app_id, step.value, exc)
            return RollbackResult.failed(
                request,
                exc,
                step=step,
                release=release,
                steps=steps,
                verification=verification,
            )

        logger.info("Rollback %s to %s verified (%s)", app_id, release, verification.overall_status.value)
        return RollbackResult(
            success=True,
            message=f"Successfully rolled back to release: {release}",
            release_used=release,
            verification=verification,
            app_id=app_id,
            mode=request.mode,
            initiated_by=request.initiated_by,
            steps=tuple(steps),
        )

    def _resolve_target(self, request: RollbackRequest) -> str:
        if request.target_release:
            return request.target_release
        releases = self.list_releases(request.app_id)
        if len(releases) < 2:
            raise NoPreviousRelease(request.app_id, len(releases))
        target = releases[1].identifier
        logger.info("Resolved previous release of %s: %s", request.app_id, target)
        return target

    def _stop(self, app_id: str) -> None:
        outcome = self.runner.run(self.commands.stop_for(app_id), self.command_timeout)
        if not outcome.ok:
            logger.warning(
                "Stop of %s exited %d (continuing): %s",
                app_id,
                outcome.exit_code,
                outcome.stderr.strip(),
            )

    def _rebuild(self, app_id: str, release: str) -> None:
        command = self.commands.rebuild_for(app_id, release)
        outcome = self.runner.run(command, self.command_timeout)
        if not outcome.ok:
            logger.error(
                "Rebuild command failed for %s (%s), exit %d\nstdout: %s\nstderr: %s",
                app_id,
                command,
                outcome.exit_code,
                outcome.stdout,
                outcome.stderr,
            )
            raise RebuildFailed(app_id, outcome.exit_code, outcome.stdout, outcome.stderr)

    def _report(self, request: RollbackRequest, result: RollbackResult) -> None:
        """Hand the result to the sink on the notifier thread; never waits for delivery."""
        if self._sink is None:
            return
        logger.info("Rollback %s: %s", request.app_id, RollbackStep.REPORT.value)
        try:
            future = self._notifier.submit(self._emit, request, result)
        except RuntimeError:
            logger.warning("Rollback notification for %s dropped: notifier closed", request.app_id)
            return
        with self._pending_guard:
            self._pending.add(future)
        future.add_done_callback(self._notified)

    def _notified(self, future: concurrent.futures.Future[None]) -> None:
        with self._pending_guard:
            self._pending.discard(future)

    def _emit(self, request: RollbackRequest, result: RollbackResult) -> None:
        try:
            self._sink.emit(
                result,
                app_id=request.app_id,
                reason=request.reason,
                initiated_by=request.initiated_by,
            )
        except Exception:
            logger.warning("Rollback notification for %s failed", request.app_id, exc_info=True)

    # ── Lifecycle ────────────────────────────────────────────────────

    def flush_notifications(self, timeout: float | None = None) -> bool:
        """Wait for queued notifications; ``False`` if some are still running at *timeout*."""
        with self._pending_guard:
            pending = list(self._pending)
        _, not_done = concurrent.futures.wait(pending, timeout=timeout)
        return not not_done

    def close(self, wait: bool = True) -> None:
        """Stop the notifier; with *wait*, deliver what is already queued."""
        self._notifier.shutdown(wait=wait)
