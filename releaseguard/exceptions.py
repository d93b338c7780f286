"""Exception hierarchy for release verification and rollback.

All package exceptions inherit from ``ReleaseGuardError`` so surfaces can
catch the whole family at their boundary.  Probe-level errors never escape
:meth:`HealthAggregator.evaluate`; pipeline errors are turned into a
:class:`~releaseguard.deploy.rollback.RollbackResult` by the orchestrator.
Only :class:`ProcessRunnerError` is allowed to propagate out of a rollback.
"""

from __future__ import annotations


class ReleaseGuardError(Exception):
    """Base exception for all releaseguard failures."""


# ── Probe / dependency errors (localized) ────────────────────────


class ProbeTimeout(ReleaseGuardError):
    """Raised when a single probe exceeds its time budget.

    Attributes
    ----------
    probe_name : str
        Name of the probe that timed out.
    timeout : float
        Budget in seconds that was exceeded.
    """

    def __init__(self, probe_name: str, timeout: float) -> None:
        super().__init__(f"Probe {probe_name!r} exceeded its {timeout:.1f}s budget")
        self.probe_name = probe_name
        self.timeout = timeout


class DependencyUnavailable(ReleaseGuardError):
    """Raised when a circuit breaker refuses a call to a dependency."""

    def __init__(self, dependency: str) -> None:
        super().__init__(f"Dependency {dependency!r} unavailable: circuit open")
        self.dependency = dependency


# ── Infrastructure ────────────────────────────────────────────────


class ProcessRunnerError(ReleaseGuardError):
    """The remote process runner itself failed (unreachable, timed out).

    This is the only fault allowed to propagate out of a rollback; callers
    treat it as equivalent to :class:`RebuildFailed`.
    """

    def __init__(self, command: str, detail: str) -> None:
        super().__init__(f"Process runner failed for {command!r}: {detail}")
        self.command = command
        self.detail = detail


class InvalidAppName(ReleaseGuardError):
    """Raised by trigger surfaces when an app id does not match the configured pattern."""

    def __init__(self, app_id: str, pattern: str) -> None:
        super().__init__(f"Invalid app name {app_id!r} (expected pattern {pattern!r})")
        self.app_id = app_id
        self.pattern = pattern


class InvalidReleaseName(ReleaseGuardError):
    """Raised by trigger surfaces when a target release does not match the configured pattern."""

    def __init__(self, release: str, pattern: str) -> None:
        super().__init__(f"Invalid release {release!r} (expected pattern {pattern!r})")
        self.release = release
        self.pattern = pattern


# ── Rollback pipeline ─────────────────────────────────────────────


class RollbackError(ReleaseGuardError):
    """Base class for failures captured into a failed rollback result."""


class NoPreviousRelease(RollbackError):
    """Fewer than two releases exist, so there is nothing to roll back to."""

    def __init__(self, app_id: str, available: int) -> None:
        super().__init__(
            f"No previous release for {app_id!r} ({available} release(s) listed)"
        )
        self.app_id = app_id
        self.available = available


class RebuildFailed(RollbackError):
    """The remote rebuild command exited non-zero.

    Attributes
    ----------
    exit_code : int
        Exit status reported by the process runner.
    stdout, stderr : str
        Captured output, kept for diagnostics.
    """

    def __init__(self, app_id: str, exit_code: int, stdout: str = "", stderr: str = "") -> None:
        super().__init__(f"Rebuild of {app_id!r} exited with code {exit_code}")
        self.app_id = app_id
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr


class VerificationFailed(RollbackError):
    """The release was switched but the post-rollback probes did not pass."""

    def __init__(self, app_id: str, status: str) -> None:
        super().__init__("rollback verification failed")
        self.app_id = app_id
        self.status = status


class RollbackInProgress(RollbackError):
    """Another rollback already holds the lock for this app."""

    def __init__(self, app_id: str) -> None:
        super().__init__(f"A rollback of {app_id!r} is already in progress")
        self.app_id = app_id
