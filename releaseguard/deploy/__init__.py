"""Deployment actions: process runner, rollback orchestration, guard."""

from __future__ import annotations

from .guard import DeploymentGuard, GuardOutcome
from .notify import (
    CompositeNotificationSink,
    LoggingNotificationSink,
    NotificationSink,
    WebhookNotificationSink,
)
from .process import DokkuCommands, ProcessOutcome, ProcessRunner, SshProcessRunner
from .rollback import (
    Release,
    RollbackMode,
    RollbackOrchestrator,
    RollbackRequest,
    RollbackResult,
    RollbackStep,
)
from .worker import RollbackWorker

__all__ = [
    "CompositeNotificationSink",
    "DeploymentGuard",
    "DokkuCommands",
    "GuardOutcome",
    "LoggingNotificationSink",
    "NotificationSink",
    "ProcessOutcome",
    "ProcessRunner",
    "Release",
    "RollbackMode",
    "RollbackOrchestrator",
    "RollbackRequest",
    "RollbackResult",
    "RollbackStep",
    "RollbackWorker",
]
