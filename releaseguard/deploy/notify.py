"""Notification sinks for rollback outcomes.

Sinks receive the result plus ``app_id``, ``reason`` and ``initiated_by``.
They may raise; the orchestrator logs and drops any sink error.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Protocol

import httpx

if TYPE_CHECKING:
    from releaseguard.deploy.rollback import RollbackResult

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    def emit(
        self,
        result: RollbackResult,
        *,
        app_id: str,
        reason: str,
        initiated_by: str,
    ) -> None: ...


class LoggingNotificationSink:
    """Writes one log line per rollback outcome."""

    def emit(
        self,
        result: RollbackResult,
        *,
        app_id: str,
        reason: str,
        initiated_by: str,
    ) -> None:
        if result.success:
            logger.info(
                "Rollback of %s to %s succeeded (reason=%r, by=%s)",
                app_id,
                result.release_used,
                reason,
                initiated_by,
            )
        else:
            logger.error(
                "Rollback of %s failed: %s (reason=%r, by=%s)",
                app_id,
                result.message,
                reason,
                initiated_by,
            )


class WebhookNotificationSink:
    """POSTs a JSON event describing the rollback to a webhook URL."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 10.0,
        client: httpx.Client | None = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self._client = client

    def payload(
        self,
        result: RollbackResult,
        *,
        app_id: str,
        reason: str,
        initiated_by: str,
    ) -> dict:
        return {
            "event": "deployment.rollback",
            "app_id": app_id,
            "reason": reason,
            "initiated_by": initiated_by,
            "sent_at": datetime.now(timezone.utc).isoformat(),
            "result": result.to_dict(),
        }

    def emit(
        self,
        result: RollbackResult,
        *,
        app_id: str,
        reason: str,
        initiated_by: str,
    ) -> None:
        body = self.payload(result, app_id=app_id, reason=reason, initiated_by=initiated_by)
        if self._client is not None:
            resp = self._client.post(self.url, json=body, timeout=self.timeout)
        else:
            resp = httpx.post(self.url, json=body, timeout=self.timeout)
        resp.raise_for_status()
        logger.debug("Rollback notification for %s delivered to %s", app_id, self.url)


class CompositeNotificationSink:
    """Fans one outcome out to several sinks; one failing sink does not stop the rest."""

    def __init__(self, *sinks: NotificationSink) -> None:
        self.sinks = sinks

    def emit(
        self,
        result: RollbackResult,
        *,
        app_id: str,
        reason: str,
        initiated_by: str,
    ) -> None:
        for sink in self.sinks:
            try:
                sink.emit(result, app_id=app_id, reason=reason, initiated_by=initiated_by)
            except Exception:
                logger.warning("Notification sink %s failed", type(sink).__name__, exc_info=True)
