"""Rollback worker: runs rollbacks on dedicated threads.

A remote rebuild can take minutes; request handlers submit here and wait on
the returned future instead of blocking their own thread.  Stopping the
worker sets every in-flight rollback's cancel event, which cuts its Settle
wait short; steps already dispatched still run to completion.
"""

from __future__ import annotations

import concurrent.futures
import logging
import threading
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from releaseguard.deploy.rollback import (
        RollbackOrchestrator,
        RollbackRequest,
        RollbackResult,
    )

logger = logging.getLogger(__name__)


class RollbackWorker:
    """Background executor for :meth:`RollbackOrchestrator.rollback`."""

    def __init__(self, orchestrator: RollbackOrchestrator, max_workers: int = 2):
        self.orchestrator = orchestrator
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="rollback-worker"
        )
        self._cancels: dict[concurrent.futures.Future, threading.Event] = {}
        self._guard = threading.Lock()
        self._stopped = False

    def submit(self, request: RollbackRequest) -> concurrent.futures.Future[RollbackResult]:
        """Queue *request*; the future resolves to its result."""
        cancel = threading.Event()
        with self._guard:
            if self._stopped:
                raise RuntimeError("rollback worker is stopped")
            future = self._executor.submit(self.orchestrator.rollback, request, cancel)
            self._cancels[future] = cancel
        future.add_done_callback(self._forget)
        logger.info("Queued %s rollback for %s", request.mode.value, request.app_id)
        return future

    def _forget(self, future: concurrent.futures.Future) -> None:
        with self._guard:
            self._cancels.pop(future, None)

    @property
    def in_flight(self) -> int:
        with self._guard:
            return len(self._cancels)

    def stop(self, wait: bool = True) -> None:
        """Cancel in-flight settle waits and shut the pool down."""
        with self._guard:
            self._stopped = True
            events = list(self._cancels.values())
        for event in events:
            event.set()
        self._executor.shutdown(wait=wait, cancel_futures=True)
        logger.info("Rollback worker stopped (%d rollbacks signalled)", len(events))
