"""Message channel between the dispatcher and one connected worker."""

from __future__ import annotations

import logging
import queue
import threading
from typing import Protocol

from atlas_dispatch.dispatch.errors import WorkerDisconnect
from atlas_dispatch.dispatch.models import Shutdown, WorkerMessage

logger = logging.getLogger(__name__)


class AttemptReporter(Protocol):
    """Dispatcher side of the worker protocol."""

    def report_started(self, attempt_id: str, *, worker_id: str | None = None) -> bool: ...

    def report_progress(
        self,
        attempt_id: str,
        message: str,
        *,
        progress: float | None = None,
        worker_id: str | None = None,
    ) -> None: ...

    def report_succeeded(
        self,
        attempt_id: str,
        *,
        result_ref: str | None = None,
        worker_id: str | None = None,
    ) -> bool: ...

    def report_failed(
        self,
        attempt_id: str,
        error: str,
        *,
        timed_out: bool = False,
        worker_id: str | None = None,
    ) -> bool: ...

    def heartbeat(self, worker_id: str) -> None: ...

    def disconnect_worker(self, worker_id: str, reason: str = "") -> list[str]: ...


class WorkerSession:
    """Worker-facing handle: receive deliveries, report outcomes.

    The dispatcher pushes ``TaskDelivery``, ``CancelAttempt`` and ``Shutdown``
    messages into the session channel; the worker drains it with
    :meth:`receive` and answers through the reply methods.
    """

    def __init__(
        self,
        *,
        worker_id: str,
        session_id: str,
        capacity: int,
        reporter: AttemptReporter,
    ) -> None:
        self.worker_id = worker_id
        self.session_id = session_id
        self.capacity = capacity
        self._reporter = reporter
        self._channel: queue.Queue[WorkerMessage] = queue.Queue()
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def deliver(self, message: WorkerMessage) -> None:
        """Dispatcher side: enqueue a message for the worker."""

        self._channel.put(message)

    def mark_closed(self, reason: str) -> None:
        """Dispatcher side: close the channel after a final ``Shutdown``."""

        if self._closed.is_set():
            return
        self._closed.set()
        self._channel.put(Shutdown(reason=reason))

    def receive(self, timeout: float | None = None) -> WorkerMessage | None:
        """Block until a message arrives; ``None`` on timeout.

        Raises:
            WorkerDisconnect: The session is closed and the channel is drained.
        """

        if self.closed and self._channel.empty():
            raise WorkerDisconnect(self.worker_id, "session closed")
        try:
            return self._channel.get(timeout=timeout)
        except queue.Empty:
            return None

    def started(self, attempt_id: str) -> bool:
        self._ensure_open()
        return self._reporter.report_started(attempt_id, worker_id=self.worker_id)

    def progress(self, attempt_id: str, message: str, *, progress: float | None = None) -> None:
        self._ensure_open()
        self._reporter.report_progress(
            attempt_id,
            message,
            progress=progress,
            worker_id=self.worker_id,
        )

    def succeeded(self, attempt_id: str, result_ref: str | None = None) -> bool:
        self._ensure_open()
        return self._reporter.report_succeeded(
            attempt_id,
            result_ref=result_ref,
            worker_id=self.worker_id,
        )

    def failed(self, attempt_id: str, error: str, *, timed_out: bool = False) -> bool:
        self._ensure_open()
        return self._reporter.report_failed(
            attempt_id,
            error,
            timed_out=timed_out,
            worker_id=self.worker_id,
        )

    def heartbeat(self) -> None:
        self._ensure_open()
        self._reporter.heartbeat(self.worker_id)

    def close(self, reason: str = "worker closed session") -> None:
        """Worker side: leave the farm; in-flight attempts are requeued."""

        if self.closed:
            return
        logger.info("Worker %s closing session: %s", self.worker_id, reason)
        self._reporter.disconnect_worker(self.worker_id, reason)

    def _ensure_open(self) -> None:
        if self.closed:
            raise WorkerDisconnect(self.worker_id, "session closed")
