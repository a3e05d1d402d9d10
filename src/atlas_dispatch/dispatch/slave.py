"""Local slave: executes deliveries from a worker session on a thread pool."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path

from atlas_dispatch.dispatch.backend import BackendRunError, RenderBackend, RenderRequest
from atlas_dispatch.dispatch.errors import WorkerDisconnect
from atlas_dispatch.dispatch.frames import describe_frames
from atlas_dispatch.dispatch.models import CancelAttempt, Shutdown, TaskDelivery
from atlas_dispatch.dispatch.session import WorkerSession

logger = logging.getLogger(__name__)

_STDERR_TAIL_CHARS = 500


@dataclass(slots=True)
class SlaveRunSummary:
    """Counters for one slave run."""

    delivered: int = 0
    succeeded: int = 0
    failed: int = 0
    timed_out: int = 0
    cancelled: int = 0
    skipped: int = 0


class SlaveWorker:
    """Drain a worker session and render each delivery with a backend.

    Runs at most ``session.capacity`` renders at once, heartbeats while idle
    and honours ``CancelAttempt`` signals by stopping the matching render.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        session: WorkerSession,
        backend: RenderBackend,
        output_dir: Path,
        heartbeat_interval_seconds: float = 10.0,
        poll_interval_seconds: float = 0.5,
        graceful_shutdown_seconds: float = 2.0,
    ) -> None:
        self.session = session
        self.backend = backend
        self.output_dir = output_dir
        self.heartbeat_interval_seconds = heartbeat_interval_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self.summary = SlaveRunSummary()
        self._summary_lock = threading.Lock()
        self._cancel_events: dict[str, threading.Event] = {}
        self._lock = threading.Lock()

    @property
    def worker_id(self) -> str:
        return self.session.worker_id

    def run(self, *, stop_event: threading.Event | None = None) -> SlaveRunSummary:
        """Process messages until ``Shutdown``, disconnect or ``stop_event``."""

        stop = stop_event or threading.Event()
        last_heartbeat = time.monotonic()
        with ThreadPoolExecutor(
            max_workers=self.session.capacity,
            thread_name_prefix=f"slave-{self.worker_id}",
        ) as executor:
            try:
                while not stop.is_set():
                    if time.monotonic() - last_heartbeat >= self.heartbeat_interval_seconds:
                        self.session.heartbeat()
                        last_heartbeat = time.monotonic()
                    message = self.session.receive(timeout=self.poll_interval_seconds)
                    if message is None:
                        continue
                    if isinstance(message, Shutdown):
                        logger.info("Slave %s shutting down: %s", self.worker_id, message.reason)
                        break
                    if isinstance(message, CancelAttempt):
                        self._cancel(message)
                        continue
                    self._submit(executor, message)
            except WorkerDisconnect as error:
                logger.warning("Slave %s lost its session: %s", self.worker_id, error)
            finally:
                self._cancel_all()
        self.session.close("slave stopped")
        return self.summary

    def _submit(self, executor: ThreadPoolExecutor, delivery: TaskDelivery) -> None:
        cancel_event = threading.Event()
        with self._lock:
            self._cancel_events[delivery.attempt_id] = cancel_event
        executor.submit(self._execute, delivery, cancel_event)
        self._count("delivered")

    def _cancel(self, message: CancelAttempt) -> None:
        with self._lock:
            event = self._cancel_events.get(message.attempt_id)
        if event is not None:
            logger.info(
                "Slave %s cancelling attempt %s: %s",
                self.worker_id,
                message.attempt_id,
                message.reason,
            )
            event.set()

    def _cancel_all(self) -> None:
        with self._lock:
            events = list(self._cancel_events.values())
        for event in events:
            event.set()

    def _execute(self, delivery: TaskDelivery, cancel_event: threading.Event) -> None:
        try:
            self._render(delivery, cancel_event)
        except WorkerDisconnect:
            logger.info(
                "Slave %s dropped result of %s: session closed",
                self.worker_id,
                delivery.attempt_id,
            )
        except Exception:
            logger.exception("Slave %s failed to render %s", self.worker_id, delivery.attempt_id)
        finally:
            with self._lock:
                self._cancel_events.pop(delivery.attempt_id, None)

    def _render(self, delivery: TaskDelivery, cancel_event: threading.Event) -> None:
        attempt_id = delivery.attempt_id
        if cancel_event.is_set() or not self.session.started(attempt_id):
            logger.info(
                "Slave %s skipping %s: attempt already ended",
                self.worker_id,
                attempt_id,
            )
            self._count("skipped")
            return
        self.session.progress(
            attempt_id,
            f"rendering frames {describe_frames(delivery.frames)}",
            progress=0.0,
        )
        try:
            result = self.backend.run(
                RenderRequest(
                    attempt_id=attempt_id,
                    task_id=delivery.task_id,
                    job_id=delivery.job_id,
                    frames=delivery.frames,
                    timeout_seconds=delivery.timeout_seconds,
                    output_dir=self.output_dir,
                    render_params=dict(delivery.render_params),
                    cancel_requested=cancel_event.is_set,
                    graceful_shutdown_seconds=self.graceful_shutdown_seconds,
                ),
            )
        except BackendRunError as error:
            logger.warning("Slave %s backend error on %s: %s", self.worker_id, attempt_id, error)
            self._count("failed")
            self.session.failed(attempt_id, str(error))
            return

        if result.cancelled:
            self._count("cancelled")
            return
        if result.timed_out:
            self._count("timed_out")
            self.session.failed(
                attempt_id,
                f"render timed out after {delivery.timeout_seconds}s",
                timed_out=True,
            )
            return
        if result.exit_code != 0:
            self._count("failed")
            self.session.failed(
                attempt_id,
                f"render exited with code {result.exit_code}: "
                f"{_tail(result.stderr_path) or 'no stderr output'}",
            )
            return
        self.session.progress(attempt_id, "render finished", progress=1.0)
        self.session.succeeded(attempt_id, result_ref=str(result.output_dir))
        self._count("succeeded")

    def _count(self, field_name: str) -> None:
        with self._summary_lock:
            setattr(self.summary, field_name, getattr(self.summary, field_name) + 1)


def _tail(path: Path) -> str:
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return ""
    return text.strip()[-_STDERR_TAIL_CHARS:]
