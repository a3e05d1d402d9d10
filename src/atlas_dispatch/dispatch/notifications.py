"""In-process notification channel for job/task/attempt status changes."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from atlas_dispatch.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class StatusChange:
    """One status transition, as published to subscribers."""

    entity: str
    entity_id: str
    job_id: str
    status_from: str | None
    status_to: str
    details: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utc_now)


Subscriber = Callable[[StatusChange], None]


class StatusNotifier(Protocol):
    """Sink for status changes (web layer bridge, metrics, tests)."""

    def publish(self, change: StatusChange) -> None:
        """Deliver one status change."""


class NotificationHub:
    """Fan-out publisher; a failing subscriber never breaks dispatch."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: list[tuple[Subscriber, frozenset[str] | None]] = []

    def subscribe(
        self,
        callback: Subscriber,
        *,
        entities: tuple[str, ...] | None = None,
    ) -> Callable[[], None]:
        """Register a callback; returns a function that unsubscribes it."""

        entry = (callback, frozenset(entities) if entities else None)
        with self._lock:
            self._subscribers.append(entry)

        def _unsubscribe() -> None:
            with self._lock:
                if entry in self._subscribers:
                    self._subscribers.remove(entry)

        return _unsubscribe

    def publish(self, change: StatusChange) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        logger.debug(
            "%s %s: %s -> %s",
            change.entity,
            change.entity_id,
            change.status_from or "-",
            change.status_to,
        )
        for callback, entities in subscribers:
            if entities is not None and change.entity not in entities:
                continue
            try:
                callback(change)
            except Exception:
                logger.exception(
                    "Status subscriber failed for %s %s",
                    change.entity,
                    change.entity_id,
                )
