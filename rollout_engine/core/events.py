"""Event emitters for the deployment controller."""

import logging
from abc import ABC, abstractmethod
from threading import Lock
from typing import Iterable, List

from rollout_engine.core.events_model import DeploymentEvent

logger = logging.getLogger(__name__)


ALLOWED_EVENTS = {
    "attempt.requested",
    "attempt.state_changed",
    "attempt.finished",
    "attempt.cancel_requested",
}


def _check(event: DeploymentEvent) -> None:
    if event.event_type not in ALLOWED_EVENTS:
        raise ValueError(f"Invalid event type: {event.event_type}")
    if not event.attempt_id:
        raise ValueError("Event must have attempt_id")


class EventEmitter(ABC):
    """Abstract event emitter."""

    @abstractmethod
    def emit(self, events: Iterable[DeploymentEvent]) -> None:
        """Emit one or more events."""
        pass


class LoggingEventEmitter(EventEmitter):
    """Writes every event to the log."""

    def emit(self, events: Iterable[DeploymentEvent]) -> None:
        for event in events:
            _check(event)
            logger.info(
                f"[event] {event.event_type} | service={event.service_name} "
                f"attempt={event.attempt_id} {event.metadata}"
            )


class RecordingEventEmitter(EventEmitter):
    """Keeps events in memory (tests, status inspection)."""

    def __init__(self):
        self.events: List[DeploymentEvent] = []
        self._lock = Lock()

    def emit(self, events: Iterable[DeploymentEvent]) -> None:
        for event in events:
            _check(event)
            with self._lock:
                self.events.append(event)

    def of_type(self, event_type: str) -> List[DeploymentEvent]:
        with self._lock:
            return [e for e in self.events if e.event_type == event_type]


class MultiEventEmitter:
    """Fan-out to multiple emitters."""

    def __init__(self, emitters: Iterable[EventEmitter]):
        self._emitters = list(emitters)

    def emit(self, events: Iterable[DeploymentEvent]):
        """Emit to all emitters."""
        events = list(events)
        for emitter in self._emitters:
            emitter.emit(events)
