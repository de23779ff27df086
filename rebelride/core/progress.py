"""Append-only progress stream shared between the session and its observers."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from rebelride.core.model import ProgressEvent

LOGGER = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], None]


class ProgressLog:
    """Ordered, append-only sequence of progress lines.

    Events are never mutated once appended. Readers either take a snapshot with
    `lines()`/`events()` or register a callback with `subscribe()`; callbacks run
    on whichever context appended the event.
    """

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._events: list[ProgressEvent] = []
        self._subscribers: list[ProgressCallback] = []
        self._lock = threading.Lock()
        self._logger = logger or LOGGER

    def append(self, message: str, level: int = logging.INFO) -> ProgressEvent:
        event = ProgressEvent(message=message, level=level)
        with self._lock:
            self._events.append(event)
            subscribers = tuple(self._subscribers)
        self._logger.log(level, message)
        for callback in subscribers:
            callback(event)
        return event

    def error(self, message: str) -> ProgressEvent:
        return self.append(message, logging.ERROR)

    def warning(self, message: str) -> ProgressEvent:
        return self.append(message, logging.WARNING)

    def events(self) -> tuple[ProgressEvent, ...]:
        with self._lock:
            return tuple(self._events)

    def lines(self) -> list[str]:
        return [event.message for event in self.events()]

    def clear(self) -> None:
        with self._lock:
            self._events = []

    def subscribe(self, callback: ProgressCallback) -> Callable[[], None]:
        """Register ``callback`` for future events and return an unsubscribe function."""
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe
