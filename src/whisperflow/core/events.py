"""Small synchronous publish/subscribe primitives shared by the core services."""

import threading
from typing import Callable, Generic, List, TypeVar

from ..utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

Unsubscribe = Callable[[], None]


class EventChannel(Generic[T]):
    """
    Fan-out channel for device-change, context-change and state-change events.

    Subscribers are called synchronously on the publishing thread, in
    subscription order. A failing subscriber is logged and does not stop
    delivery to the others.
    """

    def __init__(self, name: str = "events"):
        self.name = name
        self._subscribers: List[Callable[[T], None]] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Callable[[T], None]) -> Unsubscribe:
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event: T) -> None:
        with self._lock:
            subscribers = list(self._subscribers)

        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception(f"Subscriber on '{self.name}' failed for {event!r}")

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)


class CancellationToken:
    """Cooperative cancellation flag observed by capture and provider calls."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; returns True if cancelled meanwhile."""
        return self._event.wait(timeout)
