"""Minimal typed publish/subscribe primitives.

An :class:`EventEmitter` holds an ordered list of listeners. Subscribing
returns a :class:`Subscription` whose :meth:`~Subscription.dispose` removes
the listener again. Listeners run synchronously on the emitting thread, in
subscription order; an exception raised by one listener is logged and does
not prevent the others from running or propagate to the emitter.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Subscription:
    """Handle returned by :meth:`EventEmitter.subscribe`. Disposing twice is a no-op."""

    def __init__(self, dispose: Callable[[], None]) -> None:
        self._dispose = dispose
        self._disposed = False

    @property
    def disposed(self) -> bool:
        return self._disposed

    def dispose(self) -> None:
        if not self._disposed:
            self._disposed = True
            self._dispose()


class EventEmitter(Generic[T]):
    """A single named event carrying payloads of type ``T``.

    Args:
        name: Event name used in log messages.
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._listeners: list[Callable[[T], None]] = []
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return self._name

    def subscribe(self, listener: Callable[[T], None]) -> Subscription:
        with self._lock:
            self._listeners.append(listener)
        return Subscription(lambda: self._remove(listener))

    def emit(self, payload: T) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(payload)
            except Exception:
                logger.exception("Listener for '%s' raised", self._name)

    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)

    def clear(self) -> None:
        with self._lock:
            self._listeners.clear()

    def _remove(self, listener: Callable[[T], None]) -> None:
        with self._lock:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass
