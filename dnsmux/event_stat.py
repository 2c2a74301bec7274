"""Observation of connection open and close events."""

from __future__ import annotations

import enum
import threading
from abc import ABC, abstractmethod
from typing import Any, Optional

__all__ = ["Event", "EventObserver", "NopObserver", "ConnWrapper", "wrap_conn"]


class Event(enum.IntEnum):
    CONN_OPEN = 0
    CONN_CLOSE = 1


class EventObserver(ABC):
    """Receives connection events."""

    @abstractmethod
    def on_event(self, event: Event) -> None:
        """Handle one event."""


class NopObserver(EventObserver):
    """An observer that ignores every event."""

    def on_event(self, event: Event) -> None:
        return None


class ConnWrapper:
    """Wraps a connection and reports its first close to an observer.

    Every other attribute is taken from the wrapped connection.
    """

    def __init__(self, conn: Any, observer: EventObserver) -> None:
        self._conn = conn
        self._observer = observer
        self._lock = threading.Lock()
        self._closed = False

    def close(self) -> Any:
        with self._lock:
            first = not self._closed
            self._closed = True
        if first:
            self._observer.on_event(Event.CONN_CLOSE)
        return self._conn.close()

    def __getattr__(self, name: str) -> Any:
        return getattr(self._conn, name)

    def __enter__(self) -> "ConnWrapper":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def wrap_conn(conn: Any, observer: EventObserver) -> Optional[Any]:
    """Wrap ``conn`` so that ``observer`` sees it open and close.

    Returns None for a None connection and ``conn`` itself for a NopObserver.
    """
    if conn is None:
        return None
    if isinstance(observer, NopObserver):
        return conn
    observer.on_event(Event.CONN_OPEN)
    return ConnWrapper(conn, observer)