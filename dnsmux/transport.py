"""Options, errors, wire I/O and small helpers shared by the DNS transports."""

from __future__ import annotations

import random
import struct
import threading
from dataclasses import dataclass
from typing import Any, Callable, MutableSequence, Optional, TypeVar

import dns.message

__all__ = [
    "ClosedTransportError",
    "EndOfLifeError",
    "IOOpts",
    "IdleTimer",
    "DEFAULT_IDLE_TIMEOUT",
    "DEFAULT_DIAL_TIMEOUT",
    "DEFAULT_PIPELINE_MAX_CONNS",
    "WAITING_REPLY_TIMEOUT",
    "PIPELINE_BUSY_QUEUE_LEN",
    "slice_del",
    "slice_rand_get",
    "slice_rand_pop",
    "slice_pop_latest",
    "write_msg_to_tcp",
    "read_msg_from_tcp",
    "write_msg_to_udp",
    "read_msg_from_udp",
]

DEFAULT_IDLE_TIMEOUT = 10.0
DEFAULT_DIAL_TIMEOUT = 5.0
DEFAULT_PIPELINE_MAX_CONNS = 2

# A connection that sent a query but saw no reply at all (not even for other
# queries) within this time is considered dead and gets closed.
WAITING_REPLY_TIMEOUT = 10.0

PIPELINE_BUSY_QUEUE_LEN = 8

MAX_MSG_SIZE = 65535

T = TypeVar("T")


class ClosedTransportError(ConnectionError):
    """Raised when a transport is used after it was closed."""

    def __init__(self, message: str = "transport has been closed") -> None:
        super().__init__(message)


class EndOfLifeError(ConnectionError):
    """Raised on a connection retired after serving too many queries."""

    def __init__(self, message: str = "end of life") -> None:
        super().__init__(message)


@dataclass
class IOOpts:
    """How a transport opens connections and moves messages over them.

    ``dial_func(timeout)`` opens a connection, ``write_func(conn, msg)``
    writes a message and returns the bytes written, ``read_func(conn)``
    returns ``(msg, bytes_read)``. Timeouts are in seconds; zero or less
    selects the defaults.
    """

    dial_func: Callable[[float], Any]
    write_func: Callable[[Any, dns.message.Message], int]
    read_func: Callable[[Any], "tuple[dns.message.Message, int]"]
    dial_timeout: float = 0.0
    idle_timeout: float = 0.0


class IdleTimer:
    """Calls a function once a period passes without being reset.

    Once the function has run, or the timer was stopped, resets have no
    effect.
    """

    def __init__(self, d: float, f: Callable[[], Any]) -> None:
        self._d = d
        self._f = f
        self._lock = threading.Lock()
        self._stopped = False
        self._fired = False
        self._generation = 0
        self._timer = self._start(d)

    def _start(self, d: float) -> threading.Timer:
        timer = threading.Timer(d, self._fire, args=(self._generation,))
        timer.daemon = True
        timer.start()
        return timer

    def _fire(self, generation: int) -> None:
        with self._lock:
            if self._stopped or generation != self._generation:
                return
            self._fired = True
        self._f()

    def reset(self, d: float = 0) -> None:
        """Restart the countdown with ``d`` seconds, or the default if ``d <= 0``."""
        with self._lock:
            if self._stopped:
                return
            if self._fired:
                self._stopped = True
                return
            self._timer.cancel()
            self._generation += 1
            self._timer = self._start(d if d > 0 else self._d)

    def stop(self) -> None:
        """Cancel the timer for good."""
        with self._lock:
            self._stopped = True
            self._timer.cancel()


def slice_del(items: MutableSequence[T], i: int) -> None:
    """Remove the item at ``i`` by moving the last item into its place."""
    items[i] = items[-1]
    items.pop()


def slice_rand_get(items: MutableSequence[T], rng: Optional[random.Random] = None) -> "tuple[int, Optional[T]]":
    """Return a random ``(index, item)``, or ``(-1, None)`` if ``items`` is empty."""
    if not items:
        return -1, None
    if len(items) == 1:
        return 0, items[0]
    i = (rng or random).randrange(len(items))
    return i, items[i]


def slice_rand_pop(items: MutableSequence[T], rng: Optional[random.Random] = None) -> T:
    """Remove and return a random item. Raises IndexError if ``items`` is empty."""
    i, v = slice_rand_get(items, rng)
    if i == -1:
        raise IndexError("pop from empty list")
    slice_del(items, i)
    return v  # type: ignore[return-value]


def slice_pop_latest(items: MutableSequence[T]) -> T:
    """Remove and return the last item. Raises IndexError if ``items`` is empty."""
    if not items:
        raise IndexError("pop from empty list")
    i = len(items) - 1
    v = items[i]
    slice_del(items, i)
    return v


def _recv_exact(conn: Any, n: int) -> bytes:
    buf = bytearray()
    while len(buf) < n:
        chunk = conn.recv(n - len(buf))
        if not chunk:
            if buf:
                raise EOFError("unexpected EOF while reading message")
            raise EOFError("connection closed by peer")
        buf += chunk
    return bytes(buf)


def write_msg_to_tcp(conn: Any, msg: dns.message.Message) -> int:
    """Write ``msg`` with a two-byte length prefix. Returns the bytes written."""
    wire = msg.to_wire()
    if len(wire) > MAX_MSG_SIZE:
        raise ValueError(f"payload length {len(wire)} is greater than dns max msg size")
    frame = struct.pack("!H", len(wire)) + wire
    conn.sendall(frame)
    return len(frame)


def read_msg_from_tcp(conn: Any) -> "tuple[dns.message.Message, int]":
    """Read one length-prefixed message. Raises EOFError if the stream ends."""
    (length,) = struct.unpack("!H", _recv_exact(conn, 2))
    wire = _recv_exact(conn, length)
    return dns.message.from_wire(wire), length + 2


def write_msg_to_udp(conn: Any, msg: dns.message.Message) -> int:
    """Send ``msg`` as one datagram on a connected socket."""
    return conn.send(msg.to_wire())


def read_msg_from_udp(conn: Any, buf_size: int) -> "tuple[dns.message.Message, int]":
    """Receive one datagram of at most ``buf_size`` bytes and parse it."""
    data = conn.recv(buf_size)
    return dns.message.from_wire(data), len(data)