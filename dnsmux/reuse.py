"""A transport that sends one query at a time per connection and reuses idle ones."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Optional

import dns.message

from dnsmux.dns_conn import DnsConn
from dnsmux.transport import ClosedTransportError, IOOpts, slice_pop_latest

__all__ = ["ReuseConnOpts", "ReuseConnTransport"]

_MAX_ATTEMPT = 3


def _remaining(deadline: Optional[float]) -> Optional[float]:
    if deadline is None:
        return None
    return max(0.0, deadline - time.monotonic())


def _expired(deadline: Optional[float]) -> bool:
    return deadline is not None and time.monotonic() >= deadline


@dataclass
class ReuseConnOpts:
    """Options of a ReuseConnTransport."""

    io_opts: IOOpts


class ReuseConnTransport:
    """Gives each query a connection of its own, returning it to a pool afterwards.

    The most recently released connection is preferred. A connection whose
    query failed is closed instead of being pooled.
    """

    def __init__(self, opts: ReuseConnOpts) -> None:
        self._opts = opts
        self._lock = threading.Lock()
        self._closed = False
        self._idle: list[DnsConn] = []
        self._conns: set[DnsConn] = set()

    def exchange(self, query: dns.message.Message, timeout: Optional[float] = None) -> dns.message.Message:
        """Send ``query`` and return its reply.

        A query that failed on a reused connection is retried up to three
        times while time remains. Raises ClosedTransportError after close().
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        attempt = 0
        while True:
            attempt += 1
            dc, reused = self._get_reusable_conn()
            try:
                reply = dc.exchange(query, _remaining(deadline))
            except Exception as err:
                self._release(dc, err)
                if reused and attempt <= _MAX_ATTEMPT and not _expired(deadline):
                    continue
                raise
            self._release(dc, None)
            return reply

    def close(self) -> None:
        """Close the transport and all its connections. Later calls do nothing."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            conns = list(self._conns)
        for dc in conns:
            dc.close_with_err(ClosedTransportError())

    def __enter__(self) -> "ReuseConnTransport":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _stats(self) -> "tuple[int, int]":
        with self._lock:
            return len(self._conns), len(self._idle)

    def _get_reusable_conn(self) -> "tuple[DnsConn, bool]":
        with self._lock:
            if self._closed:
                raise ClosedTransportError()
            while self._idle:
                dc = slice_pop_latest(self._idle)
                if not dc.is_closed():
                    return dc, True
                self._conns.discard(dc)
            dc = DnsConn(self._opts.io_opts)
            self._conns.add(dc)
            return dc, False

    def _release(self, dc: DnsConn, err: Optional[BaseException]) -> None:
        close_err: Optional[BaseException] = None
        with self._lock:
            if self._closed:
                close_err = ClosedTransportError()
            elif err is not None:
                self._conns.discard(dc)
                close_err = err
            else:
                self._idle.append(dc)
        if close_err is not None:
            dc.close_with_err(close_err)