"""A transport that pipelines queries over a few shared connections."""

from __future__ import annotations

import random
import threading
import time
from dataclasses import dataclass
from typing import Optional

import dns.message

from dnsmux.dns_conn import DnsConn
from dnsmux.transport import (
    DEFAULT_PIPELINE_MAX_CONNS,
    PIPELINE_BUSY_QUEUE_LEN,
    ClosedTransportError,
    EndOfLifeError,
    IOOpts,
    slice_del,
    slice_rand_get,
)

__all__ = ["PipelineOpts", "PipelineTransport"]

_MAX_ATTEMPT = 3
_MAX_SERVED = 65535


def _remaining(deadline: Optional[float]) -> Optional[float]:
    if deadline is None:
        return None
    return max(0.0, deadline - time.monotonic())


def _expired(deadline: Optional[float]) -> bool:
    return deadline is not None and time.monotonic() >= deadline


@dataclass
class PipelineOpts:
    """Options of a PipelineTransport.

    ``max_conn`` caps the connections open at once, dialling ones included;
    zero or less selects the default of 2.
    """

    io_opts: IOOpts
    max_conn: int = 0


class _PipelineConn:
    """A connection in the pool together with its in-flight query count."""

    def __init__(self, dc: DnsConn) -> None:
        self.dc = dc
        self.served = 0  # guarded by the transport's lock
        self._cond = threading.Condition()
        self._inflight = 0

    def acquire(self) -> None:
        with self._cond:
            self._inflight += 1

    def done(self) -> None:
        with self._cond:
            self._inflight -= 1
            if self._inflight == 0:
                self._cond.notify_all()

    def retire(self) -> None:
        """Close the connection once every query on it has finished."""
        with self._cond:
            self._cond.wait_for(lambda: self._inflight == 0)
        self.dc.close_with_err(EndOfLifeError())


class PipelineTransport:
    """Sends queries over a small pool of connections, many at a time on each.

    A new connection is opened when the pool is empty, or when the picked
    connection is busy and the pool has room. A connection retires after
    serving 65535 queries. Works for UDP sockets too, which are naturally
    pipelined.
    """

    def __init__(self, opts: PipelineOpts, rng: Optional[random.Random] = None) -> None:
        self._opts = opts
        self._rng = rng or random.Random()
        self._lock = threading.Lock()
        self._closed = False
        self._conns: list[_PipelineConn] = []

    def exchange(self, query: dns.message.Message, timeout: Optional[float] = None) -> dns.message.Message:
        """Send ``query`` and return its reply.

        A query that failed on a reused connection is retried up to three
        times while time remains. Raises ClosedTransportError after close().
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        attempt = 0
        while True:
            pc, qid, is_new = self._get_pipeline_conn()
            try:
                return pc.dc.exchange_pipeline(query, qid, _remaining(deadline))
            except Exception:
                if is_new or attempt >= _MAX_ATTEMPT or _expired(deadline):
                    raise
                attempt += 1
            finally:
                pc.done()

    def close(self) -> None:
        """Close the transport and all its connections. Later calls do nothing."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            conns = list(self._conns)
        for pc in conns:
            pc.dc.close_with_err(ClosedTransportError())

    def __enter__(self) -> "PipelineTransport":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _conn_count(self) -> int:
        with self._lock:
            return len(self._conns)

    def _get_pipeline_conn(self) -> "tuple[_PipelineConn, int, bool]":
        with self._lock:
            if self._closed:
                raise ClosedTransportError()

            index, pc = self._pick_locked()
            max_conn = self._opts.max_conn if self._opts.max_conn > 0 else DEFAULT_PIPELINE_MAX_CONNS
            is_new = False
            if pc is None or (
                pc.dc.queue_len() > PIPELINE_BUSY_QUEUE_LEN and len(self._conns) < max_conn
            ):
                pc = _PipelineConn(DnsConn(self._opts.io_opts))
                self._conns.append(pc)
                index = len(self._conns) - 1
                is_new = True

            pc.acquire()
            pc.served += 1
            qid = pc.served
            if qid == _MAX_SERVED:
                # Queries may still run on it, so it is closed only once they finish.
                slice_del(self._conns, index)
                threading.Thread(target=pc.retire, daemon=True).start()
            return pc, qid, is_new

    def _pick_locked(self) -> "tuple[int, Optional[_PipelineConn]]":
        while True:
            index, pc = slice_rand_get(self._conns, self._rng)
            if pc is not None and pc.dc.is_closed():
                slice_del(self._conns, index)
                continue
            return index, pc