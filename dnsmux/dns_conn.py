"""A single DNS connection that multiplexes queries by message id."""

from __future__ import annotations

import copy
import socket
import threading
import time
from typing import Any, Optional

import dns.message

from dnsmux.transport import (
    DEFAULT_DIAL_TIMEOUT,
    DEFAULT_IDLE_TIMEOUT,
    WAITING_REPLY_TIMEOUT,
    IdleTimer,
    IOOpts,
)

__all__ = ["DnsConn"]


def _close_conn(conn: Any) -> None:
    # Shutting down first wakes up a reader blocked on the connection.
    shutdown = getattr(conn, "shutdown", None)
    if shutdown is not None:
        try:
            shutdown(socket.SHUT_RDWR)
        except (OSError, ValueError):
            pass
    try:
        conn.close()
    except OSError:
        pass


def _remaining(deadline: Optional[float]) -> Optional[float]:
    if deadline is None:
        return None
    return max(0.0, deadline - time.monotonic())


class _Waiter:
    def __init__(self) -> None:
        self.event = threading.Event()
        self.msg: Optional[dns.message.Message] = None

    def deliver(self, msg: dns.message.Message) -> None:
        if not self.event.is_set():
            self.msg = msg
            self.event.set()


class DnsConn:
    """A connection dialled in the background and read by its own thread.

    Replies are routed to waiting queries by message id. The connection
    closes itself after being idle, or when a sent query sees no reply of
    any kind for a while.
    """

    def __init__(self, opts: IOOpts) -> None:
        self._opts = opts
        self._cond = threading.Condition()
        self._closed = False
        self._close_err: Optional[BaseException] = None
        self._conn: Any = None
        self._idle_timer: Optional[IdleTimer] = None
        self._waiting_reply = False
        self._write_lock = threading.Lock()
        self._queue_lock = threading.Lock()
        self._queue: dict[int, _Waiter] = {}
        threading.Thread(target=self._dial_and_read, daemon=True).start()

    def exchange(self, query: dns.message.Message, timeout: Optional[float] = None) -> dns.message.Message:
        """Send ``query`` and wait for the reply with the same id.

        Raises TimeoutError if ``timeout`` seconds pass, ValueError if a
        query with the same id is already in flight, and the connection's
        close error if it is or becomes closed.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            ready = self._cond.wait_for(
                lambda: self._closed or self._conn is not None, _remaining(deadline)
            )
            if self._closed:
                raise self._close_err  # type: ignore[misc]
            if not ready:
                raise TimeoutError("timed out waiting for the connection")
            conn, timer = self._conn, self._idle_timer

        qid = query.id
        waiter = _Waiter()
        with self._queue_lock:
            if self._closed:
                raise self._close_err  # type: ignore[misc]
            if qid in self._queue:
                raise ValueError(f"duplicated qid {qid}")
            self._queue[qid] = waiter

        try:
            # A healthy server replies to something soon after a query is sent.
            with self._cond:
                start_waiting = not self._waiting_reply
                self._waiting_reply = True
            if start_waiting:
                timer.reset(WAITING_REPLY_TIMEOUT)

            try:
                with self._write_lock:
                    self._opts.write_func(conn, query)
            except Exception as err:
                self.close_with_err(err)
                raise

            if not waiter.event.wait(_remaining(deadline)):
                raise TimeoutError("timed out waiting for the reply")
            if waiter.msg is None:
                raise self._close_err  # type: ignore[misc]
            return waiter.msg
        finally:
            with self._queue_lock:
                self._queue.pop(qid, None)

    def exchange_pipeline(
        self,
        query: dns.message.Message,
        allocated_qid: int,
        timeout: Optional[float] = None,
    ) -> dns.message.Message:
        """Send ``query`` under ``allocated_qid``; the reply gets the query's id back."""
        q_send = copy.copy(query)
        q_send.id = allocated_qid
        reply = self.exchange(q_send, timeout)
        reply.id = query.id
        return reply

    def close_with_err(self, err: BaseException) -> None:
        """Close the connection; waiting and later exchanges raise ``err``.

        Calls after the first do nothing.
        """
        with self._cond:
            if self._closed:
                return
            self._close_err = err
            self._closed = True
            conn, timer = self._conn, self._idle_timer
            self._cond.notify_all()
        with self._queue_lock:
            waiters = list(self._queue.values())
        for waiter in waiters:
            waiter.event.set()
        if conn is not None:
            _close_conn(conn)
            if timer is not None:
                timer.stop()

    def is_closed(self) -> bool:
        return self._closed

    def queue_len(self) -> int:
        """Number of queries waiting for a reply."""
        with self._queue_lock:
            return len(self._queue)

    def _dial_and_read(self) -> None:
        dial_timeout = self._opts.dial_timeout if self._opts.dial_timeout > 0 else DEFAULT_DIAL_TIMEOUT
        try:
            conn = self._opts.dial_func(dial_timeout)
        except Exception as err:
            wrapped = ConnectionError(f"failed to dial, {err}")
            wrapped.__cause__ = err
            self.close_with_err(wrapped)
            return

        idle_timeout = self._opts.idle_timeout if self._opts.idle_timeout > 0 else DEFAULT_IDLE_TIMEOUT
        with self._cond:
            if self._closed:
                _close_conn(conn)
                return
            self._conn = conn
            self._idle_timer = IdleTimer(idle_timeout, lambda: _close_conn(conn))
            self._cond.notify_all()
        self._read_loop(conn)

    def _read_loop(self, conn: Any) -> None:
        timer = self._idle_timer
        while True:
            timer.reset(0)
            try:
                msg, _ = self._opts.read_func(conn)
            except Exception as err:
                self.close_with_err(err)
                return
            with self._cond:
                self._waiting_reply = False
            with self._queue_lock:
                waiter = self._queue.get(msg.id)
            if waiter is not None:
                waiter.deliver(msg)