import socket
import threading

import pytest

from dnsmux.event_stat import ConnWrapper, Event, EventObserver, NopObserver, wrap_conn


class Recorder(EventObserver):
    def __init__(self):
        self.events = []
        self._lock = threading.Lock()

    def on_event(self, event):
        with self._lock:
            self.events.append(event)


class FakeConn:
    def __init__(self):
        self.close_calls = 0
        self.payload = b"data"

    def close(self):
        self.close_calls += 1
        return "closed"


def test_wrap_none_returns_none():
    rec = Recorder()
    assert wrap_conn(None, rec) is None
    assert rec.events == []


def test_wrap_with_nop_observer_returns_same_conn():
    conn = FakeConn()
    assert wrap_conn(conn, NopObserver()) is conn


def test_wrap_reports_open():
    rec = Recorder()
    wrapped = wrap_conn(FakeConn(), rec)
    assert isinstance(wrapped, ConnWrapper)
    assert rec.events == [Event.CONN_OPEN]


def test_close_reported_once_but_conn_closed_each_time():
    rec = Recorder()
    conn = FakeConn()
    wrapped = wrap_conn(conn, rec)
    assert wrapped.close() == "closed"
    wrapped.close()
    assert rec.events == [Event.CONN_OPEN, Event.CONN_CLOSE]
    assert conn.close_calls == 2


def test_concurrent_close_reports_once():
    rec = Recorder()
    wrapped = wrap_conn(FakeConn(), rec)
    threads = [threading.Thread(target=wrapped.close) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert rec.events.count(Event.CONN_CLOSE) == 1


def test_attributes_are_delegated():
    wrapped = wrap_conn(FakeConn(), Recorder())
    assert wrapped.payload == b"data"
    with pytest.raises(AttributeError):
        wrapped.missing_attribute


def test_wrapped_socket_works_and_context_manager_closes():
    rec = Recorder()
    a, b = socket.socketpair()
    with b, wrap_conn(a, rec) as wrapped:
        wrapped.sendall(b"ping")
        assert b.recv(4) == b"ping"
    assert rec.events == [Event.CONN_OPEN, Event.CONN_CLOSE]
    assert a.fileno() == -1


def test_nop_observer_ignores_events():
    assert NopObserver().on_event(Event.CONN_OPEN) is None