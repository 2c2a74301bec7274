import socket
import threading

import dns.message
import dns.rcode
import dns.rrset
import pytest

from dnsmux.bootstrap import Bootstrap, BootstrapCache, new_bootstrap


class FakeServer:
    def __init__(self):
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.sock.bind(("127.0.0.1", 0))
        self.sock.settimeout(0.1)
        self.count = 0
        self.stop = threading.Event()
        self.thread = threading.Thread(target=self._serve, daemon=True)
        self.thread.start()

    @property
    def addr(self):
        host, port = self.sock.getsockname()
        return f"{host}:{port}"

    def _serve(self):
        while not self.stop.is_set():
            try:
                data, peer = self.sock.recvfrom(4096)
            except socket.timeout:
                continue
            except OSError:
                return
            q = dns.message.from_wire(data)
            self.count += 1
            r = dns.message.make_response(q)
            question = q.question[0]
            if question.name.to_text().startswith("missing"):
                r.set_rcode(dns.rcode.NXDOMAIN)
            elif question.rdtype == dns.rdatatype.A:
                r.answer.append(dns.rrset.from_text(question.name, 300, "IN", "A", "192.0.2.1"))
            self.sock.sendto(r.to_wire(), peer)


import dns.rdatatype  # noqa: E402


@pytest.fixture
def server():
    s = FakeServer()
    yield s
    s.stop.set()
    s.thread.join(1.0)
    s.sock.close()


def test_new_bootstrap_empty():
    assert new_bootstrap("") is None


@pytest.mark.parametrize(
    "given, want",
    [
        ("8.8.8.8", "8.8.8.8:53"),
        ("127.0.0.1:5353", "127.0.0.1:5353"),
        ("[::1]", "[::1]:53"),
        ("::1", "[::1]:53"),
        ("[::1]:5353", "[::1]:5353"),
    ],
)
def test_new_bootstrap_adds_port(given, want):
    assert new_bootstrap(given).upstream == want


def test_bootstrap_requires_port():
    with pytest.raises(ValueError):
        Bootstrap("8.8.8.8")


def test_query_is_cached(server):
    bs = Bootstrap(server.addr)
    q1 = dns.message.make_query("example.com.", "A")
    r1 = bs.query(q1)
    assert r1.answer[0][0].address == "192.0.2.1"
    assert server.count == 1

    q2 = dns.message.make_query("example.com.", "A")
    q2.id = (q1.id + 1) % 65536
    r2 = bs.query(q2)
    assert r2.id == q2.id
    assert r2.answer[0][0].address == "192.0.2.1"
    assert server.count == 1


def test_response_without_ip_is_not_cached(server):
    bs = Bootstrap(server.addr)
    bs.query(dns.message.make_query("example.com.", "AAAA"))
    bs.query(dns.message.make_query("example.com.", "AAAA"))
    assert server.count == 2
    assert len(bs.cache) == 0


def test_resolve(server):
    bs = Bootstrap(server.addr)
    assert bs.resolve("example.com") == ["192.0.2.1"]


def test_resolve_ip_literal_skips_server(server):
    bs = Bootstrap(server.addr)
    assert bs.resolve("192.0.2.7") == ["192.0.2.7"]
    assert server.count == 0


def test_resolve_missing_host(server):
    bs = Bootstrap(server.addr)
    with pytest.raises(LookupError, match="no such host"):
        bs.resolve("missing.example.com")


def _msg(name):
    return dns.message.make_query(name, "A")


def test_cache_lookup_missing():
    assert BootstrapCache().lookup(("k",)) is None


def test_cache_ignores_non_positive_ttl():
    cache = BootstrapCache()
    cache.store("a", _msg("a."), 0)
    cache.store("b", _msg("b."), -1)
    assert len(cache) == 0
    assert cache.lookup("a") is None


def test_cache_evicts_to_size():
    cache = BootstrapCache(size=2)
    for name in ("a", "b", "c", "d"):
        cache.store(name, _msg(name + "."), 60)
        assert len(cache) <= 2
    assert cache.lookup("d").question[0].name.to_text() == "d."
    assert cache.lookup("a") is None


def test_cache_default_size():
    cache = BootstrapCache()
    for i in range(20):
        cache.store(i, _msg(f"n{i}."), 60)
    assert len(cache) == 8


def test_cache_expiry():
    now = [100.0]
    cache = BootstrapCache(clock=lambda: now[0])
    msg = _msg("a.")
    cache.store("a", msg, 10)
    assert cache.lookup("a") is msg
    now[0] = 111.0
    assert cache.lookup("a") is None
    assert len(cache) == 0