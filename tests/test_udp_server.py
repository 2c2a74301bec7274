import ipaddress
import socket
import threading

import dns.flags
import dns.message
import dns.rcode
import dns.rrset
import pytest

from dnsmux.entry_handler import EntryHandler, Handler
from dnsmux.udp_server import UDPServer, get_udp_size


def _answer_n(n):
    def entry(ctx):
        r = dns.message.make_response(ctx.query)
        ips = [f"10.0.{i // 256}.{i % 256}" for i in range(n)]
        r.answer.append(dns.rrset.from_text(ctx.query.question[0].name, 300, "IN", "A", *ips))
        ctx.response = r

    return entry


class _Raising(Handler):
    def serve_dns(self, ctx):
        raise RuntimeError("downstream broken")


def _start(server):
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))

    def run():
        try:
            server.serve_udp(sock)
        except ConnectionError:
            pass

    threading.Thread(target=run, daemon=True).start()
    return sock, sock.getsockname()


def _client():
    c = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    c.settimeout(3)
    return c


def test_get_udp_size_without_edns():
    assert get_udp_size(dns.message.make_query("example.com.", "A")) == 512


def test_get_udp_size_with_edns():
    q = dns.message.make_query("example.com.", "A", use_edns=0, payload=1232)
    assert get_udp_size(q) == 1232


def test_get_udp_size_small_edns_is_raised_to_minimum():
    q = dns.message.make_query("example.com.", "A", use_edns=0, payload=100)
    assert get_udp_size(q) == 512


def test_query_is_answered():
    seen = []

    def entry(ctx):
        seen.append(ctx.client_addr)
        _answer_n(1)(ctx)

    sock, addr = _start(UDPServer(EntryHandler(entry)))
    try:
        with _client() as c:
            q = dns.message.make_query("example.com.", "A")
            c.sendto(q.to_wire(), addr)
            r = dns.message.from_wire(c.recv(65535))
        assert r.id == q.id
        assert r.rcode() == dns.rcode.NOERROR
        assert r.answer[0][0].address == "10.0.0.0"
        assert not r.flags & dns.flags.TC
        assert seen == [ipaddress.ip_address("127.0.0.1")]
    finally:
        sock.close()


def test_invalid_packet_is_skipped():
    sock, addr = _start(UDPServer(EntryHandler(_answer_n(1))))
    try:
        with _client() as c:
            c.sendto(b"\x00\x01garbage", addr)
            q = dns.message.make_query("example.com.", "A")
            c.sendto(q.to_wire(), addr)
            r = dns.message.from_wire(c.recv(65535))
        assert r.id == q.id
    finally:
        sock.close()


def test_big_response_is_truncated():
    sock, addr = _start(UDPServer(EntryHandler(_answer_n(100))))
    try:
        with _client() as c:
            q = dns.message.make_query("example.com.", "A")
            c.sendto(q.to_wire(), addr)
            data = c.recv(65535)
        r = dns.message.from_wire(data)
        assert len(data) <= 512
        assert r.flags & dns.flags.TC
        count = sum(len(rrset) for rrset in r.answer)
        assert 0 < count < 100
        assert r.id == q.id
    finally:
        sock.close()


def test_big_response_fits_advertised_size():
    sock, addr = _start(UDPServer(EntryHandler(_answer_n(100))))
    try:
        with _client() as c:
            q = dns.message.make_query("example.com.", "A", use_edns=0, payload=4096)
            c.sendto(q.to_wire(), addr)
            r = dns.message.from_wire(c.recv(65535))
        assert not r.flags & dns.flags.TC
        assert sum(len(rrset) for rrset in r.answer) == 100
    finally:
        sock.close()


def test_handler_error_sends_nothing():
    sock, addr = _start(UDPServer(_Raising()))
    try:
        with _client() as c:
            c.settimeout(0.3)
            c.sendto(dns.message.make_query("example.com.", "A").to_wire(), addr)
            with pytest.raises(TimeoutError):
                c.recv(65535)
    finally:
        sock.close()


def test_serve_udp_raises_on_read_error():
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    sock.settimeout(0.05)
    try:
        with pytest.raises(ConnectionError):
            UDPServer(EntryHandler(_answer_n(1))).serve_udp(sock)
    finally:
        sock.close()