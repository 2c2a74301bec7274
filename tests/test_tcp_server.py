import datetime
import ipaddress
import socket
import ssl
import threading
import time

import dns.message
import dns.rcode
import dns.rrset
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from dnsmux.entry_handler import EntryHandler, Handler
from dnsmux.tcp_server import TCPServer, load_cert
from dnsmux.transport import read_msg_from_tcp, write_msg_to_tcp


def _answer(ctx):
    r = dns.message.make_response(ctx.query)
    r.answer.append(dns.rrset.from_text(ctx.query.question[0].name, 300, "IN", "A", "192.0.2.1"))
    ctx.response = r


class _Raising(Handler):
    def serve_dns(self, ctx):
        raise RuntimeError("downstream broken")


def _start(server):
    listener = socket.create_server(("127.0.0.1", 0))
    threading.Thread(target=lambda: _run(server, listener), daemon=True).start()
    return listener, listener.getsockname()


def _run(server, listener):
    try:
        server.serve_tcp(listener)
    except ConnectionError:
        pass


def _stop(listener):
    try:
        listener.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    listener.close()


def test_query_is_answered():
    seen = []

    def entry(ctx):
        seen.append(ctx.client_addr)
        _answer(ctx)

    listener, addr = _start(TCPServer(EntryHandler(entry)))
    try:
        with socket.create_connection(addr, timeout=3) as c:
            q = dns.message.make_query("example.com.", "A")
            write_msg_to_tcp(c, q)
            r, _ = read_msg_from_tcp(c)
        assert r.id == q.id
        assert r.rcode() == dns.rcode.NOERROR
        assert r.answer[0][0].address == "192.0.2.1"
        assert seen == [ipaddress.ip_address("127.0.0.1")]
    finally:
        _stop(listener)


def test_many_queries_on_one_connection():
    listener, addr = _start(TCPServer(EntryHandler(_answer)))
    try:
        with socket.create_connection(addr, timeout=3) as c:
            ids = set(range(1, 11))
            for qid in ids:
                q = dns.message.make_query("example.com.", "A")
                q.id = qid
                write_msg_to_tcp(c, q)
            got = {read_msg_from_tcp(c)[0].id for _ in ids}
        assert got == ids
    finally:
        _stop(listener)


def test_idle_connection_is_closed():
    listener, addr = _start(TCPServer(EntryHandler(_answer), idle_timeout=0.2))
    try:
        with socket.create_connection(addr, timeout=3) as c:
            assert c.recv(1) == b""
    finally:
        _stop(listener)


def test_first_read_timeout_is_short():
    listener, addr = _start(TCPServer(EntryHandler(_answer)))
    try:
        with socket.create_connection(addr, timeout=5) as c:
            start = time.monotonic()
            data = c.recv(1)
            elapsed = time.monotonic() - start
        assert data == b""
        assert elapsed < 3
    finally:
        _stop(listener)


def test_handler_error_closes_connection():
    listener, addr = _start(TCPServer(_Raising()))
    try:
        with socket.create_connection(addr, timeout=3) as c:
            write_msg_to_tcp(c, dns.message.make_query("example.com.", "A"))
            with pytest.raises(EOFError):
                read_msg_from_tcp(c)
    finally:
        _stop(listener)


def test_serve_tcp_raises_on_accept_error():
    listener = socket.create_server(("127.0.0.1", 0))
    listener.settimeout(0.05)
    try:
        with pytest.raises(ConnectionError):
            TCPServer(EntryHandler(_answer)).serve_tcp(listener)
    finally:
        listener.close()


def _write_cert(tmp_path):
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "test")])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(minutes=1))
        .not_valid_after(now + datetime.timedelta(days=1))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName("test")]), critical=False)
        .sign(key, hashes.SHA256())
    )
    cert_path = tmp_path / "cert.pem"
    key_path = tmp_path / "key.pem"
    cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    key_path.write_bytes(
        key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
    )
    return cert, str(cert_path), str(key_path)


def _peer_certificate(server_ctx):
    """Complete a TLS handshake against server_ctx and return the DER it served."""
    client_ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    client_ctx.check_hostname = False
    client_ctx.verify_mode = ssl.CERT_NONE

    a, b = socket.socketpair()
    a.settimeout(5)
    b.settimeout(5)
    wrapped = []
    t = threading.Thread(target=lambda: wrapped.append(server_ctx.wrap_socket(a, server_side=True)))
    t.start()
    try:
        client = client_ctx.wrap_socket(b, server_hostname="test")
        peer = client.getpeercert(binary_form=True)
        client.close()
    finally:
        t.join(5)
        for s in wrapped:
            s.close()
        a.close()
    return peer


def test_load_cert_serves_certificate(tmp_path):
    cert, cert_path, key_path = _write_cert(tmp_path)
    server_ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    load_cert(server_ctx, cert_path, key_path)
    assert _peer_certificate(server_ctx) == cert.public_bytes(serialization.Encoding.DER)


def test_load_cert_missing_file(tmp_path):
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    with pytest.raises(OSError):
        load_cert(ctx, str(tmp_path / "missing.pem"), str(tmp_path / "missing.key"))