"""Build DNS upstreams from server addresses such as ``tls://1.1.1.1``.

Supported schemes are ``udp`` (the default, with TCP fallback for truncated
replies), ``tcp``, ``tls`` and ``https``.
"""

from __future__ import annotations

import ipaddress
import logging
import socket
import ssl
import sys
import time
from dataclasses import dataclass
from typing import Any, Optional, Union
from urllib.parse import urlsplit

import dns.flags
import dns.message
import httpx

from dnsmux.bootstrap import Bootstrap, new_bootstrap
from dnsmux.doh import DoHUpstream
from dnsmux.event_stat import EventObserver, NopObserver, wrap_conn
from dnsmux.pipeline import PipelineOpts, PipelineTransport
from dnsmux.reuse import ReuseConnOpts, ReuseConnTransport
from dnsmux.transport import (
    IOOpts,
    read_msg_from_tcp,
    read_msg_from_udp,
    write_msg_to_tcp,
    write_msg_to_udp,
)

__all__ = [
    "Opt",
    "SocketOpts",
    "UdpWithFallback",
    "new_upstream",
    "get_dial_addr_with_port",
    "try_remove_port",
    "apply_socket_opts",
    "dial_tcp",
]

_IS_LINUX = sys.platform.startswith("linux")
_SO_MARK = getattr(socket, "SO_MARK", 36)
_SO_BINDTODEVICE = getattr(socket, "SO_BINDTODEVICE", 25)

_UDP_IDLE_TIMEOUT = 300.0
_DOH_IDLE_TIMEOUT = 30.0
_DOH_MAX_CONNS = 2
_DEFAULT_DIAL_TIMEOUT = 5.0

_log = logging.getLogger(__name__)


@dataclass
class SocketOpts:
    """Socket options applied to outgoing sockets (Linux only)."""

    so_mark: int = 0
    bind_to_device: str = ""


@dataclass
class Opt:
    """Options for new_upstream.

    ``dial_addr`` overrides the address actually dialled. ``socks5`` is a
    ``host:port`` SOCKS5 proxy for TCP and TLS upstreams. ``idle_timeout``
    (seconds) defaults to 10 for TCP/TLS and 30 for HTTPS. ``max_conns``
    limits pipelined and HTTPS connections. ``bootstrap`` is a plain DNS
    server used to resolve the upstream's host name. ``tls_context`` and
    ``server_name`` configure TLS for ``tls`` and ``https`` upstreams.
    """

    dial_addr: str = ""
    socks5: str = ""
    so_mark: int = 0
    bind_to_device: str = ""
    idle_timeout: float = 0.0
    enable_pipeline: bool = False
    enable_http3: bool = False
    max_conns: int = 0
    bootstrap: str = ""
    tls_context: Optional[ssl.SSLContext] = None
    server_name: str = ""
    logger: Optional[logging.Logger] = None
    event_observer: Optional[EventObserver] = None


def _split_host_port(s: str) -> "tuple[str, str]":
    if s.startswith("["):
        end = s.find("]")
        if end < 0:
            raise ValueError(f"missing ']' in address {s!r}")
        host, rest = s[1:end], s[end + 1:]
        if not rest:
            raise ValueError(f"missing port in address {s!r}")
        if not rest.startswith(":"):
            raise ValueError(f"unexpected text after ']' in address {s!r}")
        port = rest[1:]
    else:
        colons = s.count(":")
        if colons == 0:
            raise ValueError(f"missing port in address {s!r}")
        if colons > 1:
            raise ValueError(f"too many colons in address {s!r}")
        host, port = s.split(":")
    if "[" in host or "]" in host:
        raise ValueError(f"unexpected bracket in address {s!r}")
    return host, port


def _join_host_port(host: str, port: Union[str, int]) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def get_dial_addr_with_port(host: str, dial_addr: str, default_port: int) -> str:
    """Return ``dial_addr`` (or ``host``) with ``default_port`` added if it has none."""
    addr = dial_addr if dial_addr else host
    try:
        _split_host_port(addr)
    except ValueError:
        return _join_host_port(addr.strip("[]"), default_port)
    return addr


def try_remove_port(s: str) -> str:
    """Return the host part of ``host:port``, or ``s`` unchanged if it has no port."""
    try:
        host, _ = _split_host_port(s)
    except ValueError:
        return s
    return host


def apply_socket_opts(sock: socket.socket, opts: SocketOpts) -> None:
    """Set SO_MARK and SO_BINDTODEVICE on ``sock``; does nothing off Linux.

    Raises OSError if an option cannot be set.
    """
    if not _IS_LINUX:
        return
    if opts.so_mark > 0:
        try:
            sock.setsockopt(socket.SOL_SOCKET, _SO_MARK, opts.so_mark)
        except OSError as exc:
            raise OSError(exc.errno, f"failed to set SO_MARK: {exc.strerror}") from exc
    if opts.bind_to_device:
        try:
            sock.setsockopt(socket.SOL_SOCKET, _SO_BINDTODEVICE, opts.bind_to_device.encode())
        except OSError as exc:
            raise OSError(exc.errno, f"failed to set SO_BINDTODEVICE: {exc.strerror}") from exc


def _remaining(deadline: float) -> float:
    return max(0.001, deadline - time.monotonic())


def _dial(
    network: str,
    addr: str,
    timeout: float,
    socket_opts: SocketOpts,
    bootstrap: Optional[Bootstrap],
) -> socket.socket:
    host, port_text = _split_host_port(addr)
    port = int(port_text)
    socktype = socket.SOCK_STREAM if network == "tcp" else socket.SOCK_DGRAM
    deadline = time.monotonic() + timeout
    hosts = bootstrap.resolve(host) if bootstrap is not None else [host]
    last_err: Optional[BaseException] = None
    for h in hosts:
        try:
            infos = socket.getaddrinfo(h, port, 0, socktype)
        except OSError as exc:
            last_err = exc
            continue
        for family, stype, proto, _, sockaddr in infos:
            sock = socket.socket(family, stype, proto)
            try:
                apply_socket_opts(sock, socket_opts)
                sock.settimeout(_remaining(deadline))
                sock.connect(sockaddr)
                sock.settimeout(None)
                return sock
            except OSError as exc:
                sock.close()
                last_err = exc
    if last_err is not None:
        raise last_err
    raise OSError(f"no address found for {host}")


def _recv_exact(sock: socket.socket, n: int) -> bytes:
    buf = bytearray()
    while len(buf) < n:
        chunk = sock.recv(n - len(buf))
        if not chunk:
            raise ConnectionError("socks5: unexpected EOF from proxy")
        buf += chunk
    return bytes(buf)


def _socks5_connect(sock: socket.socket, addr: str) -> None:
    host, port_text = _split_host_port(addr)
    port = int(port_text)
    sock.sendall(b"\x05\x01\x00")
    version, method = _recv_exact(sock, 2)
    if version != 5:
        raise ConnectionError(f"socks5: unexpected protocol version {version}")
    if method != 0:
        raise ConnectionError("socks5: no acceptable authentication methods")

    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        name = host.encode("idna")
        if len(name) > 255:
            raise ValueError(f"socks5: host name too long: {host}") from None
        target = b"\x03" + bytes([len(name)]) + name
    else:
        target = (b"\x01" if ip.version == 4 else b"\x04") + ip.packed
    sock.sendall(b"\x05\x01\x00" + target + port.to_bytes(2, "big"))

    head = _recv_exact(sock, 4)
    if head[0] != 5:
        raise ConnectionError(f"socks5: unexpected protocol version {head[0]}")
    if head[1] != 0:
        raise ConnectionError(f"socks5: connect failed with code {head[1]}")
    atyp = head[3]
    if atyp == 1:
        _recv_exact(sock, 4 + 2)
    elif atyp == 4:
        _recv_exact(sock, 16 + 2)
    elif atyp == 3:
        length = _recv_exact(sock, 1)[0]
        _recv_exact(sock, length + 2)
    else:
        raise ConnectionError(f"socks5: unknown address type {atyp}")


def dial_tcp(
    addr: str,
    socks5: str,
    timeout: float,
    socket_opts: SocketOpts,
    bootstrap: Optional[Bootstrap],
) -> socket.socket:
    """Open a TCP connection to ``addr``, through the SOCKS5 proxy ``socks5`` if given."""
    if not socks5:
        return _dial("tcp", addr, timeout, socket_opts, bootstrap)
    deadline = time.monotonic() + timeout
    sock = _dial("tcp", socks5, timeout, socket_opts, bootstrap)
    try:
        sock.settimeout(_remaining(deadline))
        _socks5_connect(sock, addr)
        sock.settimeout(None)
    except BaseException:
        sock.close()
        raise
    return sock


def _dial_tls(
    addr: str,
    socks5: str,
    context: ssl.SSLContext,
    server_name: str,
    timeout: float,
    socket_opts: SocketOpts,
    bootstrap: Optional[Bootstrap],
    observer: EventObserver,
) -> Any:
    deadline = time.monotonic() + timeout
    raw = dial_tcp(addr, socks5, timeout, socket_opts, bootstrap)
    try:
        tls = context.wrap_socket(
            raw, server_hostname=server_name or None, do_handshake_on_connect=False
        )
    except BaseException:
        raw.close()
        raise
    conn = wrap_conn(tls, observer)
    try:
        tls.settimeout(_remaining(deadline))
        tls.do_handshake()
        tls.settimeout(None)
    except BaseException:
        conn.close()
        raise
    return conn


class UdpWithFallback:
    """Queries over UDP and repeats the query over TCP when the reply is truncated."""

    def __init__(
        self,
        udp: PipelineTransport,
        tcp: ReuseConnTransport,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.udp = udp
        self.tcp = tcp
        self._logger = logger or _log

    def exchange(self, query: dns.message.Message, timeout: Optional[float] = None) -> dns.message.Message:
        """Send ``query`` and return its reply."""
        deadline = None if timeout is None else time.monotonic() + timeout
        reply = self.udp.exchange(query, timeout)
        if reply.flags & dns.flags.TC:
            self._logger.debug("udp reply truncated, retrying over tcp")
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            return self.tcp.exchange(query, remaining)
        return reply

    def close(self) -> None:
        self.udp.close()
        self.tcp.close()

    def __enter__(self) -> "UdpWithFallback":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class _DialAddrTransport(httpx.BaseTransport):
    """Sends every request to a fixed address, keeping the original host for TLS."""

    def __init__(
        self,
        inner: httpx.BaseTransport,
        dial_addr: str,
        bootstrap: Optional[Bootstrap],
    ) -> None:
        self._inner = inner
        self._dial_addr = dial_addr
        self._bootstrap = bootstrap

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        host, port = _split_host_port(self._dial_addr)
        if self._bootstrap is not None:
            host = self._bootstrap.resolve(host)[0]
        original_host = request.url.host
        request.url = request.url.copy_with(host=host, port=int(port))
        request.extensions = {**request.extensions, "sni_hostname": original_host}
        return self._inner.handle_request(request)

    def close(self) -> None:
        self._inner.close()


def _httpx_socket_options(opts: SocketOpts) -> list:
    if not _IS_LINUX:
        return []
    options = []
    if opts.so_mark > 0:
        options.append((socket.SOL_SOCKET, _SO_MARK, opts.so_mark))
    if opts.bind_to_device:
        options.append((socket.SOL_SOCKET, _SO_BINDTODEVICE, opts.bind_to_device.encode()))
    return options


Upstream = Union[UdpWithFallback, PipelineTransport, ReuseConnTransport, DoHUpstream]


def new_upstream(addr: str, opt: Optional[Opt] = None) -> Upstream:
    """Build an upstream for ``addr``; an address without a scheme is UDP.

    Raises ValueError for a malformed address or an unsupported protocol.
    """
    opt = opt or Opt()
    logger = opt.logger or _log
    observer = opt.event_observer or NopObserver()

    if "://" not in addr:
        addr = "udp://" + addr
    try:
        parts = urlsplit(addr)
    except ValueError as exc:
        raise ValueError(f"invalid server address, {exc}") from exc
    host = parts.netloc

    bootstrap = new_bootstrap(opt.bootstrap)
    sock_opts = SocketOpts(so_mark=opt.so_mark, bind_to_device=opt.bind_to_device)
    scheme = parts.scheme

    if scheme in ("", "udp"):
        dial_addr = get_dial_addr_with_port(host, opt.dial_addr, 53)

        def dial_udp(timeout: float) -> Any:
            return wrap_conn(_dial("udp", dial_addr, timeout, sock_opts, bootstrap), observer)

        def dial_plain_tcp(timeout: float) -> Any:
            return wrap_conn(_dial("tcp", dial_addr, timeout, sock_opts, bootstrap), observer)

        udp_opts = IOOpts(
            dial_func=dial_udp,
            write_func=write_msg_to_udp,
            read_func=lambda c: read_msg_from_udp(c, 4096),
            idle_timeout=_UDP_IDLE_TIMEOUT,
        )
        tcp_opts = IOOpts(
            dial_func=dial_plain_tcp,
            write_func=write_msg_to_tcp,
            read_func=read_msg_from_tcp,
        )
        return UdpWithFallback(
            PipelineTransport(PipelineOpts(io_opts=udp_opts, max_conn=1)),
            ReuseConnTransport(ReuseConnOpts(io_opts=tcp_opts)),
            logger,
        )

    if scheme == "tcp":
        dial_addr = get_dial_addr_with_port(host, opt.dial_addr, 53)

        def dial_stream(timeout: float) -> Any:
            return wrap_conn(dial_tcp(dial_addr, opt.socks5, timeout, sock_opts, bootstrap), observer)

        io_opts = IOOpts(
            dial_func=dial_stream,
            write_func=write_msg_to_tcp,
            read_func=read_msg_from_tcp,
            idle_timeout=opt.idle_timeout,
        )
        if opt.enable_pipeline:
            return PipelineTransport(PipelineOpts(io_opts=io_opts, max_conn=opt.max_conns))
        return ReuseConnTransport(ReuseConnOpts(io_opts=io_opts))

    if scheme == "tls":
        context = opt.tls_context or ssl.create_default_context()
        server_name = opt.server_name or try_remove_port(host)
        dial_addr = get_dial_addr_with_port(host, opt.dial_addr, 853)

        def dial_tls(timeout: float) -> Any:
            return _dial_tls(
                dial_addr, opt.socks5, context, server_name, timeout, sock_opts, bootstrap, observer
            )

        io_opts = IOOpts(
            dial_func=dial_tls,
            write_func=write_msg_to_tcp,
            read_func=read_msg_from_tcp,
            idle_timeout=opt.idle_timeout,
        )
        if opt.enable_pipeline:
            return PipelineTransport(PipelineOpts(io_opts=io_opts, max_conn=opt.max_conns))
        return ReuseConnTransport(ReuseConnOpts(io_opts=io_opts))

    if scheme == "https":
        if opt.enable_http3:
            raise ValueError("HTTP/3 is not supported for DoH upstreams")
        if opt.socks5:
            raise ValueError("socks5 is not supported for DoH upstreams")
        idle_timeout = opt.idle_timeout if opt.idle_timeout > 0 else _DOH_IDLE_TIMEOUT
        max_conn = opt.max_conns if opt.max_conns > 0 else _DOH_MAX_CONNS
        dial_addr = get_dial_addr_with_port(host, opt.dial_addr, 443)
        socket_options = _httpx_socket_options(sock_opts)
        verify: Union[bool, ssl.SSLContext] = opt.tls_context if opt.tls_context is not None else True

        def client_factory() -> httpx.Client:
            extra = {"socket_options": socket_options} if socket_options else {}
            inner = httpx.HTTPTransport(
                verify=verify,
                http2=True,
                limits=httpx.Limits(
                    max_connections=max_conn,
                    max_keepalive_connections=max_conn,
                    keepalive_expiry=idle_timeout,
                ),
                **extra,
            )
            return httpx.Client(transport=_DialAddrTransport(inner, dial_addr, bootstrap))

        return DoHUpstream(addr, client_factory=client_factory)

    raise ValueError(f"unsupported protocol [{scheme}]")