"""A tiny caching resolver that asks one plain DNS server over UDP.

It is used to find the addresses of upstream servers given by name.
"""

from __future__ import annotations

import ipaddress
import socket
import threading
import time
from typing import Callable, Optional

import dns.message
import dns.name
import dns.rcode
import dns.rdataclass
import dns.rdatatype

from dnsmux.transport import read_msg_from_udp, write_msg_to_udp

__all__ = ["BootstrapCache", "Bootstrap", "new_bootstrap"]

_Key = "tuple[dns.name.Name, dns.rdatatype.RdataType, dns.rdataclass.RdataClass]"


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


def _join_host_port(host: str, port: "str | int") -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def _question_key(rrset) -> tuple:
    return (rrset.name, rrset.rdtype, rrset.rdclass)


def _copy_msg(msg: dns.message.Message) -> dns.message.Message:
    return dns.message.from_wire(msg.to_wire())


def _minimal_ttl(msg: dns.message.Message) -> int:
    ttls = [
        rrset.ttl
        for section in (msg.answer, msg.authority, msg.additional)
        for rrset in section
        if rrset.rdtype != dns.rdatatype.OPT
    ]
    return min(ttls) if ttls else 0


def _has_ip(msg: dns.message.Message) -> bool:
    return any(rrset.rdtype in (dns.rdatatype.A, dns.rdatatype.AAAA) for rrset in msg.answer)


class BootstrapCache:
    """A small size-bounded cache of responses with expiry times."""

    DEFAULT_SIZE = 8

    def __init__(self, size: int = 0, clock: Callable[[], float] = time.monotonic) -> None:
        self._size = size if size > 0 else self.DEFAULT_SIZE
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def lookup(self, key) -> Optional[dns.message.Message]:
        """Return the cached message for ``key``, or None if absent or expired.

        The returned message must not be modified.
        """
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            msg, expires = entry
            if expires < now:
                del self._entries[key]
                return None
            return msg

    def store(self, key, msg: dns.message.Message, ttl: float) -> None:
        """Cache ``msg`` for ``ttl`` seconds; nothing is stored if ``ttl <= 0``."""
        if ttl <= 0:
            return
        expires = self._clock() + ttl
        with self._lock:
            while self._entries and len(self._entries) + 1 > self._size:
                del self._entries[next(iter(self._entries))]
            self._entries[key] = (msg, expires)


class Bootstrap:
    """Resolves names through one plain DNS server over UDP, with a cache.

    ``upstream`` is ``host:port``; the host should be a literal IP address.
    """

    def __init__(self, upstream: str, cache: Optional[BootstrapCache] = None, timeout: float = 3.0) -> None:
        host, port = _split_host_port(upstream)
        self._host = host
        self._port = int(port)
        self.upstream = _join_host_port(host, self._port)
        self.cache = cache if cache is not None else BootstrapCache()
        self.timeout = timeout

    def _exchange_udp(self, query: dns.message.Message) -> dns.message.Message:
        family, socktype, proto, _, addr = socket.getaddrinfo(
            self._host, self._port, 0, socket.SOCK_DGRAM
        )[0]
        with socket.socket(family, socktype, proto) as sock:
            sock.settimeout(self.timeout)
            sock.connect(addr)
            write_msg_to_udp(sock, query)
            msg, _ = read_msg_from_udp(sock, 1500)
        return msg

    def query(self, query: dns.message.Message) -> dns.message.Message:
        """Answer ``query`` from the cache or from the upstream server."""
        resp: Optional[dns.message.Message] = None
        if len(query.question) == 1:
            cached = self.cache.lookup(_question_key(query.question[0]))
            if cached is not None:
                resp = _copy_msg(cached)
                resp.id = query.id

        if resp is None:
            resp = self._exchange_udp(query)
            if resp.rcode() == dns.rcode.NOERROR and _has_ip(resp) and len(resp.question) == 1:
                self.cache.store(_question_key(resp.question[0]), _copy_msg(resp), _minimal_ttl(resp))
        return resp

    def resolve(self, host: str) -> "list[str]":
        """Return the IPv4 and IPv6 addresses of ``host``.

        Raises LookupError if none is found.
        """
        try:
            return [str(ipaddress.ip_address(host))]
        except ValueError:
            pass
        addresses: list[str] = []
        for rdtype in (dns.rdatatype.A, dns.rdatatype.AAAA):
            resp = self.query(dns.message.make_query(host, rdtype))
            if resp.rcode() != dns.rcode.NOERROR:
                continue
            for rrset in resp.answer:
                if rrset.rdtype == rdtype:
                    addresses.extend(rdata.address for rdata in rrset)
        if not addresses:
            raise LookupError(f"no such host {host}")
        return addresses


def new_bootstrap(server: str) -> Optional[Bootstrap]:
    """Build a Bootstrap for ``server``, adding port 53 if none is given.

    Returns None if ``server`` is empty.
    """
    if not server:
        return None
    try:
        _split_host_port(server)
    except ValueError:
        server = _join_host_port(server.strip("[]"), 53)
    return Bootstrap(server)