"""A WSGI application that serves DNS-over-HTTPS queries (RFC 8484)."""

from __future__ import annotations

import base64
import binascii
import ipaddress
import logging
import string
from typing import IO, Any, Callable, Iterable, Mapping, Optional, Union
from urllib.parse import parse_qs

import dns.exception
import dns.message

from dnsmux.entry_handler import Handler, QueryContext

__all__ = [
    "HTTPHandler",
    "RequestError",
    "read_msg_from_request",
    "read_client_addr_from_xff",
    "minimal_ttl",
    "MEDIA_TYPE",
    "MAX_MSG_SIZE",
]

MEDIA_TYPE = "application/dns-message"
MAX_MSG_SIZE = 65535

_URL_ALPHABET = frozenset(string.ascii_letters + string.digits + "-_")

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


class RequestError(ValueError):
    """Raised for a request that does not carry a valid DNS query."""


def _header_get(headers: Mapping[str, str], name: str) -> str:
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return ""


def _decode_raw_url_base64(s: str) -> bytes:
    if any(ch not in _URL_ALPHABET for ch in s):
        raise RequestError("failed to decode base64 query: illegal base64 data")
    try:
        return base64.urlsafe_b64decode(s + "=" * (-len(s) % 4))
    except (binascii.Error, ValueError) as exc:
        raise RequestError(f"failed to decode base64 query: {exc}") from exc


def _read_limited(body: Union[bytes, bytearray, IO[bytes], None], limit: int) -> bytes:
    if body is None:
        return b""
    if isinstance(body, (bytes, bytearray)):
        return bytes(body[:limit])
    buf = bytearray()
    while len(buf) < limit:
        chunk = body.read(limit - len(buf))
        if not chunk:
            break
        buf += chunk
    return bytes(buf)


def read_msg_from_request(
    method: str,
    headers: Mapping[str, str],
    query_string: str = "",
    body: Union[bytes, bytearray, IO[bytes], None] = None,
) -> dns.message.Message:
    """Extract the DNS query from a GET or POST DoH request.

    ``headers`` are looked up case-insensitively; ``body`` may be bytes or a
    readable binary stream, of which at most 65535 bytes are read.
    Raises RequestError if the request is not a valid DoH query.
    """
    if method == "GET":
        if _header_get(headers, "Accept") != MEDIA_TYPE:
            raise RequestError("missing or invalid media type header")
        values = parse_qs(query_string, keep_blank_values=True).get("dns", [])
        s = values[0] if values else ""
        if not s:
            raise RequestError("no dns parameter")
        msg_size = len(s) * 6 // 8
        if msg_size > MAX_MSG_SIZE:
            raise RequestError(f"msg length {msg_size} is too big")
        wire = _decode_raw_url_base64(s)
    elif method == "POST":
        if _header_get(headers, "Content-Type") != MEDIA_TYPE:
            raise RequestError("missing or invalid media type header")
        try:
            wire = _read_limited(body, MAX_MSG_SIZE)
        except OSError as exc:
            raise RequestError(f"failed to read request body: {exc}") from exc
    else:
        raise RequestError(f"unsupported method: {method}")

    try:
        return dns.message.from_wire(wire)
    except Exception as exc:
        raise RequestError(f"failed to unpack msg [{wire.hex()}], {exc}") from exc


def read_client_addr_from_xff(s: str) -> IPAddress:
    """Return the first address of an X-Forwarded-For style value.

    Raises ValueError if it is not an IP address.
    """
    i = s.find(",")
    if i > 0:
        return ipaddress.ip_address(s[:i])
    return ipaddress.ip_address(s)


def minimal_ttl(msg: dns.message.Message) -> int:
    """Return the smallest TTL among the message's records, or 0 if it has none."""
    ttls = [
        rrset.ttl
        for section in (msg.answer, msg.authority, msg.additional)
        for rrset in section
    ]
    return min(ttls) if ttls else 0


def _environ_header(environ: Mapping[str, Any], name: str) -> str:
    key = name.upper().replace("-", "_")
    if key not in ("CONTENT_TYPE", "CONTENT_LENGTH"):
        key = "HTTP_" + key
    return environ.get(key, "") or ""


class _EnvironHeaders(Mapping[str, str]):
    def __init__(self, environ: Mapping[str, Any]) -> None:
        self._environ = environ

    def __getitem__(self, key: str) -> str:
        value = _environ_header(self._environ, key)
        if not value:
            raise KeyError(key)
        return value

    def get(self, key: str, default: Any = None) -> Any:
        return _environ_header(self._environ, key) or default

    def items(self):  # type: ignore[override]
        for name in ("Accept", "Content-Type"):
            value = _environ_header(self._environ, name)
            if value:
                yield name, value

    def __iter__(self):
        return (name for name, _ in self.items())

    def __len__(self) -> int:
        return sum(1 for _ in self.items())


StartResponse = Callable[..., Any]


class HTTPHandler:
    """A WSGI application that answers DoH requests through a DNS handler.

    If ``src_ip_header`` (e.g. ``X-Forwarded-For``) is set and present in a
    request, the client address is taken from it. An exception from the DNS
    handler propagates so that the server drops the connection.
    """

    def __init__(
        self,
        dns_handler: Handler,
        src_ip_header: str = "",
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.dns_handler = dns_handler
        self.src_ip_header = src_ip_header
        self.logger = logger or logging.getLogger(__name__)

    def _warn(self, environ: Mapping[str, Any], msg: str, err: BaseException) -> None:
        self.logger.warning(
            "%s: from=%s method=%s url=%s err=%s",
            msg,
            environ.get("REMOTE_ADDR", ""),
            environ.get("REQUEST_METHOD", ""),
            environ.get("RAW_URI") or environ.get("PATH_INFO", ""),
            err,
        )

    @staticmethod
    def _reply(start_response: StartResponse, status: str) -> Iterable[bytes]:
        start_response(status, [("Content-Length", "0")])
        return [b""]

    def __call__(self, environ: Mapping[str, Any], start_response: StartResponse) -> Iterable[bytes]:
        remote = environ.get("REMOTE_ADDR", "")
        try:
            client_addr: IPAddress = ipaddress.ip_address(remote)
        except ValueError as exc:
            self.logger.error("failed to parse request remote addr %r: %s", remote, exc)
            return self._reply(start_response, "500 Internal Server Error")

        if self.src_ip_header:
            xff = _environ_header(environ, self.src_ip_header)
            if xff:
                try:
                    client_addr = read_client_addr_from_xff(xff)
                except ValueError as exc:
                    self._warn(
                        environ,
                        "failed to get client ip from header",
                        ValueError(f"failed to parse header {self.src_ip_header}: {xff}, {exc}"),
                    )
                    return self._reply(start_response, "400 Bad Request")

        method = environ.get("REQUEST_METHOD", "GET")
        body = environ.get("wsgi.input") if method == "POST" else None
        try:
            query = read_msg_from_request(
                method, _EnvironHeaders(environ), environ.get("QUERY_STRING", ""), body
            )
        except RequestError as exc:
            self._warn(environ, "invalid request", exc)
            return self._reply(start_response, "400 Bad Request")

        ctx = QueryContext(query, client_addr=client_addr)
        self.dns_handler.serve_dns(ctx)
        response = ctx.response
        if response is None:
            self._warn(environ, "failed to pack handler's response", ValueError("no response"))
            return self._reply(start_response, "500 Internal Server Error")
        try:
            wire = response.to_wire()
        except (dns.exception.DNSException, ValueError) as exc:
            self._warn(environ, "failed to pack handler's response", exc)
            return self._reply(start_response, "500 Internal Server Error")

        start_response(
            "200 OK",
            [
                ("Content-Type", MEDIA_TYPE),
                ("Cache-Control", f"max-age={minimal_ttl(response)}"),
                ("Content-Length", str(len(wire))),
            ],
        )
        return [wire]