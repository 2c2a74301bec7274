"""A DNS server over UDP."""

from __future__ import annotations

import ipaddress
import logging
import socket
import threading
from typing import Any, Optional

import dns.exception
import dns.flags
import dns.message
import dns.rrset

from dnsmux.entry_handler import Handler, QueryContext

__all__ = ["UDPServer", "get_udp_size", "MIN_MSG_SIZE", "MAX_MSG_SIZE"]

MIN_MSG_SIZE = 512
MAX_MSG_SIZE = 65535


def get_udp_size(msg: dns.message.Message) -> int:
    """Return the UDP payload size the sender of ``msg`` accepts, at least 512."""
    size = msg.payload if msg.edns >= 0 else 0
    return max(size, MIN_MSG_SIZE)


def _client_ip(addr: Any) -> Optional[ipaddress.IPv4Address | ipaddress.IPv6Address]:
    try:
        return ipaddress.ip_address(addr[0])
    except (TypeError, ValueError, IndexError):
        return None


def _render(template: bytes, kept: list) -> dns.message.Message:
    msg = dns.message.from_wire(template)
    for section, records in zip((msg.answer, msg.authority, msg.additional), kept):
        source = None
        current = None
        for src, rdata in records:
            if src is not source:
                current = dns.rrset.RRset(src.name, src.rdclass, src.rdtype, src.covers)
                section.append(current)
                source = src
            current.add(rdata, src.ttl)
    return msg


def _truncated_wire(response: dns.message.Message, size: int) -> bytes:
    """Render ``response`` within ``size`` bytes.

    If it does not fit, records are kept in order (answer, authority,
    additional) for as long as they fit, and the TC flag is set.
    """
    response.flags &= ~dns.flags.TC
    try:
        return response.to_wire(max_size=size)
    except dns.exception.TooBig:
        pass

    records = [
        [(rrset, rdata) for rrset in section for rdata in rrset]
        for section in (response.answer, response.authority, response.additional)
    ]
    saved = response.answer, response.authority, response.additional
    response.answer, response.authority, response.additional = [], [], []
    try:
        template = response.to_wire(max_size=size)
    finally:
        response.answer, response.authority, response.additional = saved

    kept: list = [[], [], []]
    full = False
    for index, section_records in enumerate(records):
        for record in section_records:
            kept[index].append(record)
            try:
                _render(template, kept).to_wire(max_size=size)
            except dns.exception.TooBig:
                kept[index].pop()
                full = True
                break
        if full:
            break
    final = _render(template, kept)
    final.flags |= dns.flags.TC
    return final.to_wire(max_size=size)


class UDPServer:
    """Serves DNS over a datagram socket, answering queries concurrently.

    Responses are truncated to the payload size the client advertised.
    """

    def __init__(self, dns_handler: Handler, logger: Optional[logging.Logger] = None) -> None:
        self.dns_handler = dns_handler
        self.logger = logger or logging.getLogger(__name__)

    def serve_udp(self, sock: socket.socket) -> None:
        """Serve queries arriving on ``sock``.

        Only returns by raising ConnectionError once reading fails.
        Malformed packets are logged and skipped.
        """
        while True:
            try:
                data, remote = sock.recvfrom(MAX_MSG_SIZE)
            except OSError as exc:
                raise ConnectionError(f"unexpected read err: {exc}") from exc
            try:
                query = dns.message.from_wire(data)
            except Exception as exc:
                self.logger.warning("invalid msg from %s: %s, msg: %s", remote, exc, data.hex())
                continue
            threading.Thread(target=self._handle, args=(sock, query, remote), daemon=True).start()

    def _handle(self, sock: socket.socket, query: dns.message.Message, remote: Any) -> None:
        ctx = QueryContext(query, client_addr=_client_ip(remote))
        try:
            self.dns_handler.serve_dns(ctx)
        except Exception as exc:
            self.logger.warning("handler err: %s", exc)
            return
        response = ctx.response
        if response is None:
            return
        try:
            wire = _truncated_wire(response, get_udp_size(query))
        except (dns.exception.DNSException, ValueError) as exc:
            self.logger.error("failed to pack handler's response: %s, msg: %s", exc, response)
            return
        try:
            sock.sendto(wire, remote)
        except OSError as exc:
            self.logger.warning("failed to write response to %s: %s", remote, exc)