"""A DNS server over TCP (and TLS, given a TLS listener)."""

from __future__ import annotations

import ipaddress
import logging
import socket
import ssl
import threading
from typing import Any, Optional

import dns.exception

from dnsmux.entry_handler import Handler, QueryContext
from dnsmux.transport import read_msg_from_tcp, write_msg_to_tcp

__all__ = ["TCPServer", "load_cert", "DEFAULT_TCP_IDLE_TIMEOUT", "TCP_FIRST_READ_TIMEOUT"]

DEFAULT_TCP_IDLE_TIMEOUT = 10.0
TCP_FIRST_READ_TIMEOUT = 0.5


def load_cert(context: ssl.SSLContext, cert: str, key: str) -> None:
    """Load the certificate chain ``cert`` and private key ``key`` into ``context``."""
    context.load_cert_chain(cert, key)


def _client_ip(addr: Any) -> Optional[ipaddress.IPv4Address | ipaddress.IPv6Address]:
    try:
        return ipaddress.ip_address(addr[0])
    except (TypeError, ValueError, IndexError):
        return None


def _close_conn(conn: Any) -> None:
    try:
        conn.shutdown(socket.SHUT_RDWR)
    except (OSError, ValueError):
        pass
    try:
        conn.close()
    except OSError:
        pass


class TCPServer:
    """Serves DNS over stream connections, answering queries concurrently.

    A connection is closed when no query arrives within the idle timeout
    (the first query must come within half a second at most), or when the
    handler raises.
    """

    def __init__(
        self,
        dns_handler: Handler,
        logger: Optional[logging.Logger] = None,
        idle_timeout: float = 0.0,
    ) -> None:
        self.dns_handler = dns_handler
        self.logger = logger or logging.getLogger(__name__)
        self.idle_timeout = idle_timeout if idle_timeout != 0 else DEFAULT_TCP_IDLE_TIMEOUT

    def serve_tcp(self, listener: socket.socket) -> None:
        """Accept and serve connections from ``listener``.

        Only returns by raising ConnectionError once ``accept`` fails.
        """
        while True:
            try:
                conn, addr = listener.accept()
            except OSError as exc:
                raise ConnectionError(f"unexpected listener err: {exc}") from exc
            threading.Thread(target=self._serve_conn, args=(conn, addr), daemon=True).start()

    def _serve_conn(self, conn: Any, addr: Any) -> None:
        client_ip = _client_ip(addr)
        write_lock = threading.Lock()
        timeout = min(TCP_FIRST_READ_TIMEOUT, self.idle_timeout)
        try:
            while True:
                conn.settimeout(timeout)
                timeout = self.idle_timeout
                try:
                    query, _ = read_msg_from_tcp(conn)
                except Exception:
                    return
                threading.Thread(
                    target=self._handle,
                    args=(conn, write_lock, query, client_ip, addr),
                    daemon=True,
                ).start()
        finally:
            _close_conn(conn)

    def _handle(self, conn: Any, write_lock: threading.Lock, query, client_ip, addr) -> None:
        ctx = QueryContext(query, client_addr=client_ip)
        try:
            self.dns_handler.serve_dns(ctx)
        except Exception as exc:
            self.logger.warning("handler err: %s", exc)
            _close_conn(conn)
            return
        response = ctx.response
        if response is None:
            self.logger.error("handler set no response for query %d", query.id)
            return
        try:
            with write_lock:
                write_msg_to_tcp(conn, response)
        except OSError as exc:
            self.logger.warning("failed to write response to %s: %s", addr, exc)
        except (dns.exception.DNSException, ValueError) as exc:
            self.logger.error("failed to pack handler's response: %s, msg: %s", exc, response)