"""A DNS-over-HTTPS upstream using GET requests (RFC 8484)."""

from __future__ import annotations

import base64
import threading
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Callable, Optional

import dns.exception
import dns.message
import httpx

__all__ = ["DoHUpstream", "build_doh_url", "DEFAULT_DOH_TIMEOUT"]

DEFAULT_DOH_TIMEOUT = 5.0
MAX_MSG_SIZE = 65535
_MEDIA_TYPE = "application/dns-message"


def build_doh_url(endpoint: str, wire: bytes) -> str:
    """Append ``wire`` to ``endpoint`` as an unpadded base64url ``dns`` parameter."""
    encoded = base64.urlsafe_b64encode(wire).rstrip(b"=").decode("ascii")
    sep = "&dns=" if "?" in endpoint else "?dns="
    return endpoint + sep + encoded


def _default_client() -> httpx.Client:
    return httpx.Client(http2=True)


def _read_limited(resp: httpx.Response, limit: int) -> bytes:
    buf = bytearray()
    for chunk in resp.iter_bytes():
        buf += chunk
        if len(buf) >= limit:
            break
    return bytes(buf[:limit])


class _Lease:
    """An HTTP client and the number of requests using it."""

    def __init__(self, client: httpx.Client) -> None:
        self.client = client
        self.users = 0
        self.retired = False


class DoHUpstream:
    """Sends queries to a DoH endpoint.

    ``client_factory`` builds the HTTP client; a fresh one is built when the
    idle connections are dropped. ``add_on_closer`` is closed with the
    upstream.
    """

    def __init__(
        self,
        endpoint: str,
        client_factory: Optional[Callable[[], httpx.Client]] = None,
        add_on_closer: Any = None,
    ) -> None:
        self.endpoint = endpoint
        self._factory = client_factory or _default_client
        self.add_on_closer = add_on_closer
        self._lock = threading.Lock()
        self._lease: Optional[_Lease] = None

    def exchange(self, query: dns.message.Message, timeout: Optional[float] = None) -> dns.message.Message:
        """Send ``query`` and return the reply, carrying the query's id.

        The HTTP request itself runs with a fixed timeout of its own, so that
        a caller giving up early does not tear down a reusable connection.
        Raises TimeoutError if ``timeout`` seconds pass first.
        """
        try:
            wire = bytearray(query.to_wire())
        except dns.exception.DNSException as exc:
            raise ValueError(f"failed to pack query msg, {exc}") from exc
        # DoH clients should use id 0 for HTTP cache friendliness.
        wire[0:2] = b"\x00\x00"
        url = build_doh_url(self.endpoint, bytes(wire))

        future: Future = Future()

        def run() -> None:
            try:
                future.set_result(self._exchange(url))
            except BaseException as exc:
                future.set_exception(exc)

        threading.Thread(target=run, daemon=True).start()
        try:
            reply = future.result(timeout)
        except FutureTimeout:
            raise TimeoutError("timed out waiting for the DoH reply") from None
        reply.id = query.id
        return reply

    def close_idle_connections(self) -> None:
        """Drop the pooled connections; requests already running finish first."""
        with self._lock:
            old, self._lease = self._lease, None
            if old is None:
                return
            old.retired = True
            close_now = old.users == 0
        if close_now:
            old.client.close()

    def close(self) -> None:
        self.close_idle_connections()
        if self.add_on_closer is not None:
            self.add_on_closer.close()

    def __enter__(self) -> "DoHUpstream":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _acquire(self) -> _Lease:
        with self._lock:
            if self._lease is None:
                self._lease = _Lease(self._factory())
            self._lease.users += 1
            return self._lease

    def _release(self, lease: _Lease) -> None:
        with self._lock:
            lease.users -= 1
            close_now = lease.retired and lease.users == 0
        if close_now:
            lease.client.close()

    def _exchange(self, url: str) -> dns.message.Message:
        lease = self._acquire()
        try:
            client = lease.client
            request = client.build_request(
                "GET", url, headers={"Accept": _MEDIA_TYPE}, timeout=DEFAULT_DOH_TIMEOUT
            )
            request.headers.pop("User-Agent", None)
            try:
                resp = client.send(request, stream=True)
            except httpx.HTTPError as exc:
                raise ConnectionError(f"http request failed: {exc}") from exc
            try:
                if resp.status_code != 200:
                    try:
                        body = _read_limited(resp, 1024)
                    except httpx.HTTPError:
                        raise ConnectionError(f"bad http status codes {resp.status_code}") from None
                    text = body.decode("utf-8", errors="replace")
                    raise ConnectionError(f"bad http status codes {resp.status_code} with body [{text}]")
                try:
                    data = _read_limited(resp, MAX_MSG_SIZE)
                except httpx.HTTPError as exc:
                    raise ConnectionError(f"failed to read http body: {exc}") from exc
            finally:
                resp.close()
        finally:
            self._release(lease)

        try:
            return dns.message.from_wire(data)
        except dns.exception.DNSException as exc:
            raise ValueError(f"failed to unpack http body: {exc}") from exc