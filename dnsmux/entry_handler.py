"""Query contexts and the handler that runs an entry for each query."""

from __future__ import annotations

import ipaddress
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional, Union

import dns.flags
import dns.message
import dns.rcode

__all__ = ["QueryContext", "Handler", "EntryHandler", "DEFAULT_QUERY_TIMEOUT"]

DEFAULT_QUERY_TIMEOUT = 5.0

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


@dataclass
class QueryContext:
    """One query on its way through the server.

    ``deadline`` is a ``time.monotonic()`` value by which the query should
    be answered, or None for no limit.
    """

    query: dns.message.Message
    client_addr: Optional[IPAddress] = None
    response: Optional[dns.message.Message] = None
    deadline: Optional[float] = None


def _describe(ctx: QueryContext) -> str:
    question = ctx.query.question[0] if ctx.query.question else None
    parts = [f"id={ctx.query.id}"]
    if question is not None:
        parts.append(f"question={question.name} {question.rdclass!s} {question.rdtype!s}")
    if ctx.client_addr is not None:
        parts.append(f"client={ctx.client_addr}")
    return " ".join(parts)


class Handler(ABC):
    """Handles DNS queries for a server."""

    @abstractmethod
    def serve_dns(self, ctx: QueryContext) -> None:
        """Handle ``ctx`` and always leave a response in ``ctx.response``.

        An exception tells the caller that the downstream connection is at
        fault; the caller closes that connection.
        """


Entry = Callable[[QueryContext], None]


class EntryHandler(Handler):
    """Runs ``entry`` on each query within a time limit.

    ``entry`` is called with the query context and sets ``ctx.response``.
    If it raises, the client gets SERVFAIL; if it sets no response, the
    client gets REFUSED. Every response has the RA flag set.
    """

    def __init__(
        self,
        entry: Entry,
        logger: Optional[logging.Logger] = None,
        query_timeout: float = 0.0,
    ) -> None:
        self.entry = entry
        self.logger = logger or logging.getLogger(__name__)
        self.query_timeout = query_timeout if query_timeout != 0 else DEFAULT_QUERY_TIMEOUT

    def serve_dns(self, ctx: QueryContext) -> None:
        outer_deadline = ctx.deadline
        deadline = time.monotonic() + self.query_timeout
        if outer_deadline is not None and outer_deadline < deadline:
            deadline = outer_deadline
        ctx.deadline = deadline

        failed = False
        try:
            self.entry(ctx)
        except Exception as exc:
            failed = True
            self.logger.warning("entry err: %s (%s)", exc, _describe(ctx))
        finally:
            ctx.deadline = outer_deadline

        response = ctx.response
        if failed:
            response = dns.message.make_response(ctx.query)
            response.set_rcode(dns.rcode.SERVFAIL)
        elif response is None:
            response = dns.message.make_response(ctx.query)
            response.set_rcode(dns.rcode.REFUSED)
        response.flags |= dns.flags.RA
        ctx.response = response