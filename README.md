# dnsmux

Building blocks for a DNS forwarder, written on top of dnspython:

- **Upstreams** (`dnsmux.upstream`) that send queries to other servers over plain UDP
  (repeated over TCP when the reply is truncated), TCP, DNS-over-TLS and DNS-over-HTTPS.
  Connections are reused, and TCP/TLS queries can be pipelined on shared connections as
  RFC 7766 suggests.
- A **bootstrap** resolver (`dnsmux.bootstrap`) with a small cache, which resolves upstream
  host names through one fixed plain DNS server.
- A **zone file matcher** (`dnsmux.zone_file`) that answers queries from records loaded out
  of a zone file.
- **Servers** that accept queries over UDP (`dnsmux.udp_server`), TCP or TLS
  (`dnsmux.tcp_server`) and HTTP as a WSGI application (`dnsmux.http_handler`), and pass
  them to a handler (`dnsmux.entry_handler`).

## Install

```
pip install dnsmux
```

For running the tests:

```
pip install "dnsmux[test]"
pytest
```

## Querying an upstream

```python
import dns.message
from dnsmux.upstream import Opt, new_upstream

upstream = new_upstream("tls://1.1.1.1", Opt(idle_timeout=10.0, enable_pipeline=True))
query = dns.message.make_query("example.com.", "A")
reply = upstream.exchange(query, timeout=5.0)
print(reply.answer)
upstream.close()
```

Addresses without a scheme are treated as `udp://`. Supported schemes are `udp`, `tcp`,
`tls` and `https`, with default ports 53, 53, 853 and 443; any other scheme raises
`ValueError`. Every upstream has `exchange(query, timeout)` and `close()`, and can be used
as a context manager.

`Opt` fields:

- `dial_addr`: the address actually dialled, instead of the host in the URL.
- `socks5`: a `host:port` SOCKS5 proxy for `tcp` and `tls` upstreams.
- `bootstrap`: a plain DNS server used to resolve the upstream's host name.
- `so_mark`, `bind_to_device`: socket options, applied on Linux only.
- `idle_timeout`: seconds a connection may stay idle (10 for TCP/TLS, 30 for HTTPS by default).
- `enable_pipeline`, `max_conns`: pipelining for `tcp` and `tls`, and the connection limit.
- `tls_context`, `server_name`: TLS settings for `tls` and `https`.
- `logger`, `event_observer`: a logger, and an `dnsmux.event_stat.EventObserver` that is
  told when connections open and close.

The transports behind the upstreams can also be used directly:
`dnsmux.pipeline.PipelineTransport` and `dnsmux.reuse.ReuseConnTransport` take an
`dnsmux.transport.IOOpts` describing how to dial, write and read, and
`dnsmux.doh.DoHUpstream` sends GET requests to a DoH endpoint.

## Answering from a zone file

```python
import dns.message
from dnsmux.zone_file import Matcher

matcher = Matcher()
matcher.load_file("local.zone")
reply = matcher.reply(dns.message.make_query("example.com.", "A"))
```

Records without a TTL get 3600 unless the file has a `$TTL` directive. `reply` returns
`None` when no question matches; `search(name, qtype, qclass)` returns the matching
record sets.

## Serving

`EntryHandler` wraps a callable that receives a `QueryContext` and sets its `response`.
It sets a per-query deadline (5 seconds by default), answers REFUSED when no response was
set and SERVFAIL when the callable raised, and sets the RA flag on every response.

```python
import socket
import time

from dnsmux.entry_handler import EntryHandler
from dnsmux.udp_server import UDPServer
from dnsmux.upstream import new_upstream

upstream = new_upstream("8.8.8.8")


def forward(ctx):
    remaining = max(0.0, ctx.deadline - time.monotonic())
    ctx.response = upstream.exchange(ctx.query, timeout=remaining)


sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
sock.bind(("127.0.0.1", 5353))
UDPServer(EntryHandler(forward)).serve_udp(sock)
```

`UDPServer` truncates responses to the payload size the client advertised.
`TCPServer(handler).serve_tcp(listener)` serves a listening socket; give it a socket
wrapped by an `ssl.SSLContext` (see `load_cert`) to serve DNS-over-TLS. `HTTPHandler` is a
WSGI application for DNS-over-HTTPS GET and POST requests, which can take the client
address from a header such as `X-Forwarded-For`:

```python
from wsgiref.simple_server import make_server
from dnsmux.http_handler import HTTPHandler

make_server("127.0.0.1", 8080, HTTPHandler(EntryHandler(forward))).serve_forever()
```

## What it does not do

- There is no command-line program and no configuration file format; servers and
  upstreams are put together in Python code.
- There is no rule engine, cache or plugin system between server and upstream; that is
  up to the callable given to `EntryHandler`.
- DNS-over-HTTPS upstreams speak HTTP/1.1 and HTTP/2 only. `enable_http3` and a SOCKS5
  proxy for `https` upstreams raise `ValueError`.