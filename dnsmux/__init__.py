"""DNS upstreams over UDP, TCP, TLS and HTTPS, a bootstrap resolver, a zone file matcher and DNS servers."""

__version__ = "0.1.0"