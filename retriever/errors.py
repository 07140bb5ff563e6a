"""Failure taxonomy for a fetch.

Every error is terminal for the connection that raised it; nothing is
retried.  The ``phase`` class attribute names the step that failed and is
rendered together with the peer address when the error is printed.
"""

from __future__ import annotations

from typing import Optional


class RetrieverError(Exception):
    """Base class for every failure reported by a fetch."""

    phase = "fetch"

    def __init__(
        self, message: str, host: Optional[str] = None, port: Optional[str] = None
    ) -> None:
        self.message = message
        self.host = host
        self.port = port
        super().__init__(message)

    @property
    def where(self) -> str:
        if self.host is None:
            return self.phase
        if self.port is None:
            return f"{self.phase} {self.host}"
        return f"{self.phase} {self.host}:{self.port}"

    def __str__(self) -> str:
        return f"[{self.where}] {self.message}"


class MalformedURL(RetrieverError):
    """The URL could not be parsed or uses an unsupported scheme."""

    phase = "parse"


class ProxyConfigParseError(RetrieverError):
    """The ``--proxy`` value is neither a URL nor a ``host:port`` authority."""

    phase = "config"


class ResolveError(RetrieverError):
    phase = "resolve"


class ConnectError(RetrieverError):
    """TCP connect failed, or the proxy refused to open a tunnel."""

    phase = "connect"


class TLSError(RetrieverError):
    """Handshake failure, including certificate verification failure."""

    phase = "handshake"


class WriteError(RetrieverError):
    phase = "write"


class ReadError(RetrieverError):
    phase = "read"


class MalformedResponse(RetrieverError):
    """The peer sent something that is not a usable HTTP/1.x response."""

    phase = "response"


class RedirectLimitExceeded(RetrieverError):
    phase = "redirect"


class UnsupportedProxyTLS(RetrieverError):
    """CONNECT tunnels through a TLS proxy are not supported."""

    phase = "tunnel"
