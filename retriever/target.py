"""
target.py — Turn a raw URL into the address a fetch dials and talks to.

A ``Target`` is resolved completely before any connection attempt:

* no scheme → ``https`` when the explicit port is 443 or 8443, else ``http``
* no port   → 443 for ``https``, 80 for ``http``

When a proxy is in play the dialed address is the proxy's, while the
origin host and port stay on the target for the ``Host`` header and the
CONNECT authority.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from urllib.parse import urlsplit

from .errors import MalformedURL
from .proxy import ProxyConfig, TLS_PORTS


class Scheme(str, Enum):
    HTTP = "http"
    HTTPS = "https"

    @property
    def default_port(self) -> str:
        return "443" if self is Scheme.HTTPS else "80"


class FetchMode(Enum):
    """How the origin is reached."""

    DIRECT = "direct"
    PROXY_RELAY = "proxy-relay"
    PROXY_TUNNEL = "proxy-tunnel"


_SCHEME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9+.\-]*://")


@dataclass(frozen=True)
class Target:
    """Fully-resolved address of one fetch attempt."""

    scheme: Scheme
    host: str
    port: str
    path: str
    mode: FetchMode = FetchMode.DIRECT
    dial_host: str = ""
    dial_port: str = ""

    @property
    def is_proxied(self) -> bool:
        return self.mode is not FetchMode.DIRECT

    @property
    def is_tls(self) -> bool:
        return self.scheme is Scheme.HTTPS

    @property
    def authority(self) -> str:
        """``host:port`` as used in a CONNECT request line."""
        return f"{_bracket(self.host)}:{self.port}"

    @property
    def host_header(self) -> str:
        if self.port == self.scheme.default_port:
            return _bracket(self.host)
        return self.authority

    @property
    def url(self) -> str:
        return f"{self.scheme.value}://{self.host_header}{self.path}"


def _bracket(host: str) -> str:
    return f"[{host}]" if ":" in host else host


def select_mode(scheme: Scheme, proxy: ProxyConfig) -> FetchMode:
    if not proxy.enabled:
        return FetchMode.DIRECT
    if scheme is Scheme.HTTPS:
        return FetchMode.PROXY_TUNNEL
    return FetchMode.PROXY_RELAY


def build_target(raw_url: str, proxy: ProxyConfig) -> Target:
    """Parse *raw_url* and resolve scheme, port, path and dial address.

    Pure function of its inputs.  Raises :class:`MalformedURL` when the
    URL has no host, an invalid port or a scheme other than http/https.
    """
    raw = raw_url.strip()
    if not raw:
        raise MalformedURL("empty URL")

    has_scheme = _SCHEME_RE.match(raw) is not None
    try:
        parts = urlsplit(raw if has_scheme else "//" + raw)
        port_number = parts.port
    except ValueError as e:
        raise MalformedURL(f"cannot parse {raw_url!r}: {e}") from e

    host = parts.hostname
    if not host:
        raise MalformedURL(f"no host in {raw_url!r}")

    explicit_port = str(port_number) if port_number is not None else None

    if has_scheme:
        try:
            scheme = Scheme(parts.scheme.lower())
        except ValueError:
            raise MalformedURL(f"unsupported URL scheme {parts.scheme!r}") from None
    elif explicit_port in TLS_PORTS:
        scheme = Scheme.HTTPS
    else:
        scheme = Scheme.HTTP

    port = explicit_port or scheme.default_port

    path = parts.path or "/"
    if parts.query:
        path = f"{path}?{parts.query}"

    mode = select_mode(scheme, proxy)
    if mode is FetchMode.DIRECT:
        dial_host, dial_port = host, port
    else:
        dial_host, dial_port = proxy.host, proxy.port

    return Target(
        scheme=scheme,
        host=host,
        port=port,
        path=path,
        mode=mode,
        dial_host=dial_host,
        dial_port=dial_port,
    )
