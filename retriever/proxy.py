"""
proxy.py — Forward-proxy configuration.

A proxy is given on the command line either as a URL
(``http://proxy.local:3128``, ``https://proxy.local:8443``) or as a bare
authority (``proxy.local:3128``).  In the authority form TLS towards the
proxy is implied by port 443 or 8443.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit

from .errors import ProxyConfigParseError

TLS_PORTS: frozenset[str] = frozenset({"443", "8443"})


@dataclass(frozen=True)
class ProxyConfig:
    """Proxy policy shared by every fetch of a run.

    Attributes
    ----------
    enabled:
        Route requests through the proxy.
    host, port:
        Proxy address as dialed.
    ssl:
        The proxy itself speaks TLS.  Plain HTTP is relayed over it;
        CONNECT tunnels through it are refused.
    auth:
        Base64-encoded ``user:pass`` or empty.
    """

    enabled: bool = False
    host: str = ""
    port: str = ""
    ssl: bool = False
    auth: str = ""

    @classmethod
    def from_spec(cls, spec: str, credentials: Optional[str] = None) -> ProxyConfig:
        host, port, ssl = decode(spec)
        auth = encode_credentials(credentials) if credentials else ""
        return cls(enabled=True, host=host, port=port, ssl=ssl, auth=auth)

    @property
    def authorization(self) -> Optional[str]:
        """Value for ``Proxy-Authorization``, or ``None`` without credentials."""
        if not self.auth:
            return None
        return f"Basic {self.auth}"

    def __repr__(self) -> str:
        # never print credentials
        auth = "***" if self.auth else ""
        return (
            f"ProxyConfig(enabled={self.enabled}, host={self.host!r}, "
            f"port={self.port!r}, ssl={self.ssl}, auth={auth!r})"
        )


DISABLED = ProxyConfig()


def decode(spec: str) -> tuple[str, str, bool]:
    """Split a proxy spec into ``(host, port, ssl)``.

    Raises
    ------
    ProxyConfigParseError
        If the spec has no host, an unknown scheme or an invalid port.
    """
    raw = spec.strip()
    if not raw:
        raise ProxyConfigParseError("empty proxy specification")

    if "://" in raw:
        try:
            parts = urlsplit(raw)
            port_number = parts.port
        except ValueError as e:
            raise ProxyConfigParseError(f"invalid proxy URL {raw!r}: {e}") from e
        scheme = parts.scheme.lower()
        if scheme not in ("http", "https"):
            raise ProxyConfigParseError(f"unsupported proxy scheme {parts.scheme!r}")
        if not parts.hostname:
            raise ProxyConfigParseError(f"proxy URL {raw!r} has no host")
        ssl = scheme == "https"
        if port_number is None:
            port_number = 443 if ssl else 80
        return parts.hostname, str(port_number), ssl

    try:
        parts = urlsplit("//" + raw)
        port_number = parts.port
    except ValueError as e:
        raise ProxyConfigParseError(f"invalid proxy authority {raw!r}: {e}") from e
    if not parts.hostname or parts.path not in ("", "/"):
        raise ProxyConfigParseError(f"invalid proxy authority {raw!r}")
    if port_number is None:
        raise ProxyConfigParseError(f"proxy authority {raw!r} has no port")
    port = str(port_number)
    return parts.hostname, port, port in TLS_PORTS


def encode_credentials(user_pass: str) -> str:
    """Base64-encode ``user:pass`` for basic proxy authentication."""
    return base64.b64encode(user_pass.encode("utf-8")).decode("ascii")
