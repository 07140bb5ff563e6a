"""
certs.py — Trust roots for outbound TLS.

The verification context is built once at startup and never mutated
afterwards; every transport that needs TLS borrows the same
``ssl.SSLContext``.

Trust roots come from the platform store.  When the platform store is
empty (minimal containers, some Windows/macOS Python builds) the
``certifi`` bundle is loaded instead.  An extra PEM bundle may be layered
on top; it is parsed with ``cryptography`` first so that a broken file is
reported by name instead of as an opaque OpenSSL error.
"""

from __future__ import annotations

import ssl
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import certifi
from cryptography import x509
from cryptography.hazmat.primitives.serialization import Encoding

from .logs import CustomLogger, get_logger

logger: CustomLogger = get_logger(__name__)


@dataclass(frozen=True)
class VerifyContext:
    """Immutable TLS client configuration shared by all connections.

    Attributes
    ----------
    ssl_context:
        Client-side context with ``CERT_REQUIRED`` and hostname checking.
    sources:
        Where the trust roots came from, for diagnostics.
    """

    ssl_context: ssl.SSLContext
    sources: tuple[str, ...] = ()

    @property
    def ca_count(self) -> int:
        return self.ssl_context.cert_store_stats().get("x509_ca", 0)


def _client_context() -> ssl.SSLContext:
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    ctx.minimum_version = ssl.TLSVersion.TLSv1_2
    ctx.verify_mode = ssl.CERT_REQUIRED
    ctx.check_hostname = True
    ctx.set_alpn_protocols(["http/1.1"])
    return ctx


def load_pem_bundle(path: str | Path) -> list[x509.Certificate]:
    """Parse every certificate in a PEM bundle.

    Raises
    ------
    ValueError
        If the file holds no parsable certificate.
    """
    data = Path(path).read_bytes()
    return x509.load_pem_x509_certificates(data)


def create_verify_context(
    cafile: Optional[str | Path] = None, system: bool = True
) -> VerifyContext:
    """Build the process-wide :class:`VerifyContext`.

    Parameters
    ----------
    cafile:
        Optional extra PEM bundle to trust.
    system:
        Load the platform trust store (falling back to ``certifi``).
        Tests disable this to trust only a throwaway CA.
    """
    ctx = _client_context()
    sources: list[str] = []

    if system:
        ctx.load_default_certs(ssl.Purpose.SERVER_AUTH)
        if ctx.cert_store_stats().get("x509_ca", 0) or _has_default_paths():
            sources.append("system")
        else:
            ctx.load_verify_locations(cafile=certifi.where())
            sources.append(f"certifi:{certifi.where()}")

    if cafile is not None:
        certs = load_pem_bundle(cafile)
        pem = "".join(c.public_bytes(Encoding.PEM).decode("ascii") for c in certs)
        ctx.load_verify_locations(cadata=pem)
        sources.append(str(cafile))
        logger.debug("Loaded %d extra trust root(s) from %s", len(certs), cafile)

    if not sources:
        logger.warning("No trust roots configured; every TLS handshake will fail")

    return VerifyContext(ssl_context=ctx, sources=tuple(sources))


def _has_default_paths() -> bool:
    # capath-based stores are loaded lazily and don't show up in the stats
    paths = ssl.get_default_verify_paths()
    for candidate in (paths.cafile, paths.capath):
        if candidate and Path(candidate).exists():
            return True
    return False


def describe_peer_certificate(ssl_object: Optional[ssl.SSLObject]) -> str:
    """One-line summary of the peer's leaf certificate, for debug logs."""
    if ssl_object is None:
        return "no TLS session"
    der = ssl_object.getpeercert(binary_form=True)
    if not der:
        return "no peer certificate"
    try:
        cert = x509.load_der_x509_certificate(der)
    except ValueError as e:
        return f"unparsable peer certificate ({e})"
    return (
        f"subject={cert.subject.rfc4514_string()} "
        f"issuer={cert.issuer.rfc4514_string()} "
        f"expires={cert.not_valid_after_utc:%Y-%m-%d}"
    )
