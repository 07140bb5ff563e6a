"""Shared fixtures: a throwaway PKI for the local TLS servers."""

from __future__ import annotations

import ipaddress
import ssl
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from retriever.certs import VerifyContext, create_verify_context


@dataclass(frozen=True)
class Pki:
    ca_cert: Path
    server_cert: Path
    server_key: Path
    origin_cert: Path
    origin_key: Path


def _new_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def _builder(subject: x509.Name, issuer: x509.Name, key: rsa.RSAPrivateKey, days: int) -> x509.CertificateBuilder:
    now = datetime.now(timezone.utc)
    return (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=5))
        .not_valid_after(now + timedelta(days=days))
    )


def _pem_key(key: rsa.RSAPrivateKey) -> bytes:
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.TraditionalOpenSSL,
        serialization.NoEncryption(),
    )


def _leaf(names: list[x509.GeneralName], ca_cert: x509.Certificate, ca_key: rsa.RSAPrivateKey) -> tuple[x509.Certificate, rsa.RSAPrivateKey]:
    key = _new_key()
    common_name = next(n.value for n in names if isinstance(n, x509.DNSName))
    cert = (
        _builder(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)]), ca_cert.subject, key, 1)
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .add_extension(x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_key.public_key()), critical=False)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(x509.KeyUsage(
            digital_signature=True, content_commitment=False, key_encipherment=True,
            data_encipherment=False, key_agreement=False, key_cert_sign=False,
            crl_sign=False, encipher_only=False, decipher_only=False,
        ), critical=True)
        .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)
        .add_extension(x509.SubjectAlternativeName(names), critical=False)
        .sign(ca_key, hashes.SHA256())
    )
    return cert, key


@pytest.fixture(scope="session")
def pki(tmp_path_factory: pytest.TempPathFactory) -> Pki:
    """CA, a server certificate valid for ``localhost`` and ``127.0.0.1``,
    and an origin certificate valid for ``origin.test`` only."""
    out = tmp_path_factory.mktemp("pki")

    ca_key = _new_key()
    ca_name = x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "retriever tests"),
        x509.NameAttribute(NameOID.COMMON_NAME, "retriever test CA"),
    ])
    ca_cert = (
        _builder(ca_name, ca_name, ca_key, 2)
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(ca_key.public_key()), critical=False)
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(x509.KeyUsage(
            digital_signature=False, content_commitment=False, key_encipherment=False,
            data_encipherment=False, key_agreement=False, key_cert_sign=True,
            crl_sign=True, encipher_only=False, decipher_only=False,
        ), critical=True)
        .sign(ca_key, hashes.SHA256())
    )

    server_cert, server_key = _leaf(
        [x509.DNSName("localhost"), x509.IPAddress(ipaddress.IPv4Address("127.0.0.1"))], ca_cert, ca_key
    )
    origin_cert, origin_key = _leaf([x509.DNSName("origin.test")], ca_cert, ca_key)

    pki = Pki(
        ca_cert=out / "ca_cert.pem",
        server_cert=out / "server_cert.pem",
        server_key=out / "server_key.pem",
        origin_cert=out / "origin_cert.pem",
        origin_key=out / "origin_key.pem",
    )
    pki.ca_cert.write_bytes(ca_cert.public_bytes(serialization.Encoding.PEM))
    pki.server_cert.write_bytes(server_cert.public_bytes(serialization.Encoding.PEM))
    pki.server_key.write_bytes(_pem_key(server_key))
    pki.origin_cert.write_bytes(origin_cert.public_bytes(serialization.Encoding.PEM))
    pki.origin_key.write_bytes(_pem_key(origin_key))
    return pki


@pytest.fixture(scope="session")
def server_ssl_context(pki: Pki) -> ssl.SSLContext:
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    ctx.load_cert_chain(pki.server_cert, pki.server_key)
    return ctx


@pytest.fixture(scope="session")
def origin_ssl_context(pki: Pki) -> ssl.SSLContext:
    """Serves a certificate that names ``origin.test`` and no address."""
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    ctx.load_cert_chain(pki.origin_cert, pki.origin_key)
    return ctx


@pytest.fixture(scope="session")
def verify(pki: Pki) -> VerifyContext:
    """Trusts the test CA only."""
    return create_verify_context(pki.ca_cert, system=False)


@pytest.fixture(scope="session")
def untrusted() -> VerifyContext:
    """Trusts nothing: every handshake fails verification."""
    return create_verify_context(system=False)
