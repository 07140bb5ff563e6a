import pytest

from retriever.errors import MalformedURL
from retriever.proxy import DISABLED, ProxyConfig
from retriever.target import FetchMode, Scheme, build_target

PLAIN_PROXY = ProxyConfig(enabled=True, host="proxy", port="8080")


@pytest.mark.parametrize(
    "raw, scheme, port",
    [
        ("example.org", Scheme.HTTP, "80"),
        ("example.org:80", Scheme.HTTP, "80"),
        ("example.org:8080", Scheme.HTTP, "8080"),
        ("example.org:443", Scheme.HTTPS, "443"),
        ("example.org:8443", Scheme.HTTPS, "8443"),
        ("http://example.org:443", Scheme.HTTP, "443"),
        ("https://example.org", Scheme.HTTPS, "443"),
        ("HTTPS://example.org:8000", Scheme.HTTPS, "8000"),
    ],
)
def test_scheme_and_port_inference(raw, scheme, port):
    target = build_target(raw, DISABLED)
    assert target.scheme is scheme
    assert target.port == port


def test_bare_host_with_path():
    target = build_target("example.org/a", DISABLED)
    assert (target.scheme, target.host, target.port, target.path) == (Scheme.HTTP, "example.org", "80", "/a")
    assert target.mode is FetchMode.DIRECT
    assert not target.is_proxied
    assert (target.dial_host, target.dial_port) == ("example.org", "80")


def test_tls_port_without_scheme():
    target = build_target("example.org:8443", DISABLED)
    assert (target.scheme, target.host, target.port, target.path) == (Scheme.HTTPS, "example.org", "8443", "/")
    assert target.is_tls


def test_query_kept_fragment_dropped():
    target = build_target("http://example.org/search?q=1#top", DISABLED)
    assert target.path == "/search?q=1"
    assert target.url == "http://example.org/search?q=1"


def test_host_header_only_carries_non_default_port():
    assert build_target("https://example.org/", DISABLED).host_header == "example.org"
    assert build_target("https://example.org:8443/", DISABLED).host_header == "example.org:8443"
    assert build_target("http://[::1]:8080/", DISABLED).host_header == "[::1]:8080"


def test_proxy_relay_dials_proxy_and_keeps_origin():
    target = build_target("http://origin/x", PLAIN_PROXY)
    assert target.mode is FetchMode.PROXY_RELAY
    assert (target.host, target.port) == ("origin", "80")
    assert (target.dial_host, target.dial_port) == ("proxy", "8080")


def test_proxy_tunnel_for_https():
    target = build_target("https://origin/x", PLAIN_PROXY)
    assert target.mode is FetchMode.PROXY_TUNNEL
    assert target.authority == "origin:443"
    assert (target.dial_host, target.dial_port) == ("proxy", "8080")


@pytest.mark.parametrize("raw", ["", "   ", "http://", "ftp://example.org/", "example.org:notaport", "http://host:99999/"])
def test_malformed_urls(raw):
    with pytest.raises(MalformedURL):
        build_target(raw, DISABLED)
