import pytest

from retriever.errors import MalformedResponse
from retriever.wire import (
    Response,
    create_request,
    expects_body,
    parse_chunk_size,
    parse_header_line,
    parse_status_line,
)


def _response(status=200, headers=(), version="HTTP/1.1"):
    return Response(url="http://h/", version=version, status_code=status, reason="X", headers=list(headers))


GET = create_request("GET", "/", "h", "http://h/", "ua")


def test_request_serialisation():
    request = create_request("GET", "/a?b=1", "example.org", "http://example.org/a?b=1", "retriever/test", "Basic abc")
    assert request.serialise() == (
        b"GET /a?b=1 HTTP/1.1\r\n"
        b"Host: example.org\r\n"
        b"User-Agent: retriever/test\r\n"
        b"Proxy-Authorization: Basic abc\r\n"
        b"\r\n"
    )


def test_request_without_proxy_authorization():
    assert GET.header("proxy-authorization") is None
    assert [name for name, _ in GET.headers] == ["Host", "User-Agent"]


def test_parse_status_line():
    assert parse_status_line(b"HTTP/1.1 301 Moved Permanently\r\n") == ("HTTP/1.1", 301, "Moved Permanently")
    assert parse_status_line(b"HTTP/1.0 200\r\n") == ("HTTP/1.0", 200, "")


@pytest.mark.parametrize("line", [b"garbage\r\n", b"HTTP/1.1 2000 OK\r\n", b"HTTP/1.1 abc OK\r\n", b"\r\n"])
def test_parse_status_line_rejects(line):
    with pytest.raises(MalformedResponse):
        parse_status_line(line)


def test_parse_header_line():
    assert parse_header_line(b"Content-Type:  text/html \r\n") == ("Content-Type", "text/html")
    with pytest.raises(MalformedResponse):
        parse_header_line(b"no colon here\r\n")


def test_parse_chunk_size():
    assert parse_chunk_size(b"1a\r\n") == 26
    assert parse_chunk_size(b"5;name=value\r\n") == 5
    with pytest.raises(MalformedResponse):
        parse_chunk_size(b"zz\r\n")


def test_content_length_validation():
    assert _response(headers=[("Content-Length", "12")]).content_length == 12
    assert _response().content_length is None
    with pytest.raises(MalformedResponse):
        _ = _response(headers=[("Content-Length", "-1")]).content_length
    with pytest.raises(MalformedResponse):
        _ = _response(headers=[("Content-Length", "1"), ("Content-Length", "2")]).content_length


@pytest.mark.parametrize("status", [300, 301, 302, 303, 304, 307, 308])
def test_redirect_statuses(status):
    assert _response(status).is_redirect


@pytest.mark.parametrize("status", [200, 305, 306, 400])
def test_not_redirects(status):
    assert not _response(status).is_redirect


def test_success_without_framing_has_no_body():
    assert not expects_body(GET, _response(200))
    assert not expects_body(GET, _response(200, [("Connection", "close")]))


def test_framed_bodies():
    assert expects_body(GET, _response(200, [("Content-Length", "3")]))
    assert expects_body(GET, _response(200, [("Transfer-Encoding", "chunked")]))


def test_bodiless_statuses():
    assert not expects_body(GET, _response(204, [("Content-Length", "3")]))
    assert not expects_body(GET, _response(304))
    head = create_request("HEAD", "/", "h", "http://h/", "ua")
    assert not expects_body(head, _response(200, [("Content-Length", "3")]))
    connect = create_request("CONNECT", "h:443", "h:443", "https://h/", "ua")
    assert not expects_body(connect, _response(200))


def test_close_delimited_error_body():
    assert expects_body(GET, _response(404, version="HTTP/1.0"))
    assert expects_body(GET, _response(500, [("Connection", "close")]))
    assert not expects_body(GET, _response(404))


def test_keep_alive():
    assert _response().keep_alive
    assert not _response(headers=[("Connection", "close")]).keep_alive
    assert not _response(version="HTTP/1.0").keep_alive
    assert _response(headers=[("Connection", "keep-alive")], version="HTTP/1.0").keep_alive
