"""
downloader.py — Blocking single-connection downloader.

Runs the same phase sequence as the connection engine on a plain
blocking socket: resolve, connect, optional TLS handshake, write one
``GET``, read the header, then either follow a redirect on a new
connection or read the body.  Direct connections only: no proxy, no
pipelining, no tunnel splicing.
"""

from __future__ import annotations

import errno
import socket
import ssl
from contextlib import contextmanager
from typing import BinaryIO, Iterator, Optional
from urllib.parse import urljoin

from .certs import VerifyContext
from .config import DEFAULT_CONFIG, EngineConfig
from .errors import (
    ConnectError,
    MalformedResponse,
    ReadError,
    RedirectLimitExceeded,
    ResolveError,
    RetrieverError,
    TLSError,
    WriteError,
)
from .logs import CustomLogger, get_logger
from .proxy import DISABLED
from .target import Target, build_target
from .wire import (
    Response,
    create_request,
    expects_body,
    parse_chunk_size,
    parse_header_line,
    parse_status_line,
)

logger: CustomLogger = get_logger(__name__)


def download(
    url: str,
    verify: VerifyContext,
    config: EngineConfig = DEFAULT_CONFIG,
    max_redirects: Optional[int] = None,
) -> Response:
    """Fetch *url*, following redirects on fresh connections."""
    remaining = config.max_redirects if max_redirects is None else max_redirects

    while True:
        logger.info("Downloading %s", url)
        target = build_target(url, DISABLED)
        request = create_request(
            "GET", target.path, target.host_header, target.url, config.user_agent
        )

        with _connection(target, verify, config) as (sock, fp):
            try:
                sock.sendall(request.serialise())
            except OSError as e:
                raise WriteError(str(e), target.host, target.port) from e

            try:
                response = _read_header(fp, target.url, config)
                if response.is_redirect:
                    location = response.location
                    if location is None:
                        raise MalformedResponse(
                            f"{response.status_code} redirect without Location header"
                        )
                    if remaining == 0:
                        raise RedirectLimitExceeded(
                            f"redirect limit reached, not following {location}"
                        )
                    remaining -= 1
                    url = urljoin(target.url, location)
                    logger.info("Redirecting to %s", url)
                    continue

                if expects_body(request, response):
                    response.body = _read_body(fp, response, config)
            except RetrieverError as exc:
                if exc.host is None:
                    exc.host, exc.port = target.host, target.port
                raise
            except TimeoutError as e:
                raise ReadError(
                    f"timed out after {config.timeout:g}s", target.host, target.port
                ) from e
            except OSError as e:
                raise ReadError(str(e), target.host, target.port) from e

        return response


@contextmanager
def _connection(
    target: Target, verify: VerifyContext, config: EngineConfig
) -> Iterator[tuple[socket.socket, BinaryIO]]:
    host, port = target.dial_host, target.dial_port
    try:
        infos = socket.getaddrinfo(host, int(port), type=socket.SOCK_STREAM)
    except (socket.gaierror, UnicodeError) as e:
        raise ResolveError(str(e), host, port) from e

    sock: Optional[socket.socket] = None
    last_error: Optional[OSError] = None
    for family, type_, proto, _, address in infos:
        candidate = socket.socket(family, type_, proto)
        candidate.settimeout(config.timeout)
        try:
            candidate.connect(address)
        except OSError as e:
            candidate.close()
            last_error = e
            continue
        sock = candidate
        break
    if sock is None:
        raise ConnectError(str(last_error or "no address"), host, port) from last_error
    logger.debug("Connected to %s:%s", host, port)

    if target.is_tls:
        try:
            sock = verify.ssl_context.wrap_socket(sock, server_hostname=target.host)
        except ssl.SSLCertVerificationError as e:
            sock.close()
            raise TLSError(
                f"certificate verification failed for {target.host}: {e.verify_message or e}",
                host,
                port,
            ) from e
        except (ssl.SSLError, OSError) as e:
            sock.close()
            raise TLSError(f"handshake with {target.host} failed: {e}", host, port) from e
        sock.settimeout(config.timeout)

    fp = sock.makefile("rb")
    try:
        yield sock, fp
    finally:
        fp.close()
        _shutdown(sock)


def _shutdown(sock: socket.socket) -> None:
    try:
        if isinstance(sock, ssl.SSLSocket):
            sock = sock.unwrap()
        sock.shutdown(socket.SHUT_RDWR)
    except (ssl.SSLError, ConnectionError, TimeoutError) as e:
        logger.debug("Shutdown: peer already gone (%s)", e)
    except OSError as e:
        if e.errno not in (errno.ENOTCONN, errno.ECONNRESET, errno.EPIPE):
            logger.error("Shutdown failed: %s", e)
    finally:
        sock.close()


def _readline(fp: BinaryIO, config: EngineConfig) -> bytes:
    line = fp.readline(config.read_buffer_size + 1)
    if len(line) > config.read_buffer_size:
        raise MalformedResponse("line too long")
    return line


def _read_header(fp: BinaryIO, url: str, config: EngineConfig) -> Response:
    while True:
        line = _readline(fp, config)
        if not line:
            raise ReadError("connection closed before the status line")
        version, status, reason = parse_status_line(line)
        headers: list[tuple[str, str]] = []
        while True:
            line = _readline(fp, config)
            if not line:
                raise ReadError("connection closed inside the header block")
            if line in (b"\r\n", b"\n"):
                break
            if len(headers) >= config.max_header_lines:
                raise MalformedResponse(f"more than {config.max_header_lines} header lines")
            headers.append(parse_header_line(line))
        if 100 <= status < 200 and status != 101:
            continue
        return Response(url=url, version=version, status_code=status, reason=reason, headers=headers)


def _read_exactly(fp: BinaryIO, size: int) -> bytes:
    data = fp.read(size)
    if len(data) < size:
        raise ReadError(f"body truncated after {len(data)} of {size} bytes")
    return data


def _read_body(fp: BinaryIO, response: Response, config: EngineConfig) -> bytes:
    if response.chunked:
        body = bytearray()
        while True:
            size_line = _readline(fp, config)
            if not size_line:
                raise ReadError("connection closed inside a chunked body")
            size = parse_chunk_size(size_line)
            if size == 0:
                while _readline(fp, config) not in (b"", b"\r\n", b"\n"):
                    pass
                return bytes(body)
            body.extend(_read_exactly(fp, size))
            _readline(fp, config)

    length = response.content_length
    if length is not None:
        return _read_exactly(fp, length)
    return fp.read()
