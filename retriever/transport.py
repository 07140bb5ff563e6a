"""
transport.py — Byte stream to one peer, plain TCP or TLS over TCP.

A ``Transport`` owns exactly one socket, wrapped in an asyncio
``(StreamReader, StreamWriter)`` pair.  The two variants differ only in
the handshake step: a TLS transport is connected as plain TCP first and
then upgraded with ``loop.start_tls()``.  The same upgrade implements
*splicing*: after a proxy answered ``CONNECT`` with 2xx, the plain
transport hands its socket to a new TLS transport, which handshakes
directly with the origin through the tunnel.  The plain transport is
consumed by the hand-off and refuses any further use.
"""

from __future__ import annotations

import asyncio
import errno
import socket
import ssl
from asyncio import StreamReader, StreamWriter
from enum import Enum
from typing import Optional

from .certs import describe_peer_certificate
from .config import DEFAULT_CONFIG, EngineConfig
from .errors import ConnectError, MalformedResponse, ReadError, ResolveError, TLSError, WriteError
from .logs import CustomLogger, get_logger
from .wire import Response, parse_chunk_size, parse_header_line, parse_status_line

logger: CustomLogger = get_logger(__name__)

# "peer already gone" conditions that are not worth reporting on shutdown
_BENIGN_ERRNOS = frozenset({errno.ENOTCONN, errno.ECONNRESET, errno.EPIPE, errno.ESHUTDOWN})


class TransportKind(Enum):
    PLAIN = "plain"
    TLS = "tls"


class Transport:
    """One outbound byte stream, owned by exactly one engine at a time.

    Parameters
    ----------
    kind:
        :attr:`TransportKind.PLAIN` or :attr:`TransportKind.TLS`.
    host, port:
        Address dialed (the proxy's address when proxied).
    ssl_context:
        Required for TLS transports.
    server_hostname:
        Name used for SNI and certificate verification.  Defaults to
        *host*; differs from it for a tunnel spliced to the origin.
    """

    __slots__ = (
        "kind",
        "host",
        "port",
        "server_hostname",
        "config",
        "reader",
        "writer",
        "_raw_writer",
        "_ssl_context",
        "_handshaken",
        "_consumed",
        "_closed",
    )

    def __init__(
        self,
        kind: TransportKind,
        host: str,
        port: str,
        *,
        ssl_context: Optional[ssl.SSLContext] = None,
        server_hostname: Optional[str] = None,
        config: EngineConfig = DEFAULT_CONFIG,
        reader: Optional[StreamReader] = None,
        writer: Optional[StreamWriter] = None,
    ) -> None:
        if kind is TransportKind.TLS and ssl_context is None:
            raise ValueError("a TLS transport needs an SSL context")
        self.kind = kind
        self.host = host
        self.port = port
        self.server_hostname = server_hostname or host
        self.config = config
        self.reader = reader
        self.writer = writer
        # pre-TLS writer; its finalizer would close the socket under the TLS layer
        self._raw_writer: Optional[StreamWriter] = None
        self._ssl_context = ssl_context
        self._handshaken = False
        self._consumed = False
        self._closed = False

    @classmethod
    def plain(cls, host: str, port: str, config: EngineConfig = DEFAULT_CONFIG) -> Transport:
        return cls(TransportKind.PLAIN, host, port, config=config)

    @classmethod
    def tls(
        cls,
        host: str,
        port: str,
        ssl_context: ssl.SSLContext,
        server_hostname: Optional[str] = None,
        config: EngineConfig = DEFAULT_CONFIG,
    ) -> Transport:
        return cls(
            TransportKind.TLS,
            host,
            port,
            ssl_context=ssl_context,
            server_hostname=server_hostname,
            config=config,
        )

    def __repr__(self) -> str:
        state = "consumed" if self._consumed else "closed" if self._closed else (
            "connected" if self.writer is not None else "idle"
        )
        return f"<Transport {self.kind.value} {self.host}:{self.port} {state}>"

    # -- state -------------------------------------------------------------

    @property
    def connected(self) -> bool:
        return self.writer is not None and not self._closed and not self._consumed

    @property
    def consumed(self) -> bool:
        return self._consumed

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def needs_handshake(self) -> bool:
        return self.kind is TransportKind.TLS and not self._handshaken

    def _check_usable(self) -> None:
        if self._consumed:
            raise RuntimeError(f"{self!r} was handed off and must not be used")
        if self._closed:
            raise RuntimeError(f"{self!r} is closed")

    def _streams(self) -> tuple[StreamReader, StreamWriter]:
        self._check_usable()
        if self.reader is None or self.writer is None:
            raise RuntimeError(f"{self!r} is not connected")
        return self.reader, self.writer

    # -- connection setup --------------------------------------------------

    async def resolve(self) -> list[tuple[str, int]]:
        """Resolve the dial address into ``(ip, port)`` candidates."""
        self._check_usable()
        loop = asyncio.get_running_loop()
        try:
            infos = await loop.getaddrinfo(
                self.host, int(self.port), type=socket.SOCK_STREAM
            )
        except (socket.gaierror, UnicodeError) as e:
            raise ResolveError(str(e), self.host, self.port) from e

        addresses = list(dict.fromkeys((info[4][0], info[4][1]) for info in infos))
        if not addresses:
            raise ResolveError("no addresses", self.host, self.port)
        logger.debug("Resolved %s to %s", self.host, ", ".join(a for a, _ in addresses))
        return addresses

    async def connect(self, addresses: list[tuple[str, int]]) -> None:
        """Open the TCP connection, trying *addresses* in order."""
        self._check_usable()
        if self.writer is not None:
            raise RuntimeError(f"{self!r} is already connected")

        last_error: Optional[OSError] = None
        for address, port in addresses:
            try:
                reader, writer = await asyncio.open_connection(
                    address, port, limit=self.config.read_buffer_size
                )
            except OSError as e:
                logger.debug("Connect to %s:%d failed: %s", address, port, e)
                last_error = e
                continue
            self.reader, self.writer = reader, writer
            logger.debug("Connected to %s:%s (%s)", self.host, self.port, address)
            return

        message = str(last_error) if last_error else "no address to connect to"
        raise ConnectError(message, self.host, self.port) from last_error

    async def handshake(self) -> None:
        """Client-side TLS handshake over the connected socket."""
        if self.kind is not TransportKind.TLS:
            raise RuntimeError("plain transports have no handshake")
        _, writer = self._streams()
        loop = asyncio.get_running_loop()

        transport = writer.transport
        proto_obj = transport.get_protocol()

        try:
            ssl_transport = await loop.start_tls(
                transport,
                proto_obj,
                self._ssl_context,
                server_side=False,
                server_hostname=self.server_hostname,
            )
        except ssl.SSLCertVerificationError as e:
            raise TLSError(
                f"certificate verification failed for {self.server_hostname}: "
                f"{e.verify_message or e}",
                self.host,
                self.port,
            ) from e
        except (ssl.SSLError, OSError) as e:
            raise TLSError(
                f"handshake with {self.server_hostname} failed: {e}", self.host, self.port
            ) from e

        if ssl_transport is None:
            raise TLSError("TLS handshake failed", self.host, self.port)

        tls_reader = StreamReader(limit=self.config.read_buffer_size)
        tls_proto = asyncio.StreamReaderProtocol(tls_reader)
        ssl_transport.set_protocol(tls_proto)
        tls_proto.connection_made(ssl_transport)
        tls_writer = StreamWriter(ssl_transport, tls_proto, tls_reader, loop)

        self._raw_writer = writer
        self.reader, self.writer = tls_reader, tls_writer
        self._handshaken = True

        ssl_obj = ssl_transport.get_extra_info("ssl_object")
        logger.debug(
            "TLS established with %s (%s): %s",
            self.server_hostname,
            ssl_obj.version() if ssl_obj else "?",
            describe_peer_certificate(ssl_obj),
        )

    def splice_to_tls(
        self, ssl_context: ssl.SSLContext, server_hostname: str
    ) -> Transport:
        """Move the socket into a new TLS transport; *self* is consumed.

        The returned transport is connected but has not handshaken yet.
        """
        if self.kind is not TransportKind.PLAIN:
            raise RuntimeError("only a plain transport can be spliced to TLS")
        reader, writer = self._streams()

        spliced = Transport(
            TransportKind.TLS,
            self.host,
            self.port,
            ssl_context=ssl_context,
            server_hostname=server_hostname,
            config=self.config,
            reader=reader,
            writer=writer,
        )
        self.reader = None
        self.writer = None
        self._consumed = True
        logger.debug(
            "Spliced tunnel via %s:%s to TLS for %s", self.host, self.port, server_hostname
        )
        return spliced

    # -- I/O ---------------------------------------------------------------

    async def write(self, data: bytes) -> None:
        _, writer = self._streams()
        try:
            writer.write(data)
            await writer.drain()
        except OSError as e:
            raise WriteError(str(e) or type(e).__name__, self.host, self.port) from e

    async def read_header(self, url: str) -> Response:
        """Read a status line and header block.

        Interim 1xx responses other than ``101`` are skipped.
        """
        while True:
            line = await self._readline()
            if not line:
                raise ReadError("connection closed before the status line", self.host, self.port)
            version, status, reason = parse_status_line(line)

            headers: list[tuple[str, str]] = []
            while True:
                line = await self._readline()
                if not line:
                    raise ReadError("connection closed inside the header block", self.host, self.port)
                if line in (b"\r\n", b"\n"):
                    break
                if len(headers) >= self.config.max_header_lines:
                    raise MalformedResponse(
                        f"more than {self.config.max_header_lines} header lines",
                        self.host,
                        self.port,
                    )
                headers.append(parse_header_line(line))

            if 100 <= status < 200 and status != 101:
                logger.debug("Skipping interim %d response", status)
                continue

            return Response(
                url=url,
                version=version,
                status_code=status,
                reason=reason,
                headers=headers,
            )

    async def read_body(self, response: Response) -> bytes:
        """Read the body framed by *response*'s headers.

        Handles three framing modes:
        1. ``Transfer-Encoding: chunked``
        2. ``Content-Length: N``
        3. close-delimited (read until EOF)
        """
        if response.chunked:
            return await self._read_chunked()
        length = response.content_length
        if length is not None:
            return await self._readexactly(length)
        return await self._read_until_close()

    async def _readline(self) -> bytes:
        reader, _ = self._streams()
        try:
            return await reader.readline()
        except ValueError as e:
            # StreamReader reports an overlong line as ValueError
            raise MalformedResponse(f"line too long: {e}", self.host, self.port) from e
        except OSError as e:
            raise ReadError(str(e) or type(e).__name__, self.host, self.port) from e

    async def _readexactly(self, size: int) -> bytes:
        reader, _ = self._streams()
        try:
            return await reader.readexactly(size)
        except asyncio.IncompleteReadError as e:
            raise ReadError(
                f"body truncated after {len(e.partial)} of {size} bytes", self.host, self.port
            ) from e
        except OSError as e:
            raise ReadError(str(e) or type(e).__name__, self.host, self.port) from e

    async def _read_chunked(self) -> bytes:
        """Read a chunked-encoded body, returning the reassembled bytes."""
        body = bytearray()
        while True:
            size_line = await self._readline()
            if not size_line:
                raise ReadError("connection closed inside a chunked body", self.host, self.port)
            size = parse_chunk_size(size_line)
            if size == 0:
                # optional trailer fields, then the final empty line
                while True:
                    trailer = await self._readline()
                    if trailer in (b"", b"\r\n", b"\n"):
                        break
                break
            body.extend(await self._readexactly(size))
            await self._readline()  # chunk-terminating CRLF
        return bytes(body)

    async def _read_until_close(self) -> bytes:
        reader, _ = self._streams()
        body = bytearray()
        while True:
            try:
                chunk = await reader.read(self.config.read_buffer_size)
            except OSError as e:
                raise ReadError(str(e) or type(e).__name__, self.host, self.port) from e
            if not chunk:
                break
            body.extend(chunk)
        return bytes(body)

    # -- teardown ----------------------------------------------------------

    async def shutdown(self) -> None:
        """Protocol-level close, at most once.

        TLS transports send ``close_notify`` before the socket closes;
        plain transports half-close the write side first.  A peer that
        already went away is not an error.  A consumed transport is left
        alone: its socket belongs to the transport it was spliced into.
        """
        if self._closed or self._consumed:
            return
        self._closed = True
        writer = self.writer
        if writer is None:
            return

        transport = writer.transport
        try:
            if transport.is_closing():
                return
            ssl_obj = transport.get_extra_info("ssl_object")
            if ssl_obj is not None:
                try:
                    ssl_obj.version()
                except Exception:
                    # SSL session is dead, skip graceful close
                    transport.abort()
                    return
            elif writer.can_write_eof():
                writer.write_eof()
            writer.close()
            await asyncio.wait_for(writer.wait_closed(), timeout=2.0)
        except TimeoutError:
            if not transport.is_closing():
                transport.abort()
            logger.trace("Shutdown of %s:%s timed out, aborted", self.host, self.port)
        except (ssl.SSLError, ConnectionError) as e:
            logger.debug("Shutdown of %s:%s: peer already gone (%s)", self.host, self.port, e)
        except OSError as e:
            if e.errno in _BENIGN_ERRNOS:
                logger.debug("Shutdown of %s:%s: %s", self.host, self.port, e)
            else:
                logger.error("Shutdown of %s:%s failed: %s", self.host, self.port, e)
