"""
wire.py — HTTP/1.1 message model and framing helpers.

Shared by the asynchronous transport and the synchronous downloader: both
read lines from their stream and hand them to the parsers here, so status
line, header and chunk-size rules live in one place.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from .errors import MalformedResponse

CRLF = b"\r\n"

REDIRECT_STATUSES: frozenset[int] = frozenset({300, 301, 302, 303, 304, 307, 308})


# ============================================================================
# Messages
# ============================================================================


@dataclass
class Request:
    """An outgoing HTTP/1.1 request.

    ``target`` is the request-target as written on the request line
    (origin-form path, absolute URL, or CONNECT authority).  ``url`` is the
    absolute URL the request stands for; it is the base against which a
    relative ``Location`` is resolved.
    """

    method: str
    target: str
    headers: list[tuple[str, str]]
    url: str
    version: str = "HTTP/1.1"

    @property
    def is_connect(self) -> bool:
        return self.method == "CONNECT"

    def header(self, name: str) -> Optional[str]:
        return _find(self.headers, name)

    def serialise(self) -> bytes:
        lines = [f"{self.method} {self.target} {self.version}"]
        lines.extend(f"{n}: {v}" for n, v in self.headers)
        return ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1")


@dataclass
class Response:
    """A parsed HTTP/1.x response; ``body`` is filled once it was read."""

    url: str
    version: str
    status_code: int
    reason: str
    headers: list[tuple[str, str]] = field(default_factory=list)
    body: bytes = b""

    @property
    def status_line(self) -> str:
        return f"{self.version} {self.status_code} {self.reason}".rstrip()

    def header(self, name: str) -> Optional[str]:
        return _find(self.headers, name)

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def is_redirect(self) -> bool:
        return self.status_code in REDIRECT_STATUSES

    @property
    def location(self) -> Optional[str]:
        value = self.header("location")
        if value is None or not value.strip():
            return None
        return value.strip()

    @property
    def chunked(self) -> bool:
        te = self.header("transfer-encoding")
        return te is not None and "chunked" in te.lower()

    @property
    def content_length(self) -> Optional[int]:
        """Declared body length, ``None`` when absent.

        Raises :class:`MalformedResponse` for a non-numeric or
        inconsistent value.
        """
        values = {v.strip() for k, v in self.headers if k.lower() == "content-length"}
        if not values:
            return None
        if len(values) > 1:
            raise MalformedResponse(f"conflicting Content-Length values {sorted(values)}")
        raw = values.pop()
        if not raw.isdigit():
            raise MalformedResponse(f"invalid Content-Length {raw!r}")
        return int(raw)

    @property
    def keep_alive(self) -> bool:
        connection = (self.header("connection") or "").lower()
        if "close" in connection:
            return False
        if self.version.upper() == "HTTP/1.0":
            return "keep-alive" in connection
        return True

    def render_head(self) -> str:
        lines = [self.status_line]
        lines.extend(f"{k}: {v}" for k, v in self.headers)
        return "\n".join(lines)


def _find(headers: list[tuple[str, str]], name: str) -> Optional[str]:
    lower = name.lower()
    for k, v in headers:
        if k.lower() == lower:
            return v
    return None


def create_request(
    method: str,
    target: str,
    host: str,
    url: str,
    user_agent: str,
    proxy_authorization: Optional[str] = None,
) -> Request:
    """Build a request carrying ``Host`` and ``User-Agent``.

    ``Proxy-Authorization`` is added only when *proxy_authorization* is set.
    """
    headers = [("Host", host), ("User-Agent", user_agent)]
    if proxy_authorization:
        headers.append(("Proxy-Authorization", proxy_authorization))
    return Request(method=method, target=target, headers=headers, url=url)


# ============================================================================
# Parsing
# ============================================================================


def parse_status_line(line: bytes) -> tuple[str, int, str]:
    """Split ``HTTP/1.1 200 OK`` into ``(version, status, reason)``."""
    text = line.decode("latin-1").rstrip("\r\n")
    parts = text.split(" ", 2)
    if len(parts) < 2 or not parts[0].upper().startswith("HTTP/"):
        raise MalformedResponse(f"invalid status line {text[:80]!r}")
    version, code = parts[0], parts[1]
    if len(code) != 3 or not code.isdigit():
        raise MalformedResponse(f"invalid status code {code!r}")
    reason = parts[2] if len(parts) > 2 else ""
    return version, int(code), reason


def parse_header_line(line: bytes) -> tuple[str, str]:
    text = line.decode("latin-1").rstrip("\r\n")
    if ":" not in text:
        raise MalformedResponse(f"invalid header line {text[:80]!r}")
    name, value = text.split(":", 1)
    name = name.strip()
    if not name or " " in name:
        raise MalformedResponse(f"invalid header name {name[:80]!r}")
    return name, value.strip()


def parse_chunk_size(line: bytes) -> int:
    """Chunk size from a chunk header line, ignoring chunk extensions."""
    text = line.decode("latin-1").split(";", 1)[0].strip()
    try:
        size = int(text, 16)
    except ValueError:
        raise MalformedResponse(f"invalid chunk size {text[:20]!r}") from None
    if size < 0:
        raise MalformedResponse(f"invalid chunk size {text[:20]!r}")
    return size


def expects_body(request: Request, response: Response) -> bool:
    """Whether a body follows the header block of *response*.

    A 2xx without ``Content-Length`` or chunked framing is complete at
    header stage.
    """
    status = response.status_code
    if request.method == "HEAD":
        return False
    if 100 <= status < 200 or status in (204, 304):
        return False
    if request.is_connect and response.is_success:
        return False
    if response.chunked or response.content_length is not None:
        return True
    if response.is_success:
        return False
    return not response.keep_alive
