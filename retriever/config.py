"""Tunable knobs for outbound connections."""

from __future__ import annotations

from dataclasses import dataclass

VERSION = "0.1.0"


@dataclass(frozen=True)
class EngineConfig:
    """Connection tunables.

    All timeouts are in seconds.  Buffer sizes are in bytes.

    Attributes
    ----------
    timeout:
        Deadline for each phase of a connection.  The clock restarts at
        every phase boundary: once for resolve + connect, once for the TLS
        handshake, and once per request for write + response read.
    read_buffer_size:
        Chunk size for close-delimited body reads; also the longest
        header line accepted.
    max_header_lines:
        Header fields accepted in one response before it is rejected.
    user_agent:
        Value of the ``User-Agent`` header on every request.
    max_redirects:
        Default redirect budget for a fetch.
    """

    timeout: float = 30.0
    read_buffer_size: int = 65536
    max_header_lines: int = 256
    user_agent: str = f"retriever/{VERSION}"
    max_redirects: int = 3


DEFAULT_CONFIG = EngineConfig()
