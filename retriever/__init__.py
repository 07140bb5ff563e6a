"""HTTP/1.1 retriever: direct, proxy-relayed and CONNECT-tunneled fetches."""

from .certs import VerifyContext, create_verify_context
from .config import DEFAULT_CONFIG, VERSION, EngineConfig
from .downloader import download
from .engine import ConnectionEngine, Done, NextAction, Redirect, RequestQueue, SpliceTLS
from .errors import (
    ConnectError,
    MalformedResponse,
    MalformedURL,
    ProxyConfigParseError,
    ReadError,
    RedirectLimitExceeded,
    ResolveError,
    RetrieverError,
    TLSError,
    UnsupportedProxyTLS,
    WriteError,
)
from .orchestrator import Retriever
from .proxy import DISABLED, ProxyConfig
from .target import FetchMode, Scheme, Target, build_target
from .transport import Transport, TransportKind
from .wire import Request, Response

__version__ = VERSION

__all__ = [
    "ConnectError",
    "ConnectionEngine",
    "DEFAULT_CONFIG",
    "DISABLED",
    "Done",
    "EngineConfig",
    "FetchMode",
    "MalformedResponse",
    "MalformedURL",
    "NextAction",
    "ProxyConfig",
    "ProxyConfigParseError",
    "ReadError",
    "Redirect",
    "RedirectLimitExceeded",
    "Request",
    "RequestQueue",
    "ResolveError",
    "Response",
    "Retriever",
    "RetrieverError",
    "Scheme",
    "SpliceTLS",
    "TLSError",
    "Target",
    "Transport",
    "TransportKind",
    "UnsupportedProxyTLS",
    "VerifyContext",
    "WriteError",
    "build_target",
    "create_verify_context",
    "download",
]
