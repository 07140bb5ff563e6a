"""
orchestrator.py — Decide how a URL is fetched and run engines until done.

Three fetch modes are chosen from ``(scheme, proxy.enabled)``:

* **direct** — dial the origin; TLS iff the scheme is https.
* **proxy-relay** (http through a proxy) — dial the proxy and send the
  absolute URL as request target.
* **proxy-tunnel** (https through a proxy) — dial the proxy in clear,
  queue ``CONNECT host:port`` followed by the real ``GET``; once the
  tunnel is up the engine hands the socket back, it is spliced to TLS
  towards the origin and a new engine sends the ``GET``.

Redirects re-enter :meth:`Retriever.fetch` with a decremented budget and
the same proxy policy.
"""

from __future__ import annotations

from typing import Optional

from .certs import VerifyContext
from .config import DEFAULT_CONFIG, EngineConfig
from .engine import ConnectionEngine, Done, Redirect, RequestQueue, SpliceTLS
from .errors import UnsupportedProxyTLS
from .logs import CustomLogger, get_logger
from .proxy import DISABLED, ProxyConfig
from .target import FetchMode, Target, build_target
from .transport import Transport
from .wire import Request, Response, create_request

logger: CustomLogger = get_logger(__name__)


class Retriever:
    """Fetches URLs directly or through a forward proxy.

    Usage::

        verify = create_verify_context()
        retriever = Retriever(verify, ProxyConfig.from_spec("proxy:3128"))
        response = await retriever.fetch("https://example.org/", max_redirects=3)
        print(response.status_code, len(response.body))
    """

    __slots__ = ("verify", "proxy", "config")

    def __init__(
        self,
        verify: VerifyContext,
        proxy: ProxyConfig = DISABLED,
        config: EngineConfig = DEFAULT_CONFIG,
    ) -> None:
        self.verify = verify
        self.proxy = proxy
        self.config = config

    # -- planning ----------------------------------------------------------

    def plan(self, url: str, max_redirects: int) -> tuple[Target, ConnectionEngine]:
        """Build the target, the initial queue and an unstarted engine.

        No I/O happens here.

        Raises
        ------
        MalformedURL
            If *url* cannot be used.
        UnsupportedProxyTLS
            For an https URL through a TLS proxy.
        """
        target = build_target(url, self.proxy)

        if target.mode is FetchMode.DIRECT:
            transport = self._dial(target.dial_host, target.dial_port, tls=target.is_tls)
            queue = RequestQueue([self._origin_request(target)])

        elif target.mode is FetchMode.PROXY_RELAY:
            transport = self._dial(target.dial_host, target.dial_port, tls=self.proxy.ssl)
            queue = RequestQueue(
                [
                    create_request(
                        "GET",
                        target.url,
                        target.host_header,
                        target.url,
                        self.config.user_agent,
                        self.proxy.authorization,
                    )
                ]
            )

        else:
            if self.proxy.ssl:
                raise UnsupportedProxyTLS(
                    "tunneling through a TLS connection to the proxy is not supported",
                    self.proxy.host,
                    self.proxy.port,
                )
            transport = self._dial(target.dial_host, target.dial_port, tls=False)
            queue = RequestQueue(
                [
                    create_request(
                        "CONNECT",
                        target.authority,
                        target.authority,
                        target.url,
                        self.config.user_agent,
                        self.proxy.authorization,
                    ),
                    self._origin_request(target),
                ]
            )

        logger.debug(
            "%s fetch of %s via %s:%s: %r",
            target.mode.value,
            target.url,
            target.dial_host,
            target.dial_port,
            queue,
        )
        return target, ConnectionEngine(transport, queue, max_redirects, self.config)

    def _dial(self, host: str, port: str, tls: bool) -> Transport:
        if tls:
            return Transport.tls(host, port, self.verify.ssl_context, config=self.config)
        return Transport.plain(host, port, self.config)

    def _origin_request(self, target: Target) -> Request:
        return create_request(
            "GET", target.path, target.host_header, target.url, self.config.user_agent
        )

    # -- execution ---------------------------------------------------------

    async def fetch(self, url: str, max_redirects: Optional[int] = None) -> Optional[Response]:
        """Fetch *url*, following up to *max_redirects* redirects.

        Returns the final response, or ``None`` when nothing was queued.
        Raises :class:`RetrieverError` on the first failure.
        """
        if max_redirects is None:
            max_redirects = self.config.max_redirects
        logger.info("Downloading %s", url)
        target, engine = self.plan(url, max_redirects)

        while True:
            action = await engine.run()

            if isinstance(action, Done):
                return action.response

            if isinstance(action, Redirect):
                logger.info(
                    "%s: redirecting to %s (%d left)",
                    action.response.status_code,
                    action.location,
                    action.remaining,
                )
                return await self.fetch(action.location, action.remaining)

            if isinstance(action, SpliceTLS):
                logger.debug(
                    "Tunnel to %s established: %s",
                    target.authority,
                    action.response.status_line,
                )
                transport = action.transport.splice_to_tls(
                    self.verify.ssl_context, server_hostname=target.host
                )
                engine = ConnectionEngine(transport, action.queue, action.remaining, self.config)
                continue

            raise TypeError(f"unexpected engine action {action!r}")

