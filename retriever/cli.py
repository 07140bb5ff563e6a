"""
cli.py — Command-line driver.

Reads options from the command line and from an INI file (command line
wins), builds the proxy configuration and the TLS trust roots once, then
fetches every URL in turn on a single ``uvloop`` event loop.  Per-URL
failures are logged and summarised at the end; they never change the
exit status.
"""

from __future__ import annotations

import argparse
import configparser
import sys
from typing import BinaryIO, Optional, Sequence

import uvloop

from .certs import VerifyContext, create_verify_context
from .config import DEFAULT_CONFIG, VERSION, EngineConfig
from .downloader import download
from .errors import ProxyConfigParseError, RetrieverError
from .logs import CustomLogger, get_logger, setup_logging
from .orchestrator import Retriever
from .proxy import DISABLED, ProxyConfig
from .wire import Response

logger: CustomLogger = get_logger(__name__)

SECTION = "retriever"
EXIT_OK = 0
EXIT_USAGE = -1


class Stats:
    def __init__(self) -> None:
        self.failed_fetches: dict[str, str] = {}
        self.completed: int = 0

    def add_failed(self, url: str, reason: str) -> None:
        self.failed_fetches[url] = reason

    def add_completed(self) -> None:
        self.completed += 1

    def print_statistics(self) -> None:
        logger.debug(
            "%d fetch(es) completed, %d failed", self.completed, len(self.failed_fetches)
        )
        if self.failed_fetches:
            logger.warning("Failed fetches:")
            for url, reason in self.failed_fetches.items():
                logger.warning("%s : %s", url, reason)


class Driver:
    """One run of the command: settings, trust roots and the URL loop."""

    def __init__(self, argv: Optional[Sequence[str]] = None, out: Optional[BinaryIO] = None) -> None:
        self.args: argparse.Namespace = parser.parse_args(argv)
        self.config: configparser.ConfigParser = configparser.ConfigParser()
        self.out: BinaryIO = out if out is not None else sys.stdout.buffer
        self.statistics: Stats = Stats()

    def config_ini(self) -> None:
        self.config.read(self.args.config)
        self.debug: bool = (
            self.args.debug
            if self.args.debug is not None
            else self.config.getboolean(SECTION, "debug", fallback=False)
        )
        self.proxy_spec: Optional[str] = (
            self.args.proxy
            if self.args.proxy is not None
            else self.config.get(SECTION, "proxy", fallback=None)
        )
        self.proxy_auth: Optional[str] = (
            self.args.proxy_auth
            if self.args.proxy_auth is not None
            else self.config.get(SECTION, "proxy_auth", fallback=None)
        )
        self.max_redirects: int = (
            self.args.max_redirects
            if self.args.max_redirects is not None
            else self.config.getint(SECTION, "max_redirects", fallback=DEFAULT_CONFIG.max_redirects)
        )
        self.timeout: float = (
            self.args.timeout
            if self.args.timeout is not None
            else self.config.getfloat(SECTION, "timeout", fallback=DEFAULT_CONFIG.timeout)
        )
        self.user_agent: str = self.config.get(
            SECTION, "user_agent", fallback=DEFAULT_CONFIG.user_agent
        )
        self.ca_certificate: Optional[str] = (
            self.args.ca_certificate
            if self.args.ca_certificate is not None
            else self.config.get(SECTION, "ca_certificate", fallback=None)
        )
        self.engine_config: EngineConfig = EngineConfig(
            timeout=self.timeout,
            user_agent=self.user_agent,
            max_redirects=self.max_redirects,
        )

    def prepare(self) -> bool:
        """Validate settings and build shared state; ``False`` aborts the run."""
        try:
            self.config_ini()
        except configparser.Error as e:
            setup_logging(self.args.debug or False)
            logger.error("Cannot read %s: %s", self.args.config, e)
            return False
        except ValueError as e:
            setup_logging(self.args.debug or False)
            logger.error("Invalid value in %s: %s", self.args.config, e)
            return False
        setup_logging(self.debug)

        if not self.args.urls:
            logger.error("No URL given")
            parser.print_usage(sys.stderr)
            return False
        if self.max_redirects < 0:
            logger.error("--max-redirects must not be negative (got %d)", self.max_redirects)
            return False

        try:
            self.proxy: ProxyConfig = (
                ProxyConfig.from_spec(self.proxy_spec, self.proxy_auth)
                if self.proxy_spec
                else DISABLED
            )
        except ProxyConfigParseError as e:
            logger.error("%s", e)
            return False
        if self.proxy.enabled:
            logger.info("Using proxy %r", self.proxy)

        try:
            self.verify: VerifyContext = create_verify_context(self.ca_certificate)
        except (OSError, ValueError) as e:
            logger.error("Cannot load CA certificates from %s: %s", self.ca_certificate, e)
            return False
        logger.debug(
            "Trust roots: %s (%d CA certificate(s))",
            ", ".join(self.verify.sources) or "none",
            self.verify.ca_count,
        )
        return True

    # -- reporting ---------------------------------------------------------

    def report(self, url: str, response: Optional[Response]) -> None:
        if response is None:
            logger.warning("%s: nothing fetched", url)
            return
        logger.info("%s: %s (%d bytes)", response.url, response.status_line, len(response.body))
        logger.debug("Response head:\n%s", response.render_head())
        self.out.write(response.body)
        self.out.flush()
        self.statistics.add_completed()

    def failed(self, url: str, exc: RetrieverError) -> None:
        logger.error("Failed to fetch %s: %s", url, exc)
        self.statistics.add_failed(url, str(exc))

    # -- execution ---------------------------------------------------------

    async def fetch_all(self) -> None:
        retriever = Retriever(self.verify, self.proxy, self.engine_config)
        for url in self.args.urls:
            try:
                response = await retriever.fetch(url, self.max_redirects)
            except RetrieverError as e:
                self.failed(url, e)
                continue
            self.report(url, response)

    def download_all(self) -> None:
        if self.proxy.enabled:
            logger.warning("The synchronous downloader ignores the proxy setting")
        for url in self.args.urls:
            try:
                response = download(url, self.verify, self.engine_config, self.max_redirects)
            except RetrieverError as e:
                self.failed(url, e)
                continue
            self.report(url, response)

    def run(self) -> int:
        if not self.prepare():
            return EXIT_USAGE
        try:
            if self.args.sync:
                self.download_all()
            else:
                uvloop.run(self.fetch_all())
        except KeyboardInterrupt:
            logger.warning("Interrupted")
        finally:
            self.statistics.print_statistics()
        return EXIT_OK


parser = argparse.ArgumentParser(
    prog="retriever",
    description="Fetch URLs over HTTP/1.1, directly or through a forward proxy.",
)
parser.add_argument("urls", nargs="*", metavar="URL", help="URLs to fetch, in order")
parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
parser.add_argument("-d", "--debug", dest="debug", action="store_true", default=None, help="Enable debug logging")
parser.add_argument("-c", "--config", type=str, metavar="PATH", default="./retriever.ini", help="Path to config")
parser.add_argument("-p", "--proxy", dest="proxy", type=str, metavar="SPEC", default=None, help="Forward proxy as host:port or http(s)://host:port")
parser.add_argument("--proxy-auth", dest="proxy_auth", type=str, metavar="USER:PASS", default=None, help="Credentials for the proxy (basic auth)")
parser.add_argument("--max-redirects", dest="max_redirects", type=int, metavar="N", default=None, help=f"Redirects to follow per URL (default: {DEFAULT_CONFIG.max_redirects})")
parser.add_argument("--timeout", dest="timeout", type=float, metavar="SECONDS", default=None, help=f"Per-phase deadline (default: {DEFAULT_CONFIG.timeout:g})")
parser.add_argument("--ca-certificate", dest="ca_certificate", type=str, metavar="PATH", default=None, help="Extra PEM bundle of trusted CA certificates")
parser.add_argument("--sync", dest="sync", action="store_true", help="Use the blocking downloader (no proxy support)")


def main(argv: Optional[Sequence[str]] = None) -> int:
    return Driver(argv).run()


if __name__ == "__main__":
    sys.exit(main())
