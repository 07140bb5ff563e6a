"""
engine.py — Per-connection state machine.

Architecture
------------
A ``ConnectionEngine`` owns one :class:`~retriever.transport.Transport`
and one :class:`RequestQueue` and drives them through::

    Resolving → Connecting → (Handshaking) → Sending → ReadingHeader
        → Deciding → {ReadingBody | TunnelSplice | Redirecting} → Closed

The engine never creates another engine.  When the exchange cannot be
finished on its own transport it returns a :data:`NextAction` to its
caller (the orchestrator), which decides what to build next:

* :class:`Done` — the queue drained; carries the last response.
* :class:`Redirect` — a 3xx with ``Location`` arrived and the redirect
  budget allows following it.  The transport is already shut down.
* :class:`SpliceTLS` — a ``CONNECT`` succeeded on a plain transport.  The
  transport is handed over untouched, together with the requests still
  queued behind the ``CONNECT``.

Ownership
~~~~~~~~~
``run()`` may be awaited once.  When it returns or raises, the engine is
``CLOSED`` and holds no transport: either it shut the transport down
(exactly once) or it handed it off in a ``SpliceTLS``.  Nothing of a
finished engine remains scheduled on the loop, so a superseded engine
cannot observe late completions.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Iterable, Iterator, Optional, Union
from urllib.parse import urljoin

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
from .transport import Transport, TransportKind
from .wire import Request, Response, expects_body

logger: CustomLogger = get_logger(__name__)


# ============================================================================
# Request Queue
# ============================================================================


class RequestQueue:
    """Requests sent one at a time, in order, over one transport.

    The front request stays queued until its response was fully consumed,
    so that byte-stream framing stays aligned.  Items may be appended only
    until the queue is sealed by the engine that runs it.
    """

    __slots__ = ("_items", "_sealed")

    def __init__(self, requests: Iterable[Request] = ()) -> None:
        self._items: deque[Request] = deque(requests)
        self._sealed = False

    def push_back(self, request: Request) -> None:
        if self._sealed:
            raise RuntimeError("cannot append to a queue that is already running")
        self._items.append(request)

    def front(self) -> Request:
        if not self._items:
            raise IndexError("front() on an empty request queue")
        return self._items[0]

    def pop_front(self) -> Request:
        if not self._items:
            raise IndexError("pop_front() on an empty request queue")
        return self._items.popleft()

    def is_empty(self) -> bool:
        return not self._items

    def seal(self) -> None:
        self._sealed = True

    @property
    def sealed(self) -> bool:
        return self._sealed

    def remainder(self) -> RequestQueue:
        """A fresh, unsealed queue holding the requests still pending."""
        return RequestQueue(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[Request]:
        return iter(self._items)

    def __repr__(self) -> str:
        pending = ", ".join(f"{r.method} {r.target}" for r in self._items)
        return f"RequestQueue([{pending}])"


# ============================================================================
# Next Actions
# ============================================================================


@dataclass(frozen=True)
class Done:
    response: Optional[Response]


@dataclass(frozen=True)
class Redirect:
    location: str
    remaining: int
    response: Response


@dataclass(frozen=True)
class SpliceTLS:
    transport: Transport
    queue: RequestQueue
    remaining: int
    response: Response


NextAction = Union[Done, Redirect, SpliceTLS]


# ============================================================================
# Connection Engine
# ============================================================================


class State(Enum):
    IDLE = "idle"
    RESOLVING = "resolving"
    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    SENDING = "sending"
    READING_HEADER = "reading-header"
    DECIDING = "deciding"
    READING_BODY = "reading-body"
    TUNNEL_SPLICE = "tunnel-splice"
    REDIRECTING = "redirecting"
    CLOSED = "closed"


# error reported when a phase deadline fires
_PHASE_ERRORS: dict[State, type[RetrieverError]] = {
    State.RESOLVING: ResolveError,
    State.CONNECTING: ConnectError,
    State.HANDSHAKING: TLSError,
    State.SENDING: WriteError,
    State.READING_HEADER: ReadError,
    State.DECIDING: ReadError,
    State.READING_BODY: ReadError,
}


class ConnectionEngine:
    """Drive one transport through one queue of requests.

    Parameters
    ----------
    transport:
        Exclusively owned from construction on.  May already be
        connected (a spliced tunnel); resolve and connect are then
        skipped.
    queue:
        Requests to send.  Sealed when the engine starts.
    max_redirects:
        Redirects still allowed for this fetch.  ``0`` forbids any.
    """

    __slots__ = ("_transport", "_queue", "max_redirects", "config", "_state")

    def __init__(
        self,
        transport: Transport,
        queue: RequestQueue,
        max_redirects: int,
        config: EngineConfig = DEFAULT_CONFIG,
    ) -> None:
        if max_redirects < 0:
            raise ValueError("max_redirects must not be negative")
        self._transport: Optional[Transport] = transport
        self._queue = queue
        self.max_redirects = max_redirects
        self.config = config
        self._state = State.IDLE

    @property
    def state(self) -> State:
        return self._state

    @property
    def transport(self) -> Optional[Transport]:
        return self._transport

    @property
    def queue(self) -> RequestQueue:
        return self._queue

    def _set_state(self, state: State) -> None:
        logger.trace("[engine %x] %s -> %s", id(self), self._state.value, state.value)
        self._state = state

    # -- lifecycle ---------------------------------------------------------

    async def run(self) -> NextAction:
        """Run the state machine to completion.

        Raises
        ------
        RetrieverError
            Any phase failure.  The transport is shut down first.
        RuntimeError
            If the engine was already started.
        """
        if self._state is not State.IDLE:
            raise RuntimeError("a connection engine can only be started once")
        self._queue.seal()
        transport = self._transport
        assert transport is not None

        try:
            return await self._run(transport)
        except RetrieverError as exc:
            if exc.host is None:
                exc.host, exc.port = transport.host, transport.port
            raise
        finally:
            await self._close()

    async def _close(self) -> None:
        transport, self._transport = self._transport, None
        if transport is not None:
            await transport.shutdown()
        if self._state is not State.CLOSED:
            self._set_state(State.CLOSED)

    def _hand_off(self) -> Transport:
        transport, self._transport = self._transport, None
        assert transport is not None
        return transport

    @contextlib.asynccontextmanager
    async def _deadline(self) -> AsyncIterator[None]:
        """Phase deadline; expiry is reported as the current phase's error."""
        try:
            async with asyncio.timeout(self.config.timeout):
                yield
        except TimeoutError as e:
            error = _PHASE_ERRORS.get(self._state, ReadError)
            raise error(
                f"timed out after {self.config.timeout:g}s while {self._state.value}"
            ) from e

    # -- state machine -----------------------------------------------------

    async def _run(self, transport: Transport) -> NextAction:
        if self._queue.is_empty():
            logger.debug("Nothing queued for %s:%s", transport.host, transport.port)
            return Done(None)

        if not transport.connected:
            async with self._deadline():
                self._set_state(State.RESOLVING)
                addresses = await transport.resolve()
                self._set_state(State.CONNECTING)
                await transport.connect(addresses)

        if transport.needs_handshake:
            async with self._deadline():
                self._set_state(State.HANDSHAKING)
                await transport.handshake()

        last: Optional[Response] = None
        while not self._queue.is_empty():
            request = self._queue.front()
            async with self._deadline():
                self._set_state(State.SENDING)
                logger.debug(
                    "%s %s -> %s:%s", request.method, request.target, transport.host, transport.port
                )
                await transport.write(request.serialise())

                self._set_state(State.READING_HEADER)
                response = await transport.read_header(request.url)
                logger.debug("%s <- %s", response.status_line, request.url)

                self._set_state(State.DECIDING)
                if response.is_redirect:
                    return await self._redirect(request, response)

                if request.is_connect:
                    if not response.is_success:
                        raise ConnectError(
                            f"proxy refused tunnel to {request.target}: {response.status_line}"
                        )
                    if transport.kind is TransportKind.PLAIN:
                        return self._splice(response)

                if expects_body(request, response):
                    self._set_state(State.READING_BODY)
                    response.body = await transport.read_body(response)
                    logger.debug("Read %d body bytes for %s", len(response.body), request.url)

            self._queue.pop_front()
            last = response

            if not self._queue.is_empty() and not response.keep_alive:
                logger.warning(
                    "%s:%s closes the connection; dropping %d queued request(s)",
                    transport.host,
                    transport.port,
                    len(self._queue),
                )
                break

        return Done(last)

    async def _redirect(self, request: Request, response: Response) -> Redirect:
        self._set_state(State.REDIRECTING)
        location = response.location
        if location is None:
            raise MalformedResponse(f"{response.status_code} redirect without Location header")
        if self.max_redirects == 0:
            raise RedirectLimitExceeded(f"redirect limit reached, not following {location}")

        target = urljoin(request.url, location)
        # the whole pipeline is abandoned together with this transport
        await self._close()
        return Redirect(location=target, remaining=self.max_redirects - 1, response=response)

    def _splice(self, response: Response) -> SpliceTLS:
        self._set_state(State.TUNNEL_SPLICE)
        self._queue.pop_front()
        pending = self._queue.remainder()
        transport = self._hand_off()
        self._set_state(State.CLOSED)
        return SpliceTLS(
            transport=transport,
            queue=pending,
            remaining=self.max_redirects,
            response=response,
        )
