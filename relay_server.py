"""
relay_server.py — loopback listener and per-connection state machine.

Architecture
------------
A controller that cannot do TLS itself connects to the helper's
loopback port, sends one framed JSON request, and reads one framed JSON
response.  The helper closes the connection after every transaction.

Key components:

* **HelperRelay** — owns the ``asyncio.Server`` and the registry of live
  handlers; one :class:`ConnectionHandler` per accepted connection.
* **ConnectionHandler** — drives a connection through
  ``READING_LENGTH → READING_OBJECT → DISPATCHING → DONE`` and enforces
  its read and write deadlines.
* **Transport** (``transport.py``) — performs the actual HTTP request.

Failure policy
~~~~~~~~~~~~~~
Framing violations and expired deadlines drop the connection without a
response: the controller must treat an unexpected close as failure.
Requests that decode but are refused, and transport failures, are
answered with ``{"error": ...}`` because the socket is still usable.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import traceback
from asyncio import StreamReader, StreamWriter
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import relay_log  # noqa: F401
from connection import ManagedConnection
from framing import MAX_REQUEST_LENGTH, FrameDecoder, encode_frame
from protocol import (
    INVALID_PROXY,
    VALIDATION_FAILED,
    DeadlineExceeded,
    ProtocolError,
    ProxyError,
    Request,
    Response,
    TransportError,
    TruncatedRequest,
    ValidationError,
    decode_request,
    request_ok,
    resolve_proxy,
)
from transport import MAX_RESPONSE_BODY, Transport, error_name

logger = logging.getLogger(__name__)


# ============================================================================
# Configuration
# ============================================================================


def is_loopback(host: str) -> bool:
    if host == "localhost":
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


@dataclass(frozen=True)
class RelayConfig:
    """Tunable knobs for the helper.

    All timeouts are in seconds.  Sizes are in bytes.

    Attributes
    ----------
    host, port:
        Listening address.  Must be a loopback address; port ``0`` asks
        the OS for an ephemeral port.
    read_timeout:
        Budget for receiving the whole request frame, counted from
        accept.
    write_timeout:
        Budget for sending the whole response frame, counted from the
        moment the response is ready.
    transport_timeout:
        Budget for the HTTP request itself.  Expiry is reported to the
        controller as ``NET_TIMEOUT``.
    connect_timeout:
        TCP + proxy + TLS handshake budget inside the transport.
    max_request_length:
        Largest request frame a controller may announce.
    max_response_body:
        Largest response body passed back; larger is an error, never a
        truncation.
    """

    host: str = "127.0.0.1"
    port: int = 0

    read_timeout: float = 2.0
    write_timeout: float = 2.0
    transport_timeout: float = 60.0
    connect_timeout: float = 30.0

    max_request_length: int = MAX_REQUEST_LENGTH
    max_response_body: int = MAX_RESPONSE_BODY
    read_buffer_size: int = 65536

    verify_ssl: bool = True

    def __post_init__(self) -> None:
        if not is_loopback(self.host):
            raise ValueError(f"Refusing to listen on non-loopback address {self.host!r}")
        if not 0 <= self.port <= 65535:
            raise ValueError(f"Port out of range: {self.port}")
        for name in ("read_timeout", "write_timeout", "transport_timeout", "connect_timeout"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")


DEFAULT_CONFIG = RelayConfig()


# ============================================================================
# Connection Handler
# ============================================================================


class ConnState(Enum):
    READING_LENGTH = "reading-length"
    READING_OBJECT = "reading-object"
    DISPATCHING = "dispatching"
    DONE = "done"


class ConnectionHandler:
    """Runs exactly one transaction on one accepted connection.

    The read deadline is fixed when the handler is created and the
    write deadline when the response is ready; each wait recomputes the
    time left against them, so a peer trickling bytes cannot stretch
    the transaction.
    """

    __slots__ = (
        "conn",
        "transport",
        "config",
        "state",
        "decoder",
        "read_deadline",
        "write_deadline",
        "response",
        "_task",
    )

    def __init__(
        self,
        conn: ManagedConnection,
        transport: Transport,
        config: RelayConfig = DEFAULT_CONFIG,
    ):
        self.conn = conn
        self.transport = transport
        self.config = config
        self.state = ConnState.READING_LENGTH
        self.decoder = FrameDecoder(config.max_request_length)
        loop = asyncio.get_running_loop()
        self.read_deadline = loop.time() + config.read_timeout
        self.write_deadline: Optional[float] = None
        self.response: Optional[Response] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def done(self) -> bool:
        return self.state is ConnState.DONE

    @property
    def peer(self) -> str:
        p = self.conn.peer
        if isinstance(p, tuple) and len(p) >= 2:
            return f"{p[0]}:{p[1]}"
        return str(p)

    def _set_state(self, state: ConnState) -> None:
        if state is not self.state:
            logger.trace("[%s] %s -> %s", self.peer, self.state.value, state.value)
            self.state = state

    async def run(self) -> None:
        """Read, dispatch, respond, close.  Never raises (except cancellation)."""
        if self.state is not ConnState.READING_LENGTH or self._task is not None:
            raise RuntimeError("ConnectionHandler.run() called twice")
        self._task = asyncio.current_task()
        clean = False

        try:
            payload = await self._read_frame()

            request: Optional[Request] = None
            try:
                request = decode_request(payload)
            except ValidationError as e:
                logger.debug("[%s] invalid request: %s", self.peer, e)

            self._set_state(ConnState.DISPATCHING)
            self.response = await self._dispatch(request)
            await self._write_response(self.response)
            clean = True

        except ProtocolError as e:
            logger.debug("[%s] dropping connection: %s", self.peer, e)
        except DeadlineExceeded as e:
            logger.debug("[%s] %s", self.peer, e)
        except (ConnectionError, OSError) as e:
            logger.debug("[%s] connection lost: %s", self.peer, e)
        except asyncio.CancelledError:
            logger.debug("[%s] handler cancelled in %s", self.peer, self.state.value)
            raise
        except Exception:
            logger.error("[%s] handler error: %s", self.peer, traceback.format_exc())
        finally:
            self._set_state(ConnState.DONE)
            if clean:
                await self.conn.close()
            else:
                self.conn.abort()

    def abort(self) -> None:
        """Kill the connection and any transport work in flight."""
        self.conn.abort()
        if self._task is not None and not self._task.done():
            self._task.cancel()

    # -- reading -----------------------------------------------------------

    async def _read_frame(self) -> bytes:
        while True:
            payload = self.decoder.next_frame()
            if payload is not None:
                return payload
            self._set_state(
                ConnState.READING_LENGTH
                if self.decoder.awaiting_length
                else ConnState.READING_OBJECT
            )

            try:
                async with asyncio.timeout_at(self.read_deadline):
                    chunk = await self.conn.reader.read(self.config.read_buffer_size)
            except TimeoutError:
                raise DeadlineExceeded(
                    f"read deadline passed in {self.state.value} "
                    f"({self.decoder.bytes_remaining} bytes outstanding)"
                ) from None

            if not chunk:
                raise _truncated(self.decoder)
            self.decoder.feed(chunk)

    # -- dispatching -------------------------------------------------------

    async def _dispatch(self, request: Optional[Request]) -> Response:
        if request is None or not request_ok(request):
            return Response.failure(VALIDATION_FAILED)
        assert request.method is not None and request.url is not None

        try:
            proxy = resolve_proxy(request.proxy)
        except ProxyError as e:
            logger.debug("[%s] %s", self.peer, e)
            return Response.failure(INVALID_PROXY)

        logger.debug("[%s] %s %s via %s", self.peer, request.method, request.url, proxy)
        try:
            async with asyncio.timeout(self.config.transport_timeout):
                result = await self.transport.round_trip(
                    request.method, request.url, request.header, request.body, proxy
                )
        except TransportError as e:
            logger.info("[%s] %s failed: %s", self.peer, request.url, e)
            return Response.failure(e.name)
        except TimeoutError:
            logger.info(
                "[%s] %s timed out after %.1fs",
                self.peer,
                request.url,
                self.config.transport_timeout,
            )
            return Response.failure("NET_TIMEOUT")
        except Exception as e:
            logger.error("[%s] transport error: %s", self.peer, traceback.format_exc())
            return Response.failure(error_name(e))

        if len(result.body) > self.config.max_response_body:
            logger.info("[%s] %s response too large (%d bytes)", self.peer, request.url, len(result.body))
            return Response.failure("RESPONSE_TOO_LARGE")
        return Response.success(result.status, result.body)

    # -- writing -----------------------------------------------------------

    async def _write_response(self, response: Response) -> None:
        frame = encode_frame(response.encode())
        loop = asyncio.get_running_loop()
        self.write_deadline = loop.time() + self.config.write_timeout

        # The frame goes to the transport in one piece; on expiry the
        # transport is aborted and its unsent bytes discarded.
        try:
            async with asyncio.timeout_at(self.write_deadline):
                self.conn.writer.write(frame)
                await self.conn.writer.drain()
        except TimeoutError:
            raise DeadlineExceeded(
                f"write deadline passed ({len(frame)}-byte response)"
            ) from None
        logger.trace("[%s] wrote %d-byte response", self.peer, len(frame))


def _truncated(decoder: FrameDecoder) -> ProtocolError:
    return TruncatedRequest(
        f"peer closed with {decoder.bytes_remaining} bytes of the "
        f"{'length' if decoder.awaiting_length else 'object'} outstanding"
    )


# ============================================================================
# HelperRelay — the listener
# ============================================================================


class HelperRelay:
    """Loopback listener handing each connection to a :class:`ConnectionHandler`.

    Usage::

        relay = HelperRelay(StreamTransport())
        port = await relay.start()
        print(f"helper: listen 127.0.0.1:{port}")
        await relay.serve_forever()
    """

    def __init__(self, transport: Transport, config: RelayConfig = DEFAULT_CONFIG):
        self.transport = transport
        self.config = config
        self.host = config.host
        self.port = config.port
        self._server: Optional[asyncio.Server] = None
        # Liveness bookkeeping only; purged on every accept.
        self._handlers: set[ConnectionHandler] = set()

    @property
    def handlers(self) -> frozenset[ConnectionHandler]:
        return frozenset(self._handlers)

    @property
    def serving(self) -> bool:
        return self._server is not None and self._server.is_serving()

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> int:
        """Start listening.  Returns the bound port number."""
        self._server = await asyncio.start_server(
            self._accept,
            self.host,
            self.config.port,
            reuse_address=True,
        )
        # Upstream peers resetting a connection before TLS shutdown make
        # asyncio log SSL tracebacks through the loop's exception handler.
        loop = asyncio.get_running_loop()
        _default_handler = loop.get_exception_handler()

        def _quiet_exception_handler(
            loop: asyncio.AbstractEventLoop, context: dict
        ) -> None:
            msg = context.get("message", "")
            exc = context.get("exception")
            if exc and "SSL" in type(exc).__name__:
                logger.debug("asyncio SSL exception (suppressed): %s", exc)
                return
            if isinstance(msg, str) and "ssl" in msg.lower():
                logger.debug("asyncio SSL message (suppressed): %s", msg)
                return
            if _default_handler:
                _default_handler(loop, context)
            else:
                loop.default_exception_handler(context)

        loop.set_exception_handler(_quiet_exception_handler)

        self.port = self._server.sockets[0].getsockname()[1]
        logger.info("HelperRelay listening on %s:%d", self.host, self.port)
        return self.port

    async def serve_forever(self) -> None:
        if self._server is None:
            await self.start()
        assert self._server is not None
        try:
            await self._server.serve_forever()
        except asyncio.CancelledError:
            pass

    async def stop(self) -> None:
        """Stop accepting and abort every live connection."""
        server, self._server = self._server, None
        if server is not None:
            server.close()
        handlers = [h for h in self._handlers if not h.done]
        self._handlers.clear()
        if handlers:
            logger.info("Aborting %d active connection(s)", len(handlers))
        for h in handlers:
            h.abort()
        if server is not None:
            try:
                await asyncio.wait_for(server.wait_closed(), timeout=5.0)
            except asyncio.TimeoutError:
                logger.warning("Timed out waiting for the listener to close")
        await self.transport.close()
        logger.info("HelperRelay stopped (was :%d)", self.port)

    async def __aenter__(self) -> HelperRelay:
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.stop()

    # -- accept ------------------------------------------------------------

    async def _accept(self, reader: StreamReader, writer: StreamWriter) -> None:
        """Entry point for each new controller connection."""
        self._purge()
        handler = ConnectionHandler(ManagedConnection(reader, writer), self.transport, self.config)
        self._handlers.add(handler)
        logger.debug("onSocketAccepted %s (%d live)", handler.peer, len(self._handlers))
        await handler.run()

    def _purge(self) -> None:
        """Forget handlers whose connection has finished."""
        self._handlers = {h for h in self._handlers if not h.done}
