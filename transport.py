"""
transport.py — the HTTP engine behind the helper socket.

The connection handler only knows :class:`Transport`: submit one fully
described request plus a :class:`~protocol.ProxyDescriptor`, get back
exactly one :class:`TransportResult` or one :class:`~protocol.TransportError`.

:class:`StreamTransport` is the engine we ship:

* **Routing** — direct, HTTP ``CONNECT``, SOCKS5 or SOCKS4a.  Through a
  proxy the target *name* is always handed to the proxy; it is never
  resolved on this machine.
* **TLS** — Python ``ssl`` with ALPN ``h2``/``http/1.1``, or the Go uTLS
  sidecar (:class:`~utls_bridge.sidecar.SidecarManager`) for a Chrome
  ClientHello.  SNI is always the URL host, whatever ``Host`` the
  caller asked for.
* **HTTP** — HTTP/1.1 or HTTP/2 (``h2``) depending on ALPN.  One request
  per connection, no redirect following, response body capped.
"""

from __future__ import annotations

import asyncio
import errno
import gzip
import ipaddress
import logging
import socket
import ssl
import struct
import zlib
from asyncio import StreamReader, StreamWriter
from dataclasses import dataclass, field
from typing import Mapping, Optional
from urllib.parse import urlsplit

import brotli
import h2.config
import h2.connection
import h2.events
import h2.exceptions
import zstandard

import relay_log  # noqa: F401
from connection import ManagedConnection
from protocol import (
    DIRECT,
    ProxyDescriptor,
    ProxyKind,
    ResponseTooLarge,
    TransportError,
)
from utls_bridge.sidecar import SidecarError, SidecarManager, SidecarUnavailable

logger = logging.getLogger(__name__)

MAX_RESPONSE_BODY = 1_000_000
MAX_RESPONSE_HEAD = 65536


# ============================================================================
# Results and Errors
# ============================================================================


@dataclass(frozen=True)
class TransportResult:
    status: int
    body: bytes
    headers: list[tuple[str, str]] = field(default_factory=list)
    alpn: str = "http/1.1"


class ProxyHandshakeError(ConnectionError):
    """The upstream proxy refused or botched the tunnel setup."""


class HttpProtocolError(Exception):
    """The origin sent something that is not HTTP."""


# Closed table of failure names.  Subclasses come before their bases.
_EXCEPTION_NAMES: tuple[tuple[type[BaseException], str], ...] = (
    (SidecarUnavailable, "SIDECAR_UNAVAILABLE"),
    (SidecarError, "SIDECAR_ERROR"),
    (ProxyHandshakeError, "PROXY_HANDSHAKE_FAILED"),
    (socket.gaierror, "UNKNOWN_HOST"),
    (ssl.SSLCertVerificationError, "TLS_CERT_INVALID"),
    (ssl.SSLError, "TLS_ERROR"),
    (ConnectionRefusedError, "CONNECTION_REFUSED"),
    (ConnectionResetError, "NET_RESET"),
    (BrokenPipeError, "NET_INTERRUPT"),
    (ConnectionAbortedError, "NET_INTERRUPT"),
    (asyncio.IncompleteReadError, "NET_INTERRUPT"),
    (asyncio.TimeoutError, "NET_TIMEOUT"),
    (TimeoutError, "NET_TIMEOUT"),
    (h2.exceptions.ProtocolError, "PROTOCOL_ERROR"),
    (HttpProtocolError, "PROTOCOL_ERROR"),
)

_ERRNO_NAMES: dict[int, str] = {
    errno.ECONNREFUSED: "CONNECTION_REFUSED",
    errno.ECONNRESET: "NET_RESET",
    errno.ECONNABORTED: "NET_INTERRUPT",
    errno.EPIPE: "NET_INTERRUPT",
    errno.ETIMEDOUT: "NET_TIMEOUT",
    errno.ENETUNREACH: "NET_UNREACHABLE",
    errno.EHOSTUNREACH: "NET_UNREACHABLE",
    errno.ENETDOWN: "NET_UNREACHABLE",
}


def error_name(exc: BaseException) -> str:
    """Name a failure for the caller.

    Known conditions map to a fixed name; anything else becomes
    ``"error <errno>"`` (or ``"error <ExceptionClass>"`` when there is no
    errno) so the caller always gets *something* to log.
    """
    if isinstance(exc, TransportError):
        return exc.name
    for exc_type, name in _EXCEPTION_NAMES:
        if isinstance(exc, exc_type):
            return name
    if isinstance(exc, OSError) and exc.errno is not None:
        return _ERRNO_NAMES.get(exc.errno, f"error {exc.errno}")
    return f"error {type(exc).__name__}"


def as_transport_error(exc: BaseException) -> TransportError:
    if isinstance(exc, TransportError):
        return exc
    return TransportError(error_name(exc), str(exc) or type(exc).__name__)


# ============================================================================
# Target
# ============================================================================


@dataclass(frozen=True)
class Target:
    """Where the request goes, split out of its URL."""

    scheme: str
    host: str
    port: int
    path: str

    @classmethod
    def from_url(cls, url: str) -> Target:
        try:
            parts = urlsplit(url)
            port = parts.port
        except ValueError as e:
            raise TransportError("PROTOCOL_ERROR", f"bad url: {e}") from e
        if parts.scheme not in ("http", "https") or not parts.hostname:
            raise TransportError("PROTOCOL_ERROR", f"bad url: {url!r}")
        default = 443 if parts.scheme == "https" else 80
        path = parts.path or "/"
        if parts.query:
            path = f"{path}?{parts.query}"
        return cls(parts.scheme, parts.hostname, port or default, path)

    @property
    def default_port(self) -> bool:
        return self.port == (443 if self.scheme == "https" else 80)

    @property
    def hostport(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"{host}:{self.port}"

    @property
    def authority(self) -> str:
        if self.default_port:
            return f"[{self.host}]" if ":" in self.host else self.host
        return self.hostport


def _ip_literal(host: str) -> Optional[ipaddress.IPv4Address | ipaddress.IPv6Address]:
    try:
        return ipaddress.ip_address(host)
    except ValueError:
        return None


# ============================================================================
# Proxy Clients
# ============================================================================


class Socks5Client:
    """SOCKS5 CONNECT (no-auth).  Names go out as ATYP=domain."""

    ERRORS = {
        1: "General failure",
        2: "Not allowed",
        3: "Network unreachable",
        4: "Host unreachable",
        5: "Connection refused",
        6: "TTL expired",
        7: "Command not supported",
        8: "Address type not supported",
    }

    @staticmethod
    async def handshake(
        reader: StreamReader, writer: StreamWriter, target_host: str, target_port: int
    ) -> None:
        writer.write(b"\x05\x01\x00")
        await writer.drain()

        resp = await reader.readexactly(2)
        if resp[0] != 0x05 or resp[1] != 0x00:
            raise ProxyHandshakeError("SOCKS5 handshake failed")

        ip = _ip_literal(target_host)
        if ip is None:
            domain = target_host.encode("idna")
            if len(domain) > 255:
                raise ProxyHandshakeError("SOCKS5: hostname too long")
            addr = b"\x03" + bytes([len(domain)]) + domain
        elif ip.version == 4:
            addr = b"\x01" + ip.packed
        else:
            addr = b"\x04" + ip.packed

        writer.write(b"\x05\x01\x00" + addr + struct.pack(">H", target_port))
        await writer.drain()

        resp = await reader.readexactly(4)
        if resp[1] != 0x00:
            raise ProxyHandshakeError(
                f"SOCKS5: {Socks5Client.ERRORS.get(resp[1], 'Unknown error')}"
            )

        # Drain the bound address so the socket is ready for data
        atyp = resp[3]
        if atyp == 0x01:
            await reader.readexactly(6)
        elif atyp == 0x03:
            length = (await reader.readexactly(1))[0]
            await reader.readexactly(length + 2)
        elif atyp == 0x04:
            await reader.readexactly(18)
        else:
            raise ProxyHandshakeError(f"SOCKS5: bad address type {atyp}")


class Socks4aClient:
    """SOCKS4a CONNECT.  A name is sent after the ``0.0.0.1`` marker address."""

    @staticmethod
    async def handshake(
        reader: StreamReader, writer: StreamWriter, target_host: str, target_port: int
    ) -> None:
        ip = _ip_literal(target_host)
        if ip is not None and ip.version != 4:
            raise ProxyHandshakeError("SOCKS4a: IPv6 targets are not supported")

        request = b"\x04\x01" + struct.pack(">H", target_port)
        if ip is not None:
            request += ip.packed + b"\x00"
        else:
            request += b"\x00\x00\x00\x01" + b"\x00" + target_host.encode("idna") + b"\x00"
        writer.write(request)
        await writer.drain()

        resp = await reader.readexactly(8)
        if resp[1] != 0x5A:
            raise ProxyHandshakeError(f"SOCKS4a: request rejected (code {resp[1]:#x})")


class HttpConnectClient:
    """HTTP ``CONNECT`` tunnel.  The proxy resolves the authority."""

    @staticmethod
    async def handshake(
        reader: StreamReader, writer: StreamWriter, target_host: str, target_port: int
    ) -> None:
        ip = _ip_literal(target_host)
        if ip is None:
            host = target_host.encode("idna").decode("ascii")
        elif ip.version == 6:
            host = f"[{target_host}]"
        else:
            host = target_host
        authority = f"{host}:{target_port}"
        writer.write(
            f"CONNECT {authority} HTTP/1.1\r\nHost: {authority}\r\n\r\n".encode("ascii")
        )
        await writer.drain()

        status_line = await reader.readline()
        if not status_line:
            raise ProxyHandshakeError("HTTP proxy closed the connection")
        parts = status_line.decode("latin-1").split(" ", 2)
        if len(parts) < 2 or not parts[0].startswith("HTTP/"):
            raise ProxyHandshakeError(f"HTTP proxy sent garbage: {status_line[:64]!r}")
        try:
            status = int(parts[1])
        except ValueError:
            raise ProxyHandshakeError(f"HTTP proxy sent bad status {parts[1]!r}") from None

        size = len(status_line)
        while True:
            line = await reader.readline()
            size += len(line)
            if size > MAX_RESPONSE_HEAD:
                raise ProxyHandshakeError("HTTP proxy response head too large")
            if not line:
                raise ProxyHandshakeError("HTTP proxy closed the connection")
            if line in (b"\r\n", b"\n"):
                break

        if not 200 <= status < 300:
            raise ProxyHandshakeError(f"HTTP proxy refused CONNECT ({status})")


_PROXY_CLIENTS = {
    ProxyKind.HTTP: HttpConnectClient,
    ProxyKind.SOCKS5: Socks5Client,
    ProxyKind.SOCKS4A: Socks4aClient,
}


async def open_tunnel(
    proxy: ProxyDescriptor, target_host: str, target_port: int, timeout: float
) -> tuple[StreamReader, StreamWriter]:
    """Connect to *proxy* and ask it for a tunnel to the target.

    Only the proxy address is resolved locally; the target name travels
    to the proxy untouched.
    """
    client = _PROXY_CLIENTS[proxy.kind]
    assert proxy.host is not None and proxy.port is not None
    try:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(proxy.host, proxy.port), timeout=timeout
        )
    except socket.gaierror as e:
        raise TransportError("UNKNOWN_PROXY_HOST", str(e)) from e
    except ConnectionRefusedError as e:
        raise TransportError("PROXY_CONNECTION_REFUSED", str(e)) from e

    try:
        async with asyncio.timeout(timeout):
            await client.handshake(reader, writer, target_host, target_port)
        return reader, writer
    except asyncio.IncompleteReadError as e:
        writer.close()
        raise ProxyHandshakeError(f"{proxy.kind.value} proxy closed mid-handshake") from e
    except BaseException:
        writer.close()
        raise


# ============================================================================
# Body Handling
# ============================================================================


class BodyBuffer:
    """Accumulates a response body and refuses to grow past *limit*."""

    __slots__ = ("limit", "_data")

    def __init__(self, limit: int = MAX_RESPONSE_BODY) -> None:
        self.limit = limit
        self._data = bytearray()

    def reserve(self, n: int) -> None:
        """Fail early when *n* more bytes are announced."""
        if len(self._data) + n > self.limit:
            raise ResponseTooLarge(self.limit)

    def extend(self, chunk: bytes) -> None:
        self.reserve(len(chunk))
        self._data.extend(chunk)

    def __len__(self) -> int:
        return len(self._data)

    def getvalue(self) -> bytes:
        return bytes(self._data)


def decode_content(data: bytes, encoding: str, limit: int = MAX_RESPONSE_BODY) -> bytes:
    """Undo ``Content-Encoding`` the way a browser would.

    The decoded size is held to *limit* as well, so a small compressed
    body cannot blow up past the cap.  Unknown encodings and corrupt
    data are passed through raw.
    """
    if not data or not encoding:
        return data

    encoding = encoding.lower().strip()
    try:
        if encoding in ("gzip", "x-gzip"):
            d = zlib.decompressobj(16 + zlib.MAX_WBITS)
            out = d.decompress(data, limit + 1)
        elif encoding == "deflate":
            # Try raw deflate first, fall back to zlib-wrapped
            try:
                d = zlib.decompressobj(-zlib.MAX_WBITS)
                out = d.decompress(data, limit + 1)
            except zlib.error:
                d = zlib.decompressobj()
                out = d.decompress(data, limit + 1)
        elif encoding == "br":
            out = _unbrotli(data, limit + 1)
        elif encoding == "zstd":
            out = _unzstd(data, limit + 1)
        elif encoding == "identity":
            return data
        else:
            logger.warning("Unknown Content-Encoding: %s, returning raw body", encoding)
            return data
    except (zlib.error, gzip.BadGzipFile, brotli.error, zstandard.ZstdError) as e:
        logger.warning("Failed to decompress %s response (%s), returning raw body", encoding, e)
        return data

    if len(out) > limit:
        raise ResponseTooLarge(limit)
    return out


def _unbrotli(data: bytes, cap: int) -> bytes:
    d = brotli.Decompressor()
    out = d.process(data, output_buffer_limit=cap)
    while len(out) < cap and not d.is_finished():
        more = d.process(b"", output_buffer_limit=cap - len(out))
        if not more:
            break
        out += more
    return out


def _unzstd(data: bytes, cap: int) -> bytes:
    # decompress() trusts the frame header's content size, so read in steps
    out = bytearray()
    with zstandard.ZstdDecompressor().stream_reader(data) as reader:
        while len(out) < cap:
            chunk = reader.read(min(65536, cap - len(out)))
            if not chunk:
                break
            out += chunk
    return bytes(out)


def _header(headers: list[tuple[str, str]], name: str) -> Optional[str]:
    name = name.lower()
    for k, v in headers:
        if k.lower() == name:
            return v
    return None


# ============================================================================
# HTTP/1.1 Exchange
# ============================================================================


class Http1Exchange:
    """One HTTP/1.1 request/response on a fresh connection."""

    __slots__ = ("conn", "max_body", "read_buffer_size")

    def __init__(self, conn: ManagedConnection, max_body: int, read_buffer_size: int = 65536):
        self.conn = conn
        self.max_body = max_body
        self.read_buffer_size = read_buffer_size

    async def run(
        self,
        method: str,
        target: Target,
        headers: Mapping[str, str],
        body: Optional[bytes],
    ) -> tuple[int, list[tuple[str, str]], bytes]:
        await self._send_request(method, target, headers, body)
        return await self._read_response(method)

    async def _send_request(
        self,
        method: str,
        target: Target,
        headers: Mapping[str, str],
        body: Optional[bytes],
    ) -> None:
        host = target.authority
        out: list[tuple[str, str]] = []
        has_connection = False
        for k, v in headers.items():
            kl = k.lower()
            if kl == "host":
                host = v
            elif kl in ("content-length", "transfer-encoding"):
                continue
            else:
                has_connection = has_connection or kl == "connection"
                out.append((k, v))

        lines = [f"{method} {target.path} HTTP/1.1", f"Host: {host}"]
        lines.extend(f"{k}: {v}" for k, v in out)
        if body or method in ("POST", "PUT", "PATCH"):
            lines.append(f"Content-Length: {len(body or b'')}")
        if not has_connection:
            lines.append("Connection: close")

        w = self.conn.writer
        w.write(("\r\n".join(lines) + "\r\n\r\n").encode("latin-1"))
        if body:
            w.write(body)
        await w.drain()

    async def _read_head(self) -> tuple[int, list[tuple[str, str]]]:
        reader = self.conn.reader
        status_line = await reader.readline()
        if not status_line:
            raise TransportError("NET_INTERRUPT", "connection closed before response")

        parts = status_line.decode("latin-1").rstrip("\r\n").split(" ", 2)
        if len(parts) < 2 or not parts[0].startswith("HTTP/"):
            raise HttpProtocolError(f"bad status line {status_line[:64]!r}")
        try:
            status = int(parts[1])
        except ValueError:
            raise HttpProtocolError(f"bad status code {parts[1]!r}") from None

        headers: list[tuple[str, str]] = []
        size = len(status_line)
        while True:
            line = await reader.readline()
            if not line:
                raise TransportError("NET_INTERRUPT", "connection closed in headers")
            size += len(line)
            if size > MAX_RESPONSE_HEAD:
                raise HttpProtocolError("response head too large")
            if line in (b"\r\n", b"\n"):
                break
            decoded = line.decode("latin-1").strip()
            if ":" in decoded:
                k, v = decoded.split(":", 1)
                headers.append((k.strip(), v.strip()))
        return status, headers

    async def _read_response(self, method: str) -> tuple[int, list[tuple[str, str]], bytes]:
        """Read the final response.  Interim 1xx responses are skipped.

        Handles three body framing modes:
        1. ``Transfer-Encoding: chunked``
        2. ``Content-Length: N``
        3. close-delimited (read until EOF)
        """
        while True:
            status, headers = await self._read_head()
            if not 100 <= status < 200 or status == 101:
                break
            logger.trace("[HTTP/1.1] skipping interim %d", status)

        buf = BodyBuffer(self.max_body)
        if method == "HEAD" or status in (101, 204, 304):
            return status, headers, b""

        reader = self.conn.reader
        te = (_header(headers, "transfer-encoding") or "").lower()
        cl = _header(headers, "content-length")

        if "chunked" in te:
            await self._read_chunked(buf)
        elif cl is not None:
            try:
                length = int(cl)
            except ValueError:
                raise HttpProtocolError(f"bad Content-Length {cl!r}") from None
            if length < 0:
                raise HttpProtocolError(f"bad Content-Length {cl!r}")
            buf.reserve(length)
            remaining = length
            while remaining > 0:
                chunk = await reader.read(min(remaining, self.read_buffer_size))
                if not chunk:
                    raise TransportError(
                        "NET_INTERRUPT", f"body truncated ({length - remaining}/{length})"
                    )
                buf.extend(chunk)
                remaining -= len(chunk)
        else:
            while True:
                chunk = await reader.read(self.read_buffer_size)
                if not chunk:
                    break
                buf.extend(chunk)

        return status, headers, buf.getvalue()

    async def _read_chunked(self, buf: BodyBuffer) -> None:
        reader = self.conn.reader
        while True:
            size_line = await reader.readline()
            if not size_line:
                raise TransportError("NET_INTERRUPT", "connection closed in chunked body")
            try:
                size = int(size_line.split(b";", 1)[0].strip(), 16)
            except ValueError:
                raise HttpProtocolError(f"bad chunk size {size_line[:32]!r}") from None
            if size == 0:
                # Trailers, then the terminating blank line
                while True:
                    line = await reader.readline()
                    if line in (b"\r\n", b"\n", b""):
                        return
            buf.reserve(size)
            buf.extend(await reader.readexactly(size))
            await reader.readline()  # chunk-terminating CRLF


# ============================================================================
# HTTP/2 Exchange
# ============================================================================


class Http2Exchange:
    """One HTTP/2 stream on a fresh connection."""

    # HTTP/2 forbids connection-level headers (RFC 9113 §8.2.2)
    FORBIDDEN_H2_HEADERS: frozenset[str] = frozenset(
        {
            "connection",
            "keep-alive",
            "proxy-connection",
            "transfer-encoding",
            "upgrade",
            "host",
            "content-length",
        }
    )

    __slots__ = ("conn", "max_body", "read_buffer_size", "h2", "stream_id",
                 "status", "headers", "body", "ended")

    def __init__(self, conn: ManagedConnection, max_body: int, read_buffer_size: int = 65536):
        self.conn = conn
        self.max_body = max_body
        self.read_buffer_size = read_buffer_size
        # validate_inbound_headers=False: some origins send non-standard
        # header values that h2 would otherwise reject.
        config = h2.config.H2Configuration(
            client_side=True, validate_inbound_headers=False, header_encoding="utf-8"
        )
        self.h2 = h2.connection.H2Connection(config=config)
        self.stream_id = 0
        self.status: Optional[int] = None
        self.headers: list[tuple[str, str]] = []
        self.body = BodyBuffer(max_body)
        self.ended = False

    @classmethod
    def build_headers(
        cls, method: str, target: Target, headers: Mapping[str, str], body: Optional[bytes]
    ) -> list[tuple[str, str]]:
        authority = target.authority
        extra: list[tuple[str, str]] = []
        for k, v in headers.items():
            kl = k.lower()
            if kl == "host":
                authority = v
            elif kl == "te" and v.lower() != "trailers":
                continue
            elif kl not in cls.FORBIDDEN_H2_HEADERS:
                extra.append((kl, v))
        out = [
            (":method", method),
            (":authority", authority),
            (":scheme", target.scheme),
            (":path", target.path),
        ]
        out.extend(extra)
        if body or method in ("POST", "PUT", "PATCH"):
            out.append(("content-length", str(len(body or b""))))
        return out

    async def run(
        self,
        method: str,
        target: Target,
        headers: Mapping[str, str],
        body: Optional[bytes],
    ) -> tuple[int, list[tuple[str, str]], bytes]:
        self.h2.initiate_connection()
        self.stream_id = self.h2.get_next_available_stream_id()
        self.h2.send_headers(
            self.stream_id,
            self.build_headers(method, target, headers, body),
            end_stream=not body,
        )
        await self._flush()

        if body:
            await self._send_body(body)

        while not self.ended:
            await self._receive()

        if self.status is None:
            raise HttpProtocolError("stream ended without response headers")
        return self.status, self.headers, self.body.getvalue()

    async def _flush(self) -> None:
        data = self.h2.data_to_send()
        if data:
            self.conn.writer.write(data)
            await self.conn.writer.drain()

    async def _send_body(self, body: bytes) -> None:
        view = memoryview(body)
        offset = 0
        while offset < len(body) and not self.ended:
            window = min(
                self.h2.local_flow_control_window(self.stream_id),
                self.h2.max_outbound_frame_size,
            )
            if window <= 0:
                # Wait for WINDOW_UPDATE
                await self._receive()
                continue
            chunk = bytes(view[offset : offset + window])
            offset += len(chunk)
            self.h2.send_data(self.stream_id, chunk, end_stream=offset >= len(body))
            await self._flush()

    async def _receive(self) -> None:
        data = await self.conn.reader.read(self.read_buffer_size)
        if not data:
            raise TransportError("NET_INTERRUPT", "connection closed before stream ended")
        for event in self.h2.receive_data(data):
            self._process_event(event)
        await self._flush()

    def _process_event(self, event: h2.events.Event) -> None:
        if isinstance(event, h2.events.ResponseReceived):
            if event.stream_id != self.stream_id:
                return
            for k, v in event.headers:
                if k == ":status":
                    self.status = int(v)
                else:
                    self.headers.append((k, v))
            if event.stream_ended is not None:
                self.ended = True

        elif isinstance(event, h2.events.DataReceived):
            if event.stream_id != self.stream_id:
                return
            self.h2.acknowledge_received_data(event.flow_controlled_length, event.stream_id)
            self.body.extend(event.data)
            if event.stream_ended is not None:
                self.ended = True

        elif isinstance(event, h2.events.StreamEnded):
            if event.stream_id == self.stream_id:
                self.ended = True

        elif isinstance(event, h2.events.StreamReset):
            if event.stream_id == self.stream_id:
                raise TransportError("NET_RESET", f"stream reset (error {event.error_code})")

        elif isinstance(event, h2.events.ConnectionTerminated):
            if not self.ended:
                raise TransportError(
                    "NET_INTERRUPT",
                    f"GOAWAY (last_stream={event.last_stream_id}, error={event.error_code})",
                )


# ============================================================================
# Transports
# ============================================================================


class Transport:
    """Boundary between the connection handler and an HTTP engine."""

    async def round_trip(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str],
        body: Optional[bytes],
        proxy: ProxyDescriptor = DIRECT,
    ) -> TransportResult:
        """Issue one request; return its result or raise :class:`TransportError`."""
        raise NotImplementedError

    async def close(self) -> None:
        pass


class StreamTransport(Transport):
    """asyncio-streams HTTP engine (see module docstring).

    Parameters
    ----------
    connect_timeout:
        Budget for TCP connect + proxy handshake + TLS handshake.
    verify_ssl:
        Verify the target's certificate.
    max_body:
        Response body cap in bytes, applied before and after
        content decoding.
    alpn:
        Protocols offered in the ClientHello (Python ``ssl`` path only).
    sidecar:
        When given, TLS goes through the Go sidecar instead.
    """

    def __init__(
        self,
        connect_timeout: float = 30.0,
        verify_ssl: bool = True,
        max_body: int = MAX_RESPONSE_BODY,
        read_buffer_size: int = 65536,
        alpn: tuple[str, ...] = ("h2", "http/1.1"),
        sidecar: Optional[SidecarManager] = None,
    ):
        self.connect_timeout = connect_timeout
        self.verify_ssl = verify_ssl
        self.max_body = max_body
        self.read_buffer_size = read_buffer_size
        self.alpn = alpn
        self.sidecar = sidecar
        self._ssl_context: Optional[ssl.SSLContext] = None

    def create_client_context(self) -> ssl.SSLContext:
        """Client-side ``SSLContext`` for the target connection (cached)."""
        if self._ssl_context is None:
            if self.verify_ssl:
                ctx = ssl.create_default_context()
            else:
                ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
                ctx.check_hostname = False
                ctx.verify_mode = ssl.CERT_NONE
            if self.alpn:
                ctx.set_alpn_protocols(list(self.alpn))
            self._ssl_context = ctx
        return self._ssl_context

    async def round_trip(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str],
        body: Optional[bytes],
        proxy: ProxyDescriptor = DIRECT,
    ) -> TransportResult:
        target = Target.from_url(url)
        conn: Optional[ManagedConnection] = None
        try:
            conn, alpn = await self.connect(target, proxy)
            logger.debug("[%s] connected via %s (alpn=%s)", target.hostport, proxy, alpn)

            if alpn == "h2":
                exchange: Http1Exchange | Http2Exchange = Http2Exchange(
                    conn, self.max_body, self.read_buffer_size
                )
            else:
                exchange = Http1Exchange(conn, self.max_body, self.read_buffer_size)
            status, resp_headers, raw = await exchange.run(method, target, headers, body)

            encoding = _header(resp_headers, "content-encoding") or ""
            decoded = decode_content(raw, encoding, self.max_body)
            logger.debug(
                "[%s] %s %s -> %d (%d bytes)", target.hostport, method, target.path, status, len(decoded)
            )
            return TransportResult(status, decoded, resp_headers, alpn)

        except TransportError:
            raise
        except (OSError, asyncio.IncompleteReadError, asyncio.TimeoutError,
                h2.exceptions.ProtocolError, HttpProtocolError, ValueError) as e:
            raise as_transport_error(e) from e
        finally:
            if conn is not None:
                await conn.close()

    async def connect(
        self, target: Target, proxy: ProxyDescriptor
    ) -> tuple[ManagedConnection, str]:
        """Open a connection to *target* that speaks plaintext HTTP.

        Returns the connection and the ALPN protocol to speak on it.
        """
        if target.scheme == "https" and self.sidecar is not None:
            reader, writer, alpn = await self.sidecar.dial(
                target.host, target.port, proxy.as_url(), timeout=self.connect_timeout
            )
            return ManagedConnection(reader, writer), alpn

        if proxy.is_direct:
            ctx = self.create_client_context() if target.scheme == "https" else None
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(
                    target.host,
                    target.port,
                    ssl=ctx,
                    server_hostname=target.host if ctx else None,
                ),
                timeout=self.connect_timeout,
            )
            conn = ManagedConnection(reader, writer)
        else:
            reader, writer = await open_tunnel(
                proxy, target.host, target.port, self.connect_timeout
            )
            conn = ManagedConnection(reader, writer)
            if target.scheme == "https":
                try:
                    conn = await self._upgrade_tls(conn, target.host)
                except BaseException:
                    conn.abort()
                    raise

        if target.scheme != "https":
            return conn, "http/1.1"
        ssl_obj = conn.writer.get_extra_info("ssl_object")
        negotiated = ssl_obj.selected_alpn_protocol() if ssl_obj else None
        return conn, negotiated or "http/1.1"

    async def _upgrade_tls(self, conn: ManagedConnection, hostname: str) -> ManagedConnection:
        """TLS handshake over an established tunnel."""
        loop = asyncio.get_running_loop()
        transport = conn.writer.transport
        proto_obj = transport.get_protocol()

        async with asyncio.timeout(self.connect_timeout):
            ssl_transport = await loop.start_tls(
                transport,
                proto_obj,
                self.create_client_context(),
                server_side=False,
                server_hostname=hostname,
            )
        if ssl_transport is None:
            raise ConnectionError("Target TLS handshake failed")

        tls_reader = StreamReader(limit=MAX_RESPONSE_HEAD)
        tls_proto = asyncio.StreamReaderProtocol(tls_reader)
        ssl_transport.set_protocol(tls_proto)
        tls_proto.connection_made(ssl_transport)
        tls_writer = StreamWriter(ssl_transport, tls_proto, tls_reader, loop)
        return ManagedConnection(tls_reader, tls_writer)
