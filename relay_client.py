"""
relay_client.py — controller side of the helper socket.

Opens one connection per request, writes one frame, reads one frame.
Used by anything that wants the helper to make a request on its behalf,
and by the test-suite to drive a live :class:`~relay_server.HelperRelay`.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Mapping, Optional
from urllib.parse import urlsplit

import relay_log  # noqa: F401
from framing import LENGTH_PREFIX, LENGTH_SIZE, encode_frame
from protocol import ProxySpec, Request, Response

logger = logging.getLogger(__name__)

# The helper caps bodies at 1 MB, but base64 and JSON inflate that.
MAX_HELPER_RESPONSE_LENGTH = 10_000_000

PROXY_SCHEMES = ("http", "socks5", "socks4a")


class HelperError(Exception):
    """The helper could not give us a response."""


def proxy_spec_from_url(url: Optional[str]) -> Optional[ProxySpec]:
    """Convert a proxy URL such as ``socks5://127.0.0.1:9050`` to a ProxySpec.

    ``None`` means no proxy.  URLs with credentials, other schemes, a
    missing host or a missing / invalid port raise ``ValueError``.
    """
    if url is None:
        return None

    parts = urlsplit(url)
    # The helper has no way to pass credentials on.
    if parts.username is not None or parts.password is not None:
        raise ValueError("proxy URLs with a username or password can't be used with the helper")
    if parts.scheme not in PROXY_SCHEMES:
        raise ValueError(f"unknown proxy scheme {parts.scheme!r}")

    host, sep, port_str = parts.netloc.rpartition(":")
    if not sep:
        raise ValueError(f"proxy URL {url!r} has no port")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    if not host:
        raise ValueError(f"proxy URL {url!r} has no host")
    if not port_str.isdigit():
        raise ValueError(f"bad proxy port {port_str!r}")
    port = int(port_str)
    if not 1 <= port <= 65535:
        raise ValueError(f"proxy port {port} out of range")

    return ProxySpec(parts.scheme, host, port)


class HelperClient:
    """Sends requests through a running helper.

    Parameters
    ----------
    read_timeout:
        Budget for the whole response frame, which includes the time the
        helper spends on the HTTP request itself.
    write_timeout:
        Budget for sending the request frame.
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 0,
        read_timeout: float = 60.0,
        write_timeout: float = 2.0,
        max_response_length: int = MAX_HELPER_RESPONSE_LENGTH,
    ):
        self.host = host
        self.port = port
        self.read_timeout = read_timeout
        self.write_timeout = write_timeout
        self.max_response_length = max_response_length

    async def round_trip(
        self,
        url: str,
        body: Optional[bytes] = None,
        header: Optional[Mapping[str, str]] = None,
        proxy: Optional[ProxySpec] = None,
        method: str = "POST",
    ) -> tuple[int, bytes]:
        """Have the helper make one request.  Returns ``(status, body)``.

        Raises :class:`HelperError` if the helper reports an error, closes
        the connection early, or answers with something unreadable.
        """
        request = Request(method=method, url=url, header=dict(header or {}), body=body, proxy=proxy)
        payload = json.dumps(request.to_json(), separators=(",", ":")).encode("utf-8")

        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port), timeout=self.write_timeout
            )
        except (OSError, asyncio.TimeoutError) as e:
            raise HelperError(f"cannot connect to helper at {self.host}:{self.port}: {e}") from e

        try:
            try:
                async with asyncio.timeout(self.write_timeout):
                    writer.write(encode_frame(payload))
                    await writer.drain()
            except (OSError, TimeoutError) as e:
                raise HelperError(f"sending request to helper failed: {e}") from e

            try:
                async with asyncio.timeout(self.read_timeout):
                    (length,) = LENGTH_PREFIX.unpack(await reader.readexactly(LENGTH_SIZE))
                    if length > self.max_response_length:
                        raise HelperError(
                            f"helper's returned data is too big ({length} > {self.max_response_length})"
                        )
                    encoded = await reader.readexactly(length)
            except asyncio.IncompleteReadError as e:
                raise HelperError("helper closed the connection without a response") from e
            except (OSError, TimeoutError) as e:
                raise HelperError(f"reading response from helper failed: {e}") from e
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass

        try:
            obj = json.loads(encoded)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise HelperError(f"helper sent bad JSON: {e}") from e
        try:
            response = Response.from_json(obj)
        except ValueError as e:
            raise HelperError(f"helper sent a bad response: {e}") from e
        if not response.ok:
            raise HelperError(f"helper returned error: {response.error}")

        data = response.body or b""
        logger.debug("helper: %s %s -> %d (%d bytes)", method, url, response.status, len(data))
        return response.status, data
