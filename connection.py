"""
connection.py — reader/writer pair with safe teardown.

Used for both ends of a transaction: the controller's loopback socket and
the upstream (possibly TLS) connection toward the target.
"""

from __future__ import annotations

import asyncio
import logging
from asyncio import StreamReader, StreamWriter
from typing import Any

import relay_log  # noqa: F401

logger = logging.getLogger(__name__)


class ManagedConnection:
    """Thin wrapper around an ``(StreamReader, StreamWriter)`` pair.

    Remembers when it was opened and who the peer is, and provides
    ``close()`` / ``abort()`` that never raise.  ``abort()`` drops any
    bytes still queued in the transport, which is what a connection
    that ran out of time needs: nothing half-written may reach the peer.
    """

    __slots__ = ("reader", "writer", "peer", "_closed")

    def __init__(self, reader: StreamReader, writer: StreamWriter):
        self.reader = reader
        self.writer = writer
        self.peer: Any = None
        try:
            self.peer = writer.get_extra_info("peername")
        except Exception:
            pass
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed or self.writer.is_closing()

    def abort(self) -> None:
        """Tear the transport down immediately, discarding unsent data."""
        self._closed = True
        try:
            transport = self.writer.transport
            if transport is not None:
                transport.abort()
        except Exception as e:
            logger.debug("Connection abort error: %s", e)

    async def close(self, force: bool = False) -> None:
        """Close the underlying transport.

        Parameters
        ----------
        force:
            Abort instead of closing gracefully.  For an SSL transport
            whose peer already reset the TCP connection a graceful close
            would only produce noise, so that case is aborted as well.
        """
        if self._closed and not force:
            return
        if force:
            self.abort()
            return
        self._closed = True
        try:
            transport = self.writer.transport
            if transport is None or transport.is_closing():
                return
            ssl_obj = transport.get_extra_info("ssl_object")
            if ssl_obj is not None:
                try:
                    ssl_obj.version()
                except Exception:
                    transport.abort()
                    return
            self.writer.close()
            await asyncio.wait_for(self.writer.wait_closed(), timeout=2.0)
        except (TimeoutError, asyncio.TimeoutError):
            try:
                transport = self.writer.transport
                if transport and not transport.is_closing():
                    transport.abort()
            except Exception as e:
                logger.debug(e)
            logger.trace("Connection close timed out, aborted")
        except Exception as e:
            logger.debug("Connection close error: %s", e)

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open"
        return f"<ManagedConnection peer={self.peer} {state}>"
