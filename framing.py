"""
framing.py — length-prefixed frames used on the helper socket.

Every payload travels as a 4-byte unsigned big-endian length followed by
exactly that many bytes.  Encoding is a one-liner; decoding is
incremental, because asyncio hands us whatever the kernel had ready and a
chunk boundary can fall anywhere — including in the middle of the length
field.
"""

from __future__ import annotations

import struct
from typing import Optional

from protocol import OversizedRequest

LENGTH_PREFIX = struct.Struct(">I")
LENGTH_SIZE = LENGTH_PREFIX.size

# Largest request object a peer may announce.
MAX_REQUEST_LENGTH = 1_000_000


def encode_frame(payload: bytes) -> bytes:
    """Prefix *payload* with its 4-byte big-endian length."""
    if len(payload) > 0xFFFFFFFF:
        raise ValueError(f"Payload too large to frame ({len(payload)} bytes)")
    return LENGTH_PREFIX.pack(len(payload)) + payload


class FrameDecoder:
    """Resumable frame parser.

    Feed it chunks as they arrive with :meth:`feed`; call
    :meth:`next_frame` to pull out the next complete payload, or ``None``
    if more bytes are needed.  Bytes beyond the current frame are held for
    the following one, never dropped.

    The declared length is checked against *max_length* as soon as the
    4-byte prefix is complete, before any payload buffer is allocated.
    """

    __slots__ = ("max_length", "_pending", "_buf", "_remaining", "_length")

    def __init__(self, max_length: int = MAX_REQUEST_LENGTH) -> None:
        self.max_length = max_length
        self._pending = bytearray()
        self._buf = bytearray()
        self._remaining = LENGTH_SIZE
        self._length: Optional[int] = None

    # -- state -------------------------------------------------------------

    @property
    def awaiting_length(self) -> bool:
        """``True`` while the 4-byte length prefix is still incomplete."""
        return self._length is None

    @property
    def declared_length(self) -> Optional[int]:
        """Length announced by the current frame, once known."""
        return self._length

    @property
    def bytes_remaining(self) -> int:
        """Bytes still missing from the current phase (prefix or payload)."""
        return self._remaining

    @property
    def buffered(self) -> int:
        """Bytes received but not yet consumed by any frame."""
        return len(self._pending)

    # -- input -------------------------------------------------------------

    def feed(self, data: bytes) -> None:
        if data:
            self._pending.extend(data)

    def next_frame(self) -> Optional[bytes]:
        """Return the next complete payload, or ``None`` to ask for more.

        Raises
        ------
        OversizedRequest
            If the announced length exceeds ``max_length``.  The decoder
            is unusable afterwards; the caller is expected to drop the
            connection.
        """
        if self._length is None:
            self._copy_pending()
            if self._remaining > 0:
                return None
            (length,) = LENGTH_PREFIX.unpack(self._buf)
            if length > self.max_length:
                raise OversizedRequest(
                    f"Object length is too long ({length} > {self.max_length})"
                )
            self._length = length
            self._buf = bytearray()
            self._remaining = length

        self._copy_pending()
        if self._remaining > 0:
            return None

        payload = bytes(self._buf)
        self._buf = bytearray()
        self._length = None
        self._remaining = LENGTH_SIZE
        return payload

    def _copy_pending(self) -> None:
        """Move ``min(available, remaining)`` bytes into the buffer tail."""
        n = min(len(self._pending), self._remaining)
        if n == 0:
            return
        self._buf.extend(self._pending[:n])
        del self._pending[:n]
        self._remaining -= n
