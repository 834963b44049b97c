"""Low-level TCP connection with newline-delimited framing.

The bulb control socket is a TCP stream of text lines.  Outbound lines
end with ``\\r\\n``; inbound lines may end with either ``\\r\\n`` or
``\\n``.

This module provides :class:`BulbConnection` which wraps an
:mod:`asyncio` ``StreamReader`` / ``StreamWriter`` pair and exposes
``send`` / ``receive`` coroutines that operate on whole lines.

Usage::

    conn = BulbConnection(reader, writer)
    line = await conn.receive()   # returns str or None on EOF
    await conn.send(encode_request(request))
    await conn.close()
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from pyYeeLAN.errors import TransportError

logger = logging.getLogger(__name__)

#: Maximum length of a single received line (asyncio stream limit).
MAX_LINE_LENGTH: int = 64 * 1024


class BulbConnection:
    """Framing layer for a single bulb control connection.

    Parameters
    ----------
    reader:
        The :class:`asyncio.StreamReader` (read side of the socket).
    writer:
        The :class:`asyncio.StreamWriter` (write side of the socket).
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._closed = False
        self._write_lock = asyncio.Lock()

    # ---- properties --------------------------------------------------

    @property
    def is_closed(self) -> bool:
        """``True`` when the connection has been closed locally."""
        return self._closed

    @property
    def peername(self) -> str:
        """Remote address as a human-readable string."""
        try:
            info = self._writer.get_extra_info("peername")
            if info:
                return f"{info[0]}:{info[1]}"
        except Exception:  # noqa: BLE001
            pass
        return "<unknown>"

    # ---- send --------------------------------------------------------

    async def send(self, data: bytes) -> None:
        """Write one complete line to the socket.

        The write and the following drain are serialized so that two
        concurrent senders never interleave partial lines.

        Raises
        ------
        TransportError
            If the socket is closed or the write fails.
        """
        if self._closed:
            raise TransportError("Connection is closed")

        async with self._write_lock:
            try:
                self._writer.write(data)
                await self._writer.drain()
            except (ConnectionError, OSError) as exc:
                raise TransportError(f"Write to {self.peername} failed: {exc}") from exc

        logger.debug("Sent %d bytes → %s", len(data), self.peername)

    # ---- receive -----------------------------------------------------

    async def receive(self) -> Optional[str]:
        """Read the next non-empty line from the socket.

        Returns
        -------
        str or None
            The line without its terminator, or ``None`` when the
            remote end has closed the connection (EOF).

        Raises
        ------
        TransportError
            If the connection was already closed locally, or the socket
            failed while reading.
        """
        if self._closed:
            raise TransportError("Connection is closed")

        while True:
            try:
                raw = await self._reader.readline()
            except ValueError:
                # Line longer than the stream limit; the reader has
                # already discarded the overrun data.
                logger.warning("Dropped over-long line from %s", self.peername)
                continue
            except (ConnectionError, OSError) as exc:
                raise TransportError(f"Read from {self.peername} failed: {exc}") from exc

            if not raw:
                return None

            line = raw.rstrip(b"\r\n")
            if not line.strip():
                continue

            logger.debug("Received ← %s: %r", self.peername, line)
            return line.decode("utf-8", errors="replace")

    # ---- close -------------------------------------------------------

    async def close(self) -> None:
        """Gracefully close the underlying TCP socket.

        Safe to call multiple times.  Feeds EOF to our own reader so that
        a pending :meth:`receive` is unblocked.

        Raises
        ------
        TransportError
            If the transport reported an error while closing.
        """
        if self._closed:
            return
        self._closed = True
        try:
            if not self._reader.at_eof():
                self._reader.feed_eof()
        except Exception:  # noqa: BLE001
            pass
        try:
            self._writer.close()
            await self._writer.wait_closed()
        except (ConnectionError, OSError) as exc:
            raise TransportError(f"Error while closing {self.peername}: {exc}") from exc
        finally:
            logger.debug("Connection to %s closed", self.peername)

    # ---- dunder ------------------------------------------------------

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"BulbConnection({self.peername}, {state})"
