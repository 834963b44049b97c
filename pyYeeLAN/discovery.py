"""Discovery — UDP multicast presence announcements.

Bulbs announce themselves on the multicast group ``239.255.255.250``,
port ``1982``, with an SSDP-like plain-text datagram::

    NOTIFY * HTTP/1.1
    Host: 239.255.255.250:1982
    Location: yeelight://192.168.1.239:55443
    id: 0x000000000015243f
    model: color
    power: on
    bright: 100
    ...

The same format (first line ``HTTP/1.1 200 OK``) is sent as the answer
to a search request.  :class:`Discovery` owns the one multicast socket,
broadcasts search requests with :meth:`Discovery.scan` and feeds every
valid announcement into the :class:`~pyYeeLAN.registry.BulbRegistry`.

The search request is itself delivered back to our own socket; its
first line is recognised and the datagram ignored.  Each datagram is
handled in isolation: a malformed or hostile packet is logged and
dropped without affecting the next one.
"""

from __future__ import annotations

import asyncio
import logging
import socket
import struct
from typing import Dict, Optional, Set, Tuple

from pyYeeLAN.bulb import Bulb
from pyYeeLAN.config import YeeConfig
from pyYeeLAN.errors import DecodeError, TransportError, YeeError
from pyYeeLAN.properties import BulbProperties
from pyYeeLAN.registry import BulbRegistry

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: Multicast group the bulbs announce themselves on.
MULTICAST_ADDRESS: str = "239.255.255.250"

#: UDP port of the discovery protocol.
DISCOVERY_PORT: int = 1982

#: Multicast TTL for outgoing search requests.
MULTICAST_TTL: int = 128

#: First line of our own search request.
SEARCH_HEADER: str = "M-SEARCH * HTTP/1.1"

#: First lines of datagrams that carry bulb properties.
ACCEPTED_HEADERS: Tuple[str, ...] = ("HTTP/1.1 200 OK", "NOTIFY * HTTP/1.1")

#: The search datagram broadcast by :meth:`Discovery.scan`.
SEARCH_REQUEST: bytes = "\r\n".join((
    SEARCH_HEADER,
    f"HOST: {MULTICAST_ADDRESS}:{DISCOVERY_PORT}",
    'MAN: "ssdp:discover"',
    "ST: wifi_bulb",
    "",
)).encode("utf-8")

HostAndPort = Tuple[str, int]


# ---------------------------------------------------------------------------
# Datagram parsing
# ---------------------------------------------------------------------------

def parse_datagram(data: bytes) -> Optional[Dict[str, str]]:
    """Parse one discovery datagram into a header map.

    Keys are lower-cased; values are kept verbatim.

    Returns
    -------
    dict or None
        The headers, or ``None`` when the first line is not an accepted
        response header (this includes our own search request).

    Raises
    ------
    DecodeError
        If the datagram is not UTF-8, a header line lacks the ``": "``
        separator, or the ``id`` header is missing.
    """
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecodeError(f"Datagram is not valid UTF-8: {exc}", data) from exc

    lines = text.replace("\r\n", "\n").split("\n")
    if lines[0] not in ACCEPTED_HEADERS:
        return None

    headers: Dict[str, str] = {}
    for line in lines[1:]:
        if line == "":
            continue
        separator = line.find(": ")
        if separator < 0:
            raise DecodeError(f"Invalid response line '{line}'", data)
        headers[line[:separator].lower()] = line[separator + 2:]

    if not headers.get("id"):
        raise DecodeError("Missing ID", data)

    return headers


def _create_multicast_socket(address: str, port: int) -> socket.socket:
    """Create a non-blocking UDP socket joined to the multicast group."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        if hasattr(socket, "SO_REUSEPORT"):
            try:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
            except OSError:
                logger.debug("SO_REUSEPORT not supported")
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        sock.bind(("", port))
        mreq = socket.inet_aton(address) + struct.pack("=I", socket.INADDR_ANY)
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, mreq)
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, MULTICAST_TTL)
        sock.setblocking(False)
    except OSError:
        sock.close()
        raise
    return sock


# ---------------------------------------------------------------------------
# asyncio protocol adapter
# ---------------------------------------------------------------------------

class _DiscoveryProtocol(asyncio.DatagramProtocol):
    """Adapter between the asyncio datagram transport and :class:`Discovery`."""

    def __init__(self, discovery: Discovery) -> None:
        self.discovery = discovery

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.discovery.connection_made(transport)  # type: ignore[arg-type]

    def datagram_received(self, data: bytes, addr: HostAndPort) -> None:
        self.discovery.datagram_received(data, addr)

    def error_received(self, exc: Exception) -> None:
        logger.warning("Discovery socket error: %s", exc)

    def connection_lost(self, exc: Optional[Exception]) -> None:
        self.discovery.connection_lost(exc)


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------

class Discovery:
    """Multicast discovery listener feeding a :class:`BulbRegistry`.

    Parameters
    ----------
    registry:
        Receives an :meth:`~BulbRegistry.upsert` for every valid
        announcement.
    config:
        ``auto_connect`` decides whether announced bulbs are connected.
    address:
        Multicast group address.
    port:
        Discovery UDP port.
    """

    def __init__(
        self,
        registry: BulbRegistry,
        config: Optional[YeeConfig] = None,
        *,
        address: str = MULTICAST_ADDRESS,
        port: int = DISCOVERY_PORT,
    ) -> None:
        self._registry = registry
        self._config = config or YeeConfig()
        self._address = address
        self._port = port
        self._transport: Optional[asyncio.DatagramTransport] = None
        self._connect_tasks: Set[asyncio.Task] = set()

    # ---- lifecycle ---------------------------------------------------

    @property
    def is_running(self) -> bool:
        """``True`` while the multicast socket is open."""
        return self._transport is not None

    async def start(self) -> None:
        """Bind the multicast socket.  Calling it again is a no-op.

        Raises
        ------
        TransportError
            If the socket cannot be created or bound.
        """
        if self._transport is not None:
            logger.debug("Discovery already running — skipping start.")
            return

        try:
            sock = _create_multicast_socket(self._address, self._port)
        except OSError as exc:
            raise TransportError(f"Cannot bind discovery socket: {exc}") from exc

        loop = asyncio.get_running_loop()
        await loop.create_datagram_endpoint(
            lambda: _DiscoveryProtocol(self),
            sock=sock,
        )
        logger.info(
            "Discovery service started at %s:%d", self._address, self._port
        )

    async def stop(self) -> None:
        """Close the socket and abandon pending auto-connect tasks."""
        for task in list(self._connect_tasks):
            task.cancel()
        if self._connect_tasks:
            await asyncio.wait(list(self._connect_tasks))
        if self._transport is not None:
            self._transport.close()
            self._transport = None
            logger.info("Discovery service stopped")

    def scan(self) -> None:
        """Broadcast a search request (fire and forget).

        Raises
        ------
        RuntimeError
            If :meth:`start` has not been called.
        """
        if self._transport is None:
            raise RuntimeError("Discovery is not running")
        logger.debug("Broadcasting search request.")
        self._transport.sendto(SEARCH_REQUEST, (self._address, self._port))

    # ---- transport callbacks -----------------------------------------

    def connection_made(self, transport: asyncio.DatagramTransport) -> None:
        self._transport = transport

    def connection_lost(self, exc: Optional[Exception]) -> None:
        if exc is not None:
            logger.warning("Discovery socket closed: %s", exc)
        self._transport = None

    def datagram_received(self, data: bytes, addr: HostAndPort) -> None:
        """Handle one datagram; never raises."""
        try:
            self._handle_datagram(data, addr)
        except Exception:  # noqa: BLE001
            logger.exception(
                "Unexpected error handling datagram from %s:%d", addr[0], addr[1]
            )

    def _handle_datagram(self, data: bytes, addr: HostAndPort) -> None:
        logger.debug(
            "Got datagram from %s:%d (%d bytes)", addr[0], addr[1], len(data)
        )
        try:
            headers = parse_datagram(data)
        except DecodeError as exc:
            logger.warning(
                "Invalid datagram from %s:%d: %s. Ignoring...", addr[0], addr[1], exc
            )
            return

        if headers is None:
            logger.debug("Not a bulb announcement. Ignoring...")
            return

        bulb = self._registry.upsert(headers["id"], BulbProperties.from_wire(headers))

        if self._config.auto_connect:
            self._auto_connect(bulb)

    # ---- auto-connect ------------------------------------------------

    def _auto_connect(self, bulb: Bulb) -> None:
        if bulb.connected:
            return
        task = asyncio.get_running_loop().create_task(self._connect(bulb))
        self._connect_tasks.add(task)
        task.add_done_callback(self._connect_tasks.discard)

    @staticmethod
    async def _connect(bulb: Bulb) -> None:
        try:
            await bulb.connect()
        except YeeError as exc:
            logger.error("Bulb auto connect failed for %s: %s", bulb.display_name, exc)

    # ---- dunder ------------------------------------------------------

    def __repr__(self) -> str:
        state = "running" if self._transport is not None else "stopped"
        return f"Discovery({self._address}:{self._port}, {state})"
