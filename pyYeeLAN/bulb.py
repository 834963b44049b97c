"""Bulb session — connection state machine for one bulb.

A :class:`Bulb` owns the single TCP control connection to one physical
bulb and everything that travels over it:

1. **Connect** — :meth:`Bulb.connect` opens the socket (bounded by the
   connection timeout) and starts a reader task.  Concurrent callers
   share the one in-flight attempt.
2. **Operation** — :meth:`Bulb.command` sends a request with the next
   message id and waits for the correlated ``result`` / ``error``
   answer.  ``props`` notifications are merged into the bulb's property
   snapshot as they arrive.
3. **Loss & reconnect** — when an established connection fails, the
   session retries with a fixed delay up to the configured number of
   attempts.  :meth:`Bulb.disconnect` closes deliberately and never
   triggers a reconnect.

Connection states
~~~~~~~~~~~~~~~~~

The :attr:`Bulb.state` property is derived from the internals and cannot
be set:

* ``CONNECTED`` — a socket is open and the connect attempt succeeded.
* ``CONNECTING`` — a connect attempt is in flight.
* ``RECONNECTING`` — the reconnect loop is waiting between attempts.
* ``DISCONNECTED`` — none of the above.

Message ID handling
~~~~~~~~~~~~~~~~~~~

Request ids increase monotonically per session and wrap back to ``1``
after :data:`MAX_MESSAGE_ID`.  Answers are matched by id, not by
arrival order, so out-of-order answers reach the right caller.  Every
pending request is rejected with a
:class:`~pyYeeLAN.errors.TransportError` as soon as the connection
closes, for whatever reason.

Usage (typically managed by :class:`~pyYeeLAN.registry.BulbRegistry`)::

    bulb = Bulb("0x0000000012345678", BulbProperties(
        location="yeelight://192.168.1.20:55443",
    ))
    await bulb.turn_on()
    result = await bulb.command("set_bright", [50, "smooth", 500])
    await bulb.disconnect()
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Mapping,
    Optional,
    Sequence,
    Tuple,
)

from pyYeeLAN.config import YeeConfig
from pyYeeLAN.connection import BulbConnection
from pyYeeLAN.enums import ConnectionState
from pyYeeLAN.errors import (
    DecodeError,
    DeviceError,
    InvalidArgumentError,
    TransportError,
)
from pyYeeLAN.message import (
    Notification,
    Request,
    ResultMessage,
    decode_message,
    encode_request,
    validate_params,
)
from pyYeeLAN.pending import PendingRequests
from pyYeeLAN.properties import (
    REFRESH_PROPS,
    BulbProperties,
    parse_location,
    props_from_result,
)

logger = logging.getLogger(__name__)

#: Highest request id before the counter wraps around to 1.
MAX_MESSAGE_ID: int = 2**31 - 1


# ---------------------------------------------------------------------------
# Callback types
# ---------------------------------------------------------------------------

#: Called (synchronously) whenever the bulb's properties or ``last_seen``
#: change.  The registry uses it to schedule a persistence write.
ChangeCallback = Callable[["Bulb"], None]

#: Opens a TCP stream pair; defaults to :func:`asyncio.open_connection`.
Opener = Callable[
    [str, int],
    Awaitable[Tuple[asyncio.StreamReader, asyncio.StreamWriter]],
]


# ---------------------------------------------------------------------------
# Bulb
# ---------------------------------------------------------------------------

class Bulb:
    """Session with one bulb.

    Parameters
    ----------
    bulb_id:
        Stable identifier reported by the bulb itself.
    properties:
        Initial property snapshot.
    seen:
        When ``True`` (default) ``last_seen`` is set to *now*; otherwise
        it is taken from *last_seen*.
    last_seen:
        UNIX timestamp of the last sighting (used when restoring).
    config:
        Timeouts and reconnect policy.  Defaults to :class:`YeeConfig`.
    on_change:
        Invoked after every property or ``last_seen`` change.
    opener:
        Coroutine function used to open the TCP connection.
    """

    def __init__(
        self,
        bulb_id: str,
        properties: Optional[BulbProperties] = None,
        *,
        seen: bool = True,
        last_seen: Optional[float] = None,
        config: Optional[YeeConfig] = None,
        on_change: Optional[ChangeCallback] = None,
        opener: Optional[Opener] = None,
    ) -> None:
        self._id = bulb_id
        self._properties = properties or BulbProperties()
        self._config = config or YeeConfig()
        self._on_change = on_change
        self._opener: Opener = opener or asyncio.open_connection

        self.last_seen: Optional[float] = time.time() if seen else last_seen

        # Connection handling.
        self._conn: Optional[BulbConnection] = None
        self._connect_task: Optional[asyncio.Task] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._closing = False
        self._close_requested = False
        self._ever_connected = False

        # Request correlation.
        self._last_msg_id = 0
        self._pending = PendingRequests(self.display_name)

        # Reconnect loop.
        self._reconnecting = False
        self._reconnect_cancelled = False
        self._reconnect_wakeup: Optional[asyncio.Event] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._reconnect_owner: Optional[asyncio.Task] = None
        self._reconnect_finished = asyncio.Event()
        self._reconnect_attempts = 0

    # ---- public properties -------------------------------------------

    @property
    def id(self) -> str:
        """The bulb's stable identifier."""
        return self._id

    @property
    def properties(self) -> BulbProperties:
        """The merged last-known property snapshot."""
        return self._properties

    @property
    def display_name(self) -> str:
        """The bulb's name, falling back to its id."""
        return self._properties.name or self._id

    @property
    def state(self) -> ConnectionState:
        """Current :class:`ConnectionState` (derived)."""
        if self._conn is not None:
            return ConnectionState.CONNECTED
        if self._connect_task is not None:
            return ConnectionState.CONNECTING
        if self._reconnect_active:
            return ConnectionState.RECONNECTING
        return ConnectionState.DISCONNECTED

    @property
    def _reconnect_active(self) -> bool:
        # A scheduled loop counts before its first step has run.
        if self._reconnecting:
            return True
        task = self._reconnect_task
        return task is not None and not task.done()

    @property
    def connected(self) -> bool:
        """``True`` while the state is ``CONNECTED``."""
        return self._conn is not None

    @property
    def pending_requests(self) -> int:
        """Number of commands still waiting for an answer."""
        return len(self._pending)

    @property
    def reconnect_attempts(self) -> int:
        """Attempts made by the current (or last) reconnect loop."""
        return self._reconnect_attempts

    # ---- property updates --------------------------------------------

    def update(self, properties: BulbProperties, seen: bool = True) -> None:
        """Merge *properties* into the snapshot.

        Only fields known in *properties* are overwritten.  When *seen*
        is ``True`` ``last_seen`` is set to *now*.
        """
        self._properties = self._properties.merge(properties)
        self._pending.name = self.display_name
        if seen:
            self.last_seen = time.time()
        self._notify_change()

    def _notify_change(self) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(self)
        except Exception:  # noqa: BLE001
            logger.exception("%s: error in change callback", self.display_name)

    # ---- message-ID helpers ------------------------------------------

    def _next_message_id(self) -> int:
        """Allocate and return the next outgoing request id."""
        self._last_msg_id = self._last_msg_id % MAX_MESSAGE_ID + 1
        return self._last_msg_id

    # ---- connect -----------------------------------------------------

    async def connect(self) -> BulbConnection:
        """Connect to the bulb, or return the existing connection.

        Calls made while an attempt is already in flight wait for that
        attempt instead of starting another one.

        Raises
        ------
        InvalidArgumentError
            If the bulb has no (or a malformed) ``location``.
        TransportError
            If the connection fails, times out or is aborted by
            :meth:`disconnect`.
        """
        if self._connect_task is not None:
            return await self._await_connect(self._connect_task)
        if self._conn is not None:
            return self._conn

        host, port = parse_location(self._properties.location)
        logger.info("%s: starting connection to %s:%d", self.display_name, host, port)
        self._close_requested = False

        task = asyncio.get_running_loop().create_task(self._establish(host, port))
        self._connect_task = task
        return await self._await_connect(task)

    @staticmethod
    async def _await_connect(task: asyncio.Task) -> BulbConnection:
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                raise TransportError("Early disconnect.") from None
            raise

    async def _establish(self, host: str, port: int) -> BulbConnection:
        """Open the socket; runs as the shared connect task."""
        try:
            try:
                reader, writer = await asyncio.wait_for(
                    self._opener(host, port),
                    self._config.connection_timeout_or_none,
                )
            except asyncio.TimeoutError as exc:
                raise TransportError("Connection Timeout") from exc
            except OSError as exc:
                raise TransportError(
                    f"Connection to {host}:{port} failed: {exc}"
                ) from exc
        except TransportError as exc:
            self._connect_task = None
            logger.error("%s: connection error: %s", self.display_name, exc)
            if self._ever_connected:
                self._schedule_reconnect()
            raise
        except asyncio.CancelledError:
            self._connect_task = None
            logger.info("%s: connection attempt aborted", self.display_name)
            raise

        conn = BulbConnection(reader, writer)
        self._conn = conn
        self._connect_task = None
        self._ever_connected = True
        self._reconnect_attempts = 0
        self._reader_task = asyncio.get_running_loop().create_task(
            self._read_loop(conn)
        )
        logger.info("%s: connection successful", self.display_name)
        return conn

    # ---- reconnect ---------------------------------------------------

    def _schedule_reconnect(self) -> None:
        """Start the reconnect loop in the background (if enabled)."""
        if self._config.reconnect_attempts is None:
            logger.info("%s: automatic reconnection disabled", self.display_name)
            return
        if self._close_requested:
            logger.debug("%s: disconnected on request, not reconnecting", self.display_name)
            return
        if self._reconnect_active:
            return
        self._reconnect_task = asyncio.get_running_loop().create_task(
            self.reconnect()
        )

    async def reconnect(self) -> bool:
        """Retry :meth:`connect` with a fixed delay between attempts.

        Re-entrant calls while a loop is running return ``False``
        immediately.  The loop stops when a connection succeeds, when
        :meth:`cancel_reconnect` (or :meth:`disconnect`) is called, or
        when ``reconnect_attempts`` attempts have failed (``0`` retries
        forever).

        Returns
        -------
        bool
            ``True`` if the bulb is connected when the loop ends.
        """
        if self._reconnecting:
            logger.debug("%s: reconnect already in progress", self.display_name)
            return False

        self._reconnecting = True
        self._reconnect_cancelled = False
        self._reconnect_attempts = 0
        wakeup = self._reconnect_wakeup = asyncio.Event()
        finished = self._reconnect_finished = asyncio.Event()
        self._reconnect_owner = asyncio.current_task()
        limit = self._config.reconnect_attempts or 0

        try:
            while True:
                self._reconnect_attempts += 1
                attempt = self._reconnect_attempts
                logger.info(
                    "%s: reconnect attempt %d%s",
                    self.display_name,
                    attempt,
                    f"/{limit}" if limit else "",
                )
                try:
                    await self.connect()
                    return True
                except InvalidArgumentError as exc:
                    logger.error("%s: cannot reconnect: %s", self.display_name, exc)
                    return False
                except TransportError:
                    pass

                if self._reconnect_cancelled:
                    logger.info("%s: reconnect cancelled", self.display_name)
                    return False
                if limit and attempt >= limit:
                    logger.warning(
                        "%s: giving up after %d reconnect attempts",
                        self.display_name,
                        attempt,
                    )
                    return False

                try:
                    await asyncio.wait_for(wakeup.wait(), self._config.reconnect_delay)
                except asyncio.TimeoutError:
                    pass
                if self._reconnect_cancelled:
                    logger.info("%s: reconnect cancelled", self.display_name)
                    return False
        finally:
            self._reconnecting = False
            self._reconnect_wakeup = None
            self._reconnect_owner = None
            finished.set()

    def cancel_reconnect(self) -> None:
        """Stop a running reconnect loop before its next attempt."""
        if not self._reconnecting:
            task = self._reconnect_task
            if task is not None and not task.done():
                # Scheduled but not started yet.
                task.cancel()
            return
        self._reconnect_cancelled = True
        if self._reconnect_wakeup is not None:
            self._reconnect_wakeup.set()

    # ---- disconnect --------------------------------------------------

    async def disconnect(self) -> None:
        """Close the connection deliberately.

        Returns immediately when not connected.  An in-flight connect
        attempt is aborted.  Otherwise the socket is closed gracefully
        and the call returns once the reader has finished.  A running
        reconnect loop is cancelled and has ended when this returns; no
        new one is started until the next :meth:`connect`.

        Raises
        ------
        TransportError
            If the transport reported an error while closing.
        """
        self._close_requested = True
        self.cancel_reconnect()

        task = self._connect_task
        if task is not None:
            logger.info("%s: aborting connection attempt", self.display_name)
            self._connect_task = None
            task.cancel()
            await asyncio.wait([task])
        await self._wait_reconnect_stopped()
        if task is not None:
            return

        conn = self._conn
        if conn is None:
            return

        logger.info("%s: closing connection", self.display_name)
        self._closing = True
        reader_task = self._reader_task
        try:
            await conn.close()
        finally:
            if reader_task is not None:
                await asyncio.wait([reader_task])
            self._closing = False

    async def _wait_reconnect_stopped(self) -> None:
        """Wait until a cancelled reconnect loop has actually ended."""
        current = asyncio.current_task()
        task = self._reconnect_task
        if task is not None and not task.done() and task is not current:
            await asyncio.wait([task])
        if self._reconnecting and self._reconnect_owner is not current:
            await self._reconnect_finished.wait()

    # ---- reading -----------------------------------------------------

    async def _read_loop(self, conn: BulbConnection) -> None:
        """Consume lines until EOF or a transport error."""
        error: Optional[BaseException] = None
        try:
            while True:
                line = await conn.receive()
                if line is None:
                    break
                self.on_message(line)
        except TransportError as exc:
            error = exc
        finally:
            await self._connection_closed(conn, error)

    async def _connection_closed(
        self,
        conn: BulbConnection,
        error: Optional[BaseException],
    ) -> None:
        if self._conn is not conn:
            return
        self._conn = None
        self._reader_task = None
        self._pending.reject_all(TransportError("Connection closed"))

        if self._closing:
            logger.info("%s: connection closed", self.display_name)
            return

        if error is not None:
            logger.warning(
                "%s: connection closed due to an error: %s", self.display_name, error
            )
        else:
            logger.warning("%s: connection closed by the bulb", self.display_name)

        try:
            await conn.close()
        except TransportError as exc:
            logger.debug("%s: %s", self.display_name, exc)

        # disconnect() may have been called while the socket was closing.
        if self._ever_connected and not self._close_requested:
            self._schedule_reconnect()

    def on_message(self, line: str) -> None:
        """Handle one received line.

        Notifications update the property snapshot; results and errors
        complete the matching pending request.  Malformed lines are
        logged and dropped.
        """
        try:
            message = decode_message(line)
        except DecodeError as exc:
            logger.warning(
                "%s: dropping malformed message %r: %s", self.display_name, line, exc
            )
            return

        if isinstance(message, Notification):
            self.update(BulbProperties.from_wire(message.params), seen=True)
        elif isinstance(message, ResultMessage):
            self._pending.resolve(message.id, message)
        else:
            self._pending.reject(message.id, DeviceError(message.code, message.message))

    # ---- commands ----------------------------------------------------

    async def command(
        self,
        method: str,
        params: Sequence[Any] = (),
    ) -> ResultMessage:
        """Send *method* with *params* and wait for the answer.

        Connects first when necessary.

        Returns
        -------
        ResultMessage
            The bulb's answer (``id`` and ``result`` list).

        Raises
        ------
        InvalidArgumentError
            If *method* or *params* is malformed, or the bulb has no
            usable location.
        TransportError
            If the bulb cannot be reached or the connection drops before
            the answer arrives.
        DeviceError
            If the bulb answered with an error object.
        RequestTimeoutError
            If no answer arrived within ``request_timeout``.
        """
        if not isinstance(method, str) or not method:
            raise InvalidArgumentError("'method' must be a non-empty string")
        params = validate_params(params)

        conn = await self.connect()

        msg_id = self._next_message_id()
        future = self._pending.submit(msg_id, self._config.request_timeout_or_none)
        logger.debug("%s: → #%d %s %r", self.display_name, msg_id, method, params)
        try:
            await conn.send(encode_request(Request(msg_id, method, params)))
        except TransportError as exc:
            self._pending.reject(msg_id, exc)
        return await future

    async def refresh(self) -> BulbProperties:
        """Query the current state with ``get_prop`` and merge it."""
        response = await self.command("get_prop", list(REFRESH_PROPS))
        values = props_from_result(REFRESH_PROPS, response.result)
        self.update(BulbProperties.from_wire(values), seen=True)
        return self._properties

    async def turn_on(self) -> ResultMessage:
        return await self.command("set_power", ["on", "sudden", 0])

    async def turn_off(self) -> ResultMessage:
        return await self.command("set_power", ["off", "sudden", 0])

    async def set_name(self, name: str) -> ResultMessage:
        return await self.command("set_name", [name])

    # ---- serialization -----------------------------------------------

    def serialize(self) -> Dict[str, Any]:
        """Return ``{"id", "lastSeen", "connection", **properties}``."""
        data: Dict[str, Any] = {
            "id": self._id,
            "lastSeen": self.last_seen,
            "connection": self.state.value,
        }
        data.update(self._properties.to_dict())
        return data

    @classmethod
    def deserialize(
        cls,
        data: Mapping[str, Any],
        *,
        config: Optional[YeeConfig] = None,
        on_change: Optional[ChangeCallback] = None,
        opener: Optional[Opener] = None,
    ) -> "Bulb":
        """Restore a bulb from :meth:`serialize` output.

        The restored bulb starts ``DISCONNECTED``; the ``connection``
        field is ignored.

        Raises
        ------
        InvalidArgumentError
            If ``id`` is missing or ``lastSeen`` is not a number.
        """
        bulb_id = data.get("id")
        if not isinstance(bulb_id, str) or not bulb_id:
            raise InvalidArgumentError("Persisted bulb has no 'id'")
        last_seen = data.get("lastSeen")
        if last_seen is not None and (
            isinstance(last_seen, bool) or not isinstance(last_seen, (int, float))
        ):
            raise InvalidArgumentError(f"Bulb {bulb_id} has invalid 'lastSeen'")
        return cls(
            bulb_id,
            BulbProperties.from_dict(data),
            seen=False,
            last_seen=last_seen,
            config=config,
            on_change=on_change,
            opener=opener,
        )

    # ---- dunder ------------------------------------------------------

    def __repr__(self) -> str:
        return (
            f"Bulb(id={self._id!r}, name={self._properties.name!r}, "
            f"state={self.state.name})"
        )
