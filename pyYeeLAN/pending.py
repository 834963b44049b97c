"""Pending-request table: correlates outgoing requests with answers.

Every command sent on a bulb connection carries a numeric ``id``.  The
bulb echoes that id in its ``result`` or ``error`` answer, possibly out
of order.  :class:`PendingRequests` keeps one :class:`asyncio.Future`
per outstanding id and completes it exactly once: with the result, with
an error, or with :class:`~pyYeeLAN.errors.RequestTimeoutError` when no
answer arrives in time.  The entry and its timer are released as soon
as the future completes, whatever the outcome.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Tuple

from pyYeeLAN.errors import RequestTimeoutError

logger = logging.getLogger(__name__)


class PendingRequests:
    """Table of unanswered requests for one session.

    Parameters
    ----------
    name:
        Label used in log messages (usually the bulb's name or id).
    """

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._entries: Dict[
            int, Tuple[asyncio.Future, Optional[asyncio.TimerHandle]]
        ] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, msg_id: object) -> bool:
        return msg_id in self._entries

    # ---- registration ------------------------------------------------

    def submit(self, msg_id: int, timeout: Optional[float]) -> asyncio.Future:
        """Register an expected answer for *msg_id*.

        Parameters
        ----------
        msg_id:
            The request id.  An id that is still pending is rejected
            first so that there is only ever one entry per id.
        timeout:
            Seconds until the request auto-rejects with
            :class:`RequestTimeoutError`.  ``None`` or ``0`` disables the
            timeout.

        Returns
        -------
        asyncio.Future
            Completes with the answer, or raises the rejection error.
        """
        if msg_id in self._entries:
            logger.warning(
                "%s: request id %d reused while still pending", self.name, msg_id
            )
            self.reject(msg_id, RequestTimeoutError("Request superseded"))

        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()

        handle: Optional[asyncio.TimerHandle] = None
        if timeout:
            handle = loop.call_later(timeout, self._expire, msg_id, future)

        self._entries[msg_id] = (future, handle)
        # A caller cancelling its await must not leave the entry behind.
        future.add_done_callback(lambda fut: self._discard(msg_id, fut))
        return future

    # ---- completion --------------------------------------------------

    def resolve(self, msg_id: int, result: Any) -> bool:
        """Complete the request *msg_id* with *result*.

        Returns ``False`` (and logs) when no such request is pending.
        """
        future = self._pop(msg_id)
        if future is None:
            logger.debug(
                "%s: discarding answer for unknown request id %d", self.name, msg_id
            )
            return False
        if not future.done():
            future.set_result(result)
        return True

    def reject(self, msg_id: int, error: BaseException) -> bool:
        """Fail the request *msg_id* with *error*.

        Returns ``False`` (and logs) when no such request is pending.
        """
        future = self._pop(msg_id)
        if future is None:
            logger.debug(
                "%s: discarding error for unknown request id %d", self.name, msg_id
            )
            return False
        if not future.done():
            future.set_exception(error)
        return True

    def reject_all(self, error: BaseException) -> int:
        """Fail every pending request with *error*.

        Returns the number of requests that were rejected.
        """
        count = 0
        for msg_id in list(self._entries):
            if self.reject(msg_id, error):
                count += 1
        if count:
            logger.debug("%s: rejected %d pending request(s)", self.name, count)
        return count

    # ---- internals ---------------------------------------------------

    def _pop(self, msg_id: int) -> Optional[asyncio.Future]:
        entry = self._entries.pop(msg_id, None)
        if entry is None:
            return None
        future, handle = entry
        if handle is not None:
            handle.cancel()
        return future

    def _discard(self, msg_id: int, future: asyncio.Future) -> None:
        entry = self._entries.get(msg_id)
        if entry is not None and entry[0] is future:
            self._pop(msg_id)

    def _expire(self, msg_id: int, future: asyncio.Future) -> None:
        entry = self._entries.get(msg_id)
        if entry is None or entry[0] is not future:
            return
        logger.warning("%s: request %d timed out", self.name, msg_id)
        self.reject(msg_id, RequestTimeoutError("Bulb response timeout"))
