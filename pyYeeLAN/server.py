"""YeeServer — top-level service object.

Wires together the components of a running bulb manager:

* :class:`~pyYeeLAN.persistence.StatePersister` over a
  :class:`~pyYeeLAN.persistence.BulbStateFile` (only when
  ``config.state_path`` is set),
* the :class:`~pyYeeLAN.registry.BulbRegistry`, restored from the
  persisted state, and
* the :class:`~pyYeeLAN.discovery.Discovery` listener feeding it.

Usage example::

    import asyncio
    import logging

    from pyYeeLAN import YeeConfig, YeeServer

    async def main():
        server = YeeServer(YeeConfig(state_path="bulbs.yaml"))
        await server.start()
        try:
            await asyncio.sleep(30)
            for bulb in server.registry.find_bulbs("*"):
                print(bulb.display_name, bulb.state.value)
        finally:
            await server.stop()

    logging.basicConfig(level=logging.INFO)
    asyncio.run(main())
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Set

from pyYeeLAN.bulb import Bulb, Opener
from pyYeeLAN.config import YeeConfig
from pyYeeLAN.discovery import DISCOVERY_PORT, MULTICAST_ADDRESS, Discovery
from pyYeeLAN.errors import YeeError
from pyYeeLAN.persistence import BulbStateFile, StatePersister
from pyYeeLAN.registry import BatchResult, BulbRegistry

logger = logging.getLogger(__name__)


class YeeServer:
    """Composition root for discovery, registry and persistence.

    Parameters
    ----------
    config:
        Shared configuration.  Defaults to :class:`YeeConfig`.
    address:
        Multicast group used by discovery.
    port:
        Discovery UDP port.
    opener:
        Connection opener handed to every bulb (tests).
    """

    def __init__(
        self,
        config: Optional[YeeConfig] = None,
        *,
        address: str = MULTICAST_ADDRESS,
        port: int = DISCOVERY_PORT,
        opener: Optional[Opener] = None,
    ) -> None:
        self._config = config or YeeConfig()

        store = (
            BulbStateFile(self._config.state_path)
            if self._config.state_path is not None
            else None
        )
        self._persister = StatePersister(
            store,
            delay=self._config.save_delay,
            max_failures=self._config.save_max_failures,
        )
        self._registry = BulbRegistry(self._config, self._persister, opener=opener)
        self._discovery = Discovery(
            self._registry, self._config, address=address, port=port
        )
        self._startup_tasks: Set[asyncio.Task] = set()
        self._started = False

    # ---- public properties -------------------------------------------

    @property
    def config(self) -> YeeConfig:
        return self._config

    @property
    def registry(self) -> BulbRegistry:
        return self._registry

    @property
    def discovery(self) -> Discovery:
        return self._discovery

    @property
    def persister(self) -> StatePersister:
        return self._persister

    @property
    def is_running(self) -> bool:
        """``True`` between :meth:`start` and :meth:`stop`."""
        return self._started

    # ---- lifecycle ---------------------------------------------------

    async def start(self, *, discover: bool = True) -> None:
        """Load persisted bulbs, start discovery and scan once.

        When ``config.start_connect`` is set every restored bulb is
        connected in the background; failures are logged.

        Parameters
        ----------
        discover:
            If ``False`` the multicast listener is not started (useful
            when only persisted bulbs should be managed).

        Raises
        ------
        TransportError
            If the discovery socket cannot be bound.
        """
        if self._started:
            logger.debug("Server already running — skipping start.")
            return

        restored = self._registry.load()

        if discover:
            await self._discovery.start()
            self._discovery.scan()

        if self._config.start_connect:
            for bulb in self._registry.find_bulbs("*"):
                self._connect_in_background(bulb)

        self._started = True
        logger.info("Server started (%d known bulb(s))", restored)

    async def stop(self) -> BatchResult:
        """Stop discovery, disconnect every bulb and flush the state.

        Returns
        -------
        BatchResult
            Outcome of disconnecting the bulbs.
        """
        for task in list(self._startup_tasks):
            task.cancel()
        if self._startup_tasks:
            await asyncio.wait(list(self._startup_tasks))

        await self._discovery.stop()
        result = await self._registry.disconnect_all()
        for bulb_id, error in result.errors.items():
            logger.warning("Failed to disconnect %s: %s", bulb_id, error["message"])

        await self._persister.flush()
        self._started = False
        logger.info("Server stopped")
        return result

    # ---- helpers -----------------------------------------------------

    def _connect_in_background(self, bulb: Bulb) -> None:
        task = asyncio.get_running_loop().create_task(self._connect(bulb))
        self._startup_tasks.add(task)
        task.add_done_callback(self._startup_tasks.discard)

    @staticmethod
    async def _connect(bulb: Bulb) -> None:
        try:
            await bulb.connect()
        except YeeError as exc:
            logger.error("Bulb start connect failed for %s: %s", bulb.display_name, exc)

    def __repr__(self) -> str:
        state = "running" if self._started else "stopped"
        return f"YeeServer({len(self._registry)} bulbs, {state})"
