"""Bulb registry — the authoritative id → :class:`~pyYeeLAN.bulb.Bulb` map.

Bulbs enter the registry through discovery (:meth:`BulbRegistry.upsert`)
or from persisted state (:meth:`BulbRegistry.load`).  They are never
removed automatically: a bulb that stops answering stays listed, with an
ageing ``last_seen`` and a ``DISCONNECTED`` state.

Every change to a bulb's properties (discovery updates as well as
``props`` notifications) hands a full snapshot of the registry to the
:class:`~pyYeeLAN.persistence.StatePersister`, which coalesces them into
debounced writes.

All methods must be called from the event loop thread.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pyYeeLAN.bulb import Bulb, Opener
from pyYeeLAN.config import YeeConfig
from pyYeeLAN.enums import ConnectionState
from pyYeeLAN.errors import InvalidArgumentError, YeeError
from pyYeeLAN.persistence import StatePersister
from pyYeeLAN.properties import LOCATION_SCHEME, BulbProperties

logger = logging.getLogger(__name__)

#: Selector matching every known bulb.
ALL_BULBS: str = "*"


@dataclass
class BatchResult:
    """Outcome of an operation applied to several bulbs.

    ``errors`` maps bulb ids to the failure reported for them.
    """

    success: int = 0
    failed: int = 0
    ignored: int = 0
    errors: Dict[str, Dict[str, Any]] = field(default_factory=dict)


class BulbRegistry:
    """Registry of every bulb known to this process.

    Parameters
    ----------
    config:
        Shared configuration, handed to every :class:`Bulb` created.
    persister:
        Receives a snapshot after every change.  ``None`` disables
        persistence.
    opener:
        Connection opener passed to every :class:`Bulb` (tests).
    """

    def __init__(
        self,
        config: Optional[YeeConfig] = None,
        persister: Optional[StatePersister] = None,
        *,
        opener: Optional[Opener] = None,
    ) -> None:
        self._config = config or YeeConfig()
        self._persister = persister
        self._opener = opener
        self._bulbs: Dict[str, Bulb] = {}
        self._loading = False

    # ---- read access -------------------------------------------------

    @property
    def bulbs(self) -> Dict[str, Bulb]:
        """A copy of the id → :class:`Bulb` mapping."""
        return dict(self._bulbs)

    def get(self, bulb_id: str) -> Optional[Bulb]:
        """Return the bulb with *bulb_id*, or ``None``."""
        return self._bulbs.get(bulb_id)

    def __len__(self) -> int:
        return len(self._bulbs)

    def __contains__(self, bulb_id: object) -> bool:
        return bulb_id in self._bulbs

    def find_bulbs(self, selector: str) -> List[Bulb]:
        """Resolve *selector* to a list of bulbs.

        ``"*"`` selects every bulb and an exact id selects that bulb.
        Anything else is compared case-insensitively against each
        bulb's name and location, with or without the
        ``yeelight://`` prefix.  No match gives an empty list.
        """
        if selector == ALL_BULBS:
            return list(self._bulbs.values())
        if selector in self._bulbs:
            return [self._bulbs[selector]]

        needle = selector.lower()
        matches = []
        for bulb in self._bulbs.values():
            name = (bulb.properties.name or "").lower()
            location = (bulb.properties.location or "").lower()
            if needle and (
                needle == name
                or needle == location
                or LOCATION_SCHEME + needle == location
            ):
                matches.append(bulb)
        return matches

    # ---- updates -----------------------------------------------------

    def upsert(
        self,
        bulb_id: str,
        properties: BulbProperties,
        seen: bool = True,
    ) -> Bulb:
        """Create or update the bulb *bulb_id*.

        A new bulb schedules a persistence write.  For an existing bulb
        the properties are merged field by field (and ``last_seen``
        refreshed when *seen*); the bulb's change callback schedules
        the write.

        Raises
        ------
        InvalidArgumentError
            If *bulb_id* is empty.
        """
        if not bulb_id:
            raise InvalidArgumentError("Bulb id must not be empty")

        existing = self._bulbs.get(bulb_id)
        name = (
            properties.name
            or (existing.properties.name if existing else None)
            or properties.location
            or (existing.properties.location if existing else None)
            or "UNKNOWN"
        )

        if existing is not None:
            logger.debug("Updating %s bulb (%s).", name, bulb_id)
            existing.update(properties, seen)
            return existing

        logger.debug("Adding new %s bulb (%s).", name, bulb_id)
        bulb = Bulb(
            bulb_id,
            properties,
            seen=seen,
            config=self._config,
            on_change=self._bulb_changed,
            opener=self._opener,
        )
        self._bulbs[bulb_id] = bulb
        self._schedule_save()
        return bulb

    # ---- persistence -------------------------------------------------

    def snapshot(self) -> List[Dict[str, Any]]:
        """Serialize every bulb (point-in-time copy of the registry)."""
        return [bulb.serialize() for bulb in self._bulbs.values()]

    def load(self) -> int:
        """Restore bulbs from the persister.

        Restored bulbs keep their persisted ``last_seen`` and start
        ``DISCONNECTED``.  Bulbs already present are left untouched.
        Loading never schedules a write.

        Returns
        -------
        int
            The number of bulbs restored.
        """
        if self._persister is None:
            return 0

        restored = 0
        self._loading = True
        try:
            for entry in self._persister.load():
                try:
                    bulb = Bulb.deserialize(
                        entry,
                        config=self._config,
                        on_change=self._bulb_changed,
                        opener=self._opener,
                    )
                except InvalidArgumentError as exc:
                    logger.warning("Skipping persisted bulb: %s", exc)
                    continue
                if bulb.id in self._bulbs:
                    continue
                self._bulbs[bulb.id] = bulb
                restored += 1
        finally:
            self._loading = False

        logger.info("Restored %d bulb(s) from persisted state", restored)
        return restored

    def _bulb_changed(self, bulb: Bulb) -> None:
        if self._bulbs.get(bulb.id) is bulb:
            self._schedule_save()

    def _schedule_save(self) -> None:
        if self._persister is None or self._loading:
            return
        self._persister.save(self.snapshot())

    # ---- batch operations --------------------------------------------

    async def connect_all(self, selector: str = ALL_BULBS) -> BatchResult:
        """Connect every selected bulb that is not connected yet."""
        bulbs = self.find_bulbs(selector)
        targets = [bulb for bulb in bulbs if not bulb.connected]
        return await self._run_batch(
            bulbs, targets, [bulb.connect() for bulb in targets]
        )

    async def disconnect_all(self, selector: str = ALL_BULBS) -> BatchResult:
        """Disconnect every selected bulb that is not disconnected.

        In-flight connect attempts are aborted and reconnect loops are
        cancelled.
        """
        bulbs = self.find_bulbs(selector)
        targets = [
            bulb for bulb in bulbs if bulb.state is not ConnectionState.DISCONNECTED
        ]
        return await self._run_batch(
            bulbs, targets, [bulb.disconnect() for bulb in targets]
        )

    @staticmethod
    async def _run_batch(
        bulbs: List[Bulb],
        targets: List[Bulb],
        coros: List[Any],
    ) -> BatchResult:
        outcomes = await asyncio.gather(*coros, return_exceptions=True)
        result = BatchResult(ignored=len(bulbs) - len(targets))
        for bulb, outcome in zip(targets, outcomes):
            if isinstance(outcome, YeeError):
                result.failed += 1
                result.errors[bulb.id] = outcome.to_dict()
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                result.success += 1
        return result

    # ---- dunder ------------------------------------------------------

    def __repr__(self) -> str:
        return f"BulbRegistry({len(self._bulbs)} bulbs)"
