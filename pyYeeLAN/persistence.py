"""YAML state file for the bulb registry.

The file holds one document::

    bulbs:
      - id: "0x000000000015243f"
        lastSeen: 1700000000.0
        name: Desk
        location: yeelight://192.168.1.239:55443
        ...

Each entry is the output of :meth:`~pyYeeLAN.bulb.Bulb.serialize`.  A
backup copy (``<file>.bak``) of the previous document is kept so that a
corrupt primary file can be recovered.

Writes go to ``<file>.tmp`` first and are then moved onto the target
with ``os.replace``, which is atomic on POSIX systems.  Reads try the
primary file, then the backup; a file only counts when it holds a
``bulbs`` list.  Entries without a usable ``id`` are dropped with a
warning, the rest of the document is kept.

:class:`StatePersister` sits on top of a :class:`BulbStateFile` and
debounces writes: any number of :meth:`StatePersister.save` calls
within one quantum produce a single write of the latest snapshot.

Usage example::

    from pyYeeLAN.persistence import BulbStateFile, StatePersister

    persister = StatePersister(BulbStateFile("/var/lib/yee/state.yaml"))
    entries = persister.load()          # [] when nothing is stored yet
    persister.save([bulb.serialize() for bulb in bulbs])   # debounced
    await persister.flush()             # before shutdown
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import yaml

from pyYeeLAN.config import DEFAULT_SAVE_DELAY, DEFAULT_SAVE_MAX_FAILURES

logger = logging.getLogger(__name__)

#: One serialized bulb (camelCase keys, ``id`` always present).
BulbEntry = Dict[str, Any]

#: Top-level key holding the list of bulb entries.
BULBS_KEY = "bulbs"

_BACKUP_SUFFIX = ".bak"
_TMP_SUFFIX = ".tmp"


class BulbStateFile:
    """The registry's YAML file, with backup and recovery.

    Parameters
    ----------
    path:
        Path to the primary YAML file.  Parent directories are created
        on the first :meth:`save`.
    """

    def __init__(self, path: Union[str, Path]) -> None:
        self._path = Path(path)
        self._backup_path = self._path.with_suffix(
            self._path.suffix + _BACKUP_SUFFIX
        )
        self._tmp_path = self._path.with_suffix(
            self._path.suffix + _TMP_SUFFIX
        )

    @property
    def path(self) -> Path:
        """The primary YAML file path."""
        return self._path

    @property
    def backup_path(self) -> Path:
        return self._backup_path

    # ---- save ---------------------------------------------------------

    def save(self, entries: Sequence[BulbEntry]) -> None:
        """Write *entries* as the new ``bulbs`` document.

        The previous document becomes the backup.  Blocking; the
        persister runs it in a worker thread.

        Raises
        ------
        OSError
            If the file cannot be written.
        yaml.YAMLError
            If an entry holds values YAML cannot represent.
        """
        document = {BULBS_KEY: [dict(entry) for entry in entries]}
        self._path.parent.mkdir(parents=True, exist_ok=True)

        if self._path.is_file():
            try:
                shutil.copy2(str(self._path), str(self._backup_path))
            except OSError as exc:
                logger.warning("Failed to back up %s: %s", self._path, exc)

        try:
            with open(self._tmp_path, "w", encoding="utf-8") as fh:
                yaml.safe_dump(
                    document,
                    fh,
                    default_flow_style=False,
                    allow_unicode=True,
                    sort_keys=False,
                )
            os.replace(str(self._tmp_path), str(self._path))
        except OSError:
            logger.error("Failed to write %s", self._path)
            raise

        logger.info("Saved %d bulb(s) to %s", len(document[BULBS_KEY]), self._path)

    # ---- load ---------------------------------------------------------

    def load(self) -> Optional[List[BulbEntry]]:
        """Return the stored bulb entries.

        Falls back to the backup (and restores the primary from it)
        when the primary file is missing or unusable.

        Returns
        -------
        list or None
            The entries, or ``None`` if neither file holds a usable
            document.
        """
        entries = self._read(self._path)
        if entries is not None:
            return entries

        if self._backup_path.is_file():
            logger.warning(
                "State file %s not usable, trying backup %s",
                self._path,
                self._backup_path,
            )
            entries = self._read(self._backup_path)
            if entries is not None:
                try:
                    shutil.copy2(str(self._backup_path), str(self._path))
                except OSError as exc:
                    logger.warning("Could not restore %s: %s", self._path, exc)
                return entries

        logger.info("No usable state file at %s, starting fresh", self._path)
        return None

    @staticmethod
    def _read(path: Path) -> Optional[List[BulbEntry]]:
        if not path.is_file():
            return None
        try:
            with open(path, "r", encoding="utf-8") as fh:
                document = yaml.safe_load(fh)
        except (OSError, yaml.YAMLError) as exc:
            logger.warning("Failed to load %s: %s", path, exc)
            return None

        if not isinstance(document, dict):
            logger.warning(
                "Expected a mapping at top level in %s, got %s",
                path,
                type(document).__name__,
            )
            return None
        bulbs = document.get(BULBS_KEY)
        if bulbs is None:
            return []
        if not isinstance(bulbs, list):
            logger.warning("Malformed '%s' section in %s", BULBS_KEY, path)
            return None

        entries = []
        for entry in bulbs:
            if _is_entry(entry):
                entries.append(entry)
            else:
                logger.warning("Ignoring malformed bulb entry %r in %s", entry, path)
        return entries

    def __repr__(self) -> str:
        return f"BulbStateFile({str(self._path)!r})"


def _is_entry(entry: Any) -> bool:
    if not isinstance(entry, dict):
        return False
    bulb_id = entry.get("id")
    return isinstance(bulb_id, str) and bool(bulb_id)


class StatePersister:
    """Debounced, trailing-edge writer for registry snapshots.

    :meth:`save` only records the latest snapshot.  The first call after
    an idle period arms a timer of *delay* seconds; further calls before
    it fires replace the recorded snapshot without re-arming it.  When
    the timer fires the latest snapshot is written in a worker thread.
    Calls made while a write is in flight arm a new timer once that
    write ends, so there is at most one write in flight and at most one
    write per quantum.

    A failed write is logged and retried (with the then-latest snapshot)
    after another quantum.  After *max_failures* consecutive failures the
    persister disables itself for the rest of the process lifetime.

    Parameters
    ----------
    store:
        The backing :class:`BulbStateFile`.  ``None`` disables
        persistence (every call becomes a no-op).
    delay:
        Debounce quantum in seconds.
    max_failures:
        Consecutive failed writes tolerated before giving up.
    """

    def __init__(
        self,
        store: Optional[BulbStateFile],
        *,
        delay: float = DEFAULT_SAVE_DELAY,
        max_failures: int = DEFAULT_SAVE_MAX_FAILURES,
    ) -> None:
        self._store = store
        self._delay = delay
        self._max_failures = max_failures
        self._enabled = store is not None

        self._payload: Optional[List[BulbEntry]] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._write_task: Optional[asyncio.Task] = None
        self._failures = 0
        self._write_count = 0

    # ---- public properties -------------------------------------------

    @property
    def enabled(self) -> bool:
        """``False`` when there is no store or persistence was disabled."""
        return self._enabled

    @property
    def pending(self) -> bool:
        """``True`` while a snapshot is waiting to be written."""
        return self._payload is not None

    @property
    def write_count(self) -> int:
        """Number of successful writes so far."""
        return self._write_count

    # ---- load ---------------------------------------------------------

    def load(self) -> List[BulbEntry]:
        """Return the persisted bulb entries (``[]`` when none).

        Malformed entries are skipped with a warning.
        """
        if self._store is None:
            return []
        return self._store.load() or []

    # ---- save (debounced) --------------------------------------------

    def save(self, entries: Sequence[BulbEntry]) -> None:
        """Record *entries* as the latest snapshot and schedule a write.

        Must be called from within the running event loop.
        """
        if not self._enabled:
            return
        self._payload = list(entries)
        if self._timer is None and self._write_task is None:
            self._arm()

    def _arm(self) -> None:
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self._delay, self._start_write)

    def _start_write(self) -> None:
        self._timer = None
        if self._write_task is None and self._payload is not None:
            self._write_task = asyncio.get_running_loop().create_task(self._write())

    async def _write(self) -> None:
        """Write the latest snapshot; re-arm if another one arrived."""
        assert self._store is not None
        payload, self._payload = self._payload, None
        try:
            await asyncio.to_thread(self._store.save, payload)
        except (OSError, yaml.YAMLError) as exc:
            self._failures += 1
            if self._failures >= self._max_failures:
                self._enabled = False
                self._payload = None
                logger.error(
                    "Failed to save state to %s (%d consecutive failures): %s "
                    "— persistence is now DISABLED for this process.",
                    self._store.path,
                    self._failures,
                    exc,
                )
            else:
                logger.warning(
                    "Failed to save state to %s (attempt %d/%d): %s — will retry.",
                    self._store.path,
                    self._failures,
                    self._max_failures,
                    exc,
                )
                if self._payload is None:
                    self._payload = payload
        else:
            self._failures = 0
            self._write_count += 1
        finally:
            self._write_task = None
            if self._enabled and self._payload is not None and self._timer is None:
                self._arm()

    # ---- flush / close -----------------------------------------------

    async def flush(self) -> None:
        """Write any recorded snapshot now.

        Waits for an in-flight write first.  Does nothing when nothing
        is pending.
        """
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._write_task is not None:
            await asyncio.wait([self._write_task])
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        if self._enabled and self._payload is not None:
            task = asyncio.get_running_loop().create_task(self._write())
            self._write_task = task
            await asyncio.wait([task])
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def __repr__(self) -> str:
        return (
            f"StatePersister(store={self._store!r}, delay={self._delay}, "
            f"enabled={self._enabled})"
        )
