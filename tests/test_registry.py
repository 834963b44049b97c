"""Tests for the BulbRegistry."""

import asyncio
from unittest.mock import MagicMock

import pytest

from pyYeeLAN.bulb import Bulb
from pyYeeLAN.config import YeeConfig
from pyYeeLAN.enums import ConnectionState
from pyYeeLAN.errors import InvalidArgumentError
from pyYeeLAN.persistence import StatePersister
from pyYeeLAN.properties import BulbProperties
from pyYeeLAN.registry import ALL_BULBS, BulbRegistry


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class LoopbackWriter:
    """StreamWriter stand-in that discards writes."""

    def __init__(self, reader):
        self._reader = reader

    def write(self, data):
        pass

    async def drain(self):
        pass

    def close(self):
        if not self._reader.at_eof():
            self._reader.feed_eof()

    async def wait_closed(self):
        pass

    def get_extra_info(self, key, default=None):
        return default


async def loopback_opener(host, port):
    """Opener that 'connects' to any port except 1."""
    if port == 1:
        raise ConnectionRefusedError("refused")
    reader = asyncio.StreamReader()
    return reader, LoopbackWriter(reader)


def _persister(entries=()):
    persister = MagicMock(spec=StatePersister)
    persister.load.return_value = list(entries)
    return persister


def _registry(persister=None):
    return BulbRegistry(
        YeeConfig(reconnect_attempts=None, connection_timeout=1.0),
        persister,
        opener=loopback_opener,
    )


def _props(host="192.168.1.10", port=55443, **kwargs):
    return BulbProperties(location=f"yeelight://{host}:{port}", **kwargs)


# ---------------------------------------------------------------------------
# upsert
# ---------------------------------------------------------------------------

class TestUpsert:

    def test_new_bulb_is_added_and_saved(self):
        persister = _persister()
        registry = _registry(persister)

        bulb = registry.upsert("0x1", _props(name="desk", power=True))

        assert isinstance(bulb, Bulb)
        assert "0x1" in registry
        assert len(registry) == 1
        assert bulb.properties.name == "desk"
        assert bulb.state is ConnectionState.DISCONNECTED
        persister.save.assert_called_once()
        saved = persister.save.call_args[0][0]
        assert saved[0]["id"] == "0x1"

    def test_existing_bulb_is_merged(self):
        persister = _persister()
        registry = _registry(persister)
        first = registry.upsert("0x1", _props(name="desk", power=True, bright=50))

        second = registry.upsert("0x1", BulbProperties(bright=80))

        assert second is first
        assert len(registry) == 1
        assert first.properties.power is True
        assert first.properties.bright == 80
        assert first.properties.name == "desk"
        assert persister.save.call_count == 2

    def test_unseen_update_keeps_last_seen(self):
        registry = _registry()
        bulb = registry.upsert("0x1", _props())
        bulb.last_seen = 5.0
        registry.upsert("0x1", BulbProperties(bright=1), seen=False)
        assert bulb.last_seen == 5.0

    def test_empty_id_rejected(self):
        registry = _registry()
        with pytest.raises(InvalidArgumentError):
            registry.upsert("", _props())
        assert len(registry) == 0

    def test_property_notification_triggers_save(self):
        persister = _persister()
        registry = _registry(persister)
        bulb = registry.upsert("0x1", _props())
        persister.save.reset_mock()

        bulb.update(BulbProperties(power=False))

        persister.save.assert_called_once()
        assert persister.save.call_args[0][0][0]["power"] is False

    def test_without_persister(self):
        registry = _registry(None)
        registry.upsert("0x1", _props())
        assert registry.get("0x1") is not None


# ---------------------------------------------------------------------------
# find_bulbs
# ---------------------------------------------------------------------------

class TestFindBulbs:

    @pytest.fixture
    def registry(self):
        registry = _registry()
        registry.upsert("0x1", _props("192.168.1.10", name="Desk"))
        registry.upsert("0x2", _props("192.168.1.11", name="Ceiling"))
        registry.upsert("0x3", _props("192.168.1.12"))
        return registry

    def test_all(self, registry):
        assert {b.id for b in registry.find_bulbs(ALL_BULBS)} == {"0x1", "0x2", "0x3"}

    def test_by_id(self, registry):
        assert [b.id for b in registry.find_bulbs("0x2")] == ["0x2"]

    def test_by_name_case_insensitive(self, registry):
        assert [b.id for b in registry.find_bulbs("desk")] == ["0x1"]
        assert [b.id for b in registry.find_bulbs("CEILING")] == ["0x2"]

    def test_by_location(self, registry):
        assert [b.id for b in registry.find_bulbs("yeelight://192.168.1.12:55443")] == ["0x3"]
        assert [b.id for b in registry.find_bulbs("192.168.1.12:55443")] == ["0x3"]

    def test_no_match(self, registry):
        assert registry.find_bulbs("garage") == []
        assert registry.find_bulbs("") == []


# ---------------------------------------------------------------------------
# load / snapshot
# ---------------------------------------------------------------------------

class TestLoad:

    def test_restores_bulbs_without_saving(self):
        persister = _persister([
            {"id": "0x1", "lastSeen": 1700000000.0, "name": "Desk",
             "location": "yeelight://192.168.1.10:55443", "connection": "connected"},
            {"id": "0x2", "lastSeen": None},
        ])
        registry = _registry(persister)

        assert registry.load() == 2

        desk = registry.get("0x1")
        assert desk.properties.name == "Desk"
        assert desk.last_seen == 1700000000.0
        assert desk.state is ConnectionState.DISCONNECTED
        assert registry.get("0x2").last_seen is None
        persister.save.assert_not_called()

    def test_invalid_entries_skipped(self):
        persister = _persister([
            {"name": "no id"},
            {"id": "0x1", "lastSeen": "yesterday"},
            {"id": "0x2", "lastSeen": 1.0},
        ])
        registry = _registry(persister)
        assert registry.load() == 1
        assert list(registry.bulbs) == ["0x2"]

    def test_existing_bulbs_untouched(self):
        persister = _persister([{"id": "0x1", "lastSeen": 1.0, "name": "Old"}])
        registry = _registry(persister)
        live = registry.upsert("0x1", _props(name="Live"))

        assert registry.load() == 0
        assert registry.get("0x1") is live
        assert live.properties.name == "Live"

    def test_loaded_bulb_changes_are_saved(self):
        persister = _persister([{"id": "0x1", "lastSeen": 1.0}])
        registry = _registry(persister)
        registry.load()

        registry.get("0x1").update(BulbProperties(bright=10))

        persister.save.assert_called_once()

    def test_no_persister(self):
        assert _registry(None).load() == 0

    def test_snapshot(self):
        registry = _registry()
        registry.upsert("0x1", _props(name="Desk"))
        registry.upsert("0x2", _props("192.168.1.11"))

        snapshot = registry.snapshot()

        assert [entry["id"] for entry in snapshot] == ["0x1", "0x2"]
        assert snapshot[0]["name"] == "Desk"
        assert snapshot[1]["location"] == "yeelight://192.168.1.11:55443"
        assert all("lastSeen" in entry for entry in snapshot)


# ---------------------------------------------------------------------------
# connect_all / disconnect_all
# ---------------------------------------------------------------------------

class TestBatch:

    @pytest.mark.asyncio
    async def test_connect_all_reports_outcomes(self):
        registry = _registry()
        registry.upsert("ok", _props(port=55443))
        registry.upsert("refused", _props(port=1))
        registry.upsert("nowhere", BulbProperties(name="nowhere"))
        already = registry.upsert("already", _props(port=55444))
        await already.connect()

        result = await registry.connect_all()

        assert result.success == 1
        assert result.failed == 2
        assert result.ignored == 1
        assert set(result.errors) == {"refused", "nowhere"}
        assert result.errors["refused"]["code"] == 502
        assert result.errors["nowhere"]["code"] == 400
        assert registry.get("ok").connected

        await registry.disconnect_all()

    @pytest.mark.asyncio
    async def test_disconnect_all(self):
        registry = _registry()
        registry.upsert("a", _props(port=55443))
        registry.upsert("b", _props(port=55444))
        registry.upsert("c", _props(port=55445))
        await registry.connect_all("a")
        await registry.connect_all("b")

        result = await registry.disconnect_all()

        assert (result.success, result.failed, result.ignored) == (2, 0, 1)
        assert not any(b.connected for b in registry.find_bulbs(ALL_BULBS))

    @pytest.mark.asyncio
    async def test_selector_without_match(self):
        registry = _registry()
        registry.upsert("a", _props())
        result = await registry.connect_all("garage")
        assert (result.success, result.failed, result.ignored) == (0, 0, 0)
        assert not registry.get("a").connected

    def test_repr(self):
        registry = _registry()
        registry.upsert("a", _props())
        assert "1 bulbs" in repr(registry)
