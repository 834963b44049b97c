"""Tests for BulbProperties parsing, merging and persisted format."""

import pytest

from pyYeeLAN.enums import ColorMode
from pyYeeLAN.errors import InvalidArgumentError
from pyYeeLAN.properties import (
    REFRESH_PROPS,
    BulbProperties,
    parse_location,
    props_from_result,
)


DISCOVERY_HEADERS = {
    "cache-control": "max-age=3600",
    "location": "yeelight://192.168.1.239:55443",
    "id": "0x000000000015243f",
    "model": "color",
    "fw_ver": "18",
    "support": "get_prop set_default set_power toggle set_bright",
    "power": "on",
    "bright": "100",
    "color_mode": "2",
    "ct": "4000",
    "rgb": "16711680",
    "hue": "100",
    "sat": "35",
    "name": "my_bulb",
}


# ---------------------------------------------------------------------------
# from_wire
# ---------------------------------------------------------------------------

class TestFromWire:

    def test_discovery_headers(self):
        props = BulbProperties.from_wire(DISCOVERY_HEADERS)
        assert props.location == "yeelight://192.168.1.239:55443"
        assert props.model == "color"
        assert props.fw_ver == "18"
        assert props.support == (
            "get_prop", "set_default", "set_power", "toggle", "set_bright",
        )
        assert props.power is True
        assert props.bright == 100
        assert props.color_mode is ColorMode.CT
        assert props.ct == 4000
        assert props.rgb == 0xFF0000
        assert props.hue == 100
        assert props.sat == 35
        assert props.name == "my_bulb"

    def test_notification_params(self):
        props = BulbProperties.from_wire(
            {"power": "off", "bright": 10, "flowing": 1, "music_on": "0"}
        )
        assert props.power is False
        assert props.bright == 10
        assert props.flowing is True
        assert props.music_on is False
        assert props.name is None

    def test_unknown_keys_ignored(self):
        props = BulbProperties.from_wire({"id": "0x1", "foo": "bar"})
        assert props == BulbProperties()

    def test_empty_name_is_unknown(self):
        assert BulbProperties.from_wire({"name": ""}).name is None

    @pytest.mark.parametrize("key, value", [
        ("bright", "101"),
        ("bright", "bright"),
        ("power", "maybe"),
        ("hue", "400"),
        ("sat", "-1"),
        ("rgb", str(0x1000000)),
        ("color_mode", "9"),
        ("flowing", "2"),
    ])
    def test_invalid_value_drops_only_that_field(self, key, value):
        props = BulbProperties.from_wire({key: value, "model": "mono"})
        assert getattr(props, key) is None
        assert props.model == "mono"


# ---------------------------------------------------------------------------
# merge
# ---------------------------------------------------------------------------

class TestMerge:

    def test_update_overrides_known_fields(self):
        old = BulbProperties(power=True, bright=50, name="desk")
        merged = old.merge(BulbProperties(bright=80))
        assert merged.bright == 80
        assert merged.power is True
        assert merged.name == "desk"

    def test_merge_is_union(self):
        a = BulbProperties(power=True, model="color")
        b = BulbProperties(ct=2700, name="lamp")
        merged = a.merge(b)
        assert merged == BulbProperties(
            power=True, model="color", ct=2700, name="lamp"
        )

    def test_empty_update_returns_same_object(self):
        props = BulbProperties(power=False)
        assert props.merge(BulbProperties()) is props

    def test_false_values_are_applied(self):
        merged = BulbProperties(power=True).merge(BulbProperties(power=False))
        assert merged.power is False


# ---------------------------------------------------------------------------
# persisted format
# ---------------------------------------------------------------------------

class TestPersistedFormat:

    def test_to_dict_uses_camel_case(self):
        props = BulbProperties(
            fw_ver="18",
            color_mode=ColorMode.RGB,
            flow_params="0,0,0,0",
            music_on=False,
            support=("get_prop", "toggle"),
        )
        assert props.to_dict() == {
            "fwVer": "18",
            "colorMode": 1,
            "flowParams": "0,0,0,0",
            "musicOn": False,
            "support": ["get_prop", "toggle"],
        }

    def test_to_dict_omits_unknown(self):
        assert BulbProperties(name="x").to_dict() == {"name": "x"}

    def test_from_dict_restores(self):
        props = BulbProperties.from_wire(DISCOVERY_HEADERS)
        assert BulbProperties.from_dict(props.to_dict()) == props

    def test_from_dict_skips_bad_values(self):
        props = BulbProperties.from_dict({"bright": "very", "name": "ok"})
        assert props.bright is None
        assert props.name == "ok"


# ---------------------------------------------------------------------------
# helpers
# ---------------------------------------------------------------------------

class TestParseLocation:

    def test_valid(self):
        assert parse_location("yeelight://192.168.1.239:55443") == (
            "192.168.1.239", 55443,
        )

    @pytest.mark.parametrize("location", [None, ""])
    def test_missing(self, location):
        with pytest.raises(InvalidArgumentError, match="known location"):
            parse_location(location)

    @pytest.mark.parametrize("location", [
        "http://192.168.1.2:55443",
        "yeelight://192.168.1.2",
        "yeelight://192.168.1.2:port",
        "yeelight://192.168.1.2:70000",
    ])
    def test_malformed(self, location):
        with pytest.raises(InvalidArgumentError, match="malformed"):
            parse_location(location)


class TestPropsFromResult:

    def test_pairs_names_and_values(self):
        values = ["on", "80", "4000", "", "", "", "2", "0", "", "0", "lamp"]
        result = props_from_result(REFRESH_PROPS, values)
        assert result == {
            "power": "on",
            "bright": "80",
            "ct": "4000",
            "color_mode": "2",
            "flowing": "0",
            "music_on": "0",
            "name": "lamp",
        }
