"""Bulb property snapshot and conversions.

A bulb reports its state as a flat map of string keys.  The same keys
appear in discovery datagrams (as ``key: value`` header lines) and in
``props`` notifications on the control socket::

    power: on
    bright: 80
    color_mode: 2
    ct: 4000
    support: get_prop set_default set_power toggle ...

:class:`BulbProperties` is the typed, *sparse* representation of that
map.  Every field is optional; ``None`` means "unknown", never "default".
:meth:`BulbProperties.merge` overlays a newer snapshot on an older one
field by field, so a partial update never wipes fields it did not carry.

Wire keys are snake_case (``fw_ver``, ``color_mode``, ``flow_params``,
``music_on``); the persisted state file uses the camelCase spelling
(``fwVer``, ``colorMode``, ``flowParams``, ``musicOn``).  All other keys are spelled the same in
both places.
"""

from __future__ import annotations

import dataclasses
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from pyYeeLAN.enums import ColorMode
from pyYeeLAN.errors import InvalidArgumentError

logger = logging.getLogger(__name__)

#: Scheme prefix of a bulb's ``location``.
LOCATION_SCHEME: str = "yeelight://"

_LOCATION_RE = re.compile(r"^yeelight://(.+):(\d+)$")


# ---------------------------------------------------------------------------
# Value parsers (wire string → Python value)
# ---------------------------------------------------------------------------

def _parse_str(value: Any) -> Optional[str]:
    value = str(value)
    return value or None


def _parse_int(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError("boolean is not an integer")
    return int(value)


def _parse_power(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).lower()
    if text == "on":
        return True
    if text == "off":
        return False
    raise ValueError(f"invalid power value {value!r}")


def _parse_flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    number = int(value)
    if number not in (0, 1):
        raise ValueError(f"invalid flag value {value!r}")
    return bool(number)


def _parse_support(value: Any) -> Optional[List[str]]:
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value]
    methods = str(value).split()
    return methods or None


def _parse_color_mode(value: Any) -> ColorMode:
    return ColorMode(_parse_int(value))


def _ranged(low: int, high: int) -> Callable[[Any], int]:
    def parse(value: Any) -> int:
        number = _parse_int(value)
        if not low <= number <= high:
            raise ValueError(f"{number} outside {low}..{high}")
        return number
    return parse


# attribute, wire key, persisted key, parser
_FIELDS: Tuple[Tuple[str, str, str, Callable[[Any], Any]], ...] = (
    ("name", "name", "name", _parse_str),
    ("location", "location", "location", _parse_str),
    ("model", "model", "model", _parse_str),
    ("fw_ver", "fw_ver", "fwVer", _parse_str),
    ("support", "support", "support", _parse_support),
    ("power", "power", "power", _parse_power),
    ("bright", "bright", "bright", _ranged(0, 100)),
    ("color_mode", "color_mode", "colorMode", _parse_color_mode),
    ("rgb", "rgb", "rgb", _ranged(0, 0xFFFFFF)),
    ("ct", "ct", "ct", _parse_int),
    ("hue", "hue", "hue", _ranged(0, 360)),
    ("sat", "sat", "sat", _ranged(0, 100)),
    ("flowing", "flowing", "flowing", _parse_flag),
    ("flow_params", "flow_params", "flowParams", _parse_str),
    ("music_on", "music_on", "musicOn", _parse_flag),
)

#: Property names requested by :meth:`pyYeeLAN.bulb.Bulb.refresh`.
REFRESH_PROPS: Tuple[str, ...] = (
    "power", "bright", "ct", "rgb", "hue", "sat",
    "color_mode", "flowing", "flow_params", "music_on", "name",
)


# ---------------------------------------------------------------------------
# BulbProperties
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BulbProperties:
    """Sparse, immutable snapshot of a bulb's last-known attributes."""

    name: Optional[str] = None
    location: Optional[str] = None
    model: Optional[str] = None
    fw_ver: Optional[str] = None
    support: Optional[Tuple[str, ...]] = None
    power: Optional[bool] = None
    bright: Optional[int] = None
    color_mode: Optional[ColorMode] = None
    rgb: Optional[int] = None
    ct: Optional[int] = None
    hue: Optional[int] = None
    sat: Optional[int] = None
    flowing: Optional[bool] = None
    flow_params: Optional[str] = None
    music_on: Optional[bool] = None

    def __post_init__(self) -> None:
        if self.support is not None and not isinstance(self.support, tuple):
            object.__setattr__(self, "support", tuple(self.support))

    # ---- merging -----------------------------------------------------

    def merge(self, update: "BulbProperties") -> "BulbProperties":
        """Return a copy with every known field of *update* applied.

        Fields that are ``None`` in *update* keep their current value.
        """
        changes = {
            f.name: getattr(update, f.name)
            for f in dataclasses.fields(self)
            if getattr(update, f.name) is not None
        }
        if not changes:
            return self
        return dataclasses.replace(self, **changes)

    # ---- wire format -------------------------------------------------

    @classmethod
    def from_wire(cls, data: Mapping[str, Any]) -> "BulbProperties":
        """Build a snapshot from a discovery header map or notification.

        Unknown keys are ignored.  A value that cannot be parsed drops
        only that field.
        """
        kwargs: Dict[str, Any] = {}
        for attr, wire_key, _, parse in _FIELDS:
            if wire_key not in data or data[wire_key] is None:
                continue
            try:
                value = parse(data[wire_key])
            except (TypeError, ValueError) as exc:
                logger.debug(
                    "Ignoring invalid value %r for '%s': %s",
                    data[wire_key],
                    wire_key,
                    exc,
                )
                continue
            if value is not None:
                kwargs[attr] = value
        return cls(**kwargs)

    # ---- persisted format --------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Return the known fields keyed by their persisted names.

        Enum and tuple values are converted to plain YAML/JSON types.
        """
        result: Dict[str, Any] = {}
        for attr, _, key, _ in _FIELDS:
            value = getattr(self, attr)
            if value is None:
                continue
            if isinstance(value, ColorMode):
                value = int(value)
            elif isinstance(value, tuple):
                value = list(value)
            result[key] = value
        return result

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BulbProperties":
        """Inverse of :meth:`to_dict`."""
        kwargs: Dict[str, Any] = {}
        for attr, _, key, parse in _FIELDS:
            if data.get(key) is None:
                continue
            try:
                kwargs[attr] = parse(data[key])
            except (TypeError, ValueError) as exc:
                logger.warning("Ignoring persisted '%s' value: %s", key, exc)
        return cls(**kwargs)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def props_from_result(names: Tuple[str, ...], values: List[Any]) -> Dict[str, Any]:
    """Pair a ``get_prop`` result list with the requested *names*.

    The bulb answers with an empty string for properties it does not
    support; those are left out.
    """
    return {
        name: value
        for name, value in zip(names, values)
        if value != ""
    }


def parse_location(location: Optional[str]) -> Tuple[str, int]:
    """Split a ``yeelight://host:port`` location.

    Raises
    ------
    InvalidArgumentError
        If *location* is missing or malformed.
    """
    if not location:
        raise InvalidArgumentError("Bulb doesn't have a known location.")
    match = _LOCATION_RE.match(location)
    if match is None:
        raise InvalidArgumentError(f"Bulb has malformed location '{location}'.")
    port = int(match.group(2))
    if not 0 < port < 65536:
        raise InvalidArgumentError(f"Bulb has malformed location '{location}'.")
    return match.group(1), port
