"""Enumerations used by the bulb LAN protocol and the session layer."""

from enum import Enum, IntEnum, unique


# ---------------------------------------------------------------------------
#  Protocol-level enums
# ---------------------------------------------------------------------------


@unique
class ColorMode(IntEnum):
    """Active colour mode as reported by the ``color_mode`` property.

    The numeric values are the ones the bulb sends on the wire.
    """

    NONE = 0
    RGB = 1
    CT = 2
    HSV = 3


# ---------------------------------------------------------------------------
#  Session-level enums
# ---------------------------------------------------------------------------


@unique
class ConnectionState(Enum):
    """Connection state of a :class:`~pyYeeLAN.bulb.Bulb` session.

    The state is derived from the session's internals and cannot be set
    directly.
    """

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
