"""pyYeeLAN - Python library for managing Yeelight bulbs on the local network."""

__version__ = "0.1.0"

from pyYeeLAN.enums import (  # noqa: F401 – re-export for convenience
    ColorMode,
    ConnectionState,
)

from pyYeeLAN.errors import (  # noqa: F401
    DecodeError,
    DeviceError,
    InvalidArgumentError,
    RequestTimeoutError,
    TransportError,
    YeeError,
)

from pyYeeLAN.config import YeeConfig  # noqa: F401

from pyYeeLAN.message import (  # noqa: F401
    ErrorMessage,
    Notification,
    Request,
    ResultMessage,
    decode_message,
    encode_request,
)

from pyYeeLAN.connection import (  # noqa: F401
    MAX_LINE_LENGTH,
    BulbConnection,
)

from pyYeeLAN.pending import PendingRequests  # noqa: F401

from pyYeeLAN.properties import (  # noqa: F401
    BulbProperties,
    parse_location,
)

from pyYeeLAN.bulb import (  # noqa: F401
    MAX_MESSAGE_ID,
    Bulb,
)

from pyYeeLAN.persistence import (  # noqa: F401
    BulbStateFile,
    StatePersister,
)

from pyYeeLAN.registry import (  # noqa: F401
    ALL_BULBS,
    BatchResult,
    BulbRegistry,
)

from pyYeeLAN.discovery import (  # noqa: F401
    DISCOVERY_PORT,
    MULTICAST_ADDRESS,
    Discovery,
    parse_datagram,
)

from pyYeeLAN.server import YeeServer  # noqa: F401
