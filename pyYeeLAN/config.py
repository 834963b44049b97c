"""Explicit runtime configuration shared by the pyYeeLAN components.

A :class:`YeeConfig` instance is handed to every component constructor
(:class:`~pyYeeLAN.bulb.Bulb`, :class:`~pyYeeLAN.discovery.Discovery`,
:class:`~pyYeeLAN.registry.BulbRegistry`, ...).  There is no
process-wide settings object, so tests can build components in
isolation with whatever timeouts they need.

Configuration files are YAML (JSON works too, being a YAML subset)::

    connection_timeout: 5
    reconnect_attempts: 0      # unlimited
    state_path: state.yaml     # relative to the config file

The legacy camelCase keys (``reconnectDelay``,
``connectionTimeout``, ``requestTimeout`` in milliseconds, ``reconnect``,
``autoConnect``, ``startConnect``, ``state``) are accepted as well.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple, Union

import yaml

from pyYeeLAN.errors import InvalidArgumentError

logger = logging.getLogger(__name__)

#: Seconds to wait for a TCP connection to a bulb.
DEFAULT_CONNECTION_TIMEOUT: float = 10.0

#: Seconds to wait for the answer to a command.
DEFAULT_REQUEST_TIMEOUT: float = 10.0

#: Reconnect attempts before giving up (``0`` means unlimited).
DEFAULT_RECONNECT_ATTEMPTS: int = 10

#: Fixed pause between two reconnect attempts, in seconds.
DEFAULT_RECONNECT_DELAY: float = 10.0

#: Debounce quantum of the state persister, in seconds.
DEFAULT_SAVE_DELAY: float = 5.0

#: Consecutive failed writes after which persistence is switched off.
DEFAULT_SAVE_MAX_FAILURES: int = 3

# Legacy camelCase key -> (field name, divisor applied to the value).
_LEGACY_KEYS: Dict[str, Tuple[str, int]] = {
    "connectionTimeout": ("connection_timeout", 1000),
    "requestTimeout": ("request_timeout", 1000),
    "reconnectDelay": ("reconnect_delay", 1000),
    "reconnect": ("reconnect_attempts", 1),
    "autoConnect": ("auto_connect", 1),
    "startConnect": ("start_connect", 1),
    "state": ("state_path", 1),
    "saveDelay": ("save_delay", 1000),
}

_FLOAT_FIELDS = frozenset({
    "connection_timeout", "request_timeout", "reconnect_delay", "save_delay",
})
_BOOL_FIELDS = frozenset({"auto_connect", "start_connect"})


@dataclass
class YeeConfig:
    """Timeouts, retry limits and feature flags.

    All durations are in seconds.  A ``connection_timeout`` or
    ``request_timeout`` of ``0`` disables the corresponding timeout.

    Attributes
    ----------
    connection_timeout:
        Maximum time for establishing the TCP connection to a bulb.
    request_timeout:
        Maximum time to wait for the answer to a command.
    reconnect_attempts:
        Attempt ceiling of the reconnect loop.  ``0`` retries forever;
        ``None`` disables automatic reconnection entirely.
    reconnect_delay:
        Pause between two reconnect attempts.
    auto_connect:
        Connect to bulbs as soon as discovery reports them.
    start_connect:
        Connect to every persisted bulb on start-up.
    state_path:
        YAML file holding the persisted registry.  ``None`` disables
        persistence.
    save_delay:
        Debounce quantum of the state persister.
    save_max_failures:
        Consecutive failed writes tolerated before persistence is
        disabled for the rest of the process lifetime.
    """

    connection_timeout: float = DEFAULT_CONNECTION_TIMEOUT
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    reconnect_attempts: Optional[int] = DEFAULT_RECONNECT_ATTEMPTS
    reconnect_delay: float = DEFAULT_RECONNECT_DELAY
    auto_connect: bool = True
    start_connect: bool = True
    state_path: Optional[Path] = None
    save_delay: float = DEFAULT_SAVE_DELAY
    save_max_failures: int = DEFAULT_SAVE_MAX_FAILURES

    def __post_init__(self) -> None:
        if self.state_path is not None and not isinstance(self.state_path, Path):
            self.state_path = Path(self.state_path)
        for name in _FLOAT_FIELDS:
            if getattr(self, name) < 0:
                raise InvalidArgumentError(f"'{name}' must not be negative")
        if self.reconnect_attempts is not None and self.reconnect_attempts < 0:
            raise InvalidArgumentError("'reconnect_attempts' must not be negative")
        if self.save_max_failures < 1:
            raise InvalidArgumentError("'save_max_failures' must be at least 1")

    # ---- timeouts as asyncio expects them -------------------------------

    @property
    def connection_timeout_or_none(self) -> Optional[float]:
        """``connection_timeout`` with ``0`` mapped to ``None``."""
        return self.connection_timeout or None

    @property
    def request_timeout_or_none(self) -> Optional[float]:
        """``request_timeout`` with ``0`` mapped to ``None``."""
        return self.request_timeout or None

    # ---- construction -------------------------------------------------

    @classmethod
    def from_dict(
        cls,
        data: Mapping[str, Any],
        *,
        base_dir: Optional[Path] = None,
    ) -> "YeeConfig":
        """Build a config from a plain mapping.

        Parameters
        ----------
        data:
            Snake_case field names or the legacy camelCase keys.
        base_dir:
            Directory that a relative ``state_path`` is resolved
            against (usually the config file's directory).

        Raises
        ------
        InvalidArgumentError
            If a value has the wrong type or is out of range.
        """
        known = {f.name for f in dataclasses.fields(cls)}
        kwargs: Dict[str, Any] = {}

        for key, value in data.items():
            divisor = 1
            if key in _LEGACY_KEYS:
                key, divisor = _LEGACY_KEYS[key]
            if key not in known:
                logger.warning("Ignoring unknown config key '%s'", key)
                continue
            kwargs[key] = _coerce(key, value, divisor)

        state_path = kwargs.get("state_path")
        if state_path is not None and base_dir is not None:
            if not state_path.is_absolute():
                kwargs["state_path"] = (base_dir / state_path).resolve()

        return cls(**kwargs)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "YeeConfig":
        """Load a config from a YAML (or JSON) file.

        Raises
        ------
        OSError
            If the file cannot be read.
        InvalidArgumentError
            If the file is not a mapping or contains invalid values.
        """
        path = Path(path)
        with open(path, "r", encoding="utf-8") as fh:
            try:
                data = yaml.safe_load(fh)
            except yaml.YAMLError as exc:
                raise InvalidArgumentError(
                    f"Config file {path} is not valid YAML: {exc}"
                ) from exc

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise InvalidArgumentError(
                f"Expected a mapping at top level in {path}, "
                f"got {type(data).__name__}"
            )

        logger.info("Loaded configuration from %s", path)
        return cls.from_dict(data, base_dir=path.parent)


def _coerce(name: str, value: Any, divisor: int) -> Any:
    """Validate and convert one raw config value."""
    if name == "state_path":
        if value is None or value is False:
            return None
        if not isinstance(value, str):
            raise InvalidArgumentError("'state_path' must be a string")
        return Path(value)

    if name == "reconnect_attempts":
        if value is None or value is False:
            return None
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidArgumentError("'reconnect_attempts' must be an integer")
        return value

    if name in _BOOL_FIELDS:
        if not isinstance(value, bool):
            raise InvalidArgumentError(f"'{name}' must be a boolean")
        return value

    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidArgumentError(f"'{name}' must be a number")
    if name in _FLOAT_FIELDS:
        return float(value) / divisor
    return value
