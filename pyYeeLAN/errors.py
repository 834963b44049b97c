"""Exception hierarchy for pyYeeLAN.

Every failure surfaced to a caller is a :class:`YeeError`.  The concrete
classes also derive from the closest built-in exception so that callers
which only know the standard library still catch them sensibly:

============================  =====================  ====
Class                         Built-in base          Code
============================  =====================  ====
:class:`InvalidArgumentError` ``ValueError``         400
:class:`RequestTimeoutError`  ``TimeoutError``       408
:class:`DeviceError`          --                     500
:class:`TransportError`       ``ConnectionError``    502
============================  =====================  ====

:class:`DecodeError` is only raised by the parsers; the session and the
discovery listener catch it, log it and drop the offending input.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class YeeError(Exception):
    """Base class for all pyYeeLAN errors."""

    #: HTTP-like status code used when the error is reported to a
    #: remote caller.
    status: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        """Return the error in the shape the control plane reports."""
        return {"error": True, "code": self.status, "message": self.message}


class InvalidArgumentError(YeeError, ValueError):
    """A caller supplied a malformed argument (never retried)."""

    status = 400


class TransportError(YeeError, ConnectionError):
    """Socket-level failure while connecting or while connected."""

    status = 502


class RequestTimeoutError(YeeError, TimeoutError):
    """The bulb did not answer within the configured window."""

    status = 408


class DeviceError(YeeError):
    """The bulb answered a request with an ``error`` object.

    Parameters
    ----------
    code:
        Error code reported by the bulb.
    message:
        Error message reported by the bulb.
    """

    status = 500

    def __init__(self, code: int, message: str) -> None:
        super().__init__(message)
        self.code = code

    def __str__(self) -> str:
        return f"Bulb error {self.code}: {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["deviceCode"] = self.code
        return data


class DecodeError(YeeError, ValueError):
    """A wire message or discovery datagram could not be decoded."""

    status = 400

    def __init__(self, message: str, raw: Optional[Any] = None) -> None:
        super().__init__(message)
        self.raw = raw
