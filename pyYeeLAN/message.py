"""Message codec for the bulb control socket.

The control protocol is newline-delimited JSON.  Every outbound request
is a single object terminated by ``\\r\\n``::

    {"id": 1, "method": "set_power", "params": ["on", "sudden", 0]}

Each inbound line is exactly one of three shapes:

* **result** -- ``{"id": 1, "result": ["ok"]}``
* **error** -- ``{"id": 1, "error": {"code": -1, "message": "..."}}``
* **notification** -- ``{"method": "props", "params": {"power": "on"}}``

:func:`decode_message` turns a line into one of the frozen dataclasses
below so that the rest of the library never inspects raw dictionaries.
Anything else raises :class:`~pyYeeLAN.errors.DecodeError`.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence, Union

from pyYeeLAN.errors import DecodeError, InvalidArgumentError

#: Line terminator used on the wire.
LINE_TERMINATOR: bytes = b"\r\n"

#: ``method`` value of a property notification.
NOTIFICATION_METHOD: str = "props"


@dataclass(frozen=True)
class Request:
    """An outbound command."""

    id: int
    method: str
    params: List[Any] = field(default_factory=list)


@dataclass(frozen=True)
class ResultMessage:
    """Successful answer to the request with the same ``id``."""

    id: int
    result: List[Any]

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "result": list(self.result)}


@dataclass(frozen=True)
class ErrorMessage:
    """Error answer to the request with the same ``id``."""

    id: int
    code: int
    message: str


@dataclass(frozen=True)
class Notification:
    """Unsolicited property push from the bulb."""

    params: Dict[str, Any]


Message = Union[ResultMessage, ErrorMessage, Notification]


def encode_request(request: Request) -> bytes:
    """Serialize *request* into one wire line (including ``\\r\\n``)."""
    payload = json.dumps(
        {"id": request.id, "method": request.method, "params": list(request.params)},
        separators=(",", ":"),
    )
    return payload.encode("utf-8") + LINE_TERMINATOR


def decode_message(line: Union[str, bytes]) -> Message:
    """Parse one received line.

    Raises
    ------
    DecodeError
        If the line is not JSON or matches none of the three shapes.
    """
    if isinstance(line, bytes):
        try:
            line = line.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecodeError(f"Line is not valid UTF-8: {exc}", line) from exc

    try:
        data = json.loads(line)
    except ValueError as exc:
        raise DecodeError(f"Line is not valid JSON: {exc}", line) from exc

    if not isinstance(data, dict):
        raise DecodeError("Message is not a JSON object", line)

    if data.get("method") == NOTIFICATION_METHOD:
        params = data.get("params")
        if not isinstance(params, dict):
            raise DecodeError("Notification params must be an object", line)
        return Notification(params=dict(params))

    msg_id = data.get("id")
    if isinstance(msg_id, bool) or not isinstance(msg_id, int):
        raise DecodeError("Message has no integer 'id'", line)

    if "result" in data:
        result = data["result"]
        if not isinstance(result, list):
            raise DecodeError("'result' must be an array", line)
        return ResultMessage(id=msg_id, result=result)

    if "error" in data:
        error = data["error"]
        if not isinstance(error, dict):
            raise DecodeError("'error' must be an object", line)
        code = error.get("code", 0)
        if isinstance(code, bool) or not isinstance(code, int):
            raise DecodeError("'error.code' must be an integer", line)
        return ErrorMessage(
            id=msg_id,
            code=code,
            message=str(error.get("message", "")),
        )

    raise DecodeError("Message is neither result, error nor notification", line)


def validate_params(params: Any) -> List[Any]:
    """Return *params* as a list, rejecting anything not JSON-encodable.

    Raises
    ------
    InvalidArgumentError
        If *params* is not a sequence or cannot be encoded as JSON.
    """
    if isinstance(params, (str, bytes)) or not isinstance(params, Sequence):
        raise InvalidArgumentError("'params' should be an array")
    params = list(params)
    try:
        json.dumps(params)
    except (TypeError, ValueError) as exc:
        raise InvalidArgumentError(f"'params' is not JSON-encodable: {exc}") from exc
    return params
