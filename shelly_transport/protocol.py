"""JSON-RPC frame helpers shared by the Shelly transports.

Requests carry pre-serialized parameters so the transport layer never needs
to know payload schemas. Inbound frames are classified into responses
(solicited, correlated by numeric id) and notifications (unsolicited, carry
a method and no id).
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .errors import ShellyClientError, ShellyInvalidRequestError, ShellyRPCError

if TYPE_CHECKING:
    from .auth import AuthData

JSONRPC_VERSION = "2.0"


def _dump(value: Any) -> bytes:
    return json.dumps(value, separators=(",", ":")).encode()


@dataclass(frozen=True)
class Request:
    """Single outbound call.

    ``method`` is either an RPC method name (``"Switch.Set"``) or a literal
    path (``"/relay/0"``) for legacy REST devices. ``params`` is JSON that
    was serialized by the caller.
    """

    method: str
    params: bytes | str | None = None
    id: int | None = None
    auth: AuthData | Mapping[str, Any] | None = None
    jsonrpc: str = JSONRPC_VERSION

    @classmethod
    def rest(cls, path: str) -> Request:
        """Build a legacy path-style request."""
        return cls(method=path, jsonrpc="")

    @property
    def is_rest(self) -> bool:
        return self.method.startswith("/")

    @property
    def is_notification(self) -> bool:
        return self.id is None


@dataclass(frozen=True)
class RPCErrorObject:
    """Error member of a JSON-RPC response."""

    code: int
    message: str
    data: Any = None


@dataclass(frozen=True)
class Response:
    """Response frame correlated to a request by ``id``."""

    id: int
    result: bytes | None = None
    error: RPCErrorObject | None = None

    def raise_for_error(self) -> bytes:
        """Return the raw result, raising ShellyRPCError for error frames."""
        if self.error is not None:
            raise ShellyRPCError(self.error.code, self.error.message)
        return self.result if self.result is not None else b"null"


@dataclass(frozen=True)
class Notification:
    """Unsolicited frame pushed by the device."""

    method: str
    params: bytes | None = None
    src: str | None = None
    dst: str | None = None


def _decode_params(params: bytes | str | None) -> Any:
    if params is None or len(params) == 0:
        return None
    try:
        return json.loads(params)
    except ValueError as err:
        raise ShellyInvalidRequestError("failed to decode request params") from err


def _auth_payload(auth: AuthData | Mapping[str, Any]) -> dict[str, Any]:
    to_dict = getattr(auth, "to_dict", None)
    if to_dict is not None:
        return to_dict()
    return dict(auth)


def build_envelope(
    request: Request,
    *,
    request_id: int | None = None,
    src: str | None = None,
) -> dict[str, Any]:
    """Build the JSON-RPC envelope for a request.

    Args:
        request: Request to encode.
        request_id: Identifier overriding ``request.id`` (used when the
            transport generates ids for correlation).
        src: Reply address for transports that route responses by source.

    Returns:
        Envelope dict ready for ``encode_envelope``.

    Raises:
        ShellyInvalidRequestError: If the params are not valid JSON.
    """
    envelope: dict[str, Any] = {}
    frame_id = request_id if request_id is not None else request.id
    if frame_id is not None:
        envelope["id"] = frame_id
    if request.jsonrpc:
        envelope["jsonrpc"] = request.jsonrpc
    if src:
        envelope["src"] = src
    envelope["method"] = request.method

    params = _decode_params(request.params)
    if params is not None:
        envelope["params"] = params

    if request.auth is not None:
        envelope["auth"] = _auth_payload(request.auth)

    return envelope


def encode_envelope(envelope: Mapping[str, Any]) -> bytes:
    """Serialize an envelope for the wire."""
    try:
        return _dump(envelope)
    except (TypeError, ValueError) as err:
        raise ShellyInvalidRequestError("failed to encode request") from err


def _frame_id(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def _parse_error(raw: Any) -> RPCErrorObject:
    if not isinstance(raw, Mapping):
        return RPCErrorObject(code=0, message=str(raw))
    code = raw.get("code", 0)
    return RPCErrorObject(
        code=code if isinstance(code, int) else 0,
        message=str(raw.get("message", "")),
        data=raw.get("data"),
    )


def parse_frame(data: bytes | str) -> Response | Notification | None:
    """Classify an inbound frame.

    Frames with a nonzero numeric id are responses, frames with a method and
    no id are notifications. Anything else, including invalid JSON, yields
    ``None``.
    """
    try:
        message = json.loads(data)
    except ValueError:
        return None
    if not isinstance(message, dict):
        return None

    frame_id = _frame_id(message.get("id"))
    if frame_id:
        error = message.get("error")
        return Response(
            id=frame_id,
            result=_dump(message["result"]) if "result" in message else None,
            error=_parse_error(error) if error is not None else None,
        )

    method = message.get("method")
    if message.get("id") is None and isinstance(method, str) and method:
        return Notification(
            method=method,
            params=_dump(message["params"]) if "params" in message else None,
            src=message.get("src"),
            dst=message.get("dst"),
        )

    return None


def parse_notification(data: bytes | str) -> Notification:
    """Parse a notification frame, raising when the frame is anything else."""
    frame = parse_frame(data)
    if not isinstance(frame, Notification):
        raise ShellyClientError("frame is not a notification")
    return frame
