"""Client error types for Shelly device transports."""

from __future__ import annotations


class ShellyClientError(Exception):
    """Base error for Shelly transport failures."""


class ShellyResponseError(ShellyClientError):
    """HTTP response error from the device."""

    def __init__(self, status: int, message: str, body: bytes = b"") -> None:
        super().__init__(message)
        self.status = status
        self.body = body


class ShellyAuthError(ShellyResponseError):
    """Authentication was rejected or could not be negotiated."""

    def __init__(self, message: str, status: int = 401) -> None:
        super().__init__(status, message)


class ShellyNotFoundError(ShellyResponseError):
    """Requested method or path does not exist on the device."""

    def __init__(self, message: str, status: int = 404) -> None:
        super().__init__(status, message)


class ShellyTimeout(ShellyClientError):
    """Timeout while communicating with the device."""


class ShellyConnectionError(ShellyClientError):
    """Network connection to the device failed."""


class ShellyConnectionLost(ShellyConnectionError):
    """Connection dropped while a request was waiting for its response."""


class ShellyHandshakeError(ShellyClientError):
    """WebSocket handshake failed."""


class ShellyClosedError(ShellyClientError):
    """Transport has been closed and cannot be used again."""


class ShellyNotSupportedError(ShellyClientError):
    """Operation is not supported by this transport."""


class ShellyInvalidRequestError(ShellyClientError):
    """Request could not be encoded for the wire."""


class HandlerAlreadyRegisteredError(ShellyClientError):
    """A notification handler is already registered on the transport."""

    def __init__(self, message: str = "notification handler already registered") -> None:
        super().__init__(message)


class ShellyRPCError(ShellyClientError):
    """Device answered with a JSON-RPC error object."""

    def __init__(self, code: int, message: str) -> None:
        super().__init__(f"rpc error {code}: {message}")
        self.code = code
        self.rpc_message = message


class MaxRetriesExceededError(ShellyClientError):
    """All retry attempts failed; ``last_error`` holds the final failure."""

    def __init__(self, last_error: BaseException) -> None:
        super().__init__(f"max retries exceeded: {last_error}")
        self.last_error = last_error


class CoAPDecodeError(ShellyClientError):
    """Inbound CoAP/CoIoT frame is malformed."""
