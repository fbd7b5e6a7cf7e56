"""Shelly device transport package."""

from .auth import AuthData, DigestChallenge, digest_auth_data, parse_digest_challenge
from .coap import CoAPFrame, CoAPTransport, CoIoTMessage, decode_coap_frame, decode_coiot_message
from .errors import (
    CoAPDecodeError,
    HandlerAlreadyRegisteredError,
    MaxRetriesExceededError,
    ShellyAuthError,
    ShellyClientError,
    ShellyClosedError,
    ShellyConnectionError,
    ShellyConnectionLost,
    ShellyHandshakeError,
    ShellyInvalidRequestError,
    ShellyNotFoundError,
    ShellyNotSupportedError,
    ShellyResponseError,
    ShellyRPCError,
    ShellyTimeout,
)
from .http import HttpTransport
from .mqtt import MqttTransport
from .options import AuthType, TransportOptions
from .protocol import Notification, Request, Response, build_envelope, parse_frame
from .router import NotificationRouter
from .state import ConnectionState, ConnectionStateMachine
from .transport import Connectable, NotificationHandler, Stateful, Subscriber, Transport
from .websocket import WebSocketTransport

__version__ = "0.1.0"

__all__ = [
    "AuthData",
    "AuthType",
    "CoAPDecodeError",
    "CoAPFrame",
    "CoAPTransport",
    "CoIoTMessage",
    "Connectable",
    "ConnectionState",
    "ConnectionStateMachine",
    "DigestChallenge",
    "HandlerAlreadyRegisteredError",
    "HttpTransport",
    "MaxRetriesExceededError",
    "MqttTransport",
    "Notification",
    "NotificationHandler",
    "NotificationRouter",
    "Request",
    "Response",
    "ShellyAuthError",
    "ShellyClientError",
    "ShellyClosedError",
    "ShellyConnectionError",
    "ShellyConnectionLost",
    "ShellyHandshakeError",
    "ShellyInvalidRequestError",
    "ShellyNotFoundError",
    "ShellyNotSupportedError",
    "ShellyRPCError",
    "ShellyResponseError",
    "ShellyTimeout",
    "Stateful",
    "Subscriber",
    "Transport",
    "TransportOptions",
    "WebSocketTransport",
    "build_envelope",
    "decode_coap_frame",
    "decode_coiot_message",
    "digest_auth_data",
    "parse_digest_challenge",
    "parse_frame",
]
