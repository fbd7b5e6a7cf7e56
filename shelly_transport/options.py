"""Configuration shared by all transports."""

from __future__ import annotations

import dataclasses
import ssl
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    import aiohttp

DEFAULT_TIMEOUT = 30.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY = 1.0
DEFAULT_RETRY_BACKOFF = 2.0
DEFAULT_PING_INTERVAL = 30.0
DEFAULT_PONG_TIMEOUT = 10.0
DEFAULT_COAP_PORT = 5683


class AuthType(Enum):
    """Transport-level authentication scheme."""

    NONE = "none"
    BASIC = "basic"
    DIGEST = "digest"


@dataclass
class TransportOptions:
    """Options understood by the transports.

    Each transport reads the subset that applies to it. Durations are in
    seconds.
    """

    timeout: float = DEFAULT_TIMEOUT
    headers: dict[str, str] = field(default_factory=dict)
    session: aiohttp.ClientSession | None = None
    basic_auth: tuple[str, str] | None = None
    digest_auth: tuple[str, str] | None = None
    ssl_context: ssl.SSLContext | None = None
    insecure_skip_verify: bool = False
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_delay: float = DEFAULT_RETRY_DELAY
    retry_backoff: float = DEFAULT_RETRY_BACKOFF
    reconnect: bool = True
    ping_interval: float = DEFAULT_PING_INTERVAL
    pong_timeout: float = DEFAULT_PONG_TIMEOUT
    mqtt_topic: str | None = None
    mqtt_client_id: str | None = None
    mqtt_qos: int = 0
    coap_port: int = DEFAULT_COAP_PORT
    coap_multicast: bool = False

    def __post_init__(self) -> None:
        if self.basic_auth is not None and self.digest_auth is not None:
            raise ValueError("basic_auth and digest_auth are mutually exclusive")
        if self.mqtt_qos not in (0, 1, 2):
            raise ValueError(f"invalid MQTT QoS: {self.mqtt_qos}")
        if self.max_retries < 0:
            raise ValueError("max_retries must not be negative")

    @property
    def auth_type(self) -> AuthType:
        if self.digest_auth is not None:
            return AuthType.DIGEST
        if self.basic_auth is not None:
            return AuthType.BASIC
        return AuthType.NONE

    @property
    def credentials(self) -> tuple[str, str] | None:
        """Return ``(username, password)`` of the configured scheme."""
        return self.digest_auth or self.basic_auth

    def build_ssl_context(self) -> ssl.SSLContext | None:
        """Return the TLS context to use, or None for library defaults."""
        context = self.ssl_context
        if self.insecure_skip_verify:
            if context is None:
                context = ssl.create_default_context()
                context.minimum_version = ssl.TLSVersion.TLSv1_2
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context


def resolve_options(
    options: TransportOptions | None = None, **overrides: Any
) -> TransportOptions:
    """Return a copy of ``options`` (or the defaults) with ``overrides`` applied.

    The caller's object is never returned, so each transport owns its options.
    """
    if options is None:
        return TransportOptions(**overrides)
    fields: dict[str, Any] = {"headers": dict(options.headers), **overrides}
    return dataclasses.replace(options, **fields)


def calculate_backoff_delay(base: float, attempt: int, multiplier: float) -> float:
    """Return ``base * multiplier ** attempt``."""
    return base * multiplier**attempt
