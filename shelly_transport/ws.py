"""WebSocket connection helper for Shelly device transports."""

from __future__ import annotations

import asyncio
import ssl as ssl_module
from collections.abc import Mapping

import websockets
from websockets.asyncio.client import ClientConnection
from websockets.exceptions import (
    InvalidHandshake,
    InvalidStatus,
    InvalidURI,
    WebSocketException,
)

from .errors import (
    ShellyAuthError,
    ShellyConnectionError,
    ShellyHandshakeError,
    ShellyTimeout,
)


async def connect_websocket(
    url: str,
    *,
    headers: Mapping[str, str] | None = None,
    ssl: ssl_module.SSLContext | None = None,
    timeout: float = 15.0,
) -> ClientConnection:
    """Open a WebSocket connection to ``url``.

    The library's own keepalive is disabled; the transport runs its own ping
    loop so that ping interval and pong timeout follow the transport options.

    Args:
        url: ``ws://`` or ``wss://`` endpoint, e.g. ``ws://192.168.1.100/rpc``
        headers: Extra handshake headers (e.g. Basic ``Authorization``)
        ssl: TLS context for ``wss://`` URLs
        timeout: Handshake timeout
    """
    kwargs = {}
    if ssl is not None and url.startswith("wss://"):
        kwargs["ssl"] = ssl
    try:
        return await asyncio.wait_for(
            websockets.connect(
                url,
                additional_headers=dict(headers or {}),
                ping_interval=None,
                close_timeout=5,
                max_size=None,
                **kwargs,
            ),
            timeout=timeout,
        )
    except TimeoutError as err:
        raise ShellyTimeout("WebSocket connection timed out") from err
    except InvalidStatus as err:
        if err.response.status_code == 401:
            raise ShellyAuthError("WebSocket handshake rejected credentials") from err
        raise ShellyHandshakeError(
            f"WebSocket handshake failed: HTTP {err.response.status_code}"
        ) from err
    except (InvalidHandshake, InvalidURI) as err:
        raise ShellyHandshakeError("WebSocket handshake failed") from err
    except (OSError, WebSocketException) as err:
        raise ShellyConnectionError("WebSocket connection failed") from err
