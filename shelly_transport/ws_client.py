"""WebSocket client wrapper for Shelly devices."""

from __future__ import annotations

import asyncio
import ssl as ssl_module
from collections.abc import Awaitable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from websockets.asyncio.client import ClientConnection
from websockets.exceptions import ConnectionClosed, WebSocketException

from .errors import ShellyConnectionError, ShellyTimeout
from .ws import connect_websocket

if TYPE_CHECKING:
    from collections.abc import AsyncIterator


class ShellyWsMessageType(Enum):
    """Normalized WebSocket message types."""

    TEXT = "text"
    CLOSED = "closed"
    ERROR = "error"


@dataclass(frozen=True)
class ShellyWsMessage:
    """Normalized WebSocket message payload."""

    type: ShellyWsMessageType
    data: str | None = None


class ShellyWsClient:
    """Wrapper around the websockets library connection."""

    def __init__(self) -> None:
        self._ws: ClientConnection | None = None

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def connect(
        self,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        ssl: ssl_module.SSLContext | None = None,
        timeout: float = 15.0,
    ) -> None:
        """Connect to the device websocket."""
        self._ws = await connect_websocket(
            url,
            headers=headers,
            ssl=ssl,
            timeout=timeout,
        )

    async def close(self) -> None:
        """Close the websocket connection."""
        if self._ws is not None:
            ws, self._ws = self._ws, None
            await ws.close()

    async def send_text(self, data: str | bytes) -> None:
        """Send a text frame.

        Raises:
            ShellyConnectionError: If not connected or the write fails
        """
        if self._ws is None:
            raise ShellyConnectionError("WebSocket is not connected")
        if isinstance(data, bytes):
            data = data.decode()
        try:
            await self._ws.send(data)
        except (ConnectionClosed, WebSocketException) as err:
            raise ShellyConnectionError("WebSocket write failed") from err

    async def send_ping(self, timeout: float) -> Awaitable[float]:
        """Send a ping control frame.

        Returns:
            Awaitable resolving to the round-trip latency when the pong arrives.

        Raises:
            ShellyTimeout: If the frame could not be written within ``timeout``
            ShellyConnectionError: If the connection is gone
        """
        if self._ws is None:
            raise ShellyConnectionError("WebSocket is not connected")
        try:
            return await asyncio.wait_for(self._ws.ping(), timeout=timeout)
        except TimeoutError as err:
            raise ShellyTimeout("WebSocket ping timed out") from err
        except (ConnectionClosed, WebSocketException) as err:
            raise ShellyConnectionError("WebSocket ping failed") from err

    @staticmethod
    async def wait_pong(waiter: Awaitable[float], timeout: float) -> float:
        """Wait for the pong answering a ping sent with ``send_ping``.

        Raises:
            ShellyTimeout: If no pong arrives within ``timeout``
            ShellyConnectionError: If the connection closed first
        """
        try:
            return await asyncio.wait_for(waiter, timeout=timeout)
        except TimeoutError as err:
            raise ShellyTimeout("No pong received") from err
        except ConnectionClosed as err:
            raise ShellyConnectionError("Connection closed before pong") from err

    def __aiter__(self) -> AsyncIterator[ShellyWsMessage]:
        if self._ws is None:
            raise ShellyConnectionError("WebSocket is not connected")
        return self._iter_messages()

    async def _iter_messages(self) -> AsyncIterator[ShellyWsMessage]:
        ws = self._ws
        if ws is None:
            raise ShellyConnectionError("WebSocket is not connected")

        try:
            async for msg in ws:
                # Binary frames carry nothing the RPC channel understands
                if isinstance(msg, str):
                    yield ShellyWsMessage(ShellyWsMessageType.TEXT, msg)
        except ConnectionClosed:
            yield ShellyWsMessage(type=ShellyWsMessageType.CLOSED)
        except Exception as err:
            yield ShellyWsMessage(type=ShellyWsMessageType.ERROR, data=str(err))
        else:
            # Normal iteration completion means the peer closed gracefully.
            yield ShellyWsMessage(type=ShellyWsMessageType.CLOSED)
