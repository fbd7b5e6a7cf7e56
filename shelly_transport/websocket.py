"""WebSocket transport for Gen2+ Shelly devices.

The transport keeps one persistent connection. A read task routes inbound
frames: responses go to the caller waiting on the matching request id,
notifications go to the subscribed handler. An optional keepalive task pings
the device. When the connection drops, pending calls fail with
``ShellyConnectionLost`` and, if enabled, a reconnect task retries with
exponential backoff.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from .auth import basic_auth_header
from .errors import (
    ShellyClientError,
    ShellyClosedError,
    ShellyConnectionLost,
    ShellyInvalidRequestError,
    ShellyTimeout,
)
from .options import AuthType, TransportOptions, calculate_backoff_delay, resolve_options
from .pending import PendingRequests
from .protocol import Notification, Request, Response, build_envelope, encode_envelope, parse_frame
from .state import ConnectionState, ConnectionStateMachine, StateCallback
from .transport import NotificationHandler, SubscriptionSlot, cancel_task
from .ws_client import ShellyWsClient, ShellyWsMessageType

_LOGGER = logging.getLogger(__name__)


class WebSocketTransport:
    """Persistent JSON-RPC channel over a WebSocket.

    Usage:
        transport = WebSocketTransport("ws://192.168.1.100/rpc", ping_interval=30)
        transport.subscribe(handle_notification)
        await transport.connect()
        result = await transport.call(Request("Switch.GetStatus", b'{"id":0}'))
        await transport.close()
    """

    def __init__(
        self,
        url: str,
        *,
        options: TransportOptions | None = None,
        **overrides: Any,
    ) -> None:
        self._url = url
        self._options = resolve_options(options, **overrides)
        self._src = f"shelly-transport-{time.time_ns()}"

        self._state = ConnectionStateMachine(url)
        self._pending = PendingRequests(url)
        self._subscription = SubscriptionSlot(url)

        self._ws: ShellyWsClient | None = None
        self._read_task: asyncio.Task[None] | None = None
        self._ping_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._connect_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()
        self._closed = False

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    @property
    def url(self) -> str:
        return self._url

    @property
    def src(self) -> str:
        """Source identifier sent with every request."""
        return self._src

    @property
    def state(self) -> ConnectionState:
        return self._state.state

    @property
    def is_connected(self) -> bool:
        return self._ws is not None

    def on_state_change(self, callback: StateCallback) -> None:
        """Register callback for connection state changes."""
        self._state.on_state_change(callback)

    def subscribe(self, handler: NotificationHandler) -> None:
        """Register the notification handler.

        Raises:
            HandlerAlreadyRegisteredError: If a handler is already registered.
        """
        self._subscription.set(handler)

    def unsubscribe(self) -> None:
        """Remove the notification handler."""
        self._subscription.clear()

    async def connect(self, *, timeout: float | None = None) -> None:
        """Open the connection. Does nothing when already connected.

        Raises:
            ShellyClosedError: If the transport was closed.
            ShellyClientError: If the handshake fails.
        """
        async with self._connect_lock:
            await self._connect_locked(
                timeout,
                reconnecting=self._state.state is ConnectionState.RECONNECTING,
            )

    async def call(self, request: Request, *, timeout: float | None = None) -> bytes:
        """Send ``request`` and wait for the matching response.

        Connects first when needed. ``timeout`` bounds the whole call and
        defaults to the transport's request timeout.

        Raises:
            ShellyClosedError: If the transport was closed.
            ShellyTimeout: If no response arrives in time.
            ShellyConnectionLost: If the connection drops while waiting.
            ShellyRPCError: If the device answers with an error object.
        """
        if self._closed:
            raise ShellyClosedError("WebSocket transport is closed")
        if timeout is None:
            timeout = self._options.timeout

        if self._ws is None:
            await self.connect(timeout=timeout)

        request_id = request.id if request.id and request.id > 0 else self._pending.next_id()
        data = encode_envelope(build_envelope(request, request_id=request_id, src=self._src))

        try:
            with self._pending.slot(request_id) as future:
                async with asyncio.timeout(timeout):
                    await self._write(data)
                    response = await future
        except ValueError as err:
            raise ShellyInvalidRequestError(str(err)) from err
        except TimeoutError as err:
            raise ShellyTimeout(
                f"{request.method} (id {request_id}) timed out after {timeout}s"
            ) from err

        return response.raise_for_error()

    async def close(self) -> None:
        """Close the transport. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        _LOGGER.info("[%s] Closing WebSocket transport", self._url)

        await cancel_task(self._reconnect_task)
        await cancel_task(self._ping_task)
        await cancel_task(self._read_task)
        self._reconnect_task = self._ping_task = self._read_task = None

        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()

        self._pending.fail_all(ShellyClosedError("WebSocket transport closed"))
        self._state.transition(ConnectionState.CLOSED)

    # -------------------------------------------------------------------------
    # Internal: Connection
    # -------------------------------------------------------------------------

    async def _connect_locked(self, timeout: float | None, *, reconnecting: bool) -> None:
        if self._closed:
            raise ShellyClosedError("WebSocket transport is closed")
        if self._ws is not None:
            return

        if not reconnecting:
            self._state.transition(ConnectionState.CONNECTING)

        headers = dict(self._options.headers)
        credentials = self._options.basic_auth
        if self._options.auth_type is AuthType.BASIC and credentials and credentials[0]:
            headers["Authorization"] = basic_auth_header(*credentials)

        _LOGGER.info("[%s] Connecting", self._url)
        client = ShellyWsClient()
        try:
            await client.connect(
                self._url,
                headers=headers,
                ssl=self._options.build_ssl_context(),
                timeout=timeout if timeout is not None else self._options.timeout,
            )
        except ShellyClientError:
            if not reconnecting:
                self._state.transition(ConnectionState.DISCONNECTED)
            raise

        if self._closed:
            await client.close()
            raise ShellyClosedError("WebSocket transport is closed")

        self._ws = client
        self._state.transition(ConnectionState.CONNECTED)
        _LOGGER.info("[%s] WebSocket connected, starting reader", self._url)

        self._read_task = asyncio.create_task(self._read_loop(client))
        if self._options.ping_interval > 0:
            self._ping_task = asyncio.create_task(self._keepalive_loop(client))

    async def _handle_disconnect(self, client: ShellyWsClient) -> None:
        """Tear down a broken connection and schedule reconnection."""
        if self._closed or self._ws is not client:
            return

        self._ws = None
        self._read_task = None
        await cancel_task(self._ping_task)
        self._ping_task = None
        await client.close()

        self._pending.fail_all(
            ShellyConnectionLost("connection lost while waiting for response")
        )
        self._state.transition(ConnectionState.DISCONNECTED)

        if self._options.reconnect and not self._closed:
            self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        """Reconnect with exponential backoff for a bounded number of attempts."""
        attempts = self._options.max_retries

        try:
            for attempt in range(1, attempts + 1):
                if self._closed:
                    return
                try:
                    async with self._connect_lock:
                        # A call may have reconnected while we slept
                        if self._ws is not None:
                            return
                        self._state.transition(ConnectionState.RECONNECTING)
                        await self._connect_locked(
                            self._options.timeout, reconnecting=True
                        )
                    _LOGGER.info("[%s] Reconnected (attempt %d)", self._url, attempt)
                    return
                except ShellyClosedError:
                    return
                except ShellyClientError as err:
                    _LOGGER.warning(
                        "[%s] Reconnect attempt %d/%d failed: %s",
                        self._url,
                        attempt,
                        attempts,
                        err,
                    )
                await asyncio.sleep(
                    calculate_backoff_delay(
                        self._options.retry_delay, attempt - 1, self._options.retry_backoff
                    )
                )

            _LOGGER.warning("[%s] Giving up after %d reconnect attempts", self._url, attempts)
            self._state.transition(ConnectionState.DISCONNECTED)
        finally:
            if self._reconnect_task is asyncio.current_task():
                self._reconnect_task = None

    # -------------------------------------------------------------------------
    # Internal: Workers
    # -------------------------------------------------------------------------

    async def _write(self, data: bytes) -> None:
        async with self._write_lock:
            ws = self._ws
            if ws is None:
                raise ShellyConnectionLost("WebSocket is not connected")
            await ws.send_text(data)

    async def _read_loop(self, client: ShellyWsClient) -> None:
        """Read frames until the connection fails."""
        try:
            async for msg in client:
                if msg.type is ShellyWsMessageType.TEXT:
                    await self._handle_message(msg.data or "")
                    continue
                if msg.type is ShellyWsMessageType.CLOSED:
                    _LOGGER.info("[%s] WebSocket closed by device", self._url)
                else:
                    _LOGGER.warning("[%s] WebSocket error: %s", self._url, msg.data)
                break
        except ShellyClientError as err:
            _LOGGER.warning("[%s] Reader stopped: %s", self._url, err)

        await self._handle_disconnect(client)

    async def _handle_message(self, data: str) -> None:
        frame = parse_frame(data)
        if isinstance(frame, Response):
            self._pending.resolve(frame)
        elif isinstance(frame, Notification):
            await self._subscription.dispatch(data.encode())
        else:
            _LOGGER.debug("[%s] Ignoring unrecognized frame", self._url)

    async def _keepalive_loop(self, client: ShellyWsClient) -> None:
        """Ping the device periodically.

        A failed send ends the loop quietly; the reader notices the broken
        connection on its own. A missing pong closes the socket so that the
        reader wakes up.
        """
        interval = self._options.ping_interval
        pong_timeout = self._options.pong_timeout
        while True:
            await asyncio.sleep(interval)
            try:
                waiter = await client.send_ping(pong_timeout)
            except ShellyClientError as err:
                _LOGGER.debug("[%s] Keepalive stopped: %s", self._url, err)
                return
            try:
                await client.wait_pong(waiter, pong_timeout)
            except ShellyTimeout:
                _LOGGER.warning(
                    "[%s] No pong within %.1fs, closing connection",
                    self._url,
                    pong_timeout,
                )
                await client.close()
                return
            except ShellyClientError:
                return
