"""MQTT transport for Gen2+ Shelly devices.

Requests are published to ``<prefix>/rpc`` with ``src`` set to the client id;
the device answers on ``<client_id>/rpc``. Notifications arrive on
``<prefix>/events/rpc``. The prefix is the device id unless ``mqtt_topic``
overrides it.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import ssl
import time
from typing import Any
from urllib.parse import urlsplit

from aiomqtt import Client, MqttError

from .errors import (
    ShellyClientError,
    ShellyClosedError,
    ShellyConnectionError,
    ShellyConnectionLost,
    ShellyInvalidRequestError,
    ShellyTimeout,
)
from .options import TransportOptions, calculate_backoff_delay, resolve_options
from .pending import PendingRequests
from .protocol import Request, Response, build_envelope, encode_envelope, parse_frame
from .state import ConnectionState, ConnectionStateMachine, StateCallback
from .transport import NotificationHandler, SubscriptionSlot, cancel_task

_LOGGER = logging.getLogger(__name__)

DEFAULT_MQTT_PORT = 1883
DEFAULT_MQTTS_PORT = 8883

_TLS_SCHEMES = {"ssl", "mqtts", "tls"}
_PLAIN_SCHEMES = {"tcp", "mqtt", ""}


def parse_broker_url(broker: str) -> tuple[str, int, bool]:
    """Split a broker address into ``(host, port, use_tls)``.

    Accepts ``tcp://host:port``, ``mqtt://``, ``ssl://`` or ``mqtts://`` URLs
    as well as bare ``host:port`` and ``host``.

    Raises:
        ValueError: If the scheme is unknown or no host is given.
    """
    if "://" not in broker:
        broker = f"tcp://{broker}"
    parts = urlsplit(broker)
    scheme = parts.scheme.lower()
    if scheme in _TLS_SCHEMES:
        use_tls = True
    elif scheme in _PLAIN_SCHEMES:
        use_tls = False
    else:
        raise ValueError(f"unsupported MQTT broker scheme: {parts.scheme}")
    if not parts.hostname:
        raise ValueError(f"missing host in MQTT broker address: {broker}")
    port = parts.port or (DEFAULT_MQTTS_PORT if use_tls else DEFAULT_MQTT_PORT)
    return parts.hostname, port, use_tls


class MqttTransport:
    """JSON-RPC over an MQTT broker.

    Usage:
        transport = MqttTransport("tcp://192.168.1.10:1883", "shellyplus1pm-abc123",
                                  mqtt_qos=1)
        await transport.connect()
        result = await transport.call(Request("Shelly.GetStatus"))
        await transport.close()
    """

    def __init__(
        self,
        broker: str,
        device_id: str,
        *,
        options: TransportOptions | None = None,
        **overrides: Any,
    ) -> None:
        self._options = resolve_options(options, **overrides)
        self._host, self._port, self._use_tls = parse_broker_url(broker)
        self._broker = broker
        self._device_id = device_id
        self._client_id = (
            self._options.mqtt_client_id or f"shelly-transport-{time.time_ns()}"
        )
        prefix = self._options.mqtt_topic or device_id
        self._response_topic = f"{self._client_id}/rpc"
        self._request_topic = f"{prefix}/rpc"
        self._events_topic = f"{prefix}/events/rpc"

        self._state = ConnectionStateMachine(device_id)
        self._pending = PendingRequests(device_id)
        self._subscription = SubscriptionSlot(device_id)

        self._client: Client | None = None
        self._message_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._events_task: asyncio.Task[None] | None = None
        self._connect_lock = asyncio.Lock()
        self._publish_lock = asyncio.Lock()
        self._closed = False

    @property
    def device_id(self) -> str:
        return self._device_id

    @property
    def client_id(self) -> str:
        """Client identifier, also used as ``src`` and response topic prefix."""
        return self._client_id

    @property
    def request_topic(self) -> str:
        return self._request_topic

    @property
    def response_topic(self) -> str:
        return self._response_topic

    @property
    def events_topic(self) -> str:
        return self._events_topic

    @property
    def state(self) -> ConnectionState:
        return self._state.state

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    def on_state_change(self, callback: StateCallback) -> None:
        self._state.on_state_change(callback)

    def subscribe(self, handler: NotificationHandler) -> None:
        """Register the notification handler.

        The events topic is subscribed on the next connect, or right away in
        the background when already connected. If the broker rejects that
        subscription the handler is removed again.

        Raises:
            HandlerAlreadyRegisteredError: If a handler is already registered.
        """
        self._subscription.set(handler)
        self._schedule_events_update(handler)

    def unsubscribe(self) -> None:
        """Remove the notification handler and unsubscribe the events topic."""
        self._subscription.clear()
        self._schedule_events_update(None)

    async def connect(self, *, timeout: float | None = None) -> None:
        """Connect to the broker and subscribe the response topic.

        Raises:
            ShellyClosedError: If the transport was closed.
            ShellyTimeout: If the broker does not answer in time.
            ShellyConnectionError: If the connection is refused.
        """
        async with self._connect_lock:
            await self._connect_locked(
                timeout,
                reconnecting=self._state.state is ConnectionState.RECONNECTING,
            )

    async def call(self, request: Request, *, timeout: float | None = None) -> bytes:
        """Publish ``request`` and wait for the device's response.

        Raises:
            ShellyClosedError: If the transport was closed.
            ShellyTimeout: If no response arrives in time.
            ShellyConnectionError: If publishing fails.
            ShellyConnectionLost: If the connection drops while waiting.
            ShellyRPCError: If the device answers with an error object.
        """
        if self._closed:
            raise ShellyClosedError("MQTT transport is closed")
        if timeout is None:
            timeout = self._options.timeout

        if self._client is None:
            await self.connect(timeout=timeout)

        request_id = request.id if request.id and request.id > 0 else self._pending.next_id()
        payload = encode_envelope(
            build_envelope(request, request_id=request_id, src=self._client_id)
        )

        try:
            with self._pending.slot(request_id) as future:
                async with asyncio.timeout(timeout):
                    await self._publish(payload)
                    response = await future
        except ValueError as err:
            raise ShellyInvalidRequestError(str(err)) from err
        except TimeoutError as err:
            raise ShellyTimeout(
                f"{request.method} (id {request_id}) timed out after {timeout}s"
            ) from err

        return response.raise_for_error()

    async def close(self) -> None:
        """Disconnect from the broker. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        _LOGGER.info("[%s] Closing MQTT transport", self._device_id)

        await cancel_task(self._reconnect_task)
        await cancel_task(self._events_task)
        await cancel_task(self._message_task)
        self._reconnect_task = self._events_task = self._message_task = None

        self._pending.fail_all(ShellyClosedError("MQTT transport closed"))

        client, self._client = self._client, None
        if client is not None:
            await self._disconnect_client(client)

        self._state.transition(ConnectionState.CLOSED)

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _build_client(self, timeout: float) -> Client:
        kwargs: dict[str, Any] = {
            "hostname": self._host,
            "port": self._port,
            "identifier": self._client_id,
            "timeout": timeout,
        }
        credentials = self._options.credentials
        if credentials is not None and credentials[0]:
            kwargs["username"], kwargs["password"] = credentials

        tls_context = self._options.build_ssl_context()
        if tls_context is None and self._use_tls:
            tls_context = ssl.create_default_context()
        if tls_context is not None:
            kwargs["tls_context"] = tls_context

        return Client(**kwargs)

    async def _connect_locked(self, timeout: float | None, *, reconnecting: bool) -> None:
        if self._closed:
            raise ShellyClosedError("MQTT transport is closed")
        if self._client is not None:
            return
        if timeout is None:
            timeout = self._options.timeout

        if not reconnecting:
            self._state.transition(ConnectionState.CONNECTING)

        _LOGGER.info(
            "[%s] Connecting to broker %s:%d as %s",
            self._device_id,
            self._host,
            self._port,
            self._client_id,
        )
        client = self._build_client(timeout)
        try:
            async with asyncio.timeout(timeout):
                await client.__aenter__()
                await client.subscribe(self._response_topic, qos=self._options.mqtt_qos)
                if self._subscription.active:
                    await client.subscribe(self._events_topic, qos=self._options.mqtt_qos)
        except (MqttError, TimeoutError) as err:
            await self._disconnect_client(client)
            if not reconnecting:
                self._state.transition(ConnectionState.DISCONNECTED)
            if isinstance(err, TimeoutError):
                raise ShellyTimeout("MQTT connect timed out") from err
            raise ShellyConnectionError(f"mqtt connect: {err}") from err

        if self._closed:
            await self._disconnect_client(client)
            raise ShellyClosedError("MQTT transport is closed")

        self._client = client
        self._state.transition(ConnectionState.CONNECTED)
        self._message_task = asyncio.create_task(self._message_loop(client))

    def _schedule_events_update(self, handler: NotificationHandler | None) -> None:
        """Queue an events topic (un)subscribe on the live client, if any."""
        client = self._client
        if client is None or self._closed:
            return
        self._events_task = asyncio.create_task(
            self._update_events(client, handler, self._events_task)
        )

    async def _update_events(
        self,
        client: Client,
        handler: NotificationHandler | None,
        previous: asyncio.Task[None] | None,
    ) -> None:
        # Updates run in the order they were requested
        if previous is not None and not previous.done():
            await asyncio.wait({previous})
        try:
            if handler is not None:
                await client.subscribe(self._events_topic, qos=self._options.mqtt_qos)
            else:
                await client.unsubscribe(self._events_topic)
        except MqttError as err:
            if handler is None:
                _LOGGER.warning(
                    "[%s] Unsubscribe from %s failed: %s",
                    self._device_id,
                    self._events_topic,
                    err,
                )
                return
            _LOGGER.warning(
                "[%s] Subscribe to %s failed, removing handler: %s",
                self._device_id,
                self._events_topic,
                err,
            )
            if self._subscription.handler is handler:
                self._subscription.clear()
        finally:
            if self._events_task is asyncio.current_task():
                self._events_task = None

    async def _disconnect_client(self, client: Client) -> None:
        with contextlib.suppress(MqttError):
            await client.__aexit__(None, None, None)

    async def _publish(self, payload: bytes) -> None:
        async with self._publish_lock:
            client = self._client
            if client is None:
                raise ShellyConnectionLost("MQTT client is not connected")
            try:
                await client.publish(
                    self._request_topic, payload=payload, qos=self._options.mqtt_qos
                )
            except MqttError as err:
                raise ShellyConnectionError(f"publish: {err}") from err

    async def _message_loop(self, client: Client) -> None:
        try:
            async for message in client.messages:
                await self._handle_message(str(message.topic), message.payload)
        except MqttError as err:
            _LOGGER.warning("[%s] MQTT connection lost: %s", self._device_id, err)
        await self._handle_connection_lost(client)

    async def _handle_message(self, topic: str, payload: Any) -> None:
        if isinstance(payload, str):
            payload = payload.encode()
        if not isinstance(payload, (bytes, bytearray)):
            return
        data = bytes(payload)

        if topic == self._events_topic:
            await self._subscription.dispatch(data)
            return

        frame = parse_frame(data)
        if isinstance(frame, Response):
            self._pending.resolve(frame)
        else:
            _LOGGER.debug("[%s] Ignoring message on %s", self._device_id, topic)

    async def _handle_connection_lost(self, client: Client) -> None:
        if self._closed or self._client is not client:
            return
        self._client = None
        self._message_task = None
        await self._disconnect_client(client)

        self._pending.fail_all(
            ShellyConnectionLost("connection lost while waiting for response")
        )
        if self._options.reconnect:
            self._state.transition(ConnectionState.RECONNECTING)
            self._reconnect_task = asyncio.create_task(self._reconnect_loop())
        else:
            self._state.transition(ConnectionState.DISCONNECTED)

    async def _reconnect_loop(self) -> None:
        attempts = self._options.max_retries
        try:
            for attempt in range(1, attempts + 1):
                await asyncio.sleep(
                    calculate_backoff_delay(
                        self._options.retry_delay, attempt - 1, self._options.retry_backoff
                    )
                )
                if self._closed:
                    return
                try:
                    async with self._connect_lock:
                        await self._connect_locked(None, reconnecting=True)
                    _LOGGER.info(
                        "[%s] Reconnected to broker (attempt %d)", self._device_id, attempt
                    )
                    return
                except ShellyClosedError:
                    return
                except ShellyClientError as err:
                    _LOGGER.warning(
                        "[%s] Reconnect attempt %d/%d failed: %s",
                        self._device_id,
                        attempt,
                        attempts,
                        err,
                    )
            _LOGGER.warning(
                "[%s] Giving up after %d reconnect attempts", self._device_id, attempts
            )
            self._state.transition(ConnectionState.DISCONNECTED)
        finally:
            if self._reconnect_task is asyncio.current_task():
                self._reconnect_task = None
