"""CoAP/CoIoT transport for Gen1 Shelly devices.

Gen1 devices push status updates as CoAP frames carrying a JSON body, either
to a unicast peer or to the CoIoT multicast group. This transport is
receive-only: it decodes those frames and hands them to the notification
handler. Control commands go over HTTP.
"""

from __future__ import annotations

import asyncio
import json
import logging
import socket
import struct
from dataclasses import dataclass, field
from typing import Any

from .errors import (
    CoAPDecodeError,
    ShellyClosedError,
    ShellyConnectionError,
    ShellyNotSupportedError,
)
from .options import TransportOptions, resolve_options
from .state import ConnectionState, ConnectionStateMachine, StateCallback
from .transport import NotificationHandler, SubscriptionSlot, cancel_task

_LOGGER = logging.getLogger(__name__)

COIOT_MULTICAST_GROUP = "224.0.1.187"
COAP_PORT = 5683
COAP_BUFFER_SIZE = 8192
COAP_VERSION = 1
PAYLOAD_MARKER = 0xFF

LISTEN_POLL_INTERVAL = 1.0
DATAGRAM_QUEUE_SIZE = 256


@dataclass(frozen=True)
class CoAPFrame:
    """Decoded CoAP message."""

    version: int
    type: int
    token: bytes
    code: int
    message_id: int
    options: list[tuple[int, bytes]] = field(default_factory=list)
    payload: bytes = b""


@dataclass(frozen=True)
class CoIoTMessage:
    """Status message broadcast by a Gen1 device."""

    device_id: str = ""
    device_type: str = ""
    status: Any = None
    serial: int = 0

    def to_notification(self, source_addr: str) -> dict[str, Any]:
        """Return the JSON object handed to notification handlers."""
        data: dict[str, Any] = {}
        if self.device_id:
            data["id"] = self.device_id
        if self.device_type:
            data["type"] = self.device_type
        if self.status is not None:
            data["G"] = self.status
        if self.serial:
            data["serial"] = self.serial
        if source_addr:
            data["source_addr"] = source_addr
        return data


def _read_extended(data: bytes, offset: int, nibble: int, what: str) -> tuple[int, int]:
    """Resolve an option delta or length nibble, reading extension bytes."""
    if nibble == 13:
        if offset >= len(data):
            raise CoAPDecodeError(f"truncated option {what}")
        return data[offset] + 13, offset + 1
    if nibble == 14:
        if offset + 1 >= len(data):
            raise CoAPDecodeError(f"truncated option {what}")
        return (data[offset] << 8) + data[offset + 1] + 269, offset + 2
    if nibble == 15:
        raise CoAPDecodeError(f"reserved option {what} nibble")
    return nibble, offset


def decode_coap_frame(data: bytes) -> CoAPFrame:
    """Decode a CoAP frame that carries a payload.

    Layout: 4 byte header (version, type, token length, code, message id),
    the token, options, the 0xFF payload marker and the payload.

    Raises:
        CoAPDecodeError: If the frame is malformed or has no payload.
    """
    if len(data) < 4:
        raise CoAPDecodeError("message too short")

    version = (data[0] >> 6) & 0x03
    if version != COAP_VERSION:
        raise CoAPDecodeError(f"unsupported CoAP version: {version}")
    msg_type = (data[0] >> 4) & 0x03
    tkl = data[0] & 0x0F
    if tkl > 8:
        raise CoAPDecodeError(f"invalid token length: {tkl}")
    code = data[1]
    (message_id,) = struct.unpack_from(">H", data, 2)

    offset = 4 + tkl
    if offset >= len(data):
        raise CoAPDecodeError("no options or payload")
    token = bytes(data[4:offset])

    options: list[tuple[int, bytes]] = []
    number = 0
    has_marker = False
    while offset < len(data):
        if data[offset] == PAYLOAD_MARKER:
            offset += 1
            has_marker = True
            break

        delta_nibble = (data[offset] >> 4) & 0x0F
        length_nibble = data[offset] & 0x0F
        offset += 1
        delta, offset = _read_extended(data, offset, delta_nibble, "delta")
        length, offset = _read_extended(data, offset, length_nibble, "length")

        if offset + length > len(data):
            raise CoAPDecodeError("truncated option value")
        number += delta
        options.append((number, bytes(data[offset : offset + length])))
        offset += length

    if not has_marker:
        raise CoAPDecodeError("missing payload marker")
    if offset >= len(data):
        raise CoAPDecodeError("no payload")

    return CoAPFrame(
        version=version,
        type=msg_type,
        token=token,
        code=code,
        message_id=message_id,
        options=options,
        payload=bytes(data[offset:]),
    )


def decode_coiot_message(data: bytes) -> CoIoTMessage:
    """Decode a CoIoT status datagram.

    Raises:
        CoAPDecodeError: If the frame is malformed or the payload is not a
            JSON object.
    """
    frame = decode_coap_frame(data)
    try:
        body = json.loads(frame.payload)
    except (UnicodeDecodeError, ValueError) as err:
        raise CoAPDecodeError(f"parse payload: {err}") from err
    if not isinstance(body, dict):
        raise CoAPDecodeError("payload is not a JSON object")

    device_id = body.get("id", "")
    device_type = body.get("type", "")
    serial = body.get("serial", 0)
    if not isinstance(device_id, str) or not isinstance(device_type, str):
        raise CoAPDecodeError("device id and type must be strings")
    if isinstance(serial, bool) or not isinstance(serial, int):
        raise CoAPDecodeError("serial must be an integer")

    return CoIoTMessage(
        device_id=device_id,
        device_type=device_type,
        status=body.get("G"),
        serial=serial,
    )


class _CoAPProtocol(asyncio.DatagramProtocol):
    """Queues received datagrams for the listener task."""

    def __init__(self, queue: asyncio.Queue[tuple[bytes, Any] | None]) -> None:
        self._queue = queue

    def datagram_received(self, data: bytes, addr: Any) -> None:
        try:
            self._queue.put_nowait((data, addr))
        except asyncio.QueueFull:
            _LOGGER.debug("Dropping datagram from %s: queue full", addr)

    def error_received(self, exc: Exception) -> None:
        _LOGGER.debug("CoAP socket error: %s", exc)

    def connection_lost(self, exc: Exception | None) -> None:
        # The stop sentinel must fit even when the queue is full
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(None)


def _multicast_socket(port: int) -> socket.socket:
    """Bind a UDP socket on ``port`` joined to the CoIoT group."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, COAP_BUFFER_SIZE)
        sock.bind(("", port))
        membership = struct.pack(
            "4s4s",
            socket.inet_aton(COIOT_MULTICAST_GROUP),
            socket.inet_aton("0.0.0.0"),
        )
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, membership)
        sock.setblocking(False)
    except OSError:
        sock.close()
        raise
    return sock


class CoAPTransport:
    """Receive-only CoIoT listener.

    Usage:
        transport = CoAPTransport(coap_multicast=True)
        transport.subscribe(handle_status)
        await transport.connect()
    """

    def __init__(
        self,
        address: str = "",
        *,
        options: TransportOptions | None = None,
        **overrides: Any,
    ) -> None:
        self._address = address
        self._options = resolve_options(options, **overrides)
        name = address or COIOT_MULTICAST_GROUP
        self._name = name

        self._state = ConnectionStateMachine(name)
        self._subscription = SubscriptionSlot(name)

        self._udp: asyncio.DatagramTransport | None = None
        self._queue: asyncio.Queue[tuple[bytes, Any] | None] | None = None
        self._stop = asyncio.Event()
        self._listen_task: asyncio.Task[None] | None = None
        self._connect_lock = asyncio.Lock()
        self._closed = False

    @property
    def address(self) -> str:
        return self._address

    @property
    def is_multicast(self) -> bool:
        return self._options.coap_multicast

    @property
    def is_connected(self) -> bool:
        return self._udp is not None

    @property
    def state(self) -> ConnectionState:
        return self._state.state

    def on_state_change(self, callback: StateCallback) -> None:
        self._state.on_state_change(callback)

    def subscribe(self, handler: NotificationHandler) -> None:
        """Register the handler receiving decoded status messages as JSON."""
        self._subscription.set(handler)

    def unsubscribe(self) -> None:
        self._subscription.clear()

    async def connect(self, *, timeout: float | None = None) -> None:
        """Open the UDP socket and start listening.

        Raises:
            ShellyClosedError: If the transport was closed.
            ShellyConnectionError: If no address is set in unicast mode or
                the socket cannot be opened.
        """
        async with self._connect_lock:
            if self._closed:
                raise ShellyClosedError("CoAP transport is closed")
            if self._udp is not None:
                return

            self._state.transition(ConnectionState.CONNECTING)
            queue: asyncio.Queue[tuple[bytes, Any] | None] = asyncio.Queue(
                maxsize=DATAGRAM_QUEUE_SIZE
            )
            try:
                async with asyncio.timeout(timeout or self._options.timeout):
                    udp = await self._open_endpoint(queue)
            except (OSError, TimeoutError, ShellyConnectionError) as err:
                self._state.transition(ConnectionState.DISCONNECTED)
                if isinstance(err, ShellyConnectionError):
                    raise
                raise ShellyConnectionError(f"open CoAP socket: {err}") from err

            self._udp = udp
            self._queue = queue
            self._stop.clear()
            self._state.transition(ConnectionState.CONNECTED)
            _LOGGER.info(
                "[%s] CoAP listener started (%s)",
                self._name,
                "multicast" if self.is_multicast else "unicast",
            )
            self._listen_task = asyncio.create_task(self._listen_loop(queue))

    async def call(self, request: Any, *, timeout: float | None = None) -> bytes:
        """CoIoT is status-only; use the HTTP transport for commands.

        Raises:
            ShellyClosedError: If the transport was closed.
            ShellyNotSupportedError: Always otherwise.
        """
        if self._closed:
            raise ShellyClosedError("CoAP transport is closed")
        raise ShellyNotSupportedError(
            "CoAP call is not supported for Gen1 devices; "
            "use the HTTP transport for control commands"
        )

    async def close(self) -> None:
        """Stop listening and close the socket. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._stop.set()
        await cancel_task(self._listen_task)
        self._listen_task = None
        self._close_endpoint()
        self._state.transition(ConnectionState.CLOSED)

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    async def _open_endpoint(
        self, queue: asyncio.Queue[tuple[bytes, Any] | None]
    ) -> asyncio.DatagramTransport:
        loop = asyncio.get_running_loop()
        port = self._options.coap_port or COAP_PORT

        if self.is_multicast:
            transport, _ = await loop.create_datagram_endpoint(
                lambda: _CoAPProtocol(queue), sock=_multicast_socket(port)
            )
            return transport

        if not self._address:
            raise ShellyConnectionError("address required for unicast mode")
        transport, _ = await loop.create_datagram_endpoint(
            lambda: _CoAPProtocol(queue),
            remote_addr=(self._address, port),
            family=socket.AF_INET,
        )
        return transport

    def _close_endpoint(self) -> None:
        udp, self._udp = self._udp, None
        self._queue = None
        if udp is not None:
            udp.close()

    async def _listen_loop(self, queue: asyncio.Queue[tuple[bytes, Any] | None]) -> None:
        """Drain received datagrams until stopped or the socket fails."""
        while not self._stop.is_set():
            try:
                item = await asyncio.wait_for(queue.get(), timeout=LISTEN_POLL_INTERVAL)
            except TimeoutError:
                continue
            if item is None:
                break
            data, addr = item
            await self._handle_datagram(data, addr)

        if self._closed:
            return
        _LOGGER.warning("[%s] CoAP socket closed", self._name)
        self._listen_task = None
        self._close_endpoint()
        self._state.transition(ConnectionState.DISCONNECTED)

    async def _handle_datagram(self, data: bytes, addr: Any) -> None:
        try:
            message = decode_coiot_message(data)
        except CoAPDecodeError as err:
            _LOGGER.debug("[%s] Dropping malformed datagram from %s: %s", self._name, addr, err)
            return

        if not self._subscription.active:
            return
        source_addr = addr[0] if isinstance(addr, tuple) and addr else ""
        payload = json.dumps(message.to_notification(source_addr)).encode()
        await self._subscription.dispatch(payload)
