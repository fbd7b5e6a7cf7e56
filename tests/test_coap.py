"""Tests for CoAP frame decoding and the CoIoT listener."""

from __future__ import annotations

import asyncio
import json
import socket

import pytest

from shelly_transport.coap import (
    CoAPTransport,
    CoIoTMessage,
    _CoAPProtocol,
    decode_coap_frame,
    decode_coiot_message,
)
from shelly_transport.errors import (
    CoAPDecodeError,
    ShellyClosedError,
    ShellyConnectionError,
    ShellyNotSupportedError,
)
from shelly_transport.protocol import Request
from shelly_transport.state import ConnectionState

STATUS = b'{"id":"shellyht-1A2B3C","type":"SHHT-1","G":[[0,3101,21.5]],"serial":42}'


def frame(*, header: int = 0x50, token: bytes = b"", options: bytes = b"", payload: bytes = STATUS) -> bytes:
    """Build a frame: header byte, code 0x1e, message id 1, token, options, payload."""
    data = bytes([header | len(token), 0x1E, 0x00, 0x01]) + token + options
    if payload:
        data += b"\xff" + payload
    return data


class TestDecodeCoAPFrame:
    """Tests for decode_coap_frame()."""

    def test_minimal_frame(self):
        """Test a frame with no token and no options decodes."""
        decoded = decode_coap_frame(frame())
        assert decoded.version == 1
        assert decoded.type == 1
        assert decoded.code == 0x1E
        assert decoded.message_id == 1
        assert decoded.token == b""
        assert decoded.options == []
        assert decoded.payload == STATUS

    def test_token_and_extended_options(self):
        """Test option numbers accumulate through inline and extended deltas."""
        options = (
            b"\xb3cit"  # delta 11, length 3
            + b"\xd1\x00x"  # delta 13+0, length 1
            + b"\xe0\x00\x01"  # delta 269+1, length 0
            + b"\x0d\x02" + b"v" * 15  # delta 0, length 13+2
        )
        decoded = decode_coap_frame(frame(token=b"\xaa\xbb", options=options))
        assert decoded.token == b"\xaa\xbb"
        assert decoded.options == [
            (11, b"cit"),
            (24, b"x"),
            (294, b""),
            (294, b"v" * 15),
        ]
        assert decoded.payload == STATUS

    def test_two_byte_extended_length(self):
        """Test a 14 length nibble reads two bytes plus 269."""
        options = b"\x0e\x00\x00" + b"z" * 269
        decoded = decode_coap_frame(frame(options=options))
        assert decoded.options == [(0, b"z" * 269)]

    @pytest.mark.parametrize(
        ("data", "message"),
        [
            (b"\x50\x1e\x00", "too short"),
            (b"\x90\x1e\x00\x01\xff{}", "unsupported CoAP version"),
            (b"\x59\x1e\x00\x01" + b"\x00" * 9 + b"\xff{}", "invalid token length"),
            (b"\x52\x1e\x00\x01\xaa\xbb", "no options or payload"),
            (b"\x50\x1e\x00\x01\xf1", "reserved"),
            (b"\x50\x1e\x00\x01\x1f", "reserved"),
            (b"\x50\x1e\x00\x01\xd0", "truncated option delta"),
            (b"\x50\x1e\x00\x01\xe0\x00", "truncated option delta"),
            (b"\x50\x1e\x00\x01\x0d", "truncated option length"),
            (b"\x50\x1e\x00\x01\x0e\x01", "truncated option length"),
            (b"\x50\x1e\x00\x01\x03ab", "truncated option value"),
            (b"\x50\x1e\x00\x01\xb3cit", "missing payload marker"),
            (b"\x50\x1e\x00\x01\xff", "no payload"),
        ],
    )
    def test_malformed(self, data, message):
        """Test malformed frames raise CoAPDecodeError."""
        with pytest.raises(CoAPDecodeError, match=message):
            decode_coap_frame(data)


class TestDecodeCoIoTMessage:
    """Tests for decode_coiot_message()."""

    def test_status_message(self):
        """Test the JSON status body is extracted."""
        message = decode_coiot_message(frame())
        assert message == CoIoTMessage(
            device_id="shellyht-1A2B3C",
            device_type="SHHT-1",
            status=[[0, 3101, 21.5]],
            serial=42,
        )

    def test_notification_payload(self):
        """Test empty fields are omitted and the sender address is added."""
        message = decode_coiot_message(frame(payload=b'{"G":[]}'))
        assert message.to_notification("10.0.0.5") == {"G": [], "source_addr": "10.0.0.5"}

    @pytest.mark.parametrize(
        "payload",
        [b"not json", b"[1,2]", b'{"serial":"x"}', b'{"id":5}', b"\xff\xfe"],
    )
    def test_invalid_payload(self, payload):
        """Test non-object or mistyped payloads raise CoAPDecodeError."""
        with pytest.raises(CoAPDecodeError):
            decode_coiot_message(frame(payload=payload))


class TestCoAPTransport:
    """Tests for the UDP listener."""

    async def test_call_not_supported(self) -> None:
        """Test call is rejected, and reports closed after close."""
        transport = CoAPTransport("127.0.0.1")
        with pytest.raises(ShellyNotSupportedError, match="HTTP"):
            await transport.call(Request("Shelly.GetStatus"))
        await transport.close()
        with pytest.raises(ShellyClosedError):
            await transport.call(Request("Shelly.GetStatus"))

    async def test_unicast_requires_address(self) -> None:
        """Test unicast mode without address fails and stays Disconnected."""
        transport = CoAPTransport()
        states: list[ConnectionState] = []
        transport.on_state_change(states.append)
        with pytest.raises(ShellyConnectionError, match="address required"):
            await transport.connect()
        assert states == [ConnectionState.CONNECTING, ConnectionState.DISCONNECTED]
        assert not transport.is_multicast

    async def test_receives_status_and_drops_garbage(self) -> None:
        """Test decoded datagrams reach the handler and malformed ones are dropped."""
        device = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        device.bind(("127.0.0.1", 0))
        device_port = device.getsockname()[1]

        received: list[dict] = []
        got_status = asyncio.Event()

        def handler(data: bytes) -> None:
            received.append(json.loads(data))
            got_status.set()

        transport = CoAPTransport("127.0.0.1", coap_port=device_port)
        transport.subscribe(handler)
        try:
            await transport.connect()
            assert transport.is_connected
            assert transport.state is ConnectionState.CONNECTED

            local = transport._udp.get_extra_info("sockname")
            device.sendto(b"\x90\x00", local)
            device.sendto(b"\x50\x1e\x00\x01\xd0", local)
            device.sendto(frame(), local)
            await asyncio.wait_for(got_status.wait(), timeout=2.0)
        finally:
            await transport.close()
            device.close()

        assert received == [
            {
                "id": "shellyht-1A2B3C",
                "type": "SHHT-1",
                "G": [[0, 3101, 21.5]],
                "serial": 42,
                "source_addr": "127.0.0.1",
            }
        ]
        assert transport.state is ConnectionState.CLOSED

    async def test_socket_loss_disconnects(self) -> None:
        """Test the listener stops and the state drops when the socket closes."""
        transport = CoAPTransport("127.0.0.1", coap_port=5683)
        try:
            await transport.connect()
            transport._udp.close()
            async with asyncio.timeout(2.0):
                while transport.state is not ConnectionState.DISCONNECTED:
                    await asyncio.sleep(0.01)
            assert not transport.is_connected
        finally:
            await transport.close()

    async def test_close_is_idempotent(self) -> None:
        """Test close ends in Closed and connect is then refused."""
        transport = CoAPTransport("127.0.0.1")
        await transport.connect()
        await transport.close()
        await transport.close()
        assert transport.state is ConnectionState.CLOSED
        with pytest.raises(ShellyClosedError):
            await transport.connect()

    def test_full_queue_drops_datagrams(self) -> None:
        """Test datagrams beyond the queue bound are dropped and the stop marker still fits."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=2)
        protocol = _CoAPProtocol(queue)
        for n in range(3):
            protocol.datagram_received(bytes([n]), ("10.0.0.5", 5683))
        assert queue.qsize() == 2

        protocol.connection_lost(None)

        items = [queue.get_nowait() for _ in range(queue.qsize())]
        assert items == [(b"\x01", ("10.0.0.5", 5683)), None]
