"""Pytest configuration and fixtures for shelly_transport tests."""

from __future__ import annotations

import json
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest


@pytest.fixture
def mock_session() -> MagicMock:
    """Create a mock aiohttp ClientSession."""
    import aiohttp

    return MagicMock(spec=aiohttp.ClientSession)


def create_mock_response(
    status: int = 200,
    read_data: bytes | None = None,
    headers: dict[str, str] | None = None,
) -> AsyncMock:
    """Create a configured mock response usable as ``async with`` target.

    Args:
        status: HTTP status code
        read_data: Data to return from read() call
        headers: Response headers

    Returns:
        Configured AsyncMock response
    """
    response = AsyncMock()
    response.status = status
    response.headers = headers or {}
    response.read.return_value = read_data if read_data is not None else b""

    response.__aenter__.return_value = response
    response.__aexit__.return_value = None

    return response


def rpc_result(request_id: int, result: Any) -> bytes:
    """Encode a JSON-RPC response frame."""
    return json.dumps({"id": request_id, "src": "shellyplus1-test", "result": result}).encode()
