"""Transport contract and optional capabilities.

Every transport implements ``Transport``. The other protocols are
capabilities a transport may add; probe for them with ``isinstance``::

    if isinstance(transport, Subscriber):
        transport.subscribe(handler)
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, runtime_checkable

from .errors import HandlerAlreadyRegisteredError
from .protocol import Request
from .state import ConnectionState, StateCallback

_LOGGER = logging.getLogger(__name__)

NotificationHandler = Callable[[bytes], Awaitable[None] | None]


@runtime_checkable
class Transport(Protocol):
    """Request/response channel to a device."""

    async def call(
        self, request: Request, *, timeout: float | None = None
    ) -> bytes:  # pragma: no cover
        """Send ``request`` and return the raw result payload."""
        ...

    async def close(self) -> None:  # pragma: no cover
        """Release resources; safe to call more than once."""
        ...


@runtime_checkable
class Subscriber(Transport, Protocol):
    """Transport that receives push notifications."""

    def subscribe(self, handler: NotificationHandler) -> None:  # pragma: no cover
        """Register the notification handler; synchronous on every transport."""
        ...

    def unsubscribe(self) -> None:  # pragma: no cover
        """Remove the notification handler."""
        ...


@runtime_checkable
class Stateful(Protocol):
    """Transport that tracks a connection state."""

    @property
    def state(self) -> ConnectionState:  # pragma: no cover
        ...

    def on_state_change(self, callback: StateCallback) -> None:  # pragma: no cover
        ...


@runtime_checkable
class Connectable(Protocol):
    """Transport that needs an explicit connection before use."""

    async def connect(self, *, timeout: float | None = None) -> None:  # pragma: no cover
        ...


class SubscriptionSlot:
    """Holds the single notification handler of a transport."""

    def __init__(self, name: str = "") -> None:
        self._name = name
        self._handler: NotificationHandler | None = None
        self._lock = threading.Lock()

    @property
    def handler(self) -> NotificationHandler | None:
        with self._lock:
            return self._handler

    @property
    def active(self) -> bool:
        return self.handler is not None

    def set(self, handler: NotificationHandler) -> None:
        """Install ``handler``.

        Raises:
            HandlerAlreadyRegisteredError: If a handler is already installed.
        """
        with self._lock:
            if self._handler is not None:
                raise HandlerAlreadyRegisteredError()
            self._handler = handler

    def clear(self) -> None:
        with self._lock:
            self._handler = None

    async def dispatch(self, data: bytes) -> bool:
        """Hand ``data`` to the handler, if any.

        Handler failures are logged and swallowed so a misbehaving consumer
        cannot stop the transport's reader.
        """
        handler = self.handler
        if handler is None:
            return False
        try:
            result = handler(data)
            if inspect.isawaitable(result):
                await result
        except Exception as err:
            _LOGGER.exception("[%s] Notification handler error: %s", self._name, err)
        return True


async def cancel_task(task: asyncio.Task[Any] | None) -> None:
    """Cancel ``task`` and wait for it to finish.

    A task cannot wait for itself, so cancelling the current task only
    requests the cancellation.
    """
    if task is None or task.done():
        return
    task.cancel()
    if task is asyncio.current_task():
        return
    await asyncio.wait({task})
