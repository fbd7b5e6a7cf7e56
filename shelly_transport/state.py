"""Connection state shared by the stateful transports."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from enum import Enum

_LOGGER = logging.getLogger(__name__)

StateCallback = Callable[["ConnectionState"], None]


class ConnectionState(Enum):
    """Lifecycle of a transport connection."""

    DISCONNECTED = "Disconnected"
    CONNECTING = "Connecting"
    CONNECTED = "Connected"
    RECONNECTING = "Reconnecting"
    CLOSED = "Closed"

    def __str__(self) -> str:
        return self.value


class ConnectionStateMachine:
    """Holds the current state and notifies observers of changes.

    ``CLOSED`` is terminal: once reached, further transitions are rejected
    and never reported to callbacks.
    """

    def __init__(self, name: str = "") -> None:
        self._name = name
        self._state = ConnectionState.DISCONNECTED
        self._callbacks: list[StateCallback] = []
        self._lock = threading.Lock()

    @property
    def state(self) -> ConnectionState:
        with self._lock:
            return self._state

    @property
    def closed(self) -> bool:
        return self.state is ConnectionState.CLOSED

    def on_state_change(self, callback: StateCallback) -> None:
        """Register a callback invoked with each new state."""
        with self._lock:
            self._callbacks.append(callback)

    def transition(self, state: ConnectionState) -> bool:
        """Move to ``state``.

        Returns:
            True if the state changed, False if it was already current or the
            machine is closed.
        """
        with self._lock:
            previous = self._state
            if previous is ConnectionState.CLOSED or previous is state:
                return False
            self._state = state
            callbacks = list(self._callbacks)

        _LOGGER.debug("[%s] State: %s → %s", self._name, previous, state)
        for callback in callbacks:
            try:
                callback(state)
            except Exception as err:
                _LOGGER.exception(
                    "[%s] State change callback error: %s", self._name, err
                )
        return True
