"""Fan-out of device notifications to independent subscribers."""

from __future__ import annotations

import threading
from collections.abc import Callable

from .protocol import Notification, parse_notification

GlobalNotificationHandler = Callable[[str, bytes | None], None]
MethodNotificationHandler = Callable[[bytes | None], None]


class NotificationRouter:
    """Dispatches notifications to global and method-specific handlers.

    Unlike the single handler a transport accepts, any number of handlers can
    be registered here. ``route`` calls the global handlers first, then the
    handlers registered for the notification's exact method, each in
    registration order. Handler exceptions propagate to the caller of
    ``route``.
    """

    def __init__(self) -> None:
        self._handlers: list[GlobalNotificationHandler] = []
        self._method_handlers: dict[str, list[MethodNotificationHandler]] = {}
        self._lock = threading.Lock()

    def on_notification(self, handler: GlobalNotificationHandler) -> None:
        """Register a handler receiving ``(method, params)`` for every notification."""
        if handler is None:
            return
        with self._lock:
            self._handlers.append(handler)

    def on_notification_method(
        self, method: str, handler: MethodNotificationHandler
    ) -> None:
        """Register a handler receiving ``params`` for notifications of ``method``."""
        if handler is None or not method:
            return
        with self._lock:
            self._method_handlers.setdefault(method, []).append(handler)

    def remove_notification_handlers(self) -> None:
        """Remove all global handlers."""
        with self._lock:
            self._handlers = []

    def remove_method_handlers(self, method: str) -> None:
        """Remove all handlers registered for ``method``."""
        with self._lock:
            self._method_handlers.pop(method, None)

    def remove_all_handlers(self) -> None:
        with self._lock:
            self._handlers = []
            self._method_handlers = {}

    def route(self, notification: Notification | None) -> None:
        """Deliver ``notification`` to the matching handlers."""
        if notification is None:
            return

        with self._lock:
            handlers = list(self._handlers)
            method_handlers = list(self._method_handlers.get(notification.method, ()))

        for handler in handlers:
            handler(notification.method, notification.params)
        for method_handler in method_handlers:
            method_handler(notification.params)

    def route_raw(self, data: bytes | str) -> None:
        """Parse a raw notification frame and route it.

        Raises:
            ShellyClientError: If ``data`` is not a notification frame. No
                handler is called in that case.
        """
        self.route(parse_notification(data))

    def has_handlers(self) -> bool:
        with self._lock:
            return bool(self._handlers) or bool(self._method_handlers)

    def has_method_handlers(self, method: str) -> bool:
        with self._lock:
            return bool(self._method_handlers.get(method))

    def handler_count(self) -> int:
        """Return the number of global plus method-specific handlers."""
        with self._lock:
            return len(self._handlers) + sum(
                len(handlers) for handlers in self._method_handlers.values()
            )

    def method_handler_count(self, method: str) -> int:
        with self._lock:
            return len(self._method_handlers.get(method, ()))

    def methods(self) -> list[str]:
        """Return the methods that have registered handlers."""
        with self._lock:
            return list(self._method_handlers)
