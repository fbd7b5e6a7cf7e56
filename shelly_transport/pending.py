"""Correlation of in-flight request ids with their waiting callers."""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
from collections.abc import Iterator

from .protocol import Response

_LOGGER = logging.getLogger(__name__)


class PendingRequests:
    """Registry of one-shot response slots keyed by request id.

    Each id maps to a single future. A response is delivered at most once and
    the entry is removed as soon as it is delivered, discarded or failed.
    """

    def __init__(self, name: str = "") -> None:
        self._name = name
        self._slots: dict[int, asyncio.Future[Response]] = {}
        self._ids = itertools.count(1)

    def __len__(self) -> int:
        return len(self._slots)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._slots

    def next_id(self) -> int:
        """Return a fresh request id."""
        return next(self._ids)

    def register(self, request_id: int) -> asyncio.Future[Response]:
        """Create the response slot for ``request_id``.

        Raises:
            ValueError: If ``request_id`` already has a live slot.
        """
        if request_id in self._slots:
            raise ValueError(f"request id {request_id} is already pending")
        future: asyncio.Future[Response] = asyncio.get_running_loop().create_future()
        self._slots[request_id] = future
        return future

    def resolve(self, response: Response) -> bool:
        """Deliver ``response`` to its waiter.

        Returns:
            True if a waiter received the response. Responses for unknown or
            abandoned ids are dropped.
        """
        future = self._slots.pop(response.id, None)
        if future is None or future.done():
            _LOGGER.debug("[%s] Dropping response for id %s", self._name, response.id)
            return False
        future.set_result(response)
        return True

    def discard(self, request_id: int) -> None:
        """Forget ``request_id`` without delivering anything."""
        self._slots.pop(request_id, None)

    def fail_all(self, exc: BaseException) -> int:
        """Fail every pending slot with ``exc`` and clear the registry."""
        slots = list(self._slots.values())
        self._slots.clear()
        failed = 0
        for future in slots:
            if not future.done():
                future.set_exception(exc)
                failed += 1
        if failed:
            _LOGGER.warning(
                "[%s] Failed %d pending request(s): %s", self._name, failed, exc
            )
        return failed

    @contextlib.contextmanager
    def slot(self, request_id: int) -> Iterator[asyncio.Future[Response]]:
        """Register ``request_id`` for the duration of the block.

        The id is removed on exit whether the block returned, raised, timed
        out or was cancelled, so late responses for it are dropped. A newer
        slot registered under the same id after this one was resolved is
        left alone.
        """
        future = self.register(request_id)
        try:
            yield future
        finally:
            if self._slots.get(request_id) is future:
                del self._slots[request_id]
