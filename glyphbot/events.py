"""Fire-and-forget listener fan-out used by the engine and coordinators."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Generic, List, Set, TypeVar, Union

logger = logging.getLogger("glyphbot.events")

T = TypeVar("T")
Listener = Callable[[T], Union[None, Awaitable[None]]]


class ListenerSet(Generic[T]):
    """Holds listeners for one event kind.

    Synchronous listeners run inline; coroutine listeners are scheduled as
    tasks and never awaited by the dispatcher. A failing listener is logged
    and does not affect the others.
    """

    def __init__(self, name: str):
        self.name = name
        self._listeners: List[Listener] = []
        self._pending: Set[asyncio.Task] = set()

    def add(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def __len__(self) -> int:
        return len(self._listeners)

    def dispatch(self, payload: T) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(payload)
            except Exception:  # pylint: disable=broad-except
                logger.exception("%s listener %r failed", self.name, listener)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._pending.add(task)
                task.add_done_callback(self._on_done)

    def _on_done(self, task: "asyncio.Future[Any]") -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("%s listener task failed: %s", self.name, exc, exc_info=exc)

    def cancel_pending(self) -> None:
        for task in list(self._pending):
            task.cancel()
        self._pending.clear()


__all__ = ["Listener", "ListenerSet"]
