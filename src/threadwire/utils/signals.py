"""Typed notification channels

Each component exposes one ``Signal`` per notification kind instead of a
shared event emitter. Subscribers may be plain or coroutine functions.
"""

import asyncio
import inspect
from typing import Any, Callable, Generic, List, Set, TypeVar

import structlog


logger = structlog.get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


class Signal(Generic[F]):
    """A named list of subscribers for one notification kind.

    ``emit()`` never raises because of a subscriber: failures are logged and
    the remaining subscribers still run. Coroutine subscribers are scheduled
    as tasks in subscription order.
    """

    def __init__(self, name: str):
        self.name = name
        self._subscribers: List[F] = []
        self._tasks: Set[asyncio.Task] = set()

    def connect(self, callback: F) -> Callable[[], None]:
        """Subscribe ``callback``; returns a function that unsubscribes it"""
        self._subscribers.append(callback)

        def disconnect() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return disconnect

    def emit(self, *args: Any) -> None:
        for callback in list(self._subscribers):
            try:
                result = callback(*args)
            except Exception:
                logger.exception("Signal subscriber failed", signal=self.name)
                continue

            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Signal subscriber task failed",
                signal=self.name,
                error=str(exc),
                exc_info=exc,
            )

    async def drain(self) -> None:
        """Wait for subscriber tasks started by earlier emits"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def __len__(self) -> int:
        return len(self._subscribers)
