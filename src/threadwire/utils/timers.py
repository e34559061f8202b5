"""Cancellable one-shot timers on the running event loop

Every debounce, grace period and deadline in Threadwire goes through
``schedule()`` so they can be cancelled uniformly. Callbacks may be plain
functions or coroutine functions; coroutine callbacks run as tasks and their
failures are logged rather than raised into the loop.
"""

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Optional, Set, Union

import structlog


logger = structlog.get_logger(__name__)

TimerCallback = Callable[[], Union[None, Awaitable[Any]]]

# Strong references for callback tasks still running
_running: Set[asyncio.Task] = set()


class ScheduledTask:
    """Handle returned by ``schedule()``"""

    def __init__(self, delay: float, callback: TimerCallback, name: str = ""):
        self.delay = delay
        self.name = name or getattr(callback, "__name__", "timer")
        self._callback = callback
        self._fired = False
        self._cancelled = False
        self._task: Optional[asyncio.Task] = None
        self._handle = asyncio.get_running_loop().call_later(delay, self._fire)

    def _fire(self) -> None:
        if self._cancelled:
            return
        self._fired = True
        try:
            result = self._callback()
        except Exception:
            logger.exception("Timer callback failed", timer=self.name)
            return

        if inspect.isawaitable(result):
            self._task = asyncio.ensure_future(result)
            _running.add(self._task)
            self._task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        _running.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Timer task failed",
                timer=self.name,
                error=str(exc),
                exc_info=exc,
            )

    def cancel(self) -> None:
        """Stop the timer if it has not fired yet.

        A callback task that already started is left to finish; cancelling a
        timer from inside its own callback is therefore safe.
        """
        if self._cancelled:
            return
        self._cancelled = True
        self._handle.cancel()

    @property
    def pending(self) -> bool:
        return not self._fired and not self._cancelled

    @property
    def fired(self) -> bool:
        return self._fired

    @property
    def cancelled(self) -> bool:
        return self._cancelled


def schedule(delay: float, callback: TimerCallback, *, name: str = "") -> ScheduledTask:
    """Run ``callback`` once after ``delay`` seconds unless cancelled first"""
    return ScheduledTask(delay, callback, name=name)


def cancel(timer: Optional[ScheduledTask]) -> None:
    """Cancel ``timer`` if there is one"""
    if timer is not None:
        timer.cancel()
