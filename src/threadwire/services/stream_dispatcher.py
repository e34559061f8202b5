"""Delivery of session output to a destination thread

One dispatcher per session. Output is buffered and delivered after a quiet
period; small follow-ups are folded into the most recent unit with in-place
updates while larger or later output is posted as new units. This keeps the
number of destination API calls bounded when a process streams many tiny
fragments.
"""
import asyncio
from typing import List, Optional

import structlog

from threadwire.config import Settings, get_settings
from threadwire.destinations.base import Destination, UpdateResult
from threadwire.exceptions import ErrorKind, ThreadwireError
from threadwire.services.output_parser import chunk
from threadwire.utils.timers import ScheduledTask, cancel, schedule


logger = structlog.get_logger(__name__)

UNIT_SEPARATOR = "\n"


class StreamDispatcher:
    """Coalesces one session's output into delivery units"""

    def __init__(
        self,
        destination: Destination,
        channel_id: str,
        thread_ts: str,
        settings: Optional[Settings] = None,
        session_id: Optional[str] = None,
    ):
        settings = settings or get_settings()
        self.destination = destination
        self.channel_id = channel_id
        self.thread_ts = thread_ts
        self.debounce = settings.dispatch_debounce_seconds
        self.chunk_size = settings.dispatch_chunk_size
        self.max_updates = settings.dispatch_max_updates

        self._buffer = ""
        self._timer: Optional[ScheduledTask] = None
        self._last_unit_id: Optional[str] = None
        self._last_unit_text = ""
        self._unit_count = 0
        self._finalized = False
        self._lock = asyncio.Lock()

        self._log = logger.bind(session_id=session_id, channel_id=channel_id, thread_ts=thread_ts)

    @property
    def finalized(self) -> bool:
        return self._finalized

    @property
    def unit_count(self) -> int:
        return self._unit_count

    @property
    def last_unit_id(self) -> Optional[str]:
        return self._last_unit_id

    @property
    def pending(self) -> str:
        return self._buffer

    def append(self, text: str) -> None:
        """Buffer ``text`` and restart the quiet-period timer"""
        if self._finalized:
            return

        if self._buffer and text:
            self._buffer += UNIT_SEPARATOR
        self._buffer += text

        cancel(self._timer)
        self._timer = schedule(self.debounce, self._flush_from_timer, name="dispatch-debounce")

    async def _flush_from_timer(self) -> None:
        self._timer = None
        try:
            await self.flush()
        except Exception:
            self._log.exception("Failed to flush buffer")

    async def flush(self) -> None:
        """Deliver the buffered output now"""
        async with self._lock:
            await self._flush(retry_stale=True)

    async def _flush(self, retry_stale: bool) -> None:
        if not self._buffer.strip():
            return

        pending = self._buffer
        chunks = chunk(pending, self.chunk_size)

        try:
            if self._can_update(chunks):
                merged = self._last_unit_text + UNIT_SEPARATOR + chunks[0]
                result = await self.destination.update_unit(self.channel_id, self._last_unit_id, merged)
                if result == UpdateResult.NOT_FOUND:
                    self._log.info("Last unit is gone, posting fresh", unit_id=self._last_unit_id)
                    self._last_unit_id = None
                    self._last_unit_text = ""
                    if retry_stale:
                        await self._flush(retry_stale=False)
                    return
                self._last_unit_text = merged
            else:
                await self._post_chunks(chunks)
        except ThreadwireError as e:
            if e.kind != ErrorKind.DESTINATION_FAILED:
                raise
            self._log.error("Failed to deliver output", error=e.message)
            return

        # Output appended while we were awaiting the destination stays queued
        self._buffer = self._buffer[len(pending):].lstrip(UNIT_SEPARATOR)

    def _can_update(self, chunks: List[str]) -> bool:
        if len(chunks) != 1 or self._last_unit_id is None:
            return False
        if self._unit_count >= self.max_updates:
            return False
        return len(self._last_unit_text) + len(UNIT_SEPARATOR) + len(chunks[0]) <= self.chunk_size

    async def _post_chunks(self, chunks: List[str]) -> None:
        # Earlier pieces first so the newest unit is the one left open for updates
        for piece in chunks[:-1]:
            await self.destination.post_unit(self.channel_id, self.thread_ts, piece)
            self._unit_count += 1

        last = chunks[-1]
        self._last_unit_id = await self.destination.post_unit(self.channel_id, self.thread_ts, last)
        self._last_unit_text = last
        self._unit_count += 1

    async def finalize(self, status_text: Optional[str] = None) -> None:
        """Deliver what is left, stop buffering, and optionally post a status line"""
        cancel(self._timer)
        self._timer = None
        self._finalized = True

        await self.flush()
        self._buffer = ""

        if status_text:
            await self.send_immediate(status_text)

    async def send_immediate(self, text: str) -> Optional[str]:
        """Post ``text`` as a new unit right away, bypassing the buffer.

        Later output starts a fresh unit below this one.
        """
        async with self._lock:
            try:
                unit_id = await self.destination.post_unit(self.channel_id, self.thread_ts, text)
            except ThreadwireError as e:
                if e.kind != ErrorKind.DESTINATION_FAILED:
                    raise
                self._log.error("Failed to send immediate message", error=e.message)
                return None

            self._unit_count += 1
            self._last_unit_id = None
            self._last_unit_text = ""
            return unit_id

    def reset(self) -> None:
        """Forget all delivery state, e.g. when moving to another thread"""
        cancel(self._timer)
        self._timer = None
        self._buffer = ""
        self._last_unit_id = None
        self._last_unit_text = ""
        self._unit_count = 0
        self._finalized = False
