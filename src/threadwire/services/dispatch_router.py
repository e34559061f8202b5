"""Routes session notifications to per-session stream dispatchers"""
import asyncio
from collections import defaultdict
from typing import Callable, Dict, List, Optional, Tuple

import structlog

from threadwire.config import Settings, get_settings
from threadwire.destinations.base import Destination, UpdateResult
from threadwire.exceptions import DestinationError
from threadwire.models.session import Session
from threadwire.services.session_manager import SessionManager
from threadwire.services.stream_dispatcher import StreamDispatcher


logger = structlog.get_logger(__name__)

PROMPT_SUFFIX = "\n\n_Reply with `/y` to accept or `/n` to reject_"


def terminated_status_text(exit_code: Optional[int]) -> str:
    return f"Session ended (exit code: {exit_code})"


class DispatchRouter:
    """Owns one StreamDispatcher per live session.

    Output is appended to the session's dispatcher, prompts are posted
    immediately, and termination finalizes and drops the dispatcher. A
    prompt that keeps growing before the next output flush edits the
    notice already posted for it.
    """

    def __init__(
        self,
        session_manager: SessionManager,
        destination: Destination,
        settings: Optional[Settings] = None,
    ):
        self.session_manager = session_manager
        self.destination = destination
        self.settings = settings or get_settings()
        self._dispatchers: Dict[str, StreamDispatcher] = {}
        # session id -> (unit id, prompt text) of the last prompt notice
        self._prompts: Dict[str, Tuple[str, str]] = {}
        self._prompt_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._disconnects: List[Callable[[], None]] = [
            session_manager.on_session_created.connect(self._on_session_created),
            session_manager.on_output.connect(self._on_output),
            session_manager.on_prompt.connect(self._on_prompt),
            session_manager.on_session_terminated.connect(self._on_session_terminated),
        ]

    def get_dispatcher(self, session_id: str) -> Optional[StreamDispatcher]:
        return self._dispatchers.get(session_id)

    def _dispatcher_for(self, session: Session) -> StreamDispatcher:
        dispatcher = self._dispatchers.get(session.id)
        if dispatcher is None:
            dispatcher = StreamDispatcher(
                self.destination,
                session.channel_id,
                session.thread_ts,
                settings=self.settings,
                session_id=session.id,
            )
            self._dispatchers[session.id] = dispatcher
        return dispatcher

    def _on_session_created(self, session: Session) -> None:
        self._dispatcher_for(session)
        logger.debug("Dispatcher attached", session_id=session.id, thread_ts=session.thread_ts)

    def _on_output(self, session: Session, text: str) -> None:
        self._forget_prompt(session.id)
        self._dispatcher_for(session).append(text)

    async def _on_prompt(self, session: Session, text: str) -> None:
        async with self._prompt_locks[session.id]:
            previous = self._prompts.get(session.id)
            if previous is not None:
                unit_id, posted = previous
                if text == posted:
                    return
                if text.startswith(posted) and await self._update_prompt(session, unit_id, text):
                    self._prompts[session.id] = (unit_id, text)
                    return

            unit_id = await self._dispatcher_for(session).send_immediate(text + PROMPT_SUFFIX)
            if unit_id is not None:
                self._prompts[session.id] = (unit_id, text)

    async def _update_prompt(self, session: Session, unit_id: str, text: str) -> bool:
        dispatcher = self._dispatcher_for(session)
        try:
            result = await self.destination.update_unit(dispatcher.channel_id, unit_id, text + PROMPT_SUFFIX)
        except DestinationError as e:
            logger.warning("Failed to update prompt notice", session_id=session.id, error=e.message)
            return False
        return result == UpdateResult.OK

    def _forget_prompt(self, session_id: str) -> None:
        self._prompts.pop(session_id, None)
        lock = self._prompt_locks.get(session_id)
        if lock is not None and not lock.locked():
            del self._prompt_locks[session_id]

    async def _on_session_terminated(self, session_id: str, exit_code: Optional[int]) -> None:
        self._forget_prompt(session_id)
        dispatcher = self._dispatchers.pop(session_id, None)
        if dispatcher is None:
            return

        logger.info("Finalizing session stream", session_id=session_id, exit_code=exit_code)
        await dispatcher.finalize(terminated_status_text(exit_code))

    def reattach(self, session: Session, thread_ts: str) -> StreamDispatcher:
        """Point the session's output at another thread, starting fresh"""
        self._forget_prompt(session.id)
        dispatcher = self._dispatcher_for(session)
        dispatcher.reset()
        dispatcher.thread_ts = thread_ts
        logger.info("Dispatcher moved to new thread", session_id=session.id, thread_ts=thread_ts)
        return dispatcher

    def discard(self, session_id: str) -> None:
        """Drop a dispatcher without delivering its buffer"""
        self._forget_prompt(session_id)
        dispatcher = self._dispatchers.pop(session_id, None)
        if dispatcher is not None:
            dispatcher.reset()

    def close(self) -> None:
        for disconnect in self._disconnects:
            disconnect()
        self._disconnects.clear()
