"""Session lifecycle management for Threadwire

Coordinates the live process of every session with its durable record:
- One live session per user, enforced against the session store
- Inactivity timeouts that stop idle sessions
- Self-healing when a process died without reporting its exit
- Audit logging of session starts, ends and messages
"""

import asyncio
import uuid
from collections import defaultdict
from typing import Callable, Dict, Optional, Union

import structlog

from threadwire.config import Settings, get_settings
from threadwire.exceptions import NoSessionError, SessionExistsError, SpawnError, StorageError
from threadwire.models.session import (
    ControlKey,
    CreateSessionOptions,
    Session,
    SessionStatus,
    SessionStatusReport,
)
from threadwire.services.process_wrapper import ProcessWrapper
from threadwire.storage.base import AuditLog, ProjectResolver, SessionStore
from threadwire.utils.signals import Signal
from threadwire.utils.timers import ScheduledTask, cancel, schedule


logger = structlog.get_logger(__name__)

ProcessFactory = Callable[[str, str], ProcessWrapper]


class SessionManager:
    """Creates, tracks and stops sessions.

    The manager is the only owner of the in-memory maps of live processes
    and inactivity timers. The session store survives restarts but only
    this object knows whether a process is actually alive; lookups reconcile
    the two.

    Notifications:
        on_session_created(session)
        on_output(session, text)
        on_prompt(session, text)
        on_session_terminated(session_id, exit_code)
    """

    def __init__(
        self,
        store: SessionStore,
        audit_log: AuditLog,
        projects: ProjectResolver,
        settings: Optional[Settings] = None,
        process_factory: Optional[ProcessFactory] = None,
        ttl_seconds: Optional[float] = None,
    ):
        self.settings = settings or get_settings()
        self.ttl_seconds = ttl_seconds or self.settings.session_timeout_seconds
        self.store = store
        self.audit_log = audit_log
        self.projects = projects
        self._process_factory = process_factory or self._default_process_factory

        self._processes: Dict[str, ProcessWrapper] = {}
        self._user_sessions: Dict[str, str] = {}
        self._sessions: Dict[str, Session] = {}
        self._timeouts: Dict[str, ScheduledTask] = {}
        self._user_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

        self.on_session_created: Signal[Callable[[Session], object]] = Signal("session_created")
        self.on_output: Signal[Callable[[Session, str], object]] = Signal("output")
        self.on_prompt: Signal[Callable[[Session, str], object]] = Signal("prompt")
        self.on_session_terminated: Signal[Callable[[str, Optional[int]], object]] = Signal("session_terminated")

    def _default_process_factory(self, session_id: str, project_path: str) -> ProcessWrapper:
        return ProcessWrapper(session_id, project_path, settings=self.settings)

    @property
    def active_session_count(self) -> int:
        return len(self._processes)

    async def get_session_for_user(self, user_id: str) -> Optional[Session]:
        """The user's live session, or None.

        A stored session whose process is missing or dead is cleaned up and
        reported as absent. A live tracked session whose record vanished from
        the store is written back.
        """
        session_id = await self.store.get_session_id_for_user(user_id)
        session = await self.store.get_session(session_id) if session_id else None
        if session is None:
            return await self._recover_tracked_session(user_id)

        process = self._processes.get(session_id)
        if process is None or not process.is_alive():
            logger.warning("Cleaning up session without a live process",
                           session_id=session_id,
                           user_id=user_id)
            await self._cleanup_session(session_id, user_id)
            return None

        return session

    async def _recover_tracked_session(self, user_id: str) -> Optional[Session]:
        # The store lost the record (eviction, flush) while the process lives on
        session_id = self._user_sessions.get(user_id)
        process = self._processes.get(session_id) if session_id else None
        session = self._sessions.get(session_id) if session_id else None
        if process is None or session is None or not process.is_alive():
            return None

        logger.warning("Restoring session record missing from store",
                       session_id=session_id,
                       user_id=user_id)
        await self._save(session)
        return session

    async def create_session(self, opts: CreateSessionOptions) -> Session:
        """Start a new session for ``opts.user_id``

        Raises:
            SessionExistsError: If the user already has a live session
            SpawnError: If the process could not be started
            StorageError: If the session could not be persisted
        """
        async with self._user_locks[opts.user_id]:
            existing = await self.get_session_for_user(opts.user_id)
            if existing:
                raise SessionExistsError(existing.id)

            session = Session(
                id=uuid.uuid4().hex,
                user_id=opts.user_id,
                user_name=opts.user_name,
                channel_id=opts.channel_id,
                thread_ts=opts.message_ts,
                project_path=self._resolve_project_path(opts),
                status=SessionStatus.STARTING,
            )

            logger.info("Creating session",
                        session_id=session.id,
                        user_id=session.user_id,
                        project_path=session.project_path)

            process = self._process_factory(session.id, session.project_path)
            self._wire_process(session, process)

            try:
                await process.spawn()
            except SpawnError as e:
                logger.error("Failed to spawn process", session_id=session.id, error=e.message)
                raise

            # Tracked before the first await so an early exit is cleaned up too
            self._processes[session.id] = process
            self._user_sessions[session.user_id] = session.id
            try:
                await self._save(session)
                await self.audit_log.log_session_start(session)
            except StorageError:
                logger.error("Failed to persist session, rolling back", session_id=session.id)
                await process.terminate()
                await self._cleanup_session(session.id, session.user_id)
                raise

            self._reset_timeout(session.id, session.user_id)

        session.status = SessionStatus.ACTIVE
        self.on_session_created.emit(session)
        return session

    def _resolve_project_path(self, opts: CreateSessionOptions) -> str:
        if not opts.project_path:
            return self.projects.get_user_project_dir(opts.user_id)

        validated = self.projects.validate_project_path(opts.project_path, opts.user_id)
        if validated:
            return validated

        logger.warning("Invalid project path, using default",
                       user_id=opts.user_id,
                       requested_path=opts.project_path)
        return self.projects.get_user_project_dir(opts.user_id)

    def _wire_process(self, session: Session, process: ProcessWrapper) -> None:
        process.on_output.connect(lambda text: self._handle_output(session, text))
        process.on_prompt.connect(lambda text: self._handle_prompt(session, text))
        process.on_exit.connect(lambda code: self._handle_process_exit(session.id, session.user_id, code))
        process.on_ready.connect(
            lambda: self._update_session_status(session.id, SessionStatus.ACTIVE, only_from=SessionStatus.STARTING)
        )

    async def _resolve_live(self, user_id: str):
        session = await self.get_session_for_user(user_id)
        if not session:
            raise NoSessionError(user_id)

        process = self._processes.get(session.id)
        if process is None or not process.is_alive():
            raise NoSessionError(user_id)

        return session, process

    async def send_input(self, user_id: str, text: str) -> None:
        """Forward a line of user input to the user's session

        Raises:
            NoSessionError: If the user has no live session
            StorageError: If the refreshed record could not be stored
        """
        session, process = await self._resolve_live(user_id)

        logger.debug("Sending input to process", session_id=session.id, input_length=len(text))
        process.send_input(text)

        session.touch(SessionStatus.ACTIVE)
        await self._save(session)
        await self._log_message(session.id, "user", text)
        self._reset_timeout(session.id, user_id)

    async def send_control(self, user_id: str, key: Union[ControlKey, str]) -> None:
        """Send an accept/reject/escape/interrupt key to the user's session

        Raises:
            NoSessionError: If the user has no live session
            StorageError: If the refreshed record could not be stored
        """
        key = ControlKey(key)
        session, process = await self._resolve_live(user_id)

        logger.debug("Sending control key", session_id=session.id, key=key.value)
        process.send_control(key)

        if key in (ControlKey.ACCEPT, ControlKey.REJECT):
            session.touch(SessionStatus.ACTIVE)
        else:
            session.touch()
        await self._save(session)
        await self._log_message(session.id, "system", f"control:{key.value}")
        self._reset_timeout(session.id, user_id)

    async def terminate_session(self, user_id: str) -> bool:
        """Stop the user's session. Returns False if there was none."""
        session = await self.get_session_for_user(user_id)
        if not session:
            return False

        logger.info("Terminating session", session_id=session.id, user_id=user_id)
        await self._terminate(session.id, user_id)
        session.status = SessionStatus.TERMINATED
        return True

    async def get_session_status(self, user_id: str) -> SessionStatusReport:
        session = await self.get_session_for_user(user_id)
        if not session:
            return SessionStatusReport(has_session=False)

        process = self._processes.get(session.id)
        return SessionStatusReport(
            has_session=True,
            session=session,
            process_status=process.status if process else None,
        )

    async def _terminate(self, session_id: str, user_id: str) -> None:
        cancel(self._timeouts.pop(session_id, None))

        process = self._processes.get(session_id)
        if process is not None:
            await process.terminate()

        await self._cleanup_session(session_id, user_id)

    # Process notifications

    async def _handle_output(self, session: Session, text: str) -> None:
        self.on_output.emit(session, text)
        await self._log_message(session.id, "assistant", text)

    async def _handle_prompt(self, session: Session, text: str) -> None:
        session.status = SessionStatus.WAITING_INPUT
        self.on_prompt.emit(session, text)
        await self._update_session_status(session.id, SessionStatus.WAITING_INPUT)

    async def _handle_process_exit(self, session_id: str, user_id: str, exit_code: Optional[int]) -> None:
        logger.info("Process exited", session_id=session_id, exit_code=exit_code)

        try:
            await self.audit_log.log_session_end(session_id, exit_code)
        except StorageError as e:
            logger.error("Failed to log session end", session_id=session_id, error=e.message)

        if session_id in self._processes:
            try:
                await self._cleanup_session(session_id, user_id)
            except StorageError as e:
                logger.error("Failed to clean up exited session", session_id=session_id, error=e.message)

        self.on_session_terminated.emit(session_id, exit_code)

    async def _update_session_status(
        self,
        session_id: str,
        status: SessionStatus,
        only_from: Optional[SessionStatus] = None,
    ) -> None:
        if session_id not in self._processes:
            return

        try:
            session = await self.store.get_session(session_id)
            if session is None:
                return
            if only_from is not None and session.status != only_from:
                return
            session.touch(status)
            await self._save(session)
        except StorageError as e:
            logger.error("Failed to update session status",
                         session_id=session_id,
                         status=status.value,
                         error=e.message)

    async def _log_message(self, session_id: str, role: str, content: str) -> None:
        try:
            await self.audit_log.log_message(session_id, role, content)
        except Exception:
            logger.exception("Failed to log message", session_id=session_id, role=role)

    # Bookkeeping

    async def _save(self, session: Session) -> None:
        if session.id in self._processes:
            self._sessions[session.id] = session
        await self.store.set_session(session.id, session.user_id, session, self.ttl_seconds)

    async def _cleanup_session(self, session_id: str, user_id: str) -> None:
        cancel(self._timeouts.pop(session_id, None))
        self._processes.pop(session_id, None)
        self._sessions.pop(session_id, None)
        if self._user_sessions.get(user_id) == session_id:
            del self._user_sessions[user_id]
        lock = self._user_locks.get(user_id)
        if lock is not None and not lock.locked():
            del self._user_locks[user_id]

        await self.store.delete_session(session_id, user_id)

    def _reset_timeout(self, session_id: str, user_id: str) -> None:
        cancel(self._timeouts.pop(session_id, None))

        async def on_timeout() -> None:
            logger.info("Session timed out", session_id=session_id, user_id=user_id)
            if session_id in self._processes:
                await self._terminate(session_id, user_id)

        self._timeouts[session_id] = schedule(self.ttl_seconds, on_timeout, name="inactivity-timeout")

    async def shutdown(self) -> None:
        """Stop every tracked process; individual failures are tolerated"""
        logger.info("Shutting down session manager", sessions=len(self._processes))

        for timer in self._timeouts.values():
            timer.cancel()
        self._timeouts.clear()

        processes = list(self._processes.items())
        results = await asyncio.gather(
            *(process.terminate() for _, process in processes),
            return_exceptions=True,
        )
        for (session_id, _), result in zip(processes, results):
            if isinstance(result, Exception):
                logger.warning("Failed to terminate process during shutdown",
                               session_id=session_id,
                               error=str(result))

        self._processes.clear()
        self._user_sessions.clear()
        self._sessions.clear()
        self._user_locks.clear()
