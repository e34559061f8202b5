"""
Shared fixtures and in-memory collaborators for the Threadwire test suite
"""
import itertools
from typing import Dict, List, Optional, Set, Tuple

import pytest

from threadwire.config import Settings
from threadwire.destinations.base import Destination, UpdateResult
from threadwire.exceptions import DestinationError, SpawnError
from threadwire.models.session import ControlKey, ProcessStatus, Session
from threadwire.storage.base import AuditLog, SessionStore
from threadwire.storage.projects import ProjectManager
from threadwire.utils.signals import Signal


# ==================== COLLABORATOR FAKES ====================

class InMemorySessionStore(SessionStore):
    """Dict-backed session store with the same reverse-index rules as Redis"""

    def __init__(self):
        self.records: Dict[str, Session] = {}
        self.user_index: Dict[str, str] = {}
        self.ttls: Dict[str, Optional[float]] = {}

    async def set_session(self, session_id, user_id, record, ttl_seconds=None):
        self.records[session_id] = record.model_copy(deep=True)
        self.user_index[user_id] = session_id
        self.ttls[session_id] = ttl_seconds

    async def get_session(self, session_id):
        record = self.records.get(session_id)
        return record.model_copy(deep=True) if record else None

    async def get_session_id_for_user(self, user_id):
        return self.user_index.get(user_id)

    async def delete_session(self, session_id, user_id):
        self.records.pop(session_id, None)
        self.ttls.pop(session_id, None)
        if self.user_index.get(user_id) == session_id:
            del self.user_index[user_id]


class FakeAuditLog(AuditLog):
    """Records every audit call"""

    def __init__(self):
        self.started: List[str] = []
        self.ended: List[Tuple[str, Optional[int]]] = []
        self.messages: List[Tuple[str, str, str]] = []

    async def log_session_start(self, session):
        self.started.append(session.id)

    async def log_session_end(self, session_id, exit_code=None):
        self.ended.append((session_id, exit_code))

    async def log_message(self, session_id, role, content):
        self.messages.append((session_id, role, content))


class FakeDestination(Destination):
    """Keeps posted units in memory.

    ``missing`` holds unit ids whose updates report NOT_FOUND; ``fail``
    makes every call raise a DestinationError.
    """

    def __init__(self):
        self._ids = itertools.count(1)
        self.units: Dict[str, str] = {}
        self.posts: List[Tuple[str, str, str]] = []
        self.updates: List[Tuple[str, str]] = []
        self.missing: Set[str] = set()
        self.fail = False

    async def post_unit(self, channel, thread, text):
        if self.fail:
            raise DestinationError("post_unit")
        unit_id = f"{next(self._ids)}.000"
        self.units[unit_id] = text
        self.posts.append((unit_id, thread, text))
        return unit_id

    async def update_unit(self, channel, unit_id, text):
        if self.fail:
            raise DestinationError("update_unit")
        self.updates.append((unit_id, text))
        if unit_id in self.missing:
            return UpdateResult.NOT_FOUND
        self.units[unit_id] = text
        return UpdateResult.OK

    @property
    def posted_texts(self) -> List[str]:
        return [text for _, _, text in self.posts]


class FakeProcess:
    """Stands in for ProcessWrapper without spawning anything"""

    def __init__(self, session_id: str, project_path: str, fail_spawn: bool = False):
        self.session_id = session_id
        self.project_path = project_path
        self.fail_spawn = fail_spawn

        self.on_output = Signal("output")
        self.on_raw_output = Signal("raw_output")
        self.on_prompt = Signal("prompt")
        self.on_exit = Signal("exit")
        self.on_ready = Signal("ready")

        self.status = ProcessStatus.STARTING
        self.inputs: List[str] = []
        self.controls: List[ControlKey] = []
        self.terminate_calls = 0
        self._alive = False

    async def spawn(self):
        if self.fail_spawn:
            self.status = ProcessStatus.TERMINATED
            raise SpawnError("no such binary")
        self._alive = True

    def is_alive(self):
        return self._alive

    def send_input(self, text):
        self.status = ProcessStatus.BUSY
        self.inputs.append(text)

    def send_control(self, key):
        self.controls.append(ControlKey(key))

    def exit(self, code: Optional[int] = 0):
        self._alive = False
        self.status = ProcessStatus.TERMINATED
        self.on_exit.emit(code)

    def die_silently(self):
        """Process gone without an exit notification"""
        self._alive = False
        self.status = ProcessStatus.TERMINATED

    async def terminate(self):
        self.terminate_calls += 1
        if self._alive:
            self.exit(0)


# ==================== FIXTURES ====================

@pytest.fixture
def settings(tmp_path):
    """Settings with short timings so timer-driven paths finish quickly"""
    return Settings(
        projects_dir=str(tmp_path / "projects"),
        database_url="sqlite+aiosqlite:///:memory:",
        process_command="sh",
        output_debounce_seconds=0.05,
        ready_delay_seconds=0.1,
        kill_timeout_seconds=0.5,
        dispatch_debounce_seconds=0.05,
        dispatch_chunk_size=3900,
        dispatch_max_updates=5,
        log_format="console",
    )


@pytest.fixture
def store():
    return InMemorySessionStore()


@pytest.fixture
def audit_log():
    return FakeAuditLog()


@pytest.fixture
def destination():
    return FakeDestination()


@pytest.fixture
def projects(settings):
    return ProjectManager(settings.projects_dir)


@pytest.fixture
def fake_processes():
    """Factory producing FakeProcess instances; keeps them for inspection"""
    created: List[FakeProcess] = []

    class Factory:
        fail_spawn = False
        processes = created

        def __call__(self, session_id, project_path):
            process = FakeProcess(session_id, project_path, fail_spawn=self.fail_spawn)
            created.append(process)
            return process

    return Factory()
