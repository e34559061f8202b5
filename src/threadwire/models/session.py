"""Session models"""
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SessionStatus(str, Enum):
    """Logical session status"""
    STARTING = "starting"
    ACTIVE = "active"
    WAITING_INPUT = "waiting_input"
    TERMINATED = "terminated"


class ProcessStatus(str, Enum):
    """Supervised process status"""
    STARTING = "starting"
    READY = "ready"
    BUSY = "busy"
    TERMINATED = "terminated"


class ControlKey(str, Enum):
    """Keys that can be injected without a trailing newline"""
    ACCEPT = "accept"
    REJECT = "reject"
    ESCAPE = "escape"
    INTERRUPT = "interrupt"

    @property
    def sequence(self) -> str:
        return _CONTROL_SEQUENCES[self]


_CONTROL_SEQUENCES = {
    ControlKey.ACCEPT: "y",
    ControlKey.REJECT: "n",
    ControlKey.ESCAPE: "\x1b",
    ControlKey.INTERRUPT: "\x03",
}


class Session(BaseModel):
    """One user's engagement with a supervised process.

    This is the only durable piece of session state; the live process
    handle is kept in memory by the session manager.
    """

    id: str
    user_id: str
    user_name: str
    channel_id: str
    thread_ts: str
    project_path: str
    status: SessionStatus = SessionStatus.STARTING
    created_at: str = Field(default_factory=utcnow_iso)
    last_activity_at: str = Field(default_factory=utcnow_iso)

    def touch(self, status: Optional[SessionStatus] = None) -> None:
        """Record activity, optionally moving to ``status``"""
        self.last_activity_at = utcnow_iso()
        if status is not None:
            self.status = status


class CreateSessionOptions(BaseModel):
    """Arguments for SessionManager.create_session"""

    user_id: str
    user_name: str
    channel_id: str
    message_ts: str
    project_path: Optional[str] = None


class SessionStatusReport(BaseModel):
    """Result of SessionManager.get_session_status"""

    has_session: bool
    session: Optional[Session] = None
    process_status: Optional[ProcessStatus] = None
