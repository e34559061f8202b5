"""Data models for Threadwire"""

from .audit import Base, MessageRecord, SessionRecord
from .session import (
    ControlKey,
    CreateSessionOptions,
    ProcessStatus,
    Session,
    SessionStatus,
    SessionStatusReport,
)

__all__ = [
    "Base", "MessageRecord", "SessionRecord",
    "ControlKey", "CreateSessionOptions", "ProcessStatus",
    "Session", "SessionStatus", "SessionStatusReport",
]
