"""Error taxonomy for Threadwire

Every error raised across a component boundary is a ``ThreadwireError``
carrying an ``ErrorKind``. Callers branch on ``err.kind`` rather than on the
exception class.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    """Closed set of failure kinds"""
    SPAWN_FAILED = "spawn_failed"
    NO_SESSION = "no_session"
    SESSION_EXISTS = "session_exists"
    STORAGE_FAILED = "storage_failed"
    DESTINATION_FAILED = "destination_failed"


class ThreadwireError(Exception):
    """Base error with a stable kind and structured context"""

    kind: ErrorKind

    def __init__(
        self,
        message: str,
        kind: ErrorKind,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "context": self.context,
        }


class SpawnError(ThreadwireError):
    """The supervised process could not be created"""

    def __init__(self, reason: str, cause: Optional[BaseException] = None):
        super().__init__(
            f"Failed to spawn process: {reason}",
            ErrorKind.SPAWN_FAILED,
            {"cause": str(cause) if cause else None},
        )


class NoSessionError(ThreadwireError):
    """The user has no live session"""

    def __init__(self, user_id: Optional[str] = None):
        super().__init__(
            "No active session found",
            ErrorKind.NO_SESSION,
            {"user_id": user_id},
        )


class SessionExistsError(ThreadwireError):
    """A session is already active for the user"""

    def __init__(self, existing_session_id: str):
        super().__init__(
            "User already has an active session",
            ErrorKind.SESSION_EXISTS,
            {"existing_session_id": existing_session_id},
        )


class StorageError(ThreadwireError):
    """A store or audit log operation failed"""

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        super().__init__(
            f"Storage operation failed: {operation}",
            ErrorKind.STORAGE_FAILED,
            {"operation": operation, "cause": str(cause) if cause else None},
        )


class DestinationError(ThreadwireError):
    """Posting to or updating the messaging destination failed"""

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        super().__init__(
            f"Destination operation failed: {operation}",
            ErrorKind.DESTINATION_FAILED,
            {"operation": operation, "cause": str(cause) if cause else None},
        )
