"""Storage contracts consumed by the session manager"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from threadwire.models.session import Session


class SessionStore(ABC):
    """Live session records with a user -> session reverse index.

    Records expire on their own after ``ttl_seconds`` so abandoned sessions
    are reclaimed even if this process never cleans them up.
    """

    @abstractmethod
    async def set_session(self, session_id: str, user_id: str, record: Session, ttl_seconds: Optional[int] = None) -> None:
        """Write the record and the reverse index together"""

    @abstractmethod
    async def get_session(self, session_id: str) -> Optional[Session]:
        ...

    @abstractmethod
    async def get_session_id_for_user(self, user_id: str) -> Optional[str]:
        ...

    @abstractmethod
    async def delete_session(self, session_id: str, user_id: str) -> None:
        """Remove the record and, if it still points here, the reverse index"""


class AuditLog(ABC):
    """Append-only history of sessions and messages"""

    @abstractmethod
    async def log_session_start(self, session: Session) -> None:
        ...

    @abstractmethod
    async def log_session_end(self, session_id: str, exit_code: Optional[int] = None) -> None:
        ...

    @abstractmethod
    async def log_message(self, session_id: str, role: str, content: str) -> None:
        """Record one message. Must not raise: message history is best-effort."""

    async def get_session_history(self, user_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        return []

    async def get_session_messages(self, session_id: str, limit: int = 100) -> List[Dict[str, Any]]:
        return []


class ProjectResolver(ABC):
    """Maps users to the directories their sessions may run in"""

    @abstractmethod
    def validate_project_path(self, requested_path: str, user_id: str) -> Optional[str]:
        """Resolved path if ``requested_path`` is inside the user's root, else None"""

    @abstractmethod
    def get_user_project_dir(self, user_id: str) -> str:
        ...
