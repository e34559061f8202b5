"""Storage package for Threadwire session management"""

from .audit_log import SQLAuditLog
from .base import AuditLog, ProjectResolver, SessionStore
from .projects import ProjectManager
from .redis_store import RedisSessionStore, create_redis_client

__all__ = [
    "AuditLog", "ProjectResolver", "SessionStore",
    "SQLAuditLog", "ProjectManager", "RedisSessionStore", "create_redis_client",
]
