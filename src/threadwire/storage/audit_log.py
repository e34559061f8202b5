"""SQL audit log for session history

Keeps a durable record of every session and the messages exchanged in it.
Runs on any SQLAlchemy async driver; the default is SQLite via aiosqlite.
"""
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from threadwire.config import get_settings
from threadwire.exceptions import StorageError
from threadwire.models.audit import Base, MessageRecord, SessionRecord
from threadwire.models.session import Session

from .base import AuditLog


logger = structlog.get_logger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SQLAuditLog(AuditLog):
    """Audit log stored in ``sessions`` and ``messages`` tables"""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self.session_maker = async_sessionmaker(engine, expire_on_commit=False)

    @classmethod
    def from_url(cls, url: Optional[str] = None) -> "SQLAuditLog":
        """Build an audit log for ``url`` (defaults to the configured database)"""
        settings = get_settings()
        url = url or settings.database_url

        parsed = make_url(url)
        if parsed.get_backend_name() == "sqlite" and parsed.database not in (None, "", ":memory:"):
            Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)

        engine = create_async_engine(url, echo=settings.debug)
        return cls(engine)

    async def init_schema(self) -> None:
        """Create tables if they do not exist"""
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            logger.info("Audit log initialized", url=self.engine.url.render_as_string(hide_password=True))
        except SQLAlchemyError as e:
            logger.error("Failed to initialize audit log", error=str(e))
            raise StorageError("init_schema", e) from e

    async def close(self) -> None:
        await self.engine.dispose()
        logger.info("Audit log connections closed")

    async def log_session_start(self, session: Session) -> None:
        try:
            async with self.session_maker() as db:
                db.add(SessionRecord(
                    id=session.id,
                    user_id=session.user_id,
                    user_name=session.user_name,
                    channel_id=session.channel_id,
                    thread_ts=session.thread_ts,
                    project_path=session.project_path,
                    status="active",
                    created_at=_now(),
                ))
                await db.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to log session start", session_id=session.id, error=str(e))
            raise StorageError("log_session_start", e) from e

        logger.debug("Session logged", session_id=session.id)

    async def log_session_end(self, session_id: str, exit_code: Optional[int] = None) -> None:
        try:
            async with self.session_maker() as db:
                await db.execute(
                    update(SessionRecord)
                    .where(SessionRecord.id == session_id)
                    .values(status="terminated", ended_at=_now(), exit_code=exit_code)
                )
                await db.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to log session end", session_id=session_id, error=str(e))
            raise StorageError("log_session_end", e) from e

        logger.debug("Session end logged", session_id=session_id, exit_code=exit_code)

    async def log_message(self, session_id: str, role: str, content: str) -> None:
        try:
            async with self.session_maker() as db:
                db.add(MessageRecord(
                    session_id=session_id,
                    role=role,
                    content=content,
                    timestamp=_now(),
                ))
                await db.commit()
        except SQLAlchemyError as e:
            # Message history is non-critical
            logger.error("Failed to log message", session_id=session_id, role=role, error=str(e))

    async def get_session_history(self, user_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        """Most recent sessions of ``user_id``, newest first"""
        async with self.session_maker() as db:
            result = await db.execute(
                select(SessionRecord)
                .where(SessionRecord.user_id == user_id)
                .order_by(SessionRecord.created_at.desc())
                .limit(limit)
            )
            return [
                {
                    "id": row.id,
                    "user_id": row.user_id,
                    "user_name": row.user_name,
                    "channel_id": row.channel_id,
                    "thread_ts": row.thread_ts,
                    "project_path": row.project_path,
                    "status": row.status,
                    "created_at": row.created_at,
                    "ended_at": row.ended_at,
                    "exit_code": row.exit_code,
                }
                for row in result.scalars()
            ]

    async def get_session_messages(self, session_id: str, limit: int = 100) -> List[Dict[str, Any]]:
        """Messages of one session in the order they were logged"""
        async with self.session_maker() as db:
            result = await db.execute(
                select(MessageRecord)
                .where(MessageRecord.session_id == session_id)
                .order_by(MessageRecord.timestamp.asc(), MessageRecord.id.asc())
                .limit(limit)
            )
            return [
                {
                    "session_id": row.session_id,
                    "role": row.role,
                    "content": row.content,
                    "timestamp": row.timestamp,
                }
                for row in result.scalars()
            ]
