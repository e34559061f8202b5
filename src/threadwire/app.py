"""Threadwire application wiring

Builds the storage backends, destination, session manager and dispatch
router from settings and manages their startup and shutdown. The chat
platform front end (event subscription, command parsing) drives the
resulting ``SessionManager``.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import redis.asyncio as aioredis
import structlog

from threadwire.config import Settings, get_settings
from threadwire.destinations.base import Destination
from threadwire.destinations.slack import SlackDestination
from threadwire.services.dispatch_router import DispatchRouter
from threadwire.services.session_manager import SessionManager
from threadwire.storage.audit_log import SQLAuditLog
from threadwire.storage.projects import ProjectManager
from threadwire.storage.redis_store import RedisSessionStore, create_redis_client
from threadwire.utils.logging import setup_logging


logger = structlog.get_logger(__name__)


class Threadwire:
    """Owns every long-lived component of a running service"""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        redis_client: Optional[aioredis.Redis] = None,
        destination: Optional[Destination] = None,
    ):
        self.settings = settings or get_settings()
        self.redis = redis_client or create_redis_client(self.settings.redis_url)
        self.store = RedisSessionStore(self.redis)
        self.audit_log = SQLAuditLog.from_url(self.settings.database_url)
        self.projects = ProjectManager(self.settings.projects_dir)
        self.destination = destination or SlackDestination(token=self.settings.slack_bot_token)
        self.session_manager = SessionManager(
            self.store,
            self.audit_log,
            self.projects,
            settings=self.settings,
        )
        self.router = DispatchRouter(self.session_manager, self.destination, self.settings)

    async def start(self) -> None:
        logger.info("Starting Threadwire",
                    version=self.settings.app_version,
                    command=self.settings.process_command,
                    projects_dir=str(self.projects.base_dir))
        try:
            await self.audit_log.init_schema()
        except Exception as e:
            logger.error("Failed to initialize Threadwire", error=str(e), error_type=type(e).__name__)
            raise
        logger.info("Threadwire startup complete")

    async def stop(self) -> None:
        logger.info("Shutting down Threadwire", active_sessions=self.session_manager.active_session_count)
        await self.session_manager.shutdown()
        self.router.close()
        await self.audit_log.close()
        await self.redis.aclose()
        logger.info("Threadwire shutdown complete")


@asynccontextmanager
async def run(settings: Optional[Settings] = None, **overrides) -> AsyncIterator[Threadwire]:
    """Configure logging, start the service and stop it on exit"""
    settings = settings or get_settings()
    setup_logging(settings.log_level, settings.log_format)

    app = Threadwire(settings, **overrides)
    await app.start()
    try:
        yield app
    finally:
        await app.stop()
