"""Redis-backed session store for Threadwire

Each live session is kept under two keys:
- ``session:<id>`` holds the JSON-serialized Session record
- ``session:user:<user_id>`` holds the id of the user's current session

Both keys are written in one MULTI/EXEC transaction with the same TTL, so
Redis reclaims abandoned sessions on its own.
"""

from typing import List, Optional

import redis.asyncio as aioredis
import structlog
from pydantic import ValidationError
from redis.exceptions import RedisError

from threadwire.config import get_settings
from threadwire.exceptions import StorageError
from threadwire.models.session import Session

from .base import SessionStore


logger = structlog.get_logger(__name__)

# Delete the record; drop the reverse index only if it still points at it
DELETE_SCRIPT = """
redis.call('DEL', KEYS[1])
if redis.call('GET', KEYS[2]) == ARGV[1] then
    redis.call('DEL', KEYS[2])
end
return 1
"""


def create_redis_client(url: Optional[str] = None) -> aioredis.Redis:
    """Create a pooled asyncio Redis client"""
    settings = get_settings()
    pool = aioredis.ConnectionPool.from_url(
        url or settings.redis_url,
        max_connections=settings.redis_max_connections,
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
        health_check_interval=30,
    )
    return aioredis.Redis(connection_pool=pool)


class RedisSessionStore(SessionStore):
    """Session store on top of a ``redis.asyncio`` client.

    The client should be created with ``decode_responses=True``; bytes
    replies are decoded defensively anyway.
    """

    session_prefix = "session:"
    user_prefix = "session:user:"

    def __init__(self, redis: aioredis.Redis):
        self.redis = redis

    def _session_key(self, session_id: str) -> str:
        return f"{self.session_prefix}{session_id}"

    def _user_key(self, user_id: str) -> str:
        return f"{self.user_prefix}{user_id}"

    @staticmethod
    def _decode(value) -> Optional[str]:
        if isinstance(value, bytes):
            return value.decode()
        return value

    async def set_session(
        self,
        session_id: str,
        user_id: str,
        record: Session,
        ttl_seconds: Optional[int] = None,
    ) -> None:
        """Store the record and the user's reverse index atomically

        Args:
            session_id: Session identifier
            user_id: Owner of the session
            record: Session record to serialize
            ttl_seconds: Expiry for both keys; no expiry when None

        Raises:
            StorageError: If the Redis transaction fails
        """
        serialized = record.model_dump_json()
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                if ttl_seconds:
                    pipe.setex(self._session_key(session_id), ttl_seconds, serialized)
                    pipe.setex(self._user_key(user_id), ttl_seconds, session_id)
                else:
                    pipe.set(self._session_key(session_id), serialized)
                    pipe.set(self._user_key(user_id), session_id)
                await pipe.execute()
        except RedisError as e:
            logger.error("Failed to store session", session_id=session_id, error=str(e))
            raise StorageError("set_session", e) from e

        logger.debug("Session stored", session_id=session_id, user_id=user_id, ttl=ttl_seconds)

    async def get_session(self, session_id: str) -> Optional[Session]:
        try:
            data = await self.redis.get(self._session_key(session_id))
        except RedisError as e:
            raise StorageError("get_session", e) from e

        if not data:
            return None

        try:
            return Session.model_validate_json(self._decode(data))
        except ValidationError as e:
            logger.warning("Invalid session data format", session_id=session_id, error=str(e))
            return None

    async def get_session_id_for_user(self, user_id: str) -> Optional[str]:
        try:
            value = await self.redis.get(self._user_key(user_id))
        except RedisError as e:
            raise StorageError("get_session_id_for_user", e) from e
        return self._decode(value)

    async def delete_session(self, session_id: str, user_id: str) -> None:
        try:
            await self.redis.eval(
                DELETE_SCRIPT,
                2,
                self._session_key(session_id),
                self._user_key(user_id),
                session_id,
            )
        except RedisError as e:
            logger.error("Failed to delete session", session_id=session_id, error=str(e))
            raise StorageError("delete_session", e) from e

        logger.debug("Session deleted", session_id=session_id, user_id=user_id)

    async def touch_session(self, session_id: str, user_id: str, ttl_seconds: int) -> None:
        """Push back the expiry of both keys without rewriting the record"""
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.expire(self._session_key(session_id), ttl_seconds)
                pipe.expire(self._user_key(user_id), ttl_seconds)
                await pipe.execute()
        except RedisError as e:
            raise StorageError("touch_session", e) from e

    async def get_all_session_ids(self) -> List[str]:
        """Ids of every session that still has a reverse index entry"""
        try:
            keys = [key async for key in self.redis.scan_iter(match=f"{self.user_prefix}*")]
            if not keys:
                return []
            values = await self.redis.mget(keys)
        except RedisError as e:
            raise StorageError("get_all_session_ids", e) from e

        return [self._decode(value) for value in values if value]
