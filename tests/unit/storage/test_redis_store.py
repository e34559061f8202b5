"""
Unit tests for the Redis session store
"""
import pytest
from unittest.mock import AsyncMock, MagicMock, call

from redis.exceptions import ConnectionError as RedisConnectionError

from threadwire.exceptions import ErrorKind, StorageError
from threadwire.models.session import Session, SessionStatus
from threadwire.storage.redis_store import DELETE_SCRIPT, RedisSessionStore


@pytest.fixture
def pipe():
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[True, True])
    return pipe


@pytest.fixture
def mock_redis(pipe):
    """Mock redis.asyncio client with a transactional pipeline"""
    client = MagicMock()
    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=pipe)
    context.__aexit__ = AsyncMock(return_value=False)
    client.pipeline.return_value = context
    client.get = AsyncMock(return_value=None)
    client.eval = AsyncMock(return_value=1)
    client.mget = AsyncMock(return_value=[])
    return client


@pytest.fixture
def redis_store(mock_redis):
    return RedisSessionStore(mock_redis)


@pytest.fixture
def sample_session():
    return Session(
        id="s1",
        user_id="U1",
        user_name="alice",
        channel_id="C1",
        thread_ts="1700000000.000100",
        project_path="/tmp/projects/U1",
        status=SessionStatus.ACTIVE,
    )


class TestSetSession:
    """Test atomic record and reverse index writes"""

    @pytest.mark.asyncio
    async def test_writes_both_keys_with_ttl(self, redis_store, mock_redis, pipe, sample_session):
        await redis_store.set_session("s1", "U1", sample_session, 3600)

        mock_redis.pipeline.assert_called_once_with(transaction=True)
        assert pipe.setex.call_args_list == [
            call("session:s1", 3600, sample_session.model_dump_json()),
            call("session:user:U1", 3600, "s1"),
        ]
        pipe.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_writes_without_ttl(self, redis_store, pipe, sample_session):
        await redis_store.set_session("s1", "U1", sample_session)

        assert pipe.set.call_count == 2
        pipe.setex.assert_not_called()

    @pytest.mark.asyncio
    async def test_redis_failure_raises_storage_error(self, redis_store, pipe, sample_session):
        pipe.execute.side_effect = RedisConnectionError("connection refused")

        with pytest.raises(StorageError) as exc_info:
            await redis_store.set_session("s1", "U1", sample_session, 60)

        assert exc_info.value.kind == ErrorKind.STORAGE_FAILED
        assert exc_info.value.context["operation"] == "set_session"


class TestGetSession:
    """Test record lookups"""

    @pytest.mark.asyncio
    async def test_round_trip(self, redis_store, mock_redis, sample_session):
        mock_redis.get.return_value = sample_session.model_dump_json()

        session = await redis_store.get_session("s1")

        mock_redis.get.assert_awaited_once_with("session:s1")
        assert session == sample_session

    @pytest.mark.asyncio
    async def test_missing(self, redis_store):
        assert await redis_store.get_session("nope") is None

    @pytest.mark.asyncio
    async def test_corrupt_record_is_ignored(self, redis_store, mock_redis):
        mock_redis.get.return_value = "{not json"
        assert await redis_store.get_session("s1") is None

    @pytest.mark.asyncio
    async def test_user_index_decodes_bytes(self, redis_store, mock_redis):
        mock_redis.get.return_value = b"s1"

        assert await redis_store.get_session_id_for_user("U1") == "s1"
        mock_redis.get.assert_awaited_once_with("session:user:U1")

    @pytest.mark.asyncio
    async def test_lookup_failure(self, redis_store, mock_redis):
        mock_redis.get.side_effect = RedisConnectionError("down")

        with pytest.raises(StorageError):
            await redis_store.get_session_id_for_user("U1")


class TestDeleteSession:
    """Test conditional deletion"""

    @pytest.mark.asyncio
    async def test_uses_conditional_script(self, redis_store, mock_redis):
        await redis_store.delete_session("s1", "U1")

        mock_redis.eval.assert_awaited_once_with(
            DELETE_SCRIPT, 2, "session:s1", "session:user:U1", "s1"
        )

    @pytest.mark.asyncio
    async def test_failure(self, redis_store, mock_redis):
        mock_redis.eval.side_effect = RedisConnectionError("down")

        with pytest.raises(StorageError):
            await redis_store.delete_session("s1", "U1")


class TestMaintenance:
    """Test TTL refresh and enumeration"""

    @pytest.mark.asyncio
    async def test_touch_session(self, redis_store, pipe):
        await redis_store.touch_session("s1", "U1", 120)

        assert pipe.expire.call_args_list == [
            call("session:s1", 120),
            call("session:user:U1", 120),
        ]

    @pytest.mark.asyncio
    async def test_get_all_session_ids(self, redis_store, mock_redis):
        async def scan(match):
            for key in ("session:user:U1", "session:user:U2"):
                yield key

        mock_redis.scan_iter = MagicMock(side_effect=scan)
        mock_redis.mget.return_value = ["s1", None]

        assert await redis_store.get_all_session_ids() == ["s1"]
        mock_redis.mget.assert_awaited_once_with(["session:user:U1", "session:user:U2"])

    @pytest.mark.asyncio
    async def test_get_all_session_ids_empty(self, redis_store, mock_redis):
        async def scan(match):
            return
            yield

        mock_redis.scan_iter = MagicMock(side_effect=scan)

        assert await redis_store.get_all_session_ids() == []
        mock_redis.mget.assert_not_awaited()
