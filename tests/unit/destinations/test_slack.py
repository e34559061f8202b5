"""Tests for the Slack destination"""
import pytest
from unittest.mock import AsyncMock, MagicMock

from slack_sdk.errors import SlackApiError

from threadwire.destinations.base import UpdateResult
from threadwire.destinations.slack import SlackDestination
from threadwire.exceptions import DestinationError, ErrorKind


def api_error(code):
    return SlackApiError(f"The request to the Slack API failed: {code}", {"ok": False, "error": code})


@pytest.fixture
def client():
    client = MagicMock()
    client.chat_postMessage = AsyncMock(return_value={"ok": True, "ts": "1700000001.000200"})
    client.chat_update = AsyncMock(return_value={"ok": True})
    return client


@pytest.fixture
def slack(client):
    return SlackDestination(client=client)


class TestSlackDestination:
    """Test posting and updating thread messages"""

    @pytest.mark.asyncio
    async def test_post_unit_replies_in_thread(self, slack, client):
        unit_id = await slack.post_unit("C1", "1700000000.000100", "hello")

        assert unit_id == "1700000001.000200"
        client.chat_postMessage.assert_awaited_once_with(
            channel="C1",
            thread_ts="1700000000.000100",
            text="hello",
            unfurl_links=False,
            unfurl_media=False,
        )

    @pytest.mark.asyncio
    async def test_post_failure_raises(self, slack, client):
        client.chat_postMessage.side_effect = api_error("channel_not_found")

        with pytest.raises(DestinationError) as exc_info:
            await slack.post_unit("C1", "1.0", "hello")

        assert exc_info.value.kind == ErrorKind.DESTINATION_FAILED

    @pytest.mark.asyncio
    async def test_post_without_ts_raises(self, slack, client):
        client.chat_postMessage.return_value = {"ok": True}

        with pytest.raises(DestinationError):
            await slack.post_unit("C1", "1.0", "hello")

    @pytest.mark.asyncio
    async def test_update_unit(self, slack, client):
        result = await slack.update_unit("C1", "1700000001.000200", "hello again")

        assert result == UpdateResult.OK
        client.chat_update.assert_awaited_once_with(channel="C1", ts="1700000001.000200", text="hello again")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code", ["message_not_found", "cant_update_message", "edit_window_closed"])
    async def test_stale_message_is_not_found(self, slack, client, code):
        client.chat_update.side_effect = api_error(code)

        assert await slack.update_unit("C1", "1.0", "x") == UpdateResult.NOT_FOUND

    @pytest.mark.asyncio
    async def test_other_update_errors_raise(self, slack, client):
        client.chat_update.side_effect = api_error("ratelimited")

        with pytest.raises(DestinationError):
            await slack.update_unit("C1", "1.0", "x")
