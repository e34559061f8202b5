"""Slack destination backed by the Web API"""

from typing import Optional

import structlog
from slack_sdk.errors import SlackApiError
from slack_sdk.web.async_client import AsyncWebClient

from threadwire.config import get_settings
from threadwire.exceptions import DestinationError

from .base import Destination, UpdateResult


logger = structlog.get_logger(__name__)

# Slack error codes meaning the message cannot be edited any more
STALE_MESSAGE_ERRORS = frozenset({"message_not_found", "cant_update_message", "edit_window_closed"})


class SlackDestination(Destination):
    """Posts thread replies with ``chat.postMessage`` and edits with ``chat.update``"""

    def __init__(self, client: Optional[AsyncWebClient] = None, token: Optional[str] = None):
        if client is None:
            client = AsyncWebClient(token=token or get_settings().slack_bot_token)
        self.client = client

    async def post_unit(self, channel: str, thread: str, text: str) -> str:
        try:
            response = await self.client.chat_postMessage(
                channel=channel,
                thread_ts=thread,
                text=text,
                unfurl_links=False,
                unfurl_media=False,
            )
        except SlackApiError as e:
            logger.error("Failed to post message",
                         channel=channel,
                         error=e.response.get("error"))
            raise DestinationError("post_unit", e) from e

        unit_id = response.get("ts")
        if not unit_id:
            raise DestinationError("post_unit")
        return unit_id

    async def update_unit(self, channel: str, unit_id: str, text: str) -> UpdateResult:
        try:
            await self.client.chat_update(channel=channel, ts=unit_id, text=text)
        except SlackApiError as e:
            error = e.response.get("error")
            if error in STALE_MESSAGE_ERRORS:
                logger.info("Message can no longer be updated",
                            channel=channel,
                            ts=unit_id,
                            error=error)
                return UpdateResult.NOT_FOUND
            logger.error("Failed to update message",
                         channel=channel,
                         ts=unit_id,
                         error=error)
            raise DestinationError("update_unit", e) from e

        return UpdateResult.OK
