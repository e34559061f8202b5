"""Destination contract

A destination is a thread-capable message sink. Output is delivered as
"units": messages that can be posted into a thread and later edited in place.
"""

from abc import ABC, abstractmethod
from enum import Enum


class UpdateResult(str, Enum):
    """Outcome of an in-place update"""
    OK = "ok"
    NOT_FOUND = "not_found"


class Destination(ABC):
    """Where a session's output ends up"""

    @abstractmethod
    async def post_unit(self, channel: str, thread: str, text: str) -> str:
        """Post a new unit into ``thread`` and return its identifier.

        Raises:
            DestinationError: If the post fails
        """

    @abstractmethod
    async def update_unit(self, channel: str, unit_id: str, text: str) -> UpdateResult:
        """Replace the text of an existing unit.

        Returns ``UpdateResult.NOT_FOUND`` when the unit can no longer be
        edited; any other failure raises ``DestinationError``.
        """
