"""Messaging destinations for delivered output"""

from .base import Destination, UpdateResult
from .slack import SlackDestination

__all__ = ["Destination", "UpdateResult", "SlackDestination"]
