"""Supervised WebSocket feeds."""

from pmm.feeds.base import FeedSupervisor, backoff_delay
from pmm.feeds.market import MarketFeed, is_valid_quote
from pmm.feeds.user import UserFeed

__all__ = [
    "FeedSupervisor",
    "MarketFeed",
    "UserFeed",
    "backoff_delay",
    "is_valid_quote",
]
