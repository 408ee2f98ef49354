"""Clients for the managed auth, storage, and change-feed services."""

from .auth import AuthClient
from .change_feed import RedisChangeFeed, Subscription
from .storage import StorageClient

__all__ = ["AuthClient", "RedisChangeFeed", "StorageClient", "Subscription"]
