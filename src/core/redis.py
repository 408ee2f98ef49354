"""
Redis connection used as the change-feed transport.

Pub/sub subscriptions hold a connection open for the whole session, so the
pool is created with a health-check interval: a half-open socket is detected
on the next read instead of blocking the listener forever.
"""
import logging

from redis.asyncio import ConnectionPool, Redis
from redis.asyncio.client import PubSub
from redis.exceptions import RedisError

from core.config import Settings

logger = logging.getLogger(__name__)


class RedisClient:
    """
    Async Redis client with graceful fallback.

    Operations never raise on Redis failures; they log and return a safe
    default (False/None) so the sync controller can treat a missing feed as
    a subscription error and retry, rather than crash.
    """

    def __init__(
        self,
        url: str,
        enabled: bool = True,
        pool_size: int = 10,
        health_check_interval: int = 30,
    ) -> None:
        self._url = url
        self._enabled = enabled
        self._pool_size = pool_size
        self._health_check_interval = health_check_interval
        self._pool: ConnectionPool | None = None
        self._client: Redis | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "RedisClient":
        """Build a client from the REDIS_* settings."""
        return cls(
            url=settings.redis_url,
            enabled=settings.redis_enabled,
            pool_size=settings.redis_pool_size,
            health_check_interval=settings.redis_health_check_interval,
        )

    async def connect(self) -> None:
        """Create the pool and verify the server answers."""
        if not self._enabled:
            logger.info("Change feed transport disabled (REDIS_ENABLED=false)")
            return
        pool = ConnectionPool.from_url(
            self._url,
            max_connections=self._pool_size,
            health_check_interval=self._health_check_interval,
        )
        client = Redis(connection_pool=pool)
        try:
            await client.ping()
        except RedisError as e:
            logger.warning("Change feed transport unreachable at %s: %s", self._url, e)
            await client.aclose()
            await pool.disconnect()
            return
        self._pool = pool
        self._client = client
        logger.info("Change feed transport connected")

    async def close(self) -> None:
        """Release the client and every pooled connection."""
        if self._client is None:
            return
        await self._client.aclose()
        if self._pool is not None:
            await self._pool.disconnect()
        self._client = None
        self._pool = None
        logger.info("Change feed transport closed")

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def ping(self) -> bool:
        if self._client is None:
            return False
        try:
            return bool(await self._client.ping())
        except RedisError:
            return False

    async def publish(self, channel: str, message: str | bytes) -> bool:
        """Publish a message to a channel, returns False if Redis unavailable."""
        if self._client is None:
            return False
        try:
            await self._client.publish(channel, message)
        except RedisError as e:
            logger.warning("Redis PUBLISH to %s failed: %s", channel, e)
            return False
        return True

    def pubsub(self) -> PubSub | None:
        """
        Get a PubSub for one subscription, or None if unavailable.

        Subscribe/unsubscribe confirmations are filtered out so listeners
        only see published messages.
        """
        if self._client is None:
            return None
        return self._client.pubsub(ignore_subscribe_messages=True)
