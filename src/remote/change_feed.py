"""
Change-feed collaborator backed by Redis pub/sub.

The backend publishes one JSON message per row change to a per-user channel
(e.g. 'bookmarks-user-<id>'). Messages use the database's change format:

    {"eventType": "INSERT", "new": {...}, "old": {}}

Subscribers get decoded ChangeEvents through a callback, plus status
callbacks when the subscription opens, closes, or errors.
"""

import asyncio
import contextlib
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from redis.asyncio.client import PubSub
from redis.exceptions import RedisError

from core.redis import RedisClient
from schemas.change_event import ChangeEvent
from schemas.session import SubscriptionStatus
from services.exceptions import SubscriptionError

logger = logging.getLogger(__name__)

EventCallback = Callable[[ChangeEvent], None]
StatusCallback = Callable[[SubscriptionStatus, Exception | None], None]


def parse_filter(filter_expr: str | None) -> tuple[str, str] | None:
    """
    Parse a 'column=eq.value' filter.

    Returns:
        (column, value), or None when no filter is given.

    Raises:
        ValueError: If the filter uses an unsupported form.
    """
    if not filter_expr:
        return None
    column, sep, condition = filter_expr.partition("=")
    if not sep or not column or not condition.startswith("eq."):
        raise ValueError(f"Unsupported change-feed filter: '{filter_expr}'")
    return column, condition[len("eq."):]


def matches_filter(event: ChangeEvent, column_filter: tuple[str, str] | None) -> bool:
    """
    Check whether an event passes the subscription filter.

    Delete events may carry only the primary key; those pass, since the
    channel itself is already scoped to one user.
    """
    if column_filter is None:
        return True
    column, value = column_filter
    record = event.record or {}
    if column not in record:
        return True
    return str(record[column]) == value


@dataclass
class Subscription:
    """Handle for an open change-feed subscription."""

    channel: str
    column_filter: tuple[str, str] | None
    pubsub: PubSub
    task: asyncio.Task | None = field(default=None, repr=False)
    closed: bool = False


class RedisChangeFeed:
    """Subscribe to per-user bookmark change channels over Redis pub/sub."""

    def __init__(self, redis_client: RedisClient) -> None:
        self._redis = redis_client

    async def subscribe(
        self,
        channel_name: str,
        filter_expr: str | None,
        on_event: EventCallback,
        on_status: StatusCallback,
    ) -> Subscription:
        """
        Open a subscription and start delivering events.

        Raises:
            SubscriptionError: If Redis is unavailable or the filter is invalid.
        """
        try:
            column_filter = parse_filter(filter_expr)
        except ValueError as e:
            raise SubscriptionError(channel_name, str(e)) from e

        pubsub = self._redis.pubsub()
        if pubsub is None:
            raise SubscriptionError(channel_name, "Redis unavailable")
        subscribed = False
        try:
            await pubsub.subscribe(channel_name)
            subscribed = True
        except RedisError as e:
            raise SubscriptionError(channel_name, str(e)) from e
        finally:
            # Also covers cancellation while SUBSCRIBE is in flight
            if not subscribed:
                with contextlib.suppress(RedisError):
                    await pubsub.aclose()

        subscription = Subscription(channel_name, column_filter, pubsub)
        subscription.task = asyncio.create_task(
            self._listen(subscription, on_event, on_status),
            name=f"change-feed:{channel_name}",
        )
        logger.info("Subscribed to change feed channel %s", channel_name)
        on_status(SubscriptionStatus.SUBSCRIBED, None)
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        """Stop delivery and release the subscription's connection."""
        if subscription.closed:
            return
        subscription.closed = True
        if subscription.task is not None and not subscription.task.done():
            subscription.task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await subscription.task
        try:
            await subscription.pubsub.unsubscribe(subscription.channel)
            await subscription.pubsub.aclose()
        except RedisError as e:
            logger.warning("Redis UNSUBSCRIBE failed: %s", e)
        logger.info("Unsubscribed from change feed channel %s", subscription.channel)

    async def publish(self, channel_name: str, event: ChangeEvent) -> bool:
        """Publish a change event, returns False if Redis unavailable."""
        message = json.dumps(event.to_payload(), default=str)
        return await self._redis.publish(channel_name, message)

    async def _listen(
        self,
        subscription: Subscription,
        on_event: EventCallback,
        on_status: StatusCallback,
    ) -> None:
        """Read messages until the subscription ends, forwarding matching events."""
        try:
            async for message in subscription.pubsub.listen():
                if message.get("type") != "message":
                    continue
                event = self._decode(subscription.channel, message.get("data"))
                if event is not None and matches_filter(event, subscription.column_filter):
                    on_event(event)
        except RedisError as e:
            if subscription.closed:
                return
            logger.warning(
                "change_feed_errored",
                extra={"channel": subscription.channel, "error": str(e)},
            )
            on_status(SubscriptionStatus.ERRORED, e)
            return
        if not subscription.closed:
            logger.warning("change_feed_closed", extra={"channel": subscription.channel})
            on_status(SubscriptionStatus.CLOSED, None)

    @staticmethod
    def _decode(channel: str, data: str | bytes | None) -> ChangeEvent | None:
        """Decode one pub/sub payload, skipping malformed messages."""
        if data is None:
            return None
        try:
            return ChangeEvent.model_validate(json.loads(data))
        except ValueError as e:
            logger.warning("Dropping malformed change event on %s: %s", channel, e)
            return None
