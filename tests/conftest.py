"""Pytest fixtures and in-memory collaborators for testing."""
import asyncio
import itertools
from collections.abc import AsyncGenerator, Callable
from dataclasses import dataclass, field
from typing import Any

import pytest

from core.config import Settings
from schemas.change_event import ChangeEvent, ChangeKind
from schemas.session import SessionUser, SubscriptionStatus
from services.exceptions import AuthError, RequestError, SubscriptionError
from services.sync_controller import BookmarkSyncController

USER_ID = "user-1"
OTHER_USER_ID = "user-2"


def make_row(
    bookmark_id: str,
    title: str = "Example",
    url: str = "https://example.com",
    created_at: str = "2024-01-01T00:00:00+00:00",
    user_id: str = USER_ID,
) -> dict[str, Any]:
    """Build a bookmark row as returned by storage or the change feed."""
    return {
        "id": bookmark_id,
        "title": title,
        "url": url,
        "user_id": user_id,
        "created_at": created_at,
    }


def created(row: dict[str, Any]) -> ChangeEvent:
    """Build a created change event for a row."""
    return ChangeEvent(kind=ChangeKind.CREATED, new=row)


def updated(row: dict[str, Any]) -> ChangeEvent:
    """Build an updated change event for a row."""
    return ChangeEvent(kind=ChangeKind.UPDATED, new=row)


def deleted(bookmark_id: str) -> ChangeEvent:
    """Build a deleted change event carrying only the primary key."""
    return ChangeEvent(kind=ChangeKind.DELETED, old={"id": bookmark_id})


async def wait_for(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Poll until predicate() is true, failing the test on timeout."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.005)


class FakeAuth:
    """In-memory auth collaborator."""

    def __init__(self, user: SessionUser | None = None) -> None:
        self.user = user
        self.error: AuthError | None = None
        self.sign_in_error: AuthError | None = None
        self.sign_out_error: AuthError | None = None
        self.sign_in_calls: list[tuple[str, dict | None]] = []
        self.signed_out = False

    async def get_current_user(self) -> SessionUser | None:
        if self.error:
            raise self.error
        return self.user

    async def sign_in_with_oauth(self, provider: str, options: dict | None = None) -> str:
        self.sign_in_calls.append((provider, options))
        if self.sign_in_error:
            raise self.sign_in_error
        return f"https://auth.test/authorize?provider={provider}"

    async def sign_out(self) -> None:
        self.signed_out = True
        self.user = None
        if self.sign_out_error:
            raise self.sign_out_error


class FakeStorage:
    """In-memory storage collaborator that records every call."""

    def __init__(self) -> None:
        self.rows: list[dict[str, Any]] = []
        self.select_calls: list[dict[str, Any]] = []
        self.inserted: list[dict[str, Any]] = []
        self.deleted: list[dict[str, str]] = []
        self.select_error: RequestError | None = None
        self.insert_error: RequestError | None = None
        self.delete_error: RequestError | None = None
        self.return_representation = True
        # Called with the record while the insert request is "in flight"
        self.on_insert: Callable[[dict[str, Any]], None] | None = None
        self._ids = itertools.count(100)

    async def select(
        self,
        table: str,
        filters: dict[str, str],
        order: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        self.select_calls.append(
            {"table": table, "filters": filters, "order": order, "limit": limit},
        )
        if self.select_error:
            raise self.select_error
        return [dict(row) for row in self.rows]

    async def insert(self, table: str, record: dict[str, Any]) -> dict[str, Any] | None:
        self.inserted.append(record)
        if self.on_insert is not None:
            self.on_insert(record)
        if self.insert_error:
            raise self.insert_error
        stored = {
            **record,
            "id": f"bm-{next(self._ids)}",
            "created_at": "2024-06-01T12:00:00+00:00",
        }
        self.rows.append(stored)
        return stored if self.return_representation else None

    async def delete(self, table: str, filters: dict[str, str]) -> None:
        self.deleted.append(filters)
        if self.delete_error:
            raise self.delete_error


@dataclass
class FakeSubscription:
    """Handle returned by FakeChangeFeed.subscribe."""

    channel: str
    filter_expr: str | None
    on_event: Callable[[ChangeEvent], None]
    on_status: Callable[[SubscriptionStatus, Exception | None], None]
    active: bool = field(default=True)


class FakeChangeFeed:
    """In-memory change feed; tests push events and status changes by hand."""

    def __init__(self) -> None:
        self.subscriptions: list[FakeSubscription] = []
        self.unsubscribed: list[FakeSubscription] = []
        self.subscribe_attempts = 0
        self.fail_next = 0

    async def subscribe(
        self,
        channel_name: str,
        filter_expr: str | None,
        on_event: Callable[[ChangeEvent], None],
        on_status: Callable[[SubscriptionStatus, Exception | None], None],
    ) -> FakeSubscription:
        self.subscribe_attempts += 1
        if self.fail_next > 0:
            self.fail_next -= 1
            raise SubscriptionError(channel_name, "connection refused")
        subscription = FakeSubscription(channel_name, filter_expr, on_event, on_status)
        self.subscriptions.append(subscription)
        on_status(SubscriptionStatus.SUBSCRIBED, None)
        return subscription

    async def unsubscribe(self, subscription: FakeSubscription) -> None:
        subscription.active = False
        self.unsubscribed.append(subscription)

    @property
    def active(self) -> list[FakeSubscription]:
        return [s for s in self.subscriptions if s.active]

    def emit(self, event: ChangeEvent) -> None:
        """Deliver an event to every active subscription."""
        for subscription in self.active:
            subscription.on_event(event)

    def drop(self, status: SubscriptionStatus = SubscriptionStatus.ERRORED) -> None:
        """Simulate the transport closing or erroring every active subscription."""
        for subscription in self.active:
            subscription.active = False
            subscription.on_status(status, RuntimeError("connection lost"))


class RecordingNotifier:
    """Notifier that keeps user-facing messages for assertions."""

    def __init__(self) -> None:
        self.errors: list[str] = []
        self.successes: list[str] = []

    def error(self, message: str) -> None:
        self.errors.append(message)

    def success(self, message: str) -> None:
        self.successes.append(message)


@pytest.fixture
def settings() -> Settings:
    """Settings with short timers so expiry and retry paths run quickly."""
    return Settings(
        _env_file=None,
        optimistic_timeout_seconds=5.0,
        realtime_retry_base_delay=0.01,
        realtime_retry_max_delay=0.02,
        realtime_max_retries=3,
    )


@pytest.fixture
def user() -> SessionUser:
    return SessionUser(id=USER_ID, email="user@example.com")


@pytest.fixture
def auth(user: SessionUser) -> FakeAuth:
    return FakeAuth(user)


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def feed() -> FakeChangeFeed:
    return FakeChangeFeed()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
async def controller(
    auth: FakeAuth,
    storage: FakeStorage,
    feed: FakeChangeFeed,
    notifier: RecordingNotifier,
    settings: Settings,
) -> AsyncGenerator[BookmarkSyncController]:
    """Controller wired to the in-memory collaborators (not yet initialized)."""
    sync = BookmarkSyncController(auth, storage, feed, notifier=notifier, settings=settings)
    yield sync
    await sync.close()
