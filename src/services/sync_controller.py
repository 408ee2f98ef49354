"""
Session and sync controller for one user's bookmark collection.

Owns the application state (session, collection, subscription, inputs) and
keeps the collection consistent under optimistic local writes and change
events that arrive asynchronously from the change feed.

Change-feed callbacks never touch state directly: they enqueue events, and a
single consumer task applies them in arrival order through the reducers in
services.bookmark_collection.
"""
import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

from pydantic import ValidationError

from core.config import Settings, get_settings
from schemas.bookmark import PLACEHOLDER_ID_PREFIX, Bookmark, BookmarkCreate, is_placeholder_id
from schemas.change_event import ChangeEvent, ChangeKind
from schemas.session import AuthStatus, SessionUser, SubscriptionStatus
from services import bookmark_collection as collection
from services.exceptions import (
    AuthError,
    BookmarkSyncError,
    BookmarkValidationError,
    RequestError,
    SubscriptionError,
)

logger = logging.getLogger(__name__)

CHANNEL_NAME_TEMPLATE = "bookmarks-user-{user_id}"
ORDER_NEWEST_FIRST = "created_at.desc"
RESUBSCRIBE_BACKOFF_FACTOR = 2.0


class AuthProvider(Protocol):
    async def get_current_user(self) -> SessionUser | None: ...

    async def sign_in_with_oauth(self, provider: str, options: dict | None = None) -> str: ...

    async def sign_out(self) -> None: ...


class BookmarkStore(Protocol):
    async def select(
        self,
        table: str,
        filters: dict[str, str],
        order: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]: ...

    async def insert(self, table: str, record: dict[str, Any]) -> dict[str, Any] | None: ...

    async def delete(self, table: str, filters: dict[str, str]) -> None: ...


class ChangeFeed(Protocol):
    async def subscribe(
        self,
        channel_name: str,
        filter_expr: str | None,
        on_event: Callable[[ChangeEvent], None],
        on_status: Callable[[SubscriptionStatus, Exception | None], None],
    ) -> Any: ...

    async def unsubscribe(self, subscription: Any) -> None: ...


class Notifier(Protocol):
    def error(self, message: str) -> None: ...

    def success(self, message: str) -> None: ...


class LoggingNotifier:
    """Notifier that writes user-facing messages to the log."""

    def error(self, message: str) -> None:
        logger.warning("notify_error: %s", message)

    def success(self, message: str) -> None:
        logger.info("notify_success: %s", message)


@dataclass
class PendingBookmark:
    """An optimistic insert waiting for its confirmed record."""

    placeholder_id: str
    title: str
    url: str
    user_id: str
    timer: asyncio.TimerHandle | None = field(default=None, repr=False)

    def matches(self, record: Bookmark) -> bool:
        """Check whether a confirmed record is the one this placeholder stands for."""
        return (record.title, record.url, record.user_id) == (self.title, self.url, self.user_id)


@dataclass
class AppState:
    """Client state for one session. Replaced wholesale on logout."""

    auth_status: AuthStatus = AuthStatus.LOGGING_IN
    session: SessionUser | None = None
    bookmarks: list[Bookmark] = field(default_factory=list)
    subscription_status: SubscriptionStatus = SubscriptionStatus.IDLE
    subscription: Any = None
    title_input: str = ""
    url_input: str = ""
    search_query: str = ""
    refresh_key: int = 0
    oauth_redirect_url: str | None = None
    last_error: BookmarkSyncError | None = None
    pending: dict[str, PendingBookmark] = field(default_factory=dict)

    @property
    def visible_bookmarks(self) -> list[Bookmark]:
        """The collection filtered by the current search query."""
        return collection.filter_by_title(self.bookmarks, self.search_query)

    @property
    def total_bookmarks(self) -> int:
        return len(self.bookmarks)


def _validation_error_from(e: ValidationError) -> BookmarkValidationError:
    """Convert the first pydantic error into a BookmarkValidationError."""
    first = e.errors()[0]
    cause = first.get("ctx", {}).get("error")
    message = str(cause) if cause else first["msg"]
    loc = first.get("loc") or ()
    return BookmarkValidationError(message, field=str(loc[0]) if loc else None)


class BookmarkSyncController:
    """
    Keep a deduplicated view of one user's bookmarks in sync with the backend.

    User-visible failures are reported through the notifier and recorded in
    state.last_error; no operation raises them to the caller.
    """

    def __init__(
        self,
        auth: AuthProvider,
        storage: BookmarkStore,
        change_feed: ChangeFeed,
        notifier: Notifier | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._auth = auth
        self._storage = storage
        self._feed = change_feed
        self._notifier = notifier or LoggingNotifier()
        self._settings = settings or get_settings()
        self.state = AppState()
        self._listeners: list[Callable[[AppState], None]] = []
        self._events: asyncio.Queue[ChangeEvent] = asyncio.Queue()
        self._consumer: asyncio.Task | None = None
        self._resubscribe_task: asyncio.Task | None = None
        self._retry_attempts = 0
        # Bumped on every (re)subscribe and on logout; callbacks from older
        # subscriptions are ignored.
        self._generation = 0

    # -------------------------------------------------------------------------
    # View signals
    # -------------------------------------------------------------------------

    def add_listener(self, listener: Callable[[AppState], None]) -> None:
        """Register a callback invoked with the state on every refresh signal."""
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[AppState], None]) -> None:
        """Unregister a refresh callback."""
        self._listeners.remove(listener)

    def _refresh(self) -> None:
        self.state.refresh_key += 1
        for listener in list(self._listeners):
            try:
                listener(self.state)
            except Exception:
                # A broken view must not stop state updates
                logger.exception("state_listener_failed", extra={"listener": repr(listener)})

    def _fail(self, error: BookmarkSyncError, user_message: str | None = None) -> None:
        self.state.last_error = error
        self._notifier.error(user_message or error.message)

    # -------------------------------------------------------------------------
    # Session lifecycle
    # -------------------------------------------------------------------------

    async def initialize(self) -> None:
        """
        Resolve the current session and start syncing its bookmarks.

        Session-resolution errors are logged and leave the client logged out.
        """
        self.state.auth_status = AuthStatus.LOGGING_IN
        await self._close_subscription()
        auth_error: AuthError | None = None
        try:
            user = await self._auth.get_current_user()
        except AuthError as e:
            logger.warning("Session resolution failed: %s", e)
            auth_error = e
            user = None

        if user is None:
            self._reload(last_error=auth_error)
            return

        if self.state.session is not None and self.state.session.id != user.id:
            # A different account; nothing from the previous session carries over
            self._reload()
        logger.info("Session resolved for user %s", user.id)
        self.state.session = user
        self.state.auth_status = AuthStatus.AUTHENTICATED
        await self.load_bookmarks()
        self._ensure_consumer()
        await self._subscribe()
        self._refresh()

    async def login(self) -> None:
        """
        Start the OAuth handshake, always forcing account selection.

        The session is established later through initialize(), once the
        provider redirects back. A no-op while a session is active.
        """
        if self.state.session is not None:
            logger.info("Login ignored, already signed in as %s", self.state.session.id)
            return
        self.state.auth_status = AuthStatus.LOGGING_IN
        options = {
            "redirect_to": self._settings.oauth_redirect_url,
            "query_params": {"prompt": "select_account"},
        }
        try:
            redirect_url = await self._auth.sign_in_with_oauth(
                self._settings.oauth_provider, options,
            )
        except AuthError as e:
            self._fail(e)
            self.state.auth_status = AuthStatus.UNAUTHENTICATED
            self._refresh()
            return
        self.state.oauth_redirect_url = redirect_url
        self._refresh()

    async def logout(self) -> None:
        """End the session and reset all client state."""
        self.state.auth_status = AuthStatus.LOGGING_OUT
        await self._close_subscription()
        try:
            await self._auth.sign_out()
        except AuthError as e:
            self._fail(e)
        self._reload()

    async def close(self) -> None:
        """Release the subscription, timers, and background tasks."""
        await self._close_subscription()
        self._stop_consumer()
        self._cancel_pending_timers()

    def _reload(self, last_error: BookmarkSyncError | None = None) -> None:
        """Discard all session state, as a full page reload would."""
        self._stop_consumer()
        self._cancel_pending_timers()
        self.state = AppState(auth_status=AuthStatus.UNAUTHENTICATED, last_error=last_error)
        self._refresh()

    # -------------------------------------------------------------------------
    # Collection loading
    # -------------------------------------------------------------------------

    async def load_bookmarks(self) -> None:
        """Fetch the newest bookmarks for the session user, replacing the collection."""
        session = self.state.session
        if session is None:
            return
        try:
            rows = await self._storage.select(
                self._settings.bookmarks_table,
                {"user_id": f"eq.{session.id}"},
                order=ORDER_NEWEST_FIRST,
                limit=self._settings.bookmark_fetch_limit,
            )
        except RequestError as e:
            self._fail(e, "Failed to load bookmarks")
            return
        loaded = collection.sort_newest_first(self._parse_rows(rows))
        # A refetched row that is new to the collection may be the confirmation
        # of an insert whose response carried no record
        known_ids = {b.id for b in self.state.bookmarks}
        for record in reversed(loaded):
            if record.id in known_ids:
                continue
            match = self._match_pending(record)
            if match is not None:
                self._settle(match.placeholder_id)
        # Unconfirmed placeholders survive a reload until they reconcile or expire
        placeholders = [b for b in self.state.bookmarks if b.id in self.state.pending]
        self.state.bookmarks = collection.dedupe_by_id([*placeholders, *loaded])

    @staticmethod
    def _parse_rows(rows: list[dict[str, Any]]) -> list[Bookmark]:
        bookmarks = []
        for row in rows:
            try:
                bookmarks.append(Bookmark.model_validate(row))
            except ValidationError as e:
                logger.warning("Skipping invalid bookmark row %s: %s", row.get("id"), e)
        return bookmarks

    # -------------------------------------------------------------------------
    # User operations
    # -------------------------------------------------------------------------

    def set_inputs(self, title: str | None = None, url: str | None = None) -> None:
        """Update the add-bookmark input fields."""
        if title is not None:
            self.state.title_input = title
        if url is not None:
            self.state.url_input = url

    async def add_bookmark(
        self,
        title: str | None = None,
        url: str | None = None,
    ) -> Bookmark | None:
        """
        Create a bookmark with an optimistic local insert.

        Defaults to the current input fields. The placeholder appears at the
        head of the collection before the request resolves and is rolled back
        if the request fails.

        Returns:
            The confirmed record, the placeholder if confirmation is pending,
            or None on failure.
        """
        title = self.state.title_input if title is None else title
        url = self.state.url_input if url is None else url
        try:
            payload = BookmarkCreate(title=title, url=url)
        except ValidationError as e:
            self._fail(_validation_error_from(e))
            return None

        session = self.state.session
        if session is None or self.state.auth_status is not AuthStatus.AUTHENTICATED:
            self._fail(AuthError("You must be logged in"))
            return None

        placeholder = self._apply_optimistic(payload, session.id)
        try:
            stored = await self._storage.insert(
                self._settings.bookmarks_table, payload.to_record(session.id),
            )
        except RequestError as e:
            self._rollback(placeholder.id)
            self._fail(e)
            return None

        confirmed = self._parse_stored(stored)
        if confirmed is not None:
            self._confirm(placeholder.id, confirmed)
        self.state.title_input = ""
        self.state.url_input = ""
        self._notifier.success("Bookmark added!")
        self._refresh()
        return confirmed or placeholder

    async def delete_bookmark(self, bookmark_id: str) -> bool:
        """
        Request deletion of a bookmark.

        The entry stays in the collection until the change feed reports the
        delete.

        Returns:
            True if the request succeeded.
        """
        if is_placeholder_id(bookmark_id):
            self._fail(
                RequestError("Bookmark is still being saved", category="validation"),
            )
            return False
        try:
            await self._storage.delete(
                self._settings.bookmarks_table, {"id": f"eq.{bookmark_id}"},
            )
        except RequestError as e:
            self._fail(e, "Failed to delete")
            return False
        self._notifier.success("Deleted!")
        return True

    def search(self, query: str) -> list[Bookmark]:
        """Set the search query and return matching bookmarks (title, case-insensitive)."""
        self.state.search_query = query
        return self.state.visible_bookmarks

    # -------------------------------------------------------------------------
    # Optimistic placeholders
    # -------------------------------------------------------------------------

    def _apply_optimistic(self, payload: BookmarkCreate, user_id: str) -> Bookmark:
        placeholder = Bookmark(
            id=f"{PLACEHOLDER_ID_PREFIX}{uuid.uuid4()}",
            title=payload.title,
            url=payload.url,
            user_id=user_id,
            created_at=datetime.now(UTC),
        )
        pending = PendingBookmark(placeholder.id, payload.title, payload.url, user_id)
        pending.timer = asyncio.get_running_loop().call_later(
            self._settings.optimistic_timeout_seconds,
            self._expire_placeholder,
            placeholder.id,
        )
        self.state.pending[placeholder.id] = pending
        self.state.bookmarks = collection.insert_if_absent(self.state.bookmarks, placeholder)
        self._refresh()
        return placeholder

    def _settle(self, placeholder_id: str) -> PendingBookmark | None:
        pending = self.state.pending.pop(placeholder_id, None)
        if pending is not None and pending.timer is not None:
            pending.timer.cancel()
        return pending

    def _confirm(self, placeholder_id: str, confirmed: Bookmark) -> None:
        # Already reconciled by a change event, or expired
        if self._settle(placeholder_id) is None:
            return
        self.state.bookmarks = collection.replace_placeholder(
            self.state.bookmarks, placeholder_id, confirmed,
        )

    def _rollback(self, placeholder_id: str) -> None:
        self._settle(placeholder_id)
        self.state.bookmarks = collection.remove_by_id(self.state.bookmarks, placeholder_id)
        self._refresh()

    def _expire_placeholder(self, placeholder_id: str) -> None:
        if self._settle(placeholder_id) is None:
            return
        logger.warning(
            "optimistic_bookmark_expired",
            extra={
                "placeholder_id": placeholder_id,
                "timeout_seconds": self._settings.optimistic_timeout_seconds,
            },
        )
        self.state.bookmarks = collection.remove_by_id(self.state.bookmarks, placeholder_id)
        self._refresh()

    def _cancel_pending_timers(self) -> None:
        for pending in self.state.pending.values():
            if pending.timer is not None:
                pending.timer.cancel()

    @staticmethod
    def _parse_stored(stored: dict[str, Any] | None) -> Bookmark | None:
        if not stored:
            return None
        try:
            return Bookmark.model_validate(stored)
        except ValidationError as e:
            logger.warning("Insert returned an invalid record: %s", e)
            return None

    # -------------------------------------------------------------------------
    # Change events
    # -------------------------------------------------------------------------

    def on_change(self, event: ChangeEvent) -> None:
        """
        Apply one change event to the collection.

        created: insert at head unless the id exists, replacing a matching
        placeholder in place. deleted: remove by id. updated: replace by id
        in place without re-sorting.
        """
        bookmark_id = event.record_id
        if bookmark_id is None:
            logger.warning("change_event_without_id", extra={"kind": event.kind.value})
        elif event.kind is ChangeKind.DELETED:
            self.state.bookmarks = collection.remove_by_id(self.state.bookmarks, bookmark_id)
        else:
            try:
                record = Bookmark.model_validate(event.new)
            except ValidationError as e:
                logger.warning("Dropping invalid %s event for %s: %s", event.kind, bookmark_id, e)
            else:
                if event.kind is ChangeKind.CREATED:
                    self._apply_created(record)
                else:
                    self.state.bookmarks = collection.replace_by_id(self.state.bookmarks, record)
        self._refresh()

    def _apply_created(self, record: Bookmark) -> None:
        if collection.contains_id(self.state.bookmarks, record.id):
            return
        match = self._match_pending(record)
        if match is None:
            self.state.bookmarks = collection.insert_if_absent(self.state.bookmarks, record)
            return
        self._settle(match.placeholder_id)
        self.state.bookmarks = collection.replace_placeholder(
            self.state.bookmarks, match.placeholder_id, record,
        )

    def _match_pending(self, record: Bookmark) -> PendingBookmark | None:
        """Oldest pending placeholder with the record's content, if any."""
        return next((p for p in self.state.pending.values() if p.matches(record)), None)

    def _enqueue(self, generation: int, event: ChangeEvent) -> None:
        if generation != self._generation:
            return
        self._events.put_nowait(event)

    def _ensure_consumer(self) -> None:
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.create_task(
                self._consume_events(), name="bookmark-change-consumer",
            )

    def _stop_consumer(self) -> None:
        if self._consumer is not None and not self._consumer.done():
            self._consumer.cancel()
        self._consumer = None
        # Events queued for the old session are dropped
        self._events = asyncio.Queue()

    async def _consume_events(self) -> None:
        while True:
            event = await self._events.get()
            try:
                self.on_change(event)
            except Exception:
                logger.exception(
                    "change_event_failed",
                    extra={"kind": event.kind.value, "record_id": event.record_id},
                )
            finally:
                self._events.task_done()

    async def drain(self) -> None:
        """Wait until every queued change event has been applied."""
        if self._consumer is None:
            return
        await self._events.join()

    # -------------------------------------------------------------------------
    # Subscription
    # -------------------------------------------------------------------------

    async def _subscribe(self, schedule_retry: bool = True) -> bool:
        session = self.state.session
        if session is None:
            return False
        self._generation += 1
        generation = self._generation
        channel = CHANNEL_NAME_TEMPLATE.format(user_id=session.id)
        self.state.subscription_status = SubscriptionStatus.CONNECTING
        try:
            handle = await self._feed.subscribe(
                channel,
                f"user_id=eq.{session.id}",
                lambda event: self._enqueue(generation, event),
                lambda status, error: self._on_subscription_status(generation, status, error),
            )
        except SubscriptionError as e:
            logger.warning("Change feed subscription failed: %s", e)
            self.state.last_error = e
            self.state.subscription_status = SubscriptionStatus.ERRORED
            if schedule_retry:
                self._schedule_resubscribe()
            return False

        if generation != self._generation:
            # Logged out or resubscribed while this subscribe was in flight
            await self._feed.unsubscribe(handle)
            return False
        self.state.subscription = handle
        self.state.subscription_status = SubscriptionStatus.SUBSCRIBED
        self._retry_attempts = 0
        return True

    def _on_subscription_status(
        self,
        generation: int,
        status: SubscriptionStatus,
        error: Exception | None,
    ) -> None:
        if generation != self._generation:
            return
        self.state.subscription_status = status
        if status in (SubscriptionStatus.CLOSED, SubscriptionStatus.ERRORED):
            logger.warning(
                "change_feed_lost",
                extra={"status": status.value, "error": str(error) if error else None},
            )
            self._schedule_resubscribe()

    def _schedule_resubscribe(self) -> None:
        if self.state.session is None:
            return
        if self._resubscribe_task is not None and not self._resubscribe_task.done():
            return
        self._resubscribe_task = asyncio.create_task(
            self._resubscribe_loop(), name="bookmark-change-resubscribe",
        )

    async def _resubscribe_loop(self) -> None:
        """Resubscribe with exponential backoff, then refetch to cover the gap."""
        stale, self.state.subscription = self.state.subscription, None
        if stale is not None:
            await self._feed.unsubscribe(stale)

        settings = self._settings
        while self.state.session is not None:
            if self._retry_attempts >= settings.realtime_max_retries:
                logger.warning(
                    "change_feed_retry_exhausted",
                    extra={"attempts": self._retry_attempts},
                )
                self.state.subscription_status = SubscriptionStatus.ERRORED
                return
            delay = min(
                settings.realtime_retry_base_delay
                * RESUBSCRIBE_BACKOFF_FACTOR ** self._retry_attempts,
                settings.realtime_retry_max_delay,
            )
            self._retry_attempts += 1
            attempt = self._retry_attempts
            logger.debug(
                "change_feed_retrying",
                extra={"attempt": attempt, "delay_seconds": delay},
            )
            await asyncio.sleep(delay)
            if await self._subscribe(schedule_retry=False):
                logger.info("Change feed resubscribed after %d attempt(s)", attempt)
                # Events published while disconnected were missed
                await self.load_bookmarks()
                self._refresh()
                return

    async def _close_subscription(self) -> None:
        # Invalidate callbacks from the current subscription first
        self._generation += 1
        task = self._resubscribe_task
        self._resubscribe_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        subscription = self.state.subscription
        self.state.subscription = None
        self.state.subscription_status = SubscriptionStatus.IDLE
        if subscription is not None:
            await self._feed.unsubscribe(subscription)
