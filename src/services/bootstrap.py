"""Wire the sync controller to the managed backend and the change-feed transport."""
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from core.config import Settings, get_settings
from core.redis import RedisClient
from remote import AuthClient, RedisChangeFeed, StorageClient
from remote.api_client import create_http_client
from services.sync_controller import BookmarkSyncController, Notifier

logger = logging.getLogger(__name__)


@asynccontextmanager
async def open_sync_controller(
    settings: Settings | None = None,
    access_token: str | None = None,
    refresh_token: str | None = None,
    notifier: Notifier | None = None,
) -> AsyncGenerator[BookmarkSyncController]:
    """
    Build an initialized controller and tear everything down on exit.

    Args:
        settings: Overrides the cached environment settings.
        access_token: Token from the OAuth redirect, if the user is returning
            from the provider. Without it the controller starts unauthenticated.
        refresh_token: Optional refresh token from the same redirect.
        notifier: Receives user-facing success/error messages.

    Example:
        async with open_sync_controller(access_token=token) as sync:
            await sync.add_bookmark("Docs", "docs.python.org")
    """
    app_settings = settings or get_settings()

    # Startup: change feed transport first, so the initial subscribe can succeed
    redis_client = RedisClient.from_settings(app_settings)
    await redis_client.connect()

    auth_http = create_http_client(app_settings.auth_url, app_settings)
    rest_http = create_http_client(app_settings.rest_url, app_settings)
    auth = AuthClient(auth_http, app_settings)
    if access_token:
        auth.set_session(access_token, refresh_token)
    storage = StorageClient(rest_http, app_settings, token_provider=lambda: auth.access_token)
    controller = BookmarkSyncController(
        auth,
        storage,
        RedisChangeFeed(redis_client),
        notifier=notifier,
        settings=app_settings,
    )
    try:
        await controller.initialize()
        logger.info(
            "sync_controller_started",
            extra={"auth_status": controller.state.auth_status.value},
        )
        yield controller
    finally:
        # Shutdown: stop background tasks before closing the connections they use
        await controller.close()
        await auth_http.aclose()
        await rest_http.aclose()
        await redis_client.close()
