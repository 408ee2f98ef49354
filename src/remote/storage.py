"""Storage collaborator backed by the PostgREST API."""

import logging
from collections.abc import Callable
from typing import Any

import httpx

from core.config import Settings
from services.exceptions import RequestError
from shared.api_errors import parse_http_error

from .api_client import api_delete, api_get, api_post

logger = logging.getLogger(__name__)


def eq(value: Any) -> str:
    """Build a PostgREST equality filter value (e.g. 'eq.42')."""
    return f"eq.{value}"


class StorageClient:
    """
    Table reads and writes scoped by the caller's session token.

    Filters are PostgREST column filters, e.g. {"user_id": "eq.<id>"}.
    Every failure is raised as RequestError.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        settings: Settings,
        token_provider: Callable[[], str | None] = lambda: None,
    ) -> None:
        self._client = client
        self._settings = settings
        self._token_provider = token_provider

    async def select(
        self,
        table: str,
        filters: dict[str, str],
        order: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """
        Fetch rows matching the filters.

        Args:
            table: Table name.
            filters: Column filters.
            order: PostgREST order clause (e.g. 'created_at.desc').
            limit: Maximum number of rows.

        Returns:
            The matching rows.
        """
        params: dict[str, Any] = {"select": "*", **filters}
        if order:
            params["order"] = order
        if limit is not None:
            params["limit"] = limit
        rows = await self._request("select", table, api_get, params=params)
        return rows or []

    async def insert(self, table: str, record: dict[str, Any]) -> dict[str, Any] | None:
        """
        Insert one row.

        Returns:
            The stored row as returned by the server, or None when the
            server returned no representation.
        """
        rows = await self._request(
            "insert",
            table,
            api_post,
            json=[record],
            headers={"Prefer": "return=representation"},
        )
        if isinstance(rows, list):
            return rows[0] if rows else None
        return rows

    async def delete(self, table: str, filters: dict[str, str]) -> None:
        """Delete rows matching the filters."""
        if not filters:
            raise RequestError("Refusing to delete without a filter", category="validation")
        await self._request("delete", table, api_delete, params=filters)

    async def _request(
        self,
        operation: str,
        table: str,
        func: Callable[..., Any],
        **kwargs: Any,
    ) -> Any:
        """Run one API call, translating transport errors into RequestError."""
        try:
            return await func(
                self._client,
                f"/{table}",
                self._settings.supabase_anon_key,
                self._token_provider(),
                **kwargs,
            )
        except httpx.HTTPStatusError as e:
            info = parse_http_error(e, entity_type="bookmark")
            logger.warning(
                "storage_request_failed",
                extra={"operation": operation, "table": table, "category": info.category},
            )
            raise RequestError(info.message, category=info.category) from e
        except httpx.RequestError as e:
            logger.warning(
                "storage_unavailable",
                extra={"operation": operation, "table": table, "error": str(e)},
            )
            raise RequestError(f"API unavailable: {e}") from e
