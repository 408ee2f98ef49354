"""HTTP client helpers for requests to the managed backend's REST APIs."""

from typing import Any

import httpx

from core.config import Settings


def create_http_client(base_url: str, settings: Settings) -> httpx.AsyncClient:
    """Create an AsyncClient for one of the backend's REST APIs."""
    return httpx.AsyncClient(base_url=base_url, timeout=settings.request_timeout)


def _get_headers(
    api_key: str,
    token: str | None,
    extra: dict[str, str] | None = None,
) -> dict[str, str]:
    """
    Get common headers for API requests.

    The anon key doubles as the bearer token when no user session exists;
    the backend then applies anonymous row-level security.
    """
    headers = {
        "apikey": api_key,
        "Authorization": f"Bearer {token or api_key}",
        "X-Client-Info": "smart-bookmark-py",
    }
    if extra:
        headers.update(extra)
    return headers


def _json_or_none(response: httpx.Response) -> Any:
    """Decode a JSON body, treating empty responses (204) as None."""
    if not response.content:
        return None
    return response.json()


async def api_get(
    client: httpx.AsyncClient,
    path: str,
    api_key: str,
    token: str | None,
    params: dict[str, Any] | None = None,
) -> Any:
    """Make an authenticated GET request to the API."""
    response = await client.get(
        path,
        params=params,
        headers=_get_headers(api_key, token),
    )
    response.raise_for_status()
    return _json_or_none(response)


async def api_post(
    client: httpx.AsyncClient,
    path: str,
    api_key: str,
    token: str | None,
    json: Any = None,
    headers: dict[str, str] | None = None,
) -> Any:
    """Make an authenticated POST request to the API."""
    response = await client.post(
        path,
        json=json,
        headers=_get_headers(api_key, token, headers),
    )
    response.raise_for_status()
    return _json_or_none(response)


async def api_delete(
    client: httpx.AsyncClient,
    path: str,
    api_key: str,
    token: str | None,
    params: dict[str, Any] | None = None,
) -> Any:
    """Make an authenticated DELETE request to the API."""
    response = await client.delete(
        path,
        params=params,
        headers=_get_headers(api_key, token),
    )
    response.raise_for_status()
    return _json_or_none(response)
