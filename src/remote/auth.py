"""
Auth collaborator backed by the GoTrue REST API.

Holds the session tokens for the current client. Tokens arrive from the
OAuth redirect (see set_session) and are attached to every auth and
storage request until sign_out clears them.
"""

import logging
from urllib.parse import urlencode

import httpx

from core.config import Settings
from schemas.session import SessionUser
from services.exceptions import AuthError
from shared.api_errors import parse_http_error

from .api_client import api_get, api_post

logger = logging.getLogger(__name__)


class AuthClient:
    """Resolve, start, and end user sessions against the auth service."""

    def __init__(self, client: httpx.AsyncClient, settings: Settings) -> None:
        self._client = client
        self._settings = settings
        self._access_token: str | None = None
        self._refresh_token: str | None = None

    @property
    def access_token(self) -> str | None:
        """Bearer token for the current session, if any."""
        return self._access_token

    def set_session(self, access_token: str, refresh_token: str | None = None) -> None:
        """
        Store tokens obtained from the OAuth redirect.

        Args:
            access_token: The JWT access token (without 'Bearer ' prefix).
            refresh_token: Optional refresh token.
        """
        self._access_token = access_token
        self._refresh_token = refresh_token

    def clear_session(self) -> None:
        """Forget the stored tokens."""
        self._access_token = None
        self._refresh_token = None

    async def get_current_user(self) -> SessionUser | None:
        """
        Resolve the user for the stored access token.

        Returns:
            The session user, or None when there is no session or the
            token is no longer valid.

        Raises:
            AuthError: If the auth service fails for any other reason.
        """
        if not self._access_token:
            return None
        try:
            payload = await api_get(
                self._client, "/user", self._settings.supabase_anon_key, self._access_token,
            )
        except httpx.HTTPStatusError as e:
            info = parse_http_error(e)
            if info.category == "auth":
                logger.info("Stored session is no longer valid: %s", info.message)
                self.clear_session()
                return None
            raise AuthError(info.message) from e
        except httpx.RequestError as e:
            raise AuthError(f"Auth service unavailable: {e}") from e
        if not payload or "id" not in payload:
            return None
        return SessionUser.from_payload(payload)

    async def sign_in_with_oauth(
        self,
        provider: str,
        options: dict | None = None,
    ) -> str:
        """
        Build the authorize URL that starts the OAuth handshake.

        The session itself is established later, when the provider redirects
        back and the host calls set_session.

        Args:
            provider: OAuth provider name (e.g. 'google').
            options: Optional 'redirect_to' and 'query_params' entries.

        Returns:
            The URL to navigate to.
        """
        if not provider:
            raise AuthError("OAuth provider is required")
        options = options or {}
        params = {
            "provider": provider,
            "redirect_to": options.get("redirect_to", self._settings.oauth_redirect_url),
        }
        params.update(options.get("query_params", {}))
        return f"{self._settings.auth_url}/authorize?{urlencode(params)}"

    async def sign_out(self) -> None:
        """
        Revoke the current session.

        Local tokens are cleared even when the revoke request fails.

        Raises:
            AuthError: If the auth service rejects or cannot be reached.
        """
        token = self._access_token
        self.clear_session()
        if not token:
            return
        try:
            await api_post(self._client, "/logout", self._settings.supabase_anon_key, token)
        except httpx.HTTPStatusError as e:
            info = parse_http_error(e)
            # An expired token is already as logged out as it gets
            if info.category == "auth":
                return
            raise AuthError(info.message) from e
        except httpx.RequestError as e:
            raise AuthError(f"Auth service unavailable: {e}") from e
