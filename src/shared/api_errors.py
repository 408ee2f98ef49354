"""
Shared API error parsing for the remote service clients.

The auth (GoTrue) and storage (PostgREST) clients both translate HTTP
failures into RequestError/AuthError. Parsing extracts a semantic category
and a human-readable message from the different error body shapes the two
services return.
"""

from dataclasses import dataclass
from typing import Any, Literal

import httpx

ErrorCategory = Literal[
    "auth",        # 401 - Invalid or expired token
    "forbidden",   # 403 - Row-level security or access denied
    "not_found",   # 404 - Resource or table not found
    "validation",  # 400/422 - Invalid payload or filter
    "conflict",    # 409 - Unique/foreign key violation
    "internal",    # 5xx or unexpected errors
]

# Keys that carry the human-readable message, in order of preference.
# PostgREST uses "message"; GoTrue uses "msg" or "error_description".
_MESSAGE_KEYS = ("message", "msg", "error_description", "error", "detail")


@dataclass
class ParsedApiError:
    """Parsed API error with semantic category and message."""

    category: ErrorCategory
    message: str
    code: str | None = None


def parse_http_error(  # noqa: PLR0911
    e: httpx.HTTPStatusError,
    entity_type: str = "",
) -> ParsedApiError:
    """
    Parse HTTP error into semantic categories.

    Args:
        e: The HTTP status error from httpx
        entity_type: Type of entity (e.g., "bookmark") for error messages

    Returns:
        ParsedApiError with category, message, and optional service error code
    """
    status = e.response.status_code
    body = _safe_get_body(e)
    message = _extract_message(body)
    code = body.get("code") if isinstance(body.get("code"), str) else None

    if status == 401:
        return ParsedApiError("auth", message or "Invalid or expired token", code)

    if status == 403:
        return ParsedApiError("forbidden", message or "Access denied", code)

    if status == 404:
        default = f"{entity_type.title()} not found" if entity_type else "Not found"
        return ParsedApiError("not_found", message or default, code)

    if status == 409:
        default = (
            f"{entity_type.title()} conflicts with an existing record"
            if entity_type else "Conflicts with an existing record"
        )
        return ParsedApiError("conflict", message or default, code)

    if status in (400, 422):
        return ParsedApiError("validation", message or "Validation error", code)

    return ParsedApiError("internal", message or f"API error {status}", code)


def _safe_get_body(e: httpx.HTTPStatusError) -> dict[str, Any]:
    """Safely extract the JSON body from an error response."""
    try:
        body = e.response.json()
    except ValueError:
        return {}
    # Non-dict JSON body (list, string, etc.) - return empty
    return body if isinstance(body, dict) else {}


def _extract_message(body: dict[str, Any]) -> str:
    """Pick the first non-empty message field from an error body."""
    for key in _MESSAGE_KEYS:
        value = body.get(key)
        if isinstance(value, str) and value:
            return value
    return ""
