"""
Reducers over the ordered bookmark collection.

Every function returns a new list and leaves its input untouched. The
reducers are idempotent per id (insert-if-absent, remove-by-id,
replace-by-id), so applying change events in any interleaving never
produces two entries with the same id.
"""
from collections.abc import Iterable, Sequence

from schemas.bookmark import Bookmark


def _sort_key(bookmark: Bookmark) -> tuple:
    # Records without a timestamp sort after all dated records
    return (bookmark.created_at is not None, bookmark.created_at or 0)


def dedupe_by_id(bookmarks: Iterable[Bookmark]) -> list[Bookmark]:
    """Drop later entries whose id already appeared."""
    seen: set[str] = set()
    result = []
    for bookmark in bookmarks:
        if bookmark.id in seen:
            continue
        seen.add(bookmark.id)
        result.append(bookmark)
    return result


def sort_newest_first(bookmarks: Iterable[Bookmark]) -> list[Bookmark]:
    """Order by created_at descending and deduplicate by id."""
    return dedupe_by_id(sorted(bookmarks, key=_sort_key, reverse=True))


def contains_id(bookmarks: Sequence[Bookmark], bookmark_id: str) -> bool:
    """Check whether an entry with the id exists."""
    return any(b.id == bookmark_id for b in bookmarks)


def insert_if_absent(bookmarks: Sequence[Bookmark], bookmark: Bookmark) -> list[Bookmark]:
    """Insert at the head unless an entry with the same id exists."""
    if contains_id(bookmarks, bookmark.id):
        return list(bookmarks)
    return [bookmark, *bookmarks]


def remove_by_id(bookmarks: Sequence[Bookmark], bookmark_id: str) -> list[Bookmark]:
    """Remove the entry with the id. No-op if absent."""
    return [b for b in bookmarks if b.id != bookmark_id]


def replace_by_id(bookmarks: Sequence[Bookmark], bookmark: Bookmark) -> list[Bookmark]:
    """
    Replace the entry with the same id, keeping its position.

    The collection is not re-sorted, even if created_at changed. No-op if
    the id is absent.
    """
    return [bookmark if b.id == bookmark.id else b for b in bookmarks]


def replace_placeholder(
    bookmarks: Sequence[Bookmark],
    placeholder_id: str,
    confirmed: Bookmark,
) -> list[Bookmark]:
    """
    Swap an optimistic entry for its confirmed record.

    If the confirmed id is already present (e.g. the change event arrived
    first), the placeholder is simply dropped. If the placeholder is gone,
    the confirmed record is inserted at the head unless already present.
    """
    if contains_id(bookmarks, confirmed.id):
        return remove_by_id(bookmarks, placeholder_id)
    if not contains_id(bookmarks, placeholder_id):
        return insert_if_absent(bookmarks, confirmed)
    return [confirmed if b.id == placeholder_id else b for b in bookmarks]


def filter_by_title(bookmarks: Sequence[Bookmark], query: str) -> list[Bookmark]:
    """Case-insensitive substring match on title. An empty query matches all."""
    needle = query.lower()
    return [b for b in bookmarks if needle in b.title.lower()]
