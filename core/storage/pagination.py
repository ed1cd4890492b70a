"""
Cursor pagination primitives.

Pages are addressed by the last seen value of the paginated field plus the
document ``_id`` as a tie breaker, never by offsets, so inserts between two
requests do not shift or repeat results. Cursors are URL-safe base64 of
MongoDB Extended JSON; they are opaque to callers.
"""

import base64
import binascii
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional

from bson import json_util

from core.errors import RepositoryError


ID_FIELD = "_id"


@dataclass
class MongoPagedResult:
    """One page of results plus the cursors around it."""

    results: list[dict[str, Any]] = field(default_factory=list)
    previous: Optional[str] = None
    next: Optional[str] = None
    has_previous: bool = False
    has_next: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire representation."""
        return {
            "results": self.results,
            "previous": self.previous,
            "hasPrevious": self.has_previous,
            "next": self.next,
            "hasNext": self.has_next,
        }


def encode_cursor(value: Any) -> str:
    raw = json_util.dumps(value).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_cursor(token: str) -> Any:
    padded = token + "=" * (-len(token) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode("ascii"))
        return json_util.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError) as err:
        raise RepositoryError("Invalid pagination cursor", cause=err) from err


def get_path(document: Mapping[str, Any], path: str) -> Any:
    """Read a dotted path such as ``content.idData.timestamp``."""
    value: Any = document
    for part in path.split("."):
        if not isinstance(value, Mapping):
            return None
        value = value.get(part)
    return value


def unset_path(document: dict[str, Any], path: str) -> None:
    parts = path.split(".")
    target: Any = document
    for part in parts[:-1]:
        target = target.get(part) if isinstance(target, dict) else None
        if target is None:
            return
    if isinstance(target, dict):
        target.pop(parts[-1], None)


def _sort_ascending(ascending: bool, backwards: bool) -> bool:
    # Walking back through a page reverses the stored order.
    return ascending != backwards


def build_sort(paginated_field: str, ascending: bool, backwards: bool = False) -> list[tuple[str, int]]:
    direction = 1 if _sort_ascending(ascending, backwards) else -1
    if paginated_field == ID_FIELD:
        return [(ID_FIELD, direction)]
    return [(paginated_field, direction), (ID_FIELD, direction)]


def build_cursor_filter(
    paginated_field: str,
    ascending: bool,
    token: str,
    backwards: bool = False,
) -> dict[str, Any]:
    """Filter selecting documents strictly after the cursor position."""
    op = "$gt" if _sort_ascending(ascending, backwards) else "$lt"
    value = decode_cursor(token)

    if paginated_field == ID_FIELD:
        return {ID_FIELD: {op: value}}

    if not isinstance(value, list) or len(value) != 2:
        raise RepositoryError("Invalid pagination cursor")
    field_value, doc_id = value
    return {
        "$or": [
            {paginated_field: {op: field_value}},
            {paginated_field: field_value, ID_FIELD: {op: doc_id}},
        ]
    }


def merge_filters(query: Mapping[str, Any], cursor_filter: Optional[Mapping[str, Any]]) -> dict[str, Any]:
    if not cursor_filter:
        return dict(query)
    if not query:
        return dict(cursor_filter)
    return {"$and": [dict(query), dict(cursor_filter)]}


def cursor_for(document: Mapping[str, Any], paginated_field: str) -> str:
    if paginated_field == ID_FIELD:
        return encode_cursor(document.get(ID_FIELD))
    return encode_cursor([get_path(document, paginated_field), document.get(ID_FIELD)])


def prepare_response(
    documents: list[dict[str, Any]],
    *,
    limit: int,
    paginated_field: str,
    next: Optional[str] = None,
    previous: Optional[str] = None,
) -> MongoPagedResult:
    """
    Turn a ``limit + 1`` fetch into a page.

    The extra document only signals that another page exists. Pages
    fetched backwards arrive in reverse order and are flipped here.
    """
    has_more = len(documents) > limit
    results = documents[:limit]
    if previous:
        results.reverse()

    page = MongoPagedResult(
        results=results,
        has_previous=bool(next) or bool(previous and has_more),
        has_next=bool(previous) or has_more,
    )
    if results:
        page.previous = cursor_for(results[0], paginated_field)
        page.next = cursor_for(results[-1], paginated_field)
    return page


def ensure_projected(
    projection: Optional[Mapping[str, Any]],
    required: Iterable[str],
) -> tuple[Optional[dict[str, Any]], list[str]]:
    """
    Make sure ``required`` fields survive ``projection``.

    Exclusions of a required field, or of any parent of it, are lifted.
    Returns the adjusted projection and the paths the caller asked to hide,
    which it strips from the results once the cursors are built.
    """
    if not projection:
        return None, []

    projection = dict(projection)
    hidden: list[str] = []
    inclusive = any(value for name, value in projection.items() if name != ID_FIELD)

    for name in required:
        for key in [key for key in projection if _covers(key, name) and not projection[key]]:
            del projection[key]
            hidden.append(key)

        if name == ID_FIELD or not inclusive:
            continue
        if any(_covers(key, name) and projection[key] for key in projection):
            continue
        projection[name] = 1
        hidden.append(name)

    return projection or None, hidden


def _covers(key: str, path: str) -> bool:
    """True if projecting ``key`` decides whether ``path`` is returned."""
    return path == key or path.startswith(key + ".")


def strip_fields(documents: Iterable[dict[str, Any]], names: Iterable[str]) -> None:
    names = list(names)
    if not names:
        return
    for document in documents:
        for name in names:
            unset_path(document, name)
