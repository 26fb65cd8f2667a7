"""
FeedOverlay — search/filter/sort/slice over held items.

Pure functions only: they take tuples and return new tuples, never touching
the input. FeedManager runs compute_display() + slice_page() on every
transition that changes items, search or filters.

Predicate order is fixed: content kind, then time window, then sort. An
active search replaces the filter pass entirely; its result set is already
ranked by the search backend.

A malformed created_at raises ValueError. That is deliberate: the manager
aborts the transition and keeps the previous snapshot instead of showing a
half-filtered page.
"""

from datetime import datetime, timedelta, timezone

from FeedState import FilterOptions, ResultSet, SearchState
from FeedTypes import SortOrder, TimeWindow

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def parse_timestamp(value) -> datetime | None:
    """created_at → aware datetime. None for a missing value, ValueError for garbage."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise ValueError(f"Unsupported created_at value: {value!r}")


def window_cutoff(window: TimeWindow, now: datetime) -> datetime | None:
    if window is TimeWindow.ALL:
        return None
    if window is TimeWindow.TODAY:
        return now.replace(hour=0, minute=0, second=0, microsecond=0)
    if window is TimeWindow.WEEK:
        return now - timedelta(days=7)
    if window is TimeWindow.MONTH:
        return now - timedelta(days=30)
    raise ValueError(f"Unknown time window: {window!r}")


def apply_search(items: tuple, results: ResultSet | None) -> tuple:
    """Keep held items that appear in the result set, in result-set rank order."""
    if results is None:
        return ()
    rank = {}
    for position, item_id in enumerate(results.item_ids):
        rank.setdefault(item_id, position)
    hits = [item for item in items if item.get("id") in rank]
    hits.sort(key=lambda item: rank[item.get("id")])
    return tuple(hits)


def _created(item) -> datetime:
    return parse_timestamp(item.get("created_at")) or _EPOCH


def apply_filters(items: tuple, filters: FilterOptions, now: datetime) -> tuple:
    result = items
    if filters.content_kind != "all":
        kind = filters.content_kind
        result = tuple(item for item in result if item.get("post_type") == kind)

    cutoff = window_cutoff(filters.time_window, now)
    if cutoff is not None:
        kept = []
        for item in result:
            created = parse_timestamp(item.get("created_at"))
            if created is not None and created >= cutoff:
                kept.append(item)
        result = tuple(kept)

    return sort_items(result, filters.sort_by)


def sort_items(items: tuple, sort_by: SortOrder) -> tuple:
    # sorted() is stable, so equal keys keep server order.
    if sort_by is SortOrder.NEWEST:
        return tuple(sorted(items, key=_created, reverse=True))
    if sort_by is SortOrder.OLDEST:
        return tuple(sorted(items, key=_created))
    if sort_by is SortOrder.POPULAR:
        return tuple(sorted(
            items,
            key=lambda item: (int(item.get("like_count") or 0), _created(item)),
            reverse=True,
        ))
    raise ValueError(f"Unknown sort order: {sort_by!r}")


def compute_display(
    canonical: tuple,
    search: SearchState | None,
    filters: FilterOptions,
    now: datetime,
) -> tuple:
    if search is not None and search.active:
        return apply_search(canonical, search.results)
    return apply_filters(canonical, filters, now)


def slice_page(display: tuple, page_index: int, page_size: int) -> tuple:
    """One page: display[(p-1)*size : p*size]."""
    if page_index < 1 or page_size < 1:
        return ()
    start = (page_index - 1) * page_size
    return tuple(display[start:start + page_size])


def has_page_after(display: tuple, page_index: int, page_size: int) -> bool:
    return len(display) > page_index * page_size
