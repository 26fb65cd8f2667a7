"""
FeedTypes — shared shapes and closed variants for feed pagination.

Items and page responses are plain dicts as returned by the remote content
store; the TypedDicts below document the keys the pager actually reads.
Mode, strategy, status and severity values are Enums so every branch on them
is explicit.

Usage:
    from FeedTypes import FeedItem, PaginationMode, SortOrder

    item: FeedItem = {"id": "p1", "post_type": "audio", "created_at": "2025-01-13T10:00:00Z"}
    if state.pagination_mode is PaginationMode.CLIENT:
        ...

All enum values are lower-case strings so they survive a JSON round trip
(see FeedState.to_dict / state_from_dict).
"""

from enum import Enum
from typing import Any, TypedDict, NotRequired


# ── Remote shapes ──────────────────────────────────────────────────────────────

class FeedItem(TypedDict):
    """
    One post/track as held by a feed. Only 'id' is required; the overlay
    reads the optional fields when the matching filter or sort is active.
    """
    id:         Any
    post_type:  NotRequired[str]   # content kind, e.g. "text" / "audio"
    created_at: NotRequired[str]   # ISO-8601, naive values are treated as UTC
    like_count: NotRequired[int]


class PageResponse(TypedDict):
    """Return shape of ContentRepository.fetch_page()."""
    items:       list[FeedItem]
    total_count: int
    has_more:    bool


# ── Closed variants ────────────────────────────────────────────────────────────

class PaginationMode(str, Enum):
    CLIENT = "client"   # next page is sliced out of held display items
    SERVER = "server"   # next page needs a remote fetch


class LoadMoreStrategy(str, Enum):
    CLIENT_PAGINATE = "client-paginate"
    SERVER_FETCH    = "server-fetch"


class LoadMoreStatus(str, Enum):
    IDLE         = "idle"
    LOADING_MORE = "loading-more"
    EXHAUSTED    = "exhausted"
    FAILED       = "failed"


class SortOrder(str, Enum):
    NEWEST  = "newest"
    OLDEST  = "oldest"
    POPULAR = "popular"


class TimeWindow(str, Enum):
    ALL   = "all"
    TODAY = "today"
    WEEK  = "week"
    MONTH = "month"


class LoadingFlag(str, Enum):
    FETCH     = "fetch"
    LOAD_MORE = "load_more"


class Severity(str, Enum):
    WARNING  = "warning"
    ERROR    = "error"
    CRITICAL = "critical"


class Category(str, Enum):
    UI                       = "ui"
    DATA                     = "data"
    PERFORMANCE              = "performance"
    USER_EXPERIENCE          = "user-experience"
    INFINITE_LOOP_PREVENTION = "infinite-loop-prevention"


class IssueKind(str, Enum):
    """Which class of problem an Issue belongs to, and so how to respond."""
    STRUCTURAL         = "structural"          # only safe response is reset()
    CONSISTENCY        = "consistency"         # reconcile() and carry on
    INFINITE_LOOP_RISK = "infinite-loop-risk"  # block, manual reset
    FETCH_FAILURE      = "fetch-failure"       # caller may retry
    PERFORMANCE        = "performance"         # informational


class ErrorKind(str, Enum):
    # transport / remote
    CONNECTION_FAILED = "connection-failed"
    TIMEOUT           = "timeout"
    UNAUTHORIZED      = "unauthorized"
    FORBIDDEN         = "forbidden"
    RATE_LIMITED      = "rate-limited"
    SERVER_ERROR      = "server-error"
    INVALID_RESPONSE  = "invalid-response"
    # admission / state
    ALREADY_LOADING           = "already-loading"
    EXHAUSTED                 = "exhausted"
    NO_MORE_ITEMS             = "no-more-items"
    REENTRANT_CALL            = "reentrant-call"
    CONFLICTING_LOADING_STATE = "conflicting-loading-state"
    STALE_RESPONSE            = "stale-response"
    INTERNAL_ERROR            = "internal-error"

    @property
    def is_fetch_failure(self) -> bool:
        return self in _FETCH_FAILURES


_FETCH_FAILURES = frozenset({
    ErrorKind.CONNECTION_FAILED,
    ErrorKind.TIMEOUT,
    ErrorKind.UNAUTHORIZED,
    ErrorKind.FORBIDDEN,
    ErrorKind.RATE_LIMITED,
    ErrorKind.SERVER_ERROR,
    ErrorKind.INVALID_RESPONSE,
})
