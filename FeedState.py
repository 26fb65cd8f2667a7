"""
FeedState — the immutable PaginationState snapshot and its parts.

A snapshot is never mutated. FeedManager builds the next one with
dataclasses.replace() and swaps the reference, so a reader holding an old
snapshot never sees a half-applied transition, and "did anything change" is a
plain `is` / `==` check.

Item sequences are tuples of dicts. The dicts themselves are shared between
snapshots and must be treated as read-only.

Usage:
    from FeedState import initial_state, state_from_dict

    state = initial_state(page_size=15)
    state.page_items            # ()
    state.to_dict()             # JSON-compatible dump
    state_from_dict(dumped)     # lenient load, see below
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any

from FeedTypes import PaginationMode, SortOrder, TimeWindow


# ── Parts ──────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ResultSet:
    """Ranked search hits from the external search builder."""
    item_ids:      tuple = ()
    total_results: int   = 0

    @classmethod
    def from_ids(cls, ids, total: int | None = None) -> "ResultSet":
        ids = tuple(ids)
        return cls(item_ids=ids, total_results=len(ids) if total is None else total)


@dataclass(frozen=True)
class SearchState:
    active:  bool              = False
    query:   str               = ""
    results: ResultSet | None  = None


@dataclass(frozen=True)
class FilterOptions:
    content_kind: str        = "all"
    sort_by:      SortOrder  = SortOrder.NEWEST
    time_window:  TimeWindow = TimeWindow.ALL

    def __post_init__(self):
        # Accept plain strings from JSON / CLI / HTTP callers.
        object.__setattr__(self, "sort_by", SortOrder(self.sort_by))
        object.__setattr__(self, "time_window", TimeWindow(self.time_window))
        if not self.content_kind:
            object.__setattr__(self, "content_kind", "all")

    def is_default(self) -> bool:
        return self == FilterOptions()

    def to_dict(self) -> dict:
        return {
            "content_kind": self.content_kind,
            "sort_by":      self.sort_by.value,
            "time_window":  self.time_window.value,
        }


@dataclass(frozen=True)
class Metadata:
    loaded_remote_count:         int   = 0
    current_batch_number:        int   = 0
    last_fetch_timestamp:        float = 0.0
    total_filtered_count:        int   = 0
    visible_filtered_count:      int   = 0
    filter_applied_at_timestamp: float = 0.0


# ── Snapshot ───────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class PaginationState:
    """
    One feed instance's paginated view.

    has_more_items is true when another page can be produced at all: either
    held display items extend past the current page, or remote_has_more says
    the content store holds more than we do.
    """

    page_size:           int
    canonical_items:     tuple                = ()
    display_items:       tuple                = ()
    page_items:          tuple                = ()
    current_page_index:  int                  = 1
    total_remote_count:  int                  = 0
    total_known:         bool                 = False
    remote_has_more:     bool                 = True
    has_more_items:      bool                 = True
    fetch_in_flight:     bool                 = False
    load_more_in_flight: bool                 = False
    search_state:        SearchState | None   = None
    filter_state:        FilterOptions        = field(default_factory=FilterOptions)
    pagination_mode:     PaginationMode       = PaginationMode.SERVER
    metadata:            Metadata             = field(default_factory=Metadata)
    generation:          int                  = 0

    @property
    def search_active(self) -> bool:
        return bool(self.search_state and self.search_state.active)

    @property
    def search_query(self) -> str | None:
        return self.search_state.query if self.search_active else None

    @property
    def total_pages(self) -> int:
        """Pages implied by the remote total; 0 when no total has been reported."""
        if self.total_remote_count <= 0 or self.page_size <= 0:
            return 0
        return math.ceil(self.total_remote_count / self.page_size)

    def to_dict(self) -> dict:
        search = None
        if self.search_state is not None:
            results = self.search_state.results
            search = {
                "active":  self.search_state.active,
                "query":   self.search_state.query,
                "results": None if results is None else {
                    "item_ids":      list(results.item_ids),
                    "total_results": results.total_results,
                },
            }
        return {
            "page_size":           self.page_size,
            "canonical_items":     _as_list(self.canonical_items),
            "display_items":       _as_list(self.display_items),
            "page_items":          _as_list(self.page_items),
            "current_page_index":  self.current_page_index,
            "total_remote_count":  self.total_remote_count,
            "total_known":         self.total_known,
            "remote_has_more":     self.remote_has_more,
            "has_more_items":      self.has_more_items,
            "fetch_in_flight":     self.fetch_in_flight,
            "load_more_in_flight": self.load_more_in_flight,
            "search_state":        search,
            "filter_state":        self.filter_state.to_dict(),
            "pagination_mode":     self.pagination_mode.value,
            "metadata":            dict(vars(self.metadata)),
            "generation":          self.generation,
        }


def initial_state(page_size: int, generation: int = 0) -> PaginationState:
    """The empty snapshot a feed instance mounts with (and reset() returns to)."""
    return PaginationState(page_size=page_size, generation=generation)


def _as_list(value: Any) -> Any:
    return list(value) if isinstance(value, (list, tuple)) else value


def _as_tuple(value: Any) -> Any:
    # Malformed values are kept as-is so FeedValidator can report them.
    return tuple(value) if isinstance(value, list) else value


def state_from_dict(data: dict) -> PaginationState:
    """
    Rebuild a snapshot from to_dict() output (or a hand-written dump).

    Lenient on purpose for item sequences: a non-list canonical/display/page
    value is carried through unchanged so the validator's shape check can flag
    it. Enum fields must hold valid values; ValueError otherwise.
    """
    search_raw = data.get("search_state")
    search = None
    if isinstance(search_raw, dict):
        results_raw = search_raw.get("results")
        results = None
        if isinstance(results_raw, dict):
            ids = tuple(results_raw.get("item_ids") or ())
            results = ResultSet(item_ids=ids, total_results=int(results_raw.get("total_results", len(ids))))
        search = SearchState(
            active=bool(search_raw.get("active", False)),
            query=str(search_raw.get("query", "")),
            results=results,
        )

    filters_raw = data.get("filter_state") or {}
    filters = FilterOptions(
        content_kind=filters_raw.get("content_kind", "all"),
        sort_by=filters_raw.get("sort_by", SortOrder.NEWEST),
        time_window=filters_raw.get("time_window", TimeWindow.ALL),
    )

    meta_raw = data.get("metadata") or {}
    known_meta = set(Metadata.__dataclass_fields__)
    metadata = Metadata(**{k: v for k, v in meta_raw.items() if k in known_meta})

    return PaginationState(
        page_size=int(data.get("page_size", 0)),
        canonical_items=_as_tuple(data.get("canonical_items", [])),
        display_items=_as_tuple(data.get("display_items", [])),
        page_items=_as_tuple(data.get("page_items", [])),
        current_page_index=int(data.get("current_page_index", 1)),
        total_remote_count=int(data.get("total_remote_count", 0)),
        total_known=bool(data.get("total_known", False)),
        remote_has_more=bool(data.get("remote_has_more", True)),
        has_more_items=bool(data.get("has_more_items", True)),
        fetch_in_flight=bool(data.get("fetch_in_flight", False)),
        load_more_in_flight=bool(data.get("load_more_in_flight", False)),
        search_state=search,
        filter_state=filters,
        pagination_mode=PaginationMode(data.get("pagination_mode", PaginationMode.SERVER)),
        metadata=metadata,
        generation=int(data.get("generation", 0)),
    )


def _length(value: Any) -> int | None:
    return len(value) if isinstance(value, (list, tuple)) else None


def summarize_state(state: PaginationState) -> dict:
    """Compact, JSON-safe debug view: lengths and flags instead of item bodies."""
    return {
        "page": state.current_page_index,
        "page_size": state.page_size,
        "has_more_items": state.has_more_items,
        "remote_has_more": state.remote_has_more,
        "fetch_in_flight": state.fetch_in_flight,
        "load_more_in_flight": state.load_more_in_flight,
        "generation": state.generation,
        "lengths": {
            "canonical": _length(state.canonical_items),
            "display":   _length(state.display_items),
            "page":      _length(state.page_items),
        },
        "search": {
            "active": state.search_active,
            "query":  state.search_state.query if state.search_state else "",
        },
        "total_remote_count": state.total_remote_count,
        "pagination_mode": state.pagination_mode.value,
        "filters": state.filter_state.to_dict(),
        "metadata": dict(vars(state.metadata)),
    }
