"""
FeedResolver — decides how the next page is produced, then produces it.

Two strategies:

  client-paginate  mode is client and held display items already reach past
                   the current page. Pure slice, no await.
  server-fetch     mode is server, or the client slice is not possible but the
                   snapshot still reports more items. Calls the repository;
                   this is the only place the pager suspends.

The resolver reads a snapshot and returns a LoadMoreOutcome. It never writes
state and never touches load_more_in_flight: FeedManager owns both, and
clears the flag on every exit path.

Repository failures (FeedFetchError) become an outcome with success=False and
the error's ErrorKind. Anything else propagates to the manager boundary.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Protocol

from FeedExceptions import FeedFetchError
from FeedOverlay import has_page_after, slice_page
from FeedState import FilterOptions, PaginationState
from FeedTypes import ErrorKind, LoadMoreStrategy, PageResponse, PaginationMode

log = logging.getLogger("feedpager.resolver")


class ContentRepository(Protocol):
    """The remote content source. See FeedRepository for implementations."""

    async def fetch_page(
        self,
        filters: FilterOptions,
        search_query: str | None,
        offset: int,
        limit: int,
    ) -> PageResponse: ...


@dataclass(frozen=True)
class LoadMoreOutcome:
    success:         bool
    strategy_used:   LoadMoreStrategy | None
    new_items:       tuple            = ()
    has_more_items:  bool             = False
    error:           ErrorKind | None = None
    message:         str              = ""
    # server-fetch only: what the repository reported
    total_count:     int | None       = None
    remote_has_more: bool | None      = None

    @classmethod
    def rejected(cls, error: ErrorKind, has_more_items: bool, message: str = "") -> "LoadMoreOutcome":
        return cls(success=False, strategy_used=None, has_more_items=has_more_items, error=error, message=message)

    def with_has_more(self, has_more_items: bool) -> "LoadMoreOutcome":
        return replace(self, has_more_items=has_more_items)

    def to_dict(self) -> dict:
        return {
            "success":        self.success,
            "strategy_used":  self.strategy_used.value if self.strategy_used else None,
            "new_items":      list(self.new_items),
            "has_more_items": self.has_more_items,
            "error":          self.error.value if self.error else None,
            "message":        self.message,
        }


def choose_strategy(state: PaginationState) -> LoadMoreStrategy | None:
    """Which strategy is legal for this snapshot; None if neither."""
    client_ok = (
        state.pagination_mode is PaginationMode.CLIENT
        and has_page_after(state.display_items, state.current_page_index, state.page_size)
    )
    if client_ok:
        return LoadMoreStrategy.CLIENT_PAGINATE
    if state.pagination_mode is PaginationMode.SERVER or state.has_more_items:
        return LoadMoreStrategy.SERVER_FETCH
    return None


class FeedResolver:
    """
    Args:
        repository: Any object with an async fetch_page() (ContentRepository).
    """

    def __init__(self, repository: ContentRepository):
        self._repo = repository

    @property
    def repository(self) -> ContentRepository:
        return self._repo

    def paginate_client(self, state: PaginationState) -> LoadMoreOutcome:
        next_index = state.current_page_index + 1
        new_items  = slice_page(state.display_items, next_index, state.page_size)
        more_held  = has_page_after(state.display_items, next_index, state.page_size)
        return LoadMoreOutcome(
            success=True,
            strategy_used=LoadMoreStrategy.CLIENT_PAGINATE,
            new_items=new_items,
            has_more_items=more_held or state.remote_has_more,
        )

    async def fetch_server(self, state: PaginationState, offset: int | None = None) -> LoadMoreOutcome:
        """
        Fetch the page after the held items that match the current filters
        and search; the remote applies that same configuration, so items
        fetched under an earlier one do not count towards the offset.
        """
        if offset is None:
            offset = len(state.display_items)
        log.debug(
            f"server-fetch offset={offset} limit={state.page_size} "
            f"query={state.search_query!r} filters={state.filter_state.to_dict()}"
        )
        try:
            page = await self._repo.fetch_page(
                state.filter_state,
                state.search_query,
                offset,
                state.page_size,
            )
        except FeedFetchError as e:
            log.warning(f"server-fetch failed at offset {offset}: {e.kind.value} ({e.message})")
            return LoadMoreOutcome(
                success=False,
                strategy_used=LoadMoreStrategy.SERVER_FETCH,
                has_more_items=state.has_more_items,
                error=e.kind,
                message=e.message,
            )

        items = tuple(page["items"])
        return LoadMoreOutcome(
            success=True,
            strategy_used=LoadMoreStrategy.SERVER_FETCH,
            new_items=items,
            has_more_items=bool(page["has_more"]),
            total_count=int(page["total_count"]),
            remote_has_more=bool(page["has_more"]),
        )
