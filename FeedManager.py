"""
FeedManager — one feed instance's pagination state, and the only writer of it.

Every intent (load more, search, filters, fresh data, reset) builds a new
PaginationState from the current one, swaps the reference, then notifies
subscribers synchronously. Nothing is mutated in place.

Loop protection:
  - Subscribers run inside a "notifying" window. Any mutating call made from
    a subscriber is rejected with ErrorKind.REENTRANT_CALL instead of
    recursing into another notification.
  - A transition that produces an equal snapshot is not published.
  - FeedStateMachine admits at most one load-more at a time; extra callers
    are turned away, never queued, and a failure is never retried here.
  - Every remote fetch is tagged with the snapshot generation at issue time.
    Search, filter, refresh and reset bump the generation, so a slow
    response for an older configuration is discarded on arrival.

Failures come back as values: mutators return a Transition, load_more() and
load_initial() return a LoadMoreOutcome. An unexpected exception while
building a snapshot aborts that transition (the previous snapshot stays) and
is reported as a consistency Issue.

Usage:
    from FeedManager   import FeedManager
    from FeedRepository import HttpContentRepository

    repo    = HttpContentRepository("https://api.example.com", path="posts")
    manager = FeedManager(repo)
    unsubscribe = manager.subscribe(render)

    await manager.load_initial()
    manager.update_filters({"content_kind": "audio", "sort_by": "popular"})
    outcome = await manager.load_more()
    if not outcome.success:
        show_retry(outcome.error)
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable, Iterable

from feed_config import DEFAULT_CONFIG, FeedConfig
from FeedOverlay import compute_display, has_page_after, slice_page
from FeedResolver import ContentRepository, FeedResolver, LoadMoreOutcome, choose_strategy
from FeedState import (
    FilterOptions,
    PaginationState,
    ResultSet,
    SearchState,
    initial_state,
    summarize_state,
)
from FeedStateMachine import FeedStateMachine
from FeedTypes import (
    Category,
    ErrorKind,
    IssueKind,
    LoadingFlag,
    LoadMoreStatus,
    LoadMoreStrategy,
    PaginationMode,
    Severity,
)
from FeedValidator import Diagnostics, Issue, make_issue, validate, validate_async

log = logging.getLogger("feedpager.manager")

Callback    = Callable[[PaginationState], None]
Unsubscribe = Callable[[], None]


@dataclass(frozen=True)
class Transition:
    """Result of a synchronous intent. state is the snapshot in force afterwards."""
    ok:    bool
    state: PaginationState
    error: ErrorKind | None = None
    issue: Issue | None     = None


class FeedManager:
    """
    Args:
        repository: Content source for server fetches. Optional for feeds that
                    are only ever fed through update_items().
        config:     FeedConfig; page_size is fixed for the instance lifetime.
        clock:      Callable returning wall-clock seconds (default time.time).
    """

    def __init__(
        self,
        repository: ContentRepository | None = None,
        config: FeedConfig = DEFAULT_CONFIG,
        clock: Callable[[], float] = time.time,
    ):
        self._config      = config
        self._clock       = clock
        self._repository  = repository
        self._resolver    = FeedResolver(repository) if repository is not None else None
        self._machine     = FeedStateMachine(clock)
        self._subscribers: list[Callback] = []
        self._notifying   = False
        self._state       = initial_state(config.page_size)
        self.last_issue: Issue | None = None

    # ── Reads ──────────────────────────────────────────────────────────────────

    def get_state(self) -> PaginationState:
        return self._state

    @property
    def config(self) -> FeedConfig:
        return self._config

    @property
    def repository(self) -> ContentRepository | None:
        return self._repository

    @property
    def machine_status(self) -> LoadMoreStatus:
        return self._machine.status

    @property
    def machine(self) -> FeedStateMachine:
        return self._machine

    def validate(self) -> Diagnostics:
        """Diagnose the current snapshot. Advisory only; changes nothing."""
        return validate(self._state, self._config)

    async def validate_async(self) -> Diagnostics:
        return await validate_async(self._state, self._config)

    def debug_info(self) -> dict:
        return {
            "state":       summarize_state(self._state),
            "machine":     self._machine.statistics(),
            "diagnostics": self.validate().to_dict(),
            "config":      self._config.to_dict(),
            "subscribers": len(self._subscribers),
            "last_issue":  self.last_issue.to_dict() if self.last_issue else None,
        }

    # ── Subscriptions ──────────────────────────────────────────────────────────

    def subscribe(self, callback: Callback) -> Unsubscribe:
        """
        Register callback(new_state), called after every published transition.
        The callback must not call a mutating method on this manager; such
        calls are rejected while notification is in progress.
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            try:
                self._subscribers.remove(callback)
            except ValueError:
                pass

        return unsubscribe

    def close(self) -> None:
        """Drop all subscribers. The manager stays usable."""
        self._subscribers.clear()

    def _notify(self, state: PaginationState) -> None:
        self._notifying = True
        try:
            for callback in list(self._subscribers):
                try:
                    callback(state)
                except Exception:
                    log.exception(f"Subscriber {callback!r} raised; continuing with remaining subscribers")
        finally:
            self._notifying = False

    # ── Transition plumbing ────────────────────────────────────────────────────

    def _publish(self, new_state: PaginationState) -> None:
        if new_state == self._state:
            log.debug("Transition produced an identical snapshot; not publishing")
            return
        self._state = new_state
        self._notify(new_state)

    def _reject_reentrant(self, operation: str) -> bool:
        if self._notifying:
            log.warning(f"Rejected reentrant {operation}() from inside a subscriber callback")
            return True
        return False

    def _abort(self, operation: str, error: Exception) -> Issue:
        issue = make_issue(
            f"{operation} aborted, previous state kept: {error!r}",
            Severity.ERROR, Category.DATA, IssueKind.CONSISTENCY,
            datetime.fromtimestamp(self._clock(), tz=timezone.utc).isoformat(),
        )
        self.last_issue = issue
        log.warning(issue.message)
        return issue

    def _note_fetch_failure(self, operation: str, outcome: LoadMoreOutcome) -> None:
        if outcome.error is None or not outcome.error.is_fetch_failure:
            return
        self.last_issue = make_issue(
            f"{operation} fetch failed ({outcome.error.value}): {outcome.message}",
            Severity.WARNING, Category.DATA, IssueKind.FETCH_FAILURE,
            self._now().isoformat(),
        )

    def _commit(self, operation: str, build: Callable[[PaginationState], PaginationState]) -> Transition:
        if self._reject_reentrant(operation):
            return Transition(False, self._state, ErrorKind.REENTRANT_CALL)
        try:
            new_state = build(self._state)
        except Exception as e:
            issue = self._abort(operation, e)
            return Transition(False, self._state, ErrorKind.INTERNAL_ERROR, issue)
        self._publish(new_state)
        return Transition(True, self._state)

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def _select_mode(self, state: PaginationState) -> PaginationMode:
        """Client mode once the relevant total is known and under the threshold."""
        if state.search_active and state.search_state.results is not None:
            total, known = state.search_state.results.total_results, True
        elif state.total_known:
            total, known = state.total_remote_count, True
        else:
            # No reported total: if the store has nothing beyond what we hold, we hold it all.
            total, known = len(state.canonical_items), not state.remote_has_more
        if known and total < self._config.client_mode_threshold:
            return PaginationMode.CLIENT
        return PaginationMode.SERVER

    def _with_mode(self, state: PaginationState, forced: PaginationMode | None = None) -> PaginationState:
        mode = PaginationMode(forced) if forced is not None else self._select_mode(state)
        if mode is not state.pagination_mode:
            log.info(f"Pagination mode {state.pagination_mode.value} -> {mode.value}")
        return replace(state, pagination_mode=mode)

    def _recompute(self, state: PaginationState, page_index: int | None = None) -> PaginationState:
        """Overlay + page slice + derived flags/metadata, all in one snapshot."""
        index   = state.current_page_index if page_index is None else page_index
        display = compute_display(state.canonical_items, state.search_state, state.filter_state, self._now())
        page    = slice_page(display, index, state.page_size)
        return replace(
            state,
            display_items=display,
            page_items=page,
            current_page_index=index,
            has_more_items=has_page_after(display, index, state.page_size) or state.remote_has_more,
            metadata=replace(
                state.metadata,
                loaded_remote_count=len(state.canonical_items),
                total_filtered_count=len(display),
                visible_filtered_count=len(page),
            ),
        )

    def _next_generation(self) -> int:
        return self._state.generation + 1

    def _commit_reconfigure(
        self,
        operation: str,
        reason: str,
        build: Callable[[PaginationState], PaginationState],
    ) -> Transition:
        """_commit() for intents that start a new configuration: the machine
        returns to Idle only if the new snapshot was actually built."""
        transition = self._commit(operation, build)
        if transition.ok:
            self._machine.reset(reason)
        return transition

    def _reconfigure(self, state: PaginationState, **changes) -> PaginationState:
        """
        Shared body of search/filter changes: new generation, page 1, loading
        flags cleared (outstanding fetches are now stale).
        """
        state = replace(
            state,
            generation=state.generation + 1,
            fetch_in_flight=False,
            load_more_in_flight=False,
            metadata=replace(state.metadata, filter_applied_at_timestamp=self._clock()),
            **changes,
        )
        return self._recompute(self._with_mode(state), page_index=1)

    # ── Synchronous intents ────────────────────────────────────────────────────

    def reset(self) -> Transition:
        """Back to the empty mount-time snapshot. Legal from any state."""
        def build(state: PaginationState) -> PaginationState:
            return initial_state(self._config.page_size, generation=state.generation + 1)

        transition = self._commit_reconfigure("reset", "reset", build)
        if transition.ok:
            log.info("Feed reset")
        return transition

    def update_items(
        self,
        new_items: Iterable,
        mode: PaginationMode | str | None = None,
        total_count: int | None = None,
        has_more: bool | None = None,
    ) -> Transition:
        """
        Replace canonical items with a fresh first page or full refresh.

        Args:
            new_items:   Items in server order.
            mode:        Force a pagination mode; otherwise the size heuristic picks.
            total_count: Remote total, if the server reported one.
            has_more:    Remote "more beyond these" flag. Defaults to
                         len(items) < total_count when a total is given, else False
                         (the caller handed over the whole set).
        """
        def build(state: PaginationState) -> PaginationState:
            return self._install_items(state, tuple(new_items), mode, total_count, has_more, state.generation + 1)

        return self._commit_reconfigure("update_items", "items replaced", build)

    def _install_items(
        self,
        state: PaginationState,
        items: tuple,
        mode,
        total_count: int | None,
        has_more: bool | None,
        generation: int,
    ) -> PaginationState:
        total_known = state.total_known
        total       = state.total_remote_count
        if total_count is not None:
            if total_count < 0:
                raise ValueError(f"total_count must be >= 0, got {total_count}")
            total, total_known = total_count, True

        if has_more is not None:
            remote_more = bool(has_more)
        elif total_count is not None:
            remote_more = len(items) < total_count
        else:
            remote_more = False

        now   = self._clock()
        state = replace(
            state,
            canonical_items=items,
            total_remote_count=total,
            total_known=total_known,
            remote_has_more=remote_more,
            fetch_in_flight=False,
            load_more_in_flight=False,
            generation=generation,
            metadata=replace(state.metadata, current_batch_number=1, last_fetch_timestamp=now),
        )
        return self._recompute(self._with_mode(state, mode), page_index=1)

    def set_loading_state(self, flag: LoadingFlag | str, value: bool) -> Transition:
        """
        Toggle exactly one loading flag. Turning one on while the other is on
        is refused (no-op, logged) rather than silently clearing the other.
        """
        if self._reject_reentrant("set_loading_state"):
            return Transition(False, self._state, ErrorKind.REENTRANT_CALL)

        flag  = LoadingFlag(flag)
        state = self._state
        other = state.load_more_in_flight if flag is LoadingFlag.FETCH else state.fetch_in_flight
        if value and other:
            log.warning(f"Refused to set {flag.value} loading: the other loading flag is already set")
            return Transition(False, state, ErrorKind.CONFLICTING_LOADING_STATE)

        if flag is LoadingFlag.FETCH:
            return self._commit("set_loading_state", lambda s: replace(s, fetch_in_flight=bool(value)))
        return self._commit("set_loading_state", lambda s: replace(s, load_more_in_flight=bool(value)))

    def update_search(self, query: str, results: ResultSet | Iterable | None) -> Transition:
        """
        Install a search overlay. results is the ranked hit list from the
        search backend (a ResultSet or an iterable of item ids). An empty
        query is the same as clear_search().
        """
        if not query or not query.strip():
            return self.clear_search()

        if results is not None and not isinstance(results, ResultSet):
            results = ResultSet.from_ids(results)

        search = SearchState(active=True, query=query.strip(), results=results)
        return self._commit_reconfigure(
            "update_search",
            f"search {search.query!r}",
            lambda s: self._reconfigure(s, search_state=search),
        )

    def clear_search(self) -> Transition:
        return self._commit_reconfigure(
            "clear_search",
            "search cleared",
            lambda s: self._reconfigure(s, search_state=None),
        )

    def update_filters(self, filters: FilterOptions | dict) -> Transition:
        def build(state: PaginationState) -> PaginationState:
            options = filters if isinstance(filters, FilterOptions) else FilterOptions(**filters)
            return self._reconfigure(state, filter_state=options)

        return self._commit_reconfigure("update_filters", "filters changed", build)

    def update_total_remote_count(self, count: int) -> Transition:
        """Record the server's total ahead of (or apart from) item data."""
        def build(state: PaginationState) -> PaginationState:
            if count < 0:
                raise ValueError(f"total remote count must be >= 0, got {count}")
            state = replace(
                state,
                total_remote_count=count,
                total_known=True,
                remote_has_more=len(state.canonical_items) < count,
            )
            return self._recompute(self._with_mode(state))

        return self._commit("update_total_remote_count", build)

    def reconcile(self) -> Transition:
        """Re-run the overlay on the current snapshot (answer to a consistency error)."""
        return self._commit("reconcile", lambda s: self._recompute(s))

    # ── Load more ──────────────────────────────────────────────────────────────

    async def load_more(self) -> LoadMoreOutcome:
        """
        Produce the next page. Rejections and failures come back as an outcome
        with success=False; this coroutine does not raise for them.
        """
        if self._reject_reentrant("load_more"):
            return LoadMoreOutcome.rejected(ErrorKind.REENTRANT_CALL, self._state.has_more_items)

        state = self._state
        if state.fetch_in_flight:
            log.warning("load_more refused: initial load still in flight")
            return LoadMoreOutcome.rejected(ErrorKind.ALREADY_LOADING, state.has_more_items)

        refusal = self._machine.check_admission(state.has_more_items)
        if refusal is not None:
            log.debug(f"load_more refused: {refusal.value} (machine {self._machine.status.value})")
            return LoadMoreOutcome.rejected(refusal, state.has_more_items)

        strategy = choose_strategy(state)
        if strategy is LoadMoreStrategy.CLIENT_PAGINATE:
            return self._load_more_client(state)
        if strategy is LoadMoreStrategy.SERVER_FETCH:
            if self._resolver is None:
                log.warning("load_more needs a server fetch but no content repository is configured")
                return LoadMoreOutcome.rejected(
                    ErrorKind.INTERNAL_ERROR, state.has_more_items, "no content repository configured",
                )
            return await self._load_more_server(state)
        return LoadMoreOutcome.rejected(ErrorKind.NO_MORE_ITEMS, state.has_more_items)

    def _load_more_client(self, state: PaginationState) -> LoadMoreOutcome:
        self._machine.begin("client-paginate")
        resolver = self._resolver or FeedResolver(None)
        try:
            outcome   = resolver.paginate_client(state)
            new_state = self._recompute(state, page_index=state.current_page_index + 1)
        except Exception as e:
            issue = self._abort("load_more", e)
            self._machine.fail("client-paginate raised")
            return LoadMoreOutcome(
                success=False,
                strategy_used=LoadMoreStrategy.CLIENT_PAGINATE,
                has_more_items=state.has_more_items,
                error=ErrorKind.INTERNAL_ERROR,
                message=issue.message,
            )
        self._machine.succeed(new_state.has_more_items)
        self._publish(new_state)
        return outcome.with_has_more(new_state.has_more_items)

    async def _load_more_server(self, state: PaginationState) -> LoadMoreOutcome:
        generation = state.generation
        self._machine.begin("server-fetch")
        self._publish(replace(state, load_more_in_flight=True))

        outcome = None
        try:
            outcome = await self._resolver.fetch_server(self._state)
        except Exception as e:
            issue   = self._abort("load_more", e)
            outcome = LoadMoreOutcome(
                success=False,
                strategy_used=LoadMoreStrategy.SERVER_FETCH,
                has_more_items=state.has_more_items,
                error=ErrorKind.INTERNAL_ERROR,
                message=issue.message,
            )
        finally:
            if outcome is None:
                # Cancelled mid-flight: release the gate, then let the cancellation propagate.
                self._release_load_more(generation, "server-fetch cancelled")

        return self._finish_server_fetch(generation, outcome)

    def _is_stale(self, generation: int) -> bool:
        return self._state.generation != generation

    def _release_load_more(self, generation: int, reason: str) -> None:
        if self._is_stale(generation):
            return
        if self._machine.is_loading:
            self._machine.fail(reason)
        if self._state.load_more_in_flight:
            self._publish(replace(self._state, load_more_in_flight=False))

    def _finish_server_fetch(self, generation: int, outcome: LoadMoreOutcome) -> LoadMoreOutcome:
        if self._is_stale(generation):
            log.info(
                f"Discarding stale load-more response "
                f"(issued at generation {generation}, now {self._state.generation})"
            )
            return replace(
                outcome,
                success=False,
                error=ErrorKind.STALE_RESPONSE,
                has_more_items=self._state.has_more_items,
            )

        if not outcome.success:
            self._note_fetch_failure("load_more", outcome)
            self._release_load_more(generation, f"server-fetch {outcome.error.value if outcome.error else 'failed'}")
            return outcome.with_has_more(self._state.has_more_items)

        try:
            new_state = self._merge_fetched(self._state, outcome)
        except Exception as e:
            issue = self._abort("load_more", e)
            self._release_load_more(generation, "merge raised")
            return replace(outcome, success=False, error=ErrorKind.INTERNAL_ERROR, message=issue.message,
                           has_more_items=self._state.has_more_items)

        self._machine.succeed(new_state.has_more_items)
        self._publish(new_state)
        return outcome.with_has_more(new_state.has_more_items)

    def _merge_fetched(self, state: PaginationState, outcome: LoadMoreOutcome) -> PaginationState:
        held_ids = {item.get("id") for item in state.canonical_items}
        fresh    = []
        for item in outcome.new_items:
            item_id = item.get("id")
            if item_id in held_ids:
                continue
            held_ids.add(item_id)
            fresh.append(item)

        canonical   = state.canonical_items + tuple(fresh)
        remote_more = bool(outcome.remote_has_more) and len(fresh) > 0
        if outcome.remote_has_more and not fresh:
            log.warning("Server reported more items but returned nothing new; treating the feed as exhausted")

        # The remote ran the active query, so every returned item is a hit.
        search = state.search_state
        if search is not None and search.active:
            previous = search.results or ResultSet()
            known    = set(previous.item_ids)
            added    = tuple(dict.fromkeys(
                item.get("id") for item in outcome.new_items if item.get("id") not in known
            ))
            if added:
                ids    = previous.item_ids + added
                search = replace(search, results=ResultSet(
                    item_ids=ids,
                    total_results=max(previous.total_results, len(ids)),
                ))

        total       = state.total_remote_count
        total_known = state.total_known
        if outcome.total_count is not None:
            total, total_known = outcome.total_count, True

        merged = replace(
            state,
            canonical_items=canonical,
            search_state=search,
            total_remote_count=total,
            total_known=total_known,
            remote_has_more=remote_more,
            load_more_in_flight=False,
            metadata=replace(
                state.metadata,
                current_batch_number=state.metadata.current_batch_number + 1,
                last_fetch_timestamp=self._clock(),
            ),
        )
        merged = self._with_mode(merged)
        # Fill a partly shown page before moving on, so no item is skipped.
        page_full = len(state.page_items) >= state.page_size
        display   = compute_display(merged.canonical_items, merged.search_state, merged.filter_state, self._now())
        advance   = page_full and has_page_after(display, state.current_page_index, state.page_size)
        index     = state.current_page_index + 1 if advance else state.current_page_index
        return self._recompute(merged, page_index=index)

    # ── Initial load ───────────────────────────────────────────────────────────

    async def load_initial(self) -> LoadMoreOutcome:
        """
        Fetch the first page for the current filters/search and install it as
        canonical items. Supersedes any load-more still in flight.
        """
        if self._reject_reentrant("load_initial"):
            return LoadMoreOutcome.rejected(ErrorKind.REENTRANT_CALL, self._state.has_more_items)
        if self._repository is None:
            return LoadMoreOutcome.rejected(
                ErrorKind.INTERNAL_ERROR, self._state.has_more_items, "no content repository configured",
            )
        if self._state.fetch_in_flight:
            return LoadMoreOutcome.rejected(ErrorKind.ALREADY_LOADING, self._state.has_more_items)

        # Held items are dropped while the initial load runs: an initial-load
        # flag next to existing data is what the validator treats as a loop precursor.
        generation = self._next_generation()
        try:
            start = self._recompute(replace(
                self._state,
                canonical_items=(),
                remote_has_more=True,
                generation=generation,
                fetch_in_flight=True,
                load_more_in_flight=False,
            ), page_index=1)
        except Exception as e:
            issue = self._abort("load_initial", e)
            return LoadMoreOutcome.rejected(ErrorKind.INTERNAL_ERROR, self._state.has_more_items, issue.message)
        self._publish(start)
        self._machine.reset("initial load")

        # A full refresh must reach the content store, not a cached first page.
        invalidate = getattr(self._repository, "invalidate", None)
        if invalidate is not None:
            invalidate()

        state   = self._state
        outcome = None
        try:
            outcome = await self._resolver.fetch_server(state, offset=0)
        except Exception as e:
            issue   = self._abort("load_initial", e)
            outcome = LoadMoreOutcome(
                success=False,
                strategy_used=LoadMoreStrategy.SERVER_FETCH,
                has_more_items=state.has_more_items,
                error=ErrorKind.INTERNAL_ERROR,
                message=issue.message,
            )
        finally:
            if outcome is None and not self._is_stale(generation):
                self._publish(replace(self._state, fetch_in_flight=False))

        if self._is_stale(generation):
            log.info(f"Discarding stale initial load (generation {generation}, now {self._state.generation})")
            return replace(outcome, success=False, error=ErrorKind.STALE_RESPONSE,
                           has_more_items=self._state.has_more_items)

        if not outcome.success:
            self._note_fetch_failure("load_initial", outcome)
            self._publish(replace(self._state, fetch_in_flight=False))
            return outcome.with_has_more(self._state.has_more_items)

        try:
            new_state = self._install_items(
                self._state, outcome.new_items, None, outcome.total_count, outcome.remote_has_more, generation,
            )
        except Exception as e:
            issue = self._abort("load_initial", e)
            self._publish(replace(self._state, fetch_in_flight=False))
            return replace(outcome, success=False, error=ErrorKind.INTERNAL_ERROR, message=issue.message)

        self._publish(new_state)
        return outcome.with_has_more(new_state.has_more_items)


async def load_pages(manager: FeedManager, pages: int) -> list[LoadMoreOutcome]:
    """
    Drive load_more() up to `pages` times, stopping at the first unsuccessful
    outcome. Used by the CLI; each call is caller-initiated, never a retry.
    """
    outcomes = []
    for _ in range(pages):
        outcome = await manager.load_more()
        outcomes.append(outcome)
        if not outcome.success:
            break
        await asyncio.sleep(0)
    return outcomes
