"""Tests for FeedManager: intents, load-more, loop protection and invariants."""

import asyncio

import httpx
import pytest

from conftest import clock, make_items
from FeedExceptions import FeedConnectionError
from FeedManager import FeedManager, load_pages
from FeedRepository import HttpContentRepository, InMemoryRepository
from FeedState import FilterOptions, ResultSet
from FeedTypes import ErrorKind, IssueKind, LoadMoreStatus, LoadMoreStrategy, PaginationMode, Severity


class FlakyRepository:
    """Wraps a repository; raises queued errors before delegating."""

    def __init__(self, inner, errors=()):
        self.inner  = inner
        self.errors = list(errors)

    async def fetch_page(self, filters, search_query, offset, limit):
        if self.errors:
            raise self.errors.pop(0)
        return await self.inner.fetch_page(filters, search_query, offset, limit)


class GatedRepository:
    """Holds every fetch until gate is set."""

    def __init__(self, inner):
        self.inner   = inner
        self.gate    = asyncio.Event()
        self.started = asyncio.Event()

    async def fetch_page(self, filters, search_query, offset, limit):
        self.started.set()
        await self.gate.wait()
        return await self.inner.fetch_page(filters, search_query, offset, limit)


class RepeatingRepository:
    """Keeps returning the same page and insisting there is more."""

    def __init__(self, items):
        self.items = items

    async def fetch_page(self, filters, search_query, offset, limit):
        return {"items": list(self.items), "total_count": 100, "has_more": True}


def assert_invariants(state, page_size=15):
    assert len(state.page_items) <= page_size
    assert not (state.fetch_in_flight and state.load_more_in_flight)
    assert state.metadata.visible_filtered_count == len(state.page_items)


@pytest.fixture
def manager(config):
    return FeedManager(config=config, clock=clock)


@pytest.fixture
def server_manager(config):
    """Server-mode feed: 15 of 100 items held, repository serves the rest."""
    repo = InMemoryRepository(make_items(100), clock=clock)
    m = FeedManager(repo, config, clock=clock)
    m.update_items(make_items(15), total_count=100)
    return m


class TestClientPagination:
    @pytest.mark.asyncio
    async def test_load_more_slices_next_page(self, manager, items_40):
        assert manager.update_items(items_40, mode="client").ok
        state = manager.get_state()
        assert state.pagination_mode is PaginationMode.CLIENT
        assert state.current_page_index == 1
        assert len(state.page_items) == 15

        outcome = await manager.load_more()
        state = manager.get_state()
        assert outcome.success
        assert outcome.strategy_used is LoadMoreStrategy.CLIENT_PAGINATE
        assert state.current_page_index == 2
        assert len(state.page_items) == 15
        assert state.page_items[0]["id"] == "p15"
        assert state.has_more_items
        assert manager.machine_status is LoadMoreStatus.IDLE

    @pytest.mark.asyncio
    async def test_last_page_exhausts(self, manager, items_40):
        manager.update_items(items_40, mode="client")
        await manager.load_more()
        outcome = await manager.load_more()
        assert outcome.success
        assert not outcome.has_more_items
        assert len(manager.get_state().page_items) == 10
        assert manager.machine_status is LoadMoreStatus.EXHAUSTED

        refused = await manager.load_more()
        assert not refused.success
        assert refused.error is ErrorKind.EXHAUSTED

    @pytest.mark.asyncio
    async def test_invariants_hold_for_every_published_snapshot(self, manager, items_40):
        seen = []
        manager.subscribe(seen.append)
        manager.update_items(items_40, mode="client")
        manager.update_filters({"content_kind": "audio"})
        await manager.load_more()
        manager.update_search("post", ["p1", "p3", "p5"])
        manager.clear_search()
        await manager.load_more()
        manager.reset()
        assert seen
        for state in seen:
            assert_invariants(state)

    def test_missing_repository_for_server_fetch(self, manager):
        manager.update_items(make_items(15), total_count=100)
        outcome = asyncio.run(manager.load_more())
        assert not outcome.success
        assert outcome.error is ErrorKind.INTERNAL_ERROR


class TestServerFetch:
    @pytest.mark.asyncio
    async def test_fetch_appends_and_advances(self, server_manager):
        assert server_manager.get_state().pagination_mode is PaginationMode.SERVER
        outcome = await server_manager.load_more()
        state = server_manager.get_state()
        assert outcome.success
        assert outcome.strategy_used is LoadMoreStrategy.SERVER_FETCH
        assert len(state.canonical_items) == 30
        assert state.current_page_index == 2
        assert state.page_items[0]["id"] == "p15"
        assert not state.load_more_in_flight
        assert state.metadata.current_batch_number == 2
        assert server_manager.machine_status is LoadMoreStatus.IDLE

    @pytest.mark.asyncio
    async def test_transport_error_then_retry(self, config):
        repo = FlakyRepository(InMemoryRepository(make_items(100)), [FeedConnectionError("refused")])
        m = FeedManager(repo, config, clock=clock)
        m.update_items(make_items(15), total_count=100)

        failed = await m.load_more()
        assert not failed.success
        assert failed.error is ErrorKind.CONNECTION_FAILED
        assert not m.get_state().load_more_in_flight
        assert m.machine_status is LoadMoreStatus.FAILED
        assert len(m.get_state().canonical_items) == 15
        assert m.last_issue.kind is IssueKind.FETCH_FAILURE
        assert m.last_issue.severity is Severity.WARNING
        assert not m.last_issue.requires_user_action

        retried = await m.load_more()
        assert retried.success
        assert m.machine_status is LoadMoreStatus.IDLE
        assert len(m.get_state().canonical_items) == 30

    @pytest.mark.asyncio
    async def test_nothing_new_despite_has_more_exhausts(self, config):
        m = FeedManager(RepeatingRepository(make_items(15)), config, clock=clock)
        m.update_items(make_items(15), total_count=100)

        outcome = await m.load_more()
        state = m.get_state()
        assert outcome.success
        assert len(state.canonical_items) == 15
        assert not state.has_more_items
        assert m.machine_status is LoadMoreStatus.EXHAUSTED

    @pytest.mark.asyncio
    async def test_second_call_while_loading_is_rejected(self, config):
        repo = GatedRepository(InMemoryRepository(make_items(100)))
        m = FeedManager(repo, config, clock=clock)
        m.update_items(make_items(15), total_count=100)

        first = asyncio.create_task(m.load_more())
        await repo.started.wait()
        assert m.get_state().load_more_in_flight

        second = await m.load_more()
        assert second.error is ErrorKind.ALREADY_LOADING

        repo.gate.set()
        assert (await first).success

    @pytest.mark.asyncio
    async def test_stale_response_is_discarded(self, config):
        repo = GatedRepository(InMemoryRepository(make_items(100)))
        m = FeedManager(repo, config, clock=clock)
        m.update_items(make_items(15), total_count=100)

        task = asyncio.create_task(m.load_more())
        await repo.started.wait()
        m.update_filters({"content_kind": "audio"})

        snapshot = m.get_state()
        notified = []
        m.subscribe(notified.append)

        repo.gate.set()
        outcome = await task
        assert not outcome.success
        assert outcome.error is ErrorKind.STALE_RESPONSE
        assert m.get_state() is snapshot
        assert notified == []
        assert m.machine_status is LoadMoreStatus.IDLE

    @pytest.mark.asyncio
    async def test_cancelled_fetch_releases_gate(self, config):
        repo = GatedRepository(InMemoryRepository(make_items(100)))
        m = FeedManager(repo, config, clock=clock)
        m.update_items(make_items(15), total_count=100)

        task = asyncio.create_task(m.load_more())
        await repo.started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert not m.get_state().load_more_in_flight
        assert m.machine_status is LoadMoreStatus.FAILED


async def load_large_feed(config):
    """200 remote items, first page held; too many for client mode."""
    repo = InMemoryRepository(make_items(200), clock=clock)
    m = FeedManager(repo, config, clock=clock)
    assert (await m.load_initial()).success
    assert m.get_state().pagination_mode is PaginationMode.SERVER
    return m, repo


class TestServerFetchAfterReconfigure:

    @pytest.mark.asyncio
    async def test_filter_change_continues_from_matching_items(self, config):
        m, repo = await load_large_feed(config)
        m.update_filters({"content_kind": "audio"})
        assert [i["id"] for i in m.get_state().display_items] == ["p1", "p3", "p5", "p7", "p9", "p11", "p13"]

        for _ in range(3):
            assert (await m.load_more()).success

        audio_calls = [c["offset"] for c in repo.calls if c["filters"]["content_kind"] == "audio"]
        assert audio_calls == [7, 22, 37]

        state = m.get_state()
        assert [i["id"] for i in state.display_items] == [f"p{i}" for i in range(1, 104, 2)]
        assert state.current_page_index == 3
        assert state.page_items[0]["id"] == "p61"

    @pytest.mark.asyncio
    async def test_search_continues_from_matching_items(self, config):
        m, repo = await load_large_feed(config)
        m.update_search("number 1", repo.search("number 1"))
        held = [i["id"] for i in m.get_state().display_items]
        assert held == ["p1", "p10", "p11", "p12", "p13", "p14"]

        assert (await m.load_more()).success
        assert repo.calls[-1]["q"] == "number 1"
        assert repo.calls[-1]["offset"] == 6

        state = m.get_state()
        expected = ["p1"] + [f"p{i}" for i in range(10, 20)] + [f"p{i}" for i in range(100, 110)]
        assert [i["id"] for i in state.display_items] == expected
        assert state.current_page_index == 1
        assert "p15" in [i["id"] for i in state.page_items]

    @pytest.mark.asyncio
    async def test_search_without_ranked_ids_uses_remote_hits(self, config):
        m, repo = await load_large_feed(config)
        m.update_search("number 1", None)
        assert m.get_state().display_items == ()

        assert (await m.load_more()).success
        assert repo.calls[-1]["offset"] == 0

        ids = [i["id"] for i in m.get_state().display_items]
        assert ids == ["p1"] + [f"p{i}" for i in range(10, 24)]


class TestInitialLoad:
    @pytest.mark.asyncio
    async def test_load_initial_then_page_through(self, config):
        repo = InMemoryRepository(make_items(40), clock=clock)
        m = FeedManager(repo, config, clock=clock)

        first = await m.load_initial()
        state = m.get_state()
        assert first.success
        assert len(state.canonical_items) == 15
        assert state.total_remote_count == 40
        assert state.pagination_mode is PaginationMode.CLIENT
        assert state.has_more_items
        assert not state.fetch_in_flight

        outcomes = await load_pages(m, 5)
        assert [o.success for o in outcomes] == [True, True, False]
        assert outcomes[-1].error is ErrorKind.EXHAUSTED
        assert [c["offset"] for c in repo.calls] == [0, 15, 30]
        assert m.get_state().current_page_index == 3
        assert m.validate().is_valid

    @pytest.mark.asyncio
    async def test_load_more_refused_during_initial_load(self, config):
        repo = GatedRepository(InMemoryRepository(make_items(40)))
        m = FeedManager(repo, config, clock=clock)

        task = asyncio.create_task(m.load_initial())
        await repo.started.wait()
        assert m.get_state().fetch_in_flight

        refused = await m.load_more()
        assert refused.error is ErrorKind.ALREADY_LOADING

        repo.gate.set()
        assert (await task).success

    @pytest.mark.asyncio
    async def test_failed_initial_load_clears_flag(self, config):
        repo = FlakyRepository(InMemoryRepository(make_items(40)), [FeedConnectionError("down")])
        m = FeedManager(repo, config, clock=clock)

        outcome = await m.load_initial()
        assert outcome.error is ErrorKind.CONNECTION_FAILED
        assert not m.get_state().fetch_in_flight
        assert (await m.load_initial()).success

    @pytest.mark.asyncio
    async def test_refresh_reaches_the_content_store(self, config):
        version = {"tag": "v1"}
        calls = []

        def handler(request):
            calls.append(request)
            items = [{"id": f"{version['tag']}-{i}"} for i in range(3)]
            return httpx.Response(200, json={"items": items, "totalCount": 3, "hasMore": False})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        m = FeedManager(HttpContentRepository("https://api.example.test/v1", client=client), config, clock=clock)

        assert (await m.load_initial()).success
        assert [i["id"] for i in m.get_state().canonical_items] == ["v1-0", "v1-1", "v1-2"]

        version["tag"] = "v2"
        m.reset()
        assert (await m.load_initial()).success
        assert [i["id"] for i in m.get_state().canonical_items] == ["v2-0", "v2-1", "v2-2"]

        version["tag"] = "v3"
        assert (await m.load_initial()).success
        assert [i["id"] for i in m.get_state().canonical_items] == ["v3-0", "v3-1", "v3-2"]
        assert len(calls) == 3
        await client.aclose()

    @pytest.mark.asyncio
    async def test_failed_initial_load_is_a_fetch_failure_issue(self, config):
        repo = FlakyRepository(InMemoryRepository(make_items(40)), [FeedConnectionError("down")])
        m = FeedManager(repo, config, clock=clock)
        await m.load_initial()
        assert m.last_issue.kind is IssueKind.FETCH_FAILURE
        assert "connection-failed" in m.last_issue.message

    @pytest.mark.asyncio
    async def test_without_repository(self, manager):
        outcome = await manager.load_initial()
        assert outcome.error is ErrorKind.INTERNAL_ERROR


class TestSynchronousIntents:
    def test_filter_round_trip_restores_display(self, manager, items_40):
        manager.update_items(items_40, mode="client")
        before = manager.get_state().display_items

        manager.update_filters({"content_kind": "audio", "sort_by": "popular"})
        assert manager.get_state().display_items != before

        manager.update_filters(FilterOptions())
        assert manager.get_state().display_items == before

    def test_filter_change_resets_page_and_machine(self, manager, items_40):
        manager.update_items(items_40, mode="client")
        asyncio.run(manager.load_more())
        generation = manager.get_state().generation

        manager.update_filters({"content_kind": "text"})
        state = manager.get_state()
        assert state.current_page_index == 1
        assert state.generation == generation + 1
        assert manager.machine_status is LoadMoreStatus.IDLE

    def test_search_overlay(self, manager, items_40):
        manager.update_items(items_40, mode="client")
        assert manager.update_search("post", ["p3", "p1"]).ok
        state = manager.get_state()
        assert [i["id"] for i in state.display_items] == ["p3", "p1"]
        assert state.search_query == "post"
        assert state.pagination_mode is PaginationMode.CLIENT

        assert manager.update_search("   ", None).ok
        assert not manager.get_state().search_active
        assert len(manager.get_state().display_items) == 40

    def test_search_accepts_result_set(self, manager, items_40):
        manager.update_items(items_40)
        manager.update_search("post", ResultSet.from_ids(["p0"], total=500))
        state = manager.get_state()
        assert len(state.display_items) == 1
        assert state.pagination_mode is PaginationMode.SERVER

    def test_loading_flags_never_both_set(self, manager):
        assert manager.set_loading_state("fetch", True).ok
        conflict = manager.set_loading_state("load_more", True)
        assert not conflict.ok
        assert conflict.error is ErrorKind.CONFLICTING_LOADING_STATE
        state = manager.get_state()
        assert state.fetch_in_flight and not state.load_more_in_flight

        assert manager.set_loading_state("fetch", False).ok
        assert manager.set_loading_state("load_more", True).ok

    def test_malformed_timestamp_aborts_transition(self, manager, items_40):
        manager.update_items(items_40, mode="client")
        before = manager.get_state()

        result = manager.update_items([{"id": "bad", "created_at": "yesterday-ish"}])
        assert not result.ok
        assert result.error is ErrorKind.INTERNAL_ERROR
        assert result.issue.kind is IssueKind.CONSISTENCY
        assert manager.get_state() is before
        assert manager.last_issue is result.issue

    def test_negative_total_is_rejected(self, manager):
        result = manager.update_items(make_items(3), total_count=-1)
        assert not result.ok
        assert result.error is ErrorKind.INTERNAL_ERROR

    def test_total_remote_count_selects_mode(self, manager):
        manager.update_items(make_items(15), has_more=True)
        assert manager.get_state().pagination_mode is PaginationMode.SERVER

        manager.update_total_remote_count(50)
        state = manager.get_state()
        assert state.pagination_mode is PaginationMode.CLIENT
        assert state.remote_has_more
        assert state.has_more_items

    def test_reset(self, manager, items_40):
        manager.update_items(items_40, mode="client")
        generation = manager.get_state().generation
        assert manager.reset().ok
        state = manager.get_state()
        assert state.canonical_items == ()
        assert state.current_page_index == 1
        assert state.generation == generation + 1

    def test_debug_info(self, manager, items_40):
        manager.update_items(items_40, mode="client")
        info = manager.debug_info()
        assert info["state"]["lengths"]["canonical"] == 40
        assert info["machine"]["status"] == "idle"
        assert info["diagnostics"]["is_valid"]


class TestSubscriptions:
    def test_subscriber_sees_each_transition(self, manager, items_40):
        seen = []
        unsubscribe = manager.subscribe(seen.append)
        manager.update_items(items_40)
        manager.update_filters({"content_kind": "audio"})
        assert len(seen) == 2
        assert seen[-1] is manager.get_state()

        unsubscribe()
        manager.reset()
        assert len(seen) == 2

    def test_identical_snapshot_not_published(self, manager):
        seen = []
        manager.subscribe(seen.append)
        assert manager.reconcile().ok
        assert seen == []

    def test_reentrant_mutation_is_rejected(self, manager, items_40):
        results = []

        def meddle(state):
            results.append(manager.update_filters({"content_kind": "audio"}))

        manager.subscribe(meddle)
        manager.update_items(items_40)
        assert len(results) == 1
        assert results[0].error is ErrorKind.REENTRANT_CALL
        assert manager.get_state().filter_state.content_kind == "all"

    def test_reentrant_load_more_is_rejected(self, manager, items_40):
        outcomes = []

        def meddle(state):
            outcomes.append(asyncio.run(manager.load_more()))

        manager.subscribe(meddle)
        manager.update_items(items_40, mode="client")
        assert outcomes[0].error is ErrorKind.REENTRANT_CALL

    def test_failing_subscriber_is_isolated(self, manager, items_40):
        seen = []

        def broken(state):
            raise RuntimeError("render failed")

        manager.subscribe(broken)
        manager.subscribe(seen.append)
        assert manager.update_items(items_40).ok
        assert len(seen) == 1


class TestIndependence:
    def test_managers_do_not_share_state(self, config, items_40):
        a = FeedManager(config=config, clock=clock)
        b = FeedManager(config=config, clock=clock)
        a.update_items(items_40)
        assert len(a.get_state().canonical_items) == 40
        assert b.get_state().canonical_items == ()
