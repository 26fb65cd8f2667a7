"""Tests for FeedValidator diagnostics."""

import time

import pytest

import FeedValidator
from feed_config import FeedConfig
from FeedState import FilterOptions, Metadata, PaginationState, ResultSet, SearchState
from FeedTypes import Category, IssueKind, PaginationMode, Severity
from FeedValidator import Diagnostics, RecoveryAction, recommended_action, validate, validate_async

STAMP = "2025-01-15T12:00:00+00:00"


def held(count):
    return tuple({"id": f"p{i}"} for i in range(count))


def consistent_state(count=10, **changes):
    """Items held, shown and paged with matching metadata."""
    items = held(count)
    page  = items[:15]
    base  = dict(
        page_size=15,
        canonical_items=items,
        display_items=items,
        page_items=page,
        metadata=Metadata(visible_filtered_count=len(page)),
    )
    base.update(changes)
    return PaginationState(**base)


class TestStructure:
    def test_null_state_is_single_critical(self, config):
        diag = validate(None, config)
        assert diag.critical_count == 1
        assert len(diag.issues) == 1
        issue = diag.issues[0]
        assert issue.category is Category.INFINITE_LOOP_PREVENTION
        assert issue.requires_user_action

    def test_non_sequence_items_stop_the_run(self, config):
        state = PaginationState(page_size=99, canonical_items="oops", current_page_index=0)
        diag = validate(state, config)
        assert len(diag.issues) == 1
        assert diag.issues[0].severity is Severity.CRITICAL
        assert diag.issues[0].kind is IssueKind.STRUCTURAL
        assert recommended_action(diag) is RecoveryAction.RESET

    def test_empty_initial_snapshot_is_clean(self, config):
        diag = validate(PaginationState(page_size=15), config)
        assert diag.issues == ()
        assert diag.is_valid


class TestScenarios:
    def test_page_overflow_is_exactly_one_error(self, config):
        state = PaginationState(page_size=15, current_page_index=4, total_remote_count=40, total_known=True)
        diag = validate(state, config)
        assert diag.error_count == 1
        assert diag.critical_count == 0
        assert diag.warning_count == 0
        assert "page overflow" in diag.issues[0].message
        assert diag.issues[0].category is Category.DATA

    def test_load_more_without_more_items_is_critical(self, config):
        state = PaginationState(page_size=15, load_more_in_flight=True, has_more_items=False)
        diag = validate(state, config)
        assert diag.critical_count == 1
        assert len(diag.issues) == 1
        issue = diag.issues[0]
        assert issue.category is Category.INFINITE_LOOP_PREVENTION
        assert issue.requires_user_action

    def test_idempotent(self, config):
        state = PaginationState(page_size=15, current_page_index=4, total_remote_count=40, total_known=True)
        assert validate(state, config, timestamp=STAMP) == validate(state, config, timestamp=STAMP)


class TestChecks:
    def test_initial_load_with_items_held(self, config):
        diag = validate(consistent_state(fetch_in_flight=True), config)
        assert diag.critical_count == 1
        assert diag.issues[0].kind is IssueKind.INFINITE_LOOP_RISK

    def test_page_size_mismatch(self, config):
        diag = validate(PaginationState(page_size=20), config)
        assert diag.error_count == 1
        assert diag.issues[0].category is Category.UI

    def test_page_index_below_one(self, config):
        diag = validate(PaginationState(page_size=15, current_page_index=0), config)
        assert diag.critical_count == 1

    def test_search_active_without_results(self, config):
        state = PaginationState(page_size=15, search_state=SearchState(active=True, query="x", results=None))
        diag = validate(state, config)
        assert diag.error_count == 1
        assert "missing" in diag.issues[0].message

    def test_search_zero_results_but_items_shown(self, config):
        search = SearchState(active=True, query="x", results=ResultSet(item_ids=(), total_results=0))
        state = consistent_state(20, search_state=search)
        diag = validate(state, config)
        # zero-results warning, plus "filters produced no visible change"
        assert diag.warning_count == 2
        assert diag.error_count == 0

    def test_large_dataset_thresholds(self, config):
        warn = validate(PaginationState(page_size=15, canonical_items=held(1001)), config)
        assert warn.warning_count == 1
        assert warn.issues[0].category is Category.PERFORMANCE

        err = validate(PaginationState(page_size=15, canonical_items=held(2001)), config)
        assert err.error_count == 1
        assert err.warning_count == 0

    def test_thresholds_come_from_config(self):
        config = FeedConfig(page_size=15, large_dataset_warn_threshold=5, large_dataset_error_threshold=8)
        diag = validate(PaginationState(page_size=15, canonical_items=held(6)), config)
        assert diag.warning_count == 1

    def test_empty_page_with_display_items(self, config):
        items = held(5)
        state = PaginationState(page_size=15, canonical_items=items, display_items=items, page_items=())
        diag = validate(state, config)
        assert diag.error_count == 1
        assert diag.issues[0].kind is IssueKind.CONSISTENCY
        assert recommended_action(diag) is RecoveryAction.RECONCILE

    def test_inert_filters(self, config):
        state = consistent_state(20, filter_state=FilterOptions(content_kind="audio"))
        diag = validate(state, config)
        assert diag.warning_count == 1
        assert diag.issues[0].category is Category.USER_EXPERIENCE

    def test_metadata_mismatch(self, config):
        state = consistent_state(5, metadata=Metadata(visible_filtered_count=0))
        diag = validate(state, config)
        assert diag.warning_count == 1
        assert "Metadata mismatch" in diag.issues[0].message

    def test_client_mode_small_dataset(self, config):
        diag = validate(consistent_state(10, pagination_mode=PaginationMode.CLIENT), config)
        assert diag.warning_count == 1
        assert diag.issues[0].kind is IssueKind.PERFORMANCE
        assert diag.is_valid

    def test_both_loading_flags(self, config):
        diag = validate(PaginationState(page_size=15, fetch_in_flight=True, load_more_in_flight=True), config)
        assert diag.error_count == 1
        assert diag.issues[0].kind is IssueKind.CONSISTENCY

    def test_only_critical_requires_user_action(self, config):
        diag = validate(PaginationState(page_size=20, current_page_index=0), config)
        for issue in diag.issues:
            assert issue.requires_user_action == (issue.severity is Severity.CRITICAL)


class TestDiagnostics:
    def test_to_dict(self, config):
        payload = validate(None, config).to_dict()
        assert payload["is_valid"] is False
        assert payload["summary"] == {"total": 1, "critical": 1, "error": 0, "warning": 0}
        assert payload["issues"][0]["category"] == "infinite-loop-prevention"

    def test_inconclusive_is_not_valid(self):
        assert not Diagnostics(inconclusive=True).is_valid


class TestValidateAsync:
    @pytest.mark.asyncio
    async def test_returns_same_issues(self, config):
        diag = await validate_async(None, config)
        assert diag.critical_count == 1

    @pytest.mark.asyncio
    async def test_timeout_is_inconclusive(self, monkeypatch):
        def slow(state, config):
            time.sleep(0.3)
            return Diagnostics()

        monkeypatch.setattr(FeedValidator, "validate", slow)
        diag = await validate_async(PaginationState(page_size=15), FeedConfig(validation_timeout_ms=10))
        assert diag.inconclusive
        assert not diag.is_valid
