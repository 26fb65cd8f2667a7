"""
FeedValidator — side-effect-free diagnostics for a PaginationState.

validate() only reads. It never mutates the snapshot, never raises, and has
no reference to any FeedManager, so running it cannot start a fetch or a
notification. Callers decide what to do with the result: log warnings, show
critical issues with a manual "reset" affordance. Nothing retries on the
strength of validator output.

Checks run in a fixed order. A structurally broken snapshot (item fields that
are not sequences) stops the run after that issue, since every later check
would only report noise about the same breakage.

Usage:
    from FeedValidator import validate, recommended_action

    diag = validate(manager.get_state(), config)
    if diag.has_critical:
        show_reset_banner(diag.issues)
    elif recommended_action(diag) is RecoveryAction.RECONCILE:
        manager.reconcile()
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from feed_config import DEFAULT_CONFIG, FeedConfig
from FeedState import PaginationState
from FeedTypes import Category, IssueKind, PaginationMode, Severity

log = logging.getLogger("feedpager.validator")


@dataclass(frozen=True)
class Issue:
    message:              str
    severity:             Severity
    category:             Category
    kind:                 IssueKind
    requires_user_action: bool
    timestamp:            str

    def to_dict(self) -> dict:
        return {
            "message":              self.message,
            "severity":             self.severity.value,
            "category":             self.category.value,
            "kind":                 self.kind.value,
            "requires_user_action": self.requires_user_action,
            "timestamp":            self.timestamp,
        }


def make_issue(
    message: str,
    severity: Severity,
    category: Category,
    kind: IssueKind,
    timestamp: str | None = None,
) -> Issue:
    """Only critical issues ask the user to act."""
    return Issue(
        message=message,
        severity=severity,
        category=category,
        kind=kind,
        requires_user_action=severity is Severity.CRITICAL,
        timestamp=timestamp or _now_iso(),
    )


@dataclass(frozen=True)
class Diagnostics:
    issues:       tuple = ()
    inconclusive: bool  = False   # validation timed out; absence of issues proves nothing

    def count(self, severity: Severity) -> int:
        return sum(1 for issue in self.issues if issue.severity is severity)

    @property
    def critical_count(self) -> int:
        return self.count(Severity.CRITICAL)

    @property
    def error_count(self) -> int:
        return self.count(Severity.ERROR)

    @property
    def warning_count(self) -> int:
        return self.count(Severity.WARNING)

    @property
    def has_critical(self) -> bool:
        return self.critical_count > 0

    @property
    def is_valid(self) -> bool:
        return not self.inconclusive and self.critical_count == 0 and self.error_count == 0

    @property
    def summary(self) -> dict:
        return {
            "total":    len(self.issues),
            "critical": self.critical_count,
            "error":    self.error_count,
            "warning":  self.warning_count,
        }

    def to_dict(self) -> dict:
        return {
            "is_valid":     self.is_valid,
            "inconclusive": self.inconclusive,
            "summary":      self.summary,
            "issues":       [issue.to_dict() for issue in self.issues],
        }


class RecoveryAction(str, Enum):
    NONE      = "none"
    RECONCILE = "reconcile"   # re-run the overlay on the current snapshot
    RESET     = "reset"       # manual, user-confirmed reset


def recommended_action(diagnostics: Diagnostics) -> RecoveryAction:
    if diagnostics.has_critical:
        return RecoveryAction.RESET
    if any(i.kind is IssueKind.CONSISTENCY and i.severity is Severity.ERROR for i in diagnostics.issues):
        return RecoveryAction.RECONCILE
    return RecoveryAction.NONE


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _is_sequence(value) -> bool:
    return isinstance(value, (list, tuple))


# ── Validation ─────────────────────────────────────────────────────────────────

def validate(
    state: PaginationState | None,
    config: FeedConfig = DEFAULT_CONFIG,
    timestamp: str | None = None,
) -> Diagnostics:
    """
    Diagnose a snapshot. Pure: same snapshot and config, same issues.

    Args:
        state:     The snapshot to inspect, or None.
        config:    Supplies the expected page size and the dataset thresholds.
        timestamp: Stamp for every issue of this run (default: now, UTC).

    Returns:
        Diagnostics; never raises.
    """
    stamp  = timestamp or _now_iso()
    issues: list[Issue] = []

    def add(message: str, severity: Severity, category: Category, kind: IssueKind) -> None:
        issues.append(make_issue(message, severity, category, kind, stamp))

    try:
        _run_checks(state, config, add)
    except Exception as e:
        # Something about the snapshot is too broken to even read.
        add(
            f"Validator could not inspect pagination state: {e!r}",
            Severity.CRITICAL, Category.DATA, IssueKind.STRUCTURAL,
        )

    diagnostics = Diagnostics(issues=tuple(issues))
    if issues:
        log.debug(f"Validation: {diagnostics.summary}")
    return diagnostics


def _run_checks(state, config: FeedConfig, add) -> None:
    if state is None:
        add(
            "Pagination state is null - this could cause infinite loading loops",
            Severity.CRITICAL, Category.INFINITE_LOOP_PREVENTION, IssueKind.INFINITE_LOOP_RISK,
        )
        return

    canonical = state.canonical_items
    display   = state.display_items
    page      = state.page_items

    if not (_is_sequence(canonical) and _is_sequence(display) and _is_sequence(page)):
        add(
            "Item collections are not valid sequences - critical data structure error",
            Severity.CRITICAL, Category.DATA, IssueKind.STRUCTURAL,
        )
        return

    if state.fetch_in_flight and len(canonical) > 0 and not state.load_more_in_flight:
        add(
            "Initial load is in flight but items already exist - potential infinite loop condition",
            Severity.CRITICAL, Category.INFINITE_LOOP_PREVENTION, IssueKind.INFINITE_LOOP_RISK,
        )

    if state.page_size != config.page_size:
        add(
            f"Page size mismatch: expected {config.page_size}, got {state.page_size} - could cause pagination errors",
            Severity.ERROR, Category.UI, IssueKind.CONSISTENCY,
        )

    if state.current_page_index < 1:
        add(
            f"Invalid current page: {state.current_page_index} - must be >= 1",
            Severity.CRITICAL, Category.INFINITE_LOOP_PREVENTION, IssueKind.INFINITE_LOOP_RISK,
        )

    total_pages = state.total_pages
    if total_pages > 0 and state.current_page_index > total_pages:
        add(
            f"Current page ({state.current_page_index}) exceeds total pages ({total_pages}) - page overflow",
            Severity.ERROR, Category.DATA, IssueKind.CONSISTENCY,
        )

    if state.search_active:
        results = state.search_state.results
        if results is None:
            add(
                "Search is active but search results are missing",
                Severity.ERROR, Category.DATA, IssueKind.CONSISTENCY,
            )
        elif results.total_results == 0 and len(display) > 0:
            add(
                "Search shows no results but display items exist - search state inconsistency",
                Severity.WARNING, Category.USER_EXPERIENCE, IssueKind.CONSISTENCY,
            )

    held = len(canonical)
    if held > config.large_dataset_warn_threshold:
        severity = Severity.ERROR if held > config.large_dataset_error_threshold else Severity.WARNING
        add(
            f"Large dataset detected: {held} items held may impact performance",
            severity, Category.PERFORMANCE, IssueKind.PERFORMANCE,
        )

    if state.load_more_in_flight and not state.has_more_items:
        add(
            "Load-more is in flight but no more items are available - will cause infinite loading",
            Severity.CRITICAL, Category.INFINITE_LOOP_PREVENTION, IssueKind.INFINITE_LOOP_RISK,
        )

    if len(page) == 0 and len(display) > 0 and not state.fetch_in_flight and not state.load_more_in_flight:
        add(
            "Display items exist but the current page is empty - pagination logic error",
            Severity.ERROR, Category.DATA, IssueKind.CONSISTENCY,
        )

    filters_active = state.search_active or not state.filter_state.is_default()
    if filters_active and held > 0 and tuple(display) == tuple(canonical):
        add(
            "Filters are active but produced no visible change - filter logic may be inert",
            Severity.WARNING, Category.USER_EXPERIENCE, IssueKind.CONSISTENCY,
        )

    visible = getattr(state.metadata, "visible_filtered_count", None)
    if isinstance(visible, int) and visible != len(page):
        add(
            f"Metadata mismatch: visible count ({visible}) != page item count ({len(page)})",
            Severity.WARNING, Category.DATA, IssueKind.CONSISTENCY,
        )

    if state.pagination_mode is PaginationMode.CLIENT and held < config.small_dataset_threshold:
        add(
            f"Client pagination with small dataset ({held} items) - server mode recommended",
            Severity.WARNING, Category.PERFORMANCE, IssueKind.PERFORMANCE,
        )

    if state.fetch_in_flight and state.load_more_in_flight:
        add(
            "Initial load and load-more are both in flight - conflicting loading states",
            Severity.ERROR, Category.UI, IssueKind.CONSISTENCY,
        )


async def validate_async(
    state: PaginationState | None,
    config: FeedConfig = DEFAULT_CONFIG,
) -> Diagnostics:
    """
    Run validate() off the event loop, bounded by config.validation_timeout_ms
    (0 = unbounded). A timeout yields inconclusive Diagnostics and a warning;
    it never blocks the caller past the budget.
    """
    budget  = config.validation_timeout_ms / 1000 if config.validation_timeout_ms else None
    started = time.monotonic()
    try:
        return await asyncio.wait_for(asyncio.to_thread(validate, state, config), timeout=budget)
    except asyncio.TimeoutError:
        log.warning(
            f"Validation timed out after {time.monotonic() - started:.3f}s "
            f"(budget {config.validation_timeout_ms}ms) - treating as inconclusive"
        )
        return Diagnostics(inconclusive=True)
