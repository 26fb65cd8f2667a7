"""
FeedStateMachine — admission control for load-more.

    Idle ──load_more──▶ LoadingMore ──ok, more──▶ Idle
                             │       ──ok, none──▶ Exhausted
                             └──────── failure ──▶ Failed ──load_more──▶ LoadingMore

Exhausted is terminal until reset(), which FeedManager calls on every
filter/search/refresh/reset intent. The machine never retries on its own; a
Failed machine just admits the next caller-initiated load_more().

One machine per FeedManager. It is consulted before the resolver runs, and
begin() is synchronous, so a second load_more() in the same tick already
sees LoadingMore and is turned away.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass

from FeedTypes import ErrorKind, LoadMoreStatus

log = logging.getLogger("feedpager.machine")

MAX_HISTORY = 50

VALID_TRANSITIONS: dict[LoadMoreStatus, tuple[LoadMoreStatus, ...]] = {
    LoadMoreStatus.IDLE:         (LoadMoreStatus.LOADING_MORE,),
    LoadMoreStatus.LOADING_MORE: (LoadMoreStatus.IDLE, LoadMoreStatus.EXHAUSTED, LoadMoreStatus.FAILED),
    LoadMoreStatus.EXHAUSTED:    (),   # reset() only
    LoadMoreStatus.FAILED:       (LoadMoreStatus.LOADING_MORE,),
}


def is_valid_transition(from_status: LoadMoreStatus, to_status: LoadMoreStatus) -> bool:
    return to_status in VALID_TRANSITIONS.get(from_status, ())


@dataclass(frozen=True)
class MachineTransition:
    from_status: LoadMoreStatus
    to_status:   LoadMoreStatus
    reason:      str
    timestamp:   float


class FeedStateMachine:
    """
    Args:
        clock: Callable returning wall-clock seconds; injectable for tests.
    """

    def __init__(self, clock=time.time):
        self._clock         = clock
        self._status        = LoadMoreStatus.IDLE
        self._history       = deque(maxlen=MAX_HISTORY)
        self._failure_count = 0
        self._last_failure  = 0.0
        self._created_at    = clock()

    @property
    def status(self) -> LoadMoreStatus:
        return self._status

    @property
    def is_loading(self) -> bool:
        return self._status is LoadMoreStatus.LOADING_MORE

    # ── Gate ───────────────────────────────────────────────────────────────────

    def check_admission(self, has_more_items: bool) -> ErrorKind | None:
        """None if a load-more may start now, otherwise why not."""
        if self._status is LoadMoreStatus.LOADING_MORE:
            return ErrorKind.ALREADY_LOADING
        if self._status is LoadMoreStatus.EXHAUSTED:
            return ErrorKind.EXHAUSTED
        if not has_more_items:
            return ErrorKind.NO_MORE_ITEMS
        return None

    def can_load_more(self, has_more_items: bool) -> bool:
        return self.check_admission(has_more_items) is None

    # ── Transitions ────────────────────────────────────────────────────────────

    def begin(self, reason: str = "load_more") -> bool:
        return self._transition(LoadMoreStatus.LOADING_MORE, reason)

    def succeed(self, has_more_items: bool, reason: str = "load_more succeeded") -> bool:
        target = LoadMoreStatus.IDLE if has_more_items else LoadMoreStatus.EXHAUSTED
        return self._transition(target, reason)

    def fail(self, reason: str = "load_more failed") -> bool:
        if not self._transition(LoadMoreStatus.FAILED, reason):
            return False
        self._failure_count += 1
        self._last_failure   = self._clock()
        return True

    def reset(self, reason: str = "reset") -> None:
        """Back to Idle from any status. Failure count survives; it is diagnostic only."""
        if self._status is not LoadMoreStatus.IDLE:
            self._record(self._status, LoadMoreStatus.IDLE, reason)
            log.debug(f"Machine reset {self._status.value} -> idle ({reason})")
        self._status = LoadMoreStatus.IDLE

    def _transition(self, target: LoadMoreStatus, reason: str) -> bool:
        if not is_valid_transition(self._status, target):
            log.warning(f"Invalid load-more transition: {self._status.value} -> {target.value} ({reason})")
            return False
        self._record(self._status, target, reason)
        log.debug(f"Load-more transition: {self._status.value} -> {target.value} ({reason})")
        self._status = target
        return True

    def _record(self, from_status: LoadMoreStatus, to_status: LoadMoreStatus, reason: str) -> None:
        self._history.append(MachineTransition(from_status, to_status, reason, self._clock()))

    # ── Introspection ──────────────────────────────────────────────────────────

    def history(self, count: int | None = None) -> list[MachineTransition]:
        items = list(self._history)
        return items[-count:] if count else items

    def statistics(self) -> dict:
        return {
            "status":           self._status.value,
            "failure_count":    self._failure_count,
            "last_failure":     self._last_failure,
            "transition_count": len(self._history),
            "uptime":           self._clock() - self._created_at,
        }
