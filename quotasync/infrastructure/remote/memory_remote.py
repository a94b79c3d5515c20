"""In-memory authoritative usage store.

Behaves like the backend for one user: applies actions idempotently by id,
enforces the tier limits server-side and serves pulls. Failures can be
injected to exercise the retry path (used by `quotasync simulate` and tests).
"""

import logging
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Set

from quotasync.domain.interfaces.remote_store import RemoteStore
from quotasync.domain.models.common import (
    BRONZE, GOLD, LIKE, MATCH, MESSAGE, SILVER, SWIPE,
    ActionId, ActionType, BatchItem, MembershipTier, Timestamp, UserId,
)
from quotasync.domain.models.errors import NetworkError
from quotasync.domain.models.usage import RemoteSnapshot, SubmitResult, TierLimits, UsageCounter

logger = logging.getLogger(__name__)

DEFAULT_TIER_LIMITS: Dict[str, Dict[str, int]] = {
    BRONZE: {SWIPE: 10, LIKE: 10, MATCH: 5, MESSAGE: 20},
    SILVER: {SWIPE: 50, LIKE: 50, MATCH: 25, MESSAGE: 100},
    GOLD: {SWIPE: 200, LIKE: 200, MATCH: 100, MESSAGE: 500},
}

class InMemoryRemoteStore(RemoteStore):
    """Authoritative store kept in process memory."""

    def __init__(
        self,
        tier: Optional[MembershipTier] = None,
        limits: Optional[Dict[str, Dict[str, int]]] = None,
        window_seconds: float = 24 * 60 * 60,
        clock: Callable[[], float] = time.time,
    ):
        self.tier = tier
        self.limits = {t: dict(v) for t, v in (limits or DEFAULT_TIER_LIMITS).items()}
        self.window_seconds = window_seconds
        self._clock = clock
        self.counters: Dict[ActionType, UsageCounter] = {}
        self.applied_ids: Set[ActionId] = set()
        self.submitted_batches: List[List[BatchItem]] = []
        self.pull_count = 0
        self._failures: Deque[Exception] = deque()

    # --- Fault injection and seeding ---

    def inject_failures(self, count: int, error: Optional[Exception] = None) -> None:
        """Makes the next `count` calls raise `error` (NetworkError by default)."""
        for _ in range(count):
            self._failures.append(error or NetworkError("Injected network failure", status_code=503))

    def pending_failures(self) -> int:
        return len(self._failures)

    def set_usage(self, action_type: ActionType, count: int) -> None:
        """Overrides the authoritative count (e.g. usage from another device)."""
        self._counter(action_type).current_count = count

    def _maybe_fail(self, operation: str) -> None:
        if self._failures:
            error = self._failures.popleft()
            logger.debug(f"Injected failure for {operation}: {error!r}")
            raise error

    # --- Helpers ---

    def _limit(self, action_type: ActionType) -> Optional[int]:
        if self.tier is None:
            return None
        return self.limits.get(self.tier, {}).get(action_type)

    def _counter(self, action_type: ActionType) -> UsageCounter:
        now = self._clock()
        counter = self.counters.get(action_type)
        if counter is None:
            counter = UsageCounter(
                action_type=action_type,
                current_count=0,
                limit=self._limit(action_type) or 0,
                window_start=Timestamp(now),
                reset_timestamp=Timestamp(now + self.window_seconds),
            )
            self.counters[action_type] = counter
        elif now >= counter.reset_timestamp:
            while now >= counter.reset_timestamp:
                counter.window_start = counter.reset_timestamp
                counter.reset_timestamp = Timestamp(counter.window_start + self.window_seconds)
            counter.current_count = 0
        limit = self._limit(action_type)
        if limit is not None:
            counter.limit = limit
        return counter

    # --- RemoteStore ---

    async def submit_batch(self, items: List[BatchItem]) -> SubmitResult:
        self._maybe_fail("submit_batch")
        self.submitted_batches.append([dict(item) for item in items])
        result = SubmitResult()
        for item in items:
            action_id = item["id"]
            if action_id in self.applied_ids:
                result.acked.append(action_id)
                continue
            if not isinstance(item.get("payload"), dict):
                result.rejected[action_id] = "payload must be an object"
                continue
            action_type = item["actionType"]
            if self._limit(action_type) is None:
                result.rejected[action_id] = f"unknown action type '{action_type}'"
                continue
            counter = self._counter(action_type)
            if counter.current_count >= counter.limit:
                result.rejected[action_id] = "limit exceeded"
                continue
            counter.current_count += 1
            counter.last_action_timestamp = Timestamp(self._clock())
            self.applied_ids.add(action_id)
            result.acked.append(action_id)
        return result

    async def pull(self, user_id: UserId, tier: MembershipTier) -> RemoteSnapshot:
        self._maybe_fail("pull")
        self.pull_count += 1
        if tier:
            self.tier = tier
        counters = [self._counter(t).to_dict() for t in list(self.counters)]
        return RemoteSnapshot(
            counters=counters,
            tier_limits=TierLimits(limits={t: dict(v) for t, v in self.limits.items()},
                                   fetched_at=Timestamp(self._clock())),
        )
