"""QuotaCache: per-action-type usage counters checked against tier limits.

All mutations happen under one re-entrant lock (the engine's serialization
point), so the window-expiry check, the limit comparison and the optimistic
increment form a single atomic step. Windows reset lazily on access; there is
no background reset timer.
"""

import dataclasses
import logging
import threading
import time
from typing import Callable, Dict, Iterable, List, Optional

from quotasync.domain.events.dispatcher import EventDispatcher
from quotasync.domain.events.sync_events import CounterReset, ReservationDenied
from quotasync.domain.models.common import ActionType, MembershipTier, Timestamp
from quotasync.domain.models.usage import (
    Decision, DenyReason, TierLimits, UsageCounter,
)

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SECONDS = 24 * 60 * 60

class QuotaCache:
    """Holds one UsageCounter per action type and answers reservation requests."""

    def __init__(
        self,
        tier: Optional[MembershipTier] = None,
        tier_limits: Optional[TierLimits] = None,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.time,
        lock: Optional[threading.RLock] = None,
        events: Optional[EventDispatcher] = None,
    ):
        """Initializes the cache.

        Args:
            tier: Current membership tier (supplied externally).
            tier_limits: Tier limits table from remote config.
            window_seconds: Length of a reset window.
            clock: Wall-clock source (epoch seconds).
            lock: Shared serialization point; a private RLock if omitted.
            events: Optional dispatcher for reservation/reset events.
        """
        self._counters: Dict[ActionType, UsageCounter] = {}
        self._tier = tier
        self._tier_limits = tier_limits or TierLimits()
        self.window_seconds = window_seconds
        self._clock = clock
        self._lock = lock or threading.RLock()
        self._events = events

    # --- Tier configuration ---

    @property
    def tier(self) -> Optional[MembershipTier]:
        return self._tier

    @property
    def tier_limits(self) -> TierLimits:
        return self._tier_limits

    def set_tier(self, tier: MembershipTier) -> None:
        with self._lock:
            if tier != self._tier:
                logger.info(f"Membership tier changed: {self._tier} -> {tier}")
            self._tier = tier

    def set_tier_limits(self, tier_limits: TierLimits) -> None:
        with self._lock:
            self._tier_limits = tier_limits

    # --- Internal helpers (caller holds the lock) ---

    def _expire_window(self, counter: UsageCounter, now: float) -> None:
        """Resets the counter and advances its window if `now` crossed the reset time."""
        if now < counter.reset_timestamp:
            return
        length = counter.reset_timestamp - counter.window_start
        if length <= 0:
            length = self.window_seconds
        # Advance in whole windows so the schedule stays aligned with the server
        elapsed_windows = int((now - counter.reset_timestamp) // length) + 1
        counter.window_start = Timestamp(counter.window_start + elapsed_windows * length)
        counter.reset_timestamp = Timestamp(counter.window_start + length)
        counter.current_count = 0
        logger.debug(f"Reset window for '{counter.action_type}': next reset at {counter.reset_timestamp:.0f}")
        if self._events:
            self._events.publish(CounterReset(action_type=counter.action_type,
                                              window_start=counter.window_start,
                                              reset_timestamp=counter.reset_timestamp))

    def _effective_limit(self, action_type: ActionType, counter: Optional[UsageCounter]) -> Optional[int]:
        limit = self._tier_limits.limit_for(self._tier, action_type)
        if limit is not None:
            return limit
        return counter.limit if counter is not None else None

    def _new_counter(self, action_type: ActionType, limit: int, now: float) -> UsageCounter:
        return UsageCounter(
            action_type=action_type,
            current_count=0,
            limit=limit,
            window_start=Timestamp(now),
            reset_timestamp=Timestamp(now + self.window_seconds),
        )

    # --- Public API ---

    def check_and_reserve(self, action_type: ActionType) -> Decision:
        """Checks the quota and, if allowed, reserves one unit in the same step.

        Returns:
            Decision.allow(...) with the post-reservation count, or a denial
            with reason LIMIT_EXCEEDED or WINDOW_UNKNOWN.
        """
        with self._lock:
            now = self._clock()
            counter = self._counters.get(action_type)
            limit = self._effective_limit(action_type, counter)

            if limit is None:
                logger.debug(f"No limit known for '{action_type}' (tier={self._tier}); denying.")
                decision = Decision.deny(action_type, DenyReason.WINDOW_UNKNOWN, counter)
                self._publish_denial(decision)
                return decision

            if counter is None:
                counter = self._new_counter(action_type, limit, now)
                self._counters[action_type] = counter
            else:
                self._expire_window(counter, now)
                counter.limit = limit

            if counter.current_count >= counter.limit:
                decision = Decision.deny(action_type, DenyReason.LIMIT_EXCEEDED, counter)
                self._publish_denial(decision)
                return decision

            counter.current_count += 1
            counter.last_action_timestamp = Timestamp(now)
            return Decision.allow(counter)

    def _publish_denial(self, decision: Decision) -> None:
        logger.info(f"Reservation denied for '{decision.action_type}': {decision.reason.value} "
                    f"({decision.current_count}/{decision.limit})")
        if self._events:
            self._events.publish(ReservationDenied(action_type=decision.action_type,
                                                   reason=decision.reason.value,
                                                   current_count=decision.current_count,
                                                   limit=decision.limit))

    def commit(self, action_type: ActionType) -> None:
        """Success path: the reservation was already counted."""
        logger.debug(f"Commit for '{action_type}' (reservation already counted).")

    def rollback(self, action_type: ActionType, reserved_window_start: Optional[float] = None) -> bool:
        """Releases one reservation.

        Args:
            action_type: The counter to decrement.
            reserved_window_start: Window the reservation was counted in. When
                given and the window has since advanced, nothing is released
                because the reset already discarded the reservation.

        Returns:
            True if the counter was decremented.
        """
        with self._lock:
            counter = self._counters.get(action_type)
            if counter is None:
                logger.warning(f"Rollback for unknown action type '{action_type}' ignored.")
                return False
            self._expire_window(counter, self._clock())
            if reserved_window_start is not None and reserved_window_start != counter.window_start:
                logger.debug(f"Rollback for '{action_type}' skipped: reservation belonged to a past window.")
                return False
            if counter.current_count <= 0:
                logger.warning(f"Rollback for '{action_type}' skipped: count already 0.")
                return False
            counter.current_count -= 1
            return True

    def get_state(self, action_type: ActionType) -> Optional[UsageCounter]:
        """Read-only snapshot of one counter (window expiry applied)."""
        with self._lock:
            counter = self._counters.get(action_type)
            if counter is None:
                return None
            self._expire_window(counter, self._clock())
            return dataclasses.replace(counter)

    def snapshot(self) -> List[UsageCounter]:
        """Copies of all counters, window expiry applied."""
        with self._lock:
            now = self._clock()
            result = []
            for counter in self._counters.values():
                self._expire_window(counter, now)
                result.append(dataclasses.replace(counter))
            return result

    def replace_counters(self, counters: Iterable[UsageCounter], preserve: Iterable[ActionType] = ()) -> List[ActionType]:
        """Replaces counters with authoritative values except for `preserve`d types.

        Returns:
            The action types whose counters were replaced.
        """
        preserved = set(preserve)
        replaced: List[ActionType] = []
        with self._lock:
            for counter in counters:
                if counter.action_type in preserved:
                    continue
                self._counters[counter.action_type] = dataclasses.replace(counter)
                replaced.append(counter.action_type)
        return replaced

    def remove(self, action_type: ActionType) -> None:
        with self._lock:
            self._counters.pop(action_type, None)

    def reset_usage(self, action_type: Optional[ActionType] = None) -> None:
        """Zeroes one counter (or all) and starts a fresh window now."""
        with self._lock:
            now = self._clock()
            targets = [action_type] if action_type else list(self._counters)
            for key in targets:
                counter = self._counters.get(key)
                if counter is None:
                    continue
                counter.current_count = 0
                counter.window_start = Timestamp(now)
                counter.reset_timestamp = Timestamp(now + self.window_seconds)
            logger.info(f"Usage reset for: {', '.join(targets) if targets else 'nothing'}")
