"""Validator: integrity checks for cached state before it is trusted.

Applied to the persisted blob on startup and to remote counters after a
pull. Only the offending record is ever discarded; everything else is kept
so one bad entry cannot block quota-gated actions of other types.
"""

import logging
import math
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Union

from quotasync.domain.events.dispatcher import EventDispatcher
from quotasync.domain.events.sync_events import RecordDiscarded
from quotasync.domain.models.common import STATE_VERSION, ActionId, ActionType, MembershipTier
from quotasync.domain.models.usage import (
    ActionStatus, PendingAction, TierLimits, UsageCounter,
)

logger = logging.getLogger(__name__)

# --- Results ---

@dataclass
class Sanitized:
    """A record that passed validation, possibly after healing."""
    value: Any
    healed: List[str] = field(default_factory=list)
    stale: bool = False

@dataclass
class Corrupt:
    """A record that failed validation and must be discarded."""
    kind: str
    details: str
    record: Any = None

ValidationResult = Union[Sanitized, Corrupt]

@dataclass
class SanitizedState:
    """Trusted view of a persisted state blob."""
    counters: List[UsageCounter] = field(default_factory=list)
    queues: Dict[ActionType, List[PendingAction]] = field(default_factory=dict)
    tier_limits: Optional[TierLimits] = None
    last_sync_timestamp: Optional[float] = None
    discarded: List[Corrupt] = field(default_factory=list)
    stale: List[ActionType] = field(default_factory=list)

    @property
    def is_clean(self) -> bool:
        return not self.discarded


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)

def _is_count(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


class Validator:
    """Stateless validator shared by the engine components."""

    def __init__(self, events: Optional[EventDispatcher] = None):
        self.events = events

    def _discard(self, corrupt: Corrupt) -> Corrupt:
        logger.warning(f"Discarding corrupt {corrupt.kind}: {corrupt.details}")
        if self.events:
            self.events.publish(RecordDiscarded(kind=corrupt.kind, details=corrupt.details))
        return corrupt

    # --- Single records ---

    def validate_counter(
        self,
        raw: Any,
        tier_limits: Optional[TierLimits] = None,
        tier: Optional[MembershipTier] = None,
    ) -> ValidationResult:
        """Checks one counter record (mapping or UsageCounter)."""
        if isinstance(raw, UsageCounter):
            raw = raw.to_dict()
        if not isinstance(raw, Mapping):
            return Corrupt("counter", f"expected a mapping, got {type(raw).__name__}", raw)

        action_type = raw.get("action_type")
        if not isinstance(action_type, str) or not action_type:
            return Corrupt("counter", "missing action_type", raw)
        for name in ("current_count", "limit"):
            if not _is_count(raw.get(name)):
                return Corrupt("counter", f"'{action_type}': {name} must be a non-negative integer, got {raw.get(name)!r}", raw)
        for name in ("window_start", "reset_timestamp"):
            if not _is_number(raw.get(name)):
                return Corrupt("counter", f"'{action_type}': {name} must be a timestamp, got {raw.get(name)!r}", raw)
        if raw["reset_timestamp"] <= raw["window_start"]:
            return Corrupt("counter", f"'{action_type}': reset_timestamp must be after window_start", raw)
        last = raw.get("last_action_timestamp")
        healed: List[str] = []
        if last is not None and not _is_number(last):
            healed.append("cleared invalid last_action_timestamp")
            raw = {**raw, "last_action_timestamp": None}

        counter = UsageCounter.from_dict(raw)
        stale = False
        expected = tier_limits.limit_for(tier, counter.action_type) if tier_limits else None
        if expected is not None and expected != counter.limit:
            healed.append(f"limit {counter.limit} is stale for tier '{tier}', using {expected}")
            counter.limit = expected
            stale = True
        return Sanitized(counter, healed, stale)

    def validate_action(self, raw: Any) -> ValidationResult:
        """Checks one pending action record (mapping or PendingAction)."""
        if isinstance(raw, PendingAction):
            raw = raw.to_dict()
        if not isinstance(raw, Mapping):
            return Corrupt("action", f"expected a mapping, got {type(raw).__name__}", raw)

        action_id = raw.get("id")
        try:
            uuid.UUID(str(action_id))
        except ValueError:
            return Corrupt("action", f"invalid id {action_id!r}", raw)
        if not isinstance(raw.get("action_type"), str) or not raw.get("action_type"):
            return Corrupt("action", f"{action_id}: missing action_type", raw)
        if not _is_number(raw.get("created_at")):
            return Corrupt("action", f"{action_id}: created_at must be a timestamp", raw)
        if not _is_count(raw.get("retry_count", 0)):
            return Corrupt("action", f"{action_id}: retry_count must be a non-negative integer", raw)
        payload = raw.get("payload")
        if payload is not None and not isinstance(payload, Mapping):
            return Corrupt("action", f"{action_id}: payload must be a mapping", raw)
        reserved = raw.get("reserved_window_start")
        if reserved is not None and not _is_number(reserved):
            return Corrupt("action", f"{action_id}: reserved_window_start must be a timestamp", raw)
        try:
            status = ActionStatus(raw.get("status", ActionStatus.QUEUED.value))
        except ValueError:
            return Corrupt("action", f"{action_id}: unknown status {raw.get('status')!r}", raw)

        if status in (ActionStatus.ACKED, ActionStatus.DROPPED):
            return Corrupt("action", f"{action_id}: terminal status '{status.value}' should not be persisted", raw)

        action = PendingAction.from_dict(raw)
        healed: List[str] = []
        if status is not ActionStatus.QUEUED:
            # Interrupted mid-flight; the remote dedupes by id so resending is safe
            healed.append(f"status '{status.value}' reset to 'queued'")
            action.status = ActionStatus.QUEUED
        return Sanitized(action, healed)

    # --- Collections ---

    def validate_counters(
        self,
        raw_counters: Iterable[Any],
        tier_limits: Optional[TierLimits] = None,
        tier: Optional[MembershipTier] = None,
    ) -> SanitizedState:
        """Validates a list of counters; duplicates of an action type are discarded."""
        state = SanitizedState()
        seen: Set[str] = set()
        for raw in raw_counters:
            result = self.validate_counter(raw, tier_limits, tier)
            if isinstance(result, Corrupt):
                state.discarded.append(self._discard(result))
                continue
            counter = result.value
            if counter.action_type in seen:
                state.discarded.append(self._discard(
                    Corrupt("counter", f"duplicate counter for '{counter.action_type}'", raw)))
                continue
            seen.add(counter.action_type)
            for note in result.healed:
                logger.info(f"Healed counter '{counter.action_type}': {note}")
            if result.stale:
                state.stale.append(counter.action_type)
            state.counters.append(counter)
        return state

    def validate_queues(self, raw_queues: Any) -> SanitizedState:
        """Validates per-type queues; duplicate ids across all queues are discarded."""
        state = SanitizedState()
        if raw_queues is None:
            return state
        if not isinstance(raw_queues, Mapping):
            state.discarded.append(self._discard(Corrupt("queues", "expected a mapping of action type to list")))
            return state
        seen: Set[ActionId] = set()
        for queue_key, raw_actions in raw_queues.items():
            if not isinstance(raw_actions, list):
                state.discarded.append(self._discard(Corrupt("queues", f"queue '{queue_key}' is not a list")))
                continue
            for raw in raw_actions:
                result = self.validate_action(raw)
                if isinstance(result, Corrupt):
                    state.discarded.append(self._discard(result))
                    continue
                action: PendingAction = result.value
                if action.id in seen:
                    state.discarded.append(self._discard(Corrupt("action", f"duplicate id {action.id}", raw)))
                    continue
                seen.add(action.id)
                for note in result.healed:
                    logger.info(f"Healed action {action.id}: {note}")
                state.queues.setdefault(action.action_type, []).append(action)
        for queue in state.queues.values():
            queue.sort(key=lambda a: a.created_at)
        return state

    def validate(
        self,
        raw_state: Any,
        tier_limits: Optional[TierLimits] = None,
        tier: Optional[MembershipTier] = None,
    ) -> SanitizedState:
        """Validates a whole persisted state blob.

        Tier limits stored in the blob are used for the stale-limit check
        when `tier_limits` is not given.
        """
        if raw_state is None:
            return SanitizedState()
        if not isinstance(raw_state, Mapping):
            return SanitizedState(discarded=[self._discard(
                Corrupt("state", f"expected a mapping, got {type(raw_state).__name__}"))])
        version = raw_state.get("version")
        if version != STATE_VERSION:
            return SanitizedState(discarded=[self._discard(
                Corrupt("state", f"unsupported state version {version!r} (expected {STATE_VERSION})"))])

        discarded: List[Corrupt] = []
        stored_limits: Optional[TierLimits] = None
        raw_limits = raw_state.get("tier_limits")
        if raw_limits is not None:
            try:
                stored_limits = TierLimits.from_dict(raw_limits)
            except (AttributeError, TypeError, ValueError) as e:
                discarded.append(self._discard(Corrupt("tier_limits", f"unreadable tier limits: {e}")))

        raw_counters = raw_state.get("counters") or []
        if not isinstance(raw_counters, list):
            discarded.append(self._discard(Corrupt("counters", "expected a list")))
            raw_counters = []

        last_sync: Optional[float] = None
        raw_last_sync = raw_state.get("last_sync_timestamp")
        if _is_number(raw_last_sync):
            last_sync = float(raw_last_sync)
        elif raw_last_sync is not None:
            discarded.append(self._discard(
                Corrupt("last_sync_timestamp", f"expected epoch seconds, got {raw_last_sync!r}")))

        counters = self.validate_counters(raw_counters, tier_limits or stored_limits, tier)
        queues = self.validate_queues(raw_state.get("queues"))
        return SanitizedState(
            counters=counters.counters,
            queues=queues.queues,
            tier_limits=stored_limits,
            last_sync_timestamp=last_sync,
            discarded=discarded + counters.discarded + queues.discarded,
            stale=counters.stale,
        )
