"""Domain models for usage quotas, pending actions and sync status.

Includes the `UsageCounter` entity, the `PendingAction` entity with its
status lifecycle, the read-only `TierLimits` table and the `SyncState`
record, plus the result objects returned by the core components.
"""

import enum
import time
import uuid
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Mapping, Optional

from quotasync.domain.models.common import (
    ActionId, ActionType, BatchId, MembershipTier, Timestamp,
)

# --- Entities ---

@dataclass
class UsageCounter:
    """Usage of one action type within the current reset window."""
    action_type: ActionType
    current_count: int
    limit: int
    window_start: Timestamp
    reset_timestamp: Timestamp
    last_action_timestamp: Optional[Timestamp] = None

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.current_count)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "UsageCounter":
        """Builds a counter from a mapping. Performs no integrity checks."""
        return cls(
            action_type=ActionType(str(data["action_type"])),
            current_count=data["current_count"],
            limit=data["limit"],
            window_start=data["window_start"],
            reset_timestamp=data["reset_timestamp"],
            last_action_timestamp=data.get("last_action_timestamp"),
        )


class ActionStatus(str, enum.Enum):
    """Lifecycle of a PendingAction.

    Queued -> Sending -> {Acked (terminal), Queued (retry), Dropped (terminal)}
    """
    QUEUED = "queued"
    SENDING = "sending"
    ACKED = "acked"
    FAILED = "failed"
    DROPPED = "dropped"


@dataclass
class PendingAction:
    """A user action waiting for delivery to the remote store."""
    action_type: ActionType
    payload: Dict[str, Any] = field(default_factory=dict)
    id: ActionId = field(default_factory=lambda: ActionId(str(uuid.uuid4())))
    created_at: Timestamp = field(default_factory=lambda: Timestamp(time.time()))
    retry_count: int = 0
    status: ActionStatus = ActionStatus.QUEUED
    # Window the optimistic reservation was counted in (see QuotaCache.rollback)
    reserved_window_start: Optional[Timestamp] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PendingAction":
        return cls(
            action_type=ActionType(str(data["action_type"])),
            payload=dict(data.get("payload") or {}),
            id=ActionId(str(data["id"])),
            created_at=data["created_at"],
            retry_count=data.get("retry_count", 0),
            status=ActionStatus(data.get("status", ActionStatus.QUEUED.value)),
            reserved_window_start=data.get("reserved_window_start"),
        )


@dataclass(frozen=True)
class TierLimits:
    """Read-only `{tier -> {action_type -> limit}}` table from remote config."""
    limits: Mapping[str, Mapping[str, int]] = field(default_factory=dict)
    fetched_at: Optional[Timestamp] = None

    def limit_for(self, tier: Optional[MembershipTier], action_type: ActionType) -> Optional[int]:
        if tier is None:
            return None
        return self.limits.get(tier, {}).get(action_type)

    def is_stale(self, now: float, ttl_seconds: float) -> bool:
        return self.fetched_at is None or now - self.fetched_at >= ttl_seconds

    def to_dict(self) -> Dict[str, Any]:
        return {
            "limits": {tier: dict(per_type) for tier, per_type in self.limits.items()},
            "fetched_at": self.fetched_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TierLimits":
        limits = {
            str(tier): {str(k): int(v) for k, v in per_type.items()}
            for tier, per_type in (data.get("limits") or {}).items()
        }
        return cls(limits=limits, fetched_at=data.get("fetched_at"))


class SyncStatus(str, enum.Enum):
    """Summarized status flag exposed to the UI layer."""
    IDLE = "idle"
    SYNCING = "syncing"
    DEGRADED = "degraded"          # Retries exhausted; will try again later
    AUTH_REQUIRED = "auth_required" # Caller must re-authenticate


@dataclass
class SyncState:
    """Observable sync bookkeeping."""
    last_sync_timestamp: Optional[Timestamp] = None
    last_sync_error: Optional[str] = None
    in_flight_batch_ids: Dict[ActionType, BatchId] = field(default_factory=dict)
    status: SyncStatus = SyncStatus.IDLE

    def in_flight_batch_id(self, action_type: ActionType) -> Optional[BatchId]:
        return self.in_flight_batch_ids.get(action_type)


# --- Decisions and results ---

class DenyReason(str, enum.Enum):
    LIMIT_EXCEEDED = "limit_exceeded"
    WINDOW_UNKNOWN = "window_unknown"


@dataclass(frozen=True)
class Decision:
    """Outcome of QuotaCache.check_and_reserve."""
    allowed: bool
    action_type: ActionType
    reason: Optional[DenyReason] = None
    current_count: int = 0
    limit: Optional[int] = None
    window_start: Optional[Timestamp] = None

    @classmethod
    def allow(cls, counter: UsageCounter) -> "Decision":
        return cls(True, counter.action_type, None, counter.current_count, counter.limit, counter.window_start)

    @classmethod
    def deny(cls, action_type: ActionType, reason: DenyReason, counter: Optional[UsageCounter] = None) -> "Decision":
        if counter is None:
            return cls(False, action_type, reason)
        return cls(False, action_type, reason, counter.current_count, counter.limit, counter.window_start)


@dataclass
class SubmitResult:
    """Per-id outcome of a remote submit-batch call."""
    acked: List[ActionId] = field(default_factory=list)
    rejected: Dict[ActionId, str] = field(default_factory=dict)


@dataclass
class RemoteSnapshot:
    """Authoritative counters and tier limits returned by a remote pull."""
    counters: List[Dict[str, Any]] = field(default_factory=list)
    tier_limits: TierLimits = field(default_factory=TierLimits)


class FlushStatus(str, enum.Enum):
    EMPTY = "empty"
    DEFERRED = "deferred"
    COMPLETED = "completed"   # Remote answered; see acked/dropped/requeued
    FAILED = "failed"         # Retries exhausted
    AUTH_REQUIRED = "auth_required"
    CANCELLED = "cancelled"


@dataclass
class FlushResult:
    """Summary of one flush of one action type."""
    action_type: ActionType
    status: FlushStatus
    batch_id: Optional[BatchId] = None
    acked: List[ActionId] = field(default_factory=list)
    dropped: List[ActionId] = field(default_factory=list)
    requeued: List[ActionId] = field(default_factory=list)
    error: Optional[str] = None
