"""Domain Events related to quota reservations, batch delivery and sync.

Published through the EventDispatcher so the UI layer can react (update a
badge, show a one-time notification) without polling.
"""

from dataclasses import dataclass, field
import time
from typing import List, Optional

@dataclass
class DomainEvent:
    """Base class for domain events."""
    pass

# --- Quota Events ---

@dataclass
class ReservationDenied(DomainEvent):
    """Event triggered when check_and_reserve refuses an action."""
    action_type: str
    reason: str
    current_count: int
    limit: Optional[int] = None
    timestamp: float = field(default_factory=time.time)

@dataclass
class CounterReset(DomainEvent):
    """Event triggered when a counter's reset window is crossed."""
    action_type: str
    window_start: float
    reset_timestamp: float
    timestamp: float = field(default_factory=time.time)

# --- Remote Call Events ---

@dataclass
class RetryScheduled(DomainEvent):
    """Event triggered when a retry is scheduled for a failed remote call."""
    operation: str
    attempt_number: int
    delay_seconds: float
    error_type: str
    timestamp: float = field(default_factory=time.time)

@dataclass
class RemoteCallFailed(DomainEvent):
    """Event triggered when a remote call fails definitively."""
    operation: str
    error_type: str
    error_message: str
    attempts: int
    timestamp: float = field(default_factory=time.time)

# --- Batch Events ---

@dataclass
class BatchSubmitted(DomainEvent):
    action_type: str
    batch_id: str
    size: int
    timestamp: float = field(default_factory=time.time)

@dataclass
class BatchAcked(DomainEvent):
    action_type: str
    batch_id: str
    action_ids: List[str]
    timestamp: float = field(default_factory=time.time)

@dataclass
class ActionDropped(DomainEvent):
    """One-time notification that an action was discarded and its quota released."""
    action_type: str
    action_id: str
    reason: str
    timestamp: float = field(default_factory=time.time)

# --- Sync Events ---

@dataclass
class SyncStatusChanged(DomainEvent):
    """Event triggered when the summarized sync status flag changes."""
    status: str # SyncStatus value
    last_sync_error: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

@dataclass
class SyncCompleted(DomainEvent):
    updated_action_types: List[str]
    preserved_action_types: List[str]
    timestamp: float = field(default_factory=time.time)

@dataclass
class RecordDiscarded(DomainEvent):
    """Event triggered when the Validator drops a corrupt record."""
    kind: str # 'counter' or 'action'
    details: str
    timestamp: float = field(default_factory=time.time)
