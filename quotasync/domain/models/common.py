"""Defines common Value Objects used across the quota and sync contexts.

These objects represent simple values like action types, tiers and
identifiers, ensuring consistency and type safety.
"""

from typing import NewType, Any, Dict, TypedDict

# === Core Value Objects ===

# Using NewType for semantic clarity, although they are strings at runtime.
ActionType = NewType("ActionType", str)       # 'swipe', 'like', 'match', 'message'
ActionId = NewType("ActionId", str)           # Client-generated idempotency key (UUID4 string)
BatchId = NewType("BatchId", str)             # Identifier of one flush attempt
UserId = NewType("UserId", str)
MembershipTier = NewType("MembershipTier", str) # 'bronze', 'silver', 'gold'
Timestamp = NewType("Timestamp", float)       # Unix epoch seconds

# Known action types
SWIPE = ActionType("swipe")
LIKE = ActionType("like")
MATCH = ActionType("match")
MESSAGE = ActionType("message")
DEFAULT_ACTION_TYPES = (SWIPE, LIKE, MATCH, MESSAGE)

# Known membership tiers
BRONZE = MembershipTier("bronze")
SILVER = MembershipTier("silver")
GOLD = MembershipTier("gold")
DEFAULT_TIERS = (BRONZE, SILVER, GOLD)

# Version of the persisted state blob
STATE_VERSION = 1

# --- Structured Data ---
class BatchItem(TypedDict):
    """One entry of a submit-batch request."""
    id: ActionId
    actionType: ActionType
    payload: Dict[str, Any]

class StateBlob(TypedDict, total=False):
    """Shape of the persisted local state (JSON compatible)."""
    version: int
    user_id: UserId
    saved_at: float
    tier: MembershipTier
    counters: list
    queues: Dict[str, list]
    tier_limits: Dict[str, Any]
    last_sync_timestamp: float
