"""Interface for persisted local state.

Defines the contract for storing and retrieving the versioned state blob
(counters, pending queues, tier limits) keyed by user id.
"""

import abc
from typing import Any, Dict, Optional

from ..models.common import UserId

class StateStore(abc.ABC):
    """Abstract Base Class for local state persistence."""

    @abc.abstractmethod
    async def load(self, user_id: UserId) -> Optional[Any]:
        """Retrieves the raw persisted blob for a user.

        The blob is returned untrusted; callers run it through the Validator.

        Args:
            user_id: The user whose state to load.

        Returns:
            The stored blob, or None if nothing was stored or it is unreadable.
        """
        pass

    @abc.abstractmethod
    async def save(self, user_id: UserId, blob: Dict[str, Any]) -> None:
        """Stores the state blob for a user, replacing any previous one.

        Args:
            user_id: The user whose state to store.
            blob: JSON-compatible state blob.
        """
        pass

    @abc.abstractmethod
    async def delete(self, user_id: UserId) -> None:
        """Deletes the stored state for a user (no-op if absent)."""
        pass

    def close(self) -> None:
        """Releases resources held by the store. Optional."""
        return None
