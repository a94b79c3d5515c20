"""Interface for the remote authoritative usage store.

Defines the contract for delivering batches of pending actions and for
pulling authoritative counters and tier limits.
"""

import abc
from typing import List

from ..models.common import BatchItem, MembershipTier, UserId
from ..models.usage import RemoteSnapshot, SubmitResult

class RemoteStore(abc.ABC):
    """Abstract Base Class for the remote usage backend.

    Implementations translate transport failures into the error taxonomy in
    `quotasync.domain.models.errors` (NetworkError, RateLimited, AuthError,
    ValidationError); the core never inspects library exceptions.
    """

    @abc.abstractmethod
    async def submit_batch(self, items: List[BatchItem]) -> SubmitResult:
        """Submits an ordered batch of actions.

        Must be idempotent keyed by item `id`: re-submitting an id that was
        already applied acknowledges it again without double-applying.

        Args:
            items: Ordered list of `{id, actionType, payload}` entries.

        Returns:
            Per-id acknowledgments and per-id rejection reasons.
        """
        pass

    @abc.abstractmethod
    async def pull(self, user_id: UserId, tier: MembershipTier) -> RemoteSnapshot:
        """Fetches authoritative counters and the tier limits table.

        Args:
            user_id: Identity of the current user.
            tier: The user's current membership tier.

        Returns:
            The remote counters (as mappings) and TierLimits.
        """
        pass

    async def close(self) -> None:
        """Releases transport resources. Optional."""
        return None
