"""Interface for presenting engine state to an operator.

Defines the contract for messages, usage tables and flush summaries,
allowing different UI implementations (console, GUI, test doubles).
"""

import abc
from typing import Any, Dict, List, Optional

from ..models.usage import FlushResult, SyncState, UsageCounter

class UserInterface(abc.ABC):
    """Abstract Base Class for user interaction."""

    @abc.abstractmethod
    def display_error(self, error_message: str, **kwargs: Any) -> None:
        """Displays an error message to the user."""
        pass

    @abc.abstractmethod
    def display_warning(self, warning_message: str, **kwargs: Any) -> None:
        """Displays a warning message to the user."""
        pass

    @abc.abstractmethod
    def display_info(self, info_message: str, **kwargs: Any) -> None:
        """Displays an informational message to the user."""
        pass

    @abc.abstractmethod
    def display_usage(
        self,
        counters: List[UsageCounter],
        pending: Dict[str, int],
        sync_state: SyncState,
        tier: Optional[str] = None,
    ) -> None:
        """Displays the usage counters, pending queue sizes and sync status.

        Args:
            counters: Snapshot of the quota counters.
            pending: Number of unacknowledged actions per action type.
            sync_state: Current sync bookkeeping.
            tier: The user's membership tier, if known.
        """
        pass

    @abc.abstractmethod
    def display_flush_results(self, results: List[FlushResult]) -> None:
        """Displays the outcome of one or more flushes."""
        pass
