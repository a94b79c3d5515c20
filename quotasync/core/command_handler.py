"""Command Handler: Orchestrates CLI command execution.

Receives commands from the main entry point (main.py), opens a SyncEngine
session for each one (load persisted state, do the work, persist and shut
down) and reports the outcome through the UserInterface.
"""

import contextlib
import json
import logging
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple

from quotasync.core.sync_engine import SyncEngine
from quotasync.domain.events.sync_events import (
    ActionDropped, DomainEvent, RecordDiscarded, RetryScheduled, SyncStatusChanged,
)
from quotasync.domain.interfaces.user_interface import UserInterface
from quotasync.domain.models.common import ActionType
from quotasync.domain.models.errors import ConfigurationError, QuotaSyncError
from quotasync.domain.models.usage import DenyReason, FlushResult

logger = logging.getLogger(__name__)

EngineFactory = Callable[[], SyncEngine]
SandboxFactory = Callable[[], Tuple[SyncEngine, Any]]

def parse_payload(raw: Optional[str]) -> Dict[str, Any]:
    """Parses the `--payload` JSON option into a mapping."""
    if not raw:
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Payload is not valid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise ConfigurationError("Payload must be a JSON object.")
    return payload

def describe_event(event: DomainEvent) -> Optional[str]:
    """One-line description of the events worth showing an operator."""
    if isinstance(event, RetryScheduled):
        return (f"{event.operation}: attempt {event.attempt_number} failed ({event.error_type}), "
                f"retrying in {event.delay_seconds:.2f}s")
    if isinstance(event, ActionDropped):
        return f"Dropped {event.action_type} action {event.action_id[:8]}: {event.reason}"
    if isinstance(event, SyncStatusChanged):
        return f"Sync status changed to '{event.status}'" + (f": {event.last_sync_error}" if event.last_sync_error else "")
    if isinstance(event, RecordDiscarded):
        return f"Discarded corrupt {event.kind}: {event.details}"
    return None

class CommandHandler:
    """Handles incoming commands and delegates to the SyncEngine."""

    def __init__(
        self,
        engine_factory: EngineFactory,
        ui: UserInterface,
        sandbox_factory: Optional[SandboxFactory] = None,
    ):
        """Initializes the CommandHandler.

        Args:
            engine_factory: Builds a fresh engine for each command.
            ui: Output surface.
            sandbox_factory: Builds an engine wired to an in-memory remote
                store with failure injection (for `simulate`).
        """
        self.engine_factory = engine_factory
        self.ui = ui
        self.sandbox_factory = sandbox_factory

    @contextlib.asynccontextmanager
    async def _session(self, engine: Optional[SyncEngine] = None) -> AsyncIterator[SyncEngine]:
        engine = engine or self.engine_factory()
        await engine.init(start_background=False)
        try:
            yield engine
        finally:
            await engine.shutdown()

    def _show_event(self, event: DomainEvent) -> None:
        message = describe_event(event)
        if message is None:
            return
        if isinstance(event, (ActionDropped, RecordDiscarded)):
            self.ui.display_warning(message)
        else:
            self.ui.display_info(message)

    def _show_status(self, engine: SyncEngine) -> None:
        counters = engine.get_all_states()
        pending = {t: engine.pending_count(t) for t in engine.batch_processor.pending_types()}
        self.ui.display_usage(counters, pending, engine.sync_state, tier=engine.quota_cache.tier)

    async def handle_status(self) -> None:
        """Handles the 'status' command: shows local counters without contacting the remote."""
        logger.info("Handling 'status' command.")
        try:
            async with self._session() as engine:
                self._show_status(engine)
        except QuotaSyncError as e:
            logger.error(f"Status command failed: {e}", exc_info=True)
            self.ui.display_error(f"Status failed: {e}")

    async def handle_act(self, action_type: str, count: int = 1, payload: Optional[str] = None) -> Dict[str, int]:
        """Handles the 'act' command: records actions and flushes them.

        Returns:
            Counts of allowed and denied reservations.
        """
        logger.info(f"Handling 'act' command: {count} x {action_type}")
        outcome = {"allowed": 0, "denied": 0}
        try:
            data = parse_payload(payload)
            async with self._session() as engine:
                unsubscribe = engine.subscribe(self._show_event)
                try:
                    # Makes sure tier limits are known before reserving
                    await engine.resync(force=False)
                    denial: Optional[DenyReason] = None
                    for _ in range(count):
                        decision = engine.record_action(ActionType(action_type), data)
                        if decision.allowed:
                            outcome["allowed"] += 1
                        else:
                            outcome["denied"] += 1
                            denial = decision.reason
                    results = await engine.batch_processor.flush_all()
                finally:
                    unsubscribe()
                self.ui.display_info(f"{outcome['allowed']} '{action_type}' action(s) allowed, "
                                     f"{outcome['denied']} denied.")
                if denial is not None:
                    self.ui.display_warning(f"Quota denied for '{action_type}': {denial.value}")
                self.ui.display_flush_results(results)
                self._show_status(engine)
        except QuotaSyncError as e:
            logger.error(f"Act command failed: {e}", exc_info=True)
            self.ui.display_error(f"Act failed: {e}")
        return outcome

    async def handle_sync(self, force: bool = False) -> bool:
        """Handles the 'sync' command: resync with the remote store."""
        logger.info(f"Handling 'sync' command (force={force}).")
        try:
            async with self._session() as engine:
                unsubscribe = engine.subscribe(self._show_event)
                try:
                    synced = await engine.resync(force=force)
                finally:
                    unsubscribe()
                if synced:
                    self.ui.display_info("Synchronized with the remote store.")
                elif engine.sync_state.last_sync_error:
                    self.ui.display_warning(f"Sync failed: {engine.sync_state.last_sync_error}")
                else:
                    self.ui.display_info("Sync skipped: last sync is recent (use --force).")
                self._show_status(engine)
                return synced
        except QuotaSyncError as e:
            logger.error(f"Sync command failed: {e}", exc_info=True)
            self.ui.display_error(f"Sync failed: {e}")
            return False

    async def handle_flush(self) -> List[FlushResult]:
        """Handles the 'flush' command: delivers every pending queue once."""
        logger.info("Handling 'flush' command.")
        try:
            async with self._session() as engine:
                unsubscribe = engine.subscribe(self._show_event)
                try:
                    results = await engine.batch_processor.flush_all()
                finally:
                    unsubscribe()
                self.ui.display_flush_results(results)
                return results
        except QuotaSyncError as e:
            logger.error(f"Flush command failed: {e}", exc_info=True)
            self.ui.display_error(f"Flush failed: {e}")
            return []

    async def handle_clear_state(self) -> None:
        """Handles the 'clear-state' command: deletes the persisted state."""
        logger.info("Handling 'clear-state' command.")
        engine = self.engine_factory()
        try:
            await engine.state_store.delete(engine.user_id)
            self.ui.display_info(f"Persisted state for '{engine.user_id}' cleared.")
        except OSError as e:
            logger.error(f"Failed to clear state: {e}", exc_info=True)
            self.ui.display_error(f"Failed to clear state: {e}")
        finally:
            engine.state_store.close()
            await engine.remote_store.close()

    async def handle_simulate(self, action_type: str, count: int, failures: int) -> List[FlushResult]:
        """Handles the 'simulate' command against the in-memory remote store.

        Records `count` actions, makes the next `failures` remote calls fail
        with a network error and flushes, showing each retry as it happens.
        """
        if self.sandbox_factory is None:
            self.ui.display_error("Simulation is not available.")
            return []
        logger.info(f"Handling 'simulate' command: {count} x {action_type}, {failures} failure(s)")
        engine, remote = self.sandbox_factory()
        try:
            async with self._session(engine):
                unsubscribe = engine.subscribe(self._show_event)
                try:
                    await engine.resync(force=True)
                    for _ in range(count):
                        engine.record_action(ActionType(action_type), {"simulated": True})
                    remote.inject_failures(failures)
                    results = await engine.batch_processor.flush_all()
                finally:
                    unsubscribe()
                self.ui.display_flush_results(results)
                self._show_status(engine)
                return results
        except QuotaSyncError as e:
            logger.error(f"Simulation failed: {e}", exc_info=True)
            self.ui.display_error(f"Simulation failed: {e}")
            return []
