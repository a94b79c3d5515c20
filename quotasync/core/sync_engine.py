"""SyncEngine: top-level orchestrator of the quota cache and batched sync.

Pulls authoritative counters and tier limits from the remote store, merges
them with local pending state ("remote wins for counters, local wins for
not-yet-acked queue entries"), drives the BatchProcessor and exposes cache
state to the rest of the application.
"""

import asyncio
import logging
import threading
import time
from typing import Callable, Dict, List, Optional

from quotasync.core.batch_processor import BatchProcessor
from quotasync.core.quota_cache import QuotaCache
from quotasync.core.validator import Validator
from quotasync.domain.events.dispatcher import EventDispatcher
from quotasync.domain.events.sync_events import DomainEvent, SyncCompleted, SyncStatusChanged
from quotasync.domain.interfaces.remote_store import RemoteStore
from quotasync.domain.interfaces.state_store import StateStore
from quotasync.domain.models.common import (
    STATE_VERSION, ActionType, MembershipTier, StateBlob, Timestamp, UserId,
)
from quotasync.domain.models.config import SyncConfig
from quotasync.domain.models.errors import (
    AuthError, CorruptState, ExhaustedRetries, OperationCancelled, ValidationError,
)
from quotasync.domain.models.usage import (
    Decision, FlushResult, FlushStatus, PendingAction, RemoteSnapshot, SyncState,
    SyncStatus, UsageCounter,
)
from quotasync.infrastructure.resilience.circuit_breaker import CircuitBreaker
from quotasync.infrastructure.resilience.rate_limiter import RateLimiter
from quotasync.infrastructure.resilience.retry_coordinator import RetryCoordinator

logger = logging.getLogger(__name__)

class SyncEngine:
    """Explicit service object owning one device's quota view and pending actions."""

    def __init__(
        self,
        config: SyncConfig,
        remote_store: RemoteStore,
        state_store: StateStore,
        user_id: UserId,
        tier: Optional[MembershipTier] = None,
        events: Optional[EventDispatcher] = None,
        retry_coordinator: Optional[RetryCoordinator] = None,
        validator: Optional[Validator] = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initializes the SyncEngine and wires its components.

        Args:
            config: Engine configuration.
            remote_store: Authoritative remote store adapter.
            state_store: Local persistence adapter.
            user_id: Identity the quota belongs to; key of the persisted state.
            tier: Current membership tier (may also be set later with `set_tier`).
            events: Dispatcher shared by all components; created if omitted.
            retry_coordinator: Shared coordinator; built from `config` if omitted.
            validator: Shared validator; created if omitted.
            clock: Wall-clock source (epoch seconds).
        """
        self.config = config
        self.remote_store = remote_store
        self.state_store = state_store
        self.user_id = user_id
        self.events = events or EventDispatcher()
        self._clock = clock
        self._lock = threading.RLock()
        self.validator = validator or Validator(events=self.events)
        self.retry_coordinator = retry_coordinator or RetryCoordinator(
            policy=config.retry_policy(),
            rate_limiter=RateLimiter(
                max_requests=config.write_rate_limit,
                time_window=config.write_rate_window_ms / 1000.0,
            ),
            circuit_breaker=CircuitBreaker(
                failure_threshold=config.circuit_failure_threshold,
                reset_timeout=config.circuit_reset_ms / 1000.0,
            ),
            events=self.events,
        )
        self.quota_cache = QuotaCache(
            tier=tier,
            window_seconds=config.window_ms / 1000.0,
            clock=clock,
            lock=self._lock,
            events=self.events,
        )
        self._sync_state = SyncState()
        self.batch_processor = BatchProcessor(
            quota_cache=self.quota_cache,
            retry_coordinator=self.retry_coordinator,
            remote_store=remote_store,
            config=config,
            sync_state=self._sync_state,
            lock=self._lock,
            events=self.events,
            on_change=self._on_batch_resolved,
        )

        self._cancel_event = asyncio.Event()
        self._sync_task: Optional[asyncio.Task] = None
        self._resync_task: Optional[asyncio.Task] = None
        self._persist_tasks: set = set()
        self._initialized = False
        self._suspended = False
        logger.debug(f"SyncEngine created for user '{user_id}' (tier={tier}).")

    # --- Observable state ---

    @property
    def sync_state(self) -> SyncState:
        """Copy of the current sync bookkeeping."""
        with self._lock:
            return SyncState(
                last_sync_timestamp=self._sync_state.last_sync_timestamp,
                last_sync_error=self._sync_state.last_sync_error,
                in_flight_batch_ids=dict(self._sync_state.in_flight_batch_ids),
                status=self._sync_state.status,
            )

    def subscribe(self, callback: Callable[[DomainEvent], None]) -> Callable[[], None]:
        """Registers a UI callback for domain events. Returns an unsubscribe function."""
        return self.events.subscribe(callback)

    def get_state(self, action_type: ActionType) -> Optional[UsageCounter]:
        return self.quota_cache.get_state(action_type)

    def get_all_states(self) -> List[UsageCounter]:
        return self.quota_cache.snapshot()

    def pending_count(self, action_type: Optional[ActionType] = None) -> int:
        return self.batch_processor.pending_count(action_type)

    def set_tier(self, tier: MembershipTier) -> None:
        self.quota_cache.set_tier(tier)

    def _set_status(self, status: SyncStatus, error: Optional[str] = None) -> None:
        with self._lock:
            changed = status != self._sync_state.status or error != self._sync_state.last_sync_error
            self._sync_state.status = status
            self._sync_state.last_sync_error = error
        if changed:
            logger.info(f"Sync status: {status.value}" + (f" ({error})" if error else ""))
            self.events.publish(SyncStatusChanged(status=status.value, last_sync_error=error))

    def clear_error(self) -> None:
        """Clears the last sync error and returns the status flag to idle."""
        self._set_status(SyncStatus.IDLE, None)

    # --- UI entry point ---

    def record_action(self, action_type: ActionType, payload: Optional[Dict] = None) -> Decision:
        """Reserves quota for an action and, if allowed, queues it for delivery."""
        decision = self.quota_cache.check_and_reserve(action_type)
        if not decision.allowed:
            return decision
        action = PendingAction(
            action_type=action_type,
            payload=dict(payload or {}),
            created_at=Timestamp(self._clock()),
            reserved_window_start=decision.window_start,
        )
        self.batch_processor.enqueue(action)
        return decision

    # --- Persistence ---

    def _build_blob(self) -> StateBlob:
        with self._lock:
            return {
                "version": STATE_VERSION,
                "user_id": self.user_id,
                "tier": self.quota_cache.tier,
                "counters": [c.to_dict() for c in self.quota_cache.snapshot()],
                "queues": self.batch_processor.snapshot_queues(),
                "tier_limits": self.quota_cache.tier_limits.to_dict(),
                "last_sync_timestamp": self._sync_state.last_sync_timestamp,
            }

    async def persist(self) -> None:
        """Writes the versioned state blob to the state store."""
        blob = self._build_blob()
        await self.state_store.save(self.user_id, blob)
        logger.debug(f"Persisted state for '{self.user_id}'.")

    async def _persist_quietly(self) -> None:
        try:
            await self.persist()
        except OSError as e:
            logger.error(f"Failed to persist state: {e}", exc_info=True)

    def _on_batch_resolved(self, result: FlushResult) -> None:
        """Summarizes a flush into the status flag and persists the new state."""
        if result.status is FlushStatus.FAILED:
            self._set_status(SyncStatus.DEGRADED, result.error)
        elif result.status is FlushStatus.AUTH_REQUIRED:
            self._set_status(SyncStatus.AUTH_REQUIRED, result.error)
        elif result.status is FlushStatus.COMPLETED and self._sync_state.status is SyncStatus.DEGRADED:
            self._set_status(SyncStatus.IDLE, None)

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self._persist_quietly())
        self._persist_tasks.add(task)
        task.add_done_callback(self._persist_tasks.discard)

    async def load_persisted(self) -> int:
        """Loads persisted state through the Validator.

        Returns:
            Number of pending actions restored.
        """
        try:
            raw = await self.state_store.load(self.user_id)
        except CorruptState as e:
            logger.warning(f"Persisted state for '{self.user_id}' is unreadable, starting empty: {e}")
            return 0
        if raw is None:
            logger.info(f"No persisted state for '{self.user_id}'.")
            return 0

        state = self.validator.validate(raw, tier=self.quota_cache.tier)
        if state.tier_limits is not None:
            self.quota_cache.set_tier_limits(state.tier_limits)
        self.quota_cache.replace_counters(state.counters)
        restored = self.batch_processor.restore_queues(state.queues)
        with self._lock:
            self._sync_state.last_sync_timestamp = state.last_sync_timestamp
        logger.info(f"Loaded persisted state: {len(state.counters)} counter(s), {restored} pending action(s), "
                    f"{len(state.discarded)} record(s) discarded.")
        return restored

    # --- Reconciliation ---

    async def pull_authoritative(self) -> RemoteSnapshot:
        """Fetches remote truth and merges it into the cache.

        Counters are replaced only for action types with no pending
        unacknowledged actions; the others keep their local value. A type
        that had pending actions when the pull started, or got a batch acked
        while it was outstanding, also keeps its local value: the remote
        snapshot may predate that ack.
        """
        tier = self.quota_cache.tier
        with self._lock:
            pending_at_start = set(self.batch_processor.pending_types())
            acks_at_start = self.batch_processor.ack_generations()

        async def pull() -> RemoteSnapshot:
            return await self.remote_store.pull(self.user_id, tier)

        snapshot = await self.retry_coordinator.with_retry(
            pull, operation_name="pull_authoritative", cancel_event=self._cancel_event,
        )
        tier_limits = snapshot.tier_limits
        if tier_limits.fetched_at is None:
            tier_limits = type(tier_limits)(limits=tier_limits.limits, fetched_at=Timestamp(self._clock()))
        self.quota_cache.set_tier_limits(tier_limits)

        checked = self.validator.validate_counters(snapshot.counters, tier_limits, tier)
        with self._lock:
            acks_now = self.batch_processor.ack_generations()
            acked_meanwhile = {t for t, n in acks_now.items() if acks_at_start.get(t, 0) != n}
            preserved = [c.action_type for c in checked.counters
                         if c.action_type in pending_at_start
                         or c.action_type in acked_meanwhile
                         or self.batch_processor.has_pending(c.action_type)]
            updated = self.quota_cache.replace_counters(checked.counters, preserve=preserved)
            self._sync_state.last_sync_timestamp = Timestamp(self._clock())
        logger.info(f"Pulled authoritative state: updated {updated or 'none'}, kept local {preserved or 'none'}.")
        self.events.publish(SyncCompleted(updated_action_types=list(updated),
                                          preserved_action_types=list(preserved)))
        return snapshot

    def _tier_limits_stale(self) -> bool:
        return self.quota_cache.tier_limits.is_stale(self._clock(), self.config.tier_limits_ttl_ms / 1000.0)

    def _sync_due(self) -> bool:
        last = self._sync_state.last_sync_timestamp
        if last is None or self._tier_limits_stale():
            return True
        return (self._clock() - last) * 1000.0 >= self.config.sync_interval_ms

    async def resync(self, force: bool = False) -> bool:
        """Validates local state, pulls remote truth, merges and flushes queues.

        A non-forced resync within `sync_interval_ms` of the last successful
        sync is skipped. Concurrent calls share one running resync.

        Returns:
            True if a pull happened and succeeded.
        """
        if not force and not self._sync_due():
            logger.debug("Resync skipped: last sync is recent.")
            return False
        if self._resync_task is not None and not self._resync_task.done():
            logger.debug("Resync already running; joining it.")
            return await asyncio.shield(self._resync_task)
        self._resync_task = asyncio.ensure_future(self._run_resync())
        return await asyncio.shield(self._resync_task)

    async def _run_resync(self) -> bool:
        self._set_status(SyncStatus.SYNCING, self._sync_state.last_sync_error)
        # Re-validate what is currently cached before merging remote values into it
        local = self.validator.validate_counters(self.quota_cache.snapshot(),
                                                 self.quota_cache.tier_limits, self.quota_cache.tier)
        for corrupt in local.discarded:
            if isinstance(corrupt.record, dict) and corrupt.record.get("action_type"):
                self.quota_cache.remove(corrupt.record["action_type"])
        if local.stale:
            self.quota_cache.replace_counters(local.counters)

        try:
            await self.pull_authoritative()
        except ExhaustedRetries as e:
            self._set_status(SyncStatus.DEGRADED, str(e))
            return False
        except AuthError as e:
            self._set_status(SyncStatus.AUTH_REQUIRED, str(e))
            return False
        except ValidationError as e:
            self._set_status(SyncStatus.DEGRADED, str(e))
            return False
        except OperationCancelled:
            self._set_status(SyncStatus.IDLE, self._sync_state.last_sync_error)
            return False

        self._set_status(SyncStatus.IDLE, None)
        await self.batch_processor.flush_all()
        await self._persist_quietly()
        return True

    async def _sync_loop(self) -> None:
        interval = self.config.sync_interval_ms / 1000.0
        while True:
            await asyncio.sleep(interval)
            try:
                await self.resync(force=True)
            except Exception as e:
                logger.error(f"Periodic sync failed: {e}", exc_info=True)
                with self._lock:
                    self._sync_state.last_sync_error = str(e)

    # --- Lifecycle ---

    def _start_timers(self) -> None:
        self.batch_processor.start()
        if self._sync_task is None or self._sync_task.done():
            self._sync_task = asyncio.create_task(self._sync_loop())

    async def _stop_timers(self) -> None:
        if self._sync_task is not None:
            self._sync_task.cancel()
            try:
                await self._sync_task
            except asyncio.CancelledError:
                pass
            self._sync_task = None
        await self.batch_processor.stop()

    async def init(self, start_background: bool = True) -> None:
        """Loads persisted state, starts timers and schedules one resync."""
        if self._initialized:
            return
        self._cancel_event.clear()
        await self.load_persisted()
        self._initialized = True
        if start_background:
            self._start_timers()
            self._resync_task = asyncio.ensure_future(self._run_resync())
        logger.info(f"SyncEngine initialized for '{self.user_id}'.")

    async def suspend(self) -> None:
        """App backgrounded: stops timers and persists; pending actions stay queued."""
        if self._suspended:
            return
        self._suspended = True
        await self._stop_timers()
        await self._persist_quietly()
        logger.info("SyncEngine suspended.")

    async def resume(self) -> bool:
        """Restarts timers and triggers one non-forced resync."""
        if not self._suspended:
            return False
        self._suspended = False
        self._start_timers()
        logger.info("SyncEngine resumed.")
        return await self.resync(force=False)

    async def shutdown(self) -> None:
        """Cancels timers and in-flight retry loops cooperatively, then persists."""
        self._cancel_event.set()
        await self._stop_timers()
        await self.batch_processor.stop(cancel_in_flight=True)
        if self._resync_task is not None:
            await asyncio.gather(self._resync_task, return_exceptions=True)
            self._resync_task = None
        if self._persist_tasks:
            await asyncio.gather(*list(self._persist_tasks), return_exceptions=True)
        await self._persist_quietly()
        await self.remote_store.close()
        self.state_store.close()
        self._initialized = False
        logger.info("SyncEngine shut down.")
