"""BatchProcessor: ordered per-action-type queues flushed as batches.

Actions are delivered FIFO within an action type (cross-type ordering is not
guaranteed). A flush is triggered by the flush timer or when a queue reaches
`batch_size`, whichever comes first, and at most one batch per action type is
in flight at any time.

Per-action state machine:
    Queued -> Sending -> {Acked (terminal), Queued (retry), Dropped (terminal)}

Dropping an action always releases its quota reservation.
"""

import asyncio
import logging
import time
import uuid
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Set

from quotasync.core.quota_cache import QuotaCache
from quotasync.domain.events.dispatcher import EventDispatcher
from quotasync.domain.events.sync_events import ActionDropped, BatchAcked, BatchSubmitted
from quotasync.domain.interfaces.remote_store import RemoteStore
from quotasync.domain.models.common import ActionId, ActionType, BatchId, BatchItem
from quotasync.domain.models.config import SyncConfig
from quotasync.domain.models.errors import (
    AuthError, ExhaustedRetries, OperationCancelled, ValidationError,
)
from quotasync.domain.models.usage import (
    ActionStatus, FlushResult, FlushStatus, PendingAction, SubmitResult, SyncState,
)
from quotasync.infrastructure.resilience.retry_coordinator import RetryCoordinator

logger = logging.getLogger(__name__)

class BatchProcessor:
    """Accumulates pending actions and delivers them through the RetryCoordinator."""

    def __init__(
        self,
        quota_cache: QuotaCache,
        retry_coordinator: RetryCoordinator,
        remote_store: RemoteStore,
        config: Optional[SyncConfig] = None,
        sync_state: Optional[SyncState] = None,
        lock=None,
        events: Optional[EventDispatcher] = None,
        on_change: Optional[Callable[[FlushResult], None]] = None,
    ):
        """Initializes the BatchProcessor.

        Args:
            quota_cache: Cache whose reservations are committed or rolled back.
            retry_coordinator: Shared retry wrapper for remote submits.
            remote_store: Remote submit-batch endpoint.
            config: Engine configuration (batch size, flush interval, max retries).
            sync_state: Shared sync bookkeeping holding the in-flight batch ids.
            lock: Shared serialization point (the QuotaCache lock by default).
            events: Optional dispatcher for batch and drop events.
            on_change: Hook called after every flush that reached the
                remote (persistence, status summary).
        """
        self.quota_cache = quota_cache
        self.retry_coordinator = retry_coordinator
        self.remote_store = remote_store
        self.config = config or SyncConfig()
        self.sync_state = sync_state or SyncState()
        self._lock = lock or quota_cache._lock
        self.events = events
        self.on_change = on_change

        self._queues: Dict[ActionType, List[PendingAction]] = {}
        self._index: Dict[ActionId, PendingAction] = {}
        self._acked: Deque[ActionId] = deque()
        self._acked_set: Set[ActionId] = set()
        self._ack_generations: Dict[ActionType, int] = {}
        self._flush_requested: Set[ActionType] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._timer_task: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._cancel_event = asyncio.Event()

    def _publish(self, event) -> None:
        if self.events:
            self.events.publish(event)

    # --- Queue inspection ---

    def pending_count(self, action_type: Optional[ActionType] = None) -> int:
        """Number of unacknowledged actions (Queued or Sending)."""
        with self._lock:
            if action_type is not None:
                return len(self._queues.get(action_type, []))
            return sum(len(q) for q in self._queues.values())

    def has_pending(self, action_type: ActionType) -> bool:
        return self.pending_count(action_type) > 0

    def pending_types(self) -> List[ActionType]:
        with self._lock:
            return [t for t, q in self._queues.items() if q]

    def ack_generations(self) -> Dict[ActionType, int]:
        """Per-type count of batches that had at least one action acked."""
        with self._lock:
            return dict(self._ack_generations)

    def get_actions(self, action_type: ActionType) -> List[PendingAction]:
        with self._lock:
            return list(self._queues.get(action_type, []))

    def is_known(self, action_id: ActionId) -> bool:
        with self._lock:
            return action_id in self._index or action_id in self._acked_set

    # --- Enqueue ---

    def enqueue(self, action: PendingAction) -> bool:
        """Appends an action to its type's queue.

        Returns:
            False if an action with the same id is already queued or was
            recently acknowledged (dedupe), True otherwise.
        """
        with self._lock:
            if action.id in self._index or action.id in self._acked_set:
                logger.debug(f"Duplicate action {action.id} ignored.")
                return False
            action.status = ActionStatus.QUEUED
            queue = self._queues.setdefault(action.action_type, [])
            queue.append(action)
            self._index[action.id] = action
            queued = sum(1 for a in queue if a.status is ActionStatus.QUEUED)
        logger.debug(f"Enqueued {action.action_type} action {action.id} ({queued} queued)")
        if queued >= self.config.batch_size:
            self._request_flush(action.action_type)
        return True

    def restore_queues(self, queues: Dict[ActionType, List[PendingAction]]) -> int:
        """Loads validated actions (e.g. from persistence). Returns how many were added."""
        added = 0
        with self._lock:
            for action_type, actions in queues.items():
                for action in actions:
                    if action.id in self._index or action.id in self._acked_set:
                        continue
                    action.status = ActionStatus.QUEUED
                    self._queues.setdefault(action.action_type, []).append(action)
                    self._index[action.id] = action
                    added += 1
            for queue in self._queues.values():
                queue.sort(key=lambda a: a.created_at)
        if added:
            logger.info(f"Restored {added} pending action(s).")
        return added

    def snapshot_queues(self) -> Dict[str, List[dict]]:
        with self._lock:
            return {t: [a.to_dict() for a in q] for t, q in self._queues.items() if q}

    # --- Scheduling ---

    def _request_flush(self, action_type: ActionType) -> None:
        """Schedules a background flush if an event loop is available."""
        loop = self._loop
        if loop is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                logger.debug(f"No running loop; '{action_type}' will flush on the next timer tick.")
                return
        if loop.is_closed():
            return
        loop.call_soon_threadsafe(self._spawn_flush, action_type)

    def _spawn_flush(self, action_type: ActionType) -> None:
        task = asyncio.ensure_future(self.flush(action_type))
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background flush failed: {error}", exc_info=error)

    async def drain(self) -> None:
        """Waits until all scheduled background flushes have finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _flush_loop(self) -> None:
        interval = self.config.flush_interval_ms / 1000.0
        while True:
            await asyncio.sleep(interval)
            try:
                await self.flush_all()
            except Exception as e:
                logger.error(f"Flush timer tick failed: {e}", exc_info=True)

    def start(self) -> None:
        """Starts the flush timer on the running event loop."""
        self._loop = asyncio.get_running_loop()
        self._cancel_event.clear()
        if self._timer_task is None or self._timer_task.done():
            self._timer_task = asyncio.create_task(self._flush_loop())
            logger.debug(f"Flush timer started ({self.config.flush_interval_ms} ms).")

    async def stop(self, cancel_in_flight: bool = False) -> None:
        """Stops the flush timer.

        Args:
            cancel_in_flight: Also ask in-flight flushes to stop retrying; their
                actions return to the queue without consuming retry budget.
        """
        if self._timer_task is not None:
            self._timer_task.cancel()
            try:
                await self._timer_task
            except asyncio.CancelledError:
                pass
            self._timer_task = None
        if cancel_in_flight:
            self._cancel_event.set()
            await self.drain()
            self._cancel_event.clear()

    # --- Flush ---

    async def flush_all(self) -> List[FlushResult]:
        """Flushes every action type that has queued actions."""
        with self._lock:
            types = [t for t, q in self._queues.items()
                     if any(a.status is ActionStatus.QUEUED for a in q)]
        if not types:
            return []
        results = await asyncio.gather(*(self.flush(t) for t in types), return_exceptions=True)
        flushed: List[FlushResult] = []
        for action_type, result in zip(types, results):
            if isinstance(result, BaseException):
                logger.error(f"Flush of '{action_type}' failed: {result}", exc_info=result)
            else:
                flushed.append(result)
        return flushed

    async def flush(self, action_type: ActionType) -> FlushResult:
        """Submits up to `batch_size` oldest queued actions of one type."""
        with self._lock:
            if self.sync_state.in_flight_batch_id(action_type):
                self._flush_requested.add(action_type)
                logger.debug(f"Flush of '{action_type}' deferred: batch already in flight.")
                return FlushResult(action_type, FlushStatus.DEFERRED,
                                   batch_id=self.sync_state.in_flight_batch_id(action_type))
            queue = self._queues.get(action_type, [])
            batch = [a for a in queue if a.status is ActionStatus.QUEUED][:self.config.batch_size]
            if not batch:
                return FlushResult(action_type, FlushStatus.EMPTY)
            batch_id = BatchId(str(uuid.uuid4()))
            for action in batch:
                action.status = ActionStatus.SENDING
            self.sync_state.in_flight_batch_ids[action_type] = batch_id

        items: List[BatchItem] = [
            {"id": a.id, "actionType": a.action_type, "payload": dict(a.payload)} for a in batch
        ]
        logger.info(f"Submitting batch {batch_id} of {len(items)} '{action_type}' action(s).")
        self._publish(BatchSubmitted(action_type=action_type, batch_id=batch_id, size=len(items)))

        async def submit() -> SubmitResult:
            return await self.remote_store.submit_batch(items)

        result: Optional[FlushResult] = None
        try:
            response = await self.retry_coordinator.with_retry(
                submit,
                operation_name=f"submit_batch:{action_type}",
                cancel_event=self._cancel_event,
            )
        except ExhaustedRetries as e:
            result = self._resolve_exhausted(action_type, batch, batch_id, e)
        except OperationCancelled:
            result = self._resolve_requeue(action_type, batch, batch_id, FlushStatus.CANCELLED, "cancelled")
        except AuthError as e:
            result = self._resolve_requeue(action_type, batch, batch_id, FlushStatus.AUTH_REQUIRED, str(e))
        except ValidationError as e:
            result = self._resolve_invalid(action_type, batch, batch_id, e)
        else:
            result = self._resolve_success(action_type, batch, batch_id, response)
        finally:
            with self._lock:
                if result is None:
                    # Task cancelled or unexpected error: nothing was decided
                    for action in batch:
                        if action.status is ActionStatus.SENDING:
                            action.status = ActionStatus.QUEUED
                if self.sync_state.in_flight_batch_ids.get(action_type) == batch_id:
                    del self.sync_state.in_flight_batch_ids[action_type]
                rerun = action_type in self._flush_requested
                self._flush_requested.discard(action_type)

        if self.on_change:
            self.on_change(result)
        # Failed, cancelled and auth-blocked batches wait for the timer or an explicit flush
        if result.status is FlushStatus.COMPLETED and (
                rerun or self._queued_count(action_type) >= self.config.batch_size):
            self._request_flush(action_type)
        return result

    def _queued_count(self, action_type: ActionType) -> int:
        with self._lock:
            return sum(1 for a in self._queues.get(action_type, []) if a.status is ActionStatus.QUEUED)

    # --- Resolution (caller must not hold the lock) ---

    def _remove(self, action: PendingAction) -> None:
        queue = self._queues.get(action.action_type, [])
        if action in queue:
            queue.remove(action)
        self._index.pop(action.id, None)

    def _remember_acked(self, action_id: ActionId) -> None:
        limit = self.config.acked_id_memory
        if limit <= 0:
            return
        if len(self._acked) >= limit:
            self._acked_set.discard(self._acked.popleft())
        self._acked.append(action_id)
        self._acked_set.add(action_id)

    def _drop(self, action: PendingAction, reason: str) -> None:
        action.status = ActionStatus.DROPPED
        self._remove(action)
        self.quota_cache.rollback(action.action_type, action.reserved_window_start)
        logger.warning(f"Dropped {action.action_type} action {action.id}: {reason}")
        self._publish(ActionDropped(action_type=action.action_type, action_id=action.id, reason=reason))

    def _requeue(self, action: PendingAction, count_retry: bool, reason: str) -> bool:
        """Returns the action to Queued; drops it once retries are used up.

        Returns:
            True if requeued, False if dropped.
        """
        if count_retry:
            action.retry_count += 1
            if action.retry_count > self.config.max_retries:
                self._drop(action, f"retries exhausted ({reason})")
                return False
        action.status = ActionStatus.QUEUED
        return True

    def _resolve_success(self, action_type: ActionType, batch: List[PendingAction],
                         batch_id: BatchId, response: SubmitResult) -> FlushResult:
        acked_ids = set(response.acked)
        result = FlushResult(action_type, FlushStatus.COMPLETED, batch_id)
        with self._lock:
            for action in batch:
                if action.id in acked_ids:
                    action.status = ActionStatus.ACKED
                    self._remove(action)
                    self._remember_acked(action.id)
                    self.quota_cache.commit(action_type)
                    result.acked.append(action.id)
                elif action.id in response.rejected:
                    self._drop(action, f"rejected by remote: {response.rejected[action.id]}")
                    result.dropped.append(action.id)
                elif self._requeue(action, count_retry=True, reason="not acknowledged"):
                    result.requeued.append(action.id)
                else:
                    result.dropped.append(action.id)
            if result.acked:
                self._ack_generations[action_type] = self._ack_generations.get(action_type, 0) + 1
        logger.info(f"Batch {batch_id}: {len(result.acked)} acked, {len(result.dropped)} dropped, "
                    f"{len(result.requeued)} requeued.")
        if result.acked:
            self._publish(BatchAcked(action_type=action_type, batch_id=batch_id, action_ids=list(result.acked)))
        return result

    def _resolve_exhausted(self, action_type: ActionType, batch: List[PendingAction],
                           batch_id: BatchId, error: ExhaustedRetries) -> FlushResult:
        result = FlushResult(action_type, FlushStatus.FAILED, batch_id, error=str(error))
        with self._lock:
            for action in batch:
                action.status = ActionStatus.FAILED
                if self._requeue(action, count_retry=True, reason=str(error.last_error)):
                    result.requeued.append(action.id)
                else:
                    result.dropped.append(action.id)
        logger.warning(f"Batch {batch_id} failed: {error}. {len(result.requeued)} requeued, "
                       f"{len(result.dropped)} dropped.")
        return result

    def _resolve_requeue(self, action_type: ActionType, batch: List[PendingAction],
                         batch_id: BatchId, status: FlushStatus, reason: str) -> FlushResult:
        result = FlushResult(action_type, status, batch_id, error=reason)
        with self._lock:
            for action in batch:
                self._requeue(action, count_retry=False, reason=reason)
                result.requeued.append(action.id)
        logger.info(f"Batch {batch_id} returned to queue ({status.value}).")
        return result

    def _resolve_invalid(self, action_type: ActionType, batch: List[PendingAction],
                         batch_id: BatchId, error: ValidationError) -> FlushResult:
        named = set(error.action_ids)
        result = FlushResult(action_type, FlushStatus.COMPLETED, batch_id, error=str(error))
        with self._lock:
            for action in batch:
                if not named or action.id in named:
                    self._drop(action, f"invalid: {error}")
                    result.dropped.append(action.id)
                else:
                    self._requeue(action, count_retry=False, reason="batch rejected")
                    result.requeued.append(action.id)
        return result
