"""
Sync Orchestrator

Drains the mutation queue oldest-first in fixed-size batches, ships each
batch through the BatchTransport, applies per-item outcomes to the task
store and the queue, routes conflicts to the Last-Write-Wins resolver, and
drives retry accounting and dead-lettering.

Only one sync run may be in flight at a time; a concurrent trigger is
rejected with SyncInProgressError rather than interleaved.
"""

import logging
import sqlite3
import threading
from typing import Dict, List, Optional, Sequence, Set, Tuple

from .config import SyncConfig
from .conflict import ConflictResolver
from .database import TaskDatabase
from .models import (
    BatchSyncItem,
    BatchSyncRequest,
    ItemStatus,
    MutationQueueItem,
    Operation,
    ProcessedItem,
    SyncItemError,
    SyncResult,
    SyncStatusSummary,
    Task,
    utc_now,
)
from .queue import MutationQueue
from .transport import BatchTransport, HttpBatchTransport, TransportError

logger = logging.getLogger(__name__)


class SyncInProgressError(RuntimeError):
    """Raised when sync() is triggered while another run is still going."""


class _RunTally:
    """Mutable counters for one sync run."""

    def __init__(self):
        self.synced = 0
        self.failed = 0
        self.deferred = 0
        self.errors: List[SyncItemError] = []
        # Tasks with a failed item in this run; their later items wait for the next run
        self.blocked_tasks: Set[str] = set()

    def to_result(self) -> SyncResult:
        return SyncResult(
            success=self.failed == 0,
            synced_items=self.synced,
            failed_items=self.failed,
            deferred_items=self.deferred,
            errors=self.errors,
        )


class SyncOrchestrator:
    """
    Single logical sync worker over explicitly owned dependencies.

    Features:
    - Oldest-first draining in sequential fixed-size batches
    - Whole-batch failure on transport errors, per-item handling otherwise
    - Conflict resolution with resolved conflicts counted as synced
    - Per-task ordering: a task's later items never overtake a failed earlier one
    - Single-flight guard around sync()
    """

    def __init__(
        self,
        db: TaskDatabase,
        queue: MutationQueue,
        transport: BatchTransport,
        resolver: Optional[ConflictResolver] = None,
        config: Optional[SyncConfig] = None,
    ):
        """
        Args:
            db: Task store receiving sync write-backs
            queue: Mutation queue to drain
            transport: Remote peer client
            resolver: Conflict resolver, Last-Write-Wins by default
            config: Batch size, retry limit and timeouts
        """
        self.db = db
        self.queue = queue
        self.transport = transport
        self.resolver = resolver or ConflictResolver()
        self.config = config or SyncConfig()
        self._sync_lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._sync_lock.locked()

    def sync(self) -> SyncResult:
        """
        Run one full sync cycle.

        Returns:
            SyncResult with synced/failed/deferred counts and failure entries

        Raises:
            SyncInProgressError: If another sync run is in flight
            sqlite3.Error: If the queue cannot be read at all
        """
        if not self._sync_lock.acquire(blocking=False):
            raise SyncInProgressError("A sync run is already in progress")
        try:
            return self._run()
        finally:
            self._sync_lock.release()

    def _run(self) -> SyncResult:
        items = self.queue.due_items(self.config.retry_limit)
        if not items:
            logger.debug("Sync skipped: mutation queue is empty")
            return SyncResult(success=True, synced_items=0, failed_items=0, errors=[])

        batches = self._partition(items, self.config.batch_size)
        logger.info(f"Starting sync of {len(items)} queued items in {len(batches)} batches")

        tally = _RunTally()
        for number, batch in enumerate(batches, start=1):
            sendable = [item for item in batch if item.task_id not in tally.blocked_tasks]
            tally.deferred += len(batch) - len(sendable)
            if not sendable:
                continue
            logger.debug(f"Processing batch {number}/{len(batches)} with {len(sendable)} items")
            self._process_batch(sendable, tally)

        result = tally.to_result()
        logger.info(
            f"Sync finished: {result.synced_items} synced, {result.failed_items} failed, "
            f"{result.deferred_items} deferred"
        )
        return result

    @staticmethod
    def _partition(items: Sequence[MutationQueueItem], size: int) -> List[List[MutationQueueItem]]:
        return [list(items[start:start + size]) for start in range(0, len(items), size)]

    def _process_batch(self, batch: List[MutationQueueItem], tally: _RunTally) -> None:
        request = BatchSyncRequest(
            items=[BatchSyncItem.from_queue_item(item) for item in batch],
            client_timestamp=utc_now(),
        )

        try:
            response = self.transport.send_batch(request)
        except TransportError as e:
            logger.warning(f"Batch of {len(batch)} items failed in transport: {e}")
            for item in batch:
                self._fail(item, str(e), tally)
            return
        except Exception as e:
            logger.error(f"Unexpected error sending batch of {len(batch)} items: {e}")
            for item in batch:
                self._fail(item, f"Unexpected transport error: {e}", tally)
            return

        for item, processed in self._match_results(batch, response.processed_items):
            if processed is None:
                self._fail(item, "No result returned for item", tally)
                continue
            try:
                self._apply_result(item, processed, tally)
            except TransportError as e:
                self._fail(item, str(e), tally)
            except Exception as e:
                logger.error(f"Unexpected error applying sync result for item {item.id}: {e}")
                self._fail(item, f"Failed to apply sync result: {e}", tally)

    @staticmethod
    def _match_results(
        batch: List[MutationQueueItem], processed_items: List[ProcessedItem]
    ) -> List[Tuple[MutationQueueItem, Optional[ProcessedItem]]]:
        """
        Pair each batch item with its returned result.

        client_id may be a queue item id or a task id; task ids are matched
        to that task's items in queue order.
        """
        by_item_id = {item.id: item for item in batch}
        assigned: Dict[str, ProcessedItem] = {}

        for processed in processed_items:
            target = by_item_id.get(processed.client_id)
            if target is None:
                target = next(
                    (item for item in batch
                     if item.task_id == processed.client_id and item.id not in assigned),
                    None,
                )
            if target is None or target.id in assigned:
                logger.warning(f"Ignoring result for unknown client id {processed.client_id}")
                continue
            assigned[target.id] = processed

        return [(item, assigned.get(item.id)) for item in batch]

    def _apply_result(self, item: MutationQueueItem, processed: ProcessedItem, tally: _RunTally) -> None:
        if processed.status == ItemStatus.SUCCESS:
            server_id = processed.server_id or (processed.resolved_data or {}).get("server_id")
            self.db.mark_synced(
                item.task_id,
                server_id,
                consumed_item_id=item.id,
                retry_limit=self.config.retry_limit,
            )
            tally.synced += 1

        elif processed.status == ItemStatus.CONFLICT:
            if not processed.server_id:
                self._fail(item, "Conflict reported without server_id", tally)
                return
            self._resolve_conflict(item, processed.server_id)
            # A resolved conflict counts as a synced item
            tally.synced += 1

        else:
            self._fail(item, processed.error or "Rejected by remote", tally)

    def _resolve_conflict(self, item: MutationQueueItem, server_id: str) -> Task:
        local = self.db.get_task_for_sync(item.task_id)
        if local is None:
            local = Task.model_validate(item.data)
        remote = self.transport.fetch_task(server_id)

        local_operation = Operation.DELETE if local.is_deleted else item.operation
        winner = self.resolver.resolve(local, remote, local_operation=local_operation)

        self.db.apply_resolution(
            item.task_id,
            winner,
            server_id,
            consumed_item_id=item.id,
            retry_limit=self.config.retry_limit,
        )
        return winner

    def _fail(self, item: MutationQueueItem, message: str, tally: _RunTally) -> None:
        tally.failed += 1
        tally.blocked_tasks.add(item.task_id)
        tally.errors.append(SyncItemError(
            item_id=item.id,
            task_id=item.task_id,
            operation=item.operation,
            error=message,
        ))
        try:
            self.queue.record_failure(item.id, message, self.config.retry_limit)
        except sqlite3.Error as e:
            logger.error(f"Could not record failure for queue item {item.id}: {e}")

    def check_connectivity(self) -> bool:
        """Advisory reachability probe; never raises and never touches the queue."""
        try:
            return bool(self.transport.check_health())
        except Exception as e:
            logger.debug(f"Connectivity check raised: {e}")
            return False

    def get_status(self) -> SyncStatusSummary:
        """Pending/dead-letter counts, last successful sync and current connectivity."""
        limit = self.config.retry_limit
        return SyncStatusSummary(
            pending_sync_count=self.queue.pending_count(limit),
            dead_letter_count=self.queue.dead_letter_count(limit),
            sync_queue_size=self.queue.size(),
            last_sync_timestamp=self.db.get_last_synced_at(),
            is_online=self.check_connectivity(),
        )


def build_orchestrator(config: SyncConfig, db: TaskDatabase) -> SyncOrchestrator:
    """Wire queue, HTTP transport and orchestrator around a database."""
    transport = HttpBatchTransport(
        config.endpoint,
        timeout=config.timeout,
        health_timeout=config.health_timeout,
    )
    queue = MutationQueue(db, retry_limit=config.retry_limit)
    return SyncOrchestrator(db, queue, transport, config=config)
