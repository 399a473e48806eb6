"""
Durable Mutation Queue

Ordered log of pending task mutations stored in the sync_queue table of the
TaskDatabase. Items are drained oldest-first, removed on confirmed remote
success, and retained with an incremented retry_count on failure. Items
whose retry budget is exhausted are dead-lettered: kept for inspection and
never retried automatically.
"""

import json
import logging
import uuid
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional

from .models import MutationQueueItem, Operation, utc_now

if TYPE_CHECKING:
    from .database import TaskDatabase

logger = logging.getLogger(__name__)

QUEUE_COLUMNS = ("id", "task_id", "operation", "data", "retry_count", "last_error", "created_at")

# Stored error messages are truncated to keep rows small
MAX_ERROR_LENGTH = 500


def _row_to_item(row) -> MutationQueueItem:
    record: Dict[str, Any] = dict(zip(QUEUE_COLUMNS, row))
    record["data"] = json.loads(record["data"]) if record["data"] else {}
    return MutationQueueItem(**record)


def insert_queue_item(cursor, task_id: str, operation: Operation,
                      snapshot: Dict[str, Any]) -> MutationQueueItem:
    """
    Append a queue item using the caller's cursor.

    Runs inside whatever transaction the cursor belongs to, which is how a
    task write and its enqueue commit or roll back together.
    """
    item = MutationQueueItem(
        id=str(uuid.uuid4()),
        task_id=task_id,
        operation=Operation(operation),
        data=snapshot,
        retry_count=0,
        created_at=utc_now(),
    )
    cursor.execute(
        """
        INSERT INTO sync_queue (id, task_id, operation, data, retry_count, created_at)
        VALUES (?, ?, ?, ?, 0, ?)
        """,
        (
            item.id,
            item.task_id,
            item.operation.value,
            json.dumps(snapshot),
            item.created_at.isoformat(timespec="microseconds"),
        ),
    )
    return item


class MutationQueue:
    """
    Mutation queue operations over the TaskDatabase connection.

    The queue is owned by the sync engine: CRUD writers only append through
    insert_queue_item inside their own transaction; everything else here is
    called by the sync orchestrator or operator tooling.
    """

    def __init__(self, db: "TaskDatabase", retry_limit: int = 3):
        """
        Args:
            db: TaskDatabase holding the sync_queue table
            retry_limit: Attempts after which an item is dead-lettered
        """
        if retry_limit <= 0:
            raise ValueError("retry_limit must be positive")
        self.db = db
        self.retry_limit = retry_limit

    def _limit(self, retry_limit: Optional[int]) -> int:
        return self.retry_limit if retry_limit is None else retry_limit

    def enqueue(self, task_id: str, operation: Operation, snapshot: Dict[str, Any],
                cursor=None) -> MutationQueueItem:
        """
        Append an item with retry_count=0 and created_at=now.

        Args:
            task_id: Task the mutation belongs to
            operation: create, update or delete
            snapshot: Task data at enqueue time (opaque to the queue)
            cursor: Join an open transaction instead of starting one

        Raises:
            sqlite3.Error: Persistence failures always propagate
        """
        if cursor is not None:
            return insert_queue_item(cursor, task_id, operation, snapshot)
        with self.db.transaction() as own_cursor:
            return insert_queue_item(own_cursor, task_id, operation, snapshot)

    def due_items(self, retry_limit: Optional[int] = None) -> List[MutationQueueItem]:
        """Items with retry_count below the limit, oldest first (insertion order on ties)."""
        with self.db.reading() as cursor:
            cursor.execute(
                f"""
                SELECT {', '.join(QUEUE_COLUMNS)} FROM sync_queue
                WHERE retry_count < ?
                ORDER BY created_at ASC, seq ASC
                """,
                (self._limit(retry_limit),),
            )
            return [_row_to_item(row) for row in cursor.fetchall()]

    def record_success(self, item_id: str) -> bool:
        """Remove a confirmed item. Returns False if it was already gone."""
        with self.db.transaction() as cursor:
            cursor.execute("DELETE FROM sync_queue WHERE id = ?", (item_id,))
            return cursor.rowcount > 0

    def record_failure(self, item_id: str, error: str,
                       retry_limit: Optional[int] = None) -> Optional[MutationQueueItem]:
        """
        Increment retry_count and store the error for a failed item.

        When retry_count reaches the limit the item is dead-lettered: it stays
        in the table and the owning task's sync_status becomes 'error'.

        Returns:
            The updated item, or None if it no longer exists
        """
        limit = self._limit(retry_limit)
        message = (error or "Unknown error")[:MAX_ERROR_LENGTH]

        with self.db.transaction() as cursor:
            cursor.execute(
                """
                UPDATE sync_queue
                SET retry_count = retry_count + 1, last_error = ?
                WHERE id = ?
                """,
                (message, item_id),
            )
            if cursor.rowcount == 0:
                return None

            cursor.execute(
                f"SELECT {', '.join(QUEUE_COLUMNS)} FROM sync_queue WHERE id = ?",
                (item_id,),
            )
            item = _row_to_item(cursor.fetchone())

            if item.is_dead_lettered(limit):
                cursor.execute(
                    "UPDATE tasks SET sync_status = 'error' WHERE id = ?",
                    (item.task_id,),
                )
                logger.warning(
                    f"Sync permanently failed for task {item.task_id} "
                    f"after {item.retry_count} attempts: {message}"
                )

        return item

    def get_item(self, item_id: str) -> Optional[MutationQueueItem]:
        with self.db.reading() as cursor:
            cursor.execute(
                f"SELECT {', '.join(QUEUE_COLUMNS)} FROM sync_queue WHERE id = ?",
                (item_id,),
            )
            row = cursor.fetchone()
            return _row_to_item(row) if row else None

    def items_for_task(self, task_id: str) -> List[MutationQueueItem]:
        """All queue items of one task in queue order, dead letters included."""
        with self.db.reading() as cursor:
            cursor.execute(
                f"""
                SELECT {', '.join(QUEUE_COLUMNS)} FROM sync_queue
                WHERE task_id = ?
                ORDER BY created_at ASC, seq ASC
                """,
                (task_id,),
            )
            return [_row_to_item(row) for row in cursor.fetchall()]

    def dead_letters(self, retry_limit: Optional[int] = None) -> List[MutationQueueItem]:
        """Items retained after exhausting their retry budget."""
        with self.db.reading() as cursor:
            cursor.execute(
                f"""
                SELECT {', '.join(QUEUE_COLUMNS)} FROM sync_queue
                WHERE retry_count >= ?
                ORDER BY created_at ASC, seq ASC
                """,
                (self._limit(retry_limit),),
            )
            return [_row_to_item(row) for row in cursor.fetchall()]

    def pending_count(self, retry_limit: Optional[int] = None) -> int:
        """Number of items still eligible for automatic sync."""
        return self._count("retry_count < ?", (self._limit(retry_limit),))

    def dead_letter_count(self, retry_limit: Optional[int] = None) -> int:
        return self._count("retry_count >= ?", (self._limit(retry_limit),))

    def size(self) -> int:
        """Total rows in the queue, dead letters included."""
        return self._count("1 = 1", ())

    def _count(self, where: str, params: tuple) -> int:
        with self.db.reading() as cursor:
            cursor.execute(f"SELECT COUNT(*) FROM sync_queue WHERE {where}", params)
            return cursor.fetchone()[0]

    def requeue_dead_letters(self, item_ids: Optional[Iterable[str]] = None,
                             retry_limit: Optional[int] = None) -> int:
        """
        Reset retry_count and last_error of dead-lettered items.

        Operator action only; the sync orchestrator never calls it. Owning
        tasks go back to 'pending'.

        Args:
            item_ids: Specific items to requeue, or None for all dead letters

        Returns:
            Number of items requeued
        """
        limit = self._limit(retry_limit)
        wanted = None if item_ids is None else set(item_ids)
        targets = [item for item in self.dead_letters(limit)
                   if wanted is None or item.id in wanted]
        if not targets:
            return 0

        with self.db.transaction() as cursor:
            for item in targets:
                cursor.execute(
                    "UPDATE sync_queue SET retry_count = 0, last_error = NULL WHERE id = ?",
                    (item.id,),
                )
            for task_id in {item.task_id for item in targets}:
                cursor.execute(
                    "UPDATE tasks SET sync_status = 'pending' WHERE id = ?",
                    (task_id,),
                )

        logger.info(f"Requeued {len(targets)} dead-lettered sync items")
        return len(targets)
