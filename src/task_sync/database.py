"""
Task Store with Atomic Mutation Enqueue

Provides SQLite-based task storage with WAL mode for concurrent access.
Every task mutation (create/update/soft delete) and its mutation queue
entry are written in a single transaction, so the sync orchestrator either
sees a fully written queue item or none of it.
"""

import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .models import Operation, SyncStatus, Task, ensure_utc, utc_now
from .queue import insert_queue_item

logger = logging.getLogger(__name__)

TASK_COLUMNS = (
    "id", "title", "description", "completed", "created_at", "updated_at",
    "is_deleted", "sync_status", "server_id", "last_synced_at",
)

UPDATABLE_FIELDS = ("title", "description", "completed")


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime as a fixed-width UTC ISO string (sortable as text)."""
    if value is None:
        return None
    return ensure_utc(value).isoformat(timespec="microseconds")


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return ensure_utc(datetime.fromisoformat(value))


class TaskDatabase:
    """
    SQLite task store shared by CRUD writers and the sync orchestrator.

    Features:
    - WAL mode for concurrent read/write access
    - Task write + queue append in one transaction
    - Soft delete: deleted tasks leave list reads but stay addressable for sync
    - Thread-safe operations over a single guarded connection
    """

    def __init__(self, db_path: str):
        """
        Initialize TaskDatabase with SQLite WAL mode configuration.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self._connection_lock = threading.RLock()
        self._connection: Optional[sqlite3.Connection] = None

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize_database()

    def _initialize_database(self) -> None:
        """Initialize database with WAL mode and create schema if needed."""
        try:
            # Autocommit mode; transactions are opened explicitly in transaction()
            self._connection = sqlite3.connect(
                str(self.db_path),
                isolation_level=None,
                check_same_thread=False,
            )

            cursor = self._connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA busy_timeout=5000")

            self._create_schema()

        except sqlite3.Error as e:
            raise RuntimeError(f"Failed to initialize database at {self.db_path}: {e}")

    def _create_schema(self) -> None:
        """Create tasks and sync_queue tables with their indexes."""
        cursor = self._connection.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS tasks (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                completed INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                is_deleted INTEGER NOT NULL DEFAULT 0,
                sync_status TEXT NOT NULL DEFAULT 'pending',
                server_id TEXT,
                last_synced_at TEXT,
                CONSTRAINT sync_status_vocabulary CHECK (sync_status IN ('pending', 'synced', 'error'))
            )
        """)

        # No foreign key to tasks: a soft-deleted task keeps its queue rows.
        # seq breaks created_at ties by insertion order.
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS sync_queue (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                task_id TEXT NOT NULL,
                operation TEXT NOT NULL,
                data TEXT NOT NULL,
                retry_count INTEGER NOT NULL DEFAULT 0,
                last_error TEXT,
                created_at TEXT NOT NULL,
                CONSTRAINT operation_vocabulary CHECK (operation IN ('create', 'update', 'delete')),
                CONSTRAINT json_valid_data CHECK (json_valid(data))
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_sync_queue_due
            ON sync_queue (retry_count, created_at, seq)
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_sync_queue_task_id
            ON sync_queue (task_id)
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_tasks_listing
            ON tasks (is_deleted, created_at)
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_tasks_sync_status
            ON tasks (sync_status)
        """)

    @contextmanager
    def reading(self):
        """Yield a cursor for reads under the connection lock."""
        with self._connection_lock:
            yield self._connection.cursor()

    @contextmanager
    def transaction(self):
        """Context manager for an explicit write transaction under the connection lock."""
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("BEGIN IMMEDIATE")
            try:
                yield cursor
                cursor.execute("COMMIT")
            except Exception:
                cursor.execute("ROLLBACK")
                raise

    @staticmethod
    def _row_to_task(row) -> Task:
        record: Dict[str, Any] = dict(zip(TASK_COLUMNS, row))
        record["completed"] = bool(record["completed"])
        record["is_deleted"] = bool(record["is_deleted"])
        record["created_at"] = parse_timestamp(record["created_at"])
        record["updated_at"] = parse_timestamp(record["updated_at"])
        record["last_synced_at"] = parse_timestamp(record["last_synced_at"])
        return Task(**record)

    def _fetch_task(self, cursor, task_id: str) -> Optional[Task]:
        cursor.execute(
            f"SELECT {', '.join(TASK_COLUMNS)} FROM tasks WHERE id = ?",
            (task_id,),
        )
        row = cursor.fetchone()
        return self._row_to_task(row) if row else None

    # CRUD operations: each one commits the task row and its queue item together

    def create_task(
        self,
        title: str,
        description: Optional[str] = "",
        completed: bool = False,
        *,
        task_id: Optional[str] = None,
    ) -> Task:
        """
        Create a task and enqueue a 'create' mutation atomically.

        Args:
            title: Task title
            description: Optional description
            completed: Initial completion flag
            task_id: Client-assigned id; a UUID is generated when omitted

        Returns:
            The stored Task with sync_status=pending

        Raises:
            sqlite3.Error: If either write fails (nothing is persisted)
        """
        now = utc_now()
        task = Task(
            id=task_id or str(uuid.uuid4()),
            title=title,
            description=description or "",
            completed=completed,
            created_at=now,
            updated_at=now,
            is_deleted=False,
            sync_status=SyncStatus.PENDING,
        )

        with self.transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO tasks (id, title, description, completed, created_at, updated_at,
                                   is_deleted, sync_status)
                VALUES (?, ?, ?, ?, ?, ?, 0, ?)
                """,
                (
                    task.id, task.title, task.description, int(task.completed),
                    format_timestamp(task.created_at), format_timestamp(task.updated_at),
                    task.sync_status.value,
                ),
            )
            insert_queue_item(cursor, task.id, Operation.CREATE, task.snapshot())

        logger.debug(f"Created task {task.id} and enqueued create")
        return task

    def update_task(self, task_id: str, **changes: Any) -> Optional[Task]:
        """
        Apply field changes to a live task and enqueue an 'update' mutation.

        Args:
            task_id: Task to update
            **changes: Any of title, description, completed

        Returns:
            Updated Task, or None if the task is missing or soft-deleted

        Raises:
            ValueError: For fields that cannot be updated
            sqlite3.Error: If either write fails (nothing is persisted)
        """
        unknown = set(changes) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")

        with self.transaction() as cursor:
            current = self._fetch_task(cursor, task_id)
            if current is None or current.is_deleted:
                return None

            updated = current.model_copy(update={
                **{key: value for key, value in changes.items() if value is not None},
                "updated_at": self._next_updated_at(current),
                "sync_status": SyncStatus.PENDING,
            })
            cursor.execute(
                """
                UPDATE tasks
                SET title = ?, description = ?, completed = ?, updated_at = ?, sync_status = ?
                WHERE id = ?
                """,
                (
                    updated.title, updated.description or "", int(updated.completed),
                    format_timestamp(updated.updated_at), updated.sync_status.value, task_id,
                ),
            )
            insert_queue_item(cursor, task_id, Operation.UPDATE, updated.snapshot())

        return updated

    def delete_task(self, task_id: str) -> bool:
        """
        Soft delete a task and enqueue a 'delete' mutation.

        Returns:
            True if the task was live and is now marked deleted, False otherwise
        """
        with self.transaction() as cursor:
            current = self._fetch_task(cursor, task_id)
            if current is None or current.is_deleted:
                return False

            deleted = current.model_copy(update={
                "is_deleted": True,
                "updated_at": self._next_updated_at(current),
                "sync_status": SyncStatus.PENDING,
            })
            cursor.execute(
                "UPDATE tasks SET is_deleted = 1, updated_at = ?, sync_status = ? WHERE id = ?",
                (format_timestamp(deleted.updated_at), deleted.sync_status.value, task_id),
            )
            insert_queue_item(cursor, task_id, Operation.DELETE, deleted.snapshot())

        return True

    @staticmethod
    def _next_updated_at(current: Task) -> datetime:
        # updated_at never moves backwards for a given task
        return max(utc_now(), current.updated_at)

    # Reads

    def get_task(self, task_id: str) -> Optional[Task]:
        """Return a live task, or None if missing or soft-deleted."""
        task = self.get_task_for_sync(task_id)
        if task is None or task.is_deleted:
            return None
        return task

    def get_task_for_sync(self, task_id: str) -> Optional[Task]:
        """Return a task by id including soft-deleted ones."""
        with self.reading() as cursor:
            return self._fetch_task(cursor, task_id)

    def get_all_tasks(self) -> List[Task]:
        """Return all non-deleted tasks, oldest first."""
        with self.reading() as cursor:
            cursor.execute(
                f"""
                SELECT {', '.join(TASK_COLUMNS)} FROM tasks
                WHERE is_deleted = 0
                ORDER BY created_at ASC, rowid ASC
                """
            )
            return [self._row_to_task(row) for row in cursor.fetchall()]

    def get_tasks_needing_sync(self) -> List[Task]:
        """Return tasks whose sync_status is pending or error, deleted ones included."""
        with self.reading() as cursor:
            cursor.execute(
                f"""
                SELECT {', '.join(TASK_COLUMNS)} FROM tasks
                WHERE sync_status IN ('pending', 'error')
                ORDER BY updated_at ASC
                """
            )
            return [self._row_to_task(row) for row in cursor.fetchall()]

    def get_last_synced_at(self) -> Optional[datetime]:
        """Most recent last_synced_at across all tasks."""
        with self.reading() as cursor:
            cursor.execute("SELECT MAX(last_synced_at) FROM tasks")
            row = cursor.fetchone()
            return parse_timestamp(row[0]) if row else None

    # Sync write-back, used only by the sync orchestrator

    def mark_synced(
        self,
        task_id: str,
        server_id: Optional[str] = None,
        *,
        consumed_item_id: Optional[str] = None,
        retry_limit: Optional[int] = None,
    ) -> bool:
        """
        Record a confirmed remote write for a task.

        The confirmed queue item is removed in the same transaction.
        sync_status becomes 'synced' only when no other queue rows remain for
        the task; it becomes 'error' if one of them is dead-lettered and stays
        'pending' otherwise.

        Args:
            task_id: Task that was synced
            server_id: Identifier assigned by the remote, kept if None
            consumed_item_id: Queue item being confirmed
            retry_limit: Retry limit used to detect dead-lettered rows

        Returns:
            True if the task row exists and was updated
        """
        synced_at = format_timestamp(utc_now())
        with self.transaction() as cursor:
            self._consume_item(cursor, consumed_item_id)
            status = self._settled_status(cursor, task_id, retry_limit)
            cursor.execute(
                """
                UPDATE tasks
                SET sync_status = ?, server_id = COALESCE(?, server_id), last_synced_at = ?
                WHERE id = ?
                """,
                (status.value, server_id, synced_at, task_id),
            )
            return cursor.rowcount > 0

    def apply_resolution(
        self,
        task_id: str,
        winner: Task,
        server_id: Optional[str] = None,
        *,
        consumed_item_id: Optional[str] = None,
        retry_limit: Optional[int] = None,
    ) -> Optional[Task]:
        """
        Overwrite the local task with the winning version of a conflict.

        The whole record is replaced (no field-level merge); created_at and
        the local id are kept. The row is re-read inside the transaction: if
        it is already newer than the winner (a local edit committed while the
        conflict was being resolved) its data is kept and only the sync
        bookkeeping is written. The consumed queue item is removed and status
        follows the same rule as mark_synced.

        Returns:
            The stored task, or None if the local row does not exist
        """
        synced_at = utc_now()
        with self.transaction() as cursor:
            self._consume_item(cursor, consumed_item_id)
            current = self._fetch_task(cursor, task_id)
            if current is None:
                return None

            status = self._settled_status(cursor, task_id, retry_limit)
            bookkeeping = {
                "sync_status": status,
                "server_id": server_id or winner.server_id or current.server_id,
                "last_synced_at": synced_at,
            }
            if current.updated_at > winner.updated_at:
                logger.info(f"Task {task_id} changed locally during conflict resolution; keeping local data")
                stored = current.model_copy(update=bookkeeping)
            else:
                stored = current.model_copy(update={
                    "title": winner.title,
                    "description": winner.description,
                    "completed": winner.completed,
                    "is_deleted": winner.is_deleted,
                    "updated_at": winner.updated_at,
                    **bookkeeping,
                })
            cursor.execute(
                """
                UPDATE tasks
                SET title = ?, description = ?, completed = ?, is_deleted = ?, updated_at = ?,
                    sync_status = ?, server_id = ?, last_synced_at = ?
                WHERE id = ?
                """,
                (
                    stored.title, stored.description, int(stored.completed), int(stored.is_deleted),
                    format_timestamp(stored.updated_at), stored.sync_status.value, stored.server_id,
                    format_timestamp(stored.last_synced_at), task_id,
                ),
            )
            return stored

    def mark_error(self, task_id: str) -> bool:
        """Set a task's sync_status to 'error'."""
        with self.transaction() as cursor:
            cursor.execute(
                "UPDATE tasks SET sync_status = 'error' WHERE id = ?",
                (task_id,),
            )
            return cursor.rowcount > 0

    @staticmethod
    def _consume_item(cursor, item_id: Optional[str]) -> None:
        if item_id is not None:
            cursor.execute("DELETE FROM sync_queue WHERE id = ?", (item_id,))

    @staticmethod
    def _settled_status(cursor, task_id: str, retry_limit: Optional[int]) -> SyncStatus:
        cursor.execute("SELECT retry_count FROM sync_queue WHERE task_id = ?", (task_id,))
        remaining = [row[0] for row in cursor.fetchall()]
        if not remaining:
            return SyncStatus.SYNCED
        if retry_limit is not None and any(count >= retry_limit for count in remaining):
            return SyncStatus.ERROR
        return SyncStatus.PENDING

    def close(self):
        """Close database connection."""
        if self._connection:
            self._connection.close()
            self._connection = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
