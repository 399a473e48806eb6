"""
Test suite for TaskDatabase: schema, CRUD with soft delete, monotonic
updated_at and the sync write-back helpers.
"""

import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

import pytest

from task_sync.database import TaskDatabase
from task_sync.models import Operation, SyncStatus, Task
from task_sync.queue import MutationQueue


class TestTaskDatabaseInitialization:
    """Test database initialization and schema creation."""

    def test_database_initialization(self):
        """Test basic database initialization with WAL mode."""
        with tempfile.NamedTemporaryFile(delete=False, suffix=".db") as tmp_file:
            db_path = tmp_file.name

        try:
            db = TaskDatabase(db_path)
            with db.reading() as cursor:
                cursor.execute("PRAGMA journal_mode")
                assert cursor.fetchone()[0].upper() == "WAL"

                cursor.execute("""
                    SELECT name FROM sqlite_master
                    WHERE type='table' AND name IN ('tasks', 'sync_queue')
                    ORDER BY name
                """)
                assert [row[0] for row in cursor.fetchall()] == ["sync_queue", "tasks"]
            db.close()
        finally:
            Path(db_path).unlink(missing_ok=True)

    def test_directory_creation(self):
        """Test database directory is created if it doesn't exist."""
        with tempfile.TemporaryDirectory() as tmp_dir:
            db_path = Path(tmp_dir) / "subdir" / "tasks.db"
            assert not db_path.parent.exists()

            with TaskDatabase(str(db_path)):
                assert db_path.exists()

    def test_reopen_keeps_data(self, tmp_path):
        db_path = str(tmp_path / "tasks.db")
        with TaskDatabase(db_path) as db:
            task = db.create_task("persisted")

        with TaskDatabase(db_path) as db:
            assert db.get_task(task.id).title == "persisted"
            assert MutationQueue(db).size() == 1


class TestCrud:
    """Task CRUD with queue side effects."""

    def test_create_defaults(self, db):
        task = db.create_task("Write report")

        assert task.title == "Write report"
        assert task.description == ""
        assert task.completed is False
        assert task.is_deleted is False
        assert task.sync_status == SyncStatus.PENDING
        assert task.server_id is None
        assert task.last_synced_at is None
        assert task.created_at == task.updated_at
        assert db.get_task(task.id) == task

    def test_create_with_client_id(self, db):
        task = db.create_task("Client id", task_id="client-123")
        assert db.get_task("client-123").id == task.id

    def test_update_changes_fields_and_enqueues(self, db, queue):
        task = db.create_task("Old title")

        updated = db.update_task(task.id, title="New title", completed=True)

        assert updated.title == "New title"
        assert updated.completed is True
        assert updated.updated_at >= task.updated_at
        assert updated.sync_status == SyncStatus.PENDING
        assert db.get_task(task.id) == updated
        last = queue.items_for_task(task.id)[-1]
        assert last.operation == Operation.UPDATE
        assert last.data["title"] == "New title"

    def test_update_missing_returns_none(self, db, queue):
        assert db.update_task("nope", title="x") is None
        assert queue.size() == 0

    def test_update_rejects_unknown_fields(self, db):
        task = db.create_task("guarded")
        with pytest.raises(ValueError):
            db.update_task(task.id, sync_status="synced")

    def test_updated_at_never_moves_backwards(self, db):
        task = db.create_task("clock skew")
        earlier = task.updated_at - timedelta(hours=1)

        with patch("task_sync.database.utc_now", return_value=earlier):
            updated = db.update_task(task.id, title="still later")

        assert updated.updated_at == task.updated_at

    def test_soft_delete(self, db, queue):
        task = db.create_task("to delete")

        assert db.delete_task(task.id) is True

        assert db.get_task(task.id) is None
        assert db.get_all_tasks() == []
        stored = db.get_task_for_sync(task.id)
        assert stored.is_deleted is True
        assert stored.sync_status == SyncStatus.PENDING
        assert queue.items_for_task(task.id)[-1].operation == Operation.DELETE

    def test_delete_twice_and_update_after_delete(self, db):
        task = db.create_task("gone")
        db.delete_task(task.id)

        assert db.delete_task(task.id) is False
        assert db.update_task(task.id, title="zombie") is None
        assert db.delete_task("missing") is False

    def test_list_excludes_deleted(self, db):
        keep = db.create_task("keep")
        drop = db.create_task("drop")
        db.delete_task(drop.id)

        assert [t.id for t in db.get_all_tasks()] == [keep.id]

    def test_tasks_needing_sync(self, db, queue):
        pending = db.create_task("pending")
        synced = db.create_task("synced")
        item = queue.items_for_task(synced.id)[0]
        db.mark_synced(synced.id, "srv-1", consumed_item_id=item.id)

        ids = [t.id for t in db.get_tasks_needing_sync()]
        assert ids == [pending.id]


class TestSyncWriteBack:
    """mark_synced / apply_resolution / mark_error."""

    def test_mark_synced_when_last_item_consumed(self, db, queue):
        task = db.create_task("ship it")
        item = queue.due_items()[0]

        assert db.mark_synced(task.id, "srv-9", consumed_item_id=item.id, retry_limit=3)

        stored = db.get_task(task.id)
        assert stored.sync_status == SyncStatus.SYNCED
        assert stored.server_id == "srv-9"
        assert stored.last_synced_at is not None
        assert db.get_last_synced_at() == stored.last_synced_at
        assert queue.size() == 0

    def test_mark_synced_keeps_pending_with_later_items(self, db, queue):
        task = db.create_task("v1")
        db.update_task(task.id, title="v2")
        first = queue.due_items()[0]

        db.mark_synced(task.id, "srv-1", consumed_item_id=first.id, retry_limit=3)

        stored = db.get_task(task.id)
        assert stored.sync_status == SyncStatus.PENDING
        assert stored.server_id == "srv-1"

    def test_mark_synced_reports_error_with_dead_letter(self, db, queue):
        task = db.create_task("v1")
        db.update_task(task.id, title="v2")
        first, second = queue.due_items()
        for _ in range(3):
            queue.record_failure(first.id, "down")

        db.mark_synced(task.id, None, consumed_item_id=second.id, retry_limit=3)

        assert db.get_task(task.id).sync_status == SyncStatus.ERROR

    def test_mark_synced_keeps_existing_server_id(self, db, queue):
        task = db.create_task("v1")
        db.mark_synced(task.id, "srv-1")
        db.mark_synced(task.id, None)
        assert db.get_task(task.id).server_id == "srv-1"

    def test_apply_resolution_replaces_whole_record(self, db, queue):
        task = db.create_task("local title", "local description")
        item = queue.due_items()[0]
        remote = Task(
            id="srv-77",
            title="remote title",
            description="remote description",
            completed=True,
            created_at=datetime(2020, 1, 1, tzinfo=timezone.utc),
            updated_at=task.updated_at + timedelta(minutes=5),
            is_deleted=False,
        )

        stored = db.apply_resolution(task.id, remote, "srv-77", consumed_item_id=item.id, retry_limit=3)

        assert stored.id == task.id
        assert stored.created_at == task.created_at
        assert stored.title == "remote title"
        assert stored.description == "remote description"
        assert stored.completed is True
        assert stored.updated_at == remote.updated_at
        assert stored.server_id == "srv-77"
        assert stored.sync_status == SyncStatus.SYNCED
        assert db.get_task(task.id) == stored
        assert queue.size() == 0

    def test_apply_resolution_keeps_newer_local_edit(self, db, queue):
        task = db.create_task("original")
        item = queue.due_items()[0]
        with patch("task_sync.database.utc_now", return_value=task.updated_at + timedelta(seconds=1)):
            edited = db.update_task(task.id, title="edited")
        stale_winner = task.model_copy(update={"title": "stale"})

        stored = db.apply_resolution(task.id, stale_winner, "srv-1", consumed_item_id=item.id, retry_limit=3)

        assert stored.title == "edited"
        assert stored.updated_at == edited.updated_at
        assert stored.server_id == "srv-1"
        assert stored.last_synced_at is not None
        assert stored.sync_status == SyncStatus.PENDING
        assert db.get_task(task.id) == stored
        assert [i.operation for i in queue.due_items()] == [Operation.UPDATE]

    def test_apply_resolution_can_delete(self, db, queue):
        task = db.create_task("will vanish")
        remote = task.model_copy(update={"is_deleted": True})

        db.apply_resolution(task.id, remote, "srv-1")

        assert db.get_task(task.id) is None
        assert db.get_task_for_sync(task.id).is_deleted is True

    def test_apply_resolution_missing_task(self, db):
        now = datetime.now(timezone.utc)
        ghost = Task(id="ghost", title="x", created_at=now, updated_at=now)
        assert db.apply_resolution("ghost", ghost) is None

    def test_mark_error(self, db):
        task = db.create_task("broken")
        assert db.mark_error(task.id) is True
        assert db.get_task(task.id).sync_status == SyncStatus.ERROR
        assert db.mark_error("missing") is False
