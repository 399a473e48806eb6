"""
Tests for the FastAPI app: local task CRUD, sync control, the remote-peer
endpoints, and an end-to-end run of the sync engine against the app itself.
"""

import pytest
from fastapi.testclient import TestClient

from task_sync.api import app, get_database, get_orchestrator, process_batch_items
from task_sync.models import ErrorResponse, ItemStatus, SyncStatus, create_error_response
from task_sync.transport import HttpBatchTransport

from fakes import FakeTransport, unreachable


@pytest.fixture
def client():
    """TestClient without lifespan; dependencies are overridden per test."""
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def wired(db, make_orchestrator, client):
    """Point the app at the test database and a fake-transport orchestrator."""

    def _wire(transport=None, **kwargs):
        orchestrator = make_orchestrator(transport or FakeTransport(), **kwargs)
        app.dependency_overrides[get_database] = lambda: db
        app.dependency_overrides[get_orchestrator] = lambda: orchestrator
        return orchestrator

    return _wire


class TestTaskEndpoints:

    def test_create_and_get(self, client, wired):
        wired()
        response = client.post("/api/tasks", json={"title": "  Buy milk  ", "description": "2 litres"})

        assert response.status_code == 201
        created = response.json()
        assert created["title"] == "Buy milk"
        assert created["sync_status"] == "pending"
        assert created["is_deleted"] is False

        fetched = client.get(f"/api/tasks/{created['id']}")
        assert fetched.status_code == 200
        assert fetched.json()["description"] == "2 litres"

    def test_create_rejects_blank_title(self, client, wired):
        wired()
        response = client.post("/api/tasks", json={"title": "   "})
        assert response.status_code == 422

    def test_list_excludes_deleted(self, client, wired, db):
        wired()
        keep = db.create_task("keep")
        drop = db.create_task("drop")
        db.delete_task(drop.id)

        response = client.get("/api/tasks")

        assert response.status_code == 200
        assert [task["id"] for task in response.json()] == [keep.id]

    def test_update(self, client, wired, db):
        orchestrator = wired()
        task = db.create_task("old")

        response = client.put(f"/api/tasks/{task.id}", json={"completed": True})

        assert response.status_code == 200
        assert response.json()["completed"] is True
        assert response.json()["title"] == "old"
        assert orchestrator.queue.size() == 2

    def test_update_missing_returns_uniform_404(self, client, wired):
        wired()
        response = client.put("/api/tasks/nope", json={"title": "x"})

        assert response.status_code == 404
        body = response.json()
        assert body["error"] == "Task nope not found"
        assert body["path"] == "/api/tasks/nope"
        assert "timestamp" in body

    def test_delete(self, client, wired, db):
        wired()
        task = db.create_task("bye")

        assert client.delete(f"/api/tasks/{task.id}").status_code == 204
        assert client.delete(f"/api/tasks/{task.id}").status_code == 404
        assert db.get_task(task.id) is None

    def test_no_database_returns_503(self, client):
        response = client.get("/api/tasks")
        assert response.status_code == 503
        assert response.json()["error"] == "Database not available"


class TestSyncEndpoints:

    def test_trigger_sync(self, client, wired, db):
        wired()
        task = db.create_task("ship")

        response = client.post("/api/sync")

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["synced_items"] == 1
        assert body["failed_items"] == 0
        assert body["errors"] == []
        assert db.get_task(task.id).sync_status == SyncStatus.SYNCED

    def test_trigger_sync_reports_failures(self, client, wired, db):
        wired(FakeTransport(unreachable))
        task = db.create_task("stuck")

        body = client.post("/api/sync").json()

        assert body["success"] is False
        assert body["failed_items"] == 1
        assert body["errors"][0]["task_id"] == task.id
        assert body["errors"][0]["operation"] == "create"

    def test_trigger_sync_offline(self, client, wired, db):
        transport = FakeTransport(healthy=False)
        wired(transport)
        db.create_task("waiting")

        response = client.post("/api/sync")

        assert response.status_code == 503
        assert response.json()["error"] == "Server unavailable"
        assert transport.requests == []

    def test_trigger_sync_while_running(self, client, wired):
        orchestrator = wired()
        orchestrator._sync_lock.acquire()
        try:
            response = client.post("/api/sync")
        finally:
            orchestrator._sync_lock.release()

        assert response.status_code == 409
        assert response.json()["error"] == "Sync already in progress"

    def test_status(self, client, wired, db):
        wired()
        db.create_task("a")
        db.create_task("b")

        body = client.get("/api/status").json()

        assert body["pending_sync_count"] == 2
        assert body["dead_letter_count"] == 0
        assert body["sync_queue_size"] == 2
        assert body["last_sync_timestamp"] is None
        assert body["is_online"] is True

    def test_dead_letters_and_requeue(self, client, wired, db):
        orchestrator = wired(retry_limit=1)
        task = db.create_task("dead")
        item = orchestrator.queue.due_items()[0]
        orchestrator.queue.record_failure(item.id, "remote said no")

        dead = client.get("/api/sync/dead-letters").json()
        assert [entry["id"] for entry in dead] == [item.id]
        assert dead[0]["last_error"] == "remote said no"

        response = client.post("/api/sync/dead-letters/requeue")
        assert response.json() == {"requeued": 1}
        assert client.get("/api/sync/dead-letters").json() == []
        assert db.get_task(task.id).sync_status == SyncStatus.PENDING

    def test_requeue_selected_items(self, client, wired, db):
        orchestrator = wired(retry_limit=1)
        for title in ("one", "two"):
            db.create_task(title)
        first, second = orchestrator.queue.due_items()
        orchestrator.queue.record_failure(first.id, "x")
        orchestrator.queue.record_failure(second.id, "x")

        response = client.post("/api/sync/dead-letters/requeue", json={"item_ids": [second.id]})

        assert response.json() == {"requeued": 1}
        assert [item.id for item in orchestrator.queue.dead_letters()] == [first.id]


class TestRemotePeerEndpoints:

    def test_batch_acknowledges_items(self, client):
        payload = {"items": [
            {"id": "q1", "task_id": "t1", "operation": "create", "data": {"title": "a"}},
            {"id": "q2", "task_id": "t2", "operation": "update", "data": {"title": "b"}},
            {"id": "q3", "task_id": "t3", "operation": "delete", "data": {}},
        ]}

        response = client.post("/api/batch", json=payload)

        assert response.status_code == 200
        processed = response.json()["processed_items"]
        assert [item["client_id"] for item in processed] == ["t1", "t2", "t3"]
        assert all(item["status"] == "success" for item in processed)
        assert processed[0]["server_id"] == "t1"

    def test_batch_rejects_bad_format(self, client):
        response = client.post("/api/batch", json={"items": "nope"})
        assert response.status_code == 400
        assert response.json()["error"] == "Invalid batch format"

    def test_unknown_operation_is_item_error(self):
        response = process_batch_items([
            {"task_id": "t1", "operation": "archive"},
            "not an item",
        ])

        assert response.processed_items[0].status == ItemStatus.ERROR
        assert response.processed_items[0].error == "Unknown operation: archive"
        assert response.processed_items[1].status == ItemStatus.ERROR
        assert response.processed_items[1].client_id == "unknown"

    def test_health(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"


def test_end_to_end_sync_against_app(db, make_orchestrator, client):
    """The engine syncs over HTTP with the app acting as the remote peer."""
    transport = HttpBatchTransport("http://testserver/api", client=client)
    orchestrator = make_orchestrator(transport, batch_size=2)
    tasks = [db.create_task(f"task {i}") for i in range(3)]
    db.update_task(tasks[0].id, completed=True)

    assert orchestrator.check_connectivity() is True
    result = orchestrator.sync()

    assert result.success is True
    assert result.synced_items == 4
    assert orchestrator.queue.size() == 0
    for task in tasks:
        stored = db.get_task(task.id)
        assert stored.sync_status == SyncStatus.SYNCED
        assert stored.server_id == task.id


def test_error_response_body():
    body = create_error_response("Task x not found", "/api/tasks/x")

    assert ErrorResponse(**body).path == "/api/tasks/x"
    assert body["error"] == "Task x not found"
    assert create_error_response("boom")["path"] is None
