"""
FastAPI Backend for the Task Sync Engine

Provides REST endpoints for local task CRUD, manual sync triggering and sync
status, plus the remote-peer endpoints (batch intake, task fetch, health) so
a second instance of this service can act as the sync server.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import SyncConfig
from .database import TaskDatabase
from .models import (
    BatchSyncResponse,
    ItemStatus,
    MutationQueueItem,
    ProcessedItem,
    SyncResult,
    SyncStatusSummary,
    Task,
    TaskCreateRequest,
    TaskUpdateRequest,
    create_error_response,
    utc_now,
)
from .sync_service import SyncInProgressError, SyncOrchestrator, build_orchestrator

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Process-wide instances, created in lifespan and handed out through dependencies
db_instance: Optional[TaskDatabase] = None
orchestrator_instance: Optional[SyncOrchestrator] = None


class RequeueRequest(BaseModel):
    """Request model for requeueing dead-lettered items; omit item_ids for all."""
    item_ids: Optional[List[str]] = None


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""
    status: str
    timestamp: str


def get_database() -> TaskDatabase:
    """
    FastAPI dependency to provide database instance.

    Raises:
        HTTPException: If database is not available
    """
    if db_instance is None:
        raise HTTPException(status_code=503, detail="Database not available")
    return db_instance


def get_orchestrator() -> SyncOrchestrator:
    """FastAPI dependency to provide the sync orchestrator."""
    if orchestrator_instance is None:
        raise HTTPException(status_code=503, detail="Sync engine not available")
    return orchestrator_instance


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    FastAPI lifespan context manager for startup/shutdown operations.

    Reads configuration once, opens the database and builds the orchestrator.
    """
    global db_instance, orchestrator_instance

    try:
        config = SyncConfig.from_env()
        db_instance = TaskDatabase(config.database_path)
        orchestrator_instance = build_orchestrator(config, db_instance)
        logger.info(f"Database initialized: {config.database_path}")
        logger.info(f"Sync endpoint: {config.endpoint} (batch size {config.batch_size}, "
                    f"retry limit {config.retry_limit})")
    except Exception as e:
        logger.error(f"Failed to initialize sync service: {e}")
        raise

    yield

    if orchestrator_instance:
        orchestrator_instance.transport.close()
        orchestrator_instance = None
    if db_instance:
        db_instance.close()
        db_instance = None
        logger.info("Database connection closed")


app = FastAPI(
    title="Task Sync API",
    description="Offline-first task store with batched sync to a remote peer",
    version="1.0.0",
    lifespan=lifespan,
)


# Local task CRUD


@app.get("/api/tasks", response_model=List[Task])
def list_tasks(db: TaskDatabase = Depends(get_database)):
    """All non-deleted tasks."""
    return db.get_all_tasks()


@app.get("/api/tasks/{task_id}", response_model=Task)
def get_task(task_id: str, db: TaskDatabase = Depends(get_database)):
    """
    Single task by id.

    Also serves the remote-peer conflict fetch, where the id is a server_id.
    """
    task = db.get_task_for_sync(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail=f"Task {task_id} not found")
    return task


@app.post("/api/tasks", response_model=Task, status_code=201)
def create_task(request: TaskCreateRequest, db: TaskDatabase = Depends(get_database)):
    task = db.create_task(request.title, request.description or "", request.completed)
    logger.info(f"Task {task.id} created and queued for sync")
    return task


@app.put("/api/tasks/{task_id}", response_model=Task)
def update_task(task_id: str, request: TaskUpdateRequest, db: TaskDatabase = Depends(get_database)):
    task = db.update_task(task_id, **request.changes())
    if task is None:
        raise HTTPException(status_code=404, detail=f"Task {task_id} not found")
    return task


@app.delete("/api/tasks/{task_id}", status_code=204)
def delete_task(task_id: str, db: TaskDatabase = Depends(get_database)):
    if not db.delete_task(task_id):
        raise HTTPException(status_code=404, detail=f"Task {task_id} not found")
    return Response(status_code=204)


# Sync control


@app.post("/api/sync", response_model=SyncResult)
def trigger_sync(orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    """
    Manually trigger a sync run.

    The connectivity probe gates the trigger: 503 when the remote is
    unreachable, 409 when another run is in flight.
    """
    if not orchestrator.check_connectivity():
        raise HTTPException(status_code=503, detail="Server unavailable")
    try:
        return orchestrator.sync()
    except SyncInProgressError:
        raise HTTPException(status_code=409, detail="Sync already in progress")


@app.get("/api/status", response_model=SyncStatusSummary)
def sync_status(orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    """Pending count, dead letters, last sync timestamp and connectivity."""
    return orchestrator.get_status()


@app.get("/api/sync/dead-letters", response_model=List[MutationQueueItem])
def list_dead_letters(orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    return orchestrator.queue.dead_letters()


@app.post("/api/sync/dead-letters/requeue")
def requeue_dead_letters(
    request: Optional[RequeueRequest] = None,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Reset dead-lettered items so the next sync run picks them up again."""
    item_ids = request.item_ids if request else None
    requeued = orchestrator.queue.requeue_dead_letters(item_ids)
    return {"requeued": requeued}


# Remote-peer endpoints


def process_batch_items(items: List[Any]) -> BatchSyncResponse:
    """
    Acknowledge a client batch item by item.

    create assigns server_id = task id; update and delete are acknowledged
    with a fresh updated_at; unknown operations get a per-item error.
    """
    results: List[ProcessedItem] = []
    now = utc_now().isoformat()

    for item in items:
        try:
            if not isinstance(item, dict):
                raise ValueError("Batch item must be an object")
            operation = item.get("operation")
            task_id = item.get("task_id")
            if not task_id:
                raise ValueError("Batch item is missing task_id")
            data = item.get("data") or {}

            if operation == "create":
                results.append(ProcessedItem(
                    client_id=task_id,
                    status=ItemStatus.SUCCESS,
                    server_id=task_id,
                    resolved_data={**data, "server_id": task_id, "updated_at": now},
                ))
            elif operation == "update":
                results.append(ProcessedItem(
                    client_id=task_id,
                    status=ItemStatus.SUCCESS,
                    resolved_data={**data, "updated_at": now},
                ))
            elif operation == "delete":
                results.append(ProcessedItem(
                    client_id=task_id,
                    status=ItemStatus.SUCCESS,
                    resolved_data={"id": task_id, "is_deleted": True},
                ))
            else:
                results.append(ProcessedItem(
                    client_id=task_id,
                    status=ItemStatus.ERROR,
                    error=f"Unknown operation: {operation}",
                ))
        except Exception as e:
            client_id = item.get("task_id") if isinstance(item, dict) else None
            results.append(ProcessedItem(
                client_id=str(client_id or "unknown"),
                status=ItemStatus.ERROR,
                error=str(e) or "Failed to process item",
            ))

    return BatchSyncResponse(processed_items=results, server_timestamp=utc_now())


@app.post("/api/batch", response_model=BatchSyncResponse)
def batch_sync(payload: Dict[str, Any] = Body(...)):
    """Batch intake used when this service acts as the remote peer."""
    items = payload.get("items")
    if not isinstance(items, list):
        raise HTTPException(status_code=400, detail="Invalid batch format")
    return process_batch_items(items)


@app.get("/api/health", response_model=HealthResponse)
def health_check():
    return HealthResponse(status="ok", timestamp=utc_now().isoformat())


# Error handlers for uniform error bodies


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(str(exc.detail), request.url.path),
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Global exception handler for unhandled errors."""
    logger.error(f"Unhandled exception on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content=create_error_response("Internal server error", request.url.path),
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("task_sync.api:app", host="0.0.0.0", port=3000, log_level="info")
