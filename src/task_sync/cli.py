"""
Click CLI for the Task Sync Engine

Local task management, manual sync, queue inspection and serving the HTTP
API. Configuration comes from the environment (see SyncConfig.from_env) and
can be overridden per invocation with the group options.
"""

import json
import logging
import os
import sys
from contextlib import contextmanager

import click

from .config import SyncConfig
from .database import TaskDatabase
from .importer import import_tasks_from_file
from .sync_service import SyncInProgressError, build_orchestrator

logger = logging.getLogger(__name__)


@contextmanager
def open_engine(config: SyncConfig):
    """Yield (db, orchestrator) for one command and close both afterwards."""
    db = TaskDatabase(config.database_path)
    orchestrator = build_orchestrator(config, db)
    try:
        yield db, orchestrator
    finally:
        orchestrator.transport.close()
        db.close()


@click.group()
@click.option("--db", "database_path", default=None, help="SQLite database path (DATABASE_PATH)")
@click.option("--endpoint", default=None, help="Remote API base URL (API_BASE_URL)")
@click.option("--batch-size", type=int, default=None, help="Items per batch (SYNC_BATCH_SIZE)")
@click.option("--retry-limit", type=int, default=None, help="Attempts before dead-lettering (SYNC_RETRY_ATTEMPTS)")
@click.option("--timeout", type=float, default=None, help="Per-call timeout in seconds (SYNC_TIMEOUT_SECONDS)")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx, database_path, endpoint, batch_size, retry_limit, timeout, verbose):
    """Offline task store with batched sync to a remote peer."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        config = SyncConfig.from_env().with_overrides(
            database_path=database_path,
            endpoint=endpoint,
            batch_size=batch_size,
            retry_limit=retry_limit,
            timeout=timeout,
        )
    except ValueError as e:
        raise click.UsageError(str(e))
    ctx.obj = config


@main.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=3000, show_default=True, type=int)
@click.pass_obj
def serve(config: SyncConfig, host, port):
    """Run the HTTP API with uvicorn."""
    import uvicorn

    # The API lifespan reads its configuration from the environment
    os.environ["DATABASE_PATH"] = config.database_path
    os.environ["API_BASE_URL"] = config.endpoint
    os.environ["SYNC_BATCH_SIZE"] = str(config.batch_size)
    os.environ["SYNC_RETRY_ATTEMPTS"] = str(config.retry_limit)
    os.environ["SYNC_TIMEOUT_SECONDS"] = str(config.timeout)

    click.echo(f"Serving Task Sync API on http://{host}:{port}")
    uvicorn.run("task_sync.api:app", host=host, port=port, log_level="info")


@main.command()
@click.argument("title")
@click.option("--description", "-d", default="", help="Task description")
@click.pass_obj
def add(config: SyncConfig, title, description):
    """Create a task (queued for sync)."""
    if not title.strip():
        raise click.BadParameter("Title cannot be empty", param_hint="TITLE")
    with open_engine(config) as (db, _):
        task = db.create_task(title.strip(), description)
    click.echo(f"Created task {task.id}")


@main.command(name="list")
@click.pass_obj
def list_tasks(config: SyncConfig):
    """List non-deleted tasks."""
    with open_engine(config) as (db, _):
        tasks = db.get_all_tasks()
    if not tasks:
        click.echo("No tasks")
        return
    for task in tasks:
        mark = "x" if task.completed else " "
        click.echo(f"[{mark}] {task.id}  {task.title}  ({task.sync_status.value})")


@main.command()
@click.option("--force", is_flag=True, help="Skip the connectivity check")
@click.option("--json", "as_json", is_flag=True, help="Print the sync result as JSON")
@click.pass_obj
def sync(config: SyncConfig, force, as_json):
    """Ship queued mutations to the remote peer."""
    with open_engine(config) as (_, orchestrator):
        if not force and not orchestrator.check_connectivity():
            click.echo(f"Remote {config.endpoint} is unreachable; nothing was sent", err=True)
            sys.exit(1)
        try:
            result = orchestrator.sync()
        except SyncInProgressError as e:
            click.echo(str(e), err=True)
            sys.exit(1)

    if as_json:
        click.echo(json.dumps(result.model_dump(mode="json"), indent=2))
    else:
        click.echo(
            f"Synced {result.synced_items}, failed {result.failed_items}, "
            f"deferred {result.deferred_items}"
        )
        for error in result.errors:
            click.echo(f"  {error.task_id} ({error.operation.value if error.operation else '?'}): {error.error}")

    if not result.success:
        sys.exit(1)


@main.command()
@click.pass_obj
def status(config: SyncConfig):
    """Show queue size, dead letters, last sync and connectivity."""
    with open_engine(config) as (_, orchestrator):
        summary = orchestrator.get_status()
    last = summary.last_sync_timestamp.isoformat() if summary.last_sync_timestamp else "never"
    click.echo(f"Pending items:    {summary.pending_sync_count}")
    click.echo(f"Dead letters:     {summary.dead_letter_count}")
    click.echo(f"Queue size:       {summary.sync_queue_size}")
    click.echo(f"Last sync:        {last}")
    click.echo(f"Remote reachable: {'yes' if summary.is_online else 'no'}")


@main.command(name="dead-letters")
@click.pass_obj
def dead_letters(config: SyncConfig):
    """List queue items that exhausted their retries."""
    with open_engine(config) as (_, orchestrator):
        items = orchestrator.queue.dead_letters()
    if not items:
        click.echo("No dead-lettered items")
        return
    for item in items:
        click.echo(f"{item.id}  task={item.task_id}  op={item.operation.value}  "
                   f"retries={item.retry_count}  error={item.last_error}")


@main.command()
@click.argument("item_ids", nargs=-1)
@click.pass_obj
def requeue(config: SyncConfig, item_ids):
    """Reset dead-lettered items (all of them when no ids are given)."""
    with open_engine(config) as (_, orchestrator):
        count = orchestrator.queue.requeue_dead_letters(list(item_ids) or None)
    click.echo(f"Requeued {count} items")


@main.command(name="import")
@click.argument("yaml_file", type=click.Path(exists=True, dir_okay=False))
@click.pass_obj
def import_command(config: SyncConfig, yaml_file):
    """Create tasks from a YAML file."""
    with open_engine(config) as (db, _):
        try:
            stats = import_tasks_from_file(db, yaml_file)
        except ValueError as e:
            raise click.ClickException(str(e))
    click.echo(f"Imported {stats['tasks_created']} tasks")
    for error in stats["errors"]:
        click.echo(f"  {error}", err=True)


if __name__ == "__main__":
    main()
