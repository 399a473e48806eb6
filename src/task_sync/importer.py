"""
YAML Task Importer

Bulk-creates tasks from a YAML file. Each entry goes through the regular
create path, so every imported task is enqueued for sync exactly like a task
created by hand.
"""

import logging
from typing import Any, Dict

import yaml

from .database import TaskDatabase

logger = logging.getLogger(__name__)


def import_tasks(db: TaskDatabase, yaml_data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Create tasks from parsed YAML data.

    Expected shape::

        tasks:
          - title: Buy milk
            description: 2 litres
            completed: false

    Args:
        db: TaskDatabase instance
        yaml_data: Parsed YAML document

    Returns:
        Dict with tasks_created, task_ids and errors

    Raises:
        ValueError: If 'tasks' is missing or not a list
    """
    tasks = yaml_data.get("tasks")
    if not isinstance(tasks, list):
        raise ValueError("YAML 'tasks' must be a list")

    stats = {
        "tasks_created": 0,
        "task_ids": [],
        "errors": [],
    }

    for index, entry in enumerate(tasks):
        # Individual entry failures don't stop the import
        try:
            if not isinstance(entry, dict):
                raise ValueError("entry must be a mapping")
            title = str(entry.get("title") or "").strip()
            if not title:
                raise ValueError("title is required")

            task = db.create_task(
                title,
                str(entry.get("description") or ""),
                bool(entry.get("completed", False)),
                task_id=entry.get("id"),
            )
            stats["tasks_created"] += 1
            stats["task_ids"].append(task.id)

        except Exception as e:
            stats["errors"].append(f"Failed to import task #{index + 1}: {e}")

    logger.info(f"Imported {stats['tasks_created']} tasks with {len(stats['errors'])} errors")
    return stats


def import_tasks_from_file(db: TaskDatabase, yaml_file_path: str) -> Dict[str, Any]:
    """
    Import tasks from a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: For invalid YAML or an unexpected document shape
    """
    try:
        with open(yaml_file_path, "r", encoding="utf-8") as f:
            yaml_data = yaml.safe_load(f)
    except FileNotFoundError:
        raise FileNotFoundError(f"YAML file not found: {yaml_file_path}")
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML format: {e}")

    if not isinstance(yaml_data, dict):
        raise ValueError("YAML file must contain a dictionary at root level")

    return import_tasks(db, yaml_data)
