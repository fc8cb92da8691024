"""Task loader — parse task definitions from JSON.

A task file holds either a bare list of steps or an object with ``steps``
(and optionally ``name``). Tasks live in a configurable directory (default:
``config/tasks/``).
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from flexscrape.exceptions import ConfigurationError
from flexscrape.steps.models import Task

logger = logging.getLogger(__name__)


def parse_task(data: Any, *, name: str = "") -> Task:
    """Validate decoded JSON into a ``Task``.

    Raises:
        ConfigurationError: If the data does not conform to the schema. The
            ``pydantic.ValidationError`` is chained as ``__cause__``.
    """
    if isinstance(data, list):
        data = {"name": name, "steps": data}
    elif isinstance(data, dict) and name and "name" not in data:
        data = {**data, "name": name}
    try:
        return Task.model_validate(data)
    except ValidationError as e:
        label = f"task {name}" if name else "task"
        raise ConfigurationError(f"Invalid {label}: {e.error_count()} validation error(s)") from e


def load_task_from_file(path: Path | str) -> Task:
    """Load a single task from a JSON file.

    Raises:
        ConfigurationError: If the file is missing, not valid JSON, or does
            not conform to the schema.
    """
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise ConfigurationError(f"Task file not found: {path}") from e
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Task file {path} is not valid JSON: {e}") from e
    return parse_task(data, name=path.stem)


def load_tasks_from_dir(directory: Path | str) -> list[Task]:
    """Load all task JSON files from a directory.

    Files that fail validation are logged and skipped rather than
    aborting the entire load.
    """
    dir_path = Path(directory)
    if not dir_path.is_dir():
        logger.warning("Task directory does not exist: %s", dir_path)
        return []

    tasks: list[Task] = []
    for json_file in sorted(dir_path.glob("*.json")):
        try:
            task = load_task_from_file(json_file)
        except ConfigurationError as e:
            logger.error("Failed to load task from %s: %s", json_file, e)
            continue
        tasks.append(task)
        logger.info("Loaded task %s (%d steps) from %s", task.name, len(task.steps), json_file.name)
    return tasks
