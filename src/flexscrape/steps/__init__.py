"""Task DSL — step models, loading and interpretation.

Modules:

* ``models`` — ``Task``, ``Step`` and the per-kind step models.
* ``loader`` — Load tasks from JSON files on disk.
* ``locators`` — Rebase sub-step locators onto a list item.
* ``interpreter`` — ``StepInterpreter`` dispatching steps to handlers.
* ``actions``, ``extraction``, ``bulk`` — the step handlers.

The interpreter is imported from ``flexscrape.steps.interpreter`` directly;
it depends on the browser session, which itself depends on these models.
"""

from flexscrape.steps.loader import load_task_from_file, load_tasks_from_dir, parse_task
from flexscrape.steps.models import DelayRange, RetryPolicy, Step, StepType, Task

__all__ = [
    "DelayRange",
    "RetryPolicy",
    "Step",
    "StepType",
    "Task",
    "load_task_from_file",
    "load_tasks_from_dir",
    "parse_task",
]
