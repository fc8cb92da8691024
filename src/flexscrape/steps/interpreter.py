"""Step interpreter: run a task's steps in order against a session.

Execution rules:

* **CONFIGURE first**: the first CONFIGURE step is applied before anything
  else regardless of where it appears, then skipped at its position.
* **Element not found**: the run stops early and returns what it has.
* **Navigation timeout**: logged; the run continues with the next step.
* **Fetch exhausted / configuration errors**: propagate unchanged.
* **Anything else**: wrapped in ``StepExecutionError`` with the step kind
  and position.
* **Results**: ``None`` results are dropped and list results are
  flattened one level into the returned list.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterable, Sequence

from flexscrape.exceptions import (
    ConfigurationError,
    ElementNotFoundError,
    FetchExhaustedError,
    NavigationTimeoutError,
    StepExecutionError,
)
from flexscrape.steps import actions, bulk, extraction
from flexscrape.steps.models import CustomFunctionStep, ListLoopStep, StepBase, StepType

if TYPE_CHECKING:
    from flexscrape.browser.session import Session

logger = logging.getLogger(__name__)

Handler = Callable[[Any, "Session", "StepInterpreter"], Awaitable[Any]]
CustomFunction = Callable[..., Awaitable[Any]]

HANDLERS: dict[StepType, Handler] = {
    StepType.CONFIGURE: actions.handle_configure,
    StepType.READ_JSONL: bulk.handle_read_jsonl,
    StepType.FETCH_AND_MERGE: bulk.handle_fetch_and_merge,
    StepType.BLOCK_RESOURCES: actions.handle_block_resources,
    StepType.DISABLE_REQUEST_INTERCEPTION: actions.handle_disable_request_interception,
    StepType.NAVIGATE: actions.handle_navigate,
    StepType.WAIT_FOR_SELECTOR: actions.handle_wait_for_selector,
    StepType.EXTRACT: extraction.handle_extract,
    StepType.EXTRACT_LIST: extraction.handle_extract_list,
    StepType.LIST_LOOP: extraction.handle_list_loop,
    StepType.FETCH_ARTICLES: bulk.handle_fetch_articles,
    StepType.CLICK: actions.handle_click,
    StepType.PAGINATE: actions.handle_paginate,
    StepType.CUSTOM_FUNCTION: actions.handle_custom_function,
    StepType.DETECT_CAPTCHA: actions.handle_detect_captcha,
    StepType.RANDOM_MOUSE_MOVEMENT: actions.handle_random_mouse_movement,
    StepType.DEBUG_MOUSE: actions.handle_debug_mouse,
    StepType.STEP_OUT_WINDOW: actions.handle_step_out_window,
    StepType.PRESS_ENTER: actions.handle_press_enter,
    StepType.HUMAN_LIKE_TEXT_EXTRACTION: extraction.handle_human_like_text_extraction,
    StepType.INSERT_DATA: actions.handle_insert_data,
    StepType.REFRESH_PAGE: actions.handle_refresh_page,
}


def flatten_results(results: Iterable[Any]) -> list[Any]:
    """Drop ``None`` and splice list results into the output, one level deep."""
    flat: list[Any] = []
    for result in results:
        if result is None:
            continue
        if isinstance(result, list):
            flat.extend(result)
        else:
            flat.append(result)
    return flat


class StepInterpreter:
    """Dispatches steps to their handlers.

    Args:
        functions: Coroutines callable from CUSTOM_FUNCTION steps by name.
            Each is awaited as ``fn(session, **args)``.
        handlers: Override individual handlers (tests).
    """

    def __init__(
        self,
        functions: dict[str, CustomFunction] | None = None,
        handlers: dict[StepType, Handler] | None = None,
    ) -> None:
        self.functions: dict[str, CustomFunction] = dict(functions or {})
        self._handlers: dict[StepType, Handler] = {**HANDLERS, **(handlers or {})}
        missing = set(StepType) - set(self._handlers)
        if missing:
            raise ConfigurationError(f"No handler for step type(s): {sorted(m.value for m in missing)}")

    def register(self, name: str, fn: CustomFunction) -> None:
        """Make *fn* available to CUSTOM_FUNCTION steps as *name*."""
        self.functions[name] = fn

    def check(self, steps: Sequence[StepBase]) -> None:
        """Reject tasks that call unregistered custom functions.

        Raises:
            ConfigurationError: If the task is empty or names an unknown function.
        """
        if not steps:
            raise ConfigurationError("Task has no steps")
        for step in steps:
            nested = step.steps_per_item if isinstance(step, ListLoopStep) else []
            for candidate in (step, *nested):
                if isinstance(candidate, CustomFunctionStep) and candidate.function not in self.functions:
                    raise ConfigurationError(f"Unknown custom function: {candidate.function}")

    async def execute_step(self, step: StepBase, session: Session) -> Any:
        """Run a single step's handler and return its raw result."""
        step_type = StepType(step.type)  # type: ignore[attr-defined]
        logger.info("Executing step: %s%s", step_type.value, f" ({step.description})" if step.description else "")
        return await self._handlers[step_type](step, session, self)

    async def run(self, steps: Sequence[StepBase], session: Session) -> list[Any]:
        """Run *steps* in order and return the flattened results.

        Raises:
            ConfigurationError: Empty task, unknown custom function, or a
                handler rejected its configuration.
            FetchExhaustedError: A FETCH_AND_MERGE record ran out of retries.
            StepExecutionError: Any other step failure.
        """
        self.check(steps)

        configure = next((s for s in steps if s.type == StepType.CONFIGURE), None)  # type: ignore[attr-defined]
        if configure is not None:
            await self._run_one(configure, session, steps.index(configure))

        results: list[Any] = []
        for index, step in enumerate(steps):
            if step.type == StepType.CONFIGURE:  # type: ignore[attr-defined]
                if step is not configure:
                    logger.warning("Ignoring extra CONFIGURE step at position %d", index)
                continue
            try:
                result = await self._run_one(step, session, index)
            except ElementNotFoundError as e:
                logger.error("Stopping at step %d: %s", index, e)
                return flatten_results(results)
            except NavigationTimeoutError as e:
                logger.warning("Navigation timeout at step %d - continuing: %s", index, e)
                continue
            results.append(result)
            if step.random_delay is not None:
                await session.pause(*step.random_delay.as_tuple())

        flat = flatten_results(results)
        logger.info("Task complete: %d step(s), %d result(s)", len(steps), len(flat))
        return flat

    async def _run_one(self, step: StepBase, session: Session, index: int) -> Any:
        try:
            return await self.execute_step(step, session)
        except (
            ElementNotFoundError,
            NavigationTimeoutError,
            FetchExhaustedError,
            ConfigurationError,
            StepExecutionError,
        ):
            raise
        except Exception as e:
            raise StepExecutionError(step.type, index, str(e)) from e  # type: ignore[attr-defined]
