"""Task runner — execute several tasks with bounded concurrency.

Each task gets its own ``Session`` (its own page and browser connection).
At most ``max_concurrent`` tasks run at once, and consecutive task starts
are at least ``min_time_ms`` apart.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Sequence

from flexscrape.browser.session import Session
from flexscrape.exceptions import FlexScrapeError
from flexscrape.logging_config import current_task
from flexscrape.proxies import ProxyPool
from flexscrape.settings import Settings, get_settings
from flexscrape.steps.interpreter import StepInterpreter
from flexscrape.steps.models import Task

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


@dataclass
class TaskRun:
    """Outcome of one task."""

    name: str
    success: bool = False
    results: list[Any] = field(default_factory=list)
    error: str = ""
    duration_s: float = 0.0


class TaskRunner:
    """Runs tasks concurrently, each in its own session.

    Args:
        session_factory: Builds an unopened ``Session`` per task.
        interpreter: Interpreter shared by every task.
        max_concurrent: Maximum number of tasks running at once.
        min_time_ms: Minimum spacing between task starts.
        proxy_pool: Started for the duration of ``run_tasks`` when given.
        clock: Monotonic clock in seconds.
        sleep: Awaitable sleep taking seconds.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        interpreter: StepInterpreter | None = None,
        *,
        max_concurrent: int = 2,
        min_time_ms: int = 0,
        proxy_pool: ProxyPool | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self._session_factory = session_factory
        self.interpreter = interpreter or StepInterpreter()
        self.max_concurrent = max_concurrent
        self.min_time_ms = min_time_ms
        self.proxy_pool = proxy_pool
        self._clock = clock
        self._sleep = sleep
        self._start_lock = asyncio.Lock()
        self._last_start: float | None = None

    @classmethod
    def from_settings(
        cls, settings: Settings | None = None, interpreter: StepInterpreter | None = None, **session_kwargs: Any
    ) -> "TaskRunner":
        settings = settings or get_settings()
        pool = ProxyPool.from_settings(settings.proxy) if settings.proxy.proxy_urls else None

        def factory() -> Session:
            return Session(settings=settings, proxy_pool=pool, **session_kwargs)

        return cls(
            factory,
            interpreter,
            max_concurrent=settings.limiter.max_concurrent,
            min_time_ms=settings.limiter.min_time_ms,
            proxy_pool=pool,
        )

    async def _wait_for_start_slot(self) -> None:
        async with self._start_lock:
            if self._last_start is not None and self.min_time_ms:
                wait = self._last_start + self.min_time_ms / 1000 - self._clock()
                if wait > 0:
                    await self._sleep(wait)
            self._last_start = self._clock()

    async def run_task(self, task: Task) -> TaskRun:
        """Open a session, run *task* in it and always close it.

        The task is validated before any browser work. Errors are recorded
        on the returned ``TaskRun`` so one failing task never discards the
        others.
        """
        run = TaskRun(name=task.name)
        token = current_task.set(task.name or "<unnamed>")
        start = self._clock()
        try:
            self.interpreter.check(task.steps)
            async with self._session_factory() as session:
                run.results = await self.interpreter.run(task.steps, session)
            run.success = True
        except FlexScrapeError as e:
            run.error = str(e)
            logger.error("Task %s failed: %s", task.name or "<unnamed>", e)
        except Exception as e:
            run.error = f"{type(e).__name__}: {e}"
            logger.exception("Task %s crashed", task.name or "<unnamed>")
        finally:
            current_task.reset(token)
        run.duration_s = round(self._clock() - start, 1)
        return run

    async def run_tasks(self, tasks: Sequence[Task]) -> list[TaskRun]:
        """Run every task; results are returned in input order."""
        semaphore = asyncio.Semaphore(self.max_concurrent)

        async def bounded(i: int, task: Task) -> TaskRun:
            async with semaphore:
                await self._wait_for_start_slot()
                logger.info("[%d/%d] Starting task %s", i, len(tasks), task.name or "<unnamed>")
                return await self.run_task(task)

        if self.proxy_pool is not None:
            self.proxy_pool.start()
        try:
            runs = await asyncio.gather(*(bounded(i, t) for i, t in enumerate(tasks, 1)))
        finally:
            if self.proxy_pool is not None:
                await self.proxy_pool.stop()

        succeeded = sum(1 for r in runs if r.success)
        logger.info("Run complete: %d total, %d succeeded, %d failed", len(runs), succeeded, len(runs) - succeeded)
        return list(runs)
