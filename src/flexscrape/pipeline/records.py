"""Sequential fetch-and-merge over loaded records with exponential backoff.

Per record::

    random request delay
    attempt 1 .. max_retries + 1:
        content = fetch(record)          # may raise
        sink.write({**record, "content": content})
    on exhaustion -> FetchExhaustedError (remaining records are not processed)

Records already written stay on disk because the sink flushes every line.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Iterable

from flexscrape.exceptions import FetchExhaustedError
from flexscrape.pipeline.sink import JsonlSink
from flexscrape.steps.models import DelayRange, RetryPolicy

logger = logging.getLogger(__name__)

FetchFn = Callable[[dict[str, Any]], Awaitable[str | None]]
ErrorHook = Callable[[BaseException], None]


def backoff_delay(policy: RetryPolicy, retry: int) -> float:
    """Milliseconds to wait before retry number *retry* (1-based), without jitter."""
    if retry < 1:
        raise ValueError("retry numbers start at 1")
    return min(policy.initial_delay * policy.backoff_multiplier ** (retry - 1), policy.max_delay)


class RecordPipeline:
    """Fetch each record's ``link``, merge the content and append it to a sink.

    Args:
        fetch: Coroutine returning the content for one record.
        sink: Output the merged records are appended to.
        rng: Random source for request delays and jitter.
        sleep: Awaitable sleep taking seconds.
        on_error: Called with every failed attempt's exception before retrying.
    """

    def __init__(
        self,
        fetch: FetchFn,
        sink: JsonlSink,
        *,
        rng: random.Random | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_error: ErrorHook | None = None,
    ) -> None:
        self._fetch = fetch
        self._sink = sink
        self._rng = rng or random.Random()
        self._sleep = sleep
        self._on_error = on_error

    async def process_all(
        self,
        records: Iterable[dict[str, Any]],
        policy: RetryPolicy,
        request_delay: DelayRange | None = None,
    ) -> int:
        """Process *records* in order; return how many were written.

        Raises:
            FetchExhaustedError: On the first record whose retries run out.
        """
        written = 0
        for record in records:
            if request_delay is not None:
                await self._sleep(self._rng.uniform(request_delay.min, request_delay.max) / 1000)
            await self.process_one(record, policy)
            written += 1
            logger.info("Processed record: %s", record.get("link") or "no link")
        return written

    async def process_one(self, record: dict[str, Any], policy: RetryPolicy) -> dict[str, Any]:
        """Fetch and append one record, retrying with backoff."""
        attempts = policy.max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return await self._fetch_and_append(record)
            except Exception as e:
                if self._on_error is not None:
                    self._on_error(e)
                if attempt == attempts:
                    logger.error(
                        "Failed to fetch %s after %d attempt(s): %s", record.get("link"), attempts, e
                    )
                    raise FetchExhaustedError(record, attempts) from e

                delay = backoff_delay(policy, attempt)
                logger.warning(
                    "Attempt %d/%d failed for %s. Retrying in %dms: %s",
                    attempt,
                    attempts,
                    record.get("link"),
                    round(delay),
                    e,
                )
                jittered = delay * (1 + self._rng.uniform(-policy.jitter, policy.jitter))
                await self._sleep(max(jittered, 0.0) / 1000)
        raise AssertionError("unreachable")

    async def _fetch_and_append(self, record: dict[str, Any]) -> dict[str, Any]:
        if not record.get("link"):
            merged = {**record, "content": ""}
        else:
            content = await self._fetch(record)
            merged = {**record, "content": content if content is not None else ""}
        self._sink.write(merged)
        return merged
