"""Handlers that work over many records: READ_JSONL, FETCH_AND_MERGE, FETCH_ARTICLES."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

from flexscrape.exceptions import ElementNotFoundError
from flexscrape.pipeline import JsonlSink, RecordPipeline, read_jsonl
from flexscrape.steps.extraction import extract_value
from flexscrape.steps.models import FetchAndMergeStep, FetchArticlesStep, ReadJsonlStep, RetryPolicy

if TYPE_CHECKING:
    from flexscrape.browser.session import Session
    from flexscrape.steps.interpreter import StepInterpreter

logger = logging.getLogger(__name__)


async def handle_read_jsonl(
    step: ReadJsonlStep, session: Session, interp: StepInterpreter
) -> list[dict[str, Any]]:
    session.records = read_jsonl(step.input_file, step.limit_records)
    logger.info("Loaded %d record(s) from %s", len(session.records), step.input_file)
    return session.records


async def handle_fetch_and_merge(step: FetchAndMergeStep, session: Session, interp: StepInterpreter) -> None:
    policy = step.retry or RetryPolicy.from_settings(session.settings.retry)
    output = Path(step.output_file) if step.output_file else session.output_path

    async def fetch(record: dict[str, Any]) -> str | None:
        await session.page.goto(
            record["link"], wait_until=step.wait_until, timeout_ms=session.config.page_timeout_ms
        )
        return await extract_value(session.page, step.content_selector, None)

    logger.info("Fetching %d record(s) into %s", len(session.records), output)
    with JsonlSink(output) as sink:
        pipeline = RecordPipeline(fetch, sink, rng=session.rng, sleep=session.sleep, on_error=session.report_error)
        written = await pipeline.process_all(session.records, policy, step.request_delay)
    logger.info("Wrote %d record(s) to %s", written, output)


async def _fetch_article(session: Session, step: FetchArticlesStep, item: dict[str, Any]) -> None:
    link = item.get("link")
    if not link:
        logger.info("No link for item %r, skipping", item.get("title"))
        item["content"] = ""
        session.sink.write(item)
        return

    page = None
    try:
        await session.pause(1000, 3000)
        page = await session.new_page()
        await session.pause(500, 2000)
        logger.info("Fetching content for: %s", link)
        await page.goto(link, wait_until=step.wait_until, timeout_ms=step.timeout_ms)
        element = await page.wait_for(step.content_selector, timeout_ms=step.timeout_ms)
        if element is None:
            raise ElementNotFoundError(selector=step.content_selector)
        await session.pause(500, 2000)
        item["content"] = (await element.inner_text()).strip()
    except Exception as e:
        logger.error("Failed to fetch content for %s: %s", link, e)
        session.report_error(e)
        item["content"] = ""
    finally:
        if page is not None:
            await page.close()
    session.sink.write(item)


async def handle_fetch_articles(
    step: FetchArticlesStep, session: Session, interp: StepInterpreter
) -> list[dict[str, Any]]:
    """Fetch every item's ``link`` in its own page, ``concurrency`` at a time.

    Each item is copied and the copy gains a ``content`` key (``""`` on
    failure); copies are appended to the session sink as they finish and
    returned in input order. The step's own items are left untouched.
    """
    semaphore = asyncio.Semaphore(session.config.concurrency)
    items = [dict(item) for item in step.items]

    async def bounded(item: dict[str, Any]) -> None:
        async with semaphore:
            await _fetch_article(session, step, item)

    await asyncio.gather(*(bounded(item) for item in items))
    logger.info("All %d articles fetched", len(items))
    return items
