"""Handlers that read data out of the page: EXTRACT, EXTRACT_LIST, LIST_LOOP."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from flexscrape.browser.driver import ElementHandle, PageDriver, engine_selector
from flexscrape.exceptions import ElementNotFoundError
from flexscrape.steps.actions import LOCATE_TIMEOUT_MS, locate
from flexscrape.steps.locators import ITEM_INDEX_ATTR, field_xpath, item_xpath, rebase_step
from flexscrape.steps.models import (
    ExtractListStep,
    ExtractStep,
    HumanLikeTextExtractionStep,
    ListLoopStep,
    ListStepBase,
)

if TYPE_CHECKING:
    from flexscrape.browser.session import Session
    from flexscrape.steps.interpreter import StepInterpreter

logger = logging.getLogger(__name__)

# Per-item lookups are short: the list is already rendered.
ITEM_TIMEOUT_MS = 2_000

_TEXT_ATTRIBUTES = frozenset({"innerText", "textContent"})


async def read_element(element: ElementHandle, attribute: str) -> str | None:
    if attribute in _TEXT_ATTRIBUTES:
        return (await element.inner_text()).strip()
    return await element.get_attribute(attribute)


async def extract_value(
    page: PageDriver,
    selector: str | None,
    xpath: str | None,
    attribute: str = "innerText",
    multiple: bool = False,
) -> Any:
    """Read *attribute* from the matching element(s).

    XPath lookups wait for the element; CSS lookups read the current DOM.
    Returns ``None`` (or ``[]`` with *multiple*) when nothing matches or the
    read fails.
    """
    target = engine_selector(selector, xpath)
    try:
        if multiple:
            return [await read_element(el, attribute) for el in await page.query_all(target)]
        if xpath:
            element = await page.wait_for(target, timeout_ms=LOCATE_TIMEOUT_MS)
        else:
            element = await page.query(target)
        if element is None:
            logger.debug("Nothing matched %s", target)
            return None
        return await read_element(element, attribute)
    except Exception as e:
        logger.warning("Error extracting %s: %s", target, e)
        return [] if multiple else None


async def handle_extract(step: ExtractStep, session: Session, interp: StepInterpreter) -> dict[str, Any] | None:
    if not step.extracts:
        logger.warning("EXTRACT step has no extracts")
        return None
    result: dict[str, Any] = {}
    for spec in step.extracts:
        result[spec.variable_name] = await extract_value(
            session.page, spec.selector, spec.xpath, spec.attribute, spec.multiple
        )
    logger.debug("Extracted %s", sorted(result))
    return result


async def handle_human_like_text_extraction(
    step: HumanLikeTextExtractionStep, session: Session, interp: StepInterpreter
) -> str:
    element = await locate(session, step.selector, step.xpath)
    box = await session.motion.scroll_into_view(element)
    text = (await element.text_content()).strip()
    if box is not None:
        await session.motion.read_along(box, text)
    logger.info("Read %d characters of text", len(text))
    return text


# ---------------------------------------------------------------------------
# Lists
# ---------------------------------------------------------------------------


async def _require_container(session: Session, step: ListStepBase) -> None:
    if step.list_xpath:
        container = await session.page.wait_for(engine_selector(xpath=step.list_xpath), timeout_ms=LOCATE_TIMEOUT_MS)
    else:
        container = await session.page.query(engine_selector(step.list_selector))
    if container is None:
        raise ElementNotFoundError(step.list_selector, step.list_xpath)


async def _items(session: Session, step: ListStepBase):
    """Yield ``(index, element)`` for every item that resolves, 1-based."""
    await _require_container(session, step)
    root = step.item_root
    count = await session.page.count(engine_selector(xpath=root))
    logger.info("Found %d items under %s", count, root)
    for index in range(1, count + 1):
        target = engine_selector(xpath=item_xpath(root, index))
        element = await session.page.wait_for(target, timeout_ms=ITEM_TIMEOUT_MS)
        if element is None:
            logger.warning("Could not find item %d/%d", index, count)
            continue
        yield index, element


async def _visit(session: Session, step: ListStepBase, element: ElementHandle) -> None:
    """Scroll the item into view and hover it when mouse movement is on."""
    box = await session.motion.scroll_into_view(element)
    if box is not None and step.mouse_movement.enabled and session.config.mouse_movements:
        await session.motion.hover(box, step.mouse_movement.hover_time.as_tuple())


async def handle_extract_list(
    step: ExtractListStep, session: Session, interp: StepInterpreter
) -> list[dict[str, Any]]:
    root = step.item_root
    results: list[dict[str, Any]] = []
    async for index, element in _items(session, step):
        await _visit(session, step, element)
        await session.pause(*step.item_delay.as_tuple())

        data: dict[str, Any] = {}
        for spec in step.extract_fields:
            field_el = await session.page.wait_for(
                engine_selector(xpath=field_xpath(root, index, spec.xpath)), timeout_ms=ITEM_TIMEOUT_MS
            )
            data[spec.name] = (await field_el.text_content()).strip() if field_el is not None else None
        results.append(data)
    logger.info("Extracted %d items", len(results))
    return results


async def handle_list_loop(step: ListLoopStep, session: Session, interp: StepInterpreter) -> list[dict[str, Any]]:
    root = step.item_root
    results: list[dict[str, Any]] = []
    async for index, element in _items(session, step):
        logger.info("Processing item %d", index)
        await _visit(session, step, element)
        await element.set_attribute(ITEM_INDEX_ATTR, str(index))

        item_results: dict[str, Any] = {}
        for sub in step.steps_per_item:
            bound = rebase_step(sub, root, index)
            try:
                result = await interp.execute_step(bound, session)
            except Exception as e:
                logger.warning("Step %s failed for item %d: %s", sub.type, index, e)
                continue
            if result is not None:
                item_results[sub.type] = result
        results.append(item_results)
        await session.pause(*step.item_delay.as_tuple())
    return results
