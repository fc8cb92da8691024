"""Handlers for configuration, navigation and input steps."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from flexscrape.browser.captcha import TwoCaptchaSolver, handle_captcha
from flexscrape.browser.driver import ElementHandle, engine_selector
from flexscrape.browser.motion import click_point
from flexscrape.browser.session import ScrapeConfig
from flexscrape.exceptions import ConfigurationError, ElementNotFoundError, NavigationTimeoutError
from flexscrape.steps.models import (
    BlockResourcesStep,
    ClickStep,
    ConfigureStep,
    CustomFunctionStep,
    DebugMouseStep,
    DetectCaptchaStep,
    DisableRequestInterceptionStep,
    InsertDataStep,
    NavigateStep,
    PaginateStep,
    PressEnterStep,
    RandomMouseMovementStep,
    RefreshPageStep,
    StepOutWindowStep,
    WaitForSelectorStep,
)

if TYPE_CHECKING:
    from flexscrape.browser.session import Session
    from flexscrape.steps.interpreter import StepInterpreter

logger = logging.getLogger(__name__)

# Timeout for locating a single element before giving up.
LOCATE_TIMEOUT_MS = 5_000


async def locate(session: Session, selector: str | None, xpath: str | None) -> ElementHandle:
    """Wait for an element; raise ``ElementNotFoundError`` if it never appears."""
    element = await session.page.wait_for(engine_selector(selector, xpath), timeout_ms=LOCATE_TIMEOUT_MS)
    if element is None:
        raise ElementNotFoundError(selector, xpath)
    return element


# ---------------------------------------------------------------------------
# Configuration / request interception
# ---------------------------------------------------------------------------


async def handle_configure(step: ConfigureStep, session: Session, interp: StepInterpreter) -> None:
    defaults = ScrapeConfig.from_settings(session.settings.scrape)
    config = session.config.with_updates(
        concurrency=step.concurrency if step.concurrency is not None else defaults.concurrency,
        blocked_resources=(
            step.blocked_resources if step.blocked_resources is not None else defaults.blocked_resources
        ),
        output_file_name=step.output_file_name or defaults.output_file_name,
        page_timeout_ms=step.page_timeout_ms or defaults.page_timeout_ms,
        mouse_movements=step.mouse_movements if step.mouse_movements is not None else True,
    )
    session.set_config(config)
    if config.blocked_resources:
        await session.page.block_resources(config.blocked_resources)
    logger.info(
        "Scraping configuration: concurrency=%d blocked=%s output=%s",
        config.concurrency,
        list(config.blocked_resources),
        config.output_file_name,
    )


async def handle_block_resources(step: BlockResourcesStep, session: Session, interp: StepInterpreter) -> None:
    if step.resource_types is not None:
        session.set_config(session.config.with_updates(blocked_resources=step.resource_types))
    logger.info("Blocking resources: %s", list(session.config.blocked_resources))
    await session.page.block_resources(session.config.blocked_resources)


async def handle_disable_request_interception(
    step: DisableRequestInterceptionStep, session: Session, interp: StepInterpreter
) -> None:
    logger.info("Disabling request interception")
    await session.page.unblock_resources()


# ---------------------------------------------------------------------------
# Navigation
# ---------------------------------------------------------------------------


async def handle_navigate(step: NavigateStep, session: Session, interp: StepInterpreter) -> None:
    logger.info("Navigating to: %s", step.url)
    await session.mask_webdriver()
    try:
        await session.page.goto(step.url, wait_until=step.wait_until, timeout_ms=step.timeout_ms)
    except NavigationTimeoutError:
        raise
    except Exception as e:
        session.report_error(e)
        raise
    logger.info("Navigation successful")


async def handle_wait_for_selector(step: WaitForSelectorStep, session: Session, interp: StepInterpreter) -> None:
    logger.info("Waiting for %s", step.xpath or step.selector)
    element = await session.page.wait_for(engine_selector(step.selector, step.xpath), timeout_ms=step.timeout_ms)
    if element is None:
        raise ElementNotFoundError(step.selector, step.xpath)


async def handle_refresh_page(step: RefreshPageStep, session: Session, interp: StepInterpreter) -> None:
    logger.info("Refreshing page...")
    page = session.page
    await session.pause(*step.pause.as_tuple())
    cookies = await page.cookies()
    try:
        await page.reload(wait_until=step.wait_until, timeout_ms=step.timeout_ms)
    except NavigationTimeoutError:
        logger.warning("Refresh timeout - continuing execution...")
        await session.sleep(1.0)
    await page.add_cookies(cookies)
    await session.pause(*step.pause.as_tuple())
    logger.info("Page refreshed with %d cookie(s) preserved", len(cookies))


# ---------------------------------------------------------------------------
# Clicking
# ---------------------------------------------------------------------------


async def _click_element(
    session: Session,
    element: ElementHandle,
    selector: str | None,
    xpath: str | None,
    *,
    wait_for_nav: bool = False,
    wait_until: str = "networkidle",
    timeout_ms: int = 30_000,
) -> None:
    box = await session.motion.scroll_into_view(element)
    if box is None:
        raise ElementNotFoundError(selector, xpath)
    x, y = click_point(box, session.rng)

    nav: asyncio.Task[None] | None = None
    if wait_for_nav:
        nav = asyncio.create_task(session.page.wait_for_navigation(wait_until=wait_until, timeout_ms=timeout_ms))
    try:
        await session.motion.click_at(x, y)
    except BaseException:
        if nav is not None:
            nav.cancel()
        raise
    if nav is not None:
        await nav


async def handle_click(step: ClickStep, session: Session, interp: StepInterpreter) -> None:
    target = engine_selector(step.selector, step.xpath)
    for attempt in range(1, step.max_retries + 1):
        try:
            if step.xpath:
                element = await session.page.wait_for(target, timeout_ms=LOCATE_TIMEOUT_MS)
            else:
                element = await session.page.query(target)
            if element is None:
                raise ElementNotFoundError(step.selector, step.xpath)
            await _click_element(
                session,
                element,
                step.selector,
                step.xpath,
                wait_for_nav=step.wait_for_nav,
                timeout_ms=step.navigation_timeout_ms,
            )
            return
        except ElementNotFoundError:
            raise
        except NavigationTimeoutError:
            if attempt == step.max_retries:
                logger.warning("Navigation failed after all attempts - continuing execution...")
                await session.sleep(1.0)
                return
            logger.warning("Navigation timeout (attempt %d/%d) - retrying...", attempt, step.max_retries)
            await session.sleep(1.0)
        except Exception as e:
            if attempt == step.max_retries:
                raise
            logger.warning("Click failed (attempt %d/%d) - retrying: %s", attempt, step.max_retries, e)
            await session.sleep(1.0)


async def handle_paginate(step: PaginateStep, session: Session, interp: StepInterpreter) -> None:
    """Click the next button up to ``pages_to_scrape`` times."""
    page = session.page
    target = engine_selector(xpath=step.next_button_xpath)
    advanced = 0
    for i in range(step.pages_to_scrape):
        try:
            button = await page.wait_for(target, timeout_ms=LOCATE_TIMEOUT_MS)
            if button is None:
                logger.info("Next button not found, stopping pagination")
                break
            box = await session.motion.scroll_into_view(button)
            if box is None:
                logger.info("Next button has no layout box, stopping pagination")
                break
            x, y = click_point(box, session.rng)
            await session.motion.move_to(
                x, y, steps=session.rng.randint(20, 39), min_delay_ms=20, max_delay_ms=50, use_bezier=True
            )
            await session.pause(50, 150)

            logger.info("Clicking pagination at x=%d, y=%d", round(x), round(y))
            nav = asyncio.create_task(page.wait_for_navigation(wait_until=step.wait_until, timeout_ms=step.timeout_ms))
            try:
                await page.mouse_click(x, y)
            except BaseException:
                nav.cancel()
                raise
            await nav
            advanced += 1

            if i < step.pages_to_scrape - 1:
                await session.pause(*step.page_delay.as_tuple())
        except Exception as e:
            logger.error("Error during pagination (page %d): %s", i + 1, e)
            break
    logger.info("Paginated through %d page(s)", advanced)


# ---------------------------------------------------------------------------
# Keyboard / text input
# ---------------------------------------------------------------------------


async def handle_press_enter(step: PressEnterStep, session: Session, interp: StepInterpreter) -> None:
    await session.pause(*step.delay.as_tuple())
    hold = session.rng.uniform(*step.hold_duration.as_tuple())
    await session.page.key_down("Enter")
    await session.sleep(hold / 1000)
    await session.page.key_up("Enter")
    logger.info("Pressed Enter (held for %dms)", round(hold))


async def handle_insert_data(step: InsertDataStep, session: Session, interp: StepInterpreter) -> None:
    element = await locate(session, step.selector, step.xpath)
    box = await session.motion.scroll_into_view(element)
    if box is None:
        raise ElementNotFoundError(step.selector, step.xpath)
    x, y = click_point(box, session.rng)
    logger.info("Moving to input at x=%d, y=%d", round(x), round(y))
    await session.motion.move_to(x, y)
    await session.pause(100, 300)
    await session.page.mouse_click(x, y)
    await session.pause(*step.pre_type_delay.as_tuple())
    for char in step.text:
        await element.type(char)
        await session.pause(*step.typing_delay.as_tuple())


# ---------------------------------------------------------------------------
# Cursor behaviour
# ---------------------------------------------------------------------------


async def handle_random_mouse_movement(
    step: RandomMouseMovementStep, session: Session, interp: StepInterpreter
) -> None:
    moves = await session.motion.wander(step.duration_ms, step.pause.as_tuple(), step.margin)
    logger.debug("Random mouse movement: %d moves", moves)


async def handle_debug_mouse(step: DebugMouseStep, session: Session, interp: StepInterpreter) -> None:
    session.set_debug_mouse(step.enabled)
    motion = session.motion
    motion.cursor_color = step.cursor_color
    await motion.jump_to(step.start_position.x, step.start_position.y)
    await motion.ensure_cursor()
    logger.info(
        "Mouse debugging %s at (%d, %d)",
        "enabled" if step.enabled else "disabled",
        step.start_position.x,
        step.start_position.y,
    )


async def handle_step_out_window(step: StepOutWindowStep, session: Session, interp: StepInterpreter) -> None:
    await session.motion.step_out(step.duration.as_tuple(), step.move_back_delay.as_tuple())


# ---------------------------------------------------------------------------
# CAPTCHA / custom
# ---------------------------------------------------------------------------


async def handle_detect_captcha(step: DetectCaptchaStep, session: Session, interp: StepInterpreter) -> None:
    captcha_settings = session.settings.captcha
    solver = None
    if captcha_settings.solver_api_key:
        solver = TwoCaptchaSolver.from_settings(captcha_settings, sleep=session.sleep)
    result = await handle_captcha(session.page, solver=solver, interactive=session.interactive)
    if result.detection.detected and not result.solved:
        logger.warning("Captcha left unsolved (%s)", result.strategy_used.value)


async def handle_custom_function(step: CustomFunctionStep, session: Session, interp: StepInterpreter) -> Any:
    fn = interp.functions.get(step.function)
    if fn is None:
        raise ConfigurationError(f"Unknown custom function: {step.function}")
    return await fn(session, **step.args)
