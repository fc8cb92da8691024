"""Per-run browser session: one page, one browser connection, run state.

The session is the explicit context every step handler receives. It owns:

* the page driver and the browser connection behind it,
* the current ``ScrapeConfig`` (replaced by a CONFIGURE step),
* the cursor state and ``MotionPlanner``,
* the JSONL sink, the records loaded by READ_JSONL,
* the random source and sleep function every delay goes through,
* the proxy in use and the cookie store.

Usage::

    async with Session(settings=get_settings()) as session:
        results = await StepInterpreter().run(task.steps, session)
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Awaitable, Callable

from flexscrape.browser.driver import BrowserConnection, PageDriver
from flexscrape.browser.motion import MotionPlanner, MouseState
from flexscrape.browser.stealth import apply_stealth_scripts, mask_webdriver
from flexscrape.cookies import CookieStore
from flexscrape.exceptions import BrowserConnectionError, FlexScrapeError
from flexscrape.pipeline.sink import JsonlSink
from flexscrape.proxies import ProxyPool, is_proxy_error
from flexscrape.settings import Settings, get_settings
from flexscrape.settings.config import BrowserSettings, ScrapeSettings

logger = logging.getLogger(__name__)

BrowserFactory = Callable[..., Awaitable[BrowserConnection]]


@dataclass(frozen=True)
class ScrapeConfig:
    """Run-level scrape configuration."""

    concurrency: int = 5
    blocked_resources: tuple[str, ...] = ()
    output_file_name: str = "output.jsonl"
    page_timeout_ms: int = 30_000
    mouse_movements: bool = True

    @classmethod
    def from_settings(cls, s: ScrapeSettings) -> "ScrapeConfig":
        return cls(
            concurrency=s.concurrency,
            blocked_resources=tuple(s.blocked_resources),
            output_file_name=s.output_file_name,
            page_timeout_ms=s.page_timeout_ms,
        )

    def with_updates(self, **changes: Any) -> "ScrapeConfig":
        if "blocked_resources" in changes:
            changes["blocked_resources"] = tuple(changes["blocked_resources"])
        return replace(self, **changes)


async def _default_browser_factory(
    settings: BrowserSettings, *, proxy: str | None = None, rng: random.Random | None = None
) -> BrowserConnection:
    from flexscrape.browser.playwright_driver import PlaywrightBrowser

    return await PlaywrightBrowser.connect(settings, proxy=proxy, rng=rng)


@dataclass
class SessionFlags:
    """Mutable per-run switches."""

    debug_mouse: bool = False
    webdriver_masked: bool = False


class Session:
    """State and resources shared by every step of one run.

    Args:
        page: An already open page (tests pass a fake). When omitted,
            ``open()`` connects a browser and opens a page.
        browser: An existing browser connection to open the page on.
        settings: Settings; the cached global settings when omitted.
        rng: Random source for all motion and delays.
        sleep: Awaitable sleep taking seconds.
        cookie_store: Cookie jar; built from ``settings.cookies`` when omitted.
        proxy_pool: Egress proxies; the browser connects through ``next()``.
        output_dir: Directory for the JSONL output.
        interactive: An operator can see the browser (enables manual CAPTCHA).
        browser_factory: Coroutine connecting a browser (defaults to Playwright).
    """

    def __init__(
        self,
        page: PageDriver | None = None,
        *,
        browser: BrowserConnection | None = None,
        settings: Settings | None = None,
        rng: random.Random | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        cookie_store: CookieStore | None = None,
        proxy_pool: ProxyPool | None = None,
        output_dir: Path | str | None = None,
        interactive: bool | None = None,
        browser_factory: BrowserFactory | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.config = ScrapeConfig.from_settings(self.settings.scrape)
        self.rng = rng or random.Random()
        self.sleep = sleep
        self.mouse = MouseState()
        self.flags = SessionFlags(debug_mouse=self.settings.browser.debug_mouse)
        self.records: list[dict[str, Any]] = []
        self.proxy_pool = proxy_pool
        self.proxy: str | None = None
        self.output_dir = Path(output_dir or self.settings.scrape.output_dir)
        self.interactive = (not self.settings.browser.headless) if interactive is None else interactive

        if cookie_store is None and self.settings.cookies.cookies_file:
            cookie_store = CookieStore(self.settings.cookies.cookies_file)
        self.cookie_store = cookie_store

        self._page = page
        self._browser = browser
        self._browser_factory = browser_factory or _default_browser_factory
        self._motion: MotionPlanner | None = None
        self._sink: JsonlSink | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> "Session":
        """Connect (if needed), open the page, load cookies and stealth patches."""
        try:
            if self._page is None:
                if self._browser is None:
                    self._browser = await self._connect()
                self._page = await self._browser.new_page()

            page = self._page
            if self.cookie_store is not None:
                cookies = self.cookie_store.get_all()
                if cookies:
                    await page.add_cookies(cookies)
                    logger.info("Browser configured with %d stored cookie(s)", len(cookies))
                self.cookie_store.attach(page)
            if self.settings.browser.apply_stealth_scripts:
                await apply_stealth_scripts(page)
        except BaseException:
            await self.close()
            raise
        logger.info("Setup complete")
        return self

    async def _connect(self) -> BrowserConnection:
        """Connect through the next healthy proxy, skipping proxies that fail."""
        attempts = max(1, len(self.proxy_pool) if self.proxy_pool else 1)
        last_error: BaseException | None = None
        for _ in range(attempts):
            self.proxy = self.proxy_pool.next() if self.proxy_pool else None
            if self.proxy_pool and len(self.proxy_pool) and self.proxy is None:
                logger.warning("No healthy proxy available; connecting directly")
            try:
                return await self._browser_factory(self.settings.browser, proxy=self.proxy, rng=self.rng)
            except BrowserConnectionError as e:
                last_error = e
                if not (self.proxy and is_proxy_error(e.__cause__ or e)):
                    raise
                self.report_error(e.__cause__ or e)
        raise BrowserConnectionError(f"Could not connect through any proxy: {last_error}")

    async def close(self) -> None:
        """Release the sink and the page; disconnect the browser.

        The browser process itself is only closed when this session launched
        it; an attached browser keeps running.
        """
        if self._sink is not None:
            self._sink.close()
            self._sink = None
        if self._page is not None:
            try:
                await self._page.close()
            except Exception as e:
                logger.warning("Error closing page: %s", e)
            self._page = None
        if self._browser is not None:
            owned = self._browser.owns_browser
            await self._browser.close()
            logger.info("Browser %s", "closed" if owned else "left running (attached)")
            self._browser = None
        if self.cookie_store is not None:
            self.cookie_store.persist()
        self._motion = None

    async def __aenter__(self) -> "Session":
        return await self.open()

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self._page is not None

    @property
    def page(self) -> PageDriver:
        if self._page is None:
            raise FlexScrapeError("Session is not open")
        return self._page

    @property
    def motion(self) -> MotionPlanner:
        if self._motion is None:
            self._motion = MotionPlanner(
                self.page, self.mouse, rng=self.rng, sleep=self.sleep, debug=self.flags.debug_mouse
            )
        return self._motion

    @property
    def output_path(self) -> Path:
        return self.output_dir / self.config.output_file_name

    @property
    def sink(self) -> JsonlSink:
        """JSONL sink for the configured output file (opened on first write)."""
        if self._sink is None:
            self._sink = JsonlSink(self.output_path)
        return self._sink

    def set_config(self, config: ScrapeConfig) -> None:
        """Replace the scrape configuration, re-targeting the sink if the file changed."""
        if self._sink is not None and config.output_file_name != self.config.output_file_name:
            self._sink.close()
            self._sink = None
        self.config = config

    def set_debug_mouse(self, enabled: bool) -> None:
        self.flags.debug_mouse = enabled
        if self._motion is not None:
            self._motion.debug = enabled

    # ------------------------------------------------------------------
    # Helpers for handlers
    # ------------------------------------------------------------------

    async def pause(self, min_ms: float, max_ms: float) -> float:
        """Sleep a uniform random duration in ``[min_ms, max_ms]``; return it in ms."""
        delay = self.rng.uniform(min_ms, max_ms)
        await self.sleep(delay / 1000)
        return delay

    async def mask_webdriver(self) -> None:
        """Register the ``navigator.webdriver`` mask once per page."""
        if not self.flags.webdriver_masked:
            await mask_webdriver(self.page)
            self.flags.webdriver_masked = True

    async def new_page(self) -> PageDriver:
        """Open an extra page in the same context with resource blocking applied."""
        page = await self.page.new_page()
        if self.config.blocked_resources:
            await page.block_resources(self.config.blocked_resources)
        return page

    def report_error(self, exc: BaseException) -> None:
        """Mark the current proxy unhealthy if *exc* is a proxy failure."""
        if self.proxy and self.proxy_pool is not None and is_proxy_error(exc):
            self.proxy_pool.mark_unhealthy(self.proxy)
