"""Playwright (async API) implementation of the page-automation capability.

``PlaywrightBrowser.connect()`` either attaches to a Chrome started with
``--remote-debugging-port`` (``connect_over_cdp``) or launches a Chromium it
owns. Only an owned browser is closed on shutdown; an attached one is left
running and only the pages/contexts opened by this process are closed.
"""

from __future__ import annotations

import logging
import random
from typing import Any, Iterable

from playwright.async_api import BrowserContext, Page, Playwright, Request, Response, Route, async_playwright
from playwright.async_api import ElementHandle as PwElementHandle
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from flexscrape.browser.driver import BoundingBox, ResponseCallback, ResponseInfo
from flexscrape.browser.stealth import build_browser_profile
from flexscrape.exceptions import BrowserConnectionError, NavigationTimeoutError
from flexscrape.settings.config import BrowserSettings

logger = logging.getLogger(__name__)

# Cookie fields Playwright accepts in ``add_cookies``.
_COOKIE_FIELDS = ("name", "value", "url", "domain", "path", "expires", "httpOnly", "secure", "sameSite")
_SAME_SITE = {"strict": "Strict", "lax": "Lax", "none": "None"}


def load_state(wait_until: str) -> str:
    """Map a navigation wait condition onto a Playwright load state.

    Accepts Playwright names as well as the ``networkidle0``/``networkidle2``
    spellings used by older task files.
    """
    value = (wait_until or "load").lower()
    if value.startswith("networkidle"):
        return "networkidle"
    if value in ("load", "domcontentloaded", "commit"):
        return value
    logger.warning("Unknown waitUntil %r, using 'load'", wait_until)
    return "load"


def to_playwright_cookie(cookie: dict[str, Any]) -> dict[str, Any]:
    """Drop fields Playwright rejects and normalise ``sameSite``."""
    out = {k: cookie[k] for k in _COOKIE_FIELDS if k in cookie and cookie[k] is not None}
    same_site = out.get("sameSite")
    if same_site is not None:
        normalised = _SAME_SITE.get(str(same_site).lower())
        if normalised:
            out["sameSite"] = normalised
        else:
            out.pop("sameSite")
    return out


class PlaywrightElement:
    """``ElementHandle`` adapter."""

    def __init__(self, handle: PwElementHandle) -> None:
        self._handle = handle

    async def bounding_box(self) -> BoundingBox | None:
        box = await self._handle.bounding_box()
        if box is None:
            return None
        return BoundingBox(x=box["x"], y=box["y"], width=box["width"], height=box["height"])

    async def text_content(self) -> str:
        return (await self._handle.text_content()) or ""

    async def inner_text(self) -> str:
        return await self._handle.inner_text()

    async def get_attribute(self, name: str) -> str | None:
        return await self._handle.get_attribute(name)

    async def set_attribute(self, name: str, value: str) -> None:
        await self._handle.evaluate("(el, [n, v]) => el.setAttribute(n, v)", [name, value])

    async def type(self, text: str, delay_ms: float = 0) -> None:
        await self._handle.type(text, delay=delay_ms)


class PlaywrightPageDriver:
    """``PageDriver`` adapter over a Playwright ``Page``."""

    def __init__(self, page: Page, context: BrowserContext) -> None:
        self._page = page
        self._context = context
        self._blocked: set[str] = set()
        self._routing = False

    @property
    def page(self) -> Page:
        return self._page

    @property
    def url(self) -> str:
        return self._page.url

    # -- navigation --------------------------------------------------------

    async def goto(self, url: str, *, wait_until: str = "load", timeout_ms: int = 30_000) -> None:
        try:
            await self._page.goto(url, wait_until=load_state(wait_until), timeout=timeout_ms)
        except PlaywrightTimeoutError as e:
            raise NavigationTimeoutError(url, timeout_ms) from e

    async def reload(self, *, wait_until: str = "load", timeout_ms: int = 30_000) -> None:
        try:
            await self._page.reload(wait_until=load_state(wait_until), timeout=timeout_ms)
        except PlaywrightTimeoutError as e:
            raise NavigationTimeoutError(self._page.url, timeout_ms) from e

    async def wait_for_navigation(self, *, wait_until: str = "load", timeout_ms: int = 30_000) -> None:
        state = load_state(wait_until)
        page = self._page
        try:
            await page.wait_for_event(
                "framenavigated",
                predicate=lambda frame: frame == page.main_frame,
                timeout=timeout_ms,
            )
            if state != "commit":
                await page.wait_for_load_state(state, timeout=timeout_ms)
        except PlaywrightTimeoutError as e:
            raise NavigationTimeoutError(page.url, timeout_ms) from e

    # -- queries -----------------------------------------------------------

    async def wait_for(self, target: str, *, timeout_ms: int = 5_000) -> PlaywrightElement | None:
        try:
            handle = await self._page.wait_for_selector(target, state="attached", timeout=timeout_ms)
        except PlaywrightTimeoutError:
            return None
        return PlaywrightElement(handle) if handle else None

    async def query(self, target: str) -> PlaywrightElement | None:
        handle = await self._page.query_selector(target)
        return PlaywrightElement(handle) if handle else None

    async def query_all(self, target: str) -> list[PlaywrightElement]:
        return [PlaywrightElement(h) for h in await self._page.query_selector_all(target)]

    async def count(self, target: str) -> int:
        return await self._page.locator(target).count()

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        return await self._page.evaluate(script, arg)

    # -- input -------------------------------------------------------------

    async def mouse_move(self, x: float, y: float) -> None:
        await self._page.mouse.move(x, y)

    async def mouse_click(self, x: float, y: float) -> None:
        await self._page.mouse.click(x, y)

    async def key_down(self, key: str) -> None:
        await self._page.keyboard.down(key)

    async def key_up(self, key: str) -> None:
        await self._page.keyboard.up(key)

    # -- viewport / scroll -------------------------------------------------

    async def viewport_size(self) -> tuple[float, float]:
        w, h = await self._page.evaluate(
            "() => [Math.max(document.documentElement.clientWidth, window.innerWidth),"
            " Math.max(document.documentElement.clientHeight, window.innerHeight)]"
        )
        return float(w), float(h)

    async def scroll_position(self) -> tuple[float, float]:
        x, y = await self._page.evaluate("() => [window.scrollX, window.scrollY]")
        return float(x), float(y)

    async def scroll_to(self, x: float, y: float) -> None:
        await self._page.evaluate("([x, y]) => window.scrollTo(x, y)", [x, y])

    # -- context -----------------------------------------------------------

    async def cookies(self) -> list[dict[str, Any]]:
        return [dict(c) for c in await self._context.cookies()]

    async def add_cookies(self, cookies: list[dict[str, Any]]) -> None:
        if cookies:
            await self._context.add_cookies([to_playwright_cookie(c) for c in cookies])

    async def add_init_script(self, script: str) -> None:
        await self._page.add_init_script(script)

    async def _route(self, route: Route, request: Request) -> None:
        if request.resource_type in self._blocked:
            await route.abort()
        else:
            await route.continue_()

    async def block_resources(self, resource_types: Iterable[str]) -> None:
        self._blocked = set(resource_types)
        if self._blocked and not self._routing:
            await self._page.route("**/*", self._route)
            self._routing = True
        logger.debug("Blocking resource types: %s", sorted(self._blocked))

    async def unblock_resources(self) -> None:
        self._blocked.clear()
        if self._routing:
            await self._page.unroute("**/*", self._route)
            self._routing = False

    def on_response(self, callback: ResponseCallback) -> None:
        async def _handler(response: Response) -> None:
            try:
                headers = await response.all_headers()
            except PlaywrightError as e:
                logger.debug("Could not read headers for %s: %s", response.url, e)
                return
            await callback(ResponseInfo(url=response.url, status=response.status, headers=headers))

        self._page.on("response", _handler)

    async def new_page(self) -> "PlaywrightPageDriver":
        return PlaywrightPageDriver(await self._context.new_page(), self._context)

    async def close(self) -> None:
        if not self._page.is_closed():
            await self._page.close()


class PlaywrightBrowser:
    """``BrowserConnection`` over Playwright Chromium."""

    def __init__(
        self,
        playwright: Playwright,
        context: BrowserContext,
        *,
        owns_browser: bool,
        owns_context: bool,
    ) -> None:
        self._playwright = playwright
        self._context = context
        self._owns_browser = owns_browser
        self._owns_context = owns_context

    @property
    def owns_browser(self) -> bool:
        return self._owns_browser

    @classmethod
    async def connect(
        cls,
        settings: BrowserSettings,
        *,
        proxy: str | None = None,
        rng: random.Random | None = None,
    ) -> "PlaywrightBrowser":
        """Attach to a debuggable Chrome or launch a new Chromium.

        Raises:
            BrowserConnectionError: If no browser could be reached or started.
        """
        pw = await async_playwright().start()
        try:
            if settings.attach and settings.cdp_url:
                logger.info("Connecting to existing Chrome at %s", settings.cdp_url)
                browser = await pw.chromium.connect_over_cdp(
                    settings.cdp_url, timeout=settings.connect_timeout_ms
                )
                if proxy or not browser.contexts:
                    # A fresh context is the only way to route an attached browser through a proxy.
                    context = await browser.new_context(proxy={"server": proxy} if proxy else None)
                    return cls(pw, context, owns_browser=False, owns_context=True)
                return cls(pw, browser.contexts[0], owns_browser=False, owns_context=False)

            profile = build_browser_profile(
                headless=settings.headless,
                proxy_url=proxy,
                executable_path=settings.executable_path,
                randomize_fingerprint=settings.randomize_fingerprint,
                rng=rng,
            )
            logger.info("Launching Chromium (headless=%s)", settings.headless)
            browser = await pw.chromium.launch(**profile.launch_args)
            context = await browser.new_context(**profile.context_args)
            return cls(pw, context, owns_browser=True, owns_context=True)
        except PlaywrightError as e:
            await pw.stop()
            if settings.attach:
                raise BrowserConnectionError(
                    f"No debuggable Chrome instance at {settings.cdp_url}; start Chrome with "
                    "--remote-debugging-port=9222 or set browser.attach = false"
                ) from e
            raise BrowserConnectionError(f"Failed to launch Chromium: {e}") from e

    async def new_page(self) -> PlaywrightPageDriver:
        return PlaywrightPageDriver(await self._context.new_page(), self._context)

    async def close(self) -> None:
        try:
            if self._owns_browser and self._context.browser is not None:
                await self._context.browser.close()
            elif self._owns_context:
                await self._context.close()
        finally:
            await self._playwright.stop()
