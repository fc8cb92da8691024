"""Browser anti-detection: fingerprint randomization and init scripts.

Provides a ``BrowserProfile`` holding Playwright ``launch()`` and
``new_context()`` arguments with:

- The egress proxy chosen from the proxy pool
- A randomized fingerprint (viewport, locale, timezone, user-agent)
- Stealth patches injected before any page script runs

Usage::

    profile = build_browser_profile(proxy_url=pool.next(), rng=session.rng)
    browser = await pw.chromium.launch(**profile.launch_args)
    context = await browser.new_context(**profile.context_args)
    await apply_stealth_scripts(page_driver)
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from flexscrape.browser.driver import PageDriver

logger = logging.getLogger(__name__)

# Desktop Chrome builds only; the launched engine is always Chromium.
_USER_AGENTS: list[str] = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/128.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/127.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/128.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/127.0.0.0 Safari/537.36",
]

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/115.0.0.0 Safari/537.36"
)

_VIEWPORTS: list[dict[str, int]] = [
    {"width": 1920, "height": 1080},
    {"width": 1536, "height": 864},
    {"width": 1440, "height": 900},
    {"width": 1366, "height": 768},
]

_LOCALE_TIMEZONE_PAIRS: list[tuple[str, str]] = [
    ("en-US", "America/New_York"),
    ("en-US", "America/Los_Angeles"),
    ("en-GB", "Europe/London"),
    ("fr-FR", "Europe/Paris"),
    ("de-DE", "Europe/Berlin"),
]

# Runs before navigation; hides the automation flag.
WEBDRIVER_MASK_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', { get: () => undefined });
"""

STEALTH_SCRIPT = """
Object.defineProperty(navigator, 'languages', {
    get: () => ['fr-FR', 'fr', 'en-US', 'en'],
});

if (!window.chrome) window.chrome = {};
if (!window.chrome.runtime) window.chrome.runtime = {};

const originalQuery = window.navigator.permissions.query;
window.navigator.permissions.query = (parameters) =>
    parameters.name === 'notifications'
        ? Promise.resolve({ state: Notification.permission })
        : originalQuery(parameters);
"""


@dataclass
class BrowserProfile:
    """Launch and context arguments for one launched browser."""

    launch_args: dict[str, Any] = field(default_factory=dict)
    context_args: dict[str, Any] = field(default_factory=dict)

    user_agent: str = ""
    viewport: dict[str, int] = field(default_factory=dict)
    locale: str = ""
    timezone_id: str = ""
    proxy_url: str = ""


def random_user_agent(rng: random.Random | None = None) -> str:
    """Pick a desktop user-agent string."""
    choices = _USER_AGENTS or [DEFAULT_USER_AGENT]
    return (rng or random).choice(choices)


def build_browser_profile(
    *,
    headless: bool = True,
    proxy_url: str | None = None,
    executable_path: str = "",
    randomize_fingerprint: bool = True,
    rng: random.Random | None = None,
) -> BrowserProfile:
    """Build a ``BrowserProfile`` for a launched (owned) Chromium.

    Args:
        headless: Run without a window.
        proxy_url: Egress proxy for the whole browser, if any.
        executable_path: Explicit Chrome/Chromium binary.
        randomize_fingerprint: Randomize user-agent, viewport, locale and timezone.
        rng: Random source; the module-level generator when omitted.
    """
    rnd = rng or random.Random()
    profile = BrowserProfile()

    profile.launch_args["headless"] = headless
    if executable_path:
        profile.launch_args["executable_path"] = executable_path
    if proxy_url:
        profile.launch_args["proxy"] = {"server": proxy_url}
        profile.proxy_url = proxy_url
        logger.debug("Using proxy: %s", proxy_url)

    ctx = profile.context_args
    if randomize_fingerprint:
        profile.user_agent = random_user_agent(rnd)
        profile.viewport = rnd.choice(_VIEWPORTS)
        profile.locale, profile.timezone_id = rnd.choice(_LOCALE_TIMEZONE_PAIRS)
        ctx.update(
            user_agent=profile.user_agent,
            viewport=profile.viewport,
            locale=profile.locale,
            timezone_id=profile.timezone_id,
        )
    return profile


async def apply_stealth_scripts(page: PageDriver) -> None:
    """Register the stealth patches as init scripts on *page*.

    Must run before the first navigation so every frame sees the patches.
    """
    await page.add_init_script(STEALTH_SCRIPT)
    logger.debug("Stealth scripts injected")


async def mask_webdriver(page: PageDriver) -> None:
    """Hide ``navigator.webdriver`` on subsequent documents."""
    await page.add_init_script(WEBDRIVER_MASK_SCRIPT)
