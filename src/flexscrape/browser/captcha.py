"""CAPTCHA detection and handling.

Implements a graceful degradation approach:

1. **Detect** — read the reCAPTCHA ``data-sitekey`` and check common
   provider signatures in the DOM.
2. **Solve** — with a solver key configured, submit the site key to the
   2Captcha HTTP API, poll for the token and inject it into
   ``#g-recaptcha-response``.
3. **Manual** — without a key but with a visible browser, pause until the
   operator confirms they solved it.
4. **Degrade gracefully** — otherwise log a warning and let the run continue.

A CAPTCHA is never fatal to a run: solver failures are reported in the
returned ``CaptchaResult``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable

import httpx
from rich.prompt import Confirm

from flexscrape.exceptions import CaptchaUnsolvedError

if TYPE_CHECKING:
    from flexscrape.browser.driver import PageDriver
    from flexscrape.settings.config import CaptchaSettings

logger = logging.getLogger(__name__)

SITEKEY_SELECTOR = "[data-sitekey]"
RESPONSE_FIELD_SELECTOR = "#g-recaptcha-response"
NOT_READY = "CAPCHA_NOT_READY"


class CaptchaType(str, Enum):
    """Known CAPTCHA provider types."""

    RECAPTCHA_V2 = "recaptcha_v2"
    RECAPTCHA_V3 = "recaptcha_v3"
    HCAPTCHA = "hcaptcha"
    CLOUDFLARE_TURNSTILE = "cloudflare_turnstile"
    UNKNOWN = "unknown"


class CaptchaStrategy(str, Enum):
    """How a detected CAPTCHA was handled."""

    NONE = "none"  # Nothing detected
    SOLVER = "solver"  # External solver service
    MANUAL = "manual"  # Operator solved it in the visible browser
    SKIP = "skip"  # Logged and continued


@dataclass
class CaptchaDetection:
    """Result of scanning a page for CAPTCHAs."""

    detected: bool = False
    captcha_type: CaptchaType = CaptchaType.UNKNOWN
    site_key: str = ""
    element_selector: str = ""
    page_url: str = ""


@dataclass
class CaptchaResult:
    """Outcome of a CAPTCHA handling attempt."""

    detection: CaptchaDetection = field(default_factory=CaptchaDetection)
    strategy_used: CaptchaStrategy = CaptchaStrategy.NONE
    solved: bool = False
    error: str = ""


# Signatures: (CSS selector, CaptchaType)
_CAPTCHA_SIGNATURES: list[tuple[str, CaptchaType]] = [
    ('iframe[src*="google.com/recaptcha"]', CaptchaType.RECAPTCHA_V2),
    ('iframe[src*="api2/anchor"]', CaptchaType.RECAPTCHA_V2),
    (".g-recaptcha", CaptchaType.RECAPTCHA_V2),
    ('script[src*="recaptcha/api.js?render="]', CaptchaType.RECAPTCHA_V3),
    ('iframe[src*="hcaptcha.com"]', CaptchaType.HCAPTCHA),
    (".h-captcha", CaptchaType.HCAPTCHA),
    ('iframe[src*="challenges.cloudflare.com"]', CaptchaType.CLOUDFLARE_TURNSTILE),
    (".cf-turnstile", CaptchaType.CLOUDFLARE_TURNSTILE),
]


async def detect(page: PageDriver) -> str | None:
    """Return the reCAPTCHA site key on the current page, or ``None``."""
    element = await page.query(SITEKEY_SELECTOR)
    if element is None:
        return None
    return await element.get_attribute("data-sitekey") or None


async def detect_captcha(page: PageDriver) -> CaptchaDetection:
    """Scan the current page for a site key and provider signatures."""
    detection = CaptchaDetection(page_url=page.url)

    site_key = await detect(page)
    if site_key:
        detection.detected = True
        detection.site_key = site_key
        detection.captcha_type = CaptchaType.RECAPTCHA_V2
        detection.element_selector = SITEKEY_SELECTOR

    for selector, captcha_type in _CAPTCHA_SIGNATURES:
        if await page.count(selector) > 0:
            detection.detected = True
            if not detection.site_key:
                detection.captcha_type = captcha_type
                detection.element_selector = selector
            logger.info("CAPTCHA signature %s (%s) on %s", captcha_type.value, selector, page.url)
            break

    return detection


class TwoCaptchaSolver:
    """Client for the 2Captcha ``in.php``/``res.php`` reCAPTCHA flow.

    Args:
        api_key: 2Captcha account key.
        base_url: Service root.
        poll_attempts: Maximum number of ``res.php`` polls.
        poll_interval: Seconds to wait before each poll.
        timeout: Per-request timeout in seconds.
        sleep: Awaitable sleep taking seconds.
        transport: Optional httpx transport (tests use ``httpx.MockTransport``).
    """

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "http://2captcha.com",
        poll_attempts: int = 20,
        poll_interval: float = 5.0,
        timeout: float = 30.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.poll_attempts = poll_attempts
        self.poll_interval = poll_interval
        self.timeout = timeout
        self._sleep = sleep
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: CaptchaSettings, **kwargs) -> "TwoCaptchaSolver":
        return cls(
            settings.solver_api_key,
            base_url=settings.solver_base_url,
            poll_attempts=settings.poll_attempts,
            poll_interval=settings.poll_interval_sec,
            timeout=settings.request_timeout_sec,
            **kwargs,
        )

    async def solve(self, site_key: str, page_url: str) -> str:
        """Submit the task and poll until a token is returned.

        Raises:
            CaptchaUnsolvedError: On service errors, HTTP failures or timeout.
        """
        logger.info("Solving captcha with 2Captcha...")
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self._transport
            ) as client:
                resp = await client.get(
                    "/in.php",
                    params={
                        "key": self.api_key,
                        "method": "userrecaptcha",
                        "googlekey": site_key,
                        "pageurl": page_url,
                        "json": 1,
                    },
                )
                resp.raise_for_status()
                data = resp.json()
                if data.get("status") != 1:
                    raise CaptchaUnsolvedError(f"2Captcha in.php error: {data.get('request')}")
                captcha_id = data["request"]

                for attempt in range(1, self.poll_attempts + 1):
                    await self._sleep(self.poll_interval)
                    resp = await client.get(
                        "/res.php",
                        params={"key": self.api_key, "action": "get", "id": captcha_id, "json": 1},
                    )
                    resp.raise_for_status()
                    data = resp.json()
                    if data.get("status") == 1:
                        return str(data["request"])
                    if data.get("request") == NOT_READY:
                        logger.debug("Captcha not ready (poll %d/%d)", attempt, self.poll_attempts)
                        continue
                    raise CaptchaUnsolvedError(f"2Captcha res.php error: {data.get('request')}")
        except httpx.HTTPError as e:
            raise CaptchaUnsolvedError(f"2Captcha request failed: {e}") from e
        except (ValueError, KeyError, AttributeError) as e:
            raise CaptchaUnsolvedError(f"2Captcha returned an unexpected reply: {e!r}") from e
        raise CaptchaUnsolvedError("Failed to solve captcha in time")


def _confirm(prompt: str) -> bool:
    return Confirm.ask(prompt, default=True)


_INJECT_TOKEN_SCRIPT = """
(token) => {
  const field = document.querySelector('#g-recaptcha-response');
  if (!field) return false;
  field.value = token;
  field.innerHTML = token;
  return true;
}
"""


async def inject_token(page: PageDriver, token: str) -> bool:
    """Write *token* into the reCAPTCHA response field; False if it is absent."""
    return bool(await page.evaluate(_INJECT_TOKEN_SCRIPT, token))


async def handle_captcha(
    page: PageDriver,
    *,
    solver: TwoCaptchaSolver | None = None,
    interactive: bool = False,
    confirm: Callable[[str], bool] | None = None,
) -> CaptchaResult:
    """Detect and, where possible, resolve a CAPTCHA on *page*.

    Args:
        page: Page to inspect.
        solver: External solver; used whenever a site key is present.
        interactive: The browser is visible to an operator.
        confirm: Blocking prompt used for manual solving (run in a thread).
    """
    detection = await detect_captcha(page)
    result = CaptchaResult(detection=detection)
    if not detection.detected:
        logger.info("No captcha detected on this step.")
        return result

    logger.info("Captcha detected (%s) site key: %s", detection.captcha_type.value, detection.site_key or "-")

    if solver is not None and detection.site_key:
        result.strategy_used = CaptchaStrategy.SOLVER
        try:
            token = await solver.solve(detection.site_key, page.url)
        except CaptchaUnsolvedError as e:
            logger.warning("Captcha solver failed, continuing: %s", e)
            result.error = str(e)
            return result
        result.solved = await inject_token(page, token)
        if result.solved:
            logger.info("Captcha solved & token injected.")
        else:
            result.error = f"{RESPONSE_FIELD_SELECTOR} not found"
            logger.warning("Captcha token obtained but %s is missing", RESPONSE_FIELD_SELECTOR)
        return result

    if interactive:
        result.strategy_used = CaptchaStrategy.MANUAL
        logger.info("Manual captcha solving. Please solve in the browser window...")
        result.solved = bool(
            await asyncio.to_thread(confirm or _confirm, "Press ENTER after solving the captcha manually.")
        )
        return result

    result.strategy_used = CaptchaStrategy.SKIP
    logger.warning("Captcha detected in headless mode with no solver available!")
    return result
