"""Browser layer — page driver protocol, Playwright adapter, motion, session.

Modules:

* ``driver`` — ``PageDriver``/``ElementHandle`` protocols the handlers use.
* ``playwright_driver`` — Playwright implementation (attach over CDP or launch).
* ``stealth`` — fingerprint profile and anti-detection init scripts.
* ``motion`` — human-like cursor paths, scrolling and idle behaviour.
* ``captcha`` — detection and 2Captcha / manual handling.
* ``session`` — per-run ``Session`` state shared by every step.
"""

from flexscrape.browser.driver import BoundingBox, BrowserConnection, ElementHandle, PageDriver, engine_selector

__all__ = ["BoundingBox", "BrowserConnection", "ElementHandle", "PageDriver", "engine_selector"]
