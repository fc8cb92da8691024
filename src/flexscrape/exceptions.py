"""flexscrape exception hierarchy.

Two classes are *soft* for the step interpreter: ``ElementNotFoundError``
stops a run gracefully with partial results, and ``NavigationTimeoutError``
is logged and skipped. Everything else propagates to the caller.
"""

from __future__ import annotations

from typing import Any


class FlexScrapeError(Exception):
    """Base exception for all flexscrape errors."""


class ConfigurationError(FlexScrapeError):
    """Raised for malformed tasks or settings, before any browser interaction."""


class BrowserConnectionError(FlexScrapeError):
    """Raised when no browser could be attached to or launched."""


class ElementNotFoundError(FlexScrapeError):
    """Raised when a locator never resolves within its timeout.

    Attributes:
        selector: CSS selector that was queried (may be empty).
        xpath: XPath expression that was queried (may be empty).
    """

    def __init__(self, selector: str | None = None, xpath: str | None = None) -> None:
        self.selector = selector or ""
        self.xpath = xpath or ""
        desc = f"xpath: {self.xpath}" if self.xpath else f"selector: {self.selector}"
        super().__init__(f"Element not found with {desc}")


class NavigationTimeoutError(FlexScrapeError):
    """Raised when a page transition does not settle within its timeout."""

    def __init__(self, url: str = "", timeout_ms: int | None = None) -> None:
        self.url = url
        self.timeout_ms = timeout_ms
        suffix = f" after {timeout_ms}ms" if timeout_ms is not None else ""
        super().__init__(f"Navigation timeout{suffix}: {url or '<current page>'}")


class ProxyError(FlexScrapeError):
    """Raised when a connection failure is attributable to the egress proxy."""

    def __init__(self, address: str, message: str = "") -> None:
        self.address = address
        super().__init__(f"Proxy failure via {address}: {message}" if message else f"Proxy failure via {address}")


class FetchExhaustedError(FlexScrapeError):
    """Raised when a record's retry budget is consumed.

    Attributes:
        record: The record that could not be fetched.
        attempts: Number of attempts made.
    """

    def __init__(self, record: dict[str, Any], attempts: int) -> None:
        self.record = record
        self.attempts = attempts
        link = record.get("link") or "<no link>"
        super().__init__(f"Failed to fetch {link} after {attempts} attempts")


class CaptchaUnsolvedError(FlexScrapeError):
    """Raised by the solver client when no token could be obtained."""


class StepExecutionError(FlexScrapeError):
    """Wraps an unexpected handler failure with the step that raised it."""

    def __init__(self, step_type: str, index: int, message: str) -> None:
        self.step_type = step_type
        self.index = index
        super().__init__(f"Step {index + 1} ({step_type}) failed: {message}")
