"""Page-automation capability consumed by the step handlers.

Handlers never talk to Playwright directly. They go through the
``PageDriver`` protocol defined here, which the Playwright adapter in
``flexscrape.browser.playwright_driver`` implements and the test suite fakes.

Locators are plain engine strings: a CSS selector, or an XPath expression
prefixed with ``xpath=`` (see ``engine_selector``).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Protocol, runtime_checkable

XPATH_PREFIX = "xpath="


def engine_selector(selector: str | None = None, xpath: str | None = None) -> str:
    """Return the engine string for a CSS selector or XPath (XPath wins)."""
    if xpath:
        return f"{XPATH_PREFIX}{xpath}"
    if selector:
        return selector
    raise ValueError("Either selector or xpath is required")


@dataclass(frozen=True)
class BoundingBox:
    """Element rectangle in viewport coordinates (CSS pixels)."""

    x: float
    y: float
    width: float
    height: float

    @property
    def center(self) -> tuple[float, float]:
        return (self.x + self.width / 2, self.y + self.height / 2)

    @property
    def bottom(self) -> float:
        return self.y + self.height

    @property
    def right(self) -> float:
        return self.x + self.width

    def sub_box(self, fx: float, fy: float, fw: float, fh: float) -> "BoundingBox":
        """Box at fractional offset ``(fx, fy)`` with fractional size ``(fw, fh)``."""
        return BoundingBox(
            x=self.x + self.width * fx,
            y=self.y + self.height * fy,
            width=self.width * fw,
            height=self.height * fh,
        )


@dataclass(frozen=True)
class ResponseInfo:
    """The parts of a network response the cookie store needs."""

    url: str
    status: int = 200
    headers: dict[str, str] = field(default_factory=dict)


ResponseCallback = Callable[[ResponseInfo], Awaitable[None]]


@runtime_checkable
class ElementHandle(Protocol):
    """A resolved DOM element."""

    async def bounding_box(self) -> BoundingBox | None: ...

    async def text_content(self) -> str: ...

    async def inner_text(self) -> str: ...

    async def get_attribute(self, name: str) -> str | None: ...

    async def set_attribute(self, name: str, value: str) -> None: ...

    async def type(self, text: str, delay_ms: float = 0) -> None: ...


@runtime_checkable
class PageDriver(Protocol):
    """One browser tab plus the context-level operations a run needs."""

    @property
    def url(self) -> str: ...

    # -- navigation --------------------------------------------------------

    async def goto(self, url: str, *, wait_until: str = "load", timeout_ms: int = 30_000) -> None:
        """Navigate; raise ``NavigationTimeoutError`` if the page does not settle."""
        ...

    async def reload(self, *, wait_until: str = "load", timeout_ms: int = 30_000) -> None: ...

    async def wait_for_navigation(self, *, wait_until: str = "load", timeout_ms: int = 30_000) -> None: ...

    # -- queries -----------------------------------------------------------

    async def wait_for(self, target: str, *, timeout_ms: int = 5_000) -> ElementHandle | None:
        """Wait for *target* to attach; ``None`` on timeout."""
        ...

    async def query(self, target: str) -> ElementHandle | None: ...

    async def query_all(self, target: str) -> list[ElementHandle]: ...

    async def count(self, target: str) -> int: ...

    async def evaluate(self, script: str, arg: Any = None) -> Any: ...

    # -- input -------------------------------------------------------------

    async def mouse_move(self, x: float, y: float) -> None: ...

    async def mouse_click(self, x: float, y: float) -> None: ...

    async def key_down(self, key: str) -> None: ...

    async def key_up(self, key: str) -> None: ...

    # -- viewport / scroll -------------------------------------------------

    async def viewport_size(self) -> tuple[float, float]: ...

    async def scroll_position(self) -> tuple[float, float]: ...

    async def scroll_to(self, x: float, y: float) -> None: ...

    # -- context -----------------------------------------------------------

    async def cookies(self) -> list[dict[str, Any]]: ...

    async def add_cookies(self, cookies: list[dict[str, Any]]) -> None: ...

    async def add_init_script(self, script: str) -> None: ...

    async def block_resources(self, resource_types: Iterable[str]) -> None: ...

    async def unblock_resources(self) -> None: ...

    def on_response(self, callback: ResponseCallback) -> None: ...

    async def new_page(self) -> "PageDriver": ...

    async def close(self) -> None: ...


@runtime_checkable
class BrowserConnection(Protocol):
    """A browser the session either launched or attached to."""

    @property
    def owns_browser(self) -> bool: ...

    async def new_page(self) -> PageDriver: ...

    async def close(self) -> None: ...
