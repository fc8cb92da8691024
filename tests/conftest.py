"""flexscrape test configuration — shared fixtures for unit tests."""

from __future__ import annotations

import random
from pathlib import Path
from typing import Any, Callable, Iterable

import pytest

from flexscrape.browser.driver import BoundingBox, ResponseCallback, ResponseInfo

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    """Clear the settings LRU cache between tests."""
    from flexscrape.settings.config import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


# ---------------------------------------------------------------------------
# Determinism
# ---------------------------------------------------------------------------


@pytest.fixture()
def rng() -> random.Random:
    """Seeded random source."""
    return random.Random(1234)


class SleepRecorder:
    """Awaitable fake sleep that records every requested duration (seconds)."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)

    @property
    def total(self) -> float:
        return sum(self.calls)


@pytest.fixture()
def fake_sleep() -> SleepRecorder:
    return SleepRecorder()


# ---------------------------------------------------------------------------
# Fake page driver
# ---------------------------------------------------------------------------


class FakeElement:
    """In-memory element satisfying ``ElementHandle``."""

    def __init__(
        self,
        text: str = "",
        attrs: dict[str, str] | None = None,
        box: BoundingBox | None = BoundingBox(100, 100, 200, 50),
    ) -> None:
        self.text = text
        self.attrs = dict(attrs or {})
        self.box = box
        self.typed: list[str] = []

    async def bounding_box(self) -> BoundingBox | None:
        return self.box

    async def text_content(self) -> str:
        return self.text

    async def inner_text(self) -> str:
        return self.text

    async def get_attribute(self, name: str) -> str | None:
        return self.attrs.get(name)

    async def set_attribute(self, name: str, value: str) -> None:
        self.attrs[name] = value

    async def type(self, text: str, delay_ms: float = 0) -> None:
        self.typed.append(text)


class FakePage:
    """In-memory page satisfying ``PageDriver``.

    Elements are registered under the exact engine string a handler will
    look up (``"css"`` or ``"xpath=..."``). ``goto_errors`` maps a URL to a
    list of exceptions raised by successive ``goto`` calls; an exception
    class or instance stored alone is raised every time.
    """

    def __init__(self, url: str = "about:blank", viewport: tuple[float, float] = (1280, 800)) -> None:
        self.url = url
        self.viewport = viewport
        self.elements: dict[str, FakeElement] = {}
        self.lists: dict[str, list[FakeElement]] = {}
        self.goto_errors: dict[str, Any] = {}
        self.navigation_error: BaseException | None = None
        self.reload_error: BaseException | None = None
        self.evaluate_result: Any = None
        self.visited: list[str] = []
        self.waited: list[tuple[str, int]] = []
        self.evaluated: list[tuple[str, Any]] = []
        self.moves: list[tuple[float, float]] = []
        self.clicks: list[tuple[float, float]] = []
        self.keys: list[tuple[str, str]] = []
        self.scrolls: list[tuple[float, float]] = []
        self.scroll = (0.0, 0.0)
        self.cookie_jar: list[dict[str, Any]] = []
        self.init_scripts: list[str] = []
        self.blocked: list[str] | None = None
        self.navigations = 0
        self.reloads = 0
        self.response_callbacks: list[ResponseCallback] = []
        self.children: list[FakePage] = []
        self.closed = False

    # -- setup helpers -------------------------------------------------------

    def add(self, target: str, element: FakeElement | None = None, **kwargs: Any) -> FakeElement:
        element = element or FakeElement(**kwargs)
        self.elements[target] = element
        return element

    def add_list(self, item_root: str, elements: Iterable[FakeElement]) -> list[FakeElement]:
        """Register items under ``xpath=<root>`` and ``xpath=<root>[i]``."""
        items = list(elements)
        self.lists[f"xpath={item_root}"] = items
        for i, el in enumerate(items, 1):
            self.elements[f"xpath={item_root}[{i}]"] = el
        return items

    async def emit_response(self, url: str, status: int = 200, headers: dict[str, str] | None = None) -> None:
        for cb in self.response_callbacks:
            await cb(ResponseInfo(url=url, status=status, headers=headers or {}))

    # -- PageDriver ----------------------------------------------------------

    async def goto(self, url: str, *, wait_until: str = "load", timeout_ms: int = 30_000) -> None:
        self.visited.append(url)
        error = self.goto_errors.get(url)
        if isinstance(error, list):
            if error:
                raise error.pop(0)
        elif error is not None:
            raise error
        self.url = url

    async def reload(self, *, wait_until: str = "load", timeout_ms: int = 30_000) -> None:
        self.reloads += 1
        if self.reload_error is not None:
            raise self.reload_error

    async def wait_for_navigation(self, *, wait_until: str = "load", timeout_ms: int = 30_000) -> None:
        self.navigations += 1
        if self.navigation_error is not None:
            raise self.navigation_error

    async def wait_for(self, target: str, *, timeout_ms: int = 5_000) -> FakeElement | None:
        self.waited.append((target, timeout_ms))
        return self.elements.get(target)

    async def query(self, target: str) -> FakeElement | None:
        return self.elements.get(target)

    async def query_all(self, target: str) -> list[FakeElement]:
        if target in self.lists:
            return list(self.lists[target])
        return [self.elements[target]] if target in self.elements else []

    async def count(self, target: str) -> int:
        return len(await self.query_all(target))

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        self.evaluated.append((script, arg))
        return self.evaluate_result

    async def mouse_move(self, x: float, y: float) -> None:
        self.moves.append((x, y))

    async def mouse_click(self, x: float, y: float) -> None:
        self.clicks.append((x, y))

    async def key_down(self, key: str) -> None:
        self.keys.append(("down", key))

    async def key_up(self, key: str) -> None:
        self.keys.append(("up", key))

    async def viewport_size(self) -> tuple[float, float]:
        return self.viewport

    async def scroll_position(self) -> tuple[float, float]:
        return self.scroll

    async def scroll_to(self, x: float, y: float) -> None:
        self.scroll = (x, y)
        self.scrolls.append((x, y))

    async def cookies(self) -> list[dict[str, Any]]:
        return [dict(c) for c in self.cookie_jar]

    async def add_cookies(self, cookies: list[dict[str, Any]]) -> None:
        self.cookie_jar.extend(dict(c) for c in cookies)

    async def add_init_script(self, script: str) -> None:
        self.init_scripts.append(script)

    async def block_resources(self, resource_types: Iterable[str]) -> None:
        self.blocked = list(resource_types)

    async def unblock_resources(self) -> None:
        self.blocked = None

    def on_response(self, callback: ResponseCallback) -> None:
        self.response_callbacks.append(callback)

    async def new_page(self) -> "FakePage":
        child = FakePage(viewport=self.viewport)
        child.elements = self.elements
        child.goto_errors = self.goto_errors
        self.children.append(child)
        return child

    async def close(self) -> None:
        self.closed = True


class FakeBrowser:
    """``BrowserConnection`` handing out a fixed page."""

    def __init__(self, page: FakePage, owns_browser: bool = True) -> None:
        self.page = page
        self._owns = owns_browser
        self.closed = False

    @property
    def owns_browser(self) -> bool:
        return self._owns

    async def new_page(self) -> FakePage:
        return self.page

    async def close(self) -> None:
        self.closed = True


@pytest.fixture()
def fake_page() -> FakePage:
    return FakePage()


@pytest.fixture()
def fake_element_factory() -> Callable[..., FakeElement]:
    return FakeElement


@pytest.fixture()
def fake_browser_factory() -> Callable[..., FakeBrowser]:
    return FakeBrowser


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


@pytest.fixture()
def settings(tmp_path: Path):
    """Settings with output under *tmp_path* and no cookies file."""
    from flexscrape.settings.config import Settings

    s = Settings()
    s.scrape.output_dir = str(tmp_path / "out")
    s.cookies.cookies_file = ""
    return s


@pytest.fixture()
def session(fake_page: FakePage, settings, rng: random.Random, fake_sleep: SleepRecorder):
    """An unopened ``Session`` on ``fake_page``; tests ``await session.open()``."""
    from flexscrape.browser.session import Session

    return Session(fake_page, settings=settings, rng=rng, sleep=fake_sleep, interactive=False)


# ---------------------------------------------------------------------------
# Pytest markers
# ---------------------------------------------------------------------------


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "integration: marks tests that require a real browser or network")
