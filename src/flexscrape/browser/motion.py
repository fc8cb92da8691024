"""Human-like cursor, scroll and dwell simulation.

The path maths lives in pure functions (``linear_path``, ``bezier_path``,
``click_point``, ``scroll_frames`` ...) so it can be checked without a
browser. ``MotionPlanner`` drives a ``PageDriver`` with those paths and keeps
the session's ``MouseState`` current after every intermediate point.

Every random draw goes through the ``random.Random`` handed to the planner
and every wait goes through its ``sleep`` callable, so a seeded generator
plus a no-op sleep gives a fully deterministic, instant run.
"""

from __future__ import annotations

import asyncio
import logging
import math
import random
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from flexscrape.browser.driver import BoundingBox, ElementHandle, PageDriver

logger = logging.getLogger(__name__)

Point = tuple[float, float]
SleepFn = Callable[[float], Awaitable[None]]

DEFAULT_START = (200.0, 200.0)

# Fractional sub-boxes swept when hovering an item: top-left, middle, bottom-right.
_HOVER_BOXES = ((0.0, 0.0), (0.3, 0.3), (0.6, 0.6))
_HOVER_FRACTION = 0.4

_ENSURE_CURSOR_SCRIPT = """
(color) => {
  let cursor = document.getElementById('debug-mouse');
  if (!cursor) {
    cursor = document.createElement('div');
    cursor.id = 'debug-mouse';
    Object.assign(cursor.style, {
      position: 'fixed', width: '10px', height: '10px', borderRadius: '50%',
      zIndex: '9999', pointerEvents: 'none', transition: 'all 0.05s linear',
    });
    document.body.appendChild(cursor);
  }
  cursor.style.background = color;
  cursor.style.display = 'block';
}
"""

_MOVE_CURSOR_SCRIPT = """
([x, y]) => {
  const cursor = document.getElementById('debug-mouse');
  if (cursor) { cursor.style.left = `${x}px`; cursor.style.top = `${y}px`; }
}
"""

MOUSELEAVE_SCRIPT = (
    "() => document.dispatchEvent(new MouseEvent('mouseleave', "
    "{bubbles: true, cancelable: true, view: window}))"
)
BLUR_SCRIPT = "() => window.dispatchEvent(new Event('blur'))"
FOCUS_SCRIPT = "() => window.dispatchEvent(new Event('focus'))"


@dataclass
class MouseState:
    """Last known cursor position."""

    x: float = DEFAULT_START[0]
    y: float = DEFAULT_START[1]
    last_move_at: float = field(default_factory=time.monotonic)

    def update(self, x: float, y: float) -> None:
        self.x = x
        self.y = y
        self.last_move_at = time.monotonic()


# ---------------------------------------------------------------------------
# Pure path maths
# ---------------------------------------------------------------------------


def ease_out_quad(t: float) -> float:
    return t * (2 - t)


def bezier_point(p0: Point, p1: Point, p2: Point, t: float) -> Point:
    """Point at *t* on the quadratic Bézier through control point *p1*."""
    u = 1 - t
    return (
        u * u * p0[0] + 2 * u * t * p1[0] + t * t * p2[0],
        u * u * p0[1] + 2 * u * t * p1[1] + t * t * p2[1],
    )


def linear_path(start: Point, end: Point, steps: int, rng: random.Random, noise: float = 5.0) -> list[Point]:
    """``steps + 1`` rounded points along the segment, each jittered by ±noise/2."""
    points = []
    for i in range(steps + 1):
        t = i / steps if steps else 1.0
        nx = (rng.random() - 0.5) * noise
        ny = (rng.random() - 0.5) * noise
        points.append(
            (
                round(start[0] + (end[0] - start[0]) * t + nx),
                round(start[1] + (end[1] - start[1]) * t + ny),
            )
        )
    return points


def bezier_path(start: Point, end: Point, steps: int, rng: random.Random, spread: float = 100.0) -> list[Point]:
    """``steps + 1`` rounded points on a curve whose control point is near the midpoint."""
    control = (
        (start[0] + end[0]) / 2 + rng.random() * spread - spread / 2,
        (start[1] + end[1]) / 2 + rng.random() * spread - spread / 2,
    )
    points = []
    for i in range(steps + 1):
        x, y = bezier_point(start, control, end, i / steps if steps else 1.0)
        points.append((round(x), round(y)))
    return points


def click_point(box: BoundingBox, rng: random.Random, spread: float = 0.2, inset: float = 5.0) -> Point:
    """Random point near the centre of *box*, kept *inset* px inside its edges.

    The offset from the centre is bounded by ``spread * min(width, height)``.
    Boxes too small for the inset get their exact centre.
    """
    cx, cy = box.center
    max_offset = min(box.width, box.height) * spread
    x = cx + (rng.random() - 0.5) * max_offset
    y = cy + (rng.random() - 0.5) * max_offset
    if box.width > 2 * inset:
        x = min(max(x, box.x + inset), box.right - inset)
    else:
        x = cx
    if box.height > 2 * inset:
        y = min(max(y, box.y + inset), box.bottom - inset)
    else:
        y = cy
    return (x, y)


def hover_boxes(box: BoundingBox) -> list[BoundingBox]:
    """Three overlapping sub-boxes progressing diagonally across *box*."""
    return [box.sub_box(fx, fy, _HOVER_FRACTION, _HOVER_FRACTION) for fx, fy in _HOVER_BOXES]


def in_padded_viewport(box: BoundingBox, viewport: tuple[float, float], padding: float = 0.2) -> bool:
    """True if *box* lies within the viewport grown by ``padding`` on every side."""
    vw, vh = viewport
    pad_x, pad_y = vw * padding, vh * padding
    return box.y >= -pad_y and box.x >= -pad_x and box.bottom <= vh + pad_y and box.right <= vw + pad_x


def scroll_frames(start: Point, target: Point, duration_ms: float, frame_ms: float = 16.0) -> list[Point]:
    """Scroll positions for an ease-out-quad animation; the last frame is *target*."""
    n = max(1, math.ceil(duration_ms / frame_ms))
    dx, dy = target[0] - start[0], target[1] - start[1]
    return [
        (start[0] + dx * ease_out_quad(i / n), start[1] + dy * ease_out_quad(i / n))
        for i in range(1, n + 1)
    ]


def return_point_x(exit_x: float, width: float, rng: random.Random, min_distance: float = 200.0) -> float:
    """X on the top edge at least *min_distance* from *exit_x* (farthest edge if none fits)."""
    spans: list[tuple[float, float]] = []
    if exit_x - min_distance >= 0:
        spans.append((0.0, exit_x - min_distance))
    if exit_x + min_distance <= width:
        spans.append((exit_x + min_distance, width))
    if not spans:
        return 0.0 if exit_x > width / 2 else width
    r = rng.uniform(0, sum(hi - lo for lo, hi in spans))
    for lo, hi in spans:
        if r <= hi - lo:
            return lo + r
        r -= hi - lo
    return spans[-1][1]


def _span(margin: float, extent: float) -> tuple[float, float]:
    if extent > 2 * margin:
        return margin, extent - margin
    return extent / 2, extent / 2


# ---------------------------------------------------------------------------
# Planner
# ---------------------------------------------------------------------------


class MotionPlanner:
    """Drives cursor and scroll on one page.

    Args:
        page: Page the motions are applied to.
        state: Shared cursor state; mutated after every move.
        rng: Random source for every path, offset and delay.
        sleep: Awaitable sleep taking seconds.
        debug: Mirror the cursor with an in-page overlay.
    """

    def __init__(
        self,
        page: PageDriver,
        state: MouseState | None = None,
        *,
        rng: random.Random | None = None,
        sleep: SleepFn = asyncio.sleep,
        debug: bool = False,
    ) -> None:
        self.page = page
        self.state = state or MouseState()
        self.rng = rng or random.Random()
        self.sleep = sleep
        self.debug = debug
        self.cursor_color = "red"

    async def pause(self, min_ms: float, max_ms: float) -> float:
        """Sleep a uniform random duration in ``[min_ms, max_ms]``; return it in ms."""
        delay = self.rng.uniform(min_ms, max_ms)
        await self.sleep(delay / 1000)
        return delay

    # -- debug overlay -----------------------------------------------------

    async def ensure_cursor(self) -> None:
        if self.debug:
            await self.page.evaluate(_ENSURE_CURSOR_SCRIPT, self.cursor_color)

    async def _track(self, x: float, y: float) -> None:
        self.state.update(x, y)
        if self.debug:
            await self.page.evaluate(_MOVE_CURSOR_SCRIPT, [x, y])

    # -- primitives --------------------------------------------------------

    async def move_to(
        self,
        x: float,
        y: float,
        *,
        steps: int = 30,
        min_delay_ms: float = 20,
        max_delay_ms: float = 50,
        use_bezier: bool = True,
    ) -> float:
        """Move the cursor to ``(x, y)`` along a human-looking path.

        Returns:
            Total milliseconds slept along the way.
        """
        start = (self.state.x, self.state.y)
        linear = self.rng.random() < 0.5 or not use_bezier
        if linear:
            path = linear_path(start, (x, y), steps, self.rng)
        else:
            path = bezier_path(start, (x, y), steps, self.rng)

        await self.ensure_cursor()
        spent = 0.0
        for px, py in path:
            await self.page.mouse_move(px, py)
            await self._track(px, py)
            spent += await self.pause(min_delay_ms, max_delay_ms)

        await self.page.mouse_move(x, y)
        await self._track(x, y)
        return spent

    async def click_at(self, x: float, y: float) -> None:
        logger.debug("Clicking at x=%d, y=%d", round(x), round(y))
        await self.move_to(x, y)
        await self.page.mouse_click(x, y)

    async def jump_to(self, x: float, y: float) -> None:
        """Place the cursor without an animated path."""
        await self.page.mouse_move(x, y)
        await self._track(x, y)

    async def scroll_into_view(self, element: ElementHandle) -> BoundingBox | None:
        """Scroll *element* near the viewport centre unless already (nearly) visible.

        Returns the element's box after scrolling, or ``None`` if it has no
        layout box.
        """
        box = await element.bounding_box()
        if box is None:
            return None
        viewport = await self.page.viewport_size()
        if in_padded_viewport(box, viewport):
            return box

        vw, vh = viewport
        sx, sy = await self.page.scroll_position()
        target = (
            sx + box.x - vw / 2 + (self.rng.random() - 0.5) * 100,
            sy + box.y - vh / 2 + (self.rng.random() - 0.5) * 100,
        )
        duration = self.rng.uniform(800, 1500)
        frames = scroll_frames((sx, sy), target, duration)
        frame_delay = duration / len(frames) / 1000
        for fx, fy in frames:
            await self.page.scroll_to(fx, fy)
            await self.sleep(frame_delay)

        # Overshoot slightly, then correct.
        await self.page.scroll_to(
            target[0] + (self.rng.random() - 0.5) * 20,
            target[1] + (self.rng.random() - 0.5) * 20,
        )
        await self.pause(50, 200)
        await self.page.scroll_to(*target)
        await self.pause(500, 1000)
        return await element.bounding_box()

    # -- composite motions -------------------------------------------------

    async def hover(self, box: BoundingBox, hover_ms: tuple[float, float] = (300, 1000)) -> None:
        """Sweep three points across *box*, dwelling at each."""
        for sub in hover_boxes(box):
            await self.move_to(*click_point(sub, self.rng))
            await self.pause(*hover_ms)

    async def read_along(self, box: BoundingBox, text: str) -> None:
        """Trace left to right across *box* as if reading *text*."""
        n = len(text) // 50 + 2
        for i in range(n):
            x = box.x + box.width * (i / (n - 1))
            y = box.y + box.height * 0.5 + (self.rng.random() - 0.5) * 10
            await self.move_to(x, y)
            await self.pause(200, 500)

    async def wander(
        self,
        duration_ms: float = 5000,
        pause_ms: tuple[float, float] = (100, 500),
        margin: float = 100,
    ) -> int:
        """Random cursor movements for ``duration_ms`` ±10%.

        Time is budgeted from the delays actually requested, so the loop
        terminates under a fake sleep too. Returns the number of moves made.
        """
        budget = duration_ms + (self.rng.random() * 0.2 - 0.1) * duration_ms
        width, height = await self.page.viewport_size()
        x_lo, x_hi = _span(margin, width)
        y_lo, y_hi = _span(margin, height)

        elapsed = 0.0
        moves = 0
        while elapsed < budget:
            target = (self.rng.uniform(x_lo, x_hi), self.rng.uniform(y_lo, y_hi))
            elapsed += await self.move_to(
                *target,
                steps=self.rng.randint(20, 49),
                min_delay_ms=10,
                max_delay_ms=30,
                use_bezier=self.rng.random() > 0.3,
            )
            elapsed += await self.pause(*pause_ms)
            moves += 1
        return moves

    async def step_out(
        self,
        duration_ms: tuple[float, float] = (2000, 10000),
        move_back_ms: tuple[float, float] = (500, 2000),
    ) -> float:
        """Leave the window through the top edge, stay away, then come back.

        Returns:
            Milliseconds spent outside the window.
        """
        base = self.rng.uniform(*duration_ms)
        away = base + (self.rng.random() * 0.2 - 0.1) * base
        width, _height = await self.page.viewport_size()
        exit_x = self.rng.random() * width

        await self.move_to(exit_x, 0)
        await self.page.evaluate(MOUSELEAVE_SCRIPT)
        await self.page.evaluate(BLUR_SCRIPT)
        logger.info("Stepping out of window for %dms", round(away))
        await self.sleep(away / 1000)

        await self.page.evaluate(FOCUS_SCRIPT)
        await self.pause(*move_back_ms)

        self.state.update(return_point_x(exit_x, width, self.rng), 0)
        await self.wander(2000, (50, 200), 100)
        return away
