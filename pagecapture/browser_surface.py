"""Playwright page adapters for the scrollable-surface and snapshot contracts."""

from __future__ import annotations

import asyncio
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from io import BytesIO
from typing import AsyncIterator, Deque, Optional, Tuple

from PIL import Image

from .errors import RateLimited
from .geometry import Point
from .primitive import SnapshotResponse

_SURFACE_SIZE_JS = """() => {
  const b = document.body, d = document.documentElement;
  const width = Math.max(b ? b.scrollWidth : 0, b ? b.offsetWidth : 0,
                         d.clientWidth, d.scrollWidth, d.offsetWidth);
  const height = Math.max(b ? b.scrollHeight : 0, b ? b.offsetHeight : 0,
                          d.clientHeight, d.scrollHeight, d.offsetHeight);
  return [width, height];
}"""

_MAX_SCROLL_JS = """() => {
  const d = document.documentElement;
  return [Math.max(0, d.scrollWidth - window.innerWidth),
          Math.max(0, d.scrollHeight - window.innerHeight)];
}"""


class PlaywrightSurface:
    def __init__(self, page) -> None:
        self.page = page

    async def get_scroll_position(self) -> Tuple[int, int]:
        x, y = await self.page.evaluate("() => [Math.round(window.scrollX), Math.round(window.scrollY)]")
        return int(x), int(y)

    async def scroll_to(self, x: int, y: int) -> None:
        await self.page.evaluate("([x, y]) => window.scrollTo(x, y)", [int(x), int(y)])

    async def get_max_scroll(self) -> Tuple[int, int]:
        x, y = await self.page.evaluate(_MAX_SCROLL_JS)
        return int(x), int(y)

    async def get_viewport_size(self) -> Tuple[int, int]:
        w, h = await self.page.evaluate("() => [window.innerWidth, window.innerHeight]")
        return int(w), int(h)

    async def get_surface_size(self) -> Tuple[int, int]:
        w, h = await self.page.evaluate(_SURFACE_SIZE_JS)
        return int(w), int(h)


class PlaywrightSnapshotter:
    """Viewport screenshots of a page.

    ``max_per_second`` reproduces a host-side capture quota: calls beyond it
    fail with :class:`RateLimited` instead of being delayed.
    """

    def __init__(self, page, *, max_per_second: Optional[float] = None) -> None:
        self.page = page
        self.max_per_second = max_per_second
        self._calls: Deque[float] = deque()

    def _check_quota(self) -> None:
        if not self.max_per_second:
            return
        now = time.monotonic()
        while self._calls and now - self._calls[0] >= 1.0:
            self._calls.popleft()
        if len(self._calls) >= self.max_per_second:
            raise RateLimited("MAX_CAPTURE_VISIBLE_TAB_CALLS_PER_SECOND quota exceeded")
        self._calls.append(now)

    async def snapshot(self, origin_hint: Point) -> SnapshotResponse:
        self._check_quota()
        data = await self.page.screenshot(type="png", full_page=False)
        scale = await self.page.evaluate("() => window.devicePixelRatio || 1")
        img = await asyncio.to_thread(_decode_png, data)
        return SnapshotResponse(Point(*origin_hint), img, float(scale))


def _decode_png(data: bytes) -> Image.Image:
    img = Image.open(BytesIO(data))
    img.load()
    return img


@dataclass
class BrowserTarget:
    surface: PlaywrightSurface
    backend: PlaywrightSnapshotter


@asynccontextmanager
async def open_page(
    url: str,
    *,
    width: int = 1280,
    height: int = 800,
    scale: float = 1.0,
    headless: bool = True,
    wait_until: str = "networkidle",
    max_per_second: Optional[float] = None,
) -> AsyncIterator[BrowserTarget]:
    """Launch Chromium, open ``url`` and yield a capture target for it."""
    from playwright.async_api import async_playwright

    async with async_playwright() as playwright:
        browser = await playwright.chromium.launch(
            headless=headless,
            args=["--no-sandbox", "--disable-dev-shm-usage"],
        )
        try:
            context = await browser.new_context(
                viewport={"width": width, "height": height},
                device_scale_factor=scale,
            )
            page = await context.new_page()
            await page.goto(url, wait_until=wait_until)
            yield BrowserTarget(PlaywrightSurface(page), PlaywrightSnapshotter(page, max_per_second=max_per_second))
        finally:
            await browser.close()
