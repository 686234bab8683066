"""Перемещение области просмотра с ожиданием фактической прокрутки."""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol, Tuple

from .errors import ScrollTimeout
from .geometry import Point

logger = logging.getLogger(__name__)

FRAME_INTERVAL = 1 / 60


class ScrollableSurface(Protocol):
    async def get_scroll_position(self) -> Tuple[int, int]: ...

    async def scroll_to(self, x: int, y: int) -> None: ...

    async def get_max_scroll(self) -> Tuple[int, int]: ...

    async def get_viewport_size(self) -> Tuple[int, int]: ...

    async def get_surface_size(self) -> Tuple[int, int]: ...


class ScrollSynchronizer:
    """Scrolls the surface and waits, best effort, until it reports the target."""

    def __init__(
        self,
        surface: ScrollableSurface,
        *,
        tolerance: int = 10,
        max_ticks: int = 60,
        frame_interval: float = FRAME_INTERVAL,
    ) -> None:
        self.surface = surface
        self.tolerance = tolerance
        self.max_ticks = max_ticks
        self.frame_interval = frame_interval

    def _settled(self, current: Point, target: Point, max_scroll: Point) -> bool:
        # страница часто не может доскроллить до последней строки/колонки
        x_ok = abs(current.x - target.x) < self.tolerance or current.x >= max_scroll.x
        y_ok = abs(current.y - target.y) < self.tolerance or current.y >= max_scroll.y
        return x_ok and y_ok

    async def move_to(self, target_x: int, target_y: int) -> Point:
        """Scroll and return the settled position.

        Raises :class:`ScrollTimeout` after ``max_ticks`` frames without
        convergence; the surface stays wherever it got to.
        """
        target = Point(int(target_x), int(target_y))
        await self.surface.scroll_to(target.x, target.y)

        ticks = 0
        while True:
            current = Point(*await self.surface.get_scroll_position())
            max_scroll = Point(*await self.surface.get_max_scroll())
            if self._settled(current, target, max_scroll):
                if current != target:
                    logger.debug("Scroll to %s settled at %s", tuple(target), tuple(current))
                return current
            if ticks >= self.max_ticks:
                raise ScrollTimeout(
                    f"scroll to {tuple(target)} did not settle after {ticks} frames, at {tuple(current)}"
                )
            ticks += 1
            await asyncio.sleep(self.frame_interval)

    async def position(self) -> Point:
        return Point(*await self.surface.get_scroll_position())
