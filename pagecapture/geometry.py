"""Pure geometry for tile planning: rectangles, tile grids, intersections.

All coordinates are logical pixels in the scrollable surface's coordinate
space (not relative to the viewport).
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterator, NamedTuple, Optional, Sequence, Tuple


class Point(NamedTuple):
    x: int
    y: int


@dataclass(frozen=True)
class Rect:
    x: int
    y: int
    width: int
    height: int

    def __post_init__(self) -> None:
        if self.width < 0 or self.height < 0:
            raise ValueError(f"Rect size must be non-negative, got {self.width}x{self.height}")

    @property
    def right(self) -> int:
        return self.x + self.width

    @property
    def bottom(self) -> int:
        return self.y + self.height

    @property
    def is_empty(self) -> bool:
        return self.width == 0 or self.height == 0

    def contains(self, other: "Rect") -> bool:
        return (
            other.x >= self.x
            and other.y >= self.y
            and other.right <= self.right
            and other.bottom <= self.bottom
        )

    def translated(self, dx: int, dy: int) -> "Rect":
        return Rect(self.x + dx, self.y + dy, self.width, self.height)

    def as_box(self) -> Tuple[int, int, int, int]:
        """PIL-style ``(left, top, right, bottom)`` box."""
        return (self.x, self.y, self.right, self.bottom)


@dataclass(frozen=True)
class TileSpec:
    index: int
    origin_x: int
    origin_y: int

    @property
    def origin(self) -> Point:
        return Point(self.origin_x, self.origin_y)


@dataclass(frozen=True)
class TilePlan:
    tiles: Tuple[TileSpec, ...]
    viewport_width: int
    viewport_height: int

    def __iter__(self) -> Iterator[TileSpec]:
        return iter(self.tiles)

    def __len__(self) -> int:
        return len(self.tiles)

    def __getitem__(self, index: int) -> TileSpec:
        return self.tiles[index]


def _check_viewport(viewport_width: int, viewport_height: int) -> None:
    if viewport_width <= 0 or viewport_height <= 0:
        raise ValueError(f"Viewport must be positive, got {viewport_width}x{viewport_height}")


def _grid(xs: Sequence[int], ys: Sequence[int]) -> Tuple[TileSpec, ...]:
    # row-major: left to right, then top to bottom
    tiles = []
    for y in ys:
        for x in xs:
            tiles.append(TileSpec(len(tiles), x, y))
    return tuple(tiles)


def plan_full_surface_tiles(
    surface_width: int, surface_height: int, viewport_width: int, viewport_height: int
) -> TilePlan:
    """Cover the whole surface with viewport-sized tiles, no upper bound on the count."""
    _check_viewport(viewport_width, viewport_height)
    rows = math.ceil(max(0, surface_height) / viewport_height)
    cols = math.ceil(max(0, surface_width) / viewport_width)
    xs = [col * viewport_width for col in range(cols)]
    ys = [row * viewport_height for row in range(rows)]
    return TilePlan(_grid(xs, ys), viewport_width, viewport_height)


def plan_region_tiles(
    target: Rect,
    viewport_width: int,
    viewport_height: int,
    scroll: Point = Point(0, 0),
) -> TilePlan:
    """Plan the tiles needed to cover ``target``.

    A target that fits inside the frame currently shown at ``scroll`` needs a
    single tile at that scroll offset. Otherwise the plan is every
    viewport-aligned grid cell that intersects the target.
    """
    _check_viewport(viewport_width, viewport_height)
    current = Rect(scroll.x, scroll.y, viewport_width, viewport_height)
    if current.contains(target):
        return TilePlan((TileSpec(0, scroll.x, scroll.y),), viewport_width, viewport_height)

    start_x = (target.x // viewport_width) * viewport_width
    start_y = (target.y // viewport_height) * viewport_height
    xs = list(range(start_x, target.right, viewport_width))
    ys = list(range(start_y, target.bottom, viewport_height))

    tiles = []
    for y in ys:
        for x in xs:
            cell = Rect(x, y, viewport_width, viewport_height)
            if intersect(target, cell) is not None:
                tiles.append(TileSpec(len(tiles), x, y))
    return TilePlan(tuple(tiles), viewport_width, viewport_height)


def normalize_rect(p1: Tuple[int, int], p2: Tuple[int, int]) -> Rect:
    """Turn the two corners of a drag into a rectangle."""
    x1, y1 = p1
    x2, y2 = p2
    return Rect(min(x1, x2), min(y1, y2), abs(x1 - x2), abs(y1 - y2))


def intersect(a: Rect, b: Rect) -> Optional[Rect]:
    left = max(a.x, b.x)
    top = max(a.y, b.y)
    right = min(a.right, b.right)
    bottom = min(a.bottom, b.bottom)
    if right <= left or bottom <= top:
        return None
    return Rect(left, top, right - left, bottom - top)
