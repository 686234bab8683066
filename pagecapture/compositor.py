"""Сборка итогового изображения из захваченных тайлов."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from PIL import Image

from .geometry import Point, Rect, intersect
from .primitive import TileResult


@dataclass(frozen=True)
class Placement:
    """Part of a tile that lands on the output.

    ``source`` is in the tile's logical coordinates, ``dest`` in the output's.
    """

    index: int
    source: Rect
    dest: Rect


@dataclass(frozen=True)
class CompositionPlan:
    width: int
    height: int
    target: Optional[Rect] = None

    @classmethod
    def full_surface(cls, surface_width: int, surface_height: int) -> "CompositionPlan":
        return cls(surface_width, surface_height)

    @classmethod
    def region(cls, target: Rect) -> "CompositionPlan":
        return cls(target.width, target.height, target)

    @property
    def origin(self) -> Point:
        if self.target is None:
            return Point(0, 0)
        return Point(self.target.x, self.target.y)

    def bounds(self) -> Rect:
        """Output area in surface coordinates."""
        return Rect(self.origin.x, self.origin.y, self.width, self.height)

    def placements(self, tiles: Iterable[TileResult]) -> List[Placement]:
        bounds = self.bounds()
        result = []
        for tile in sorted(tiles, key=lambda t: t.index):
            overlap = intersect(bounds, tile.rect())
            if overlap is None:
                continue
            result.append(
                Placement(
                    tile.index,
                    overlap.translated(-tile.origin_x, -tile.origin_y),
                    overlap.translated(-bounds.x, -bounds.y),
                )
            )
        return result


class Compositor:
    """Рисует тайлы на холсте в логических пикселях поверхности.

    Тайл с ``device_pixel_scale`` > 1 вырезается в физических пикселях и
    масштабируется до логического размера, так что все тайлы и результат
    живут в одной системе координат.
    """

    def __init__(self, mode: str = "RGB", background: Tuple[int, ...] = (255, 255, 255)) -> None:
        self.mode = mode
        self.background = background

    def _piece(self, tile: TileResult, placement: Placement) -> Image.Image:
        img = tile.image()
        scale = tile.device_pixel_scale or 1.0
        src = placement.source
        if scale == 1.0:
            piece = img.crop(src.as_box())
        else:
            box = (
                int(round(src.x * scale)),
                int(round(src.y * scale)),
                min(img.width, int(round(src.right * scale))),
                min(img.height, int(round(src.bottom * scale))),
            )
            piece = img.crop(box)
            if piece.size != (placement.dest.width, placement.dest.height):
                piece = piece.resize(
                    (placement.dest.width, placement.dest.height), Image.Resampling.LANCZOS
                )
        if piece.mode != self.mode:
            piece = piece.convert(self.mode)
        return piece

    def compose(self, plan: CompositionPlan, tiles: Iterable[TileResult]) -> Image.Image:
        if plan.width <= 0 or plan.height <= 0:
            raise ValueError(f"Nothing to compose into a {plan.width}x{plan.height} canvas")
        tiles = list(tiles)
        by_index = {tile.index: tile for tile in tiles}
        canvas = Image.new(self.mode, (plan.width, plan.height), self.background)
        # later tiles overwrite the overlap of clamped edge tiles
        for placement in plan.placements(tiles):
            piece = self._piece(by_index[placement.index], placement)
            canvas.paste(piece, (placement.dest.x, placement.dest.y))
        return canvas
