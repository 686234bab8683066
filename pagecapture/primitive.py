"""Client around the external, rate-limited "snapshot the current view" call."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from io import BytesIO
from typing import Any, Protocol, Tuple, Union

import numpy as np
from PIL import Image

from .errors import PrimitiveError, RateLimited, is_rate_limit_message
from .geometry import Point, Rect

Raster = Union[Image.Image, np.ndarray, bytes]


def as_image(raster: Raster) -> Image.Image:
    """Return ``raster`` as a PIL image in RGB or RGBA mode."""
    if isinstance(raster, Image.Image):
        img = raster
    elif isinstance(raster, np.ndarray):
        if raster.ndim != 3 or raster.shape[2] not in (3, 4):
            raise ValueError("Unsupported frame format")
        img = Image.fromarray(np.ascontiguousarray(raster, dtype=np.uint8))
    elif isinstance(raster, (bytes, bytearray)):
        img = Image.open(BytesIO(raster))
        img.load()
    else:
        raise TypeError(f"Unsupported raster type: {type(raster).__name__}")
    if img.mode not in ("RGB", "RGBA"):
        img = img.convert("RGBA")
    return img


@dataclass(frozen=True)
class SnapshotResponse:
    """One frame returned by the primitive.

    ``origin`` is the viewport origin the primitive reports for the frame. It
    echoes the hint the request was tagged with and is only approximately equal
    to it.
    """

    origin: Point
    raster: Any
    device_pixel_scale: float = 1.0


@dataclass(frozen=True)
class TileResult:
    index: int
    raster: Any
    origin_x: int
    origin_y: int
    device_pixel_scale: float = 1.0

    def image(self) -> Image.Image:
        return as_image(self.raster)

    def logical_size(self) -> Tuple[int, int]:
        img = self.image()
        scale = self.device_pixel_scale or 1.0
        return (int(round(img.width / scale)), int(round(img.height / scale)))

    def rect(self) -> Rect:
        width, height = self.logical_size()
        return Rect(self.origin_x, self.origin_y, width, height)


class SnapshotBackend(Protocol):
    async def snapshot(self, origin_hint: Point) -> SnapshotResponse: ...


def origins_match(reported: Point, requested: Point, tolerance: int = 5) -> bool:
    return abs(reported.x - requested.x) <= tolerance and abs(reported.y - requested.y) <= tolerance


class CapturePrimitiveClient:
    """Typed request/response access to the capture primitive.

    Pacing is not enforced here; the scheduler owns it. Rate-limit refusals are
    always raised as :class:`RateLimited`, every other failure as
    :class:`PrimitiveError`.
    """

    def __init__(self, backend: SnapshotBackend, match_tolerance: int = 5) -> None:
        self._backend = backend
        self.match_tolerance = match_tolerance
        self.requests = 0

    async def request_snapshot(self, origin_hint: Point) -> SnapshotResponse:
        self.requests += 1
        try:
            response = await self._backend.snapshot(Point(*origin_hint))
        except (RateLimited, PrimitiveError):
            raise
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if is_rate_limit_message(str(exc)):
                raise RateLimited(str(exc)) from exc
            raise PrimitiveError(str(exc) or exc.__class__.__name__) from exc

        if not isinstance(response, SnapshotResponse):
            response = SnapshotResponse(Point(*origin_hint), response)
        return response

    def matches(self, response: SnapshotResponse, requested: Point) -> bool:
        return origins_match(Point(*response.origin), Point(*requested), self.match_tolerance)
