"""Error taxonomy of the tiled capture engine."""

from __future__ import annotations

from typing import List, Optional, Tuple

RATE_LIMIT_MARKERS = (
    "MAX_CAPTURE_VISIBLE_TAB_CALLS_PER_SECOND",
    "rate limit",
)


def is_rate_limit_message(message: str) -> bool:
    text = message or ""
    return any(marker.lower() in text.lower() for marker in RATE_LIMIT_MARKERS)


class CaptureError(Exception):
    """Base class for failures of a capture session.

    ``stage`` names the part of the session that failed; ``summary()`` is the
    one line shown to the user.
    """

    stage = "capture"

    def __init__(self, message: str = "", *, stage: Optional[str] = None) -> None:
        super().__init__(message)
        if stage is not None:
            self.stage = stage

    def summary(self) -> str:
        detail = str(self) or self.__class__.__name__
        return f"{self.stage.capitalize()} failed: {detail}"


class RateLimited(CaptureError):
    """The capture primitive refused a request because it was called too often."""


class ScrollTimeout(CaptureError):
    """The surface did not reach the requested scroll position in time."""

    stage = "scroll"


class CaptureTimeout(CaptureError):
    """Not every tile arrived before the completion deadline."""

    def __init__(self, completed: int, total: int, *, rate_limited: bool = False) -> None:
        super().__init__(f"only {completed} of {total} tiles completed")
        self.completed = completed
        self.total = total
        self.rate_limited = rate_limited


class PrimitiveError(CaptureError):
    def __init__(self, message: str, *, tile_index: Optional[int] = None) -> None:
        super().__init__(message)
        self.tile_index = tile_index

    def summary(self) -> str:
        if self.tile_index is None:
            return super().summary()
        return f"Capture failed at tile {self.tile_index + 1}: {self}"


class CaptureSuperseded(CaptureError):
    """The session was cancelled or replaced by a newer one."""


class CaptureBusy(CaptureError):
    """Another capture is still running and the policy rejects new ones."""


class SelectionError(Exception):
    """Region selection was rejected before planning started."""


class SelectionTooSmall(SelectionError):
    def __init__(self, width: int, height: int, minimum: int) -> None:
        super().__init__(f"Selection too small ({width}x{height}, minimum {minimum}px)")
        self.width = width
        self.height = height
        self.minimum = minimum


class SelectionCancelled(SelectionError):
    def __init__(self) -> None:
        super().__init__("Region selection cancelled")


class DeliveryError(Exception):
    pass


class ClipboardDenied(DeliveryError):
    """A clipboard stage could not place the image; the next stage should run."""


class AllDeliveryFailed(DeliveryError):
    """Every delivery stage failed. The raster is kept so delivery can be retried."""

    stage = "delivery"

    def __init__(self, raster, attempts: List[Tuple[str, str]]) -> None:
        names = ", ".join(name for name, _ in attempts) or "none"
        super().__init__(f"all delivery stages failed ({names})")
        self.raster = raster
        self.attempts = list(attempts)

    def summary(self) -> str:
        return f"Delivery failed: {self}"
