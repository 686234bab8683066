"""Захват страницы целиком или области по тайлам с последующей склейкой."""

from .compositor import CompositionPlan, Compositor
from .delivery import DeliveryOutcome, DeliveryPipeline
from .geometry import Point, Rect, TilePlan, TileSpec, intersect, normalize_rect, plan_full_surface_tiles, plan_region_tiles
from .scheduler import CaptureScheduler, RetryPolicy
from .session import CaptureCoordinator, CaptureMode, CaptureSession, CaptureStatus
from .capture_manager import PageCaptureManager

__all__ = [
    "CaptureCoordinator",
    "CaptureMode",
    "CaptureScheduler",
    "CaptureSession",
    "CaptureStatus",
    "CompositionPlan",
    "Compositor",
    "DeliveryOutcome",
    "DeliveryPipeline",
    "PageCaptureManager",
    "Point",
    "Rect",
    "RetryPolicy",
    "TilePlan",
    "TileSpec",
    "intersect",
    "normalize_rect",
    "plan_full_surface_tiles",
    "plan_region_tiles",
]
