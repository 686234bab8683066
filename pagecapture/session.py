"""One capture from request to delivered image."""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple, Union

from PIL import Image

from logic import KIND_FULL_PAGE, KIND_REGION, KIND_VISIBLE, CaptureSettings

from .compositor import CompositionPlan, Compositor
from .delivery import DeliveryJob, DeliveryOutcome, DeliveryPipeline
from .errors import (
    AllDeliveryFailed,
    CaptureBusy,
    CaptureError,
    CaptureSuperseded,
    CaptureTimeout,
    SelectionCancelled,
    SelectionTooSmall,
)
from .geometry import Point, Rect, TilePlan, normalize_rect, plan_full_surface_tiles, plan_region_tiles
from .primitive import CapturePrimitiveClient, SnapshotBackend, TileResult
from .scheduler import CaptureScheduler, RetryPolicy
from .synchronizer import ScrollableSurface, ScrollSynchronizer

logger = logging.getLogger(__name__)

Selection = Optional[Union[Rect, Tuple[Tuple[int, int], Tuple[int, int]]]]


class CaptureMode(str, Enum):
    FULL_SURFACE = "full-page"
    REGION = "region"
    VISIBLE = "visible-area"

    @property
    def kind(self) -> str:
        return {
            CaptureMode.FULL_SURFACE: KIND_FULL_PAGE,
            CaptureMode.REGION: KIND_REGION,
            CaptureMode.VISIBLE: KIND_VISIBLE,
        }[self]


class CaptureStatus(str, Enum):
    IDLE = "idle"
    PLANNING = "planning"
    CAPTURING = "capturing"
    COMPOSING = "composing"
    DELIVERING = "delivering"
    DONE = "done"
    FAILED = "failed"


_TRANSITIONS = {
    CaptureStatus.IDLE: {CaptureStatus.PLANNING},
    CaptureStatus.PLANNING: {CaptureStatus.CAPTURING},
    # CAPTURING -> PLANNING: visible-area fallback after a rate-limited timeout
    CaptureStatus.CAPTURING: {CaptureStatus.COMPOSING, CaptureStatus.PLANNING},
    CaptureStatus.COMPOSING: {CaptureStatus.DELIVERING, CaptureStatus.DONE},
    CaptureStatus.DELIVERING: {CaptureStatus.DONE},
    # FAILED -> DELIVERING: retry delivery of a kept raster
    CaptureStatus.FAILED: {CaptureStatus.DELIVERING},
    CaptureStatus.DONE: set(),
}


def rect_from_selection(selection: Selection, min_size: int = 5) -> Rect:
    """Validate what the region selector handed over.

    ``None`` means the user cancelled; a pair of points is a raw drag.
    """
    if selection is None:
        raise SelectionCancelled()
    rect = selection if isinstance(selection, Rect) else normalize_rect(*selection)
    if rect.width < min_size or rect.height < min_size:
        raise SelectionTooSmall(rect.width, rect.height, min_size)
    return rect


class CaptureListener:
    """Receives progress and the terminal outcome. All methods are optional."""

    def on_status(self, session: "CaptureSession", status: CaptureStatus) -> None:
        pass

    def on_progress(self, completed: int, total: int) -> None:
        pass

    def on_succeeded(self, result: "CaptureResult") -> None:
        pass

    def on_failed(self, reason: str) -> None:
        pass


@dataclass(frozen=True)
class CaptureResult:
    mode: CaptureMode
    raster: Image.Image
    outcome: Optional[DeliveryOutcome]
    tiles: int
    fallback: bool = False


class CaptureCoordinator:
    """Process-wide single-flight guard and owner of the generation token.

    Sessions run on different worker threads, so every state change happens
    under one lock. A session counts as active from the moment :meth:`begin`
    accepts it until :meth:`release`.
    """

    def __init__(self, policy: str = "supersede") -> None:
        if policy not in ("supersede", "reject"):
            raise ValueError(f"Unknown concurrency policy: {policy}")
        self.policy = policy
        self._lock = threading.Lock()
        self._generation = 0
        self._active: Optional["CaptureSession"] = None

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def active(self) -> Optional["CaptureSession"]:
        return self._active

    def begin(self, session: "CaptureSession") -> int:
        with self._lock:
            active = self._active
            if active is not None and active is not session:
                if self.policy == "reject":
                    raise CaptureBusy("another capture is already in progress")
                logger.info("Superseding capture generation %d", active.generation)
            self._generation += 1
            self._active = session
            session.generation = self._generation
            return self._generation

    def is_current(self, token: int) -> bool:
        with self._lock:
            return token == self._generation

    def cancel(self) -> None:
        """Invalidate whatever is in flight."""
        with self._lock:
            self._generation += 1
            self._active = None

    def release(self, session: "CaptureSession") -> None:
        with self._lock:
            if self._active is session:
                self._active = None


_default_coordinator: Optional[CaptureCoordinator] = None


def default_coordinator() -> CaptureCoordinator:
    global _default_coordinator
    if _default_coordinator is None:
        _default_coordinator = CaptureCoordinator()
    return _default_coordinator


class CaptureSession:
    """Owns one capture: planning, tile acquisition, composition and delivery.

    A session runs once. The raster survives a failed delivery so that
    :meth:`retry_delivery` can try again; tiles are dropped on any failure.
    """

    def __init__(
        self,
        mode: Union[CaptureMode, str],
        surface: ScrollableSurface,
        backend: SnapshotBackend,
        *,
        region: Selection = None,
        settings: Optional[CaptureSettings] = None,
        pipeline: Optional[DeliveryPipeline] = None,
        coordinator: Optional[CaptureCoordinator] = None,
        listener: Optional[CaptureListener] = None,
        compositor: Optional[Compositor] = None,
    ) -> None:
        self.mode = CaptureMode(mode)
        self.settings = settings or CaptureSettings()
        self.region: Optional[Rect] = None
        if self.mode is CaptureMode.REGION:
            self.region = rect_from_selection(region, self.settings.min_selection)

        self.surface = surface
        self.client = CapturePrimitiveClient(backend, self.settings.match_tolerance)
        self.synchronizer = ScrollSynchronizer(
            surface,
            tolerance=self.settings.scroll_tolerance,
            max_ticks=self.settings.scroll_max_ticks,
        )
        self.scheduler = CaptureScheduler(
            self.client,
            self.synchronizer,
            settle_delay=self.settings.settle_delay,
            request_interval=self.settings.request_interval,
            completion_timeout=self.settings.completion_timeout,
            retry_policy=RetryPolicy(backoff=self.settings.rate_limit_backoff),
        )
        self.compositor = compositor or Compositor()
        self.pipeline = pipeline
        self.coordinator = coordinator or default_coordinator()
        self.listener = listener or CaptureListener()

        self.status = CaptureStatus.IDLE
        self.generation = 0
        self.plan: Optional[TilePlan] = None
        self.composition: Optional[CompositionPlan] = None
        self.results: Dict[int, TileResult] = {}
        self.raster: Optional[Image.Image] = None
        self.outcome: Optional[DeliveryOutcome] = None
        self.error: Optional[BaseException] = None
        self.fallback = False

    # ---- state -----------------------------------------------------
    @property
    def kind(self) -> str:
        return CaptureMode.VISIBLE.kind if self.fallback else self.mode.kind

    def _transition(self, status: CaptureStatus) -> None:
        if status not in _TRANSITIONS[self.status]:
            raise RuntimeError(f"Illegal capture transition {self.status.value} -> {status.value}")
        logger.debug("Capture %d: %s -> %s", self.generation, self.status.value, status.value)
        self.status = status
        self.listener.on_status(self, status)

    def _ensure_current(self) -> None:
        if not self.coordinator.is_current(self.generation):
            raise CaptureSuperseded("capture was superseded by a newer request")

    def _release_tiles(self) -> None:
        self.results.clear()

    def _fail(self, exc: BaseException, summary: Optional[str]) -> None:
        self.error = exc
        self._release_tiles()
        self.status = CaptureStatus.FAILED
        self.listener.on_status(self, CaptureStatus.FAILED)
        if summary is not None:
            logger.warning("Capture %d failed: %s", self.generation, summary)
            self.listener.on_failed(summary)

    # ---- capture ---------------------------------------------------
    async def _restore_scroll(self, position: Point) -> None:
        try:
            await self.surface.scroll_to(position.x, position.y)
        except Exception:  # noqa: BLE001
            logger.warning("Could not restore scroll position %s", tuple(position), exc_info=True)

    async def _plan(self, mode: CaptureMode, scroll: Point) -> Tuple[TilePlan, CompositionPlan]:
        viewport_w, viewport_h = await self.surface.get_viewport_size()
        if mode is CaptureMode.FULL_SURFACE:
            surface_w, surface_h = await self.surface.get_surface_size()
            return (
                plan_full_surface_tiles(surface_w, surface_h, viewport_w, viewport_h),
                CompositionPlan.full_surface(surface_w, surface_h),
            )
        target = self.region if mode is CaptureMode.REGION else Rect(scroll.x, scroll.y, viewport_w, viewport_h)
        return plan_region_tiles(target, viewport_w, viewport_h, scroll), CompositionPlan.region(target)

    async def _acquire(self, mode: CaptureMode) -> Image.Image:
        scroll = Point(*await self.surface.get_scroll_position())
        self.plan, self.composition = await self._plan(mode, scroll)
        self._ensure_current()
        self._transition(CaptureStatus.CAPTURING)
        logger.info("Capturing %s with %d tiles", mode.value, len(self.plan))
        self.listener.on_progress(0, len(self.plan))
        try:
            tiles = await self.scheduler.execute(
                self.plan,
                token=self.generation,
                is_current=self.coordinator.is_current,
                results=self.results,
                progress=self.listener.on_progress,
            )
        finally:
            if self.coordinator.is_current(self.generation):
                await self._restore_scroll(scroll)
        self._ensure_current()
        self._transition(CaptureStatus.COMPOSING)
        return await asyncio.to_thread(self.compositor.compose, self.composition, tiles.values())

    async def _capture(self) -> Image.Image:
        try:
            return await self._acquire(self.mode)
        except CaptureTimeout as exc:
            if not (exc.rate_limited and self.settings.visible_area_fallback and self.mode is not CaptureMode.VISIBLE):
                raise
            logger.warning("Rate limited capture timed out (%s), capturing the visible area instead", exc)
            self.fallback = True
            self._release_tiles()
            await asyncio.sleep(self.settings.rate_limit_backoff)
            self._ensure_current()
            self._transition(CaptureStatus.PLANNING)
            return await self._acquire(CaptureMode.VISIBLE)

    async def _deliver(self, pipeline: DeliveryPipeline) -> DeliveryOutcome:
        self._ensure_current()
        self._transition(CaptureStatus.DELIVERING)
        token = self.generation
        outcome = await pipeline.deliver(
            DeliveryJob(self.raster, self.kind),
            is_current=lambda: self.coordinator.is_current(token),
        )
        self._ensure_current()
        return outcome

    async def run(self) -> CaptureResult:
        if self.status is not CaptureStatus.IDLE:
            raise RuntimeError("A capture session can only run once")
        self.generation = self.coordinator.begin(self)
        try:
            self._transition(CaptureStatus.PLANNING)
            self.raster = await self._capture()
            total = len(self.plan) if self.plan is not None else 0
            self._release_tiles()
            if self.pipeline is not None:
                self.outcome = await self._deliver(self.pipeline)
            self._ensure_current()
            self._transition(CaptureStatus.DONE)
        except CaptureSuperseded as exc:
            logger.info("Capture %d discarded: %s", self.generation, exc)
            self._fail(exc, None)
            raise
        except (CaptureError, AllDeliveryFailed) as exc:
            self._fail(exc, exc.summary())
            raise
        except Exception as exc:
            stage = self.status.value
            self._fail(exc, f"{stage.capitalize()} failed: {exc}")
            raise CaptureError(str(exc), stage=stage) from exc
        finally:
            self.coordinator.release(self)

        result = CaptureResult(self.mode, self.raster, self.outcome, total, self.fallback)
        self.listener.on_succeeded(result)
        return result

    async def retry_delivery(self, pipeline: Optional[DeliveryPipeline] = None) -> DeliveryOutcome:
        """Deliver the kept raster again after :class:`AllDeliveryFailed`.

        The retry takes a fresh generation from the coordinator, so it obeys
        the same single-flight policy as a new capture.
        """
        pipeline = pipeline or self.pipeline
        if self.status is not CaptureStatus.FAILED or self.raster is None or pipeline is None:
            raise RuntimeError("Nothing to deliver")
        self.generation = self.coordinator.begin(self)
        try:
            self.outcome = await self._deliver(pipeline)
            self._transition(CaptureStatus.DONE)
        except CaptureSuperseded as exc:
            logger.info("Delivery retry %d discarded: %s", self.generation, exc)
            self._fail(exc, None)
            raise
        except AllDeliveryFailed as exc:
            self._fail(exc, exc.summary())
            raise
        finally:
            self.coordinator.release(self)
        return self.outcome
