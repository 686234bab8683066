"""Планировщик захвата тайлов: прокрутка, пауза, запрос, сопоставление ответа."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional, Tuple, Type

from .errors import CaptureSuperseded, CaptureTimeout, PrimitiveError, RateLimited, ScrollTimeout
from .geometry import Point, TilePlan, TileSpec
from .primitive import CapturePrimitiveClient, SnapshotResponse, TileResult
from .synchronizer import ScrollSynchronizer

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


@dataclass(frozen=True)
class RetryPolicy:
    """Which failures are retried, and after how long.

    ``max_attempts=None`` retries without limit.
    """

    backoff: float = 2.0
    retry_on: Tuple[Type[BaseException], ...] = (RateLimited,)
    max_attempts: Optional[int] = None

    def should_retry(self, exc: BaseException, attempt: int) -> bool:
        if not isinstance(exc, self.retry_on):
            return False
        return self.max_attempts is None or attempt + 1 < self.max_attempts

    def delay(self, attempt: int) -> float:
        return self.backoff


class CaptureScheduler:
    """Runs a tile plan against the capture primitive, one request at a time.

    Requests are issued in plan order but answers may arrive in any order; each
    answer is matched to its tile by the origin it reports. Only the scheduler
    talks to the primitive.
    """

    def __init__(
        self,
        client: CapturePrimitiveClient,
        synchronizer: ScrollSynchronizer,
        *,
        settle_delay: float = 0.3,
        request_interval: float = 0.7,
        completion_timeout: float = 30.0,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self.client = client
        self.synchronizer = synchronizer
        self.settle_delay = settle_delay
        self.request_interval = request_interval
        self.completion_timeout = completion_timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self.rate_limited = 0
        self.attempts: Dict[int, int] = {}

    # ---- helpers ---------------------------------------------------
    @staticmethod
    def _ensure_current(token: int, is_current: Callable[[int], bool]) -> None:
        if not is_current(token):
            raise CaptureSuperseded("capture was superseded by a newer request")

    async def _dispatch(self, spec: TileSpec) -> Tuple["asyncio.Task[SnapshotResponse]", Point]:
        try:
            await self.synchronizer.move_to(spec.origin_x, spec.origin_y)
        except ScrollTimeout as exc:
            logger.warning("Tile %d: %s, capturing anyway", spec.index, exc)
        await asyncio.sleep(self.settle_delay)
        settled = await self.synchronizer.position()
        self.attempts[spec.index] = self.attempts.get(spec.index, 0) + 1
        task = asyncio.ensure_future(self.client.request_snapshot(spec.origin))
        # запрос должен уйти до следующей прокрутки
        await asyncio.sleep(0)
        return task, settled

    def _correlate(
        self,
        response: SnapshotResponse,
        plan: TilePlan,
        waiting: Dict[int, "asyncio.Future[TileResult]"],
        settled: Dict[int, Point],
        results: Dict[int, TileResult],
        progress: Optional[ProgressCallback],
    ) -> Optional[TileResult]:
        for index, future in waiting.items():
            if future.done():
                continue
            spec = plan[index]
            if not self.client.matches(response, spec.origin):
                continue
            origin = settled.get(index, spec.origin)
            tile = TileResult(index, response.raster, origin.x, origin.y, response.device_pixel_scale)
            future.set_result(tile)
            results[index] = tile
            if progress is not None:
                progress(sum(1 for f in waiting.values() if f.done()), len(plan))
            return tile
        logger.debug("No pending tile matches a response at %s, dropping it", tuple(response.origin))
        return None

    # ---- main loop -------------------------------------------------
    async def execute(
        self,
        plan: TilePlan,
        *,
        token: int,
        is_current: Callable[[int], bool],
        results: Dict[int, TileResult],
        progress: Optional[ProgressCallback] = None,
    ) -> Dict[int, TileResult]:
        """Acquire every tile of ``plan`` and return them keyed by index.

        ``results`` receives each tile as soon as it is correlated, and only
        while ``is_current(token)`` holds.
        """
        loop = asyncio.get_running_loop()
        waiting: Dict[int, asyncio.Future] = {spec.index: loop.create_future() for spec in plan}
        queue: Deque[Tuple[TileSpec, int]] = deque((spec, 0) for spec in plan)
        ready_at: Dict[int, float] = {}
        settled: Dict[int, Point] = {}
        in_flight: Dict[asyncio.Task, Tuple[TileSpec, int]] = {}
        deadline: Optional[float] = None
        self.rate_limited = 0
        self.attempts = {}

        def collect() -> None:
            for task in [t for t in in_flight if t.done()]:
                spec, attempt = in_flight.pop(task)
                if task.cancelled():
                    continue
                exc = task.exception()
                if not is_current(token):
                    logger.debug("Discarding tile %d answer from a superseded session", spec.index)
                    continue
                if exc is None:
                    self._correlate(task.result(), plan, waiting, settled, results, progress)
                elif self.retry_policy.should_retry(exc, attempt):
                    self.rate_limited += 1
                    logger.info("Tile %d rate limited, retrying in %.1fs", spec.index, self.retry_policy.delay(attempt))
                    ready_at[spec.index] = loop.time() + self.retry_policy.delay(attempt)
                    queue.append((spec, attempt + 1))
                elif isinstance(exc, PrimitiveError):
                    exc.tile_index = spec.index
                    raise exc
                else:
                    raise PrimitiveError(str(exc), tile_index=spec.index) from exc
            self._ensure_current(token, is_current)

        def check_deadline() -> None:
            if deadline is not None and loop.time() >= deadline:
                completed = sum(1 for f in waiting.values() if f.done())
                raise CaptureTimeout(completed, len(plan), rate_limited=self.rate_limited > 0)

        try:
            while True:
                collect()
                if all(f.done() for f in waiting.values()):
                    break
                # отсчёт начинается, когда весь план хотя бы раз отправлен
                if deadline is None and len(self.attempts) == len(plan):
                    deadline = loop.time() + self.completion_timeout
                check_deadline()

                if queue:
                    spec, attempt = queue.popleft()
                    wait = ready_at.pop(spec.index, loop.time()) - loop.time()
                    if deadline is not None:
                        wait = min(wait, deadline - loop.time())
                    if wait > 0:
                        await asyncio.sleep(wait)
                    self._ensure_current(token, is_current)
                    check_deadline()
                    task, settled[spec.index] = await self._dispatch(spec)
                    in_flight[task] = (spec, attempt)
                    await asyncio.sleep(self.request_interval)
                    continue

                remaining = deadline - loop.time()
                if not in_flight or remaining <= 0:
                    completed = sum(1 for f in waiting.values() if f.done())
                    raise CaptureTimeout(completed, len(plan), rate_limited=self.rate_limited > 0)
                await asyncio.wait(list(in_flight), timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in in_flight:
                task.cancel()
            if in_flight:
                await asyncio.gather(*in_flight, return_exceptions=True)
            for future in waiting.values():
                if not future.done():
                    future.cancel()

        return {index: waiting[index].result() for index in sorted(waiting)}
