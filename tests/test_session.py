from pathlib import Path
import asyncio
import sys
import threading

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from fakes import FakeBackend, FakeSurface, RecordingClipboardSink, RecordingDownloadSink
from logic import CaptureSettings
from pagecapture.delivery import DeliveryMethod, DeliveryPipeline, DirectClipboardStage, DownloadStage
from pagecapture.errors import (
    AllDeliveryFailed,
    CaptureBusy,
    CaptureError,
    CaptureSuperseded,
    ClipboardDenied,
    PrimitiveError,
    SelectionCancelled,
    SelectionTooSmall,
)
from pagecapture.geometry import Rect
from pagecapture.session import (
    CaptureCoordinator,
    CaptureListener,
    CaptureMode,
    CaptureSession,
    CaptureStatus,
)

FAST = CaptureSettings(settle_delay=0, request_interval=0, rate_limit_backoff=0, completion_timeout=1.0)


class RecordingListener(CaptureListener):
    def __init__(self):
        self.statuses = []
        self.progress = []
        self.succeeded = []
        self.failed = []

    def on_status(self, session, status):
        self.statuses.append(status)

    def on_progress(self, completed, total):
        self.progress.append((completed, total))

    def on_succeeded(self, result):
        self.succeeded.append(result)

    def on_failed(self, reason):
        self.failed.append(reason)


class ExplodingCompositor:
    def compose(self, plan, tiles):
        raise RuntimeError("boom")


def _session(surface, backend, mode=CaptureMode.FULL_SURFACE, **kwargs):
    kwargs.setdefault("settings", FAST)
    kwargs.setdefault("coordinator", CaptureCoordinator())
    return CaptureSession(mode, surface, backend, **kwargs)


def test_full_page_capture_end_to_end():
    surface = FakeSurface(1800, 5000, scroll=(0, 1000))
    backend = FakeBackend(surface)
    clipboard = RecordingClipboardSink()
    listener = RecordingListener()
    session = _session(
        surface,
        backend,
        pipeline=DeliveryPipeline([DirectClipboardStage(clipboard)]),
        listener=listener,
    )

    result = asyncio.run(session.run())

    assert result.tiles == 27
    assert result.raster.size == (1800, 5000)
    assert result.raster.tobytes() == surface.page.tobytes()
    assert result.outcome.method is DeliveryMethod.CLIPBOARD
    assert clipboard.images == [result.raster]
    assert listener.statuses == [
        CaptureStatus.PLANNING,
        CaptureStatus.CAPTURING,
        CaptureStatus.COMPOSING,
        CaptureStatus.DELIVERING,
        CaptureStatus.DONE,
    ]
    assert listener.progress[0] == (0, 27)
    assert listener.progress[-1] == (27, 27)
    assert listener.succeeded == [result]
    assert session.results == {}
    assert (surface.x, surface.y) == (0, 1000)
    assert session.coordinator.active is None


def test_region_capture_across_four_tiles():
    surface = FakeSurface(1600, 1200)
    backend = FakeBackend(surface)
    session = _session(surface, backend, CaptureMode.REGION, region=((900, 700), (700, 500)))

    result = asyncio.run(session.run())

    assert session.region == Rect(700, 500, 200, 200)
    assert len(backend.calls) == 4
    assert result.outcome is None
    assert result.raster.tobytes() == surface.page.crop((700, 500, 900, 700)).tobytes()
    assert session.status is CaptureStatus.DONE


def test_region_inside_the_viewport_needs_one_snapshot():
    surface = FakeSurface(1600, 1200, scroll=(400, 300))
    backend = FakeBackend(surface)
    session = _session(surface, backend, CaptureMode.REGION, region=Rect(450, 350, 100, 50))

    result = asyncio.run(session.run())

    assert backend.calls == [(400, 300)]
    assert result.raster.tobytes() == surface.page.crop((450, 350, 550, 400)).tobytes()


def test_visible_area_capture():
    surface = FakeSurface(1600, 1200, scroll=(800, 600))
    backend = FakeBackend(surface)

    result = asyncio.run(_session(surface, backend, CaptureMode.VISIBLE).run())

    assert result.raster.tobytes() == surface.page.crop((800, 600, 1600, 1200)).tobytes()


def test_selection_is_validated_before_planning():
    surface = FakeSurface(800, 600)
    backend = FakeBackend(surface)

    with pytest.raises(SelectionTooSmall) as excinfo:
        _session(surface, backend, CaptureMode.REGION, region=((10, 10), (13, 200)))
    assert excinfo.value.width == 3

    with pytest.raises(SelectionCancelled):
        _session(surface, backend, CaptureMode.REGION, region=None)
    assert backend.calls == []


def test_primitive_failure_fails_the_session():
    surface = FakeSurface(800, 1800)
    backend = FakeBackend(surface, fail_at={(0, 600)})
    listener = RecordingListener()
    session = _session(surface, backend, listener=listener)

    with pytest.raises(PrimitiveError):
        asyncio.run(session.run())

    assert session.status is CaptureStatus.FAILED
    assert session.results == {}
    assert listener.failed == ["Capture failed at tile 2: tab was closed"]
    assert listener.succeeded == []
    assert session.coordinator.active is None


def test_unexpected_error_names_the_stage():
    surface = FakeSurface(800, 600)
    listener = RecordingListener()
    session = _session(surface, FakeBackend(surface), listener=listener, compositor=ExplodingCompositor())

    with pytest.raises(CaptureError) as excinfo:
        asyncio.run(session.run())

    assert excinfo.value.stage == "composing"
    assert listener.failed == ["Composing failed: boom"]


def test_reject_policy_refuses_a_second_capture():
    coordinator = CaptureCoordinator("reject")
    first_surface = FakeSurface(800, 1200)
    first = _session(
        first_surface,
        FakeBackend(first_surface, delays={(0, 600): 0.05}),
        coordinator=coordinator,
    )
    second_surface = FakeSurface(800, 600)
    second = _session(second_surface, FakeBackend(second_surface), coordinator=coordinator)

    async def scenario():
        running = asyncio.ensure_future(first.run())
        await asyncio.sleep(0.01)
        with pytest.raises(CaptureBusy):
            await second.run()
        return await running

    result = asyncio.run(scenario())

    assert result.raster.size == (800, 1200)
    assert second.status is CaptureStatus.IDLE


def test_newer_capture_supersedes_the_running_one():
    coordinator = CaptureCoordinator()
    old_surface = FakeSurface(800, 1200)
    old_listener = RecordingListener()
    old = _session(
        old_surface,
        FakeBackend(old_surface, delays={(0, 600): 0.05}),
        coordinator=coordinator,
        listener=old_listener,
    )
    new_surface = FakeSurface(800, 600)
    new = _session(new_surface, FakeBackend(new_surface), coordinator=coordinator)

    async def scenario():
        running = asyncio.ensure_future(old.run())
        await asyncio.sleep(0.01)
        result = await new.run()
        with pytest.raises(CaptureSuperseded):
            await running
        return result

    result = asyncio.run(scenario())

    assert result.raster.size == (800, 600)
    assert old.status is CaptureStatus.FAILED
    assert old.results == {}
    assert old_listener.failed == []
    assert old_listener.succeeded == []


def test_rate_limited_timeout_falls_back_to_the_visible_area():
    surface = FakeSurface(800, 1800)
    backend = FakeBackend(surface, always_rate_limit={(0, 600), (0, 1200)})
    download = RecordingDownloadSink([])
    listener = RecordingListener()
    settings = CaptureSettings(settle_delay=0, request_interval=0, rate_limit_backoff=0.01, completion_timeout=0.05)
    session = _session(
        surface,
        backend,
        settings=settings,
        pipeline=DeliveryPipeline([DownloadStage(download)]),
        listener=listener,
    )

    result = asyncio.run(session.run())

    assert result.fallback is True
    assert result.raster.size == (800, 600)
    assert result.raster.tobytes() == surface.page.crop((0, 0, 800, 600)).tobytes()
    assert download.saved[0][1].startswith("visible-area-screenshot-")
    assert listener.statuses.count(CaptureStatus.PLANNING) == 2


def test_failed_delivery_keeps_the_raster_for_a_retry():
    surface = FakeSurface(800, 600)
    failing = DeliveryPipeline([DownloadStage(RecordingDownloadSink([], fail=True))])
    session = _session(surface, FakeBackend(surface), pipeline=failing)

    with pytest.raises(AllDeliveryFailed):
        asyncio.run(session.run())
    assert session.status is CaptureStatus.FAILED
    assert session.raster is not None

    download = RecordingDownloadSink([])
    outcome = asyncio.run(session.retry_delivery(DeliveryPipeline([DownloadStage(download)])))

    assert outcome.method is DeliveryMethod.DOWNLOAD
    assert download.saved[0][0] is session.raster
    assert session.status is CaptureStatus.DONE


def test_session_runs_only_once():
    surface = FakeSurface(800, 600)
    session = _session(surface, FakeBackend(surface))
    asyncio.run(session.run())

    with pytest.raises(RuntimeError):
        asyncio.run(session.run())


def test_coordinator_cancel_invalidates_the_token():
    coordinator = CaptureCoordinator()
    surface = FakeSurface(800, 600)
    session = _session(surface, FakeBackend(surface), coordinator=coordinator)

    token = coordinator.begin(session)
    assert coordinator.is_current(token)
    coordinator.cancel()
    assert not coordinator.is_current(token)
    assert coordinator.active is None

    with pytest.raises(ValueError):
        CaptureCoordinator("queue")


class GatedClipboardSink:
    """Holds the clipboard write until the test opens the gate."""

    def __init__(self, deny=False):
        self.deny = deny
        self.entered = None
        self.gate = None
        self.images = []

    def arm(self):
        self.entered = asyncio.Event()
        self.gate = asyncio.Event()

    async def write(self, raster):
        self.entered.set()
        await self.gate.wait()
        if self.deny:
            raise ClipboardDenied("denied")
        self.images.append(raster)


@pytest.mark.parametrize("deny", [False, True])
def test_capture_superseded_while_delivering_delivers_nothing(deny):
    coordinator = CaptureCoordinator()
    old_surface = FakeSurface(800, 600)
    gated = GatedClipboardSink(deny=deny)
    download = RecordingDownloadSink([])
    old_listener = RecordingListener()
    old = _session(
        old_surface,
        FakeBackend(old_surface),
        coordinator=coordinator,
        listener=old_listener,
        pipeline=DeliveryPipeline([DirectClipboardStage(gated, timeout=None), DownloadStage(download)]),
    )
    new_surface = FakeSurface(800, 600)
    new_listener = RecordingListener()
    new = _session(new_surface, FakeBackend(new_surface), coordinator=coordinator, listener=new_listener)

    async def scenario():
        gated.arm()
        running = asyncio.ensure_future(old.run())
        await gated.entered.wait()
        assert old.status is CaptureStatus.DELIVERING
        result = await new.run()
        gated.gate.set()
        with pytest.raises(CaptureSuperseded):
            await running
        return result

    result = asyncio.run(scenario())

    assert CaptureStatus.CAPTURING in new_listener.statuses
    assert new_listener.succeeded == [result]
    assert old.status is CaptureStatus.FAILED
    assert old.outcome is None
    assert download.saved == []
    assert old_listener.succeeded == []
    assert old_listener.failed == []
    assert CaptureStatus.DONE not in old_listener.statuses
    assert coordinator.active is None


def test_delivery_retry_respects_the_reject_policy():
    coordinator = CaptureCoordinator("reject")
    surface = FakeSurface(800, 600)
    failing = DeliveryPipeline([DownloadStage(RecordingDownloadSink([], fail=True))])
    session = _session(surface, FakeBackend(surface), coordinator=coordinator, pipeline=failing)
    with pytest.raises(AllDeliveryFailed):
        asyncio.run(session.run())

    other_surface = FakeSurface(800, 600)
    other = _session(other_surface, FakeBackend(other_surface), coordinator=coordinator)
    coordinator.begin(other)
    download = RecordingDownloadSink([])

    with pytest.raises(CaptureBusy):
        asyncio.run(session.retry_delivery(DeliveryPipeline([DownloadStage(download)])))
    assert session.status is CaptureStatus.FAILED
    assert download.saved == []

    coordinator.release(other)
    outcome = asyncio.run(session.retry_delivery(DeliveryPipeline([DownloadStage(download)])))
    assert outcome.method is DeliveryMethod.DOWNLOAD
    assert session.status is CaptureStatus.DONE
    assert coordinator.active is None


def test_delivery_retry_needs_a_failed_session():
    surface = FakeSurface(800, 600)
    session = _session(surface, FakeBackend(surface))
    asyncio.run(session.run())

    with pytest.raises(RuntimeError):
        asyncio.run(session.retry_delivery(DeliveryPipeline([DownloadStage(RecordingDownloadSink([]))])))
    assert session.status is CaptureStatus.DONE


def _begin_concurrently(coordinator, sessions):
    barrier = threading.Barrier(len(sessions))
    outcomes = []

    def worker(session):
        barrier.wait()
        try:
            outcomes.append(coordinator.begin(session))
        except CaptureBusy:
            outcomes.append("busy")

    threads = [threading.Thread(target=worker, args=(session,)) for session in sessions]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(5)
    return outcomes


def _idle_sessions(coordinator, count=2):
    sessions = []
    for _ in range(count):
        surface = FakeSurface(800, 600)
        sessions.append(_session(surface, FakeBackend(surface), coordinator=coordinator))
    return sessions


def test_concurrent_begin_admits_one_session_under_reject():
    for _ in range(20):
        coordinator = CaptureCoordinator("reject")
        sessions = _idle_sessions(coordinator)

        outcomes = _begin_concurrently(coordinator, sessions)

        assert sorted(outcomes, key=str) == [1, "busy"]
        assert coordinator.active in sessions
        assert coordinator.generation == 1


def test_concurrent_begin_hands_out_distinct_generations():
    for _ in range(20):
        coordinator = CaptureCoordinator()
        sessions = _idle_sessions(coordinator)

        outcomes = _begin_concurrently(coordinator, sessions)

        assert sorted(outcomes) == [1, 2]
        assert coordinator.generation == 2
        assert sorted(session.generation for session in sessions) == [1, 2]
        assert coordinator.active.generation == 2


def test_freshly_begun_session_blocks_the_next_one():
    coordinator = CaptureCoordinator("reject")
    first, second = _idle_sessions(coordinator)

    coordinator.begin(first)

    assert first.status is CaptureStatus.IDLE
    with pytest.raises(CaptureBusy):
        asyncio.run(second.run())
    assert second.status is CaptureStatus.IDLE
    assert coordinator.active is first
