"""Связка движка захвата с Qt: рабочий поток, сигналы, вызовы в GUI-потоке."""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncContextManager, Awaitable, Callable, List, Optional, Union

from PIL import Image
from PySide6.QtCore import QObject, Qt, QThread, Signal, Slot
from PySide6.QtWidgets import QWidget

from clipboard_utils import copy_pil_image_to_clipboard
from logic import CaptureSettings

from .clipboard_worker import IsolatedClipboardContext
from .delivery import (
    DeliveryPipeline,
    FileDownloadSink,
    GestureChoice,
    build_stages,
)
from .errors import AllDeliveryFailed, CaptureBusy, CaptureError, CaptureSuperseded, ClipboardDenied, SelectionError
from .result_dialog import CaptureResultDialog
from .session import (
    CaptureCoordinator,
    CaptureListener,
    CaptureMode,
    CaptureResult,
    CaptureSession,
    CaptureStatus,
    Selection,
    rect_from_selection,
)

CaptureJob = Callable[[CaptureListener], Awaitable[CaptureResult]]


class _GuiInvoker(QObject):
    """Runs callables on the thread that owns this object and waits for them."""

    _invoke = Signal(object)

    def __init__(self, parent=None) -> None:
        super().__init__(parent)
        self._invoke.connect(self._run, Qt.BlockingQueuedConnection)

    def call(self, fn: Callable[[], object]):
        box = {}

        def job() -> None:
            try:
                box["value"] = fn()
            except Exception as exc:  # noqa: BLE001 - re-raised in the caller's thread
                box["error"] = exc

        if QThread.currentThread() == self.thread():
            job()
        else:
            self._invoke.emit(job)
        if "error" in box:
            raise box["error"]
        return box.get("value")

    @Slot(object)
    def _run(self, job) -> None:
        job()


class GuiClipboardSink:
    def __init__(self, invoker: _GuiInvoker, max_mb: float = 8.0) -> None:
        self._invoker = invoker
        self.max_mb = max_mb

    async def write(self, raster: Image.Image) -> None:
        try:
            await asyncio.to_thread(self._invoker.call, lambda: copy_pil_image_to_clipboard(raster, self.max_mb))
        except (RuntimeError, ValueError) as exc:
            raise ClipboardDenied(str(exc)) from exc


class QtGesturePrompt:
    def __init__(self, invoker: _GuiInvoker, parent: Optional[QWidget] = None) -> None:
        self._invoker = invoker
        self._parent = parent

    def _show(self, raster: Image.Image, copy: Callable[[Image.Image], None]) -> GestureChoice:
        dialog = CaptureResultDialog(raster, copy, self._parent)
        dialog.exec()
        return dialog.choice

    async def ask(self, raster: Image.Image, copy: Callable[[Image.Image], None]) -> GestureChoice:
        return await asyncio.to_thread(self._invoker.call, lambda: self._show(raster, copy))


class _CaptureThread(QThread):
    """Рабочий поток со своим asyncio-циклом для одного сеанса захвата."""

    progress_updated = Signal(int, int)
    status_changed = Signal(str)
    capture_finished = Signal(object)
    error_occurred = Signal(str)

    def __init__(self, job: CaptureJob, parent=None) -> None:
        super().__init__(parent)
        self._job = job

    def run(self) -> None:  # noqa: D401 - логика потока
        listener = _SignalListener(self)
        try:
            result = asyncio.run(self._job(listener))
        except CaptureSuperseded:
            return
        except CaptureBusy as exc:
            self.error_occurred.emit(exc.summary())
        except (CaptureError, AllDeliveryFailed):
            # the session already reported its summary through the listener
            return
        except SelectionError as exc:
            self.error_occurred.emit(str(exc))
        except Exception as exc:  # noqa: BLE001
            logging.exception("Ошибка захвата страницы: %s", exc)
            self.error_occurred.emit(f"Capture failed: {exc}")
        else:
            self.capture_finished.emit(result)


class _SignalListener(CaptureListener):
    def __init__(self, thread: _CaptureThread) -> None:
        self._thread = thread

    def on_status(self, session, status: CaptureStatus) -> None:
        self._thread.status_changed.emit(status.value)

    def on_progress(self, completed: int, total: int) -> None:
        self._thread.progress_updated.emit(completed, total)

    def on_failed(self, reason: str) -> None:
        self._thread.error_occurred.emit(reason)


class PageCaptureManager(QObject):
    """
    Координирует захват страницы: запуск сеанса в потоке, прогресс и доставку результата.
    """

    capture_started = Signal(str)  # mode
    progress_updated = Signal(int, str)  # percent, message
    status_changed = Signal(str)
    capture_completed = Signal(object)  # CaptureResult
    error_occurred = Signal(str)

    def __init__(
        self,
        cfg: dict,
        target_factory: Callable[[], AsyncContextManager],
        parent=None,
        dialog_parent: Optional[QWidget] = None,
    ) -> None:
        super().__init__(parent)
        self.cfg = cfg
        self.settings = CaptureSettings.from_config(cfg)
        self.coordinator = CaptureCoordinator(self.settings.concurrency_policy)
        self._target_factory = target_factory
        self._invoker = _GuiInvoker(self)
        self._dialog_parent = dialog_parent
        self._threads: List[_CaptureThread] = []

    def build_pipeline(self, kind: str) -> DeliveryPipeline:
        settings = self.settings
        stages = build_stages(
            clipboard_sink=GuiClipboardSink(self._invoker, settings.clipboard_max_mb),
            download_sink=FileDownloadSink(settings.download_dir),
            prompt=QtGesturePrompt(self._invoker, self._dialog_parent),
            gesture_copy=lambda img: copy_pil_image_to_clipboard(img, settings.clipboard_max_mb),
            clipboard_timeout=settings.clipboard_stage_timeout,
            isolated_timeout=settings.isolated_clipboard_timeout,
            isolated_factory=lambda: IsolatedClipboardContext(max_mb=settings.clipboard_max_mb),
        )
        return DeliveryPipeline.from_policy(settings.policy_for(kind), stages)

    @Slot()
    def start_full_page(self) -> None:
        self.start_capture(CaptureMode.FULL_SURFACE)

    @Slot()
    def start_visible_area(self) -> None:
        self.start_capture(CaptureMode.VISIBLE)

    def start_region(self, selection: Selection) -> None:
        self.start_capture(CaptureMode.REGION, selection)

    def start_capture(self, mode: Union[CaptureMode, str], selection: Selection = None) -> None:
        mode = CaptureMode(mode)
        if mode is CaptureMode.REGION:
            try:
                selection = rect_from_selection(selection, self.settings.min_selection)
            except SelectionError as exc:
                self.error_occurred.emit(str(exc))
                return

        pipeline = self.build_pipeline(mode.kind)

        async def job(listener: CaptureListener) -> CaptureResult:
            async with self._target_factory() as target:
                session = CaptureSession(
                    mode,
                    target.surface,
                    target.backend,
                    region=selection,
                    settings=self.settings,
                    pipeline=pipeline,
                    coordinator=self.coordinator,
                    listener=listener,
                )
                return await session.run()

        thread = _CaptureThread(job)
        thread.progress_updated.connect(self._on_capture_progress)
        thread.status_changed.connect(self.status_changed)
        thread.capture_finished.connect(self.capture_completed)
        thread.error_occurred.connect(self.error_occurred)
        thread.finished.connect(lambda: self._on_thread_finished(thread))
        self._threads.append(thread)
        self.capture_started.emit(mode.value)
        thread.start()

    @Slot()
    def cancel(self) -> None:
        """Отменяет текущий захват: запоздавшие ответы будут отброшены."""
        self.coordinator.cancel()

    @Slot(int, int)
    def _on_capture_progress(self, completed: int, total: int) -> None:
        percent = int((completed / total) * 100) if total > 0 else 100
        self.progress_updated.emit(percent, f"Снято тайлов: {completed} из {total}")

    def _on_thread_finished(self, thread: _CaptureThread) -> None:
        if thread in self._threads:
            self._threads.remove(thread)
        thread.deleteLater()

    def is_busy(self) -> bool:
        return bool(self._threads)
