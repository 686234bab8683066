"""Delivery of a finished capture: clipboard first, a saved file as the last resort."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from PIL import Image

from clipboard_utils import copy_pil_image_to_clipboard, encode_png
from logic import capture_filename

from .clipboard_worker import IsolatedClipboardContext
from .errors import AllDeliveryFailed, CaptureSuperseded, ClipboardDenied, DeliveryError

logger = logging.getLogger(__name__)

STAGE_CLIPBOARD = "clipboard"
STAGE_ISOLATED = "isolated-clipboard"
STAGE_GESTURE = "gesture"
STAGE_DOWNLOAD = "download"


class DeliveryMethod(str, Enum):
    CLIPBOARD = "clipboard"
    DOWNLOAD = "download"


@dataclass(frozen=True)
class DeliveryOutcome:
    method: DeliveryMethod
    succeeded: bool
    error: Optional[str] = None
    stage: Optional[str] = None
    path: Optional[Path] = None


@dataclass
class DeliveryJob:
    raster: Image.Image
    kind: str
    created: datetime = field(default_factory=datetime.now)

    @property
    def filename(self) -> str:
        return capture_filename(self.kind, self.created)


class ClipboardSink(Protocol):
    async def write(self, raster: Image.Image) -> None: ...


class DownloadSink(Protocol):
    async def save(self, raster: Image.Image, filename: str) -> Path: ...


class GestureChoice(str, Enum):
    COPIED = "copied"
    SAVE = "save"
    DISMISSED = "dismissed"


class GesturePrompt(Protocol):
    """Shows the result to the user.

    ``copy`` must only be called from the handler of the user's own action.
    """

    async def ask(self, raster: Image.Image, copy: Callable[[Image.Image], None]) -> GestureChoice: ...


# ---- sinks -------------------------------------------------------------
class DirectClipboardSink:
    """Writes to the clipboard from the calling thread."""

    def __init__(self, max_mb: float = 8.0) -> None:
        self.max_mb = max_mb

    async def write(self, raster: Image.Image) -> None:
        try:
            copy_pil_image_to_clipboard(raster, self.max_mb)
        except (RuntimeError, ValueError) as exc:
            raise ClipboardDenied(str(exc)) from exc


class FileDownloadSink:
    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)

    def _target(self, filename: str) -> Path:
        candidate = self.directory / filename
        stem, suffix = candidate.stem, candidate.suffix
        counter = 1
        while candidate.exists():
            candidate = self.directory / f"{stem}-{counter}{suffix}"
            counter += 1
        return candidate

    def _save(self, raster: Image.Image, filename: str) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        target = self._target(filename)
        raster.save(target, format="PNG")
        return target

    async def save(self, raster: Image.Image, filename: str) -> Path:
        return await asyncio.to_thread(self._save, raster, filename)


# ---- stages ------------------------------------------------------------
class DeliveryStage:
    name = ""
    method = DeliveryMethod.CLIPBOARD
    timeout: Optional[float] = None

    async def attempt(self, job: DeliveryJob) -> Optional[Path]:
        raise NotImplementedError


class DirectClipboardStage(DeliveryStage):
    """Clipboard write in the primary context. Failing here is normal."""

    name = STAGE_CLIPBOARD

    def __init__(self, sink: ClipboardSink, timeout: Optional[float] = 5.0) -> None:
        self.sink = sink
        self.timeout = timeout

    async def attempt(self, job: DeliveryJob) -> None:
        await self.sink.write(job.raster)


class IsolatedClipboardStage(DeliveryStage):
    name = STAGE_ISOLATED

    def __init__(
        self,
        context_factory: Callable[[], IsolatedClipboardContext] = IsolatedClipboardContext,
        timeout: Optional[float] = 10.0,
    ) -> None:
        self.context_factory = context_factory
        self.timeout = timeout

    async def attempt(self, job: DeliveryJob) -> None:
        png_data = await asyncio.to_thread(encode_png, job.raster)
        async with self.context_factory() as context:
            await context.write(png_data)


class GestureClipboardStage(DeliveryStage):
    """Lets the user trigger the clipboard write; waits as long as the user needs."""

    name = STAGE_GESTURE

    def __init__(self, prompt: GesturePrompt, copy: Callable[[Image.Image], None] = copy_pil_image_to_clipboard) -> None:
        self.prompt = prompt
        self.copy = copy

    async def attempt(self, job: DeliveryJob) -> None:
        choice = await self.prompt.ask(job.raster, self.copy)
        if choice != GestureChoice.COPIED:
            raise ClipboardDenied(f"user chose {GestureChoice(choice).value}")


class DownloadStage(DeliveryStage):
    name = STAGE_DOWNLOAD
    method = DeliveryMethod.DOWNLOAD

    def __init__(self, sink: DownloadSink) -> None:
        self.sink = sink

    async def attempt(self, job: DeliveryJob) -> Path:
        return await self.sink.save(job.raster, job.filename)


# ---- pipeline ----------------------------------------------------------
class DeliveryPipeline:
    """Tries each stage in order and stops at the first one that succeeds."""

    def __init__(self, stages: Sequence[DeliveryStage]) -> None:
        if not stages:
            raise ValueError("Delivery pipeline needs at least one stage")
        self.stages = list(stages)
        self.attempts: List[Tuple[str, str]] = []

    @classmethod
    def from_policy(cls, policy: Sequence[str], available: Mapping[str, DeliveryStage]) -> "DeliveryPipeline":
        stages = []
        for name in policy:
            stage = available.get(name)
            if stage is None:
                logger.warning("Delivery stage %r is not available, skipping", name)
                continue
            stages.append(stage)
        return cls(stages)

    async def _run_stage(self, stage: DeliveryStage, job: DeliveryJob) -> Optional[Path]:
        if stage.timeout is None:
            return await stage.attempt(job)
        return await asyncio.wait_for(stage.attempt(job), stage.timeout)

    async def deliver(self, job: DeliveryJob, is_current: Optional[Callable[[], bool]] = None) -> DeliveryOutcome:
        """Run the stages in order until one succeeds.

        ``is_current`` is checked before every stage; once it turns false no
        further stage runs and :class:`CaptureSuperseded` is raised.
        """
        self.attempts = []
        for stage in self.stages:
            if is_current is not None and not is_current():
                raise CaptureSuperseded(f"delivery superseded before the {stage.name} stage")
            try:
                path = await self._run_stage(stage, job)
            except asyncio.TimeoutError:
                logger.info("Delivery stage %s timed out", stage.name)
                self.attempts.append((stage.name, "timed out"))
                continue
            except DeliveryError as exc:
                logger.info("Delivery stage %s declined: %s", stage.name, exc)
                self.attempts.append((stage.name, str(exc)))
                continue
            except Exception as exc:  # noqa: BLE001
                logger.exception("Delivery stage %s failed", stage.name)
                self.attempts.append((stage.name, f"{exc.__class__.__name__}: {exc}"))
                continue
            return DeliveryOutcome(stage.method, True, stage=stage.name, path=path)
        raise AllDeliveryFailed(job.raster, self.attempts)


def build_stages(
    *,
    clipboard_sink: Optional[ClipboardSink] = None,
    download_sink: Optional[DownloadSink] = None,
    prompt: Optional[GesturePrompt] = None,
    gesture_copy: Callable[[Image.Image], None] = copy_pil_image_to_clipboard,
    clipboard_timeout: Optional[float] = 5.0,
    isolated_timeout: Optional[float] = 10.0,
    isolated_factory: Optional[Callable[[], IsolatedClipboardContext]] = None,
) -> Dict[str, DeliveryStage]:
    """Stages that can be referenced by name from a delivery policy."""
    stages: Dict[str, DeliveryStage] = {}
    if clipboard_sink is not None:
        stages[STAGE_CLIPBOARD] = DirectClipboardStage(clipboard_sink, clipboard_timeout)
    stages[STAGE_ISOLATED] = IsolatedClipboardStage(isolated_factory or IsolatedClipboardContext, isolated_timeout)
    if prompt is not None:
        stages[STAGE_GESTURE] = GestureClipboardStage(prompt, gesture_copy)
    if download_sink is not None:
        stages[STAGE_DOWNLOAD] = DownloadStage(download_sink)
    return stages
