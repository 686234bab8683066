"""Отдельный короткоживущий процесс для записи картинки в буфер обмена.

On Windows and macOS the system keeps clipboard data after the writer exits.
Elsewhere (X11, Wayland) the data lives only as long as its owner, so the
child reports success only once another client, usually a clipboard manager,
has taken the clipboard over. Otherwise the write is reported as denied and
the pipeline moves on to the next stage.
"""

from __future__ import annotations

import asyncio
import logging
import multiprocessing
import sys
import time
from io import BytesIO
from typing import Callable, Optional

from .errors import ClipboardDenied

logger = logging.getLogger(__name__)

HANDOFF_TIMEOUT = 3.0
NOT_PERSISTENT = "clipboard contents would not outlive the helper process"


def clipboard_survives_exit(platform: str = sys.platform) -> bool:
    return platform.startswith("win") or platform == "darwin"


def wait_for_handoff(
    app,
    clipboard,
    timeout: float,
    *,
    poll: float = 0.05,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Pump events until another client owns the clipboard; False on timeout."""
    deadline = clock() + timeout
    while True:
        app.processEvents()
        if not clipboard.ownsClipboard():
            return True
        if clock() >= deadline:
            return False
        sleep(poll)


def handoff_reply(app, clipboard, timeout: float, platform: str = sys.platform) -> dict:
    if clipboard_survives_exit(platform):
        app.processEvents()
        return {"success": True}
    if wait_for_handoff(app, clipboard, timeout):
        return {"success": True}
    return {"success": False, "error": NOT_PERSISTENT}


def _worker_main(conn) -> None:  # pragma: no cover - runs in the child process
    try:
        payload = conn.recv()
        from PIL import Image
        from PySide6.QtGui import QGuiApplication

        from clipboard_utils import copy_pil_image_to_clipboard

        app = QGuiApplication.instance() or QGuiApplication([])
        img = Image.open(BytesIO(payload["png"]))
        img.load()
        copy_pil_image_to_clipboard(img, payload.get("max_mb", 8.0))
        conn.send(handoff_reply(app, QGuiApplication.clipboard(), payload.get("handoff_timeout", HANDOFF_TIMEOUT)))
    except Exception as exc:  # noqa: BLE001
        conn.send({"success": False, "error": f"{exc.__class__.__name__}: {exc}"})
    finally:
        conn.close()


class IsolatedClipboardContext:
    """Child process that exists only to perform one clipboard write.

    ``close()`` is idempotent and is always reached through ``async with``,
    whether the write succeeded, failed or was cancelled by a timeout.
    """

    def __init__(
        self,
        *,
        max_mb: float = 8.0,
        poll_interval: float = 0.05,
        handoff_timeout: float = HANDOFF_TIMEOUT,
        mp_context=None,
    ) -> None:
        self.max_mb = max_mb
        self.poll_interval = poll_interval
        self.handoff_timeout = handoff_timeout
        self._ctx = mp_context or multiprocessing.get_context("spawn")
        self._process = None
        self._conn = None
        self.closed = False

    async def open(self) -> "IsolatedClipboardContext":
        parent_conn, child_conn = self._ctx.Pipe()
        self._conn = parent_conn
        self._process = self._ctx.Process(
            target=_worker_main, args=(child_conn,), name="pagesnap-clipboard", daemon=True
        )
        self._process.start()
        child_conn.close()
        return self

    async def write(self, png_data: bytes) -> None:
        if self._conn is None or self._process is None:
            raise ClipboardDenied("clipboard context is not open")
        self._conn.send({"png": png_data, "max_mb": self.max_mb, "handoff_timeout": self.handoff_timeout})
        while True:
            if self._conn.poll():
                reply = self._conn.recv()
                break
            if not self._process.is_alive() and not self._conn.poll():
                raise ClipboardDenied(f"clipboard process exited with code {self._process.exitcode}")
            await asyncio.sleep(self.poll_interval)
        if not reply.get("success"):
            raise ClipboardDenied(reply.get("error") or "clipboard write failed")

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        process, conn = self._process, self._conn
        self._process = self._conn = None
        if conn is not None:
            try:
                conn.close()
            except OSError:
                logger.debug("Clipboard pipe already closed")
        if process is not None:
            if process.is_alive():
                process.terminate()
            process.join(1.0)
            if process.is_alive():  # pragma: no cover - stuck child
                process.kill()
                process.join(1.0)

    async def __aenter__(self) -> "IsolatedClipboardContext":
        try:
            return await self.open()
        except BaseException:
            self.close()
            raise

    async def __aexit__(self, exc_type, exc, tb) -> Optional[bool]:
        self.close()
        return None
