from __future__ import annotations

from io import BytesIO
import sys
from typing import Tuple

from PIL import Image
from PySide6.QtCore import QByteArray, QMimeData, QThread
from PySide6.QtGui import QGuiApplication, QImage


WINDOWS_PNG_ALIASES = (
    "PNG",
    'application/x-qt-windows-mime;value="PNG"',
)

# (size threshold in MB, scale factor) checked from the largest threshold down
SHRINK_STEPS = (
    (20.0, 0.4),
    (15.0, 0.5),
    (10.0, 0.6),
    (0.0, 0.7),
)


def encode_png(img: Image.Image) -> bytes:
    buffer = BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()


def shrink_ratio(size_mb: float) -> float:
    for threshold, ratio in SHRINK_STEPS:
        if size_mb > threshold:
            return ratio
    return 1.0


def fit_for_clipboard(img: Image.Image, max_mb: float = 8.0) -> Tuple[Image.Image, bytes]:
    """Return the image to place on the clipboard together with its PNG bytes.

    Large full-page captures are rejected by some clipboard consumers, so
    images whose PNG encoding exceeds ``max_mb`` are downscaled once.
    """

    if img.mode not in ("RGB", "RGBA"):
        img = img.convert("RGBA")
    png_data = encode_png(img)
    size_mb = len(png_data) / (1024 * 1024)
    if size_mb <= max_mb:
        return img, png_data

    ratio = shrink_ratio(size_mb)
    new_size = (max(1, int(img.width * ratio)), max(1, int(img.height * ratio)))
    smaller = img.resize(new_size, Image.Resampling.LANCZOS)
    return smaller, encode_png(smaller)


def build_clipboard_mime(img: Image.Image, png_data: bytes) -> QMimeData:
    qimg = QImage.fromData(png_data, "PNG")
    if qimg.isNull():
        raise ValueError("Не удалось подготовить изображение для буфера обмена")
    if qimg.format() != QImage.Format_ARGB32:
        qimg = qimg.convertToFormat(QImage.Format_ARGB32)

    mime = QMimeData()
    mime.setImageData(qimg)
    png_qbytes = QByteArray(png_data)
    mime.setData("image/png", png_qbytes)
    if sys.platform.startswith("win"):
        for alias in WINDOWS_PNG_ALIASES:  # pragma: no cover - platform specific
            mime.setData(alias, png_qbytes)
    return mime


def copy_pil_image_to_clipboard(img: Image.Image, max_mb: float = 8.0) -> None:
    """Put a PIL image on the system clipboard.

    Must run on the thread that owns the ``QGuiApplication``; raises
    ``RuntimeError`` otherwise.
    """

    app = QGuiApplication.instance()
    if app is None:
        raise RuntimeError("QGuiApplication is not running")
    if QThread.currentThread() != app.thread():
        raise RuntimeError("Clipboard is only available on the GUI thread")

    img, png_data = fit_for_clipboard(img, max_mb)
    clipboard = QGuiApplication.clipboard()
    if clipboard is None:
        raise RuntimeError("Clipboard is not available")
    clipboard.setMimeData(build_clipboard_mime(img, png_data))
