"""Диалог с готовым снимком: копирование по нажатию пользователя."""

from __future__ import annotations

import logging
from typing import Callable, Optional

from PIL import Image
from PySide6.QtCore import Qt, QTimer
from PySide6.QtWidgets import QDialog, QHBoxLayout, QLabel, QPushButton, QVBoxLayout, QWidget

from logic import pil_to_qpixmap

from .delivery import GestureChoice

PREVIEW_MAX_WIDTH = 640
PREVIEW_MAX_HEIGHT = 400


class CaptureResultDialog(QDialog):
    """Preview plus Copy / Save / Close.

    The clipboard write happens inside the Copy click handler, because some
    platforms only allow it from a user-initiated event.
    """

    def __init__(
        self,
        img: Image.Image,
        copy: Callable[[Image.Image], None],
        parent: Optional[QWidget] = None,
    ) -> None:
        super().__init__(parent)
        self.setWindowTitle("Снимок готов")
        self.setWindowFlags(self.windowFlags() | Qt.WindowStaysOnTopHint)
        self._img = img
        self._copy = copy
        self.choice = GestureChoice.DISMISSED
        self._build_ui()

    def _build_ui(self) -> None:
        layout = QVBoxLayout(self)

        self.preview = QLabel()
        self.preview.setAlignment(Qt.AlignCenter)
        pixmap = pil_to_qpixmap(self._img)
        self.preview.setPixmap(
            pixmap.scaled(PREVIEW_MAX_WIDTH, PREVIEW_MAX_HEIGHT, Qt.KeepAspectRatio, Qt.SmoothTransformation)
        )
        self.size_label = QLabel(f"{self._img.width} x {self._img.height}")
        self.status = QLabel("")
        layout.addWidget(self.preview)
        layout.addWidget(self.size_label)

        buttons = QHBoxLayout()
        self.btn_copy = QPushButton("Копировать")
        self.btn_save = QPushButton("Сохранить")
        self.btn_close = QPushButton("Закрыть")
        self.btn_copy.setDefault(True)

        self.btn_copy.clicked.connect(self._on_copy)
        self.btn_save.clicked.connect(self._on_save)
        self.btn_close.clicked.connect(self.reject)

        buttons.addWidget(self.btn_copy)
        buttons.addWidget(self.btn_save)
        buttons.addWidget(self.btn_close)
        layout.addLayout(buttons)
        layout.addWidget(self.status)

    def _on_copy(self) -> None:
        self.btn_copy.setEnabled(False)
        try:
            self._copy(self._img)
        except Exception as exc:  # noqa: BLE001
            logging.exception("Ошибка копирования в буфер обмена: %s", exc)
            self.status.setText("Не удалось скопировать. Попробуйте сохранить файл.")
            self.btn_copy.setEnabled(True)
            return
        self.choice = GestureChoice.COPIED
        self.status.setText("Скопировано в буфер обмена")
        QTimer.singleShot(800, self.accept)

    def _on_save(self) -> None:
        self.choice = GestureChoice.SAVE
        self.accept()
