# -*- coding: utf-8 -*-
from __future__ import annotations

from pathlib import Path
import os
import sys
import unittest

from PIL import Image

os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from PySide6.QtWidgets import QApplication

from pagecapture.delivery import GestureChoice
from pagecapture.result_dialog import CaptureResultDialog


class CaptureResultDialogTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        cls.app = QApplication.instance() or QApplication([])

    def setUp(self) -> None:
        self.img = Image.new("RGB", (1200, 3000), (200, 10, 10))
        self.copied = []

    def test_nothing_is_copied_without_a_click(self) -> None:
        dialog = CaptureResultDialog(self.img, self.copied.append)
        self.assertEqual(dialog.choice, GestureChoice.DISMISSED)
        self.assertEqual(self.copied, [])
        self.assertEqual(dialog.size_label.text(), "1200 x 3000")
        dialog.deleteLater()

    def test_copy_click_writes_the_image(self) -> None:
        dialog = CaptureResultDialog(self.img, self.copied.append)
        dialog.btn_copy.click()
        self.assertEqual(self.copied, [self.img])
        self.assertEqual(dialog.choice, GestureChoice.COPIED)
        dialog.deleteLater()

    def test_failed_copy_lets_the_user_try_again(self) -> None:
        def refuse(img):
            raise RuntimeError("clipboard busy")

        dialog = CaptureResultDialog(self.img, refuse)
        with self.assertLogs(level="ERROR"):
            dialog.btn_copy.click()
        self.assertEqual(dialog.choice, GestureChoice.DISMISSED)
        self.assertTrue(dialog.btn_copy.isEnabled())
        self.assertTrue(dialog.status.text())
        dialog.deleteLater()

    def test_save_click(self) -> None:
        dialog = CaptureResultDialog(self.img, self.copied.append)
        dialog.btn_save.click()
        self.assertEqual(dialog.choice, GestureChoice.SAVE)
        self.assertEqual(self.copied, [])
        dialog.deleteLater()


if __name__ == "__main__":
    unittest.main()
