# -*- coding: utf-8 -*-
from __future__ import annotations

from pathlib import Path
import os
import sys
import unittest

os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from PySide6.QtWidgets import QApplication

from logic import KIND_REGION, load_config
from pagecapture.capture_manager import PageCaptureManager, _GuiInvoker


def _no_target():
    raise AssertionError("no capture should start")


class PageCaptureManagerTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        cls.app = QApplication.instance() or QApplication([])

    def setUp(self) -> None:
        self.cfg = load_config(Path(__file__).with_name("missing-config.json"))

    def test_pipeline_follows_the_configured_policy(self) -> None:
        self.cfg["delivery_policy"] = {KIND_REGION: ["gesture", "download"]}
        manager = PageCaptureManager(self.cfg, _no_target)
        pipeline = manager.build_pipeline(KIND_REGION)
        self.assertEqual([stage.name for stage in pipeline.stages], ["gesture", "download"])

    def test_default_pipeline_has_every_stage(self) -> None:
        manager = PageCaptureManager(self.cfg, _no_target)
        pipeline = manager.build_pipeline(KIND_REGION)
        self.assertEqual(
            [stage.name for stage in pipeline.stages],
            ["clipboard", "isolated-clipboard", "gesture", "download"],
        )

    def test_too_small_region_is_reported_without_starting(self) -> None:
        manager = PageCaptureManager(self.cfg, _no_target)
        errors = []
        manager.error_occurred.connect(errors.append)
        manager.start_region(((0, 0), (2, 2)))
        self.assertEqual(len(errors), 1)
        self.assertIn("too small", errors[0])
        self.assertFalse(manager.is_busy())

    def test_cancelled_region_is_reported(self) -> None:
        manager = PageCaptureManager(self.cfg, _no_target)
        errors = []
        manager.error_occurred.connect(errors.append)
        manager.start_region(None)
        self.assertEqual(errors, ["Region selection cancelled"])

    def test_progress_is_reported_in_percent(self) -> None:
        manager = PageCaptureManager(self.cfg, _no_target)
        seen = []
        manager.progress_updated.connect(lambda percent, message: seen.append((percent, message)))
        manager._on_capture_progress(9, 27)
        self.assertEqual(seen, [(33, "Снято тайлов: 9 из 27")])

    def test_invoker_runs_inline_on_the_gui_thread(self) -> None:
        invoker = _GuiInvoker()
        self.assertEqual(invoker.call(lambda: 42), 42)
        with self.assertRaises(ValueError):
            invoker.call(lambda: int("x"))


if __name__ == "__main__":
    unittest.main()
