import argparse
import logging
from functools import partial
import sys

from PySide6.QtWidgets import QApplication

from logic import APP_NAME, KIND_FULL_PAGE, KIND_REGION, KIND_VISIBLE, load_config
from pagecapture.browser_surface import open_page
from pagecapture.capture_manager import PageCaptureManager
from pagecapture.session import CaptureMode


def _parse_points(value: str):
    try:
        x1, y1, x2, y2 = (int(part) for part in value.split(","))
    except ValueError:
        raise argparse.ArgumentTypeError("expected x1,y1,x2,y2")
    return (x1, y1), (x2, y2)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pagesnap", description="Capture a whole web page or a region of it.")
    parser.add_argument("url")
    parser.add_argument("--mode", choices=[m.value for m in CaptureMode], default=CaptureMode.FULL_SURFACE.value)
    parser.add_argument("--region", type=_parse_points, help="drag corners in page coordinates: x1,y1,x2,y2")
    parser.add_argument("--width", type=int, default=1280)
    parser.add_argument("--height", type=int, default=800)
    parser.add_argument("--scale", type=float, default=1.0, help="device pixel ratio")
    parser.add_argument("--quota", type=float, default=None, help="simulated captures per second")
    parser.add_argument("--policy", help="comma separated delivery stages, e.g. clipboard,download")
    parser.add_argument("--download-dir")
    parser.add_argument("--verbose", action="store_true")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    cfg = load_config()
    if args.download_dir:
        cfg["download_dir"] = args.download_dir
    if args.policy:
        stages = [name.strip() for name in args.policy.split(",") if name.strip()]
        cfg["delivery_policy"] = {kind: stages for kind in (KIND_FULL_PAGE, KIND_REGION, KIND_VISIBLE)}

    app = QApplication(sys.argv[:1])
    app.setApplicationName(APP_NAME)
    app.setQuitOnLastWindowClosed(False)

    target_factory = partial(
        open_page,
        args.url,
        width=args.width,
        height=args.height,
        scale=args.scale,
        max_per_second=args.quota,
    )
    manager = PageCaptureManager(cfg, target_factory)
    exit_code = {"value": 0}

    def on_completed(result) -> None:
        outcome = result.outcome
        where = outcome.path if outcome and outcome.path else (outcome.method.value if outcome else "not delivered")
        print(f"{result.mode.value}: {result.raster.width}x{result.raster.height} -> {where}")
        app.quit()

    def on_error(message: str) -> None:
        print(message, file=sys.stderr)
        exit_code["value"] = 1
        app.quit()

    manager.progress_updated.connect(lambda percent, message: logging.info("%d%% %s", percent, message))
    manager.capture_completed.connect(on_completed)
    manager.error_occurred.connect(on_error)
    manager.start_capture(args.mode, args.region)

    if manager.is_busy():
        app.exec()
    return exit_code["value"]


if __name__ == "__main__":
    sys.exit(main())
