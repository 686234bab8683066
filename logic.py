import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from PIL import Image

APP_NAME = "PageSnap"
APP_VERSION = "1.0.0"
CONFIG_PATH = Path.home() / ".pagesnap_config.json"

KIND_FULL_PAGE = "full-page-screenshot"
KIND_REGION = "region-screenshot"
KIND_VISIBLE = "visible-area-screenshot"

DEFAULT_DELIVERY_POLICY = ["clipboard", "isolated-clipboard", "gesture", "download"]

DEFAULT_CONFIG = {
    "settle_delay_ms": 300,
    "request_interval_ms": 700,
    "rate_limit_backoff_ms": 2000,
    "completion_timeout_ms": 30000,
    "scroll_max_ticks": 60,
    "scroll_tolerance_px": 10,
    "match_tolerance_px": 5,
    "isolated_clipboard_timeout_ms": 10000,
    "clipboard_stage_timeout_ms": 5000,
    "min_selection_px": 5,
    "clipboard_max_mb": 8,
    "concurrency_policy": "supersede",
    "visible_area_fallback": True,
    "download_dir": str(Path.home() / "Downloads"),
    "delivery_policy": {
        KIND_FULL_PAGE: list(DEFAULT_DELIVERY_POLICY),
        KIND_REGION: list(DEFAULT_DELIVERY_POLICY),
        KIND_VISIBLE: list(DEFAULT_DELIVERY_POLICY),
    },
}


def load_config(path: Optional[Path] = None) -> dict:
    path = path or CONFIG_PATH
    cfg = json.loads(json.dumps(DEFAULT_CONFIG))
    if path.exists():
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            data = None
        if isinstance(data, dict):
            cfg.update({k: v for k, v in data.items() if k in DEFAULT_CONFIG})
    return cfg


def save_config(cfg: dict, path: Optional[Path] = None) -> None:
    path = path or CONFIG_PATH
    data = json.loads(json.dumps(DEFAULT_CONFIG))
    data.update({k: v for k, v in cfg.items() if k in DEFAULT_CONFIG})
    path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")


def capture_filename(kind: str, when: Optional[datetime] = None) -> str:
    when = when or datetime.now()
    return f"{kind}-{int(round(when.timestamp() * 1000))}.png"


@dataclass(frozen=True)
class CaptureSettings:
    """Engine timings and policies, in seconds and pixels."""

    settle_delay: float = 0.3
    request_interval: float = 0.7
    rate_limit_backoff: float = 2.0
    completion_timeout: float = 30.0
    scroll_max_ticks: int = 60
    scroll_tolerance: int = 10
    match_tolerance: int = 5
    isolated_clipboard_timeout: float = 10.0
    clipboard_stage_timeout: float = 5.0
    min_selection: int = 5
    clipboard_max_mb: float = 8.0
    concurrency_policy: str = "supersede"
    visible_area_fallback: bool = True
    download_dir: Path = field(default_factory=lambda: Path(DEFAULT_CONFIG["download_dir"]))
    delivery_policy: Dict[str, List[str]] = field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_CONFIG["delivery_policy"].items()}
    )

    @classmethod
    def from_config(cls, cfg: dict) -> "CaptureSettings":
        merged = dict(DEFAULT_CONFIG)
        merged.update(cfg)
        policy = merged["delivery_policy"]
        if isinstance(policy, list):
            policy = {kind: list(policy) for kind in (KIND_FULL_PAGE, KIND_REGION, KIND_VISIBLE)}
        return cls(
            settle_delay=merged["settle_delay_ms"] / 1000,
            request_interval=merged["request_interval_ms"] / 1000,
            rate_limit_backoff=merged["rate_limit_backoff_ms"] / 1000,
            completion_timeout=merged["completion_timeout_ms"] / 1000,
            scroll_max_ticks=int(merged["scroll_max_ticks"]),
            scroll_tolerance=int(merged["scroll_tolerance_px"]),
            match_tolerance=int(merged["match_tolerance_px"]),
            isolated_clipboard_timeout=merged["isolated_clipboard_timeout_ms"] / 1000,
            clipboard_stage_timeout=merged["clipboard_stage_timeout_ms"] / 1000,
            min_selection=int(merged["min_selection_px"]),
            clipboard_max_mb=float(merged["clipboard_max_mb"]),
            concurrency_policy=str(merged["concurrency_policy"]),
            visible_area_fallback=bool(merged["visible_area_fallback"]),
            download_dir=Path(merged["download_dir"]).expanduser(),
            delivery_policy={k: list(v) for k, v in policy.items()},
        )

    def policy_for(self, kind: str) -> List[str]:
        return list(self.delivery_policy.get(kind, DEFAULT_DELIVERY_POLICY))


def pil_to_qpixmap(img: Image.Image):
    """Convert PIL image to QPixmap with RGBA support."""
    from PySide6.QtGui import QImage, QPixmap

    if img.mode != "RGBA":
        img = img.convert("RGBA")
    w, h = img.size
    data = img.tobytes("raw", "RGBA")
    qimg = QImage(data, w, h, QImage.Format_RGBA8888)
    return QPixmap.fromImage(qimg.copy())
