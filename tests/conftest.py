"""Shared pytest fixtures for facerecon tests."""

from pathlib import Path

import numpy as np
import pytest

from facerecon.core.contracts import CameraIntrinsics
from facerecon.core.pipeline_runner import ReconstructionConfig
from facerecon.core.session import ReconstructionSession
from facerecon.core.structures import CaptureFrame
from facerecon.utils.io import write_color_image, write_depth_bin
from facerecon.utils.synthetic import write_synthetic_capture

# 160x120 at fx=125 samples a plane at 0.5 m every 4 mm, like 640x480 at stride 4
SMALL = dict(width=160, height=120, fx=125.0, fy=125.0, cx=80.0, cy=60.0)


@pytest.fixture
def intrinsics() -> CameraIntrinsics:
    return CameraIntrinsics(fx=500, fy=500, cx=320, cy=240, width=640, height=480)


@pytest.fixture
def session():
    """Per-test session with a small worker pool."""
    with ReconstructionSession(ReconstructionConfig(max_workers=2), num_frames=5) as s:
        yield s


@pytest.fixture
def small_config() -> ReconstructionConfig:
    """Config matched to the SMALL capture geometry (stride 1)."""
    cfg = ReconstructionConfig(max_workers=2)
    cfg.project_points.stride = 1
    return cfg


@pytest.fixture
def small_capture(tmp_path: Path) -> list[dict]:
    """Five-angle synthetic plane capture at reduced resolution."""
    return write_synthetic_capture(tmp_path / "capture", **SMALL)


@pytest.fixture
def frame_files(tmp_path: Path):
    """Factory writing one depth .bin + PNG and returning its descriptor dict."""

    def _make(
        depth: np.ndarray,
        name: str = "f0",
        angle: str = "front",
        timestamp: float = 0.0,
        fx: float = 125.0,
        fy: float = 125.0,
        cx: float | None = None,
        cy: float | None = None,
    ) -> dict:
        h, w = depth.shape
        depth_path = write_depth_bin(tmp_path / f"{name}.bin", depth.astype(np.float32))
        color = np.full((h, w, 3), 128, dtype=np.uint8)
        color_path = write_color_image(tmp_path / f"{name}.png", color)
        return {
            "colorImagePath": str(color_path),
            "depthDataPath": str(depth_path),
            "depthWidth": w,
            "depthHeight": h,
            "fx": fx,
            "fy": fy,
            "cx": cx if cx is not None else w / 2,
            "cy": cy if cy is not None else h / 2,
            "timestamp": timestamp,
            "angleId": angle,
        }

    return _make


def make_frame(depth: np.ndarray, K: CameraIntrinsics, index: int = 0, **kwargs) -> CaptureFrame:
    """In-memory CaptureFrame for projector tests."""
    return CaptureFrame(index=index, depth_map=depth.astype(np.float32), intrinsics=K, timestamp=0.0, **kwargs)


@pytest.fixture
def frame_factory():
    return make_frame
