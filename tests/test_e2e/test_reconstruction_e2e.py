"""End-to-end reconstruction scenarios on full-resolution synthetic captures.

Run only these with:
    pytest -m e2e
"""

import json
from pathlib import Path

import numpy as np
import pytest

from facerecon.core.pipeline_runner import ReconstructionConfig, reconstruct_face
from facerecon.utils.io import read_ply_counts, read_ply_points, write_color_image, write_depth_bin
from facerecon.utils.synthetic import write_synthetic_capture

pytestmark = pytest.mark.e2e


@pytest.fixture
def plane_capture(tmp_path: Path) -> list[dict]:
    """Five views of a plane at 0.5 m, 640x480, f=500, small head turns."""
    return write_synthetic_capture(tmp_path / "plane", plane_depth=0.5)


class TestPlaneScenario:
    def test_five_frames_fuse_to_flat_surface(self, plane_capture, tmp_path: Path):
        out = tmp_path / "plane.ply"
        result = reconstruct_face(plane_capture, output_path=out)

        assert result.success, result.error_message
        assert result.mesh_file_path == str(out)
        assert result.vertex_count > 0
        assert result.aligned_frames == 5

        counts = read_ply_counts(out)
        assert counts["vertex"] == result.vertex_count
        assert counts["face"] == result.face_count == 0

        z = read_ply_points(out)[:, 2]
        assert np.std(z) < 0.005
        assert abs(np.median(z) - 0.5) < 0.005

    def test_mesh_mode(self, plane_capture, tmp_path: Path):
        cfg = ReconstructionConfig()
        cfg.fuse_frames.output_mode = "mesh"
        out = tmp_path / "plane_mesh.ply"
        result = reconstruct_face(plane_capture, config=cfg, output_path=out)

        assert result.success, result.error_message
        assert result.face_count > 0
        assert read_ply_counts(out) == {"vertex": result.vertex_count, "face": result.face_count}

    def test_sidecar_metadata(self, plane_capture, tmp_path: Path):
        out = tmp_path / "meta.ply"
        result = reconstruct_face(plane_capture, output_path=out)
        assert result.success, result.error_message
        meta = json.loads(out.with_suffix(".json").read_text())
        assert meta["vertex_count"] == result.vertex_count


class TestDegenerateScenario:
    def test_all_zero_depth(self, tmp_path: Path):
        frames = []
        for i in range(3):
            depth_path = write_depth_bin(tmp_path / f"d{i}.bin", np.zeros((480, 640), np.float32))
            color_path = write_color_image(tmp_path / f"c{i}.png", np.zeros((480, 640, 3), np.uint8))
            frames.append({
                "colorImagePath": str(color_path),
                "depthDataPath": str(depth_path),
                "depthWidth": 640,
                "depthHeight": 480,
                "fx": 500.0,
                "fy": 500.0,
                "cx": 320.0,
                "cy": 240.0,
                "timestamp": float(i),
            })

        out = tmp_path / "never.ply"
        result = reconstruct_face(frames, output_path=out)
        assert not result.success
        assert result.error_kind == "FusionFailed"
        assert not out.exists()
