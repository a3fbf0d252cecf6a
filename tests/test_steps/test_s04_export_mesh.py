"""Tests for S04: PLY export."""

import json
from pathlib import Path

import numpy as np
import pytest

from facerecon.core.errors import MeshExportFailed
from facerecon.core.structures import FusedSurface
from facerecon.steps.s04_export_mesh.config import ExportMeshConfig
from facerecon.steps.s04_export_mesh.contracts import ExportMeshInput, ExportMeshOutput
from facerecon.steps.s04_export_mesh.step import ExportMeshStep, default_output_path
from facerecon.utils.io import read_ply_counts


def _points(n: int = 50) -> FusedSurface:
    rng = np.random.default_rng(0)
    return FusedSurface(vertices=rng.uniform(-0.1, 0.1, (n, 3)) + [0, 0, 0.5])


def _tetra() -> FusedSurface:
    vertices = np.array([[0, 0, 0.5], [0.01, 0, 0.5], [0, 0.01, 0.5], [0, 0, 0.51]], dtype=float)
    faces = np.array([[0, 1, 2], [0, 1, 3], [0, 2, 3], [1, 2, 3]], dtype=np.int32)
    colors = np.array([[255, 0, 0], [0, 255, 0], [0, 0, 255], [9, 9, 9]], dtype=np.uint8)
    return FusedSurface(vertices=vertices, mode="mesh", faces=faces, colors=colors)


def _header_and_body(path: Path) -> tuple[list[str], list[str]]:
    lines = path.read_text().splitlines()
    end = lines.index("end_header")
    return lines[: end + 1], lines[end + 1:]


class TestExportMeshContracts:
    def test_config_defaults(self):
        cfg = ExportMeshConfig()
        assert cfg.output_format == "ascii"
        assert cfg.filename_prefix == "face_reconstruction"

    def test_output_schema(self):
        schema = ExportMeshOutput.model_json_schema()
        for field in ("mesh_path", "vertex_count", "face_count"):
            assert field in schema["properties"]

    def test_input_schema(self):
        schema = ExportMeshInput.model_json_schema()
        assert schema["properties"]["surface"]["title"] == "FusedSurface"
        assert "output_path" in schema["properties"]

    def test_default_output_path(self, tmp_path: Path):
        a = default_output_path("scan", tmp_path)
        b = default_output_path("scan", tmp_path)
        assert a.parent == tmp_path
        assert a.name.startswith("scan_") and a.suffix == ".ply"
        assert a != b


class TestExportMeshStep:
    def test_point_cloud_header(self, session, tmp_path: Path):
        out = ExportMeshStep(ExportMeshConfig(), session).execute(
            ExportMeshInput(surface=_points(), output_path=tmp_path / "p.ply")
        )
        header, body = _header_and_body(out.mesh_path)
        assert header[0] == "ply"
        assert header[1] == "format ascii 1.0"
        assert sum(1 for line in header if line.startswith("comment")) == 1
        assert "element vertex 50" in header
        assert "property float x" in header
        assert not any(line.startswith("element face") for line in header)
        assert len(body) == 50
        assert out.vertex_count == 50
        assert out.face_count == 0

    def test_counts_round_trip(self, session, tmp_path: Path):
        out = ExportMeshStep(ExportMeshConfig(), session).execute(
            ExportMeshInput(surface=_tetra(), output_path=tmp_path / "m.ply")
        )
        counts = read_ply_counts(out.mesh_path)
        assert counts == {"vertex": out.vertex_count, "face": out.face_count}
        assert (out.vertex_count, out.face_count) == (4, 4)

        header, body = _header_and_body(out.mesh_path)
        assert "element face 4" in header
        assert "property uchar red" in header
        assert len(body) == 4 + 4
        assert body[-1].split()[0] == "3"

    def test_binary_format(self, session, tmp_path: Path):
        cfg = ExportMeshConfig(output_format="binary")
        out = ExportMeshStep(cfg, session).execute(
            ExportMeshInput(surface=_tetra(), output_path=tmp_path / "b.ply")
        )
        assert b"format binary_little_endian 1.0" in out.mesh_path.read_bytes()[:200]
        assert read_ply_counts(out.mesh_path) == {"vertex": 4, "face": 4}

    def test_colors_optional(self, session, tmp_path: Path):
        cfg = ExportMeshConfig(include_colors=False)
        out = ExportMeshStep(cfg, session).execute(
            ExportMeshInput(surface=_tetra(), output_path=tmp_path / "nc.ply")
        )
        header, _ = _header_and_body(out.mesh_path)
        assert not any("red" in line for line in header)

    def test_metadata_sidecar(self, session, tmp_path: Path):
        out = ExportMeshStep(ExportMeshConfig(), session).execute(
            ExportMeshInput(
                surface=_points(), output_path=tmp_path / "s.ply", metadata={"aligned_frames": 4}
            )
        )
        assert out.metadata_path == tmp_path / "s.json"
        meta = json.loads(out.metadata_path.read_text())
        assert meta["vertex_count"] == 50
        assert meta["aligned_frames"] == 4
        assert meta["mesh_file"] == "s.ply"

    def test_json_output_path_collides_with_sidecar(self, session, tmp_path: Path):
        target = tmp_path / "scan.json"
        target.write_text("{}")
        with pytest.raises(MeshExportFailed, match="sidecar"):
            ExportMeshStep(ExportMeshConfig(), session).execute(
                ExportMeshInput(surface=_points(), output_path=target)
            )
        assert target.read_text() == "{}"
        assert [p.name for p in tmp_path.iterdir()] == ["scan.json"]

    def test_json_output_path_without_sidecar(self, session, tmp_path: Path):
        out = ExportMeshStep(ExportMeshConfig(write_metadata=False), session).execute(
            ExportMeshInput(surface=_points(), output_path=tmp_path / "scan.json")
        )
        assert read_ply_counts(out.mesh_path)["vertex"] == 50

    def test_generated_path(self, session, tmp_path: Path):
        out = ExportMeshStep(ExportMeshConfig(write_metadata=False), session).execute(
            ExportMeshInput(surface=_points(), output_dir=tmp_path)
        )
        assert out.mesh_path.parent == tmp_path
        assert out.mesh_path.name.startswith("face_reconstruction_")
        assert out.metadata_path is None

    def test_unwritable_target(self, session, tmp_path: Path):
        blocker = tmp_path / "not_a_dir"
        blocker.write_text("x")
        target = blocker / "out.ply"
        with pytest.raises(MeshExportFailed):
            ExportMeshStep(ExportMeshConfig(), session).execute(
                ExportMeshInput(surface=_points(), output_path=target)
            )
        assert not target.exists()

    def test_no_partial_file_on_failure(self, session, tmp_path: Path, monkeypatch):
        from plyfile import PlyData

        def broken_write(self, stream):
            raise OSError("disk full")

        monkeypatch.setattr(PlyData, "write", broken_write)
        target = tmp_path / "out.ply"
        with pytest.raises(MeshExportFailed, match="disk full"):
            ExportMeshStep(ExportMeshConfig(), session).execute(
                ExportMeshInput(surface=_points(), output_path=target)
            )
        assert list(tmp_path.iterdir()) == []

    def test_overwrites_existing_atomically(self, session, tmp_path: Path):
        target = tmp_path / "o.ply"
        target.write_text("old")
        ExportMeshStep(ExportMeshConfig(write_metadata=False), session).execute(
            ExportMeshInput(surface=_points(), output_path=target)
        )
        assert target.read_text().startswith("ply")
        assert [p.name for p in tmp_path.iterdir()] == ["o.ply"]

    def test_empty_surface_rejected(self, session, tmp_path: Path):
        from facerecon.core.step_base import StepInputInvalid

        with pytest.raises(StepInputInvalid):
            ExportMeshStep(ExportMeshConfig(), session).execute(
                ExportMeshInput(surface=FusedSurface(vertices=np.zeros((0, 3))), output_path=tmp_path / "e.ply")
            )
