"""Tests for S02: Depth back-projection."""

import numpy as np
import pytest

from facerecon.core.contracts import CameraIntrinsics
from facerecon.steps.s02_project_points.config import ProjectPointsConfig
from facerecon.steps.s02_project_points.contracts import ProjectPointsInput, ProjectPointsOutput
from facerecon.steps.s02_project_points.step import ProjectPointsStep, project_frame


class TestProjectPointsContracts:
    def test_config_defaults(self):
        cfg = ProjectPointsConfig()
        assert cfg.stride == 4
        assert cfg.max_depth == 2.0

    @pytest.mark.parametrize("kwargs", [{"stride": 0}, {"max_depth": 0.0}])
    def test_config_bounds(self, kwargs):
        with pytest.raises(ValueError):
            ProjectPointsConfig(**kwargs)

    def test_contract_schemas(self):
        frames = ProjectPointsInput.model_json_schema()["properties"]["frames"]
        assert frames["items"]["title"] == "CaptureFrame"
        out = ProjectPointsOutput.model_json_schema()["properties"]
        assert out["point_sets"]["items"]["title"] == "PointSet"
        assert "total_rejected" in out


class TestProjectFrame:
    def test_constant_depth_round_trip(self, intrinsics, frame_factory):
        d = 0.5
        frame = frame_factory(np.full((480, 640), d), intrinsics)
        ps = project_frame(frame, stride=4)

        assert len(ps) == 120 * 160
        assert np.all(ps.points[:, 2] == np.float32(d))

        rows, cols = ps.pixels[:, 0], ps.pixels[:, 1]
        expected_x = (cols - 320.0) * d / 500.0
        expected_y = (rows - 240.0) * d / 500.0
        np.testing.assert_allclose(ps.points[:, 0], expected_x, atol=1e-5)
        np.testing.assert_allclose(ps.points[:, 1], expected_y, atol=1e-5)

    def test_row_major_order(self, frame_factory):
        K = CameraIntrinsics(fx=10, fy=10, cx=2, cy=1.5, width=4, height=3)
        ps = project_frame(frame_factory(np.full((3, 4), 1.0), K), stride=1)
        expected = [(r, c) for r in range(3) for c in range(4)]
        assert [tuple(p) for p in ps.pixels] == expected

    def test_invalid_depth_exclusion(self, frame_factory):
        depth = np.array([
            [0.5, 0.0, -0.3, np.nan],
            [np.inf, 2.5, 0.7, 1.9],
            [-np.inf, 0.4, 2.0, 0.0],
        ])
        K = CameraIntrinsics(fx=10, fy=10, cx=2, cy=1.5, width=4, height=3)
        ps = project_frame(frame_factory(depth, K), stride=1, max_depth=2.0)

        valid = [0.5, 0.7, 1.9, 0.4, 2.0]
        assert len(ps) == len(valid)
        np.testing.assert_allclose(ps.points[:, 2], np.float32(valid))
        assert ps.rejected.non_finite == 3
        assert ps.rejected.non_positive == 3
        assert ps.rejected.out_of_range == 1
        assert ps.rejected.total + len(ps) == depth.size

    def test_stride_subsamples(self, intrinsics, frame_factory):
        frame = frame_factory(np.full((480, 640), 1.0), intrinsics)
        ps = project_frame(frame, stride=8)
        assert len(ps) == 60 * 80
        assert set(np.unique(ps.pixels[:, 0] % 8)) == {0}

    def test_all_zero_frame_is_empty(self, intrinsics, frame_factory):
        ps = project_frame(frame_factory(np.zeros((480, 640)), intrinsics))
        assert ps.is_empty
        assert ps.rejected.non_positive == 120 * 160

    def test_normals_face_camera(self, intrinsics, frame_factory):
        frame = frame_factory(np.full((480, 640), 0.5), intrinsics)
        ps = project_frame(frame, stride=4)
        np.testing.assert_allclose(np.linalg.norm(ps.normals, axis=1), 1.0, atol=1e-9)
        # A fronto-parallel plane has normals along -z everywhere
        assert np.all(ps.normals[:, 2] < -0.99)

    def test_colors_sampled_from_color_image(self, frame_factory):
        K = CameraIntrinsics(fx=10, fy=10, cx=2, cy=1.5, width=4, height=3)
        color = np.zeros((6, 8, 3), dtype=np.uint8)
        color[:, :, 0] = np.arange(8)[None, :] * 10
        frame = frame_factory(np.full((3, 4), 1.0), K, color_image=color)
        ps = project_frame(frame, stride=1)
        # depth column c maps to color column 2c
        np.testing.assert_array_equal(ps.colors[:, 0], ps.pixels[:, 1] * 20)

    def test_no_colors_without_image(self, intrinsics, frame_factory):
        ps = project_frame(frame_factory(np.full((480, 640), 0.5), intrinsics))
        assert ps.colors is None


class TestProjectPointsStep:
    def test_parallel_projection_keeps_order(self, session, intrinsics, frame_factory):
        frames = [
            frame_factory(np.full((480, 640), 0.4 + 0.1 * i), intrinsics, index=i)
            for i in range(5)
        ]
        step = ProjectPointsStep(config=ProjectPointsConfig(), session=session)
        out = step.execute(ProjectPointsInput(frames=frames))

        assert [ps.frame_index for ps in out.point_sets] == [0, 1, 2, 3, 4]
        for i, ps in enumerate(out.point_sets):
            assert np.allclose(ps.points[:, 2], 0.4 + 0.1 * i, atol=1e-6)
        assert out.total_points == 5 * 120 * 160
        assert out.total_rejected == 0

    def test_releases_images(self, session, intrinsics, frame_factory):
        frames = [frame_factory(np.full((480, 640), 0.5), intrinsics, index=i) for i in range(3)]
        step = ProjectPointsStep(config=ProjectPointsConfig(), session=session)
        step.execute(ProjectPointsInput(frames=frames))
        assert all(f.depth_map.size == 0 for f in frames)

    def test_rejects_released_frames(self, session, intrinsics, frame_factory):
        from facerecon.core.step_base import StepInputInvalid

        frame = frame_factory(np.full((480, 640), 0.5), intrinsics)
        frame.release_images()
        step = ProjectPointsStep(config=ProjectPointsConfig(), session=session)
        with pytest.raises(StepInputInvalid):
            step.execute(ProjectPointsInput(frames=[frame]))

    def test_deterministic(self, session, intrinsics, frame_factory):
        rng = np.random.default_rng(0)
        depth = rng.uniform(0.3, 1.0, (480, 640))
        cfg = ProjectPointsConfig(release_images=False)
        frames = [frame_factory(depth, intrinsics)]
        a = ProjectPointsStep(cfg, session).execute(ProjectPointsInput(frames=frames))
        b = ProjectPointsStep(cfg, session).execute(ProjectPointsInput(frames=frames))
        np.testing.assert_array_equal(a.point_sets[0].points, b.point_sets[0].points)
