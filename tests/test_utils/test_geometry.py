"""Tests for facerecon.utils.geometry: rotations, rigid transforms, downsampling."""

import numpy as np
import pytest

from facerecon.utils.geometry import (
    apply_transform,
    axis_angle_to_rotmat,
    euler_to_rotmat,
    invert_transform,
    make_transform,
    rotate_vectors,
    rotation_angle,
    transform_delta,
    voxel_downsample,
)


class TestRotations:
    def test_axis_angle_quarter_turn(self):
        R = axis_angle_to_rotmat([0, 0, 1], np.pi / 2)
        np.testing.assert_allclose(R @ [1, 0, 0], [0, 1, 0], atol=1e-12)

    def test_zero_axis_is_identity(self):
        np.testing.assert_array_equal(axis_angle_to_rotmat([0, 0, 0], 1.0), np.eye(3))

    def test_euler_is_proper_rotation(self):
        R = euler_to_rotmat(10, -5, 3)
        np.testing.assert_allclose(R @ R.T, np.eye(3), atol=1e-12)
        assert np.linalg.det(R) == pytest.approx(1.0)

    def test_yaw_turns_about_vertical(self):
        R = euler_to_rotmat(yaw_deg=90)
        np.testing.assert_allclose(R @ [0, 1, 0], [0, 1, 0], atol=1e-12)

    def test_rotation_angle(self):
        assert rotation_angle(axis_angle_to_rotmat([1, 1, 0], 0.3)) == pytest.approx(0.3)
        assert rotation_angle(np.eye(3)) == 0.0


class TestTransforms:
    def test_invert(self):
        T = make_transform(euler_to_rotmat(20, 10, -5), [0.1, -0.2, 0.3])
        np.testing.assert_allclose(invert_transform(T) @ T, np.eye(4), atol=1e-12)

    def test_apply_and_rotate(self):
        T = make_transform(axis_angle_to_rotmat([0, 0, 1], np.pi / 2), [1, 0, 0])
        pts = np.array([[1.0, 0.0, 0.0]])
        np.testing.assert_allclose(apply_transform(T, pts), [[1, 1, 0]], atol=1e-12)
        np.testing.assert_allclose(rotate_vectors(T, pts), [[0, 1, 0]], atol=1e-12)

    def test_apply_empty(self):
        assert apply_transform(np.eye(4), np.zeros((0, 3))).shape == (0, 3)

    def test_transform_delta(self):
        T = make_transform(axis_angle_to_rotmat([0, 1, 0], 0.01), [0.003, 0.004, 0])
        assert transform_delta(np.eye(4), T) == pytest.approx(0.01 + 0.005)
        assert transform_delta(T, T) == pytest.approx(0.0, abs=1e-6)


class TestVoxelDownsample:
    def test_centroids(self):
        pts = np.array([[0.001, 0.001, 0.001], [0.003, 0.003, 0.003], [0.011, 0, 0]])
        down = voxel_downsample(pts, 0.01)
        assert len(down) == 2
        np.testing.assert_allclose(down[0], [0.002, 0.002, 0.002])

    def test_max_points(self):
        rng = np.random.default_rng(0)
        down = voxel_downsample(rng.uniform(0, 1, (5000, 3)), 0.01, max_points=100)
        assert len(down) == 100

    def test_empty(self):
        assert len(voxel_downsample(np.zeros((0, 3)), 0.01)) == 0
