"""3D geometry utilities: rotations, rigid transforms, voxel downsampling."""

from __future__ import annotations

import logging

import numpy as np

logger = logging.getLogger(__name__)


def axis_angle_to_rotmat(axis: list[float] | np.ndarray, angle_rad: float) -> np.ndarray:
    """Rodrigues formula: rotation of ``angle_rad`` about ``axis``."""
    axis = np.asarray(axis, dtype=np.float64)
    norm = np.linalg.norm(axis)
    if norm == 0 or angle_rad == 0:
        return np.eye(3)
    x, y, z = axis / norm
    K = np.array([
        [0, -z, y],
        [z, 0, -x],
        [-y, x, 0],
    ])
    return np.eye(3) + np.sin(angle_rad) * K + (1 - np.cos(angle_rad)) * (K @ K)


def euler_to_rotmat(yaw_deg: float = 0.0, pitch_deg: float = 0.0, roll_deg: float = 0.0) -> np.ndarray:
    """Head-turn rotation: yaw about +Y, then pitch about +X, then roll about +Z."""
    Ry = axis_angle_to_rotmat([0, 1, 0], np.deg2rad(yaw_deg))
    Rx = axis_angle_to_rotmat([1, 0, 0], np.deg2rad(pitch_deg))
    Rz = axis_angle_to_rotmat([0, 0, 1], np.deg2rad(roll_deg))
    return Rz @ Rx @ Ry


def rotation_angle(R: np.ndarray) -> float:
    """Magnitude (radians) of the rotation represented by ``R``."""
    cos_theta = (np.trace(R) - 1.0) / 2.0
    return float(np.arccos(np.clip(cos_theta, -1.0, 1.0)))


def make_transform(R: np.ndarray, t: np.ndarray | list[float]) -> np.ndarray:
    """Build a 4x4 rigid transform from rotation + translation."""
    T = np.eye(4)
    T[:3, :3] = R
    T[:3, 3] = np.asarray(t, dtype=np.float64).reshape(3)
    return T


def invert_transform(T: np.ndarray) -> np.ndarray:
    """Inverse of a rigid 4x4 transform without a general matrix inverse."""
    R = T[:3, :3]
    t = T[:3, 3]
    return make_transform(R.T, -R.T @ t)


def apply_transform(T: np.ndarray, points: np.ndarray) -> np.ndarray:
    """Apply a 4x4 rigid transform to (N, 3) points."""
    if len(points) == 0:
        return np.zeros((0, 3), dtype=np.float64)
    return points @ T[:3, :3].T + T[:3, 3]


def rotate_vectors(T: np.ndarray, vectors: np.ndarray) -> np.ndarray:
    """Apply only the rotation part of ``T`` to (N, 3) direction vectors."""
    if len(vectors) == 0:
        return np.zeros((0, 3), dtype=np.float64)
    return vectors @ T[:3, :3].T


def transform_delta(T_prev: np.ndarray, T_next: np.ndarray) -> float:
    """Scalar change between two poses: rotation angle (rad) + translation norm (m)."""
    rel = invert_transform(T_prev) @ T_next
    return rotation_angle(rel[:3, :3]) + float(np.linalg.norm(rel[:3, 3]))


def voxel_downsample(
    points: np.ndarray, voxel_size: float, max_points: int | None = None
) -> np.ndarray:
    """Replace the points in each occupied voxel by their centroid.

    Output order follows the sorted voxel keys, so it is deterministic.
    """
    if len(points) == 0 or voxel_size <= 0:
        return points
    keys = np.floor(points / voxel_size).astype(np.int64)
    _, inverse, counts = np.unique(keys, axis=0, return_inverse=True, return_counts=True)
    inverse = inverse.reshape(-1)
    sums = np.zeros((len(counts), 3), dtype=np.float64)
    np.add.at(sums, inverse, points)
    down = sums / counts[:, None]
    logger.debug(f"Voxel downsample ({voxel_size}): {len(points)} -> {len(down)} points")
    if max_points is not None and len(down) > max_points:
        idx = np.linspace(0, len(down) - 1, max_points).astype(np.int64)
        down = down[idx]
    return down
