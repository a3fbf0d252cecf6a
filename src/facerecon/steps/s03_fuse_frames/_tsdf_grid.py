"""Sparse truncated signed distance grid.

Cells are addressed by integer coordinates ``floor(x / voxel_size)`` packed
into one int64 key (21 bits per axis). Only observed cells are stored, as
parallel arrays sorted by key:

    tsdf    weighted mean signed distance, normalized to [-1, 1]
    weight  accumulated observation weight, capped at ``max_weight``
    color   weighted mean RGB (float)

Signed distance is measured along the viewing ray and is positive in front of
the observed surface (between camera and surface).

Integration of one frame happens in two phases. ``observe`` turns a frame's
aligned points into one observation per touched cell and has no side effects,
so frames can be observed in parallel. ``integrate`` merges an observation
into the grid under a lock, one frame at a time in frame order.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Optional

import numpy as np

from facerecon.utils.geometry import apply_transform, rotate_vectors

logger = logging.getLogger(__name__)

_BITS = 21
_OFFSET = 1 << (_BITS - 1)
_MASK = (1 << _BITS) - 1

# Key increments for a +1 step along x, y, z
AXIS_STEPS = (1 << (2 * _BITS), 1 << _BITS, 1)


def pack_keys(ijk: np.ndarray) -> np.ndarray:
    """(N, 3) int cell coordinates -> (N,) int64 keys. Coordinates must be in range."""
    shifted = ijk.astype(np.int64) + _OFFSET
    return (shifted[:, 0] << (2 * _BITS)) | (shifted[:, 1] << _BITS) | shifted[:, 2]


def unpack_keys(keys: np.ndarray) -> np.ndarray:
    keys = keys.astype(np.int64)
    return np.column_stack([
        ((keys >> (2 * _BITS)) & _MASK) - _OFFSET,
        ((keys >> _BITS) & _MASK) - _OFFSET,
        (keys & _MASK) - _OFFSET,
    ])


def in_key_range(ijk: np.ndarray) -> np.ndarray:
    return np.all((ijk >= -_OFFSET) & (ijk < _OFFSET), axis=1)


@dataclass
class CellObservation:
    """One frame's contribution: at most one (tsdf, weight, color) per cell."""

    frame_index: int
    keys: np.ndarray  # (M,) int64, sorted, unique
    tsdf: np.ndarray  # (M,) float64 in [-1, 1]
    weight: np.ndarray  # (M,) float64 > 0
    color: Optional[np.ndarray] = None  # (M, 3) float64

    def __len__(self) -> int:
        return len(self.keys)


class SparseTsdfGrid:
    def __init__(
        self,
        voxel_size: float = 0.004,
        sdf_trunc: float = 0.012,
        min_view_cosine: float = 0.1,
        range_decay: float = 1.0,
        max_weight: float = 64.0,
    ):
        self.voxel_size = float(voxel_size)
        self.sdf_trunc = float(sdf_trunc)
        self.min_view_cosine = float(min_view_cosine)
        self.range_decay = float(range_decay)
        self.max_weight = float(max_weight)

        self.keys = np.zeros(0, dtype=np.int64)
        self.tsdf = np.zeros(0, dtype=np.float64)
        self.weight = np.zeros(0, dtype=np.float64)
        self.color: Optional[np.ndarray] = None
        self.frames_integrated = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self.keys)

    def observation_weights(
        self, rays: np.ndarray, ranges: np.ndarray, normals: Optional[np.ndarray]
    ) -> np.ndarray:
        """Per-point confidence from viewing angle and range.

        ``clip(|n . -ray|, min_view_cosine, 1) / (1 + range_decay * range^2)``;
        without normals the angle term is 1.
        """
        if normals is None:
            angle = np.ones(len(rays))
        else:
            angle = np.abs(np.einsum("ij,ij->i", normals, -rays))
            angle = np.clip(np.nan_to_num(angle, nan=1.0), self.min_view_cosine, 1.0)
        return angle / (1.0 + self.range_decay * ranges ** 2)

    def observe(
        self,
        frame_index: int,
        points: np.ndarray,
        pose: np.ndarray,
        normals: Optional[np.ndarray] = None,
        colors: Optional[np.ndarray] = None,
    ) -> CellObservation:
        """Project one frame's camera-space points into grid cells.

        Each point is marched along its camera ray from ``-sdf_trunc`` to
        ``+sdf_trunc`` in half-voxel steps; every cell touched receives the
        distance from its center to the surface point along the ray. Samples
        of one frame that land in the same cell are averaged, so each cell
        gets a single observation per frame.
        """
        if len(points) == 0:
            return CellObservation(
                frame_index=frame_index,
                keys=np.zeros(0, dtype=np.int64),
                tsdf=np.zeros(0),
                weight=np.zeros(0),
                color=np.zeros((0, 3)) if colors is not None else None,
            )

        world = apply_transform(pose, points)
        center = pose[:3, 3]
        offsets = world - center
        ranges = np.linalg.norm(offsets, axis=1)
        rays = offsets / np.maximum(ranges, 1e-12)[:, None]
        n_world = rotate_vectors(pose, normals) if normals is not None else None
        point_w = self.observation_weights(rays, ranges, n_world)

        step = self.voxel_size / 2.0
        n_steps = int(np.ceil(self.sdf_trunc / step))
        ts = np.arange(-n_steps, n_steps + 1) * step  # positive t = towards the camera

        # (P, S, 3) sample positions, flattened sample-major per point
        samples = world[:, None, :] - ts[None, :, None] * rays[:, None, :]
        ijk = np.floor(samples.reshape(-1, 3) / self.voxel_size).astype(np.int64)
        cell_centers = (ijk + 0.5) * self.voxel_size

        point_idx = np.repeat(np.arange(len(world)), len(ts))
        sdf = np.einsum("ij,ij->i", world[point_idx] - cell_centers, rays[point_idx])

        keep = (sdf >= -self.sdf_trunc) & (sdf <= self.sdf_trunc) & in_key_range(ijk)
        if not np.all(in_key_range(ijk)):
            logger.warning(f"Frame {frame_index}: samples outside the addressable grid dropped")
        ijk, sdf, point_idx = ijk[keep], sdf[keep], point_idx[keep]
        w = point_w[point_idx]

        keys, inverse, counts = np.unique(pack_keys(ijk), return_inverse=True, return_counts=True)
        inverse = inverse.reshape(-1)
        w_sum = np.bincount(inverse, weights=w, minlength=len(keys))
        tsdf = np.bincount(inverse, weights=w * sdf / self.sdf_trunc, minlength=len(keys)) / w_sum
        weight = w_sum / counts

        color = None
        if colors is not None:
            rgb = colors.astype(np.float64)[point_idx]
            color = np.column_stack([
                np.bincount(inverse, weights=w * rgb[:, c], minlength=len(keys)) / w_sum
                for c in range(3)
            ])

        return CellObservation(
            frame_index=frame_index,
            keys=keys,
            tsdf=np.clip(tsdf, -1.0, 1.0),
            weight=weight,
            color=color,
        )

    def integrate(self, obs: CellObservation) -> None:
        """Merge one frame's observation by weighted averaging (thread-safe)."""
        with self._lock:
            if len(obs):
                self._merge(obs)
            self.frames_integrated += 1
            logger.debug(
                f"Integrated frame {obs.frame_index}: {len(obs)} cells observed, "
                f"{len(self.keys)} cells total"
            )

    def _merge(self, obs: CellObservation) -> None:
        all_keys = np.concatenate([self.keys, obs.keys])
        keys, inverse = np.unique(all_keys, return_inverse=True)
        inverse = inverse.reshape(-1)
        n = len(keys)

        weights = np.concatenate([self.weight, obs.weight])
        values = np.concatenate([self.tsdf, obs.tsdf])
        w_sum = np.bincount(inverse, weights=weights, minlength=n)
        tsdf = np.bincount(inverse, weights=weights * values, minlength=n) / w_sum

        has_color = obs.color is not None and (self.color is not None or len(self.keys) == 0)
        color = None
        if has_color:
            old = self.color if self.color is not None else np.zeros((0, 3))
            rgb = np.vstack([old, obs.color])
            color = np.column_stack([
                np.bincount(inverse, weights=weights * rgb[:, c], minlength=n) / w_sum
                for c in range(3)
            ])

        self.keys = keys
        self.tsdf = tsdf
        self.weight = np.minimum(w_sum, self.max_weight)
        self.color = color

    # --- Read access ---

    def cell_coords(self) -> np.ndarray:
        return unpack_keys(self.keys)

    def cell_centers(self) -> np.ndarray:
        return (self.cell_coords() + 0.5) * self.voxel_size

    def lookup(self, keys: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        """Positions of ``keys`` in the grid arrays and a found mask."""
        if len(self.keys) == 0:
            return np.zeros(len(keys), dtype=np.int64), np.zeros(len(keys), dtype=bool)
        pos = np.searchsorted(self.keys, keys)
        pos = np.clip(pos, 0, len(self.keys) - 1)
        return pos, self.keys[pos] == keys
