"""Synthetic capture sessions for tests and demos.

Renders exact depth maps of simple analytic surfaces (a plane facing the
camera or a sphere standing in for a head) as seen by a camera that orbits a
pivot point, mimicking the subject turning their head between captures. The
anchor ("front") camera frame is the world frame.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Sequence

import numpy as np

from facerecon.core.contracts import CameraIntrinsics
from .geometry import euler_to_rotmat, make_transform
from .io import write_color_image, write_depth_bin

logger = logging.getLogger(__name__)

SurfaceKind = Literal["plane", "sphere"]


@dataclass(frozen=True)
class SyntheticView:
    angle_label: str
    yaw_deg: float = 0.0
    pitch_deg: float = 0.0


def five_angle_views(turn_deg: float = 3.0) -> list[SyntheticView]:
    """front / left / right / top / bottom with a symmetric head turn."""
    return [
        SyntheticView("front"),
        SyntheticView("left", yaw_deg=turn_deg),
        SyntheticView("right", yaw_deg=-turn_deg),
        SyntheticView("top", pitch_deg=turn_deg),
        SyntheticView("bottom", pitch_deg=-turn_deg),
    ]


def head_turn_pose(yaw_deg: float, pitch_deg: float, pivot: Sequence[float]) -> np.ndarray:
    """Camera-to-world pose of a camera orbiting ``pivot`` by the given angles."""
    p = np.asarray(pivot, dtype=np.float64)
    R = euler_to_rotmat(yaw_deg=yaw_deg, pitch_deg=pitch_deg)
    return make_transform(np.eye(3), p) @ make_transform(R, [0, 0, 0]) @ make_transform(np.eye(3), -p)


def render_depth(
    pose_c2w: np.ndarray,
    intrinsics: CameraIntrinsics,
    surface: SurfaceKind = "plane",
    plane_depth: float = 0.5,
    sphere_center: Sequence[float] = (0.0, 0.0, 0.6),
    sphere_radius: float = 0.1,
) -> np.ndarray:
    """Ray-cast a (H, W) depth map (camera z, meters); misses are 0."""
    u, v = np.meshgrid(np.arange(intrinsics.width), np.arange(intrinsics.height))
    dirs_cam = np.stack([
        (u - intrinsics.cx) / intrinsics.fx,
        (v - intrinsics.cy) / intrinsics.fy,
        np.ones_like(u, dtype=np.float64),
    ], axis=-1)
    R = pose_c2w[:3, :3]
    origin = pose_c2w[:3, 3]
    dirs = dirs_cam @ R.T

    if surface == "plane":
        with np.errstate(divide="ignore", invalid="ignore"):
            t = (plane_depth - origin[2]) / dirs[..., 2]
        t = np.where(np.isfinite(t) & (t > 0), t, 0.0)
    elif surface == "sphere":
        oc = origin - np.asarray(sphere_center, dtype=np.float64)
        a = np.einsum("hwk,hwk->hw", dirs, dirs)
        b = 2.0 * np.einsum("hwk,k->hw", dirs, oc)
        c = float(oc @ oc) - sphere_radius ** 2
        disc = b * b - 4 * a * c
        hit = disc >= 0
        t = np.zeros_like(a)
        t[hit] = (-b[hit] - np.sqrt(disc[hit])) / (2 * a[hit])
        t = np.where(t > 0, t, 0.0)
    else:
        raise ValueError(f"Unknown surface kind: {surface}")

    # dirs_cam has unit z, so the ray parameter is the camera-space depth
    return t.astype(np.float32)


def render_color(width: int, height: int, seed: int = 0) -> np.ndarray:
    """Smooth RGB gradient with a little noise, (H, W, 3) uint8."""
    rng = np.random.default_rng(seed)
    img = np.zeros((height, width, 3), dtype=np.float64)
    img[:, :, 0] = np.linspace(60, 220, width)[None, :]
    img[:, :, 1] = np.linspace(80, 200, height)[:, None]
    img[:, :, 2] = 150
    img += rng.normal(0, 5, img.shape)
    return np.clip(img, 0, 255).astype(np.uint8)


def write_synthetic_capture(
    out_dir: Path,
    views: Sequence[SyntheticView] | None = None,
    width: int = 640,
    height: int = 480,
    fx: float = 500.0,
    fy: float = 500.0,
    cx: float = 320.0,
    cy: float = 240.0,
    surface: SurfaceKind = "plane",
    plane_depth: float = 0.5,
    pivot_depth: float | None = None,
    noise_std: float = 0.0,
    seed: int = 0,
) -> list[dict]:
    """Write depth ``.bin`` + PNG color per view and a ``frames.json`` listing.

    Returns the frame descriptors (capture-layer camelCase keys).
    """
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    views = list(views) if views is not None else five_angle_views()
    intrinsics = CameraIntrinsics(fx=fx, fy=fy, cx=cx, cy=cy, width=width, height=height)
    pivot = (0.0, 0.0, pivot_depth if pivot_depth is not None else plane_depth + 0.1)
    rng = np.random.default_rng(seed)

    descriptors = []
    for i, view in enumerate(views):
        pose = head_turn_pose(view.yaw_deg, view.pitch_deg, pivot)
        depth = render_depth(pose, intrinsics, surface=surface, plane_depth=plane_depth)
        if noise_std > 0:
            valid = depth > 0
            depth[valid] += rng.normal(0, noise_std, int(valid.sum())).astype(np.float32)

        depth_path = write_depth_bin(out_dir / f"depth_{i:02d}_{view.angle_label}.bin", depth)
        color_path = write_color_image(
            out_dir / f"color_{i:02d}_{view.angle_label}.png", render_color(width, height, seed + i)
        )
        descriptors.append({
            "colorImagePath": str(color_path),
            "depthDataPath": str(depth_path),
            "depthWidth": width,
            "depthHeight": height,
            "fx": fx,
            "fy": fy,
            "cx": cx,
            "cy": cy,
            "timestamp": 1000.0 + i,
            "angleId": view.angle_label,
        })

    with open(out_dir / "frames.json", "w") as f:
        json.dump(descriptors, f, indent=2)
    logger.info(f"Wrote synthetic {surface} capture with {len(descriptors)} views -> {out_dir}")
    return descriptors
