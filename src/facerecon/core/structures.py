"""In-memory array containers passed between steps.

These hold numpy buffers, so they are plain dataclasses rather than Pydantic
models. Step contracts carry them through the ``*Field`` aliases at the bottom,
which check the instance type and publish an opaque object in the JSON schema.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Annotated, Literal, Optional

import numpy as np
from pydantic import InstanceOf, WithJsonSchema

from .contracts import CameraIntrinsics


@dataclass
class CaptureFrame:
    """One decoded depth + color sample from one head angle."""

    index: int
    depth_map: np.ndarray  # (H, W) float32, meters
    intrinsics: CameraIntrinsics  # at depth map resolution
    timestamp: float
    angle_label: str = "unknown"
    color_image: Optional[np.ndarray] = None  # (Hc, Wc, 3) uint8 RGB
    color_path: Optional[Path] = None
    depth_path: Optional[Path] = None

    @property
    def depth_width(self) -> int:
        return int(self.depth_map.shape[1])

    @property
    def depth_height(self) -> int:
        return int(self.depth_map.shape[0])

    def release_images(self) -> None:
        """Drop the raster buffers once they have been projected."""
        self.color_image = None
        self.depth_map = np.zeros((0, 0), dtype=np.float32)


@dataclass
class RejectionCounts:
    """Depth samples deliberately excluded by the projector, by cause."""

    non_finite: int = 0
    non_positive: int = 0
    out_of_range: int = 0

    @property
    def total(self) -> int:
        return self.non_finite + self.non_positive + self.out_of_range


@dataclass
class PointSet:
    """Valid 3D samples of one frame in that frame's camera space.

    Row i of every array describes the same Point3D.
    """

    frame_index: int
    points: np.ndarray  # (N, 3) float64
    timestamp: float = 0.0
    angle_label: str = "unknown"
    normals: Optional[np.ndarray] = None  # (N, 3) unit vectors, facing the camera
    colors: Optional[np.ndarray] = None  # (N, 3) uint8
    pixels: Optional[np.ndarray] = None  # (N, 2) int (row, col)
    rejected: RejectionCounts = field(default_factory=RejectionCounts)

    def __len__(self) -> int:
        return len(self.points)

    @property
    def is_empty(self) -> bool:
        return len(self.points) == 0


@dataclass
class FusedSurface:
    """Surface extracted from the fused grid: a dense point sample or a triangle mesh."""

    vertices: np.ndarray  # (N, 3) float64, reconstruction space
    mode: Literal["points", "mesh"] = "points"
    faces: np.ndarray = field(default_factory=lambda: np.zeros((0, 3), dtype=np.int32))
    colors: Optional[np.ndarray] = None  # (N, 3) uint8

    @property
    def vertex_count(self) -> int:
        return int(len(self.vertices))

    @property
    def face_count(self) -> int:
        return int(len(self.faces)) if self.mode == "mesh" else 0


def _opaque(name: str, description: str) -> WithJsonSchema:
    return WithJsonSchema({"type": "object", "title": name, "description": description})


CaptureFrameField = Annotated[
    InstanceOf[CaptureFrame], _opaque("CaptureFrame", "Decoded depth map, color image and intrinsics")
]
PointSetField = Annotated[
    InstanceOf[PointSet], _opaque("PointSet", "Camera-space points with normals, colors and pixels")
]
FusedSurfaceField = Annotated[
    InstanceOf[FusedSurface], _opaque("FusedSurface", "Fused point sample or triangle mesh")
]
