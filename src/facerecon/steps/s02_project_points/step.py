"""Step 02: Back-project depth maps into camera-space point sets (pinhole model)."""

from __future__ import annotations

import logging
from typing import ClassVar

import numpy as np

from facerecon.core.step_base import BaseStep
from facerecon.core.structures import CaptureFrame, PointSet, RejectionCounts
from .config import ProjectPointsConfig
from .contracts import ProjectPointsInput, ProjectPointsOutput

logger = logging.getLogger(__name__)


def _organized_normals(grid: np.ndarray) -> np.ndarray:
    """Normals of an organized (H, W, 3) point grid with NaN holes.

    Cross product of the row/column tangents, oriented towards the camera.
    Samples without a usable neighbourhood fall back to the viewing direction.
    """
    h, w = grid.shape[:2]
    with np.errstate(invalid="ignore"):
        fallback = -grid / np.linalg.norm(grid, axis=-1, keepdims=True).clip(min=1e-12)
    if h < 2 or w < 2:
        return fallback

    with np.errstate(invalid="ignore"):
        d_row = np.gradient(grid, axis=0)
        d_col = np.gradient(grid, axis=1)
        normals = np.cross(d_col, d_row)
        norm = np.linalg.norm(normals, axis=-1, keepdims=True)
    ok = np.isfinite(norm[..., 0]) & (norm[..., 0] > 1e-12)
    normals = np.where(ok[..., None], normals / np.where(ok[..., None], norm, 1.0), fallback)

    # Orient towards the camera (origin)
    flip = np.einsum("hwk,hwk->hw", normals, grid) > 0
    normals[flip] *= -1
    return normals


def project_frame(
    frame: CaptureFrame,
    stride: int = 4,
    max_depth: float = 2.0,
    estimate_normals: bool = True,
    attach_colors: bool = True,
) -> PointSet:
    """Back-project one frame's depth map into its camera space.

    A sample at pixel (col, row) with depth d becomes
    ``((col - cx) * d / fx, (row - cy) * d / fy, d)``. Samples that are not
    finite, not positive or beyond ``max_depth`` are skipped and counted.
    Output order is row-major over the strided grid.
    """
    K = frame.intrinsics
    depth = frame.depth_map[::stride, ::stride].astype(np.float64)
    rows = np.arange(0, frame.depth_height, stride)
    cols = np.arange(0, frame.depth_width, stride)

    finite = np.isfinite(depth)
    positive = finite & (depth > 0)
    in_range = positive & (depth <= max_depth)
    rejected = RejectionCounts(
        non_finite=int((~finite).sum()),
        non_positive=int((finite & ~positive).sum()),
        out_of_range=int((positive & ~in_range).sum()),
    )

    col_grid, row_grid = np.meshgrid(cols.astype(np.float64), rows.astype(np.float64))
    d = np.where(in_range, depth, np.nan)
    grid = np.stack([
        (col_grid - K.cx) * d / K.fx,
        (row_grid - K.cy) * d / K.fy,
        d,
    ], axis=-1)

    r_idx, c_idx = np.nonzero(in_range)
    points = grid[r_idx, c_idx]
    pixels = np.column_stack([rows[r_idx], cols[c_idx]]).astype(np.int64)

    normals = None
    if estimate_normals and len(points):
        normals = _organized_normals(grid)[r_idx, c_idx]

    colors = None
    if attach_colors and frame.color_image is not None and len(points):
        ch, cw = frame.color_image.shape[:2]
        cr = np.clip((pixels[:, 0] * ch) // frame.depth_height, 0, ch - 1)
        cc = np.clip((pixels[:, 1] * cw) // frame.depth_width, 0, cw - 1)
        colors = frame.color_image[cr, cc, :3].astype(np.uint8)

    logger.debug(
        f"Frame {frame.index}: {len(points)} points, rejected {rejected.total} "
        f"(non-finite={rejected.non_finite}, non-positive={rejected.non_positive}, "
        f"out-of-range={rejected.out_of_range})"
    )
    return PointSet(
        frame_index=frame.index,
        points=points,
        timestamp=frame.timestamp,
        angle_label=frame.angle_label,
        normals=normals,
        colors=colors,
        pixels=pixels,
        rejected=rejected,
    )


class ProjectPointsStep(BaseStep[ProjectPointsInput, ProjectPointsOutput, ProjectPointsConfig]):
    name: ClassVar[str] = "project_points"
    input_type: ClassVar = ProjectPointsInput
    output_type: ClassVar = ProjectPointsOutput
    config_type: ClassVar = ProjectPointsConfig

    def validate_inputs(self, inputs: ProjectPointsInput) -> bool:
        for frame in inputs.frames:
            if frame.depth_map.ndim != 2 or frame.depth_map.size == 0:
                logger.error(f"Frame {frame.index} has no depth map")
                return False
        return True

    def run(self, inputs: ProjectPointsInput) -> ProjectPointsOutput:
        point_sets = self.session.map_frames(self._project, inputs.frames, stage=self.name)

        total_points = sum(len(ps) for ps in point_sets)
        total_rejected = sum(ps.rejected.total for ps in point_sets)
        for ps in point_sets:
            logger.info(
                f"Frame {ps.frame_index} [{ps.angle_label}]: {len(ps)} points, "
                f"{ps.rejected.total} samples rejected"
            )
            if ps.is_empty:
                logger.warning(f"Frame {ps.frame_index} produced no valid points")
        logger.info(
            f"Projected {total_points} points from {len(point_sets)} frames "
            f"(stride={self.config.stride}, rejected={total_rejected})"
        )
        return ProjectPointsOutput(
            point_sets=point_sets, total_points=total_points, total_rejected=total_rejected
        )

    def _project(self, frame: CaptureFrame) -> PointSet:
        point_set = project_frame(
            frame,
            stride=self.config.stride,
            max_depth=self.config.max_depth,
            estimate_normals=self.config.estimate_normals,
            attach_colors=self.config.attach_colors,
        )
        if self.config.release_images:
            frame.release_images()
        return point_set
