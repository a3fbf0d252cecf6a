"""Step 03: Register frames into the anchor space and fuse them into one surface.

Pipeline:
1. Pick the anchor frame and align every other frame to a growing reference
   cloud with point-to-point ICP (_registration.py).
2. Integrate each frame's points into a sparse TSDF grid (_tsdf_grid.py),
   weighting observations by viewing angle and range.
3. Extract the zero-level surface as points or a mesh (_surface_extraction.py)
   and reject degenerate results.
"""

from __future__ import annotations

import logging
from typing import ClassVar

from facerecon.core.contracts import FrameRegistration
from facerecon.core.errors import FusionFailed, RegistrationDidNotConverge
from facerecon.core.step_base import BaseStep
from facerecon.core.structures import FusedSurface, PointSet
from ._registration import FramePose, FrameRegistrar
from ._surface_extraction import drop_points, extract_mesh, extract_points, isolated_points
from ._tsdf_grid import CellObservation, SparseTsdfGrid
from .config import FuseFramesConfig
from .contracts import FuseFramesInput, FuseFramesOutput

logger = logging.getLogger(__name__)


class FuseFramesStep(BaseStep[FuseFramesInput, FuseFramesOutput, FuseFramesConfig]):
    name: ClassVar[str] = "fuse_frames"
    input_type: ClassVar = FuseFramesInput
    output_type: ClassVar = FuseFramesOutput
    config_type: ClassVar = FuseFramesConfig

    def validate_inputs(self, inputs: FuseFramesInput) -> bool:
        if not inputs.point_sets:
            logger.error("No point sets to fuse")
            return False
        indices = [ps.frame_index for ps in inputs.point_sets]
        if len(set(indices)) != len(indices):
            logger.error(f"Duplicate frame indices: {indices}")
            return False
        return True

    def run(self, inputs: FuseFramesInput) -> FuseFramesOutput:
        cfg = self.config
        point_sets = inputs.point_sets

        # --- 1. Registration ---
        anchor, poses = FrameRegistrar(cfg).register(point_sets)
        self.session.check_cancelled(self.name)
        registrations = self._report_registrations(point_sets, poses)

        aligned = sum(1 for p in poses if p.converged)
        if aligned < 2:
            raise FusionFailed(
                f"only {aligned} frame(s) aligned to the anchor; at least 2 are required"
            )

        # --- 2. Integration ---
        grid = SparseTsdfGrid(
            voxel_size=cfg.voxel_size,
            sdf_trunc=cfg.sdf_trunc,
            min_view_cosine=cfg.min_view_cosine,
            range_decay=cfg.range_decay,
            max_weight=cfg.max_weight,
        )
        by_index = {ps.frame_index: ps for ps in point_sets}
        work = [(by_index[p.frame_index], p) for p in poses if p.num_points > 0]
        observations = self.session.map_frames(
            lambda item: self._observe(grid, *item), work, stage=self.name
        )
        for obs in observations:
            self.session.check_cancelled(self.name)
            grid.integrate(obs)
        logger.info(
            f"Integrated {grid.frames_integrated} frames into {len(grid)} cells "
            f"(voxel={cfg.voxel_size * 1000:.1f}mm, trunc={cfg.sdf_trunc * 1000:.1f}mm)"
        )

        # --- 3. Extraction ---
        self.session.check_cancelled(self.name)
        if cfg.output_mode == "mesh":
            surface = extract_mesh(grid, min_weight=cfg.min_weight, max_cells=cfg.max_mesh_cells)
        else:
            surface = extract_points(grid, min_weight=cfg.min_weight)
        if surface.vertex_count == 0:
            raise FusionFailed("the fused grid contains no surface")

        surface, removed = self._check_outliers(surface)
        logger.info(
            f"Fused surface: {surface.vertex_count} vertices, {surface.face_count} faces "
            f"({cfg.output_mode} mode, {aligned}/{len(point_sets)} frames aligned)"
        )
        return FuseFramesOutput(
            surface=surface,
            registrations=registrations,
            anchor_index=anchor.frame_index,
            aligned_frames=aligned,
            integrated_frames=grid.frames_integrated,
            num_cells=len(grid),
            outliers_removed=removed,
        )

    def _observe(self, grid: SparseTsdfGrid, ps: PointSet, pose: FramePose) -> CellObservation:
        return grid.observe(
            ps.frame_index,
            ps.points,
            pose.transform,
            normals=ps.normals,
            colors=ps.colors,
        )

    def _report_registrations(
        self, point_sets: list[PointSet], poses: list[FramePose]
    ) -> list[FrameRegistration]:
        labels = {ps.frame_index: ps.angle_label for ps in point_sets}
        reports = []
        for pose in poses:
            result = pose.result
            if pose.num_points == 0:
                self.session.warn(f"Frame {pose.frame_index} contributed no points to the fusion")
            elif result is not None and not result.converged:
                err = RegistrationDidNotConverge(pose.frame_index, result.residual, result.iterations)
                if self.config.fail_on_unconverged:
                    raise err
                self.session.warn(f"{err}; frame kept")

            reports.append(FrameRegistration(
                frame_index=pose.frame_index,
                angle_label=labels[pose.frame_index],
                is_anchor=pose.is_anchor,
                converged=pose.converged,
                iterations=result.iterations if result else 0,
                residual=result.residual if result else 0.0,
                inlier_fraction=result.inlier_fraction if result else (1.0 if pose.is_anchor else 0.0),
                num_points=pose.num_points,
                matrix_4x4=pose.transform.reshape(-1).tolist(),
            ))
        return reports

    def _check_outliers(self, surface: FusedSurface) -> tuple[FusedSurface, int]:
        cfg = self.config
        radius = cfg.outlier_radius or 3.0 * cfg.voxel_size
        isolated = isolated_points(surface.vertices, cfg.outlier_neighbors, radius)
        fraction = float(isolated.mean()) if len(isolated) else 0.0
        logger.info(f"Isolated surface points: {int(isolated.sum())} ({fraction:.1%})")
        if fraction > cfg.max_outlier_fraction:
            raise FusionFailed(
                f"{fraction:.0%} of surface points are isolated "
                f"(limit {cfg.max_outlier_fraction:.0%})"
            )
        if cfg.remove_outliers and surface.mode == "points" and isolated.any():
            surface = drop_points(surface, ~isolated)
            if surface.vertex_count == 0:
                raise FusionFailed("no surface points left after outlier removal")
            return surface, int(isolated.sum())
        return surface, 0
