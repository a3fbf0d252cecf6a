"""Rigid frame-to-model registration with Open3D ICP.

Each non-anchor frame is aligned against a growing reference cloud that starts
as the anchor's points. Registration runs in two passes:

1. Point-to-point ICP brings the (subsampled) source close to the reference.
2. Point-to-plane ICP, stepped one iteration at a time, refines the pose so
   that points slide along the surface into the true alignment instead of
   settling one sample spacing away.

Refinement stops when the pose increment falls below the tolerance, when
fitness and RMSE stop changing, or when the iteration budget runs out. When the
reference normals all point the same way (a plane) the tangential motion is
unobservable, so only the point-to-point pass is used.

A frame counts as converged when its point-to-plane inlier RMSE and inlier
fraction pass the quality thresholds; running out of iterations alone is only
logged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

from facerecon.core.errors import FusionFailed
from facerecon.core.structures import PointSet
from facerecon.utils.geometry import apply_transform, transform_delta, voxel_downsample
from .config import FuseFramesConfig

logger = logging.getLogger(__name__)

# Poses are quantized to this many decimals (sub-nanometer)
POSE_DECIMALS = 9


@dataclass
class IcpResult:
    transform: np.ndarray  # 4x4, source -> reference
    iterations: int  # point-to-plane refinement iterations
    residual: float  # point-to-plane inlier RMSE, meters
    inlier_fraction: float
    stopped: bool  # a stopping criterion was met within the budget
    converged: bool = False


def make_cloud(points: np.ndarray, normal_radius: float | None = None):
    """Wrap (N, 3) points in an Open3D cloud, estimating normals when a radius is given."""
    import open3d as o3d

    cloud = o3d.geometry.PointCloud()
    cloud.points = o3d.utility.Vector3dVector(np.asarray(points, dtype=np.float64))
    if normal_radius is not None and len(points) > 0:
        cloud.estimate_normals(
            search_param=o3d.geometry.KDTreeSearchParamHybrid(radius=normal_radius, max_nn=30)
        )
    return cloud


def normal_spread(cloud) -> float:
    """Smallest eigenvalue of the normal scatter matrix; ~0 for a plane."""
    normals = np.asarray(cloud.normals)
    if len(normals) == 0:
        return 0.0
    return float(np.linalg.eigvalsh(normals.T @ normals / len(normals))[0])


def evaluate_fit(
    source: np.ndarray, reference, transform: np.ndarray, max_correspondence_distance: float
) -> tuple[float, float]:
    """Point-to-plane inlier RMSE and inlier fraction of ``source`` at ``transform``.

    ``reference`` is an Open3D cloud with normals.
    """
    import open3d as o3d

    result = o3d.pipelines.registration.evaluate_registration(
        make_cloud(source), reference, max_correspondence_distance, transform
    )
    corr = np.asarray(result.correspondence_set)
    if len(corr) == 0:
        return float("inf"), 0.0
    moved = apply_transform(transform, source[corr[:, 0]])
    targets = np.asarray(reference.points)[corr[:, 1]]
    normals = np.asarray(reference.normals)[corr[:, 1]]
    distances = np.einsum("ij,ij->i", moved - targets, normals)
    return float(np.sqrt(np.mean(distances ** 2))), len(corr) / len(source)


def icp(
    source: np.ndarray,
    reference,
    init: np.ndarray | None = None,
    max_iterations: int = 30,
    tolerance: float = 1e-6,
    relative_tolerance: float = 1e-6,
    max_correspondence_distance: float = 0.02,
    normal_radius: float = 0.01,
    min_normal_spread: float = 1e-3,
) -> IcpResult:
    """Align ``source`` (N, 3) onto ``reference``, both in meters.

    ``reference`` is either an (M, 3) array or an Open3D cloud that already
    carries normals.
    """
    import open3d as o3d

    reg = o3d.pipelines.registration
    if isinstance(reference, np.ndarray):
        reference = make_cloud(reference, normal_radius)
    src = make_cloud(source)
    T = np.eye(4) if init is None else np.array(init, dtype=np.float64)

    coarse = reg.registration_icp(
        src,
        reference,
        max_correspondence_distance,
        T,
        reg.TransformationEstimationPointToPoint(),
        reg.ICPConvergenceCriteria(
            relative_fitness=relative_tolerance,
            relative_rmse=relative_tolerance,
            max_iteration=max_iterations,
        ),
    )
    stopped = False
    iterations = 0
    if len(coarse.correspondence_set) < 3:
        logger.debug("ICP: fewer than 3 correspondences, giving up")
    else:
        T = np.array(coarse.transformation)
        if normal_spread(reference) < min_normal_spread:
            logger.debug("ICP: planar reference, keeping the point-to-point pose")
            stopped = True
        else:
            T, iterations, stopped = _refine_point_to_plane(
                src, reference, T, max_iterations, tolerance, relative_tolerance,
                max_correspondence_distance,
            )

    T = np.round(T, POSE_DECIMALS)
    residual, fitness = evaluate_fit(source, reference, T, max_correspondence_distance)
    return IcpResult(
        transform=T, iterations=iterations, residual=residual, inlier_fraction=fitness, stopped=stopped
    )


def _refine_point_to_plane(
    src, reference, T: np.ndarray, max_iterations: int, tolerance: float,
    relative_tolerance: float, max_correspondence_distance: float,
) -> tuple[np.ndarray, int, bool]:
    import open3d as o3d

    reg = o3d.pipelines.registration
    estimation = reg.TransformationEstimationPointToPlane()
    single_step = reg.ICPConvergenceCriteria(max_iteration=1)

    prev = None
    iterations = 0
    for iterations in range(1, max_iterations + 1):
        result = reg.registration_icp(
            src, reference, max_correspondence_distance, T, estimation, single_step
        )
        if len(result.correspondence_set) < 3:
            logger.debug(f"ICP iteration {iterations}: lost correspondences, keeping previous pose")
            return T, iterations, False

        T_next = np.array(result.transformation)
        delta = transform_delta(T, T_next)
        if delta > max_correspondence_distance:
            logger.debug(f"ICP iteration {iterations}: ill-conditioned step ({delta:.3g}), stopping")
            return T, iterations, True
        T = T_next

        if delta < tolerance:
            return T, iterations, True
        if prev is not None and result.inlier_rmse > 0:
            if (
                abs(prev[0] - result.fitness) < relative_tolerance
                and abs(prev[1] - result.inlier_rmse) / result.inlier_rmse < relative_tolerance
            ):
                return T, iterations, True
        prev = (result.fitness, result.inlier_rmse)

    return T, iterations, False


def order_frames(point_sets: list[PointSet]) -> list[PointSet]:
    """Capture order: by timestamp, ties broken by frame index."""
    return sorted(point_sets, key=lambda ps: (ps.timestamp, ps.frame_index))


def select_anchor(point_sets: list[PointSet], anchor: str | int) -> PointSet:
    """Pick the frame whose camera space becomes the reconstruction space.

    ``"front"`` takes the first non-empty frame labelled front and falls back to
    the first non-empty frame in capture order; ``"first"`` skips the label
    check; an integer selects that frame index, which must have points.
    """
    usable = [ps for ps in order_frames(point_sets) if not ps.is_empty]
    if not usable:
        raise FusionFailed("no frame produced any valid points")

    if isinstance(anchor, int):
        for ps in point_sets:
            if ps.frame_index == anchor:
                if ps.is_empty:
                    raise FusionFailed(f"anchor frame {anchor} has no valid points")
                return ps
        raise FusionFailed(f"anchor frame {anchor} does not exist")

    if anchor == "front":
        for ps in usable:
            if ps.angle_label == "front":
                return ps
        logger.info("No usable 'front' frame, anchoring on the first frame in capture order")
    return usable[0]


@dataclass
class FramePose:
    frame_index: int
    transform: np.ndarray  # 4x4, frame camera space -> anchor space
    is_anchor: bool
    result: IcpResult | None  # None for the anchor and for empty frames
    num_points: int

    @property
    def converged(self) -> bool:
        return self.is_anchor or (self.result is not None and self.result.converged)


class FrameRegistrar:
    """Aligns every frame of a capture into the anchor frame's camera space."""

    def __init__(self, config: FuseFramesConfig):
        self.config = config
        self._rng = np.random.default_rng(config.random_seed)

    def _sample(self, points: np.ndarray) -> np.ndarray:
        down = voxel_downsample(points, self.config.icp_reference_voxel)
        if len(down) > self.config.icp_max_points:
            idx = self._rng.choice(len(down), size=self.config.icp_max_points, replace=False)
            down = down[np.sort(idx)]
        return down

    def register(self, point_sets: list[PointSet]) -> tuple[PointSet, list[FramePose]]:
        """Estimate one pose per frame. Returns the anchor and poses in frame order."""
        cfg = self.config
        anchor = select_anchor(point_sets, cfg.anchor)
        logger.info(f"Anchor frame: {anchor.frame_index} [{anchor.angle_label}]")

        reference = voxel_downsample(anchor.points, cfg.icp_reference_voxel)
        reference_cloud = make_cloud(reference, cfg.icp_normal_radius)
        poses = {
            anchor.frame_index: FramePose(
                frame_index=anchor.frame_index,
                transform=np.eye(4),
                is_anchor=True,
                result=None,
                num_points=len(anchor),
            )
        }

        for ps in order_frames(point_sets):
            if ps.frame_index == anchor.frame_index:
                continue
            if ps.is_empty:
                logger.warning(f"Frame {ps.frame_index} has no points, skipping registration")
                poses[ps.frame_index] = FramePose(
                    frame_index=ps.frame_index, transform=np.eye(4), is_anchor=False,
                    result=None, num_points=0,
                )
                continue

            source = self._sample(ps.points)
            result = icp(
                source,
                reference_cloud,
                max_iterations=cfg.icp_max_iterations,
                tolerance=cfg.icp_convergence_tol,
                relative_tolerance=cfg.icp_relative_rmse_tol,
                max_correspondence_distance=cfg.icp_max_correspondence_distance,
                min_normal_spread=cfg.icp_min_normal_spread,
            )
            result.converged = (
                result.residual <= cfg.icp_residual_threshold
                and result.inlier_fraction >= cfg.icp_min_inlier_fraction
            )
            logger.info(
                f"Frame {ps.frame_index} [{ps.angle_label}]: ICP {result.iterations} iters, "
                f"plane rmse={result.residual * 1000:.2f}mm, inliers={result.inlier_fraction:.0%}, "
                f"stopped={result.stopped}, converged={result.converged}"
            )
            poses[ps.frame_index] = FramePose(
                frame_index=ps.frame_index,
                transform=result.transform,
                is_anchor=False,
                result=result,
                num_points=len(ps),
            )

            # Only well-aligned frames extend the reference
            if result.converged:
                aligned = apply_transform(result.transform, ps.points)
                reference = voxel_downsample(
                    np.vstack([reference, aligned]), cfg.icp_reference_voxel
                )
                reference_cloud = make_cloud(reference, cfg.icp_normal_radius)

        ordered = [poses[ps.frame_index] for ps in sorted(point_sets, key=lambda p: p.frame_index)]
        return anchor, ordered
