"""Configuration for Step 03: Multi-frame registration and TSDF fusion."""

from typing import Literal, Optional, Union

from pydantic import BaseModel, Field


class FuseFramesConfig(BaseModel):
    # --- Registration (ICP) ---
    anchor: Union[Literal["front", "first"], int] = Field(
        "front",
        description="Reference frame: first 'front' frame, first frame in capture order, or a frame index",
    )
    icp_max_iterations: int = Field(30, ge=1, description="ICP iteration budget per frame")
    icp_convergence_tol: float = Field(
        1e-6, gt=0, description="Stop when the per-iteration pose change (rad + m) falls below this"
    )
    icp_relative_rmse_tol: float = Field(
        1e-6, ge=0, description="Stop when inlier RMSE and fitness change less than this (relative)"
    )
    icp_max_correspondence_distance: float = Field(
        0.02, gt=0, description="Ignore nearest neighbours farther than this (meters)"
    )
    icp_residual_threshold: float = Field(
        0.0015, gt=0,
        description="Point-to-plane inlier RMSE (m) above which a frame counts as not converged",
    )
    icp_min_inlier_fraction: float = Field(
        0.3, ge=0, le=1, description="Fraction of source points that must find a correspondence"
    )
    icp_max_points: int = Field(4000, ge=3, description="Source points used per ICP iteration")
    icp_reference_voxel: float = Field(
        0.002, gt=0, description="Voxel size (m) for downsampling ICP clouds"
    )
    icp_normal_radius: float = Field(
        0.01, gt=0, description="Neighbourhood radius (m) for reference normal estimation"
    )
    icp_min_normal_spread: float = Field(
        1e-3, ge=0,
        description="Below this normal scatter the reference is treated as planar (no point-to-plane pass)",
    )
    random_seed: int = Field(42, description="Seed for source point subsampling")
    fail_on_unconverged: bool = Field(
        False, description="Raise RegistrationDidNotConverge instead of keeping the frame"
    )

    # --- TSDF integration ---
    voxel_size: float = Field(0.004, gt=0, description="Voxel size in meters (4mm default)")
    sdf_trunc: float = Field(0.012, gt=0, description="Truncation distance in meters")
    min_view_cosine: float = Field(
        0.1, ge=0, le=1, description="Floor for the viewing-angle weight at grazing angles"
    )
    range_decay: float = Field(
        1.0, ge=0, description="Range weight is 1 / (1 + range_decay * range^2)"
    )
    max_weight: float = Field(64.0, gt=0, description="Cap on the accumulated weight per cell")

    # --- Surface extraction ---
    output_mode: Literal["points", "mesh"] = Field(
        "points", description="Extract a dense point sample or a triangle mesh"
    )
    min_weight: float = Field(0.0, ge=0, description="Ignore cells with less accumulated weight")
    max_mesh_cells: int = Field(
        64_000_000, gt=0, description="Upper bound on the dense block used for marching cubes"
    )

    # --- Degeneracy checks ---
    outlier_neighbors: int = Field(8, ge=1, description="Neighbours used for the isolation test")
    outlier_radius: Optional[float] = Field(
        None, gt=0, description="Mean neighbour distance (m) marking a point as isolated (None = 3 voxels)"
    )
    max_outlier_fraction: float = Field(
        0.5, ge=0, le=1, description="Fail fusion if more surface points than this are isolated"
    )
    remove_outliers: bool = Field(True, description="Drop isolated points from point-mode output")
