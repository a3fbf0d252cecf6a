"""I/O contracts for Step 03: Multi-frame registration and TSDF fusion."""

from pydantic import BaseModel, Field

from facerecon.core.contracts import FrameRegistration
from facerecon.core.structures import FusedSurfaceField, PointSetField


class FuseFramesInput(BaseModel):
    point_sets: list[PointSetField] = Field(
        ..., description="Per-frame camera-space points from s02"
    )


class FuseFramesOutput(BaseModel):
    surface: FusedSurfaceField = Field(..., description="Extracted surface in anchor space")
    registrations: list[FrameRegistration] = Field(
        default_factory=list, description="Per-frame alignment reports, in frame order"
    )
    anchor_index: int = Field(..., description="Frame whose camera space is the reconstruction space")
    aligned_frames: int = Field(..., description="Frames usably aligned, anchor included")
    integrated_frames: int = Field(..., description="Frames integrated into the grid")
    num_cells: int = Field(..., description="Occupied cells in the sparse TSDF grid")
    outliers_removed: int = Field(0, description="Isolated surface points dropped")
