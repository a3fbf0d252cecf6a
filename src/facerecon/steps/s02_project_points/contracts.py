"""I/O contracts for Step 02: Depth-to-point projection."""

from pydantic import BaseModel, Field

from facerecon.core.structures import CaptureFrameField, PointSetField


class ProjectPointsInput(BaseModel):
    frames: list[CaptureFrameField] = Field(..., description="Decoded frames from s01")


class ProjectPointsOutput(BaseModel):
    point_sets: list[PointSetField] = Field(
        ..., description="Per-frame camera-space points, in frame order"
    )
    total_points: int = Field(..., description="Points emitted across all frames")
    total_rejected: int = Field(..., description="Depth samples excluded across all frames")
