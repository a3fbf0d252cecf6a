"""Configuration for Step 02: Depth-to-point projection."""

from pydantic import BaseModel, Field


class ProjectPointsConfig(BaseModel):
    stride: int = Field(4, ge=1, description="Sample every Nth pixel in each axis (1 = full resolution)")
    max_depth: float = Field(2.0, gt=0, description="Reject depth samples beyond this range (meters)")
    estimate_normals: bool = Field(True, description="Estimate per-point normals from the depth grid")
    attach_colors: bool = Field(True, description="Sample per-point colors from the color image")
    release_images: bool = Field(True, description="Free color/depth rasters once a frame is projected")
