"""I/O contracts for Step 01: Frame loading."""

from typing import Any

from pydantic import BaseModel, Field

from facerecon.core.structures import CaptureFrameField


class DepthQualityReport(BaseModel):
    frame_index: int = Field(..., description="Index of the frame in the input list")
    angle_label: str = Field("unknown", description="Capture angle")
    resolution: str = Field(..., description="Depth map resolution, WxH")
    total_samples: int = Field(..., description="Number of depth pixels")
    valid_samples: int = Field(..., description="Finite depth values inside (0, max_depth]")
    valid_fraction: float = Field(..., description="valid_samples / total_samples")
    min_depth: float | None = Field(None, description="Smallest valid depth (m)")
    median_depth: float | None = Field(None, description="Median valid depth (m)")
    max_depth: float | None = Field(None, description="Largest valid depth (m)")
    quality: str = Field(..., description="excellent | good | fair | poor")
    issues: list[str] = Field(default_factory=list, description="Detected problems")


class LoadFramesInput(BaseModel):
    frames: list[Any] = Field(
        ..., description="Raw frame descriptors (dicts with capture-layer keys or FrameDescriptor)"
    )


class LoadFramesOutput(BaseModel):
    frames: list[CaptureFrameField] = Field(..., description="Decoded frames in input order")
    quality_reports: list[DepthQualityReport] = Field(
        default_factory=list, description="Per-frame depth quality reports"
    )
