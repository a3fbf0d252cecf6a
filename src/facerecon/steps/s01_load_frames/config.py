"""Configuration for Step 01: Frame loading."""

from pydantic import BaseModel, Field


class LoadFramesConfig(BaseModel):
    min_frames: int = Field(3, ge=1, description="Minimum number of frames required for fusion")
    analyze_quality: bool = Field(True, description="Compute and log a per-frame depth quality report")
    quality_max_depth: float = Field(
        2.0, gt=0, description="Depth (m) above which samples count as invalid in the quality report"
    )
