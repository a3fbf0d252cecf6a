"""Common Pydantic models shared across pipeline steps."""

from __future__ import annotations

import math
from pathlib import Path
from typing import Any, Literal, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    StrictFloat,
    StrictInt,
    StrictStr,
    field_validator,
    model_validator,
)

AngleLabel = Literal["front", "left", "right", "top", "bottom", "unknown"]
Number = Union[StrictInt, StrictFloat]


class StepMeta(BaseModel):
    """Metadata recorded for every executed step for reproducibility."""

    step_name: str
    elapsed_seconds: float = 0.0
    params: dict[str, Any] = Field(default_factory=dict)


class CameraIntrinsics(BaseModel):
    """Camera intrinsic parameters (pinhole model) valid at ``width`` x ``height``."""

    fx: float = Field(..., gt=0)
    fy: float = Field(..., gt=0)
    cx: float
    cy: float
    width: int = Field(..., gt=0)
    height: int = Field(..., gt=0)

    def scaled_to(self, width: int, height: int) -> CameraIntrinsics:
        """Rescale focal lengths and principal point to another resolution."""
        if width == self.width and height == self.height:
            return self
        sx = width / self.width
        sy = height / self.height
        return CameraIntrinsics(
            fx=self.fx * sx,
            fy=self.fy * sy,
            cx=self.cx * sx,
            cy=self.cy * sy,
            width=width,
            height=height,
        )


class FrameDescriptor(BaseModel):
    """One raw capture as handed over by the acquisition layer.

    Accepts the capture layer's camelCase keys (``colorImagePath``,
    ``depthWidth``, ``angleId`` ...) as well as the snake_case field names.
    Numeric intrinsics may be int or float and are normalized to float.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    color_image_path: StrictStr = Field(..., alias="colorImagePath", min_length=1)
    depth_data_path: StrictStr = Field(..., alias="depthDataPath", min_length=1)
    depth_width: StrictInt = Field(..., alias="depthWidth", gt=0)
    depth_height: StrictInt = Field(..., alias="depthHeight", gt=0)
    fx: Number
    fy: Number
    cx: Number
    cy: Number
    intrinsic_width: Optional[Number] = Field(None, alias="intrinsicWidth")
    intrinsic_height: Optional[Number] = Field(None, alias="intrinsicHeight")
    timestamp: Number = Field(
        ..., validation_alias=AliasChoices("timestamp", "captureTimestamp")
    )
    angle_label: AngleLabel = Field(
        "unknown", validation_alias=AliasChoices("angle_label", "angleLabel", "angleId")
    )

    @field_validator("fx", "fy", "cx", "cy", "timestamp")
    @classmethod
    def _finite_float(cls, v):
        v = float(v)
        if not math.isfinite(v):
            raise ValueError("must be finite")
        return v

    @field_validator("fx", "fy", "intrinsic_width", "intrinsic_height")
    @classmethod
    def _positive(cls, v):
        if v is None:
            return v
        v = float(v)
        if not v > 0:
            raise ValueError("must be positive")
        return v

    @field_validator("angle_label", mode="before")
    @classmethod
    def _lower_label(cls, v):
        return v.lower() if isinstance(v, str) else v

    @model_validator(mode="after")
    def _default_reference_size(self) -> FrameDescriptor:
        if self.intrinsic_width is None:
            self.intrinsic_width = float(self.depth_width)
        if self.intrinsic_height is None:
            self.intrinsic_height = float(self.depth_height)
        return self

    @property
    def color_path(self) -> Path:
        return Path(self.color_image_path)

    @property
    def depth_path(self) -> Path:
        return Path(self.depth_data_path)

    def depth_intrinsics(self) -> CameraIntrinsics:
        """Intrinsics expressed at the depth map resolution."""
        reference = CameraIntrinsics(
            fx=self.fx,
            fy=self.fy,
            cx=self.cx,
            cy=self.cy,
            width=max(1, round(self.intrinsic_width)),
            height=max(1, round(self.intrinsic_height)),
        )
        return reference.scaled_to(self.depth_width, self.depth_height)


class FrameRegistration(BaseModel):
    """Alignment outcome for one frame relative to the anchor frame."""

    frame_index: int
    angle_label: str = "unknown"
    is_anchor: bool = False
    converged: bool = False
    iterations: int = 0
    residual: float = 0.0
    inlier_fraction: float = 0.0
    num_points: int = 0
    matrix_4x4: list[float] = Field(..., min_length=16, max_length=16)


class ReconstructionResult(BaseModel):
    """Output contract handed back to the caller; the only object outliving a call."""

    success: bool
    mesh_file_path: str = ""
    vertex_count: int = 0
    face_count: int = 0
    processing_time_ms: float = 0.0
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    degraded: bool = False
    warnings: list[str] = Field(default_factory=list)
    aligned_frames: int = 0
    stage_timings_ms: dict[str, float] = Field(default_factory=dict)
    registrations: list[FrameRegistration] = Field(default_factory=list)
