"""Configuration for Step 04: PLY export."""

from typing import Literal

from pydantic import BaseModel, Field


class ExportMeshConfig(BaseModel):
    output_format: Literal["ascii", "binary"] = Field(
        "ascii", description="PLY body encoding: 'ascii' text lines or 'binary' little-endian"
    )
    include_colors: bool = Field(True, description="Write red/green/blue vertex properties when available")
    comment: str = Field(
        "Generated by facerecon multi-frame reconstruction",
        description="Single comment line written into the PLY header",
    )
    write_metadata: bool = Field(True, description="Write a <stem>.json sidecar next to the PLY")
    filename_prefix: str = Field(
        "face_reconstruction", description="Prefix for generated file names"
    )
