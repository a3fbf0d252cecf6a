"""I/O contracts for Step 04: PLY export."""

from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field

from facerecon.core.structures import FusedSurfaceField


class ExportMeshInput(BaseModel):
    surface: FusedSurfaceField = Field(..., description="Fused surface from s03")
    output_path: Optional[Path] = Field(None, description="Target file; generated if omitted")
    output_dir: Optional[Path] = Field(
        None, description="Directory for a generated file name (system temp dir if omitted)"
    )
    metadata: dict[str, Any] = Field(
        default_factory=dict, description="Extra entries for the JSON sidecar"
    )


class ExportMeshOutput(BaseModel):
    mesh_path: Path = Field(..., description="Written PLY file")
    vertex_count: int = Field(..., description="Vertices written (equals the header count)")
    face_count: int = Field(..., description="Faces written (0 for point clouds)")
    metadata_path: Optional[Path] = Field(None, description="JSON sidecar, if written")
