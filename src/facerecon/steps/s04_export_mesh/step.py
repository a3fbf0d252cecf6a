"""Step 04: Export the fused surface as a PLY point cloud or triangle mesh.

The PLY is written to a temporary sibling and renamed onto the target, so a
failed export never leaves a partial file at the final path. An optional JSON
sidecar with the same stem records counts and caller-supplied metadata.
"""

from __future__ import annotations

import json
import logging
import tempfile
import time
import uuid
from pathlib import Path
from typing import ClassVar, Optional

import numpy as np

from facerecon.core.errors import MeshExportFailed
from facerecon.core.step_base import BaseStep
from facerecon.utils.io import write_ply_atomic
from .config import ExportMeshConfig
from .contracts import ExportMeshInput, ExportMeshOutput

logger = logging.getLogger(__name__)


def default_output_path(prefix: str = "face_reconstruction", output_dir: Optional[Path] = None) -> Path:
    """``<dir>/<prefix>_<epoch ms>_<random>.ply``; unique across concurrent calls."""
    directory = Path(output_dir) if output_dir is not None else Path(tempfile.gettempdir())
    stamp = int(time.time() * 1000)
    return directory / f"{prefix}_{stamp}_{uuid.uuid4().hex[:8]}.ply"


class ExportMeshStep(BaseStep[ExportMeshInput, ExportMeshOutput, ExportMeshConfig]):
    name: ClassVar[str] = "export_mesh"
    input_type: ClassVar = ExportMeshInput
    output_type: ClassVar = ExportMeshOutput
    config_type: ClassVar = ExportMeshConfig

    def validate_inputs(self, inputs: ExportMeshInput) -> bool:
        surface = inputs.surface
        if surface.vertex_count == 0:
            logger.error("Surface has no vertices to export")
            return False
        if not np.isfinite(surface.vertices).all():
            logger.error("Surface contains non-finite vertex coordinates")
            return False
        if surface.mode == "mesh" and len(surface.faces):
            if surface.faces.min() < 0 or surface.faces.max() >= surface.vertex_count:
                logger.error("Face indices out of range")
                return False
        return True

    def run(self, inputs: ExportMeshInput) -> ExportMeshOutput:
        surface = inputs.surface
        path = inputs.output_path or default_output_path(
            self.config.filename_prefix, inputs.output_dir
        )
        faces = surface.faces if surface.mode == "mesh" else None
        colors = surface.colors if self.config.include_colors else None
        metadata_path = path.with_suffix(".json") if self.config.write_metadata else None
        if metadata_path == path:
            raise MeshExportFailed(f"output path {path} collides with its metadata sidecar")

        try:
            write_ply_atomic(
                path,
                surface.vertices,
                faces=faces,
                colors=colors,
                text=self.config.output_format == "ascii",
                comment=self.config.comment,
            )
        except (OSError, ValueError) as e:
            raise MeshExportFailed(f"could not write {path}: {e}") from e

        vertex_count = surface.vertex_count
        face_count = surface.face_count
        logger.info(
            f"Wrote {path} ({self.config.output_format}): "
            f"{vertex_count} vertices, {face_count} faces"
        )

        if metadata_path is not None:
            payload = {
                "mesh_file": path.name,
                "mode": surface.mode,
                "vertex_count": vertex_count,
                "face_count": face_count,
                "has_colors": colors is not None,
                **inputs.metadata,
            }
            try:
                with open(metadata_path, "w", encoding="utf-8") as f:
                    json.dump(payload, f, indent=2, default=str)
            except (OSError, TypeError, ValueError) as e:
                path.unlink(missing_ok=True)
                metadata_path.unlink(missing_ok=True)
                raise MeshExportFailed(f"could not write metadata {metadata_path}: {e}") from e
            logger.info(f"Metadata: {metadata_path}")

        return ExportMeshOutput(
            mesh_path=path,
            vertex_count=vertex_count,
            face_count=face_count,
            metadata_path=metadata_path,
        )
