"""Pipeline orchestrator: runs load -> project -> fuse -> export for one request.

Every call gets its own ReconstructionSession. Stages raise ReconstructionError
subclasses; this module is the only place they are caught and turned into a
failed ReconstructionResult.
"""

from __future__ import annotations

import asyncio
import importlib
import json
import logging
import time
from pathlib import Path
from typing import Any, Literal, Optional, Sequence

import yaml
from pydantic import BaseModel, Field

from facerecon.steps.s01_load_frames.config import LoadFramesConfig
from facerecon.steps.s02_project_points.config import ProjectPointsConfig
from facerecon.steps.s03_fuse_frames.config import FuseFramesConfig
from facerecon.steps.s04_export_mesh.config import ExportMeshConfig
from .contracts import ReconstructionResult
from .errors import ReconstructionError
from .session import CancellationToken, ReconstructionSession

logger = logging.getLogger(__name__)

STEP_MODULES: dict[str, str] = {
    "load_frames": "facerecon.steps.s01_load_frames",
    "project_points": "facerecon.steps.s02_project_points",
    "fuse_frames": "facerecon.steps.s03_fuse_frames",
    "export_mesh": "facerecon.steps.s04_export_mesh",
}


class ReconstructionConfig(BaseModel):
    """Whole-pipeline configuration; every section is optional in YAML."""

    load_frames: LoadFramesConfig = Field(default_factory=LoadFramesConfig)
    project_points: ProjectPointsConfig = Field(default_factory=ProjectPointsConfig)
    fuse_frames: FuseFramesConfig = Field(default_factory=FuseFramesConfig)
    export_mesh: ExportMeshConfig = Field(default_factory=ExportMeshConfig)

    output_dir: Optional[Path] = Field(None, description="Directory for generated output names (temp dir if unset)")
    max_workers: Optional[int] = Field(None, ge=1, description="Worker threads per request (CPU count if unset)")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field("INFO", description="Log level used by the CLI")


def load_reconstruction_config(config_path: Path) -> ReconstructionConfig:
    """Load and validate a reconstruction YAML file."""
    with open(config_path, encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    return ReconstructionConfig(**raw)


def load_capture_manifest(manifest_path: Path) -> list[dict[str, Any]]:
    """Read a frames JSON file (a list, or an object with a ``frames`` list).

    Relative color/depth paths are resolved against the manifest's directory.
    """
    manifest_path = Path(manifest_path)
    with open(manifest_path, encoding="utf-8") as f:
        raw = json.load(f)
    frames = raw.get("frames", []) if isinstance(raw, dict) else raw
    if not isinstance(frames, list):
        raise ValueError(f"{manifest_path}: expected a list of frame descriptors")

    base = manifest_path.parent
    resolved = []
    for entry in frames:
        if isinstance(entry, dict):
            entry = dict(entry)
            for key in ("colorImagePath", "color_image_path", "depthDataPath", "depth_data_path"):
                if isinstance(entry.get(key), str) and not Path(entry[key]).is_absolute():
                    entry[key] = str(base / entry[key])
        resolved.append(entry)
    return resolved


def import_step_class(module_path: str):
    """Dynamically import a step class from its module path.

    Expects module_path like 'facerecon.steps.s01_load_frames'
    and looks for a class ending in 'Step' in that module's step.py.
    """
    step_module = importlib.import_module(f"{module_path}.step")
    for attr_name in dir(step_module):
        attr = getattr(step_module, attr_name)
        if (
            isinstance(attr, type)
            and hasattr(attr, "run")
            and attr_name.endswith("Step")
            and attr_name != "BaseStep"
        ):
            return attr
    raise ImportError(f"No Step class found in {module_path}.step")


def _elapsed_ms(t0: float) -> float:
    return round((time.perf_counter() - t0) * 1000.0, 3)


def _run_steps(
    frames: list[Any],
    config: ReconstructionConfig,
    output_path: Optional[Path],
    session: ReconstructionSession,
    t0: float,
) -> ReconstructionResult:
    steps = {name: import_step_class(module) for name, module in STEP_MODULES.items()}

    logger.info(f"--- Step: load_frames ({len(frames)} frames) ---")
    load_cls = steps["load_frames"]
    loaded = load_cls(config.load_frames, session).execute(load_cls.input_type(frames=frames))

    logger.info("--- Step: project_points ---")
    project_cls = steps["project_points"]
    projected = project_cls(config.project_points, session).execute(
        project_cls.input_type(frames=loaded.frames)
    )

    logger.info("--- Step: fuse_frames ---")
    fuse_cls = steps["fuse_frames"]
    fused = fuse_cls(config.fuse_frames, session).execute(
        fuse_cls.input_type(point_sets=projected.point_sets)
    )

    logger.info("--- Step: export_mesh ---")
    export_cls = steps["export_mesh"]
    metadata = {
        "anchor_frame": fused.anchor_index,
        "aligned_frames": fused.aligned_frames,
        "integrated_frames": fused.integrated_frames,
        "grid_cells": fused.num_cells,
        "outliers_removed": fused.outliers_removed,
        "degraded": session.degraded,
        "warnings": list(session.warnings),
        "registrations": [r.model_dump() for r in fused.registrations],
        "depth_quality": [q.model_dump() for q in loaded.quality_reports],
        "stage_timings_ms": session.stage_timings_ms(),
    }
    exported = export_cls(config.export_mesh, session).execute(
        export_cls.input_type(
            surface=fused.surface,
            output_path=output_path,
            output_dir=config.output_dir,
            metadata=metadata,
        )
    )

    return ReconstructionResult(
        success=True,
        mesh_file_path=str(exported.mesh_path),
        vertex_count=exported.vertex_count,
        face_count=exported.face_count,
        processing_time_ms=_elapsed_ms(t0),
        degraded=session.degraded,
        warnings=list(session.warnings),
        aligned_frames=fused.aligned_frames,
        stage_timings_ms=session.stage_timings_ms(),
        registrations=fused.registrations,
    )


def reconstruct_face(
    frames: Sequence[Any],
    config: Optional[ReconstructionConfig] = None,
    output_path: Optional[Path] = None,
    cancel_token: Optional[CancellationToken] = None,
) -> ReconstructionResult:
    """Reconstruct one fused surface from a multi-angle capture.

    Args:
        frames: Frame descriptors (mappings with capture-layer or snake_case
            keys, or FrameDescriptor instances), in capture order.
        config: Pipeline configuration; defaults apply when omitted.
        output_path: Target PLY path; a unique name in ``config.output_dir``
            (or the system temp dir) is generated when omitted.
        cancel_token: Checked between stages and between frames.

    Returns:
        A ReconstructionResult. Failures are reported in the result, never raised.
    """
    config = config or ReconstructionConfig()
    frames = list(frames or [])
    t0 = time.perf_counter()
    logger.info(f"Reconstruction started with {len(frames)} frames")

    with ReconstructionSession(config, num_frames=len(frames), cancel_token=cancel_token) as session:
        try:
            result = _run_steps(frames, config, output_path, session, t0)
        except ReconstructionError as e:
            error = e.to_dict()
            logger.error(f"Reconstruction failed [{error['kind']}]: {error['message']}")
            result = ReconstructionResult(
                success=False,
                processing_time_ms=_elapsed_ms(t0),
                error_kind=error["kind"],
                error_message=error["message"],
                degraded=session.degraded,
                warnings=list(session.warnings),
                stage_timings_ms=session.stage_timings_ms(),
            )
        except Exception as e:
            logger.exception("Unexpected error during reconstruction")
            result = ReconstructionResult(
                success=False,
                processing_time_ms=_elapsed_ms(t0),
                error_kind="InternalError",
                error_message=f"{type(e).__name__}: {e}",
                warnings=list(session.warnings),
                stage_timings_ms=session.stage_timings_ms(),
            )

    if result.success:
        logger.info(
            f"Reconstruction complete: {result.vertex_count} vertices, {result.face_count} faces "
            f"in {result.processing_time_ms:.0f}ms -> {result.mesh_file_path}"
        )
    return result


async def reconstruct_face_async(
    frames: Sequence[Any],
    config: Optional[ReconstructionConfig] = None,
    output_path: Optional[Path] = None,
    cancel_token: Optional[CancellationToken] = None,
) -> ReconstructionResult:
    """Run reconstruct_face in a worker thread without blocking the event loop.

    Cancelling the awaiting task also cancels the token, so the worker pool
    winds down at the next stage or frame boundary.
    """
    token = cancel_token or CancellationToken()
    try:
        return await asyncio.to_thread(reconstruct_face, frames, config, output_path, token)
    except asyncio.CancelledError:
        token.cancel()
        raise
