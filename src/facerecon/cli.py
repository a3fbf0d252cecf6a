"""CLI entry point for the face reconstruction pipeline.

Usage:
    facerecon reconstruct capture/frames.json        # Fuse a capture into a PLY
    facerecon inspect capture/frames.json            # Depth quality per frame
    facerecon info                                   # Show steps and config defaults
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from facerecon.core.logging import setup_logging

app = typer.Typer(name="facerecon", help="Multi-frame depth capture to 3D face surface")
console = Console()


def _load_config(config: Optional[Path]):
    from facerecon.core.pipeline_runner import ReconstructionConfig, load_reconstruction_config

    if config is None:
        return ReconstructionConfig()
    return load_reconstruction_config(config)


def _apply_overrides(cfg, mode: Optional[str], stride: Optional[int]):
    """Re-validate the config with command-line overrides; exit 2 on bad values."""
    from pydantic import ValidationError

    data = cfg.model_dump()
    if mode is not None:
        data["fuse_frames"]["output_mode"] = mode
    if stride is not None:
        data["project_points"]["stride"] = stride
    try:
        return type(cfg).model_validate(data)
    except ValidationError as e:
        for err in e.errors():
            field = ".".join(str(part) for part in err["loc"])
            console.print(f"[red]Invalid option {field}:[/red] {err['msg']}")
        raise typer.Exit(2)


@app.command()
def reconstruct(
    frames_json: Path = typer.Argument(..., help="Capture manifest (JSON list of frame descriptors)"),
    config: Optional[Path] = typer.Option(None, help="Reconstruction config YAML"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Output PLY path"),
    mode: Optional[str] = typer.Option(None, help="Surface output mode: points or mesh"),
    stride: Optional[int] = typer.Option(None, help="Depth sampling stride"),
) -> None:
    """Reconstruct a fused surface from a multi-angle capture."""
    from facerecon.core.pipeline_runner import load_capture_manifest, reconstruct_face

    cfg = _apply_overrides(_load_config(config), mode, stride)
    setup_logging(cfg.log_level)

    frames = load_capture_manifest(frames_json)
    result = reconstruct_face(frames, config=cfg, output_path=output)

    if not result.success:
        console.print(f"[red]Failed ({result.error_kind}):[/red] {result.error_message}")
        raise typer.Exit(1)

    table = Table(title="Frame registration")
    table.add_column("Frame", style="dim")
    table.add_column("Angle", style="cyan")
    table.add_column("Points")
    table.add_column("Iters")
    table.add_column("RMSE (mm)")
    table.add_column("Inliers")
    table.add_column("Converged", style="yellow")
    for r in result.registrations:
        table.add_row(
            str(r.frame_index),
            r.angle_label + (" (anchor)" if r.is_anchor else ""),
            str(r.num_points),
            str(r.iterations),
            f"{r.residual * 1000:.2f}",
            f"{r.inlier_fraction:.0%}",
            "Y" if r.converged else "N",
        )
    console.print(table)

    status = "[yellow]degraded[/yellow]" if result.degraded else "[green]ok[/green]"
    console.print(
        f"{status} {result.vertex_count} vertices, {result.face_count} faces, "
        f"{result.processing_time_ms:.0f} ms -> {result.mesh_file_path}"
    )
    for warning in result.warnings:
        console.print(f"[yellow]warning:[/yellow] {warning}")


@app.command()
def inspect(
    frames_json: Path = typer.Argument(..., help="Capture manifest (JSON list of frame descriptors)"),
    max_depth: float = typer.Option(2.0, help="Depth (m) above which samples count as invalid"),
) -> None:
    """Show a depth quality report for each frame of a capture."""
    from facerecon.core.errors import ReconstructionError
    from facerecon.core.pipeline_runner import load_capture_manifest
    from facerecon.steps.s01_load_frames._quality import analyze_depth_quality
    from facerecon.steps.s01_load_frames.step import parse_frame_descriptors
    from facerecon.utils.io import read_depth_bin

    setup_logging("WARNING")
    try:
        descriptors = parse_frame_descriptors(load_capture_manifest(frames_json))
        reports = [
            analyze_depth_quality(
                read_depth_bin(d.depth_path, d.depth_width, d.depth_height),
                frame_index=i,
                angle_label=d.angle_label,
                max_depth=max_depth,
            )
            for i, d in enumerate(descriptors)
        ]
    except ReconstructionError as e:
        console.print(f"[red]{e.kind}:[/red] {e}")
        raise typer.Exit(1)

    table = Table(title=f"Depth quality: {frames_json}")
    table.add_column("Frame", style="dim")
    table.add_column("Angle", style="cyan")
    table.add_column("Resolution")
    table.add_column("Valid")
    table.add_column("Depth min/med/max (m)")
    table.add_column("Quality", style="yellow")
    table.add_column("Issues", style="dim")
    for r in reports:
        depths = (
            f"{r.min_depth:.3f} / {r.median_depth:.3f} / {r.max_depth:.3f}"
            if r.valid_samples else "-"
        )
        table.add_row(
            str(r.frame_index),
            r.angle_label,
            r.resolution,
            f"{r.valid_fraction:.0%}",
            depths,
            r.quality,
            "; ".join(r.issues) or "-",
        )
    console.print(table)


@app.command()
def info(config: Optional[Path] = typer.Option(None, help="Reconstruction config YAML")) -> None:
    """Show pipeline steps and their effective configuration."""
    from facerecon.core.pipeline_runner import STEP_MODULES

    cfg = _load_config(config)
    table = Table(title="facerecon pipeline")
    table.add_column("#", style="dim")
    table.add_column("Step", style="cyan")
    table.add_column("Module", style="green")
    table.add_column("Config", style="dim")

    for i, (name, module) in enumerate(STEP_MODULES.items(), 1):
        params = getattr(cfg, name).model_dump()
        summary = ", ".join(f"{k}={v}" for k, v in params.items())
        table.add_row(str(i), name, module, summary)
    console.print(table)
    console.print(
        f"output_dir={cfg.output_dir or '<temp dir>'}, "
        f"max_workers={cfg.max_workers or '<cpu count>'}, log_level={cfg.log_level}"
    )


if __name__ == "__main__":
    app()
