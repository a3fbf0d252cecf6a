"""Write a synthetic five-angle capture session for demos and manual testing.

Each view is ray-cast against a plane or sphere from a camera that rotates
about a pivot behind the surface, mimicking a head turn in front of a fixed
depth camera.

Usage:
    python scripts/make_synthetic_capture.py write -o data/synthetic
    python scripts/make_synthetic_capture.py write -o data/sphere --surface sphere --turn 5
    facerecon reconstruct data/synthetic/frames.json
"""

from __future__ import annotations

import logging
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from facerecon.core.logging import setup_logging
from facerecon.utils.synthetic import five_angle_views, write_synthetic_capture

app = typer.Typer(name="make_synthetic_capture", help="Generate synthetic depth captures")
console = Console()
logger = logging.getLogger(__name__)


@app.command()
def write(
    output: Path = typer.Option(Path("data/synthetic"), "--output", "-o", help="Output directory"),
    surface: str = typer.Option("plane", help="Scene surface: plane or sphere"),
    turn: float = typer.Option(3.0, help="Head turn per side view (degrees)"),
    depth: float = typer.Option(0.5, help="Plane depth (m)"),
    noise: float = typer.Option(0.0, help="Gaussian depth noise std (m)"),
    seed: int = typer.Option(0, help="Random seed for noise and color"),
) -> None:
    """Write depth .bin files, PNG colors and frames.json."""
    setup_logging()
    if surface not in ("plane", "sphere"):
        console.print(f"[red]Unknown surface '{surface}'[/red]")
        raise typer.Exit(2)

    views = five_angle_views(turn_deg=turn)
    descriptors = write_synthetic_capture(
        output, views=views, surface=surface, plane_depth=depth, noise_std=noise, seed=seed
    )

    table = Table(title=f"Synthetic capture: {output}")
    table.add_column("#", style="dim")
    table.add_column("Angle", style="cyan")
    table.add_column("Yaw")
    table.add_column("Pitch")
    table.add_column("Depth file", style="green")
    for i, (view, d) in enumerate(zip(views, descriptors)):
        table.add_row(
            str(i), view.angle_label, f"{view.yaw_deg:+.1f}", f"{view.pitch_deg:+.1f}",
            Path(d["depthDataPath"]).name,
        )
    console.print(table)
    console.print(f"[green]Manifest:[/green] {output / 'frames.json'}")


if __name__ == "__main__":
    app()
