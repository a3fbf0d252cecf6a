"""Surface extraction from the sparse TSDF grid, plus the isolation check.

Point mode walks every pair of face-adjacent observed cells and emits the
linearly interpolated zero crossing where the signed distance changes sign.
Mesh mode copies the observed cells into a dense block over their bounding box
and runs marching cubes on the cubes whose eight corners were all observed.

Cells at the truncation limit (|tsdf| = 1) carry no distance information, so
crossings involving them are ignored in both modes.
"""

from __future__ import annotations

import logging

import numpy as np
from scipy.spatial import cKDTree

from facerecon.core.errors import FusionFailed
from facerecon.core.structures import FusedSurface
from ._tsdf_grid import AXIS_STEPS, SparseTsdfGrid

logger = logging.getLogger(__name__)

_TRUNCATED = 1.0 - 1e-6


def _usable(grid: SparseTsdfGrid, min_weight: float) -> np.ndarray:
    return (grid.weight > 0) & (grid.weight >= min_weight) & (np.abs(grid.tsdf) < _TRUNCATED)


def extract_points(grid: SparseTsdfGrid, min_weight: float = 0.0) -> FusedSurface:
    """Zero crossings between face-adjacent cells, in grid order."""
    usable = _usable(grid, min_weight)
    centers = grid.cell_centers()
    vertices, colors = [], []

    for axis_step in AXIS_STEPS:
        pos, found = grid.lookup(grid.keys + axis_step)
        pair = usable & found & usable[pos]
        a = np.nonzero(pair)[0]
        b = pos[a]
        ta, tb = grid.tsdf[a], grid.tsdf[b]
        crossing = (ta >= 0) != (tb >= 0)
        a, b, ta, tb = a[crossing], b[crossing], ta[crossing], tb[crossing]

        frac = ta / (ta - tb)
        vertices.append(centers[a] + frac[:, None] * (centers[b] - centers[a]))
        if grid.color is not None:
            colors.append(grid.color[a] + frac[:, None] * (grid.color[b] - grid.color[a]))

    verts = np.vstack(vertices) if vertices else np.zeros((0, 3))
    rgb = None
    if grid.color is not None:
        rgb = np.clip(np.rint(np.vstack(colors)), 0, 255).astype(np.uint8)
    logger.debug(f"Point extraction: {len(verts)} zero crossings from {len(grid)} cells")
    return FusedSurface(vertices=verts, mode="points", colors=rgb)


def extract_mesh(
    grid: SparseTsdfGrid, min_weight: float = 0.0, max_cells: int = 64_000_000
) -> FusedSurface:
    """Marching cubes over a dense copy of the observed region."""
    from skimage import measure

    usable = _usable(grid, min_weight)
    if not usable.any():
        raise FusionFailed("no observed cells near a surface")

    ijk = grid.cell_coords()[usable]
    origin = ijk.min(axis=0)
    shape = tuple(int(s) for s in ijk.max(axis=0) - origin + 1)
    n_cells = int(np.prod(shape))
    if n_cells > max_cells:
        raise FusionFailed(f"observed region needs {n_cells} dense cells, limit is {max_cells}")
    if min(shape) < 2:
        raise FusionFailed(f"observed region {shape} is too thin for marching cubes")

    local = ijk - origin
    volume = np.ones(shape, dtype=np.float32)
    observed = np.zeros(shape, dtype=bool)
    volume[local[:, 0], local[:, 1], local[:, 2]] = grid.tsdf[usable]
    observed[local[:, 0], local[:, 1], local[:, 2]] = True

    # A cube is processed only when all eight corners are observed
    cube_ok = np.ones(tuple(s - 1 for s in shape), dtype=bool)
    for dx in (0, 1):
        for dy in (0, 1):
            for dz in (0, 1):
                cube_ok &= observed[dx:shape[0] - 1 + dx, dy:shape[1] - 1 + dy, dz:shape[2] - 1 + dz]
    mask = np.zeros(shape, dtype=bool)
    mask[:-1, :-1, :-1] = cube_ok

    has_sign_change = (volume[observed] < 0).any() and (volume[observed] > 0).any()
    if not cube_ok.any() or not has_sign_change:
        raise FusionFailed("no surface crossing in the fused grid")

    try:
        verts, faces, _, _ = measure.marching_cubes(
            volume, level=0.0, spacing=(grid.voxel_size,) * 3, mask=mask, allow_degenerate=False
        )
    except (ValueError, RuntimeError) as e:
        raise FusionFailed(f"marching cubes failed: {e}") from e
    vertices = verts + (origin + 0.5) * grid.voxel_size

    colors = None
    if grid.color is not None and len(vertices):
        dense_color = np.zeros(shape + (3,), dtype=np.float64)
        dense_color[local[:, 0], local[:, 1], local[:, 2]] = grid.color[usable]
        nearest = np.clip(np.rint(verts / grid.voxel_size).astype(np.int64), 0, np.array(shape) - 1)
        colors = np.clip(
            np.rint(dense_color[nearest[:, 0], nearest[:, 1], nearest[:, 2]]), 0, 255
        ).astype(np.uint8)

    logger.debug(f"Marching cubes on {shape}: {len(vertices)} vertices, {len(faces)} faces")
    return FusedSurface(
        vertices=vertices.astype(np.float64),
        mode="mesh",
        faces=faces.astype(np.int32),
        colors=colors,
    )


def isolated_points(vertices: np.ndarray, neighbors: int, radius: float) -> np.ndarray:
    """Mask of points whose mean distance to their k nearest neighbours exceeds ``radius``."""
    if len(vertices) <= neighbors:
        return np.zeros(len(vertices), dtype=bool)
    tree = cKDTree(vertices)
    dist, _ = tree.query(vertices, k=neighbors + 1)
    mean_dist = dist[:, 1:].mean(axis=1)
    return mean_dist > radius


def drop_points(surface: FusedSurface, keep: np.ndarray) -> FusedSurface:
    return FusedSurface(
        vertices=surface.vertices[keep],
        mode=surface.mode,
        faces=surface.faces,
        colors=surface.colors[keep] if surface.colors is not None else None,
    )
