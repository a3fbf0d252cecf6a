"""I/O utilities: raw depth buffers, color rasters, PLY reader/writer."""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

import numpy as np

from facerecon.core.errors import ColorImageLoadFailed, DepthDataLoadFailed, DepthSizeMismatch

logger = logging.getLogger(__name__)

DEPTH_DTYPE = np.dtype("<f4")
HEIF_SUFFIXES = {".heic", ".heif"}


# ── Depth buffers ────────────────────────────────────────────────────

def read_depth_bin(path: Path, width: int, height: int) -> np.ndarray:
    """Read a flat little-endian float32 depth buffer (row-major, meters).

    Raises:
        DepthDataLoadFailed: file missing or unreadable.
        DepthSizeMismatch: byte length differs from ``width * height * 4``.
    """
    path = Path(path)
    expected = width * height * DEPTH_DTYPE.itemsize
    try:
        data = path.read_bytes()
    except OSError as e:
        raise DepthDataLoadFailed(path, e.strerror or str(e)) from e

    if len(data) != expected:
        raise DepthSizeMismatch(path, len(data), expected)

    depth = np.frombuffer(data, dtype=DEPTH_DTYPE).reshape(height, width)
    return depth.astype(np.float32)


def write_depth_bin(path: Path, depth: np.ndarray) -> Path:
    """Write a (H, W) depth map as a flat little-endian float32 buffer."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(np.ascontiguousarray(depth, dtype=DEPTH_DTYPE).tobytes())
    return path


# ── Color rasters ────────────────────────────────────────────────────

def read_color_image(path: Path) -> np.ndarray:
    """Decode a color raster to an (H, W, 3) uint8 RGB array.

    Regular formats go through OpenCV; HEIC/HEIF (the capture device's
    container) goes through pillow-heif.
    """
    path = Path(path)
    if not path.is_file():
        raise ColorImageLoadFailed(path, "file not found")

    if path.suffix.lower() in HEIF_SUFFIXES:
        import pillow_heif

        try:
            heif_file = pillow_heif.open_heif(str(path), convert_hdr_to_8bit=True)
            rgb = np.asarray(heif_file)
        except (OSError, ValueError, RuntimeError) as e:
            raise ColorImageLoadFailed(path, str(e)) from e
    else:
        import cv2

        bgr = cv2.imread(str(path), cv2.IMREAD_COLOR)
        if bgr is None:
            raise ColorImageLoadFailed(path)
        rgb = cv2.cvtColor(bgr, cv2.COLOR_BGR2RGB)

    if rgb.ndim != 3 or rgb.shape[2] < 3 or rgb.size == 0:
        raise ColorImageLoadFailed(path, f"unexpected raster shape {rgb.shape}")
    return np.ascontiguousarray(rgb[:, :, :3], dtype=np.uint8)


def write_color_image(path: Path, rgb: np.ndarray) -> Path:
    """Write an (H, W, 3) uint8 RGB array with OpenCV (format from suffix)."""
    import cv2

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if not cv2.imwrite(str(path), cv2.cvtColor(rgb, cv2.COLOR_RGB2BGR)):
        raise OSError(f"OpenCV could not write {path}")
    return path


# ── PLY I/O ──────────────────────────────────────────────────────────

def build_ply(
    vertices: np.ndarray,
    faces: np.ndarray | None = None,
    colors: np.ndarray | None = None,
    text: bool = True,
    comment: str | None = None,
):
    """Assemble a PlyData with a vertex element and an optional face element."""
    from plyfile import PlyData, PlyElement

    fields = [("x", "f4"), ("y", "f4"), ("z", "f4")]
    if colors is not None:
        fields += [("red", "u1"), ("green", "u1"), ("blue", "u1")]

    vertex = np.empty(len(vertices), dtype=fields)
    vertex["x"] = vertices[:, 0]
    vertex["y"] = vertices[:, 1]
    vertex["z"] = vertices[:, 2]
    if colors is not None:
        vertex["red"] = colors[:, 0]
        vertex["green"] = colors[:, 1]
        vertex["blue"] = colors[:, 2]

    elements = [PlyElement.describe(vertex, "vertex")]
    if faces is not None and len(faces) > 0:
        face = np.empty(len(faces), dtype=[("vertex_indices", "i4", (3,))])
        face["vertex_indices"] = faces
        elements.append(PlyElement.describe(face, "face"))

    return PlyData(elements, text=text, comments=[comment] if comment else [])


def write_ply_atomic(
    path: Path,
    vertices: np.ndarray,
    faces: np.ndarray | None = None,
    colors: np.ndarray | None = None,
    text: bool = True,
    comment: str | None = None,
) -> Path:
    """Write a PLY to a temporary sibling file, then rename it onto ``path``.

    Nothing is left at ``path`` (or next to it) if any step fails; the
    underlying OSError/ValueError is re-raised.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}.", suffix=".tmp")
    os.close(fd)
    tmp_path = Path(tmp_name)
    try:
        ply = build_ply(vertices, faces=faces, colors=colors, text=text, comment=comment)
        ply.write(str(tmp_path))
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    return path


def read_ply_counts(path: Path) -> dict[str, int]:
    """Declared element counts of a PLY file, e.g. {"vertex": 1200, "face": 0}."""
    from plyfile import PlyData

    ply = PlyData.read(str(path))
    counts = {el.name: el.count for el in ply.elements}
    counts.setdefault("face", 0)
    return counts


def read_ply_points(path: Path) -> np.ndarray:
    """Read vertex positions from a PLY file as (N, 3) float64."""
    from plyfile import PlyData

    vertex = PlyData.read(str(path))["vertex"]
    return np.column_stack([
        vertex["x"].astype(np.float64),
        vertex["y"].astype(np.float64),
        vertex["z"].astype(np.float64),
    ])
