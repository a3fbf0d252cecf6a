"""Depth map quality report.

Rates a decoded depth map by resolution and by the share of usable samples.
Low resolution lacks the detail needed for mask fitting; a low valid fraction
usually means the subject was out of range or the sensor was occluded.
"""

from __future__ import annotations

import numpy as np

from .contracts import DepthQualityReport

_RATINGS = ["excellent", "good", "fair", "poor"]

# 640x480 = 307,200 samples is the nominal TrueDepth resolution
HIGH_RESOLUTION_SAMPLES = 300_000
LOW_RESOLUTION_SAMPLES = 100_000
FAIR_VALID_FRACTION = 0.6
POOR_VALID_FRACTION = 0.2


def _worse(current: str, candidate: str) -> str:
    return max(current, candidate, key=_RATINGS.index)


def analyze_depth_quality(
    depth: np.ndarray,
    frame_index: int = 0,
    angle_label: str = "unknown",
    max_depth: float = 2.0,
) -> DepthQualityReport:
    height, width = depth.shape
    total = int(depth.size)
    valid_mask = np.isfinite(depth) & (depth > 0) & (depth <= max_depth)
    valid = depth[valid_mask]
    n_valid = int(valid.size)
    fraction = n_valid / total if total else 0.0

    issues: list[str] = []
    quality = "excellent"

    if total < LOW_RESOLUTION_SAMPLES:
        issues.append("Low depth resolution, may lack detail")
        quality = _worse(quality, "fair")
    elif total < HIGH_RESOLUTION_SAMPLES:
        quality = _worse(quality, "good")

    if n_valid == 0:
        issues.append("No valid depth samples")
        quality = "poor"
    elif fraction < POOR_VALID_FRACTION:
        issues.append(f"Only {fraction:.0%} of depth samples are valid")
        quality = "poor"
    elif fraction < FAIR_VALID_FRACTION:
        issues.append(f"{fraction:.0%} of depth samples are valid")
        quality = _worse(quality, "fair")

    return DepthQualityReport(
        frame_index=frame_index,
        angle_label=angle_label,
        resolution=f"{width}x{height}",
        total_samples=total,
        valid_samples=n_valid,
        valid_fraction=round(fraction, 4),
        min_depth=float(valid.min()) if n_valid else None,
        median_depth=float(np.median(valid)) if n_valid else None,
        max_depth=float(valid.max()) if n_valid else None,
        quality=quality,
        issues=issues,
    )
