"""Error taxonomy for the reconstruction pipeline.

Stages raise these; only the pipeline runner catches them and turns them into a
failed ReconstructionResult. Each class carries a stable ``kind`` string that is
reported to the caller as ``error_kind``.
"""

from __future__ import annotations

from pathlib import Path


class ReconstructionError(Exception):
    """Base class for every failure the pipeline reports to its caller."""

    kind: str = "ReconstructionError"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


class InvalidFrameData(ReconstructionError):
    kind = "InvalidFrameData"

    def __init__(self, index: int, reason: str):
        self.index = index
        self.reason = reason
        super().__init__(f"Invalid frame data at index {index}: {reason}")


class FrameCountTooLow(ReconstructionError):
    kind = "FrameCountTooLow"

    def __init__(self, actual: int, required: int):
        self.actual = actual
        self.required = required
        super().__init__(f"Insufficient frames: got {actual}, need at least {required}")


class ColorImageLoadFailed(ReconstructionError):
    kind = "ColorImageLoadFailed"

    def __init__(self, path: Path | str, reason: str = "unreadable or not a valid raster"):
        self.path = str(path)
        self.reason = reason
        super().__init__(f"Failed to load color image {self.path}: {reason}")


class DepthDataLoadFailed(ReconstructionError):
    kind = "DepthDataLoadFailed"

    def __init__(self, path: Path | str, reason: str):
        self.path = str(path)
        self.reason = reason
        super().__init__(f"Failed to load depth data {self.path}: {reason}")


class DepthSizeMismatch(ReconstructionError):
    kind = "DepthSizeMismatch"

    def __init__(self, path: Path | str, actual_bytes: int, expected_bytes: int):
        self.path = str(path)
        self.actual_bytes = actual_bytes
        self.expected_bytes = expected_bytes
        super().__init__(
            f"Depth data size mismatch for {self.path}: "
            f"got {actual_bytes} bytes, expected {expected_bytes}"
        )


class RegistrationDidNotConverge(ReconstructionError):
    """Non-fatal by default: recorded as a warning and the frame is kept."""

    kind = "RegistrationDidNotConverge"

    def __init__(self, frame_index: int, residual: float, iterations: int):
        self.frame_index = frame_index
        self.residual = residual
        self.iterations = iterations
        super().__init__(
            f"Registration of frame {frame_index} did not converge "
            f"(residual={residual:.5f} m after {iterations} iterations)"
        )


class FusionFailed(ReconstructionError):
    kind = "FusionFailed"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Reconstruction failed: {reason}")


class MeshExportFailed(ReconstructionError):
    kind = "MeshExportFailed"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Mesh export failed: {reason}")


class ReconstructionCancelled(ReconstructionError):
    kind = "Cancelled"

    def __init__(self, stage: str):
        self.stage = stage
        super().__init__(f"Reconstruction cancelled before {stage}")
