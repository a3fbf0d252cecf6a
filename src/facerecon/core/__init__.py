"""facerecon core: pipeline runner, base step, session, shared contracts."""

from .step_base import BaseStep
from .contracts import CameraIntrinsics, FrameDescriptor, FrameRegistration, ReconstructionResult, StepMeta
from .errors import ReconstructionError
from .session import CancellationToken, ReconstructionSession
from .pipeline_runner import (
    ReconstructionConfig,
    load_reconstruction_config,
    reconstruct_face,
    reconstruct_face_async,
)
from .logging import setup_logging

__all__ = [
    "BaseStep",
    "CameraIntrinsics",
    "FrameDescriptor",
    "FrameRegistration",
    "ReconstructionResult",
    "StepMeta",
    "ReconstructionError",
    "CancellationToken",
    "ReconstructionSession",
    "ReconstructionConfig",
    "load_reconstruction_config",
    "reconstruct_face",
    "reconstruct_face_async",
    "setup_logging",
]
