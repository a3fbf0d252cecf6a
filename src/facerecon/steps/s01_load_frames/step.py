"""Step 01: Validate frame descriptors and decode color + depth buffers."""

from __future__ import annotations

import logging
from typing import Any, ClassVar, Sequence

from pydantic import ValidationError

from facerecon.core.contracts import FrameDescriptor
from facerecon.core.errors import FrameCountTooLow, InvalidFrameData
from facerecon.core.step_base import BaseStep
from facerecon.core.structures import CaptureFrame
from facerecon.utils.io import read_color_image, read_depth_bin
from ._quality import analyze_depth_quality
from .config import LoadFramesConfig
from .contracts import LoadFramesInput, LoadFramesOutput

logger = logging.getLogger(__name__)


def _describe_validation_error(err: ValidationError) -> str:
    parts = []
    for e in err.errors():
        loc = ".".join(str(p) for p in e.get("loc", ())) or "frame"
        parts.append(f"{loc}: {e.get('msg', 'invalid')}")
    return "; ".join(parts)


def parse_frame_descriptors(raw_frames: Sequence[Any]) -> list[FrameDescriptor]:
    """Validate raw descriptors once, at the pipeline boundary.

    Raises:
        InvalidFrameData: for the first malformed descriptor, with its index.
    """
    descriptors = []
    for index, raw in enumerate(raw_frames):
        if isinstance(raw, FrameDescriptor):
            descriptors.append(raw)
            continue
        if not isinstance(raw, dict):
            raise InvalidFrameData(index, f"expected a mapping, got {type(raw).__name__}")
        try:
            descriptors.append(FrameDescriptor.model_validate(raw))
        except ValidationError as e:
            raise InvalidFrameData(index, _describe_validation_error(e)) from e
    return descriptors


class LoadFramesStep(BaseStep[LoadFramesInput, LoadFramesOutput, LoadFramesConfig]):
    name: ClassVar[str] = "load_frames"
    input_type: ClassVar = LoadFramesInput
    output_type: ClassVar = LoadFramesOutput
    config_type: ClassVar = LoadFramesConfig

    def validate_inputs(self, inputs: LoadFramesInput) -> bool:
        if len(inputs.frames) < self.config.min_frames:
            raise FrameCountTooLow(len(inputs.frames), self.config.min_frames)
        return True

    def run(self, inputs: LoadFramesInput) -> LoadFramesOutput:
        descriptors = parse_frame_descriptors(inputs.frames)
        for i, d in enumerate(descriptors):
            logger.info(
                f"Frame {i} [{d.angle_label}]: {d.depth_width}x{d.depth_height}, "
                f"fx={d.fx:.1f} fy={d.fy:.1f} cx={d.cx:.1f} cy={d.cy:.1f}"
            )

        frames = self.session.map_frames(
            lambda item: self._decode(*item), list(enumerate(descriptors)), stage=self.name
        )
        logger.info(f"All {len(frames)} frames loaded into memory")

        reports = []
        if self.config.analyze_quality:
            for frame in frames:
                report = analyze_depth_quality(
                    frame.depth_map,
                    frame_index=frame.index,
                    angle_label=frame.angle_label,
                    max_depth=self.config.quality_max_depth,
                )
                reports.append(report)
                msg = (
                    f"Frame {frame.index} depth quality: {report.quality} "
                    f"({report.valid_fraction:.0%} valid)"
                )
                if report.quality == "poor":
                    logger.warning(f"{msg}: {'; '.join(report.issues)}")
                else:
                    logger.info(msg)

        return LoadFramesOutput(frames=frames, quality_reports=reports)

    def _decode(self, index: int, descriptor: FrameDescriptor) -> CaptureFrame:
        color = read_color_image(descriptor.color_path)
        depth = read_depth_bin(descriptor.depth_path, descriptor.depth_width, descriptor.depth_height)
        try:
            intrinsics = descriptor.depth_intrinsics()
        except ValidationError as e:
            raise InvalidFrameData(index, _describe_validation_error(e)) from e

        logger.debug(f"Frame {index} loaded: {descriptor.depth_width}x{descriptor.depth_height}")
        return CaptureFrame(
            index=index,
            depth_map=depth,
            intrinsics=intrinsics,
            timestamp=descriptor.timestamp,
            angle_label=descriptor.angle_label,
            color_image=color,
            color_path=descriptor.color_path,
            depth_path=descriptor.depth_path,
        )
