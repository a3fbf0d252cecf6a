"""Base class for all pipeline steps.

Every step declares typed Input, Output, Config via Pydantic models.
Steps share one ReconstructionSession per call; the runner chains them and
callers can introspect each step's config schema.
"""

from __future__ import annotations

import time
import logging
from abc import ABC, abstractmethod
from typing import Generic, TypeVar, ClassVar

from pydantic import BaseModel

from .contracts import StepMeta
from .errors import ReconstructionError
from .session import ReconstructionSession

InputT = TypeVar("InputT", bound=BaseModel)
OutputT = TypeVar("OutputT", bound=BaseModel)
ConfigT = TypeVar("ConfigT", bound=BaseModel)

logger = logging.getLogger(__name__)


class StepInputInvalid(ReconstructionError):
    kind = "InvalidStepInput"


class BaseStep(ABC, Generic[InputT, OutputT, ConfigT]):
    """Abstract base for pipeline steps.

    Subclasses must:
    1. Define concrete Pydantic models for InputT, OutputT, ConfigT
    2. Set class variables: input_type, output_type, config_type
    3. Implement run() and validate_inputs()

    validate_inputs() may raise a specific ReconstructionError itself; a plain
    False is reported as StepInputInvalid.

    Example:
        class ProjectPointsStep(BaseStep[ProjectPointsInput, ProjectPointsOutput, ProjectPointsConfig]):
            input_type = ProjectPointsInput
            output_type = ProjectPointsOutput
            config_type = ProjectPointsConfig

            def run(self, inputs: ProjectPointsInput) -> ProjectPointsOutput: ...
            def validate_inputs(self, inputs: ProjectPointsInput) -> bool: ...
    """

    name: ClassVar[str] = ""
    input_type: ClassVar[type[BaseModel]]
    output_type: ClassVar[type[BaseModel]]
    config_type: ClassVar[type[BaseModel]]

    def __init__(self, config: ConfigT, session: ReconstructionSession):
        self.config = config
        self.session = session

    @abstractmethod
    def run(self, inputs: InputT) -> OutputT:
        """Execute this pipeline step. Returns output model."""
        ...

    @abstractmethod
    def validate_inputs(self, inputs: InputT) -> bool:
        """Check that all required inputs are present and consistent."""
        ...

    def execute(self, inputs: InputT) -> OutputT:
        """Run with cancellation check, logging, timing, and validation."""
        step_name = self.name or self.__class__.__name__
        self.session.check_cancelled(step_name)
        logger.info(f"[{step_name}] Validating inputs...")

        if not self.validate_inputs(inputs):
            raise StepInputInvalid(f"[{step_name}] Input validation failed")

        logger.info(f"[{step_name}] Starting...")
        t0 = time.perf_counter()
        result = self.run(inputs)
        elapsed = time.perf_counter() - t0
        logger.info(f"[{step_name}] Done in {elapsed:.2f}s")
        self.session.record(
            StepMeta(step_name=step_name, elapsed_seconds=elapsed, params=self.config.model_dump())
        )
        return result

    @classmethod
    def get_config_schema(cls) -> dict:
        """Return JSON schema for config."""
        return cls.config_type.model_json_schema()
