"""Per-call reconstruction context: config, worker pool, cancellation, bookkeeping.

A session is created for one reconstruction request and torn down at its end.
Nothing here is shared between requests.
"""

from __future__ import annotations

import logging
import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Iterable, Optional, TypeVar

from .contracts import StepMeta
from .errors import ReconstructionCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class CancellationToken:
    """Cooperative cancellation flag checked between stages and between frames."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, stage: str) -> None:
        if self._event.is_set():
            raise ReconstructionCancelled(stage)


class ReconstructionSession:
    """Explicit context passed to every step of one reconstruction call.

    Usage:
        with ReconstructionSession(config, num_frames=5) as session:
            output = step.execute(inputs)

    Leaving the context shuts the worker pool down and drops pending tasks.
    """

    def __init__(
        self,
        config,
        num_frames: int = 1,
        cancel_token: Optional[CancellationToken] = None,
    ):
        self.config = config
        self.cancel_token = cancel_token or CancellationToken()
        self.step_meta: list[StepMeta] = []
        self.warnings: list[str] = []
        self.degraded = False

        max_workers = getattr(config, "max_workers", None) or os.cpu_count() or 1
        self.num_workers = max(1, min(max_workers, max(1, num_frames)))
        self._executor: Optional[ThreadPoolExecutor] = None
        self._lock = threading.Lock()

    def __enter__(self) -> ReconstructionSession:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def executor(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.num_workers, thread_name_prefix="facerecon"
                )
            return self._executor

    def close(self) -> None:
        with self._lock:
            if self._executor is not None:
                self._executor.shutdown(wait=True, cancel_futures=True)
                self._executor = None

    def check_cancelled(self, stage: str) -> None:
        self.cancel_token.raise_if_cancelled(stage)

    def map_frames(
        self, fn: Callable[[T], R], items: Iterable[T], stage: str
    ) -> list[R]:
        """Run ``fn`` on every item on the worker pool, results in input order.

        The token is checked before each task starts; the first failure (in
        input order) is re-raised after the remaining tasks are cancelled.
        """

        def guarded(item: T) -> R:
            self.check_cancelled(stage)
            return fn(item)

        futures: list[Future] = [self.executor.submit(guarded, item) for item in items]
        try:
            return [f.result() for f in futures]
        except BaseException:
            for f in futures:
                f.cancel()
            raise

    def warn(self, message: str, degraded: bool = True) -> None:
        logger.warning(message)
        with self._lock:
            self.warnings.append(message)
            self.degraded = self.degraded or degraded

    def record(self, meta: StepMeta) -> None:
        with self._lock:
            self.step_meta.append(meta)

    def stage_timings_ms(self) -> dict[str, float]:
        return {m.step_name: round(m.elapsed_seconds * 1000.0, 3) for m in self.step_meta}
