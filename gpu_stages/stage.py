"""Stage: one forward-computation unit of an inference pipeline.

A stage owns its output tensor and any auxiliary tensors it needs.
``forward`` validates the input, lets ``init`` (re)establish that state for
the input's shape, then issues its kernel launches while holding the
context's dispatcher.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from enum import IntEnum
from typing import BinaryIO

from gpu_runtime.context import DeviceContext, default_context
from gpu_runtime.errors import TypeMismatchError
from gpu_runtime.tensor import Tensor

logger = logging.getLogger(__name__)


class StageType(IntEnum):
    """Tags identifying stage records in a model file."""
    SEQUENTIAL = 1
    IDENTITY = 2
    RESHAPE = 3
    LINEAR = 4
    SPATIAL_DIVISIVE_NORMALIZATION = 5
    SPATIAL_UP_SAMPLING_NEAREST = 6


class Stage(ABC):
    """Base class for all stage variants."""

    stage_type: StageType

    def __init__(self, context: DeviceContext | None = None):
        self.context = context or default_context()
        self.output: Tensor | None = None

    @property
    def name(self) -> str:
        return type(self).__name__

    def forward(self, input: Tensor) -> Tensor:
        """Run the stage on ``input`` and return the stage's output tensor."""
        if not isinstance(input, Tensor):
            raise TypeMismatchError(
                f"{self.name} expects a Tensor input", {"got": type(input).__name__}
            )
        with self.context.dispatcher.exclusive():
            self.init(input)
            self._forward(input)
        return self.output

    def init(self, input: Tensor) -> None:
        """(Re)build shape-dependent state. A no-op while the shape is unchanged."""

    @abstractmethod
    def _forward(self, input: Tensor) -> None:
        ...

    @classmethod
    @abstractmethod
    def load_from_file(cls, stream: BinaryIO, context: DeviceContext | None = None) -> Stage:
        """Read this variant's record payload (the type tag is already consumed)."""
        ...

    def _reallocate(self, current: Tensor | None, shape: tuple[int, ...]) -> Tensor:
        """Return ``current`` if it already has ``shape``, else a fresh tensor.

        Launches still in flight may reference the old buffer, so the device is
        drained before it is released.
        """
        if current is not None and current.shape == shape:
            return current
        if current is not None:
            self.context.finish()
            current.release()
        logger.debug("%s: allocating %s", self.name, shape)
        return Tensor(shape, self.context)

    def _release(self, tensor: Tensor | None) -> None:
        if tensor is not None:
            self.context.finish()
            tensor.release()

    def __repr__(self) -> str:
        return f"{self.name}()"
