"""Reshape: reinterprets the input's elements under a new shape."""

from __future__ import annotations

from collections.abc import Sequence
from typing import BinaryIO

import numpy as np

from gpu_runtime.context import DeviceContext
from gpu_runtime.errors import InvalidShapeError, ShapeMismatchError
from gpu_runtime.tensor import MAX_DIMS, Tensor
from gpu_stages.registry import register_stage
from gpu_stages.serialization import read_count, read_int32_array
from gpu_stages.stage import Stage, StageType

# Extent placeholder meaning "whatever makes the element count match".
INFER = -1


@register_stage
class Reshape(Stage):
    """View of the input under ``shape``; one extent may be ``INFER``.

    The output shares the input's buffer, so no data moves and no buffer is
    allocated. The view is rebuilt whenever the input tensor changes.
    """

    stage_type = StageType.RESHAPE

    def __init__(self, shape: Sequence[int], context: DeviceContext | None = None):
        shape = tuple(int(s) for s in shape)
        if not 1 <= len(shape) <= MAX_DIMS:
            raise InvalidShapeError(f"Reshape target must have 1 to {MAX_DIMS} dims", {"shape": shape})
        if shape.count(INFER) > 1:
            raise InvalidShapeError("Only one extent can be inferred", {"shape": shape})
        if any(s <= 0 and s != INFER for s in shape):
            raise InvalidShapeError("Reshape extents must be positive", {"shape": shape})
        super().__init__(context)
        self.shape = shape

    def output_shape(self, n_elements: int) -> tuple[int, ...]:
        known = int(np.prod([s for s in self.shape if s != INFER]))
        if INFER in self.shape:
            if n_elements % known != 0:
                raise ShapeMismatchError(
                    "Cannot infer extent: element count is not divisible",
                    {"shape": self.shape, "elements": n_elements},
                )
            return tuple(n_elements // known if s == INFER else s for s in self.shape)
        if known != n_elements:
            raise ShapeMismatchError(
                "Reshape changes the element count", {"shape": self.shape, "elements": n_elements}
            )
        return self.shape

    def init(self, input: Tensor) -> None:
        shape = self.output_shape(input.size)
        out = self.output
        if out is None or out.shape != shape or not out.shares_storage(input):
            self.output = input.view(shape)

    def _forward(self, input: Tensor) -> None:
        pass

    @classmethod
    def load_from_file(cls, stream: BinaryIO, context: DeviceContext | None = None) -> Reshape:
        ndim = read_count(stream, "ndim")
        shape = read_int32_array(stream, ndim)
        return cls(shape.tolist(), context)

    def __repr__(self) -> str:
        return f"Reshape({self.shape})"
