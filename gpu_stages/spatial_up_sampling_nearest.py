"""SpatialUpSamplingNearest: integer-factor nearest-neighbour upsampling."""

from __future__ import annotations

from typing import BinaryIO

import numpy as np

from gpu_runtime.context import DeviceContext
from gpu_runtime.errors import InvalidParameterError, InvalidShapeError
from gpu_runtime.kernel_cache import KernelSource
from gpu_runtime.tensor import Tensor
from gpu_stages.registry import register_stage
from gpu_stages.serialization import read_int32
from gpu_stages.stage import Stage, StageType

UPSAMPLING_KERNELS = KernelSource.file("spatial_up_sampling_nearest.cu")


@register_stage
class SpatialUpSamplingNearest(Stage):
    """Repeats every pixel ``scale`` times along height and width.

    Inputs are ``(height, width)`` or ``(features, height, width)``; the
    output keeps the leading dimension and scales the last two.
    """

    stage_type = StageType.SPATIAL_UP_SAMPLING_NEAREST

    def __init__(self, scale: int, context: DeviceContext | None = None):
        if isinstance(scale, bool) or not isinstance(scale, (int, np.integer)) or scale < 1:
            raise InvalidParameterError("Upsampling scale must be a positive integer", {"scale": scale})
        super().__init__(context)
        self.scale = int(scale)

    def output_shape(self, input_shape: tuple[int, ...]) -> tuple[int, ...]:
        if len(input_shape) not in (2, 3):
            raise InvalidShapeError(
                "SpatialUpSamplingNearest expects a 2-D or 3-D input", {"got": input_shape}
            )
        *lead, height, width = input_shape
        return (*lead, height * self.scale, width * self.scale)

    def init(self, input: Tensor) -> None:
        self.output = self._reallocate(self.output, self.output_shape(input.shape))

    def _forward(self, input: Tensor) -> None:
        out_height, out_width = self.output.shape[-2:]
        n_feats = self.output.shape[0] if self.output.ndim == 3 else 1
        d = self.context.dispatcher
        d.use(UPSAMPLING_KERNELS, "SpatialUpSamplingNearest")
        d.bind_argument(0, input)
        d.bind_argument(1, self.output)
        d.bind_argument(2, self.scale)
        d.bind_argument(3, out_width)
        d.bind_argument(4, out_height)
        d.bind_argument(5, n_feats)
        d.launch(3, (out_width, out_height, n_feats))

    @classmethod
    def load_from_file(
        cls, stream: BinaryIO, context: DeviceContext | None = None
    ) -> SpatialUpSamplingNearest:
        return cls(read_int32(stream), context)

    def __repr__(self) -> str:
        return f"SpatialUpSamplingNearest(scale={self.scale})"
