"""SpatialDivisiveNormalization: divide each pixel by its local standard deviation.

The local deviation is the square root of the squared input filtered with a
normalised averaging kernel and summed over feature maps, divided by a
per-pixel coefficient that corrects for the kernel falling off the image
border, then floored at ``threshold``.

Forward passes over a ``(features, height, width)`` input:

1. filter the squared input, either horizontally then vertically (1-D,
   separable kernel) or in one full 2-D pass;
2. sum over features, take the square root, divide by the coefficients and
   apply the threshold floor, giving a ``(height, width)`` deviation map;
3. divide the input by the deviation map.
"""

from __future__ import annotations

import logging
import math
from typing import BinaryIO

import numpy as np

from gpu_runtime.context import DeviceContext
from gpu_runtime.errors import InvalidKernelShapeError, InvalidShapeError, ModelFormatError
from gpu_runtime.kernel_cache import KernelSource
from gpu_runtime.tensor import Tensor
from gpu_stages.registry import register_stage
from gpu_stages.serialization import read_count, read_float32, read_float32_array
from gpu_stages.stage import Stage, StageType

logger = logging.getLogger(__name__)

SDN_KERNELS = KernelSource.file("spatial_divisive_normalization.cu")


def kernel_extent(shape: tuple[int, ...]) -> tuple[int, int]:
    """Return ``(height, width)`` of an averaging kernel, validating it.

    The kernel may be 1-D ``(width,)``, 2-D ``(height, width)`` or 3-D
    ``(depth, height, width)`` with depth 1. Both spatial sizes must be odd.
    """
    if not 1 <= len(shape) <= 3:
        raise InvalidKernelShapeError("Averaging kernel must have 1 to 3 dims", {"shape": shape})
    width = shape[-1]
    height = shape[-2] if len(shape) >= 2 else 1
    depth = shape[-3] if len(shape) == 3 else 1
    if depth != 1:
        raise InvalidKernelShapeError("Averaging kernel must have channel depth 1", {"shape": shape})
    if width % 2 == 0 or height % 2 == 0:
        raise InvalidKernelShapeError("Averaging kernel must be odd size", {"shape": shape})
    return height, width


def filter_ones(kernel_2d: np.ndarray, height: int, width: int, row_start: int, row_stop: int) -> np.ndarray:
    """Filter an all-ones ``height x width`` image with ``kernel_2d``.

    Only output rows ``[row_start, row_stop)`` are produced. Taps that fall
    outside the image contribute nothing.
    """
    k_h, k_w = kernel_2d.shape
    rad_v = (k_h - 1) // 2
    rad_u = (k_w - 1) // 2
    out = np.zeros((row_stop - row_start, width), dtype=np.float32)
    for v_filt in range(-rad_v, rad_v + 1):
        v_lo = max(row_start, -v_filt)
        v_hi = min(row_stop, height - v_filt)
        if v_lo >= v_hi:
            continue
        for u_filt in range(-rad_u, rad_u + 1):
            u_lo = max(0, -u_filt)
            u_hi = min(width, width - u_filt)
            if u_lo >= u_hi:
                continue
            out[v_lo - row_start:v_hi - row_start, u_lo:u_hi] += kernel_2d[v_filt + rad_v, u_filt + rad_u]
    return out


@register_stage
class SpatialDivisiveNormalization(Stage):
    """Divisive normalization over ``(features, height, width)`` inputs.

    2-D inputs are treated as a single feature map.
    """

    stage_type = StageType.SPATIAL_DIVISIVE_NORMALIZATION

    def __init__(
        self,
        kernel: Tensor | np.ndarray,
        threshold: float = 1e-4,
        context: DeviceContext | None = None,
    ):
        if isinstance(kernel, Tensor):
            shape = kernel.shape
        else:
            kernel = np.asarray(kernel, dtype=np.float32)
            shape = kernel.shape
        k_height, k_width = kernel_extent(shape)
        super().__init__(context)

        if isinstance(kernel, Tensor) and kernel.context is self.context:
            self._kernel = Tensor.clone(kernel)
        else:
            host = kernel.get_data() if isinstance(kernel, Tensor) else kernel
            self._kernel = Tensor.from_numpy(host, self.context)
        if k_height > 1:
            self._kernel = self._kernel.view((k_height, k_width))
        else:
            self._kernel = self._kernel.view((k_width,))

        self.threshold = float(threshold)
        self.separable = k_height == 1
        self.kernel_size = (k_height, k_width)

        # Normalised kernel depends on the feature count of the input.
        self._kernel_norm: Tensor | None = None
        self._norm_features: int | None = None
        self._pass1: Tensor | None = None
        self._pass2: Tensor | None = None
        self._std: Tensor | None = None
        self._std_coef: Tensor | None = None

    @property
    def kernel(self) -> Tensor:
        return self._kernel

    @property
    def normalized_kernel(self) -> Tensor | None:
        return self._kernel_norm

    @property
    def coefficients(self) -> Tensor | None:
        return self._std_coef

    @staticmethod
    def _spatial_dims(input: Tensor) -> tuple[int, int, int]:
        if input.ndim == 3:
            return input.shape
        if input.ndim == 2:
            return (1, *input.shape)
        raise InvalidShapeError(
            "SpatialDivisiveNormalization expects a 2-D or 3-D input", {"got": input.shape}
        )

    def init(self, input: Tensor) -> None:
        n_feats, height, width = self._spatial_dims(input)

        if self.output is not None and not self.output.same_shape(input):
            logger.debug("%s: input shape changed to %s", self.name, input.shape)
            for attr in ("output", "_pass1", "_pass2", "_std", "_std_coef"):
                self._release(getattr(self, attr))
                setattr(self, attr, None)

        if self.output is None:
            self.output = Tensor(input.shape, self.context)
            if self.separable:
                self._pass1 = Tensor(input.shape, self.context)
            self._pass2 = Tensor(input.shape, self.context)

        if self._kernel_norm is None or self._norm_features != n_feats:
            self._release(self._kernel_norm)
            self._kernel_norm = self._normalize_kernel(n_feats)
            self._norm_features = n_feats

        if self._std_coef is None:
            self._std_coef = Tensor((height, width), self.context)
            self._std_coef.set_data(self._compute_coefficients(n_feats, height, width))

        if self._std is None:
            self._std = Tensor((height, width), self.context)

    def _normalize_kernel(self, n_feats: int) -> Tensor:
        kernel_norm = Tensor.clone(self._kernel)
        total = Tensor.slow_sum(kernel_norm)
        if self.separable:
            div_val = total * math.sqrt(n_feats)
        else:
            div_val = total * n_feats
        Tensor.div(kernel_norm, div_val)
        return kernel_norm

    def _compute_coefficients(self, n_feats: int, height: int, width: int) -> np.ndarray:
        """Filter an all-ones image with the normalised kernel, per output pixel.

        A separable kernel is expanded to its full 2-D outer product; this runs
        once per input shape. Row bands are spread over the host worker pool.
        """
        k = self._kernel_norm.get_data()
        kernel_2d = np.outer(k, k) if self.separable else k
        n_bands = min(self.context.config.host_workers, height)
        bounds = np.linspace(0, height, n_bands + 1).astype(int)
        futures = [
            self.context.host_pool.submit(filter_ones, kernel_2d, height, width, lo, hi)
            for lo, hi in zip(bounds[:-1], bounds[1:])
        ]
        coef = np.concatenate([f.result() for f in futures], axis=0)
        logger.debug("%s: built %dx%d normalization coefficients", self.name, height, width)
        return coef / np.float32(n_feats)

    def _forward(self, input: Tensor) -> None:
        n_feats, height, width = self._spatial_dims(input)
        d = self.context.dispatcher
        volume = (width, height, n_feats)

        if self.separable:
            filt_rad = (self.kernel_size[1] - 1) // 2
            d.use(SDN_KERNELS, "SpatialDivisiveNormalizationHoriz")
            for index, value in enumerate((input, self._pass1, self._kernel_norm, filt_rad,
                                           width, height, n_feats)):
                d.bind_argument(index, value)
            d.launch(3, volume)

            d.use(SDN_KERNELS, "SpatialDivisiveNormalizationVert")
            for index, value in enumerate((self._pass1, self._pass2, self._kernel_norm, filt_rad,
                                           width, height, n_feats)):
                d.bind_argument(index, value)
            d.launch(3, volume)
        else:
            filt_rad_v = (self.kernel_size[0] - 1) // 2
            filt_rad_u = (self.kernel_size[1] - 1) // 2
            d.use(SDN_KERNELS, "SpatialDivisiveNormalization2D")
            for index, value in enumerate((input, self._pass2, self._kernel_norm, filt_rad_u,
                                           filt_rad_v, width, height, n_feats)):
                d.bind_argument(index, value)
            d.launch(3, volume)

        d.use(SDN_KERNELS, "SpatialDivisiveNormalizationAccumDiv")
        for index, value in enumerate((self._pass2, self._std, self._std_coef, n_feats,
                                       self.threshold, width, height)):
            d.bind_argument(index, value)
        d.launch(2, (width, height))

        d.use(SDN_KERNELS, "SpatialDivisiveNormalization")
        for index, value in enumerate((input, self.output, self._std, width, height, n_feats)):
            d.bind_argument(index, value)
        d.launch(3, volume)

    @classmethod
    def load_from_file(
        cls, stream: BinaryIO, context: DeviceContext | None = None
    ) -> SpatialDivisiveNormalization:
        size_inner = read_count(stream, "kernel_size_inner")
        size_outer = read_count(stream, "kernel_size_outer")
        if size_inner == 0 or size_outer == 0:
            raise ModelFormatError(
                "Empty normalization kernel", {"inner": size_inner, "outer": size_outer}
            )
        weights = read_float32_array(stream, size_inner * size_outer)
        threshold = read_float32(stream)
        if size_outer > 1:
            kernel = weights.reshape(size_outer, size_inner)
        else:
            kernel = weights
        return cls(kernel, threshold, context)

    def __repr__(self) -> str:
        return f"SpatialDivisiveNormalization(kernel={self.kernel_size}, threshold={self.threshold})"
