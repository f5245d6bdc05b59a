"""Tensor: a fixed-shape float32 buffer resident on a device context.

Shapes are ordered outermost first, as in numpy; spatial tensors are
``(features, height, width)``. The device buffer is allocated once at
construction and never resized; a different shape means a different
Tensor.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import numpy as np

from gpu_runtime.context import DeviceContext, default_context
from gpu_runtime.errors import InvalidShapeError, ReleasedTensorError, ShapeMismatchError

MAX_DIMS = 3


def check_shape(shape: Sequence[int]) -> tuple[int, ...]:
    """Validate tensor extents and return them as an int tuple."""
    shape = tuple(shape)
    if not 1 <= len(shape) <= MAX_DIMS:
        raise InvalidShapeError(f"Tensors have 1 to {MAX_DIMS} dimensions", {"shape": shape})
    for extent in shape:
        if isinstance(extent, (bool, np.bool_)) or not isinstance(extent, (int, np.integer)):
            raise InvalidShapeError("Tensor extents must be integers", {"shape": shape})
        if extent <= 0:
            raise InvalidShapeError("Tensor extents must be positive", {"shape": shape})
    return tuple(int(e) for e in shape)


class Tensor:
    """Device-resident float32 array with immutable shape."""

    dtype = np.dtype(np.float32)

    def __init__(self, shape: Sequence[int], context: DeviceContext | None = None):
        self._shape = check_shape(shape)
        self._context = context or default_context()
        self._size = int(np.prod(self._shape))
        self._storage: Any = self._context.backend.allocate_zeros(self._size)
        self._base: Tensor | None = None

    @classmethod
    def _wrap(cls, storage: Any, shape: tuple[int, ...], context: DeviceContext, base: Tensor) -> Tensor:
        tensor = cls.__new__(cls)
        tensor._shape = shape
        tensor._context = context
        tensor._size = int(np.prod(shape))
        tensor._storage = storage
        tensor._base = base
        return tensor

    @classmethod
    def from_numpy(cls, data: np.ndarray, context: DeviceContext | None = None) -> Tensor:
        data = np.asarray(data, dtype=np.float32)
        tensor = cls(data.shape, context)
        tensor.set_data(data)
        return tensor

    # -- metadata --

    @property
    def shape(self) -> tuple[int, ...]:
        return self._shape

    @property
    def ndim(self) -> int:
        return len(self._shape)

    @property
    def size(self) -> int:
        return self._size

    @property
    def nbytes(self) -> int:
        return self._size * self.dtype.itemsize

    @property
    def context(self) -> DeviceContext:
        return self._context

    @property
    def is_view(self) -> bool:
        return self._base is not None

    @property
    def released(self) -> bool:
        return self._storage is None

    @property
    def storage(self) -> Any:
        """Backend buffer handle, exactly ``size`` float32 elements long."""
        if self._storage is None:
            raise ReleasedTensorError("Tensor buffer has been released", {"shape": self._shape})
        return self._storage

    def same_shape(self, other: Tensor) -> bool:
        return self._shape == other._shape

    # -- host transfers --

    def set_data(self, data: np.ndarray) -> None:
        """Copy ``size`` elements from a host array into the device buffer.

        The host array is read in C order; any shape is accepted as long as it
        holds at least ``size`` elements.
        """
        flat = np.ascontiguousarray(data, dtype=np.float32).reshape(-1)
        if flat.size < self._size:
            raise InvalidShapeError(
                "Host buffer is smaller than the tensor",
                {"host_elements": flat.size, "tensor_elements": self._size},
            )
        self._context.backend.upload(self.storage, flat[: self._size])

    def get_data(self, out: np.ndarray | None = None) -> np.ndarray:
        """Copy the device buffer to the host.

        Returns a new array shaped like the tensor, or fills the first ``size``
        elements of ``out`` and returns it.
        """
        host = self._context.backend.download(self.storage)
        if out is None:
            return host.reshape(self._shape)
        if out.size < self._size:
            raise InvalidShapeError(
                "Host buffer is smaller than the tensor",
                {"host_elements": out.size, "tensor_elements": self._size},
            )
        out.reshape(-1)[: self._size] = host
        return out

    # -- derived tensors --

    @staticmethod
    def clone(other: Tensor) -> Tensor:
        """New tensor of the same shape with an independent copy of the data."""
        tensor = Tensor(other.shape, other.context)
        other.context.backend.copy(tensor.storage, other.storage)
        return tensor

    def view(self, shape: Sequence[int]) -> Tensor:
        """Tensor sharing this buffer under ``shape`` (same element count)."""
        shape = check_shape(shape)
        if int(np.prod(shape)) != self._size:
            raise ShapeMismatchError(
                "View must keep the element count", {"from": self._shape, "to": shape}
            )
        base = self._base or self
        return Tensor._wrap(self.storage, shape, self._context, base)

    def shares_storage(self, other: Tensor) -> bool:
        return (self._base or self) is (other._base or other)

    # -- host-side utilities for one-time precomputation --

    @staticmethod
    def slow_sum(tensor: Tensor) -> float:
        return float(tensor.get_data().sum(dtype=np.float64))

    @staticmethod
    def div(tensor: Tensor, value: float) -> None:
        tensor.set_data(tensor.get_data() / np.float32(value))

    def release(self) -> None:
        """Drop the device buffer. Views drop only their reference."""
        self._storage = None

    def __repr__(self) -> str:
        state = "released" if self.released else self._context.backend.name
        return f"Tensor(shape={self._shape}, {state})"
