"""Abstract device backend interface.

The dispatcher and tensors only talk to a device through this boundary:
buffer allocation and host transfers, program/kernel compilation, device
limits, and kernel launches. Buffers are opaque to callers; each backend
returns its own flat float32 array type (numpy for the host backend,
cupy for CUDA).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import numpy as np


@dataclass(frozen=True)
class DeviceLimits:
    """Work partition limits reported by a device."""
    max_workgroup_size: int = 1024
    max_workitem_sizes: tuple[int, int, int] = (1024, 1024, 64)

    def max_workitem_size(self, dim: int) -> int:
        return self.max_workitem_sizes[dim]


@dataclass(frozen=True)
class LocalMemory:
    """Work-group scratch memory request, bound in place of a data buffer."""
    nbytes: int


@dataclass(frozen=True)
class LaunchGeometry:
    """Index space of one launch, in work-items (OpenCL-style global sizes).

    ``local_size`` is None when the caller leaves the work-group shape to the
    backend.
    """
    dims: int
    global_size: tuple[int, ...]
    local_size: tuple[int, ...] | None = None


class Backend(ABC):
    """Abstract device-compute backend."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Namespace used to key compiled programs in the kernel cache."""
        ...

    @property
    @abstractmethod
    def limits(self) -> DeviceLimits:
        ...

    @abstractmethod
    def allocate_zeros(self, size: int) -> Any:
        """Allocate a zero-filled flat float32 buffer of ``size`` elements."""
        ...

    @abstractmethod
    def upload(self, buffer: Any, data: np.ndarray) -> None:
        """Copy a flat float32 host array into ``buffer`` (same length)."""
        ...

    @abstractmethod
    def download(self, buffer: Any) -> np.ndarray:
        """Return a flat float32 host copy of ``buffer``."""
        ...

    @abstractmethod
    def copy(self, dst: Any, src: Any) -> None:
        """Device-to-device copy between equally sized buffers."""
        ...

    @abstractmethod
    def compile_program(self, source_text: str, source_key: str) -> Any:
        """Build one source unit. Raises CompilationError with the build log."""
        ...

    @abstractmethod
    def get_kernel(self, program: Any, entry: str) -> Any:
        """Extract an entry point from a built program. Raises CompilationError."""
        ...

    @abstractmethod
    def kernel_max_workgroup_size(self, kernel: Any) -> int:
        ...

    @abstractmethod
    def launch(self, kernel: Any, geometry: LaunchGeometry, args: list[Any], blocking: bool) -> None:
        """Enqueue ``kernel`` over ``geometry`` with positional ``args``.

        ``args`` may contain LocalMemory entries; the backend decides how
        work-group scratch is provided.
        """
        ...

    @abstractmethod
    def synchronize(self) -> None:
        """Block until every enqueued launch has completed."""
        ...
