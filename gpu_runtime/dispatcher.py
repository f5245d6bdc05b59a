"""Kernel dispatcher: select a kernel, bind its arguments, launch it.

One dispatcher exists per device context. Argument binding is mutable state
shared by every stage on the context, so a stage holds ``exclusive()`` for
the whole use/bind/launch sequence of its forward pass.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

import numpy as np

from gpu_runtime.backend import Backend, LaunchGeometry, LocalMemory
from gpu_runtime.errors import KernelArgumentError, ReleasedTensorError
from gpu_runtime.kernel_cache import Kernel, KernelCache, KernelSource
from gpu_runtime.work_partition import validate_work_size

if TYPE_CHECKING:
    from gpu_runtime.tensor import Tensor

logger = logging.getLogger(__name__)


class Dispatcher:
    """Serialised front end to a backend's compile and launch operations."""

    def __init__(self, backend: Backend, cache: KernelCache, kernel_root: str):
        self._backend = backend
        self._cache = cache
        self._kernel_root = kernel_root
        self._lock = threading.RLock()
        self._current: Kernel | None = None
        self._args: dict[int, Any] = {}
        self.launch_count = 0

    @property
    def backend(self) -> Backend:
        return self._backend

    @contextmanager
    def exclusive(self) -> Iterator[Dispatcher]:
        """Hold the dispatcher for a complete use/bind/launch sequence."""
        with self._lock:
            yield self

    def use(self, source: KernelSource, entry: str) -> Kernel:
        """Make ``entry`` of ``source`` the current kernel, compiling on first use.

        Any previously bound arguments are discarded.
        """
        with self._lock:
            kernel = self._cache.get(self._backend, source, entry, self._kernel_root)
            self._current = kernel
            self._args = {}
            return kernel

    def bind_argument(self, index: int, value: Any = None, nbytes: int | None = None) -> None:
        """Bind positional argument ``index`` of the current kernel.

        Tensors bind their device buffer, Python ints and floats are passed as
        int32 and float32, numpy scalars pass through unchanged. A ``bytes``
        like value is passed by value as a raw blob of ``nbytes`` bytes.
        ``value=None`` with ``nbytes`` requests work-group scratch memory of
        that size.

        Bindings last for one launch only.
        """
        with self._lock:
            if self._current is None:
                raise KernelArgumentError("No kernel selected; call use() before binding arguments")
            if index < 0:
                raise KernelArgumentError("Argument index must be non-negative", {"index": index})
            self._args[index] = self._convert(value, nbytes)

    def launch(
        self,
        dims: int,
        global_size: Sequence[int],
        local_size: Sequence[int] | None = None,
        blocking: bool = False,
    ) -> None:
        """Enqueue the current kernel over a ``dims``-dimensional index space."""
        with self._lock:
            kernel = self._current
            if kernel is None:
                raise KernelArgumentError("No kernel selected; call use() before launch()")
            global_size, local_size = validate_work_size(
                dims, global_size, local_size, self._backend.limits,
                self._backend.kernel_max_workgroup_size(kernel.handle),
            )
            if not self._args:
                raise KernelArgumentError(
                    "No kernel arguments bound; bind them before every launch", {"entry": kernel.entry}
                )
            n_args = max(self._args) + 1
            missing = [i for i in range(n_args) if i not in self._args]
            if missing:
                raise KernelArgumentError(
                    "Kernel arguments are not contiguous", {"entry": kernel.entry, "missing": missing}
                )
            args = [self._args[i] for i in range(n_args)]
            geometry = LaunchGeometry(dims, global_size, local_size)
            logger.debug("Launch %s global=%s local=%s blocking=%s",
                         kernel.entry, global_size, local_size, blocking)
            self._backend.launch(kernel.handle, geometry, args, blocking)
            self._args = {}
            self.launch_count += 1

    def finish(self) -> None:
        """Drain every launch enqueued so far."""
        with self._lock:
            self._backend.synchronize()

    # -- device limit pass-throughs --

    def max_workgroup_size(self) -> int:
        return self._backend.limits.max_workgroup_size

    def max_workitem_size(self, dim: int) -> int:
        return self._backend.limits.max_workitem_size(dim)

    def max_workgroup_size_for_kernel(self) -> int:
        if self._current is None:
            raise KernelArgumentError("No kernel selected; call use() first")
        return self._backend.kernel_max_workgroup_size(self._current.handle)

    @staticmethod
    def _convert(value: Any, nbytes: int | None) -> Any:
        from gpu_runtime.tensor import Tensor

        if value is None:
            if nbytes is None or nbytes <= 0:
                raise KernelArgumentError("Scratch memory requests need a positive byte size")
            return LocalMemory(int(nbytes))
        if isinstance(value, (bytes, bytearray, memoryview)):
            blob = bytes(value)
            if not blob or nbytes is None or nbytes != len(blob):
                raise KernelArgumentError(
                    "Raw argument size does not match its byte count",
                    {"length": len(blob), "nbytes": nbytes},
                )
            return np.void(blob)
        if isinstance(value, Tensor):
            if value.released:
                raise ReleasedTensorError("Cannot bind a released tensor", {"shape": value.shape})
            return value.storage
        if isinstance(value, (bool, np.bool_)):
            return np.int32(value)
        if isinstance(value, int):
            return np.int32(value)
        if isinstance(value, float):
            return np.float32(value)
        if isinstance(value, np.generic):
            return value
        raise KernelArgumentError(
            "Unsupported kernel argument type", {"type": type(value).__name__}
        )


def bind_arguments(
    dispatcher: Dispatcher, *values: Tensor | int | float | bytes | LocalMemory
) -> None:
    """Bind ``values`` to consecutive argument slots starting at 0."""
    for index, value in enumerate(values):
        if isinstance(value, LocalMemory):
            dispatcher.bind_argument(index, nbytes=value.nbytes)
        elif isinstance(value, (bytes, bytearray)):
            dispatcher.bind_argument(index, value, nbytes=len(value))
        else:
            dispatcher.bind_argument(index, value)
